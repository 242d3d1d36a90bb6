# portal_backend/progress.py
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional

from sqlalchemy import delete, insert, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import SQLAlchemyError

from . import local_cache
from .database import SessionLocal
from .errors import PortalError
from .local_cache import LocalCacheStore
from .log import get_logger
from .models import LessonProgress

log = get_logger("progress")

_DIALECT_INSERT = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


# === time helpers ============================================================
def _now() -> datetime:
    return datetime.now(timezone.utc)


def ms_to_datetime(ms: int | float) -> datetime:
    return datetime.fromtimestamp(ms / 1000, tz=timezone.utc)


def datetime_to_ms(dt: datetime) -> int:
    # sqlite hands timestamps back without tzinfo; they were written as UTC
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return int(dt.timestamp() * 1000)


# === server-side progress ====================================================
def upsert_progress_records(account_id: str, records: List[Dict[str, Any]], ignore_duplicates: bool = True) -> int:
    """
    Insert progress rows; conflict target is (account_id, lesson_id).
    ignore_duplicates=True keeps rows already on the server untouched,
    otherwise completed / completed_at are overwritten.
    """
    if not records:
        return 0
    rows = [{"account_id": account_id, **r} for r in records]

    with SessionLocal() as s, s.begin():
        dialect_insert = _DIALECT_INSERT.get(s.get_bind().dialect.name)
        if dialect_insert is not None:
            stmt = dialect_insert(LessonProgress).values(rows)
            target = [LessonProgress.account_id, LessonProgress.lesson_id]
            if ignore_duplicates:
                stmt = stmt.on_conflict_do_nothing(index_elements=target)
            else:
                stmt = stmt.on_conflict_do_update(
                    index_elements=target,
                    set_={
                        "completed": stmt.excluded.completed,
                        "completed_at": stmt.excluded.completed_at,
                    },
                )
            s.execute(stmt)
        else:
            # generic path: read existing ids, then write the rest
            existing = {
                p.lesson_id: p
                for p in s.scalars(
                    select(LessonProgress).where(LessonProgress.account_id == account_id)
                )
            }
            fresh = []
            for row in rows:
                found = existing.get(row["lesson_id"])
                if found is None:
                    fresh.append(row)
                elif not ignore_duplicates:
                    found.completed = row["completed"]
                    found.completed_at = row["completed_at"]
            if fresh:
                s.execute(insert(LessonProgress), fresh)
    return len(rows)


def get_progress(account_id: str) -> Dict[str, Dict[str, Any]]:
    """Same shape as the browser map: {lesson_id: {completed, completedAt}}."""
    with SessionLocal() as s:
        rows = s.scalars(select(LessonProgress).where(LessonProgress.account_id == account_id)).all()
        return {
            r.lesson_id: {"completed": r.completed, "completedAt": datetime_to_ms(r.completed_at)}
            for r in rows
        }


def mark_lesson_complete(account_id: str, lesson_id: str, now: Optional[datetime] = None) -> None:
    upsert_progress_records(
        account_id,
        [{"lesson_id": lesson_id, "completed": True, "completed_at": now or _now()}],
        ignore_duplicates=False,
    )


def mark_lesson_incomplete(account_id: str, lesson_id: str) -> bool:
    with SessionLocal() as s, s.begin():
        res = s.execute(
            delete(LessonProgress).where(
                LessonProgress.account_id == account_id,
                LessonProgress.lesson_id == lesson_id,
            )
        )
        return bool(res.rowcount)


# === merge ===================================================================
@dataclass(frozen=True)
class MergeResult:
    status: str                     # "merged" | "skipped" | "failed"
    lessons: int = 0
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status != "failed"


def collect_lesson_ids(progress: Dict[str, Any], legacy: Iterable[str]) -> List[str]:
    """Union of both local formats, first-seen order, no duplicates."""
    seen: Dict[str, None] = {}
    for lesson_id in list(progress) + list(legacy):
        seen.setdefault(str(lesson_id), None)
    return list(seen)


def _local_completed_at(value: Any) -> Optional[datetime]:
    """A cached completedAt as a datetime; None when it is missing or unusable."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return None
    try:
        return ms_to_datetime(value)
    except (ValueError, OverflowError, OSError):
        return None


def build_merge_records(
    progress: Dict[str, Any],
    legacy: Iterable[str],
    now: Optional[datetime] = None,
) -> List[Dict[str, Any]]:
    now = now or _now()
    records = []
    for lesson_id in collect_lesson_ids(progress, legacy):
        local = progress.get(lesson_id)
        if not isinstance(local, dict):
            local = {}
        completed_at = _local_completed_at(local.get("completedAt"))
        records.append({
            "lesson_id": lesson_id,
            "completed": True,
            "completed_at": completed_at if completed_at is not None else now,
        })
    return records


ProgressSink = Callable[[str, List[Dict[str, Any]]], Any]


def merge_local_progress(
    store: LocalCacheStore,
    account_id: str,
    sink: ProgressSink = upsert_progress_records,
    now: Optional[datetime] = None,
) -> MergeResult:
    """
    Push anonymous progress to the account, then clear it locally.
    Never raises: a failed merge leaves the local copy for the next sign-in.
    """
    records: List[Dict[str, Any]] = []
    try:
        progress = local_cache.get_local_progress(store)
        legacy = local_cache.get_legacy_completed(store)
        records = build_merge_records(progress, legacy, now)
        if not records:
            return MergeResult("skipped")
        sink(account_id, records)
    except (SQLAlchemyError, OSError, PortalError, TypeError, ValueError) as e:
        log.error("progress_merge_failed", account_id=account_id, lessons=len(records), error=str(e))
        return MergeResult("failed", len(records), str(e))

    local_cache.clear_local_progress(store)
    log.info("progress_merged", account_id=account_id, lessons=len(records))
    return MergeResult("merged", len(records))
