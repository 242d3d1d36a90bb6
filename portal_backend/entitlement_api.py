# portal_backend/entitlement_api.py
from __future__ import annotations

from fastapi import APIRouter, Depends
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.exc import SQLAlchemyError

from . import entitlements, progress
from .access import Account
from .auth import current_account
from .errors import UpstreamUnavailable
from .log import get_logger
from .schemas import ProgressMergeBody

router = APIRouter(tags=["account"])
log = get_logger("account_api")


async def _store_call(fn, *args, **kwargs):
    try:
        return await run_in_threadpool(fn, *args, **kwargs)
    except SQLAlchemyError as e:
        log.error("store_call_failed", call=fn.__name__, error=str(e))
        raise UpstreamUnavailable() from e


# --- entitlements ------------------------------------------------------------
@router.get("/account/entitlements")
async def read_entitlements(account: Account = Depends(current_account)):
    ent = await _store_call(
        entitlements.find_entitlement,
        account_id=account.account_id,
        email=account.email,
    )
    return {
        "entitlement": ent.model_dump(mode="json") if ent else None,
        "has_valid_access": entitlements.has_valid_access(ent),
        "has_course_access": entitlements.has_course_access(ent),
        "has_member_access": entitlements.has_member_access(ent),
    }


@router.post("/account/link")
async def link_account(account: Account = Depends(current_account)):
    linked = await _store_call(entitlements.link_entitlements_by_email, account.email, account.account_id)
    return {"linked": linked}


# --- progress ----------------------------------------------------------------
@router.get("/progress")
async def read_progress(account: Account = Depends(current_account)):
    return {"progress": await _store_call(progress.get_progress, account.account_id)}


@router.put("/progress/{lesson_id}")
async def complete_lesson(lesson_id: str, account: Account = Depends(current_account)):
    await _store_call(progress.mark_lesson_complete, account.account_id, lesson_id)
    return {"lesson_id": lesson_id, "completed": True}


@router.delete("/progress/{lesson_id}")
async def uncomplete_lesson(lesson_id: str, account: Account = Depends(current_account)):
    removed = await _store_call(progress.mark_lesson_incomplete, account.account_id, lesson_id)
    return {"lesson_id": lesson_id, "completed": False, "removed": removed}


@router.post("/progress/merge")
async def merge_progress(body: ProgressMergeBody, account: Account = Depends(current_account)):
    """Upload anonymous progress; rows the account already has are kept as they are."""
    local = {k: v.model_dump() for k, v in body.progress.items()}
    records = progress.build_merge_records(local, body.completed_lessons)
    merged = await _store_call(progress.upsert_progress_records, account.account_id, records)
    return {"merged": merged}
