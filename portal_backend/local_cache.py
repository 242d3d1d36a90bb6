# portal_backend/local_cache.py
"""
Browser-side key/value cache.

`LocalCacheStore` mirrors the localStorage surface (string values only);
the helper functions below hold the key scheme and the JSON shapes. A value
that no longer parses is deleted and read as absent.
"""
from __future__ import annotations

import json
import os
import threading
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from .log import get_logger
from .schemas import AccessToken

log = get_logger("local_cache")

# === keys ====================================================================
TOKEN_KEY = "tms_access_token"
PROGRESS_KEY = "tms_lesson_progress"
LEGACY_COMPLETED_KEY = "tms_completed_lessons"
LEGACY_ACCESS_KEY = "tms_access_granted"
LEGACY_TIER_KEY = "tms_access_tier"
FAVORITES_KEY = "tms_favorites"
LAST_LESSON_KEY = "tms_last_lesson"
PREFERENCES_KEY = "tms_preferences"

DEFAULT_PREFERENCES = {"reducedMotion": False, "compactMode": False}
TOTAL_LESSONS = 24


def now_ms() -> int:
    return int(time.time() * 1000)


# === stores ==================================================================
class LocalCacheStore(ABC):
    @abstractmethod
    def get_item(self, key: str) -> Optional[str]: ...

    @abstractmethod
    def set_item(self, key: str, value: str) -> None: ...

    @abstractmethod
    def remove_item(self, key: str) -> None: ...


class MemoryCacheStore(LocalCacheStore):
    def __init__(self, initial: Optional[Dict[str, str]] = None):
        self._data: Dict[str, str] = dict(initial or {})

    def get_item(self, key: str) -> Optional[str]:
        return self._data.get(key)

    def set_item(self, key: str, value: str) -> None:
        self._data[key] = value

    def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    def keys(self) -> List[str]:
        return list(self._data)


class JsonFileCacheStore(LocalCacheStore):
    """All keys in one JSON object on disk; rewritten atomically on every change."""

    def __init__(self, path: str):
        self.path = path
        self._lock = threading.Lock()

    def _load(self) -> Dict[str, str]:
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except FileNotFoundError:
            return {}
        except ValueError:
            log.warning("cache_file_corrupt", path=self.path)
            return {}
        return data if isinstance(data, dict) else {}

    def _save(self, data: Dict[str, str]) -> None:
        tmp = f"{self.path}.tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(data, f)
        os.replace(tmp, self.path)

    def get_item(self, key: str) -> Optional[str]:
        with self._lock:
            return self._load().get(key)

    def set_item(self, key: str, value: str) -> None:
        with self._lock:
            data = self._load()
            data[key] = value
            self._save(data)

    def remove_item(self, key: str) -> None:
        with self._lock:
            data = self._load()
            if key in data:
                del data[key]
                self._save(data)


# === JSON helpers ============================================================
def read_json(store: LocalCacheStore, key: str, default: Any = None) -> Any:
    raw = store.get_item(key)
    if raw is None:
        return default
    try:
        return json.loads(raw)
    except ValueError:
        log.warning("cache_entry_corrupt", key=key)
        store.remove_item(key)
        return default


def write_json(store: LocalCacheStore, key: str, value: Any) -> None:
    store.set_item(key, json.dumps(value))


# === access token ============================================================
def get_access_token(store: LocalCacheStore, now: Optional[int] = None) -> Optional[AccessToken]:
    """
    Stored token, or None once expired or unreadable (both get deleted here).
    A token without an expiry counts as expired.
    """
    data = read_json(store, TOKEN_KEY)
    if data is None:
        return None
    try:
        token = AccessToken.model_validate(data)
    except ValidationError:
        log.warning("cache_entry_corrupt", key=TOKEN_KEY)
        clear_access_token(store)
        return None

    now = now_ms() if now is None else now
    if token.expires_at is None or now > token.expires_at:
        clear_access_token(store)
        return None
    return token


def set_access_token(store: LocalCacheStore, token: AccessToken) -> None:
    write_json(store, TOKEN_KEY, token.model_dump())


def clear_access_token(store: LocalCacheStore) -> None:
    store.remove_item(TOKEN_KEY)


# === legacy flags ============================================================
def legacy_access_granted(store: LocalCacheStore) -> bool:
    return store.get_item(LEGACY_ACCESS_KEY) == "true"


def legacy_access_tier(store: LocalCacheStore) -> Optional[str]:
    return store.get_item(LEGACY_TIER_KEY)


def clear_legacy_access(store: LocalCacheStore) -> None:
    store.remove_item(LEGACY_ACCESS_KEY)
    store.remove_item(LEGACY_TIER_KEY)


# === lesson progress =========================================================
def get_local_progress(store: LocalCacheStore) -> Dict[str, Dict[str, Any]]:
    data = read_json(store, PROGRESS_KEY, {})
    if not isinstance(data, dict):
        store.remove_item(PROGRESS_KEY)
        return {}
    # entries that are not objects read as absent
    return {lesson_id: entry for lesson_id, entry in data.items() if isinstance(entry, dict)}


def save_local_progress(store: LocalCacheStore, progress: Dict[str, Dict[str, Any]]) -> None:
    write_json(store, PROGRESS_KEY, progress)


def get_legacy_completed(store: LocalCacheStore) -> List[str]:
    data = read_json(store, LEGACY_COMPLETED_KEY, [])
    if not isinstance(data, list):
        store.remove_item(LEGACY_COMPLETED_KEY)
        return []
    return [str(x) for x in data]


def clear_local_progress(store: LocalCacheStore) -> None:
    store.remove_item(PROGRESS_KEY)
    store.remove_item(LEGACY_COMPLETED_KEY)


def mark_lesson_complete_local(store: LocalCacheStore, lesson_id: str, now: Optional[int] = None) -> None:
    progress = get_local_progress(store)
    progress[lesson_id] = {"completed": True, "completedAt": now_ms() if now is None else now}
    save_local_progress(store, progress)


def mark_lesson_incomplete_local(store: LocalCacheStore, lesson_id: str) -> None:
    progress = get_local_progress(store)
    progress.pop(lesson_id, None)
    save_local_progress(store, progress)


def is_lesson_complete_local(store: LocalCacheStore, lesson_id: str) -> bool:
    return get_local_progress(store).get(lesson_id, {}).get("completed") is True


def completed_count(progress: Dict[str, Dict[str, Any]]) -> int:
    return sum(1 for entry in progress.values() if isinstance(entry, dict) and entry.get("completed") is True)


def progress_percent(progress: Dict[str, Dict[str, Any]], total: int = TOTAL_LESSONS) -> int:
    if total <= 0:
        return 0
    return round(completed_count(progress) / total * 100)


# === favorites / last lesson / preferences ===================================
def get_favorites(store: LocalCacheStore) -> List[Dict[str, str]]:
    data = read_json(store, FAVORITES_KEY, [])
    return data if isinstance(data, list) else []


def toggle_favorite(store: LocalCacheStore, item_id: str, item_type: str) -> bool:
    """Returns True when the item is a favorite after the call."""
    favorites = get_favorites(store)
    kept = [f for f in favorites if not (f.get("id") == item_id and f.get("type") == item_type)]
    added = len(kept) == len(favorites)
    if added:
        kept.append({"id": item_id, "type": item_type})
    write_json(store, FAVORITES_KEY, kept)
    return added


def is_favorite(store: LocalCacheStore, item_id: str, item_type: str) -> bool:
    return any(f.get("id") == item_id and f.get("type") == item_type for f in get_favorites(store))


def set_last_lesson(store: LocalCacheStore, lesson_id: str, title: str, now: Optional[int] = None) -> None:
    write_json(store, LAST_LESSON_KEY, {
        "id": lesson_id,
        "title": title,
        "timestamp": now_ms() if now is None else now,
    })


def get_last_lesson(store: LocalCacheStore) -> Optional[Dict[str, Any]]:
    return read_json(store, LAST_LESSON_KEY)


def get_preferences(store: LocalCacheStore) -> Dict[str, bool]:
    data = read_json(store, PREFERENCES_KEY)
    if not isinstance(data, dict):
        return dict(DEFAULT_PREFERENCES)
    return {**DEFAULT_PREFERENCES, **data}


def save_preferences(store: LocalCacheStore, prefs: Dict[str, bool]) -> None:
    write_json(store, PREFERENCES_KEY, prefs)


# === export / import =========================================================
def export_snapshot(store: LocalCacheStore) -> Dict[str, Any]:
    return {
        "progress": get_local_progress(store),
        "favorites": get_favorites(store),
        "preferences": get_preferences(store),
        "exportedAt": datetime.now(timezone.utc).isoformat(),
    }


def import_snapshot(store: LocalCacheStore, data: Dict[str, Any]) -> None:
    """Only keys present in `data` are replaced."""
    if data.get("progress"):
        save_local_progress(store, data["progress"])
    if data.get("favorites"):
        write_json(store, FAVORITES_KEY, data["favorites"])
    if data.get("preferences"):
        save_preferences(store, data["preferences"])
