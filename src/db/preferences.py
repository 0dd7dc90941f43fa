"""
Filter preference persistence -- remembers the last dashboard selection per
user/view key so a returning user lands on the same provider, account and
filters.

The SQL table is created automatically on first use via ``ensure_table()``.
"""
from __future__ import annotations

import datetime
import json
from typing import Any, Protocol

from pydantic import ValidationError
from sqlalchemy import text
from sqlalchemy.engine import Engine

from src.core.logging import get_logger
from src.db.connection import get_engine
from src.filters.spec import Selection

logger = get_logger(__name__)

_TABLE = "filter_preferences"

_CREATE_SQL = f"""
CREATE TABLE IF NOT EXISTS {_TABLE} (
    pref_key    VARCHAR(200) PRIMARY KEY,
    value       TEXT NOT NULL,          -- JSON document
    updated_at  VARCHAR(40) NOT NULL    -- ISO-8601 UTC
);
"""

_UPSERT_SQL = f"""
INSERT INTO {_TABLE} (pref_key, value, updated_at)
VALUES (:pref_key, :value, :updated_at)
ON CONFLICT (pref_key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
"""


class PreferenceStore(Protocol):
    def load(self, key: str) -> Any | None: ...

    def save(self, key: str, value: Any) -> None: ...


class MemoryPreferenceStore:
    """Process-local store, for tests and single-session use."""

    def __init__(self):
        self._data: dict[str, str] = {}

    def load(self, key: str) -> Any | None:
        raw = self._data.get(key)
        return json.loads(raw) if raw is not None else None

    def save(self, key: str, value: Any) -> None:
        self._data[key] = json.dumps(value)


class SqlPreferenceStore:
    def __init__(self, engine: Engine | None = None):
        self._engine = engine or get_engine()
        self._ready = False

    def ensure_table(self) -> None:
        """Create the preferences table if it doesn't exist."""
        with self._engine.connect() as conn:
            conn.execute(text(_CREATE_SQL))
            conn.commit()
        self._ready = True
        logger.info("Preference table '%s' ensured", _TABLE)

    def load(self, key: str) -> Any | None:
        if not self._ready:
            self.ensure_table()
        with self._engine.connect() as conn:
            row = conn.execute(
                text(f"SELECT value FROM {_TABLE} WHERE pref_key = :pref_key"),
                {"pref_key": key},
            ).fetchone()
        return json.loads(row[0]) if row is not None else None

    def save(self, key: str, value: Any) -> None:
        if not self._ready:
            self.ensure_table()
        params = {
            "pref_key": key,
            "value": json.dumps(value),
            "updated_at": datetime.datetime.now(datetime.timezone.utc).isoformat(),
        }
        with self._engine.connect() as conn:
            conn.execute(text(_UPSERT_SQL), params)
            conn.commit()
        logger.debug("Preference saved: key=%s", key)


class FilterPreferences:
    """Saves and restores a dashboard ``Selection``."""

    def __init__(self, store: PreferenceStore):
        self._store = store

    @staticmethod
    def _key(user: str, view: str) -> str:
        return f"{user}:{view}"

    def save_selection(self, user: str, view: str, selection: Selection) -> None:
        self._store.save(self._key(user, view), selection.model_dump(mode="json", by_alias=True))

    def load_selection(self, user: str, view: str) -> Selection | None:
        """Last saved selection, or None if absent or no longer valid."""
        raw = self._store.load(self._key(user, view))
        if raw is None:
            return None
        try:
            return Selection.model_validate(raw)
        except ValidationError:
            logger.warning("Discarding unreadable preference for %s/%s", user, view)
            return None
