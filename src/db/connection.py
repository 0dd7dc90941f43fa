"""SQLAlchemy engine for the preference store.

One shared engine per database URL; defaults to a local SQLite file.
"""
from __future__ import annotations

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine

from src.core.config import get_settings
from src.core.logging import get_logger

logger = get_logger(__name__)

_engines: dict[str, Engine] = {}


def get_engine(url: str | None = None) -> Engine:
    """Return the shared SQLAlchemy engine for *url* (lazy-created, cached)."""
    url = url or get_settings().preferences_database_url
    engine = _engines.get(url)
    if engine is None:
        kwargs: dict = {"pool_pre_ping": True, "echo": False}
        if url.startswith("sqlite"):
            kwargs["connect_args"] = {"check_same_thread": False}
        engine = create_engine(url, **kwargs)
        _engines[url] = engine
        logger.info("DB engine created  dialect=%s", engine.dialect.name)
    return engine


def dispose_engines() -> None:
    """Close every pooled connection and forget the cached engines."""
    for engine in _engines.values():
        engine.dispose()
    _engines.clear()
