"""
Logging for the query engine.

Every module logger hangs off the ``src`` logger, which owns the single
stdout handler. Levels come from ``LOG_LEVEL`` with optional per-module
overrides in ``LOG_LEVELS`` (``engine.cache=DEBUG,query.builder=WARNING``).
"""
from __future__ import annotations

import logging
import sys

from src.core.config import get_settings

_ROOT = "src"
_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"


def _level(name: str) -> int:
    return getattr(logging, name.strip().upper(), logging.INFO)


def parse_levels(raw: str) -> dict[str, int]:
    """Parse ``module=LEVEL`` pairs; module names are relative to ``src``."""
    levels: dict[str, int] = {}
    for pair in raw.split(","):
        module, sep, level = pair.partition("=")
        if not sep or not module.strip():
            continue
        module = module.strip()
        if not module.startswith(_ROOT + "."):
            module = f"{_ROOT}.{module}"
        levels[module] = _level(level)
    return levels


def _configure_root(settings) -> logging.Logger:
    root = logging.getLogger(_ROOT)
    if not root.handlers:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(logging.Formatter(_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
        root.addHandler(handler)
    root.setLevel(_level(settings.log_level))
    return root


def get_logger(name: str) -> logging.Logger:
    settings = get_settings()
    _configure_root(settings)
    logger = logging.getLogger(name)
    override = parse_levels(settings.log_levels).get(name)
    if override is not None:
        logger.setLevel(override)
    return logger
