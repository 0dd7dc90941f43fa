"""
Centralised engine settings loaded from environment / .env file.
"""
from __future__ import annotations

from pathlib import Path
from functools import lru_cache

from pydantic_settings import BaseSettings
from dotenv import load_dotenv

# Load .env from project root (two levels up from this file)
_ENV_PATH = Path(__file__).resolve().parents[2] / ".env"
load_dotenv(_ENV_PATH)

_DEFAULT_CATALOG = Path(__file__).resolve().parents[2] / "catalog" / "query_catalog.yml"


class Settings(BaseSettings):
    # ── Catalog ──────────────────────────────────────────
    catalog_path: str = str(_DEFAULT_CATALOG)

    # ── Query cache ──────────────────────────────────────
    cache_max_size: int = 256
    entity_cache_ttl_seconds: float = 600.0   # topology changes rarely
    metric_cache_ttl_seconds: float = 60.0    # live throughput / health

    # ── Upstream execution ───────────────────────────────
    upstream_max_attempts: int = 3
    upstream_backoff_seconds: float = 0.5
    upstream_backoff_max_seconds: float = 8.0

    # ── Pipeline ─────────────────────────────────────────
    display_limit: int = 100
    poll_interval_seconds: float = 30.0

    # ── Preferences ──────────────────────────────────────
    preferences_database_url: str = "sqlite:///./kafka_health_prefs.db"

    # ── App ──────────────────────────────────────────────
    log_level: str = "INFO"
    # per-module overrides, e.g. "engine.cache=DEBUG,query.builder=WARNING"
    log_levels: str = ""

    def ttl_for(self, data_class: str) -> float:
        """TTL in seconds for a catalog data class (``entity`` | ``metric``)."""
        if data_class == "entity":
            return self.entity_cache_ttl_seconds
        return self.metric_cache_ttl_seconds

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


@lru_cache
def get_settings() -> Settings:
    return Settings()
