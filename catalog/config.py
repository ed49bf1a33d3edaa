# catalog/config.py
"""Environment-driven settings.

Values are read once at process start (after loading `.env`) and handed to the
components that need them; nothing reads the environment per call.
"""
import json
import os
from dataclasses import dataclass, field
from typing import Dict, Optional
from dotenv import load_dotenv

load_dotenv()

DEFAULT_TIER_LIMITS = {"FREE": 5, "BASIC": 20, "PREMIUM": 100, "ENTERPRISE": -1}


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return int(raw)


def _tier_limits_env() -> Dict[str, int]:
    raw = os.getenv("LISTING_TIER_LIMITS")
    if not raw:
        return dict(DEFAULT_TIER_LIMITS)
    parsed = json.loads(raw)
    return {str(k).upper(): int(v) for k, v in parsed.items()}


def normalize_db_url(url: str) -> str:
    # SQLAlchemy 2.x doesn't accept 'postgres://'
    if url.startswith("postgres://"):
        return url.replace("postgres://", "postgresql+psycopg2://", 1)
    return url


@dataclass
class Settings:
    database_url: Optional[str] = None
    db_pool_size: int = 5
    db_max_overflow: int = 10
    redis_url: Optional[str] = None
    cache_ttl_seconds: int = 300
    cache_max_entries: int = 10000
    view_dedup_window_seconds: int = 3600
    view_retention_days: int = 30
    view_prune_interval_minutes: int = 60
    tier_limits: Dict[str, int] = field(default_factory=lambda: dict(DEFAULT_TIER_LIMITS))
    default_tier: str = "FREE"
    featured_default_days: int = 30
    recent_inquiries_limit: int = 5
    side_effect_tries: int = 3
    side_effect_delay_seconds: float = 1.0
    background_side_effects: bool = True

    @classmethod
    def from_env(cls) -> "Settings":
        url = os.getenv("POSTGRES_URL")
        return cls(
            database_url=normalize_db_url(url) if url else None,
            db_pool_size=_int_env("DB_POOL_SIZE", 5),
            db_max_overflow=_int_env("DB_MAX_OVERFLOW", 10),
            redis_url=os.getenv("REDIS_URL") or None,
            cache_ttl_seconds=_int_env("CACHE_TTL_SECONDS", 300),
            cache_max_entries=_int_env("CACHE_MAX_ENTRIES", 10000),
            view_dedup_window_seconds=_int_env("VIEW_DEDUP_WINDOW_SECONDS", 3600),
            view_retention_days=_int_env("VIEW_RETENTION_DAYS", 30),
            view_prune_interval_minutes=_int_env("VIEW_PRUNE_INTERVAL_MINUTES", 60),
            tier_limits=_tier_limits_env(),
            default_tier=os.getenv("DEFAULT_TIER", "FREE").upper(),
            featured_default_days=_int_env("FEATURED_DEFAULT_DAYS", 30),
            recent_inquiries_limit=_int_env("RECENT_INQUIRIES_LIMIT", 5),
            side_effect_tries=_int_env("SIDE_EFFECT_TRIES", 3),
            side_effect_delay_seconds=float(os.getenv("SIDE_EFFECT_DELAY_SECONDS", "1")),
            background_side_effects=os.getenv("BACKGROUND_SIDE_EFFECTS", "1") == "1",
        )

    def require_database_url(self) -> str:
        if not self.database_url:
            raise RuntimeError("POSTGRES_URL not set")
        return self.database_url
