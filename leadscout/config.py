"""
Configuration for leadscout.

This module controls:
- Default search space (categories, per-country cities).
- Operational knobs (retry ceilings, delays, thresholds) read from env.

NOTE:
Constants that describe the product (default categories, country defaults)
live here as plain module values. Knobs that operators change per deploy
are env-driven and collected into `Settings.from_env()`, which entry points
build once and inject into components.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Dict, List, Optional


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "y", "on")


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return int(raw.strip())
    except Exception:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None:
        return default
    try:
        return float(raw.strip())
    except Exception:
        return default


def _env_str(name: str, default: Optional[str] = None) -> Optional[str]:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return raw.strip()


# Opaque tag appended to every browser we launch. The browser ignores
# unknown flags; we use it to find our processes again after a restart.
TOOL_TAG = "leadscout"

DEFAULT_CATEGORIES: List[str] = [
    "restaurant",
    "salon",
    "plumber",
    "electrician",
    "mechanic",
    "dentist",
    "bakery",
]

DEFAULT_CITIES: Dict[str, List[str]] = {
    "ZA": ["Johannesburg", "Cape Town", "Durban", "Pretoria"],
    "US": ["Austin", "Denver", "Tampa"],
    "GB": ["Manchester", "Leeds", "Bristol"],
}

PAGESPEED_API_URL = "https://www.googleapis.com/pagespeedonline/v5/runPagespeed"

ORACLE_DEFAULT_MODEL = "gpt-4.1-mini"


@dataclass
class Settings:
    # quality gate
    quality_threshold: int = 60
    quality_max_attempts: int = 3
    quality_initial_delay_s: float = 0.5
    quality_backoff_s: float = 30.0
    quality_timeout_s: float = 60.0
    quality_cache_ttl_s: float = 24 * 60 * 60
    pagespeed_api_key: Optional[str] = None

    # orchestration pacing
    scrape_delay_ms: int = 500
    lead_delay_s: float = 1.0
    search_batch: int = 3
    process_scan_delay_s: float = 1.0

    # job logs
    job_log_max: int = 500

    # oracle
    oracle_model: str = ORACLE_DEFAULT_MODEL

    # browser
    headless: bool = True

    # job defaults
    default_country: str = "ZA"
    min_rating: float = 4.0

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            quality_threshold=_env_int("LEADSCOUT_QUALITY_THRESHOLD", 60),
            quality_max_attempts=max(1, _env_int("LEADSCOUT_QUALITY_MAX_ATTEMPTS", 3)),
            quality_initial_delay_s=_env_float("LEADSCOUT_QUALITY_INITIAL_DELAY_S", 0.5),
            quality_backoff_s=_env_float("LEADSCOUT_QUALITY_BACKOFF_S", 30.0),
            quality_timeout_s=_env_float("LEADSCOUT_QUALITY_TIMEOUT_S", 60.0),
            quality_cache_ttl_s=_env_float("LEADSCOUT_QUALITY_CACHE_TTL_S", 24 * 60 * 60),
            pagespeed_api_key=_env_str("PAGESPEED_API_KEY"),
            scrape_delay_ms=_env_int("LEADSCOUT_SCRAPE_DELAY_MS", 500),
            lead_delay_s=_env_float("LEADSCOUT_LEAD_DELAY_S", 1.0),
            search_batch=max(1, _env_int("LEADSCOUT_SEARCH_BATCH", 3)),
            process_scan_delay_s=_env_float("LEADSCOUT_PROCESS_SCAN_DELAY_S", 1.0),
            job_log_max=max(1, _env_int("LEADSCOUT_JOB_LOG_MAX", 500)),
            oracle_model=_env_str("LEADSCOUT_ORACLE_MODEL", ORACLE_DEFAULT_MODEL) or ORACLE_DEFAULT_MODEL,
            headless=_env_bool("LEADSCOUT_HEADLESS", True),
            default_country=(_env_str("LEADSCOUT_DEFAULT_COUNTRY", "ZA") or "ZA").upper(),
            min_rating=_env_float("LEADSCOUT_MIN_RATING", 4.0),
        )
