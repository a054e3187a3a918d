"""
leadscout.db

Single source of truth for database connectivity.

Contracts this module provides:
- get_engine() -> shared SQLAlchemy Engine (built on first use)
- init_db(engine) -> create tables for leadscout.schema

Notes:
- DATABASE_URL is expected to be provided via environment (load .env first).
- We normalize common scheme/driver variants to reduce footguns.
- Nothing connects at import time; stores take an injected Engine so tests
  can hand in an in-memory SQLite engine.
"""

from __future__ import annotations

import os
from typing import Optional

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine


def _normalize_database_url(raw: str) -> str:
    """
    Normalize DATABASE_URL variants to something SQLAlchemy can reliably use.

    Normalizations:
    - postgres://  -> postgresql://
    - postgresql+psycopg:// -> postgresql+psycopg2://
    """
    url = (raw or "").strip()

    if url.startswith("postgres://"):
        url = "postgresql://" + url[len("postgres://") :]

    if url.startswith("postgresql+psycopg://"):
        url = "postgresql+psycopg2://" + url[len("postgresql+psycopg://") :]

    return url


_engine: Optional[Engine] = None


def get_engine() -> Engine:
    """Return the shared engine, creating it from DATABASE_URL on first call."""
    global _engine
    if _engine is None:
        raw = os.environ.get("DATABASE_URL", "")
        if not raw:
            # Keep this loud and explicit.
            raise RuntimeError(
                "DATABASE_URL is not set in environment. "
                "Load your .env (or equivalent) before running leadscout jobs."
            )
        _engine = create_engine(_normalize_database_url(raw), future=True, pool_pre_ping=True)
    return _engine


def init_db(engine: Optional[Engine] = None) -> Engine:
    """Create leadscout tables if missing. Returns the engine used."""
    from .schema import Base

    eng = engine or get_engine()
    Base.metadata.create_all(eng)
    return eng
