from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Index, Integer, String, Text, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

JSONType = JSON().with_variant(JSONB(), "postgresql")

# job statuses
SCHEDULED = "SCHEDULED"
RUNNING = "RUNNING"
COMPLETED = "COMPLETED"
FAILED = "FAILED"

TERMINAL_STATUSES = (COMPLETED, FAILED)

# lead statuses
LEAD_NEW = "NEW"
LEAD_QUALIFIED = "QUALIFIED"


def utcnow():
    return datetime.now(tz=timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


class Base(DeclarativeBase):
    pass


class ScrapingJob(Base):
    __tablename__ = "scraping_jobs"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    team_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(20), default=SCHEDULED, index=True)
    leads_requested: Mapped[int] = mapped_column(Integer, default=10)
    categories: Mapped[List[str]] = mapped_column(JSONType, default=list)
    locations: Mapped[List[str]] = mapped_column(JSONType, default=list)
    country: Mapped[str] = mapped_column(String(8), default="ZA")
    min_rating: Mapped[float] = mapped_column(Float, default=4.0)
    scheduled_for: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    leads_found: Mapped[int] = mapped_column(Integer, default=0)
    error: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    # JSON text of tracked process descriptors; survives a host restart
    process_pids: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())


class AnalyzedBusiness(Base):
    __tablename__ = "analyzed_businesses"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    identity_key: Mapped[str] = mapped_column(String(700), unique=True)
    team_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    business_name: Mapped[str] = mapped_column(String(300))
    location: Mapped[str] = mapped_column(String(200))
    country: Mapped[str] = mapped_column(String(8))
    maps_url: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    website: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    rating: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    review_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    category: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    website_quality: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    is_good_prospect: Mapped[bool] = mapped_column(Boolean, default=False)
    skip_reason: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    was_converted: Mapped[bool] = mapped_column(Boolean, default=False)
    lead_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("leads.id", ondelete="SET NULL"), nullable=True)
    analyzed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (
        Index("ix_analyzed_businesses_name_loc", "business_name", "location", "country"),
    )


class Lead(Base):
    __tablename__ = "leads"
    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    team_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    business_name: Mapped[str] = mapped_column(String(300))
    industry: Mapped[Optional[str]] = mapped_column(String(120), nullable=True)
    location: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    country: Mapped[Optional[str]] = mapped_column(String(8), nullable=True)
    address: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    phone: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    email: Mapped[Optional[str]] = mapped_column(String(320), nullable=True)
    facebook_url: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    instagram_url: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    twitter_url: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    linkedin_url: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    maps_url: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    website: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    website_quality: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    rating: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    review_count: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    status: Mapped[str] = mapped_column(String(30), default=LEAD_NEW)
    source: Mapped[str] = mapped_column(String(60), default="google_maps")
    score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    tier: Mapped[Optional[str]] = mapped_column(String(1), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(Text(), nullable=True)
    meta: Mapped[Optional[Dict[str, Any]]] = mapped_column(JSONType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, server_default=func.now())
