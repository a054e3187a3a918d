"""
leadscout.store

Durable job and lead state.

JobStore owns the scraping_jobs table. Terminal status is single-writer:
`finish()` only updates a row whose status is not already terminal, so the
user-cancel path and the orchestrator's own completion path can race
without overwriting each other. Whichever commits first wins; the loser
gets False back and does nothing.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import delete, or_, select, update
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session

from .errors import JobNotFoundError
from .models import EnrichedLead, JobContext
from .schema import (
    COMPLETED,
    FAILED,
    LEAD_NEW,
    LEAD_QUALIFIED,
    RUNNING,
    SCHEDULED,
    TERMINAL_STATUSES,
    Lead,
    ScrapingJob,
    new_id,
    utcnow,
)

logger = logging.getLogger(__name__)


class JobStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    def create_job(
        self,
        *,
        categories: Sequence[str],
        locations: Sequence[str],
        leads_requested: int,
        country: str,
        min_rating: float = 4.0,
        team_id: Optional[str] = None,
        scheduled_for: Optional[datetime] = None,
    ) -> str:
        job_id = new_id()
        with Session(self.engine) as s, s.begin():
            s.add(
                ScrapingJob(
                    id=job_id,
                    team_id=team_id,
                    status=SCHEDULED,
                    leads_requested=int(leads_requested),
                    categories=list(categories),
                    locations=list(locations),
                    country=country,
                    min_rating=float(min_rating),
                    scheduled_for=scheduled_for or utcnow(),
                    leads_found=0,
                )
            )
        return job_id

    def get_job(self, job_id: str) -> ScrapingJob:
        with Session(self.engine) as s:
            job = s.get(ScrapingJob, job_id)
            if job is None:
                raise JobNotFoundError(f"Job {job_id} not found")
            s.expunge(job)
            return job

    def find_job(self, job_id: str) -> Optional[ScrapingJob]:
        try:
            return self.get_job(job_id)
        except JobNotFoundError:
            return None

    def mark_running(self, job_id: str) -> bool:
        """SCHEDULED (or re-run) -> RUNNING. No-op if the job is already terminal."""
        with self.engine.begin() as conn:
            res = conn.execute(
                update(ScrapingJob)
                .where(ScrapingJob.id == job_id, ScrapingJob.status.not_in(TERMINAL_STATUSES))
                .values(status=RUNNING, started_at=utcnow(), error=None)
            )
        return res.rowcount > 0

    def update_progress(self, job_id: str, leads_found: int) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                update(ScrapingJob).where(ScrapingJob.id == job_id).values(leads_found=int(leads_found))
            )

    def finish(
        self,
        job_id: str,
        status: str,
        *,
        error: Optional[str] = None,
        leads_found: Optional[int] = None,
    ) -> bool:
        """
        Write a terminal status. First writer wins.

        Returns True if this call performed the transition.
        """
        if status not in TERMINAL_STATUSES:
            raise ValueError(f"not a terminal status: {status!r}")

        values: Dict[str, Any] = {"status": status, "completed_at": utcnow(), "error": error}
        if leads_found is not None:
            values["leads_found"] = int(leads_found)

        with self.engine.begin() as conn:
            res = conn.execute(
                update(ScrapingJob)
                .where(ScrapingJob.id == job_id, ScrapingJob.status.not_in(TERMINAL_STATUSES))
                .values(**values)
            )
        won = res.rowcount > 0
        if not won:
            logger.info("terminal status already written job_id=%s attempted=%s", job_id, status)
        return won

    # --- persisted process descriptors -------------------------------

    def save_process_pids(self, job_id: str, descriptors: List[Dict[str, Any]]) -> None:
        payload = json.dumps(descriptors, sort_keys=True) if descriptors else None
        with self.engine.begin() as conn:
            conn.execute(update(ScrapingJob).where(ScrapingJob.id == job_id).values(process_pids=payload))

    def clear_process_pids(self, job_id: str) -> None:
        self.save_process_pids(job_id, [])

    def load_process_pids(self, job_id: str) -> List[Dict[str, Any]]:
        with self.engine.connect() as conn:
            raw = conn.execute(select(ScrapingJob.process_pids).where(ScrapingJob.id == job_id)).scalar()
        if not raw:
            return []
        try:
            data = json.loads(raw)
        except (TypeError, ValueError):
            logger.warning("unreadable process_pids job_id=%s", job_id)
            return []
        return [d for d in data if isinstance(d, dict) and "pid" in d]

    # --- listings ----------------------------------------------------

    def running_job_ids(self) -> List[str]:
        with self.engine.connect() as conn:
            rows = conn.execute(select(ScrapingJob.id).where(ScrapingJob.status == RUNNING)).scalars()
            return list(rows)

    def pending_job_ids(self, now: Optional[datetime] = None) -> List[str]:
        """SCHEDULED jobs whose scheduled_for has passed, oldest first."""
        cutoff = now or utcnow()
        with self.engine.connect() as conn:
            rows = conn.execute(
                select(ScrapingJob.id)
                .where(
                    ScrapingJob.status == SCHEDULED,
                    or_(ScrapingJob.scheduled_for.is_(None), ScrapingJob.scheduled_for <= cutoff),
                )
                .order_by(ScrapingJob.scheduled_for, ScrapingJob.created_at)
            ).scalars()
            return list(rows)

    def delete_job(self, job_id: str) -> bool:
        with self.engine.begin() as conn:
            res = conn.execute(delete(ScrapingJob).where(ScrapingJob.id == job_id))
        return res.rowcount > 0


def build_lead_notes(lead: EnrichedLead) -> str:
    lines = [f"Tier {lead.tier} lead (score {lead.lead_score}/100)."]
    lines.append(f"Recommended: {lead.recommended_action.replace('_', ' ')} via {lead.recommended_channel}.")

    if lead.website_quality_score is not None:
        lines.append(f"Website quality: {lead.website_quality_score}/100.")
    elif not lead.website:
        lines.append("No website.")

    if lead.services:
        lines.append("Services: " + ", ".join(lead.services[:8]))
    if lead.personalization_hooks:
        lines.append("Hooks:")
        lines.extend(f"- {h}" for h in lead.personalization_hooks[:5])
    if lead.key_talking_points:
        lines.append("Talking points:")
        lines.extend(f"- {p}" for p in lead.key_talking_points[:5])
    if lead.avoid_topics:
        lines.append("Avoid: " + ", ".join(lead.avoid_topics[:5]))
    if lead.warnings:
        lines.append("Warnings: " + "; ".join(lead.warnings[:5]))
    return "\n".join(lines)


class LeadStore:
    def __init__(self, engine: Engine):
        self.engine = engine

    def lead_exists(
        self,
        *,
        team_id: Optional[str],
        maps_url: Optional[str],
        business_name: str,
        location: str,
    ) -> bool:
        match = [(Lead.business_name == business_name) & (Lead.location == location)]
        if maps_url:
            match.append(Lead.maps_url == maps_url)
        stmt = select(Lead.id).where(or_(*match)).limit(1)
        if team_id is not None:
            stmt = stmt.where(Lead.team_id == team_id)
        with self.engine.connect() as conn:
            return conn.execute(stmt).first() is not None

    def create_lead(self, lead: EnrichedLead, ctx: JobContext) -> str:
        lead_id = new_id()
        row = Lead(
            id=lead_id,
            team_id=ctx.team_id,
            business_name=lead.business_name,
            industry=lead.industry or ctx.category,
            location=ctx.location,
            country=ctx.country,
            address=lead.address,
            phone=lead.primary_phone,
            email=lead.primary_email,
            facebook_url=lead.facebook,
            instagram_url=lead.instagram,
            twitter_url=lead.twitter,
            linkedin_url=lead.linkedin,
            maps_url=lead.maps_url,
            website=lead.website,
            website_quality=lead.website_quality_score,
            rating=lead.rating,
            review_count=lead.review_count,
            description=lead.description,
            status=LEAD_QUALIFIED if lead.tier == "A" else LEAD_NEW,
            source="google_maps",
            score=lead.lead_score,
            tier=lead.tier,
            notes=build_lead_notes(lead),
            meta={
                "job_id": ctx.job_id,
                "sources": lead.sources,
                "field_sources": lead.field_sources,
                "confidence": lead.confidence,
                "phones": lead.phones,
                "emails": lead.emails,
                "whatsapp": lead.whatsapp_number,
                "recommended_action": lead.recommended_action,
                "recommended_channel": lead.recommended_channel,
                "urgency": lead.urgency,
            },
        )
        with Session(self.engine) as s, s.begin():
            s.add(row)
        return lead_id


__all__ = ["JobStore", "LeadStore", "build_lead_notes", "COMPLETED", "FAILED", "RUNNING", "SCHEDULED"]
