"""
leadscout.history

DedupHistory: what we already decided about a business.

Identity is the listing URL when the search source gave us one, otherwise
`manual_<name>_<location>_<country>`. Writes are upserts on that key, so
recording the same business twice updates the row instead of adding one.

Reads degrade to "not seen" on any store error; a lookup failure costs at
most one repeated analysis.
"""

from __future__ import annotations

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.engine import Engine, Row

from .models import Candidate, HistoryCheck, JobContext
from .schema import AnalyzedBusiness, new_id, utcnow

logger = logging.getLogger(__name__)


def identity_key(maps_url: Optional[str], name: str, location: str, country: str) -> str:
    url = (maps_url or "").strip()
    if url:
        return url
    return f"manual_{(name or '').strip()}_{(location or '').strip()}_{(country or '').strip()}"


class DedupHistory:
    def __init__(self, engine: Engine):
        self.engine = engine

    def check(self, candidate: Candidate, location: str, country: str) -> HistoryCheck:
        try:
            row = self._lookup(candidate, location, country)
        except Exception:
            logger.exception("history lookup failed for %r; treating as unseen", candidate.name)
            return HistoryCheck(seen=False)

        if row is None:
            return HistoryCheck(seen=False)

        return HistoryCheck(
            seen=True,
            is_good_prospect=bool(row.is_good_prospect),
            skip_reason=row.skip_reason,
            website_quality=row.website_quality,
            analyzed_at=row.analyzed_at,
            was_converted=bool(row.was_converted),
            lead_id=row.lead_id,
        )

    def _lookup(self, candidate: Candidate, location: str, country: str) -> Optional[Row]:
        with self.engine.connect() as conn:
            if candidate.maps_url:
                row = conn.execute(
                    select(AnalyzedBusiness).where(AnalyzedBusiness.maps_url == candidate.maps_url).limit(1)
                ).first()
                if row is not None:
                    return row

            return conn.execute(
                select(AnalyzedBusiness)
                .where(
                    AnalyzedBusiness.business_name == candidate.name,
                    AnalyzedBusiness.location == location,
                    AnalyzedBusiness.country == country,
                )
                .order_by(AnalyzedBusiness.analyzed_at.desc())
                .limit(1)
            ).first()

    def record(
        self,
        candidate: Candidate,
        ctx: JobContext,
        *,
        is_good_prospect: bool,
        skip_reason: Optional[str] = None,
        website_quality: Optional[int] = None,
        lead_id: Optional[str] = None,
    ) -> bool:
        """Upsert the verdict for this business. Returns False if the write failed."""
        now = utcnow()
        key = identity_key(candidate.maps_url, candidate.name, ctx.location, ctx.country)
        values = {
            "id": new_id(),
            "identity_key": key,
            "team_id": ctx.team_id,
            "business_name": candidate.name,
            "location": ctx.location,
            "country": ctx.country,
            "maps_url": candidate.maps_url,
            "phone": candidate.phone,
            "website": candidate.website,
            "address": candidate.address,
            "rating": candidate.rating,
            "review_count": candidate.review_count,
            "category": candidate.category or ctx.category,
            "website_quality": website_quality,
            "is_good_prospect": bool(is_good_prospect),
            "skip_reason": skip_reason,
            "was_converted": lead_id is not None,
            "lead_id": lead_id,
            "analyzed_at": now,
            "updated_at": now,
        }
        on_update = {
            k: v
            for k, v in values.items()
            if k not in ("id", "identity_key", "team_id", "business_name", "location", "country")
        }

        insert = postgresql.insert if self.engine.dialect.name == "postgresql" else sqlite.insert
        stmt = insert(AnalyzedBusiness).values(**values)
        stmt = stmt.on_conflict_do_update(index_elements=["identity_key"], set_=on_update)

        try:
            with self.engine.begin() as conn:
                conn.execute(stmt)
        except Exception:
            logger.exception("history upsert failed key=%s", key)
            return False
        return True
