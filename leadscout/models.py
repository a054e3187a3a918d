from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


@dataclass
class Candidate:
    """
    Raw business record as returned by the search source.

    Nothing here has been validated or scored yet.
    """
    name: str
    maps_url: Optional[str] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    website: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    category: Optional[str] = None


@dataclass
class JobContext:
    job_id: str
    team_id: Optional[str]
    category: str
    location: str
    country: str


@dataclass
class QualityResult:
    url: str
    score: int
    performance: int = 0
    accessibility: int = 0
    best_practices: int = 0
    seo: int = 0
    issues: List[str] = field(default_factory=list)
    error: Optional[str] = None
    cached: bool = False


@dataclass
class ProspectCheck:
    is_good_prospect: bool
    reason: str
    quality_score: Optional[int] = None
    details: str = ""


@dataclass
class HistoryCheck:
    seen: bool
    is_good_prospect: bool = False
    skip_reason: Optional[str] = None
    website_quality: Optional[int] = None
    analyzed_at: Optional[datetime] = None
    was_converted: bool = False
    lead_id: Optional[str] = None


@dataclass
class DataSource:
    """One typed, provenance-tagged bag of facts about a business."""
    source: str
    confidence: int
    data: Dict[str, Any]
    raw_text: Optional[str] = None


@dataclass
class EnrichedLead:
    business_name: str
    industry: Optional[str] = None
    location: Optional[str] = None
    address: Optional[str] = None
    maps_url: Optional[str] = None
    website: Optional[str] = None
    website_quality_score: Optional[int] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None

    phones: List[str] = field(default_factory=list)
    emails: List[str] = field(default_factory=list)
    whatsapp_number: Optional[str] = None
    facebook: Optional[str] = None
    instagram: Optional[str] = None
    twitter: Optional[str] = None
    linkedin: Optional[str] = None

    description: Optional[str] = None
    services: List[str] = field(default_factory=list)
    target_market: Optional[str] = None
    unique_selling_points: List[str] = field(default_factory=list)

    lead_score: int = 0
    tier: str = "D"
    is_qualified: bool = False
    recommended_action: str = "nurture"
    recommended_channel: str = "phone"
    urgency: str = "medium"
    personalization_hooks: List[str] = field(default_factory=list)
    key_talking_points: List[str] = field(default_factory=list)
    avoid_topics: List[str] = field(default_factory=list)

    sources: List[str] = field(default_factory=list)
    field_sources: Dict[str, List[str]] = field(default_factory=dict)
    confidence: int = 0
    reasoning: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def primary_phone(self) -> Optional[str]:
        return self.phones[0] if self.phones else None

    @property
    def primary_email(self) -> Optional[str]:
        return self.emails[0] if self.emails else None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
