from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .analyzer import BusinessAnalysis
from .fields import choice, clamp_score, opt_str, str_list

SYSTEM_PROMPT = """You qualify small-business leads for a web design agency.
Tiers: A (85-100) no website, 4+ stars, 20+ reviews, phone -> contact immediately;
B (70-84) DIY/poor website or good reviews without website -> contact soon;
C (50-69) basic website or mixed signals -> nurture; D (0-49) good website or weak business -> skip.
Return ONLY one JSON object, no markdown:
{
  "isQualified": true, "qualificationScore": 0, "qualificationTier": "C",
  "scores": {"businessPotential": 0, "websiteNeed": 0, "contactability": 0, "conversionLikelihood": 0},
  "strengths": [], "weaknesses": [], "opportunities": [], "threats": [],
  "recommendedAction": "nurture", "recommendedChannel": "phone", "urgency": "medium",
  "keyTalkingPoints": [], "avoidTopics": [], "bestTimeToContact": "", "reasoning": ""
}"""

TIERS = ("A", "B", "C", "D")
ACTIONS = ("contact_immediately", "contact_soon", "nurture", "skip")
CHANNELS = ("whatsapp", "email", "phone", "facebook")
URGENCIES = ("high", "medium", "low")


@dataclass
class QualificationInput:
    business_name: str
    industry: str
    location: str
    rating: Optional[float] = None
    review_count: Optional[int] = None
    has_website: bool = False
    website_url: Optional[str] = None
    website_quality_score: Optional[int] = None
    phones: List[str] = field(default_factory=list)
    emails: List[str] = field(default_factory=list)
    has_facebook: bool = False
    has_instagram: bool = False
    analysis: Optional[BusinessAnalysis] = None


@dataclass
class Qualification:
    is_qualified: bool
    score: int
    tier: str
    business_potential: int = 50
    website_need: int = 50
    contactability: int = 50
    conversion_likelihood: int = 50
    strengths: List[str] = field(default_factory=list)
    weaknesses: List[str] = field(default_factory=list)
    opportunities: List[str] = field(default_factory=list)
    threats: List[str] = field(default_factory=list)
    recommended_action: str = "nurture"
    recommended_channel: str = "phone"
    urgency: str = "medium"
    key_talking_points: List[str] = field(default_factory=list)
    avoid_topics: List[str] = field(default_factory=list)
    best_time_to_contact: Optional[str] = None
    reasoning: str = ""


def build_prompt(q: QualificationInput) -> str:
    lines = [
        f"Business: {q.business_name}",
        f"Industry: {q.industry}",
        f"Location: {q.location}",
        f"Google rating: {q.rating if q.rating is not None else 'unknown'} ({q.review_count or 0} reviews)",
        f"Website: {q.website_url if q.has_website else 'none'}",
    ]
    if q.website_quality_score is not None:
        lines.append(f"Website quality score: {q.website_quality_score}/100")
    lines.append(f"Phones: {', '.join(q.phones) or 'none'}")
    lines.append(f"Emails: {', '.join(q.emails) or 'none'}")
    lines.append(f"Facebook: {'yes' if q.has_facebook else 'no'}, Instagram: {'yes' if q.has_instagram else 'no'}")
    if q.analysis is not None:
        a = q.analysis
        lines.append(f"Analysis: {a.description}")
        if a.services:
            lines.append(f"Services: {', '.join(a.services[:10])}")
        if a.reasons_to_contact:
            lines.append(f"Reasons to contact: {'; '.join(a.reasons_to_contact[:5])}")
    lines.append("\nQualify this lead as JSON.")
    return "\n".join(lines)


def tier_for(score: int) -> str:
    if score >= 85:
        return "A"
    if score >= 70:
        return "B"
    if score >= 50:
        return "C"
    return "D"


def parse_qualification(raw: Dict[str, Any]) -> Qualification:
    scores = raw.get("scores") if isinstance(raw.get("scores"), dict) else {}
    score = clamp_score(raw.get("qualificationScore"))
    is_q = raw.get("isQualified")
    return Qualification(
        is_qualified=is_q if isinstance(is_q, bool) else score >= 50,
        score=score,
        tier=choice(raw.get("qualificationTier"), TIERS, "C"),
        business_potential=clamp_score(scores.get("businessPotential")),
        website_need=clamp_score(scores.get("websiteNeed")),
        contactability=clamp_score(scores.get("contactability")),
        conversion_likelihood=clamp_score(scores.get("conversionLikelihood")),
        strengths=str_list(raw.get("strengths")),
        weaknesses=str_list(raw.get("weaknesses")),
        opportunities=str_list(raw.get("opportunities")),
        threats=str_list(raw.get("threats")),
        recommended_action=choice(raw.get("recommendedAction"), ACTIONS, "nurture"),
        recommended_channel=choice(raw.get("recommendedChannel"), CHANNELS, "phone"),
        urgency=choice(raw.get("urgency"), URGENCIES, "medium"),
        key_talking_points=str_list(raw.get("keyTalkingPoints")),
        avoid_topics=str_list(raw.get("avoidTopics")),
        best_time_to_contact=opt_str(raw.get("bestTimeToContact"), 200),
        reasoning=opt_str(raw.get("reasoning")) or "",
    )


def fallback_qualification(q: QualificationInput) -> Qualification:
    """
    Rule-based scoring:
      no website +40 (else website quality < 50: +25)
      rating >= 4.5 +20, >= 4.0 +10
      reviews >= 50 +15, >= 20 +10
      any phone +15, facebook or instagram +10
    """
    score = 0
    if not q.has_website:
        score += 40
    elif q.website_quality_score is not None and q.website_quality_score < 50:
        score += 25

    if q.rating:
        if q.rating >= 4.5:
            score += 20
        elif q.rating >= 4.0:
            score += 10

    if q.review_count:
        if q.review_count >= 50:
            score += 15
        elif q.review_count >= 20:
            score += 10

    if q.phones:
        score += 15
    if q.has_facebook or q.has_instagram:
        score += 10

    score = min(score, 100)
    tier = tier_for(score)
    return Qualification(
        is_qualified=score >= 50,
        score=score,
        tier=tier,
        business_potential=clamp_score(q.rating * 20) if q.rating else 50,
        website_need=30 if q.has_website else 90,
        contactability=80 if q.phones else 40,
        conversion_likelihood=score,
        recommended_action={"A": "contact_immediately", "B": "contact_soon"}.get(tier, "nurture"),
        recommended_channel="whatsapp" if q.phones else "facebook",
        urgency={"A": "high", "B": "medium"}.get(tier, "low"),
        reasoning="Fallback qualification based on basic scoring rules",
    )
