from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .fields import choice, clamp_score, opt_str, str_list

SYSTEM_PROMPT = """You analyze small businesses for a web design agency.
Return ONLY one JSON object, no markdown:
{
  "businessDescription": "", "servicesOffered": [], "targetMarket": "", "uniqueSellingPoints": [],
  "contactQualityScore": 0, "bestContactMethod": "phone",
  "websiteQuality": {"score": 0, "issues": [], "hasModernDesign": false, "isMobileResponsive": false,
                     "hasContactForm": false, "loadSpeed": "unknown"},
  "leadScore": 0, "leadQuality": "warm", "reasonsToContact": [], "potentialObjections": [],
  "personalizationHooks": [], "aiReasoning": ""
}
Scoring: no website and good reviews 90+, DIY/template site 70-89, professional site 20-50."""

CONTACT_METHODS = ("phone", "email", "whatsapp", "facebook")
LOAD_SPEEDS = ("fast", "medium", "slow", "unknown")
LEAD_QUALITIES = ("hot", "warm", "cold")


@dataclass
class BusinessProfile:
    """What the analyzer is told about one business."""
    name: str
    website: Optional[str] = None
    website_content: Optional[str] = None
    facebook_url: Optional[str] = None
    facebook_content: Optional[str] = None
    rating: Optional[float] = None
    review_count: Optional[int] = None
    address: Optional[str] = None
    phone: Optional[str] = None
    category: Optional[str] = None
    search_results: Optional[str] = None


@dataclass
class BusinessAnalysis:
    description: str
    services: List[str] = field(default_factory=list)
    target_market: str = "General public"
    unique_selling_points: List[str] = field(default_factory=list)
    contact_quality_score: int = 50
    best_contact_method: str = "phone"
    website_score: int = 50
    website_issues: List[str] = field(default_factory=list)
    has_modern_design: bool = False
    is_mobile_responsive: bool = False
    has_contact_form: bool = False
    load_speed: str = "unknown"
    lead_score: int = 50
    lead_quality: str = "warm"
    reasons_to_contact: List[str] = field(default_factory=list)
    potential_objections: List[str] = field(default_factory=list)
    personalization_hooks: List[str] = field(default_factory=list)
    reasoning: str = ""


def build_prompt(p: BusinessProfile) -> str:
    lines = [f"**Business:** {p.name}", "", "**Google Maps data:**"]
    if p.rating is not None:
        lines.append(f"- Rating: {p.rating} ({p.review_count or 0} reviews)")
    for label, val in (("Category", p.category), ("Address", p.address), ("Phone", p.phone)):
        if val:
            lines.append(f"- {label}: {val}")
    lines.append("")
    if p.website:
        lines.append(f"**Website:** {p.website}")
        if p.website_content:
            lines.append(f"**Website Content (excerpt):**\n{p.website_content[:2000]}")
    else:
        lines.append("**Website:** None found")
    if p.facebook_url:
        lines.append(f"**Facebook Page:** {p.facebook_url}")
        if p.facebook_content:
            lines.append(f"**Facebook Content (excerpt):**\n{p.facebook_content[:1000]}")
    if p.search_results:
        lines.append(f"**Search Results:**\n{p.search_results[:1500]}")
    lines.append("\nBased on this data, provide your analysis as JSON.")
    return "\n".join(lines)


def parse_analysis(raw: Dict[str, Any]) -> BusinessAnalysis:
    wq = raw.get("websiteQuality") if isinstance(raw.get("websiteQuality"), dict) else {}
    return BusinessAnalysis(
        description=opt_str(raw.get("businessDescription")) or "Unknown business",
        services=str_list(raw.get("servicesOffered")),
        target_market=opt_str(raw.get("targetMarket"), 300) or "General public",
        unique_selling_points=str_list(raw.get("uniqueSellingPoints")),
        contact_quality_score=clamp_score(raw.get("contactQualityScore")),
        best_contact_method=choice(raw.get("bestContactMethod"), CONTACT_METHODS, "phone"),
        website_score=clamp_score(wq.get("score")),
        website_issues=str_list(wq.get("issues")),
        has_modern_design=bool(wq.get("hasModernDesign")),
        is_mobile_responsive=bool(wq.get("isMobileResponsive")),
        has_contact_form=bool(wq.get("hasContactForm")),
        load_speed=choice(wq.get("loadSpeed"), LOAD_SPEEDS, "unknown"),
        lead_score=clamp_score(raw.get("leadScore")),
        lead_quality=choice(raw.get("leadQuality"), LEAD_QUALITIES, "warm"),
        reasons_to_contact=str_list(raw.get("reasonsToContact")),
        potential_objections=str_list(raw.get("potentialObjections")),
        personalization_hooks=str_list(raw.get("personalizationHooks")),
        reasoning=opt_str(raw.get("aiReasoning")) or "",
    )


def default_analysis(p: BusinessProfile) -> BusinessAnalysis:
    has_website = bool(p.website)
    good_rating = (p.rating or 0) >= 4.0
    hot = not has_website and good_rating
    return BusinessAnalysis(
        description=f"{p.name} is a local business.",
        target_market="Local customers",
        contact_quality_score=70 if p.phone else 40,
        best_contact_method="phone" if p.phone else "facebook",
        website_score=50 if has_website else 0,
        website_issues=[] if has_website else ["No website"],
        lead_score=85 if hot else 50,
        lead_quality="hot" if hot else "warm",
        reasons_to_contact=[] if has_website else ["No professional website"],
        potential_objections=["May not see value in website"],
        reasoning="Default analysis (oracle unavailable)",
    )
