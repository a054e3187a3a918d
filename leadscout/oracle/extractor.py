from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..scrape import contacts
from .fields import dedupe, opt_str, str_list

SYSTEM_PROMPT = """You extract structured business and contact details from unstructured text.
Return ONLY one JSON object, no markdown:
{
  "contacts": {"phones": [], "emails": [], "socialMedia": {"facebook": "", "instagram": ""},
               "addresses": [], "businessHours": "", "whatsappNumber": ""},
  "business": {"name": "", "description": "", "services": [], "specializations": [],
               "yearsInBusiness": 0, "certifications": [], "areasServed": []}
}
Normalize South African phones to +27. Use empty arrays or omit fields you cannot find."""

PROMPT_TEXT_MAX = 4000


@dataclass
class Extraction:
    phones: List[str] = field(default_factory=list)
    emails: List[str] = field(default_factory=list)
    social: Dict[str, str] = field(default_factory=dict)
    addresses: List[str] = field(default_factory=list)
    business_hours: Optional[str] = None
    whatsapp_number: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    services: List[str] = field(default_factory=list)
    specializations: List[str] = field(default_factory=list)
    years_in_business: Optional[int] = None
    certifications: List[str] = field(default_factory=list)
    areas_served: List[str] = field(default_factory=list)


def build_prompt(text: str, business_name: Optional[str]) -> str:
    head = (
        f'Extract information about "{business_name}" from this text:\n\n'
        if business_name
        else "Extract business and contact information from this text:\n\n"
    )
    return head + text[:PROMPT_TEXT_MAX]


def parse_extraction(raw: Dict[str, Any]) -> Extraction:
    c = raw.get("contacts") if isinstance(raw.get("contacts"), dict) else {}
    b = raw.get("business") if isinstance(raw.get("business"), dict) else {}

    years = b.get("yearsInBusiness")
    try:
        years = int(years) if years not in (None, "") else None
    except (TypeError, ValueError):
        years = None
    if years is not None and not (0 < years < 300):
        years = None

    return Extraction(
        phones=contacts.normalize_phone_list(c.get("phones")),
        emails=contacts.normalize_email_list(c.get("emails")),
        social=contacts.normalize_social(c.get("socialMedia")),
        addresses=str_list(c.get("addresses")),
        business_hours=opt_str(c.get("businessHours"), 300),
        whatsapp_number=contacts.normalize_phone(c.get("whatsappNumber")),
        name=opt_str(b.get("name"), 300),
        description=opt_str(b.get("description")),
        services=str_list(b.get("services")),
        specializations=str_list(b.get("specializations")),
        years_in_business=years,
        certifications=str_list(b.get("certifications")),
        areas_served=str_list(b.get("areasServed")),
    )


def fallback_extraction(text: str) -> Extraction:
    """Regex-only extraction, used when the oracle is unavailable."""
    phones = contacts.extract_phones(text)
    return Extraction(
        phones=phones,
        emails=contacts.extract_emails(text),
        social=contacts.extract_social(text),
        whatsapp_number=next((p for p in phones if p.startswith("+27")), None),
    )


def merge_extractions(results: List[Extraction]) -> Extraction:
    """Union of lists (first-seen order); first non-empty wins for scalars and social links."""
    merged = Extraction()
    for r in results:
        merged.phones = dedupe(merged.phones + r.phones)
        merged.emails = dedupe(merged.emails + r.emails)
        merged.addresses = dedupe(merged.addresses + r.addresses)
        merged.services = dedupe(merged.services + r.services)
        merged.specializations = dedupe(merged.specializations + r.specializations)
        merged.certifications = dedupe(merged.certifications + r.certifications)
        merged.areas_served = dedupe(merged.areas_served + r.areas_served)
        for k, v in r.social.items():
            merged.social.setdefault(k, v)
        merged.business_hours = merged.business_hours or r.business_hours
        merged.whatsapp_number = merged.whatsapp_number or r.whatsapp_number
        merged.name = merged.name or r.name
        merged.description = merged.description or r.description
        merged.years_in_business = merged.years_in_business or r.years_in_business
    return merged
