from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from ..models import DataSource
from ..scrape import contacts
from .fields import clamp_score, opt_str, str_list

SYSTEM_PROMPT = """You verify that several data sources describe the same business and merge them.
Prefer sources in this order: google_maps > website > facebook > search results.
Collect every unique phone and email with the sources that provided it. Flag inconsistencies.
Return ONLY one JSON object, no markdown:
{
  "isValidMatch": true, "confidence": 0,
  "mergedData": {"name": "", "nameSource": "", "phones": [{"value": "", "sources": []}],
                 "emails": [{"value": "", "sources": []}], "address": "", "addressSource": "",
                 "description": "", "descriptionSource": "", "services": [], "website": "",
                 "socialMedia": {}},
  "conflicts": [{"field": "", "values": [{"value": "", "source": ""}], "resolution": "", "resolvedValue": ""}],
  "warnings": [], "reasoning": ""
}"""

FALLBACK_WARNING = "Used fallback merge - AI validation unavailable"
SINGLE_SOURCE_WARNING = "Only single source available - no cross-reference possible"

_SUFFIX_RE = re.compile(r"(pty|ltd|cc|inc|co|sa|services?|solutions?|experts?|pros?)")


@dataclass
class SourcedValue:
    value: str
    sources: List[str] = field(default_factory=list)


@dataclass
class CrossReference:
    is_valid_match: bool
    confidence: int
    name: str
    name_source: str
    phones: List[SourcedValue] = field(default_factory=list)
    emails: List[SourcedValue] = field(default_factory=list)
    address: Optional[str] = None
    address_source: Optional[str] = None
    description: Optional[str] = None
    description_source: Optional[str] = None
    services: List[str] = field(default_factory=list)
    website: Optional[str] = None
    social: Dict[str, str] = field(default_factory=dict)
    conflicts: List[Dict[str, Any]] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    reasoning: str = ""


def build_prompt(sources: List[DataSource], business_name: str) -> str:
    lines = [f'Validate and merge these sources for the business "{business_name}":', ""]
    for s in sources:
        lines.append(f"Source: {s.source} (confidence {s.confidence})")
        lines.append(json.dumps(s.data, sort_keys=True, default=str)[:1500])
        lines.append("")
    return "\n".join(lines)


def _sourced(raw: Any, normalize) -> List[SourcedValue]:
    if not isinstance(raw, list):
        return []
    out: Dict[str, SourcedValue] = {}
    for item in raw:
        if isinstance(item, dict):
            val, srcs = item.get("value"), str_list(item.get("sources"))
        else:
            val, srcs = item, []
        norm = normalize(val)
        if not norm:
            continue
        if norm in out:
            out[norm].sources.extend(s for s in srcs if s not in out[norm].sources)
        else:
            out[norm] = SourcedValue(norm, srcs)
    return list(out.values())


def _norm_email(val: Any) -> Optional[str]:
    found = contacts.normalize_email_list([val])
    return found[0] if found else None


def parse_cross_reference(raw: Dict[str, Any], business_name: str) -> CrossReference:
    m = raw.get("mergedData") if isinstance(raw.get("mergedData"), dict) else {}
    raw_conflicts = raw.get("conflicts")
    conflicts = [c for c in raw_conflicts if isinstance(c, dict)] if isinstance(raw_conflicts, list) else []
    return CrossReference(
        is_valid_match=raw.get("isValidMatch") is not False,
        confidence=clamp_score(raw.get("confidence")),
        name=opt_str(m.get("name"), 300) or business_name,
        name_source=opt_str(m.get("nameSource"), 60) or "google_maps",
        phones=_sourced(m.get("phones"), contacts.normalize_phone),
        emails=_sourced(m.get("emails"), _norm_email),
        address=opt_str(m.get("address"), 500),
        address_source=opt_str(m.get("addressSource"), 60),
        description=opt_str(m.get("description")),
        description_source=opt_str(m.get("descriptionSource"), 60),
        services=str_list(m.get("services")),
        website=opt_str(m.get("website"), 500),
        social=contacts.normalize_social(m.get("socialMedia")),
        conflicts=conflicts[:20],
        warnings=str_list(raw.get("warnings")),
        reasoning=opt_str(raw.get("reasoning")) or "",
    )


def empty_result(business_name: str) -> CrossReference:
    return CrossReference(
        is_valid_match=False,
        confidence=0,
        name=business_name,
        name_source="none",
        warnings=["No data sources provided"],
        reasoning="No data to validate",
    )


def _merge_values(sources: List[DataSource], key: str, normalize) -> List[SourcedValue]:
    merged: Dict[str, SourcedValue] = {}
    for s in sources:
        for raw in s.data.get(key) or []:
            val = normalize(raw)
            if not val:
                continue
            entry = merged.setdefault(val, SourcedValue(val, []))
            if s.source not in entry.sources:
                entry.sources.append(s.source)
    return list(merged.values())


def single_source_result(source: DataSource, business_name: str) -> CrossReference:
    d = source.data
    return CrossReference(
        is_valid_match=True,
        confidence=clamp_score(source.confidence),
        name=d.get("name") or business_name,
        name_source=source.source,
        phones=_merge_values([source], "phones", contacts.normalize_phone),
        emails=_merge_values([source], "emails", _norm_email),
        address=d.get("address"),
        address_source=source.source if d.get("address") else None,
        description=d.get("description"),
        description_source=source.source if d.get("description") else None,
        services=list(d.get("services") or []),
        website=d.get("website"),
        social=dict(d.get("socialMedia") or {}),
        warnings=[SINGLE_SOURCE_WARNING],
        reasoning="Single source data, no validation needed",
    )


def fallback_merge(sources: List[DataSource], business_name: str) -> CrossReference:
    """Confidence-ranked merge without the oracle."""
    if not sources:
        return empty_result(business_name)

    ranked = sorted(sources, key=lambda s: s.confidence, reverse=True)
    primary = ranked[0]
    d = primary.data

    services: List[str] = []
    for s in sources:
        for svc in s.data.get("services") or []:
            if svc not in services:
                services.append(svc)

    # lower-ranked first so the most trusted source overwrites
    social: Dict[str, str] = {}
    for s in reversed(ranked):
        social.update(s.data.get("socialMedia") or {})

    warnings = [FALLBACK_WARNING]
    for s in sources:
        other = s.data.get("name")
        if other and not are_names_similar(other, business_name):
            warnings.append(f"Source {s.source} names a different business: {other!r}")

    return CrossReference(
        is_valid_match=True,
        confidence=int(round(primary.confidence * 0.8)),
        name=d.get("name") or business_name,
        name_source=primary.source,
        phones=_merge_values(sources, "phones", contacts.normalize_phone),
        emails=_merge_values(sources, "emails", _norm_email),
        address=d.get("address"),
        address_source=primary.source if d.get("address") else None,
        description=d.get("description"),
        description_source=primary.source if d.get("description") else None,
        services=services,
        website=d.get("website"),
        social=social,
        warnings=warnings,
        reasoning="Fallback merge based on source confidence ranking",
    )


def _normalize_name(s: str) -> str:
    return _SUFFIX_RE.sub("", re.sub(r"[^a-z0-9]", "", (s or "").lower()))


def levenshtein(a: str, b: str) -> int:
    if len(a) < len(b):
        a, b = b, a
    prev = list(range(len(b) + 1))
    for i, ca in enumerate(a, 1):
        cur = [i]
        for j, cb in enumerate(b, 1):
            cur.append(prev[j - 1] if ca == cb else 1 + min(prev[j], cur[j - 1], prev[j - 1]))
        prev = cur
    return prev[-1]


def are_names_similar(a: str, b: str) -> bool:
    n1, n2 = _normalize_name(a), _normalize_name(b)
    if n1 == n2:
        return True
    if n1 and n2 and (n1 in n2 or n2 in n1):
        return True
    return levenshtein(n1, n2) <= max(len(n1), len(n2)) * 0.3
