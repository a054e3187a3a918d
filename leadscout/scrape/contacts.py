"""
Regex contact extraction from page text / HTML.

Emails: unescape, de-obfuscate ("info [at] x [dot] com"), drop vendor and
placeholder domains. Phones: South African formats, normalized to +27.
Social: first profile URL per platform.
"""

from __future__ import annotations

import html
import re
import urllib.parse
from typing import Dict, List, Optional, Set

_EMAIL_RE = re.compile(r"\b[a-zA-Z0-9._%+\-]+@[a-zA-Z0-9.\-]+\.[a-zA-Z]{2,}\b")
_EMAIL_FULL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

PHONE_RE = re.compile(r"(?:\+27|0)[\s.-]?\d{2}[\s.-]?\d{3}[\s.-]?\d{4}")

_OBFUSCATED = [
    (re.compile(r"\s*\[\s*at\s*\]\s*", re.I), "@"),
    (re.compile(r"\s*\(\s*at\s*\)\s*", re.I), "@"),
    (re.compile(r"\s*\[\s*dot\s*\]\s*", re.I), "."),
    (re.compile(r"\s*\(\s*dot\s*\)\s*", re.I), "."),
]

_BLOCKLIST_EXACT = {
    "sentry.wixpress.com",
}

_BLOCKLIST_DOMAIN_SUBSTR = (
    "wixpress.com",
    "sentry.io",
    "sentry-next.",
    "example.com",
    "godaddy.com",
    "domain.com",
)

_BAD_SUFFIXES = (".png", ".jpg", ".jpeg", ".gif", ".webp", ".svg", ".css", ".js")

SOCIAL_URL_RES = {
    "facebook": re.compile(r"(?:https?://)?(?:www\.)?facebook\.com/[^\s\"'<>]+", re.I),
    "instagram": re.compile(r"(?:https?://)?(?:www\.)?instagram\.com/[^\s\"'<>]+", re.I),
    "twitter": re.compile(r"(?:https?://)?(?:www\.)?(?:twitter|x)\.com/[^\s\"'<>]+", re.I),
    "linkedin": re.compile(r"(?:https?://)?(?:[a-z]{2,3}\.)?linkedin\.com/[^\s\"'<>]+", re.I),
}

SOCIAL_BASE_URLS = {
    "facebook": "https://facebook.com/",
    "instagram": "https://instagram.com/",
    "twitter": "https://twitter.com/",
    "linkedin": "https://linkedin.com/company/",
    "youtube": "https://youtube.com/@",
    "tiktok": "https://tiktok.com/@",
}

_FB_RE = re.compile(r"https?://(?:www\.)?facebook\.com/[^\s\"'<>]+", re.I)
_IG_RE = re.compile(r"https?://(?:www\.)?instagram\.com/[^\s\"'<>?]+", re.I)
_IG_PREFIX_RE = re.compile(r"https?://(?:www\.)?instagram\.com/?", re.I)


def _deobfuscate(text: str) -> str:
    out = text
    for rx, repl in _OBFUSCATED:
        out = rx.sub(repl, out)
    return out


def _is_junk_email(e: str) -> bool:
    low = (e or "").strip().lower()
    if not low or "@" not in low:
        return True
    if any(low.endswith(suf) for suf in _BAD_SUFFIXES):
        return True
    dom = low.split("@", 1)[1]
    if not dom or dom in _BLOCKLIST_EXACT:
        return True
    return any(bad in dom for bad in _BLOCKLIST_DOMAIN_SUBSTR)


def _clean_candidate(raw: str) -> str:
    s = urllib.parse.unquote((raw or "").strip())
    s = s.strip(" \t\r\n\"'<>[](){}.,;:")
    return s.lower().strip()


def extract_emails(text: str) -> List[str]:
    """De-duplicated emails found in text/HTML, in first-seen order."""
    if not text:
        return []

    body = _deobfuscate(html.unescape(text))

    found: List[str] = []
    seen: Set[str] = set()

    def _add(cand: str) -> None:
        if cand and cand not in seen and _EMAIL_FULL_RE.match(cand) and not _is_junk_email(cand):
            seen.add(cand)
            found.append(cand)

    for m in re.findall(r"mailto:([^\"'\s>]+)", body, flags=re.I):
        _add(_clean_candidate(m.split("?")[0]))
    for m in _EMAIL_RE.findall(body):
        _add(_clean_candidate(m))

    # "20info@x.com" artifacts from URL-encoded spaces, when "info@x.com" exists
    return [e for e in found if not any(e[:n].isdigit() and e[n:] in seen for n in (1, 2, 3) if len(e) > n)]


def normalize_email_list(values) -> List[str]:
    if not isinstance(values, list):
        return []
    out: List[str] = []
    for v in values:
        if not isinstance(v, str):
            continue
        low = v.strip().lower()
        if _EMAIL_FULL_RE.match(low) and low not in out:
            out.append(low)
    return out


def normalize_phone(raw) -> Optional[str]:
    """Digits (and a leading +) only; 0XXXXXXXXX becomes +27XXXXXXXXX. None if too short."""
    if not raw or not isinstance(raw, str):
        return None
    s = raw.strip()
    digits = re.sub(r"[^\d+]", "", s)
    if "+" in digits[1:]:
        digits = digits[0] + digits[1:].replace("+", "")
    if digits.startswith("0") and len(digits) == 10:
        digits = "+27" + digits[1:]
    if len(digits) < 10:
        return None
    return digits


def normalize_phone_list(values) -> List[str]:
    if not isinstance(values, list):
        return []
    out: List[str] = []
    for v in values:
        p = normalize_phone(v)
        if p and p not in out:
            out.append(p)
    return out


def extract_phones(text: str) -> List[str]:
    return normalize_phone_list(PHONE_RE.findall(text or ""))


def normalize_social_url(value: str, platform: str) -> str:
    v = value.strip()
    if v.lower().startswith("http"):
        return v
    if re.match(r"^(www\.)?[a-z]+\.com/", v, re.I):
        return "https://" + v
    return SOCIAL_BASE_URLS.get(platform, "") + v.lstrip("@")


def normalize_social(raw) -> Dict[str, str]:
    if not isinstance(raw, dict):
        return {}
    out: Dict[str, str] = {}
    for platform in SOCIAL_BASE_URLS:
        val = raw.get(platform)
        if isinstance(val, str) and val.strip():
            out[platform] = normalize_social_url(val, platform)
    return out


def extract_social(text: str) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for platform, rx in SOCIAL_URL_RES.items():
        m = rx.search(text or "")
        if m:
            out[platform] = normalize_social_url(m.group(0).rstrip(".,;)"), platform)
    return out


def find_facebook_url(text: str, business_name: str) -> Optional[str]:
    """First facebook URL in text, preferring one that mentions the business name."""
    matches = _FB_RE.findall(text or "")
    if not matches:
        return None
    key = re.sub(r"[^a-z0-9]", "", (business_name or "").lower())[:10]
    if key:
        for url in matches:
            if key in url.lower():
                return url
    return matches[0]


def find_instagram_url(text: str, preferred: Optional[str] = None) -> Optional[str]:
    """Profile URL (not explore / post links). A URL from the website wins."""
    if preferred:
        return preferred
    for url in _IG_RE.findall(text or ""):
        path = _IG_PREFIX_RE.sub("", url, count=1)
        if len(path) > 2 and not path.startswith("explore") and not path.startswith("p/"):
            return url
    return None
