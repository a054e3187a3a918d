from __future__ import annotations

import re
from typing import Dict, List

from bs4 import BeautifulSoup

_WS_RE = re.compile(r"\s+")

_SOCIAL_HOSTS = {
    "facebook": "facebook.com",
    "instagram": "instagram.com",
    "twitter": "twitter.com",
    "linkedin": "linkedin.com",
}


def page_text(html: str, max_chars: int = 10000) -> str:
    """Visible text of an HTML document, whitespace-collapsed and capped."""
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for node in soup(["script", "style", "noscript", "svg"]):
        node.decompose()
    text = _WS_RE.sub(" ", soup.get_text(" ", strip=True)).strip()
    return text[:max_chars]


def page_links(html: str) -> Dict[str, object]:
    """
    Contact-ish links from anchors:
      phones  - tel: hrefs
      emails  - mailto: hrefs
      social  - first href per platform
      hrefs   - every absolute http(s) href (search result harvesting)
    """
    out: Dict[str, object] = {"phones": [], "emails": [], "social": {}, "hrefs": []}
    if not html:
        return out

    soup = BeautifulSoup(html, "html.parser")
    phones: List[str] = []
    emails: List[str] = []
    social: Dict[str, str] = {}
    hrefs: List[str] = []

    for a in soup.find_all("a", href=True):
        href = (a.get("href") or "").strip()
        low = href.lower()
        if low.startswith("tel:"):
            val = href[4:].strip()
            if val and val not in phones:
                phones.append(val)
        elif low.startswith("mailto:"):
            val = href[7:].split("?")[0].strip().lower()
            if val and val not in emails:
                emails.append(val)
        elif low.startswith(("http://", "https://")):
            hrefs.append(href)
            for platform, host in _SOCIAL_HOSTS.items():
                if host in low and platform not in social:
                    social[platform] = href

    out.update(phones=phones, emails=emails, social=social, hrefs=hrefs)
    return out


def meta_description(html: str) -> str:
    if not html:
        return ""
    soup = BeautifulSoup(html, "html.parser")
    for attrs in ({"property": "og:description"}, {"name": "description"}):
        tag = soup.find("meta", attrs=attrs)
        if tag and tag.get("content"):
            return str(tag["content"]).strip()
    return ""
