"""
Per-candidate scrape and search tasks.

Each task takes an open page and the job's token and returns
`(DataSource, text)` or None. They are best-effort: a navigation error,
timeout or empty page yields None and never affects sibling tasks.
Cancellation is different: a cancelled token (or a closed browser) is
raised, never turned into None, so the caller sees "cancelled" and not
"no data".
"""

from __future__ import annotations

import logging
from typing import Any, Awaitable, Dict, Optional, Tuple
from urllib.parse import quote_plus

from ..cancellation import CancellationToken, sleep_with_cancellation, with_cancellation
from ..errors import BrowserClosedError, JobCancelledError
from ..models import DataSource
from . import contacts
from .browser import is_browser_closed_error
from .html import meta_description, page_links, page_text

logger = logging.getLogger(__name__)

SOURCE_CONFIDENCE: Dict[str, int] = {
    "google_maps": 90,
    "website": 85,
    "facebook": 70,
    "social_search": 65,
    "google_search": 60,
    "instagram": 55,
    "generic_search": 50,
}

WEBSITE_TEXT_MAX = 10000
FACEBOOK_TEXT_MAX = 5000
INSTAGRAM_TEXT_MAX = 3000
SEARCH_TEXT_MAX = 6000

NAV_TIMEOUT_MS = 10000
SEARCH_URL = "https://www.google.com/search?q="

ScrapeResult = Optional[Tuple[DataSource, str]]


async def _best_effort(label: str, token: Optional[CancellationToken], aw: Awaitable[ScrapeResult]) -> ScrapeResult:
    try:
        return await aw
    except JobCancelledError:
        raise
    except Exception as e:
        if token is not None and token.is_cancelled:
            raise JobCancelledError(token.job_id) from e
        if is_browser_closed_error(e):
            raise BrowserClosedError(token.job_id if token else "") from e
        logger.info("%s failed: %s: %s", label, type(e).__name__, e)
        return None


async def load_html(page: Any, url: str, token: Optional[CancellationToken], *, settle_s: float = 0.5) -> str:
    await with_cancellation(token, page.goto(url, wait_until="domcontentloaded", timeout=NAV_TIMEOUT_MS))
    await sleep_with_cancellation(settle_s, token)
    return await with_cancellation(token, page.content())


def _contact_data(name: str, html: str, text: str) -> Dict[str, Any]:
    links = page_links(html)
    phones = contacts.normalize_phone_list(list(links["phones"]))
    for p in contacts.extract_phones(text):
        if p not in phones:
            phones.append(p)
    emails = list(links["emails"])
    for e in contacts.extract_emails(html):
        if e not in emails:
            emails.append(e)
    social = dict(contacts.extract_social(" ".join(links["hrefs"])))
    social.update(links["social"])
    return {"name": name, "phones": phones, "emails": emails, "socialMedia": social}


async def scrape_website(page: Any, url: str, name: str, token: Optional[CancellationToken]) -> ScrapeResult:
    async def _run() -> ScrapeResult:
        html = await load_html(page, url, token)
        text = page_text(html, WEBSITE_TEXT_MAX)
        if not text:
            return None
        data = _contact_data(name, html, text)
        data["website"] = url
        desc = meta_description(html)
        if desc:
            data["description"] = desc
        return DataSource("website", SOURCE_CONFIDENCE["website"], data, text), text

    return await _best_effort(f"website scrape {url}", token, _run())


async def _search(
    page: Any,
    query: str,
    name: str,
    source: str,
    token: Optional[CancellationToken],
) -> ScrapeResult:
    async def _run() -> ScrapeResult:
        html = await load_html(page, SEARCH_URL + quote_plus(query), token, settle_s=1.0)
        links = page_links(html)
        # hrefs go into the text so profile URLs can be found later
        text = (page_text(html, SEARCH_TEXT_MAX) + "\n" + "\n".join(links["hrefs"])).strip()
        if not text:
            return None
        data = _contact_data(name, html, text)
        return DataSource(source, SOURCE_CONFIDENCE[source], data, text), text

    return await _best_effort(f"{source} '{query}'", token, _run())


async def search_contacts(page: Any, name: str, location: str, token: Optional[CancellationToken]) -> ScrapeResult:
    return await _search(page, f'"{name}" {location} contact', name, "google_search", token)


async def search_social(page: Any, name: str, location: str, token: Optional[CancellationToken]) -> ScrapeResult:
    query = f'"{name}" {location} site:linkedin.com OR site:instagram.com OR site:facebook.com OR site:twitter.com'
    return await _search(page, query, name, "social_search", token)


async def search_generic(page: Any, name: str, location: str, token: Optional[CancellationToken]) -> ScrapeResult:
    return await _search(page, f'"{name}" {location} reviews services about', name, "generic_search", token)


async def _profile(
    page: Any,
    url: str,
    name: str,
    source: str,
    max_chars: int,
    token: Optional[CancellationToken],
) -> ScrapeResult:
    async def _run() -> ScrapeResult:
        html = await load_html(page, url, token, settle_s=1.5)
        text = page_text(html, max_chars)
        if not text:
            return None
        data = {
            "name": name,
            "phones": contacts.extract_phones(text),
            "emails": contacts.extract_emails(text),
            "socialMedia": {source: url},
        }
        desc = meta_description(html)
        if desc:
            data["description"] = desc
        return DataSource(source, SOURCE_CONFIDENCE[source], data, text), text

    return await _best_effort(f"{source} profile {url}", token, _run())


async def scrape_facebook(page: Any, url: str, name: str, token: Optional[CancellationToken]) -> ScrapeResult:
    return await _profile(page, url, name, "facebook", FACEBOOK_TEXT_MAX, token)


async def scrape_instagram(page: Any, url: str, name: str, token: Optional[CancellationToken]) -> ScrapeResult:
    return await _profile(page, url, name, "instagram", INSTAGRAM_TEXT_MAX, token)
