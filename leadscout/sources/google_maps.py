"""
Google Maps listing search over a job's BrowserSession.

Selectors are page glue and will drift; everything here degrades to
"fewer results" except a closed browser, which becomes BrowserClosedError
so the orchestrator stops the job.
"""

from __future__ import annotations

import logging
import re
from typing import Any, List, Optional
from urllib.parse import quote

from ..cancellation import CancellationToken, with_cancellation
from ..errors import BrowserClosedError, JobCancelledError
from ..models import Candidate
from ..scrape.browser import BrowserSession, is_browser_closed_error

logger = logging.getLogger(__name__)

MAPS_SEARCH_URL = "https://www.google.com/maps/search/"

_RATING_RE = re.compile(r"([\d.]+)\s*star", re.I)
_REVIEWS_RE = re.compile(r"([\d,.\s]+)\s*review", re.I)


async def _text(page: Any, selector: str) -> Optional[str]:
    try:
        loc = page.locator(selector).first
        if await loc.count() == 0:
            return None
        val = await loc.text_content(timeout=2000)
    except Exception as e:
        if is_browser_closed_error(e):
            raise
        return None
    val = (val or "").strip()
    return val or None


async def _attr(page: Any, selector: str, name: str) -> Optional[str]:
    try:
        loc = page.locator(selector).first
        if await loc.count() == 0:
            return None
        val = await loc.get_attribute(name, timeout=2000)
    except Exception as e:
        if is_browser_closed_error(e):
            raise
        return None
    return (val or "").strip() or None


def _parse_int(raw: Optional[str]) -> Optional[int]:
    if not raw:
        return None
    digits = re.sub(r"[^\d]", "", raw)
    return int(digits) if digits else None


class MapsSearchSource:
    def __init__(self, session: BrowserSession, *, delay_ms: int = 500):
        self.session = session
        self.delay_s = max(0, delay_ms) / 1000.0
        self._page: Any = None

    async def _get_page(self) -> Any:
        if self._page is None or self._page.is_closed():
            self._page = await self.session.new_page()
        return self._page

    async def search(
        self,
        query: str,
        location: str,
        country: str,
        *,
        min_rating: Optional[float],
        max_results: int,
        token: CancellationToken,
    ) -> List[Candidate]:
        token.throw_if_cancelled()
        results: List[Candidate] = []
        try:
            page = await self._get_page()
            url = MAPS_SEARCH_URL + quote(f"{query} {location}") + f"?hl=en&gl={country.lower()}"
            await with_cancellation(token, page.goto(url, wait_until="domcontentloaded", timeout=30000))
            await token.sleep(1.0)

            try:
                await with_cancellation(token, page.wait_for_selector('[role="feed"]', timeout=10000))
            except JobCancelledError:
                raise
            except Exception as e:
                if is_browser_closed_error(e):
                    raise
                logger.info("no results feed for %r in %s", query, location)
                return results

            for _ in range(max(1, (max_results + 4) // 5)):
                await with_cancellation(
                    token,
                    page.evaluate(
                        "() => { const f = document.querySelector('[role=\"feed\"]'); if (f) f.scrollTop = f.scrollHeight; }"
                    ),
                )
                await token.sleep(0.5)

            hrefs: List[str] = []
            for link in await page.locator('a[href*="/maps/place"]').all():
                href = await link.get_attribute("href")
                label = (await link.get_attribute("aria-label")) or ""
                if href and href not in hrefs and "sponsored" not in label.lower():
                    hrefs.append(href)

            for href in hrefs:
                if len(results) >= max_results:
                    break
                token.throw_if_cancelled()
                try:
                    cand = await self._details(page, href, query, token)
                except JobCancelledError:
                    raise
                except Exception as e:
                    if is_browser_closed_error(e):
                        raise
                    logger.info("listing details failed %s: %s", href, e)
                    continue
                if cand is None:
                    continue
                if min_rating and cand.rating is not None and cand.rating < min_rating:
                    continue
                results.append(cand)
                await token.sleep(self.delay_s)

        except JobCancelledError:
            raise
        except Exception as e:
            if is_browser_closed_error(e):
                raise BrowserClosedError(token.job_id) from e
            logger.warning("maps search failed for %r in %s: %s", query, location, e)

        return results

    async def _details(self, page: Any, href: str, category: str, token: CancellationToken) -> Optional[Candidate]:
        await with_cancellation(token, page.goto(href, wait_until="domcontentloaded", timeout=20000))
        await token.sleep(1.5)

        name = await _text(page, "h1.DUwDvf") or await _text(page, "h1")
        if not name or name == "Results":
            return None
        name = re.sub(r"^Sponsored\s*", "", name, flags=re.I).strip()
        if len(name) < 2:
            return None

        address = await _text(page, '[data-item-id="address"] .fontBodyMedium') or await _text(
            page, 'button[data-item-id="address"]'
        )
        if not address:
            return None

        phone = await _text(page, '[data-item-id^="phone:"] .fontBodyMedium') or await _text(
            page, 'button[data-item-id^="phone"]'
        )
        website = await _attr(page, 'a[data-item-id="authority"]', "href")

        rating = None
        rating_label = await _attr(page, '[role="img"][aria-label*="star"]', "aria-label")
        if rating_label:
            m = _RATING_RE.search(rating_label)
            if m:
                try:
                    rating = float(m.group(1))
                except ValueError:
                    rating = None

        reviews = None
        reviews_label = await _attr(page, '[role="img"][aria-label*="review"]', "aria-label")
        if reviews_label:
            m = _REVIEWS_RE.search(reviews_label)
            reviews = _parse_int(m.group(1)) if m else None

        return Candidate(
            name=name,
            maps_url=href.split("?")[0],
            address=address,
            phone=phone,
            website=website,
            rating=rating,
            review_count=reviews,
            category=category,
        )

    async def close(self) -> None:
        page, self._page = self._page, None
        if page is not None:
            try:
                await page.close()
            except Exception as e:
                logger.debug("maps page close: %s", e)
