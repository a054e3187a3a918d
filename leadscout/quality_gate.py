"""
leadscout.quality_gate

Is this business's web presence weak enough to sell to?

Two tiers, cheapest first:
1) URL pattern check (no network): no website, social/directory listing, or
   DIY site-builder domain are all good prospects with a fixed score.
2) Google PageSpeed Insights for everything else, with retry/backoff and a
   24h cache keyed by normalized URL.

Low scores are what we want. A site scoring under `quality_threshold` is a
good prospect; one at or above it is skipped.

This module never raises for API trouble. Rate limits, timeouts and server
errors are retried up to the attempt ceiling, then degrade to a neutral 50.
Only JobCancelledError escapes.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import replace
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from .cancellation import CancellationToken, sleep_with_cancellation
from .config import PAGESPEED_API_URL, Settings
from .errors import QualityApiError
from .models import ProspectCheck, QualityResult

logger = logging.getLogger(__name__)

SOCIAL_PATTERNS = (
    "facebook.com",
    "instagram.com",
    "twitter.com",
    "linkedin.com",
    "yellowpages",
    "gumtree",
    "locanto",
    "hotfrog",
    "cylex",
    "brabys",
    "findit",
    "snupit",
    "yell.com",
    "yelp.com",
    "tiktok.com",
    "youtube.com",
    "pinterest.com",
)

DIY_PATTERNS = (
    "wix.com",
    "wixsite.com",
    "weebly.com",
    "wordpress.com",
    "squarespace.com",
    "webnode.com",
    "jimdo.com",
    "site123.com",
    "webs.com",
    "yola.com",
    "strikingly.com",
    "carrd.co",
    "webflow.io",
    "netlify.app",
    "vercel.app",
    "herokuapp.com",
    "blogspot.com",
    "blogger.com",
    "tumblr.com",
    "sites.google.com",
    "google.com/site",
    "co.za.com",
    "mweb.co.za/sites",
    "godaddysites.com",
    "my.canva.site",
    "business.site",
)

CATEGORIES = ("performance", "accessibility", "best-practices", "seo")

# audit id -> issue text, flagged when the audit scored 0
AUDIT_ISSUES = (
    ("is-on-https", "No HTTPS"),
    ("viewport", "No viewport meta tag"),
    ("document-title", "Missing page title"),
    ("meta-description", "Missing meta description"),
    ("image-alt", "Images missing alt text"),
    ("color-contrast", "Poor color contrast"),
    ("tap-targets", "Tap targets too small"),
    ("font-size", "Font too small for mobile"),
)

UNANALYZABLE_SCORE = 25
UNANALYZABLE_ISSUE = "Website could not be analyzed (may be broken or inaccessible)"
NEUTRAL_SCORE = 50
ESTIMATED_UNKNOWN_SCORE = 70

# prospect reasons
NO_WEBSITE = "NO_WEBSITE"
SOCIAL_OR_DIRECTORY = "SOCIAL_OR_DIRECTORY"
DIY_WEBSITE_PLATFORM = "DIY_WEBSITE_PLATFORM"
POOR_QUALITY_WEBSITE = "POOR_QUALITY_WEBSITE"
HAS_QUALITY_WEBSITE = "HAS_QUALITY_WEBSITE"
API_ERROR = "API_ERROR"


def normalize_url(url: str) -> str:
    s = (url or "").strip()
    if s and not s.lower().startswith(("http://", "https://")):
        s = "https://" + s
    return s


def cache_key(url: str) -> str:
    return normalize_url(url).lower().rstrip("/")


def is_social_or_directory(url: str) -> bool:
    low = (url or "").lower()
    return any(p in low for p in SOCIAL_PATTERNS)


def is_diy_website(url: str) -> bool:
    low = (url or "").lower()
    return any(p in low for p in DIY_PATTERNS)


def quick_check(website: Optional[str]) -> Tuple[Optional[ProspectCheck], int]:
    """
    URL-only classification.

    Returns (verdict, estimated_score). verdict is None when the URL needs a
    real analysis.
    """
    if not website or not website.strip():
        return ProspectCheck(True, NO_WEBSITE, 0, "No website"), 0
    if is_social_or_directory(website):
        return ProspectCheck(True, SOCIAL_OR_DIRECTORY, 15, "Social media or directory listing only"), 15
    if is_diy_website(website):
        return ProspectCheck(True, DIY_WEBSITE_PLATFORM, 25, "DIY website builder"), 25
    return None, ESTIMATED_UNKNOWN_SCORE


class QualityCache:
    """Normalized URL -> QualityResult, with TTL. Entries are never mutated."""

    def __init__(self, ttl_s: float = 24 * 60 * 60, clock: Callable[[], float] = time.monotonic):
        self.ttl_s = ttl_s
        self._clock = clock
        self._entries: Dict[str, Tuple[float, QualityResult]] = {}

    def get(self, url: str) -> Optional[QualityResult]:
        key = cache_key(url)
        hit = self._entries.get(key)
        if hit is None:
            return None
        expires_at, result = hit
        if self._clock() >= expires_at:
            self._entries.pop(key, None)
            return None
        return result

    def put(self, url: str, result: QualityResult) -> None:
        self._entries[cache_key(url)] = (self._clock() + self.ttl_s, result)

    def clear(self) -> None:
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


def _pct(categories: Dict[str, Any], name: str) -> int:
    raw = (categories.get(name) or {}).get("score")
    try:
        return int(round(float(raw) * 100))
    except (TypeError, ValueError):
        return 0


def parse_pagespeed(url: str, data: Dict[str, Any]) -> QualityResult:
    lighthouse = data.get("lighthouseResult") or {}
    categories = lighthouse.get("categories") or {}
    audits = lighthouse.get("audits") or {}

    perf = _pct(categories, "performance")
    acc = _pct(categories, "accessibility")
    bp = _pct(categories, "best-practices")
    seo = _pct(categories, "seo")

    issues: List[str] = []
    for audit_id, text in AUDIT_ISSUES:
        audit = audits.get(audit_id)
        if isinstance(audit, dict) and audit.get("score") == 0:
            issues.append(text)
    if perf < 50:
        issues.append("Poor performance")
    if seo < 50:
        issues.append("Poor SEO")

    score = int(round(perf * 0.25 + acc * 0.25 + bp * 0.25 + seo * 0.25))
    return QualityResult(
        url=url,
        score=score,
        performance=perf,
        accessibility=acc,
        best_practices=bp,
        seo=seo,
        issues=issues,
    )


class QualityGate:
    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        session: Optional[requests.Session] = None,
        cache: Optional[QualityCache] = None,
        api_url: str = PAGESPEED_API_URL,
    ):
        self.settings = settings or Settings()
        self.session = session or requests.Session()
        self.cache = cache or QualityCache(ttl_s=self.settings.quality_cache_ttl_s)
        self.api_url = api_url
        self.api_calls = 0

    @property
    def threshold(self) -> int:
        return self.settings.quality_threshold

    def _params(self, url: str) -> List[Tuple[str, str]]:
        params = [("url", url), ("strategy", "mobile")]
        params.extend(("category", c) for c in CATEGORIES)
        if self.settings.pagespeed_api_key:
            params.append(("key", self.settings.pagespeed_api_key))
        return params

    def _get(self, url: str) -> requests.Response:
        return self.session.get(self.api_url, params=self._params(url), timeout=self.settings.quality_timeout_s)

    async def _fetch(self, url: str, token: Optional[CancellationToken]) -> Dict[str, Any]:
        self.api_calls += 1
        try:
            if token is not None:
                resp = await token.run_sync(self._get, url)
            else:
                resp = await asyncio.to_thread(self._get, url)
        except requests.RequestException as e:
            raise QualityApiError(f"{type(e).__name__}: {e}") from e

        if resp.status_code == 429:
            raise QualityApiError("Rate limited (429)", status=429)
        if resp.status_code == 400:
            raise QualityApiError("Bad request (400)", status=400, retryable=False)
        if resp.status_code != 200:
            raise QualityApiError(f"HTTP {resp.status_code}", status=resp.status_code)

        try:
            return resp.json()
        except ValueError as e:
            raise QualityApiError(f"invalid JSON: {e}") from e

    def _backoff_s(self, attempt: int) -> float:
        # attempt 2 waits the base interval, attempt 3 twice that, ...
        return self.settings.quality_backoff_s * (2 ** (attempt - 2))

    async def analyze(self, website: str, token: Optional[CancellationToken] = None) -> QualityResult:
        url = normalize_url(website)

        hit = self.cache.get(url)
        if hit is not None:
            logger.debug("quality cache hit %s score=%s", url, hit.score)
            return replace(hit, cached=True)

        await sleep_with_cancellation(self.settings.quality_initial_delay_s, token)

        max_attempts = max(1, self.settings.quality_max_attempts)
        last_error = "Unknown error"
        for attempt in range(1, max_attempts + 1):
            if attempt > 1:
                wait = self._backoff_s(attempt)
                logger.info("quality retry %d/%d for %s in %.1fs", attempt, max_attempts, url, wait)
                await sleep_with_cancellation(wait, token)

            try:
                data = await self._fetch(url, token)
            except QualityApiError as e:
                if not e.retryable:
                    logger.info("quality API cannot analyze %s: %s", url, e)
                    return QualityResult(url=url, score=UNANALYZABLE_SCORE, issues=[UNANALYZABLE_ISSUE])
                last_error = str(e)
                logger.warning("quality attempt %d failed for %s: %s", attempt, url, last_error)
                continue

            result = parse_pagespeed(url, data)
            self.cache.put(url, result)
            return result

        logger.error("quality API failed after %d retries for %s: %s", max_attempts, url, last_error)
        return QualityResult(
            url=url,
            score=NEUTRAL_SCORE,
            error=f"API failed after {max_attempts} retries: {last_error}",
        )

    async def check_prospect(self, website: Optional[str], token: Optional[CancellationToken] = None) -> ProspectCheck:
        verdict, _ = quick_check(website)
        if verdict is not None:
            return verdict

        result = await self.analyze(website or "", token)

        if result.error:
            return ProspectCheck(True, API_ERROR, NEUTRAL_SCORE, result.error)

        details = ", ".join(result.issues)
        if result.score < self.threshold:
            return ProspectCheck(True, POOR_QUALITY_WEBSITE, result.score, details)
        return ProspectCheck(False, HAS_QUALITY_WEBSITE, result.score, details)
