"""
Job-tagged Chromium via Playwright.

The launch args carry the job's process tags so ProcessTracker can find
every Chromium process (browser, renderers, GPU helper) after launch and
again after a host restart.
"""

from __future__ import annotations

import logging
from typing import Any, Optional

from playwright.async_api import Browser, Page, async_playwright

from ..errors import BrowserClosedError
from ..process_tracker import ProcessTracker

logger = logging.getLogger(__name__)

USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)

_CLOSED_MARKERS = (
    "has been closed",
    "target closed",
    "browser closed",
    "browser has disconnected",
    "connection closed",
)


def is_browser_closed_error(exc: BaseException) -> bool:
    if isinstance(exc, BrowserClosedError):
        return True
    msg = str(exc).lower()
    return any(m in msg for m in _CLOSED_MARKERS)


class BrowserSession:
    """One Playwright driver + one Chromium for one job."""

    def __init__(self, job_id: str, tracker: ProcessTracker, *, headless: bool = True):
        self.job_id = job_id
        self.tracker = tracker
        self.headless = headless
        self._playwright: Any = None
        self._browser: Optional[Browser] = None

    @property
    def browser(self) -> Browser:
        if self._browser is None:
            raise BrowserClosedError(self.job_id)
        return self._browser

    @property
    def is_open(self) -> bool:
        return self._browser is not None and self._browser.is_connected()

    async def start(self) -> "BrowserSession":
        self._playwright = await async_playwright().start()
        try:
            self._browser = await self._playwright.chromium.launch(
                headless=self.headless,
                args=self.tracker.chrome_args(self.job_id),
            )
        except Exception:
            # the driver is already up; stop it or it outlives the failed launch
            await self.close()
            raise
        logger.info("browser launched job_id=%s headless=%s", self.job_id, self.headless)
        return self

    async def new_page(self) -> Page:
        if not self.is_open:
            raise BrowserClosedError(self.job_id)
        try:
            page = await self.browser.new_page(user_agent=USER_AGENT, locale="en-US")
        except Exception as e:
            if is_browser_closed_error(e):
                raise BrowserClosedError(self.job_id) from e
            raise
        return page

    async def close(self) -> None:
        """Idempotent; safe to call from both the cancel path and cleanup."""
        browser, self._browser = self._browser, None
        pw, self._playwright = self._playwright, None
        if browser is not None:
            try:
                await browser.close()
            except Exception as e:
                logger.debug("browser close job_id=%s: %s", self.job_id, e)
        if pw is not None:
            try:
                await pw.stop()
            except Exception as e:
                logger.debug("playwright stop job_id=%s: %s", self.job_id, e)
