import asyncio
from typing import Any, Dict, List, Optional, Tuple

import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from leadscout.config import Settings
from leadscout.db import init_db
from leadscout.errors import BrowserClosedError, OracleError
from leadscout.models import Candidate, EnrichedLead
from leadscout.process_tracker import ProcessBackend, ProcessInfo, ProcessTracker


@pytest.fixture(autouse=True)
def _test_env(monkeypatch):
    # keep tests offline and fast
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("PAGESPEED_API_KEY", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def settings():
    return Settings(
        quality_initial_delay_s=0,
        quality_backoff_s=0,
        lead_delay_s=0,
        scrape_delay_ms=0,
        process_scan_delay_s=0,
    )


# -----------------------------
# Processes
# -----------------------------
class FakeProcessBackend(ProcessBackend):
    os_type = "fake"

    def __init__(self) -> None:
        self.procs: Dict[int, ProcessInfo] = {}
        self.killed: List[int] = []
        self.list_calls = 0

    def add(self, pid: int, command_line: str, name: str = "chrome") -> None:
        self.procs[pid] = ProcessInfo(pid, name, command_line)

    async def list_processes(self) -> List[ProcessInfo]:
        self.list_calls += 1
        return list(self.procs.values())

    async def get_command_line(self, pid: int) -> Optional[str]:
        p = self.procs.get(pid)
        return p.command_line if p else None

    async def kill_tree(self, pid: int) -> bool:
        if pid not in self.procs:
            return False
        del self.procs[pid]
        self.killed.append(pid)
        return True


@pytest.fixture
def backend():
    return FakeProcessBackend()


@pytest.fixture
def tracker(backend):
    return ProcessTracker(backend, scan_delay_s=0, cache_ttl_s=0)


def chrome_cmd(tracker: ProcessTracker, job_id: str, extra: str = "--type=renderer") -> str:
    return " ".join(["/usr/lib/chromium/chromium", "--headless", *tracker.chrome_args(job_id), extra])


# -----------------------------
# Browser
# -----------------------------
class FakePage:
    def __init__(self, browser: "FakeBrowser") -> None:
        self.browser = browser
        self.url = ""
        self.closed = False

    async def goto(self, url: str, **kwargs: Any) -> None:
        self.url = url
        self.browser.visited.append(url)
        if self.browser.block:
            self.browser.goto_started.set()
            await asyncio.Event().wait()

    async def content(self) -> str:
        for needle, html in self.browser.html.items():
            if needle in self.url:
                return html
        return ""

    async def close(self) -> None:
        self.closed = True

    def is_closed(self) -> bool:
        return self.closed


class FakeBrowser:
    def __init__(self, html: Optional[Dict[str, str]] = None, *, block: bool = False) -> None:
        self.html = html or {}
        self.block = block
        self.pages: List[FakePage] = []
        self.visited: List[str] = []
        self.closed = False
        self.goto_started = asyncio.Event()

    async def new_page(self) -> FakePage:
        if self.closed:
            raise BrowserClosedError("fake")
        page = FakePage(self)
        self.pages.append(page)
        return page

    async def close(self) -> None:
        self.closed = True


# -----------------------------
# Quality API
# -----------------------------
def pagespeed_payload(perf=0.9, acc=0.9, bp=0.9, seo=0.9, failing=()):
    return {
        "lighthouseResult": {
            "categories": {
                "performance": {"score": perf},
                "accessibility": {"score": acc},
                "best-practices": {"score": bp},
                "seo": {"score": seo},
            },
            "audits": {a: {"score": 0} for a in failing},
        }
    }


class FakeResponse:
    def __init__(self, status: int, payload: Optional[Dict[str, Any]] = None):
        self.status_code = status
        self._payload = payload

    def json(self):
        if self._payload is None:
            raise ValueError("no body")
        return self._payload


class FakeSession:
    def __init__(self, responses: List[Any]):
        self.responses = list(responses)
        self.calls: List[Dict[str, Any]] = []

    def get(self, url, params=None, timeout=None):
        self.calls.append({"url": url, "params": params, "timeout": timeout})
        r = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        if isinstance(r, Exception):
            raise r
        return r


# -----------------------------
# Oracle
# -----------------------------
class FakeGateway:
    """Scripted stand-in for OracleGateway: context_type -> dict or exception."""

    def __init__(self, responses: Optional[Dict[str, Any]] = None) -> None:
        self.responses = responses or {}
        self.calls: List[str] = []

    async def complete_json(self, *, system: str, prompt: str, context_type: str, token=None, **kwargs: Any):
        self.calls.append(context_type)
        if token is not None:
            token.throw_if_cancelled()
        r = self.responses.get(context_type)
        if r is None:
            raise OracleError(f"no scripted response for {context_type}")
        if isinstance(r, Exception):
            raise r
        return r


# -----------------------------
# Search + pipeline
# -----------------------------
class FakeSearchSource:
    def __init__(self, results: Dict[Tuple[str, str], Any]) -> None:
        self.results = results
        self.calls: List[Tuple[str, str, int]] = []
        self.closed = False

    async def search(self, query, location, country, *, min_rating, max_results, token):
        token.throw_if_cancelled()
        self.calls.append((query, location, max_results))
        found = self.results.get((query, location), [])
        if isinstance(found, Exception):
            raise found
        return list(found)

    async def close(self) -> None:
        self.closed = True


class FakePipeline:
    def __init__(self, *, tier: str = "B", score: int = 75, qualified: bool = True, tiers: Optional[Dict[str, str]] = None):
        self.tier = tier
        self.score = score
        self.qualified = qualified
        self.tiers = tiers or {}
        self.calls: List[str] = []

    async def enrich(self, browser, candidate, ctx, token):
        token.throw_if_cancelled()
        self.calls.append(candidate.name)
        tier = self.tiers.get(candidate.name, self.tier)
        return EnrichedLead(
            business_name=candidate.name,
            industry=ctx.category,
            location=ctx.location,
            maps_url=candidate.maps_url,
            website=candidate.website,
            rating=candidate.rating,
            review_count=candidate.review_count,
            phones=["+27211234567"],
            lead_score=self.score if tier != "D" else 20,
            tier=tier,
            is_qualified=self.qualified and tier != "D",
            sources=["google_maps"],
        )


def candidate(name: str, website: Optional[str] = None, **kw: Any) -> Candidate:
    slug = name.lower().replace(" ", "-")
    return Candidate(
        name=name,
        maps_url=kw.pop("maps_url", f"https://www.google.com/maps/place/{slug}"),
        website=website,
        rating=kw.pop("rating", 4.6),
        review_count=kw.pop("review_count", 40),
        phone=kw.pop("phone", "021 123 4567"),
        **kw,
    )
