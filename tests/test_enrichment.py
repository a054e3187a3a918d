import asyncio

import pytest

from leadscout.cancellation import CancellationToken
from leadscout.enrichment import EnrichmentPipeline, _raise_if_stopped, gather_settled
from leadscout.errors import BrowserClosedError, JobCancelledError
from leadscout.models import JobContext
from leadscout.oracle import EnrichmentOracle
from leadscout.oracle.cross_reference import FALLBACK_WARNING, SINGLE_SOURCE_WARNING
from leadscout.scrape import pages
from tests.conftest import FakeBrowser, FakeGateway, candidate

CTX = JobContext("job-1", "team-1", "bakery", "Springfield", "ZA")

SITE_HTML = """
<html><head><meta name="description" content="Family bakery since 1980"></head>
<body>
  <a href="tel:0211234567">Call us</a>
  <a href="https://instagram.com/joes_bakery">Instagram</a>
  <p>Fresh bread daily</p>
</body></html>
"""

CONTACT_SEARCH_HTML = """
<a href="https://www.facebook.com/joesbakeryza">Joe's Bakery - Facebook</a>
<p>Joe's Bakery Springfield. Call 021 123 4567</p>
"""

FACEBOOK_HTML = "<p>Joe's Bakery. WhatsApp 082 123 4567. Orders: joe@joesbakery.co.za</p>"


@pytest.fixture(autouse=True)
def _no_settle(monkeypatch):
    async def fast(seconds, token):
        if token is not None:
            token.throw_if_cancelled()

    monkeypatch.setattr(pages, "sleep_with_cancellation", fast)


def full_browser() -> FakeBrowser:
    return FakeBrowser(
        {
            "joesbakery.co.za": SITE_HTML,
            "contact": CONTACT_SEARCH_HTML,
            "reviews": "<p>Best bread in Springfield</p>",
            "facebook.com/joesbakeryza": FACEBOOK_HTML,
            "instagram.com/joes_bakery": "<p>joes_bakery fresh bread every morning</p>",
        }
    )


@pytest.mark.asyncio
async def test_enrich_collects_every_source_and_falls_back_offline():
    browser = full_browser()
    gw = FakeGateway()
    lead = await EnrichmentPipeline(EnrichmentOracle(gw)).enrich(
        browser, candidate("Joe's Bakery", website="https://joesbakery.co.za"), CTX, CancellationToken("job-1")
    )

    assert lead.sources == ["google_maps", "website", "google_search", "generic_search", "facebook", "instagram"]
    assert "https://www.facebook.com/joesbakeryza" in browser.visited
    assert "https://instagram.com/joes_bakery" in browser.visited

    assert len(browser.pages) == 3
    assert all(p.closed for p in browser.pages)

    assert lead.phones[:2] == ["+27211234567", "+27821234567"]
    assert "joe@joesbakery.co.za" in lead.emails
    assert lead.facebook == "https://www.facebook.com/joesbakeryza"
    assert lead.instagram == "https://instagram.com/joes_bakery"
    assert "google_maps" in lead.field_sources["phones"]
    assert FALLBACK_WARNING in lead.warnings

    assert sorted(gw.calls) == ["analyze", "cross_reference", "extract", "extract", "extract", "extract", "qualify"]
    # website 50 from the default analysis, 4.6 stars, 40 reviews, phone, facebook
    assert lead.website_quality_score == 50
    assert lead.lead_score == 55
    assert lead.tier == "C"


@pytest.mark.asyncio
async def test_enrich_without_website_uses_the_listing_alone():
    browser = FakeBrowser()
    gw = FakeGateway()
    lead = await EnrichmentPipeline(EnrichmentOracle(gw)).enrich(
        browser, candidate("Corner Cafe"), CTX, CancellationToken("job-1")
    )

    assert lead.sources == ["google_maps"]
    assert lead.warnings == [SINGLE_SOURCE_WARNING]
    assert lead.phones == ["+27211234567"]
    assert lead.whatsapp_number == "+27211234567"
    assert gw.calls == ["analyze", "qualify"]
    assert all("google.com/search" in url for url in browser.visited)
    assert all(p.closed for p in browser.pages)
    assert lead.tier == "A"
    assert lead.lead_score == 85


@pytest.mark.asyncio
async def test_cancel_during_scrape_aborts_every_subtask_and_closes_pages():
    browser = FakeBrowser(block=True)
    gw = FakeGateway()
    token = CancellationToken("job-1")
    task = asyncio.create_task(
        EnrichmentPipeline(EnrichmentOracle(gw)).enrich(
            browser, candidate("Joe's Bakery", website="https://joesbakery.co.za"), CTX, token
        )
    )
    await asyncio.wait_for(browser.goto_started.wait(), timeout=5)
    token.cancel()

    with pytest.raises(JobCancelledError):
        await asyncio.wait_for(task, timeout=5)
    assert len(browser.pages) == 3
    assert all(p.closed for p in browser.pages)
    assert gw.calls == []


@pytest.mark.asyncio
async def test_gather_settled_reports_cancelled_for_every_subtask():
    token = CancellationToken("job-1")

    async def blocked():
        return await token.run(asyncio.Event().wait())

    task = asyncio.create_task(gather_settled(blocked(), blocked(), blocked()))
    await asyncio.sleep(0)
    token.cancel()
    results = await asyncio.wait_for(task, timeout=5)

    assert len(results) == 3
    assert all(isinstance(r, JobCancelledError) for r in results)


@pytest.mark.asyncio
async def test_closed_browser_surfaces_as_browser_closed():
    browser = FakeBrowser()
    browser.closed = True
    with pytest.raises(BrowserClosedError):
        await EnrichmentPipeline(EnrichmentOracle(FakeGateway())).enrich(
            browser, candidate("Joe's Bakery"), CTX, CancellationToken("job-1")
        )


def test_stop_priority_browser_closed_then_cancel_then_error():
    token = CancellationToken("job-1")
    with pytest.raises(BrowserClosedError):
        _raise_if_stopped([ValueError("x"), JobCancelledError("job-1"), BrowserClosedError("job-1")], token)
    with pytest.raises(JobCancelledError) as exc:
        _raise_if_stopped([ValueError("x"), None, JobCancelledError("job-1")], token)
    assert not isinstance(exc.value, BrowserClosedError)
    with pytest.raises(ValueError):
        _raise_if_stopped([None, ValueError("x")], token)
    _raise_if_stopped([None, None], token)


@pytest.mark.asyncio
async def test_scrape_errors_are_best_effort_but_closed_browser_is_not():
    token = CancellationToken("job-1")

    async def dns_failure():
        raise RuntimeError("net::ERR_NAME_NOT_RESOLVED")

    async def target_closed():
        raise RuntimeError("Target closed")

    assert await pages._best_effort("website", token, dns_failure()) is None
    with pytest.raises(BrowserClosedError):
        await pages._best_effort("website", token, target_closed())
