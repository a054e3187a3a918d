
import pytest
import requests

from leadscout.cancellation import CancellationToken
from leadscout.errors import JobCancelledError
from leadscout.quality_gate import (
    API_ERROR,
    DIY_WEBSITE_PLATFORM,
    HAS_QUALITY_WEBSITE,
    NEUTRAL_SCORE,
    NO_WEBSITE,
    POOR_QUALITY_WEBSITE,
    SOCIAL_OR_DIRECTORY,
    UNANALYZABLE_ISSUE,
    UNANALYZABLE_SCORE,
    QualityCache,
    QualityGate,
    cache_key,
    parse_pagespeed,
    quick_check,
)
from tests.conftest import FakeResponse, FakeSession, pagespeed_payload


def make_gate(settings, responses):
    session = FakeSession(responses)
    return QualityGate(settings, session=session), session


def test_quick_check_classifies_without_network():
    assert quick_check(None)[0].reason == NO_WEBSITE
    assert quick_check("  ")[0].is_good_prospect
    assert quick_check("https://facebook.com/joesbakery")[0].reason == SOCIAL_OR_DIRECTORY
    assert quick_check("joesbakery.wixsite.com/home")[0].reason == DIY_WEBSITE_PLATFORM
    verdict, estimate = quick_check("https://joes-bakery.co.za")
    assert verdict is None
    assert estimate == 70


def test_cache_key_normalizes():
    assert cache_key("Example.com/") == cache_key("https://example.com")


def test_parse_pagespeed_scores_and_issues():
    r = parse_pagespeed("https://x.co.za", pagespeed_payload(perf=0.3, acc=0.8, bp=0.7, seo=0.4, failing=("viewport",)))
    assert r.score == int(round(30 * 0.25 + 80 * 0.25 + 70 * 0.25 + 40 * 0.25))
    assert "Poor performance" in r.issues
    assert "Poor SEO" in r.issues
    assert len(r.issues) >= 3


@pytest.mark.asyncio
async def test_http_400_short_circuits_without_retry(settings):
    gate, session = make_gate(settings, [FakeResponse(400)])
    r = await gate.analyze("https://example-bakery.co.za")
    assert r.score == UNANALYZABLE_SCORE
    assert r.issues == [UNANALYZABLE_ISSUE]
    assert r.error is None
    assert len(session.calls) == 1
    # not cached: a later run may succeed
    assert len(gate.cache) == 0


@pytest.mark.asyncio
async def test_429_exhausts_exactly_the_attempt_ceiling(settings):
    settings.quality_max_attempts = 3
    gate, session = make_gate(settings, [FakeResponse(429)])
    r = await gate.analyze("https://example.com")
    assert len(session.calls) == 3
    assert r.score == NEUTRAL_SCORE
    assert r.error.startswith("API failed after 3 retries")


@pytest.mark.asyncio
async def test_network_error_then_success(settings):
    gate, session = make_gate(
        settings, [requests.ConnectionError("reset"), FakeResponse(200, pagespeed_payload())]
    )
    r = await gate.analyze("https://example.com")
    assert len(session.calls) == 2
    assert r.error is None
    assert r.score == 90


@pytest.mark.asyncio
async def test_cache_gives_one_api_call_for_same_url(settings):
    gate, session = make_gate(settings, [FakeResponse(200, pagespeed_payload(perf=0.5))])
    first = await gate.analyze("https://example.com")
    second = await gate.analyze("example.com/")
    assert len(session.calls) == 1
    assert gate.api_calls == 1
    assert second.cached and not first.cached
    assert second.score == first.score


def test_cache_entries_expire():
    now = [0.0]
    cache = QualityCache(ttl_s=10, clock=lambda: now[0])
    cache.put("https://a.com", parse_pagespeed("https://a.com", pagespeed_payload()))
    assert cache.get("a.com") is not None
    now[0] = 11
    assert cache.get("a.com") is None


def test_backoff_doubles(settings):
    settings.quality_backoff_s = 30
    gate = QualityGate(settings, session=FakeSession([FakeResponse(200, {})]))
    assert [gate._backoff_s(a) for a in (2, 3, 4)] == [30, 60, 120]


@pytest.mark.asyncio
async def test_check_prospect_thresholds(settings):
    gate, _ = make_gate(settings, [FakeResponse(200, pagespeed_payload(perf=0.3, acc=0.4, bp=0.4, seo=0.3))])
    poor = await gate.check_prospect("https://poor.example")
    assert poor.is_good_prospect
    assert poor.reason == POOR_QUALITY_WEBSITE

    gate, _ = make_gate(settings, [FakeResponse(200, pagespeed_payload())])
    good = await gate.check_prospect("https://good.example")
    assert not good.is_good_prospect
    assert good.reason == HAS_QUALITY_WEBSITE


@pytest.mark.asyncio
async def test_check_prospect_api_failure_is_a_neutral_prospect(settings):
    settings.quality_max_attempts = 2
    gate, _ = make_gate(settings, [FakeResponse(503)])
    check = await gate.check_prospect("https://down.example")
    assert check.is_good_prospect
    assert check.reason == API_ERROR
    assert check.quality_score == NEUTRAL_SCORE


@pytest.mark.asyncio
async def test_no_website_never_calls_api(settings):
    gate, session = make_gate(settings, [FakeResponse(200, pagespeed_payload())])
    check = await gate.check_prospect(None)
    assert check.reason == NO_WEBSITE
    assert session.calls == []


@pytest.mark.asyncio
async def test_cancelled_token_stops_before_any_call(settings):
    gate, session = make_gate(settings, [FakeResponse(200, pagespeed_payload())])
    token = CancellationToken("j1")
    token.cancel()
    with pytest.raises(JobCancelledError):
        await gate.analyze("https://example.com", token)
    assert session.calls == []
