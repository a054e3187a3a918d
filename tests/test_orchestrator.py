import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import func, select

from leadscout.config import DEFAULT_CATEGORIES, DEFAULT_CITIES
from leadscout.errors import JobNotFoundError
from leadscout.history import DedupHistory
from leadscout.models import EnrichedLead, JobContext
from leadscout.orchestrator import CANCELLED_MESSAGE, RESTART_MESSAGE, JobOrchestrator
from leadscout.process_tracker import ProcessTracker
from leadscout.quality_gate import QualityGate
from leadscout.schema import COMPLETED, FAILED, RUNNING, SCHEDULED, Lead, utcnow
from leadscout.store import LeadStore
from tests.conftest import (
    FakeBrowser,
    FakePipeline,
    FakeResponse,
    FakeSearchSource,
    FakeSession,
    candidate,
    chrome_cmd,
    pagespeed_payload,
)


class BlockingPipeline:
    """Hangs inside enrichment until the job's token fires."""

    def __init__(self):
        self.started = asyncio.Event()
        self.calls = []

    async def enrich(self, browser, candidate, ctx, token):
        self.calls.append(candidate.name)
        self.started.set()
        return await token.run(asyncio.Event().wait())


class Harness:
    def __init__(self, engine, settings, tracker, backend, results, pipeline=None, responses=None):
        self.engine = engine
        self.backend = backend
        self.tracker = tracker
        self.search = FakeSearchSource(results)
        self.pipeline = pipeline or FakePipeline()
        self.session = FakeSession(responses or [FakeResponse(500)])
        self.gate = QualityGate(settings, session=self.session)
        self.browsers = []
        self.orch = JobOrchestrator(
            engine,
            settings=settings,
            tracker=tracker,
            quality_gate=self.gate,
            pipeline=self.pipeline,
            browser_factory=self._browser,
            search_source_factory=lambda browser: self.search,
        )

    async def _browser(self, job_id):
        # the "launched" chromium shows up in the process list with our tags
        self.backend.add(9000 + len(self.browsers), chrome_cmd(self.tracker, job_id))
        browser = FakeBrowser()
        self.browsers.append(browser)
        return browser

    def schedule(self, leads=1, categories=("bakery",), locations=("Springfield",), **kw):
        return self.orch.schedule_job(
            categories=list(categories), locations=list(locations), leads_requested=leads, team_id="team-1", **kw
        )

    def lead_count(self):
        with self.engine.connect() as conn:
            return conn.execute(select(func.count()).select_from(Lead)).scalar()

    def messages(self, job_id):
        return [e.message for e in self.orch.job_log.entries(job_id)]

    def assert_released(self, job_id):
        assert self.tracker.registered_jobs() == {}
        assert len(self.orch.tokens) == 0
        assert not self.orch.is_live(job_id)
        assert self.orch.jobs.load_process_pids(job_id) == []
        assert all(b.closed for b in self.browsers)
        assert self.search.closed


@pytest.fixture
def make(engine, settings, tracker, backend):
    def _make(results, **kw):
        return Harness(engine, settings, tracker, backend, results, **kw)

    return _make


# -----------------------------
# Happy paths
# -----------------------------
@pytest.mark.asyncio
async def test_single_lead_job_completes_and_releases_everything(make):
    h = make(
        {
            ("bakery", "Springfield"): [
                candidate("Joe's Bakery"),
                candidate("Crust"),
                candidate("Loaf"),
            ]
        }
    )
    job_id = h.schedule(leads=1)

    status = await h.orch.run_job(job_id)

    assert status == COMPLETED
    job = h.orch.jobs.get_job(job_id)
    assert job.leads_found == 1
    assert job.error is None
    assert h.pipeline.calls == ["Joe's Bakery"]
    assert h.search.calls == [("bakery", "Springfield", 1)]
    assert h.gate.api_calls == 0
    assert h.lead_count() == 1
    assert h.backend.killed == [9000]
    h.assert_released(job_id)
    assert any(m.startswith("Target reached: 1/1") for m in h.messages(job_id))


@pytest.mark.asyncio
async def test_target_stops_mid_batch_and_search_is_bounded(make):
    h = make(
        {
            ("bakery", "Springfield"): [candidate("A")],
            ("bakery", "Shelbyville"): [candidate("B"), candidate("C"), candidate("D")],
            ("bakery", "Ogdenville"): [candidate("E")],
        }
    )
    job_id = h.schedule(leads=2, locations=("Springfield", "Shelbyville", "Ogdenville"))

    assert await h.orch.run_job(job_id) == COMPLETED

    assert h.pipeline.calls == ["A", "B"]
    assert h.search.calls == [("bakery", "Springfield", 2), ("bakery", "Shelbyville", 1)]
    assert h.orch.jobs.get_job(job_id).leads_found == 2


@pytest.mark.asyncio
async def test_exhausted_search_space_completes_short(make):
    h = make({("bakery", "Springfield"): [candidate("A")]})
    job_id = h.schedule(leads=5)

    assert await h.orch.run_job(job_id) == COMPLETED
    job = h.orch.jobs.get_job(job_id)
    assert job.leads_found == 1
    assert any("exhausted" in m for m in h.messages(job_id))


@pytest.mark.asyncio
async def test_empty_search_space_uses_country_defaults(make):
    h = make({})
    job_id = h.schedule(leads=1, categories=(), locations=(), country="za")

    assert await h.orch.run_job(job_id) == COMPLETED
    assert h.search.calls[0] == (DEFAULT_CATEGORIES[0], DEFAULT_CITIES["ZA"][0], 1)
    assert len(h.search.calls) == len(DEFAULT_CATEGORIES) * len(DEFAULT_CITIES["ZA"])


# -----------------------------
# Filtering
# -----------------------------
@pytest.mark.asyncio
async def test_previously_rejected_business_is_never_reanalyzed(make, engine):
    slick = candidate("Slick Bakery", website="https://slick-bakery.co.za")
    DedupHistory(engine).record(
        slick,
        JobContext("old-job", "team-1", "bakery", "Springfield", "ZA"),
        is_good_prospect=False,
        skip_reason="Has quality website (90/100)",
        website_quality=90,
    )
    h = make({("bakery", "Springfield"): [slick, candidate("Fresh Bakery")]})
    job_id = h.schedule(leads=1)

    assert await h.orch.run_job(job_id) == COMPLETED

    assert h.pipeline.calls == ["Fresh Bakery"]
    assert h.gate.api_calls == 0
    assert h.session.calls == []
    assert any("Skipping (from history): Slick Bakery" in m for m in h.messages(job_id))


@pytest.mark.asyncio
async def test_existing_lead_is_skipped(make, engine):
    existing = candidate("Joe's Bakery")
    LeadStore(engine).create_lead(
        EnrichedLead(business_name=existing.name, maps_url=existing.maps_url, lead_score=80, tier="B"),
        JobContext("seed-job", "team-1", "bakery", "Springfield", "ZA"),
    )
    h = make({("bakery", "Springfield"): [existing, candidate("Crust")]})
    job_id = h.schedule(leads=1)

    assert await h.orch.run_job(job_id) == COMPLETED
    assert h.pipeline.calls == ["Crust"]
    assert h.lead_count() == 2
    assert any("Skipping (already exists): Joe's Bakery" in m for m in h.messages(job_id))


@pytest.mark.asyncio
async def test_quality_website_is_rejected_and_remembered(make, engine):
    slick = candidate("Slick Bakery", website="https://slick-bakery.co.za")
    h = make(
        {("bakery", "Springfield"): [slick, candidate("Fresh Bakery")]},
        responses=[FakeResponse(200, pagespeed_payload())],
    )
    job_id = h.schedule(leads=1)

    assert await h.orch.run_job(job_id) == COMPLETED

    assert h.pipeline.calls == ["Fresh Bakery"]
    assert h.gate.api_calls == 1
    seen = DedupHistory(engine).check(slick, "Springfield", "ZA")
    assert seen.seen and not seen.is_good_prospect
    assert seen.skip_reason == "Has quality website (90/100)"


@pytest.mark.asyncio
async def test_tier_d_is_recorded_as_disqualified(make, engine):
    h = make(
        {("bakery", "Springfield"): [candidate("Meh"), candidate("Good")]},
        pipeline=FakePipeline(tiers={"Meh": "D"}),
    )
    job_id = h.schedule(leads=1)

    assert await h.orch.run_job(job_id) == COMPLETED

    assert h.pipeline.calls == ["Meh", "Good"]
    assert h.lead_count() == 1
    seen = DedupHistory(engine).check(candidate("Meh"), "Springfield", "ZA")
    assert seen.skip_reason == "AI disqualified (Tier D, Score: 20)"
    converted = DedupHistory(engine).check(candidate("Good"), "Springfield", "ZA")
    assert converted.is_good_prospect and converted.was_converted
    assert converted.skip_reason == "Converted to lead (Tier B, Score: 75)"


@pytest.mark.asyncio
async def test_search_error_for_one_location_continues(make):
    h = make(
        {
            ("bakery", "Springfield"): RuntimeError("maps layout changed"),
            ("bakery", "Shelbyville"): [candidate("A")],
        }
    )
    job_id = h.schedule(leads=1, locations=("Springfield", "Shelbyville"))

    assert await h.orch.run_job(job_id) == COMPLETED
    assert h.pipeline.calls == ["A"]
    assert any("Error searching bakery in Springfield" in m for m in h.messages(job_id))


# -----------------------------
# Stop paths
# -----------------------------
@pytest.mark.asyncio
async def test_cancel_during_enrichment(make):
    pipeline = BlockingPipeline()
    h = make({("bakery", "Springfield"): [candidate("Joe's Bakery"), candidate("Crust")]}, pipeline=pipeline)
    job_id = h.schedule(leads=1)

    task = asyncio.create_task(h.orch.run_job(job_id))
    await asyncio.wait_for(pipeline.started.wait(), timeout=5)
    assert h.orch.is_live(job_id)

    report = await h.orch.cancel_job(job_id)
    status = await asyncio.wait_for(task, timeout=5)

    assert report.killed == 1
    assert status == COMPLETED
    job = h.orch.jobs.get_job(job_id)
    assert job.error == CANCELLED_MESSAGE
    assert job.leads_found == 0
    assert pipeline.calls == ["Joe's Bakery"]
    assert h.lead_count() == 0
    assert h.backend.killed == [9000]
    h.assert_released(job_id)


@pytest.mark.asyncio
async def test_cancel_while_waiting_for_browser_processes(engine, settings, backend):
    slow_tracker = ProcessTracker(backend, scan_delay_s=3, cache_ttl_s=0)
    h = Harness(engine, settings, slow_tracker, backend, {("bakery", "Springfield"): [candidate("A")]})
    job_id = h.schedule(leads=1)

    task = asyncio.create_task(h.orch.run_job(job_id))
    while not h.browsers:
        await asyncio.sleep(0.01)
    await asyncio.sleep(0.2)
    loop = asyncio.get_running_loop()
    cancelled_at = loop.time()
    assert h.orch.tokens.cancel(job_id)

    status = await asyncio.wait_for(task, timeout=2)

    assert loop.time() - cancelled_at < 0.5
    assert status == COMPLETED
    assert h.orch.jobs.get_job(job_id).error == CANCELLED_MESSAGE
    assert h.search.calls == []
    assert h.backend.killed == [9000]
    assert slow_tracker.registered_jobs() == {}
    assert all(b.closed for b in h.browsers)


@pytest.mark.asyncio
async def test_fatal_error_marks_job_failed(engine, settings, tracker):
    async def broken_browser(job_id):
        raise RuntimeError("chromium missing")

    orch = JobOrchestrator(
        engine,
        settings=settings,
        tracker=tracker,
        pipeline=FakePipeline(),
        browser_factory=broken_browser,
        search_source_factory=lambda b: FakeSearchSource({}),
    )
    job_id = orch.schedule_job(categories=["bakery"], locations=["Springfield"], leads_requested=1)

    assert await orch.run_job(job_id) == FAILED
    assert orch.jobs.get_job(job_id).error == "chromium missing"
    assert len(orch.tokens) == 0
    assert not orch.is_live(job_id)


@pytest.mark.asyncio
async def test_terminal_job_is_not_rerun(make):
    h = make({("bakery", "Springfield"): [candidate("A")]})
    job_id = h.schedule(leads=1)
    h.orch.jobs.finish(job_id, FAILED, error="earlier")

    assert await h.orch.run_job(job_id) == FAILED
    assert h.search.calls == []
    assert h.browsers == []
    with pytest.raises(JobNotFoundError):
        await h.orch.run_job("missing")


@pytest.mark.asyncio
async def test_cancel_job_not_live_here_uses_persisted_pids(make):
    h = make({})
    job_id = h.schedule(leads=1)
    h.orch.jobs.mark_running(job_id)
    h.backend.add(555, chrome_cmd(h.tracker, job_id))
    h.orch.jobs.save_process_pids(job_id, [{"pid": 555, "job_id": job_id, "method": "tag_match"}])

    report = await h.orch.cancel_job(job_id)
    again = await h.orch.cancel_job(job_id)

    assert report.killed == 1
    assert again.killed == 0
    job = h.orch.jobs.get_job(job_id)
    assert job.status == COMPLETED
    assert job.error == CANCELLED_MESSAGE
    assert h.orch.jobs.load_process_pids(job_id) == []


# -----------------------------
# Lifecycle
# -----------------------------
@pytest.mark.asyncio
async def test_rehydrate_fails_orphaned_running_jobs(make):
    h = make({})
    orphan = h.schedule(leads=1)
    untouched = h.schedule(leads=1)
    h.orch.jobs.mark_running(orphan)
    h.backend.add(555, chrome_cmd(h.tracker, orphan))
    h.orch.jobs.save_process_pids(orphan, [{"pid": 555, "job_id": orphan, "method": "tag_match"}])

    assert await h.orch.rehydrate() == [orphan]

    job = h.orch.jobs.get_job(orphan)
    assert job.status == FAILED
    assert job.error == RESTART_MESSAGE
    assert h.backend.killed == [555]
    assert h.orch.jobs.load_process_pids(orphan) == []
    assert h.orch.jobs.get_job(untouched).status == SCHEDULED


@pytest.mark.asyncio
async def test_delete_job(make):
    h = make({})
    job_id = h.schedule(leads=1)

    assert await h.orch.delete_job(job_id) is True
    assert h.orch.jobs.find_job(job_id) is None
    with pytest.raises(JobNotFoundError):
        await h.orch.delete_job(job_id)


def test_schedule_job_validates_and_normalizes(make):
    h = make({})
    with pytest.raises(ValueError):
        h.schedule(leads=0)
    job = h.orch.jobs.get_job(h.schedule(leads=3, country="us"))
    assert job.country == "US"
    assert job.status == SCHEDULED
    assert job.min_rating == 4.0


@pytest.mark.asyncio
async def test_run_pending_jobs_runs_only_due_jobs(make):
    h = make({("bakery", "Springfield"): [candidate("A"), candidate("B")]})
    due = h.schedule(leads=1, scheduled_for=utcnow() - timedelta(minutes=1))
    later = h.schedule(leads=1, scheduled_for=utcnow() + timedelta(hours=1))

    results = await h.orch.run_pending_jobs()

    assert results == {due: COMPLETED}
    assert h.orch.jobs.get_job(later).status == SCHEDULED
    assert RUNNING not in results.values()
