"""
Job orchestration for leadscout.

Prefect-free; the Prefect wrappers live in flows/scraping_job_flow.py.

State machine per job:
    SCHEDULED -> RUNNING -> {COMPLETED, FAILED}

Loop shape:
    for category:
      for location:                      (outer loop breakable from anywhere)
        search (bounded to what is still needed)
        for candidate, in listing order:
          history  -> quality gate -> enrichment -> persist -> history

Stop conditions:
- target reached: status written the moment the count is hit, every loop exits
- cancel / browser closed: COMPLETED with "Job cancelled by user"
- anything else escaping the loop: FAILED with the error message

Cleanup (every exit path, in order):
    persist final status, release token, close browser, kill tagged
    processes, clear persisted PIDs, drop the job from the live registry
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from sqlalchemy.engine import Engine

from .cancellation import CancellationToken, TokenRegistry
from .config import DEFAULT_CATEGORIES, DEFAULT_CITIES, Settings
from .db import get_engine, init_db
from .enrichment import EnrichmentPipeline
from .errors import BrowserClosedError, JobCancelledError, JobNotFoundError
from .history import DedupHistory
from .job_logger import JobLogger
from .models import Candidate, JobContext
from .oracle import EnrichmentOracle, OracleGateway
from .process_tracker import KillReport, ProcessTracker
from .quality_gate import QualityGate, quick_check
from .schema import COMPLETED, FAILED, RUNNING, TERMINAL_STATUSES, ScrapingJob
from .scrape.browser import BrowserSession
from .sources import SearchSource
from .sources.google_maps import MapsSearchSource
from .store import JobStore, LeadStore

logger = logging.getLogger(__name__)

CANCELLED_MESSAGE = "Job cancelled by user"
BROWSER_CLOSED_MESSAGE = "Browser was closed"
RESTART_MESSAGE = "Interrupted by host restart"

BrowserFactory = Callable[[str], Awaitable[Any]]
SearchSourceFactory = Callable[[Any], SearchSource]


class TargetReached(Exception):
    """Internal: unwinds every loop once leads_found hits the target."""


@dataclass
class LiveJob:
    """In-memory handles for one running job."""
    job_id: str
    token: CancellationToken
    target: int = 0
    leads_found: int = 0
    browser: Any = None
    search: Optional[SearchSource] = None
    cancelled: bool = False
    stats: Dict[str, int] = field(default_factory=dict)

    def bump(self, key: str) -> None:
        self.stats[key] = self.stats.get(key, 0) + 1


# -----------------------------
# Small helpers
# -----------------------------
async def _close_quietly(what: str, job_id: str, obj: Any) -> None:
    if obj is None:
        return
    try:
        await obj.close()
    except Exception as e:
        logger.debug("close %s job_id=%s: %s", what, job_id, e)


def _search_space(job: ScrapingJob, country: str) -> Tuple[List[str], List[str]]:
    categories = list(job.categories or []) or list(DEFAULT_CATEGORIES)
    locations = list(job.locations or []) or list(DEFAULT_CITIES.get(country.upper(), []))
    return categories, locations


class JobOrchestrator:
    def __init__(
        self,
        engine: Engine,
        *,
        settings: Optional[Settings] = None,
        tracker: Optional[ProcessTracker] = None,
        tokens: Optional[TokenRegistry] = None,
        job_log: Optional[JobLogger] = None,
        quality_gate: Optional[QualityGate] = None,
        pipeline: Optional[EnrichmentPipeline] = None,
        history: Optional[DedupHistory] = None,
        jobs: Optional[JobStore] = None,
        leads: Optional[LeadStore] = None,
        browser_factory: Optional[BrowserFactory] = None,
        search_source_factory: Optional[SearchSourceFactory] = None,
    ):
        self.settings = settings or Settings()
        self.tracker = tracker or ProcessTracker(scan_delay_s=self.settings.process_scan_delay_s)
        self.tokens = tokens or TokenRegistry()
        self.job_log = job_log or JobLogger(max_entries=self.settings.job_log_max)
        self.quality_gate = quality_gate or QualityGate(self.settings)
        self.pipeline = pipeline or EnrichmentPipeline(EnrichmentOracle())
        self.history = history or DedupHistory(engine)
        self.jobs = jobs or JobStore(engine)
        self.leads = leads or LeadStore(engine)
        self.browser_factory = browser_factory or self._launch_browser
        self.search_source_factory = search_source_factory or self._maps_source
        self._live: Dict[str, LiveJob] = {}

    @classmethod
    def from_env(cls, engine: Optional[Engine] = None) -> "JobOrchestrator":
        """Entry-point constructor: env settings, DATABASE_URL engine, tables ensured."""
        settings = Settings.from_env()
        eng = init_db(engine or get_engine())
        oracle = EnrichmentOracle(OracleGateway(model=settings.oracle_model))
        return cls(eng, settings=settings, pipeline=EnrichmentPipeline(oracle))

    # -----------------------------
    # Default factories
    # -----------------------------
    async def _launch_browser(self, job_id: str) -> BrowserSession:
        session = BrowserSession(job_id, self.tracker, headless=self.settings.headless)
        return await session.start()

    def _maps_source(self, browser: Any) -> SearchSource:
        return MapsSearchSource(browser, delay_ms=self.settings.scrape_delay_ms)

    # -----------------------------
    # Live registry
    # -----------------------------
    def is_live(self, job_id: str) -> bool:
        return job_id in self._live

    def live_job_ids(self) -> List[str]:
        return sorted(self._live)

    # -----------------------------
    # Scheduling
    # -----------------------------
    def schedule_job(
        self,
        *,
        categories: Sequence[str],
        locations: Sequence[str],
        leads_requested: int,
        country: Optional[str] = None,
        min_rating: Optional[float] = None,
        team_id: Optional[str] = None,
        scheduled_for: Optional[datetime] = None,
    ) -> str:
        if int(leads_requested) < 1:
            raise ValueError("leads_requested must be >= 1")
        job_id = self.jobs.create_job(
            categories=categories,
            locations=locations,
            leads_requested=leads_requested,
            country=(country or self.settings.default_country).upper(),
            min_rating=self.settings.min_rating if min_rating is None else min_rating,
            team_id=team_id,
            scheduled_for=scheduled_for,
        )
        logger.info("scheduled job_id=%s leads_requested=%s", job_id, leads_requested)
        return job_id

    async def run_pending_jobs(self, now: Optional[datetime] = None) -> Dict[str, str]:
        """Run every due SCHEDULED job, one after another. Returns job_id -> final status."""
        results: Dict[str, str] = {}
        for job_id in self.jobs.pending_job_ids(now):
            results[job_id] = await self.run_job(job_id)
        return results

    # -----------------------------
    # Run
    # -----------------------------
    async def run_job(self, job_id: str) -> str:
        """
        Drive one job to a terminal status and return that status.

        Raises JobNotFoundError for an unknown id. A job that is already
        terminal (or already live in this process) is left untouched.
        """
        job = self.jobs.get_job(job_id)
        if job.status in TERMINAL_STATUSES:
            logger.info("job_id=%s already %s; not running", job_id, job.status)
            return job.status
        if job_id in self._live:
            logger.warning("job_id=%s already live in this process", job_id)
            return RUNNING
        if not self.jobs.mark_running(job_id):
            return self.jobs.get_job(job_id).status

        token = self.tokens.create(job_id)
        live = LiveJob(job_id=job_id, token=token, target=int(job.leads_requested))
        self._live[job_id] = live
        self.job_log.init(job_id)

        status, error = COMPLETED, None
        try:
            await self._start_browser(live)
            await self._search_loop(job, live)
            self.job_log.success(
                job_id, f"Search space exhausted with {live.leads_found}/{live.target} leads", dict(live.stats)
            )
        except TargetReached:
            self.job_log.success(job_id, f"Target reached: {live.leads_found}/{live.target} leads. Stopping.")
        except BrowserClosedError:
            error = CANCELLED_MESSAGE if (token.is_cancelled or live.cancelled) else BROWSER_CLOSED_MESSAGE
            self.job_log.warning(job_id, f"Stopping job: {error}")
        except JobCancelledError:
            error = CANCELLED_MESSAGE
            self.job_log.warning(job_id, "Job cancelled, stopping immediately")
        except Exception as e:
            logger.exception("job_id=%s failed", job_id)
            status, error = FAILED, (str(e) or e.__class__.__name__)
            self.job_log.error(job_id, f"Job failed: {error}")
        finally:
            await self._cleanup(live, status, error)

        final = self.jobs.get_job(job_id)
        logger.info(
            "job_id=%s finished status=%s leads_found=%s stats=%s",
            job_id,
            final.status,
            final.leads_found,
            live.stats,
        )
        return final.status

    async def _start_browser(self, live: LiveJob) -> None:
        job_id = live.job_id
        live.token.throw_if_cancelled()
        live.browser = await self.browser_factory(job_id)
        live.token.throw_if_cancelled()

        await self.tracker.register_job_processes(job_id, token=live.token)
        self.jobs.save_process_pids(job_id, self.tracker.job_process_info(job_id))
        live.search = self.search_source_factory(live.browser)
        self.job_log.info(
            job_id,
            "Browser launched",
            {"tracked_pids": [p.pid for p in self.tracker.job_processes(job_id)]},
        )

    async def _search_loop(self, job: ScrapingJob, live: LiveJob) -> None:
        job_id, token = live.job_id, live.token
        country = (job.country or self.settings.default_country).upper()
        categories, locations = _search_space(job, country)
        min_rating = job.min_rating if job.min_rating is not None else self.settings.min_rating

        self.job_log.success(
            job_id,
            "Starting scraping job",
            {
                "target": live.target,
                "country": country,
                "categories": len(categories),
                "locations": len(locations),
                "min_rating": min_rating,
            },
        )

        for category in categories:
            for location in locations:
                token.throw_if_cancelled()
                remaining = live.target - live.leads_found
                if remaining <= 0:
                    raise TargetReached()

                ctx = JobContext(job_id, job.team_id, category, location, country)
                self.job_log.progress(job_id, f"Searching: {category} in {location}")
                try:
                    candidates = await live.search.search(
                        category,
                        location,
                        country,
                        min_rating=min_rating,
                        max_results=min(self.settings.search_batch, remaining),
                        token=token,
                    )
                except JobCancelledError:
                    raise
                except Exception as e:
                    logger.warning("job_id=%s search failed %s/%s: %s", job_id, category, location, e)
                    self.job_log.error(job_id, f"Error searching {category} in {location}: {e}")
                    continue

                token.throw_if_cancelled()
                if not candidates:
                    continue
                self.job_log.info(job_id, f"Found {len(candidates)} potential businesses")

                for candidate in candidates:
                    token.throw_if_cancelled()
                    await self._process_candidate(live, candidate, ctx)
                    if live.leads_found >= live.target:
                        raise TargetReached()
                    await token.sleep(self.settings.lead_delay_s)

    async def _process_candidate(self, live: LiveJob, candidate: Candidate, ctx: JobContext) -> None:
        job_id, token = live.job_id, live.token
        live.bump("candidates")
        self.job_log.info(job_id, f"Checking: {candidate.name} ({candidate.rating})")

        seen = self.history.check(candidate, ctx.location, ctx.country)
        token.throw_if_cancelled()
        if seen.seen:
            if not seen.is_good_prospect:
                live.bump("skipped_history")
                self.job_log.info(job_id, f"Skipping (from history): {candidate.name} - {seen.skip_reason}")
                return
            if seen.was_converted:
                live.bump("skipped_history")
                self.job_log.info(job_id, f"Skipping (from history): {candidate.name} - Already a lead")
                return

        if self.leads.lead_exists(
            team_id=ctx.team_id,
            maps_url=candidate.maps_url,
            business_name=candidate.name,
            location=ctx.location,
        ):
            live.bump("skipped_existing")
            self.job_log.info(job_id, f"Skipping (already exists): {candidate.name}")
            return

        verdict, estimated = quick_check(candidate.website)
        if verdict is None:
            self.job_log.progress(job_id, f"Analyzing website quality: {candidate.website}")
            verdict = await self.quality_gate.check_prospect(candidate.website, token)
            token.throw_if_cancelled()
            website_quality = verdict.quality_score
            if not verdict.is_good_prospect:
                reason = f"Has quality website ({website_quality}/100)"
                live.bump("rejected_quality")
                self.job_log.info(job_id, f"Skipping {candidate.name} - {reason}")
                self.history.record(
                    candidate, ctx, is_good_prospect=False, skip_reason=reason, website_quality=website_quality
                )
                return
            self.job_log.success(job_id, f"Website needs improvement ({website_quality}/100) - good prospect")
        else:
            website_quality = estimated
            self.job_log.success(job_id, f"{candidate.name} - {verdict.reason} (score: {estimated})")

        self.job_log.progress(job_id, f"Starting enrichment for: {candidate.name}")
        try:
            lead = await self.pipeline.enrich(live.browser, candidate, ctx, token)
        except JobCancelledError:
            raise
        except Exception as e:
            live.bump("enrich_failed")
            logger.warning("job_id=%s enrichment failed for %r: %s", job_id, candidate.name, e)
            self.job_log.error(job_id, f"Enrichment failed for {candidate.name}: {e}")
            return
        token.throw_if_cancelled()

        if website_quality is not None:
            lead.website_quality_score = website_quality

        if lead.tier == "D" and not lead.is_qualified:
            reason = f"AI disqualified (Tier D, Score: {lead.lead_score})"
            live.bump("rejected_oracle")
            self.job_log.info(job_id, f"Not a good prospect: {candidate.name} (Tier D)")
            self.history.record(candidate, ctx, is_good_prospect=False, skip_reason=reason, website_quality=website_quality)
            return

        # last check before the write; a cancel that landed during enrichment wins
        token.throw_if_cancelled()
        self.job_log.progress(job_id, f"Saving lead: {candidate.name}")
        lead_id = self.leads.create_lead(lead, ctx)
        self.history.record(
            candidate,
            ctx,
            is_good_prospect=True,
            skip_reason=f"Converted to lead (Tier {lead.tier}, Score: {lead.lead_score})",
            website_quality=website_quality,
            lead_id=lead_id,
        )
        live.leads_found += 1
        live.bump("leads_saved")
        self.jobs.update_progress(job_id, live.leads_found)
        self.job_log.success(
            job_id,
            f"Lead saved: {candidate.name}",
            {
                "score": lead.lead_score,
                "tier": lead.tier,
                "phones": len(lead.phones),
                "emails": len(lead.emails),
            },
        )
        self.job_log.progress(job_id, f"Progress: {live.leads_found}/{live.target} leads found")

        if live.leads_found >= live.target:
            # written now so nothing after this point can change the outcome
            self.jobs.finish(job_id, COMPLETED, leads_found=live.leads_found)

    # -----------------------------
    # Cleanup
    # -----------------------------
    async def _close_handles(self, live: LiveJob) -> None:
        search, live.search = live.search, None
        browser, live.browser = live.browser, None
        await _close_quietly("search source", live.job_id, search)
        await _close_quietly("browser", live.job_id, browser)

    async def _cleanup(self, live: LiveJob, status: str, error: Optional[str]) -> None:
        job_id = live.job_id
        try:
            self.jobs.finish(job_id, status, error=error, leads_found=live.leads_found)
        except Exception:
            logger.exception("job_id=%s could not persist final status", job_id)

        self.tokens.remove(job_id)
        await self._close_handles(live)

        try:
            report = await self.tracker.find_and_kill_job_processes(job_id)
            if report.found:
                self.job_log.info(job_id, f"Process cleanup: {report.summary()}")
        except Exception:
            logger.exception("job_id=%s process cleanup failed", job_id)

        try:
            self.jobs.clear_process_pids(job_id)
        except Exception:
            logger.exception("job_id=%s could not clear persisted pids", job_id)

        self._live.pop(job_id, None)

    # -----------------------------
    # Cancel / delete / restart
    # -----------------------------
    async def cancel_job(self, job_id: str) -> KillReport:
        """
        Stop a job. Idempotent and safe to race with the job's own cleanup.

        Works for a job this process never ran: the process list is
        re-derived from the persisted descriptors and the OS.
        """
        live = self._live.get(job_id)
        self.tokens.cancel(job_id)
        if live is not None:
            live.cancelled = True
            await self._close_handles(live)
        else:
            self.tracker.restore(job_id, self.jobs.load_process_pids(job_id))

        if self.jobs.finish(job_id, COMPLETED, error=CANCELLED_MESSAGE):
            self.job_log.warning(job_id, CANCELLED_MESSAGE)

        report = await self.tracker.find_and_kill_job_processes(job_id)
        if live is None:
            self.jobs.clear_process_pids(job_id)
        logger.info("cancel job_id=%s live=%s %s", job_id, live is not None, report.summary())
        return report

    async def delete_job(self, job_id: str) -> bool:
        """Stop the job if anything of it is still around, then delete its row."""
        if self.jobs.find_job(job_id) is None and job_id not in self._live:
            raise JobNotFoundError(f"Job {job_id} not found")
        await self.cancel_job(job_id)
        self.job_log.remove(job_id)
        return self.jobs.delete_job(job_id)

    async def rehydrate(self) -> List[str]:
        """
        Startup recovery: a RUNNING row with no live driver here was
        orphaned by a restart. Kill what it left behind and fail it.
        """
        orphaned: List[str] = []
        for job_id in self.jobs.running_job_ids():
            if job_id in self._live:
                continue
            self.tracker.restore(job_id, self.jobs.load_process_pids(job_id))
            report = await self.tracker.find_and_kill_job_processes(job_id)
            self.jobs.clear_process_pids(job_id)
            self.jobs.finish(job_id, FAILED, error=RESTART_MESSAGE)
            logger.warning("rehydrate job_id=%s marked FAILED; %s", job_id, report.summary())
            orphaned.append(job_id)
        return orphaned
