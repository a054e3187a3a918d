from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from prefect import flow, get_run_logger
from prefect.runtime import flow_run  # type: ignore

from leadscout.orchestrator import JobOrchestrator


def _run_id() -> Optional[str]:
    run_id = getattr(flow_run, "id", None)
    return str(run_id) if run_id else None


def _job_summary(orch: JobOrchestrator, job_id: str) -> Dict[str, Any]:
    job = orch.jobs.get_job(job_id)
    return {
        "job_id": job_id,
        "status": job.status,
        "leads_requested": job.leads_requested,
        "leads_found": job.leads_found,
        "error": job.error,
    }


@flow(name="leadscout-scraping-job", persist_result=False)
async def scraping_job(job_id: str) -> Dict[str, Any]:
    """
    Run one scraping job to a terminal status.

    Emits one JSON summary line per run for runbook checks.
    """
    load_dotenv()
    logger = get_run_logger()
    orch = JobOrchestrator.from_env()

    logger.info(json.dumps({"event": "scraping_job_started", "job_id": job_id, "run_id": _run_id()}, sort_keys=True))
    await orch.run_job(job_id)

    summary = _job_summary(orch, job_id)
    payload = {"event": "scraping_job_complete", "run_id": _run_id(), **summary}
    if summary["status"] == "FAILED":
        logger.error(json.dumps(payload, sort_keys=True))
    else:
        logger.info(json.dumps(payload, sort_keys=True))
    return summary


@flow(name="leadscout-pending-jobs", persist_result=False)
async def pending_scraping_jobs() -> Dict[str, Any]:
    """
    Scheduler tick: recover orphans from a previous host, then run every
    SCHEDULED job that is due.
    """
    load_dotenv()
    logger = get_run_logger()
    orch = JobOrchestrator.from_env()

    orphaned = await orch.rehydrate()
    if orphaned:
        logger.warning(json.dumps({"event": "scraping_jobs_orphaned", "job_ids": orphaned}, sort_keys=True))

    results = await orch.run_pending_jobs()
    jobs: List[Dict[str, Any]] = [_job_summary(orch, job_id) for job_id in results]
    for j in jobs:
        logger.info(f"[{j['job_id']}] status={j['status']} leads={j['leads_found']}/{j['leads_requested']}")

    payload = {
        "event": "pending_scraping_jobs_complete",
        "run_id": _run_id(),
        "orphaned": len(orphaned),
        "ran": len(jobs),
        "completed": sum(1 for j in jobs if j["status"] == "COMPLETED"),
        "failed": sum(1 for j in jobs if j["status"] == "FAILED"),
        "leads_found": sum(int(j["leads_found"] or 0) for j in jobs),
    }
    logger.info(json.dumps(payload, sort_keys=True))
    return {**payload, "jobs": jobs}


if __name__ == "__main__":
    import asyncio

    asyncio.run(pending_scraping_jobs())
