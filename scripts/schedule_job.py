"""
Queue a scraping job for the pending-jobs flow to pick up.

Usage:
    set -o allexport; source /etc/leadscout/secret.env; set +o allexport
    python scripts/schedule_job.py --leads 10 --category plumber --category electrician --location "Cape Town"
    python scripts/schedule_job.py --leads 5 --country US --in-minutes 30
"""

from __future__ import annotations

import argparse
import json
import logging
import sys
from datetime import timedelta
from typing import List, Optional

from dotenv import load_dotenv

from leadscout.orchestrator import JobOrchestrator
from leadscout.schema import utcnow

logger = logging.getLogger("schedule_job")


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="Schedule a leadscout scraping job")
    p.add_argument("--leads", type=int, required=True, help="Number of leads to find")
    p.add_argument("--category", action="append", default=[], help="Business category (repeatable)")
    p.add_argument("--location", action="append", default=[], help="City or area (repeatable)")
    p.add_argument("--country", default=None, help="ISO country code (default from LEADSCOUT_DEFAULT_COUNTRY)")
    p.add_argument("--min-rating", type=float, default=None)
    p.add_argument("--team-id", default=None)
    p.add_argument("--in-minutes", type=int, default=0, help="Delay before the job becomes due")
    return p.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s.%(msecs)03d %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )
    args = parse_args(argv)

    orch = JobOrchestrator.from_env()
    try:
        job_id = orch.schedule_job(
            categories=args.category,
            locations=args.location,
            leads_requested=args.leads,
            country=args.country,
            min_rating=args.min_rating,
            team_id=args.team_id,
            scheduled_for=utcnow() + timedelta(minutes=max(0, args.in_minutes)),
        )
    except ValueError as e:
        logger.error("invalid job: %s", e)
        return 2

    print(json.dumps({"event": "scraping_job_scheduled", "job_id": job_id}, sort_keys=True))
    return 0


if __name__ == "__main__":
    sys.exit(main())
