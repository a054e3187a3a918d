"""
Operator CLI for browser processes left by scraping jobs.

    leadscout-processes status
    leadscout-processes kill [--job-id ID]
    leadscout-processes kill-all [--yes]

`kill` only touches processes carrying our tool tag. `kill-all` kills every
headless Chrome/Chromium on the host and asks first unless --yes is given.
Exit status is non-zero only on an unexpected internal error.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Callable, List, Optional

from dotenv import load_dotenv

from .process_tracker import KillReport, ProcessTracker

logger = logging.getLogger(__name__)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="leadscout-processes", description="leadscout browser process manager")
    p.add_argument("--debug", action="store_true")
    sub = p.add_subparsers(dest="command")

    sub.add_parser("status", help="Show tracked and running scraper processes")

    kill = sub.add_parser("kill", help="Kill scraper browser processes (ours only)")
    kill.add_argument("--job-id", default=None, help="Only kill processes tagged with this job id")

    kill_all = sub.add_parser("kill-all", help="Kill ALL headless Chrome/Chromium processes on this host")
    kill_all.add_argument("--yes", action="store_true", help="Do not ask for confirmation")

    args = p.parse_args(argv)
    if not args.command:
        args.command = "status"
    return args


def _print_report(report: KillReport, out: Callable[[str], None]) -> None:
    out("Result:")
    out(f"   Killed: {report.killed}")
    out(f"   Failed: {report.failed}")
    if report.refused:
        out(f"   Refused (tag mismatch): {report.refused}")
    if report.pids:
        out(f"   PIDs: {', '.join(str(p) for p in report.pids)}")


async def show_status(tracker: ProcessTracker, out: Callable[[str], None] = print) -> int:
    status = await tracker.status()
    out(status.summary)
    for p in status.running:
        out(f"   {p.pid:>7}  {p.name}  {(p.command_line or '')[:120]}")
    if status.running:
        out("To kill these processes, run: leadscout-processes kill")
    return 0


async def kill_scraper(
    tracker: ProcessTracker, job_id: Optional[str] = None, out: Callable[[str], None] = print
) -> int:
    if job_id:
        report = await tracker.find_and_kill_job_processes(job_id)
    else:
        running = await tracker.tool_processes(fresh=True)
        if not running:
            out("No scraper processes found running.")
            return 0
        out(f"Found {len(running)} scraper process(es). Killing them now...")
        report = await tracker.kill_all_scraper_processes()
    _print_report(report, out)
    return 0


async def kill_all(
    tracker: ProcessTracker,
    *,
    assume_yes: bool = False,
    ask: Callable[[str], str] = input,
    out: Callable[[str], None] = print,
) -> int:
    out("WARNING: this kills ALL headless Chrome/Chromium processes, including other applications' browsers.")
    if not assume_yes:
        try:
            answer = ask("Are you sure you want to continue? (yes/no): ")
        except EOFError:
            answer = ""
        if answer.strip().lower() != "yes":
            out("Cancelled.")
            return 0
    report = await tracker.kill_all_headless_browsers()
    _print_report(report, out)
    return 0


async def run(args: argparse.Namespace, tracker: Optional[ProcessTracker] = None) -> int:
    tracker = tracker or ProcessTracker()
    if args.command == "kill":
        return await kill_scraper(tracker, args.job_id)
    if args.command == "kill-all":
        return await kill_all(tracker, assume_yes=args.yes)
    return await show_status(tracker)


def main(argv: Optional[List[str]] = None) -> int:
    load_dotenv()
    args = parse_args(argv)
    logging.basicConfig(
        level=logging.DEBUG if args.debug else logging.INFO,
        format="%(asctime)s.%(msecs)03d %(levelname)s %(message)s",
        datefmt="%H:%M:%S",
    )
    try:
        return asyncio.run(run(args))
    except KeyboardInterrupt:
        return 130
    except Exception:
        logger.exception("process manager failed")
        return 1


if __name__ == "__main__":
    sys.exit(main())
