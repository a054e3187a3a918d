"""
Operator entry point for leftover scraper browsers.

Usage:
    python scripts/manage_processes.py status
    python scripts/manage_processes.py kill [--job-id JOB_ID]
    python scripts/manage_processes.py kill-all [--yes]

Same as the installed `leadscout-processes` command.
"""

import sys

from leadscout.cli import main

if __name__ == "__main__":
    sys.exit(main())
