"""
leadscout

Background lead-scraping jobs: map-listing search, website quality gate,
multi-source enrichment and lead persistence, with cooperative cancellation
and OS-level cleanup of the browser processes each job spawns.
"""

__all__ = ["__version__"]

__version__ = "0.3.0"
