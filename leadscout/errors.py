from __future__ import annotations

from typing import Optional


class LeadScoutError(Exception):
    """Base class for errors raised by leadscout."""


class JobCancelledError(LeadScoutError):
    """A job's cancellation token fired. Never retried, never logged as a failure."""

    def __init__(self, job_id: str, message: Optional[str] = None):
        self.job_id = job_id
        super().__init__(message or f"Job {job_id} was cancelled")


class BrowserClosedError(JobCancelledError):
    """The browser or page went away underneath a running job.

    Handled exactly like cancellation by the orchestrator.
    """

    def __init__(self, job_id: str = "", message: Optional[str] = None):
        super().__init__(job_id, message or "BROWSER_CLOSED")


class JobNotFoundError(LeadScoutError):
    pass


class QualityApiError(LeadScoutError):
    """Quality API call failed. `retryable` is False for definitive rejections."""

    def __init__(self, message: str, *, status: Optional[int] = None, retryable: bool = True):
        self.status = status
        self.retryable = retryable
        super().__init__(message)


class OracleError(LeadScoutError):
    """The LLM call itself failed (network, auth, empty response)."""


class OracleParseError(OracleError):
    """The LLM answered, but not with the JSON shape we asked for."""
