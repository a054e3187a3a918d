"""
leadscout.cancellation

Cooperative cancellation for scraping jobs.

One CancellationToken exists per live job. Every suspension point in the
job (navigation, sleeps, HTTP calls, LLM calls) takes the token explicitly
and either races against its abort event or polls it. Once cancelled a
token never un-cancels.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

from .errors import JobCancelledError

logger = logging.getLogger(__name__)

T = TypeVar("T")

POLL_INTERVAL_S = 0.1


class CancellationToken:
    def __init__(self, job_id: str):
        self.job_id = job_id
        self._cancelled = False
        self._event = asyncio.Event()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def abort_event(self) -> asyncio.Event:
        """Native abort signal: set exactly once, when the token is cancelled."""
        return self._event

    def cancel(self) -> None:
        if self._cancelled:
            return
        self._cancelled = True
        self._event.set()
        logger.info("cancellation token fired job_id=%s", self.job_id)

    def throw_if_cancelled(self) -> None:
        if self._cancelled:
            raise JobCancelledError(self.job_id)

    async def sleep(self, seconds: float) -> None:
        """Sleep, but raise JobCancelledError as soon as the token fires."""
        self.throw_if_cancelled()
        if seconds <= 0:
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.throw_if_cancelled()

    async def poll_sleep(self, seconds: float) -> None:
        """Sleep in POLL_INTERVAL_S slices, checking the flag between slices.

        For waits driven from code that cannot await the abort event.
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(0.0, seconds)
        while True:
            self.throw_if_cancelled()
            remaining = deadline - loop.time()
            if remaining <= 0:
                return
            await asyncio.sleep(min(POLL_INTERVAL_S, remaining))

    async def run(self, aw: Awaitable[T]) -> T:
        """
        Await `aw`, racing it against the abort event.

        - checks the token before starting and after finishing
        - if the token fires first, the operation is cancelled and
          JobCancelledError is raised
        - cancellation wins ties: a result that lands after the token fired
          is discarded
        """
        if self._cancelled:
            if asyncio.iscoroutine(aw):
                aw.close()
            raise JobCancelledError(self.job_id)

        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            task.cancel()
            raise
        finally:
            waiter.cancel()

        if task not in done:
            task.cancel()
            try:
                await task
            except (asyncio.CancelledError, Exception):
                pass
            raise JobCancelledError(self.job_id)

        if self._cancelled:
            # result or failure after the abort fired: cancellation wins
            if not task.cancelled():
                task.exception()
            raise JobCancelledError(self.job_id)

        try:
            return task.result()
        except asyncio.CancelledError:
            raise JobCancelledError(self.job_id, f"Job {self.job_id} operation was aborted")

    async def run_sync(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> T:
        """Run a blocking callable in a worker thread, raced against the token."""
        return await self.run(asyncio.to_thread(fn, *args, **kwargs))


async def sleep_with_cancellation(seconds: float, token: Optional[CancellationToken]) -> None:
    if token is None:
        await asyncio.sleep(seconds)
        return
    await token.sleep(seconds)


async def with_cancellation(token: Optional[CancellationToken], aw: Awaitable[T]) -> T:
    if token is None:
        return await aw
    return await token.run(aw)


def is_cancellation(exc: BaseException) -> bool:
    return isinstance(exc, JobCancelledError)


class TokenRegistry:
    """
    Process-local map of job id -> live token.

    Owned by the orchestrator and injected wherever a cancel must reach a
    running job. It does not survive a host restart; the process tag and the
    persisted PID list cover that case.
    """

    def __init__(self) -> None:
        self._tokens: Dict[str, CancellationToken] = {}

    def create(self, job_id: str) -> CancellationToken:
        existing = self._tokens.get(job_id)
        if existing is not None:
            existing.cancel()
        token = CancellationToken(job_id)
        self._tokens[job_id] = token
        return token

    def get(self, job_id: str) -> Optional[CancellationToken]:
        return self._tokens.get(job_id)

    def cancel(self, job_id: str) -> bool:
        token = self._tokens.get(job_id)
        if token is None:
            return False
        token.cancel()
        return True

    def is_cancelled(self, job_id: str) -> bool:
        token = self._tokens.get(job_id)
        return bool(token and token.is_cancelled)

    def remove(self, job_id: str) -> None:
        self._tokens.pop(job_id, None)

    def __contains__(self, job_id: object) -> bool:
        return job_id in self._tokens

    def __len__(self) -> int:
        return len(self._tokens)
