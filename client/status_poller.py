"""
Status Poller – client-side fallback for generation results.

Push notifications are only a latency optimization. A client that started
a generation also polls the stored record until it reaches a terminal
state, so it converges even when every push is lost:

- one immediate check, so finished jobs cost no extra latency
- then one check per interval (3s) up to max_attempts (20, ~60s)
- "done" is the same terminal predicate the workers and hub use

A timeout ("still possibly running") is reported separately from a
generation failure ("definitely failed").
"""

import asyncio
import enum
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx

from config import get_settings
from models import FeedbackStatus, JobStatus
from services.session_state import is_session_terminal, is_submission_terminal

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL_SECONDS = 3.0
DEFAULT_MAX_ATTEMPTS = 20


def _configured(interval: Optional[float], max_attempts: Optional[int]) -> tuple[float, int]:
    settings = get_settings()
    return (
        settings.POLL_INTERVAL_MS / 1000 if interval is None else interval,
        settings.POLL_MAX_ATTEMPTS if max_attempts is None else max_attempts,
    )


class PollOutcome(str, enum.Enum):
    COMPLETED = "completed"
    FAILED = "failed"
    TIMEOUT = "timeout"


@dataclass
class PollResult:
    outcome: PollOutcome
    record: Optional[dict[str, Any]]
    attempts: int

    @property
    def timed_out(self) -> bool:
        return self.outcome is PollOutcome.TIMEOUT


class StatusPoller:
    def __init__(
        self,
        fetch: Callable[[], Awaitable[dict[str, Any]]],
        status_of: Callable[[dict[str, Any]], Optional[str]],
        is_terminal: Callable[[Optional[str]], bool],
        interval: float = DEFAULT_INTERVAL_SECONDS,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._fetch = fetch
        self._status_of = status_of
        self._is_terminal = is_terminal
        self.interval = interval
        self.max_attempts = max_attempts
        self._sleep = sleep

    async def run(self) -> PollResult:
        record = None
        for attempt in range(1, self.max_attempts + 1):
            if attempt > 1:
                await self._sleep(self.interval)

            try:
                record = await self._fetch()
            except Exception as e:
                logger.warning(f"Status check {attempt}/{self.max_attempts} failed: {e}")
                continue

            status = self._status_of(record)
            if self._is_terminal(status):
                outcome = (
                    PollOutcome.COMPLETED
                    if status in (JobStatus.COMPLETED.value, FeedbackStatus.COMPLETED.value)
                    else PollOutcome.FAILED
                )
                return PollResult(outcome=outcome, record=record, attempts=attempt)

        return PollResult(outcome=PollOutcome.TIMEOUT, record=record, attempts=self.max_attempts)


async def poll_session(
    client: httpx.AsyncClient,
    session_id: str,
    interval: Optional[float] = None,
    max_attempts: Optional[int] = None,
) -> PollResult:
    """Poll GET /api/v1/problems/{id} until the session is completed or failed."""

    async def fetch() -> dict[str, Any]:
        response = await client.get(f"/api/v1/problems/{session_id}")
        response.raise_for_status()
        return response.json()["session"]

    interval, max_attempts = _configured(interval, max_attempts)
    poller = StatusPoller(
        fetch,
        lambda record: record.get("jobStatus"),
        is_session_terminal,
        interval=interval,
        max_attempts=max_attempts,
    )
    return await poller.run()


async def poll_submission(
    client: httpx.AsyncClient,
    submission_id: str,
    interval: Optional[float] = None,
    max_attempts: Optional[int] = None,
) -> PollResult:
    """Poll GET /api/v1/problems/submission/{id} until feedback is written or failed."""

    async def fetch() -> dict[str, Any]:
        response = await client.get(f"/api/v1/problems/submission/{submission_id}")
        response.raise_for_status()
        return response.json()["submission"]

    interval, max_attempts = _configured(interval, max_attempts)
    poller = StatusPoller(
        fetch,
        lambda record: record.get("feedbackStatus"),
        is_submission_terminal,
        interval=interval,
        max_attempts=max_attempts,
    )
    return await poller.run()
