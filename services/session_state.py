"""
Session State Machine.

    pending ──► processing ──► completed
       │            │
       └────────────┴────────► failed

`completed` is never left. A `failed` written by a failing attempt is
left only when the owning job retries (the worker re-enters
`processing`); once the job has exhausted its attempts no further lease
exists and `failed` is permanent. Nothing ever returns to `pending`.

The terminal predicates here are the single definition of "done" shared by
the workers, the notification hub and the status poller.
"""

import logging
from typing import Any

from sqlalchemy import update
from sqlalchemy.ext.asyncio import AsyncSession

from models import FeedbackStatus, JobStatus, MathProblemSession

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.PENDING: frozenset({JobStatus.PROCESSING, JobStatus.FAILED}),
    # processing -> processing: a stalled lease picked up again
    JobStatus.PROCESSING: frozenset({JobStatus.PROCESSING, JobStatus.COMPLETED, JobStatus.FAILED}),
    JobStatus.COMPLETED: frozenset(),
    JobStatus.FAILED: frozenset(),
}

# Only reachable by a retry of the owning job.
RETRY_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.FAILED: frozenset({JobStatus.PROCESSING}),
}

TERMINAL_SESSION_STATES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})
TERMINAL_FEEDBACK_STATES = frozenset({FeedbackStatus.COMPLETED, FeedbackStatus.FAILED})


class InvalidSessionTransition(Exception):
    """The stored session state does not allow the requested transition."""


def can_transition(current: JobStatus, target: JobStatus, retry: bool = False) -> bool:
    if target in ALLOWED_TRANSITIONS[current]:
        return True
    return retry and target in RETRY_TRANSITIONS.get(current, frozenset())


def is_session_terminal(status: str | JobStatus | None) -> bool:
    try:
        return JobStatus(status) in TERMINAL_SESSION_STATES
    except ValueError:
        return False


def is_submission_terminal(status: str | FeedbackStatus | None) -> bool:
    try:
        return FeedbackStatus(status) in TERMINAL_FEEDBACK_STATES
    except ValueError:
        return False


async def transition_session(
    db: AsyncSession,
    session_id: str,
    target: JobStatus,
    retry: bool = False,
    **fields: Any,
) -> None:
    """
    Move a session to `target` with a conditional update-by-id.

    The UPDATE only matches rows whose current state allows the transition,
    so concurrent writers cannot push a session out of a terminal state.
    Extra column values in `fields` are written in the same statement.
    """
    sources = [s.value for s in JobStatus if can_transition(s, target, retry=retry)]
    stmt = (
        update(MathProblemSession)
        .where(
            MathProblemSession.id == session_id,
            MathProblemSession.jobStatus.in_(sources),
        )
        .values(jobStatus=target.value, **fields)
    )
    result = await db.execute(stmt)
    await db.commit()

    if result.rowcount == 0:
        current = await db.get(MathProblemSession, session_id, populate_existing=True)
        state = current.jobStatus if current else "missing"
        raise InvalidSessionTransition(
            f"Session {session_id} cannot move from {state} to {target.value}"
        )

    logger.debug(f"Session {session_id} -> {target.value}")
