"""
Problem Service – the request side of the pipeline.

Creating a session or a submission never waits on the AI: the record is
written with placeholder content, a job is enqueued and the caller gets
ids back immediately. Workers fill in the real content later.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import async_sessionmaker

from events.notification_hub import NotificationHub
from identity import Identity
from models import (
    FeedbackStatus,
    JobStatus,
    MathProblemSession,
    MathProblemSubmission,
)
from queueing.job_queue import Job, JobQueue
from queueing.payloads import (
    GENERATE_FEEDBACK_JOB,
    GENERATE_PROBLEM_JOB,
    GenerateFeedbackPayload,
    GenerateProblemPayload,
)
from services.feedback_generator import FEEDBACK_UNAVAILABLE_TEXT
from services.progress_tracker import current_difficulty, progress_overview
from services.session_state import transition_session

logger = logging.getLogger(__name__)

ANSWER_TOLERANCE = 0.01
PLACEHOLDER_PROBLEM_TEXT = "Generating problem..."
PLACEHOLDER_FEEDBACK_TEXT = "Generating feedback..."


class SessionNotFound(Exception):
    pass


class SubmissionNotFound(Exception):
    pass


class SessionAccessDenied(Exception):
    pass


class ProblemNotReady(Exception):
    """The session's problem has not finished generating."""


def check_answer(user_answer: float, correct_answer: float) -> bool:
    return abs(user_answer - correct_answer) < ANSWER_TOLERANCE


@dataclass
class StartedSession:
    session: MathProblemSession
    job: Job


@dataclass
class SubmittedAnswer:
    submission: MathProblemSubmission
    job: Job
    correct_answer: float


class ProblemService:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        problem_queue: JobQueue,
        feedback_queue: JobQueue,
        hub: NotificationHub,
    ) -> None:
        self._session_factory = session_factory
        self._problem_queue = problem_queue
        self._feedback_queue = feedback_queue
        self._hub = hub

    async def start_session(self, identity: Identity) -> StartedSession:
        async with self._session_factory() as db:
            level = await current_difficulty(db, identity.user_id)
            session = MathProblemSession(
                userId=identity.user_id,
                problemText=PLACEHOLDER_PROBLEM_TEXT,
                correctAnswer=0.0,
                difficultyLevel=level.value,
                jobStatus=JobStatus.PENDING.value,
            )
            db.add(session)
            await db.commit()

        payload = GenerateProblemPayload(
            user_id=identity.user_id,
            session_id=session.id,
            difficulty_level=level,
        )
        try:
            job = await self._problem_queue.enqueue(GENERATE_PROBLEM_JOB, payload.to_wire())
        except Exception:
            # No job will ever run for this session; pollers must see failed, not pending.
            async with self._session_factory() as db:
                await transition_session(db, session.id, JobStatus.FAILED)
            session.jobStatus = JobStatus.FAILED.value
            logger.error(f"Could not queue problem generation for session {session.id}", exc_info=True)
            raise

        # Only the jobId column: the worker may already own jobStatus.
        async with self._session_factory() as db:
            await db.execute(
                update(MathProblemSession)
                .where(MathProblemSession.id == session.id)
                .values(jobId=job.id)
            )
            await db.commit()
        session.jobId = job.id

        await self._hub.emit_activity(identity.user_id, identity.name, "generated_problem")
        logger.info(f"Session {session.id} queued as job {job.id} ({level.value})")
        return StartedSession(session=session, job=job)

    async def submit_answer(
        self,
        identity: Identity,
        session_id: str,
        user_answer: float,
        time_taken: Optional[int] = None,
    ) -> SubmittedAnswer:
        async with self._session_factory() as db:
            session = await db.get(MathProblemSession, session_id)
            if session is None:
                raise SessionNotFound(session_id)
            if session.userId != identity.user_id:
                raise SessionAccessDenied(session_id)
            if session.jobStatus != JobStatus.COMPLETED.value:
                raise ProblemNotReady(session_id)

            is_correct = check_answer(user_answer, session.correctAnswer)
            submission = MathProblemSubmission(
                sessionId=session.id,
                userId=identity.user_id,
                userAnswer=user_answer,
                isCorrect=is_correct,
                feedbackText=PLACEHOLDER_FEEDBACK_TEXT,
                feedbackStatus=FeedbackStatus.PENDING.value,
                timeTaken=time_taken,
            )
            db.add(submission)
            await db.commit()

        payload = GenerateFeedbackPayload(
            user_id=identity.user_id,
            session_id=session.id,
            submission_id=submission.id,
            problem_text=session.problemText,
            correct_answer=session.correctAnswer,
            user_answer=user_answer,
            is_correct=is_correct,
        )
        try:
            job = await self._feedback_queue.enqueue(GENERATE_FEEDBACK_JOB, payload.to_wire())
        except Exception:
            async with self._session_factory() as db:
                await db.execute(
                    update(MathProblemSubmission)
                    .where(MathProblemSubmission.id == submission.id)
                    .values(
                        feedbackStatus=FeedbackStatus.FAILED.value,
                        feedbackText=FEEDBACK_UNAVAILABLE_TEXT,
                    )
                )
                await db.commit()
            submission.feedbackStatus = FeedbackStatus.FAILED.value
            submission.feedbackText = FEEDBACK_UNAVAILABLE_TEXT
            logger.error(f"Could not queue feedback for submission {submission.id}", exc_info=True)
            raise

        async with self._session_factory() as db:
            await db.execute(
                update(MathProblemSubmission)
                .where(MathProblemSubmission.id == submission.id)
                .values(jobId=job.id)
            )
            await db.commit()
        submission.jobId = job.id

        await self._hub.emit_activity(
            identity.user_id, identity.name, "submitted_answer", is_correct=is_correct
        )
        return SubmittedAnswer(submission=submission, job=job, correct_answer=session.correctAnswer)

    async def get_session(self, identity: Identity, session_id: str) -> dict:
        """
        Read view of a session.

        The answer is withheld until the problem is generated and the
        student has submitted at least once, whoever is asking.
        """
        async with self._session_factory() as db:
            session = await db.get(MathProblemSession, session_id)
            if session is None:
                raise SessionNotFound(session_id)
            if session.userId != identity.user_id and not identity.is_staff:
                raise SessionAccessDenied(session_id)

            submission_count = (
                await db.execute(
                    select(func.count(MathProblemSubmission.id)).where(
                        MathProblemSubmission.sessionId == session_id
                    )
                )
            ).scalar_one()

        completed = session.jobStatus == JobStatus.COMPLETED.value
        return {
            "id": session.id,
            "userId": session.userId,
            "problemText": session.problemText if completed else None,
            "correctAnswer": session.correctAnswer if completed and submission_count else None,
            "difficultyLevel": session.difficultyLevel,
            "jobStatus": session.jobStatus,
            "jobId": session.jobId,
            "submissionCount": submission_count,
            "createdAt": session.createdAt.isoformat() if session.createdAt else None,
        }

    async def get_submission(self, identity: Identity, submission_id: str) -> dict:
        async with self._session_factory() as db:
            submission = await db.get(MathProblemSubmission, submission_id)
        if submission is None:
            raise SubmissionNotFound(submission_id)
        if submission.userId != identity.user_id and not identity.is_staff:
            raise SessionAccessDenied(submission_id)

        return {
            "id": submission.id,
            "sessionId": submission.sessionId,
            "userId": submission.userId,
            "userAnswer": submission.userAnswer,
            "isCorrect": submission.isCorrect,
            "feedbackText": submission.feedbackText,
            "feedbackStatus": submission.feedbackStatus,
            "timeTaken": submission.timeTaken,
            "createdAt": submission.createdAt.isoformat() if submission.createdAt else None,
        }

    async def get_progress(self, identity: Identity, user_id: Optional[str] = None) -> dict:
        """Progress overview for the caller, or for any student when staff asks."""
        target = user_id or identity.user_id
        if target != identity.user_id and not identity.is_staff:
            raise SessionAccessDenied(target)

        async with self._session_factory() as db:
            overview = await progress_overview(db, target)
        return {"userId": target, **overview}
