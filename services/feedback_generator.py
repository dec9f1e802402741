"""
Feedback Generator – handler for the `feedback-generation` queue.

Correctness was decided at submit time and is never revisited here. A job
only produces the encouraging feedback text and the downstream progress and
badge updates, so those are the parts that get retried.

Progress is recorded in the same transaction that stores the feedback and
flips `progressRecorded`, which keeps a retried job from counting the same
submission twice.
"""

import logging

from sqlalchemy.ext.asyncio import async_sessionmaker

from events.notification_hub import NotificationHub
from models import FeedbackStatus, MathProblemSubmission
from queueing.job_queue import Job
from queueing.payloads import GENERATE_FEEDBACK_JOB, GenerateFeedbackPayload
from services.badge_engine import BadgeEngine
from services.content_generator import ContentGenerator
from services.progress_tracker import record_result

logger = logging.getLogger(__name__)

FEEDBACK_UNAVAILABLE_TEXT = "Feedback is not available for this answer right now."

FEEDBACK_PROMPT = """You are a supportive math teacher for Primary 5 students (age 10-11).

Problem: {problem_text}
Correct Answer: {correct_answer}
Student's Answer: {user_answer}
Result: {result}

Generate personalized, encouraging feedback for the student.

If correct:
- Celebrate their success
- Briefly explain why the answer is correct
- Encourage them to try more problems

If incorrect:
- Be kind and supportive
- Explain what went wrong in simple terms
- Give a hint on how to approach it correctly
- Encourage them to try again

Keep the feedback concise (2-3 sentences) and age-appropriate."""


def build_feedback_prompt(payload: GenerateFeedbackPayload) -> str:
    return FEEDBACK_PROMPT.format(
        problem_text=payload.problem_text,
        correct_answer=f"{payload.correct_answer:g}",
        user_answer=f"{payload.user_answer:g}",
        result="CORRECT" if payload.is_correct else "INCORRECT",
    )


class FeedbackGenerationHandler:
    name = GENERATE_FEEDBACK_JOB

    def __init__(
        self,
        session_factory: async_sessionmaker,
        generator: ContentGenerator,
        hub: NotificationHub,
        badge_engine: BadgeEngine,
    ) -> None:
        self._session_factory = session_factory
        self._generator = generator
        self._hub = hub
        self._badge_engine = badge_engine

    async def process(self, job: Job) -> dict:
        payload = GenerateFeedbackPayload.model_validate(job.payload)
        feedback = await self._generator.generate_text(build_feedback_prompt(payload))

        async with self._session_factory() as db:
            submission = await db.get(MathProblemSubmission, payload.submission_id)
            if submission is None:
                raise LookupError(f"Submission {payload.submission_id} not found")

            submission.feedbackText = feedback
            submission.feedbackStatus = FeedbackStatus.COMPLETED.value
            if not submission.progressRecorded:
                await record_result(db, payload.user_id, payload.is_correct)
                submission.progressRecorded = True
            await db.commit()

        awarded = await self._badge_engine.evaluate(payload.user_id)

        await self._hub.emit_to_student(
            payload.user_id,
            "feedback:ready",
            {
                "submissionId": payload.submission_id,
                "feedback": feedback,
                "isCorrect": payload.is_correct,
            },
        )
        for badge_type in awarded:
            await self._hub.emit_to_student(
                payload.user_id,
                "badge:earned",
                {"badgeType": badge_type.value},
            )

        logger.info(
            f"📊 User {payload.user_id} - Correct: {payload.is_correct} - "
            f"Feedback length: {len(feedback)} chars"
        )
        return {"submissionId": payload.submission_id, "badges": [b.value for b in awarded]}

    async def on_exhausted(self, job: Job, error: Exception) -> None:
        payload = GenerateFeedbackPayload.model_validate(job.payload)

        async with self._session_factory() as db:
            submission = await db.get(MathProblemSubmission, payload.submission_id)
            if submission is None or submission.feedbackStatus != FeedbackStatus.PENDING.value:
                return
            submission.feedbackStatus = FeedbackStatus.FAILED.value
            submission.feedbackText = FEEDBACK_UNAVAILABLE_TEXT
            await db.commit()

        await self._hub.emit_to_student(
            payload.user_id,
            "feedback:failed",
            {"submissionId": payload.submission_id, "error": str(error)},
        )
