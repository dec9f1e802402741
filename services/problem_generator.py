"""
Problem Generator – handler for the `problem-generation` queue.

Flow per attempt:
1. Session → processing (a retry re-enters processing from failed)
2. Build a tier-specific prompt and ask the generator for
   {"problem_text": str, "final_answer": number}
3. On success write problemText/correctAnswer and mark completed, then push
   `problem:generated` to the student's room
4. On any failure mark the session failed and re-raise so the worker pool
   retries; once attempts are exhausted the session stays failed and the
   student is told via `problem:failed`
"""

import logging

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import async_sessionmaker

from events.notification_hub import NotificationHub
from models import DifficultyLevel, JobStatus, MathProblemSession
from queueing.job_queue import Job
from queueing.payloads import GENERATE_PROBLEM_JOB, GenerateProblemPayload
from services.content_generator import ContentGenerator
from services.session_state import InvalidSessionTransition, transition_session

logger = logging.getLogger(__name__)

DIFFICULTY_INSTRUCTIONS = {
    DifficultyLevel.EASY: "simple addition or subtraction with numbers under 50",
    DifficultyLevel.MEDIUM: "multiplication, division, or multi-step problems with numbers under 100",
    DifficultyLevel.HARD: "complex multi-step word problems with fractions, decimals, or larger numbers",
}

PROBLEM_PROMPT = """Generate a math word problem suitable for a Primary 5 student (age 10-11).
Difficulty level: {level} - {instruction}.

Requirements:
1. The problem should be engaging and relatable to 10-11 year olds
2. Include real-world scenarios (shopping, sports, cooking, etc.)
3. The problem should require logical thinking and calculation
4. The final answer must be a single number

Respond with JSON:
{{
    "problem_text": "<a detailed word problem>",
    "final_answer": <numeric answer>
}}"""


class GeneratedProblem(BaseModel):
    problem_text: str = Field(min_length=1)
    final_answer: float = Field(allow_inf_nan=False)


def build_problem_prompt(level: DifficultyLevel) -> str:
    return PROBLEM_PROMPT.format(level=level.value, instruction=DIFFICULTY_INSTRUCTIONS[level])


class ProblemGenerationHandler:
    name = GENERATE_PROBLEM_JOB

    def __init__(
        self,
        session_factory: async_sessionmaker,
        generator: ContentGenerator,
        hub: NotificationHub,
    ) -> None:
        self._session_factory = session_factory
        self._generator = generator
        self._hub = hub

    async def process(self, job: Job) -> dict:
        payload = GenerateProblemPayload.model_validate(job.payload)

        async with self._session_factory() as db:
            try:
                await transition_session(
                    db,
                    payload.session_id,
                    JobStatus.PROCESSING,
                    retry=job.attempt_count > 0,
                )
            except InvalidSessionTransition as e:
                # Duplicate delivery of a job whose session already finished.
                logger.warning(f"Skipping job {job.id}: {e}")
                return {"sessionId": payload.session_id, "skipped": True}

        try:
            problem = await self._generator.generate_json(
                build_problem_prompt(payload.difficulty_level),
                GeneratedProblem,
            )
            async with self._session_factory() as db:
                await transition_session(
                    db,
                    payload.session_id,
                    JobStatus.COMPLETED,
                    problemText=problem.problem_text,
                    correctAnswer=problem.final_answer,
                )
        except Exception:
            await self._mark_failed(payload.session_id)
            raise

        logger.info(
            f"Generated {payload.difficulty_level.value} problem for session {payload.session_id}"
        )
        await self._hub.emit_to_student(
            payload.user_id,
            "problem:generated",
            {
                "sessionId": payload.session_id,
                "problemText": problem.problem_text,
                "difficultyLevel": payload.difficulty_level.value,
            },
        )
        return {"sessionId": payload.session_id}

    async def on_exhausted(self, job: Job, error: Exception) -> None:
        payload = GenerateProblemPayload.model_validate(job.payload)
        await self._mark_failed(payload.session_id)

        async with self._session_factory() as db:
            session = await db.get(MathProblemSession, payload.session_id)
            status = session.jobStatus if session else None

        if status == JobStatus.FAILED.value:
            await self._hub.emit_to_student(
                payload.user_id,
                "problem:failed",
                {"sessionId": payload.session_id, "error": str(error)},
            )

    async def _mark_failed(self, session_id: str) -> None:
        async with self._session_factory() as db:
            try:
                await transition_session(db, session_id, JobStatus.FAILED)
            except InvalidSessionTransition as e:
                logger.debug(f"Not marking session failed: {e}")
