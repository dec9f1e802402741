"""
MathPulse Worker – Problem API Router.

Thin HTTP surface over the problem service: start a generation, submit an
answer, read session/submission state for the status poller, and read a
student's progress overview. Both writes return as soon as the job is
queued.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, ConfigDict, Field
from redis.exceptions import RedisError

from dependencies import get_identity, get_problem_service, get_runtime, require_role
from identity import Identity, Role
from problems.problem_service import (
    ProblemNotReady,
    ProblemService,
    SessionAccessDenied,
    SessionNotFound,
    SubmissionNotFound,
)
from runtime import WorkerRuntime

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/problems", tags=["Problems"])
admin_router = APIRouter(prefix="/admin", tags=["Admin"])
progress_router = APIRouter(prefix="/progress", tags=["Progress"])


class SubmitAnswerRequest(BaseModel):
    """Request body for answer submission."""
    model_config = ConfigDict(populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    user_answer: float = Field(alias="userAnswer")
    time_taken: Optional[int] = Field(default=None, alias="timeTaken", ge=0)


@router.post("/generate")
async def generate_problem(
    identity: Identity = Depends(require_role(Role.STUDENT)),
    service: ProblemService = Depends(get_problem_service),
) -> dict:
    try:
        started = await service.start_session(identity)
    except RedisError:
        raise HTTPException(status_code=503, detail="Job queue unavailable")
    return {
        "success": True,
        "sessionId": started.session.id,
        "jobId": started.job.id,
        "status": started.session.jobStatus,
        "message": "Problem generation started. Please wait...",
    }


@router.post("/submit")
async def submit_answer(
    body: SubmitAnswerRequest,
    identity: Identity = Depends(require_role(Role.STUDENT)),
    service: ProblemService = Depends(get_problem_service),
) -> dict:
    try:
        submitted = await service.submit_answer(
            identity, body.session_id, body.user_answer, body.time_taken
        )
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")
    except SessionAccessDenied:
        raise HTTPException(status_code=403, detail="Forbidden")
    except ProblemNotReady:
        raise HTTPException(status_code=400, detail="Problem is still being generated")
    except RedisError:
        raise HTTPException(status_code=503, detail="Job queue unavailable")

    return {
        "success": True,
        "submissionId": submitted.submission.id,
        "isCorrect": submitted.submission.isCorrect,
        "correctAnswer": submitted.correct_answer,
        "jobId": submitted.job.id,
        "status": submitted.submission.feedbackStatus,
        "message": "Answer submitted. Generating feedback...",
    }


@router.get("/submission/{submission_id}")
async def get_submission(
    submission_id: str,
    identity: Identity = Depends(get_identity),
    service: ProblemService = Depends(get_problem_service),
) -> dict:
    try:
        return {"submission": await service.get_submission(identity, submission_id)}
    except SubmissionNotFound:
        raise HTTPException(status_code=404, detail="Submission not found")
    except SessionAccessDenied:
        raise HTTPException(status_code=403, detail="Forbidden")


@router.get("/{session_id}")
async def get_session(
    session_id: str,
    identity: Identity = Depends(get_identity),
    service: ProblemService = Depends(get_problem_service),
) -> dict:
    try:
        return {"session": await service.get_session(identity, session_id)}
    except SessionNotFound:
        raise HTTPException(status_code=404, detail="Session not found")
    except SessionAccessDenied:
        raise HTTPException(status_code=403, detail="Forbidden")


@admin_router.get("/queues")
async def get_queue_stats(
    identity: Identity = Depends(require_role(Role.ADMIN)),
    runtime: WorkerRuntime = Depends(get_runtime),
) -> dict:
    queues = []
    for queue in runtime.queues:
        counts = await queue.counts()
        queues.append({"queueName": queue.name, **counts})
    return {"queues": queues}


@progress_router.get("")
async def get_progress(
    user_id: Optional[str] = Query(default=None, alias="userId"),
    identity: Identity = Depends(get_identity),
    service: ProblemService = Depends(get_problem_service),
) -> dict:
    try:
        return await service.get_progress(identity, user_id)
    except SessionAccessDenied:
        raise HTTPException(status_code=403, detail="Forbidden")
