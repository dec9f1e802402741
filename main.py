"""
MathPulse Worker – FastAPI Application Entry Point.

The worker generates personalized math problems and feedback through an
AI content generator without ever blocking the requester:
1. Requests create a Session/Submission and enqueue a job
2. Worker pools process `problem-generation` and `feedback-generation`
   jobs with bounded concurrency and retry/backoff
3. Adaptive difficulty and badges are updated after each graded answer
4. The notification hub pushes progress to student, teacher and admin rooms
5. Clients poll the same records as a fallback when pushes are lost

Architecture:
- Lifespan context manager starts/stops the runtime (record store,
  notification hub, worker pools, APScheduler maintenance cron).
- All collaborators live on `app.state.runtime`; handlers receive them
  through dependencies.
"""

import logging
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware

from config import get_settings
from events.socket_router import router as socket_router
from problems.problems_router import admin_router, progress_router, router as problems_router
from runtime import WorkerRuntime

settings = get_settings()

# ── Logging Configuration ────────────────────────────────────────
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s | %(name)-25s | %(levelname)-7s | %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)
logger = logging.getLogger("mathpulse.worker")

VERSION = "1.0.0"


def create_app(runtime: Optional[WorkerRuntime] = None) -> FastAPI:
    """
    Build the application.

    `runtime` is constructed from settings at startup unless one is given
    (tests pass a runtime wired to in-memory collaborators).
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        active = runtime or WorkerRuntime(settings)
        await active.start()
        app.state.runtime = active
        logger.info(f"🚀 MathPulse Worker v{VERSION} ready on port {settings.WORKER_PORT}")

        yield

        await active.stop()

    app = FastAPI(
        title="MathPulse Worker",
        description=(
            "Asynchronous math problem and feedback generation with adaptive "
            "difficulty, badges and live notifications"
        ),
        version=VERSION,
        lifespan=lifespan,
    )

    # ── CORS Middleware ──────────────────────────────────────────
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ── Route Registration ───────────────────────────────────────
    app.include_router(problems_router, prefix="/api/v1")
    app.include_router(admin_router, prefix="/api/v1")
    app.include_router(progress_router, prefix="/api/v1")
    app.include_router(socket_router)

    @app.get("/health", tags=["System"])
    async def health_check(request: Request) -> dict:
        active: WorkerRuntime = request.app.state.runtime
        return {
            "status": "healthy",
            "service": "mathpulse-worker",
            "version": VERSION,
            "workersRunning": all(pool.running for pool in active.pools),
            "cronJobs": len(active.scheduler.get_jobs()) if active.scheduler.running else 0,
        }

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("main:app", host="0.0.0.0", port=settings.WORKER_PORT)
