"""
MathPulse Worker – Runtime container.

Builds every long-lived collaborator once (Redis client, record store,
notification hub, queues, worker pools, scheduler) and wires them together
explicitly. The FastAPI lifespan owns one instance; nothing is reached
through module globals.

Startup:  record store → notification hub → worker pools → cron scheduler
Shutdown: scheduler → worker pools → hub → Redis → record store
"""

import logging
import time
from typing import Callable, Optional

import redis.asyncio as aioredis
from apscheduler.schedulers.asyncio import AsyncIOScheduler

from config import Settings
from database import build_engine, build_session_factory, init_models
from events.notification_hub import NotificationHub
from problems.problem_service import ProblemService
from queueing.job_queue import JobQueue
from queueing.payloads import FEEDBACK_QUEUE, PROBLEM_QUEUE
from queueing.worker_pool import WorkerPool
from services.badge_engine import BadgeEngine, seed_badges
from services.content_generator import ContentGenerator
from services.feedback_generator import FeedbackGenerationHandler
from services.problem_generator import ProblemGenerationHandler
from services.queue_maintenance import run_queue_maintenance

logger = logging.getLogger("mathpulse.runtime")


class WorkerRuntime:
    def __init__(
        self,
        settings: Settings,
        *,
        redis: Optional[aioredis.Redis] = None,
        generator: Optional[ContentGenerator] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.settings = settings

        self.redis = redis if redis is not None else aioredis.Redis(
            host=settings.REDIS_HOST,
            port=settings.REDIS_PORT,
            password=settings.REDIS_PASSWORD or None,
            decode_responses=True,
        )
        self.engine = build_engine(settings.DATABASE_URL)
        self.session_factory = build_session_factory(self.engine)

        self.hub = NotificationHub(
            self.redis if settings.NOTIFICATION_RELAY_ENABLED else None,
            channel=settings.NOTIFICATION_CHANNEL,
        )

        queue_options = dict(
            max_attempts=settings.JOB_MAX_ATTEMPTS,
            backoff_base_seconds=settings.JOB_BACKOFF_BASE_MS / 1000,
            keep_completed=settings.JOB_KEEP_COMPLETED,
            keep_failed=settings.JOB_KEEP_FAILED,
            clock=clock,
        )
        self.problem_queue = JobQueue(self.redis, PROBLEM_QUEUE, **queue_options)
        self.feedback_queue = JobQueue(self.redis, FEEDBACK_QUEUE, **queue_options)

        self.generator = generator or ContentGenerator(
            api_key=settings.GEMINI_API_KEY,
            model_name=settings.GEMINI_MODEL,
            timeout_seconds=settings.GENERATOR_TIMEOUT_SECONDS,
        )
        self.badge_engine = BadgeEngine(self.session_factory)

        lease_poll = settings.QUEUE_LEASE_POLL_MS / 1000
        self.pools = [
            WorkerPool(
                self.problem_queue,
                ProblemGenerationHandler(self.session_factory, self.generator, self.hub),
                concurrency=settings.PROBLEM_QUEUE_CONCURRENCY,
                lease_poll_interval=lease_poll,
            ),
            WorkerPool(
                self.feedback_queue,
                FeedbackGenerationHandler(
                    self.session_factory, self.generator, self.hub, self.badge_engine
                ),
                concurrency=settings.FEEDBACK_QUEUE_CONCURRENCY,
                lease_poll_interval=lease_poll,
            ),
        ]

        self.problem_service = ProblemService(
            self.session_factory, self.problem_queue, self.feedback_queue, self.hub
        )
        self.scheduler = AsyncIOScheduler()

    @property
    def queues(self) -> list[JobQueue]:
        return [self.problem_queue, self.feedback_queue]

    async def start(self) -> None:
        logger.info("🧠 MathPulse Worker starting up...")

        # 1. Record store (fatal: nothing works without it)
        await init_models(self.engine)
        await seed_badges(self.session_factory)
        logger.info("✅ Record store ready")

        # 2. Notification hub
        try:
            await self.hub.start()
            logger.info("✅ Notification hub started")
        except Exception as e:
            logger.error(f"⚠️  Notification relay failed to start (clients fall back to polling): {e}")

        # 3. Worker pools
        if self.settings.RUN_WORKERS:
            for pool in self.pools:
                await pool.start()
            logger.info("✅ Worker pools started")

        # 4. Queue maintenance cron
        interval = self.settings.QUEUE_MAINTENANCE_INTERVAL_SECONDS
        if interval > 0:
            try:
                self.scheduler.add_job(
                    run_queue_maintenance,
                    "interval",
                    seconds=interval,
                    args=[self.queues, self.hub, self.settings.STALLED_JOB_TIMEOUT_SECONDS],
                    id="queue_maintenance",
                    name="Stalled Job Recovery & Queue Stats",
                )
                self.scheduler.start()
                logger.info(f"✅ APScheduler started with {len(self.scheduler.get_jobs())} job(s)")
            except Exception as e:
                logger.error(f"⚠️  Scheduler failed to start (non-fatal): {e}")

    async def stop(self) -> None:
        logger.info("🛑 MathPulse Worker shutting down...")

        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("✅ Scheduler stopped")

        for pool in self.pools:
            try:
                await pool.stop()
            except Exception as e:
                logger.error(f"Error stopping worker pool {pool.queue.name}: {e}")

        try:
            await self.hub.stop()
        except Exception as e:
            logger.error(f"Error stopping notification hub: {e}")

        try:
            await self.redis.aclose()
            logger.info("✅ Redis connection closed")
        except Exception as e:
            logger.error(f"Error closing Redis: {e}")

        await self.engine.dispose()
        logger.info("👋 MathPulse Worker shutdown complete")
