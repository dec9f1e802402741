import sys
from dataclasses import dataclass
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import fakeredis  # noqa: E402
import fakeredis.aioredis  # noqa: E402

from database import build_engine, build_session_factory, init_models  # noqa: E402
from events.notification_hub import NotificationHub  # noqa: E402
from problems.problem_service import ProblemService  # noqa: E402
from queueing.job_queue import JobQueue  # noqa: E402
from queueing.payloads import FEEDBACK_QUEUE, PROBLEM_QUEUE  # noqa: E402
from queueing.worker_pool import WorkerPool  # noqa: E402
from services.badge_engine import BadgeEngine, seed_badges  # noqa: E402
from services.content_generator import GeneratorError  # noqa: E402
from services.feedback_generator import FeedbackGenerationHandler  # noqa: E402
from services.problem_generator import ProblemGenerationHandler  # noqa: E402


@pytest.fixture
def anyio_backend():
    """Force anyio to use asyncio backend for async tests."""
    return "asyncio"


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeGenerator:
    """Stands in for the Gemini-backed generator."""

    def __init__(self):
        self.problem = {"problem_text": "Ali buys 6 packs of 7 stickers. How many stickers?", "final_answer": 42}
        self.feedback = "Great job! 6 x 7 is 42."
        self.json_failures = 0
        self.text_failures = 0
        self.always_fail = False
        self.prompts = []

    async def generate_json(self, prompt, schema):
        self.prompts.append(prompt)
        if self.always_fail or self.json_failures > 0:
            self.json_failures -= 1
            raise GeneratorError("Failed to extract JSON from AI response")
        return schema.model_validate(self.problem)

    async def generate_text(self, prompt):
        self.prompts.append(prompt)
        if self.always_fail or self.text_failures > 0:
            self.text_failures -= 1
            raise GeneratorError("Content generation timed out after 30s")
        return self.feedback


class RecordingConnection:
    def __init__(self):
        self.messages = []

    async def send_json(self, data):
        self.messages.append(data)

    def events(self, name=None):
        return [m for m in self.messages if name is None or m["event"] == name]


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
async def redis_client():
    client = fakeredis.aioredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)
    yield client
    await client.aclose()


@pytest.fixture
async def session_factory(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}")
    await init_models(engine)
    factory = build_session_factory(engine)
    await seed_badges(factory)
    yield factory
    await engine.dispose()


@dataclass
class Pipeline:
    service: ProblemService
    problem_pool: WorkerPool
    feedback_pool: WorkerPool
    problem_queue: JobQueue
    feedback_queue: JobQueue
    hub: NotificationHub
    badge_engine: BadgeEngine
    session_factory: object
    generator: FakeGenerator
    clock: FakeClock


@pytest.fixture
async def pipeline(redis_client, session_factory, clock, generator):
    hub = NotificationHub()
    problem_queue = JobQueue(redis_client, PROBLEM_QUEUE, clock=clock)
    feedback_queue = JobQueue(redis_client, FEEDBACK_QUEUE, clock=clock)
    badge_engine = BadgeEngine(session_factory)

    return Pipeline(
        service=ProblemService(session_factory, problem_queue, feedback_queue, hub),
        problem_pool=WorkerPool(
            problem_queue, ProblemGenerationHandler(session_factory, generator, hub)
        ),
        feedback_pool=WorkerPool(
            feedback_queue,
            FeedbackGenerationHandler(session_factory, generator, hub, badge_engine),
        ),
        problem_queue=problem_queue,
        feedback_queue=feedback_queue,
        hub=hub,
        badge_engine=badge_engine,
        session_factory=session_factory,
        generator=generator,
        clock=clock,
    )
