import asyncio

import pytest

from identity import Role, identity_from_headers
from services.content_generator import ContentGenerator, GeneratorError, parse_json_object
from services.problem_generator import GeneratedProblem, build_problem_prompt
from models import DifficultyLevel


class FakeResponse:
    def __init__(self, text):
        self.text = text


class FakeModel:
    def __init__(self, text="", delay=0.0, error=None):
        self.reply = text
        self.delay = delay
        self.error = error
        self.configs = []

    async def generate_content_async(self, prompt, generation_config=None):
        self.configs.append(generation_config)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error:
            raise self.error
        return FakeResponse(self.reply)


def _generator(model, timeout=1.0):
    generator = ContentGenerator(api_key="test-key", timeout_seconds=timeout)
    generator._model = model
    return generator


def test_parse_plain_and_wrapped_json():
    assert parse_json_object('{"final_answer": 3}') == {"final_answer": 3}
    wrapped = 'Here you go:\n```json\n{"problem_text": "x", "final_answer": 3}\n```'
    assert parse_json_object(wrapped) == {"problem_text": "x", "final_answer": 3}


@pytest.mark.parametrize("text", ["", "no json here", "[1, 2, 3]", "{not: valid}"])
def test_parse_rejects_unusable_output(text):
    with pytest.raises(GeneratorError):
        parse_json_object(text)


def test_prompt_carries_tier_instruction():
    prompt = build_problem_prompt(DifficultyLevel.EASY)
    assert "Difficulty level: EASY" in prompt
    assert "numbers under 50" in prompt


@pytest.mark.anyio
async def test_generate_json_validates_against_schema():
    model = FakeModel('{"problem_text": "A baker has 12 buns...", "final_answer": "3.5"}')

    problem = await _generator(model).generate_json("prompt", GeneratedProblem)

    assert problem.final_answer == 3.5
    assert model.configs[0]["response_mime_type"] == "application/json"


@pytest.mark.anyio
async def test_generate_json_rejects_missing_answer():
    with pytest.raises(GeneratorError):
        await _generator(FakeModel('{"problem_text": "x"}')).generate_json("prompt", GeneratedProblem)


@pytest.mark.anyio
async def test_generate_text_requires_content():
    with pytest.raises(GeneratorError, match="empty"):
        await _generator(FakeModel("   ")).generate_text("prompt")


@pytest.mark.anyio
async def test_provider_errors_and_timeouts_become_generator_errors():
    with pytest.raises(GeneratorError, match="failed"):
        await _generator(FakeModel(error=RuntimeError("quota"))).generate_text("prompt")
    with pytest.raises(GeneratorError, match="timed out"):
        await _generator(FakeModel("late", delay=0.5), timeout=0.05).generate_text("prompt")


def test_identity_from_headers():
    identity = identity_from_headers({"x-user-id": "u1", "x-user-role": "teacher", "x-user-name": "Ms Lim"})

    assert identity.role is Role.TEACHER
    assert identity.is_staff
    assert identity.name == "Ms Lim"
    assert identity_from_headers({"x-user-id": "u1"}) is None
    assert identity_from_headers({"x-user-id": "u1", "x-user-role": "JANITOR"}) is None
    assert identity_from_headers({"x-user-role": "ADMIN"}) is None


@pytest.mark.anyio
@pytest.mark.parametrize("answer", ["Infinity", "-Infinity", "NaN"])
async def test_generate_json_rejects_non_finite_answer(answer):
    model = FakeModel('{"problem_text": "x", "final_answer": %s}' % answer)

    with pytest.raises(GeneratorError):
        await _generator(model).generate_json("prompt", GeneratedProblem)
