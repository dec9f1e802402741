"""
Typed job payloads for the two work queues.

Payloads travel through Redis as camelCase JSON so that the web tier and
the workers agree on one wire shape; in Python they are plain pydantic
models with snake_case attributes.
"""

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from models import DifficultyLevel

PROBLEM_QUEUE = "problem-generation"
FEEDBACK_QUEUE = "feedback-generation"

GENERATE_PROBLEM_JOB = "generate-problem"
GENERATE_FEEDBACK_JOB = "generate-feedback"


class _Payload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)

    def to_wire(self) -> dict:
        return self.model_dump(mode="json", by_alias=True)


class GenerateProblemPayload(_Payload):
    user_id: str
    session_id: str
    difficulty_level: DifficultyLevel


class GenerateFeedbackPayload(_Payload):
    user_id: str
    session_id: str
    submission_id: str
    problem_text: str
    correct_answer: float
    user_answer: float
    is_correct: bool
