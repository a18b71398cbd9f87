"""
Answer payloads as a tagged union keyed by question type.

Clients send a bare JSON value (an option index, a list of indices, a
boolean or a string). The value is decoded here, at the API boundary,
against the question's type; only decoded values are stored and graded.

    mcq_single   -> McqSingleAnswer(value: int)
    mcq_multi    -> McqMultiAnswer(value: sorted unique list[int])
    true_false   -> TrueFalseAnswer(value: bool)
    short_answer -> ShortAnswer(value: str)

An empty value (null, "", whitespace, []) decodes to None: the question is
unanswered.
"""

import re
from typing import Annotated, Any, List, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, field_validator

from exam_gate.errors import ValidationFailed

_INT_RE = re.compile(r"^-?\d+$")


def _coerce_int(value: Any) -> int:
    if isinstance(value, bool):
        raise ValueError("boolean is not an option index")
    if isinstance(value, int):
        return value
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, str) and _INT_RE.match(value.strip()):
        return int(value.strip())
    raise ValueError("option index must be an integer")


class McqSingleAnswer(BaseModel):
    kind: Literal["mcq_single"] = "mcq_single"
    value: int

    @field_validator("value", mode="before")
    @classmethod
    def _index(cls, v):
        return _coerce_int(v)


class McqMultiAnswer(BaseModel):
    kind: Literal["mcq_multi"] = "mcq_multi"
    value: List[int]

    @field_validator("value", mode="before")
    @classmethod
    def _index_set(cls, v):
        if not isinstance(v, (list, tuple)):
            raise ValueError("expected a list of option indices")
        return sorted({_coerce_int(item) for item in v})


class TrueFalseAnswer(BaseModel):
    kind: Literal["true_false"] = "true_false"
    value: bool

    @field_validator("value", mode="before")
    @classmethod
    def _boolean(cls, v):
        if isinstance(v, bool):
            return v
        if isinstance(v, str) and v.strip().lower() in ("true", "false"):
            return v.strip().lower() == "true"
        raise ValueError("expected true or false")


class ShortAnswer(BaseModel):
    kind: Literal["short_answer"] = "short_answer"
    value: str

    @field_validator("value", mode="before")
    @classmethod
    def _text(cls, v):
        if isinstance(v, bool) or not isinstance(v, (str, int, float)):
            raise ValueError("expected text")
        return str(v)


AnswerValue = Annotated[
    Union[McqSingleAnswer, McqMultiAnswer, TrueFalseAnswer, ShortAnswer],
    Field(discriminator="kind"),
]

_answer_adapter = TypeAdapter(AnswerValue)

QUESTION_TYPES = ("mcq_single", "mcq_multi", "true_false", "short_answer")


def has_answer(value: Any) -> bool:
    """True when a raw stored value counts as answered."""
    if value is None:
        return False
    if isinstance(value, str):
        return len(value.strip()) > 0
    if isinstance(value, (list, tuple)):
        return len(value) > 0
    if isinstance(value, bool):
        return True
    if isinstance(value, (int, float)):
        return value == value  # NaN is not an answer
    if isinstance(value, dict):
        return len(value) > 0
    return False


def decode_answer(question_type: str, raw: Any, option_count: Optional[int] = None):
    """
    Decode a raw payload for a question type.

    Returns the typed answer, or None when the payload is empty.
    Raises INVALID_ANSWER_PAYLOAD when the value does not fit the type or
    references an option index outside the question's options.
    """
    if question_type not in QUESTION_TYPES:
        raise ValidationFailed("INVALID_ANSWER_PAYLOAD",
                               message="Unsupported question type: {}".format(question_type))
    if not has_answer(raw):
        return None
    try:
        answer = _answer_adapter.validate_python({"kind": question_type, "value": raw})
    except ValidationError as exc:
        raise ValidationFailed("INVALID_ANSWER_PAYLOAD",
                               message="Answer does not match question type {}".format(question_type),
                               details={"errors": [e.get("msg") for e in exc.errors()]})

    if option_count is not None and question_type in ("mcq_single", "mcq_multi"):
        indices = [answer.value] if question_type == "mcq_single" else answer.value
        if any(i < 0 or i >= option_count for i in indices):
            raise ValidationFailed("INVALID_ANSWER_PAYLOAD", message="Option index out of range")
    if question_type == "short_answer" and not answer.value.strip():
        return None
    return answer


def try_decode_answer(question_type: str, raw: Any):
    """Decode a stored value for grading; undecodable values grade as wrong (None)."""
    try:
        return decode_answer(question_type, raw)
    except ValidationFailed:
        return None


def to_stored_value(answer) -> Any:
    """Plain JSON value persisted for a decoded answer (None when unanswered)."""
    return None if answer is None else answer.value
