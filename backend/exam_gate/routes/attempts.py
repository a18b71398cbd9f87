"""
Attempts API routes - the candidate side of an exam attempt.

Provides endpoints for:
- Resuming an open attempt
- Viewing the attempt (questions without correct answers)
- Autosaving answers
- Submitting
- Streaming integrity events
"""

import time
from typing import Any, List, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from exam_gate.database import get_db
from exam_gate.services.answers import save_answer
from exam_gate.services.attempts import describe_attempt, get_attempt, resume_attempt
from exam_gate.services.integrity import record_events
from exam_gate.services.scoring import result_to_dict, submit_attempt
from exam_gate.logging_config import get_logger, log_with_context
from exam_gate.timeutil import isoformat

router = APIRouter()
logger = get_logger("http")


# ── Pydantic schemas ─────────────────────────────────────────

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ResumeRequest(CamelModel):
    exam_id: str = Field(min_length=1, max_length=128)
    candidate_name: Optional[str] = Field(default="", max_length=200)
    candidate_identifier: Optional[str] = Field(default="", max_length=200)
    pin: Optional[str] = Field(default=None, max_length=128)


class SaveAnswerRequest(CamelModel):
    """answerPayload is decoded against the question type by the answer store."""
    exam_id: Optional[str] = None
    question_id: str = Field(min_length=1)
    answer_payload: Any = None
    current_question_index: Optional[int] = Field(default=None, ge=0)
    is_final: bool = False


class IntegrityBatchRequest(CamelModel):
    events: List[Any] = Field(default_factory=list)


@router.post("/api/attempts/resume")
def resume(body: ResumeRequest, db: Session = Depends(get_db)):
    """Find the single open attempt of a returning candidate."""
    outcome = resume_attempt(
        db,
        exam_id=body.exam_id.strip(),
        candidate_name=body.candidate_name,
        candidate_identifier=body.candidate_identifier,
        raw_pin=(body.pin or "").strip() or None,
    )
    return outcome


@router.get("/api/attempts/{attempt_id}")
def get_attempt_view(attempt_id: str, db: Session = Depends(get_db)):
    """Candidate view of an attempt: timing, position, questions and saved answers."""
    return describe_attempt(db, attempt_id)


@router.post("/api/attempts/{attempt_id}/answers")
def autosave_answer(attempt_id: str, body: SaveAnswerRequest, db: Session = Depends(get_db)):
    """Replace the saved answer of one question."""
    return save_answer(
        db,
        attempt_id=attempt_id,
        question_id=body.question_id,
        answer_payload=body.answer_payload,
        exam_id=body.exam_id,
        current_question_index=body.current_question_index,
        is_final=body.is_final,
    )


@router.post("/api/attempts/{attempt_id}/submit")
def submit(attempt_id: str, db: Session = Depends(get_db)):
    """Submit the attempt; exactly one concurrent caller succeeds."""
    start_time = time.time()

    result = submit_attempt(db, attempt_id)
    attempt = get_attempt(db, attempt_id)

    duration_ms = (time.time() - start_time) * 1000
    log_with_context(logger, "INFO",
        "Attempt submitted: {}".format(attempt.status),
        context={"attempt_id": attempt_id, "exam_id": attempt.exam_id},
        extra_data={"duration_ms": round(duration_ms, 2)})

    return {
        "status": "ok",
        "submittedAt": isoformat(attempt.submitted_at),
        "finalStatus": attempt.status,
        "result": result_to_dict(result),
    }


@router.post("/api/attempts/{attempt_id}/integrity")
def log_integrity_events(attempt_id: str, body: IntegrityBatchRequest, db: Session = Depends(get_db)):
    """Append a batch of client behaviour events and return the new score."""
    outcome = record_events(db, attempt_id, body.events)
    return {"status": "ok", "logged": outcome["logged"], "integrityScore": outcome["integrity_score"]}
