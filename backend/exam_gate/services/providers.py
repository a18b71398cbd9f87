"""
Collaborator providers.

The attempt engine does not own exam authoring, question banks or plan
limits. It reads them through the three seams defined here:

- exam-configuration provider: get_exam_config()
- question-bank provider: get_exam_questions()
- capacity guard: PinCapacityGuard.assert_allowed(target, requested),
  consulted only when generating PIN batches
"""

from datetime import datetime
from typing import Any, List, Optional

from pydantic import BaseModel
from sqlalchemy import func
from sqlalchemy.orm import Session

from exam_gate.errors import CapacityExceeded, NotFound
from exam_gate.models.exam import Exam, ExamQuestion, Question
from exam_gate.models.pin import PinBatch
from exam_gate.settings import MAX_PINS_PER_MONTH
from exam_gate.timeutil import utc_now


class ExamConfig(BaseModel):
    """Exam settings the attempt lifecycle depends on."""
    exam_id: str
    title: str = ""
    status: str = "published"
    duration_minutes: int
    shuffle_questions: bool = False
    shuffle_options: bool = False
    max_attempts: Optional[int] = None
    passing_score: Optional[float] = None


class QuestionDefinition(BaseModel):
    """One question of an exam as the scoring engine needs it."""
    id: str
    question_type: str
    prompt: str = ""
    options: List[str] = []
    correct_answer: Any = None
    short_answer_rules: dict = {}
    points: float = 1.0
    subject_id: Optional[str] = None
    display_order: int = 0


def get_exam_config(db: Session, exam_id: str) -> ExamConfig:
    """Load the configuration of an exam; EXAM_NOT_FOUND if it does not exist."""
    exam = db.query(Exam).filter(Exam.id == exam_id).first()
    if not exam:
        raise NotFound("EXAM_NOT_FOUND", message="Exam not found")
    return ExamConfig(
        exam_id=exam.id,
        title=exam.title,
        status=exam.status,
        duration_minutes=exam.duration_minutes,
        shuffle_questions=bool(exam.shuffle_questions),
        shuffle_options=bool(exam.shuffle_options),
        max_attempts=exam.max_attempts,
        passing_score=exam.passing_score,
    )


def get_exam_questions(db: Session, exam_id: str) -> List[QuestionDefinition]:
    """Questions assigned to an exam, in display order, with current definitions."""
    rows = (
        db.query(ExamQuestion, Question)
        .join(Question, Question.id == ExamQuestion.question_id)
        .filter(ExamQuestion.exam_id == exam_id)
        .order_by(ExamQuestion.display_order, ExamQuestion.question_id)
        .all()
    )
    return [
        QuestionDefinition(
            id=question.id,
            question_type=question.question_type,
            prompt=question.prompt or "",
            options=[str(o) for o in question.options_list],
            correct_answer=question.correct_answer_value,
            short_answer_rules=question.short_answer_rules_dict,
            points=float(exam_question.points if exam_question.points is not None else 1),
            subject_id=question.subject_id,
            display_order=exam_question.display_order,
        )
        for exam_question, question in rows
    ]


def _month_start(now: datetime) -> datetime:
    return now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)


class PinCapacityGuard:
    """
    Monthly PIN generation cap.

    Counts PINs generated in the current calendar month (UTC) from the
    pin_batches table and rejects a request that would exceed the limit.
    A limit of 0 means unlimited.
    """

    def __init__(self, db: Session, monthly_limit: int = MAX_PINS_PER_MONTH):
        self.db = db
        self.monthly_limit = monthly_limit

    def current_usage(self, now: datetime = None) -> int:
        since = _month_start(now or utc_now())
        total = self.db.query(func.coalesce(func.sum(PinBatch.quantity), 0)).filter(
            PinBatch.created_at >= since
        ).scalar()
        return int(total or 0)

    def assert_allowed(self, target: str, requested: int, now: datetime = None):
        if target != "pins" or not self.monthly_limit:
            return
        current = self.current_usage(now)
        if current + requested > self.monthly_limit:
            raise CapacityExceeded(
                message="Monthly PIN generation limit reached",
                details={
                    "target": target,
                    "current": current,
                    "requested": requested,
                    "limit": self.monthly_limit,
                },
            )
