"""
Answer models.

AttemptAnswer holds the current value per (attempt, question); every write
replaces it wholesale. AttemptAnswerHistory keeps each accepted write for
audit.
"""

import uuid
from sqlalchemy import Column, Text, Integer, Boolean, DateTime, ForeignKey, Index, String, UniqueConstraint
from sqlalchemy.orm import relationship
from exam_gate.database import Base
from exam_gate.jsonutil import load_json
from exam_gate.timeutil import utc_now


class AttemptAnswer(Base):
    __tablename__ = "attempt_answers"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    attempt_id = Column(String(36), ForeignKey("exam_attempts.id"), nullable=False)
    exam_id = Column(String(36), nullable=False)
    question_id = Column(String(36), nullable=False)
    answer_payload = Column(Text, nullable=False, default="null",
                            doc="Decoded answer value as JSON (null = cleared)")
    is_final = Column(Boolean, nullable=False, default=False)
    saved_at = Column(DateTime, nullable=False, default=utc_now)
    version_no = Column(Integer, nullable=False, default=1)

    attempt = relationship("ExamAttempt", back_populates="answers")

    __table_args__ = (
        UniqueConstraint("attempt_id", "question_id", name="uq_attempt_answers_attempt_question"),
        Index("ix_attempt_answers_exam_question", "exam_id", "question_id"),
    )

    @property
    def payload(self):
        return load_json(self.answer_payload)

    def __repr__(self):
        return f"<AttemptAnswer(attempt={self.attempt_id}, question={self.question_id}, v={self.version_no})>"


class AttemptAnswerHistory(Base):
    __tablename__ = "attempt_answer_history"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    attempt_id = Column(String(36), ForeignKey("exam_attempts.id"), nullable=False)
    question_id = Column(String(36), nullable=False)
    answer_payload = Column(Text, nullable=False, default="null")
    version_no = Column(Integer, nullable=False)
    saved_at = Column(DateTime, nullable=False, default=utc_now)

    __table_args__ = (
        Index("ix_attempt_answer_history_attempt_question", "attempt_id", "question_id"),
    )
