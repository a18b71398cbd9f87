"""
Scoring outputs.

ExamResult: exactly one row per attempt (attempt_id is unique), written by
the winning submission and overwritten in place by reprocessing.

QuestionAnalytics: per-question running counters updated once per scored
attempt, read by the analytics engine next to its raw recomputation.
"""

import uuid
from sqlalchemy import Column, Integer, Float, Boolean, DateTime, ForeignKey, Text, String, Index
from sqlalchemy.orm import relationship
from exam_gate.database import Base
from exam_gate.jsonutil import load_json
from exam_gate.timeutil import utc_now


class ExamResult(Base):
    __tablename__ = "exam_results"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    attempt_id = Column(String(36), ForeignKey("exam_attempts.id"), nullable=False, unique=True)
    exam_id = Column(String(36), nullable=False)
    candidate_id = Column(String(36), nullable=False)
    total_questions = Column(Integer, nullable=False, default=0)
    answered_count = Column(Integer, nullable=False, default=0)
    correct_count = Column(Integer, nullable=False, default=0)
    incorrect_count = Column(Integer, nullable=False, default=0)
    score = Column(Float, nullable=False, default=0, doc="Sum of points of correct questions")
    percentage = Column(Integer, nullable=False, default=0, doc="round(correct / total * 100)")
    grade_letter = Column(Text, nullable=True)
    passed = Column(Boolean, nullable=True)
    integrity_score = Column(Float, nullable=True, doc="Integrity score snapshot at scoring time")
    subject_breakdown = Column(Text, nullable=False, default="{}")
    analytics_applied = Column(Boolean, nullable=False, default=False,
                               doc="QuestionAnalytics counters already include this attempt")
    computed_at = Column(DateTime, nullable=False, default=utc_now)

    attempt = relationship("ExamAttempt", back_populates="result")

    __table_args__ = (
        Index("ix_exam_results_exam_id", "exam_id"),
    )

    @property
    def subject_breakdown_dict(self):
        return load_json(self.subject_breakdown, {}) or {}

    def __repr__(self):
        return f"<ExamResult(attempt={self.attempt_id}, percentage={self.percentage}, grade='{self.grade_letter}')>"


class QuestionAnalytics(Base):
    __tablename__ = "question_analytics"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    question_id = Column(String(36), nullable=False, unique=True)
    exposure_count = Column(Integer, nullable=False, default=0)
    answer_count = Column(Integer, nullable=False, default=0)
    correct_count = Column(Integer, nullable=False, default=0)
    option_popularity = Column(Text, nullable=False, default="{}")
    updated_at = Column(DateTime, nullable=False, default=utc_now)

    @property
    def option_popularity_dict(self):
        return load_json(self.option_popularity, {}) or {}
