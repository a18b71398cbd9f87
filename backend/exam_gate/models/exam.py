"""
Exam, Question and ExamQuestion models.

These tables are owned by the authoring side of the platform; the attempt
engine only reads them through services/providers.py. They live here so the
engine has a schema to run against locally and in tests.
"""

import uuid
from sqlalchemy import Column, Text, Integer, Float, Boolean, DateTime, ForeignKey, String, Index, UniqueConstraint
from sqlalchemy.orm import relationship
from exam_gate.database import Base
from exam_gate.jsonutil import load_json
from exam_gate.timeutil import utc_now


class Exam(Base):
    """
    Exam configuration: duration, shuffling and pass mark.

    Only `published` exams can be entered with a PIN.
    """
    __tablename__ = "exams"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()),
                doc="Unique exam identifier")
    title = Column(Text, nullable=False, doc="Exam title")
    status = Column(Text, nullable=False, default="published",
                    doc="Lifecycle status: draft | published | archived")
    duration_minutes = Column(Integer, nullable=False, default=60,
                              doc="Time limit of every attempt, in minutes")
    shuffle_questions = Column(Boolean, nullable=False, default=False,
                               doc="Shuffle question order per attempt")
    shuffle_options = Column(Boolean, nullable=False, default=False,
                             doc="Shuffle option display order per attempt")
    max_attempts = Column(Integer, nullable=True,
                          doc="Maximum attempts per candidate identifier (NULL = unlimited)")
    passing_score = Column(Float, nullable=True,
                           doc="Pass mark as a percentage (NULL = no pass/fail)")
    created_at = Column(DateTime, default=utc_now)

    exam_questions = relationship("ExamQuestion", back_populates="exam",
                                  order_by="ExamQuestion.display_order")

    def __repr__(self):
        return f"<Exam(id={self.id}, title='{self.title}', status='{self.status}')>"


class Question(Base):
    """
    A gradable question.

    correct_answer holds an option index (mcq_single), a list of indices
    (mcq_multi), a boolean (true_false) or a string / list of strings
    (short_answer). short_answer_rules may add acceptedAnswers,
    requiredKeywords, anyKeywords and normalisation switches.
    """
    __tablename__ = "questions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    question_type = Column(Text, nullable=False, doc="mcq_single | mcq_multi | true_false | short_answer")
    prompt = Column(Text, nullable=False, default="")
    options = Column(Text, nullable=False, default="[]", doc="Option texts as a JSON list")
    correct_answer = Column(Text, nullable=True, doc="Correct answer as JSON")
    short_answer_rules = Column(Text, nullable=True, doc="Short answer grading rules as JSON")
    subject_id = Column(String(36), nullable=True)
    created_at = Column(DateTime, default=utc_now)

    @property
    def options_list(self):
        return load_json(self.options, []) or []

    @property
    def correct_answer_value(self):
        return load_json(self.correct_answer)

    @property
    def short_answer_rules_dict(self):
        rules = load_json(self.short_answer_rules, {})
        return rules if isinstance(rules, dict) else {}

    def __repr__(self):
        return f"<Question(id={self.id}, type='{self.question_type}')>"


class ExamQuestion(Base):
    """Assignment of a question to an exam with its position and points."""
    __tablename__ = "exam_questions"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    exam_id = Column(String(36), ForeignKey("exams.id"), nullable=False)
    question_id = Column(String(36), ForeignKey("questions.id"), nullable=False)
    display_order = Column(Integer, nullable=False, default=0)
    points = Column(Float, nullable=False, default=1)

    exam = relationship("Exam", back_populates="exam_questions")
    question = relationship("Question")

    __table_args__ = (
        UniqueConstraint("exam_id", "question_id", name="uq_exam_questions_exam_question"),
        Index("ix_exam_questions_exam_id", "exam_id"),
    )
