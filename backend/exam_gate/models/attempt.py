"""
ExamAttempt model - one candidate's timed session against one exam.

This is the central aggregate of the engine. Its status only moves forward:

    in_progress -> submitting -> submitted | auto_submitted

`submitting` is the submission lock: it is taken with a conditional UPDATE
(WHERE status = 'in_progress') and held only while the winning request
scores the attempt. Terminal attempts are never edited or deleted.
"""

import uuid
from sqlalchemy import Column, Text, Integer, Float, DateTime, ForeignKey, Index, String
from sqlalchemy.orm import relationship
from exam_gate.database import Base
from exam_gate.jsonutil import load_json
from exam_gate.timeutil import utc_now

STATUS_IN_PROGRESS = "in_progress"
STATUS_SUBMITTING = "submitting"
STATUS_SUBMITTED = "submitted"
STATUS_AUTO_SUBMITTED = "auto_submitted"
TERMINAL_STATUSES = (STATUS_SUBMITTED, STATUS_AUTO_SUBMITTED)


class ExamAttempt(Base):
    """
    SQLAlchemy model for the exam_attempts table.

    attempt_metadata is a JSON object holding the candidate identifier given
    at PIN entry, the integrity review status and summary, and reprocessing
    timestamps.
    """
    __tablename__ = "exam_attempts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()),
                doc="Unique attempt identifier")
    exam_id = Column(String(36), ForeignKey("exams.id"), nullable=False)
    candidate_id = Column(String(36), ForeignKey("candidates.id"), nullable=False)
    pin_id = Column(String(36), ForeignKey("exam_pins.id"), nullable=True,
                    doc="PIN redeemed to open this attempt")
    status = Column(Text, nullable=False, default=STATUS_IN_PROGRESS,
                    doc="in_progress | submitting | submitted | auto_submitted")
    started_at = Column(DateTime, nullable=False, default=utc_now)
    expires_at = Column(DateTime, nullable=False,
                        doc="started_at + exam duration; the server's only timing authority")
    submitted_at = Column(DateTime, nullable=True)
    last_saved_at = Column(DateTime, nullable=True)
    current_question_index = Column(Integer, nullable=False, default=0,
                                    doc="Resume position reported by the last autosave")
    question_order = Column(Text, nullable=False, default="[]",
                            doc="Question ids in the order this candidate sees them (JSON)")
    option_order = Column(Text, nullable=False, default="{}",
                          doc="Per-question option display order, question_id -> [index] (JSON)")
    integrity_score = Column(Float, nullable=False, default=100)
    integrity_events_count = Column(Integer, nullable=False, default=0)
    attempt_metadata = Column(Text, nullable=False, default="{}")

    candidate = relationship("Candidate", back_populates="attempts")
    exam = relationship("Exam")
    answers = relationship("AttemptAnswer", back_populates="attempt")
    result = relationship("ExamResult", back_populates="attempt", uselist=False)

    __table_args__ = (
        Index("ix_exam_attempts_exam_status", "exam_id", "status"),
        Index("ix_exam_attempts_status_expires", "status", "expires_at"),
        Index("ix_exam_attempts_candidate_id", "candidate_id"),
        Index("ix_exam_attempts_pin_id", "pin_id"),
    )

    @property
    def question_order_list(self):
        return load_json(self.question_order, []) or []

    @property
    def option_order_dict(self):
        return load_json(self.option_order, {}) or {}

    @property
    def metadata_dict(self):
        meta = load_json(self.attempt_metadata, {})
        return meta if isinstance(meta, dict) else {}

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def __repr__(self):
        return f"<ExamAttempt(id={self.id}, exam={self.exam_id}, status='{self.status}')>"
