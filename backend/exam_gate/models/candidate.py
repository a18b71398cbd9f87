"""
Candidate model - the person taking an exam.

A new candidate row is created for every PIN entry; resume matching works
on the normalised name and the optional external identifier.
"""

import uuid
from sqlalchemy import Column, Text, DateTime, String, Index
from sqlalchemy.orm import relationship
from exam_gate.database import Base
from exam_gate.timeutil import utc_now


class Candidate(Base):
    __tablename__ = "candidates"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    full_name = Column(Text, nullable=False, doc="Name as typed at PIN entry")
    external_identifier = Column(Text, nullable=True,
                                 doc="Institution-issued identifier (student number, email)")
    created_at = Column(DateTime, default=utc_now)

    attempts = relationship("ExamAttempt", back_populates="candidate")

    __table_args__ = (
        Index("ix_candidates_external_identifier", "external_identifier"),
    )

    def __repr__(self):
        return f"<Candidate(id={self.id}, name='{self.full_name}')>"
