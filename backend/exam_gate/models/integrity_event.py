"""
IntegrityEvent model - append-only log of client behaviour signals
(tab switches, fullscreen exits, timer drift) for one attempt.
"""

import uuid
from sqlalchemy import Column, Text, DateTime, ForeignKey, Index, String
from exam_gate.database import Base
from exam_gate.jsonutil import load_json
from exam_gate.timeutil import utc_now


class IntegrityEvent(Base):
    __tablename__ = "attempt_integrity_events"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    attempt_id = Column(String(36), ForeignKey("exam_attempts.id"), nullable=False)
    exam_id = Column(String(36), nullable=False)
    event_type = Column(Text, nullable=False)
    severity = Column(Text, nullable=False, default="info", doc="info | warning | critical")
    occurred_at = Column(DateTime, nullable=True, doc="Client clock; untrusted")
    received_at = Column(DateTime, nullable=False, default=utc_now, doc="Server clock")
    event_metadata = Column("metadata", Text, nullable=False, default="{}")

    __table_args__ = (
        Index("ix_attempt_integrity_events_attempt_id", "attempt_id"),
    )

    @property
    def metadata_dict(self):
        meta = load_json(self.event_metadata, {})
        return meta if isinstance(meta, dict) else {}

    def __repr__(self):
        return f"<IntegrityEvent(attempt={self.attempt_id}, type='{self.event_type}', severity='{self.severity}')>"
