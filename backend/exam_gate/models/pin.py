"""
PIN models - batches, hashed PINs, allow-lists and the redemption log.

A PIN is stored only as a SHA-256 hash plus a short hint for admin display.
uses_count is only ever changed by a guarded increment
(uses_count < max_uses), so it can never exceed max_uses.
"""

import uuid
from sqlalchemy import Column, Text, Integer, Boolean, DateTime, ForeignKey, String, Index, UniqueConstraint, CheckConstraint
from sqlalchemy.orm import relationship
from exam_gate.database import Base
from exam_gate.timeutil import utc_now


class PinBatch(Base):
    """One generation run: PINs sharing exam, prefix, expiry and use limit."""
    __tablename__ = "pin_batches"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    exam_id = Column(String(36), ForeignKey("exams.id"), nullable=False)
    batch_name = Column(Text, nullable=False, default="")
    prefix = Column(Text, nullable=True)
    quantity = Column(Integer, nullable=False)
    charset = Column(Text, nullable=False, default="alnum_upper")
    length = Column(Integer, nullable=False, default=8)
    expires_at = Column(DateTime, nullable=True)
    usage_limit_per_pin = Column(Integer, nullable=False, default=1)
    allow_list_enabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utc_now)

    pins = relationship("Pin", back_populates="batch")

    __table_args__ = (
        Index("ix_pin_batches_exam_id", "exam_id"),
        Index("ix_pin_batches_created_at", "created_at"),
    )

    def __repr__(self):
        return f"<PinBatch(id={self.id}, exam={self.exam_id}, quantity={self.quantity})>"


class Pin(Base):
    """An access code bound to one exam."""
    __tablename__ = "exam_pins"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    exam_id = Column(String(36), ForeignKey("exams.id"), nullable=False)
    batch_id = Column(String(36), ForeignKey("pin_batches.id"), nullable=True)
    pin_hash = Column(String(64), nullable=False, doc="SHA-256 hex digest of the raw PIN")
    pin_hint = Column(Text, nullable=False, doc="Masked tail of the PIN for admin display")
    status = Column(Text, nullable=False, default="active", doc="active | revoked")
    max_uses = Column(Integer, nullable=False, default=1)
    uses_count = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime, nullable=True)
    allow_list_enabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime, default=utc_now)

    batch = relationship("PinBatch", back_populates="pins")
    allow_list = relationship("PinAllowListEntry", back_populates="pin")

    __table_args__ = (
        UniqueConstraint("exam_id", "pin_hash", name="uq_exam_pins_exam_hash"),
        CheckConstraint("uses_count <= max_uses", name="ck_exam_pins_uses_within_limit"),
        Index("ix_exam_pins_batch_id", "batch_id"),
    )

    @property
    def remaining_uses(self) -> int:
        return max(0, self.max_uses - self.uses_count)

    def __repr__(self):
        return f"<Pin(id={self.id}, hint='{self.pin_hint}', uses={self.uses_count}/{self.max_uses})>"


class PinAllowListEntry(Base):
    """Candidate identifier allowed to redeem an allow-listed PIN."""
    __tablename__ = "pin_allow_list"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    pin_id = Column(String(36), ForeignKey("exam_pins.id"), nullable=False)
    candidate_identifier = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utc_now)

    pin = relationship("Pin", back_populates="allow_list")

    __table_args__ = (
        UniqueConstraint("pin_id", "candidate_identifier", name="uq_pin_allow_list_entry"),
    )


class PinValidationAttempt(Base):
    """Append-only log of redemption attempts; failures feed the rate limiter."""
    __tablename__ = "pin_validation_attempts"

    id = Column(String(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    exam_id = Column(String(36), nullable=True)
    pin_id = Column(String(36), nullable=True)
    entered_pin_hash = Column(String(64), nullable=False)
    client_ip = Column(Text, nullable=True)
    user_agent = Column(Text, nullable=True)
    candidate_identifier = Column(Text, nullable=True)
    success = Column(Boolean, nullable=False, default=False)
    reason = Column(Text, nullable=False)
    created_at = Column(DateTime, default=utc_now)

    __table_args__ = (
        Index("ix_pin_validation_attempts_ip_created", "client_ip", "created_at"),
    )
