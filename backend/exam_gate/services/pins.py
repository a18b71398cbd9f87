"""
PIN Registry - generation, redemption and revocation of exam access codes.

Generation:
1. Draw random strings from the charset (prefix prepended)
2. Hash each with SHA-256, skipping duplicates within the batch
3. Give up after quantity * PIN_GENERATION_ATTEMPT_MULTIPLIER draws
4. Persist only hash + hint; hand the raw PINs back exactly once

Redemption:
1. Throttle clients with too many recent failures (RATE_LIMITED)
2. Look up an active, unexpired, not exhausted PIN for the exam
3. Check the allow-list when enabled
4. Guarded increment: uses_count + 1 only WHERE uses_count < max_uses

Every redemption outcome is logged to pin_validation_attempts.
"""

import hashlib
import secrets
import time
from datetime import datetime, timedelta
from typing import List, Optional, Tuple

from sqlalchemy import update
from sqlalchemy.orm import Session

from exam_gate.errors import InvalidPin, NotFound, RateLimited, ValidationFailed
from exam_gate.models.pin import Pin, PinAllowListEntry, PinBatch, PinValidationAttempt
from exam_gate.logging_config import get_logger, log_with_context
from exam_gate.settings import (
    PIN_GENERATION_ATTEMPT_MULTIPLIER,
    PIN_RATE_LIMIT_MAX_FAILURES,
    PIN_RATE_LIMIT_WINDOW_MINUTES,
)
from exam_gate.timeutil import utc_now

logger = get_logger("pins")

# Upper-case alphanumerics without the look-alikes 0/O and 1/I
CHARSETS = {
    "numeric": "0123456789",
    "alnum_upper": "ABCDEFGHJKLMNPQRSTUVWXYZ23456789",
}

MIN_PIN_LENGTH = 4
MAX_PIN_LENGTH = 24
MAX_BATCH_QUANTITY = 1000


def hash_pin(pin: str) -> str:
    """SHA-256 hex digest of a raw PIN (surrounding whitespace ignored)."""
    return hashlib.sha256(pin.strip().encode("utf-8")).hexdigest()


def build_pin_hint(pin: str) -> str:
    """Masked tail shown to admins; never enough to reconstruct the PIN."""
    if len(pin) <= 4:
        return f"****{pin}"
    return f"***{pin[-4:]}"


def generate_raw_pin(length: int, charset: str, prefix: str = "") -> str:
    """Random PIN body from the charset, with the upper-cased prefix prepended."""
    length = max(MIN_PIN_LENGTH, min(MAX_PIN_LENGTH, int(length)))
    chars = CHARSETS[charset]
    body = "".join(secrets.choice(chars) for _ in range(length))
    return f"{(prefix or '').upper()}{body}"


def generate_batch(db: Session, exam_id: str, quantity: int, length: int = 8,
                   charset: str = "alnum_upper", prefix: str = "", max_uses: int = 1,
                   expires_at: Optional[datetime] = None, allow_list_enabled: bool = False,
                   batch_name: str = "", capacity_guard=None,
                   attempt_multiplier: int = PIN_GENERATION_ATTEMPT_MULTIPLIER) -> Tuple[PinBatch, List[str]]:
    """
    Generate a batch of PINs for an exam.

    Returns (batch, raw_pins). The raw PINs are not stored anywhere and
    must be handed to the caller now. Raises PIN_GENERATION_FAILED (and
    persists nothing) when enough unique hashes cannot be produced.
    """
    start_time = time.time()

    if charset not in CHARSETS:
        raise ValidationFailed("INVALID_CHARSET", message="charset must be one of {}".format(sorted(CHARSETS)))
    if quantity < 1 or quantity > MAX_BATCH_QUANTITY:
        raise ValidationFailed("INVALID_QUANTITY", message="quantity must be between 1 and {}".format(MAX_BATCH_QUANTITY))
    if max_uses < 1:
        raise ValidationFailed("INVALID_MAX_USES", message="max_uses must be at least 1")
    length = max(MIN_PIN_LENGTH, min(MAX_PIN_LENGTH, int(length)))
    prefix = (prefix or "").strip().upper()

    if capacity_guard is not None:
        capacity_guard.assert_allowed("pins", quantity)

    raw_pins = []
    seen_hashes = set()
    draws = 0
    while len(raw_pins) < quantity and draws < quantity * attempt_multiplier:
        draws += 1
        raw = generate_raw_pin(length, charset, prefix)
        pin_hash = hash_pin(raw)
        if pin_hash in seen_hashes:
            continue
        seen_hashes.add(pin_hash)
        raw_pins.append(raw)

    # Hashes already issued for this exam by earlier batches
    if seen_hashes:
        taken = {
            h for (h,) in db.query(Pin.pin_hash).filter(
                Pin.exam_id == exam_id, Pin.pin_hash.in_(seen_hashes)
            ).all()
        }
        if taken:
            raw_pins = [raw for raw in raw_pins if hash_pin(raw) not in taken]

    if len(raw_pins) != quantity:
        log_with_context(logger, "WARNING",
            "PIN generation failed: {} of {} unique PINs after {} draws".format(len(raw_pins), quantity, draws),
            context={"exam_id": exam_id},
            extra_data={"charset": charset, "length": length, "prefix": prefix})
        raise ValidationFailed("PIN_GENERATION_FAILED", status_code=422,
                               message="Failed to generate enough unique PINs")

    batch = PinBatch(
        exam_id=exam_id,
        batch_name=batch_name or "",
        prefix=prefix or None,
        quantity=quantity,
        charset=charset,
        length=length,
        expires_at=expires_at,
        usage_limit_per_pin=max_uses,
        allow_list_enabled=allow_list_enabled,
        created_at=utc_now(),
    )
    db.add(batch)
    db.flush()

    db.add_all([
        Pin(
            exam_id=exam_id,
            batch_id=batch.id,
            pin_hash=hash_pin(raw),
            pin_hint=build_pin_hint(raw),
            status="active",
            max_uses=max_uses,
            uses_count=0,
            expires_at=expires_at,
            allow_list_enabled=allow_list_enabled,
        )
        for raw in raw_pins
    ])
    db.commit()
    db.refresh(batch)

    duration_ms = (time.time() - start_time) * 1000
    log_with_context(logger, "INFO",
        "Generated PIN batch of {} (max_uses={})".format(quantity, max_uses),
        context={"exam_id": exam_id, "batch_id": batch.id},
        extra_data={"duration_ms": round(duration_ms, 2), "draws": draws, "charset": charset})

    return batch, raw_pins


def _record_validation(db: Session, entered_hash: str, success: bool, reason: str,
                       exam_id: str = None, pin_id: str = None, client_ip: str = None,
                       user_agent: str = None, candidate_identifier: str = None):
    db.add(PinValidationAttempt(
        exam_id=exam_id,
        pin_id=pin_id,
        entered_pin_hash=entered_hash,
        client_ip=client_ip,
        user_agent=user_agent,
        candidate_identifier=candidate_identifier or None,
        success=success,
        reason=reason,
        created_at=utc_now(),
    ))


def check_rate_limit(db: Session, client_ip: Optional[str], entered_hash: str, now: datetime = None,
                     window_minutes: int = PIN_RATE_LIMIT_WINDOW_MINUTES,
                     max_failures: int = PIN_RATE_LIMIT_MAX_FAILURES,
                     exam_id: str = None, candidate_identifier: str = None, user_agent: str = None):
    """
    Raise RATE_LIMITED when the client has too many failed redemptions in
    the window. Clients without a known IP are not throttled.
    """
    if not client_ip:
        return
    now = now or utc_now()
    since = now - timedelta(minutes=window_minutes)
    failures = db.query(PinValidationAttempt).filter(
        PinValidationAttempt.client_ip == client_ip,
        PinValidationAttempt.success.is_(False),
        PinValidationAttempt.created_at >= since,
    ).count()
    if failures >= max_failures:
        _record_validation(db, entered_hash, False, "rate_limited", exam_id=exam_id,
                           client_ip=client_ip, user_agent=user_agent,
                           candidate_identifier=candidate_identifier)
        db.commit()
        log_with_context(logger, "WARNING", "PIN validation rate limited",
            context={"exam_id": exam_id},
            extra_data={"client_ip": client_ip, "failures": failures})
        raise RateLimited(message="Too many failed PIN attempts",
                          details={"retry_after_minutes": window_minutes})


def redeem(db: Session, exam_id: str, raw_pin: str, candidate_identifier: str = None,
           client_ip: str = None, user_agent: str = None, now: datetime = None,
           commit: bool = True) -> Pin:
    """
    Redeem one use of a PIN for an exam.

    On success the guarded increment is flushed (and committed unless
    commit=False, which lets the caller create the attempt in the same
    transaction). Raises INVALID_PIN with a logged reason on every failure,
    RATE_LIMITED for throttled clients.
    """
    now = now or utc_now()
    entered_hash = hash_pin(raw_pin)
    candidate_identifier = (candidate_identifier or "").strip()

    check_rate_limit(db, client_ip, entered_hash, now=now, exam_id=exam_id,
                     candidate_identifier=candidate_identifier, user_agent=user_agent)

    pin = db.query(Pin).filter(Pin.pin_hash == entered_hash, Pin.exam_id == exam_id).first()

    def fail(reason: str):
        _record_validation(db, entered_hash, False, reason, exam_id=exam_id,
                           pin_id=pin.id if pin else None, client_ip=client_ip,
                           user_agent=user_agent, candidate_identifier=candidate_identifier)
        db.commit()
        log_with_context(logger, "INFO", "PIN validation failed: {}".format(reason),
            context={"exam_id": exam_id, "pin_id": pin.id if pin else None},
            extra_data={"client_ip": client_ip})
        return InvalidPin(message="Invalid PIN", details={"reason": reason})

    if not pin:
        raise fail("pin_not_found")
    if pin.status != "active":
        raise fail("pin_status_{}".format(pin.status))
    if pin.expires_at and pin.expires_at < now:
        raise fail("pin_expired")
    if pin.uses_count >= pin.max_uses:
        raise fail("pin_usage_limit_reached")

    if pin.allow_list_enabled:
        if not candidate_identifier:
            raise fail("allow_list_identifier_required")
        entry = db.query(PinAllowListEntry).filter(
            PinAllowListEntry.pin_id == pin.id,
            PinAllowListEntry.candidate_identifier == candidate_identifier,
        ).first()
        if not entry:
            raise fail("allow_list_miss")

    # Guarded increment: two redemptions racing for the last use cannot both match
    result = db.execute(
        update(Pin)
        .where(Pin.id == pin.id, Pin.status == "active", Pin.uses_count < Pin.max_uses)
        .values(uses_count=Pin.uses_count + 1)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        db.rollback()
        raise fail("pin_usage_limit_reached")

    _record_validation(db, entered_hash, True, "validated", exam_id=exam_id, pin_id=pin.id,
                       client_ip=client_ip, user_agent=user_agent,
                       candidate_identifier=candidate_identifier)
    db.flush()
    db.refresh(pin)
    if commit:
        db.commit()

    log_with_context(logger, "INFO", "PIN redeemed",
        context={"exam_id": exam_id, "pin_id": pin.id},
        extra_data={"uses_count": pin.uses_count, "max_uses": pin.max_uses})
    return pin


def find_pin(db: Session, exam_id: str, raw_pin: str) -> Optional[Pin]:
    """Look up a PIN of an exam by raw value without redeeming it."""
    return db.query(Pin).filter(Pin.pin_hash == hash_pin(raw_pin), Pin.exam_id == exam_id).first()


def revoke_pin(db: Session, pin_id: str) -> Pin:
    """Revoke a single PIN. Revoking a revoked PIN is a no-op."""
    pin = db.query(Pin).filter(Pin.id == pin_id).first()
    if not pin:
        raise NotFound("PIN_NOT_FOUND", message="PIN not found")
    db.execute(
        update(Pin).where(Pin.id == pin_id, Pin.status == "active").values(status="revoked")
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(pin)
    log_with_context(logger, "INFO", "PIN revoked", context={"pin_id": pin_id, "exam_id": pin.exam_id})
    return pin


def revoke_batch(db: Session, batch_id: str) -> int:
    """Revoke every active PIN of a batch; returns the number revoked."""
    batch = db.query(PinBatch).filter(PinBatch.id == batch_id).first()
    if not batch:
        raise NotFound("PIN_BATCH_NOT_FOUND", message="PIN batch not found")
    result = db.execute(
        update(Pin).where(Pin.batch_id == batch_id, Pin.status == "active").values(status="revoked")
        .execution_options(synchronize_session=False)
    )
    db.commit()
    log_with_context(logger, "INFO", "PIN batch revoked",
        context={"batch_id": batch_id, "exam_id": batch.exam_id},
        extra_data={"revoked": result.rowcount})
    return result.rowcount


def add_allow_list_entries(db: Session, pin_id: str, identifiers: List[str]) -> int:
    """Add candidate identifiers to a PIN's allow-list; existing entries are skipped."""
    pin = db.query(Pin).filter(Pin.id == pin_id).first()
    if not pin:
        raise NotFound("PIN_NOT_FOUND", message="PIN not found")
    wanted = {i.strip() for i in identifiers if i and i.strip()}
    existing = {
        e.candidate_identifier for e in db.query(PinAllowListEntry).filter(
            PinAllowListEntry.pin_id == pin_id
        ).all()
    }
    added = sorted(wanted - existing)
    db.add_all([PinAllowListEntry(pin_id=pin_id, candidate_identifier=i) for i in added])
    db.commit()
    log_with_context(logger, "INFO", "Allow-list updated",
        context={"pin_id": pin_id}, extra_data={"added": len(added)})
    return len(added)
