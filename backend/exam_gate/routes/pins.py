"""
PIN API routes - candidate entry point.

- POST /api/pins/validate: redeem a PIN and optionally start an attempt
"""

import time
from typing import Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from exam_gate.database import get_db
from exam_gate.services.attempts import enter_exam
from exam_gate.logging_config import get_logger, log_with_context

router = APIRouter()
logger = get_logger("http")


# ── Pydantic schemas ─────────────────────────────────────────

class PinValidationRequest(BaseModel):
    """Body of POST /api/pins/validate (camelCase on the wire)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    exam_id: str = Field(min_length=1, max_length=128)
    pin: str = Field(min_length=1, max_length=128)
    candidate_identifier: Optional[str] = Field(default="", max_length=200)
    candidate_name: Optional[str] = Field(default="", max_length=200)
    start_attempt: bool = False


def client_ip_of(request: Request) -> Optional[str]:
    """First X-Forwarded-For hop, then X-Real-IP, then the socket peer."""
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    real_ip = request.headers.get("x-real-ip")
    if real_ip:
        return real_ip.strip()
    return request.client.host if request.client else None


@router.post("/api/pins/validate")
def validate_pin(body: PinValidationRequest, request: Request, db: Session = Depends(get_db)):
    """Redeem one use of a PIN; with startAttempt, open a timed attempt."""
    start_time = time.time()

    outcome = enter_exam(
        db,
        exam_id=body.exam_id.strip(),
        raw_pin=body.pin.strip(),
        candidate_name=(body.candidate_name or "").strip(),
        candidate_identifier=(body.candidate_identifier or "").strip(),
        start=body.start_attempt,
        client_ip=client_ip_of(request),
        user_agent=request.headers.get("user-agent"),
    )

    duration_ms = (time.time() - start_time) * 1000
    log_with_context(logger, "INFO",
        "PIN validated (remaining uses {})".format(outcome["remainingUses"]),
        context={"exam_id": outcome["examId"], "pin_id": outcome["pinId"], "attempt_id": outcome["attemptId"]},
        extra_data={"duration_ms": round(duration_ms, 2)})

    return outcome
