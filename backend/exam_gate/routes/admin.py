"""
Admin API routes - PIN issuance, attempt maintenance, integrity review and
item analytics.

All routes require the X-Admin-Token header when ADMIN_API_TOKEN is set.
Raw PINs appear exactly once, in the batch generation response.
"""

import secrets
import time
from datetime import datetime
from typing import List, Literal, Optional

from fastapi import APIRouter, Depends, Header, Query
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from sqlalchemy.orm import Session

from exam_gate import settings
from exam_gate.database import get_db
from exam_gate.errors import ServiceError
from exam_gate.services import pins as pin_registry
from exam_gate.services.analytics import question_item_analysis
from exam_gate.services.integrity import review_queue, set_review_status
from exam_gate.services.providers import PinCapacityGuard, get_exam_config
from exam_gate.services.scoring import reprocess_attempt, result_to_dict, sweep_expired
from exam_gate.logging_config import get_logger, log_with_context
from exam_gate.timeutil import isoformat, to_naive_utc

logger = get_logger("http")


def require_admin(x_admin_token: Optional[str] = Header(default=None)):
    expected = settings.ADMIN_API_TOKEN
    if expected and not secrets.compare_digest(x_admin_token or "", expected):
        raise ServiceError("UNAUTHORIZED", status_code=401, message="Admin token required")


router = APIRouter(prefix="/api/admin", dependencies=[Depends(require_admin)])


# ── Pydantic schemas ─────────────────────────────────────────

class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PinBatchRequest(CamelModel):
    exam_id: str = Field(min_length=1)
    quantity: int = Field(ge=1, le=pin_registry.MAX_BATCH_QUANTITY)
    length: int = 8
    charset: Literal["numeric", "alnum_upper"] = "alnum_upper"
    prefix: Optional[str] = Field(default="", max_length=12)
    max_uses: int = Field(default=1, ge=1)
    expires_at: Optional[datetime] = None
    allow_list_enabled: bool = False
    batch_name: Optional[str] = Field(default="", max_length=200)


class AllowListRequest(CamelModel):
    candidate_identifiers: List[str] = Field(min_length=1)


class ReviewRequest(CamelModel):
    status: Literal["reviewed", "cleared", "flagged"]
    note: Optional[str] = None


@router.post("/pins/batches")
def create_pin_batch(body: PinBatchRequest, db: Session = Depends(get_db)):
    """Generate a PIN batch; the raw PINs are returned only here."""
    get_exam_config(db, body.exam_id)
    batch, raw_pins = pin_registry.generate_batch(
        db,
        exam_id=body.exam_id,
        quantity=body.quantity,
        length=body.length,
        charset=body.charset,
        prefix=body.prefix or "",
        max_uses=body.max_uses,
        expires_at=to_naive_utc(body.expires_at),
        allow_list_enabled=body.allow_list_enabled,
        batch_name=body.batch_name or "",
        capacity_guard=PinCapacityGuard(db),
    )
    return {
        "status": "ok",
        "batchId": batch.id,
        "examId": batch.exam_id,
        "quantity": batch.quantity,
        "maxUses": batch.usage_limit_per_pin,
        "expiresAt": isoformat(batch.expires_at),
        "pins": raw_pins,
    }


@router.post("/pins/{pin_id}/revoke")
def revoke_pin(pin_id: str, db: Session = Depends(get_db)):
    pin = pin_registry.revoke_pin(db, pin_id)
    return {"status": "ok", "pinId": pin.id, "pinStatus": pin.status}


@router.post("/pins/batches/{batch_id}/revoke")
def revoke_batch(batch_id: str, db: Session = Depends(get_db)):
    revoked = pin_registry.revoke_batch(db, batch_id)
    return {"status": "ok", "batchId": batch_id, "revoked": revoked}


@router.post("/pins/{pin_id}/allow-list")
def add_allow_list(pin_id: str, body: AllowListRequest, db: Session = Depends(get_db)):
    added = pin_registry.add_allow_list_entries(db, pin_id, body.candidate_identifiers)
    return {"status": "ok", "pinId": pin_id, "added": added}


@router.post("/attempts/{attempt_id}/reprocess")
def reprocess(attempt_id: str, db: Session = Depends(get_db)):
    """Re-grade a submitted attempt against current question definitions."""
    result = reprocess_attempt(db, attempt_id)
    return {"status": "ok", "result": result_to_dict(result)}


@router.post("/attempts/{attempt_id}/review")
def review(attempt_id: str, body: ReviewRequest, db: Session = Depends(get_db)):
    attempt = set_review_status(db, attempt_id, body.status, body.note)
    meta = attempt.metadata_dict
    return {
        "status": "ok",
        "attemptId": attempt.id,
        "reviewStatus": meta.get("integrity_review_status"),
        "flagged": meta.get("integrity_flagged", False),
    }


@router.post("/attempts/sweep")
def sweep(db: Session = Depends(get_db)):
    """Finalise every expired in-progress attempt now."""
    start_time = time.time()
    outcome = sweep_expired(db)
    duration_ms = (time.time() - start_time) * 1000
    log_with_context(logger, "INFO", "Manual expiry sweep",
        extra_data={"duration_ms": round(duration_ms, 2), **outcome})
    return {"status": "ok", **outcome}


@router.get("/integrity/queue")
def integrity_queue(
    exam_id: Optional[str] = Query(None, alias="examId", description="Filter by exam ID"),
    limit: int = Query(50, ge=1, le=200, description="Maximum attempts returned"),
    db: Session = Depends(get_db)
):
    items = review_queue(db, exam_id=exam_id, limit=limit)
    return {"data": items, "count": len(items)}


@router.get("/analytics/exams/{exam_id}/questions")
def exam_question_analytics(exam_id: str, db: Session = Depends(get_db)):
    get_exam_config(db, exam_id)
    return question_item_analysis(db, exam_id)
