"""
Integrity Service - server side of the behaviour signal pipeline.

Clients post small batches of events (tab switches, fullscreen exits,
timer drift). Each batch is filtered and sanitised, appended to
attempt_integrity_events, and the attempt's integrity score is recomputed:

    integrity_score = clamp(100 - sum(severity weight), 0, 100)

Attempts scoring below INTEGRITY_FLAG_THRESHOLD land in the review queue.
Review status lives in attempt metadata and follows a small state machine.
"""

import time
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from exam_gate.errors import NotFound, StateConflict, ValidationFailed
from exam_gate.jsonutil import dump_json
from exam_gate.logging_config import get_logger, log_with_context
from exam_gate.models.attempt import ExamAttempt
from exam_gate.models.integrity_event import IntegrityEvent
from exam_gate.settings import (
    INTEGRITY_CRITICAL_WEIGHT,
    INTEGRITY_FLAG_THRESHOLD,
    INTEGRITY_WARNING_WEIGHT,
)
from exam_gate.timeutil import isoformat, parse_timestamp, utc_now

logger = get_logger("integrity")

ALLOWED_EVENT_TYPES = {
    "tab_hidden",
    "tab_visible",
    "fullscreen_exited",
    "fullscreen_entered",
    "timer_drift",
    "window_blur",
    "window_focus",
    "suspicious_client_event",
}
SEVERITIES = ("info", "warning", "critical")

MAX_BATCH_SIZE = 50
MAX_METADATA_KEYS = 20
MAX_METADATA_STRING = 300
MAX_METADATA_ARRAY = 20
MAX_METADATA_ARRAY_STRING = 80

# Event count at which the summary reports a high volume
HIGH_EVENT_VOLUME = 10

REVIEW_NEEDS_REVIEW = "needs_review"
REVIEW_CLEAR = "clear"
REVIEW_REVIEWED = "reviewed"
REVIEW_CLEARED = "cleared"
REVIEW_FLAGGED = "flagged"

REVIEW_TRANSITIONS = {
    REVIEW_NEEDS_REVIEW: {REVIEW_REVIEWED, REVIEW_CLEARED, REVIEW_FLAGGED},
    REVIEW_CLEAR: {REVIEW_FLAGGED},
}


def _sanitize_value(value: Any):
    if value is None or isinstance(value, (bool, int, float)):
        return value
    if isinstance(value, str):
        return value[:MAX_METADATA_STRING]
    if isinstance(value, (list, tuple)):
        items = []
        for item in list(value)[:MAX_METADATA_ARRAY]:
            if isinstance(item, str):
                items.append(item[:MAX_METADATA_ARRAY_STRING])
            elif item is None or isinstance(item, (bool, int, float)):
                items.append(item)
        return items
    # Nested objects are dropped
    return None


def sanitize_metadata(metadata: Any) -> Dict[str, Any]:
    """Keep at most 20 scalar / short-array entries of client metadata."""
    if not isinstance(metadata, dict):
        return {}
    cleaned = {}
    for key, value in list(metadata.items())[:MAX_METADATA_KEYS]:
        if isinstance(value, dict):
            continue
        cleaned[str(key)[:MAX_METADATA_ARRAY_STRING]] = _sanitize_value(value)
    return cleaned


def severity_weight(severity: str, warning_weight: float = INTEGRITY_WARNING_WEIGHT,
                    critical_weight: float = INTEGRITY_CRITICAL_WEIGHT) -> float:
    if severity == "critical":
        return critical_weight
    if severity == "warning":
        return warning_weight
    return 0


def calculate_integrity_score(severities: List[str], warning_weight: float = INTEGRITY_WARNING_WEIGHT,
                              critical_weight: float = INTEGRITY_CRITICAL_WEIGHT) -> float:
    """100 minus the summed severity weights, clamped to [0, 100]."""
    penalty = sum(severity_weight(s, warning_weight, critical_weight) for s in severities)
    return max(0.0, min(100.0, 100.0 - penalty))


def is_flagged(score: float, review_status: Optional[str] = None,
               threshold: float = INTEGRITY_FLAG_THRESHOLD) -> bool:
    return score < threshold or review_status == REVIEW_FLAGGED


def integrity_reasons(by_type: Dict[str, int], by_severity: Dict[str, int], total: int) -> List[str]:
    """Readable explanations for reviewers, derived from the event counts."""
    reasons = []
    if by_type.get("fullscreen_exited", 0) > 0:
        reasons.append("Fullscreen exited during attempt")
    if by_type.get("tab_hidden", 0) >= 2:
        reasons.append("Multiple tab/background switches detected")
    if by_type.get("timer_drift", 0) > 0:
        reasons.append("Client timer anomalies recorded")
    if by_severity.get("critical", 0) > 0:
        reasons.append("Critical integrity events recorded")
    if total >= HIGH_EVENT_VOLUME:
        reasons.append("High volume of integrity events")
    return reasons


def summarize_events(events: List[IntegrityEvent]) -> Dict[str, Any]:
    """Counts by type and severity plus reviewer reasons for the attempt metadata summary."""
    by_type: Dict[str, int] = {}
    by_severity = {s: 0 for s in SEVERITIES}
    for event in events:
        by_type[event.event_type] = by_type.get(event.event_type, 0) + 1
        by_severity[event.severity] = by_severity.get(event.severity, 0) + 1
    return {
        "total": len(events),
        "by_type": by_type,
        "by_severity": by_severity,
        "reasons": integrity_reasons(by_type, by_severity, len(events)),
    }


def _normalize_event(raw: Any) -> Optional[Dict[str, Any]]:
    if not isinstance(raw, dict):
        return None
    event_type = raw.get("type") or raw.get("event_type")
    if event_type not in ALLOWED_EVENT_TYPES:
        return None
    severity = raw.get("severity")
    if severity not in SEVERITIES:
        severity = "info"
    occurred = raw.get("occurredAt", raw.get("occurred_at"))
    return {
        "event_type": event_type,
        "severity": severity,
        "occurred_at": parse_timestamp(occurred) if isinstance(occurred, str) else None,
        "metadata": sanitize_metadata(raw.get("metadata")),
    }


def refresh_integrity(db: Session, attempt: ExamAttempt) -> float:
    """
    Recompute integrity score, count, summary and automatic review status
    from every stored event of the attempt. Does not commit.
    """
    events = db.query(IntegrityEvent).filter(
        IntegrityEvent.attempt_id == attempt.id
    ).order_by(IntegrityEvent.received_at).all()

    score = calculate_integrity_score([e.severity for e in events])
    meta = attempt.metadata_dict
    review_status = meta.get("integrity_review_status")

    # Admin decisions stick; only automatic states follow the score
    if review_status not in (REVIEW_REVIEWED, REVIEW_CLEARED, REVIEW_FLAGGED):
        review_status = REVIEW_NEEDS_REVIEW if is_flagged(score) else REVIEW_CLEAR

    meta["integrity_summary"] = summarize_events(events)
    meta["integrity_review_status"] = review_status
    meta["integrity_flagged"] = is_flagged(score, review_status)

    attempt.integrity_score = score
    attempt.integrity_events_count = len(events)
    attempt.attempt_metadata = dump_json(meta)
    return score


def record_events(db: Session, attempt_id: str, raw_events: List[Any]) -> Dict[str, Any]:
    """
    Append a batch of client events to an attempt.

    Accepted regardless of attempt status so late flushes after submission
    are still recorded. Returns {"logged", "integrity_score"}.
    """
    start_time = time.time()

    if not isinstance(raw_events, list) or not 1 <= len(raw_events) <= MAX_BATCH_SIZE:
        raise ValidationFailed(message="events must be a list of 1 to {} items".format(MAX_BATCH_SIZE))

    attempt = db.query(ExamAttempt).filter(ExamAttempt.id == attempt_id).first()
    if not attempt:
        raise NotFound("ATTEMPT_NOT_FOUND", message="Attempt not found")

    events = [e for e in (_normalize_event(raw) for raw in raw_events) if e]
    if not events:
        raise ValidationFailed("NO_VALID_EVENTS", message="No valid integrity events in batch")

    now = utc_now()
    db.add_all([
        IntegrityEvent(
            attempt_id=attempt.id,
            exam_id=attempt.exam_id,
            event_type=e["event_type"],
            severity=e["severity"],
            occurred_at=e["occurred_at"],
            received_at=now,
            event_metadata=dump_json(e["metadata"]),
        )
        for e in events
    ])
    db.flush()
    score = refresh_integrity(db, attempt)
    db.commit()

    duration_ms = (time.time() - start_time) * 1000
    log_with_context(logger, "INFO",
        "Logged {} integrity events ({} dropped), score={}".format(
            len(events), len(raw_events) - len(events), score),
        context={"attempt_id": attempt.id, "exam_id": attempt.exam_id},
        extra_data={"duration_ms": round(duration_ms, 2), "integrity_score": score})

    return {"logged": len(events), "integrity_score": score}


def set_review_status(db: Session, attempt_id: str, status: str, note: str = None) -> ExamAttempt:
    """Admin review decision; only needs_review and clear can move."""
    attempt = db.query(ExamAttempt).filter(ExamAttempt.id == attempt_id).first()
    if not attempt:
        raise NotFound("ATTEMPT_NOT_FOUND", message="Attempt not found")

    meta = attempt.metadata_dict
    current = meta.get("integrity_review_status") or (
        REVIEW_NEEDS_REVIEW if is_flagged(attempt.integrity_score) else REVIEW_CLEAR
    )
    if status not in REVIEW_TRANSITIONS.get(current, set()):
        raise StateConflict("INVALID_REVIEW_TRANSITION",
                            message="Cannot move review status from {} to {}".format(current, status),
                            details={"from": current, "to": status})

    meta["integrity_review_status"] = status
    meta["integrity_flagged"] = is_flagged(attempt.integrity_score, status)
    meta["integrity_reviewed_at"] = isoformat(utc_now())
    if note:
        meta["integrity_review_note"] = note[:MAX_METADATA_STRING]
    attempt.attempt_metadata = dump_json(meta)
    db.commit()
    db.refresh(attempt)

    log_with_context(logger, "INFO", "Integrity review {} -> {}".format(current, status),
        context={"attempt_id": attempt.id, "exam_id": attempt.exam_id})
    return attempt


def review_queue(db: Session, exam_id: str = None, limit: int = 50,
                 events_per_attempt: int = 10) -> List[Dict[str, Any]]:
    """Flagged attempts (lowest score first) with their most recent events."""
    query = db.query(ExamAttempt).filter(ExamAttempt.integrity_events_count > 0)
    if exam_id:
        query = query.filter(ExamAttempt.exam_id == exam_id)

    items = []
    for attempt in query.order_by(ExamAttempt.integrity_score, ExamAttempt.started_at).all():
        meta = attempt.metadata_dict
        review_status = meta.get("integrity_review_status")
        if not is_flagged(attempt.integrity_score, review_status):
            continue
        recent = db.query(IntegrityEvent).filter(
            IntegrityEvent.attempt_id == attempt.id
        ).order_by(IntegrityEvent.received_at.desc()).limit(events_per_attempt).all()
        items.append({
            "attemptId": attempt.id,
            "examId": attempt.exam_id,
            "status": attempt.status,
            "integrityScore": attempt.integrity_score,
            "integrityEventsCount": attempt.integrity_events_count,
            "reviewStatus": review_status,
            "summary": meta.get("integrity_summary", {}),
            "recentEvents": [
                {
                    "type": e.event_type,
                    "severity": e.severity,
                    "occurredAt": isoformat(e.occurred_at),
                    "receivedAt": isoformat(e.received_at),
                    "metadata": e.metadata_dict,
                }
                for e in recent
            ],
        })
        if len(items) >= limit:
            break
    return items
