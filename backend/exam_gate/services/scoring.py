"""
Scoring Service - exactly-once submission and grading of exam attempts.

Submission:
1. Take the lock: UPDATE status = 'submitting' WHERE status = 'in_progress'
   (committed on its own; exactly one concurrent caller matches)
2. Grade every exam question against the stored answers
3. Upsert the single exam_results row and apply question analytics once
4. Release: status = 'submitted' (or 'auto_submitted' when expired)

Any failure between 1 and 4 puts the attempt back to 'in_progress' so a
retry or the expiry sweep can finish it. The lock UPDATE stamps
last_saved_at; a lock older than SUBMIT_LOCK_TIMEOUT_SECONDS belongs to a
request that died mid-submit and the sweep reclaims it.

Aggregates:
    percentage = round_half_up(correct / total * 100)   (0 for no questions)
    grade      = A >= 90, B >= 80, C >= 70, D >= 60, else F
    score      = sum of points of correct questions
Unanswered questions stay in the denominator and count as incorrect.
"""

import time
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from sqlalchemy import or_, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from exam_gate.errors import AttemptNotEditable, NotFound, ServiceError, StateConflict, SubmitInProgress
from exam_gate.jsonutil import dump_json
from exam_gate.logging_config import get_logger, log_with_context
from exam_gate.models.answer import AttemptAnswer
from exam_gate.models.attempt import (
    ExamAttempt,
    STATUS_AUTO_SUBMITTED,
    STATUS_IN_PROGRESS,
    STATUS_SUBMITTED,
    STATUS_SUBMITTING,
)
from exam_gate.models.result import ExamResult
from exam_gate.services.analytics import apply_question_analytics
from exam_gate.services.answer_payload import has_answer
from exam_gate.services.grading import grade_answer, grade_letter, percentage_of
from exam_gate.services.integrity import refresh_integrity
from exam_gate.services.providers import QuestionDefinition, get_exam_config, get_exam_questions
from exam_gate.settings import SUBMIT_LOCK_TIMEOUT_SECONDS
from exam_gate.timeutil import isoformat, utc_now

logger = get_logger("scoring")
sweep_logger = get_logger("sweep")

TRIGGER_CANDIDATE = "candidate"
TRIGGER_EXPIRY = "expiry"
TRIGGER_LOCK_RECOVERY = "lock_recovery"


def _round2(value: float) -> float:
    return round(value, 2)


def score_answers(questions: List[QuestionDefinition], stored: Dict[str, Any],
                  passing_score: Optional[float] = None) -> Tuple[Dict[str, Any], List[Dict[str, Any]]]:
    """
    Grade stored answer values (question_id -> value) for an exam's questions.

    Returns (aggregates, outcomes); outcomes feed the analytics counters.
    """
    total = answered = correct = 0
    awarded = possible = 0.0
    breakdown: Dict[str, Dict[str, Any]] = {}
    outcomes = []

    for question in questions:
        value = stored.get(question.id)
        points = float(question.points or 0)
        answered_this = has_answer(value)
        correct_this = grade_answer(question.question_type, question.correct_answer,
                                    question.short_answer_rules, value)

        subject = question.subject_id or "unknown"
        bucket = breakdown.setdefault(subject, {
            "totalQuestions": 0, "answeredQuestions": 0, "correctCount": 0,
            "incorrectCount": 0, "score": 0.0, "possibleScore": 0.0, "percentage": 0,
        })
        total += 1
        possible += points
        bucket["totalQuestions"] += 1
        bucket["possibleScore"] = _round2(bucket["possibleScore"] + points)
        if answered_this:
            answered += 1
            bucket["answeredQuestions"] += 1
        if correct_this:
            correct += 1
            awarded += points
            bucket["correctCount"] += 1
            bucket["score"] = _round2(bucket["score"] + points)
        else:
            bucket["incorrectCount"] += 1

        outcomes.append({
            "question_id": question.id,
            "answered": answered_this,
            "correct": correct_this,
            "points_awarded": points if correct_this else 0.0,
            "value": value,
        })

    for bucket in breakdown.values():
        bucket["percentage"] = percentage_of(bucket["correctCount"], bucket["totalQuestions"])

    percentage = percentage_of(correct, total)
    aggregates = {
        "total_questions": total,
        "answered_count": answered,
        "correct_count": correct,
        "incorrect_count": total - correct,
        "score": _round2(awarded),
        "possible_score": _round2(possible),
        "percentage": percentage,
        "grade_letter": grade_letter(percentage),
        "passed": percentage >= passing_score if passing_score is not None else None,
        "subject_breakdown": breakdown,
    }
    return aggregates, outcomes


def _stored_answers(db: Session, attempt_id: str) -> Dict[str, Any]:
    rows = db.query(AttemptAnswer).filter(AttemptAnswer.attempt_id == attempt_id).all()
    return {row.question_id: row.payload for row in rows}


def _upsert_result(db: Session, attempt: ExamAttempt, aggregates: Dict[str, Any], now: datetime) -> ExamResult:
    values = {
        "exam_id": attempt.exam_id,
        "candidate_id": attempt.candidate_id,
        "total_questions": aggregates["total_questions"],
        "answered_count": aggregates["answered_count"],
        "correct_count": aggregates["correct_count"],
        "incorrect_count": aggregates["incorrect_count"],
        "score": aggregates["score"],
        "percentage": aggregates["percentage"],
        "grade_letter": aggregates["grade_letter"],
        "passed": aggregates["passed"],
        "integrity_score": attempt.integrity_score,
        "subject_breakdown": dump_json(aggregates["subject_breakdown"]),
        "computed_at": now,
    }

    existing = db.query(ExamResult).filter(ExamResult.attempt_id == attempt.id).first()
    if existing is None:
        try:
            with db.begin_nested():
                existing = ExamResult(attempt_id=attempt.id, analytics_applied=False, **values)
                db.add(existing)
            return existing
        except IntegrityError:
            existing = db.query(ExamResult).filter(ExamResult.attempt_id == attempt.id).one()

    for key, value in values.items():
        setattr(existing, key, value)
    return existing


def _grade_attempt(db: Session, attempt: ExamAttempt, now: datetime) -> Tuple[ExamResult, Dict[str, Any]]:
    exam = get_exam_config(db, attempt.exam_id)
    questions = get_exam_questions(db, attempt.exam_id)
    aggregates, outcomes = score_answers(questions, _stored_answers(db, attempt.id), exam.passing_score)

    result = _upsert_result(db, attempt, aggregates, now)
    if not result.analytics_applied:
        apply_question_analytics(db, outcomes)
        result.analytics_applied = True
    return result, aggregates


def submit_attempt(db: Session, attempt_id: str, trigger: str = TRIGGER_CANDIDATE,
                   now: datetime = None) -> ExamResult:
    """
    Finalise an in-progress attempt exactly once.

    Raises:
        ATTEMPT_NOT_FOUND (404) for an unknown attempt
        SUBMIT_IN_PROGRESS (409) while another request holds the lock
        ATTEMPT_NOT_EDITABLE (400) when the attempt is already terminal
    """
    start_time = time.time()
    now = now or utc_now()

    attempt = db.query(ExamAttempt).filter(ExamAttempt.id == attempt_id).first()
    if not attempt:
        raise NotFound("ATTEMPT_NOT_FOUND", message="Attempt not found")

    locked = db.execute(
        update(ExamAttempt)
        .where(ExamAttempt.id == attempt_id, ExamAttempt.status == STATUS_IN_PROGRESS)
        .values(status=STATUS_SUBMITTING, last_saved_at=now)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    if locked.rowcount != 1:
        db.refresh(attempt)
        log_with_context(logger, "INFO", "Submit rejected: attempt is {}".format(attempt.status),
            context={"attempt_id": attempt_id, "exam_id": attempt.exam_id},
            extra_data={"trigger": trigger})
        if attempt.status == STATUS_SUBMITTING:
            raise SubmitInProgress(message="Submission already in progress")
        raise AttemptNotEditable(message="Attempt is no longer editable",
                                 details={"status": attempt.status})

    try:
        db.refresh(attempt)
        expired = attempt.expires_at <= now
        final_status = STATUS_AUTO_SUBMITTED if (trigger == TRIGGER_EXPIRY or expired) else STATUS_SUBMITTED

        result, aggregates = _grade_attempt(db, attempt, now)

        meta = attempt.metadata_dict
        meta["submit_trigger"] = trigger
        db.execute(
            update(ExamAttempt)
            .where(ExamAttempt.id == attempt_id, ExamAttempt.status == STATUS_SUBMITTING)
            .values(status=final_status, submitted_at=now, last_saved_at=now,
                    attempt_metadata=dump_json(meta))
            .execution_options(synchronize_session=False)
        )
        db.commit()
    except Exception:
        db.rollback()
        db.execute(
            update(ExamAttempt)
            .where(ExamAttempt.id == attempt_id, ExamAttempt.status == STATUS_SUBMITTING)
            .values(status=STATUS_IN_PROGRESS)
            .execution_options(synchronize_session=False)
        )
        db.commit()
        log_with_context(logger, "ERROR", "Scoring failed; submission lock released",
            context={"attempt_id": attempt_id}, extra_data={"trigger": trigger}, exc_info=True)
        raise

    db.refresh(attempt)
    db.refresh(result)

    duration_ms = (time.time() - start_time) * 1000
    log_with_context(logger, "INFO",
        "Attempt {}: {}% (correct={}, answered={}, total={})".format(
            final_status, aggregates["percentage"], aggregates["correct_count"],
            aggregates["answered_count"], aggregates["total_questions"]),
        context={
            "attempt_id": attempt.id,
            "exam_id": attempt.exam_id,
            "candidate_id": attempt.candidate_id,
        },
        extra_data={
            "duration_ms": round(duration_ms, 2),
            "trigger": trigger,
            "score": aggregates["score"],
            "grade": aggregates["grade_letter"],
        })

    return result


def auto_submit(db: Session, attempt_id: str, now: datetime = None) -> ExamResult:
    """Finalise an expired attempt as auto_submitted."""
    return submit_attempt(db, attempt_id, trigger=TRIGGER_EXPIRY, now=now)


def auto_submit_quietly(db: Session, attempt_id: str, now: datetime = None) -> Optional[ExamResult]:
    """
    auto_submit for callers that only want the attempt closed. Losing the
    race to another finaliser is expected and only logged.
    """
    try:
        return auto_submit(db, attempt_id, now=now)
    except ServiceError as exc:
        log_with_context(logger, "INFO", "Auto-submit skipped: {}".format(exc.code),
            context={"attempt_id": attempt_id})
        return None


def reprocess_attempt(db: Session, attempt_id: str, now: datetime = None) -> ExamResult:
    """
    Re-grade a terminal attempt against the current question definitions.

    Overwrites the result row, refreshes the integrity snapshot and stamps
    scoring_reprocessed_at. Never reopens the attempt and never counts it
    twice in question analytics.
    """
    start_time = time.time()
    now = now or utc_now()

    attempt = db.query(ExamAttempt).filter(ExamAttempt.id == attempt_id).first()
    if not attempt:
        raise NotFound("ATTEMPT_NOT_FOUND", message="Attempt not found")
    if not attempt.is_terminal:
        raise StateConflict("ATTEMPT_NOT_REPROCESSABLE",
                            message="Only submitted attempts can be reprocessed",
                            details={"status": attempt.status})

    previous = db.query(ExamResult).filter(ExamResult.attempt_id == attempt.id).first()
    previous_percentage = previous.percentage if previous else None

    refresh_integrity(db, attempt)
    result, aggregates = _grade_attempt(db, attempt, now)

    meta = attempt.metadata_dict
    meta["scoring_reprocessed_at"] = isoformat(now)
    attempt.attempt_metadata = dump_json(meta)
    db.commit()
    db.refresh(result)

    duration_ms = (time.time() - start_time) * 1000
    log_with_context(logger, "INFO",
        "Attempt reprocessed: {} -> {}%".format(previous_percentage, aggregates["percentage"]),
        context={"attempt_id": attempt.id, "exam_id": attempt.exam_id},
        extra_data={"duration_ms": round(duration_ms, 2)})
    return result


def reclaim_stale_lock(db: Session, attempt_id: str, now: datetime = None,
                       lock_timeout_seconds: int = SUBMIT_LOCK_TIMEOUT_SECONDS) -> bool:
    """
    Put an abandoned 'submitting' attempt back to 'in_progress'.

    Only a lock stamped at least lock_timeout_seconds ago is released, and
    only by one caller. Returns True when this call released it.
    """
    now = now or utc_now()
    cutoff = now - timedelta(seconds=lock_timeout_seconds)
    released = db.execute(
        update(ExamAttempt)
        .where(
            ExamAttempt.id == attempt_id,
            ExamAttempt.status == STATUS_SUBMITTING,
            or_(ExamAttempt.last_saved_at.is_(None), ExamAttempt.last_saved_at <= cutoff),
        )
        .values(status=STATUS_IN_PROGRESS)
        .execution_options(synchronize_session=False)
    )
    db.commit()

    if released.rowcount == 1:
        log_with_context(sweep_logger, "WARNING", "Released abandoned submission lock",
            context={"attempt_id": attempt_id},
            extra_data={"lock_timeout_seconds": lock_timeout_seconds})
        return True
    return False


def sweep_expired(db: Session, now: datetime = None, limit: int = 200,
                  lock_timeout_seconds: int = SUBMIT_LOCK_TIMEOUT_SECONDS) -> Dict[str, int]:
    """
    Auto-submit every in-progress attempt whose expires_at has passed, and
    finish attempts stuck in 'submitting' after a request died mid-submit.
    """
    start_time = time.time()
    now = now or utc_now()
    cutoff = now - timedelta(seconds=lock_timeout_seconds)

    expired_ids = [
        attempt_id for (attempt_id,) in db.query(ExamAttempt.id).filter(
            ExamAttempt.status == STATUS_IN_PROGRESS,
            ExamAttempt.expires_at <= now,
        ).order_by(ExamAttempt.expires_at).limit(limit).all()
    ]
    stale_ids = [
        attempt_id for (attempt_id,) in db.query(ExamAttempt.id).filter(
            ExamAttempt.status == STATUS_SUBMITTING,
            or_(ExamAttempt.last_saved_at.is_(None), ExamAttempt.last_saved_at <= cutoff),
        ).order_by(ExamAttempt.last_saved_at).limit(limit).all()
    ]
    db.commit()

    finalised = reclaimed = skipped = failed = 0
    for attempt_id in expired_ids:
        try:
            auto_submit(db, attempt_id, now=now)
            finalised += 1
        except ServiceError:
            skipped += 1
        except Exception:
            failed += 1
            log_with_context(sweep_logger, "ERROR", "Failed to auto-submit expired attempt",
                context={"attempt_id": attempt_id}, exc_info=True)

    for attempt_id in stale_ids:
        if not reclaim_stale_lock(db, attempt_id, now=now, lock_timeout_seconds=lock_timeout_seconds):
            skipped += 1
            continue
        reclaimed += 1
        try:
            submit_attempt(db, attempt_id, trigger=TRIGGER_LOCK_RECOVERY, now=now)
            finalised += 1
        except ServiceError:
            skipped += 1
        except Exception:
            failed += 1
            log_with_context(sweep_logger, "ERROR", "Failed to finalise reclaimed attempt",
                context={"attempt_id": attempt_id}, exc_info=True)

    found = len(expired_ids) + len(stale_ids)
    duration_ms = (time.time() - start_time) * 1000
    if found:
        log_with_context(sweep_logger, "INFO",
            "Expiry sweep: {} finalised, {} locks reclaimed, {} skipped, {} failed".format(
                finalised, reclaimed, skipped, failed),
            extra_data={"duration_ms": round(duration_ms, 2), "found": found})

    return {"found": found, "finalised": finalised, "reclaimed": reclaimed,
            "skipped": skipped, "failed": failed}


def result_to_dict(result: ExamResult) -> Dict[str, Any]:
    return {
        "attemptId": result.attempt_id,
        "totalQuestions": result.total_questions,
        "answeredCount": result.answered_count,
        "correctCount": result.correct_count,
        "incorrectCount": result.incorrect_count,
        "score": result.score,
        "percentage": result.percentage,
        "gradeLetter": result.grade_letter,
        "passed": result.passed,
        "integrityScore": result.integrity_score,
        "subjectBreakdown": result.subject_breakdown_dict,
        "computedAt": isoformat(result.computed_at),
    }
