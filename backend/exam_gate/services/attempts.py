"""
Attempt Service - creation, resumption and editability of exam attempts.

Entry (PIN validation with start_attempt):
1. Candidate name present, exam published, exam has questions, and the
   candidate identifier is below max_attempts (all before the PIN is touched)
2. Redeem one PIN use (guarded increment, not yet committed)
3. Create candidate + attempt with expires_at = now + duration_minutes
4. Commit PIN use and attempt together

Resume matches the normalised candidate name and / or identifier against
the attempts of the exam (narrowed to one PIN when a PIN is supplied).
Expired matches are auto-submitted on the spot.
"""

import random
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from exam_gate.errors import AttemptNotEditable, InvalidPin, NotFound, StateConflict, ValidationFailed
from exam_gate.jsonutil import dump_json
from exam_gate.logging_config import get_logger, log_with_context
from exam_gate.models.answer import AttemptAnswer
from exam_gate.models.attempt import ExamAttempt, STATUS_IN_PROGRESS
from exam_gate.models.candidate import Candidate
from exam_gate.services import pins as pin_registry
from exam_gate.services.providers import ExamConfig, QuestionDefinition, get_exam_config, get_exam_questions
from exam_gate.services.scoring import auto_submit_quietly
from exam_gate.timeutil import isoformat, utc_now

logger = get_logger("attempts")


def normalize_text(value: Optional[str]) -> str:
    """Trim, collapse inner whitespace and lower-case for identity matching."""
    return " ".join((value or "").split()).lower()


def get_attempt(db: Session, attempt_id: str) -> ExamAttempt:
    attempt = db.query(ExamAttempt).filter(ExamAttempt.id == attempt_id).first()
    if not attempt:
        raise NotFound("ATTEMPT_NOT_FOUND", message="Attempt not found")
    return attempt


def is_expired(attempt: ExamAttempt, now: datetime = None) -> bool:
    return (now or utc_now()) >= attempt.expires_at


def ensure_editable(attempt: ExamAttempt, now: datetime = None):
    """ATTEMPT_NOT_EDITABLE unless the attempt is in progress and not expired."""
    now = now or utc_now()
    if attempt.status != STATUS_IN_PROGRESS:
        raise AttemptNotEditable(message="Attempt is no longer editable",
                                 details={"status": attempt.status})
    if is_expired(attempt, now):
        raise AttemptNotEditable(message="Attempt time has expired",
                                 details={"status": attempt.status, "expired": True})


def count_prior_attempts(db: Session, exam_id: str, candidate_identifier: str) -> int:
    normalized = normalize_text(candidate_identifier)
    if not normalized:
        return 0
    identifiers = db.query(Candidate.external_identifier).join(
        ExamAttempt, ExamAttempt.candidate_id == Candidate.id
    ).filter(ExamAttempt.exam_id == exam_id, Candidate.external_identifier.isnot(None)).all()
    return sum(1 for (identifier,) in identifiers if normalize_text(identifier) == normalized)


def check_can_start(db: Session, exam: ExamConfig, questions: List[QuestionDefinition],
                    candidate_name: str, candidate_identifier: str = None):
    """Entry checks that must pass before a PIN use is consumed."""
    if not (candidate_name or "").strip():
        raise ValidationFailed("CANDIDATE_NAME_REQUIRED", message="Candidate name is required")
    if exam.status != "published":
        raise ValidationFailed("EXAM_NOT_PUBLISHED", message="Exam is not published")
    if not questions:
        raise ValidationFailed("EXAM_HAS_NO_QUESTIONS", message="Exam has no questions")
    if exam.max_attempts and candidate_identifier:
        prior = count_prior_attempts(db, exam.exam_id, candidate_identifier)
        if prior >= exam.max_attempts:
            raise StateConflict("MAX_ATTEMPTS_REACHED",
                                message="Maximum attempts reached for this candidate",
                                details={"max_attempts": exam.max_attempts, "attempts": prior})


def build_question_order(questions: List[QuestionDefinition], shuffle: bool, rng=None) -> List[str]:
    order = [q.id for q in questions]
    if shuffle:
        (rng or random.SystemRandom()).shuffle(order)
    return order


def build_option_order(questions: List[QuestionDefinition], shuffle: bool, rng=None) -> Dict[str, List[int]]:
    if not shuffle:
        return {}
    rng = rng or random.SystemRandom()
    orders = {}
    for question in questions:
        if question.question_type in ("mcq_single", "mcq_multi") and len(question.options) > 1:
            indices = list(range(len(question.options)))
            rng.shuffle(indices)
            orders[question.id] = indices
    return orders


def start_attempt(db: Session, exam: ExamConfig, questions: List[QuestionDefinition],
                  candidate_name: str, candidate_identifier: str = None, pin_id: str = None,
                  client_ip: str = None, user_agent: str = None, now: datetime = None,
                  commit: bool = True, rng=None) -> ExamAttempt:
    """Create the candidate and an in-progress attempt timed from the exam's duration."""
    now = now or utc_now()
    candidate = Candidate(
        full_name=candidate_name.strip(),
        external_identifier=(candidate_identifier or "").strip() or None,
    )
    db.add(candidate)
    db.flush()

    attempt = ExamAttempt(
        exam_id=exam.exam_id,
        candidate_id=candidate.id,
        pin_id=pin_id,
        status=STATUS_IN_PROGRESS,
        started_at=now,
        expires_at=now + timedelta(minutes=exam.duration_minutes),
        last_saved_at=now,
        current_question_index=0,
        question_order=dump_json(build_question_order(questions, exam.shuffle_questions, rng)),
        option_order=dump_json(build_option_order(questions, exam.shuffle_options, rng)),
        integrity_score=100,
        integrity_events_count=0,
        attempt_metadata=dump_json({
            "candidate_identifier": candidate.external_identifier,
            "client": {"ip": client_ip, "user_agent": user_agent},
        }),
    )
    db.add(attempt)
    db.flush()
    if commit:
        db.commit()
        db.refresh(attempt)

    log_with_context(logger, "INFO", "Attempt started",
        context={"attempt_id": attempt.id, "exam_id": exam.exam_id, "pin_id": pin_id},
        extra_data={"duration_minutes": exam.duration_minutes, "questions": len(questions)})
    return attempt


def enter_exam(db: Session, exam_id: str, raw_pin: str, candidate_name: str = None,
               candidate_identifier: str = None, start: bool = False,
               client_ip: str = None, user_agent: str = None, now: datetime = None) -> Dict[str, Any]:
    """
    Validate a PIN and, when start is set, open a new attempt with it.

    The PIN use and the attempt are committed in one transaction.
    """
    now = now or utc_now()
    exam = questions = None
    if start:
        if not (candidate_name or "").strip():
            raise ValidationFailed("CANDIDATE_NAME_REQUIRED", message="Candidate name is required")
        exam = get_exam_config(db, exam_id)
        questions = get_exam_questions(db, exam_id)
        check_can_start(db, exam, questions, candidate_name, candidate_identifier)

    pin = pin_registry.redeem(db, exam_id, raw_pin, candidate_identifier=candidate_identifier,
                              client_ip=client_ip, user_agent=user_agent, now=now, commit=not start)

    attempt = None
    if start:
        try:
            attempt = start_attempt(db, exam, questions, candidate_name, candidate_identifier,
                                    pin_id=pin.id, client_ip=client_ip, user_agent=user_agent,
                                    now=now, commit=True)
        except Exception:
            db.rollback()
            raise

    return {
        "status": "ok",
        "examId": pin.exam_id,
        "pinId": pin.id,
        "usesCount": pin.uses_count,
        "remainingUses": pin.remaining_uses,
        "attemptId": attempt.id if attempt else None,
    }


def _identity_matches(attempt: ExamAttempt, candidate: Candidate, name: str, identifier: str) -> bool:
    if identifier:
        known = attempt.metadata_dict.get("candidate_identifier") or candidate.external_identifier
        if not known or normalize_text(known) != identifier:
            return False
    if name and normalize_text(candidate.full_name) != name:
        return False
    return True


def resume_attempt(db: Session, exam_id: str, candidate_name: str = None,
                   candidate_identifier: str = None, raw_pin: str = None,
                   now: datetime = None) -> Dict[str, Any]:
    """
    Find the single open attempt of a returning candidate.

    Raises CANDIDATE_MATCH_REQUIRED, INVALID_PIN, RESUME_NOT_FOUND,
    RESUME_AMBIGUOUS, ATTEMPT_NOT_RESUMABLE or ATTEMPT_EXPIRED.
    """
    now = now or utc_now()
    name = normalize_text(candidate_name)
    identifier = normalize_text(candidate_identifier)
    if not name and not identifier:
        raise ValidationFailed("CANDIDATE_MATCH_REQUIRED",
                               message="Provide candidate identifier or candidate name to resume")

    query = db.query(ExamAttempt, Candidate).join(
        Candidate, Candidate.id == ExamAttempt.candidate_id
    ).filter(ExamAttempt.exam_id == exam_id)

    if raw_pin:
        pin = pin_registry.find_pin(db, exam_id, raw_pin)
        if not pin:
            raise InvalidPin(message="Invalid PIN", details={"reason": "pin_not_found"})
        query = query.filter(ExamAttempt.pin_id == pin.id)

    # every attempt of the exam is scanned; identity matching normalises in Python
    rows = query.order_by(ExamAttempt.started_at.desc()).all()
    matched = [attempt for attempt, candidate in rows if _identity_matches(attempt, candidate, name, identifier)]

    context = {"exam_id": exam_id}
    if not matched:
        log_with_context(logger, "INFO", "Resume found no attempt", context=context)
        raise NotFound("RESUME_NOT_FOUND", message="No attempt matched")

    in_progress = [a for a in matched if a.status == STATUS_IN_PROGRESS]
    if len(in_progress) > 1:
        log_with_context(logger, "INFO", "Resume ambiguous: {} open attempts".format(len(in_progress)),
            context=context)
        raise StateConflict("RESUME_AMBIGUOUS",
                            message="Multiple active attempts matched. Use a unique candidate identifier.")
    if not in_progress:
        latest = matched[0]
        raise StateConflict("ATTEMPT_NOT_RESUMABLE", message="Attempt is no longer in progress",
                            details={"status": latest.status, "submittedAt": isoformat(latest.submitted_at)})

    attempt = in_progress[0]
    if is_expired(attempt, now):
        auto_submit_quietly(db, attempt.id, now=now)
        db.refresh(attempt)
        log_with_context(logger, "INFO", "Resume hit expired attempt; auto-submitted",
            context={"attempt_id": attempt.id, "exam_id": exam_id})
        raise StateConflict("ATTEMPT_EXPIRED", message="Attempt time has expired",
                            details={"status": attempt.status})

    log_with_context(logger, "INFO", "Attempt resumed",
        context={"attempt_id": attempt.id, "exam_id": exam_id},
        extra_data={"current_question_index": attempt.current_question_index})
    return {
        "status": "ok",
        "examId": exam_id,
        "attemptId": attempt.id,
        "resumed": True,
        "attempt": {
            "status": attempt.status,
            "startedAt": isoformat(attempt.started_at),
            "expiresAt": isoformat(attempt.expires_at),
            "lastSavedAt": isoformat(attempt.last_saved_at),
            "currentQuestionIndex": attempt.current_question_index or 0,
        },
    }


def describe_attempt(db: Session, attempt_id: str, now: datetime = None) -> Dict[str, Any]:
    """Candidate view of an attempt; never includes correct answers."""
    now = now or utc_now()
    attempt = get_attempt(db, attempt_id)
    if attempt.status == STATUS_IN_PROGRESS and is_expired(attempt, now):
        auto_submit_quietly(db, attempt.id, now=now)
        db.refresh(attempt)

    questions = {q.id: q for q in get_exam_questions(db, attempt.exam_id)}
    order = [qid for qid in attempt.question_order_list if qid in questions]
    order += [qid for qid in questions if qid not in order]
    option_order = attempt.option_order_dict
    saved = {
        a.question_id: a for a in db.query(AttemptAnswer).filter(AttemptAnswer.attempt_id == attempt.id).all()
    }

    items = []
    for qid in order:
        question = questions[qid]
        indices = option_order.get(qid) or list(range(len(question.options)))
        items.append({
            "questionId": qid,
            "questionType": question.question_type,
            "prompt": question.prompt,
            "points": question.points,
            "options": [
                {"index": i, "text": question.options[i]} for i in indices if 0 <= i < len(question.options)
            ],
            "answer": saved[qid].payload if qid in saved else None,
            "versionNo": saved[qid].version_no if qid in saved else 0,
        })

    remaining = max(0, int((attempt.expires_at - now).total_seconds())) if attempt.status == STATUS_IN_PROGRESS else 0
    return {
        "attemptId": attempt.id,
        "examId": attempt.exam_id,
        "status": attempt.status,
        "serverTime": isoformat(now),
        "startedAt": isoformat(attempt.started_at),
        "expiresAt": isoformat(attempt.expires_at),
        "submittedAt": isoformat(attempt.submitted_at),
        "remainingSeconds": remaining,
        "currentQuestionIndex": attempt.current_question_index or 0,
        "integrityScore": attempt.integrity_score,
        "questions": items,
    }
