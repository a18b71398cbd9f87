"""
Answer Service - autosave of candidate answers.

Each save replaces the whole value for (attempt, question); the last
accepted write wins. Every accepted write bumps version_no and is copied
to attempt_answer_history.
"""

import time
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from exam_gate.errors import AttemptNotEditable, NotFound, ValidationFailed
from exam_gate.jsonutil import dump_json
from exam_gate.logging_config import get_logger, log_with_context
from exam_gate.models.answer import AttemptAnswer, AttemptAnswerHistory
from exam_gate.models.attempt import ExamAttempt, STATUS_IN_PROGRESS
from exam_gate.services.answer_payload import decode_answer, to_stored_value
from exam_gate.services.attempts import ensure_editable, is_expired
from exam_gate.services.providers import get_exam_questions
from exam_gate.services.scoring import auto_submit_quietly
from exam_gate.timeutil import isoformat, utc_now

logger = get_logger("attempts")


def _upsert_answer(db: Session, attempt_id: str, exam_id: str, question_id: str,
                   stored_json: str, is_final: bool, now: datetime) -> AttemptAnswer:
    answer = db.query(AttemptAnswer).filter(
        AttemptAnswer.attempt_id == attempt_id,
        AttemptAnswer.question_id == question_id,
    ).first()

    if answer is None:
        try:
            with db.begin_nested():
                answer = AttemptAnswer(
                    attempt_id=attempt_id,
                    exam_id=exam_id,
                    question_id=question_id,
                    answer_payload=stored_json,
                    is_final=is_final,
                    saved_at=now,
                    version_no=1,
                )
                db.add(answer)
            return answer
        except IntegrityError:
            # A concurrent save inserted the row first; fall through to update
            answer = db.query(AttemptAnswer).filter(
                AttemptAnswer.attempt_id == attempt_id,
                AttemptAnswer.question_id == question_id,
            ).one()

    answer.answer_payload = stored_json
    answer.is_final = is_final
    answer.saved_at = now
    answer.version_no = (answer.version_no or 0) + 1
    return answer


def save_answer(db: Session, attempt_id: str, question_id: str, answer_payload: Any,
                exam_id: str = None, current_question_index: Optional[int] = None,
                is_final: bool = False, now: datetime = None) -> Dict[str, Any]:
    """
    Autosave one answer.

    Raises:
        ATTEMPT_NOT_FOUND (404)
        ATTEMPT_NOT_EDITABLE (400) when submitted or past expires_at; an
            expired attempt is auto-submitted before the error is returned
        QUESTION_NOT_IN_EXAM (400)
        INVALID_ANSWER_PAYLOAD (400)
    """
    start_time = time.time()
    now = now or utc_now()

    # Row lock so a concurrent submit cannot score around this write
    attempt = db.query(ExamAttempt).filter(ExamAttempt.id == attempt_id).with_for_update().first()
    if not attempt:
        raise NotFound("ATTEMPT_NOT_FOUND", message="Attempt not found")
    if exam_id and exam_id != attempt.exam_id:
        raise ValidationFailed("QUESTION_NOT_IN_EXAM", message="Attempt does not belong to this exam")

    try:
        ensure_editable(attempt, now)
    except AttemptNotEditable:
        if attempt.status == STATUS_IN_PROGRESS and is_expired(attempt, now):
            db.rollback()
            auto_submit_quietly(db, attempt_id, now=now)
        log_with_context(logger, "INFO", "Answer rejected: attempt not editable",
            context={"attempt_id": attempt_id, "question_id": question_id})
        raise

    questions = {q.id: q for q in get_exam_questions(db, attempt.exam_id)}
    question = questions.get(question_id)
    if question is None:
        raise ValidationFailed("QUESTION_NOT_IN_EXAM", message="Question is not part of this exam")

    decoded = decode_answer(question.question_type, answer_payload, option_count=len(question.options) or None)
    stored_json = dump_json(to_stored_value(decoded))

    answer = _upsert_answer(db, attempt.id, attempt.exam_id, question_id, stored_json, is_final, now)
    db.add(AttemptAnswerHistory(
        attempt_id=attempt.id,
        question_id=question_id,
        answer_payload=stored_json,
        version_no=answer.version_no,
        saved_at=now,
    ))

    if current_question_index is not None:
        attempt.current_question_index = max(0, min(int(current_question_index), max(len(questions) - 1, 0)))
    attempt.last_saved_at = now
    db.commit()

    duration_ms = (time.time() - start_time) * 1000
    log_with_context(logger, "DEBUG", "Answer saved (v{})".format(answer.version_no),
        context={"attempt_id": attempt.id, "question_id": question_id},
        extra_data={"duration_ms": round(duration_ms, 2), "is_final": is_final})

    return {
        "status": "ok",
        "savedAt": isoformat(now),
        "versionNo": answer.version_no,
    }
