"""
Analytics Service - item analysis over scored attempts.

Two sources, returned side by side:

1. Running counters (question_analytics) updated once per scored attempt
   by apply_question_analytics(), called from the scoring engine.
2. An on-demand recomputation from raw stored answers of every scored
   attempt of an exam, used for difficulty, discrimination and flags.

Discrimination ranks attempts by percentage; with at least 4 attempts the
top and bottom ceil(0.27 * N) form the upper and lower groups.
"""

import math
import time
from collections import defaultdict
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from exam_gate.jsonutil import dump_json
from exam_gate.logging_config import get_logger, log_with_context
from exam_gate.models.answer import AttemptAnswer
from exam_gate.models.attempt import ExamAttempt, TERMINAL_STATUSES
from exam_gate.models.result import ExamResult, QuestionAnalytics
from exam_gate.services.grading import grade_answer, option_popularity_key
from exam_gate.services.answer_payload import has_answer
from exam_gate.services.providers import get_exam_questions
from exam_gate.timeutil import utc_now

logger = get_logger("analytics")

GROUP_FRACTION = 0.27
MIN_ATTEMPTS_FOR_DISCRIMINATION = 4

LOW_DISCRIMINATION = 0.1
TOO_HARD = 0.25
TOO_EASY = 0.9
HIGH_BLANK_RATE = 0.35


def _round4(value: Optional[float]) -> Optional[float]:
    return None if value is None else round(value, 4)


def group_size(attempt_count: int) -> int:
    if attempt_count < MIN_ATTEMPTS_FOR_DISCRIMINATION:
        return 0
    # round first so 0.27 * 100 does not ceil to 28
    return math.ceil(round(GROUP_FRACTION * attempt_count, 6))


def question_flags(difficulty: Optional[float], discrimination: Optional[float],
                   blank_rate: Optional[float], answered: int, attempts_seen: int) -> List[str]:
    flags = []
    if discrimination is not None and discrimination < LOW_DISCRIMINATION:
        flags.append("low_discrimination")
    if discrimination is not None and discrimination < 0:
        flags.append("negative_discrimination")
    if difficulty is not None and difficulty < TOO_HARD:
        flags.append("too_hard")
    if difficulty is not None and difficulty > TOO_EASY:
        flags.append("too_easy")
    if blank_rate is not None and blank_rate > HIGH_BLANK_RATE:
        flags.append("high_blank_rate")
    if answered < max(5, math.floor(attempts_seen * 0.2)):
        flags.append("low_sample")
    return flags


def _get_or_create_counters(db: Session, question_id: str) -> QuestionAnalytics:
    row = db.query(QuestionAnalytics).filter(
        QuestionAnalytics.question_id == question_id
    ).with_for_update().first()
    if row:
        return row
    try:
        with db.begin_nested():
            row = QuestionAnalytics(question_id=question_id, exposure_count=0, answer_count=0,
                                    correct_count=0, option_popularity="{}")
            db.add(row)
    except IntegrityError:
        # Another scorer created the row first
        row = db.query(QuestionAnalytics).filter(
            QuestionAnalytics.question_id == question_id
        ).with_for_update().one()
    return row


def apply_question_analytics(db: Session, outcomes: List[Dict[str, Any]]):
    """
    Add one scored attempt's outcomes to the running counters.

    Each outcome carries question_id, answered, correct and value. Does not
    commit; the caller commits together with the result row.
    """
    now = utc_now()
    for outcome in outcomes:
        row = _get_or_create_counters(db, outcome["question_id"])
        row.exposure_count = (row.exposure_count or 0) + 1
        row.answer_count = (row.answer_count or 0) + (1 if outcome["answered"] else 0)
        row.correct_count = (row.correct_count or 0) + (1 if outcome["correct"] else 0)
        key = option_popularity_key(outcome.get("value")) if outcome["answered"] else None
        if key:
            popularity = row.option_popularity_dict
            popularity[key] = int(popularity.get(key, 0)) + 1
            row.option_popularity = dump_json(popularity)
        row.updated_at = now


def question_item_analysis(db: Session, exam_id: str) -> Dict[str, Any]:
    """
    Item analysis of every question of an exam over its scored attempts.

    Returns {"exam": summary, "questions": [row, ...]} where each row holds
    difficulty_index, discrimination_index, blank_rate, flags and both the
    running and recomputed option popularity histograms.
    """
    start_time = time.time()

    questions = get_exam_questions(db, exam_id)
    scored = (
        db.query(ExamAttempt.id, ExamResult.percentage)
        .join(ExamResult, ExamResult.attempt_id == ExamAttempt.id)
        .filter(ExamAttempt.exam_id == exam_id, ExamAttempt.status.in_(TERMINAL_STATUSES))
        .all()
    )
    attempt_ids = [attempt_id for attempt_id, _ in scored]
    ranked = sorted(scored, key=lambda row: row[1] or 0, reverse=True)
    size = group_size(len(ranked))
    upper = {attempt_id for attempt_id, _ in ranked[:size]} if size else set()
    lower = {attempt_id for attempt_id, _ in ranked[-size:]} if size else set()

    answers_by_question = defaultdict(dict)
    if attempt_ids:
        for answer in db.query(AttemptAnswer).filter(
            AttemptAnswer.exam_id == exam_id, AttemptAnswer.attempt_id.in_(attempt_ids)
        ).all():
            answers_by_question[answer.question_id][answer.attempt_id] = answer.payload

    counters = {
        row.question_id: row for row in db.query(QuestionAnalytics).filter(
            QuestionAnalytics.question_id.in_([q.id for q in questions])
        ).all()
    } if questions else {}

    rows = []
    for index, question in enumerate(questions):
        stored = answers_by_question.get(question.id, {})
        answered = correct = 0
        upper_answered = upper_correct = lower_answered = lower_correct = 0
        popularity: Dict[str, int] = {}

        for attempt_id in attempt_ids:
            value = stored.get(attempt_id)
            answered_this = has_answer(value)
            correct_this = answered_this and grade_answer(
                question.question_type, question.correct_answer, question.short_answer_rules, value)
            answered += answered_this
            correct += correct_this
            if attempt_id in upper:
                upper_answered += answered_this
                upper_correct += correct_this
            if attempt_id in lower:
                lower_answered += answered_this
                lower_correct += correct_this
            key = option_popularity_key(value) if answered_this else None
            if key:
                popularity[key] = popularity.get(key, 0) + 1

        seen = len(attempt_ids)
        difficulty = correct / answered if answered else None
        upper_rate = upper_correct / upper_answered if upper_answered else None
        lower_rate = lower_correct / lower_answered if lower_answered else None
        discrimination = (upper_rate - lower_rate) if size and upper_rate is not None and lower_rate is not None else None
        blank_rate = (seen - answered) / seen if seen else None

        running = counters.get(question.id)
        rows.append({
            "questionId": question.id,
            "position": index + 1,
            "questionType": question.question_type,
            "subjectId": question.subject_id,
            "attemptsSeen": seen,
            "answered": answered,
            "correct": correct,
            "difficultyIndex": _round4(difficulty),
            "discriminationIndex": _round4(discrimination),
            "blankRate": _round4(blank_rate),
            "flags": question_flags(difficulty, discrimination, blank_rate, answered, seen),
            "optionPopularity": popularity,
            "runningCounters": {
                "exposureCount": running.exposure_count,
                "answerCount": running.answer_count,
                "correctCount": running.correct_count,
                "optionPopularity": running.option_popularity_dict,
            } if running else None,
        })

    difficulties = [r["difficultyIndex"] for r in rows if r["difficultyIndex"] is not None]
    discriminations = [r["discriminationIndex"] for r in rows if r["discriminationIndex"] is not None]
    summary = {
        "examId": exam_id,
        "attemptsSeen": len(attempt_ids),
        "groupSize": size,
        "averageDifficulty": _round4(sum(difficulties) / len(difficulties)) if difficulties else None,
        "averageDiscrimination": _round4(sum(discriminations) / len(discriminations)) if discriminations else None,
        "flaggedQuestions": sum(1 for r in rows if r["flags"]),
    }

    duration_ms = (time.time() - start_time) * 1000
    log_with_context(logger, "INFO",
        "Item analysis computed for {} questions over {} attempts".format(len(rows), len(attempt_ids)),
        context={"exam_id": exam_id},
        extra_data={"duration_ms": round(duration_ms, 2), "flagged": summary["flaggedQuestions"]})

    return {"exam": summary, "questions": rows}
