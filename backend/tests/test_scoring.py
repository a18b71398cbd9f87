from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from exam_gate.errors import AttemptNotEditable, ServiceError, StateConflict, SubmitInProgress
from exam_gate.jsonutil import dump_json
from exam_gate.models import ExamAttempt, ExamResult, Question, QuestionAnalytics
from exam_gate.services import scoring
from exam_gate.services.answers import save_answer
from exam_gate.services.grading import grade_answer, grade_letter, percentage_of, round_half_up
from exam_gate.services.providers import QuestionDefinition
from exam_gate.services.scoring import (
    reclaim_stale_lock,
    reprocess_attempt,
    score_answers,
    submit_attempt,
    sweep_expired,
)
from exam_gate.timeutil import utc_now


def _question(qid, question_type="mcq_single", correct=0, points=1, subject=None, rules=None):
    return QuestionDefinition(id=qid, question_type=question_type, options=["A", "B", "C", "D"],
                              correct_answer=correct, points=points, subject_id=subject,
                              short_answer_rules=rules or {})


def _answer_all(db, attempt_id, question_ids, values):
    for question_id, value in zip(question_ids, values):
        save_answer(db, attempt_id, question_id, value)


# ── aggregates ────────────────────────────────────────────────

def test_three_of_four_correct_is_75_and_c():
    questions = [_question("q{}".format(i), correct=i) for i in range(4)]
    aggregates, outcomes = score_answers(questions, {"q0": 0, "q1": 1, "q2": 2, "q3": 0})

    assert aggregates["correct_count"] == 3
    assert aggregates["incorrect_count"] == 1
    assert aggregates["percentage"] == 75
    assert aggregates["grade_letter"] == "C"
    assert aggregates["passed"] is None
    assert [o["correct"] for o in outcomes] == [True, True, True, False]


def test_unanswered_questions_count_as_incorrect():
    questions = [_question("q{}".format(i), correct=i) for i in range(4)]
    aggregates, outcomes = score_answers(questions, {"q0": 0}, passing_score=50)

    assert aggregates["answered_count"] == 1
    assert aggregates["total_questions"] == 4
    assert aggregates["percentage"] == 25
    assert aggregates["grade_letter"] == "F"
    assert aggregates["passed"] is False
    assert outcomes[1]["answered"] is False


def test_empty_exam_scores_zero():
    aggregates, outcomes = score_answers([], {})
    assert aggregates["percentage"] == 0
    assert aggregates["grade_letter"] == "F"
    assert outcomes == []


def test_points_and_subject_breakdown():
    questions = [
        _question("m1", correct=0, points=2, subject="math"),
        _question("m2", correct=1, points=3, subject="math"),
        _question("s1", correct=0, points=1, subject="science"),
    ]
    aggregates, _ = score_answers(questions, {"m1": 0, "m2": 0, "s1": 0})

    assert aggregates["score"] == 3
    assert aggregates["possible_score"] == 6
    assert aggregates["percentage"] == 67
    math = aggregates["subject_breakdown"]["math"]
    assert math["correctCount"] == 1
    assert math["score"] == 2
    assert math["possibleScore"] == 5
    assert math["percentage"] == 50
    assert aggregates["subject_breakdown"]["science"]["percentage"] == 100


@pytest.mark.parametrize("correct, total, expected", [
    (2, 3, 67), (1, 8, 13), (1, 3, 33), (0, 5, 0), (5, 5, 100),
])
def test_percentage_rounds_half_up(correct, total, expected):
    assert percentage_of(correct, total) == expected


def test_round_half_up_and_grade_boundaries():
    assert round_half_up(12.5) == 13
    assert round_half_up(12.49) == 12
    assert [grade_letter(p) for p in (90, 89, 80, 70, 60, 59)] == ["A", "B", "B", "C", "D", "F"]


def test_grading_per_question_type():
    assert grade_answer("mcq_single", 2, {}, 2)
    assert not grade_answer("mcq_single", 2, {}, 1)
    assert grade_answer("mcq_multi", [2, 0], {}, [0, 2])
    assert not grade_answer("mcq_multi", [0, 2], {}, [0])
    assert grade_answer("true_false", False, {}, False)
    assert not grade_answer("true_false", True, {}, None)
    assert not grade_answer("mcq_single", 1, {}, "garbage")


def test_short_answer_rules():
    assert grade_answer("short_answer", "Paris", {}, "  paris ")
    assert not grade_answer("short_answer", "Paris", {"caseSensitive": True}, "paris")
    assert grade_answer("short_answer", "New York", {}, "new    york")
    assert not grade_answer("short_answer", "New York", {"collapseWhitespace": False}, "new    york")
    assert grade_answer("short_answer", "photosynthesis", {"acceptedAnswers": ["photo synthesis"]},
                        "Photo Synthesis")

    keywords = {"requiredKeywords": ["light"], "anyKeywords": ["energy", "sugar"]}
    assert grade_answer("short_answer", "unused", keywords, "Light becomes chemical energy")
    assert not grade_answer("short_answer", "unused", keywords, "Light becomes heat")
    assert not grade_answer("short_answer", "Paris", {}, "   ")


# ── submission ────────────────────────────────────────────────

def test_submit_stores_result_and_final_status(db, make_exam, open_attempt):
    exam_id, question_ids = make_exam(passing_score=70)
    attempt_id = open_attempt(exam_id)
    _answer_all(db, attempt_id, question_ids, [0, 1, 2, 0])

    result = submit_attempt(db, attempt_id)
    assert result.percentage == 75
    assert result.grade_letter == "C"
    assert result.passed is True
    assert result.analytics_applied is True

    attempt = db.query(ExamAttempt).filter(ExamAttempt.id == attempt_id).one()
    assert attempt.status == "submitted"
    assert attempt.submitted_at is not None
    assert attempt.metadata_dict["submit_trigger"] == "candidate"


def test_second_submit_is_not_editable(db, make_exam, open_attempt):
    exam_id, _ = make_exam()
    attempt_id = open_attempt(exam_id)
    submit_attempt(db, attempt_id)

    with pytest.raises(AttemptNotEditable) as exc_info:
        submit_attempt(db, attempt_id)
    assert exc_info.value.details["status"] == "submitted"
    assert db.query(ExamResult).count() == 1


def test_concurrent_submits_score_exactly_once(db, session_factory, make_exam, open_attempt):
    exam_id, question_ids = make_exam()
    attempt_id = open_attempt(exam_id)
    _answer_all(db, attempt_id, question_ids, [0, 1, 2, 3])
    db.close()

    def submit_once(_):
        session = session_factory()
        try:
            submit_attempt(session, attempt_id)
            return "ok"
        except ServiceError as exc:
            return exc.code
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=6) as pool:
        outcomes = list(pool.map(submit_once, range(6)))

    assert outcomes.count("ok") == 1
    assert set(outcomes) - {"ok"} <= {"SUBMIT_IN_PROGRESS", "ATTEMPT_NOT_EDITABLE"}
    assert db.query(ExamResult).filter(ExamResult.attempt_id == attempt_id).count() == 1
    counters = db.query(QuestionAnalytics).all()
    assert len(counters) == 4
    assert all(row.exposure_count == 1 and row.correct_count == 1 for row in counters)


def test_submit_after_expiry_is_auto_submitted(db, make_exam, open_attempt):
    exam_id, _ = make_exam()
    attempt_id = open_attempt(exam_id, expired=True)

    submit_attempt(db, attempt_id)
    attempt = db.query(ExamAttempt).filter(ExamAttempt.id == attempt_id).one()
    assert attempt.status == "auto_submitted"


def test_scoring_failure_releases_the_lock(db, make_exam, open_attempt, monkeypatch):
    exam_id, question_ids = make_exam()
    attempt_id = open_attempt(exam_id)
    _answer_all(db, attempt_id, question_ids, [0, 1])

    def broken(*args, **kwargs):
        raise RuntimeError("analytics store unavailable")

    monkeypatch.setattr(scoring, "apply_question_analytics", broken)
    with pytest.raises(RuntimeError):
        submit_attempt(db, attempt_id)

    db.close()
    attempt = db.query(ExamAttempt).filter(ExamAttempt.id == attempt_id).one()
    assert attempt.status == "in_progress"
    assert db.query(ExamResult).count() == 0
    db.close()

    monkeypatch.undo()
    result = submit_attempt(db, attempt_id)
    assert result.percentage == 50


def test_sweep_finalises_only_expired_attempts(db, make_exam, open_attempt):
    exam_id, question_ids = make_exam()
    expiring = open_attempt(exam_id, name="Expiring")
    active = open_attempt(exam_id, name="Active")
    _answer_all(db, expiring, question_ids[:3], [0, 1, 2])

    attempt = db.query(ExamAttempt).filter(ExamAttempt.id == expiring).one()
    attempt.expires_at = utc_now() - timedelta(seconds=1)
    db.commit()
    db.close()

    outcome = sweep_expired(db)
    assert outcome == {"found": 1, "finalised": 1, "reclaimed": 0, "skipped": 0, "failed": 0}

    db.close()
    swept = db.query(ExamAttempt).filter(ExamAttempt.id == expiring).one()
    assert swept.status == "auto_submitted"
    assert swept.metadata_dict["submit_trigger"] == "expiry"
    result = db.query(ExamResult).filter(ExamResult.attempt_id == expiring).one()
    assert result.answered_count == 3
    assert result.percentage == 75
    assert db.query(ExamAttempt).filter(ExamAttempt.id == active).one().status == "in_progress"

    assert sweep_expired(db)["found"] == 0


def _strand_submission_lock(db, attempt_id, locked_at, expires_at=None):
    """Leave the attempt the way a request that died after taking the lock would."""
    attempt = db.query(ExamAttempt).filter(ExamAttempt.id == attempt_id).one()
    attempt.status = "submitting"
    attempt.last_saved_at = locked_at
    if expires_at is not None:
        attempt.expires_at = expires_at
    db.commit()
    db.close()


def test_sweep_finishes_an_abandoned_submission(db, make_exam, open_attempt):
    exam_id, question_ids = make_exam()
    attempt_id = open_attempt(exam_id)
    _answer_all(db, attempt_id, question_ids[:3], [0, 1, 2])
    now = utc_now()
    _strand_submission_lock(db, attempt_id, locked_at=now, expires_at=now - timedelta(minutes=1))

    with pytest.raises(SubmitInProgress):
        submit_attempt(db, attempt_id)
    db.close()

    # A lock younger than the timeout is left to its owner
    assert sweep_expired(db, now=now + timedelta(seconds=30))["found"] == 0
    db.close()

    outcome = sweep_expired(db, now=now + timedelta(hours=1))
    assert outcome == {"found": 1, "finalised": 1, "reclaimed": 1, "skipped": 0, "failed": 0}

    db.close()
    attempt = db.query(ExamAttempt).filter(ExamAttempt.id == attempt_id).one()
    assert attempt.status == "auto_submitted"
    assert attempt.metadata_dict["submit_trigger"] == "lock_recovery"
    result = db.query(ExamResult).filter(ExamResult.attempt_id == attempt_id).one()
    assert result.percentage == 75


def test_stale_lock_is_released_once(db, make_exam, open_attempt):
    exam_id, _ = make_exam()
    attempt_id = open_attempt(exam_id)
    now = utc_now()
    _strand_submission_lock(db, attempt_id, locked_at=now)

    assert reclaim_stale_lock(db, attempt_id, now=now + timedelta(seconds=10), lock_timeout_seconds=60) is False
    assert reclaim_stale_lock(db, attempt_id, now=now + timedelta(seconds=61), lock_timeout_seconds=60) is True
    assert reclaim_stale_lock(db, attempt_id, now=now + timedelta(seconds=61), lock_timeout_seconds=60) is False

    db.close()
    attempt = db.query(ExamAttempt).filter(ExamAttempt.id == attempt_id).one()
    assert attempt.status == "in_progress"
    db.close()

    # Not expired, so the recovered submission counts as a normal one
    assert submit_attempt(db, attempt_id, now=now + timedelta(seconds=62)).percentage == 0
    db.close()
    assert db.query(ExamAttempt).filter(ExamAttempt.id == attempt_id).one().status == "submitted"


def test_submit_stamps_the_lock_time(db, make_exam, open_attempt, monkeypatch):
    exam_id, _ = make_exam()
    attempt_id = open_attempt(exam_id)
    lock_now = utc_now() + timedelta(minutes=5)
    seen = {}

    def capture(session, outcomes):
        row = session.query(ExamAttempt).filter(ExamAttempt.id == attempt_id).one()
        seen["status"], seen["last_saved_at"] = row.status, row.last_saved_at

    monkeypatch.setattr(scoring, "apply_question_analytics", capture)
    submit_attempt(db, attempt_id, now=lock_now)
    assert seen == {"status": "submitting", "last_saved_at": lock_now}


def test_reprocess_regrades_without_recounting_analytics(db, make_exam, open_attempt):
    exam_id, question_ids = make_exam()
    attempt_id = open_attempt(exam_id)
    _answer_all(db, attempt_id, question_ids, [0, 1, 2, 0])
    assert submit_attempt(db, attempt_id).percentage == 75

    question = db.query(Question).filter(Question.id == question_ids[3]).one()
    question.correct_answer = dump_json(0)
    db.commit()

    result = reprocess_attempt(db, attempt_id)
    assert result.percentage == 100
    assert result.grade_letter == "A"

    db.close()
    attempt = db.query(ExamAttempt).filter(ExamAttempt.id == attempt_id).one()
    assert attempt.status == "submitted"
    assert "scoring_reprocessed_at" in attempt.metadata_dict
    counters = db.query(QuestionAnalytics).filter(QuestionAnalytics.question_id == question_ids[0]).one()
    assert counters.exposure_count == 1


def test_reprocess_requires_terminal_attempt(db, make_exam, open_attempt):
    exam_id, _ = make_exam()
    attempt_id = open_attempt(exam_id)
    with pytest.raises(StateConflict) as exc_info:
        reprocess_attempt(db, attempt_id)
    assert exc_info.value.code == "ATTEMPT_NOT_REPROCESSABLE"


def test_submit_over_http(client, make_exam, open_attempt):
    exam_id, question_ids = make_exam()
    attempt_id = open_attempt(exam_id)
    for question_id, value in zip(question_ids, [0, 1, 2, 0]):
        client.post("/api/attempts/{}/answers".format(attempt_id),
                    json={"questionId": question_id, "answerPayload": value})

    resp = client.post("/api/attempts/{}/submit".format(attempt_id))
    assert resp.status_code == 200
    body = resp.json()
    assert body["finalStatus"] == "submitted"
    assert body["result"]["percentage"] == 75
    assert body["result"]["gradeLetter"] == "C"
    assert body["result"]["correctCount"] == 3

    again = client.post("/api/attempts/{}/submit".format(attempt_id))
    assert again.status_code == 400
    assert again.json()["error"] == "ATTEMPT_NOT_EDITABLE"

    reprocessed = client.post("/api/admin/attempts/{}/reprocess".format(attempt_id))
    assert reprocessed.status_code == 200
    assert reprocessed.json()["result"]["percentage"] == 75


def test_admin_sweep_endpoint(client, make_exam, open_attempt):
    exam_id, _ = make_exam()
    open_attempt(exam_id, expired=True)

    resp = client.post("/api/admin/attempts/sweep")
    assert resp.status_code == 200
    assert resp.json()["finalised"] == 1
