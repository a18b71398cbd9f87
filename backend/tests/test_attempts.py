import random
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

import pytest

from exam_gate.errors import InvalidPin, NotFound, ServiceError, StateConflict, ValidationFailed
from exam_gate.models import ExamAttempt
from exam_gate.services.attempts import (
    build_option_order,
    build_question_order,
    describe_attempt,
    normalize_text,
    resume_attempt,
)
from exam_gate.services.providers import get_exam_questions
from exam_gate.timeutil import utc_now


def test_normalize_text_collapses_and_lowercases():
    assert normalize_text("  Ada   LOVELACE ") == "ada lovelace"
    assert normalize_text(None) == ""


def test_resume_requires_name_or_identifier(db, make_exam):
    exam_id, _ = make_exam()
    with pytest.raises(ValidationFailed) as exc_info:
        resume_attempt(db, exam_id, candidate_name="  ", candidate_identifier="")
    assert exc_info.value.code == "CANDIDATE_MATCH_REQUIRED"


def test_resume_not_found(db, make_exam, open_attempt):
    exam_id, _ = make_exam()
    open_attempt(exam_id, name="Ada Lovelace")
    with pytest.raises(NotFound) as exc_info:
        resume_attempt(db, exam_id, candidate_name="Charles Babbage")
    assert exc_info.value.code == "RESUME_NOT_FOUND"


def test_resume_matches_normalised_name(db, make_exam, open_attempt):
    exam_id, _ = make_exam()
    attempt_id = open_attempt(exam_id, name="Ada Lovelace")

    outcome = resume_attempt(db, exam_id, candidate_name="  ada   LOVELACE")
    assert outcome["attemptId"] == attempt_id
    assert outcome["resumed"] is True
    assert outcome["attempt"]["status"] == "in_progress"


def test_resume_by_identifier(db, make_exam, open_attempt):
    exam_id, _ = make_exam()
    open_attempt(exam_id, name="Ada Lovelace", identifier="S-1")
    attempt_id = open_attempt(exam_id, name="Ada Lovelace", identifier="S-2")

    assert resume_attempt(db, exam_id, candidate_identifier="s-2")["attemptId"] == attempt_id


def test_resume_ambiguous_when_two_open_attempts_match(db, make_exam, open_attempt):
    exam_id, _ = make_exam()
    open_attempt(exam_id, name="Ada Lovelace")
    open_attempt(exam_id, name="Ada Lovelace")

    with pytest.raises(StateConflict) as exc_info:
        resume_attempt(db, exam_id, candidate_name="Ada Lovelace")
    assert exc_info.value.code == "RESUME_AMBIGUOUS"


def test_resume_finds_an_attempt_behind_many_newer_ones(db, make_exam, open_attempt):
    exam_id, _ = make_exam()
    attempt_id = open_attempt(exam_id, name="Grace Hopper")
    for i in range(60):
        open_attempt(exam_id, name="Candidate {}".format(i))

    assert resume_attempt(db, exam_id, candidate_name="grace  hopper")["attemptId"] == attempt_id


def test_ambiguity_is_detected_behind_many_newer_attempts(db, make_exam, open_attempt):
    exam_id, _ = make_exam()
    open_attempt(exam_id, name="Grace Hopper")
    for i in range(30):
        open_attempt(exam_id, name="Candidate {}".format(i))
    open_attempt(exam_id, name="Grace Hopper")
    for i in range(30, 60):
        open_attempt(exam_id, name="Candidate {}".format(i))

    with pytest.raises(StateConflict) as exc_info:
        resume_attempt(db, exam_id, candidate_name="Grace Hopper")
    assert exc_info.value.code == "RESUME_AMBIGUOUS"


def test_concurrent_ambiguous_resumes_both_fail(db, session_factory, make_exam, open_attempt):
    exam_id, _ = make_exam()
    open_attempt(exam_id, name="Ada Lovelace")
    open_attempt(exam_id, name="Ada Lovelace")
    db.close()

    def resume_once(_):
        session = session_factory()
        try:
            return resume_attempt(session, exam_id, candidate_name="Ada Lovelace")["attemptId"]
        except ServiceError as exc:
            return exc.code
        finally:
            session.close()

    with ThreadPoolExecutor(max_workers=2) as pool:
        outcomes = list(pool.map(resume_once, range(2)))
    assert outcomes == ["RESUME_AMBIGUOUS", "RESUME_AMBIGUOUS"]


def test_resume_submitted_attempt_is_not_resumable(db, make_exam, open_attempt):
    exam_id, _ = make_exam()
    attempt_id = open_attempt(exam_id)
    attempt = db.query(ExamAttempt).filter(ExamAttempt.id == attempt_id).one()
    attempt.status = "submitted"
    attempt.submitted_at = utc_now()
    db.commit()
    db.close()

    with pytest.raises(StateConflict) as exc_info:
        resume_attempt(db, exam_id, candidate_name="Ada Lovelace")
    assert exc_info.value.code == "ATTEMPT_NOT_RESUMABLE"
    assert exc_info.value.details["status"] == "submitted"


def test_resume_expired_attempt_is_auto_submitted(db, make_exam, open_attempt):
    exam_id, _ = make_exam()
    attempt_id = open_attempt(exam_id, expired=True)

    with pytest.raises(StateConflict) as exc_info:
        resume_attempt(db, exam_id, candidate_name="Ada Lovelace")
    assert exc_info.value.code == "ATTEMPT_EXPIRED"
    assert exc_info.value.details["status"] == "auto_submitted"

    db.close()
    attempt = db.query(ExamAttempt).filter(ExamAttempt.id == attempt_id).one()
    assert attempt.status == "auto_submitted"
    assert attempt.metadata_dict["submit_trigger"] == "expiry"


def test_resume_narrowed_by_pin(db, make_exam, make_pin, open_attempt):
    exam_id, _ = make_exam()
    pin_a = make_pin(exam_id, raw="PIN-A")
    make_pin(exam_id, raw="PIN-B")
    attempt_a = open_attempt(exam_id, pin_id=pin_a)
    open_attempt(exam_id, pin_id=None)

    # Without the PIN both attempts match
    with pytest.raises(StateConflict):
        resume_attempt(db, exam_id, candidate_name="Ada Lovelace")
    db.close()

    assert resume_attempt(db, exam_id, candidate_name="Ada Lovelace", raw_pin="PIN-A")["attemptId"] == attempt_a
    db.close()

    with pytest.raises(NotFound):
        resume_attempt(db, exam_id, candidate_name="Ada Lovelace", raw_pin="PIN-B")
    db.close()

    with pytest.raises(InvalidPin):
        resume_attempt(db, exam_id, candidate_name="Ada Lovelace", raw_pin="PIN-Z")


def test_describe_attempt_hides_correct_answers(db, make_exam, open_attempt):
    exam_id, question_ids = make_exam()
    attempt_id = open_attempt(exam_id)

    view = describe_attempt(db, attempt_id)
    assert view["status"] == "in_progress"
    assert 0 < view["remainingSeconds"] <= 30 * 60
    assert [q["questionId"] for q in view["questions"]] == question_ids
    for item in view["questions"]:
        assert "correctAnswer" not in item
        assert "correct_answer" not in item
        assert [o["text"] for o in item["options"]] == ["A", "B", "C", "D"]
        assert item["answer"] is None
        assert item["versionNo"] == 0


def test_describe_expired_attempt_finalises_it(db, make_exam, open_attempt):
    exam_id, _ = make_exam()
    attempt_id = open_attempt(exam_id, expired=True)

    view = describe_attempt(db, attempt_id)
    assert view["status"] == "auto_submitted"
    assert view["remainingSeconds"] == 0
    assert view["submittedAt"] is not None


def test_shuffled_orders_are_permutations(db, make_exam):
    exam_id, question_ids = make_exam()
    questions = get_exam_questions(db, exam_id)

    order = build_question_order(questions, shuffle=True, rng=random.Random(7))
    assert sorted(order) == sorted(question_ids)
    assert build_question_order(questions, shuffle=False) == question_ids

    option_orders = build_option_order(questions, shuffle=True, rng=random.Random(7))
    assert set(option_orders) == set(question_ids)
    assert all(sorted(indices) == [0, 1, 2, 3] for indices in option_orders.values())
    assert build_option_order(questions, shuffle=False) == {}


def test_shuffled_attempt_view_follows_stored_order(client, make_exam, make_pin):
    exam_id, question_ids = make_exam(shuffle_questions=True, shuffle_options=True)
    make_pin(exam_id, raw="SHUFFLE")

    entry = client.post("/api/pins/validate", json={
        "examId": exam_id, "pin": "SHUFFLE", "candidateName": "Alan", "startAttempt": True,
    }).json()
    view = client.get("/api/attempts/{}".format(entry["attemptId"])).json()

    assert sorted(q["questionId"] for q in view["questions"]) == sorted(question_ids)
    for item in view["questions"]:
        assert sorted(o["index"] for o in item["options"]) == [0, 1, 2, 3]


def test_resume_over_http(client, make_exam, make_pin):
    exam_id, _ = make_exam()
    make_pin(exam_id, raw="HTTP-PIN", max_uses=3)
    entry = client.post("/api/pins/validate", json={
        "examId": exam_id, "pin": "HTTP-PIN", "candidateName": "Alan Turing",
        "candidateIdentifier": "T-1", "startAttempt": True,
    }).json()

    resp = client.post("/api/attempts/resume", json={"examId": exam_id, "candidateIdentifier": "t-1"})
    assert resp.status_code == 200
    assert resp.json()["attemptId"] == entry["attemptId"]

    missing = client.post("/api/attempts/resume", json={"examId": exam_id, "candidateName": "Nobody"})
    assert missing.status_code == 404
    assert missing.json()["error"] == "RESUME_NOT_FOUND"


def test_unknown_attempt_is_404(client):
    resp = client.get("/api/attempts/does-not-exist")
    assert resp.status_code == 404
    assert resp.json()["error"] == "ATTEMPT_NOT_FOUND"


def test_attempt_expiry_matches_exam_duration(db, make_exam, open_attempt):
    exam_id, _ = make_exam(duration_minutes=45)
    attempt_id = open_attempt(exam_id)
    attempt = db.query(ExamAttempt).filter(ExamAttempt.id == attempt_id).one()
    assert attempt.expires_at - attempt.started_at == timedelta(minutes=45)
