"""
Shared fixtures: a throwaway SQLite database per test, a TestClient wired
to it, and small factories for exams, PINs and attempts.

SQLite transactions start with BEGIN IMMEDIATE, so a session that has read
something holds the write lock until it commits or closes. The factories
close the seeding session before returning plain ids, and API tests read
back through short-lived sessions.
"""

from datetime import timedelta

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import sessionmaker

import exam_gate.models  # noqa: F401
from exam_gate.database import build_engine, create_tables, get_db
from exam_gate.jsonutil import dump_json
from exam_gate.main import app
from exam_gate.models import Exam, ExamQuestion, Pin, PinAllowListEntry, Question
from exam_gate.services.attempts import start_attempt
from exam_gate.services.pins import build_pin_hint, hash_pin
from exam_gate.services.providers import get_exam_config, get_exam_questions
from exam_gate.timeutil import utc_now

FOUR_MCQ = [
    {"question_type": "mcq_single", "options": ["A", "B", "C", "D"], "correct_answer": i}
    for i in range(4)
]


@pytest.fixture
def engine(tmp_path):
    eng = build_engine("sqlite:///{}".format(tmp_path / "exam_gate_test.db"))
    create_tables(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def client(session_factory):
    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    yield TestClient(app)
    app.dependency_overrides.clear()


@pytest.fixture
def make_exam(db):
    """Create a published exam; returns (exam_id, [question_id, ...])."""
    def _make(questions=None, **exam_fields):
        questions = FOUR_MCQ if questions is None else questions
        fields = {"title": "Sample exam", "status": "published", "duration_minutes": 30}
        fields.update(exam_fields)
        exam = Exam(**fields)
        db.add(exam)
        db.flush()

        question_ids = []
        for order, definition in enumerate(questions):
            question = Question(
                question_type=definition["question_type"],
                prompt=definition.get("prompt", "Question {}".format(order + 1)),
                options=dump_json(definition.get("options", [])),
                correct_answer=dump_json(definition.get("correct_answer")),
                short_answer_rules=dump_json(definition.get("rules", {})),
                subject_id=definition.get("subject_id"),
            )
            db.add(question)
            db.flush()
            db.add(ExamQuestion(exam_id=exam.id, question_id=question.id,
                                display_order=order, points=definition.get("points", 1)))
            question_ids.append(question.id)

        exam_id = exam.id
        db.commit()
        db.close()
        return exam_id, question_ids
    return _make


@pytest.fixture
def make_pin(db):
    """Insert a PIN with a known raw value; returns the pin id."""
    def _make(exam_id, raw="PIN-0001", max_uses=1, uses_count=0, status="active",
              expires_at=None, allow_list=None):
        pin = Pin(
            exam_id=exam_id,
            pin_hash=hash_pin(raw),
            pin_hint=build_pin_hint(raw),
            status=status,
            max_uses=max_uses,
            uses_count=uses_count,
            expires_at=expires_at,
            allow_list_enabled=allow_list is not None,
        )
        db.add(pin)
        db.flush()
        for identifier in allow_list or []:
            db.add(PinAllowListEntry(pin_id=pin.id, candidate_identifier=identifier))
        pin_id = pin.id
        db.commit()
        db.close()
        return pin_id
    return _make


@pytest.fixture
def open_attempt(db):
    """
    Start an attempt without a PIN. expired=True backdates it so that
    expires_at is already in the past.
    """
    def _open(exam_id, name="Ada Lovelace", identifier=None, pin_id=None, expired=False):
        exam = get_exam_config(db, exam_id)
        questions = get_exam_questions(db, exam_id)
        started_at = utc_now()
        if expired:
            started_at -= timedelta(minutes=exam.duration_minutes + 5)
        attempt = start_attempt(db, exam, questions, name, identifier, pin_id=pin_id, now=started_at)
        attempt_id = attempt.id
        db.close()
        return attempt_id
    return _open
