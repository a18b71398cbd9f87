"""
Demo Loader Script - Seeds a demo exam and issues a PIN batch via the API.

Exam authoring is owned by another service, so the demo exam and its
questions are written straight into the database. PINs are then generated
through the admin API so the raw codes are printed exactly once.

Usage:
    python load_data.py                              # Uses default URL
    python load_data.py http://localhost:8000         # Custom API URL
"""

import json
import os
import sys

import httpx

from exam_gate.database import SessionLocal, create_tables
from exam_gate.jsonutil import dump_json
from exam_gate.models import Exam, ExamQuestion, Question

DEMO_QUESTIONS = [
    {
        "question_type": "mcq_single",
        "prompt": "Which planet is closest to the sun?",
        "options": ["Venus", "Mercury", "Mars", "Earth"],
        "correct_answer": 1,
        "subject_id": "science",
    },
    {
        "question_type": "mcq_multi",
        "prompt": "Select all prime numbers.",
        "options": ["2", "4", "5", "9"],
        "correct_answer": [0, 2],
        "subject_id": "math",
    },
    {
        "question_type": "true_false",
        "prompt": "Water boils at 100 degrees Celsius at sea level.",
        "options": [],
        "correct_answer": True,
        "subject_id": "science",
    },
    {
        "question_type": "short_answer",
        "prompt": "Name the process plants use to make food from sunlight.",
        "options": [],
        "correct_answer": "photosynthesis",
        "short_answer_rules": {"acceptedAnswers": ["photo synthesis"]},
        "subject_id": "science",
    },
]


def post_json(url, data, headers=None):
    with httpx.Client(timeout=30.0) as client:
        resp = client.post(url, json=data, headers=headers)
        if resp.is_error:
            print(f"HTTP Error {resp.status_code}: {resp.text}")
            sys.exit(1)
        return resp.json()


def seed_exam() -> str:
    """Insert the demo exam with its questions; returns the exam id."""
    create_tables()
    db = SessionLocal()
    try:
        exam = Exam(title="Demo General Knowledge", status="published", duration_minutes=20,
                    shuffle_questions=True, shuffle_options=False, passing_score=50)
        db.add(exam)
        db.flush()
        for order, definition in enumerate(DEMO_QUESTIONS):
            question = Question(
                question_type=definition["question_type"],
                prompt=definition["prompt"],
                options=dump_json(definition["options"]),
                correct_answer=dump_json(definition["correct_answer"]),
                short_answer_rules=dump_json(definition.get("short_answer_rules", {})),
                subject_id=definition["subject_id"],
            )
            db.add(question)
            db.flush()
            db.add(ExamQuestion(exam_id=exam.id, question_id=question.id, display_order=order, points=1))
        db.commit()
        return exam.id
    finally:
        db.close()


def main():
    api_url = sys.argv[1] if len(sys.argv) > 1 else os.getenv("API_URL", "http://localhost:8000")
    headers = {}
    if os.getenv("ADMIN_API_TOKEN"):
        headers["X-Admin-Token"] = os.getenv("ADMIN_API_TOKEN")

    exam_id = seed_exam()
    print(f"Seeded demo exam: {exam_id} ({len(DEMO_QUESTIONS)} questions)")

    result = post_json(f"{api_url}/api/admin/pins/batches", {
        "examId": exam_id,
        "quantity": 5,
        "length": 6,
        "charset": "alnum_upper",
        "prefix": "DEMO",
        "maxUses": 1,
        "batchName": "demo",
    }, headers=headers)

    print("=" * 60)
    print("PIN BATCH")
    print("=" * 60)
    print(f"  Batch:      {result.get('batchId', '?')}")
    print(f"  Quantity:   {result.get('quantity', '?')}")
    print(f"  Max uses:   {result.get('maxUses', '?')}")
    print("=" * 60)
    for pin in result.get("pins", []):
        print(f"  {pin}")
    print()
    print("Example entry request:")
    print(json.dumps({"examId": exam_id, "pin": (result.get("pins") or ["?"])[0],
                      "candidateName": "Ada Lovelace", "startAttempt": True}, indent=2))


if __name__ == "__main__":
    main()
