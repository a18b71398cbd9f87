from exam_gate.models.exam import Exam, Question, ExamQuestion
from exam_gate.models.pin import PinBatch, Pin, PinAllowListEntry, PinValidationAttempt
from exam_gate.models.candidate import Candidate
from exam_gate.models.attempt import ExamAttempt
from exam_gate.models.answer import AttemptAnswer, AttemptAnswerHistory
from exam_gate.models.integrity_event import IntegrityEvent
from exam_gate.models.result import ExamResult, QuestionAnalytics

__all__ = [
    "Exam", "Question", "ExamQuestion",
    "PinBatch", "Pin", "PinAllowListEntry", "PinValidationAttempt",
    "Candidate", "ExamAttempt", "AttemptAnswer", "AttemptAnswerHistory",
    "IntegrityEvent", "ExamResult", "QuestionAnalytics",
]
