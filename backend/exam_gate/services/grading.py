"""
Per-question grading rules shared by the scoring and analytics engines.

    mcq_single   - stored index equals the correct index
    mcq_multi    - stored index set equals the correct set
    true_false   - stored boolean equals the correct boolean
    short_answer - normalised text is an accepted answer, or satisfies the
                   configured keyword predicates

A missing or undecodable answer is never correct.
"""

import math
import re
from typing import Any, Dict, Iterable, List, Optional

from exam_gate.services.answer_payload import has_answer, try_decode_answer

_WHITESPACE_RE = re.compile(r"\s+")


def normalize_short_text(value: str, case_sensitive: bool = False, trim: bool = True,
                         collapse_whitespace: bool = True) -> str:
    text = value
    if trim:
        text = text.strip()
    if collapse_whitespace:
        text = _WHITESPACE_RE.sub(" ", text)
    if not case_sensitive:
        text = text.lower()
    return text


def _strings(value: Any) -> List[str]:
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [v for v in value if isinstance(v, str)]
    return []


def grade_short_answer(answer: str, correct_answer: Any, rules: Optional[Dict[str, Any]]) -> bool:
    rules = rules if isinstance(rules, dict) else {}
    opts = {
        "case_sensitive": rules.get("caseSensitive") is True,
        "trim": rules.get("trim") is not False,
        "collapse_whitespace": rules.get("collapseWhitespace") is not False,
    }
    normalized = normalize_short_text(answer, **opts)
    if not normalized:
        return False

    accepted = {
        normalize_short_text(v, **opts)
        for v in _strings(correct_answer) + _strings(rules.get("acceptedAnswers"))
    }
    accepted.discard("")
    if normalized in accepted:
        return True

    required = [normalize_short_text(k, **opts) for k in _strings(rules.get("requiredKeywords"))]
    any_of = [normalize_short_text(k, **opts) for k in _strings(rules.get("anyKeywords"))]
    required = [k for k in required if k]
    any_of = [k for k in any_of if k]
    if not required and not any_of:
        return False
    if not all(k in normalized for k in required):
        return False
    return not any_of or any(k in normalized for k in any_of)


def grade_answer(question_type: str, correct_answer: Any, short_answer_rules: Any, stored_value: Any) -> bool:
    """True when a stored answer value is correct for the question."""
    if not has_answer(stored_value):
        return False

    if question_type == "short_answer":
        return isinstance(stored_value, str) and grade_short_answer(stored_value, correct_answer, short_answer_rules)

    answer = try_decode_answer(question_type, stored_value)
    expected = try_decode_answer(question_type, correct_answer)
    if answer is None or expected is None:
        return False
    return answer.value == expected.value


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def percentage_of(correct: int, total: int) -> int:
    """Whole-number percentage of correct questions; 0 for an empty exam."""
    if total <= 0:
        return 0
    return round_half_up(correct / total * 100)


def grade_letter(percentage: float) -> str:
    if percentage >= 90:
        return "A"
    if percentage >= 80:
        return "B"
    if percentage >= 70:
        return "C"
    if percentage >= 60:
        return "D"
    return "F"


def option_popularity_key(value: Any) -> Optional[str]:
    """
    Bucket a stored answer into a comparable histogram key:
    n:<number>, b:<bool>, s:<text>, a:<items>. Empty answers have no key.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return "b:true" if value else "b:false"
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            return None
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        return "n:{}".format(value)
    if isinstance(value, str):
        trimmed = value.strip()
        if not trimmed:
            return None
        return "s:{}".format(trimmed[:120].lower())
    if isinstance(value, (list, tuple)):
        items = _array_items(value)
        return "a:{}".format(",".join(items)) if items else None
    return None


def _array_items(values: Iterable[Any]) -> List[str]:
    numbers = []
    strings = []
    for v in values:
        if isinstance(v, bool):
            continue
        if isinstance(v, (int, float)) and math.isfinite(v):
            numbers.append(int(v) if float(v).is_integer() else v)
        elif isinstance(v, str) and v.strip():
            strings.append(v.strip())
    return [str(n) for n in sorted(numbers)] + sorted(strings)
