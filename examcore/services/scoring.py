"""
Attempt scoring.

Scores are derived data: ``score_attempt`` is a pure function of the answer
key and the stored responses, so any stored score can be re-verified by
running it again. Questions with an unusable answer key are scored as
incorrect when answered and reported in ``flagged_questions`` instead of
failing the whole attempt.

Marks come from the question, then the test's marking scheme, then 4/1.
Unanswered questions earn the scheme's ``unanswered`` value, 0 unless set.
"""
import logging
import math
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from examcore.core.clock import round_half_up

logger = logging.getLogger(__name__)

DEFAULT_MARKS = 4.0
DEFAULT_NEGATIVE_MARKS = 1.0
DEFAULT_SECTION_ID = "main"
DEFAULT_SECTION_NAME = "General"
QUESTION_TYPES = ("mcq", "integer")


@dataclass(frozen=True)
class MarkingScheme:
    """Test-level marks, used for any question that carries none of its own."""
    correct: float = DEFAULT_MARKS
    incorrect: float = DEFAULT_NEGATIVE_MARKS
    unanswered: float = 0.0

    @classmethod
    def for_test(cls, test) -> "MarkingScheme":
        scheme = getattr(test, "marking_scheme", None) or {}
        if scheme:
            return cls(
                correct=_safe_number(scheme.get("correct"), DEFAULT_MARKS),
                incorrect=abs(_safe_number(scheme.get("incorrect"), DEFAULT_NEGATIVE_MARKS)),
                unanswered=_safe_number(scheme.get("unanswered"), 0.0),
            )
        return cls(
            correct=_safe_number(getattr(test, "positive_marks", None), DEFAULT_MARKS),
            incorrect=abs(_safe_number(getattr(test, "negative_marks", None), DEFAULT_NEGATIVE_MARKS)),
        )


DEFAULT_SCHEME = MarkingScheme()


@dataclass(frozen=True)
class QuestionKey:
    """Answer key for one question."""
    id: str
    type: str = "mcq"
    correct_option: Optional[int] = None
    correct_answer: Optional[str] = None
    marks: float = DEFAULT_MARKS
    negative_marks: float = DEFAULT_NEGATIVE_MARKS
    section_id: Optional[str] = None
    option_count: int = 0
    unanswered_marks: float = 0.0

    @classmethod
    def from_row(cls, row, scheme: MarkingScheme = DEFAULT_SCHEME) -> "QuestionKey":
        return cls(
            id=str(row.id),
            type=row.type if row.type in QUESTION_TYPES else "mcq",
            correct_option=row.correct_option,
            correct_answer=row.correct_answer,
            marks=_safe_number(row.marks, scheme.correct),
            negative_marks=abs(_safe_number(row.negative_marks, scheme.incorrect)),
            section_id=row.section_id,
            option_count=len(row.options or []),
            unanswered_marks=scheme.unanswered,
        )


@dataclass(frozen=True)
class SectionScore:
    section_id: str
    section_name: str
    score: float
    max_score: float


@dataclass(frozen=True)
class ScoreResult:
    score: float
    max_score: float
    accuracy: int
    correct_count: int
    incorrect_count: int
    unanswered_count: int
    per_section: Tuple[SectionScore, ...] = field(default_factory=tuple)
    flagged_questions: Tuple[str, ...] = field(default_factory=tuple)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "score": self.score,
            "maxScore": self.max_score,
            "accuracy": self.accuracy,
            "correctCount": self.correct_count,
            "incorrectCount": self.incorrect_count,
            "unansweredCount": self.unanswered_count,
            "perSection": [
                {"sectionId": s.section_id, "sectionName": s.section_name, "score": s.score, "maxScore": s.max_score}
                for s in self.per_section
            ],
            "flaggedQuestions": list(self.flagged_questions),
        }


def _safe_number(value: Any, fallback: float) -> float:
    try:
        n = float(value)
    except (TypeError, ValueError):
        return fallback
    return n if math.isfinite(n) else fallback


def is_answered(value: Any) -> bool:
    return value is not None and str(value).strip() != ""


def response_answer(entry: Any) -> Any:
    """Stored responses are ``{answer, answered, visited, markedForReview}``; bare values are tolerated."""
    if isinstance(entry, Mapping):
        return entry.get("answer")
    return entry


def answer_key_problem(q: QuestionKey) -> Optional[str]:
    if q.type == "integer":
        if q.correct_answer is None or str(q.correct_answer).strip() == "":
            return "missing correct_answer"
        return None
    if isinstance(q.correct_option, bool) or not isinstance(q.correct_option, int):
        return "missing correct_option"
    if q.correct_option < 0 or (q.option_count and q.correct_option >= q.option_count):
        return "correct_option out of range"
    return None


def is_correct(q: QuestionKey, answer: Any) -> bool:
    if q.type == "integer":
        return str(answer).strip() == str(q.correct_answer).strip()
    return str(answer).strip() == str(q.correct_option)


def section_names_for(sections: Optional[Iterable[Mapping[str, Any]]], subject: Optional[str] = None) -> Dict[str, str]:
    """Build the section-id -> label map the way results pages show it."""
    names: Dict[str, str] = {}
    for s in sections or []:
        sid = s.get("id")
        if sid is not None:
            names[str(sid)] = str(s.get("name") or sid)
    if not names:
        names[DEFAULT_SECTION_ID] = subject or DEFAULT_SECTION_NAME
    return names


def score_attempt(questions: Iterable[QuestionKey], responses: Optional[Mapping[str, Any]],
                  section_names: Optional[Mapping[str, str]] = None) -> ScoreResult:
    responses = responses or {}
    section_names = section_names or {}
    score = 0.0
    max_score = 0.0
    correct = incorrect = unanswered = 0
    sections: Dict[str, List[float]] = {}
    flagged: List[str] = []

    for q in questions:
        sid = q.section_id or DEFAULT_SECTION_ID
        bucket = sections.setdefault(sid, [0.0, 0.0])
        max_score += q.marks
        bucket[1] += q.marks

        problem = answer_key_problem(q)
        if problem:
            flagged.append(q.id)
            logger.warning(f"Malformed answer key for question {q.id}: {problem}")

        answer = response_answer(responses.get(q.id))
        if not is_answered(answer):
            unanswered += 1
            score += q.unanswered_marks
            bucket[0] += q.unanswered_marks
            continue

        if not problem and is_correct(q, answer):
            score += q.marks
            bucket[0] += q.marks
            correct += 1
        else:
            penalty = abs(q.negative_marks)
            score -= penalty
            bucket[0] -= penalty
            incorrect += 1

    attempted = correct + incorrect
    accuracy = round_half_up(correct * 100 / attempted) if attempted else 0
    per_section = tuple(
        SectionScore(section_id=sid, section_name=section_names.get(sid, sid), score=vals[0], max_score=vals[1])
        for sid, vals in sections.items()
    )
    return ScoreResult(
        score=score, max_score=max_score, accuracy=accuracy, correct_count=correct,
        incorrect_count=incorrect, unanswered_count=unanswered, per_section=per_section,
        flagged_questions=tuple(flagged),
    )
