"""
Attempt lifecycle and persisted scoring.

in_progress -> submitted | expired, both terminal. Stored score fields are a
cache of ``score_attempt`` over the current answer key and may be rewritten
by re-scoring at any time.
"""
import logging
from datetime import datetime, timedelta
from typing import Callable, List, Optional, Tuple

from sqlalchemy import select
from sqlalchemy.orm import Session

from examcore.core.clock import as_utc, utc_now
from examcore.models.orm import Attempt, Question, Test
from examcore.services.ranking import in_progress_clause, is_terminal
from examcore.services.scoring import MarkingScheme, QuestionKey, ScoreResult, score_attempt, section_names_for

logger = logging.getLogger(__name__)

SUBMITTED = "submitted"
EXPIRED = "expired"


class AttemptLookupError(Exception):
    """An attempt, its test, or its question set does not resolve."""

    def __init__(self, resource: str, identifier: str):
        super().__init__(f"{resource} '{identifier}' not found")
        self.resource = resource
        self.identifier = identifier


def get_attempt(db: Session, attempt_id: str) -> Attempt:
    attempt = db.get(Attempt, attempt_id)
    if attempt is None:
        raise AttemptLookupError("Attempt", attempt_id)
    return attempt


def load_answer_key(db: Session, attempt: Attempt) -> Tuple[Test, List[QuestionKey]]:
    test = db.get(Test, attempt.test_id)
    # bank tests (no owner) can be taken from any educator's library
    if test is None or (test.educator_id is not None and test.educator_id != attempt.educator_id):
        raise AttemptLookupError("Test", attempt.test_id)
    rows = db.scalars(select(Question).where(Question.test_id == test.id).order_by(Question.position, Question.id)).all()
    if not rows:
        raise AttemptLookupError("Question set", test.id)
    scheme = MarkingScheme.for_test(test)
    return test, [QuestionKey.from_row(r, scheme) for r in rows]


def deadline_for(attempt: Attempt, test: Test) -> datetime:
    return as_utc(attempt.started_at) + timedelta(minutes=test.duration_minutes or 0)


def score_and_store(db: Session, attempt: Attempt, commit: bool = True) -> ScoreResult:
    test, keys = load_answer_key(db, attempt)
    result = score_attempt(keys, attempt.responses or {}, section_names_for(test.sections, test.subject))
    attempt.score = result.score
    attempt.max_score = result.max_score
    attempt.accuracy = result.accuracy
    attempt.correct_count = result.correct_count
    attempt.incorrect_count = result.incorrect_count
    if commit:
        db.commit()
    return result


def finalize_attempt(db: Session, attempt_id: str, now: Optional[datetime] = None) -> Tuple[Attempt, ScoreResult]:
    """Close an in-progress attempt (submitted, or expired past its time box) and score it."""
    now = as_utc(now) if now is not None else utc_now()
    attempt = get_attempt(db, attempt_id)
    test, _ = load_answer_key(db, attempt)
    if not is_terminal(attempt.status):
        deadline = deadline_for(attempt, test)
        if now > deadline:
            attempt.status, attempt.submitted_at = EXPIRED, deadline
        else:
            attempt.status, attempt.submitted_at = SUBMITTED, now
        logger.info(f"Attempt {attempt.id} closed as {attempt.status}")
    result = score_and_store(db, attempt)
    return attempt, result


def expire_overdue(db: Session, now: Optional[datetime] = None) -> List[str]:
    now = as_utc(now) if now is not None else utc_now()
    rows = db.execute(
        select(Attempt, Test).join(Test, Test.id == Attempt.test_id).where(in_progress_clause(Attempt.status)).order_by(Attempt.id)
    ).all()
    expired = []
    for attempt, test in rows:
        deadline = deadline_for(attempt, test)
        if now <= deadline:
            continue
        attempt.status, attempt.submitted_at = EXPIRED, deadline
        try:
            score_and_store(db, attempt, commit=False)
        except AttemptLookupError as e:
            logger.warning(f"Expired attempt {attempt.id} left unscored: {e}")
        expired.append(attempt.id)
    db.commit()
    return expired


def rescore_test(db: Session, test_id: str, progress: Optional[Callable[[int, int], None]] = None) -> dict:
    attempts = [a for a in db.scalars(select(Attempt).where(Attempt.test_id == test_id).order_by(Attempt.id)).all()
                if is_terminal(a.status)]
    changed, flagged = [], set()
    for i, attempt in enumerate(attempts, start=1):
        before = attempt.score
        result = score_and_store(db, attempt, commit=False)
        flagged.update(result.flagged_questions)
        if before != result.score:
            changed.append({"attemptId": attempt.id, "before": before, "after": result.score})
        if progress:
            progress(i, len(attempts))
    db.commit()
    return {"rescored": len(attempts), "changed": changed, "flaggedQuestions": sorted(flagged)}
