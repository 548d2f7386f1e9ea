"""
Cohort ranking over finished attempts.

Each student is represented by their best score across all of the
educator's tests. Ranks are recomputed on every query and never stored.

Ties on best score are broken deterministically: the student who reached
that score first (earlier ``submitted_at``) ranks higher, and student id
decides when timestamps are equal or missing.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from examcore.core.clock import as_utc, round_half_up
from examcore.models.orm import Attempt

IN_PROGRESS_STATUSES = {"in_progress", "in-progress", "inprogress", "running", "started"}
_LATEST = datetime.max.replace(tzinfo=timezone.utc)


@dataclass(frozen=True)
class CohortEntry:
    student_id: str
    score: float
    submitted_at: Optional[datetime] = None


@dataclass(frozen=True)
class RankResult:
    rank: Optional[int]
    total_participants: int

    @property
    def percentile_top(self) -> Optional[int]:
        if not self.rank or not self.total_participants:
            return None
        return round_half_up(self.rank * 100 / self.total_participants)


def is_terminal(status: Optional[str]) -> bool:
    return (status or "").strip().lower() not in IN_PROGRESS_STATUSES


def in_progress_clause(column):
    """SQL twin of ``not is_terminal``: same spellings, trimmed and case-folded."""
    return func.lower(func.trim(column)).in_(sorted(IN_PROGRESS_STATUSES))


def best_scores(entries: Iterable[CohortEntry]) -> Dict[str, Tuple[float, datetime]]:
    best: Dict[str, Tuple[float, datetime]] = {}
    for e in entries:
        if not e.student_id:
            continue
        when = as_utc(e.submitted_at) or _LATEST
        cur = best.get(e.student_id)
        if cur is None or e.score > cur[0] or (e.score == cur[0] and when < cur[1]):
            best[e.student_id] = (e.score, when)
    return best


def leaderboard(entries: Iterable[CohortEntry]) -> List[str]:
    best = best_scores(entries)
    return sorted(best, key=lambda sid: (-best[sid][0], best[sid][1], sid))


def rank_student(entries: Iterable[CohortEntry], student_id: str) -> RankResult:
    order = leaderboard(entries)
    try:
        rank = order.index(student_id) + 1
    except ValueError:
        rank = None
    return RankResult(rank=rank, total_participants=len(order))


def load_cohort(db: Session, educator_id: str) -> List[CohortEntry]:
    rows = db.execute(
        select(Attempt.student_id, Attempt.score, Attempt.submitted_at, Attempt.status).where(Attempt.educator_id == educator_id)
    ).all()
    return [
        CohortEntry(student_id=r.student_id, score=float(r.score or 0.0), submitted_at=r.submitted_at)
        for r in rows if is_terminal(r.status)
    ]


def rank_in_cohort(db: Session, educator_id: str, student_id: str) -> RankResult:
    return rank_student(load_cohort(db, educator_id), student_id)
