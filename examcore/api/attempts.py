from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session
from examcore.core.auth import require_roles, TokenData
from examcore.core.database import get_db
from examcore.core.errors import ResourceNotFoundError, AuthorizationError
from examcore.models.orm import Attempt
from examcore.services.attempts import AttemptLookupError, get_attempt, score_and_store, finalize_attempt

router = APIRouter()


def _may_read(user: TokenData, attempt: Attempt) -> bool:
    if user.has_role("admin"): return True
    if user.has_role("educator") and user.sub == attempt.educator_id: return True
    return user.sub == attempt.student_id


@router.post("/{attempt_id}/score")
def score(attempt_id: str, user: TokenData = Depends(require_roles("student", "educator", "admin")), db: Session = Depends(get_db)):
    try:
        attempt = get_attempt(db, attempt_id)
        if not _may_read(user, attempt): raise AuthorizationError("Not your attempt")
        result = score_and_store(db, attempt)
    except AttemptLookupError as e:
        raise ResourceNotFoundError(e.resource, e.identifier)
    return result.as_dict()


@router.post("/{attempt_id}/submit")
def submit(attempt_id: str, user: TokenData = Depends(require_roles("student")), db: Session = Depends(get_db)):
    try:
        if get_attempt(db, attempt_id).student_id != user.sub: raise AuthorizationError("Not your attempt")
        attempt, result = finalize_attempt(db, attempt_id)
    except AttemptLookupError as e:
        raise ResourceNotFoundError(e.resource, e.identifier)
    return {"attemptId": attempt.id, "status": attempt.status, "submittedAt": attempt.submitted_at, **result.as_dict()}
