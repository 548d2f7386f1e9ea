from fastapi import APIRouter, Depends
from typing import Optional
from sqlalchemy.orm import Session
from examcore.core.auth import require_roles, TokenData
from examcore.core.database import get_db
from examcore.core.errors import AuthorizationError
from examcore.models.schemas import CamelModel
from examcore.services.ranking import rank_in_cohort

router = APIRouter()

class RankOut(CamelModel):
    rank: Optional[int] = None
    total_participants: int
    percentile_top: Optional[int] = None

@router.get("", response_model=RankOut)
def rank(educatorId: str, studentId: str, user: TokenData = Depends(require_roles("student", "educator", "admin")), db: Session = Depends(get_db)):
    if user.has_role("admin"):
        pass
    elif user.has_role("educator"):
        if user.sub != educatorId: raise AuthorizationError("Educators may only rank their own cohort")
    elif user.sub != studentId:
        raise AuthorizationError("Students may only view their own rank")
    r = rank_in_cohort(db, educatorId, studentId)
    return RankOut(rank=r.rank, total_participants=r.total_participants, percentile_top=r.percentile_top)
