from fastapi import APIRouter, Depends
from typing import Optional
from sqlalchemy.orm import Session
from examcore.core.auth import require_roles, ensure_self_or_staff, TokenData
from examcore.core.database import get_db
from examcore.models.schemas import CamelModel
from examcore.services.entitlement import check_entitlement

router = APIRouter()

class EntitlementCheck(CamelModel):
    student_id: str
    tenant_slug: Optional[str] = None

class EntitlementResult(CamelModel):
    allowed: bool
    reason: Optional[str] = None

@router.post("/check", response_model=EntitlementResult, response_model_exclude_none=True)
def check(payload: EntitlementCheck, user: TokenData = Depends(require_roles("student", "educator", "admin")), db: Session = Depends(get_db)):
    ensure_self_or_staff(user, payload.student_id)
    decision = check_entitlement(db, payload.student_id, payload.tenant_slug)
    return EntitlementResult(allowed=decision.allowed, reason=decision.reason.value if decision.reason else None)
