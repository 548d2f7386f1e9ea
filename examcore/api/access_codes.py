from datetime import date, datetime
from fastapi import APIRouter, Depends, Response
from typing import List, Optional
from sqlalchemy.orm import Session
from examcore.core.auth import require_roles, TokenData
from examcore.core.cache import get_redis, check_redeem_rate
from examcore.core.config import settings
from examcore.core.database import get_db
from examcore.core.errors import (ResourceNotFoundError, TestMismatchError, RedemptionRejectedError,
                                  AccessCodeConflictError, InvalidAccessCodeError, RateLimitedError, AuthorizationError)
from examcore.models.schemas import CamelModel
from examcore.services import access_codes as ledger
from examcore.services.access_codes import RedeemErrorKind

router = APIRouter()

REJECTION_DETAIL = {
    RedeemErrorKind.EXPIRED: "Code has expired",
    RedeemErrorKind.EXHAUSTED: "Code has no uses left",
    RedeemErrorKind.TRANSIENT_CONFLICT: "Code is busy right now, please retry",
}

class RedeemRequest(CamelModel):
    code: str
    student_id: str
    educator_id: str
    expected_test_id: Optional[str] = None

class UnlockReceiptOut(CamelModel):
    unlock_id: Optional[int] = None
    student_id: str
    educator_id: str
    test_id: str
    code: str
    created_at: datetime
    uses_used: int
    max_uses: int
    consumed: bool = True

class AccessCodeOut(CamelModel):
    code: str
    test_id: str
    test_title: Optional[str] = None
    max_uses: int
    uses_used: int
    uses_left: int
    status: str
    expires_at: Optional[datetime] = None
    created_at: Optional[datetime] = None

class AccessCodeStatsOut(CamelModel):
    active_count: int
    total_uses: int
    expiring_soon_count: int

class CreateAccessCode(CamelModel):
    test_id: str
    max_uses: int
    code: Optional[str] = None
    expires_on: Optional[date] = None

class UpdateAccessCode(CamelModel):
    test_id: Optional[str] = None
    max_uses: Optional[int] = None
    expires_on: Optional[date] = None


def enforce_redeem_rate(user: TokenData = Depends(require_roles("student", "admin")), client=Depends(get_redis)):
    if not settings.REDEEM_RATE_LIMIT_ENABLED or user.has_role("admin"): return user
    allowed, _ = check_redeem_rate(client, user.sub, settings.REDEEM_RATE_LIMIT_PER_MINUTE)
    if not allowed: raise RateLimitedError(retry_after=60)
    return user


def _view_out(v: ledger.AccessCodeView) -> AccessCodeOut:
    return AccessCodeOut(code=v.code, test_id=v.test_id, test_title=v.test_title, max_uses=v.max_uses, uses_used=v.uses_used,
                         uses_left=v.uses_left, status=v.status.value, expires_at=v.expires_at, created_at=v.created_at)


def _management_error(e: ledger.AccessCodeError, code: str = ""):
    if isinstance(e, ledger.DuplicateCodeError): return AccessCodeConflictError(code or str(e))
    if isinstance(e, ledger.UnknownCodeError): return ResourceNotFoundError("Access code", code or str(e))
    if isinstance(e, ledger.UnknownTestError): return InvalidAccessCodeError(str(e), error_code="unknown_test")
    if isinstance(e, ledger.MaxUsesBelowUsedError):
        return InvalidAccessCodeError(str(e), error_code="max_uses_below_used", extra={"usesUsed": e.uses_used, "requested": e.requested})
    if isinstance(e, ledger.ConcurrentModificationError):
        return RedemptionRejectedError("transient_conflict", str(e))
    return InvalidAccessCodeError(str(e))


@router.post("/redeem", response_model=UnlockReceiptOut)
def redeem(payload: RedeemRequest, user: TokenData = Depends(enforce_redeem_rate), db: Session = Depends(get_db)):
    if not user.has_role("admin") and user.sub != payload.student_id:
        raise AuthorizationError("Students may only redeem codes for themselves")
    outcome = ledger.redeem(db, payload.code, payload.student_id, payload.educator_id, payload.expected_test_id)
    if outcome.ok:
        r = outcome.receipt
        return UnlockReceiptOut(unlock_id=r.unlock_id, student_id=r.student_id, educator_id=r.educator_id, test_id=r.test_id,
                                code=r.code, created_at=r.created_at, uses_used=r.uses_used, max_uses=r.max_uses,
                                consumed=r.consumed)
    code = ledger.normalize_code(payload.code)
    if outcome.error == RedeemErrorKind.NOT_FOUND: raise ResourceNotFoundError("Access code", code)
    if outcome.error == RedeemErrorKind.TEST_MISMATCH: raise TestMismatchError(code, payload.expected_test_id)
    raise RedemptionRejectedError(outcome.error.value, REJECTION_DETAIL[outcome.error], extra={"code": code})


@router.get("", response_model=List[AccessCodeOut])
def list_codes(user: TokenData = Depends(require_roles("educator")), db: Session = Depends(get_db)):
    return [_view_out(v) for v in ledger.list_access_codes(db, user.sub)]


@router.get("/stats", response_model=AccessCodeStatsOut)
def code_stats(user: TokenData = Depends(require_roles("educator")), db: Session = Depends(get_db)):
    s = ledger.access_code_stats(ledger.list_access_codes(db, user.sub))
    return AccessCodeStatsOut(active_count=s.active_count, total_uses=s.total_uses, expiring_soon_count=s.expiring_soon_count)


@router.post("", response_model=AccessCodeOut, status_code=201)
def create_code(payload: CreateAccessCode, user: TokenData = Depends(require_roles("educator")), db: Session = Depends(get_db)):
    try:
        row = ledger.create_access_code(db, user.sub, payload.test_id, payload.max_uses, payload.code, payload.expires_on)
    except ledger.AccessCodeError as e:
        raise _management_error(e, ledger.normalize_code(payload.code))
    return _view_out(ledger.to_view(row))


@router.patch("/{code}", response_model=AccessCodeOut)
def update_code(code: str, payload: UpdateAccessCode, user: TokenData = Depends(require_roles("educator")), db: Session = Depends(get_db)):
    changes = {"test_id": payload.test_id, "max_uses": payload.max_uses}
    if "expires_on" in payload.model_fields_set: changes["expires_on"] = payload.expires_on
    try:
        row = ledger.update_access_code(db, user.sub, code, **changes)
    except ledger.AccessCodeError as e:
        raise _management_error(e, ledger.normalize_code(code))
    return _view_out(ledger.to_view(row))


@router.delete("/{code}", status_code=204)
def delete_code(code: str, user: TokenData = Depends(require_roles("educator")), db: Session = Depends(get_db)):
    try:
        ledger.delete_access_code(db, user.sub, code)
    except ledger.AccessCodeError as e:
        raise _management_error(e, ledger.normalize_code(code))
    return Response(status_code=204)
