"""
Access-code ledger: educator-issued codes that unlock one test each.

Redemption is exactly-once per use. The code row carries a version column
and every UPDATE is conditional on the version read in the same transaction,
so two redeemers racing for the last use cannot both commit: the loser gets
``StaleDataError``, rolls back, and re-runs the whole read-verify-write.
Rejections (unknown, wrong test, expired, exhausted) are returned as typed
outcomes, never raised to callers.

Status (active / exhausted / expired) is always derived from
``uses_used``/``max_uses``/``expires_at``; it is never stored.
"""
import logging
import secrets
import string
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from enum import Enum
from typing import List, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import Session
from sqlalchemy.orm.exc import StaleDataError
from tenacity import Retrying, retry_if_exception_type, stop_after_attempt, wait_random_exponential

from examcore.core.clock import as_utc, end_of_day, utc_now
from examcore.core.config import settings
from examcore.models.orm import AccessCode, Test, Unlock

logger = logging.getLogger(__name__)

CODE_ALPHABET = string.ascii_uppercase + string.digits
_UNSET = object()
# serialization_failure, deadlock_detected
_CONFLICT_PGCODES = {"40001", "40P01"}
_SQLITE_LOCK_MESSAGES = ("database is locked", "database table is locked")


class RedeemErrorKind(str, Enum):
    NOT_FOUND = "not_found"
    TEST_MISMATCH = "test_mismatch"
    EXPIRED = "expired"
    EXHAUSTED = "exhausted"
    TRANSIENT_CONFLICT = "transient_conflict"


class CodeStatus(str, Enum):
    ACTIVE = "active"
    EXHAUSTED = "exhausted"
    EXPIRED = "expired"


@dataclass(frozen=True)
class UnlockReceipt:
    unlock_id: Optional[int]
    student_id: str
    educator_id: str
    test_id: str
    code: str
    created_at: datetime
    uses_used: int
    max_uses: int
    # False when the test was open anyway: no use spent, no unlock written
    consumed: bool = True


@dataclass(frozen=True)
class StudentTestAccess:
    test_id: str
    title: str
    locked: bool


@dataclass(frozen=True)
class RedeemOutcome:
    receipt: Optional[UnlockReceipt] = None
    error: Optional[RedeemErrorKind] = None

    @property
    def ok(self) -> bool:
        return self.receipt is not None


@dataclass(frozen=True)
class AccessCodeView:
    code: str
    test_id: str
    test_title: Optional[str]
    max_uses: int
    uses_used: int
    uses_left: int
    status: CodeStatus
    expires_at: Optional[datetime]
    created_at: Optional[datetime]


@dataclass(frozen=True)
class AccessCodeStats:
    active_count: int
    total_uses: int
    expiring_soon_count: int


class AccessCodeError(Exception):
    """Base for rejected management operations (create / edit / delete)."""


class DuplicateCodeError(AccessCodeError):
    pass


class UnknownCodeError(AccessCodeError):
    pass


class UnknownTestError(AccessCodeError):
    pass


class InvalidMaxUsesError(AccessCodeError):
    pass


class MaxUsesBelowUsedError(AccessCodeError):
    def __init__(self, uses_used: int, requested: int):
        super().__init__(f"This code was already used {uses_used} times; max uses cannot be {requested}")
        self.uses_used = uses_used
        self.requested = requested


class ConcurrentModificationError(AccessCodeError):
    pass


class _Rejected(Exception):
    def __init__(self, kind: RedeemErrorKind):
        super().__init__(kind.value)
        self.kind = kind


class _WriteConflict(Exception):
    pass


def normalize_code(code: Optional[str]) -> str:
    return str(code or "").strip().upper()


def code_status(row: AccessCode, now: Optional[datetime] = None) -> CodeStatus:
    now = now or utc_now()
    if row.uses_used >= row.max_uses:
        return CodeStatus.EXHAUSTED
    if row.expires_at is not None and as_utc(now) > as_utc(row.expires_at):
        return CodeStatus.EXPIRED
    return CodeStatus.ACTIVE


def generate_code(length: Optional[int] = None) -> str:
    return "".join(secrets.choice(CODE_ALPHABET) for _ in range(length or settings.ACCESS_CODE_LENGTH))


def _find_code(db: Session, educator_id: str, code: str) -> Optional[AccessCode]:
    stmt = select(AccessCode).where(AccessCode.educator_id == educator_id, AccessCode.code == code)
    return db.scalar(stmt.execution_options(populate_existing=True))


def needs_unlock(test: Test) -> bool:
    """Public tests and tests with ``requires_unlock`` off are open to every enrolled student."""
    return test.requires_unlock is not False and not test.is_public


def is_write_conflict(error: OperationalError) -> bool:
    """Lock contention or a serialization failure, as opposed to a broken database."""
    orig = getattr(error, "orig", None)
    if getattr(orig, "pgcode", None) in _CONFLICT_PGCODES:
        return True
    message = str(orig if orig is not None else error).lower()
    return any(m in message for m in _SQLITE_LOCK_MESSAGES)


# ---------------------------------------------------------------- redemption

def _redeem_once(db: Session, code: str, student_id: str, educator_id: str,
                 expected_test_id: Optional[str], now: Optional[datetime]) -> UnlockReceipt:
    now = as_utc(now) if now is not None else utc_now()
    try:
        row = _find_code(db, educator_id, code)
        if row is None:
            raise _Rejected(RedeemErrorKind.NOT_FOUND)
        if expected_test_id and expected_test_id != row.test_id:
            raise _Rejected(RedeemErrorKind.TEST_MISMATCH)
        test = db.get(Test, row.test_id)
        if test is not None and not needs_unlock(test):
            receipt = UnlockReceipt(
                unlock_id=None, student_id=student_id, educator_id=educator_id, test_id=row.test_id,
                code=code, created_at=now, uses_used=row.uses_used, max_uses=row.max_uses, consumed=False,
            )
            db.rollback()
            return receipt
        if row.expires_at is not None and now > as_utc(row.expires_at):
            raise _Rejected(RedeemErrorKind.EXPIRED)
        if row.uses_used >= row.max_uses:
            raise _Rejected(RedeemErrorKind.EXHAUSTED)

        row.uses_used = row.uses_used + 1
        unlock = Unlock(student_id=student_id, educator_id=educator_id, test_id=row.test_id, code=code, created_at=now)
        db.add(unlock)
        db.flush()
        receipt = UnlockReceipt(
            unlock_id=unlock.id, student_id=student_id, educator_id=educator_id, test_id=row.test_id,
            code=code, created_at=now, uses_used=row.uses_used, max_uses=row.max_uses,
        )
        db.commit()
        return receipt
    except _Rejected:
        db.rollback()
        raise
    except StaleDataError as e:
        db.rollback()
        logger.debug(f"Redeem lost version race on {educator_id}/{code}: {e}")
        raise _WriteConflict(str(e)) from e
    except OperationalError as e:
        db.rollback()
        if not is_write_conflict(e):
            raise
        logger.debug(f"Redeem lock conflict on {educator_id}/{code}: {e}")
        raise _WriteConflict(str(e)) from e


def redeem(db: Session, code: str, student_id: str, educator_id: str,
           expected_test_id: Optional[str] = None, now: Optional[datetime] = None,
           max_attempts: Optional[int] = None) -> RedeemOutcome:
    """Consume one use of ``code`` for ``student_id`` and record the unlock.

    A code bound to a test that needs no unlock succeeds with ``consumed=False``
    and leaves the code untouched.
    """
    normalized = normalize_code(code)
    if not normalized:
        return RedeemOutcome(error=RedeemErrorKind.NOT_FOUND)

    retryer = Retrying(
        stop=stop_after_attempt(max_attempts or settings.REDEEM_MAX_ATTEMPTS),
        wait=wait_random_exponential(multiplier=settings.REDEEM_BACKOFF_MIN, max=settings.REDEEM_BACKOFF_MAX),
        retry=retry_if_exception_type(_WriteConflict),
        reraise=True,
    )
    try:
        receipt = retryer(_redeem_once, db, normalized, student_id, educator_id, expected_test_id, now)
    except _Rejected as e:
        logger.info(f"Redeem rejected: code={normalized} educator={educator_id} student={student_id} kind={e.kind.value}")
        return RedeemOutcome(error=e.kind)
    except _WriteConflict:
        logger.warning(f"Redeem gave up after contention: code={normalized} educator={educator_id} student={student_id}")
        return RedeemOutcome(error=RedeemErrorKind.TRANSIENT_CONFLICT)

    if not receipt.consumed:
        logger.info(f"Code {normalized} points at open test {receipt.test_id}; nothing consumed for student={student_id}")
    else:
        logger.info(f"Redeemed {normalized} for student={student_id} test={receipt.test_id} ({receipt.uses_used}/{receipt.max_uses})")
    return RedeemOutcome(receipt=receipt)


def unlocked_test_ids(db: Session, student_id: str, educator_id: str) -> List[str]:
    rows = db.scalars(
        select(Unlock.test_id).where(Unlock.student_id == student_id, Unlock.educator_id == educator_id).distinct()
    ).all()
    return sorted(rows)


def list_test_access(db: Session, student_id: str, educator_id: str) -> List[StudentTestAccess]:
    unlocked = set(unlocked_test_ids(db, student_id, educator_id))
    tests = db.scalars(select(Test).where(Test.educator_id == educator_id).order_by(Test.id)).all()
    return [
        StudentTestAccess(test_id=t.id, title=t.title, locked=needs_unlock(t) and t.id not in unlocked)
        for t in tests
    ]


# ---------------------------------------------------------------- management

def _educator_test(db: Session, educator_id: str, test_id: str) -> Test:
    test = db.get(Test, test_id)
    if test is None or test.educator_id != educator_id:
        raise UnknownTestError(f"Test '{test_id}' is not in this educator's library")
    return test


def _check_max_uses(max_uses: int) -> None:
    if max_uses is None or int(max_uses) <= 0:
        raise InvalidMaxUsesError("Max uses must be a positive number")


def create_access_code(db: Session, educator_id: str, test_id: str, max_uses: int,
                       code: Optional[str] = None, expires_on: Optional[date] = None) -> AccessCode:
    _check_max_uses(max_uses)
    test = _educator_test(db, educator_id, test_id)
    normalized = normalize_code(code)
    if not normalized:
        # collisions in a 36^8 space are rare; a few draws is plenty
        for _ in range(5):
            candidate = generate_code()
            if _find_code(db, educator_id, candidate) is None:
                normalized = candidate
                break
        else:
            raise DuplicateCodeError("Could not generate a unique code, try again")
    elif _find_code(db, educator_id, normalized) is not None:
        raise DuplicateCodeError(normalized)

    row = AccessCode(
        educator_id=educator_id, code=normalized, test_id=test.id, test_title=test.title,
        max_uses=int(max_uses), uses_used=0, expires_at=end_of_day(expires_on) if expires_on else None,
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError as e:
        db.rollback()
        raise DuplicateCodeError(normalized) from e
    db.refresh(row)
    logger.info(f"Access code {normalized} created by {educator_id} for test {test.id} (max {row.max_uses})")
    return row


def update_access_code(db: Session, educator_id: str, code: str, test_id: Optional[str] = None,
                       max_uses: Optional[int] = None, expires_on=_UNSET) -> AccessCode:
    if max_uses is not None:
        _check_max_uses(max_uses)
    row = _find_code(db, educator_id, normalize_code(code))
    if row is None:
        raise UnknownCodeError(normalize_code(code))
    if max_uses is not None and int(max_uses) < row.uses_used:
        raise MaxUsesBelowUsedError(row.uses_used, int(max_uses))
    if test_id is not None and test_id != row.test_id:
        test = _educator_test(db, educator_id, test_id)
        row.test_id, row.test_title = test.id, test.title
    if max_uses is not None:
        row.max_uses = int(max_uses)
    if expires_on is not _UNSET:
        row.expires_at = end_of_day(expires_on) if expires_on else None
    row.updated_at = utc_now()
    try:
        db.commit()
    except StaleDataError as e:
        # a redemption landed between our read and write; the ceiling check is void
        db.rollback()
        raise ConcurrentModificationError("Code was redeemed while editing, reload and retry") from e
    db.refresh(row)
    return row


def delete_access_code(db: Session, educator_id: str, code: str) -> None:
    normalized = normalize_code(code)
    row = _find_code(db, educator_id, normalized)
    if row is None:
        raise UnknownCodeError(normalized)
    db.delete(row)
    try:
        db.commit()
    except StaleDataError as e:
        db.rollback()
        raise ConcurrentModificationError("Code was redeemed while deleting, reload and retry") from e
    logger.info(f"Access code {normalized} deleted by {educator_id}")


def to_view(row: AccessCode, now: Optional[datetime] = None) -> AccessCodeView:
    return AccessCodeView(
        code=row.code, test_id=row.test_id, test_title=row.test_title, max_uses=row.max_uses,
        uses_used=row.uses_used, uses_left=max(0, row.max_uses - row.uses_used),
        status=code_status(row, now), expires_at=as_utc(row.expires_at), created_at=as_utc(row.created_at),
    )


def list_access_codes(db: Session, educator_id: str, now: Optional[datetime] = None) -> List[AccessCodeView]:
    rows = db.scalars(
        select(AccessCode).where(AccessCode.educator_id == educator_id).order_by(AccessCode.created_at.desc(), AccessCode.id.desc())
    ).all()
    return [to_view(r, now) for r in rows]


def access_code_stats(views: List[AccessCodeView], now: Optional[datetime] = None,
                      days: Optional[int] = None) -> AccessCodeStats:
    now = as_utc(now) if now is not None else utc_now()
    horizon = now + timedelta(days=days if days is not None else settings.EXPIRING_SOON_DAYS)
    active = [v for v in views if v.status == CodeStatus.ACTIVE]
    expiring = [v for v in active if v.expires_at is not None and now <= v.expires_at <= horizon]
    return AccessCodeStats(
        active_count=len(active),
        total_uses=sum(v.uses_used for v in views),
        expiring_soon_count=len(expiring),
    )
