"""
Entitlement gate: may this student see this tenant's tests right now?

``evaluate_entitlement`` is a pure point-in-time decision over snapshots;
``check_entitlement`` only loads those snapshots. Neither writes anything.
"""
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Iterable, Optional
from sqlalchemy.orm import Session
from sqlalchemy import select
from examcore.core.clock import as_utc, utc_now
from examcore.models.orm import Enrollment, Seat, Subscription
from examcore.services.tenants import get_tenant

USABLE_SUBSCRIPTION_STATUSES = {"active", "authenticated"}
TRIAL_SUBSCRIPTION_STATUS = "created"


class DenialReason(str, Enum):
    NOT_ENROLLED = "not_enrolled"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"
    SEAT_INACTIVE = "seat_inactive"


@dataclass(frozen=True)
class SubscriptionSnapshot:
    status: str
    start_at: Optional[datetime] = None


@dataclass(frozen=True)
class SeatSnapshot:
    status: str


@dataclass(frozen=True)
class GateDecision:
    allowed: bool
    reason: Optional[DenialReason] = None


def subscription_usable(sub: Optional[SubscriptionSnapshot], now: datetime) -> bool:
    if sub is None:
        return False
    status = (sub.status or "").strip().lower()
    if status in USABLE_SUBSCRIPTION_STATUSES:
        return True
    # created-but-not-started subscriptions are a trial until start_at
    if status == TRIAL_SUBSCRIPTION_STATUS and sub.start_at is not None:
        return as_utc(now) < as_utc(sub.start_at)
    return False


def seat_active(seat: Optional[SeatSnapshot]) -> bool:
    return seat is not None and (seat.status or "").strip().lower() == "active"


def evaluate_entitlement(
    enrollments: Iterable[str],
    tenant_slug: Optional[str],
    subscription: Optional[SubscriptionSnapshot],
    seat: Optional[SeatSnapshot],
    now: Optional[datetime] = None,
) -> GateDecision:
    now = now or utc_now()
    if not tenant_slug or tenant_slug not in set(enrollments):
        return GateDecision(False, DenialReason.NOT_ENROLLED)
    if not subscription_usable(subscription, now):
        return GateDecision(False, DenialReason.SUBSCRIPTION_INACTIVE)
    if not seat_active(seat):
        return GateDecision(False, DenialReason.SEAT_INACTIVE)
    return GateDecision(True)


def load_snapshots(db: Session, student_id: str, educator_id: str):
    sub = db.get(Subscription, educator_id)
    seat = db.get(Seat, {"educator_id": educator_id, "student_id": student_id})
    return (
        SubscriptionSnapshot(sub.status, sub.start_at) if sub else None,
        SeatSnapshot(seat.status) if seat else None,
    )


def check_entitlement(db: Session, student_id: str, tenant_slug: Optional[str], now: Optional[datetime] = None) -> GateDecision:
    tenant = get_tenant(db, tenant_slug)
    if tenant is None:
        return GateDecision(False, DenialReason.NOT_ENROLLED)
    enrollments = db.scalars(select(Enrollment.tenant_slug).where(Enrollment.student_id == student_id)).all()
    sub, seat = load_snapshots(db, student_id, tenant.educator_id)
    return evaluate_entitlement(enrollments, tenant.slug, sub, seat, now)
