"""
Clinic subscription state and payment history.

Every mutation loads the clinic row with SELECT ... FOR UPDATE (a no-op on
SQLite) and commits the clinic change together with its transaction or log
row, so a payment is never recorded without its subscription update or the
other way round. The Clinic mapper's version counter turns a lost update
into a StaleDataError instead of a silent overwrite.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy.orm import Session

from models.clinic import Clinic
from models.subscription_log import SubscriptionLog
from models.subscription_transaction import SubscriptionTransaction
from utils.settings import PlanPricing
from utils.tenant_resolver import parse_external_reference

logger = logging.getLogger(__name__)

PAID_PLANS = ("monthly", "yearly")
PLAN_EXTENSIONS = {
    "monthly": relativedelta(months=1),
    "yearly": relativedelta(years=1),
}


class ClinicNotFound(Exception):
    def __init__(self, clinic_id: str):
        super().__init__(f"Clinic {clinic_id} not found")
        self.clinic_id = clinic_id


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _lock_clinic(db: Session, clinic_id: str) -> Clinic:
    clinic = db.query(Clinic).filter(Clinic.id == clinic_id).with_for_update().first()
    if not clinic:
        raise ClinicNotFound(clinic_id)
    return clinic


def _log_action(db: Session, clinic: Clinic, action: str, detail: Optional[str] = None):
    db.add(SubscriptionLog(
        clinic_id=clinic.id,
        subscription_id=clinic.mp_subscription_id,
        action=action,
        detail=detail,
    ))


def classify_plan(payment: Dict[str, Any], pricing: PlanPricing) -> str:
    """
    Plan named in the external reference wins; otherwise fall back to the
    configured amount threshold.
    """
    parsed = parse_external_reference(payment.get("external_reference"))
    if parsed and parsed[1] in PAID_PLANS:
        return parsed[1]

    amount = payment.get("amount")
    if amount is None or amount <= pricing.monthly_threshold:
        return "monthly"
    return "yearly"


def extend_expiry(current: Optional[datetime], plan: str, now: datetime) -> datetime:
    """
    Stack paid time on an unexpired subscription; restart the clock on a
    lapsed one.
    """
    current = as_utc(current)
    base = current if current is not None and current > now else now
    return base + PLAN_EXTENSIONS[plan]


def _transaction_from_payment(clinic_id: str, payment: Dict[str, Any], status: str,
                              now: datetime) -> SubscriptionTransaction:
    return SubscriptionTransaction(
        id=payment["id"],
        clinic_id=clinic_id,
        status=status,
        amount=payment.get("amount"),
        currency=payment.get("currency"),
        payment_method=payment.get("payment_method"),
        payer_email=payment.get("payer_email"),
        external_reference=payment.get("external_reference"),
        preapproval_id=payment.get("preapproval_id"),
        rejection_reason=payment.get("status_detail") if status == "rejected" else None,
        processed_at=now,
    )


def record_approved_payment(db: Session, clinic_id: str, payment: Dict[str, Any],
                            pricing: PlanPricing, now: Optional[datetime] = None) -> Clinic:
    """
    Store an approved payment and extend the clinic's paid period.

    A payment id that was already recorded as approved is rewritten but does
    not extend the period a second time.
    """
    now = now or utcnow()
    try:
        clinic = _lock_clinic(db, clinic_id)
        existing = db.get(SubscriptionTransaction, payment["id"])
        already_applied = existing is not None and existing.status == "approved"

        db.merge(_transaction_from_payment(clinic_id, payment, "approved", now))

        if already_applied:
            logger.info(f"Payment {payment['id']} already applied to clinic {clinic_id}, not extending again")
        else:
            plan = classify_plan(payment, pricing)
            new_expiry = extend_expiry(clinic.subscription_expires_at, plan, now)
            clinic.subscription_plan = plan
            clinic.subscription_status = "active"
            clinic.subscription_expires_at = new_expiry
            clinic.last_payment_id = payment["id"]
            clinic.last_payment_date = now
            clinic.last_payment_amount = payment.get("amount")
            logger.info(f"Clinic {clinic_id} {plan} subscription extended to {new_expiry.isoformat()}")

        db.commit()
    except Exception:
        db.rollback()
        raise
    return clinic


def record_rejected_payment(db: Session, clinic_id: str, payment: Dict[str, Any],
                            now: Optional[datetime] = None) -> Clinic:
    """Store a rejected payment; subscription status and expiry are untouched."""
    now = now or utcnow()
    try:
        clinic = _lock_clinic(db, clinic_id)
        db.merge(_transaction_from_payment(clinic_id, payment, "rejected", now))
        clinic.last_rejected_payment_id = payment["id"]
        clinic.last_rejected_payment_date = now
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info(f"Rejected payment {payment['id']} recorded for clinic {clinic_id}: {payment.get('status_detail')}")
    return clinic


def apply_preapproval_status(db: Session, clinic_id: str, external_subscription_id: str,
                             processor_status: str, period_end: Optional[datetime],
                             now: Optional[datetime] = None) -> Clinic:
    """
    Mirror a Mercado Pago preapproval: "authorized" is active, every other
    status is cancelled.

    Only an authorized preapproval may move the expiry later. For any other
    status the period end can only shorten paid time, so a pending or
    cancelled preapproval never grants access that was not paid for.
    """
    try:
        clinic = _lock_clinic(db, clinic_id)
        clinic.mp_subscription_id = external_subscription_id
        authorized = processor_status == "authorized"
        clinic.subscription_status = "active" if authorized else "cancelled"
        period_end = as_utc(period_end)
        current = as_utc(clinic.subscription_expires_at)
        if period_end is not None and (authorized or (current is not None and period_end < current)):
            clinic.subscription_expires_at = period_end
        if clinic.subscription_plan in (None, "none"):
            clinic.subscription_plan = "premium"
        _log_action(db, clinic, "SYNC", f"preapproval status {processor_status}")
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info(f"Clinic {clinic_id} synced from preapproval {external_subscription_id}: {clinic.subscription_status}")
    return clinic


def mark_pending(db: Session, clinic_id: str, external_subscription_id: str, plan: str,
                 now: Optional[datetime] = None) -> Clinic:
    """
    Optimistic mirror written right after a preapproval is created. A clinic
    that still has paid time keeps its current status.
    """
    now = now or utcnow()
    try:
        clinic = _lock_clinic(db, clinic_id)
        clinic.mp_subscription_id = external_subscription_id
        if effective_premium_status(clinic, now) != "premium":
            clinic.subscription_status = "pending"
        _log_action(db, clinic, "CREATE", f"{plan} preapproval created")
        db.commit()
    except Exception:
        db.rollback()
        raise
    return clinic


def mark_cancelled(db: Session, clinic_id: str, now: Optional[datetime] = None) -> Clinic:
    """Stop renewal; access is kept until the recorded expiry."""
    now = now or utcnow()
    try:
        clinic = _lock_clinic(db, clinic_id)
        clinic.subscription_status = "cancelled"
        clinic.cancelled_at = now
        clinic.will_expire_at = clinic.subscription_expires_at
        _log_action(db, clinic, "CANCEL")
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info(f"Clinic {clinic_id} subscription cancelled, access kept until {clinic.will_expire_at}")
    return clinic


def mark_paused(db: Session, clinic_id: str, now: Optional[datetime] = None) -> Clinic:
    now = now or utcnow()
    try:
        clinic = _lock_clinic(db, clinic_id)
        clinic.subscription_status = "paused"
        clinic.paused_at = now
        _log_action(db, clinic, "PAUSE")
        db.commit()
    except Exception:
        db.rollback()
        raise
    logger.info(f"Clinic {clinic_id} subscription paused")
    return clinic


def effective_premium_status(clinic: Clinic, now: Optional[datetime] = None) -> str:
    now = now or utcnow()
    expires_at = as_utc(clinic.subscription_expires_at)
    if expires_at is None or expires_at <= now:
        return "free"
    if clinic.subscription_status in ("active", "cancelled"):
        return "premium"
    return "free"


def subscription_status_view(clinic: Clinic, now: Optional[datetime] = None) -> Dict[str, Any]:
    now = now or utcnow()
    expires_at = as_utc(clinic.subscription_expires_at)
    expired = expires_at is not None and expires_at <= now
    return {
        "premiumStatus": effective_premium_status(clinic, now),
        "subscriptionStatus": "expired" if expired else (clinic.subscription_status or "inactive"),
        "currentPeriodEnd": expires_at.isoformat() if expires_at else None,
        "subscriptionId": clinic.mp_subscription_id,
        "plan": clinic.subscription_plan,
    }


def list_transactions(db: Session, clinic_id: str) -> List[SubscriptionTransaction]:
    return (
        db.query(SubscriptionTransaction)
        .filter(SubscriptionTransaction.clinic_id == clinic_id)
        .order_by(SubscriptionTransaction.processed_at.desc())
        .all()
    )
