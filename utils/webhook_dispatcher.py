"""
Routes Mercado Pago webhook notifications to the subscription ledger.

Handlers never raise: an event that cannot be resolved or processed is
logged and acknowledged, since Mercado Pago would otherwise keep
redelivering an event that fails the same way every time.
"""
import logging
from datetime import datetime
from typing import Any, Dict, Optional

from dateutil.parser import isoparse
from sqlalchemy.orm import Session

from utils.mercadopago_client import get_payment, get_preapproval, payment_summary
from utils.settings import Settings, get_settings
from utils.subscription_ledger import (
    apply_preapproval_status,
    record_approved_payment,
    record_rejected_payment,
)
from utils.tenant_resolver import resolve_clinic_id

logger = logging.getLogger(__name__)

PREAPPROVAL_TOPICS = ("preapproval", "subscription_preapproval")
PAYMENT_TOPICS = ("authorized_payment", "payment", "subscription_authorized_payment")


def event_subject_id(payload: Dict[str, Any], fallback: Optional[str] = None) -> Optional[str]:
    """
    Id of the object the notification is about: data.id, else the last path
    segment of "resource" (older IPN format), else the data_id query param.
    """
    data = payload.get("data")
    subject = data.get("id") if isinstance(data, dict) else None
    if not subject and payload.get("resource"):
        subject = str(payload["resource"]).rstrip("/").rsplit("/", 1)[-1]
    if not subject:
        subject = fallback
    return str(subject) if subject else None


def preapproval_period_end(preapproval: Dict[str, Any]) -> Optional[datetime]:
    raw = preapproval.get("next_payment_date") or (preapproval.get("auto_recurring") or {}).get("end_date")
    if not raw:
        return None
    try:
        return isoparse(raw)
    except ValueError:
        logger.warning(f"Unparseable period end {raw!r} on preapproval {preapproval.get('id')}")
        return None


def handle_preapproval_event(db: Session, preapproval_id: str) -> str:
    try:
        result = get_preapproval(preapproval_id)
        if not result.get("success"):
            logger.error(f"Could not fetch preapproval {preapproval_id}: {result.get('error')}")
            return "error"

        preapproval = result["preapproval"]
        status = preapproval.get("status")
        logger.info(f"Preapproval updated: {preapproval_id} - Status: {status}")

        clinic_id = resolve_clinic_id(db, preapproval.get("external_reference"), preapproval_id)
        if not clinic_id:
            return "unresolved"

        apply_preapproval_status(db, clinic_id, preapproval_id, status, preapproval_period_end(preapproval))
        return "preapproval_synced"
    except Exception as e:
        logger.exception(f"Error handling preapproval webhook {preapproval_id}: {e}")
        return "error"


def handle_payment_event(db: Session, payment_id: str, settings: Settings) -> str:
    try:
        result = get_payment(payment_id)
        if not result.get("success"):
            logger.error(f"Could not fetch payment {payment_id}: {result.get('error')}")
            return "error"

        payment = payment_summary(result["payment"])
        status = payment.get("status")
        logger.info(f"Payment processed: {payment_id} - Status: {status}")

        if status not in ("approved", "rejected"):
            logger.info(f"Payment {payment_id} with status {status} needs no action")
            return "ignored"

        clinic_id = resolve_clinic_id(db, payment.get("external_reference"), payment.get("preapproval_id"))
        if not clinic_id:
            return "unresolved"

        if status == "approved":
            record_approved_payment(db, clinic_id, payment, settings.pricing)
            return "payment_approved"

        record_rejected_payment(db, clinic_id, payment)
        return "payment_rejected"
    except Exception as e:
        logger.exception(f"Error handling payment webhook {payment_id}: {e}")
        return "error"


def dispatch_event(db: Session, topic: Optional[str], payload: Dict[str, Any],
                   settings: Optional[Settings] = None, data_id: Optional[str] = None) -> str:
    """
    Classify a notification by topic and run its handler. Returns a short
    outcome label, mostly useful for logs and tests.
    """
    settings = settings or get_settings()

    if topic not in PREAPPROVAL_TOPICS and topic not in PAYMENT_TOPICS:
        logger.info(f"Unhandled webhook topic: {topic}")
        return "ignored"

    subject_id = event_subject_id(payload, data_id)
    if not subject_id:
        logger.warning(f"Webhook {topic} without a subject id: {payload}")
        return "ignored"

    if topic in PREAPPROVAL_TOPICS:
        return handle_preapproval_event(db, subject_id)
    return handle_payment_event(db, subject_id, settings)
