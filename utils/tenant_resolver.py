"""
Maps Mercado Pago objects back to the clinic they belong to.
"""
import logging
import re
from datetime import datetime
from typing import Optional, Tuple

from sqlalchemy.orm import Session

from models.clinic import Clinic

logger = logging.getLogger(__name__)

# "<prefix>-<clinicId>-<plan>-<timestamp>", e.g. "clinic-abc123-monthly-1700000000000"
EXTERNAL_REFERENCE_RE = re.compile(r"^([^-]+)-([^-]+)-([^-]+)-(\d+)$")
EXTERNAL_REFERENCE_PREFIX = "clinic"


def build_external_reference(clinic_id: str, plan: str, now: datetime) -> str:
    return f"{EXTERNAL_REFERENCE_PREFIX}-{clinic_id}-{plan}-{int(now.timestamp() * 1000)}"


def parse_external_reference(external_reference: Optional[str]) -> Optional[Tuple[str, str]]:
    """
    Returns (clinic_id, plan) or None when the reference does not follow the
    clinic reference format.
    """
    if not external_reference:
        return None
    match = EXTERNAL_REFERENCE_RE.match(external_reference.strip())
    if not match:
        return None
    return match.group(2), match.group(3)


def find_clinic_by_subscription_id(db: Session, subscription_id: str) -> Optional[Clinic]:
    return db.query(Clinic).filter(Clinic.mp_subscription_id == subscription_id).first()


def resolve_clinic_id(
    db: Session,
    external_reference: Optional[str] = None,
    preapproval_id: Optional[str] = None,
) -> Optional[str]:
    """
    Resolve a clinic id from an external reference, falling back to the
    stored preapproval id. Returns None when nothing matches.
    """
    parsed = parse_external_reference(external_reference)
    if parsed:
        return parsed[0]

    if external_reference:
        logger.info(f"External reference {external_reference!r} not in clinic format, trying preapproval id")

    if preapproval_id:
        clinic = find_clinic_by_subscription_id(db, preapproval_id)
        if clinic:
            return clinic.id

    logger.warning(
        f"Could not resolve clinic (external_reference={external_reference}, preapproval_id={preapproval_id})"
    )
    return None
