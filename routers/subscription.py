import json
import logging
from datetime import datetime
from typing import Optional, Dict, Any, Callable

from dateutil.relativedelta import relativedelta
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from db.init import get_db
from models.clinic import Clinic
from utils.deps import get_current_user, rate_limited_user, require_clinic_access
from utils.mercadopago_client import (
    create_preapproval,
    cancel_preapproval,
    get_preapproval,
    pause_preapproval,
    get_payment_methods,
)
from utils.settings import Settings, get_settings
from utils.subscription_ledger import (
    list_transactions,
    mark_cancelled,
    mark_paused,
    mark_pending,
    subscription_status_view,
    utcnow,
)
from utils.tenant_resolver import (
    build_external_reference,
    find_clinic_by_subscription_id,
    parse_external_reference,
)
from utils.webhook_dispatcher import dispatch_event
from utils.webhook_signature import WebhookSignatureVerifier

logger = logging.getLogger(__name__)

router = APIRouter()

# Preapprovals may stay authorized for at most two years
AUTHORIZATION_WINDOW = relativedelta(years=2)

# --- Pydantic Models ---

class CreateSubscriptionRequest(BaseModel):
    tenantId: Optional[str] = None
    plan: Optional[str] = None  # "monthly" | "yearly"
    payerEmail: Optional[str] = None

class SubscriptionIdRequest(BaseModel):
    subscriptionId: Optional[str] = None

# --- Helpers ---

def get_signature_verifier() -> WebhookSignatureVerifier:
    settings = get_settings()
    return WebhookSignatureVerifier(settings.mp_webhook_secret, allow_unsigned=settings.mp_allow_unsigned_webhooks)


def build_preapproval_payload(clinic_id: str, plan: str, payer_email: str,
                              settings: Settings, now: datetime) -> Dict[str, Any]:
    pricing = settings.pricing
    if plan == "monthly":
        amount, frequency_type = pricing.monthly_price, "months"
    else:
        amount, frequency_type = pricing.yearly_price, "years"

    end_date = now + AUTHORIZATION_WINDOW
    return {
        "reason": f"Clinic Premium Subscription - {plan} plan",
        "external_reference": build_external_reference(clinic_id, plan, now),
        "payer_email": payer_email,
        "auto_recurring": {
            "frequency": 1,
            "frequency_type": frequency_type,
            "end_date": end_date.isoformat(timespec="milliseconds").replace("+00:00", "Z"),
            "transaction_amount": float(amount),
            "currency_id": pricing.currency,
        },
        "back_url": f"{settings.frontend_url.rstrip('/')}/premium/success",
        "status": "pending",
    }


def _upstream_error(message: str, result: Dict[str, Any]) -> HTTPException:
    return HTTPException(
        status_code=500,
        detail={
            "error": message,
            "details": result.get("error"),
            "mpError": result.get("mp_error"),
        },
    )


def _authorize_subscription(db: Session, current_user: dict, subscription_id: str) -> Optional[Clinic]:
    """
    Check the caller may act on a preapproval and return the clinic holding it.

    When no clinic holds the id yet (the pending mirror failed), ownership is
    read from the preapproval's external reference at Mercado Pago.
    """
    clinic = find_clinic_by_subscription_id(db, subscription_id)
    if clinic:
        require_clinic_access(current_user, clinic.id)
        return clinic
    if current_user.get("role") == "admin":
        return None

    result = get_preapproval(subscription_id)
    if not result.get("success"):
        raise _upstream_error("Failed to fetch subscription", result)

    parsed = parse_external_reference(result["preapproval"].get("external_reference"))
    if not parsed:
        logger.warning(f"Subscription {subscription_id} has no clinic reference, refusing access")
        raise HTTPException(status_code=403, detail="Access denied to this subscription")
    require_clinic_access(current_user, parsed[0])
    return None


def _mirror_to_clinic(db: Session, subscription_id: str, mark: Callable, clinic: Optional[Clinic]):
    """
    Local copy of a processor-side change. Failures are logged only: the
    next preapproval webhook brings the clinic back in line.
    """
    if not clinic:
        logger.warning(f"No clinic found for subscription {subscription_id}, skipping local update")
        return
    try:
        mark(db, clinic.id)
    except Exception as e:
        logger.error(f"Failed to update clinic {clinic.id} for subscription {subscription_id}: {e}")

# --- Endpoints ---

@router.post("/create")
def create_subscription(
    request: CreateSubscriptionRequest,
    db: Session = Depends(get_db),
    current_user = Depends(rate_limited_user)
):
    """
    Create a Mercado Pago recurring subscription for a clinic.
    Returns the checkout links the clinic owner must visit to authorize it.
    """
    try:
        if not request.tenantId or not request.plan or not request.payerEmail:
            raise HTTPException(status_code=400, detail="Missing required fields: tenantId, plan, payerEmail")
        if request.plan not in ("monthly", "yearly"):
            raise HTTPException(status_code=400, detail="plan must be 'monthly' or 'yearly'")

        require_clinic_access(current_user, request.tenantId)

        if not db.get(Clinic, request.tenantId):
            raise HTTPException(status_code=404, detail="Clinic not found")

        settings = get_settings()
        payload = build_preapproval_payload(request.tenantId, request.plan, request.payerEmail, settings, utcnow())
        result = create_preapproval(payload)
        if not result.get("success"):
            raise _upstream_error("Failed to create subscription", result)

        subscription_id = result.get("subscription_id")
        logger.info(f"Subscription {subscription_id} created for clinic {request.tenantId}")

        # Best effort; the preapproval webhook is authoritative
        try:
            mark_pending(db, request.tenantId, subscription_id, request.plan)
        except Exception as e:
            logger.error(f"Failed to store pending subscription {subscription_id} on clinic {request.tenantId}: {e}")

        return {
            "subscriptionId": subscription_id,
            "initPoint": result.get("init_point"),
            "sandboxInitPoint": result.get("sandbox_init_point"),
        }

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Create subscription error: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/cancel")
def cancel_subscription(
    request: SubscriptionIdRequest,
    db: Session = Depends(get_db),
    current_user = Depends(rate_limited_user)
):
    """
    Cancel a subscription. Access remains until the end of the paid period.
    """
    try:
        if not request.subscriptionId:
            raise HTTPException(status_code=400, detail="Missing required field: subscriptionId")

        clinic = _authorize_subscription(db, current_user, request.subscriptionId)

        result = cancel_preapproval(request.subscriptionId)
        if not result.get("success"):
            raise _upstream_error("Failed to cancel subscription", result)

        _mirror_to_clinic(db, request.subscriptionId, mark_cancelled, clinic)

        return {
            "success": True,
            "message": "Subscription cancelled successfully. Access will remain until the end of the billing period.",
            "cancelledSubscriptionId": request.subscriptionId,
        }

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error cancelling subscription: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.post("/pause")
def pause_subscription(
    request: SubscriptionIdRequest,
    db: Session = Depends(get_db),
    current_user = Depends(rate_limited_user)
):
    try:
        if not request.subscriptionId:
            raise HTTPException(status_code=400, detail="Missing required field: subscriptionId")

        clinic = _authorize_subscription(db, current_user, request.subscriptionId)

        result = pause_preapproval(request.subscriptionId)
        if not result.get("success"):
            raise _upstream_error("Failed to pause subscription", result)

        _mirror_to_clinic(db, request.subscriptionId, mark_paused, clinic)

        return {
            "success": True,
            "message": "Subscription paused successfully",
            "pausedSubscriptionId": request.subscriptionId,
        }

    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error pausing subscription: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/status/{tenant_id}")
def get_subscription_status(
    tenant_id: str,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_user)
):
    """
    Current subscription of a clinic. premiumStatus is computed from the
    stored status and the expiry date.
    """
    require_clinic_access(current_user, tenant_id)
    try:
        clinic = db.get(Clinic, tenant_id)
        if not clinic:
            raise HTTPException(status_code=404, detail="Clinic not found")
        return subscription_status_view(clinic)
    except HTTPException:
        raise
    except Exception as e:
        logger.error(f"Error fetching subscription status: {e}")
        raise HTTPException(status_code=500, detail=str(e))


@router.get("/transactions/{tenant_id}")
def get_subscription_transactions(
    tenant_id: str,
    db: Session = Depends(get_db),
    current_user = Depends(get_current_user)
):
    require_clinic_access(current_user, tenant_id)
    transactions = list_transactions(db, tenant_id)
    return {
        "success": True,
        "data": [
            {
                "id": t.id,
                "status": t.status,
                "amount": float(t.amount) if t.amount is not None else None,
                "currency": t.currency,
                "paymentMethod": t.payment_method,
                "payerEmail": t.payer_email,
                "externalReference": t.external_reference,
                "preapprovalId": t.preapproval_id,
                "rejectionReason": t.rejection_reason,
                "processedAt": t.processed_at.isoformat() if t.processed_at else None,
            }
            for t in transactions
        ],
        "count": len(transactions),
    }


@router.get("/payment-methods")
def list_payment_methods(current_user = Depends(get_current_user)):
    result = get_payment_methods()
    if not result.get("success"):
        raise _upstream_error("Failed to fetch payment methods", result)
    return {"paymentMethods": result.get("payment_methods", [])}


@router.post("/webhooks")
async def handle_webhook(
    request: Request,
    db: Session = Depends(get_db),
    verifier: WebhookSignatureVerifier = Depends(get_signature_verifier)
):
    """
    Mercado Pago notifications. Once the signature checks out the event is
    always acknowledged with 200, whether or not it could be applied.
    """
    query = dict(request.query_params)
    if not verifier.verify(request.headers, query):
        return JSONResponse(status_code=401, content={"error": "Invalid webhook signature"})

    try:
        raw = await request.body()
        payload = json.loads(raw) if raw else {}
        topic = query.get("topic") or query.get("type") or payload.get("type") or payload.get("topic")
        logger.info(f"Mercado Pago webhook received: {topic}")

        outcome = await run_in_threadpool(
            dispatch_event, db, topic, payload, get_settings(), query.get("data_id") or query.get("data.id")
        )
        logger.info(f"Webhook {topic} handled: {outcome}")
    except Exception as e:
        logger.error(f"Webhook error: {e}")
        return JSONResponse(status_code=400, content={"error": "Webhook handler failed", "details": str(e)})

    return {"received": True}
