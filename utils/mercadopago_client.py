"""
Mercado Pago API Client Wrapper
Handles the Mercado Pago REST calls used for clinic subscriptions.

Every function returns a dict with a "success" flag instead of raising, so
callers decide whether an upstream failure is fatal (command endpoints) or
only logged (webhooks). Calls carry a bounded timeout and are never retried
here; Mercado Pago redelivers webhooks on its own.
"""
import logging
import uuid
from decimal import Decimal, InvalidOperation
from typing import Optional, Dict, Any

import requests

from utils.settings import get_settings

logger = logging.getLogger(__name__)

REQUEST_TIMEOUT = 10

# Payment methods offered for subscriptions
SUBSCRIPTION_PAYMENT_METHODS = ("credit_card", "debit_card", "pix")


def get_mp_base_url() -> str:
    return get_settings().mp_api_base_url.rstrip("/")


def get_mp_headers(idempotency_key: Optional[str] = None) -> Dict[str, str]:
    """Get headers for Mercado Pago API requests"""
    access_token = get_settings().mp_access_token
    if not access_token:
        raise ValueError("MP_ACCESS_TOKEN is not set in environment variables")

    headers = {
        "Authorization": f"Bearer {access_token}",
        "Content-Type": "application/json",
    }
    if idempotency_key:
        headers["X-Idempotency-Key"] = idempotency_key
    return headers


def _error_result(response: requests.Response) -> Dict[str, Any]:
    """Turn a non-2xx Mercado Pago response into a failure dict."""
    try:
        error_data = response.json()
    except ValueError:
        return {
            "success": False,
            "error": response.text,
            "http_status": response.status_code,
            "mp_error": None,
        }

    message = error_data.get("message") or error_data.get("error") or "Unknown error"
    causes = error_data.get("cause") or []
    details = [c.get("description") for c in causes if isinstance(c, dict) and c.get("description")]
    if details:
        message = f"{message}: {', '.join(details)}"
    return {
        "success": False,
        "error": message,
        "http_status": response.status_code,
        "mp_error": error_data,
    }


def _request(method: str, path: str, payload: Optional[Dict[str, Any]] = None,
             idempotency_key: Optional[str] = None) -> Dict[str, Any]:
    url = f"{get_mp_base_url()}{path}"
    try:
        headers = get_mp_headers(idempotency_key)
        response = requests.request(method, url, json=payload, headers=headers, timeout=REQUEST_TIMEOUT)

        if response.status_code not in (200, 201):
            logger.error(f"Mercado Pago {method} {path} error: {response.status_code} - {response.text}")
            return _error_result(response)

        return {"success": True, "data": response.json()}

    except requests.exceptions.RequestException as e:
        logger.error(f"Error calling Mercado Pago {method} {path}: {str(e)}")
        return {"success": False, "error": str(e), "mp_error": None}
    except ValueError as e:
        logger.error(f"Mercado Pago client misconfigured: {str(e)}")
        return {"success": False, "error": str(e), "mp_error": None}


def create_preapproval(payload: Dict[str, Any], idempotency_key: Optional[str] = None) -> Dict[str, Any]:
    """
    Create a recurring subscription (preapproval).

    Returns:
        Dict with subscription_id, init_point and sandbox_init_point on success
    """
    logger.info(f"Creating Mercado Pago preapproval for {payload.get('external_reference')}")
    result = _request("POST", "/preapproval", payload, idempotency_key or str(uuid.uuid4()))
    if not result["success"]:
        return result

    preapproval = result["data"]
    return {
        "success": True,
        "preapproval": preapproval,
        "subscription_id": preapproval.get("id"),
        "init_point": preapproval.get("init_point"),
        "sandbox_init_point": preapproval.get("sandbox_init_point"),
    }


def get_preapproval(preapproval_id: str) -> Dict[str, Any]:
    result = _request("GET", f"/preapproval/{preapproval_id}")
    if not result["success"]:
        return result
    return {"success": True, "preapproval": result["data"]}


def update_preapproval_status(preapproval_id: str, status: str) -> Dict[str, Any]:
    """
    Change a preapproval status ("cancelled", "paused" or "authorized").
    """
    logger.info(f"Setting Mercado Pago preapproval {preapproval_id} to {status}")
    result = _request("PUT", f"/preapproval/{preapproval_id}", {"status": status})
    if not result["success"]:
        return result
    preapproval = result["data"]
    return {"success": True, "preapproval": preapproval, "status": preapproval.get("status")}


def cancel_preapproval(preapproval_id: str) -> Dict[str, Any]:
    return update_preapproval_status(preapproval_id, "cancelled")


def pause_preapproval(preapproval_id: str) -> Dict[str, Any]:
    return update_preapproval_status(preapproval_id, "paused")


def get_payment(payment_id: str) -> Dict[str, Any]:
    result = _request("GET", f"/v1/payments/{payment_id}")
    if not result["success"]:
        return result
    return {"success": True, "payment": result["data"]}


def get_payment_methods() -> Dict[str, Any]:
    """
    Fetch payment methods, keeping only those usable for subscriptions.
    """
    result = _request("GET", "/v1/payment_methods")
    if not result["success"]:
        return result

    methods = [m for m in result["data"] if m.get("id") in SUBSCRIPTION_PAYMENT_METHODS
               or m.get("payment_type_id") in SUBSCRIPTION_PAYMENT_METHODS]
    return {"success": True, "payment_methods": methods}


def _to_decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, ValueError):
        return None


def payment_summary(payment: Dict[str, Any]) -> Dict[str, Any]:
    """
    Flatten a Mercado Pago payment into the fields the ledger stores.

    The preapproval id is not a top-level field on every payment; it is
    looked up in metadata and in point_of_interaction as well.
    """
    metadata = payment.get("metadata") or {}
    transaction_data = (payment.get("point_of_interaction") or {}).get("transaction_data") or {}
    preapproval_id = (
        payment.get("preapproval_id")
        or metadata.get("preapproval_id")
        or transaction_data.get("subscription_id")
    )
    return {
        "id": str(payment.get("id")) if payment.get("id") is not None else None,
        "status": payment.get("status"),
        "status_detail": payment.get("status_detail"),
        "amount": _to_decimal(payment.get("transaction_amount")),
        "currency": payment.get("currency_id"),
        "payment_method": payment.get("payment_method_id") or payment.get("payment_type_id"),
        "payer_email": (payment.get("payer") or {}).get("email"),
        "external_reference": payment.get("external_reference"),
        "preapproval_id": preapproval_id,
    }
