"""
Mercado Pago webhook signature verification.

The x-signature header looks like "ts=1704908010,v1=<hex>". The v1 value is an
HMAC-SHA256 of "id:<data_id>;request-id:<x-request-id>;ts:<ts>;" keyed with
the webhook secret configured in the Mercado Pago dashboard.
"""
import hashlib
import hmac
import logging
from typing import Mapping, Optional

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "x-signature"
REQUEST_ID_HEADER = "x-request-id"


def _header(headers: Mapping[str, str], name: str) -> Optional[str]:
    for key, value in headers.items():
        if key.lower() == name:
            return value
    return None


def parse_signature_header(signature: str) -> dict:
    """Split "k1=v1,k2=v2" into a dict, ignoring malformed entries."""
    parts = {}
    for item in signature.split(","):
        key, sep, value = item.strip().partition("=")
        if sep:
            parts[key.strip()] = value.strip()
    return parts


def build_signed_manifest(data_id: Optional[str], request_id: str, ts: Optional[str]) -> str:
    return f"id:{data_id};request-id:{request_id};ts:{ts};"


def compute_signature(secret: str, manifest: str) -> str:
    return hmac.new(secret.encode(), manifest.encode(), hashlib.sha256).hexdigest()


class WebhookSignatureVerifier:
    """
    Verifies inbound webhook requests.

    With no secret configured, requests are accepted only when the verifier
    was explicitly built with allow_unsigned=True (local development).
    """

    def __init__(self, secret: Optional[str], allow_unsigned: bool = False):
        self.secret = secret or None
        self.allow_unsigned = allow_unsigned

    def verify(self, headers: Mapping[str, str], query_params: Mapping[str, str]) -> bool:
        if not self.secret:
            if self.allow_unsigned:
                logger.warning("MP_WEBHOOK_SECRET not configured - skipping webhook signature check")
                return True
            logger.error("MP_WEBHOOK_SECRET not configured and unsigned webhooks are not allowed")
            return False

        signature = _header(headers, SIGNATURE_HEADER)
        request_id = _header(headers, REQUEST_ID_HEADER)
        if not signature or not request_id:
            logger.error("Webhook signature headers missing")
            return False

        received = parse_signature_header(signature).get("v1")
        if not received:
            logger.error("Webhook signature header has no v1 entry")
            return False

        data_id = query_params.get("data_id") or query_params.get("data.id")
        manifest = build_signed_manifest(data_id, request_id, query_params.get("ts"))
        expected = compute_signature(self.secret, manifest)

        if not hmac.compare_digest(expected, received):
            logger.error("Invalid webhook signature")
            return False
        return True
