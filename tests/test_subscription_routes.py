import sys
import os
import json
import unittest
from datetime import datetime, timedelta, timezone
from unittest.mock import patch

# Add parent directory to path to import modules
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("JWT_SECRET", "test-jwt-secret")

from fastapi import HTTPException
from fastapi.testclient import TestClient

from db.init import Base, SessionLocal, engine, get_db, init_db
from main import app
from models.clinic import Clinic
from models.subscription_transaction import SubscriptionTransaction
from routers.subscription import (
    CreateSubscriptionRequest,
    SubscriptionIdRequest,
    build_preapproval_payload,
    cancel_subscription,
    create_subscription,
    get_signature_verifier,
    get_subscription_status,
    get_subscription_transactions,
    pause_subscription,
)
from utils.settings import Settings
from utils.subscription_ledger import as_utc
from utils.webhook_signature import WebhookSignatureVerifier, build_signed_manifest, compute_signature

OWNER = {"sub": "owner@clinic.com", "clinicId": "abc123", "role": "owner"}
ADMIN = {"sub": "admin@clinic.com", "role": "admin"}
SECRET = "whsec_routes"

PREAPPROVAL_CREATED = {
    "success": True,
    "preapproval": {"id": "pre_123"},
    "subscription_id": "pre_123",
    "init_point": "https://www.mercadopago.com.br/subscriptions/checkout?preapproval_id=pre_123",
    "sandbox_init_point": "https://sandbox.mercadopago.com.br/subscriptions/checkout?preapproval_id=pre_123",
}


class RoutesTestCase(unittest.TestCase):
    def setUp(self):
        init_db()
        self.db = SessionLocal()
        self.db.add(Clinic(id="abc123", name="Clinica Sorriso", email="owner@clinic.com"))
        self.db.commit()

    def tearDown(self):
        self.db.close()
        Base.metadata.drop_all(bind=engine)

    def clinic(self):
        self.db.expire_all()
        return self.db.get(Clinic, "abc123")

    def set_subscription(self, status, expires_at, subscription_id="pre_123"):
        c = self.clinic()
        c.subscription_status = status
        c.subscription_expires_at = expires_at
        c.subscription_plan = "monthly"
        c.mp_subscription_id = subscription_id
        self.db.commit()


class TestPreapprovalPayload(unittest.TestCase):
    def test_monthly_payload(self):
        now = datetime(2023, 11, 14, 22, 13, 20, tzinfo=timezone.utc)
        settings = Settings(frontend_url="https://app.clinic.com/")

        payload = build_preapproval_payload("abc123", "monthly", "owner@clinic.com", settings, now)

        self.assertEqual(payload["external_reference"], "clinic-abc123-monthly-1700000000000")
        self.assertEqual(payload["payer_email"], "owner@clinic.com")
        self.assertEqual(payload["back_url"], "https://app.clinic.com/premium/success")
        recurring = payload["auto_recurring"]
        self.assertEqual(recurring["frequency"], 1)
        self.assertEqual(recurring["frequency_type"], "months")
        self.assertEqual(recurring["transaction_amount"], 49.9)
        self.assertEqual(recurring["currency_id"], "BRL")
        self.assertEqual(recurring["end_date"], "2025-11-14T22:13:20.000Z")

    def test_yearly_payload(self):
        payload = build_preapproval_payload("abc123", "yearly", "o@c.com", Settings(), datetime.now(timezone.utc))
        self.assertEqual(payload["auto_recurring"]["frequency_type"], "years")
        self.assertEqual(payload["auto_recurring"]["transaction_amount"], 499.0)


class TestCreateSubscription(RoutesTestCase):
    @patch('routers.subscription.create_preapproval')
    def test_create_mirrors_pending(self, mock_create):
        mock_create.return_value = PREAPPROVAL_CREATED
        request = CreateSubscriptionRequest(tenantId="abc123", plan="monthly", payerEmail="owner@clinic.com")

        response = create_subscription(request=request, db=self.db, current_user=OWNER)

        self.assertEqual(response["subscriptionId"], "pre_123")
        self.assertIn("preapproval_id=pre_123", response["initPoint"])
        self.assertIn("sandbox", response["sandboxInitPoint"])
        sent = mock_create.call_args[0][0]
        self.assertTrue(sent["external_reference"].startswith("clinic-abc123-monthly-"))

        c = self.clinic()
        self.assertEqual(c.subscription_status, "pending")
        self.assertEqual(c.mp_subscription_id, "pre_123")

    def test_missing_fields(self):
        request = CreateSubscriptionRequest(tenantId="abc123", plan="monthly")
        with self.assertRaises(HTTPException) as cm:
            create_subscription(request=request, db=self.db, current_user=OWNER)
        self.assertEqual(cm.exception.status_code, 400)

    def test_invalid_plan(self):
        request = CreateSubscriptionRequest(tenantId="abc123", plan="weekly", payerEmail="o@c.com")
        with self.assertRaises(HTTPException) as cm:
            create_subscription(request=request, db=self.db, current_user=OWNER)
        self.assertEqual(cm.exception.status_code, 400)

    def test_other_clinic_forbidden(self):
        request = CreateSubscriptionRequest(tenantId="other", plan="monthly", payerEmail="o@c.com")
        with self.assertRaises(HTTPException) as cm:
            create_subscription(request=request, db=self.db, current_user=OWNER)
        self.assertEqual(cm.exception.status_code, 403)

    def test_unknown_clinic(self):
        request = CreateSubscriptionRequest(tenantId="ghost", plan="monthly", payerEmail="o@c.com")
        with self.assertRaises(HTTPException) as cm:
            create_subscription(request=request, db=self.db, current_user=ADMIN)
        self.assertEqual(cm.exception.status_code, 404)

    @patch('routers.subscription.create_preapproval')
    def test_processor_error_passed_through(self, mock_create):
        mock_create.return_value = {
            "success": False,
            "error": "Invalid payer_email",
            "mp_error": {"message": "Invalid payer_email", "status": 400},
        }
        request = CreateSubscriptionRequest(tenantId="abc123", plan="monthly", payerEmail="bad")

        with self.assertRaises(HTTPException) as cm:
            create_subscription(request=request, db=self.db, current_user=OWNER)

        self.assertEqual(cm.exception.status_code, 500)
        self.assertEqual(cm.exception.detail["details"], "Invalid payer_email")
        self.assertEqual(cm.exception.detail["mpError"]["status"], 400)
        self.assertEqual(self.clinic().subscription_status, "inactive")

    @patch('routers.subscription.mark_pending')
    @patch('routers.subscription.create_preapproval')
    def test_mirror_failure_does_not_fail_create(self, mock_create, mock_mark_pending):
        mock_create.return_value = PREAPPROVAL_CREATED
        mock_mark_pending.side_effect = RuntimeError("database unavailable")
        request = CreateSubscriptionRequest(tenantId="abc123", plan="monthly", payerEmail="owner@clinic.com")

        response = create_subscription(request=request, db=self.db, current_user=OWNER)

        self.assertEqual(response["subscriptionId"], "pre_123")
        self.assertIsNone(self.clinic().mp_subscription_id)


class TestCancelAndPause(RoutesTestCase):
    @patch('routers.subscription.cancel_preapproval')
    def test_cancel_keeps_access_until_expiry(self, mock_cancel):
        expiry = datetime.now(timezone.utc) + timedelta(days=10)
        self.set_subscription("active", expiry)
        mock_cancel.return_value = {"success": True, "preapproval": {"id": "pre_123", "status": "cancelled"}}

        response = cancel_subscription(request=SubscriptionIdRequest(subscriptionId="pre_123"),
                                       db=self.db, current_user=OWNER)

        self.assertTrue(response["success"])
        self.assertEqual(response["cancelledSubscriptionId"], "pre_123")
        mock_cancel.assert_called_once_with("pre_123")

        status = get_subscription_status("abc123", db=self.db, current_user=OWNER)
        self.assertEqual(status["subscriptionStatus"], "cancelled")
        self.assertEqual(status["premiumStatus"], "premium")
        self.assertEqual(as_utc(self.clinic().will_expire_at), expiry)

    @patch('routers.subscription.get_preapproval')
    @patch('routers.subscription.cancel_preapproval')
    def test_cancel_without_local_clinic_checks_reference(self, mock_cancel, mock_get_preapproval):
        mock_get_preapproval.return_value = {"success": True, "preapproval": {
            "id": "pre_x", "external_reference": "clinic-abc123-monthly-1700000000000"}}
        mock_cancel.return_value = {"success": True, "preapproval": {"id": "pre_x"}}

        response = cancel_subscription(request=SubscriptionIdRequest(subscriptionId="pre_x"),
                                       db=self.db, current_user=OWNER)

        self.assertTrue(response["success"])
        mock_get_preapproval.assert_called_once_with("pre_x")

    @patch('routers.subscription.get_preapproval')
    @patch('routers.subscription.cancel_preapproval')
    def test_cancel_unmirrored_subscription_of_other_clinic_forbidden(self, mock_cancel, mock_get_preapproval):
        mock_get_preapproval.return_value = {"success": True, "preapproval": {
            "id": "pre_victim", "external_reference": "clinic-victim-monthly-1700000000000"}}
        intruder = {"sub": "x@y.com", "clinicId": "other", "role": "owner"}

        with self.assertRaises(HTTPException) as cm:
            cancel_subscription(request=SubscriptionIdRequest(subscriptionId="pre_victim"),
                                db=self.db, current_user=intruder)

        self.assertEqual(cm.exception.status_code, 403)
        mock_cancel.assert_not_called()

    @patch('routers.subscription.get_preapproval')
    @patch('routers.subscription.pause_preapproval')
    def test_pause_subscription_without_clinic_reference_forbidden(self, mock_pause, mock_get_preapproval):
        mock_get_preapproval.return_value = {"success": True, "preapproval": {
            "id": "pre_y", "external_reference": "order-42"}}

        with self.assertRaises(HTTPException) as cm:
            pause_subscription(request=SubscriptionIdRequest(subscriptionId="pre_y"),
                               db=self.db, current_user=OWNER)

        self.assertEqual(cm.exception.status_code, 403)
        mock_pause.assert_not_called()

    @patch('routers.subscription.get_preapproval')
    @patch('routers.subscription.cancel_preapproval')
    def test_admin_cancels_unmirrored_subscription(self, mock_cancel, mock_get_preapproval):
        mock_cancel.return_value = {"success": True, "preapproval": {"id": "pre_z"}}

        response = cancel_subscription(request=SubscriptionIdRequest(subscriptionId="pre_z"),
                                       db=self.db, current_user=ADMIN)

        self.assertTrue(response["success"])
        mock_get_preapproval.assert_not_called()

    @patch('routers.subscription.mark_cancelled')
    @patch('routers.subscription.cancel_preapproval')
    def test_cancel_mirror_failure_reports_success(self, mock_cancel, mock_mark_cancelled):
        self.set_subscription("active", datetime.now(timezone.utc) + timedelta(days=10))
        mock_cancel.return_value = {"success": True, "preapproval": {"id": "pre_123"}}
        mock_mark_cancelled.side_effect = RuntimeError("write failed")

        response = cancel_subscription(request=SubscriptionIdRequest(subscriptionId="pre_123"),
                                       db=self.db, current_user=OWNER)

        self.assertTrue(response["success"])
        mock_mark_cancelled.assert_called_once()

    @patch('routers.subscription.cancel_preapproval')
    def test_cancel_processor_failure(self, mock_cancel):
        self.set_subscription("active", datetime.now(timezone.utc) + timedelta(days=10))
        mock_cancel.return_value = {"success": False, "error": "not found", "mp_error": {"status": 404}}
        with self.assertRaises(HTTPException) as cm:
            cancel_subscription(request=SubscriptionIdRequest(subscriptionId="pre_123"),
                                db=self.db, current_user=OWNER)
        self.assertEqual(cm.exception.status_code, 500)

    def test_cancel_requires_subscription_id(self):
        with self.assertRaises(HTTPException) as cm:
            cancel_subscription(request=SubscriptionIdRequest(), db=self.db, current_user=OWNER)
        self.assertEqual(cm.exception.status_code, 400)

    @patch('routers.subscription.cancel_preapproval')
    def test_cancel_other_clinic_forbidden(self, mock_cancel):
        self.set_subscription("active", datetime.now(timezone.utc) + timedelta(days=10))
        intruder = {"sub": "x@y.com", "clinicId": "other", "role": "owner"}
        with self.assertRaises(HTTPException) as cm:
            cancel_subscription(request=SubscriptionIdRequest(subscriptionId="pre_123"),
                                db=self.db, current_user=intruder)
        self.assertEqual(cm.exception.status_code, 403)
        mock_cancel.assert_not_called()

    @patch('routers.subscription.pause_preapproval')
    def test_pause(self, mock_pause):
        self.set_subscription("active", datetime.now(timezone.utc) + timedelta(days=10))
        mock_pause.return_value = {"success": True, "preapproval": {"id": "pre_123", "status": "paused"}}

        response = pause_subscription(request=SubscriptionIdRequest(subscriptionId="pre_123"),
                                      db=self.db, current_user=OWNER)

        self.assertEqual(response, {
            "success": True,
            "message": "Subscription paused successfully",
            "pausedSubscriptionId": "pre_123",
        })
        c = self.clinic()
        self.assertEqual(c.subscription_status, "paused")
        self.assertIsNotNone(c.paused_at)

    @patch('routers.subscription.mark_paused')
    @patch('routers.subscription.pause_preapproval')
    def test_pause_mirror_failure_reports_success(self, mock_pause, mock_mark_paused):
        self.set_subscription("active", datetime.now(timezone.utc) + timedelta(days=10))
        mock_pause.return_value = {"success": True, "preapproval": {"id": "pre_123", "status": "paused"}}
        mock_mark_paused.side_effect = RuntimeError("write failed")

        response = pause_subscription(request=SubscriptionIdRequest(subscriptionId="pre_123"),
                                      db=self.db, current_user=OWNER)

        self.assertTrue(response["success"])
        self.assertEqual(response["pausedSubscriptionId"], "pre_123")
        mock_mark_paused.assert_called_once()
        self.assertEqual(self.clinic().subscription_status, "active")


class TestStatusAndTransactions(RoutesTestCase):
    def test_status_unknown_clinic(self):
        with self.assertRaises(HTTPException) as cm:
            get_subscription_status("ghost", db=self.db, current_user=ADMIN)
        self.assertEqual(cm.exception.status_code, 404)

    def test_status_for_new_clinic(self):
        status = get_subscription_status("abc123", db=self.db, current_user=OWNER)
        self.assertEqual(status, {
            "premiumStatus": "free",
            "subscriptionStatus": "inactive",
            "currentPeriodEnd": None,
            "subscriptionId": None,
            "plan": "none",
        })

    def test_transactions_listing(self):
        self.db.add(SubscriptionTransaction(id="pay_1", clinic_id="abc123", status="approved",
                                            processed_at=datetime.now(timezone.utc)))
        self.db.commit()

        response = get_subscription_transactions("abc123", db=self.db, current_user=OWNER)

        self.assertEqual(response["count"], 1)
        self.assertEqual(response["data"][0]["id"], "pay_1")


class TestWebhookEndpoint(RoutesTestCase):
    def setUp(self):
        super().setUp()
        app.dependency_overrides[get_db] = lambda: self.db
        app.dependency_overrides[get_signature_verifier] = lambda: WebhookSignatureVerifier(SECRET)
        self.client = TestClient(app)

    def tearDown(self):
        app.dependency_overrides.clear()
        super().tearDown()

    def _signed_headers(self, data_id, ts="1704908010", request_id="req-1"):
        signature = compute_signature(SECRET, build_signed_manifest(data_id, request_id, ts))
        return {"x-signature": f"ts={ts},v1={signature}", "x-request-id": request_id}

    def test_invalid_signature_rejected(self):
        response = self.client.post(
            "/subscriptions/webhooks?topic=payment&data_id=1&ts=1",
            json={"data": {"id": "1"}},
            headers={"x-signature": "ts=1,v1=deadbeef", "x-request-id": "req-1"},
        )
        self.assertEqual(response.status_code, 401)

    @patch('utils.webhook_dispatcher.get_payment')
    def test_unrecognized_topic_acknowledged(self, mock_get_payment):
        response = self.client.post(
            "/subscriptions/webhooks?topic=merchant_order&data_id=9&ts=1704908010",
            json={"data": {"id": "9"}},
            headers=self._signed_headers("9"),
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"received": True})
        mock_get_payment.assert_not_called()
        self.assertEqual(self.clinic().subscription_status, "inactive")
        self.assertEqual(self.db.query(SubscriptionTransaction).count(), 0)

    @patch('utils.webhook_dispatcher.get_payment')
    def test_failing_event_still_acknowledged(self, mock_get_payment):
        mock_get_payment.return_value = {"success": False, "error": "500 from processor"}
        response = self.client.post(
            "/subscriptions/webhooks?type=payment&data_id=5&ts=1704908010",
            json={"data": {"id": "5"}},
            headers=self._signed_headers("5"),
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"received": True})

    def test_malformed_body_is_bad_request(self):
        response = self.client.post(
            "/subscriptions/webhooks?topic=payment&data_id=5&ts=1704908010",
            content=b"{not json",
            headers=dict(self._signed_headers("5"), **{"content-type": "application/json"}),
        )
        self.assertEqual(response.status_code, 400)

    @patch('utils.webhook_dispatcher.get_payment')
    def test_approved_payment_over_http(self, mock_get_payment):
        mock_get_payment.return_value = {"success": True, "payment": {
            "id": 321,
            "status": "approved",
            "transaction_amount": 49.9,
            "currency_id": "BRL",
            "external_reference": "clinic-abc123-monthly-1700000000000",
        }}

        response = self.client.post(
            "/subscriptions/webhooks?topic=payment&data_id=321&ts=1704908010",
            content=json.dumps({"action": "payment.created", "data": {"id": "321"}}),
            headers=self._signed_headers("321"),
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(self.clinic().subscription_status, "active")

    @patch('utils.webhook_dispatcher.get_preapproval')
    @patch('routers.subscription.mark_pending')
    @patch('routers.subscription.create_preapproval')
    def test_webhook_repairs_failed_optimistic_write(self, mock_create, mock_mark_pending, mock_get_preapproval):
        mock_create.return_value = PREAPPROVAL_CREATED
        mock_mark_pending.side_effect = RuntimeError("database unavailable")
        request = CreateSubscriptionRequest(tenantId="abc123", plan="monthly", payerEmail="owner@clinic.com")
        create_subscription(request=request, db=self.db, current_user=OWNER)
        self.assertIsNone(self.clinic().mp_subscription_id)

        mock_get_preapproval.return_value = {"success": True, "preapproval": {
            "id": "pre_123",
            "status": "authorized",
            "external_reference": mock_create.call_args[0][0]["external_reference"],
            "next_payment_date": (datetime.now(timezone.utc) + timedelta(days=30)).isoformat(),
        }}
        response = self.client.post(
            "/subscriptions/webhooks?topic=preapproval&data_id=pre_123&ts=1704908010",
            json={"type": "preapproval", "data": {"id": "pre_123"}},
            headers=self._signed_headers("pre_123"),
        )

        self.assertEqual(response.status_code, 200)
        c = self.clinic()
        self.assertEqual(c.mp_subscription_id, "pre_123")
        self.assertEqual(c.subscription_status, "active")
        status = get_subscription_status("abc123", db=self.db, current_user=OWNER)
        self.assertEqual(status["premiumStatus"], "premium")


if __name__ == '__main__':
    unittest.main()
