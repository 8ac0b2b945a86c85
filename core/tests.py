from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.db import DatabaseError
from django.test import TestCase
from rest_framework.test import APIClient

from core.models import AuditLog


class AuthFlowTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.user = self.user_model.objects.create_user(
            username="cashier-auth",
            email="Cashier@Example.com",
            password="pass1234",
            role="cashier",
        )

    def test_login_returns_tokens_profile_and_permissions(self):
        response = self.client.post(
            "/api/v1/auth/login/",
            {"username": "cashier-auth", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertIn("access", payload)
        self.assertIn("refresh", payload)
        self.assertEqual(payload["user"]["username"], "cashier-auth")
        self.assertEqual(payload["profile"]["role"], "cashier")
        codes = {item["code"] for item in payload["permissions"]}
        self.assertIn("pos.checkout", codes)
        self.assertNotIn("audit.view", codes)

    def test_login_accepts_email_case_insensitively(self):
        response = self.client.post(
            "/api/v1/auth/login/",
            {"email": "CASHIER@example.com", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)

    def test_login_writes_audit_row_with_forwarded_ip(self):
        response = self.client.post(
            "/api/v1/auth/login/",
            {"username": "cashier-auth", "password": "pass1234"},
            format="json",
            HTTP_X_FORWARDED_FOR="203.0.113.7, 10.0.0.1",
        )

        self.assertEqual(response.status_code, 200)
        log = AuditLog.objects.get(action="login")
        self.assertEqual(log.actor_id, self.user.id)
        self.assertEqual(log.ip_address, "203.0.113.7")

    def test_login_with_bad_password_returns_401_envelope(self):
        response = self.client.post(
            "/api/v1/auth/login/",
            {"username": "cashier-auth", "password": "wrong"},
            format="json",
        )

        self.assertEqual(response.status_code, 401)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["code", "errors", "message", "status"])
        self.assertEqual(payload["status"], 401)
        self.assertFalse(AuditLog.objects.filter(action="login").exists())

    def test_login_succeeds_when_audit_write_fails(self):
        with patch("common.audit.AuditLog.objects.create", side_effect=DatabaseError("audit down")):
            with self.assertLogs("common.audit", level="WARNING") as logs:
                response = self.client.post(
                    "/api/v1/auth/login/",
                    {"username": "cashier-auth", "password": "pass1234"},
                    format="json",
                )

        self.assertEqual(response.status_code, 200)
        self.assertTrue(any("audit_log_write_failed" in entry for entry in logs.output))

    def test_me_requires_authentication(self):
        response = self.client.get("/api/v1/auth/me/")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "not_authenticated")

    def test_me_returns_current_user(self):
        self.client.force_authenticate(user=self.user)
        response = self.client.get("/api/v1/auth/me/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["user"]["id"], str(self.user.id))

    def test_logout_writes_audit_row(self):
        self.client.force_authenticate(user=self.user)
        response = self.client.post("/api/v1/auth/logout/")

        self.assertEqual(response.status_code, 204)
        self.assertTrue(AuditLog.objects.filter(action="logout", actor=self.user).exists())


class AuditLogTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user_model = get_user_model()
        self.admin = self.user_model.objects.create_user(username="audit-admin", password="pass1234", role="admin")
        self.cashier = self.user_model.objects.create_user(username="audit-cashier", password="pass1234")

    def test_customer_create_writes_audit_log_with_request_id(self):
        self.client.force_authenticate(user=self.admin)
        response = self.client.post(
            "/api/v1/debt/customers/",
            {"name": "Audit Customer"},
            format="json",
            HTTP_X_REQUEST_ID="req-123",
        )

        self.assertEqual(response.status_code, 201)
        self.assertTrue(
            AuditLog.objects.filter(action="customer.create", entity="customer", request_id="req-123").exists()
        )

    def test_audit_logs_are_read_only_and_paginated(self):
        self.client.force_authenticate(user=self.admin)
        log = AuditLog.objects.create(action="test.action", entity="test", actor=self.admin)

        list_res = self.client.get("/api/v1/admin/audit-logs/")
        patch_res = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")
        delete_res = self.client.delete(f"/api/v1/admin/audit-logs/{log.id}/")

        self.assertEqual(list_res.status_code, 200)
        self.assertEqual(sorted(list_res.json().keys()), ["count", "next", "previous", "results"])
        self.assertEqual(patch_res.status_code, 405)
        self.assertEqual(delete_res.status_code, 405)

    def test_actor_filter_ignores_malformed_ids(self):
        self.client.force_authenticate(user=self.admin)
        AuditLog.objects.create(action="test.action", entity="test", actor=self.admin)

        matched = self.client.get(f"/api/v1/admin/audit-logs/?actor_id={self.admin.id}")
        malformed = self.client.get("/api/v1/admin/audit-logs/?actor_id=" + "a" * 36)

        self.assertEqual(matched.status_code, 200)
        self.assertEqual(matched.json()["count"], 1)
        self.assertEqual(malformed.status_code, 200)
        self.assertEqual(malformed.json()["count"], 0)

    def test_cashier_cannot_read_audit_logs_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.cashier)
        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("permission_denied" in message for message in cm.output))


class ProbeTests(TestCase):
    def test_health_is_public(self):
        response = APIClient().get("/health/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ok")
        self.assertIn("timestamp", response.json())

    def test_readyz_checks_database(self):
        response = APIClient().get("/readyz/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ready")

    def test_response_echoes_request_id(self):
        response = APIClient().get("/health/", HTTP_X_REQUEST_ID="probe-1")

        self.assertEqual(response["X-Request-ID"], "probe-1")
