from io import StringIO
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.management import call_command
from django.test import TestCase
from django.utils import timezone
from rest_framework.test import APIClient

from core.models import AuditLog
from inventory.models import InventoryMovement, Product, Purchase, Vendor
from inventory.services import create_product
from sales.models import Customer, Invoice
from sales.services import record_sale


class ErrorEnvelopeTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user(username="envelope-user", password="pass1234")

    def test_unauthenticated_error_uses_standard_envelope(self):
        response = self.client.get("/api/v1/products/")

        self.assertEqual(response.status_code, 401)
        payload = response.json()
        self.assertEqual(payload["code"], "not_authenticated")
        self.assertFalse(payload["success"])
        self.assertIn("message", payload)
        self.assertIn("errors", payload)
        self.assertEqual(payload["status"], 401)

    def test_validation_error_uses_standard_envelope(self):
        self.client.force_authenticate(user=self.user)

        response = self.client.post("/api/v1/invoices/", {"items": []}, format="json")

        self.assertEqual(response.status_code, 400)
        payload = response.json()
        self.assertEqual(payload["code"], "validation_error")
        self.assertIn("invoice_date", payload["errors"])
        self.assertIn("items", payload["errors"])
        self.assertEqual(payload["status"], 400)

    def test_missing_object_uses_standard_envelope(self):
        self.client.force_authenticate(user=self.user)

        response = self.client.get("/api/v1/products/9e3c5a70-6666-4c1a-9f00-000000000000/")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")


class RolePermissionTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.staff = user_model.objects.create_user(username="staff-core", password="pass1234", role="staff")
        self.manager = user_model.objects.create_user(username="manager-core", password="pass1234", role="manager")
        self.admin = user_model.objects.create_user(username="admin-core", password="pass1234", role="admin")
        self.root = user_model.objects.create_superuser(username="root-core", password="pass1234", email="root@example.com")

    def test_staff_denial_is_logged_with_capability(self):
        self.client.force_authenticate(user=self.staff)

        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("capability=audit.view" in line for line in cm.output))

    def test_manager_can_adjust_stock_but_not_delete_catalog(self):
        product = create_product({"sku": "ROLE-001", "name": "Role Product", "quantity": 2}).value
        self.client.force_authenticate(user=self.manager)

        adjusted = self.client.post(f"/api/v1/products/{product.pk}/stock/", {"quantity": 5}, format="json")
        deleted = self.client.delete(f"/api/v1/products/{product.pk}/")

        self.assertEqual(adjusted.status_code, 200)
        self.assertEqual(deleted.status_code, 403)

    def test_superuser_passes_every_capability(self):
        self.client.force_authenticate(user=self.root)

        response = self.client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 200)

    def test_current_user_endpoint(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.get("/api/v1/me/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["role"], "manager")
        self.assertEqual(response.json()["display_name"], "manager-core")


class AuditTrailTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.staff = user_model.objects.create_user(username="audit-staff", password="pass1234", role="staff")
        self.admin = user_model.objects.create_user(username="audit-admin", password="pass1234", role="admin")

    def test_audit_row_written_after_commit_with_request_context(self):
        self.client.force_authenticate(user=self.staff)

        with self.captureOnCommitCallbacks(execute=True) as callbacks:
            response = self.client.post(
                "/api/v1/vendors/",
                {"name": "Audited Vendor"},
                format="json",
                HTTP_X_REQUEST_ID="req-audit-1",
                HTTP_USER_AGENT="ledger-tests",
            )

        self.assertEqual(response.status_code, 201)
        self.assertEqual(len(callbacks), 1)
        log = AuditLog.objects.get(action="vendor.create")
        self.assertEqual(log.actor, self.staff)
        self.assertEqual(log.entity, "vendor")
        self.assertEqual(str(log.entity_id), response.json()["id"])
        self.assertEqual(log.request_id, "req-audit-1")
        self.assertEqual(log.user_agent, "ledger-tests")
        self.assertEqual(log.after_snapshot["name"], "Audited Vendor")

    def test_update_records_before_and_after(self):
        vendor = Vendor.objects.create(name="Old Name")
        self.client.force_authenticate(user=self.staff)

        with self.captureOnCommitCallbacks(execute=True):
            self.client.patch(f"/api/v1/vendors/{vendor.pk}/", {"name": "New Name"}, format="json")

        log = AuditLog.objects.get(action="vendor.update")
        self.assertEqual(log.before_snapshot["name"], "Old Name")
        self.assertEqual(log.after_snapshot["name"], "New Name")

    def test_rejected_operation_writes_no_audit_row(self):
        self.client.force_authenticate(user=self.staff)
        product = create_product({"sku": "AUD-001", "name": "Audit Product", "quantity": 1}).value

        with self.captureOnCommitCallbacks(execute=True):
            response = self.client.post(
                "/api/v1/invoices/",
                {
                    "invoice_date": str(timezone.localdate()),
                    "items": [{"product": str(product.pk), "quantity": 2, "unit_price": "1.00"}],
                },
                format="json",
            )

        self.assertEqual(response.status_code, 400)
        self.assertFalse(AuditLog.objects.exists())

    def test_audit_write_failure_does_not_fail_the_request(self):
        self.client.force_authenticate(user=self.staff)

        with patch("common.audit.AuditLog.objects.create", side_effect=RuntimeError("audit store down")):
            with self.assertLogs("common.audit", level="ERROR") as cm:
                with self.captureOnCommitCallbacks(execute=True):
                    response = self.client.post("/api/v1/vendors/", {"name": "Still Saved"}, format="json")

        self.assertEqual(response.status_code, 201)
        self.assertTrue(Vendor.objects.filter(name="Still Saved").exists())
        self.assertTrue(any("audit_log_write_failed" in line for line in cm.output))

    def test_audit_logs_are_admin_only_and_read_only(self):
        with self.captureOnCommitCallbacks(execute=True):
            self.client.force_authenticate(user=self.staff)
            self.client.post("/api/v1/vendors/", {"name": "Listed Vendor"}, format="json")

        self.client.force_authenticate(user=self.admin)
        listed = self.client.get("/api/v1/admin/audit-logs/", {"entity": "vendor"})
        log = AuditLog.objects.get()
        patched = self.client.patch(f"/api/v1/admin/audit-logs/{log.id}/", {"action": "changed"}, format="json")

        self.assertEqual(listed.status_code, 200)
        self.assertEqual(listed.json()["count"], 1)
        self.assertEqual(listed.json()["results"][0]["actor_username"], "audit-staff")
        self.assertEqual(patched.status_code, 405)


class AuthAndHealthTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user(
            username="owner",
            email="Owner@Example.com",
            password="pass1234",
            role="admin",
        )

    def test_token_login_accepts_email_case_insensitively(self):
        response = self.client.post("/api/v1/token/", {"username": "OWNER@example.com", "password": "pass1234"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertIn("access", response.json())
        self.assertIn("refresh", response.json())

    def test_token_login_rejects_bad_password(self):
        response = self.client.post("/api/v1/token/", {"username": "owner", "password": "wrong"}, format="json")

        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "authentication_failed")

    def test_health_endpoints_are_public(self):
        health = self.client.get("/healthz/", HTTP_X_REQUEST_ID="probe-1")
        ready = self.client.get("/readyz/")

        self.assertEqual(health.status_code, 200)
        self.assertEqual(health.json()["request_id"], "probe-1")
        self.assertEqual(health["X-Request-ID"], "probe-1")
        self.assertEqual(ready.json()["status"], "ready")


class ManagementCommandTests(TestCase):
    def test_seed_demo_data_is_idempotent(self):
        out = StringIO()

        call_command("seed_demo_data", stdout=out)
        call_command("seed_demo_data", stdout=StringIO())

        self.assertIn("Demo data seeded successfully.", out.getvalue())
        self.assertEqual(Purchase.objects.count(), 1)
        self.assertEqual(Invoice.objects.count(), 1)
        self.assertEqual(Product.objects.get(sku="SKU-CHIPS-001").quantity, 45)
        self.assertEqual(Product.objects.get(sku="SKU-COLA-001").quantity, 118)
        self.assertEqual(Purchase.objects.get().order_status, "received")
        self.assertEqual(str(Customer.objects.get(name="Demo Customer").outstanding_balance), "3.70")
        self.assertTrue(InventoryMovement.objects.filter(reference_type="invoice").exists())

    def test_reconcile_balances_dry_run_then_fix(self):
        customer = Customer.objects.create(name="Command Customer")
        product = create_product({"sku": "CMD-001", "name": "Command Product", "quantity": 5}).value
        record_sale(
            {
                "customer": customer.pk,
                "invoice_date": timezone.localdate(),
                "items": [{"product": product.pk, "quantity": 1, "unit_price": "40.00"}],
            }
        )
        Customer.objects.filter(pk=customer.pk).update(outstanding_balance=0)

        dry_run = StringIO()
        with self.assertLogs("ledger", level="WARNING"):
            call_command("reconcile_balances", stdout=dry_run)
        customer.refresh_from_db()
        self.assertIn("Dry run only", dry_run.getvalue())
        self.assertEqual(str(customer.outstanding_balance), "0.00")

        fixed = StringIO()
        with self.assertLogs("ledger", level="WARNING"):
            call_command("reconcile_balances", "--fix", stdout=fixed)
        customer.refresh_from_db()
        self.assertIn("Rewrote 1 balance(s).", fixed.getvalue())
        self.assertEqual(str(customer.outstanding_balance), "40.00")

        clean = StringIO()
        call_command("reconcile_balances", stdout=clean)
        self.assertIn("All customer balances match", clean.getvalue())
