import datetime
from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.db import DatabaseError
from django.test import TestCase, override_settings
from django.utils import timezone
from rest_framework.test import APIClient

from core.models import AuditLog
from inventory.models import InventoryMovement
from inventory.services import create_product
from sales.models import Customer, Invoice, InvoicePayment
from sales.services import (
    compute_outstanding_balance,
    reconcile_outstanding_balances,
    record_invoice_payment,
    record_sale,
    reverse_sale,
    set_invoice_payment_status,
)


def make_product(sku, quantity=0, **fields):
    result = create_product({"sku": sku, "name": f"Product {sku}", "quantity": quantity, **fields})
    assert result.accepted, result.message
    return result.value


def sale_draft(*lines, customer=None, **extra):
    return {
        "customer": customer.pk if customer else None,
        "invoice_date": timezone.localdate(),
        "items": [{"product": product.pk, "quantity": quantity, "unit_price": price} for product, quantity, price in lines],
        **extra,
    }


class RecordSaleTests(TestCase):
    def setUp(self):
        self.product = make_product("SALE-001", quantity=10)

    def test_sale_takes_stock_and_records_movement(self):
        result = record_sale(sale_draft((self.product, 3, "25.00")))

        self.assertTrue(result.accepted)
        invoice = result.value
        self.product.refresh_from_db()
        self.assertEqual(self.product.quantity, 7)
        self.assertEqual(invoice.invoice_number, f"INV-{timezone.localdate().year}-001")
        self.assertEqual(invoice.total_amount, Decimal("75.00"))
        movement = InventoryMovement.objects.get(reference_type="invoice", reference_id=invoice.pk)
        self.assertEqual(movement.movement_type, "stock_out")
        self.assertEqual((movement.previous_quantity, movement.new_quantity), (10, 7))
        self.assertEqual(movement.notes, f"Sold on {invoice.invoice_number}")

    def test_insufficient_stock_rejects_without_side_effects(self):
        record_sale(sale_draft((self.product, 3, "25.00")))
        movements_before = InventoryMovement.objects.count()

        result = record_sale(sale_draft((self.product, 8, "25.00")))

        self.assertFalse(result.accepted)
        self.assertEqual(result.reason, "insufficient_stock")
        self.assertIn("Available: 7", result.message)
        self.assertEqual(result.details["requested"], 8)
        self.product.refresh_from_db()
        self.assertEqual(self.product.quantity, 7)
        self.assertEqual(Invoice.objects.count(), 1)
        self.assertEqual(InventoryMovement.objects.count(), movements_before)

    def test_one_short_line_rejects_the_whole_sale(self):
        scarce = make_product("SALE-002", quantity=1)

        result = record_sale(sale_draft((self.product, 2, "10.00"), (scarce, 5, "10.00")))

        self.assertEqual(result.reason, "insufficient_stock")
        self.assertEqual(result.details["sku"], "SALE-002")
        self.product.refresh_from_db()
        self.assertEqual(self.product.quantity, 10)
        self.assertFalse(Invoice.objects.exists())

    def test_numbering_survives_rejected_sales(self):
        record_sale(sale_draft((self.product, 20, "1.00")))
        accepted = record_sale(sale_draft((self.product, 1, "1.00")))

        self.assertEqual(accepted.value.invoice_number, f"INV-{timezone.localdate().year}-001")

    def test_upfront_payment_is_stored_as_payment_row(self):
        customer = Customer.objects.create(name="Walk-in Account")

        result = record_sale(
            sale_draft((self.product, 2, "250.00"), customer=customer, amount_paid="200.00", payment_mode="upi")
        )

        invoice = result.value
        payment = invoice.payments.get()
        self.assertEqual(payment.amount, Decimal("200.00"))
        self.assertEqual(payment.mode, "upi")
        self.assertEqual(payment.notes, "Paid at invoice creation")
        self.assertEqual((invoice.amount_paid, invoice.payment_status), (Decimal("200.00"), "partial"))
        customer.refresh_from_db()
        self.assertEqual(customer.outstanding_balance, Decimal("300.00"))

    def test_upfront_payment_above_total_is_overpayment(self):
        result = record_sale(sale_draft((self.product, 1, "50.00"), amount_paid="60.00"))

        self.assertEqual(result.reason, "overpayment")
        self.assertFalse(Invoice.objects.exists())
        self.product.refresh_from_db()
        self.assertEqual(self.product.quantity, 10)

    def test_zero_total_invoice_counts_as_paid(self):
        result = record_sale(sale_draft((self.product, 1, "0.00")))

        self.assertEqual(result.value.payment_status, "paid")

    def test_unknown_customer_is_not_found(self):
        draft = sale_draft((self.product, 1, "5.00"))
        draft["customer"] = "0f6a8c1e-4444-4c1a-9f00-000000000000"

        result = record_sale(draft)

        self.assertEqual(result.reason, "not_found")
        self.product.refresh_from_db()
        self.assertEqual(self.product.quantity, 10)


class InvoicePaymentTests(TestCase):
    def setUp(self):
        self.customer = Customer.objects.create(name="Kiran Stores")
        self.product = make_product("PAY-001", quantity=5)
        self.invoice = record_sale(sale_draft((self.product, 1, "1000.00"), customer=self.customer)).value

    def test_payments_move_status_and_balance(self):
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.outstanding_balance, Decimal("1000.00"))

        first = record_invoice_payment(self.invoice.pk, amount=Decimal("400"))
        self.invoice.refresh_from_db()
        self.customer.refresh_from_db()
        self.assertTrue(first.accepted)
        self.assertEqual((self.invoice.amount_paid, self.invoice.payment_status), (Decimal("400.00"), "partial"))
        self.assertEqual(self.customer.outstanding_balance, Decimal("600.00"))

        record_invoice_payment(self.invoice.pk, amount=Decimal("600"))
        self.invoice.refresh_from_db()
        self.customer.refresh_from_db()
        self.assertEqual(self.invoice.payment_status, "paid")
        self.assertEqual(self.customer.outstanding_balance, Decimal("0.00"))

        extra = record_invoice_payment(self.invoice.pk, amount=Decimal("0.01"))
        self.assertEqual(extra.reason, "overpayment")
        self.assertEqual(extra.details["pending"], "0.00")
        self.assertEqual(self.invoice.payments.count(), 2)

    @override_settings(LEDGER_OVERPAYMENT_TOLERANCE=Decimal("0.01"))
    def test_configured_tolerance_admits_rounding_excess(self):
        record_invoice_payment(self.invoice.pk, amount=Decimal("1000"))

        result = record_invoice_payment(self.invoice.pk, amount=Decimal("0.01"))

        self.assertTrue(result.accepted)
        self.invoice.refresh_from_db()
        self.assertEqual((self.invoice.amount_paid, self.invoice.payment_status), (Decimal("1000.01"), "paid"))

    def test_zero_or_negative_amount_is_validation_error(self):
        for amount in ("0", "-5"):
            with self.subTest(amount=amount):
                result = record_invoice_payment(self.invoice.pk, amount=amount)
                self.assertEqual(result.reason, "validation_failed")
        self.assertFalse(self.invoice.payments.exists())

    def test_override_writes_fields_and_shifts_balance(self):
        result = set_invoice_payment_status(self.invoice.pk, amount_paid=Decimal("1000.00"), payment_status="paid", mode="card")

        self.assertTrue(result.accepted)
        self.assertEqual(result.value.previous["payment_status"], "pending")
        self.invoice.refresh_from_db()
        self.customer.refresh_from_db()
        self.assertEqual((self.invoice.amount_paid, self.invoice.payment_mode), (Decimal("1000.00"), "card"))
        self.assertFalse(self.invoice.payments.exists())
        self.assertEqual(self.customer.outstanding_balance, Decimal("0.00"))

    def test_override_above_total_is_rejected(self):
        result = set_invoice_payment_status(self.invoice.pk, amount_paid="1000.50", payment_status="paid")

        self.assertEqual(result.reason, "overpayment")
        self.assertIn("Total: 1000.00", result.message)

    def test_storage_failure_leaves_invoice_unchanged(self):
        with patch("sales.services._shift_outstanding_balance", side_effect=DatabaseError("deadlock detected")):
            with self.assertLogs("ledger", level="ERROR"):
                result = record_invoice_payment(self.invoice.pk, amount=Decimal("100"))

        self.assertEqual(result.reason, "storage_failure")
        self.assertTrue(result.retryable)
        self.assertFalse(InvoicePayment.objects.exists())
        self.invoice.refresh_from_db()
        self.assertEqual(self.invoice.amount_paid, Decimal("0.00"))


class ReverseSaleTests(TestCase):
    def setUp(self):
        self.customer = Customer.objects.create(name="Reverse Mart")
        self.first = make_product("REV-001", quantity=10)
        self.second = make_product("REV-002", quantity=4)

    def test_reverse_restores_stock_and_balance(self):
        invoice = record_sale(
            sale_draft((self.first, 3, "100.00"), (self.second, 2, "100.00"), customer=self.customer)
        ).value
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.outstanding_balance, Decimal("500.00"))

        result = reverse_sale(invoice.pk)

        self.assertTrue(result.accepted)
        self.first.refresh_from_db()
        self.second.refresh_from_db()
        self.customer.refresh_from_db()
        self.assertEqual((self.first.quantity, self.second.quantity), (10, 4))
        self.assertEqual(self.customer.outstanding_balance, Decimal("0.00"))
        self.assertFalse(Invoice.objects.filter(pk=invoice.pk).exists())
        returns = InventoryMovement.objects.filter(reference_type="return", reference_id=invoice.pk)
        self.assertEqual(sorted(returns.values_list("quantity", flat=True)), [2, 3])
        self.assertEqual(set(returns.values_list("notes", flat=True)), {"reversal"})

    def test_invoice_with_payments_cannot_be_reversed(self):
        invoice = record_sale(sale_draft((self.first, 1, "10.00"), amount_paid="5.00")).value

        result = reverse_sale(invoice.pk)

        self.assertEqual(result.reason, "has_payments")
        self.first.refresh_from_db()
        self.assertEqual(self.first.quantity, 9)

    def test_unknown_invoice_is_not_found(self):
        result = reverse_sale("2a9b7f31-5555-4c1a-9f00-000000000000")

        self.assertEqual(result.reason, "not_found")


class OutstandingBalanceTests(TestCase):
    def setUp(self):
        self.customer = Customer.objects.create(name="Drift Traders")
        self.product = make_product("BAL-001", quantity=50)

    def test_computed_balance_sums_open_invoices(self):
        record_sale(sale_draft((self.product, 1, "500.00"), customer=self.customer))
        record_sale(sale_draft((self.product, 1, "200.00"), customer=self.customer, amount_paid="50.00"))
        record_sale(sale_draft((self.product, 1, "300.00"), customer=self.customer, amount_paid="300.00"))

        self.assertEqual(compute_outstanding_balance(self.customer), Decimal("650.00"))
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.outstanding_balance, Decimal("650.00"))

    def test_reconcile_reports_and_fixes_drift(self):
        record_sale(sale_draft((self.product, 1, "500.00"), customer=self.customer))
        Customer.objects.filter(pk=self.customer.pk).update(outstanding_balance=Decimal("123.00"))

        with self.assertLogs("ledger", level="WARNING"):
            report = reconcile_outstanding_balances()

        self.assertEqual(len(report), 1)
        self.assertEqual(report[0]["cached"], Decimal("123.00"))
        self.assertEqual(report[0]["computed"], Decimal("500.00"))
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.outstanding_balance, Decimal("123.00"))

        with self.assertLogs("ledger", level="WARNING"):
            reconcile_outstanding_balances(fix=True)
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.outstanding_balance, Decimal("500.00"))
        self.assertEqual(reconcile_outstanding_balances(), [])

    def test_override_to_paid_keeps_cached_and_computed_in_step(self):
        invoice = record_sale(sale_draft((self.product, 1, "500.00"), customer=self.customer)).value

        set_invoice_payment_status(invoice.pk, amount_paid=Decimal("100.00"), payment_status="paid")
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.outstanding_balance, Decimal("0.00"))
        self.assertEqual(compute_outstanding_balance(self.customer), Decimal("0.00"))
        self.assertEqual(reconcile_outstanding_balances(fix=True), [])

        result = reverse_sale(invoice.pk)

        self.assertTrue(result.accepted)
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.outstanding_balance, Decimal("0.00"))
        self.assertEqual(reconcile_outstanding_balances(), [])

    def test_payment_after_override_rederives_open_amount(self):
        invoice = record_sale(sale_draft((self.product, 1, "500.00"), customer=self.customer)).value
        set_invoice_payment_status(invoice.pk, amount_paid=Decimal("100.00"), payment_status="paid")

        result = record_invoice_payment(invoice.pk, amount=Decimal("50.00"))

        self.assertTrue(result.accepted)
        invoice.refresh_from_db()
        self.customer.refresh_from_db()
        self.assertEqual((invoice.amount_paid, invoice.payment_status), (Decimal("50.00"), "partial"))
        self.assertEqual(self.customer.outstanding_balance, Decimal("450.00"))
        self.assertEqual(compute_outstanding_balance(self.customer), Decimal("450.00"))


class SalesApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.staff = user_model.objects.create_user(username="sales-staff", password="pass1234", role="staff")
        self.admin = user_model.objects.create_user(username="sales-admin", password="pass1234", role="admin")
        self.customer = Customer.objects.create(name="Api Customer")
        self.product = make_product("API-SALE-001", quantity=10)

    def _create_invoice(self, quantity=1, unit_price="1000.00", **extra):
        self.client.force_authenticate(user=self.staff)
        response = self.client.post(
            "/api/v1/invoices/",
            {
                "customer": str(self.customer.pk),
                "invoice_date": str(timezone.localdate()),
                "items": [{"product": str(self.product.pk), "quantity": quantity, "unit_price": unit_price}],
                **extra,
            },
            format="json",
        )
        self.assertEqual(response.status_code, 201, response.content)
        return response.json()

    def test_create_invoice(self):
        with self.captureOnCommitCallbacks(execute=True):
            invoice = self._create_invoice()

        self.assertEqual(invoice["total_amount"], "1000.00")
        self.assertEqual(invoice["payment_status"], "pending")
        self.assertEqual(invoice["pending_amount"], "1000.00")
        self.assertEqual(invoice["customer_name"], "Api Customer")
        self.assertEqual(invoice["items"][0]["product_sku"], "API-SALE-001")
        self.assertTrue(AuditLog.objects.filter(action="invoice.create", entity_id=invoice["id"]).exists())

    def test_insufficient_stock_envelope(self):
        self.client.force_authenticate(user=self.staff)

        response = self.client.post(
            "/api/v1/invoices/",
            {
                "invoice_date": str(timezone.localdate()),
                "items": [{"product": str(self.product.pk), "quantity": 11, "unit_price": "1.00"}],
            },
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        payload = response.json()
        self.assertEqual(payload["code"], "insufficient_stock")
        self.assertEqual(payload["errors"]["available"], 10)
        self.assertEqual(payload["errors"]["requested"], 11)

    def test_payment_sequence_over_api(self):
        invoice = self._create_invoice()
        url = f"/api/v1/invoices/{invoice['id']}/record-payment/"

        first = self.client.post(url, {"amount": "400.00"}, format="json")
        second = self.client.post(url, {"amount": "600.00", "reference_no": "RCPT-2"}, format="json")
        third = self.client.post(url, {"amount": "0.01"}, format="json")

        self.assertEqual(first.status_code, 201)
        self.assertEqual(first.json()["payment_status"], "partial")
        self.assertEqual(second.json()["payment_status"], "paid")
        self.assertEqual(second.json()["pending"], "0.00")
        self.assertEqual(second.json()["payment"]["reference_no"], "RCPT-2")
        self.assertEqual(third.status_code, 400)
        self.assertEqual(third.json()["code"], "overpayment")
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.outstanding_balance, Decimal("0.00"))

    def test_payment_history_lists_rows(self):
        invoice = self._create_invoice(amount_paid="100.00")

        response = self.client.get(f"/api/v1/invoices/{invoice['id']}/payments/")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["total_paid"], "100.00")
        self.assertEqual(body["pending"], "900.00")
        self.assertEqual([row["notes"] for row in body["payments"]], ["Paid at invoice creation"])
        self.assertEqual(body["payments"][0]["created_by_name"], "sales-staff")

    def test_delete_invoice_requires_admin_and_reverses(self):
        invoice = self._create_invoice(quantity=4, unit_price="125.00")

        denied = self.client.delete(f"/api/v1/invoices/{invoice['id']}/")
        self.client.force_authenticate(user=self.admin)
        with self.captureOnCommitCallbacks(execute=True):
            deleted = self.client.delete(f"/api/v1/invoices/{invoice['id']}/")

        self.assertEqual(denied.status_code, 403)
        self.assertEqual(deleted.status_code, 204)
        self.product.refresh_from_db()
        self.customer.refresh_from_db()
        self.assertEqual(self.product.quantity, 10)
        self.assertEqual(self.customer.outstanding_balance, Decimal("0.00"))
        audit = AuditLog.objects.get(action="invoice.delete")
        self.assertEqual(audit.before_snapshot["total_amount"], "500.00")

    def test_delete_paid_invoice_is_refused(self):
        invoice = self._create_invoice(amount_paid="1000.00")
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/invoices/{invoice['id']}/")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "has_payments")

    def test_storage_failure_maps_to_503(self):
        self.client.force_authenticate(user=self.staff)

        with patch("sales.services.move_stock", side_effect=DatabaseError("could not serialize access")):
            with self.assertLogs("ledger", level="ERROR"):
                response = self.client.post(
                    "/api/v1/invoices/",
                    {
                        "invoice_date": str(timezone.localdate()),
                        "items": [{"product": str(self.product.pk), "quantity": 1, "unit_price": "5.00"}],
                    },
                    format="json",
                )

        self.assertEqual(response.status_code, 503)
        self.assertEqual(response.json()["code"], "storage_failure")
        self.assertFalse(Invoice.objects.exists())
        self.product.refresh_from_db()
        self.assertEqual(self.product.quantity, 10)

    def test_malformed_customer_filter_matches_nothing(self):
        record_sale(sale_draft((self.product, 1, "5.00")))
        self._create_invoice()

        garbage = self.client.get("/api/v1/invoices/", {"customer": "garbage"})
        by_customer = self.client.get("/api/v1/invoices/", {"customer": str(self.customer.pk)})

        self.assertEqual(garbage.status_code, 200)
        self.assertEqual(garbage.json()["count"], 0)
        self.assertEqual(by_customer.json()["count"], 1)

    def test_payments_of_missing_invoice_is_not_found(self):
        self.client.force_authenticate(user=self.staff)

        response = self.client.get("/api/v1/invoices/2a9b7f31-6666-4c1a-9f00-000000000000/payments/")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")
        self.assertEqual(response.json()["message"], "No Invoice matches the given query.")

    def test_overdue_filter_and_flag(self):
        yesterday = timezone.localdate() - datetime.timedelta(days=1)
        overdue = self._create_invoice(due_date=str(yesterday))
        self._create_invoice(due_date=str(yesterday), amount_paid="1000.00")
        self._create_invoice()

        response = self.client.get("/api/v1/invoices/", {"payment_status": "overdue"})

        self.assertEqual(response.status_code, 200)
        rows = response.json()["results"]
        self.assertEqual([row["id"] for row in rows], [overdue["id"]])
        self.assertTrue(rows[0]["is_overdue"])
        self.assertEqual(rows[0]["computed_payment_status"], "overdue")

    def test_override_is_admin_only_and_adjusts_balance(self):
        invoice = self._create_invoice()
        url = f"/api/v1/invoices/{invoice['id']}/payment/"

        denied = self.client.patch(url, {"amount_paid": "250.00", "payment_status": "partial"}, format="json")
        self.client.force_authenticate(user=self.admin)
        allowed = self.client.patch(url, {"amount_paid": "250.00", "payment_status": "partial"}, format="json")

        self.assertEqual(denied.status_code, 403)
        self.assertEqual(allowed.status_code, 200)
        self.assertEqual(allowed.json()["amount_paid"], "250.00")
        self.customer.refresh_from_db()
        self.assertEqual(self.customer.outstanding_balance, Decimal("750.00"))

    def test_customer_outstanding_endpoint(self):
        self._create_invoice()

        response = self.client.get(f"/api/v1/customers/{self.customer.pk}/outstanding/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["outstanding_balance"], "1000.00")
        self.assertEqual(response.json()["cached_balance"], "1000.00")

    def test_customer_with_invoices_cannot_be_deleted(self):
        self._create_invoice()
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/customers/{self.customer.pk}/")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "invalid_state")
        self.assertTrue(Customer.objects.filter(pk=self.customer.pk).exists())

    def test_staff_can_manage_customers(self):
        self.client.force_authenticate(user=self.staff)

        created = self.client.post("/api/v1/customers/", {"name": "New Buyer", "outstanding_balance": "999.00"}, format="json")

        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.json()["outstanding_balance"], "0.00")
