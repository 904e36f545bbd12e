from decimal import Decimal

from django.db import DatabaseError, transaction
from django.test import SimpleTestCase, TestCase, override_settings
from django.utils import timezone

from inventory.models import Purchase, Vendor
from ledger.models import DocumentSequence
from ledger.services import (
    LedgerRejectError,
    compute_order_totals,
    derive_payment_status,
    execute,
    format_document_number,
    next_document_number,
    parse_money,
    parse_quantity,
    pending_amount,
    reject,
)


class OrderTotalsTests(SimpleTestCase):
    def test_tax_rate_applies_to_subtotal(self):
        totals = compute_order_totals([{"quantity": 2, "unit_price": "100.00"}], tax_rate="10")

        self.assertEqual(totals.subtotal, Decimal("200.00"))
        self.assertEqual(totals.tax_amount, Decimal("20.00"))
        self.assertEqual(totals.total_amount, Decimal("220.00"))

    def test_explicit_amounts_win_over_rates(self):
        totals = compute_order_totals(
            [{"quantity": 4, "unit_price": "25.00"}],
            tax_rate="10",
            tax_amount="3.00",
            discount_rate="50",
            discount_amount="5.00",
        )

        self.assertEqual((totals.tax_amount, totals.discount_amount), (Decimal("3.00"), Decimal("5.00")))
        self.assertEqual(totals.total_amount, Decimal("98.00"))

    def test_line_discounts_and_shipping(self):
        totals = compute_order_totals(
            [
                {"quantity": 3, "unit_price": "10.00", "discount": "5.00"},
                {"quantity": 1, "unit_price": "0.99"},
            ],
            discount_rate="10",
            shipping_cost="4.50",
        )

        self.assertEqual(totals.line_totals, [Decimal("25.00"), Decimal("0.99")])
        self.assertEqual(totals.discount_amount, Decimal("2.60"))
        self.assertEqual(totals.total_amount, Decimal("27.89"))

    def test_discount_larger_than_order_is_rejected(self):
        with self.assertRaises(LedgerRejectError) as ctx:
            compute_order_totals([{"quantity": 1, "unit_price": "10.00"}], discount_amount="11.00")

        self.assertEqual(ctx.exception.reason, "validation_failed")

    def test_line_discount_larger_than_line_is_rejected(self):
        with self.assertRaises(LedgerRejectError) as ctx:
            compute_order_totals([{"quantity": 1, "unit_price": "10.00", "discount": "12.00"}])

        self.assertEqual(ctx.exception.details, {"line": 1})


class PaymentStatusTests(SimpleTestCase):
    def test_status_follows_paid_amount(self):
        cases = [
            ("1000.00", "0.00", "pending"),
            ("1000.00", "0.01", "partial"),
            ("1000.00", "999.99", "partial"),
            ("1000.00", "1000.00", "paid"),
            ("1000.00", "1000.01", "paid"),
            ("0.00", "0.00", "paid"),
        ]
        for total, paid, expected in cases:
            with self.subTest(total=total, paid=paid):
                self.assertEqual(derive_payment_status(Decimal(total), Decimal(paid)), expected)

    def test_pending_never_goes_negative(self):
        self.assertEqual(pending_amount(Decimal("100"), Decimal("40")), Decimal("60.00"))
        self.assertEqual(pending_amount(Decimal("100"), Decimal("100.01")), Decimal("0.00"))


class InputParsingTests(SimpleTestCase):
    def test_quantity_accepts_whole_numbers_only(self):
        self.assertEqual(parse_quantity("3", "quantity"), 3)
        self.assertEqual(parse_quantity(Decimal("4.0"), "quantity"), 4)
        self.assertEqual(parse_quantity(0, "quantity", allow_zero=True), 0)

        for bad in ("2.5", "abc", True, 0, -1, None):
            with self.subTest(value=bad):
                with self.assertRaises(LedgerRejectError):
                    parse_quantity(bad, "quantity")

    def test_money_rounds_half_up_and_rejects_negatives(self):
        self.assertEqual(parse_money("10.005", "amount"), Decimal("10.01"))
        self.assertEqual(parse_money(7, "amount"), Decimal("7.00"))
        self.assertIsNone(parse_money("", "amount"))

        for bad in ("-1", "ten", "NaN"):
            with self.subTest(value=bad):
                with self.assertRaises(LedgerRejectError):
                    parse_money(bad, "amount")
        with self.assertRaises(LedgerRejectError):
            parse_money(None, "amount", required=True)


class ExecuteTests(TestCase):
    def test_accepted_result_carries_value(self):
        result = execute("test.ok", lambda value: value * 2, 21)

        self.assertTrue(result.accepted)
        self.assertEqual(result.value, 42)
        self.assertIsNone(result.reason)

    def test_rejection_rolls_back_earlier_writes(self):
        def handler():
            DocumentSequence.objects.create(prefix="TMP", year=2030)
            reject("invalid_state", "Stop here.", step=2)

        result = execute("test.reject", handler)

        self.assertFalse(result.accepted)
        self.assertEqual((result.reason, result.message, result.details), ("invalid_state", "Stop here.", {"step": 2}))
        self.assertFalse(result.retryable)
        self.assertFalse(DocumentSequence.objects.filter(prefix="TMP").exists())

    def test_validator_rejection_skips_handler(self):
        calls = []

        def validator(amount):
            parse_money(amount, "amount")

        result = execute("test.validate", calls.append, "-3", validator=validator)

        self.assertEqual(result.reason, "validation_failed")
        self.assertEqual(calls, [])

    def test_database_error_becomes_retryable_storage_failure(self):
        def handler():
            DocumentSequence.objects.create(prefix="TMP", year=2030)
            raise DatabaseError("server closed the connection unexpectedly")

        with self.assertLogs("ledger", level="ERROR") as cm:
            result = execute("test.storage", handler)

        self.assertFalse(result.accepted)
        self.assertEqual(result.reason, "storage_failure")
        self.assertTrue(result.retryable)
        self.assertTrue(any("ledger_operation_failed" in line for line in cm.output))
        self.assertFalse(DocumentSequence.objects.filter(prefix="TMP").exists())


class DocumentNumberTests(TestCase):
    def _allocate(self, prefix="PO", year=2030):
        with transaction.atomic():
            return next_document_number(prefix, Purchase.objects.all(), "purchase_number", year=year)

    def test_numbers_increase_per_prefix_and_year(self):
        self.assertEqual(self._allocate(), "PO-2030-001")
        self.assertEqual(self._allocate(), "PO-2030-002")
        self.assertEqual(self._allocate(year=2031), "PO-2031-001")
        self.assertEqual(self._allocate(prefix="GRN"), "GRN-2030-001")

    def test_counter_seeds_from_highest_stored_number(self):
        vendor = Vendor.objects.create(name="Legacy Vendor")
        for number in ("PO-2030-002", "PO-2030-007", "PO-2030-LEGACY", "PO-2029-050"):
            Purchase.objects.create(purchase_number=number, vendor=vendor, purchase_date=timezone.localdate())

        self.assertEqual(self._allocate(), "PO-2030-008")
        self.assertEqual(DocumentSequence.objects.get(prefix="PO", year=2030).last_value, 8)

    @override_settings(LEDGER_DOCUMENT_NUMBER_WIDTH=5)
    def test_width_is_configurable(self):
        self.assertEqual(format_document_number("INV", 2030, 12), "INV-2030-00012")

    def test_counter_overflows_width_instead_of_wrapping(self):
        self.assertEqual(format_document_number("INV", 2030, 1234), "INV-2030-1234")
