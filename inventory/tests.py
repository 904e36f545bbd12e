from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.db import DatabaseError, IntegrityError
from django.test import TestCase
from django.utils import timezone
from rest_framework.test import APIClient

from core.models import AuditLog
from inventory.models import InventoryMovement, Product, Purchase, PurchaseItem, Vendor
from inventory.services import (
    adjust_stock,
    create_product,
    create_purchase,
    receive_purchase,
    record_purchase_payment,
    reverse_purchase,
    update_order_status,
)


def make_product(sku, quantity=0, **fields):
    result = create_product({"sku": sku, "name": f"Product {sku}", "quantity": quantity, **fields})
    assert result.accepted, result.message
    return result.value


def purchase_draft(vendor, *lines, **extra):
    return {
        "vendor": vendor.pk,
        "purchase_date": timezone.localdate(),
        "items": [
            {"product": product.pk, "quantity": quantity, "purchase_price": price}
            for product, quantity, price in lines
        ],
        **extra,
    }


class StockAdjustmentTests(TestCase):
    def setUp(self):
        self.product = make_product("ADJ-001", quantity=10, reorder_level=5)

    def test_opening_stock_is_recorded_as_adjustment_movement(self):
        movement = InventoryMovement.objects.get(product=self.product)

        self.assertEqual(self.product.quantity, 10)
        self.assertEqual(movement.movement_type, InventoryMovement.MovementType.STOCK_IN)
        self.assertEqual(movement.reference_type, InventoryMovement.ReferenceType.ADJUSTMENT)
        self.assertEqual((movement.previous_quantity, movement.new_quantity), (0, 10))
        self.assertEqual(movement.notes, "Opening stock")

    def test_adjustment_records_signed_delta(self):
        up = adjust_stock(self.product.pk, 15, notes="recount")
        down = adjust_stock(self.product.pk, 4)

        self.assertTrue(up.accepted)
        self.assertEqual(up.value.movement.movement_type, InventoryMovement.MovementType.STOCK_IN)
        self.assertEqual(up.value.movement.quantity, 5)
        self.assertEqual(up.value.movement.notes, "recount")
        self.assertEqual(down.value.movement.movement_type, InventoryMovement.MovementType.STOCK_OUT)
        self.assertEqual(down.value.movement.quantity, 11)
        self.assertEqual((down.value.movement.previous_quantity, down.value.movement.new_quantity), (15, 4))
        self.product.refresh_from_db()
        self.assertEqual(self.product.quantity, 4)

    def test_adjusting_to_current_quantity_writes_nothing(self):
        result = adjust_stock(self.product.pk, 10)

        self.assertTrue(result.accepted)
        self.assertIsNone(result.value.movement)
        self.assertEqual(InventoryMovement.objects.filter(product=self.product).count(), 1)

    def test_negative_target_is_rejected_before_any_write(self):
        result = adjust_stock(self.product.pk, -1)

        self.assertFalse(result.accepted)
        self.assertEqual(result.reason, "validation_failed")
        self.product.refresh_from_db()
        self.assertEqual(self.product.quantity, 10)

    def test_unknown_product_is_not_found(self):
        result = adjust_stock("4b1d0f6e-1111-4c1a-9f00-000000000000", 3)

        self.assertFalse(result.accepted)
        self.assertEqual(result.reason, "not_found")

    def test_duplicate_sku_lost_race_is_a_validation_rejection(self):
        with patch(
            "inventory.services.Product.objects.create",
            side_effect=IntegrityError("UNIQUE constraint failed: inventory_product.sku"),
        ):
            result = create_product({"sku": "ADJ-002", "name": "Raced Product", "quantity": 4})

        self.assertFalse(result.accepted)
        self.assertEqual(result.reason, "validation_failed")
        self.assertFalse(result.retryable)
        self.assertEqual(result.details, {"sku": "ADJ-002"})
        self.assertFalse(Product.objects.filter(sku="ADJ-002").exists())
        self.assertEqual(InventoryMovement.objects.count(), 1)

    def test_storage_failure_is_tagged_retryable_and_rolled_back(self):
        with patch("inventory.services.move_stock", side_effect=DatabaseError("lock timeout")):
            with self.assertLogs("ledger", level="ERROR"):
                result = adjust_stock(self.product.pk, 2)

        self.assertFalse(result.accepted)
        self.assertEqual(result.reason, "storage_failure")
        self.assertTrue(result.retryable)
        self.product.refresh_from_db()
        self.assertEqual(self.product.quantity, 10)


class PurchaseLifecycleTests(TestCase):
    def setUp(self):
        self.vendor = Vendor.objects.create(name="Acme Supplies")
        self.first = make_product("PUR-001")
        self.second = make_product("PUR-002", quantity=2, purchase_price=Decimal("8.00"))

    def _create(self, *lines, **extra):
        result = create_purchase(purchase_draft(self.vendor, *lines, **extra))
        self.assertTrue(result.accepted, result.message)
        return result.value

    def _scenario_purchase(self):
        return self._create((self.first, 5, "10.00"), (self.second, 3, "20.00"))

    def test_creation_computes_totals_and_leaves_stock_untouched(self):
        movements_before = InventoryMovement.objects.count()

        purchase = self._scenario_purchase()

        self.assertEqual(purchase.purchase_number, f"PO-{timezone.localdate().year}-001")
        self.assertEqual(purchase.subtotal, Decimal("110.00"))
        self.assertEqual(purchase.total_amount, Decimal("110.00"))
        self.assertEqual(purchase.order_status, Purchase.OrderStatus.ORDERED)
        self.assertEqual(purchase.payment_status, "pending")
        self.assertEqual(list(purchase.items.values_list("line_no", flat=True)), [1, 2])
        self.assertEqual(InventoryMovement.objects.count(), movements_before)
        self.first.refresh_from_db()
        self.second.refresh_from_db()
        self.assertEqual((self.first.quantity, self.second.quantity), (0, 2))

    def test_tax_discount_and_shipping_roll_into_total(self):
        purchase = self._create(
            (self.first, 10, "10.00"),
            tax_rate="18",
            discount_amount="5.00",
            discount_rate="50",
            shipping_cost="7.50",
        )

        self.assertEqual(purchase.tax_amount, Decimal("18.00"))
        self.assertEqual(purchase.discount_amount, Decimal("5.00"))
        self.assertEqual(purchase.total_amount, Decimal("120.50"))

    def test_sequential_purchases_get_sequential_numbers(self):
        first = self._create((self.first, 1, "1.00"))
        second = self._create((self.first, 1, "1.00"))

        year = timezone.localdate().year
        self.assertEqual([first.purchase_number, second.purchase_number], [f"PO-{year}-001", f"PO-{year}-002"])

    def test_unknown_product_rejects_whole_purchase(self):
        draft = purchase_draft(self.vendor, (self.first, 1, "1.00"))
        draft["items"].append({"product": "7d3f1c2a-2222-4c1a-9f00-000000000000", "quantity": 1, "purchase_price": "1.00"})

        result = create_purchase(draft)

        self.assertFalse(result.accepted)
        self.assertEqual(result.reason, "not_found")
        self.assertFalse(Purchase.objects.exists())

    def test_empty_item_list_is_a_validation_error(self):
        result = create_purchase({"vendor": self.vendor.pk, "purchase_date": timezone.localdate(), "items": []})

        self.assertFalse(result.accepted)
        self.assertEqual(result.reason, "validation_failed")

    def test_receive_applies_stock_and_refreshes_purchase_price(self):
        purchase = self._scenario_purchase()

        result = receive_purchase(purchase.pk)

        self.assertTrue(result.accepted)
        purchase.refresh_from_db()
        self.first.refresh_from_db()
        self.second.refresh_from_db()
        self.assertEqual(purchase.order_status, Purchase.OrderStatus.RECEIVED)
        self.assertIsNotNone(purchase.received_at)
        self.assertEqual((self.first.quantity, self.second.quantity), (5, 5))
        self.assertEqual(self.second.purchase_price, Decimal("20.00"))

        movements = InventoryMovement.objects.filter(reference_type="purchase", reference_id=purchase.pk)
        self.assertEqual(movements.count(), 2)
        second_movement = movements.get(product=self.second)
        self.assertEqual((second_movement.previous_quantity, second_movement.new_quantity), (2, 5))
        self.assertEqual(second_movement.notes, f"Received against {purchase.purchase_number}")

    def test_second_receive_is_rejected_without_new_movements(self):
        purchase = self._scenario_purchase()
        receive_purchase(purchase.pk)
        movements_after_first = InventoryMovement.objects.count()

        result = receive_purchase(purchase.pk)

        self.assertFalse(result.accepted)
        self.assertEqual(result.reason, "invalid_state")
        self.assertEqual(InventoryMovement.objects.count(), movements_after_first)
        self.first.refresh_from_db()
        self.assertEqual(self.first.quantity, 5)

    def test_cancelled_purchase_cannot_be_received(self):
        purchase = self._scenario_purchase()
        update_order_status(purchase.pk, "cancelled")

        result = receive_purchase(purchase.pk)

        self.assertEqual(result.reason, "invalid_state")
        self.first.refresh_from_db()
        self.assertEqual(self.first.quantity, 0)

    def test_partial_receipt_then_remainder(self):
        purchase = self._scenario_purchase()
        first_item = purchase.items.get(product=self.first)

        partial = receive_purchase(purchase.pk, lines=[{"item": first_item.pk, "quantity": 2}])

        self.assertTrue(partial.accepted)
        purchase.refresh_from_db()
        first_item.refresh_from_db()
        self.first.refresh_from_db()
        self.assertEqual(purchase.order_status, Purchase.OrderStatus.PARTIALLY_RECEIVED)
        self.assertEqual(first_item.quantity_received, 2)
        self.assertEqual(self.first.quantity, 2)

        rest = receive_purchase(purchase.pk)

        self.assertTrue(rest.accepted)
        purchase.refresh_from_db()
        self.first.refresh_from_db()
        self.second.refresh_from_db()
        self.assertEqual(purchase.order_status, Purchase.OrderStatus.RECEIVED)
        self.assertEqual((self.first.quantity, self.second.quantity), (5, 5))
        self.assertEqual(
            InventoryMovement.objects.filter(reference_type="purchase", product=self.first).count(),
            2,
        )

    def test_receiving_more_than_remaining_is_rejected(self):
        purchase = self._scenario_purchase()
        first_item = purchase.items.get(product=self.first)

        result = receive_purchase(purchase.pk, lines=[{"item": first_item.pk, "quantity": 6}])

        self.assertFalse(result.accepted)
        self.assertEqual(result.reason, "validation_failed")
        self.assertEqual(result.details["remaining"], 5)
        first_item.refresh_from_db()
        self.assertEqual(first_item.quantity_received, 0)

    def test_reverse_received_purchase_rolls_back_stock(self):
        purchase = self._scenario_purchase()
        receive_purchase(purchase.pk)

        result = reverse_purchase(purchase.pk)

        self.assertTrue(result.accepted)
        self.first.refresh_from_db()
        self.second.refresh_from_db()
        self.assertEqual((self.first.quantity, self.second.quantity), (0, 2))
        self.assertFalse(Purchase.objects.filter(pk=purchase.pk).exists())
        self.assertFalse(PurchaseItem.objects.filter(purchase_id=purchase.pk).exists())
        reversals = InventoryMovement.objects.filter(reference_type="return", reference_id=purchase.pk)
        self.assertEqual(reversals.count(), 2)
        self.assertTrue(all(movement.notes == "reversal" for movement in reversals))

    def test_reverse_floors_rollback_at_zero(self):
        purchase = self._scenario_purchase()
        receive_purchase(purchase.pk)
        adjust_stock(self.first.pk, 2)

        result = reverse_purchase(purchase.pk)

        self.assertTrue(result.accepted)
        self.first.refresh_from_db()
        self.assertEqual(self.first.quantity, 0)
        rollback = InventoryMovement.objects.get(reference_type="return", product=self.first)
        self.assertEqual(rollback.quantity, 2)

    def test_reverse_unreceived_purchase_writes_no_movements(self):
        purchase = self._scenario_purchase()
        movements_before = InventoryMovement.objects.count()

        result = reverse_purchase(purchase.pk)

        self.assertTrue(result.accepted)
        self.assertEqual(result.value.movements, [])
        self.assertEqual(InventoryMovement.objects.count(), movements_before)

    def test_reverse_with_payments_is_rejected(self):
        purchase = self._scenario_purchase()
        record_purchase_payment(purchase.pk, amount=Decimal("10.00"))

        result = reverse_purchase(purchase.pk)

        self.assertFalse(result.accepted)
        self.assertEqual(result.reason, "has_payments")
        self.assertTrue(Purchase.objects.filter(pk=purchase.pk).exists())

    def test_status_update_guards(self):
        purchase = self._scenario_purchase()

        self.assertTrue(update_order_status(purchase.pk, "draft").accepted)
        forced = update_order_status(purchase.pk, "received")
        unknown = update_order_status(purchase.pk, "shipped")

        self.assertEqual(forced.reason, "validation_failed")
        self.assertEqual(unknown.reason, "validation_failed")
        purchase.refresh_from_db()
        self.assertEqual(purchase.order_status, Purchase.OrderStatus.DRAFT)

        receive_purchase(purchase.pk)
        after_receipt = update_order_status(purchase.pk, "cancelled")
        self.assertEqual(after_receipt.reason, "invalid_state")

    def test_payments_recompute_paid_amount_from_rows(self):
        purchase = self._scenario_purchase()

        first = record_purchase_payment(purchase.pk, amount=Decimal("50.00"), mode="bank", reference_no="TX-1")
        purchase.refresh_from_db()
        self.assertEqual((purchase.amount_paid, purchase.payment_status), (Decimal("50.00"), "partial"))
        self.assertEqual(first.value.summary["pending"], Decimal("60.00"))

        record_purchase_payment(purchase.pk, amount=Decimal("60.00"))
        purchase.refresh_from_db()
        self.assertEqual((purchase.amount_paid, purchase.payment_status), (Decimal("110.00"), "paid"))

        extra = record_purchase_payment(purchase.pk, amount=Decimal("0.01"))
        self.assertEqual(extra.reason, "overpayment")
        purchase.refresh_from_db()
        self.assertEqual(purchase.amount_paid, Decimal("110.00"))
        self.assertEqual(purchase.payments.count(), 2)


class InventoryApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.staff = user_model.objects.create_user(username="inv-staff", password="pass1234", role="staff")
        self.manager = user_model.objects.create_user(username="inv-manager", password="pass1234", role="manager")
        self.admin = user_model.objects.create_user(username="inv-admin", password="pass1234", role="admin")

        self.vendor = Vendor.objects.create(name="Acme Supplies")
        self.first = make_product("API-001", quantity=3, reorder_level=5, category="Snacks")
        self.second = make_product("API-002", quantity=50, reorder_level=5)

    def _create_purchase(self):
        self.client.force_authenticate(user=self.manager)
        response = self.client.post(
            "/api/v1/purchases/",
            {
                "vendor": str(self.vendor.pk),
                "purchase_date": str(timezone.localdate()),
                "items": [
                    {"product": str(self.first.pk), "quantity": 5, "purchase_price": "10.00"},
                    {"product": str(self.second.pk), "quantity": 3, "purchase_price": "20.00"},
                ],
            },
            format="json",
        )
        self.assertEqual(response.status_code, 201, response.content)
        return response.json()

    def test_create_product_records_opening_stock_and_ignores_quantity(self):
        self.client.force_authenticate(user=self.manager)

        with self.captureOnCommitCallbacks(execute=True):
            response = self.client.post(
                "/api/v1/products/",
                {"sku": "API-NEW", "name": "New Product", "quantity": 99, "opening_quantity": 12},
                format="json",
            )

        self.assertEqual(response.status_code, 201, response.content)
        payload = response.json()
        self.assertEqual(payload["quantity"], 12)
        self.assertNotIn("opening_quantity", payload)
        self.assertEqual(InventoryMovement.objects.filter(product_id=payload["id"]).count(), 1)
        self.assertTrue(AuditLog.objects.filter(action="product.create", entity_id=payload["id"]).exists())

    def test_staff_cannot_edit_catalog_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.staff)

        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.post("/api/v1/products/", {"sku": "NOPE", "name": "Nope"}, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("permission_denied" in message for message in cm.output))

    def test_update_cannot_touch_quantity(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.patch(f"/api/v1/products/{self.first.pk}/", {"quantity": 500, "name": "Renamed"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.first.refresh_from_db()
        self.assertEqual((self.first.quantity, self.first.name), (3, "Renamed"))

    def test_stock_adjustment_endpoint(self):
        self.client.force_authenticate(user=self.manager)

        with self.captureOnCommitCallbacks(execute=True):
            response = self.client.post(f"/api/v1/products/{self.second.pk}/stock/", {"quantity": 45, "notes": "damaged"}, format="json")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(payload["product"]["quantity"], 45)
        self.assertEqual(payload["movement"]["movement_type"], "stock_out")
        self.assertEqual(payload["movement"]["quantity"], 5)
        audit = AuditLog.objects.get(action="stock.adjust")
        self.assertEqual(audit.before_snapshot, {"quantity": 50})
        self.assertEqual(audit.after_snapshot, {"quantity": 45})

    def test_stock_adjustment_storage_failure_maps_to_503(self):
        self.client.force_authenticate(user=self.manager)

        with patch("inventory.services.move_stock", side_effect=DatabaseError("connection lost")):
            with self.assertLogs("ledger", level="ERROR"):
                response = self.client.post(f"/api/v1/products/{self.second.pk}/stock/", {"quantity": 1}, format="json")

        self.assertEqual(response.status_code, 503)
        payload = response.json()
        self.assertEqual(payload["code"], "storage_failure")
        self.assertFalse(payload["success"])
        self.second.refresh_from_db()
        self.assertEqual(self.second.quantity, 50)

    def test_product_with_history_cannot_be_deleted(self):
        self.client.force_authenticate(user=self.admin)
        blank = make_product("API-BLANK")

        refused = self.client.delete(f"/api/v1/products/{self.first.pk}/")
        deleted = self.client.delete(f"/api/v1/products/{blank.pk}/")

        self.assertEqual(refused.status_code, 400)
        self.assertEqual(refused.json()["code"], "invalid_state")
        self.assertEqual(deleted.status_code, 204)
        self.assertTrue(Product.objects.filter(pk=self.first.pk).exists())

    def test_low_stock_list_and_filter(self):
        self.client.force_authenticate(user=self.staff)

        listed = self.client.get("/api/v1/products/low-stock/")
        filtered = self.client.get("/api/v1/products/", {"low_stock": "true"})

        self.assertEqual(listed.status_code, 200)
        self.assertEqual([row["sku"] for row in listed.json()], ["API-001"])
        self.assertEqual([row["sku"] for row in filtered.json()["results"]], ["API-001"])
        self.assertTrue(listed.json()[0]["is_low_stock"])

    def test_product_history_and_movement_filters(self):
        self.client.force_authenticate(user=self.manager)
        self.client.post(f"/api/v1/products/{self.first.pk}/stock/", {"quantity": 8}, format="json")

        history = self.client.get(f"/api/v1/products/{self.first.pk}/history/")
        movements = self.client.get(
            "/api/v1/inventory/movements/",
            {"product": str(self.first.pk), "movement_type": "stock_in", "reference_type": "adjustment"},
        )

        self.assertEqual(history.status_code, 200)
        self.assertEqual(history.json()["count"], 2)
        adjustment = next(row for row in history.json()["results"] if row["created_by_name"] == "inv-manager")
        self.assertEqual((adjustment["previous_quantity"], adjustment["new_quantity"]), (3, 8))
        self.assertEqual(adjustment["product_sku"], "API-001")
        self.assertEqual(movements.json()["count"], 2)
        self.assertIn("pagination", movements.json())

    def test_purchase_receive_flow_over_api(self):
        purchase = self._create_purchase()
        self.assertEqual(purchase["order_status"], "ordered")
        self.assertEqual(purchase["subtotal"], "110.00")
        self.assertEqual(len(purchase["items"]), 2)

        self.client.force_authenticate(user=self.staff)
        forbidden = self.client.post(f"/api/v1/purchases/{purchase['id']}/receive/", {}, format="json")
        self.assertEqual(forbidden.status_code, 403)

        self.client.force_authenticate(user=self.manager)
        with self.captureOnCommitCallbacks(execute=True):
            received = self.client.post(f"/api/v1/purchases/{purchase['id']}/receive/", {}, format="json")
        again = self.client.post(f"/api/v1/purchases/{purchase['id']}/receive/", {}, format="json")

        self.assertEqual(received.status_code, 200)
        self.assertEqual(received.json()["order_status"], "received")
        self.assertEqual(again.status_code, 400)
        self.assertEqual(again.json()["code"], "invalid_state")
        self.first.refresh_from_db()
        self.assertEqual(self.first.quantity, 8)
        self.assertTrue(AuditLog.objects.filter(action="purchase.receive", entity_id=purchase["id"]).exists())

    def test_order_status_endpoint_refuses_received(self):
        purchase = self._create_purchase()

        forced = self.client.patch(f"/api/v1/purchases/{purchase['id']}/order-status/", {"order_status": "received"}, format="json")
        cancelled = self.client.patch(f"/api/v1/purchases/{purchase['id']}/order-status/", {"order_status": "cancelled"}, format="json")

        self.assertEqual(forced.status_code, 400)
        self.assertEqual(forced.json()["code"], "validation_failed")
        self.assertEqual(cancelled.status_code, 200)
        self.assertEqual(cancelled.json()["order_status"], "cancelled")

    def test_unknown_purchase_is_404(self):
        self.client.force_authenticate(user=self.manager)

        response = self.client.post("/api/v1/purchases/8c0e4b52-3333-4c1a-9f00-000000000000/receive/", {}, format="json")

        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["code"], "not_found")

    def test_missing_product_routes_return_not_found(self):
        self.client.force_authenticate(user=self.manager)
        missing = "8c0e4b52-4444-4c1a-9f00-000000000000"

        stock = self.client.post(f"/api/v1/products/{missing}/stock/", {"quantity": 1}, format="json")
        history = self.client.get(f"/api/v1/products/{missing}/history/")
        payments = self.client.get(f"/api/v1/purchases/{missing}/payments/")

        for response in (stock, history, payments):
            self.assertEqual(response.status_code, 404)
            self.assertEqual(response.json()["code"], "not_found")

    def test_malformed_id_filters_match_nothing(self):
        self._create_purchase()
        self.client.force_authenticate(user=self.staff)

        products = self.client.get("/api/v1/products/", {"vendor": "not-a-uuid"})
        purchases = self.client.get("/api/v1/purchases/", {"vendor": "not-a-uuid"})
        movements = self.client.get("/api/v1/inventory/movements/", {"product": "not-a-uuid"})
        by_vendor = self.client.get("/api/v1/purchases/", {"vendor": str(self.vendor.pk)})

        self.assertEqual(products.json()["count"], 0)
        self.assertEqual(purchases.json()["count"], 0)
        self.assertEqual(movements.json()["count"], 0)
        self.assertEqual(by_vendor.json()["count"], 1)

    def test_purchase_payments_and_override(self):
        purchase = self._create_purchase()
        url = f"/api/v1/purchases/{purchase['id']}"

        self.client.force_authenticate(user=self.staff)
        paid = self.client.post(f"{url}/record-payment/", {"amount": "50.00", "mode": "bank"}, format="json")
        over = self.client.post(f"{url}/record-payment/", {"amount": "60.01"}, format="json")
        zero = self.client.post(f"{url}/record-payment/", {"amount": "0"}, format="json")
        history = self.client.get(f"{url}/payments/")
        override_denied = self.client.patch(f"{url}/payment/", {"amount_paid": "110.00", "payment_status": "paid"}, format="json")

        self.assertEqual(paid.status_code, 201)
        self.assertEqual(paid.json()["total_paid"], "50.00")
        self.assertEqual(paid.json()["pending"], "60.00")
        self.assertEqual(paid.json()["payment_status"], "partial")
        self.assertEqual(paid.json()["payment"]["mode"], "bank")
        self.assertEqual(over.status_code, 400)
        self.assertEqual(over.json()["code"], "overpayment")
        self.assertIn("Pending: 60.00", over.json()["message"])
        self.assertEqual(zero.status_code, 400)
        self.assertEqual(zero.json()["code"], "validation_error")
        self.assertEqual(len(history.json()["payments"]), 1)
        self.assertEqual(history.json()["total_amount"], "110.00")
        self.assertEqual(override_denied.status_code, 403)

        self.client.force_authenticate(user=self.admin)
        with self.captureOnCommitCallbacks(execute=True):
            overridden = self.client.patch(f"{url}/payment/", {"amount_paid": "110.00", "payment_status": "paid"}, format="json")

        self.assertEqual(overridden.status_code, 200)
        self.assertEqual(overridden.json()["amount_paid"], "110.00")
        self.assertEqual(overridden.json()["payment_status"], "paid")
        audit = AuditLog.objects.get(action="payment.override")
        self.assertEqual(audit.before_snapshot["amount_paid"], "50.00")
        self.assertEqual(audit.after_snapshot["payment_status"], "paid")
        self.assertEqual(Purchase.objects.get(pk=purchase["id"]).payments.count(), 1)

    def test_delete_purchase_requires_admin_and_reverses_stock(self):
        purchase = self._create_purchase()
        self.client.post(f"/api/v1/purchases/{purchase['id']}/receive/", {}, format="json")

        denied = self.client.delete(f"/api/v1/purchases/{purchase['id']}/")
        self.client.force_authenticate(user=self.admin)
        with self.captureOnCommitCallbacks(execute=True):
            deleted = self.client.delete(f"/api/v1/purchases/{purchase['id']}/")

        self.assertEqual(denied.status_code, 403)
        self.assertEqual(deleted.status_code, 204)
        self.first.refresh_from_db()
        self.second.refresh_from_db()
        self.assertEqual((self.first.quantity, self.second.quantity), (3, 50))
        audit = AuditLog.objects.get(action="purchase.delete")
        self.assertEqual(len(audit.after_snapshot["reversed_movements"]), 2)

    def test_vendor_with_purchases_cannot_be_deleted(self):
        self._create_purchase()
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/vendors/{self.vendor.pk}/")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "invalid_state")
        self.assertTrue(Vendor.objects.filter(pk=self.vendor.pk).exists())
