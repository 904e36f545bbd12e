from dataclasses import dataclass, field
from typing import Any

from django.db import IntegrityError, transaction
from django.db.models import F
from django.utils import timezone

from common.utils import to_money
from inventory.models import InventoryMovement, Product, Purchase, PurchaseItem, Vendor
from ledger.services import (
    REJECT_INSUFFICIENT_STOCK,
    REJECT_HAS_PAYMENTS,
    REJECT_INVALID_STATE,
    REJECT_NOT_FOUND,
    REJECT_VALIDATION,
    compute_order_totals,
    default_payment_mode,
    execute,
    lock_order,
    next_document_number,
    parse_money,
    parse_quantity,
    parse_uuid,
    record_payment,
    reject,
    set_payment_status_direct,
    validate_payment_mode,
)

PURCHASE_NUMBER_PREFIX = "PO"
REVERSAL_NOTE = "reversal"

Movement = InventoryMovement.MovementType
Reference = InventoryMovement.ReferenceType
OrderStatus = Purchase.OrderStatus

# Targets reachable through the generic status update. `received` is written
# only by receive_purchase so the stock side effects always fire.
MANUAL_ORDER_STATUSES = (
    OrderStatus.DRAFT,
    OrderStatus.ORDERED,
    OrderStatus.PARTIALLY_RECEIVED,
    OrderStatus.CANCELLED,
)


# Stock primitives


def lock_products(product_ids):
    """Row-lock the given products in primary-key order and return them by id.

    Every writer locks products in the same global order so that two
    operations over overlapping product sets cannot deadlock.
    """
    wanted = {}
    for raw_id in product_ids:
        pk = parse_uuid(raw_id)
        if pk is None:
            reject(REJECT_NOT_FOUND, f"Product {raw_id} not found.", product_id=str(raw_id))
        wanted[pk] = raw_id

    products = {
        product.pk: product
        for product in Product.objects.select_for_update().filter(pk__in=list(wanted)).order_by("pk")
    }
    for pk, raw_id in wanted.items():
        if pk not in products:
            reject(REJECT_NOT_FOUND, f"Product {raw_id} not found.", product_id=str(raw_id))
    return products


def move_stock(
    product,
    *,
    movement_type,
    quantity,
    reference_type,
    reference_id=None,
    notes="",
    user=None,
    purchase_price=None,
):
    """Apply one quantity change to a locked product and append its movement row.

    The previous quantity is read from the locked row, so it reflects every
    change committed before the lock was taken and every change already made
    in this transaction.
    """
    previous_quantity = product.quantity
    if movement_type == Movement.STOCK_IN:
        new_quantity = previous_quantity + quantity
    else:
        new_quantity = previous_quantity - quantity
        if new_quantity < 0:
            reject(
                REJECT_INSUFFICIENT_STOCK,
                f"Insufficient stock for {product.name}. Available: {previous_quantity}, requested: {quantity}",
                product_id=str(product.pk),
                sku=product.sku,
                available=previous_quantity,
                requested=quantity,
            )

    product.quantity = new_quantity
    update_fields = ["quantity", "updated_at"]
    if purchase_price is not None:
        product.purchase_price = purchase_price
        update_fields.append("purchase_price")
    product.save(update_fields=update_fields)

    return InventoryMovement.objects.create(
        product=product,
        movement_type=movement_type,
        quantity=quantity,
        reference_type=reference_type,
        reference_id=reference_id,
        previous_quantity=previous_quantity,
        new_quantity=new_quantity,
        notes=notes or "",
        created_by=user,
    )


def low_stock_products():
    return Product.objects.filter(is_active=True, quantity__lte=F("reorder_level")).select_related("vendor")


# Catalog


def _validate_new_product(data, *, user=None):
    for field_name in ("sku", "name"):
        if not (data.get(field_name) or "").strip():
            reject(REJECT_VALIDATION, f"{field_name} is required.", field=field_name)
    parse_quantity(data.get("quantity") or 0, "quantity", allow_zero=True)
    parse_money(data.get("purchase_price"), "purchase_price")
    parse_money(data.get("selling_price"), "selling_price")


def _create_product(data, *, user=None):
    data = dict(data)
    opening_quantity = parse_quantity(data.pop("quantity", 0) or 0, "quantity", allow_zero=True)
    if Product.objects.filter(sku=data["sku"]).exists():
        reject(REJECT_VALIDATION, "Product with this SKU already exists.", sku=data["sku"])

    try:
        with transaction.atomic():
            product = Product.objects.create(quantity=0, **data)
    except IntegrityError:
        reject(REJECT_VALIDATION, "Product with this SKU already exists.", sku=data["sku"])
    if opening_quantity:
        move_stock(
            product,
            movement_type=Movement.STOCK_IN,
            quantity=opening_quantity,
            reference_type=Reference.ADJUSTMENT,
            notes="Opening stock",
            user=user,
        )
    return product


def create_product(data, *, user=None):
    """Create a catalog entry; any opening quantity goes through the movement trail."""
    return execute("product.create", _create_product, data, user=user, validator=_validate_new_product)


def _delete_product(product_id):
    product = lock_products([product_id])[parse_uuid(product_id)]
    if product.movements.exists() or product.purchase_items.exists() or product.invoice_items.exists():
        reject(
            REJECT_INVALID_STATE,
            "Product has stock history or order lines and cannot be deleted. Deactivate it instead.",
            product_id=str(product.pk),
        )
    product.delete()
    return product


def delete_product(product_id):
    return execute("product.delete", _delete_product, product_id)


@dataclass
class StockAdjustment:
    product: Any
    movement: Any = None


def _validate_adjustment(product_id, *, new_quantity, notes="", user=None):
    parse_quantity(new_quantity, "new_quantity", allow_zero=True)


def _adjust_stock(product_id, *, new_quantity, notes="", user=None):
    new_quantity = parse_quantity(new_quantity, "new_quantity", allow_zero=True)
    product = lock_products([product_id])[parse_uuid(product_id)]
    delta = new_quantity - product.quantity
    if delta == 0:
        return StockAdjustment(product=product)

    movement = move_stock(
        product,
        movement_type=Movement.STOCK_IN if delta > 0 else Movement.STOCK_OUT,
        quantity=abs(delta),
        reference_type=Reference.ADJUSTMENT,
        notes=notes,
        user=user,
    )
    return StockAdjustment(product=product, movement=movement)


def adjust_stock(product_id, new_quantity, *, notes="", user=None):
    """Set a product's on-hand quantity, recording the difference as an adjustment.

    Setting the current quantity again is accepted and writes nothing.
    """
    return execute(
        "stock.adjust",
        _adjust_stock,
        product_id,
        new_quantity=new_quantity,
        notes=notes,
        user=user,
        validator=_validate_adjustment,
    )


# Purchases


def _validate_purchase_draft(draft, *, user=None):
    if not draft.get("vendor"):
        reject(REJECT_VALIDATION, "Vendor is required.", field="vendor")
    if not draft.get("purchase_date"):
        reject(REJECT_VALIDATION, "Purchase date is required.", field="purchase_date")
    items = draft.get("items")
    if not isinstance(items, (list, tuple)) or not items:
        reject(REJECT_VALIDATION, "At least one item is required.", field="items")
    for index, item in enumerate(items, start=1):
        if not item.get("product"):
            reject(REJECT_VALIDATION, f"Item {index}: product is required.", line=index)
        parse_quantity(item.get("quantity"), f"Item {index} quantity")
        parse_money(item.get("purchase_price"), f"Item {index} purchase_price", required=True)
    validate_payment_mode(draft.get("payment_mode"))


def _create_purchase(draft, *, user=None):
    vendor_pk = parse_uuid(draft["vendor"])
    vendor = Vendor.objects.filter(pk=vendor_pk).first() if vendor_pk else None
    if vendor is None:
        reject(REJECT_NOT_FOUND, "Vendor not found.", vendor=str(draft["vendor"]))

    lines = [
        {
            "product_id": parse_uuid(item["product"]),
            "raw_product": item["product"],
            "quantity": parse_quantity(item["quantity"], "quantity"),
            "unit_price": parse_money(item["purchase_price"], "purchase_price", required=True),
        }
        for item in draft["items"]
    ]
    known = set(Product.objects.filter(pk__in=[line["product_id"] for line in lines if line["product_id"]]).values_list("pk", flat=True))
    for line in lines:
        if line["product_id"] not in known:
            reject(REJECT_NOT_FOUND, f"Product {line['raw_product']} not found.", product_id=str(line["raw_product"]))

    totals = compute_order_totals(
        lines,
        tax_rate=draft.get("tax_rate"),
        tax_amount=draft.get("tax_amount"),
        discount_rate=draft.get("discount_rate"),
        discount_amount=draft.get("discount_amount"),
        shipping_cost=draft.get("shipping_cost"),
    )

    purchase = Purchase.objects.create(
        purchase_number=next_document_number(PURCHASE_NUMBER_PREFIX, Purchase.objects.all(), "purchase_number"),
        vendor=vendor,
        supplier_invoice_no=draft.get("supplier_invoice_no") or "",
        purchase_date=draft["purchase_date"],
        payment_due_date=draft.get("payment_due_date"),
        subtotal=totals.subtotal,
        tax_rate=totals.tax_rate,
        tax_amount=totals.tax_amount,
        discount_rate=totals.discount_rate,
        discount_amount=totals.discount_amount,
        shipping_cost=totals.shipping_cost,
        total_amount=totals.total_amount,
        payment_mode=draft.get("payment_mode") or default_payment_mode(),
        order_status=OrderStatus.ORDERED,
        notes=draft.get("notes") or "",
        created_by=user,
    )
    PurchaseItem.objects.bulk_create(
        [
            PurchaseItem(
                purchase=purchase,
                product_id=line["product_id"],
                quantity=line["quantity"],
                purchase_price=line["unit_price"],
                line_total=amount,
                line_no=index,
            )
            for index, (line, amount) in enumerate(zip(lines, totals.line_totals), start=1)
        ]
    )
    return purchase


def create_purchase(draft, *, user=None):
    """Create a purchase order in `ordered` state. Stock is untouched until receipt."""
    return execute("purchase.create", _create_purchase, draft, user=user, validator=_validate_purchase_draft)


def _validate_receipt(purchase_id, *, lines=None, user=None):
    if lines is None:
        return
    if not isinstance(lines, (list, tuple)) or not lines:
        reject(REJECT_VALIDATION, "Receipt lines must be a non-empty list.", field="lines")
    seen = set()
    for index, line in enumerate(lines, start=1):
        item_id = parse_uuid(line.get("item"))
        if item_id is None:
            reject(REJECT_VALIDATION, f"Line {index}: item is required.", line=index)
        if item_id in seen:
            reject(REJECT_VALIDATION, f"Line {index}: item listed more than once.", line=index)
        seen.add(item_id)
        parse_quantity(line.get("quantity"), f"Line {index} quantity")


def _requested_receipt(items, lines):
    if lines is None:
        return {item.pk: item.quantity_remaining for item in items}

    by_id = {item.pk: item for item in items}
    requested = {}
    for line in lines:
        item_id = parse_uuid(line["item"])
        item = by_id.get(item_id)
        if item is None:
            reject(REJECT_VALIDATION, f"Item {line['item']} does not belong to this purchase.", item=str(line["item"]))
        quantity = parse_quantity(line["quantity"], "quantity")
        if quantity > item.quantity_remaining:
            reject(
                REJECT_VALIDATION,
                f"Cannot receive {quantity} of {item.product.name}. Remaining: {item.quantity_remaining}",
                item=str(item.pk),
                remaining=item.quantity_remaining,
                requested=quantity,
            )
        requested[item.pk] = quantity
    return requested


def _receive_purchase(purchase_id, *, lines=None, user=None):
    purchase = lock_order(Purchase, purchase_id)
    if purchase.order_status == OrderStatus.RECEIVED:
        reject(REJECT_INVALID_STATE, "Purchase order has already been received.", order_status=purchase.order_status)
    if purchase.order_status == OrderStatus.CANCELLED:
        reject(REJECT_INVALID_STATE, "Cannot receive a cancelled purchase order.", order_status=purchase.order_status)

    items = list(purchase.items.select_related("product"))
    requested = _requested_receipt(items, lines)
    if not any(requested.values()):
        reject(REJECT_INVALID_STATE, "Nothing left to receive on this purchase order.")

    products = lock_products(sorted({item.product_id for item in items if requested.get(item.pk)}))
    for item in items:
        quantity = requested.get(item.pk, 0)
        if not quantity:
            continue
        move_stock(
            products[item.product_id],
            movement_type=Movement.STOCK_IN,
            quantity=quantity,
            reference_type=Reference.PURCHASE,
            reference_id=purchase.pk,
            notes=f"Received against {purchase.purchase_number}",
            user=user,
            purchase_price=item.purchase_price,
        )
        item.quantity_received += quantity
        item.save(update_fields=["quantity_received"])

    if all(item.quantity_received >= item.quantity for item in items):
        purchase.order_status = OrderStatus.RECEIVED
        purchase.received_at = timezone.now()
    else:
        purchase.order_status = OrderStatus.PARTIALLY_RECEIVED
    purchase.save(update_fields=["order_status", "received_at", "updated_at"])
    return purchase


def receive_purchase(purchase_id, *, lines=None, user=None):
    """Apply a purchase order's items to on-hand stock.

    Without `lines` every item's remaining quantity is received. With
    `lines=[{"item": id, "quantity": n}, ...]` only those quantities are, and
    the order moves to `partially_received` until every item is complete.
    Each receipt also refreshes the product's purchase price to the order's.
    """
    return execute(
        "purchase.receive",
        _receive_purchase,
        purchase_id,
        lines=lines,
        user=user,
        validator=_validate_receipt,
    )


@dataclass
class Reversal:
    order_id: Any
    number: str
    snapshot: dict
    movements: list = field(default_factory=list)


def _reverse_purchase(purchase_id, *, user=None):
    purchase = lock_order(Purchase, purchase_id)
    if purchase.payments.exists():
        reject(REJECT_HAS_PAYMENTS, "Cannot delete a purchase with recorded payments.", purchase=purchase.purchase_number)

    received_items = list(purchase.items.filter(quantity_received__gt=0))
    products = lock_products(sorted({item.product_id for item in received_items}))
    movements = []
    for item in received_items:
        product = products[item.product_id]
        # Stock sold since receipt cannot be pulled back; the rollback stops at zero.
        quantity = min(item.quantity_received, product.quantity)
        if quantity <= 0:
            continue
        movements.append(
            move_stock(
                product,
                movement_type=Movement.STOCK_OUT,
                quantity=quantity,
                reference_type=Reference.RETURN,
                reference_id=purchase.pk,
                notes=REVERSAL_NOTE,
                user=user,
            )
        )

    reversal = Reversal(
        order_id=purchase.pk,
        number=purchase.purchase_number,
        snapshot={
            "purchase_number": purchase.purchase_number,
            "order_status": purchase.order_status,
            "total_amount": str(to_money(purchase.total_amount)),
        },
        movements=movements,
    )
    purchase.delete()
    return reversal


def reverse_purchase(purchase_id, *, user=None):
    """Delete a purchase order, rolling back whatever stock it put on hand."""
    return execute("purchase.delete", _reverse_purchase, purchase_id, user=user)


def _validate_order_status(purchase_id, *, status):
    if status == OrderStatus.RECEIVED:
        reject(REJECT_VALIDATION, "Use the receive action to mark a purchase order as received.", order_status=status)
    if status not in MANUAL_ORDER_STATUSES:
        reject(REJECT_VALIDATION, f"Unknown order status '{status}'.", order_status=status)


def _update_order_status(purchase_id, *, status):
    purchase = lock_order(Purchase, purchase_id)
    if purchase.order_status == OrderStatus.RECEIVED:
        reject(REJECT_INVALID_STATE, "A received purchase order cannot change status.", order_status=purchase.order_status)
    purchase.order_status = status
    purchase.save(update_fields=["order_status", "updated_at"])
    return purchase


def update_order_status(purchase_id, status):
    return execute(
        "purchase.order_status",
        _update_order_status,
        purchase_id,
        status=status,
        validator=_validate_order_status,
    )


def record_purchase_payment(purchase_id, **payment):
    return record_payment(Purchase, purchase_id, **payment)


def set_purchase_payment_status(purchase_id, **override):
    return set_payment_status_direct(Purchase, purchase_id, **override)
