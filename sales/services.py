import logging

from django.db import transaction
from django.db.models import DecimalField, ExpressionWrapper, F, Sum

from common.utils import ZERO, to_money
from inventory.models import InventoryMovement
from inventory.services import REVERSAL_NOTE, Reversal, lock_products, move_stock
from ledger.models import PaymentStatus
from ledger.services import (
    REJECT_HAS_PAYMENTS,
    REJECT_NOT_FOUND,
    REJECT_VALIDATION,
    apply_payment,
    compute_order_totals,
    default_payment_mode,
    derive_payment_status,
    execute,
    lock_order,
    next_document_number,
    parse_money,
    parse_quantity,
    parse_uuid,
    pending_amount,
    record_payment,
    reject,
    set_payment_status_direct,
    validate_payment_mode,
)
from sales.models import Customer, Invoice, InvoiceItem

logger = logging.getLogger("ledger")

INVOICE_NUMBER_PREFIX = "INV"

Movement = InventoryMovement.MovementType
Reference = InventoryMovement.ReferenceType

OPEN_PAYMENT_STATUSES = (PaymentStatus.PENDING, PaymentStatus.PARTIAL)


def _shift_outstanding_balance(customer_id, delta):
    """Apply a signed delta to the cached balance as a single UPDATE."""
    if customer_id is None or not delta:
        return
    Customer.objects.filter(pk=customer_id).update(outstanding_balance=F("outstanding_balance") + delta)


def open_amount(total_amount, amount_paid, payment_status):
    """What one invoice adds to its customer's balance. Paid invoices add nothing."""
    if payment_status == PaymentStatus.PAID:
        return ZERO
    return pending_amount(total_amount, amount_paid)


def _shift_open_amount(invoice, previous):
    before = open_amount(invoice.total_amount, previous["amount_paid"], previous["payment_status"])
    after = open_amount(invoice.total_amount, invoice.amount_paid, invoice.payment_status)
    _shift_outstanding_balance(invoice.customer_id, after - before)


# RecordSale


def _validate_sale_draft(draft, *, user=None):
    if not draft.get("invoice_date"):
        reject(REJECT_VALIDATION, "Invoice date is required.", field="invoice_date")
    items = draft.get("items")
    if not isinstance(items, (list, tuple)) or not items:
        reject(REJECT_VALIDATION, "At least one item is required.", field="items")
    for index, item in enumerate(items, start=1):
        if not item.get("product"):
            reject(REJECT_VALIDATION, f"Item {index}: product is required.", line=index)
        parse_quantity(item.get("quantity"), f"Item {index} quantity")
        parse_money(item.get("unit_price"), f"Item {index} unit_price", required=True)
        parse_money(item.get("discount"), f"Item {index} discount")
    parse_money(draft.get("amount_paid"), "amount_paid")
    validate_payment_mode(draft.get("payment_mode"))


def _record_sale(draft, *, user=None):
    customer = None
    if draft.get("customer"):
        customer_pk = parse_uuid(draft["customer"])
        customer = Customer.objects.filter(pk=customer_pk).first() if customer_pk else None
        if customer is None:
            reject(REJECT_NOT_FOUND, "Customer not found.", customer=str(draft["customer"]))

    lines = [
        {
            "product_id": parse_uuid(item["product"]),
            "raw_product": item["product"],
            "quantity": parse_quantity(item["quantity"], "quantity"),
            "unit_price": parse_money(item["unit_price"], "unit_price", required=True),
            "discount": parse_money(item.get("discount"), "discount") or ZERO,
        }
        for item in draft["items"]
    ]
    for line in lines:
        if line["product_id"] is None:
            reject(REJECT_NOT_FOUND, f"Product {line['raw_product']} not found.", product_id=str(line["raw_product"]))
    products = lock_products(sorted({line["product_id"] for line in lines}))

    totals = compute_order_totals(
        lines,
        tax_rate=draft.get("tax_rate"),
        tax_amount=draft.get("tax_amount"),
        discount_rate=draft.get("discount_rate"),
        discount_amount=draft.get("discount_amount"),
        shipping_cost=draft.get("shipping_cost"),
    )
    payment_mode = draft.get("payment_mode") or default_payment_mode()

    invoice = Invoice.objects.create(
        invoice_number=next_document_number(INVOICE_NUMBER_PREFIX, Invoice.objects.all(), "invoice_number"),
        customer=customer,
        invoice_date=draft["invoice_date"],
        due_date=draft.get("due_date"),
        subtotal=totals.subtotal,
        tax_rate=totals.tax_rate,
        tax_amount=totals.tax_amount,
        discount_rate=totals.discount_rate,
        discount_amount=totals.discount_amount,
        shipping_cost=totals.shipping_cost,
        total_amount=totals.total_amount,
        payment_mode=payment_mode,
        notes=draft.get("notes") or "",
        created_by=user,
    )

    for index, (line, amount) in enumerate(zip(lines, totals.line_totals), start=1):
        move_stock(
            products[line["product_id"]],
            movement_type=Movement.STOCK_OUT,
            quantity=line["quantity"],
            reference_type=Reference.INVOICE,
            reference_id=invoice.pk,
            notes=f"Sold on {invoice.invoice_number}",
            user=user,
        )
        InvoiceItem.objects.create(
            invoice=invoice,
            product_id=line["product_id"],
            quantity=line["quantity"],
            unit_price=line["unit_price"],
            discount=line["discount"],
            line_total=amount,
            line_no=index,
        )

    upfront = parse_money(draft.get("amount_paid"), "amount_paid") or ZERO
    if upfront > ZERO:
        apply_payment(
            invoice,
            amount=upfront,
            payment_date=draft["invoice_date"],
            mode=payment_mode,
            notes="Paid at invoice creation",
            user=user,
        )
    else:
        invoice.payment_status = derive_payment_status(invoice.total_amount, ZERO)
        invoice.save(update_fields=["payment_status", "updated_at"])

    if customer is not None:
        _shift_outstanding_balance(
            customer.pk,
            open_amount(invoice.total_amount, invoice.amount_paid, invoice.payment_status),
        )
    return invoice


def record_sale(draft, *, user=None):
    """Create an invoice and take its items out of stock in one transaction.

    Every product is row-locked (in primary-key order) before its quantity is
    checked, so two concurrent sales cannot both pass the check against the
    same stale quantity. Any short line rejects the whole sale.
    """
    return execute("invoice.create", _record_sale, draft, user=user, validator=_validate_sale_draft)


# ReverseSale


def _reverse_sale(invoice_id, *, user=None):
    invoice = lock_order(Invoice, invoice_id)
    if invoice.payments.exists():
        reject(REJECT_HAS_PAYMENTS, "Cannot delete an invoice with recorded payments.", invoice=invoice.invoice_number)

    items = list(invoice.items.all())
    products = lock_products(sorted({item.product_id for item in items}))
    movements = [
        move_stock(
            products[item.product_id],
            movement_type=Movement.STOCK_IN,
            quantity=item.quantity,
            reference_type=Reference.RETURN,
            reference_id=invoice.pk,
            notes=REVERSAL_NOTE,
            user=user,
        )
        for item in items
    ]

    _shift_outstanding_balance(
        invoice.customer_id,
        -open_amount(invoice.total_amount, invoice.amount_paid, invoice.payment_status),
    )

    reversal = Reversal(
        order_id=invoice.pk,
        number=invoice.invoice_number,
        snapshot={
            "invoice_number": invoice.invoice_number,
            "customer": str(invoice.customer_id) if invoice.customer_id else None,
            "total_amount": str(to_money(invoice.total_amount)),
        },
        movements=movements,
    )
    invoice.delete()
    return reversal


def reverse_sale(invoice_id, *, user=None):
    """Delete an unpaid invoice, putting its items back on hand."""
    return execute("invoice.delete", _reverse_sale, invoice_id, user=user)


# Payments


def _balance_after_payment(invoice, payment, previous):
    _shift_open_amount(invoice, previous)


def record_invoice_payment(invoice_id, **payment):
    return record_payment(Invoice, invoice_id, on_recorded=_balance_after_payment, **payment)


def set_invoice_payment_status(invoice_id, **override):
    return set_payment_status_direct(Invoice, invoice_id, on_overridden=_shift_open_amount, **override)


# Outstanding balance


def compute_outstanding_balance(customer):
    """What the customer owes, summed from their open invoices.

    Matches `open_amount`: an override can only set amount_paid up to the
    total, so every pending or partial row contributes total - amount_paid.
    """
    owed = ExpressionWrapper(F("total_amount") - F("amount_paid"), output_field=DecimalField(max_digits=12, decimal_places=2))
    total = Invoice.objects.filter(
        customer=customer,
        payment_status__in=OPEN_PAYMENT_STATUSES,
    ).aggregate(total=Sum(owed))["total"]
    return to_money(total)


def reconcile_outstanding_balances(*, fix=False):
    """Compare each cached balance with the computed one; optionally rewrite drifted rows."""
    drifted = []
    for customer_id in Customer.objects.order_by("pk").values_list("pk", flat=True):
        with transaction.atomic():
            customer = Customer.objects.select_for_update().get(pk=customer_id)
            computed = compute_outstanding_balance(customer)
            cached = to_money(customer.outstanding_balance)
            if computed == cached:
                continue

            drifted.append(
                {
                    "customer_id": str(customer.pk),
                    "name": customer.name,
                    "cached": cached,
                    "computed": computed,
                    "difference": computed - cached,
                }
            )
            logger.warning(
                "outstanding_balance_drift customer=%s cached=%s computed=%s",
                customer.pk,
                cached,
                computed,
                extra={"entity": "customer", "entity_id": str(customer.pk)},
            )
            if fix:
                customer.outstanding_balance = computed
                customer.save(update_fields=["outstanding_balance", "updated_at"])
    return drifted
