import logging
import uuid
from dataclasses import dataclass
from decimal import Decimal, InvalidOperation
from typing import Any

from django.conf import settings
from django.db import DatabaseError, transaction
from django.db.models import Sum
from django.utils import timezone

from common.utils import ZERO, percent_of, to_money
from ledger.models import DocumentSequence, PaymentMode, PaymentStatus

logger = logging.getLogger("ledger")

REJECT_VALIDATION = "validation_failed"
REJECT_NOT_FOUND = "not_found"
REJECT_INSUFFICIENT_STOCK = "insufficient_stock"
REJECT_OVERPAYMENT = "overpayment"
REJECT_INVALID_STATE = "invalid_state"
REJECT_HAS_PAYMENTS = "has_payments"
FAILURE_STORAGE = "storage_failure"

STORAGE_FAILURE_MESSAGE = "The ledger could not complete the operation. Please retry."


@dataclass
class LedgerResult:
    accepted: bool
    value: Any = None
    reason: str | None = None
    message: str | None = None
    details: dict | None = None
    retryable: bool = False


class LedgerRejectError(Exception):
    def __init__(self, reason: str, message: str, details: dict | None = None):
        self.reason = reason
        self.message = message
        self.details = details or {}
        super().__init__(message)


def reject(reason, message, **details):
    raise LedgerRejectError(reason, message, details)


def _entity_id(value):
    for candidate in (value, getattr(value, "order", None), getattr(value, "product", None)):
        pk = getattr(candidate, "pk", None)
        if pk is not None:
            return str(pk)
    order_id = getattr(value, "order_id", None)
    return str(order_id) if order_id is not None else None


def execute(operation, handler, *args, validator=None, **kwargs):
    """Run one ledger operation as a single unit of work and tag its outcome.

    `validator` (same arguments as `handler`) runs before the transaction
    opens, so input errors never touch storage. `handler` runs inside
    `transaction.atomic()`; raising `LedgerRejectError` anywhere in it rolls
    back every write made so far and yields a rejected result. Database
    errors roll back the same way and yield a retryable `storage_failure`.
    """
    try:
        if validator is not None:
            validator(*args, **kwargs)
        with transaction.atomic():
            value = handler(*args, **kwargs)
    except LedgerRejectError as exc:
        logger.info(
            "ledger_operation_rejected",
            extra={"operation": operation, "reason": exc.reason},
        )
        return LedgerResult(accepted=False, reason=exc.reason, message=exc.message, details=exc.details)
    except DatabaseError:
        logger.exception(
            "ledger_operation_failed",
            extra={"operation": operation, "reason": FAILURE_STORAGE, "retryable": True},
        )
        return LedgerResult(
            accepted=False,
            reason=FAILURE_STORAGE,
            message=STORAGE_FAILURE_MESSAGE,
            retryable=True,
        )

    logger.info(
        "ledger_operation_accepted",
        extra={"operation": operation, "entity_id": _entity_id(value)},
    )
    return LedgerResult(accepted=True, value=value)


# Input coercion


def parse_money(value, field_name, *, required=False):
    if value in (None, ""):
        if required:
            reject(REJECT_VALIDATION, f"{field_name} is required.", field=field_name)
        return None
    try:
        amount = to_money(value)
    except (InvalidOperation, TypeError, ValueError):
        amount = None
    if amount is None or not amount.is_finite():
        reject(REJECT_VALIDATION, f"{field_name} must be a number.", field=field_name)
    if amount < ZERO:
        reject(REJECT_VALIDATION, f"{field_name} cannot be negative.", field=field_name)
    return amount


def parse_quantity(value, field_name, *, allow_zero=False):
    try:
        number = Decimal(str(value).strip())
    except InvalidOperation:
        number = None
    if isinstance(value, bool) or number is None or not number.is_finite() or number != number.to_integral_value():
        reject(REJECT_VALIDATION, f"{field_name} must be a whole number.", field=field_name)
    quantity = int(number)
    if quantity < 0 or (quantity == 0 and not allow_zero):
        reject(REJECT_VALIDATION, f"{field_name} must be greater than zero.", field=field_name)
    return quantity


def parse_uuid(value):
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def lock_order(order_model, order_id):
    """Fetch an order row with a row lock held until the transaction ends."""
    label = order_model._meta.verbose_name.capitalize()
    pk = parse_uuid(order_id)
    order = order_model.objects.select_for_update().filter(pk=pk).first() if pk else None
    if order is None:
        reject(REJECT_NOT_FOUND, f"{label} not found.", id=str(order_id))
    return order


# Document numbering


def format_document_number(prefix, year, value):
    width = int(getattr(settings, "LEDGER_DOCUMENT_NUMBER_WIDTH", 3))
    return f"{prefix}-{year}-{value:0{width}d}"


def _highest_existing_suffix(prefix, year, queryset, field_name):
    stem = f"{prefix}-{year}-"
    highest = 0
    for number in queryset.filter(**{f"{field_name}__startswith": stem}).values_list(field_name, flat=True):
        suffix = number[len(stem):]
        if suffix.isdigit():
            highest = max(highest, int(suffix))
    return highest


def next_document_number(prefix, queryset, field_name, *, year=None):
    """Allocate the next `PREFIX-YYYY-NNN` number.

    Must be called inside a transaction: the counter row stays locked until
    commit, so concurrent creators queue behind each other instead of reading
    the same maximum. The first allocation of a year seeds the counter from the
    highest number already stored in `queryset.field_name`.
    """
    year = year or timezone.localdate().year
    sequence = DocumentSequence.objects.select_for_update().filter(prefix=prefix, year=year).first()
    if sequence is None:
        created, _ = DocumentSequence.objects.get_or_create(
            prefix=prefix,
            year=year,
            defaults={"last_value": _highest_existing_suffix(prefix, year, queryset, field_name)},
        )
        sequence = DocumentSequence.objects.select_for_update().get(pk=created.pk)

    sequence.last_value += 1
    sequence.save(update_fields=["last_value", "updated_at"])
    return format_document_number(prefix, year, sequence.last_value)


# Totals


@dataclass
class OrderTotals:
    line_totals: list
    subtotal: Decimal
    tax_rate: Decimal
    tax_amount: Decimal
    discount_rate: Decimal
    discount_amount: Decimal
    shipping_cost: Decimal
    total_amount: Decimal


def line_total(quantity, unit_price, discount=None):
    return to_money(Decimal(quantity) * to_money(unit_price) - to_money(discount))


def compute_order_totals(
    lines,
    *,
    tax_rate=None,
    tax_amount=None,
    discount_rate=None,
    discount_amount=None,
    shipping_cost=None,
):
    """Derive order totals from `lines` (dicts of quantity, unit_price, discount).

    An explicit tax or discount amount wins over the matching rate.
    total = subtotal + tax - discount + shipping.
    """
    line_totals = []
    for index, line in enumerate(lines, start=1):
        amount = line_total(line["quantity"], line["unit_price"], line.get("discount"))
        if amount < ZERO:
            reject(REJECT_VALIDATION, f"Line {index}: discount exceeds the line amount.", line=index)
        line_totals.append(amount)

    subtotal = to_money(sum(line_totals, ZERO))
    tax_rate = parse_money(tax_rate, "tax_rate") or ZERO
    discount_rate = parse_money(discount_rate, "discount_rate") or ZERO
    explicit_tax = parse_money(tax_amount, "tax_amount")
    explicit_discount = parse_money(discount_amount, "discount_amount")

    tax = explicit_tax if explicit_tax is not None else percent_of(subtotal, tax_rate)
    discount = explicit_discount if explicit_discount is not None else percent_of(subtotal, discount_rate)
    shipping = parse_money(shipping_cost, "shipping_cost") or ZERO

    total = to_money(subtotal + tax - discount + shipping)
    if total < ZERO:
        reject(REJECT_VALIDATION, "Discount exceeds the order amount.", discount_amount=str(discount))

    return OrderTotals(
        line_totals=line_totals,
        subtotal=subtotal,
        tax_rate=tax_rate,
        tax_amount=tax,
        discount_rate=discount_rate,
        discount_amount=discount,
        shipping_cost=shipping,
        total_amount=total,
    )


# Payment reconciliation


def default_payment_mode():
    return getattr(settings, "LEDGER_DEFAULT_PAYMENT_MODE", PaymentMode.CASH)


def derive_payment_status(total_amount, amount_paid):
    total_amount = to_money(total_amount)
    amount_paid = to_money(amount_paid)
    if amount_paid >= total_amount:
        return PaymentStatus.PAID
    if amount_paid > ZERO:
        return PaymentStatus.PARTIAL
    return PaymentStatus.PENDING


def pending_amount(total_amount, amount_paid):
    return max(to_money(total_amount) - to_money(amount_paid), ZERO)


def sum_payments(order):
    return to_money(order.payments.aggregate(total=Sum("amount"))["total"])


def payment_summary(order):
    total_paid = sum_payments(order)
    return {
        "total_amount": to_money(order.total_amount),
        "total_paid": total_paid,
        "pending": pending_amount(order.total_amount, total_paid),
    }


def refresh_paid_amount(order):
    """Re-derive amount_paid and payment_status from the order's payment rows."""
    paid = sum_payments(order)
    order.amount_paid = paid
    order.payment_status = derive_payment_status(order.total_amount, paid)
    order.save(update_fields=["amount_paid", "payment_status", "updated_at"])
    return order


def validate_payment_mode(mode):
    if mode not in (None, "") and mode not in PaymentMode.values:
        reject(REJECT_VALIDATION, f"Unknown payment mode '{mode}'.", mode=mode)


def apply_payment(order, *, amount, payment_date=None, mode=None, reference_no="", notes="", user=None):
    """Append one payment row to an order already locked by the caller."""
    amount = parse_money(amount, "amount", required=True)
    if amount <= ZERO:
        reject(REJECT_VALIDATION, "Payment amount must be greater than zero.", amount=str(amount))

    pending = pending_amount(order.total_amount, sum_payments(order))
    tolerance = to_money(getattr(settings, "LEDGER_OVERPAYMENT_TOLERANCE", ZERO))
    if amount > pending + tolerance:
        reject(
            REJECT_OVERPAYMENT,
            f"Payment amount exceeds pending amount. Pending: {pending}",
            pending=str(pending),
            amount=str(amount),
            excess=str(amount - pending),
        )

    payment = order.payments.create(
        payment_date=payment_date or timezone.localdate(),
        amount=amount,
        mode=mode or default_payment_mode(),
        reference_no=reference_no or "",
        notes=notes or "",
        created_by=user,
    )
    refresh_paid_amount(order)
    return payment


@dataclass
class PaymentOutcome:
    order: Any
    payment: Any
    summary: dict


def _validate_record_payment(order_model, order_id, *, amount, mode=None, **kwargs):
    amount = parse_money(amount, "amount", required=True)
    if amount <= ZERO:
        reject(REJECT_VALIDATION, "Payment amount must be greater than zero.", amount=str(amount))
    validate_payment_mode(mode)


def _record_payment(order_model, order_id, *, on_recorded=None, **payment):
    order = lock_order(order_model, order_id)
    previous = {"amount_paid": to_money(order.amount_paid), "payment_status": order.payment_status}
    recorded = apply_payment(order, **payment)
    if on_recorded is not None:
        on_recorded(order, recorded, previous)
    return PaymentOutcome(order=order, payment=recorded, summary=payment_summary(order))


def record_payment(
    order_model,
    order_id,
    *,
    amount,
    payment_date=None,
    mode=None,
    reference_no="",
    notes="",
    user=None,
    on_recorded=None,
):
    """Append a payment to a purchase or invoice.

    The order row is locked, the new row inserted and the paid total
    recomputed from all payment rows in one transaction. `on_recorded(order,
    payment, previous)` runs inside the same transaction for order-type side
    effects; `previous` holds the paid amount and status before the payment.
    """
    return execute(
        "payment.record",
        _record_payment,
        order_model,
        order_id,
        amount=amount,
        payment_date=payment_date,
        mode=mode,
        reference_no=reference_no,
        notes=notes,
        user=user,
        on_recorded=on_recorded,
        validator=_validate_record_payment,
    )


@dataclass
class OverrideOutcome:
    order: Any
    previous: dict


def _validate_override(order_model, order_id, *, amount_paid, payment_status, mode=None, **kwargs):
    parse_money(amount_paid, "amount_paid", required=True)
    if payment_status not in PaymentStatus.values:
        reject(REJECT_VALIDATION, f"Unknown payment status '{payment_status}'.", payment_status=payment_status)
    validate_payment_mode(mode)


def _override_payment_status(order_model, order_id, *, amount_paid, payment_status, mode=None, on_overridden=None):
    order = lock_order(order_model, order_id)
    amount_paid = parse_money(amount_paid, "amount_paid", required=True)
    if amount_paid > to_money(order.total_amount):
        reject(
            REJECT_OVERPAYMENT,
            f"Amount paid cannot exceed the order total. Total: {order.total_amount}",
            total_amount=str(order.total_amount),
        )

    previous = {
        "amount_paid": to_money(order.amount_paid),
        "payment_status": order.payment_status,
        "payment_mode": order.payment_mode,
    }
    order.amount_paid = amount_paid
    order.payment_status = payment_status
    if mode:
        order.payment_mode = mode
    order.save(update_fields=["amount_paid", "payment_status", "payment_mode", "updated_at"])

    if on_overridden is not None:
        on_overridden(order, previous)
    return OverrideOutcome(order=order, previous=previous)


def set_payment_status_direct(order_model, order_id, *, amount_paid, payment_status, mode=None, on_overridden=None):
    """Administrative adjustment of amount_paid/payment_status.

    Writes the two fields as given without appending a payment row, so the
    stored paid amount can diverge from the payment history until the next
    recorded payment re-derives it. Callers audit every use.
    """
    return execute(
        "payment.override",
        _override_payment_status,
        order_model,
        order_id,
        amount_paid=amount_paid,
        payment_status=payment_status,
        mode=mode,
        on_overridden=on_overridden,
        validator=_validate_override,
    )
