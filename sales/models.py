import uuid

from django.db import models
from django.utils import timezone

from inventory.models import Product
from ledger.models import PaymentMode, PaymentRecord, PaymentStatus


class Customer(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    phone = models.CharField(max_length=64, blank=True, default="")
    email = models.EmailField(blank=True, default="")
    billing_address = models.TextField(blank=True, default="")
    shipping_address = models.TextField(blank=True, default="")
    gst_number = models.CharField(max_length=64, blank=True, default="")
    credit_limit = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    # Cached sum of (total - paid) over the customer's open invoices.
    outstanding_balance = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    notes = models.TextField(blank=True, default="")
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        indexes = [
            models.Index(fields=["phone"], name="customer_phone_idx"),
            models.Index(fields=["email"], name="customer_email_idx"),
        ]

    def __str__(self):
        return self.name


class Invoice(models.Model):
    OVERDUE = "overdue"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    invoice_number = models.CharField(max_length=32)
    customer = models.ForeignKey(Customer, on_delete=models.PROTECT, null=True, blank=True, related_name="invoices")
    invoice_date = models.DateField()
    due_date = models.DateField(null=True, blank=True)
    subtotal = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    tax_rate = models.DecimalField(max_digits=6, decimal_places=2, default=0)
    tax_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    discount_rate = models.DecimalField(max_digits=6, decimal_places=2, default=0)
    discount_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    shipping_cost = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    amount_paid = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    payment_mode = models.CharField(max_length=16, choices=PaymentMode.choices, default=PaymentMode.CASH)
    payment_status = models.CharField(max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.PENDING)
    notes = models.TextField(blank=True, default="")
    created_by = models.ForeignKey("core.User", on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-invoice_date", "-created_at"]
        indexes = [
            models.Index(fields=["customer", "invoice_date"], name="invoice_customer_date_idx"),
            models.Index(fields=["payment_status", "due_date"], name="invoice_status_due_idx"),
        ]
        constraints = [
            models.UniqueConstraint(fields=["invoice_number"], name="uniq_invoice_number"),
        ]

    def __str__(self):
        return self.invoice_number

    @property
    def is_overdue(self):
        if self.payment_status == PaymentStatus.PAID or self.due_date is None:
            return False
        return self.due_date < timezone.localdate()

    @property
    def computed_payment_status(self):
        return self.OVERDUE if self.is_overdue else self.payment_status


class InvoiceItem(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="items")
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="invoice_items")
    quantity = models.PositiveIntegerField()
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    discount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    line_total = models.DecimalField(max_digits=12, decimal_places=2)
    line_no = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["line_no"]
        constraints = [
            models.CheckConstraint(condition=models.Q(quantity__gt=0), name="invoice_item_quantity_positive"),
        ]


class InvoicePayment(PaymentRecord):
    invoice = models.ForeignKey(Invoice, on_delete=models.CASCADE, related_name="payments")

    class Meta(PaymentRecord.Meta):
        indexes = [models.Index(fields=["invoice", "payment_date"], name="invoicepay_invoice_date_idx")]
