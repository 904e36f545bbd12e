import uuid

from django.db import models


class PaymentStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    PARTIAL = "partial", "Partial"
    PAID = "paid", "Paid"


class PaymentMode(models.TextChoices):
    CASH = "cash", "Cash"
    BANK = "bank", "Bank Transfer"
    UPI = "upi", "UPI"
    CHEQUE = "cheque", "Cheque"
    CARD = "card", "Card"


class DocumentSequence(models.Model):
    """Per-prefix, per-year counter behind PO-/INV- document numbers."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    prefix = models.CharField(max_length=16)
    year = models.PositiveIntegerField()
    last_value = models.PositiveIntegerField(default=0)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        constraints = [
            models.UniqueConstraint(fields=["prefix", "year"], name="uniq_document_sequence_prefix_year"),
        ]

    def __str__(self):
        return f"{self.prefix}-{self.year}:{self.last_value}"


class PaymentRecord(models.Model):
    """Common columns of the append-only payment rows kept per order type."""

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    payment_date = models.DateField()
    amount = models.DecimalField(max_digits=12, decimal_places=2)
    mode = models.CharField(max_length=16, choices=PaymentMode.choices, default=PaymentMode.CASH)
    reference_no = models.CharField(max_length=128, blank=True, default="")
    notes = models.TextField(blank=True, default="")
    created_by = models.ForeignKey("core.User", on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        abstract = True
        ordering = ["payment_date", "created_at"]
        constraints = [
            models.CheckConstraint(condition=models.Q(amount__gt=0), name="%(app_label)s_%(class)s_amount_positive"),
        ]
