import uuid

from django.db import models

from ledger.models import PaymentMode, PaymentRecord, PaymentStatus


class Vendor(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    name = models.CharField(max_length=255)
    contact_person = models.CharField(max_length=255, blank=True, default="")
    phone = models.CharField(max_length=64, blank=True, default="")
    email = models.EmailField(blank=True, default="")
    address = models.TextField(blank=True, default="")
    gst_number = models.CharField(max_length=64, blank=True, default="")
    payment_terms = models.CharField(max_length=128, blank=True, default="")
    notes = models.TextField(blank=True, default="")
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        indexes = [models.Index(fields=["is_active", "name"], name="vendor_active_name_idx")]

    def __str__(self):
        return self.name


class Product(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    sku = models.CharField(max_length=64)
    name = models.CharField(max_length=255)
    description = models.TextField(blank=True, default="")
    category = models.CharField(max_length=128, blank=True, default="")
    unit = models.CharField(max_length=32, default="piece")
    barcode = models.CharField(max_length=128, blank=True, default="")
    purchase_price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    selling_price = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    quantity = models.IntegerField(default=0)
    reorder_level = models.PositiveIntegerField(default=0)
    max_stock = models.PositiveIntegerField(null=True, blank=True)
    vendor = models.ForeignKey(Vendor, on_delete=models.SET_NULL, null=True, blank=True, related_name="products")
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["name"]
        indexes = [
            models.Index(fields=["is_active", "category"], name="product_active_category_idx"),
            models.Index(fields=["barcode"], name="product_barcode_idx"),
        ]
        constraints = [
            models.UniqueConstraint(fields=["sku"], name="uniq_product_sku"),
            models.CheckConstraint(condition=models.Q(quantity__gte=0), name="product_quantity_non_negative"),
        ]

    def __str__(self):
        return f"{self.sku} {self.name}"

    @property
    def is_low_stock(self):
        return self.quantity <= self.reorder_level


class Purchase(models.Model):
    class OrderStatus(models.TextChoices):
        DRAFT = "draft", "Draft"
        ORDERED = "ordered", "Ordered"
        PARTIALLY_RECEIVED = "partially_received", "Partially received"
        RECEIVED = "received", "Received"
        CANCELLED = "cancelled", "Cancelled"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    purchase_number = models.CharField(max_length=32)
    vendor = models.ForeignKey(Vendor, on_delete=models.PROTECT, related_name="purchases")
    supplier_invoice_no = models.CharField(max_length=128, blank=True, default="")
    purchase_date = models.DateField()
    payment_due_date = models.DateField(null=True, blank=True)
    subtotal = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    tax_rate = models.DecimalField(max_digits=6, decimal_places=2, default=0)
    tax_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    discount_rate = models.DecimalField(max_digits=6, decimal_places=2, default=0)
    discount_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    shipping_cost = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    total_amount = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    amount_paid = models.DecimalField(max_digits=12, decimal_places=2, default=0)
    payment_status = models.CharField(max_length=16, choices=PaymentStatus.choices, default=PaymentStatus.PENDING)
    payment_mode = models.CharField(max_length=16, choices=PaymentMode.choices, default=PaymentMode.CASH)
    order_status = models.CharField(max_length=24, choices=OrderStatus.choices, default=OrderStatus.ORDERED)
    received_at = models.DateTimeField(null=True, blank=True)
    notes = models.TextField(blank=True, default="")
    created_by = models.ForeignKey("core.User", on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-purchase_date", "-created_at"]
        indexes = [
            models.Index(fields=["vendor", "purchase_date"], name="purchase_vendor_date_idx"),
            models.Index(fields=["order_status", "payment_status"], name="purchase_status_idx"),
        ]
        constraints = [
            models.UniqueConstraint(fields=["purchase_number"], name="uniq_purchase_number"),
        ]

    def __str__(self):
        return self.purchase_number


class PurchaseItem(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    purchase = models.ForeignKey(Purchase, on_delete=models.CASCADE, related_name="items")
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="purchase_items")
    quantity = models.PositiveIntegerField()
    quantity_received = models.PositiveIntegerField(default=0)
    purchase_price = models.DecimalField(max_digits=12, decimal_places=2)
    line_total = models.DecimalField(max_digits=12, decimal_places=2)
    line_no = models.PositiveIntegerField(default=0)

    class Meta:
        ordering = ["line_no"]
        constraints = [
            models.CheckConstraint(condition=models.Q(quantity__gt=0), name="purchase_item_quantity_positive"),
            models.CheckConstraint(
                condition=models.Q(quantity_received__lte=models.F("quantity")),
                name="purchase_item_received_within_ordered",
            ),
        ]

    @property
    def quantity_remaining(self):
        return self.quantity - self.quantity_received


class PurchasePayment(PaymentRecord):
    purchase = models.ForeignKey(Purchase, on_delete=models.CASCADE, related_name="payments")

    class Meta(PaymentRecord.Meta):
        indexes = [models.Index(fields=["purchase", "payment_date"], name="purchasepay_purchase_date_idx")]


class InventoryMovement(models.Model):
    """Append-only record of one product quantity change."""

    class MovementType(models.TextChoices):
        STOCK_IN = "stock_in", "Stock in"
        STOCK_OUT = "stock_out", "Stock out"

    class ReferenceType(models.TextChoices):
        PURCHASE = "purchase", "Purchase"
        INVOICE = "invoice", "Invoice"
        ADJUSTMENT = "adjustment", "Adjustment"
        RETURN = "return", "Return"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    product = models.ForeignKey(Product, on_delete=models.PROTECT, related_name="movements")
    movement_type = models.CharField(max_length=16, choices=MovementType.choices)
    quantity = models.PositiveIntegerField()
    reference_type = models.CharField(max_length=16, choices=ReferenceType.choices)
    reference_id = models.UUIDField(null=True, blank=True)
    previous_quantity = models.IntegerField()
    new_quantity = models.IntegerField()
    notes = models.TextField(blank=True, default="")
    created_by = models.ForeignKey("core.User", on_delete=models.SET_NULL, null=True, blank=True, related_name="+")
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["product", "created_at"], name="movement_product_created_idx"),
            models.Index(fields=["reference_type", "reference_id"], name="movement_reference_idx"),
            models.Index(fields=["movement_type", "created_at"], name="movement_type_created_idx"),
        ]
        constraints = [
            models.CheckConstraint(condition=models.Q(quantity__gt=0), name="movement_quantity_positive"),
            models.CheckConstraint(
                condition=(
                    models.Q(movement_type="stock_in", new_quantity=models.F("previous_quantity") + models.F("quantity"))
                    | models.Q(movement_type="stock_out", new_quantity=models.F("previous_quantity") - models.F("quantity"))
                ),
                name="movement_quantities_consistent",
            ),
        ]
