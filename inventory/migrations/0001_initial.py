import uuid

import django.db.models.deletion
from django.db import migrations, models

PAYMENT_STATUS_CHOICES = [("pending", "Pending"), ("partial", "Partial"), ("paid", "Paid")]
PAYMENT_MODE_CHOICES = [
    ("cash", "Cash"),
    ("bank", "Bank Transfer"),
    ("upi", "UPI"),
    ("cheque", "Cheque"),
    ("card", "Card"),
]


class Migration(migrations.Migration):
    initial = True

    dependencies = [
        ("core", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Vendor",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=255)),
                ("contact_person", models.CharField(blank=True, default="", max_length=255)),
                ("phone", models.CharField(blank=True, default="", max_length=64)),
                ("email", models.EmailField(blank=True, default="", max_length=254)),
                ("address", models.TextField(blank=True, default="")),
                ("gst_number", models.CharField(blank=True, default="", max_length=64)),
                ("payment_terms", models.CharField(blank=True, default="", max_length=128)),
                ("notes", models.TextField(blank=True, default="")),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["name"],
                "indexes": [models.Index(fields=["is_active", "name"], name="vendor_active_name_idx")],
            },
        ),
        migrations.CreateModel(
            name="Product",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("sku", models.CharField(max_length=64)),
                ("name", models.CharField(max_length=255)),
                ("description", models.TextField(blank=True, default="")),
                ("category", models.CharField(blank=True, default="", max_length=128)),
                ("unit", models.CharField(default="piece", max_length=32)),
                ("barcode", models.CharField(blank=True, default="", max_length=128)),
                ("purchase_price", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("selling_price", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("quantity", models.IntegerField(default=0)),
                ("reorder_level", models.PositiveIntegerField(default=0)),
                ("max_stock", models.PositiveIntegerField(blank=True, null=True)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "vendor",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="products",
                        to="inventory.vendor",
                    ),
                ),
            ],
            options={
                "ordering": ["name"],
                "indexes": [
                    models.Index(fields=["is_active", "category"], name="product_active_category_idx"),
                    models.Index(fields=["barcode"], name="product_barcode_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=["sku"], name="uniq_product_sku"),
                    models.CheckConstraint(condition=models.Q(("quantity__gte", 0)), name="product_quantity_non_negative"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Purchase",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("purchase_number", models.CharField(max_length=32)),
                ("supplier_invoice_no", models.CharField(blank=True, default="", max_length=128)),
                ("purchase_date", models.DateField()),
                ("payment_due_date", models.DateField(blank=True, null=True)),
                ("subtotal", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("tax_rate", models.DecimalField(decimal_places=2, default=0, max_digits=6)),
                ("tax_amount", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("discount_rate", models.DecimalField(decimal_places=2, default=0, max_digits=6)),
                ("discount_amount", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("shipping_cost", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("total_amount", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("amount_paid", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("payment_status", models.CharField(choices=PAYMENT_STATUS_CHOICES, default="pending", max_length=16)),
                ("payment_mode", models.CharField(choices=PAYMENT_MODE_CHOICES, default="cash", max_length=16)),
                (
                    "order_status",
                    models.CharField(
                        choices=[
                            ("draft", "Draft"),
                            ("ordered", "Ordered"),
                            ("partially_received", "Partially received"),
                            ("received", "Received"),
                            ("cancelled", "Cancelled"),
                        ],
                        default="ordered",
                        max_length=24,
                    ),
                ),
                ("received_at", models.DateTimeField(blank=True, null=True)),
                ("notes", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "created_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to="core.user",
                    ),
                ),
                (
                    "vendor",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="purchases",
                        to="inventory.vendor",
                    ),
                ),
            ],
            options={
                "ordering": ["-purchase_date", "-created_at"],
                "indexes": [
                    models.Index(fields=["vendor", "purchase_date"], name="purchase_vendor_date_idx"),
                    models.Index(fields=["order_status", "payment_status"], name="purchase_status_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=["purchase_number"], name="uniq_purchase_number"),
                ],
            },
        ),
        migrations.CreateModel(
            name="PurchaseItem",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("quantity", models.PositiveIntegerField()),
                ("quantity_received", models.PositiveIntegerField(default=0)),
                ("purchase_price", models.DecimalField(decimal_places=2, max_digits=12)),
                ("line_total", models.DecimalField(decimal_places=2, max_digits=12)),
                ("line_no", models.PositiveIntegerField(default=0)),
                (
                    "product",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="purchase_items",
                        to="inventory.product",
                    ),
                ),
                (
                    "purchase",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="items",
                        to="inventory.purchase",
                    ),
                ),
            ],
            options={
                "ordering": ["line_no"],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("quantity__gt", 0)), name="purchase_item_quantity_positive"),
                    models.CheckConstraint(
                        condition=models.Q(("quantity_received__lte", models.F("quantity"))),
                        name="purchase_item_received_within_ordered",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PurchasePayment",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("payment_date", models.DateField()),
                ("amount", models.DecimalField(decimal_places=2, max_digits=12)),
                ("mode", models.CharField(choices=PAYMENT_MODE_CHOICES, default="cash", max_length=16)),
                ("reference_no", models.CharField(blank=True, default="", max_length=128)),
                ("notes", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "created_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to="core.user",
                    ),
                ),
                (
                    "purchase",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="payments",
                        to="inventory.purchase",
                    ),
                ),
            ],
            options={
                "ordering": ["payment_date", "created_at"],
                "abstract": False,
                "indexes": [models.Index(fields=["purchase", "payment_date"], name="purchasepay_purchase_date_idx")],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount__gt", 0)),
                        name="inventory_purchasepayment_amount_positive",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="InventoryMovement",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "movement_type",
                    models.CharField(choices=[("stock_in", "Stock in"), ("stock_out", "Stock out")], max_length=16),
                ),
                ("quantity", models.PositiveIntegerField()),
                (
                    "reference_type",
                    models.CharField(
                        choices=[
                            ("purchase", "Purchase"),
                            ("invoice", "Invoice"),
                            ("adjustment", "Adjustment"),
                            ("return", "Return"),
                        ],
                        max_length=16,
                    ),
                ),
                ("reference_id", models.UUIDField(blank=True, null=True)),
                ("previous_quantity", models.IntegerField()),
                ("new_quantity", models.IntegerField()),
                ("notes", models.TextField(blank=True, default="")),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "created_by",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="+",
                        to="core.user",
                    ),
                ),
                (
                    "product",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="movements",
                        to="inventory.product",
                    ),
                ),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["product", "created_at"], name="movement_product_created_idx"),
                    models.Index(fields=["reference_type", "reference_id"], name="movement_reference_idx"),
                    models.Index(fields=["movement_type", "created_at"], name="movement_type_created_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("quantity__gt", 0)), name="movement_quantity_positive"),
                    models.CheckConstraint(
                        condition=models.Q(
                            models.Q(("movement_type", "stock_in"), ("new_quantity", models.F("previous_quantity") + models.F("quantity"))),
                            models.Q(("movement_type", "stock_out"), ("new_quantity", models.F("previous_quantity") - models.F("quantity"))),
                            _connector="OR",
                        ),
                        name="movement_quantities_consistent",
                    ),
                ],
            },
        ),
    ]
