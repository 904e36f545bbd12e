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
        ("inventory", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Customer",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("name", models.CharField(max_length=255)),
                ("phone", models.CharField(blank=True, default="", max_length=64)),
                ("email", models.EmailField(blank=True, default="", max_length=254)),
                ("billing_address", models.TextField(blank=True, default="")),
                ("shipping_address", models.TextField(blank=True, default="")),
                ("gst_number", models.CharField(blank=True, default="", max_length=64)),
                ("credit_limit", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("outstanding_balance", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("notes", models.TextField(blank=True, default="")),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
            ],
            options={
                "ordering": ["name"],
                "indexes": [
                    models.Index(fields=["phone"], name="customer_phone_idx"),
                    models.Index(fields=["email"], name="customer_email_idx"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Invoice",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("invoice_number", models.CharField(max_length=32)),
                ("invoice_date", models.DateField()),
                ("due_date", models.DateField(blank=True, null=True)),
                ("subtotal", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("tax_rate", models.DecimalField(decimal_places=2, default=0, max_digits=6)),
                ("tax_amount", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("discount_rate", models.DecimalField(decimal_places=2, default=0, max_digits=6)),
                ("discount_amount", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("shipping_cost", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("total_amount", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("amount_paid", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("payment_mode", models.CharField(choices=PAYMENT_MODE_CHOICES, default="cash", max_length=16)),
                ("payment_status", models.CharField(choices=PAYMENT_STATUS_CHOICES, default="pending", max_length=16)),
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
                    "customer",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="invoices",
                        to="sales.customer",
                    ),
                ),
            ],
            options={
                "ordering": ["-invoice_date", "-created_at"],
                "indexes": [
                    models.Index(fields=["customer", "invoice_date"], name="invoice_customer_date_idx"),
                    models.Index(fields=["payment_status", "due_date"], name="invoice_status_due_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(fields=["invoice_number"], name="uniq_invoice_number"),
                ],
            },
        ),
        migrations.CreateModel(
            name="InvoiceItem",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("quantity", models.PositiveIntegerField()),
                ("unit_price", models.DecimalField(decimal_places=2, max_digits=12)),
                ("discount", models.DecimalField(decimal_places=2, default=0, max_digits=12)),
                ("line_total", models.DecimalField(decimal_places=2, max_digits=12)),
                ("line_no", models.PositiveIntegerField(default=0)),
                (
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="items",
                        to="sales.invoice",
                    ),
                ),
                (
                    "product",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="invoice_items",
                        to="inventory.product",
                    ),
                ),
            ],
            options={
                "ordering": ["line_no"],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("quantity__gt", 0)), name="invoice_item_quantity_positive"),
                ],
            },
        ),
        migrations.CreateModel(
            name="InvoicePayment",
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
                    "invoice",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="payments",
                        to="sales.invoice",
                    ),
                ),
            ],
            options={
                "ordering": ["payment_date", "created_at"],
                "abstract": False,
                "indexes": [models.Index(fields=["invoice", "payment_date"], name="invoicepay_invoice_date_idx")],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("amount__gt", 0)),
                        name="sales_invoicepayment_amount_positive",
                    ),
                ],
            },
        ),
    ]
