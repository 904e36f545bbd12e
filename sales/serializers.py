from decimal import Decimal

from rest_framework import serializers

from ledger.serializers import MONEY_FIELD_KWARGS, OrderLineInputSerializer, OrderTotalsInputSerializer, PaymentRecordSerializer
from ledger.services import pending_amount as outstanding
from sales.models import Customer, Invoice, InvoiceItem, InvoicePayment


class CustomerSerializer(serializers.ModelSerializer):
    class Meta:
        model = Customer
        fields = [
            "id",
            "name",
            "phone",
            "email",
            "billing_address",
            "shipping_address",
            "gst_number",
            "credit_limit",
            "outstanding_balance",
            "notes",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "outstanding_balance", "created_at", "updated_at"]


class InvoiceItemSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)
    product_sku = serializers.CharField(source="product.sku", read_only=True)

    class Meta:
        model = InvoiceItem
        fields = [
            "id",
            "line_no",
            "product",
            "product_name",
            "product_sku",
            "quantity",
            "unit_price",
            "discount",
            "line_total",
        ]
        read_only_fields = fields


class InvoicePaymentSerializer(PaymentRecordSerializer):
    class Meta(PaymentRecordSerializer.Meta):
        model = InvoicePayment
        fields = ["invoice", *PaymentRecordSerializer.Meta.fields]
        read_only_fields = fields


class InvoiceSerializer(serializers.ModelSerializer):
    customer_name = serializers.CharField(source="customer.name", read_only=True, default=None)
    items = InvoiceItemSerializer(many=True, read_only=True)
    computed_payment_status = serializers.CharField(read_only=True)
    is_overdue = serializers.BooleanField(read_only=True)
    pending_amount = serializers.SerializerMethodField()

    class Meta:
        model = Invoice
        fields = [
            "id",
            "invoice_number",
            "customer",
            "customer_name",
            "invoice_date",
            "due_date",
            "subtotal",
            "tax_rate",
            "tax_amount",
            "discount_rate",
            "discount_amount",
            "shipping_cost",
            "total_amount",
            "amount_paid",
            "pending_amount",
            "payment_mode",
            "payment_status",
            "computed_payment_status",
            "is_overdue",
            "notes",
            "items",
            "created_by",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_pending_amount(self, obj):
        return str(outstanding(obj.total_amount, obj.amount_paid))


class InvoiceLineInputSerializer(OrderLineInputSerializer):
    unit_price = serializers.DecimalField(min_value=Decimal("0"), **MONEY_FIELD_KWARGS)
    discount = serializers.DecimalField(min_value=Decimal("0"), required=False, **MONEY_FIELD_KWARGS)


class InvoiceCreateSerializer(OrderTotalsInputSerializer):
    customer = serializers.UUIDField(required=False, allow_null=True)
    invoice_date = serializers.DateField()
    due_date = serializers.DateField(required=False, allow_null=True)
    amount_paid = serializers.DecimalField(min_value=Decimal("0"), required=False, **MONEY_FIELD_KWARGS)
    items = InvoiceLineInputSerializer(many=True, allow_empty=False)
