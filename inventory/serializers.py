from decimal import Decimal

from rest_framework import serializers

from inventory.models import InventoryMovement, Product, Purchase, PurchaseItem, PurchasePayment, Vendor
from ledger.serializers import MONEY_FIELD_KWARGS, OrderLineInputSerializer, OrderTotalsInputSerializer, PaymentRecordSerializer
from ledger.services import pending_amount as outstanding


class VendorSerializer(serializers.ModelSerializer):
    class Meta:
        model = Vendor
        fields = [
            "id",
            "name",
            "contact_person",
            "phone",
            "email",
            "address",
            "gst_number",
            "payment_terms",
            "notes",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "created_at", "updated_at"]


class ProductSerializer(serializers.ModelSerializer):
    """On-hand `quantity` is read-only; it changes only through stock operations.

    `opening_quantity` is accepted on create and becomes an adjustment movement.
    """

    vendor_name = serializers.CharField(source="vendor.name", read_only=True, default=None)
    is_low_stock = serializers.BooleanField(read_only=True)
    opening_quantity = serializers.IntegerField(write_only=True, required=False, min_value=0)

    class Meta:
        model = Product
        fields = [
            "id",
            "sku",
            "name",
            "description",
            "category",
            "unit",
            "barcode",
            "purchase_price",
            "selling_price",
            "quantity",
            "opening_quantity",
            "reorder_level",
            "max_stock",
            "vendor",
            "vendor_name",
            "is_low_stock",
            "is_active",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "quantity", "created_at", "updated_at"]

    def validate(self, attrs):
        if self.instance is not None and "opening_quantity" in attrs:
            raise serializers.ValidationError({"opening_quantity": "Use the stock adjustment endpoint to change quantity."})
        return attrs


class StockAdjustSerializer(serializers.Serializer):
    quantity = serializers.IntegerField(min_value=0)
    notes = serializers.CharField(required=False, allow_blank=True)


class InventoryMovementSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)
    product_sku = serializers.CharField(source="product.sku", read_only=True)
    created_by_name = serializers.CharField(source="created_by.username", read_only=True, default=None)

    class Meta:
        model = InventoryMovement
        fields = [
            "id",
            "product",
            "product_name",
            "product_sku",
            "movement_type",
            "quantity",
            "reference_type",
            "reference_id",
            "previous_quantity",
            "new_quantity",
            "notes",
            "created_by",
            "created_by_name",
            "created_at",
        ]
        read_only_fields = fields


class PurchaseItemSerializer(serializers.ModelSerializer):
    product_name = serializers.CharField(source="product.name", read_only=True)
    product_sku = serializers.CharField(source="product.sku", read_only=True)
    quantity_remaining = serializers.IntegerField(read_only=True)

    class Meta:
        model = PurchaseItem
        fields = [
            "id",
            "line_no",
            "product",
            "product_name",
            "product_sku",
            "quantity",
            "quantity_received",
            "quantity_remaining",
            "purchase_price",
            "line_total",
        ]
        read_only_fields = fields


class PurchasePaymentSerializer(PaymentRecordSerializer):
    class Meta(PaymentRecordSerializer.Meta):
        model = PurchasePayment
        fields = ["purchase", *PaymentRecordSerializer.Meta.fields]
        read_only_fields = fields


class PurchaseSerializer(serializers.ModelSerializer):
    vendor_name = serializers.CharField(source="vendor.name", read_only=True)
    items = PurchaseItemSerializer(many=True, read_only=True)
    pending_amount = serializers.SerializerMethodField()

    class Meta:
        model = Purchase
        fields = [
            "id",
            "purchase_number",
            "vendor",
            "vendor_name",
            "supplier_invoice_no",
            "purchase_date",
            "payment_due_date",
            "subtotal",
            "tax_rate",
            "tax_amount",
            "discount_rate",
            "discount_amount",
            "shipping_cost",
            "total_amount",
            "amount_paid",
            "pending_amount",
            "payment_status",
            "payment_mode",
            "order_status",
            "received_at",
            "notes",
            "items",
            "created_by",
            "created_at",
            "updated_at",
        ]
        read_only_fields = fields

    def get_pending_amount(self, obj):
        return str(outstanding(obj.total_amount, obj.amount_paid))


class PurchaseLineInputSerializer(OrderLineInputSerializer):
    purchase_price = serializers.DecimalField(min_value=Decimal("0"), **MONEY_FIELD_KWARGS)


class PurchaseCreateSerializer(OrderTotalsInputSerializer):
    vendor = serializers.UUIDField()
    purchase_date = serializers.DateField()
    payment_due_date = serializers.DateField(required=False, allow_null=True)
    supplier_invoice_no = serializers.CharField(required=False, allow_blank=True, max_length=128)
    items = PurchaseLineInputSerializer(many=True, allow_empty=False)


class ReceiptLineSerializer(serializers.Serializer):
    item = serializers.UUIDField()
    quantity = serializers.IntegerField(min_value=1)


class ReceiptSerializer(serializers.Serializer):
    lines = ReceiptLineSerializer(many=True, required=False, allow_empty=False)


class OrderStatusSerializer(serializers.Serializer):
    order_status = serializers.ChoiceField(choices=Purchase.OrderStatus.choices)
