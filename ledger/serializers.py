from decimal import Decimal

from rest_framework import serializers

from ledger.models import PaymentMode, PaymentStatus

MONEY_FIELD_KWARGS = {"max_digits": 12, "decimal_places": 2}


class PaymentInputSerializer(serializers.Serializer):
    payment_date = serializers.DateField(required=False)
    amount = serializers.DecimalField(min_value=Decimal("0.01"), **MONEY_FIELD_KWARGS)
    mode = serializers.ChoiceField(choices=PaymentMode.choices, required=False)
    reference_no = serializers.CharField(required=False, allow_blank=True, max_length=128)
    notes = serializers.CharField(required=False, allow_blank=True)


class PaymentOverrideSerializer(serializers.Serializer):
    amount_paid = serializers.DecimalField(min_value=Decimal("0"), **MONEY_FIELD_KWARGS)
    payment_status = serializers.ChoiceField(choices=PaymentStatus.choices)
    mode = serializers.ChoiceField(choices=PaymentMode.choices, required=False)


class PaymentSummarySerializer(serializers.Serializer):
    total_amount = serializers.DecimalField(**MONEY_FIELD_KWARGS)
    total_paid = serializers.DecimalField(**MONEY_FIELD_KWARGS)
    pending = serializers.DecimalField(**MONEY_FIELD_KWARGS)


class PaymentRecordSerializer(serializers.ModelSerializer):
    """Read shape shared by purchase and invoice payment rows; subclasses set Meta.model."""

    created_by_name = serializers.CharField(source="created_by.username", read_only=True, default=None)

    class Meta:
        fields = [
            "id",
            "payment_date",
            "amount",
            "mode",
            "reference_no",
            "notes",
            "created_by",
            "created_by_name",
            "created_at",
        ]
        read_only_fields = fields


class OrderLineInputSerializer(serializers.Serializer):
    product = serializers.UUIDField()
    quantity = serializers.IntegerField(min_value=1)


class OrderTotalsInputSerializer(serializers.Serializer):
    """Optional tax/discount/shipping inputs; an explicit amount wins over its rate."""

    tax_rate = serializers.DecimalField(max_digits=6, decimal_places=2, min_value=Decimal("0"), required=False, allow_null=True)
    tax_amount = serializers.DecimalField(min_value=Decimal("0"), required=False, allow_null=True, **MONEY_FIELD_KWARGS)
    discount_rate = serializers.DecimalField(
        max_digits=6, decimal_places=2, min_value=Decimal("0"), max_value=Decimal("100"), required=False, allow_null=True
    )
    discount_amount = serializers.DecimalField(min_value=Decimal("0"), required=False, allow_null=True, **MONEY_FIELD_KWARGS)
    shipping_cost = serializers.DecimalField(min_value=Decimal("0"), required=False, allow_null=True, **MONEY_FIELD_KWARGS)
    payment_mode = serializers.ChoiceField(choices=PaymentMode.choices, required=False)
    notes = serializers.CharField(required=False, allow_blank=True)
