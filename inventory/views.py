from django.db.models import ProtectedError, Q
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.exceptions import error_response, ledger_error_response
from common.permissions import RoleCapabilityPermission
from inventory.models import InventoryMovement, Product, Purchase, Vendor
from inventory.serializers import (
    InventoryMovementSerializer,
    OrderStatusSerializer,
    ProductSerializer,
    PurchaseCreateSerializer,
    PurchasePaymentSerializer,
    PurchaseSerializer,
    ReceiptSerializer,
    StockAdjustSerializer,
    VendorSerializer,
)
from inventory.services import (
    adjust_stock,
    create_product,
    create_purchase,
    delete_product,
    low_stock_products,
    receive_purchase,
    record_purchase_payment,
    reverse_purchase,
    set_purchase_payment_status,
    update_order_status,
)
from ledger.services import REJECT_INVALID_STATE
from ledger.views import AuditedModelMixin, PaymentActionsMixin, apply_date_range, apply_id_filter

TRUTHY = {"1", "true", "yes", "on"}


def _flag(value):
    return str(value).strip().lower() in TRUTHY


class VendorViewSet(AuditedModelMixin, viewsets.ModelViewSet):
    queryset = Vendor.objects.all()
    serializer_class = VendorSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "parties.view",
        "retrieve": "parties.view",
        "create": "parties.manage",
        "update": "parties.manage",
        "partial_update": "parties.manage",
        "destroy": "parties.delete",
    }
    audit_entity = "vendor"

    def get_queryset(self):
        qs = super().get_queryset()
        search = self.request.query_params.get("search")
        is_active = self.request.query_params.get("is_active")
        if search:
            qs = qs.filter(Q(name__icontains=search) | Q(contact_person__icontains=search) | Q(phone__icontains=search))
        if is_active not in (None, ""):
            qs = qs.filter(is_active=_flag(is_active))
        return qs

    def destroy(self, request, *args, **kwargs):
        vendor = self.get_object()
        before_snapshot = self.get_serializer(vendor).data
        try:
            vendor.delete()
        except ProtectedError:
            return error_response(
                code=REJECT_INVALID_STATE,
                message="Vendor has purchase orders and cannot be deleted. Deactivate it instead.",
            )
        self._audit(action="vendor.delete", entity_id=before_snapshot["id"], before_snapshot=before_snapshot)
        return Response(status=status.HTTP_204_NO_CONTENT)


class ProductViewSet(AuditedModelMixin, viewsets.ModelViewSet):
    queryset = Product.objects.select_related("vendor")
    serializer_class = ProductSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "catalog.view",
        "retrieve": "catalog.view",
        "low_stock": "catalog.view",
        "create": "catalog.manage",
        "update": "catalog.manage",
        "partial_update": "catalog.manage",
        "destroy": "catalog.delete",
        "stock": "stock.adjust",
        "history": "inventory.movements.view",
    }
    audit_entity = "product"

    def get_queryset(self):
        qs = super().get_queryset()
        params = self.request.query_params
        search = params.get("search")
        if search:
            qs = qs.filter(Q(name__icontains=search) | Q(sku__icontains=search) | Q(barcode__icontains=search))
        if params.get("category"):
            qs = qs.filter(category=params["category"])
        qs = apply_id_filter(qs, params, "vendor", "vendor_id")
        if params.get("is_active") not in (None, ""):
            qs = qs.filter(is_active=_flag(params["is_active"]))
        if _flag(params.get("low_stock", "")):
            qs = qs.filter(pk__in=low_stock_products().values("pk"))
        return qs

    def create(self, request, *args, **kwargs):
        serializer = self.get_serializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        data = dict(serializer.validated_data)
        data["quantity"] = data.pop("opening_quantity", 0)

        result = create_product(data, user=request.user)
        if result.accepted:
            self._audit(action="product.create", entity_id=result.value.pk, after_snapshot=self.get_serializer(result.value).data)
        return self._ledger_response(result, lambda product: self.get_serializer(product).data, success_status=status.HTTP_201_CREATED)

    def destroy(self, request, *args, **kwargs):
        product = self.get_object()
        before_snapshot = self.get_serializer(product).data
        result = delete_product(product.pk)
        if not result.accepted:
            return ledger_error_response(result)
        self._audit(action="product.delete", entity_id=before_snapshot["id"], before_snapshot=before_snapshot)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=True, methods=["post"], url_path="stock")
    def stock(self, request, pk=None):
        product = self.get_object()
        before_quantity = product.quantity
        serializer = StockAdjustSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        result = adjust_stock(
            product.pk,
            serializer.validated_data["quantity"],
            notes=serializer.validated_data.get("notes", ""),
            user=request.user,
        )
        if result.accepted and result.value.movement is not None:
            self._audit(
                action="stock.adjust",
                entity_id=product.pk,
                before_snapshot={"quantity": before_quantity},
                after_snapshot={"quantity": result.value.product.quantity},
            )
        return self._ledger_response(
            result,
            lambda adjustment: {
                "product": self.get_serializer(adjustment.product).data,
                "movement": InventoryMovementSerializer(adjustment.movement).data if adjustment.movement else None,
            },
        )

    @action(detail=False, methods=["get"], url_path="low-stock")
    def low_stock(self, request):
        return Response(self.get_serializer(low_stock_products(), many=True).data)

    @action(detail=True, methods=["get"], url_path="history")
    def history(self, request, pk=None):
        product = self.get_object()
        qs = product.movements.select_related("product", "created_by").order_by("-created_at")
        page = self.paginate_queryset(qs)
        if page is not None:
            return self.get_paginated_response(InventoryMovementSerializer(page, many=True).data)
        return Response(InventoryMovementSerializer(qs, many=True).data)


class PurchaseViewSet(
    PaymentActionsMixin,
    mixins.CreateModelMixin,
    mixins.DestroyModelMixin,
    viewsets.ReadOnlyModelViewSet,
):
    queryset = Purchase.objects.select_related("vendor").prefetch_related("items__product")
    serializer_class = PurchaseSerializer
    payment_serializer_class = PurchasePaymentSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "purchase.view",
        "retrieve": "purchase.view",
        "payments": "purchase.view",
        "create": "purchase.create",
        "receive": "purchase.receive",
        "order_status": "purchase.status",
        "record_payment": "payment.record",
        "payment": "payment.override",
        "destroy": "purchase.delete",
    }
    audit_entity = "purchase"

    def get_queryset(self):
        qs = super().get_queryset()
        params = self.request.query_params
        search = params.get("search")
        if search:
            qs = qs.filter(
                Q(purchase_number__icontains=search)
                | Q(supplier_invoice_no__icontains=search)
                | Q(vendor__name__icontains=search)
            )
        for name in ("payment_status", "order_status", "payment_mode"):
            if params.get(name):
                qs = qs.filter(**{name: params[name]})
        qs = apply_id_filter(qs, params, "vendor", "vendor_id")
        return apply_date_range(qs, params, "purchase_date")

    def perform_record_payment(self, order_id, **payment):
        return record_purchase_payment(order_id, **payment)

    def perform_payment_override(self, order_id, **override):
        return set_purchase_payment_status(order_id, **override)

    def create(self, request, *args, **kwargs):
        serializer = PurchaseCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = create_purchase(serializer.validated_data, user=request.user)
        if result.accepted:
            self._audit(action="purchase.create", entity_id=result.value.pk, after_snapshot=self.get_serializer(result.value).data)
        return self._ledger_response(result, lambda purchase: self.get_serializer(purchase).data, success_status=status.HTTP_201_CREATED)

    def destroy(self, request, *args, **kwargs):
        result = reverse_purchase(kwargs["pk"], user=request.user)
        if not result.accepted:
            return ledger_error_response(result)
        reversal = result.value
        self._audit(
            action="purchase.delete",
            entity_id=reversal.order_id,
            before_snapshot=reversal.snapshot,
            after_snapshot={"reversed_movements": [str(movement.pk) for movement in reversal.movements]},
        )
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=True, methods=["post"], url_path="receive")
    def receive(self, request, pk=None):
        serializer = ReceiptSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = receive_purchase(pk, lines=serializer.validated_data.get("lines"), user=request.user)
        if result.accepted:
            self._audit(action="purchase.receive", entity_id=result.value.pk, after_snapshot=self.get_serializer(result.value).data)
        return self._ledger_response(result, lambda purchase: self.get_serializer(purchase).data)

    @action(detail=True, methods=["patch"], url_path="order-status")
    def order_status(self, request, pk=None):
        serializer = OrderStatusSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = update_order_status(pk, serializer.validated_data["order_status"])
        if result.accepted:
            self._audit(action="purchase.order_status", entity_id=result.value.pk, after_snapshot={"order_status": result.value.order_status})
        return self._ledger_response(result, lambda purchase: self.get_serializer(purchase).data)


class InventoryMovementViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = InventoryMovement.objects.select_related("product", "created_by")
    serializer_class = InventoryMovementSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {"list": "inventory.movements.view", "retrieve": "inventory.movements.view"}

    def get_queryset(self):
        qs = super().get_queryset().order_by("-created_at")
        params = self.request.query_params
        qs = apply_id_filter(qs, params, "product", "product_id")
        if params.get("movement_type"):
            qs = qs.filter(movement_type=params["movement_type"])
        if params.get("reference_type"):
            qs = qs.filter(reference_type=params["reference_type"])
        qs = apply_id_filter(qs, params, "reference_id", "reference_id")
        return apply_date_range(qs, params, "created_at__date")
