from django.db.models import ProtectedError, Q
from django.utils import timezone
from rest_framework import mixins, status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.exceptions import error_response, ledger_error_response
from common.permissions import RoleCapabilityPermission
from ledger.services import REJECT_INVALID_STATE
from ledger.views import AuditedModelMixin, PaymentActionsMixin, apply_date_range, apply_id_filter
from sales.models import Customer, Invoice
from sales.serializers import CustomerSerializer, InvoiceCreateSerializer, InvoicePaymentSerializer, InvoiceSerializer
from sales.services import (
    OPEN_PAYMENT_STATUSES,
    compute_outstanding_balance,
    record_invoice_payment,
    record_sale,
    reverse_sale,
    set_invoice_payment_status,
)


class CustomerViewSet(AuditedModelMixin, viewsets.ModelViewSet):
    queryset = Customer.objects.all()
    serializer_class = CustomerSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "parties.view",
        "retrieve": "parties.view",
        "outstanding": "parties.view",
        "create": "parties.manage",
        "update": "parties.manage",
        "partial_update": "parties.manage",
        "destroy": "parties.delete",
    }
    audit_entity = "customer"

    def get_queryset(self):
        qs = super().get_queryset()
        search = self.request.query_params.get("search")
        if search:
            qs = qs.filter(Q(name__icontains=search) | Q(phone__icontains=search) | Q(email__icontains=search))
        return qs

    def destroy(self, request, *args, **kwargs):
        customer = self.get_object()
        before_snapshot = self.get_serializer(customer).data
        try:
            customer.delete()
        except ProtectedError:
            return error_response(
                code=REJECT_INVALID_STATE,
                message="Customer has invoices and cannot be deleted. Deactivate it instead.",
            )
        self._audit(action="customer.delete", entity_id=before_snapshot["id"], before_snapshot=before_snapshot)
        return Response(status=status.HTTP_204_NO_CONTENT)

    @action(detail=True, methods=["get"], url_path="outstanding")
    def outstanding(self, request, pk=None):
        customer = self.get_object()
        return Response(
            {
                "customer": str(customer.pk),
                "outstanding_balance": str(compute_outstanding_balance(customer)),
                "cached_balance": str(customer.outstanding_balance),
            }
        )


class InvoiceViewSet(
    PaymentActionsMixin,
    mixins.CreateModelMixin,
    mixins.DestroyModelMixin,
    viewsets.ReadOnlyModelViewSet,
):
    queryset = Invoice.objects.select_related("customer").prefetch_related("items__product")
    serializer_class = InvoiceSerializer
    payment_serializer_class = InvoicePaymentSerializer
    permission_classes = [IsAuthenticated, RoleCapabilityPermission]
    permission_action_map = {
        "list": "invoice.view",
        "retrieve": "invoice.view",
        "payments": "invoice.view",
        "create": "invoice.create",
        "record_payment": "payment.record",
        "payment": "payment.override",
        "destroy": "invoice.delete",
    }
    audit_entity = "invoice"

    def get_queryset(self):
        qs = super().get_queryset()
        params = self.request.query_params
        search = params.get("search")
        if search:
            qs = qs.filter(Q(invoice_number__icontains=search) | Q(customer__name__icontains=search))
        qs = apply_id_filter(qs, params, "customer", "customer_id")
        payment_status = params.get("payment_status")
        if payment_status == Invoice.OVERDUE:
            qs = qs.filter(payment_status__in=OPEN_PAYMENT_STATUSES, due_date__lt=timezone.localdate())
        elif payment_status:
            qs = qs.filter(payment_status=payment_status)
        if params.get("payment_mode"):
            qs = qs.filter(payment_mode=params["payment_mode"])
        return apply_date_range(qs, params, "invoice_date")

    def perform_record_payment(self, order_id, **payment):
        return record_invoice_payment(order_id, **payment)

    def perform_payment_override(self, order_id, **override):
        return set_invoice_payment_status(order_id, **override)

    def create(self, request, *args, **kwargs):
        serializer = InvoiceCreateSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = record_sale(serializer.validated_data, user=request.user)
        if result.accepted:
            self._audit(action="invoice.create", entity_id=result.value.pk, after_snapshot=self.get_serializer(result.value).data)
        return self._ledger_response(result, lambda invoice: self.get_serializer(invoice).data, success_status=status.HTTP_201_CREATED)

    def destroy(self, request, *args, **kwargs):
        result = reverse_sale(kwargs["pk"], user=request.user)
        if not result.accepted:
            return ledger_error_response(result)
        reversal = result.value
        self._audit(
            action="invoice.delete",
            entity_id=reversal.order_id,
            before_snapshot=reversal.snapshot,
            after_snapshot={"reversed_movements": [str(movement.pk) for movement in reversal.movements]},
        )
        return Response(status=status.HTTP_204_NO_CONTENT)
