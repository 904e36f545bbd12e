from django.utils.dateparse import parse_date
from rest_framework import status
from rest_framework.decorators import action
from rest_framework.response import Response

from common.audit import notify_after_commit
from common.exceptions import ledger_error_response
from ledger.serializers import PaymentInputSerializer, PaymentOverrideSerializer, PaymentSummarySerializer
from ledger.services import parse_uuid, payment_summary


class LedgerViewMixin:
    """Shared plumbing for viewsets whose writes go through ledger operations."""

    audit_entity = None

    def _audit(self, *, action, entity_id, before_snapshot=None, after_snapshot=None):
        notify_after_commit(
            self.request,
            action=action,
            entity=self.audit_entity,
            entity_id=entity_id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
        )

    def _ledger_response(self, result, render, *, success_status=status.HTTP_200_OK):
        if not result.accepted:
            return ledger_error_response(result)
        return Response(render(result.value), status=success_status)


class AuditedModelMixin(LedgerViewMixin):
    """Audit plain model writes the same way ledger operations are audited."""

    def perform_create(self, serializer):
        instance = serializer.save()
        self._audit(action=f"{self.audit_entity}.create", entity_id=instance.pk, after_snapshot=self.get_serializer(instance).data)

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        instance = serializer.save()
        self._audit(
            action=f"{self.audit_entity}.update",
            entity_id=instance.pk,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
        )


class PaymentActionsMixin(LedgerViewMixin):
    """`record-payment`, `payments` and `payment` (administrative override) detail routes."""

    payment_serializer_class = None

    def perform_record_payment(self, order_id, **payment):
        raise NotImplementedError

    def perform_payment_override(self, order_id, **override):
        raise NotImplementedError

    def _payment_body(self, order, payment=None):
        body = dict(PaymentSummarySerializer(payment_summary(order)).data)
        body["payment_status"] = order.payment_status
        if payment is not None:
            body["payment"] = self.payment_serializer_class(payment).data
        return body

    @action(detail=True, methods=["post"], url_path="record-payment")
    def record_payment(self, request, pk=None):
        serializer = PaymentInputSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = self.perform_record_payment(pk, user=request.user, **serializer.validated_data)
        if result.accepted:
            outcome = result.value
            self._audit(
                action="payment.record",
                entity_id=outcome.order.pk,
                after_snapshot=self.payment_serializer_class(outcome.payment).data,
            )
        return self._ledger_response(
            result,
            lambda outcome: self._payment_body(outcome.order, outcome.payment),
            success_status=status.HTTP_201_CREATED,
        )

    @action(detail=True, methods=["get"], url_path="payments")
    def payments(self, request, pk=None):
        order = self.get_object()
        rows = order.payments.select_related("created_by")
        body = self._payment_body(order)
        body["payments"] = self.payment_serializer_class(rows, many=True).data
        return Response(body)

    @action(detail=True, methods=["patch"], url_path="payment")
    def payment(self, request, pk=None):
        serializer = PaymentOverrideSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        result = self.perform_payment_override(pk, **serializer.validated_data)
        if result.accepted:
            outcome = result.value
            self._audit(
                action="payment.override",
                entity_id=outcome.order.pk,
                before_snapshot=outcome.previous,
                after_snapshot={
                    "amount_paid": outcome.order.amount_paid,
                    "payment_status": outcome.order.payment_status,
                    "payment_mode": outcome.order.payment_mode,
                },
            )
        return self._ledger_response(result, lambda outcome: self.get_serializer(outcome.order).data)


def _param_date(params, name):
    try:
        return parse_date(params.get(name) or "")
    except ValueError:
        return None


def apply_id_filter(queryset, params, param_name, field_name):
    """Filter by a UUID query param. A malformed id matches nothing."""
    raw = params.get(param_name)
    if not raw:
        return queryset
    value = parse_uuid(raw)
    if value is None:
        return queryset.none()
    return queryset.filter(**{field_name: value})


def apply_date_range(queryset, params, field_name):
    """Filter `queryset` by `start_date`/`end_date` query params (inclusive, ISO dates)."""
    start_date = _param_date(params, "start_date")
    end_date = _param_date(params, "end_date")
    if start_date:
        queryset = queryset.filter(**{f"{field_name}__gte": start_date})
    if end_date:
        queryset = queryset.filter(**{f"{field_name}__lte": end_date})
    return queryset
