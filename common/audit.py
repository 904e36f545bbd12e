import json
import logging
import uuid
from functools import partial

from django.core.serializers.json import DjangoJSONEncoder
from django.db import transaction

from core.models import AuditLog

logger = logging.getLogger(__name__)


def _parse_uuid(value):
    if not value:
        return None
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (ValueError, TypeError):
        return None


def get_request_id(request):
    return getattr(request, "request_id", None) or request.headers.get("X-Request-ID")


def get_client_ip(request):
    forwarded = request.META.get("HTTP_X_FORWARDED_FOR")
    if forwarded:
        return forwarded.split(",")[0].strip() or None
    return request.META.get("REMOTE_ADDR") or None


def _json_safe(value):
    if value is None:
        return None
    return json.loads(json.dumps(value, cls=DjangoJSONEncoder))


def create_audit_log(
    *,
    actor=None,
    action,
    entity,
    entity_id=None,
    before_snapshot=None,
    after_snapshot=None,
    request_id=None,
    ip_address=None,
    user_agent=None,
):
    """Write one audit row. Never raises: a failed write is logged and dropped."""
    try:
        with transaction.atomic():
            return AuditLog.objects.create(
                actor=actor,
                action=action,
                entity=entity,
                entity_id=_parse_uuid(entity_id),
                before_snapshot=_json_safe(before_snapshot),
                after_snapshot=_json_safe(after_snapshot),
                request_id=request_id,
                ip_address=ip_address,
                user_agent=(user_agent or "")[:512] or None,
            )
    except Exception:
        logger.exception(
            "audit_log_write_failed",
            extra={"entity": entity, "entity_id": str(entity_id) if entity_id else None, "request_id": request_id},
        )
        return None


def create_audit_log_from_request(
    request,
    *,
    action,
    entity,
    entity_id=None,
    before_snapshot=None,
    after_snapshot=None,
):
    user = getattr(request, "user", None)
    return create_audit_log(
        actor=user if user is not None and user.is_authenticated else None,
        action=action,
        entity=entity,
        entity_id=entity_id,
        before_snapshot=before_snapshot,
        after_snapshot=after_snapshot,
        request_id=get_request_id(request),
        ip_address=get_client_ip(request),
        user_agent=request.META.get("HTTP_USER_AGENT"),
    )


def notify_after_commit(request, **kwargs):
    """Schedule an audit write for after the surrounding transaction commits."""
    transaction.on_commit(partial(create_audit_log_from_request, request, **kwargs))
