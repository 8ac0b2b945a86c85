import json
import logging

from django.core.serializers.json import DjangoJSONEncoder
from django.db import DatabaseError, transaction

from common.utils import get_request_id, get_request_ip
from core.models import AuditLog

logger = logging.getLogger(__name__)


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
    ip_address=None,
    request_id=None,
):
    """Write an audit row without ever failing the caller.

    The insert runs in its own savepoint so a failed write does not poison an
    enclosing transaction. Failures are logged and swallowed.
    """
    try:
        with transaction.atomic():
            return AuditLog.objects.create(
                actor=actor,
                action=action,
                entity=entity,
                entity_id=entity_id,
                before_snapshot=_json_safe(before_snapshot),
                after_snapshot=_json_safe(after_snapshot),
                ip_address=ip_address,
                request_id=request_id,
            )
    except DatabaseError:
        logger.warning(
            "audit_log_write_failed action=%s entity=%s entity_id=%s",
            action,
            entity,
            entity_id,
            exc_info=True,
            extra={"request_id": request_id},
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
    actor=None,
):
    user = getattr(request, "user", None)
    if actor is None and user is not None and user.is_authenticated:
        actor = user

    return create_audit_log(
        actor=actor,
        action=action,
        entity=entity,
        entity_id=entity_id,
        before_snapshot=before_snapshot,
        after_snapshot=after_snapshot,
        ip_address=get_request_ip(request),
        request_id=get_request_id(request),
    )


class AuditedMutationMixin:
    """Audit create/update/destroy on a ModelViewSet; PUT behaves like PATCH."""

    audit_entity = None

    def _audit(self, *, action, instance, before_snapshot=None, after_snapshot=None):
        create_audit_log_from_request(
            self.request,
            action=f"{self.audit_entity}.{action}",
            entity=self.audit_entity,
            entity_id=instance.id,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
        )

    def update(self, request, *args, **kwargs):
        kwargs["partial"] = True
        return super().update(request, *args, **kwargs)

    def perform_create(self, serializer):
        instance = serializer.save()
        self._audit(action="create", instance=instance, after_snapshot=self.get_serializer(instance).data)

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        instance = serializer.save()
        self._audit(
            action="update",
            instance=instance,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
        )

    def perform_destroy(self, instance):
        before_snapshot = self.get_serializer(instance).data
        self._audit(action="delete", instance=instance, before_snapshot=before_snapshot)
        instance.delete()
