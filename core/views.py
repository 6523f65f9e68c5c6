import csv
import logging

from django.db import connections
from django.http import HttpResponse
from django.utils import timezone
from django.utils.dateparse import parse_datetime
from rest_framework import status, viewsets
from rest_framework.decorators import action, api_view, permission_classes
from rest_framework.permissions import AllowAny, IsAuthenticated
from rest_framework.response import Response
from rest_framework.throttling import ScopedRateThrottle
from rest_framework_simplejwt.views import TokenObtainPairView

from common.audit import create_audit_log_from_request
from common.errors import ForbiddenError
from common.permissions import AdminRolePermission, Permission, Resource, ResourcePermission, get_user_role
from common.utils import get_or_not_found
from core.models import AuditLog, Notification, Organization, Salesperson, User
from core.serializers import (
    AuditLogSerializer,
    EmailOrUsernameTokenObtainPairSerializer,
    NotificationSerializer,
    OrganizationSerializer,
    SalespersonSerializer,
)

logger = logging.getLogger(__name__)


class EmailOrUsernameTokenObtainPairView(TokenObtainPairView):
    serializer_class = EmailOrUsernameTokenObtainPairSerializer
    throttle_classes = [ScopedRateThrottle]
    throttle_scope = "auth"


class AuditedModelViewSet(viewsets.ModelViewSet):
    """ModelViewSet that writes an audit entry for every create, update and delete."""

    audit_entity = None

    def _audit(self, *, action, instance, before_snapshot=None, after_snapshot=None, entity_id=None):
        create_audit_log_from_request(
            self.request,
            action=f"{self.audit_entity}_{action}",
            entity=self.audit_entity,
            entity_id=entity_id or instance.pk,
            before_snapshot=before_snapshot,
            after_snapshot=after_snapshot,
        )

    def perform_create(self, serializer):
        instance = serializer.save()
        self._audit(action="created", instance=instance, after_snapshot=self.get_serializer(instance).data)

    def perform_update(self, serializer):
        before_snapshot = self.get_serializer(serializer.instance).data
        instance = serializer.save()
        self._audit(
            action="updated",
            instance=instance,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
        )

    def perform_destroy(self, instance):
        before_snapshot = self.get_serializer(instance).data
        entity_id = instance.pk
        instance.delete()
        self._audit(action="deleted", instance=instance, before_snapshot=before_snapshot, entity_id=entity_id)


class OrganizationViewSet(AuditedModelViewSet):
    queryset = Organization.objects.all()
    serializer_class = OrganizationSerializer
    permission_classes = [IsAuthenticated, ResourcePermission]
    permission_resource = Resource.ORGANIZATIONS
    permission_action_map = {"unarchive": Permission.DELETE}
    audit_entity = "organization"

    def get_queryset(self):
        queryset = super().get_queryset()
        include_archived = self.request.query_params.get("include_archived", "").lower() in {"1", "true", "yes"}
        if self.action == "list" and not include_archived:
            queryset = queryset.filter(archived=False)
        search = self.request.query_params.get("search")
        if search:
            queryset = queryset.filter(name__icontains=search.strip())
        return queryset

    def perform_destroy(self, instance):
        # Organizations are never hard-deleted.
        before_snapshot = self.get_serializer(instance).data
        instance.archived = True
        instance.archived_at = timezone.now()
        instance.archived_by = self.request.user
        instance.save(update_fields=["archived", "archived_at", "archived_by", "updated_at"])
        self._audit(
            action="archived",
            instance=instance,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
        )

    @action(detail=True, methods=["post"], url_path="unarchive")
    def unarchive(self, request, pk=None):
        instance = self.get_object()
        instance.archived = False
        instance.archived_at = None
        instance.archived_by = None
        instance.save(update_fields=["archived", "archived_at", "archived_by", "updated_at"])
        self._audit(action="unarchived", instance=instance, after_snapshot=self.get_serializer(instance).data)
        return Response(self.get_serializer(instance).data)


class SalespersonViewSet(AuditedModelViewSet):
    queryset = Salesperson.objects.select_related("user")
    serializer_class = SalespersonSerializer
    permission_classes = [IsAuthenticated, ResourcePermission]
    permission_resource = Resource.SALESPEOPLE
    audit_entity = "salesperson"

    def get_queryset(self):
        queryset = super().get_queryset()
        if get_user_role(self.request.user) == User.Role.SALES:
            queryset = queryset.filter(user=self.request.user)
        active = self.request.query_params.get("active")
        if active is not None:
            queryset = queryset.filter(active=active.lower() in {"1", "true", "yes"})
        return queryset.order_by("user__username")

    def get_object(self):
        salesperson = get_or_not_found(Salesperson.objects.select_related("user"), "Salesperson", self.kwargs["pk"])
        self.check_object_permissions(self.request, salesperson)
        if get_user_role(self.request.user) == User.Role.SALES and salesperson.user_id != self.request.user.pk:
            raise ForbiddenError("You can only view your own salesperson profile")
        return salesperson


class NotificationViewSet(viewsets.ReadOnlyModelViewSet):
    serializer_class = NotificationSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        queryset = Notification.objects.filter(user=self.request.user)
        if self.request.query_params.get("unread", "").lower() in {"1", "true", "yes"}:
            queryset = queryset.filter(is_read=False)
        return queryset

    @action(detail=True, methods=["post"], url_path="read")
    def mark_read(self, request, pk=None):
        notification = self.get_object()
        if not notification.is_read:
            notification.is_read = True
            notification.read_at = timezone.now()
            notification.save(update_fields=["is_read", "read_at"])
        return Response(self.get_serializer(notification).data)

    @action(detail=False, methods=["post"], url_path="read-all")
    def mark_all_read(self, request):
        updated = self.get_queryset().filter(is_read=False).update(is_read=True, read_at=timezone.now())
        return Response({"updated": updated})

    @action(detail=False, methods=["get"], url_path="unread-count", pagination_class=None)
    def unread_count(self, request):
        return Response({"count": self.get_queryset().filter(is_read=False).count()})


class AuditLogViewSet(viewsets.ReadOnlyModelViewSet):
    queryset = AuditLog.objects.select_related("actor")
    serializer_class = AuditLogSerializer
    permission_classes = [IsAuthenticated, AdminRolePermission]

    def get_queryset(self):
        qs = self.queryset.order_by("-created_at")

        start_date = self.request.query_params.get("start_date")
        end_date = self.request.query_params.get("end_date")
        actor_id = self.request.query_params.get("actor_id")
        action = self.request.query_params.get("action")
        entity = self.request.query_params.get("entity")
        entity_id = self.request.query_params.get("entity_id")

        if start_date:
            dt = parse_datetime(start_date)
            if dt:
                qs = qs.filter(created_at__gte=dt)
        if end_date:
            dt = parse_datetime(end_date)
            if dt:
                qs = qs.filter(created_at__lte=dt)
        if actor_id:
            qs = qs.filter(actor_id=actor_id)
        if action:
            qs = qs.filter(action=action)
        if entity:
            qs = qs.filter(entity=entity)
        if entity_id:
            qs = qs.filter(entity_id=entity_id)

        return qs

    @action(detail=False, methods=["get"], url_path="export")
    def export(self, request):
        logs = self.get_queryset()
        response = HttpResponse(content_type="text/csv")
        response["Content-Disposition"] = 'attachment; filename="audit-logs.csv"'

        writer = csv.writer(response)
        writer.writerow(["id", "created_at", "actor", "action", "entity", "entity_id", "request_id"])
        for log in logs:
            writer.writerow(
                [
                    log.id,
                    log.created_at.isoformat(),
                    getattr(log.actor, "username", ""),
                    log.action,
                    log.entity,
                    log.entity_id,
                    log.request_id,
                ]
            )
        return response


@api_view(["GET"])
@permission_classes([AllowAny])
def healthz(request):
    return Response({"status": "ok", "request_id": getattr(request, "request_id", None)})


@api_view(["GET"])
@permission_classes([AllowAny])
def readyz(request):
    try:
        with connections["default"].cursor() as cursor:
            cursor.execute("SELECT 1")
            cursor.fetchone()
    except Exception as exc:
        logger.exception("readiness_check_failed")
        return Response(
            {"status": "error", "request_id": getattr(request, "request_id", None), "detail": str(exc)},
            status=status.HTTP_503_SERVICE_UNAVAILABLE,
        )

    return Response({"status": "ready", "request_id": getattr(request, "request_id", None)})
