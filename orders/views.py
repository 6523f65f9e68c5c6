from rest_framework import status, viewsets
from rest_framework.decorators import action
from rest_framework.permissions import IsAuthenticated
from rest_framework.response import Response

from common.audit import create_audit_log_from_request, get_request_id
from common.errors import ForbiddenError
from common.permissions import Permission, Resource, ResourcePermission, scope_queryset_for_user
from orders.models import ManufacturingJob, Order
from orders.serializers import (
    ManufacturingJobSerializer,
    OrderLineItemSerializer,
    OrderSerializer,
    StatusChangeSerializer,
)
from orders.services import (
    add_order_line_item,
    can_user_modify_manufacturing,
    can_user_modify_order,
    can_user_view_manufacturing,
    can_user_view_order,
    create_manufacturing_job,
    create_order,
    delete_order,
    get_manufacturing_job_by_id,
    get_order_by_id,
    notify_order_status_change,
    update_manufacturing_status,
    update_order,
    update_order_status,
)
from orders.workflow import ORDER_WORKFLOW


class OrderViewSet(viewsets.ModelViewSet):
    serializer_class = OrderSerializer
    permission_classes = [IsAuthenticated, ResourcePermission]
    permission_resource = Resource.ORDERS
    permission_action_map = {
        "change_status": Permission.WRITE,
        "allowed_statuses": Permission.VIEW,
        "line_items": Permission.VIEW,
        "add_line_item": Permission.WRITE,
    }

    def get_queryset(self):
        queryset = Order.objects.select_related("salesperson", "organization")
        queryset = scope_queryset_for_user(queryset, self.request.user, Resource.ORDERS, ("salesperson",))

        status_filter = self.request.query_params.get("status")
        if status_filter:
            queryset = queryset.filter(status=status_filter)
        organization_id = self.request.query_params.get("organization_id")
        if organization_id:
            queryset = queryset.filter(organization_id=organization_id)
        return queryset

    def get_object(self):
        order = get_order_by_id(self.kwargs["pk"])
        self.check_object_permissions(self.request, order)
        if not can_user_view_order(order, self.request.user):
            raise ForbiddenError("You do not have access to this order")
        return order

    def _require_modify(self, order):
        if not can_user_modify_order(order, self.request.user):
            raise ForbiddenError("You can only modify your own orders")

    def perform_create(self, serializer):
        serializer.instance = create_order(
            serializer.validated_data,
            self.request.user,
            request_id=get_request_id(self.request),
        )

    def perform_update(self, serializer):
        order = serializer.instance
        self._require_modify(order)
        previous_status = order.status
        serializer.instance = update_order(
            order.pk,
            serializer.validated_data,
            self.request.user,
            request_id=get_request_id(self.request),
        )
        notify_order_status_change(serializer.instance, previous_status, self.request.user)

    def perform_destroy(self, instance):
        self._require_modify(instance)
        delete_order(instance.pk, self.request.user, request_id=get_request_id(self.request))

    @action(detail=True, methods=["post", "patch"], url_path="status")
    def change_status(self, request, pk=None):
        order = self.get_object()
        self._require_modify(order)
        serializer = StatusChangeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)

        previous_status = order.status
        order = update_order_status(
            order.pk,
            serializer.validated_data["status"],
            request.user,
            request_id=get_request_id(request),
        )
        notify_order_status_change(order, previous_status, request.user)
        return Response(self.get_serializer(order).data)

    @action(detail=True, methods=["get"], url_path="allowed-statuses")
    def allowed_statuses(self, request, pk=None):
        order = self.get_object()
        return Response({"status": order.status, "allowed": ORDER_WORKFLOW.allowed_next(order.status)})

    @action(detail=True, methods=["get"], url_path="line-items", pagination_class=None)
    def line_items(self, request, pk=None):
        order = self.get_object()
        return Response(OrderLineItemSerializer(order.line_items.all(), many=True).data)

    @line_items.mapping.post
    def add_line_item(self, request, pk=None):
        order = self.get_object()
        self._require_modify(order)
        serializer = OrderLineItemSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        item = add_order_line_item(order, serializer.validated_data, request.user, request_id=get_request_id(request))
        return Response(OrderLineItemSerializer(item).data, status=status.HTTP_201_CREATED)


class ManufacturingJobViewSet(viewsets.ModelViewSet):
    serializer_class = ManufacturingJobSerializer
    permission_classes = [IsAuthenticated, ResourcePermission]
    permission_resource = Resource.MANUFACTURING
    permission_action_map = {"change_status": Permission.WRITE}

    def get_queryset(self):
        queryset = ManufacturingJob.objects.select_related("order", "assigned_to")
        queryset = scope_queryset_for_user(queryset, self.request.user, Resource.MANUFACTURING, ("assigned_to",))
        status_filter = self.request.query_params.get("status")
        if status_filter:
            queryset = queryset.filter(status=status_filter)
        return queryset

    def get_object(self):
        job = get_manufacturing_job_by_id(self.kwargs["pk"])
        self.check_object_permissions(self.request, job)
        if not can_user_view_manufacturing(job, self.request.user):
            raise ForbiddenError("You do not have access to this manufacturing record")
        return job

    def _require_modify(self, job):
        if not can_user_modify_manufacturing(job, self.request.user):
            raise ForbiddenError("You can only update manufacturing records assigned to you")

    def perform_create(self, serializer):
        serializer.instance = create_manufacturing_job(
            serializer.validated_data,
            self.request.user,
            request_id=get_request_id(self.request),
        )

    def perform_update(self, serializer):
        self._require_modify(serializer.instance)
        before_snapshot = self.get_serializer(serializer.instance).data
        instance = serializer.save()
        create_audit_log_from_request(
            self.request,
            action="manufacturing_updated",
            entity="manufacturing",
            entity_id=instance.pk,
            before_snapshot=before_snapshot,
            after_snapshot=self.get_serializer(instance).data,
        )

    def perform_destroy(self, instance):
        before_snapshot = self.get_serializer(instance).data
        entity_id = instance.pk
        instance.delete()
        create_audit_log_from_request(
            self.request,
            action="manufacturing_deleted",
            entity="manufacturing",
            entity_id=entity_id,
            before_snapshot=before_snapshot,
        )

    @action(detail=True, methods=["post", "patch"], url_path="status")
    def change_status(self, request, pk=None):
        job = self.get_object()
        self._require_modify(job)
        serializer = StatusChangeSerializer(data=request.data)
        serializer.is_valid(raise_exception=True)
        job = update_manufacturing_status(
            job.pk,
            serializer.validated_data["status"],
            request.user,
            request_id=get_request_id(request),
        )
        return Response(self.get_serializer(job).data)
