from rest_framework import serializers

from core.serializers import UserSummarySerializer
from orders.models import ManufacturingJob, Order, OrderLineItem
from orders.services import order_total
from orders.workflow import MANUFACTURING_WORKFLOW, ORDER_WORKFLOW


class OrderLineItemSerializer(serializers.ModelSerializer):
    class Meta:
        model = OrderLineItem
        fields = [
            "id",
            "order",
            "item_name",
            "color",
            "quantity",
            "unit_price",
            "line_total",
            "notes",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "order", "line_total", "created_at", "updated_at"]


class OrderSerializer(serializers.ModelSerializer):
    salesperson_detail = UserSummarySerializer(source="salesperson", read_only=True)
    organization_name = serializers.CharField(source="organization.name", read_only=True)
    total = serializers.SerializerMethodField()
    allowed_next_statuses = serializers.SerializerMethodField()

    class Meta:
        model = Order
        fields = [
            "id",
            "order_code",
            "order_name",
            "organization",
            "organization_name",
            "salesperson",
            "salesperson_detail",
            "status",
            "priority",
            "design_approved",
            "sizes_validated",
            "deposit_received",
            "estimated_delivery",
            "notes",
            "total",
            "allowed_next_statuses",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "order_code", "created_at", "updated_at"]
        extra_kwargs = {
            "order_name": {"required": True},
            "status": {"required": False},
        }

    def get_total(self, obj):
        return str(order_total(obj))

    def get_allowed_next_statuses(self, obj):
        return ORDER_WORKFLOW.allowed_next(obj.status)


class StatusChangeSerializer(serializers.Serializer):
    # Plain text so unknown values reach the workflow and get its error message.
    status = serializers.CharField(max_length=64)


class ManufacturingJobSerializer(serializers.ModelSerializer):
    order_code = serializers.CharField(source="order.order_code", read_only=True)
    assigned_to_detail = UserSummarySerializer(source="assigned_to", read_only=True)
    allowed_next_statuses = serializers.SerializerMethodField()

    class Meta:
        model = ManufacturingJob
        fields = [
            "id",
            "order",
            "order_code",
            "assigned_to",
            "assigned_to_detail",
            "status",
            "priority",
            "estimated_completion",
            "actual_completion",
            "tracking_number",
            "production_notes",
            "allowed_next_statuses",
            "created_at",
            "updated_at",
        ]
        read_only_fields = ["id", "actual_completion", "created_at", "updated_at"]
        extra_kwargs = {"order": {"validators": []}}

    def get_allowed_next_statuses(self, obj):
        return MANUFACTURING_WORKFLOW.allowed_next(obj.status)

    def validate(self, attrs):
        if self.instance is not None:
            if "status" in attrs and attrs["status"] != self.instance.status:
                raise serializers.ValidationError({"status": "Use the status endpoint to change manufacturing status."})
            if "order" in attrs and attrs["order"] != self.instance.order:
                raise serializers.ValidationError({"order": "A manufacturing record cannot move to another order."})
        return attrs
