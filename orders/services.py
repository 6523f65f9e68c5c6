from decimal import Decimal

from django.db import transaction
from django.db.models import Sum
from django.utils import timezone

from common.audit import log_activity
from common.errors import ConflictError, ForbiddenError, ValidationError, storage_errors
from common.permissions import get_user_role
from common.utils import generate_code, get_or_not_found, model_snapshot
from core.models import Notification, User
from core.notifications import notify_user
from finance.calculations import compute_line_total, to_money
from orders.models import ManufacturingJob, Order, OrderLineItem
from orders.workflow import MANUFACTURING_WORKFLOW, ORDER_WORKFLOW

ORDER_SNAPSHOT_FIELDS = (
    "order_code",
    "order_name",
    "status",
    "priority",
    "salesperson_id",
    "organization_id",
    "design_approved",
    "sizes_validated",
    "deposit_received",
    "estimated_delivery",
    "notes",
)
ORDER_UPDATABLE_FIELDS = (
    "order_name",
    "organization",
    "salesperson",
    "status",
    "priority",
    "design_approved",
    "sizes_validated",
    "deposit_received",
    "estimated_delivery",
    "notes",
)
MANUFACTURING_SNAPSHOT_FIELDS = (
    "order_id",
    "status",
    "priority",
    "assigned_to_id",
    "estimated_completion",
    "actual_completion",
    "tracking_number",
)

ORDER_MODIFY_ROLES = {User.Role.ADMIN, User.Role.OPS}
ORDER_VIEW_ROLES = ORDER_MODIFY_ROLES | {User.Role.FINANCE}
MANUFACTURING_ROLES = {User.Role.ADMIN, User.Role.OPS, User.Role.MANUFACTURER}


def _validate_choice(value, choices, field):
    if value not in choices.values:
        raise ValidationError(
            f"Invalid {field}: {value}",
            errors={field: [f"Must be one of: {', '.join(choices.values)}."]},
        )


def get_order_by_id(order_id):
    return get_or_not_found(Order.objects.select_related("salesperson", "organization"), "Order", order_id)


def create_order(data, user, *, request_id=None):
    order_name = (data.get("order_name") or "").strip()
    if not order_name:
        raise ValidationError("Order name is required", errors={"order_name": ["This field is required."]})

    status = data.get("status") or Order.Status.NEW
    priority = data.get("priority") or Order.Priority.NORMAL
    _validate_choice(status, Order.Status, "status")
    _validate_choice(priority, Order.Priority, "priority")

    salesperson = data.get("salesperson") or user
    if get_user_role(user) == User.Role.SALES:
        salesperson = user

    fields = {field: data[field] for field in ORDER_UPDATABLE_FIELDS if field in data}
    fields.update(order_name=order_name, status=status, priority=priority, salesperson=salesperson)

    with storage_errors("create order"), transaction.atomic():
        order = Order.objects.create(order_code=generate_code("ORD"), **fields)

    log_activity(
        entity_type="order",
        entity_id=order.id,
        action="order_created",
        actor=user,
        new_state=model_snapshot(order, ORDER_SNAPSHOT_FIELDS),
        request_id=request_id,
    )
    return order


def update_order(order_id, data, user, *, request_id=None):
    order = get_order_by_id(order_id)
    previous_state = model_snapshot(order, ORDER_SNAPSHOT_FIELDS)

    if "salesperson" in data and get_user_role(user) == User.Role.SALES and data["salesperson"] != order.salesperson:
        raise ForbiddenError("Sales users cannot reassign orders to another salesperson")

    status_changed = False
    if "status" in data:
        status_changed = ORDER_WORKFLOW.validate(order.status, data["status"])
    if "priority" in data:
        _validate_choice(data["priority"], Order.Priority, "priority")
    if "order_name" in data and not (data["order_name"] or "").strip():
        raise ValidationError("Order name is required", errors={"order_name": ["This field may not be blank."]})

    changed_fields = []
    for field in ORDER_UPDATABLE_FIELDS:
        if field in data:
            setattr(order, field, data[field])
            changed_fields.append(field)
    if not changed_fields:
        return order

    with storage_errors("update order"), transaction.atomic():
        order.save(update_fields=[*changed_fields, "updated_at"])

    log_activity(
        entity_type="order",
        entity_id=order.id,
        action="order_status_changed" if status_changed else "order_updated",
        actor=user,
        previous_state=previous_state,
        new_state=model_snapshot(order, ORDER_SNAPSHOT_FIELDS),
        request_id=request_id,
    )
    return order


def update_order_status(order_id, new_status, user, *, request_id=None):
    """Move an order to ``new_status`` along the order workflow.

    Requesting the current status is a no-op and returns the order untouched.
    """
    order = get_order_by_id(order_id)
    previous_status = order.status
    if not ORDER_WORKFLOW.validate(previous_status, new_status):
        return order

    order.status = new_status
    with storage_errors("update order status"), transaction.atomic():
        order.save(update_fields=["status", "updated_at"])

    log_activity(
        entity_type="order",
        entity_id=order.id,
        action="order_status_changed",
        actor=user,
        previous_state={"status": previous_status},
        new_state={"status": new_status, "updated_by": str(user.pk) if user else None},
        request_id=request_id,
    )
    return order


def notify_order_status_change(order, previous_status, actor):
    if order.salesperson_id is None or previous_status == order.status:
        return None
    return notify_user(
        user=order.salesperson,
        title="Order Status Updated",
        message=f"Order {order.order_code} moved from {previous_status} to {order.status}.",
        type=Notification.Type.INFO,
        link=f"/orders/{order.id}",
        actor=actor,
    )


def delete_order(order_id, user, *, request_id=None):
    order = get_order_by_id(order_id)
    order_pk = order.pk
    snapshot = model_snapshot(order, ORDER_SNAPSHOT_FIELDS)

    with storage_errors("delete order"), transaction.atomic():
        order.delete()

    log_activity(
        entity_type="order",
        entity_id=order_pk,
        action="order_deleted",
        actor=user,
        previous_state=snapshot,
        request_id=request_id,
    )


def can_user_modify_order(order, user):
    role = get_user_role(user)
    if role in ORDER_MODIFY_ROLES:
        return True
    if role == User.Role.SALES:
        return order.salesperson_id is not None and order.salesperson_id == user.pk
    return False


def can_user_view_order(order, user):
    role = get_user_role(user)
    if role in ORDER_VIEW_ROLES:
        return True
    return can_user_modify_order(order, user)


def order_total(order):
    total = order.line_items.aggregate(total=Sum("line_total"))["total"]
    return to_money(total or Decimal("0"))


def add_order_line_item(order, data, user, *, request_id=None):
    if not (data.get("item_name") or "").strip():
        raise ValidationError("Item name is required", errors={"item_name": ["This field is required."]})
    line_total = compute_line_total(data.get("quantity"), data.get("unit_price"))

    with storage_errors("add order line item"), transaction.atomic():
        item = OrderLineItem.objects.create(
            order=order,
            item_name=data["item_name"].strip(),
            color=data.get("color", ""),
            quantity=data["quantity"],
            unit_price=data["unit_price"],
            line_total=line_total,
            notes=data.get("notes", ""),
        )

    log_activity(
        entity_type="order",
        entity_id=order.id,
        action="order_line_item_added",
        actor=user,
        new_state={"line_item_id": item.id, "item_name": item.item_name, "line_total": line_total},
        request_id=request_id,
    )
    return item


def get_manufacturing_job_by_id(job_id):
    return get_or_not_found(ManufacturingJob.objects.select_related("order", "assigned_to"), "Manufacturing record", job_id)


def create_manufacturing_job(data, user, *, request_id=None):
    order = data.get("order")
    if order is None:
        raise ValidationError("Order is required", errors={"order": ["This field is required."]})
    if ManufacturingJob.objects.filter(order=order).exists():
        raise ConflictError(f"Manufacturing record already exists for order {order.order_code}")

    status = data.get("status") or ManufacturingJob.Status.AWAITING_ADMIN_CONFIRMATION
    _validate_choice(status, ManufacturingJob.Status, "status")
    priority = data.get("priority") or ManufacturingJob.Priority.NORMAL
    _validate_choice(priority, ManufacturingJob.Priority, "priority")

    with storage_errors("create manufacturing record"), transaction.atomic():
        job = ManufacturingJob.objects.create(
            order=order,
            status=status,
            priority=priority,
            assigned_to=data.get("assigned_to"),
            estimated_completion=data.get("estimated_completion"),
            tracking_number=data.get("tracking_number", ""),
            production_notes=data.get("production_notes", ""),
        )

    log_activity(
        entity_type="manufacturing",
        entity_id=job.id,
        action="manufacturing_created",
        actor=user,
        new_state=model_snapshot(job, MANUFACTURING_SNAPSHOT_FIELDS),
        request_id=request_id,
    )
    return job


def update_manufacturing_status(job_id, new_status, user, *, request_id=None):
    job = get_manufacturing_job_by_id(job_id)
    previous_status = job.status
    if not MANUFACTURING_WORKFLOW.validate(previous_status, new_status):
        return job

    job.status = new_status
    update_fields = ["status", "updated_at"]
    if new_status == ManufacturingJob.Status.COMPLETE:
        job.actual_completion = timezone.now()
        update_fields.append("actual_completion")

    with storage_errors("update manufacturing status"), transaction.atomic():
        job.save(update_fields=update_fields)

    completed = new_status == ManufacturingJob.Status.COMPLETE
    log_activity(
        entity_type="manufacturing",
        entity_id=job.id,
        action="manufacturing_completed" if completed else "manufacturing_status_changed",
        actor=user,
        previous_state={"status": previous_status},
        new_state={"status": new_status},
        request_id=request_id,
    )
    return job


def can_user_modify_manufacturing(job, user):
    role = get_user_role(user)
    if role in {User.Role.ADMIN, User.Role.OPS}:
        return True
    if role == User.Role.MANUFACTURER:
        return job.assigned_to_id is not None and job.assigned_to_id == user.pk
    return False


def can_user_view_manufacturing(job, user):
    role = get_user_role(user)
    if role == User.Role.MANUFACTURER:
        return can_user_modify_manufacturing(job, user)
    return role in MANUFACTURING_ROLES
