from django.db import models

from common.workflow import StatusWorkflow
from orders.models import ManufacturingJob, Order

OrderStatus = Order.Status
ManufacturingStatus = ManufacturingJob.Status

# Orders move strictly forward one stage at a time; there is no cancelled state.
ORDER_WORKFLOW = StatusWorkflow(
    "order",
    OrderStatus.values,
    {
        OrderStatus.NEW: [OrderStatus.WAITING_SIZES],
        OrderStatus.WAITING_SIZES: [OrderStatus.INVOICED],
        OrderStatus.INVOICED: [OrderStatus.PRODUCTION],
        OrderStatus.PRODUCTION: [OrderStatus.SHIPPED],
        OrderStatus.SHIPPED: [OrderStatus.COMPLETED],
        OrderStatus.COMPLETED: [],
    },
)

# Print-only jobs skip cutting and sewing; jobs without print go straight to packing.
MANUFACTURING_WORKFLOW = StatusWorkflow(
    "manufacturing",
    ManufacturingStatus.values,
    {
        ManufacturingStatus.AWAITING_ADMIN_CONFIRMATION: [ManufacturingStatus.CONFIRMED_AWAITING_MANUFACTURING],
        ManufacturingStatus.CONFIRMED_AWAITING_MANUFACTURING: [
            ManufacturingStatus.CUTTING_SEWING,
            ManufacturingStatus.PRINTING,
        ],
        ManufacturingStatus.CUTTING_SEWING: [
            ManufacturingStatus.PRINTING,
            ManufacturingStatus.FINAL_PACKING_PRESS,
        ],
        ManufacturingStatus.PRINTING: [ManufacturingStatus.FINAL_PACKING_PRESS],
        ManufacturingStatus.FINAL_PACKING_PRESS: [ManufacturingStatus.SHIPPED],
        ManufacturingStatus.SHIPPED: [ManufacturingStatus.COMPLETE],
        ManufacturingStatus.COMPLETE: [],
    },
)


class DesignJobStatus(models.TextChoices):
    PENDING = "pending", "Pending"
    ASSIGNED = "assigned", "Assigned"
    IN_PROGRESS = "in_progress", "In progress"
    REVIEW = "review", "Review"
    APPROVED = "approved", "Approved"
    REJECTED = "rejected", "Rejected"
    COMPLETED = "completed", "Completed"


# Design work may be handed back to the queue, and rejected artwork returns to the designer.
DESIGN_JOB_WORKFLOW = StatusWorkflow(
    "design job",
    DesignJobStatus.values,
    {
        DesignJobStatus.PENDING: [DesignJobStatus.ASSIGNED],
        DesignJobStatus.ASSIGNED: [DesignJobStatus.IN_PROGRESS, DesignJobStatus.PENDING],
        DesignJobStatus.IN_PROGRESS: [DesignJobStatus.REVIEW, DesignJobStatus.PENDING],
        DesignJobStatus.REVIEW: [DesignJobStatus.APPROVED, DesignJobStatus.REJECTED],
        DesignJobStatus.REJECTED: [DesignJobStatus.IN_PROGRESS],
        DesignJobStatus.APPROVED: [DesignJobStatus.COMPLETED],
        DesignJobStatus.COMPLETED: [],
    },
)


def is_valid_order_status_transition(from_status, to_status):
    return ORDER_WORKFLOW.can_transition(from_status, to_status)


def get_allowed_order_statuses(status):
    return ORDER_WORKFLOW.allowed_next(status)


def is_valid_manufacturing_status_transition(from_status, to_status):
    return MANUFACTURING_WORKFLOW.can_transition(from_status, to_status)


def get_allowed_manufacturing_statuses(status):
    return MANUFACTURING_WORKFLOW.allowed_next(status)


def is_valid_design_job_status_transition(from_status, to_status):
    return DESIGN_JOB_WORKFLOW.can_transition(from_status, to_status)


def get_allowed_design_job_statuses(status):
    return DESIGN_JOB_WORKFLOW.allowed_next(status)
