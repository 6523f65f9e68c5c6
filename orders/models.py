import uuid
from decimal import Decimal

from django.conf import settings
from django.db import models


class Order(models.Model):
    class Status(models.TextChoices):
        NEW = "new", "New"
        WAITING_SIZES = "waiting_sizes", "Waiting on sizes"
        INVOICED = "invoiced", "Invoiced"
        PRODUCTION = "production", "In production"
        SHIPPED = "shipped", "Shipped"
        COMPLETED = "completed", "Completed"

    class Priority(models.TextChoices):
        LOW = "low", "Low"
        NORMAL = "normal", "Normal"
        HIGH = "high", "High"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order_code = models.CharField(max_length=32, unique=True)
    order_name = models.CharField(max_length=255)
    organization = models.ForeignKey("core.Organization", on_delete=models.PROTECT, null=True, blank=True, related_name="orders")
    salesperson = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="sales_orders",
    )
    status = models.CharField(max_length=32, choices=Status, default=Status.NEW)
    priority = models.CharField(max_length=16, choices=Priority, default=Priority.NORMAL)
    design_approved = models.BooleanField(default=False)
    sizes_validated = models.BooleanField(default=False)
    deposit_received = models.BooleanField(default=False)
    estimated_delivery = models.DateField(null=True, blank=True)
    notes = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="order_status_created_idx"),
            models.Index(fields=["salesperson", "created_at"], name="order_sales_created_idx"),
        ]

    def __str__(self):
        return f"{self.order_code} {self.order_name}"


class OrderLineItem(models.Model):
    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.ForeignKey(Order, on_delete=models.CASCADE, related_name="line_items")
    item_name = models.CharField(max_length=255)
    color = models.CharField(max_length=64, blank=True)
    quantity = models.DecimalField(max_digits=12, decimal_places=2)
    unit_price = models.DecimalField(max_digits=12, decimal_places=2)
    line_total = models.DecimalField(max_digits=12, decimal_places=2, default=Decimal("0"))
    notes = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["created_at"]


class ManufacturingJob(models.Model):
    class Status(models.TextChoices):
        AWAITING_ADMIN_CONFIRMATION = "awaiting_admin_confirmation", "Awaiting admin confirmation"
        CONFIRMED_AWAITING_MANUFACTURING = "confirmed_awaiting_manufacturing", "Confirmed, awaiting manufacturing"
        CUTTING_SEWING = "cutting_sewing", "Cutting & sewing"
        PRINTING = "printing", "Printing"
        FINAL_PACKING_PRESS = "final_packing_press", "Final packing & press"
        SHIPPED = "shipped", "Shipped"
        COMPLETE = "complete", "Complete"

    class Priority(models.TextChoices):
        LOW = "low", "Low"
        NORMAL = "normal", "Normal"
        HIGH = "high", "High"
        URGENT = "urgent", "Urgent"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    order = models.OneToOneField(Order, on_delete=models.CASCADE, related_name="manufacturing_job")
    assigned_to = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="manufacturing_jobs",
    )
    status = models.CharField(max_length=40, choices=Status, default=Status.AWAITING_ADMIN_CONFIRMATION)
    priority = models.CharField(max_length=16, choices=Priority, default=Priority.NORMAL)
    estimated_completion = models.DateField(null=True, blank=True)
    actual_completion = models.DateTimeField(null=True, blank=True)
    tracking_number = models.CharField(max_length=128, blank=True)
    production_notes = models.TextField(blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        ordering = ["-created_at"]
        indexes = [
            models.Index(fields=["status", "created_at"], name="mfg_status_created_idx"),
        ]
