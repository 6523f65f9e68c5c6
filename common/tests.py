import json
import logging
from decimal import Decimal
from unittest.mock import patch

from django.contrib.auth import get_user_model
from django.core.exceptions import ImproperlyConfigured
from django.db import DatabaseError
from django.test import SimpleTestCase, TestCase
from rest_framework.test import APIClient

from common.audit import log_activity
from common.errors import InvalidTransitionError, ServiceError, ValidationError, storage_errors
from common.logging import JsonFormatter
from common.permissions import (
    ROLE_PERMISSIONS,
    Permission,
    Resource,
    has_permission,
    scope_queryset_for_user,
    user_has_permission,
)
from common.workflow import StatusWorkflow
from core.models import AuditLog, User
from finance.workflow import QUOTE_WORKFLOW
from orders.models import ManufacturingJob, Order
from orders.workflow import (
    DESIGN_JOB_WORKFLOW,
    MANUFACTURING_WORKFLOW,
    ORDER_WORKFLOW,
    DesignJobStatus,
    get_allowed_design_job_statuses,
    get_allowed_manufacturing_statuses,
    get_allowed_order_statuses,
    is_valid_design_job_status_transition,
    is_valid_manufacturing_status_transition,
    is_valid_order_status_transition,
)


class StatusWorkflowTests(SimpleTestCase):
    def test_staying_in_place_is_always_allowed(self):
        for workflow in (ORDER_WORKFLOW, MANUFACTURING_WORKFLOW, QUOTE_WORKFLOW, DESIGN_JOB_WORKFLOW):
            for status in workflow.states:
                self.assertTrue(workflow.can_transition(status, status), f"{workflow.entity}:{status}")
                self.assertFalse(workflow.validate(status, status))

    def test_orders_move_forward_one_stage_at_a_time(self):
        self.assertTrue(is_valid_order_status_transition("new", "waiting_sizes"))
        self.assertTrue(is_valid_order_status_transition("shipped", "completed"))
        self.assertFalse(is_valid_order_status_transition("new", "invoiced"))
        self.assertFalse(is_valid_order_status_transition("production", "new"))
        self.assertEqual(get_allowed_order_statuses("invoiced"), ["production"])
        self.assertEqual(get_allowed_order_statuses("completed"), [])
        self.assertTrue(ORDER_WORKFLOW.is_terminal(Order.Status.COMPLETED))

    def test_manufacturing_stages_branch_around_optional_work(self):
        Status = ManufacturingJob.Status
        self.assertEqual(len(MANUFACTURING_WORKFLOW.states), 7)
        self.assertEqual(
            get_allowed_manufacturing_statuses(Status.CONFIRMED_AWAITING_MANUFACTURING),
            [Status.CUTTING_SEWING, Status.PRINTING],
        )
        self.assertEqual(
            get_allowed_manufacturing_statuses(Status.CUTTING_SEWING),
            [Status.PRINTING, Status.FINAL_PACKING_PRESS],
        )
        self.assertTrue(is_valid_manufacturing_status_transition(Status.CONFIRMED_AWAITING_MANUFACTURING, Status.PRINTING))
        self.assertTrue(is_valid_manufacturing_status_transition(Status.CUTTING_SEWING, Status.FINAL_PACKING_PRESS))
        self.assertTrue(is_valid_manufacturing_status_transition(Status.PRINTING, Status.FINAL_PACKING_PRESS))
        self.assertFalse(
            is_valid_manufacturing_status_transition(Status.CONFIRMED_AWAITING_MANUFACTURING, Status.FINAL_PACKING_PRESS)
        )
        self.assertFalse(is_valid_manufacturing_status_transition(Status.PRINTING, Status.CUTTING_SEWING))
        self.assertFalse(is_valid_manufacturing_status_transition(Status.AWAITING_ADMIN_CONFIRMATION, Status.COMPLETE))

    def test_design_jobs_allow_listed_backward_moves(self):
        self.assertTrue(is_valid_design_job_status_transition("assigned", "pending"))
        self.assertTrue(is_valid_design_job_status_transition("in_progress", "pending"))
        self.assertTrue(is_valid_design_job_status_transition("rejected", "in_progress"))
        self.assertEqual(get_allowed_design_job_statuses("review"), ["approved", "rejected"])
        self.assertFalse(is_valid_design_job_status_transition("review", "in_progress"))
        self.assertFalse(is_valid_design_job_status_transition("approved", "review"))
        self.assertTrue(DESIGN_JOB_WORKFLOW.is_terminal(DesignJobStatus.COMPLETED))

    def test_quote_workflow_branches(self):
        self.assertEqual(QUOTE_WORKFLOW.allowed_next("draft"), ["sent", "expired"])
        self.assertEqual(QUOTE_WORKFLOW.allowed_next("sent"), ["accepted", "rejected", "expired"])
        for terminal in ("accepted", "rejected", "expired"):
            self.assertTrue(QUOTE_WORKFLOW.is_terminal(terminal))

    def test_unknown_status_has_no_successors(self):
        self.assertEqual(ORDER_WORKFLOW.allowed_next("bogus"), [])
        self.assertFalse(ORDER_WORKFLOW.can_transition("bogus", "new"))

    def test_validate_rejects_illegal_move_with_allowed_targets(self):
        with self.assertRaises(InvalidTransitionError) as ctx:
            ORDER_WORKFLOW.validate("new", "shipped")

        exc = ctx.exception
        self.assertEqual(exc.status_code, 400)
        self.assertEqual(exc.code, "invalid_transition")
        self.assertEqual(exc.errors, {"from": "new", "to": "shipped", "allowed": ["waiting_sizes"]})
        self.assertIn("from 'new' to 'shipped'", exc.message)

    def test_validate_rejects_unknown_target(self):
        with self.assertRaises(ValidationError) as ctx:
            ORDER_WORKFLOW.validate("new", "cancelled")
        self.assertNotIsInstance(ctx.exception, InvalidTransitionError)

    def test_incomplete_table_is_rejected(self):
        with self.assertRaises(ImproperlyConfigured):
            StatusWorkflow("widget", ["a", "b"], {"a": ["b"]})
        with self.assertRaises(ImproperlyConfigured):
            StatusWorkflow("widget", ["a"], {"a": ["z"]})


class RolePermissionTableTests(SimpleTestCase):
    def test_every_role_covers_every_resource(self):
        for role in User.Role:
            for resource in Resource:
                self.assertIn(resource, ROLE_PERMISSIONS[role])

    def test_known_grants(self):
        self.assertTrue(has_permission("admin", "orders", "delete"))
        self.assertTrue(has_permission("sales", "orders", "write"))
        self.assertFalse(has_permission("sales", "orders", "view_all"))
        self.assertFalse(has_permission("sales", "finance", "view"))
        self.assertTrue(has_permission("ops", "manufacturing", "view_all"))
        self.assertFalse(has_permission("ops", "quotes", "write"))
        self.assertTrue(has_permission("finance", "finance", "write"))
        self.assertFalse(has_permission("designer", "orders", "write"))
        self.assertTrue(has_permission("manufacturer", "manufacturing", "write"))
        self.assertFalse(has_permission("manufacturer", "manufacturing", "view_all"))

    def test_admin_cannot_hard_delete_finance_records(self):
        self.assertFalse(has_permission("admin", "finance", "delete"))

    def test_unknown_inputs_are_denied(self):
        self.assertFalse(has_permission("intern", "orders", "view"))
        self.assertFalse(has_permission("admin", "payroll", "view"))
        self.assertFalse(has_permission("admin", "orders", "approve"))


class UserPermissionTests(TestCase):
    def setUp(self):
        user_model = get_user_model()
        self.sales = user_model.objects.create_user(username="perm-sales", password="pass1234", role="sales")
        self.other_sales = user_model.objects.create_user(username="perm-sales-2", password="pass1234", role="sales")
        self.ops = user_model.objects.create_user(username="perm-ops", password="pass1234", role="ops")
        self.root = user_model.objects.create_superuser(username="perm-root", password="pass1234", role="designer")

    def test_superuser_is_granted_everything(self):
        self.assertTrue(user_has_permission(self.root, Resource.FINANCE, Permission.DELETE))

    def test_scoping_limits_sales_to_own_rows(self):
        mine = Order.objects.create(order_code="ORD-PERM-1", order_name="Mine", salesperson=self.sales)
        Order.objects.create(order_code="ORD-PERM-2", order_name="Theirs", salesperson=self.other_sales)

        scoped = scope_queryset_for_user(Order.objects.all(), self.sales, Resource.ORDERS, ("salesperson",))
        self.assertEqual(list(scoped), [mine])

        everything = scope_queryset_for_user(Order.objects.all(), self.ops, Resource.ORDERS, ("salesperson",))
        self.assertEqual(everything.count(), 2)


class ErrorEnvelopeTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.admin = get_user_model().objects.create_user(username="env-admin", password="pass1234", role="admin")
        self.client.force_authenticate(user=self.admin)

    def test_missing_record_uses_not_found_envelope(self):
        response = self.client.get("/api/v1/orders/00000000-0000-0000-0000-000000000000/")

        self.assertEqual(response.status_code, 404)
        payload = response.json()
        self.assertEqual(payload["code"], "not_found")
        self.assertEqual(payload["status"], 404)
        self.assertIn("not found", payload["message"])

    def test_malformed_id_is_not_found(self):
        response = self.client.get("/api/v1/orders/not-a-uuid/")
        self.assertEqual(response.status_code, 404)

    def test_storage_failure_hides_details(self):
        with patch("orders.services.Order.objects.create", side_effect=DatabaseError("disk full")):
            with self.assertLogs("common.errors", level="ERROR"):
                response = self.client.post("/api/v1/orders/", {"order_name": "Boom"}, format="json")

        self.assertEqual(response.status_code, 500)
        self.assertEqual(response.json()["message"], "An unexpected error occurred.")

    def test_storage_errors_wraps_database_errors(self):
        with self.assertLogs("common.errors", level="ERROR"):
            with self.assertRaises(ServiceError) as ctx:
                with storage_errors("save widget"):
                    raise DatabaseError("boom")
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertEqual(str(ctx.exception), "Failed to save widget")


class ActivityLogTests(TestCase):
    def setUp(self):
        self.user = get_user_model().objects.create_user(username="audit-user", password="pass1234")

    def test_activity_entry_is_written(self):
        entry = log_activity(
            entity_type="order",
            entity_id="abc",
            action="order_updated",
            actor=self.user,
            previous_state={"total": Decimal("10.00")},
            new_state={"total": Decimal("12.50")},
            request_id="req-1",
        )

        self.assertIsNotNone(entry)
        stored = AuditLog.objects.get(pk=entry.pk)
        self.assertEqual(stored.actor, self.user)
        self.assertEqual(stored.after_snapshot, {"total": "12.50"})
        self.assertEqual(stored.request_id, "req-1")

    def test_storage_failure_does_not_propagate(self):
        with patch("common.audit.AuditLog.objects.create", side_effect=DatabaseError("down")):
            with self.assertLogs("common.audit", level="ERROR") as cm:
                entry = log_activity(entity_type="order", entity_id="abc", action="order_updated")

        self.assertIsNone(entry)
        self.assertTrue(any("activity_log_failed" in message for message in cm.output))


class JsonFormatterTests(SimpleTestCase):
    def test_authorization_fields_are_emitted(self):
        record = logging.LogRecord("security.authorization", logging.WARNING, __file__, 1, "permission_denied", None, None)
        record.request_id = "req-1"
        record.role = "sales"
        record.resource = "finance"
        record.permission = "view"

        payload = json.loads(JsonFormatter().format(record))

        self.assertEqual(payload["message"], "permission_denied")
        self.assertEqual(payload["role"], "sales")
        self.assertEqual(payload["resource"], "finance")
        self.assertEqual(payload["permission"], "view")
        self.assertNotIn("status_code", payload)
