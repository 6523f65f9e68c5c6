from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework.test import APIClient

from common.errors import InvalidTransitionError
from core.models import AuditLog, Notification
from orders.models import ManufacturingJob, Order, OrderLineItem
from orders.services import (
    can_user_modify_order,
    can_user_view_order,
    create_order,
    order_total,
    update_order_status,
)


class OrderFixtureMixin:
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.admin = user_model.objects.create_user(username="ord-admin", password="pass1234", role="admin")
        self.ops = user_model.objects.create_user(username="ord-ops", password="pass1234", role="ops")
        self.sales = user_model.objects.create_user(username="ord-sales", password="pass1234", role="sales")
        self.other_sales = user_model.objects.create_user(username="ord-sales-2", password="pass1234", role="sales")
        self.designer = user_model.objects.create_user(username="ord-designer", password="pass1234", role="designer")
        self.finance = user_model.objects.create_user(username="ord-finance", password="pass1234", role="finance")

        self.order = Order.objects.create(order_code="ORD-TEST-0001", order_name="Team Jerseys", salesperson=self.sales)
        self.other_order = Order.objects.create(
            order_code="ORD-TEST-0002",
            order_name="Warmups",
            salesperson=self.other_sales,
        )


class OrderServiceTests(OrderFixtureMixin, TestCase):
    def test_create_order_defaults_and_code(self):
        order = create_order({"order_name": "  Hoodies  "}, self.ops)

        self.assertEqual(order.order_name, "Hoodies")
        self.assertEqual(order.status, Order.Status.NEW)
        self.assertEqual(order.priority, Order.Priority.NORMAL)
        self.assertTrue(order.order_code.startswith("ORD-"))
        self.assertEqual(order.salesperson, self.ops)
        self.assertTrue(AuditLog.objects.filter(action="order_created", entity_id=str(order.id)).exists())

    def test_sales_user_always_owns_new_orders(self):
        order = create_order({"order_name": "Shorts", "salesperson": self.other_sales}, self.sales)
        self.assertEqual(order.salesperson, self.sales)

    def test_illegal_transition_leaves_status_unchanged(self):
        with self.assertRaises(InvalidTransitionError):
            update_order_status(self.order.id, Order.Status.SHIPPED, self.ops)

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.NEW)
        self.assertFalse(AuditLog.objects.filter(action="order_status_changed").exists())

    def test_same_status_is_a_noop(self):
        order = update_order_status(self.order.id, Order.Status.NEW, self.ops)

        self.assertEqual(order.status, Order.Status.NEW)
        self.assertFalse(AuditLog.objects.filter(action="order_status_changed").exists())

    def test_forward_transition_records_previous_status(self):
        update_order_status(self.order.id, Order.Status.WAITING_SIZES, self.ops, request_id="req-42")

        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.WAITING_SIZES)
        entry = AuditLog.objects.get(action="order_status_changed")
        self.assertEqual(entry.before_snapshot, {"status": "new"})
        self.assertEqual(entry.after_snapshot["status"], "waiting_sizes")
        self.assertEqual(entry.request_id, "req-42")

    def test_modify_and_view_predicates(self):
        self.assertTrue(can_user_modify_order(self.order, self.sales))
        self.assertFalse(can_user_modify_order(self.order, self.other_sales))
        self.assertTrue(can_user_modify_order(self.order, self.admin))
        self.assertTrue(can_user_modify_order(self.order, self.ops))
        self.assertFalse(can_user_modify_order(self.order, self.finance))
        self.assertTrue(can_user_view_order(self.order, self.finance))
        self.assertFalse(can_user_view_order(self.order, self.designer))

    def test_unowned_order_is_not_modifiable_by_sales(self):
        orphan = Order.objects.create(order_code="ORD-TEST-0003", order_name="Orphan")
        self.assertFalse(can_user_modify_order(orphan, self.sales))


class OrderApiTests(OrderFixtureMixin, TestCase):
    def test_sales_list_is_scoped_to_own_orders(self):
        self.client.force_authenticate(user=self.sales)

        response = self.client.get("/api/v1/orders/")

        self.assertEqual(response.status_code, 200)
        payload = response.json()
        self.assertEqual(sorted(payload.keys()), ["count", "next", "previous", "results"])
        self.assertEqual([item["id"] for item in payload["results"]], [str(self.order.id)])

    def test_ops_sees_every_order(self):
        self.client.force_authenticate(user=self.ops)
        response = self.client.get("/api/v1/orders/")
        self.assertEqual(response.json()["count"], 2)

    def test_status_filter(self):
        Order.objects.filter(pk=self.other_order.pk).update(status=Order.Status.INVOICED)
        self.client.force_authenticate(user=self.ops)

        response = self.client.get("/api/v1/orders/?status=invoiced")

        self.assertEqual([item["id"] for item in response.json()["results"]], [str(self.other_order.id)])

    def test_create_forces_sales_owner(self):
        self.client.force_authenticate(user=self.sales)

        response = self.client.post(
            "/api/v1/orders/",
            {"order_name": "Socks", "salesperson": str(self.other_sales.id)},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["salesperson"], str(self.sales.id))
        self.assertEqual(body["status"], "new")
        self.assertEqual(body["allowed_next_statuses"], ["waiting_sizes"])

    def test_sales_cannot_hand_order_to_another_rep(self):
        self.client.force_authenticate(user=self.sales)
        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.patch(
                f"/api/v1/orders/{self.order.id}/",
                {"salesperson": str(self.other_sales.id)},
                format="json",
            )

        self.assertEqual(response.status_code, 403)
        self.order.refresh_from_db()
        self.assertEqual(self.order.salesperson, self.sales)

    def test_sales_may_resubmit_themselves_as_owner(self):
        self.client.force_authenticate(user=self.sales)

        response = self.client.patch(
            f"/api/v1/orders/{self.order.id}/",
            {"salesperson": str(self.sales.id), "notes": "Rush"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["notes"], "Rush")

    def test_ops_can_reassign_order(self):
        self.client.force_authenticate(user=self.ops)

        response = self.client.patch(
            f"/api/v1/orders/{self.order.id}/",
            {"salesperson": str(self.other_sales.id)},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.order.refresh_from_db()
        self.assertEqual(self.order.salesperson, self.other_sales)

    def test_designer_cannot_create_orders(self):
        self.client.force_authenticate(user=self.designer)
        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.post("/api/v1/orders/", {"order_name": "Nope"}, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertTrue(any("permission_denied" in message for message in cm.output))

    def test_sales_cannot_touch_another_reps_order(self):
        self.client.force_authenticate(user=self.sales)
        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.patch(
                f"/api/v1/orders/{self.other_order.id}/",
                {"notes": "hijack"},
                format="json",
            )

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("permission_denied" in message for message in cm.output))
        self.other_order.refresh_from_db()
        self.assertEqual(self.other_order.notes, "")

    def test_sales_can_update_own_order(self):
        self.client.force_authenticate(user=self.sales)

        response = self.client.patch(f"/api/v1/orders/{self.order.id}/", {"notes": "Rush"}, format="json")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["notes"], "Rush")

    def test_status_change_notifies_salesperson(self):
        self.client.force_authenticate(user=self.ops)

        response = self.client.post(
            f"/api/v1/orders/{self.order.id}/status/",
            {"status": "waiting_sizes"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "waiting_sizes")
        notification = Notification.objects.get(user=self.sales)
        self.assertEqual(notification.title, "Order Status Updated")
        self.assertIn("waiting_sizes", notification.message)

    def test_own_status_change_does_not_notify(self):
        self.client.force_authenticate(user=self.sales)

        response = self.client.post(
            f"/api/v1/orders/{self.order.id}/status/",
            {"status": "waiting_sizes"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertFalse(Notification.objects.exists())

    def test_illegal_status_change_is_rejected(self):
        self.client.force_authenticate(user=self.ops)

        response = self.client.post(
            f"/api/v1/orders/{self.order.id}/status/",
            {"status": "completed"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        payload = response.json()
        self.assertEqual(payload["code"], "invalid_transition")
        self.assertEqual(payload["errors"]["allowed"], ["waiting_sizes"])
        self.order.refresh_from_db()
        self.assertEqual(self.order.status, Order.Status.NEW)

    def test_unknown_status_is_rejected(self):
        self.client.force_authenticate(user=self.ops)

        response = self.client.patch(f"/api/v1/orders/{self.order.id}/status/", {"status": "lost"}, format="json")

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")

    def test_allowed_statuses_endpoint(self):
        Order.objects.filter(pk=self.order.pk).update(status=Order.Status.PRODUCTION)
        self.client.force_authenticate(user=self.sales)

        response = self.client.get(f"/api/v1/orders/{self.order.id}/allowed-statuses/")

        self.assertEqual(response.json(), {"status": "production", "allowed": ["shipped"]})

    def test_line_items_roll_up_into_total(self):
        self.client.force_authenticate(user=self.sales)

        first = self.client.post(
            f"/api/v1/orders/{self.order.id}/line-items/",
            {"item_name": "Jersey", "quantity": "10", "unit_price": "12.50"},
            format="json",
        )
        self.client.post(
            f"/api/v1/orders/{self.order.id}/line-items/",
            {"item_name": "Shorts", "quantity": "10", "unit_price": "8.25"},
            format="json",
        )

        self.assertEqual(first.status_code, 201)
        self.assertEqual(first.json()["line_total"], "125.00")
        listed = self.client.get(f"/api/v1/orders/{self.order.id}/line-items/").json()
        self.assertEqual(len(listed), 2)
        self.assertEqual(str(order_total(self.order)), "207.50")
        detail = self.client.get(f"/api/v1/orders/{self.order.id}/").json()
        self.assertEqual(detail["total"], "207.50")

    def test_negative_quantity_is_rejected(self):
        self.client.force_authenticate(user=self.sales)

        response = self.client.post(
            f"/api/v1/orders/{self.order.id}/line-items/",
            {"item_name": "Jersey", "quantity": "-1", "unit_price": "12.50"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertFalse(OrderLineItem.objects.exists())

    def test_only_admin_deletes_orders(self):
        self.client.force_authenticate(user=self.sales)
        with self.assertLogs("security.authorization", level="WARNING"):
            denied = self.client.delete(f"/api/v1/orders/{self.order.id}/")
        self.assertEqual(denied.status_code, 403)

        self.client.force_authenticate(user=self.admin)
        response = self.client.delete(f"/api/v1/orders/{self.order.id}/")

        self.assertEqual(response.status_code, 204)
        self.assertFalse(Order.objects.filter(pk=self.order.pk).exists())
        entry = AuditLog.objects.get(action="order_deleted")
        self.assertEqual(entry.entity_id, str(self.order.pk))


class ManufacturingApiTests(OrderFixtureMixin, TestCase):
    def setUp(self):
        super().setUp()
        user_model = get_user_model()
        self.maker = user_model.objects.create_user(username="mfg-maker", password="pass1234", role="manufacturer")
        self.other_maker = user_model.objects.create_user(username="mfg-maker-2", password="pass1234", role="manufacturer")
        self.job = ManufacturingJob.objects.create(order=self.order, assigned_to=self.maker)

    def test_second_record_for_same_order_conflicts(self):
        self.client.force_authenticate(user=self.ops)

        created = self.client.post("/api/v1/manufacturing/", {"order": str(self.other_order.id)}, format="json")
        duplicate = self.client.post("/api/v1/manufacturing/", {"order": str(self.other_order.id)}, format="json")

        self.assertEqual(created.status_code, 201)
        self.assertEqual(created.json()["status"], "awaiting_admin_confirmation")
        self.assertEqual(duplicate.status_code, 409)
        self.assertEqual(duplicate.json()["code"], "conflict")

    def test_manufacturer_only_sees_assigned_records(self):
        self.client.force_authenticate(user=self.other_maker)

        listed = self.client.get("/api/v1/manufacturing/").json()
        self.assertEqual(listed["count"], 0)

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.post(
                f"/api/v1/manufacturing/{self.job.id}/status/",
                {"status": "confirmed_awaiting_manufacturing"},
                format="json",
            )
        self.assertEqual(response.status_code, 403)

    def test_assigned_manufacturer_advances_to_completion(self):
        self.client.force_authenticate(user=self.maker)
        path = f"/api/v1/manufacturing/{self.job.id}/status/"

        for status in (
            "confirmed_awaiting_manufacturing",
            "cutting_sewing",
            "printing",
            "final_packing_press",
            "shipped",
            "complete",
        ):
            response = self.client.post(path, {"status": status}, format="json")
            self.assertEqual(response.status_code, 200, status)

        self.job.refresh_from_db()
        self.assertEqual(self.job.status, ManufacturingJob.Status.COMPLETE)
        self.assertIsNotNone(self.job.actual_completion)
        self.assertTrue(AuditLog.objects.filter(action="manufacturing_completed").exists())

    def test_skipping_a_stage_is_rejected(self):
        self.client.force_authenticate(user=self.ops)

        response = self.client.post(
            f"/api/v1/manufacturing/{self.job.id}/status/",
            {"status": "printing"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "invalid_transition")

    def test_print_only_job_skips_cutting_and_sewing(self):
        self.client.force_authenticate(user=self.maker)
        path = f"/api/v1/manufacturing/{self.job.id}/status/"

        for status in ("confirmed_awaiting_manufacturing", "printing", "final_packing_press"):
            response = self.client.post(path, {"status": status}, format="json")
            self.assertEqual(response.status_code, 200, status)

        self.job.refresh_from_db()
        self.assertEqual(self.job.status, ManufacturingJob.Status.FINAL_PACKING_PRESS)

    def test_generic_update_cannot_change_status(self):
        self.client.force_authenticate(user=self.ops)

        response = self.client.patch(
            f"/api/v1/manufacturing/{self.job.id}/",
            {"status": "complete"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)

    def test_generic_update_is_audited(self):
        self.client.force_authenticate(user=self.ops)

        response = self.client.patch(
            f"/api/v1/manufacturing/{self.job.id}/",
            {"tracking_number": "1Z999"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        entry = AuditLog.objects.get(action="manufacturing_updated")
        self.assertEqual(entry.after_snapshot["tracking_number"], "1Z999")

    def test_sales_has_no_manufacturing_access(self):
        self.client.force_authenticate(user=self.sales)
        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.get("/api/v1/manufacturing/")
        self.assertEqual(response.status_code, 403)
