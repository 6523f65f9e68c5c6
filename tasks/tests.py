from datetime import timedelta

from django.contrib.auth import get_user_model
from django.test import TestCase
from django.utils import timezone
from rest_framework.test import APIClient

from core.models import AuditLog, Notification
from tasks.models import Task
from tasks.services import task_stats


class TaskApiTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.admin = user_model.objects.create_user(username="task-admin", password="pass1234", role="admin")
        self.ops = user_model.objects.create_user(
            username="task-ops",
            password="pass1234",
            role="ops",
            first_name="Olive",
            last_name="Ops",
        )
        self.designer = user_model.objects.create_user(username="task-designer", password="pass1234", role="designer")
        self.maker = user_model.objects.create_user(username="task-maker", password="pass1234", role="manufacturer")

        self.assigned_task = Task.objects.create(title="Mock up jersey", assigned_to=self.designer, created_by=self.ops)
        self.unrelated_task = Task.objects.create(title="Order fabric", assigned_to=self.maker, created_by=self.ops)

    def test_create_notifies_assignee(self):
        self.client.force_authenticate(user=self.ops)

        response = self.client.post(
            "/api/v1/tasks/",
            {"title": "Proof artwork", "assigned_to": str(self.designer.id), "priority": "high"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        body = response.json()
        self.assertEqual(body["created_by"], str(self.ops.id))
        self.assertEqual(body["status"], "pending")
        notification = Notification.objects.get(user=self.designer)
        self.assertEqual(notification.title, "New Task Assigned")
        self.assertEqual(notification.type, Notification.Type.ACTION)
        self.assertEqual(notification.link, f"/tasks/{body['id']}")
        self.assertIn("Olive Ops", notification.message)
        self.assertTrue(AuditLog.objects.filter(action="task_created", entity_id=body["id"]).exists())

    def test_self_assigned_task_sends_no_notification(self):
        self.client.force_authenticate(user=self.designer)

        response = self.client.post(
            "/api/v1/tasks/",
            {"title": "Note to self", "assigned_to": str(self.designer.id)},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        self.assertFalse(Notification.objects.exists())

    def test_blank_title_is_rejected(self):
        self.client.force_authenticate(user=self.ops)
        response = self.client.post("/api/v1/tasks/", {"title": "  "}, format="json")
        self.assertEqual(response.status_code, 400)

    def test_list_is_scoped_to_assigned_or_created(self):
        self.client.force_authenticate(user=self.designer)

        response = self.client.get("/api/v1/tasks/")

        self.assertEqual([item["id"] for item in response.json()["results"]], [str(self.assigned_task.id)])

    def test_admin_sees_everything(self):
        self.client.force_authenticate(user=self.admin)
        response = self.client.get("/api/v1/tasks/")
        self.assertEqual(response.json()["count"], 2)

    def test_outsider_cannot_open_task(self):
        self.client.force_authenticate(user=self.designer)
        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.get(f"/api/v1/tasks/{self.unrelated_task.id}/")
        self.assertEqual(response.status_code, 403)

    def test_completing_sets_timestamp_and_notifies_creator(self):
        self.client.force_authenticate(user=self.designer)

        response = self.client.patch(
            f"/api/v1/tasks/{self.assigned_task.id}/",
            {"status": "completed"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertIsNotNone(response.json()["completed_at"])
        notification = Notification.objects.get(user=self.ops)
        self.assertEqual(notification.title, "Task Completed")
        self.assertEqual(notification.type, Notification.Type.SUCCESS)
        self.assertTrue(AuditLog.objects.filter(action="task_completed").exists())

    def test_reopening_clears_completion(self):
        Task.objects.filter(pk=self.assigned_task.pk).update(
            status=Task.Status.COMPLETED,
            completed_at=timezone.now(),
        )
        self.client.force_authenticate(user=self.designer)

        response = self.client.patch(
            f"/api/v1/tasks/{self.assigned_task.id}/",
            {"status": "in_progress"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertIsNone(response.json()["completed_at"])

    def test_reassignment_notifies_new_assignee(self):
        self.client.force_authenticate(user=self.ops)

        response = self.client.patch(
            f"/api/v1/tasks/{self.assigned_task.id}/",
            {"assigned_to": str(self.maker.id)},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        notification = Notification.objects.get(user=self.maker)
        self.assertEqual(notification.title, "Task Reassigned")

    def test_assignee_cannot_delete_someone_elses_task(self):
        self.client.force_authenticate(user=self.designer)
        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.delete(f"/api/v1/tasks/{self.assigned_task.id}/")

        self.assertEqual(response.status_code, 403)
        self.assertTrue(Task.objects.filter(pk=self.assigned_task.pk).exists())

    def test_creator_can_delete_own_task(self):
        self.client.force_authenticate(user=self.ops)

        response = self.client.delete(f"/api/v1/tasks/{self.assigned_task.id}/")

        self.assertEqual(response.status_code, 204)
        self.assertFalse(Task.objects.filter(pk=self.assigned_task.pk).exists())
        self.assertTrue(AuditLog.objects.filter(action="task_deleted").exists())

    def test_admin_can_delete_any_task(self):
        self.client.force_authenticate(user=self.admin)
        response = self.client.delete(f"/api/v1/tasks/{self.unrelated_task.id}/")
        self.assertEqual(response.status_code, 204)

    def test_stats(self):
        yesterday = timezone.localdate() - timedelta(days=1)
        Task.objects.filter(pk=self.unrelated_task.pk).update(due_date=yesterday, status=Task.Status.IN_PROGRESS)
        Task.objects.create(title="Done", created_by=self.ops, status=Task.Status.COMPLETED, due_date=yesterday)

        stats = task_stats()

        self.assertEqual(stats["total"], 3)
        self.assertEqual(stats["pending"], 1)
        self.assertEqual(stats["in_progress"], 1)
        self.assertEqual(stats["completed"], 1)
        self.assertEqual(stats["overdue"], 1)

        self.client.force_authenticate(user=self.designer)
        response = self.client.get("/api/v1/tasks/stats/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["total"], 1)
