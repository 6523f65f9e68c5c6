from django.contrib.auth import get_user_model
from django.test import TestCase
from rest_framework.test import APIClient

from core.models import AuditLog, Notification, Organization, Salesperson
from core.notifications import notify_user


class AuthTokenTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.user = get_user_model().objects.create_user(
            username="token-user",
            email="Token.User@Example.com",
            password="pass1234",
            role="finance",
        )

    def test_email_is_normalized_on_save(self):
        self.user.refresh_from_db()
        self.assertEqual(self.user.email, "token.user@example.com")

    def test_can_obtain_token_with_email(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "TOKEN.USER@example.com", "password": "pass1234"},
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertIn("access", response.json())
        self.assertIn("refresh", response.json())

    def test_wrong_password_is_rejected(self):
        response = self.client.post(
            "/api/v1/token/",
            {"username": "token-user", "password": "nope"},
            format="json",
        )
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "authentication_failed")

    def test_anonymous_requests_are_rejected(self):
        response = self.client.get("/api/v1/organizations/")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["code"], "not_authenticated")


class OrganizationTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.admin = user_model.objects.create_user(username="org-admin", password="pass1234", role="admin")
        self.sales = user_model.objects.create_user(username="org-sales", password="pass1234", role="sales")
        self.designer = user_model.objects.create_user(username="org-designer", password="pass1234", role="designer")
        self.org = Organization.objects.create(name="Westside High", city="Austin")

    def test_sales_can_create_organization_and_it_is_audited(self):
        self.client.force_authenticate(user=self.sales)

        response = self.client.post("/api/v1/organizations/", {"name": "Eastside FC"}, format="json")

        self.assertEqual(response.status_code, 201)
        entry = AuditLog.objects.get(action="organization_created")
        self.assertEqual(entry.entity_id, response.json()["id"])
        self.assertEqual(entry.actor, self.sales)

    def test_designer_cannot_create_organization_and_denial_is_logged(self):
        self.client.force_authenticate(user=self.designer)
        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.post("/api/v1/organizations/", {"name": "Nope"}, format="json")

        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.json()["code"], "permission_denied")
        self.assertTrue(any("permission_denied" in message for message in cm.output))

    def test_delete_archives_instead_of_removing(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.delete(f"/api/v1/organizations/{self.org.id}/")

        self.assertEqual(response.status_code, 204)
        self.org.refresh_from_db()
        self.assertTrue(self.org.archived)
        self.assertEqual(self.org.archived_by, self.admin)
        self.assertIsNotNone(self.org.archived_at)

        listed = self.client.get("/api/v1/organizations/").json()["results"]
        self.assertEqual(listed, [])
        listed = self.client.get("/api/v1/organizations/?include_archived=true").json()["results"]
        self.assertEqual([item["id"] for item in listed], [str(self.org.id)])

    def test_unarchive_restores_organization(self):
        self.org.archived = True
        self.org.save()
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(f"/api/v1/organizations/{self.org.id}/unarchive/")

        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()["archived"])

    def test_sales_cannot_archive(self):
        self.client.force_authenticate(user=self.sales)
        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.delete(f"/api/v1/organizations/{self.org.id}/")
        self.assertEqual(response.status_code, 403)

    def test_search_filters_by_name(self):
        Organization.objects.create(name="Northside Rugby")
        self.client.force_authenticate(user=self.sales)

        response = self.client.get("/api/v1/organizations/?search=north")

        self.assertEqual([item["name"] for item in response.json()["results"]], ["Northside Rugby"])

    def test_blank_name_is_rejected(self):
        self.client.force_authenticate(user=self.sales)
        response = self.client.post("/api/v1/organizations/", {"name": "   "}, format="json")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["code"], "validation_error")


class SalespersonTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.admin = user_model.objects.create_user(username="sp-admin", password="pass1234", role="admin")
        self.rep = user_model.objects.create_user(username="sp-rep", password="pass1234", role="sales")

    def test_admin_creates_salesperson_profile(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/salespeople/",
            {"user": str(self.rep.id), "territory": "Texas", "commission_rate": "0.1200"},
            format="json",
        )

        self.assertEqual(response.status_code, 201)
        profile = Salesperson.objects.get(user=self.rep)
        self.assertEqual(str(profile.commission_rate), "0.1200")

    def test_commission_rate_must_be_a_fraction(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.post(
            "/api/v1/salespeople/",
            {"user": str(self.rep.id), "commission_rate": "1.5"},
            format="json",
        )

        self.assertEqual(response.status_code, 400)

    def test_sales_rep_only_sees_own_profile(self):
        other_rep = get_user_model().objects.create_user(username="sp-rep-2", password="pass1234", role="sales")
        own = Salesperson.objects.create(user=self.rep)
        other = Salesperson.objects.create(user=other_rep)
        self.client.force_authenticate(user=self.rep)

        listed = self.client.get("/api/v1/salespeople/").json()
        self.assertEqual([item["id"] for item in listed["results"]], [str(own.id)])

        with self.assertLogs("security.authorization", level="WARNING"):
            response = self.client.get(f"/api/v1/salespeople/{other.id}/")
        self.assertEqual(response.status_code, 403)

    def test_admin_lists_every_profile(self):
        other_rep = get_user_model().objects.create_user(username="sp-rep-2", password="pass1234", role="sales")
        Salesperson.objects.create(user=self.rep)
        Salesperson.objects.create(user=other_rep)
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/salespeople/")

        self.assertEqual(response.json()["count"], 2)


class NotificationTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.alice = user_model.objects.create_user(username="notify-alice", password="pass1234")
        self.bob = user_model.objects.create_user(username="notify-bob", password="pass1234")
        self.first = Notification.objects.create(user=self.alice, title="One", message="First")
        self.second = Notification.objects.create(user=self.alice, title="Two", message="Second")
        Notification.objects.create(user=self.bob, title="Bob's", message="Private")

    def test_users_only_see_their_own_notifications(self):
        self.client.force_authenticate(user=self.alice)

        response = self.client.get("/api/v1/notifications/")

        self.assertEqual(response.status_code, 200)
        titles = {item["title"] for item in response.json()["results"]}
        self.assertEqual(titles, {"One", "Two"})

    def test_cannot_read_someone_elses_notification(self):
        self.client.force_authenticate(user=self.bob)
        response = self.client.post(f"/api/v1/notifications/{self.first.id}/read/")
        self.assertEqual(response.status_code, 404)

    def test_mark_read_and_unread_count(self):
        self.client.force_authenticate(user=self.alice)

        response = self.client.post(f"/api/v1/notifications/{self.first.id}/read/")
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.json()["is_read"])
        self.assertIsNotNone(response.json()["read_at"])

        count = self.client.get("/api/v1/notifications/unread-count/").json()
        self.assertEqual(count, {"count": 1})

    def test_mark_all_read(self):
        self.client.force_authenticate(user=self.alice)

        response = self.client.post("/api/v1/notifications/read-all/")

        self.assertEqual(response.json(), {"updated": 2})
        self.assertFalse(Notification.objects.filter(user=self.alice, is_read=False).exists())
        self.assertTrue(Notification.objects.filter(user=self.bob, is_read=False).exists())

    def test_actor_is_never_notified_about_their_own_action(self):
        self.assertIsNone(notify_user(user=self.alice, title="Self", message="x", actor=self.alice))
        self.assertIsNotNone(notify_user(user=self.alice, title="Other", message="x", actor=self.bob))
        self.assertIsNone(notify_user(user=None, title="Nobody", message="x"))


class AuditLogAccessTests(TestCase):
    def setUp(self):
        self.client = APIClient()
        user_model = get_user_model()
        self.admin = user_model.objects.create_user(username="audit-admin", password="pass1234", role="admin")
        self.ops = user_model.objects.create_user(username="audit-ops", password="pass1234", role="ops")
        AuditLog.objects.create(actor=self.ops, action="order_created", entity="order", entity_id="o-1")
        AuditLog.objects.create(actor=self.ops, action="quote_created", entity="quote", entity_id="q-1")

    def test_non_admin_is_denied_and_logged(self):
        self.client.force_authenticate(user=self.ops)
        with self.assertLogs("security.authorization", level="WARNING") as cm:
            response = self.client.get("/api/v1/admin/audit-logs/")

        self.assertEqual(response.status_code, 403)
        self.assertTrue(any("permission_denied" in message for message in cm.output))

    def test_admin_can_filter_by_entity(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/admin/audit-logs/?entity=quote")

        self.assertEqual(response.status_code, 200)
        results = response.json()["results"]
        self.assertEqual([item["entity_id"] for item in results], ["q-1"])

    def test_admin_can_export_csv(self):
        self.client.force_authenticate(user=self.admin)

        response = self.client.get("/api/v1/admin/audit-logs/export/")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response["Content-Type"], "text/csv")
        body = response.content.decode()
        self.assertIn("order_created", body)
        self.assertIn("audit-ops", body)


class HealthCheckTests(TestCase):
    def test_healthz_is_public_and_echoes_request_id(self):
        response = self.client.get("/api/v1/healthz/", HTTP_X_REQUEST_ID="req-123")

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"status": "ok", "request_id": "req-123"})
        self.assertEqual(response["X-Request-ID"], "req-123")

    def test_readyz_checks_database(self):
        response = self.client.get("/api/v1/readyz/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json()["status"], "ready")
