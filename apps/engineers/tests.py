from datetime import date
from decimal import Decimal

from django.contrib.auth import get_user_model
from rest_framework.test import APITestCase

from apps.audit.models import AuditLog
from apps.clients.models import Client
from apps.engineers.models import Engineer, EngineerWorkingDay, Weekday
from apps.orders.models import Order, OrderStatus

User = get_user_model()


class EngineersApiTests(APITestCase):
    def setUp(self):
        self.admin = User.objects.create_user(username="admin_eng", password="admin123", role="ADMIN")
        self.client_user = User.objects.create_user(username="client_eng", password="client123", role="CLIENT")
        self.customer = Client.objects.create(full_name="Gail Moss", email="gail@example.com")

    def auth_as(self, username, password):
        token = self.client.post(
            "/api/v1/auth/token/",
            {"username": username, "password": password},
            format="json",
        ).data["access"]
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {token}")

    def test_admin_can_create_and_filter_engineers(self):
        self.auth_as("admin_eng", "admin123")
        response = self.client.post(
            "/api/v1/engineers/",
            {"name": "Harry Fitch", "email": "harry@prospaces.co.uk", "region": "North West", "base_postcode": "m1 1ae"},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(Engineer.objects.get(id=response.data["id"]).base_postcode, "M1 1AE")

        Engineer.objects.create(name="Ivy Off", email="ivy@prospaces.co.uk", region="North West", availability=False)
        available = self.client.get("/api/v1/engineers/", {"region": "north west", "available": "true"})
        self.assertEqual(available.data["count"], 1)
        self.assertEqual(available.data["results"][0]["name"], "Harry Fitch")

    def test_max_jobs_per_day_must_be_positive(self):
        self.auth_as("admin_eng", "admin123")
        response = self.client.post(
            "/api/v1/engineers/",
            {"name": "Jay Zero", "email": "jay@prospaces.co.uk", "max_jobs_per_day": 0},
            format="json",
        )
        self.assertEqual(response.status_code, 400)
        self.assertIn("max_jobs_per_day", response.data["fields"])

    def test_open_jobs_count_and_delete_clears_assignment(self):
        engineer = Engineer.objects.create(name="Kit Busy", email="kit@prospaces.co.uk")
        order = Order.objects.create(
            client=self.customer,
            engineer=engineer,
            status=OrderStatus.SCHEDULED,
            total_amount=Decimal("900.00"),
            scheduled_install_date=date(2026, 3, 2),
        )
        Order.objects.create(client=self.customer, engineer=engineer, status=OrderStatus.COMPLETED, total_amount=Decimal("400.00"))
        self.auth_as("admin_eng", "admin123")

        detail = self.client.get(f"/api/v1/engineers/{engineer.id}/")
        self.assertEqual(detail.data["open_jobs"], 1)

        self.assertEqual(self.client.delete(f"/api/v1/engineers/{engineer.id}/").status_code, 204)
        order.refresh_from_db()
        self.assertIsNone(order.engineer_id)
        self.assertTrue(AuditLog.objects.filter(action="engineer.delete", entity_id=str(engineer.id)).exists())

    def test_clients_cannot_list_engineers(self):
        self.auth_as("client_eng", "client123")
        self.assertEqual(self.client.get("/api/v1/engineers/").status_code, 403)


class WorkingDaysTests(APITestCase):
    def setUp(self):
        self.admin = User.objects.create_user(username="admin_days", password="admin123", role="ADMIN")
        self.engineer_user = User.objects.create_user(username="eng_days", password="engineer123", role="ENGINEER")
        self.other_user = User.objects.create_user(username="eng_other", password="engineer123", role="ENGINEER")
        self.engineer = Engineer.objects.create(user=self.engineer_user, name="Lou Week", email="lou@prospaces.co.uk")

    def auth_as(self, username, password):
        token = self.client.post(
            "/api/v1/auth/token/",
            {"username": username, "password": password},
            format="json",
        ).data["access"]
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {token}")

    def url(self):
        return f"/api/v1/engineers/{self.engineer.id}/working-days/"

    def test_engineer_sets_own_weekly_pattern(self):
        self.assertTrue(self.engineer.works_on(date(2026, 3, 7)))
        self.auth_as("eng_days", "engineer123")

        response = self.client.put(
            self.url(),
            {
                "days": [
                    {"day_of_week": Weekday.MONDAY, "start_time": "08:00", "end_time": "16:00"},
                    {"day_of_week": Weekday.TUESDAY},
                    {"day_of_week": Weekday.SATURDAY, "is_available": False},
                ]
            },
            format="json",
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["day_of_week"] for row in response.data["days"]], [0, 1, 5])
        self.assertEqual(response.data["days"][0]["end_time"], "16:00:00")
        engineer = Engineer.objects.get(pk=self.engineer.pk)
        self.assertTrue(engineer.works_on(date(2026, 3, 2)))
        self.assertFalse(engineer.works_on(date(2026, 3, 7)))
        self.assertFalse(engineer.works_on(date(2026, 3, 4)))

    def test_pattern_is_validated(self):
        self.auth_as("admin_days", "admin123")
        repeated = self.client.put(
            self.url(),
            {"days": [{"day_of_week": 0}, {"day_of_week": 0}]},
            format="json",
        )
        self.assertEqual(repeated.status_code, 400)

        backwards = self.client.put(
            self.url(),
            {"days": [{"day_of_week": 2, "start_time": "17:00", "end_time": "09:00"}]},
            format="json",
        )
        self.assertEqual(backwards.status_code, 400)
        self.assertFalse(EngineerWorkingDay.objects.filter(engineer=self.engineer).exists())

    def test_other_engineers_cannot_edit_the_pattern(self):
        self.auth_as("eng_other", "engineer123")
        response = self.client.put(self.url(), {"days": [{"day_of_week": 0}]}, format="json")
        self.assertEqual(response.status_code, 403)
