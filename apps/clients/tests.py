from datetime import timedelta
from decimal import Decimal

from django.contrib.auth import get_user_model
from django.utils import timezone
from rest_framework.test import APITestCase

from apps.audit.models import AuditLog
from apps.clients.models import Client, ClientBlockedDate
from apps.orders.models import Order

User = get_user_model()


class ClientsApiTests(APITestCase):
    def setUp(self):
        self.manager = User.objects.create_user(username="manager_cli", password="manager123", role="MANAGER")
        self.engineer = User.objects.create_user(username="engineer_cli", password="engineer123", role="ENGINEER")
        self.client_user = User.objects.create_user(username="client_cli", password="client123", role="CLIENT")

    def auth_as(self, username, password):
        token = self.client.post(
            "/api/v1/auth/token/",
            {"username": username, "password": password},
            format="json",
        ).data["access"]
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {token}")

    def test_manager_can_create_search_and_update_clients(self):
        self.auth_as("manager_cli", "manager123")
        create_response = self.client.post(
            "/api/v1/clients/",
            {"full_name": " Ruth Grey ", "email": "Ruth@Example.com", "postcode": "sw1a   1aa"},
            format="json",
        )
        self.assertEqual(create_response.status_code, 201)
        client = Client.objects.get(id=create_response.data["id"])
        self.assertEqual(client.full_name, "Ruth Grey")
        self.assertEqual(client.email, "ruth@example.com")
        self.assertEqual(client.postcode, "SW1A 1AA")
        self.assertTrue(AuditLog.objects.filter(action="client.create", entity_id=str(client.id)).exists())

        update_response = self.client.patch(f"/api/v1/clients/{client.id}/", {"phone": "07700 900123"}, format="json")
        self.assertEqual(update_response.status_code, 200)

        list_response = self.client.get("/api/v1/clients/", {"q": "ruth"})
        self.assertEqual(list_response.data["count"], 1)
        self.assertEqual(list_response.data["results"][0]["order_count"], 0)

    def test_client_with_orders_cannot_be_deleted(self):
        client = Client.objects.create(full_name="Ben Hall", email="ben@example.com")
        Order.objects.create(client=client, total_amount=Decimal("750.00"))
        self.auth_as("manager_cli", "manager123")

        response = self.client.delete(f"/api/v1/clients/{client.id}/")
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.data["code"], "client_has_orders")
        self.assertTrue(Client.objects.filter(id=client.id).exists())

    def test_client_users_only_see_their_own_record(self):
        own = Client.objects.create(user=self.client_user, full_name="Cara Own", email="cara@example.com")
        Client.objects.create(full_name="Dan Other", email="dan@example.com")
        self.auth_as("client_cli", "client123")

        response = self.client.get("/api/v1/clients/")
        self.assertEqual(response.status_code, 200)
        self.assertEqual([row["id"] for row in response.data["results"]], [str(own.id)])

    def test_engineers_cannot_manage_clients(self):
        self.auth_as("engineer_cli", "engineer123")
        response = self.client.post("/api/v1/clients/", {"full_name": "X", "email": "x@example.com"}, format="json")
        self.assertEqual(response.status_code, 403)


class ClientBlockedDateTests(APITestCase):
    def setUp(self):
        self.manager = User.objects.create_user(username="manager_blk", password="manager123", role="MANAGER")
        self.engineer = User.objects.create_user(username="engineer_blk", password="engineer123", role="ENGINEER")
        self.client_user = User.objects.create_user(username="client_blk", password="client123", role="CLIENT")
        self.own = Client.objects.create(user=self.client_user, full_name="Cara Own", email="cara@example.com")
        self.other = Client.objects.create(full_name="Dan Other", email="dan@example.com")
        self.next_week = timezone.localdate() + timedelta(days=7)

    def auth_as(self, username, password):
        token = self.client.post(
            "/api/v1/auth/token/",
            {"username": username, "password": password},
            format="json",
        ).data["access"]
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {token}")

    def test_client_blocks_own_dates_only(self):
        ClientBlockedDate.objects.create(client=self.other, blocked_date=self.next_week)
        self.auth_as("client_blk", "client123")

        response = self.client.post(
            "/api/v1/blocked-dates/",
            {"blocked_date": self.next_week.isoformat(), "reason": "Family visit", "client": str(self.other.id)},
            format="json",
        )
        self.assertEqual(response.status_code, 201)
        self.assertEqual(str(response.data["client"]), str(self.own.id))
        self.assertTrue(ClientBlockedDate.objects.filter(client=self.own, blocked_date=self.next_week).exists())

        listed = self.client.get("/api/v1/blocked-dates/")
        self.assertEqual([row["reason"] for row in listed.data["results"]], ["Family visit"])

        duplicate = self.client.post("/api/v1/blocked-dates/", {"blocked_date": self.next_week.isoformat()}, format="json")
        self.assertEqual(duplicate.status_code, 400)
        self.assertIn("blocked_date", duplicate.data["fields"])

        removed = self.client.delete(f"/api/v1/blocked-dates/{response.data['id']}/")
        self.assertEqual(removed.status_code, 204)

    def test_past_dates_cannot_be_blocked(self):
        self.auth_as("client_blk", "client123")
        response = self.client.post(
            "/api/v1/blocked-dates/",
            {"blocked_date": (timezone.localdate() - timedelta(days=1)).isoformat()},
            format="json",
        )
        self.assertEqual(response.status_code, 400)

    def test_staff_must_name_the_client(self):
        self.auth_as("manager_blk", "manager123")
        missing = self.client.post("/api/v1/blocked-dates/", {"blocked_date": self.next_week.isoformat()}, format="json")
        self.assertEqual(missing.status_code, 400)
        self.assertIn("client", missing.data["fields"])

        created = self.client.post(
            "/api/v1/blocked-dates/",
            {"blocked_date": self.next_week.isoformat(), "client": str(self.other.id)},
            format="json",
        )
        self.assertEqual(created.status_code, 201)
        filtered = self.client.get("/api/v1/blocked-dates/", {"client": str(self.other.id)})
        self.assertEqual(filtered.data["count"], 1)

    def test_engineers_cannot_block_dates(self):
        self.auth_as("engineer_blk", "engineer123")
        response = self.client.get("/api/v1/blocked-dates/")
        self.assertEqual(response.status_code, 403)
