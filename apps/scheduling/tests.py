from datetime import date
from decimal import Decimal
from unittest import mock

from django.contrib.auth import get_user_model
from django.test import override_settings
from rest_framework.test import APITestCase

from apps.clients.models import Client, ClientBlockedDate
from apps.engineers.models import Engineer, EngineerWorkingDay, Weekday
from apps.orders.models import Order, OrderStatus
from apps.scheduling.conflicts import detect_conflicts
from apps.scheduling.services import MapboxClient, MapboxError, recommend_engineers

User = get_user_model()


def mapbox_response(payload, status=200):
    response = mock.Mock()
    response.ok = status < 400
    response.status_code = status
    response.json.return_value = payload
    return response


def geocode_payload(lng, lat):
    return {"features": [{"center": [lng, lat]}]}


class MapboxClientTests(APITestCase):
    def test_single_pair_uses_directions_api(self):
        session = mock.Mock()
        session.get.side_effect = [
            mapbox_response(geocode_payload(-2.24, 53.48)),
            mapbox_response(geocode_payload(-1.55, 53.80)),
            mapbox_response({"routes": [{"distance": 70000, "duration": 3930}]}),
        ]
        client = MapboxClient(access_token="pk.test", session=session)

        result = client.distances(["m1 1ae"], ["LS1 4DY"])

        self.assertEqual(result, {"distances": [[43.5]], "durations": [[66]]})
        geocode_url = session.get.call_args_list[0].args[0]
        self.assertTrue(geocode_url.endswith("/geocoding/v5/mapbox.places/M1%201AE.json"))
        self.assertEqual(session.get.call_args_list[0].kwargs["params"]["country"], "GB")
        self.assertIn("/directions/v5/mapbox/driving/-2.24,53.48;-1.55,53.8", session.get.call_args_list[2].args[0])

    def test_many_points_use_matrix_api_and_memoise_geocoding(self):
        session = mock.Mock()
        session.get.side_effect = [
            mapbox_response(geocode_payload(-2.24, 53.48)),
            mapbox_response(geocode_payload(-1.55, 53.80)),
            mapbox_response(
                {
                    "distances": [[16093.4], [8046.7], [None]],
                    "durations": [[1800], [629], [None]],
                }
            ),
        ]
        client = MapboxClient(access_token="pk.test", session=session)

        result = client.distances(["M1 1AE", "LS1 4DY", "m1 1ae"], ["LS1 4DY"])

        self.assertEqual(session.get.call_count, 3)
        self.assertEqual(result["distances"], [[10.0], [5.0], [None]])
        self.assertEqual(result["durations"], [[30], [10], [None]])
        params = session.get.call_args_list[2].kwargs["params"]
        self.assertEqual(params["sources"], "0;1;2")
        self.assertEqual(params["destinations"], "3")

    def test_unknown_postcode_raises(self):
        session = mock.Mock()
        session.get.return_value = mapbox_response({"features": []})
        client = MapboxClient(access_token="pk.test", session=session)
        with self.assertRaises(MapboxError):
            client.geocode("ZZ99 9ZZ")

    def test_provider_error_raises(self):
        session = mock.Mock()
        session.get.return_value = mapbox_response({"message": "Not Authorized - Invalid Token"}, status=401)
        client = MapboxClient(access_token="pk.bad", session=session)
        with self.assertRaises(MapboxError) as ctx:
            client.geocode("M1 1AE")
        self.assertIn("Invalid Token", ctx.exception.detail)

    @override_settings(MAPBOX_ACCESS_TOKEN="")
    def test_missing_token_is_rejected(self):
        with self.assertRaises(MapboxError):
            MapboxClient()


class RecommendationTests(APITestCase):
    def setUp(self):
        self.manager = User.objects.create_user(username="manager_sched", password="manager123", role="MANAGER")
        self.engineer_user = User.objects.create_user(username="eng_sched", password="engineer123", role="ENGINEER")
        self.customer = Client.objects.create(full_name="Kim Lee", email="kim@example.com", postcode="M2 3AB")
        self.near = Engineer.objects.create(name="Nina Near", email="nina@prospaces.co.uk", base_postcode="M1 1AE")
        self.far = Engineer.objects.create(name="Fred Far", email="fred@prospaces.co.uk", base_postcode="LS1 4DY")
        self.busy = Engineer.objects.create(
            name="Bea Busy",
            email="bea@prospaces.co.uk",
            base_postcode="M3 4EE",
            max_jobs_per_day=1,
        )
        Engineer.objects.create(name="Olly Off", email="olly@prospaces.co.uk", availability=False)
        self.install_date = date(2026, 3, 2)
        self.order = Order.objects.create(
            client=self.customer,
            status=OrderStatus.CONFIRMED,
            total_amount=Decimal("1000.00"),
            amount_paid=Decimal("1000.00"),
            postcode="M2 3AB",
        )
        Order.objects.create(
            client=self.customer,
            status=OrderStatus.SCHEDULED,
            engineer=self.busy,
            total_amount=Decimal("500.00"),
            scheduled_install_date=self.install_date,
        )

    def auth_as(self, username, password):
        token = self.client.post(
            "/api/v1/auth/token/",
            {"username": username, "password": password},
            format="json",
        ).data["access"]
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {token}")

    def test_ranked_by_distance_and_full_engineers_excluded(self):
        distance_client = mock.Mock()
        distance_client.distances.return_value = {"distances": [[24.1], [1.2]], "durations": [[40], [6]]}

        rows = recommend_engineers(self.order, self.install_date, client=distance_client)

        self.assertEqual([row["name"] for row in rows], ["Nina Near", "Fred Far"])
        self.assertEqual(rows[0]["distance_miles"], 1.2)
        self.assertEqual(rows[0]["capacity_left"], 3)
        distance_client.distances.assert_called_once_with(["LS1 4DY", "M1 1AE"], ["M2 3AB"])

    def test_falls_back_to_workload_when_distances_fail(self):
        distance_client = mock.Mock()
        distance_client.distances.side_effect = MapboxError("Mapbox API error 500: Unknown error")

        rows = recommend_engineers(self.order, date(2026, 3, 3), client=distance_client)

        self.assertEqual([row["name"] for row in rows], ["Bea Busy", "Fred Far", "Nina Near"])
        self.assertTrue(all(row["distance_miles"] is None for row in rows))

    @override_settings(MAPBOX_ACCESS_TOKEN="pk.test")
    def test_recommendation_endpoint(self):
        self.auth_as("manager_sched", "manager123")
        with mock.patch(
            "apps.scheduling.services.MapboxClient.distances",
            return_value={"distances": [[24.1], [1.2]], "durations": [[40], [6]]},
        ):
            response = self.client.get(
                "/api/v1/scheduling/recommendations/",
                {"order": str(self.order.id), "date": "2026-03-02"},
            )
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["recommendations"][0]["engineer_id"], str(self.near.id))

    def test_engineers_cannot_request_recommendations(self):
        self.auth_as("eng_sched", "engineer123")
        response = self.client.get(
            "/api/v1/scheduling/recommendations/",
            {"order": str(self.order.id), "date": "2026-03-02"},
        )
        self.assertEqual(response.status_code, 403)

    @override_settings(MAPBOX_ACCESS_TOKEN="")
    def test_distance_endpoint_reports_missing_configuration(self):
        self.auth_as("manager_sched", "manager123")
        response = self.client.post(
            "/api/v1/scheduling/distances/",
            {"origins": ["M1 1AE"], "destinations": ["M2 3AB"]},
            format="json",
        )
        self.assertEqual(response.status_code, 502)
        self.assertEqual(response.data["code"], "distance_unavailable")

    def test_engineers_off_that_weekday_are_not_recommended(self):
        EngineerWorkingDay.objects.create(engineer=self.near, day_of_week=Weekday.TUESDAY)
        EngineerWorkingDay.objects.create(engineer=self.far, day_of_week=Weekday.MONDAY)

        rows = recommend_engineers(self.order, self.install_date)

        self.assertEqual([row["name"] for row in rows], ["Fred Far"])

    @override_settings(MAPBOX_ACCESS_TOKEN="pk.test")
    def test_nobody_is_recommended_on_a_client_blocked_date(self):
        ClientBlockedDate.objects.create(client=self.customer, blocked_date=self.install_date, reason="Away")
        self.auth_as("manager_sched", "manager123")
        with mock.patch("apps.scheduling.services.MapboxClient.distances") as distances:
            response = self.client.get(
                "/api/v1/scheduling/recommendations/",
                {"order": str(self.order.id), "date": "2026-03-02"},
            )
        self.assertEqual(response.status_code, 200)
        self.assertTrue(response.data["client_blocked"])
        self.assertEqual(response.data["recommendations"], [])
        distances.assert_not_called()

    def test_conflict_endpoint_reports_each_problem(self):
        ClientBlockedDate.objects.create(client=self.customer, blocked_date=self.install_date)
        EngineerWorkingDay.objects.create(engineer=self.busy, day_of_week=Weekday.FRIDAY)
        self.auth_as("manager_sched", "manager123")

        response = self.client.get(
            "/api/v1/scheduling/conflicts/",
            {"order": str(self.order.id), "date": "2026-03-02", "engineer": str(self.busy.id)},
        )

        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.data["engineer"], str(self.busy.id))
        found = {conflict["type"]: conflict["severity"] for conflict in response.data["conflicts"]}
        self.assertEqual(found, {"client_blocked": "high", "double_booking": "high", "outside_hours": "medium"})

    def test_free_day_has_no_conflicts(self):
        conflicts = detect_conflicts(self.order, self.near, self.install_date)
        self.assertEqual(conflicts, [])
