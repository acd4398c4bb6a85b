import logging
from urllib.parse import quote

import requests
from django.conf import settings
from django.db.models import Count, Q

from apps.clients.models import normalize_postcode
from apps.common.exceptions import DomainError
from apps.engineers.models import Engineer
from apps.scheduling.conflicts import BOOKED_STATUSES, client_blocked_entry

logger = logging.getLogger(__name__)

METERS_PER_MILE = 1609.34


class MapboxError(DomainError):
    status_code = 502
    default_code = "distance_unavailable"
    default_detail = "Distances could not be calculated."


def _miles(meters):
    return None if meters is None else round(meters / METERS_PER_MILE, 1)


def _minutes(seconds):
    return None if seconds is None else round(seconds / 60)


class MapboxClient:
    """Geocoding and driving distances for UK postcodes."""

    base_url = "https://api.mapbox.com"

    def __init__(self, access_token=None, timeout=None, session=None):
        self.access_token = access_token or settings.MAPBOX_ACCESS_TOKEN
        if not self.access_token:
            raise MapboxError("Mapbox access token is not configured.")
        self.timeout = timeout or settings.MAPBOX_TIMEOUT_SECONDS
        self.session = session or requests.Session()
        self._coordinates = {}

    def _get(self, path, **params):
        params["access_token"] = self.access_token
        try:
            response = self.session.get(f"{self.base_url}{path}", params=params, timeout=self.timeout)
        except requests.RequestException as exc:
            logger.warning("Mapbox request to %s failed: %s", path, exc)
            raise MapboxError(f"Mapbox request failed: {exc}") from exc

        try:
            data = response.json()
        except ValueError:
            data = {}
        if not response.ok:
            message = data.get("message") or data.get("error") or "Unknown error"
            logger.warning("Mapbox %s returned %s: %s", path, response.status_code, message)
            raise MapboxError(f"Mapbox API error {response.status_code}: {message}")
        return data

    def geocode(self, postcode):
        postcode = normalize_postcode(postcode)
        if postcode in self._coordinates:
            return self._coordinates[postcode]

        data = self._get(
            f"/geocoding/v5/mapbox.places/{quote(postcode)}.json",
            country="GB",
            types="postcode",
        )
        features = data.get("features") or []
        if not features:
            raise MapboxError(f"Could not geocode postcode {postcode}.")
        lng, lat = features[0]["center"]
        self._coordinates[postcode] = (lng, lat)
        return lng, lat

    def distances(self, origins, destinations):
        """Driving distance (miles) and duration (minutes) from every origin to every destination."""
        if not origins or not destinations:
            raise MapboxError("Origins and destinations are required.")

        origin_coords = [self.geocode(postcode) for postcode in origins]
        destination_coords = [self.geocode(postcode) for postcode in destinations]

        if len(origin_coords) == 1 and len(destination_coords) == 1:
            path = ";".join(f"{lng},{lat}" for lng, lat in (origin_coords[0], destination_coords[0]))
            data = self._get(f"/directions/v5/mapbox/driving/{path}", geometries="geojson")
            routes = data.get("routes") or []
            if not routes:
                raise MapboxError("No route found between the postcodes.")
            return {
                "distances": [[_miles(routes[0]["distance"])]],
                "durations": [[_minutes(routes[0]["duration"])]],
            }

        coords = origin_coords + destination_coords
        data = self._get(
            "/directions-matrix/v1/mapbox/driving/" + ";".join(f"{lng},{lat}" for lng, lat in coords),
            sources=";".join(str(index) for index in range(len(origin_coords))),
            destinations=";".join(str(index + len(origin_coords)) for index in range(len(destination_coords))),
            annotations="distance,duration",
        )
        if "distances" not in data or "durations" not in data:
            raise MapboxError("Mapbox matrix response is missing distances or durations.")
        return {
            "distances": [[_miles(value) for value in row] for row in data["distances"]],
            "durations": [[_minutes(value) for value in row] for row in data["durations"]],
        }


def default_client():
    if not settings.MAPBOX_ACCESS_TOKEN:
        return None
    return MapboxClient()


def recommend_engineers(order, install_date, client=None):
    """Available engineers for the install date, nearest and least busy first.

    Nobody is recommended for a date the client has blocked.
    """
    if client_blocked_entry(order.client, install_date) is not None:
        logger.info("Client %s has blocked %s; no engineers recommended", order.client_id, install_date)
        return []

    engineers = list(
        Engineer.objects.filter(availability=True)
        .prefetch_related("working_days")
        .annotate(
            jobs_that_day=Count(
                "orders",
                filter=Q(orders__scheduled_install_date=install_date, orders__status__in=BOOKED_STATUSES)
                & ~Q(orders__id=order.pk),
            )
        )
        .order_by("name")
    )
    engineers = [
        engineer
        for engineer in engineers
        if engineer.jobs_that_day < engineer.max_jobs_per_day and engineer.works_on(install_date)
    ]

    routes = {}
    located = [engineer for engineer in engineers if engineer.base_postcode]
    if client is not None and order.postcode and located:
        try:
            matrix = client.distances([engineer.base_postcode for engineer in located], [order.postcode])
        except MapboxError as exc:
            logger.warning("Ranking engineers for order %s without distances: %s", order.order_number, exc)
        else:
            for engineer, distance_row, duration_row in zip(located, matrix["distances"], matrix["durations"]):
                routes[engineer.pk] = (distance_row[0], duration_row[0])

    recommendations = []
    for engineer in engineers:
        distance, duration = routes.get(engineer.pk, (None, None))
        recommendations.append(
            {
                "engineer_id": str(engineer.pk),
                "name": engineer.name,
                "region": engineer.region,
                "base_postcode": engineer.base_postcode,
                "jobs_that_day": engineer.jobs_that_day,
                "capacity_left": engineer.max_jobs_per_day - engineer.jobs_that_day,
                "distance_miles": distance,
                "duration_minutes": duration,
            }
        )
    recommendations.sort(
        key=lambda row: (row["distance_miles"] is None, row["distance_miles"] or 0, row["jobs_that_day"], row["name"])
    )
    return recommendations
