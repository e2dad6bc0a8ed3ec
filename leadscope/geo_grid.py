"""Geo-grid sampling used to fan out places searches across a city."""

from __future__ import annotations

import math
from typing import List

from .models import GridPoint

KM_PER_DEGREE = 111.0
EARTH_RADIUS_KM = 6371.0
DEFAULT_STEP_KM = 1.5


def haversine_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """Great-circle distance between two coordinates in kilometres."""

    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    d_phi = math.radians(lat2 - lat1)
    d_lambda = math.radians(lng2 - lng1)
    a = math.sin(d_phi / 2) ** 2 + math.cos(phi1) * math.cos(phi2) * math.sin(d_lambda / 2) ** 2
    return 2 * EARTH_RADIUS_KM * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def generate_grid_points(
    center_lat: float,
    center_lng: float,
    radius_km: float,
    step_km: float = DEFAULT_STEP_KM,
) -> List[GridPoint]:
    """Return lattice points inside ``radius_km`` of the center, row by row from the south-west corner.

    Degree deltas use the 111 km/degree approximation; the longitude step is widened
    by ``1 / cos(lat)`` so columns stay roughly ``step_km`` apart.
    """

    if radius_km < 0:
        raise ValueError("radius_km must be non-negative")
    if step_km <= 0:
        raise ValueError("step_km must be positive")

    cos_lat = math.cos(math.radians(center_lat))
    # Near the poles the longitude step degenerates; clamp to keep the lattice finite.
    cos_lat = max(abs(cos_lat), 1e-6)

    lat_step = step_km / KM_PER_DEGREE
    lng_step = step_km / (KM_PER_DEGREE * cos_lat)
    lat_span = radius_km / KM_PER_DEGREE
    lng_span = radius_km / (KM_PER_DEGREE * cos_lat)

    lat_count = int(math.floor(2 * lat_span / lat_step + 1e-9))
    lng_count = int(math.floor(2 * lng_span / lng_step + 1e-9))
    min_lat = center_lat - lat_span
    min_lng = center_lng - lng_span

    points: List[GridPoint] = []
    for i in range(lat_count + 1):
        lat = min_lat + i * lat_step
        for j in range(lng_count + 1):
            point = GridPoint(lat=round(lat, 7), lng=round(min_lng + j * lng_step, 7))
            if haversine_km(center_lat, center_lng, point.lat, point.lng) <= radius_km:
                points.append(point)

    if not points:
        points.append(GridPoint(lat=center_lat, lng=center_lng))
    return points
