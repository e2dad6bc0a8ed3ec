import pytest

from leadscope.geo_grid import generate_grid_points, haversine_km


@pytest.mark.parametrize(
    "lat,lng,radius,step",
    [
        (37.9838, 23.7275, 10.0, 1.5),
        (40.6401, 22.9444, 5.0, 1.0),
        (64.1466, -21.9426, 8.0, 2.0),
        (-33.8688, 151.2093, 3.0, 0.5),
    ],
)
def test_every_point_is_inside_the_radius(lat, lng, radius, step):
    points = generate_grid_points(lat, lng, radius, step)

    assert points
    for point in points:
        assert haversine_km(lat, lng, point.lat, point.lng) <= radius


def test_grid_is_deterministic():
    first = generate_grid_points(37.9838, 23.7275, 6.0)
    second = generate_grid_points(37.9838, 23.7275, 6.0)

    assert first == second
    assert len(set(first)) == len(first)


def test_points_start_in_the_south_west():
    points = generate_grid_points(37.9838, 23.7275, 4.0, 1.0)

    assert points[0].lat == min(p.lat for p in points)
    assert points == sorted(points, key=lambda p: (p.lat, p.lng))


def test_smaller_step_gives_more_points():
    coarse = generate_grid_points(37.9838, 23.7275, 5.0, 2.5)
    fine = generate_grid_points(37.9838, 23.7275, 5.0, 1.0)

    assert len(fine) > len(coarse)


def test_zero_radius_falls_back_to_center():
    points = generate_grid_points(37.9838, 23.7275, 0.0)

    assert len(points) == 1
    assert (points[0].lat, points[0].lng) == (37.9838, 23.7275)


@pytest.mark.parametrize("radius,step", [(-1.0, 1.5), (5.0, 0.0), (5.0, -2.0)])
def test_invalid_arguments(radius, step):
    with pytest.raises(ValueError):
        generate_grid_points(37.9838, 23.7275, radius, step)


def test_haversine_known_distance():
    # Athens to Thessaloniki is roughly 300 km as the crow flies.
    assert 295 < haversine_km(37.9838, 23.7275, 40.6401, 22.9444) < 310
