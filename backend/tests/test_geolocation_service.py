from __future__ import annotations

import pytest

from discovery.errors import ValidationError
from discovery.schemas import NearbyResult
from discovery.services.cache_service import GEOLOCATION_PATTERN, NEARBY_NAMESPACE, Cache
from discovery.services.geolocation_service import GeolocationService
from discovery.services.geometry import GeoPoint, destination_point
from discovery.services.search_service import SearchService
from discovery.services.spatial_store import SpatialFilters

NAIROBI = GeoPoint(-1.2921, 36.8219)
MOMBASA = GeoPoint(-4.0435, 39.6682)


@pytest.fixture
def geolocation(store, cache):
    return GeolocationService(store, cache)


def _near(distance_m: float) -> GeoPoint:
    return destination_point(NAIROBI.lat, NAIROBI.lng, 45, distance_m)


def test_find_nearby_builds_result_envelope(geolocation, add_business):
    point = _near(1_500)
    add_business("Kiosk", point.lat, point.lng, city="Nairobi", country="Kenya", verified=True, rating=4.2)

    result = geolocation.find_nearby(NAIROBI, 5_000)

    assert result.count == 1
    assert result.radius.meters == 5_000
    assert result.radius.kilometers == 5
    assert result.search_location.lat == NAIROBI.lat
    business = result.businesses[0]
    assert business.name == "Kiosk"
    assert business.location.city == "Nairobi"
    assert business.distance.meters == 1_500
    assert business.distance.kilometers == 1.5
    assert business.rating == pytest.approx(4.2)


def test_find_nearby_uses_default_radius(geolocation, add_business):
    inside = _near(9_000)
    outside = _near(11_000)
    add_business("Inside default", inside.lat, inside.lng)
    add_business("Outside default", outside.lat, outside.lng)

    result = geolocation.find_nearby(NAIROBI)

    assert result.radius.meters == 10_000
    assert [business.name for business in result.businesses] == ["Inside default"]


def test_find_nearby_serves_cached_result_until_invalidated(geolocation, cache, add_business):
    first = _near(500)
    add_business("First", first.lat, first.lng)
    assert geolocation.find_nearby(NAIROBI, 2_000).count == 1

    second = _near(700)
    add_business("Second", second.lat, second.lng)
    assert geolocation.find_nearby(NAIROBI, 2_000).count == 1

    cache.invalidate(GEOLOCATION_PATTERN)
    assert geolocation.find_nearby(NAIROBI, 2_000).count == 2


def test_entity_write_drops_cached_nearby_results(store, cache, geolocation, add_business):
    search = SearchService(store, cache)
    point = _near(300)
    geolocation.find_nearby(NAIROBI, 1_000)
    business_id = add_business("Fresh", point.lat, point.lng)

    search.on_entity_write(business_id, "business")

    assert [business.name for business in geolocation.find_nearby(NAIROBI, 1_000).businesses] == ["Fresh"]


def test_filters_are_part_of_the_cache_key(geolocation, add_business):
    a = _near(200)
    b = _near(400)
    add_business("Verified", a.lat, a.lng, verified=True)
    add_business("Unverified", b.lat, b.lng, verified=False)

    everything = geolocation.find_nearby(NAIROBI, 1_000)
    verified = geolocation.find_nearby(NAIROBI, 1_000, SpatialFilters(verified=True))

    assert everything.count == 2
    assert [business.name for business in verified.businesses] == ["Verified"]
    assert verified.filters.verified is True


def test_find_nearby_rejects_invalid_center(geolocation):
    with pytest.raises(ValidationError):
        geolocation.find_nearby(GeoPoint(95.0, 0.0), 1_000)


def test_find_in_bounds_flags_antimeridian(geolocation, add_business):
    add_business("Fiji", -17.7, 178.0)
    add_business("Samoa", -13.8, -172.0)

    result = geolocation.find_in_bounds(GeoPoint(-20.0, 175.0), GeoPoint(-10.0, -170.0))

    assert result.bounds.crosses_antimeridian is True
    assert {business.name for business in result.businesses} == {"Fiji", "Samoa"}
    assert all(business.distance is None for business in result.businesses)


def test_find_in_bounds_is_cached(geolocation, add_business):
    add_business("Inside", -1.28, 36.82)
    sw, ne = GeoPoint(-1.4, 36.7), GeoPoint(-1.2, 36.9)
    assert geolocation.find_in_bounds(sw, ne).count == 1

    add_business("Later", -1.30, 36.80)
    assert geolocation.find_in_bounds(sw, ne).count == 1


def test_distance_between_reports_all_units(geolocation):
    result = geolocation.distance_between(NAIROBI, MOMBASA)

    assert 430_000 < result.distance.meters < 450_000
    assert result.distance.kilometers == pytest.approx(result.distance.meters / 1000, abs=0.01)
    assert result.distance.miles == pytest.approx(result.distance.meters / 1609.344, abs=0.01)
    assert result.origin.lat == NAIROBI.lat


def test_distance_between_same_point_is_zero(geolocation):
    result = geolocation.distance_between(NAIROBI, NAIROBI)
    assert result.distance.meters == 0
    assert result.distance.miles == 0


def test_geolocation_survives_unreachable_cache(store, add_business):
    class Down:
        def get(self, key):
            raise ConnectionError("down")

        def set(self, key, value, ttl_seconds):
            raise ConnectionError("down")

        def delete_pattern(self, pattern):
            raise ConnectionError("down")

        def close(self):
            pass

    point = _near(100)
    add_business("Still found", point.lat, point.lng)
    service = GeolocationService(store, Cache(Down()))

    assert service.find_nearby(NAIROBI, 1_000).count == 1


def test_timeouts_reach_the_store(monkeypatch, store, cache, add_business):
    seen: list[int] = []
    open_session = store.session

    def session(timeout=None):
        seen.append(store.statement_timeout_ms(timeout))
        return open_session(timeout)

    monkeypatch.setattr(store, "session", session)
    service = GeolocationService(store, cache)

    service.find_nearby(NAIROBI, 1_000, timeout=0.2)
    service.find_in_bounds(GeoPoint(-1.4, 36.7), GeoPoint(-1.2, 36.9), timeout=1.0)

    assert seen == [200, 1_000]


def test_unreadable_cached_nearby_result_is_refetched(geolocation, cache, add_business):
    point = _near(300)
    add_business("Kiosk", point.lat, point.lng)
    key = cache.compute_key(
        NEARBY_NAMESPACE,
        {"lat": NAIROBI.lat, "lng": NAIROBI.lng, "radius_m": 1_000.0, "limit": 50, "offset": 0},
    )
    cache.set(key, "not json at all", 3_600)

    result = geolocation.find_nearby(NAIROBI, 1_000)

    assert [business.name for business in result.businesses] == ["Kiosk"]
    assert cache.get_model(key, NearbyResult) == result
