from __future__ import annotations

import logging

from ..config import settings
from ..models import Business
from ..schemas import (
    BoundsResult,
    BoundsView,
    BusinessLocation,
    DistanceBreakdown,
    DistanceResult,
    DistanceView,
    LocatedBusiness,
    Location,
    NearbyResult,
    Pagination,
    RadiusView,
    SpatialFilterView,
)
from ..telemetry import traced_query
from .cache_service import BOUNDS_NAMESPACE, NEARBY_NAMESPACE, Cache
from .geometry import GeoPoint, ensure_point, meters_to_km, meters_to_miles
from .spatial_store import SpatialFilters, SpatialStore, validate_bounds, validate_radius

logger = logging.getLogger(__name__)


def located_business(business: Business, distance_m: float | None = None) -> LocatedBusiness:
    distance = None
    if distance_m is not None:
        distance = DistanceView(meters=round(distance_m), kilometers=round(meters_to_km(distance_m), 2))
    return LocatedBusiness(
        id=business.id,
        owner_id=business.owner_id,
        name=business.name,
        description=business.description,
        business_type=business.business_type,
        location=BusinessLocation(
            lat=business.lat,
            lng=business.lng,
            address=business.address,
            city=business.city,
            country=business.country,
        ),
        contact_email=business.contact_email,
        contact_phone=business.contact_phone,
        verified=business.verified,
        rating=float(business.rating or 0),
        total_ratings=business.total_ratings or 0,
        distance=distance,
        created_at=business.created_at,
        updated_at=business.updated_at,
    )


def _filter_view(filters: SpatialFilters) -> SpatialFilterView:
    return SpatialFilterView(
        business_type=filters.business_type,
        verified=filters.verified,
        min_rating=filters.min_rating,
    )


class GeolocationService:
    """Cached proximity, viewport and distance queries over located businesses."""

    def __init__(self, store: SpatialStore, cache: Cache, ttl_seconds: int | None = None) -> None:
        self.store = store
        self.cache = cache
        self.ttl_seconds = ttl_seconds or settings.geolocation_cache_ttl_seconds

    def find_nearby(
        self,
        center: GeoPoint,
        radius_m: float | None = None,
        filters: SpatialFilters | None = None,
        *,
        limit: int | None = None,
        offset: int = 0,
        timeout: float | None = None,
    ) -> NearbyResult:
        center = ensure_point(center.lat, center.lng, "center")
        radius = validate_radius(settings.default_nearby_radius_m if radius_m is None else radius_m)
        filters = (filters or SpatialFilters()).validated()
        limit = settings.default_nearby_limit if limit is None else limit

        with traced_query("geolocation.nearby", lat=center.lat, lng=center.lng, radius_m=radius) as trace:
            key = self.cache.compute_key(
                NEARBY_NAMESPACE,
                {
                    "lat": center.lat,
                    "lng": center.lng,
                    "radius_m": radius,
                    "limit": limit,
                    "offset": offset,
                    **filters.as_params(),
                },
            )
            cached = self.cache.get_model(key, NearbyResult)
            if cached is not None:
                trace.mark_cache_hit()
                return cached

            rows = self.store.find_nearby(center, radius, filters, limit=limit, offset=offset, timeout=timeout)
            businesses = [located_business(row.business, row.distance_m) for row in rows]
            result = NearbyResult(
                search_location=Location(lat=center.lat, lng=center.lng),
                radius=RadiusView(meters=radius, kilometers=meters_to_km(radius)),
                filters=_filter_view(filters),
                businesses=businesses,
                count=len(businesses),
                pagination=Pagination(limit=limit, offset=offset),
            )
            trace.set_result_count(result.count)
            self.cache.set(key, result.model_dump_json(), self.ttl_seconds)
            return result

    def find_in_bounds(
        self,
        south_west: GeoPoint,
        north_east: GeoPoint,
        filters: SpatialFilters | None = None,
        *,
        limit: int | None = None,
        timeout: float | None = None,
    ) -> BoundsResult:
        south_west, north_east = validate_bounds(south_west, north_east)
        filters = (filters or SpatialFilters()).validated()
        limit = settings.default_bounds_limit if limit is None else limit

        with traced_query("geolocation.bounds") as trace:
            key = self.cache.compute_key(
                BOUNDS_NAMESPACE,
                {
                    "sw_lat": south_west.lat,
                    "sw_lng": south_west.lng,
                    "ne_lat": north_east.lat,
                    "ne_lng": north_east.lng,
                    "limit": limit,
                    **filters.as_params(),
                },
            )
            cached = self.cache.get_model(key, BoundsResult)
            if cached is not None:
                trace.mark_cache_hit()
                return cached

            rows = self.store.find_in_bounds(south_west, north_east, filters, limit=limit, timeout=timeout)
            businesses = [located_business(business) for business in rows]
            result = BoundsResult(
                bounds=BoundsView(
                    south_west=Location(lat=south_west.lat, lng=south_west.lng),
                    north_east=Location(lat=north_east.lat, lng=north_east.lng),
                    crosses_antimeridian=south_west.lng > north_east.lng,
                ),
                filters=_filter_view(filters),
                businesses=businesses,
                count=len(businesses),
            )
            trace.set_result_count(result.count)
            self.cache.set(key, result.model_dump_json(), self.ttl_seconds)
            return result

    def distance_between(self, origin: GeoPoint, destination: GeoPoint) -> DistanceResult:
        meters = self.store.distance_between(origin, destination)
        return DistanceResult(
            origin=Location(lat=origin.lat, lng=origin.lng),
            destination=Location(lat=destination.lat, lng=destination.lng),
            distance=DistanceBreakdown(
                meters=round(meters),
                kilometers=round(meters_to_km(meters), 2),
                miles=round(meters_to_miles(meters), 2),
            ),
        )
