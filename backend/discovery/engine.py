"""Composition root for the discovery core.

The process entry point builds one :class:`DiscoveryEngine`, hands it to the API
layer, and closes it on shutdown. Nothing in the core reaches for globals.
"""

from __future__ import annotations

import logging
from uuid import UUID

import httpx
from sqlalchemy.orm import Session, sessionmaker

from .config import Settings, settings
from .database import get_session_factory
from .schemas import (
    BoundsResult,
    DistanceResult,
    GeocodeResult,
    NearbyResult,
    ReverseGeocodeResult,
    SearchResultPage,
)
from .services.cache_service import Cache, build_cache
from .services.geocoding_service import GeocodeChain, build_geocode_chain
from .services.geolocation_service import GeolocationService
from .services.geometry import GeoPoint
from .services.search_service import EntityKind, SearchQuery, SearchService
from .services.spatial_store import SpatialFilters, SpatialStore

logger = logging.getLogger(__name__)


class DiscoveryEngine:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        cache: Cache,
        geocoder: GeocodeChain,
        *,
        http_client: httpx.Client | None = None,
        config: Settings | None = None,
    ) -> None:
        config = config or settings
        self.cache = cache
        self.store = SpatialStore(session_factory, statement_timeout_ms=config.db_statement_timeout_ms)
        self.geolocation = GeolocationService(self.store, cache, ttl_seconds=config.geolocation_cache_ttl_seconds)
        self.search_service = SearchService(self.store, cache, ttl_seconds=config.search_cache_ttl_seconds)
        self.geocoder = geocoder
        self._http_client = http_client

    @classmethod
    def from_settings(cls, config: Settings | None = None) -> "DiscoveryEngine":
        config = config or settings
        cache = build_cache(config)
        http_client = httpx.Client(timeout=config.geocode_timeout_seconds)
        geocoder = build_geocode_chain(cache, http_client, config)
        logger.info("Discovery engine ready (cache=%s)", config.cache_backend)
        return cls(get_session_factory(), cache, geocoder, http_client=http_client, config=config)

    def close(self) -> None:
        if self._http_client is not None:
            self._http_client.close()
        self.cache.close()

    def __enter__(self) -> "DiscoveryEngine":
        return self

    def __exit__(self, *_exc) -> None:
        self.close()

    def search(self, query: SearchQuery, *, timeout: float | None = None) -> SearchResultPage:
        return self.search_service.search(query, timeout=timeout)

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
        return self.geolocation.find_nearby(center, radius_m, filters, limit=limit, offset=offset, timeout=timeout)

    def find_in_bounds(
        self,
        south_west: GeoPoint,
        north_east: GeoPoint,
        filters: SpatialFilters | None = None,
        *,
        limit: int | None = None,
        timeout: float | None = None,
    ) -> BoundsResult:
        return self.geolocation.find_in_bounds(south_west, north_east, filters, limit=limit, timeout=timeout)

    def distance_between(self, origin: GeoPoint, destination: GeoPoint) -> DistanceResult:
        return self.geolocation.distance_between(origin, destination)

    def forward_geocode(
        self,
        address: str,
        city: str | None = None,
        country: str | None = None,
        *,
        timeout: float | None = None,
    ) -> GeocodeResult:
        return self.geocoder.forward_geocode(address, city, country, timeout=timeout)

    def reverse_geocode(self, point: GeoPoint, *, timeout: float | None = None) -> ReverseGeocodeResult:
        return self.geocoder.reverse_geocode(point, timeout=timeout)

    def on_entity_write(self, entity_id: UUID | str, kind: EntityKind | str) -> int:
        return self.search_service.on_entity_write(entity_id, kind)
