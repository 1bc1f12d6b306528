"""Read-side spatial queries over businesses.

Distance filtering and ordering run inside the database: a lat/lng box derived
from the radius narrows rows through ``ix_businesses_lat_lng``, then an exact
great-circle predicate (the same haversine the Python helpers use) decides
membership and ordering.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass

from sqlalchemy import ColumnElement, Float, and_, func, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..config import settings
from ..errors import StoreError, ValidationError
from ..models import Business, BusinessType
from ..telemetry import instrument_stage
from .geometry import (
    EARTH_RADIUS_M,
    GeoPoint,
    ensure_point,
    haversine_m,
    longitude_spans,
    radius_box,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SpatialFilters:
    business_type: str | None = None
    verified: bool | None = None
    min_rating: float | None = None

    def validated(self) -> "SpatialFilters":
        business_type = self.business_type
        if business_type is not None:
            try:
                business_type = BusinessType(business_type).value
            except ValueError:
                raise ValidationError(
                    "Unknown business type",
                    details={"business_type": self.business_type},
                ) from None
        if self.min_rating is not None and not 0 <= self.min_rating <= 5:
            raise ValidationError("min_rating must be between 0 and 5", details={"min_rating": self.min_rating})
        return SpatialFilters(business_type=business_type, verified=self.verified, min_rating=self.min_rating)

    def as_params(self) -> dict[str, object]:
        return {
            "business_type": self.business_type,
            "verified": self.verified,
            "min_rating": self.min_rating,
        }


@dataclass
class NearbyRow:
    business: Business
    distance_m: float


def _f(name: str, *args) -> ColumnElement[float]:
    return getattr(func, name)(*args, type_=Float)


def great_circle_distance_m(lat_col, lng_col, lat: float, lng: float) -> ColumnElement[float]:
    d_lat = _f("radians", lat_col - lat)
    d_lng = _f("radians", lng_col - lng)
    a = _f("power", _f("sin", d_lat / 2), 2) + _f("cos", _f("radians", lat)) * _f(
        "cos", _f("radians", lat_col)
    ) * _f("power", _f("sin", d_lng / 2), 2)
    return 2 * EARTH_RADIUS_M * _f("asin", _f("least", 1.0, _f("sqrt", a)))


def _longitude_clause(lng_col, spans) -> ColumnElement[bool] | None:
    if len(spans) == 1 and spans[0] == (-180.0, 180.0):
        return None
    clauses = [lng_col.between(west, east) for west, east in spans]
    if len(clauses) == 1:
        return clauses[0]
    return or_(*clauses)


def validate_radius(radius_m: float) -> float:
    try:
        radius = float(radius_m)
    except (TypeError, ValueError):
        raise ValidationError("radius must be a number", details={"radius_m": radius_m}) from None
    if not settings.min_search_radius_m <= radius <= settings.max_search_radius_m:
        raise ValidationError(
            f"radius must be between {settings.min_search_radius_m:g}m and {settings.max_search_radius_m:g}m",
            details={"radius_m": radius_m},
        )
    return radius


def validate_bounds(south_west: GeoPoint, north_east: GeoPoint) -> tuple[GeoPoint, GeoPoint]:
    south_west = ensure_point(south_west.lat, south_west.lng, "south-west")
    north_east = ensure_point(north_east.lat, north_east.lng, "north-east")
    if south_west.lat > north_east.lat:
        raise ValidationError(
            "south-west latitude must not exceed north-east latitude",
            details={"south_west": south_west.lat, "north_east": north_east.lat},
        )
    return south_west, north_east


class SpatialStore:
    def __init__(
        self,
        session_factory: sessionmaker[Session],
        statement_timeout_ms: int | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._statement_timeout_ms = statement_timeout_ms or settings.db_statement_timeout_ms

    def statement_timeout_ms(self, timeout: float | None = None) -> int:
        """Per-transaction statement timeout; a caller timeout (seconds) can only shorten it."""
        if timeout is None:
            return self._statement_timeout_ms
        if timeout <= 0:
            raise ValidationError("timeout must be positive", details={"timeout": timeout})
        return max(1, min(self._statement_timeout_ms, math.ceil(timeout * 1000)))

    @contextmanager
    def session(self, timeout: float | None = None) -> Iterator[Session]:
        """Read session with a bounded statement timeout; failures surface as ``StoreError``."""
        timeout_ms = self.statement_timeout_ms(timeout)
        with self._session_factory() as session:
            try:
                if session.get_bind().dialect.name == "postgresql":
                    session.execute(select(func.set_config("statement_timeout", str(timeout_ms), True)))
                yield session
            except SQLAlchemyError as exc:
                logger.exception("Spatial store query failed")
                raise StoreError("Store query failed", details={"reason": type(exc).__name__}) from exc

    # Predicate builders, also composed by the search engine.

    @staticmethod
    def distance_expression(center: GeoPoint) -> ColumnElement[float]:
        return great_circle_distance_m(Business.lat, Business.lng, center.lat, center.lng)

    @classmethod
    def radius_predicate(cls, center: GeoPoint, radius_m: float) -> ColumnElement[bool]:
        box = radius_box(center, radius_m)
        clauses: list[ColumnElement[bool]] = [
            Business.lat.is_not(None),
            Business.lat.between(box.min_lat, box.max_lat),
        ]
        lng_clause = _longitude_clause(Business.lng, box.lng_spans)
        if lng_clause is not None:
            clauses.append(lng_clause)
        clauses.append(cls.distance_expression(center) <= radius_m)
        return and_(*clauses)

    @staticmethod
    def bounds_predicate(south_west: GeoPoint, north_east: GeoPoint) -> ColumnElement[bool]:
        clauses: list[ColumnElement[bool]] = [
            Business.lat.is_not(None),
            Business.lat.between(south_west.lat, north_east.lat),
        ]
        lng_clause = _longitude_clause(Business.lng, longitude_spans(south_west.lng, north_east.lng))
        if lng_clause is not None:
            clauses.append(lng_clause)
        return and_(*clauses)

    @staticmethod
    def filter_clauses(filters: SpatialFilters) -> list[ColumnElement[bool]]:
        clauses: list[ColumnElement[bool]] = []
        if filters.business_type is not None:
            clauses.append(Business.business_type == filters.business_type)
        if filters.verified is not None:
            clauses.append(Business.verified.is_(filters.verified))
        if filters.min_rating is not None:
            clauses.append(Business.rating >= filters.min_rating)
        return clauses

    # Queries

    @instrument_stage("db")
    def find_nearby(
        self,
        center: GeoPoint,
        radius_m: float,
        filters: SpatialFilters | None = None,
        *,
        limit: int | None = None,
        offset: int = 0,
        timeout: float | None = None,
    ) -> list[NearbyRow]:
        center = ensure_point(center.lat, center.lng, "center")
        radius = validate_radius(radius_m)
        filters = (filters or SpatialFilters()).validated()
        limit = settings.default_nearby_limit if limit is None else limit
        if not 1 <= limit <= settings.max_nearby_limit or offset < 0:
            raise ValidationError("Invalid pagination", details={"limit": limit, "offset": offset})

        distance = self.distance_expression(center).label("distance_m")
        stmt = (
            select(Business, distance)
            .where(self.radius_predicate(center, radius), *self.filter_clauses(filters))
            .order_by(distance.asc(), Business.id.asc())
            .limit(limit)
            .offset(offset)
        )
        with self.session(timeout) as session:
            rows = session.execute(stmt).all()
        return [NearbyRow(business=business, distance_m=float(distance_m)) for business, distance_m in rows]

    @instrument_stage("db")
    def find_in_bounds(
        self,
        south_west: GeoPoint,
        north_east: GeoPoint,
        filters: SpatialFilters | None = None,
        *,
        limit: int | None = None,
        timeout: float | None = None,
    ) -> list[Business]:
        south_west, north_east = validate_bounds(south_west, north_east)
        filters = (filters or SpatialFilters()).validated()
        limit = settings.default_bounds_limit if limit is None else limit
        if not 1 <= limit <= settings.max_bounds_limit:
            raise ValidationError(
                f"limit must be between 1 and {settings.max_bounds_limit}",
                details={"limit": limit},
            )

        merged: dict[object, Business] = {}
        with self.session(timeout) as session:
            # An antimeridian-crossing box runs as one sub-query per side.
            for west, east in longitude_spans(south_west.lng, north_east.lng):
                stmt = (
                    select(Business)
                    .where(
                        self.bounds_predicate(
                            GeoPoint(south_west.lat, west),
                            GeoPoint(north_east.lat, east),
                        ),
                        *self.filter_clauses(filters),
                    )
                    .order_by(Business.id.asc())
                    .limit(limit)
                )
                for business in session.execute(stmt).scalars():
                    merged.setdefault(business.id, business)
        ordered = sorted(merged.values(), key=lambda business: str(business.id))
        return ordered[:limit]

    @staticmethod
    def distance_between(point_a: GeoPoint, point_b: GeoPoint) -> float:
        a = ensure_point(point_a.lat, point_a.lng, "origin")
        b = ensure_point(point_b.lat, point_b.lng, "destination")
        return haversine_m(a.lat, a.lng, b.lat, b.lng)
