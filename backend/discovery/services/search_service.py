from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from uuid import UUID

from sqlalchemy import ColumnElement, func, select

from ..config import settings
from ..errors import ValidationError
from ..models import Business, Product, ProductCategory
from ..schemas import BusinessSummary, Location, PageInfo, ProductResult, SearchResultPage
from ..telemetry import instrument_stage, traced_query
from .cache_service import GEOLOCATION_PATTERN, SEARCH_NAMESPACE, SEARCH_PATTERN, Cache
from .geometry import GeoPoint, ensure_point, meters_to_km
from .spatial_store import SpatialStore, validate_bounds, validate_radius

logger = logging.getLogger(__name__)


class SortKey(str, Enum):
    PRICE = "price"
    CREATED_AT = "created_at"
    NAME = "name"
    RATING = "rating"
    DISTANCE = "distance"


class SortOrder(str, Enum):
    ASC = "asc"
    DESC = "desc"


class EntityKind(str, Enum):
    BUSINESS = "business"
    PRODUCT = "product"


@dataclass(frozen=True)
class SearchQuery:
    keyword: str | None = None
    category: str | None = None
    min_price: float | None = None
    max_price: float | None = None
    center: GeoPoint | None = None
    radius_m: float | None = None
    south_west: GeoPoint | None = None
    north_east: GeoPoint | None = None
    in_stock_only: bool = False
    sort_by: SortKey | str = SortKey.CREATED_AT
    sort_order: SortOrder | str = SortOrder.DESC
    limit: int = settings.default_search_limit
    offset: int = 0

    def validated(self) -> "SearchQuery":
        """Return a normalized copy, raising ``ValidationError`` on any invalid combination."""
        keyword = (self.keyword or "").strip() or None

        category = self.category
        if category is not None:
            try:
                category = ProductCategory(category).value
            except ValueError:
                raise ValidationError("Unknown product category", details={"category": self.category}) from None

        for label, price in (("min_price", self.min_price), ("max_price", self.max_price)):
            if price is not None and price < 0:
                raise ValidationError(f"{label} must be non-negative", details={label: price})
        if self.min_price is not None and self.max_price is not None and self.min_price > self.max_price:
            raise ValidationError(
                "min_price must not exceed max_price",
                details={"min_price": self.min_price, "max_price": self.max_price},
            )

        center = None
        if self.center is not None:
            center = ensure_point(self.center.lat, self.center.lng, "center")
        radius_m = None
        if self.radius_m is not None:
            if center is None:
                raise ValidationError("radius requires a center", details={"radius_m": self.radius_m})
            radius_m = validate_radius(self.radius_m)

        south_west = north_east = None
        if (self.south_west is None) != (self.north_east is None):
            raise ValidationError("bounds need both south-west and north-east corners")
        if self.south_west is not None and self.north_east is not None:
            if radius_m is not None:
                raise ValidationError("Use either a radius or bounds, not both")
            south_west, north_east = validate_bounds(self.south_west, self.north_east)

        try:
            sort_by = SortKey(self.sort_by)
        except ValueError:
            raise ValidationError("Unknown sort key", details={"sort_by": self.sort_by}) from None
        try:
            sort_order = SortOrder(self.sort_order.lower() if isinstance(self.sort_order, str) else self.sort_order)
        except ValueError:
            raise ValidationError("Unknown sort order", details={"sort_order": self.sort_order}) from None
        if sort_by is SortKey.DISTANCE and center is None:
            raise ValidationError("Sorting by distance requires a center", details={"sort_by": sort_by.value})

        if not 1 <= self.limit <= settings.max_search_limit:
            raise ValidationError(
                f"limit must be between 1 and {settings.max_search_limit}",
                details={"limit": self.limit},
            )
        if self.offset < 0:
            raise ValidationError("offset must be non-negative", details={"offset": self.offset})

        return replace(
            self,
            keyword=keyword,
            category=category,
            center=center,
            radius_m=radius_m,
            south_west=south_west,
            north_east=north_east,
            sort_by=sort_by,
            sort_order=sort_order,
        )

    def cache_params(self) -> dict[str, object]:
        params: dict[str, object] = {
            # Kept verbatim: Python and SQL case folding disagree outside ASCII.
            "keyword": self.keyword,
            "category": self.category,
            "min_price": self.min_price,
            "max_price": self.max_price,
            "radius_m": self.radius_m,
            "in_stock_only": self.in_stock_only or None,
            "sort_by": self.sort_by,
            "sort_order": self.sort_order,
            "limit": self.limit,
            "offset": self.offset,
        }
        if self.center is not None:
            params["center"] = [self.center.lat, self.center.lng]
        if self.south_west is not None and self.north_east is not None:
            params["bounds"] = [self.south_west.lat, self.south_west.lng, self.north_east.lat, self.north_east.lng]
        return params


def _summary(business: Business) -> BusinessSummary:
    location = None
    if business.lat is not None and business.lng is not None:
        location = Location(lat=business.lat, lng=business.lng)
    return BusinessSummary(
        id=business.id,
        name=business.name,
        verified=business.verified,
        rating=float(business.rating or 0),
        location=location,
    )


class SearchService:
    def __init__(self, store: SpatialStore, cache: Cache, ttl_seconds: int | None = None) -> None:
        self.store = store
        self.cache = cache
        self.ttl_seconds = ttl_seconds or settings.search_cache_ttl_seconds

    def _where_clauses(self, query: SearchQuery) -> list[ColumnElement[bool]]:
        clauses: list[ColumnElement[bool]] = []
        if query.keyword:
            clauses.append(
                Product.name.icontains(query.keyword, autoescape=True)
                | Product.description.icontains(query.keyword, autoescape=True)
            )
        if query.category:
            clauses.append(Product.category == query.category)
        if query.min_price is not None:
            clauses.append(Product.price >= query.min_price)
        if query.max_price is not None:
            clauses.append(Product.price <= query.max_price)
        if query.in_stock_only:
            clauses.append(Product.in_stock)
        if query.center is not None and query.radius_m is not None:
            clauses.append(self.store.radius_predicate(query.center, query.radius_m))
        if query.south_west is not None and query.north_east is not None:
            clauses.append(self.store.bounds_predicate(query.south_west, query.north_east))
        if query.sort_by is SortKey.DISTANCE:
            # Only located businesses have a distance to order by.
            clauses.append(Business.lat.is_not(None))
        return clauses

    @staticmethod
    def _order_by(query: SearchQuery, distance: ColumnElement[float] | None) -> list[ColumnElement]:
        columns = {
            SortKey.PRICE: Product.price,
            SortKey.CREATED_AT: Product.created_at,
            SortKey.NAME: Product.name,
            SortKey.RATING: Business.rating,
            SortKey.DISTANCE: distance,
        }
        primary = columns[query.sort_by]
        primary = primary.asc() if query.sort_order is SortOrder.ASC else primary.desc()
        # Equal sort values fall back to identifiers so pages stay stable.
        if query.sort_by is SortKey.DISTANCE:
            return [primary, Business.id.asc(), Product.id.asc()]
        return [primary, Product.id.asc()]

    @instrument_stage("db")
    def _fetch_page(self, query: SearchQuery, timeout: float | None = None) -> tuple[list[ProductResult], int]:
        clauses = self._where_clauses(query)
        distance = None
        columns: list = [Product, Business]
        if query.center is not None:
            distance = self.store.distance_expression(query.center).label("distance_m")
            columns.append(distance)
        # The window count shares the page's snapshot, so total and rows agree.
        total_col = func.count().over().label("total")
        columns.append(total_col)

        stmt = (
            select(*columns)
            .join(Business, Product.business_id == Business.id)
            .where(*clauses)
            .order_by(*self._order_by(query, distance))
            .limit(query.limit)
            .offset(query.offset)
        )
        count_stmt = (
            select(func.count(Product.id)).join(Business, Product.business_id == Business.id).where(*clauses)
        )

        results: list[ProductResult] = []
        total = 0
        with self.store.session(timeout) as session:
            rows = session.execute(stmt).all()
            if rows:
                total = int(rows[0].total)
            elif query.offset > 0:
                total = int(session.execute(count_stmt).scalar_one())

        for row in rows:
            product: Product = row[0]
            business: Business = row[1]
            distance_km = None
            if distance is not None and row.distance_m is not None:
                distance_km = round(meters_to_km(float(row.distance_m)), 2)
            results.append(
                ProductResult(
                    id=product.id,
                    business_id=product.business_id,
                    name=product.name,
                    description=product.description or "",
                    price=float(product.price),
                    quantity=product.quantity,
                    category=product.category,
                    images=list(product.images or []),
                    in_stock=product.in_stock,
                    created_at=product.created_at,
                    business=_summary(business),
                    distance_km=distance_km,
                )
            )
        return results, total

    def search(self, query: SearchQuery, *, timeout: float | None = None) -> SearchResultPage:
        """Cache-aside product search. ``timeout`` (seconds) bounds the store query."""
        query = query.validated()
        with traced_query("search.products", keyword=query.keyword, sort_by=query.sort_by.value) as trace:
            key = self.cache.compute_key(SEARCH_NAMESPACE, query.cache_params())
            cached = self.cache.get_model(key, SearchResultPage)
            if cached is not None:
                trace.mark_cache_hit()
                return cached

            results, total = self._fetch_page(query, timeout)
            page = SearchResultPage(
                results=results,
                total=total,
                page=PageInfo(
                    limit=query.limit,
                    offset=query.offset,
                    total=total,
                    has_more=query.offset + len(results) < total,
                ),
                sort_by=query.sort_by.value,
                sort_order=query.sort_order.value,
            )
            trace.set_result_count(len(results))
            self.cache.set(key, page.model_dump_json(), self.ttl_seconds)
            return page

    def on_entity_write(self, entity_id: UUID | str, kind: EntityKind | str) -> int:
        """Write-notification hook; call before acknowledging the write.

        Keys are opaque digests, so every search and geolocation entry is dropped.
        """
        try:
            kind = EntityKind(kind)
        except ValueError:
            raise ValidationError("Unknown entity kind", details={"kind": kind}) from None
        deleted = 0
        for pattern in (SEARCH_PATTERN, GEOLOCATION_PATTERN):
            deleted += self.cache.invalidate(pattern)
        logger.info("Invalidated %s cached entries after %s write id=%s", deleted, kind.value, entity_id)
        return deleted
