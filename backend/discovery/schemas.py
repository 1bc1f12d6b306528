from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field


class Location(BaseModel):
    lat: float = Field(ge=-90, le=90)
    lng: float = Field(ge=-180, le=180)


class BusinessLocation(BaseModel):
    lat: float | None = None
    lng: float | None = None
    address: str | None = None
    city: str | None = None
    country: str | None = None


class DistanceView(BaseModel):
    meters: int
    kilometers: float


class DistanceBreakdown(BaseModel):
    meters: int
    kilometers: float
    miles: float


class SpatialFilterView(BaseModel):
    business_type: str | None = None
    verified: bool | None = None
    min_rating: float | None = None


class Pagination(BaseModel):
    limit: int
    offset: int


class LocatedBusiness(BaseModel):
    id: UUID
    owner_id: UUID | None = None
    name: str
    description: str | None = None
    business_type: str
    location: BusinessLocation
    contact_email: str | None = None
    contact_phone: str | None = None
    verified: bool
    rating: float
    total_ratings: int
    distance: DistanceView | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


class RadiusView(BaseModel):
    meters: float
    kilometers: float


class NearbyResult(BaseModel):
    search_location: Location
    radius: RadiusView
    filters: SpatialFilterView
    businesses: list[LocatedBusiness]
    count: int
    pagination: Pagination


class BoundsView(BaseModel):
    south_west: Location
    north_east: Location
    crosses_antimeridian: bool = False


class BoundsResult(BaseModel):
    bounds: BoundsView
    filters: SpatialFilterView
    businesses: list[LocatedBusiness]
    count: int


class DistanceResult(BaseModel):
    origin: Location
    destination: Location
    distance: DistanceBreakdown


class BusinessSummary(BaseModel):
    id: UUID
    name: str
    verified: bool
    rating: float
    location: Location | None = None


class ProductResult(BaseModel):
    id: UUID
    business_id: UUID
    name: str
    description: str
    price: float
    quantity: int = Field(ge=0)
    category: str
    images: list[str] = Field(default_factory=list)
    in_stock: bool
    created_at: datetime | None = None
    business: BusinessSummary
    distance_km: float | None = None


class PageInfo(BaseModel):
    limit: int
    offset: int
    total: int
    has_more: bool


class SearchResultPage(BaseModel):
    results: list[ProductResult]
    total: int
    page: PageInfo
    sort_by: str
    sort_order: str


class GeocodeResult(BaseModel):
    address: str
    location: Location
    formatted_address: str | None = None
    provider: str
    precision: str


class ReverseGeocodeResult(BaseModel):
    location: Location
    address: str
    city: str = ""
    country: str = ""
    formatted_address: str
    provider: str
    precision: str
