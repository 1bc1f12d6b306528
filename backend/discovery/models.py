import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    func,
)
from sqlalchemy.ext.hybrid import hybrid_property
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from .database import Base
from .errors import ValidationError


class BusinessType(str, Enum):
    SHOP = "shop"
    BUSINESS = "business"
    SERVICE = "service"


class ProductCategory(str, Enum):
    ELECTRONICS = "electronics"
    CLOTHING = "clothing"
    GROCERIES = "groceries"
    FOOD = "food"
    BEVERAGES = "beverages"
    HOME = "home"
    BEAUTY = "beauty"
    HEALTH = "health"
    SPORTS = "sports"
    BOOKS = "books"
    TOYS = "toys"
    AUTOMOTIVE = "automotive"
    OFFICE = "office"
    GARDEN = "garden"
    PETS = "pets"
    OTHER = "other"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _sql_in(values: type[Enum]) -> str:
    return ", ".join(f"'{member.value}'" for member in values)


class Business(Base):
    __tablename__ = "businesses"
    __table_args__ = (
        CheckConstraint(f"business_type IN ({_sql_in(BusinessType)})", name="businesses_type_valid"),
        CheckConstraint("(lat IS NULL) = (lng IS NULL)", name="businesses_point_complete"),
        CheckConstraint("lat IS NULL OR (lat >= -90 AND lat <= 90)", name="businesses_lat_range"),
        CheckConstraint("lng IS NULL OR (lng >= -180 AND lng <= 180)", name="businesses_lng_range"),
        CheckConstraint("rating >= 0 AND rating <= 5", name="businesses_rating_range"),
        Index("ix_businesses_lat_lng", "lat", "lng"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    owner_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    business_type: Mapped[str] = mapped_column(String(32), nullable=False, default=BusinessType.SHOP.value)
    # Both set or both NULL (pending geocoding).
    lat: Mapped[float | None] = mapped_column(Float, nullable=True)
    lng: Mapped[float | None] = mapped_column(Float, nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    city: Mapped[str | None] = mapped_column(String(100), nullable=True)
    country: Mapped[str | None] = mapped_column(String(100), nullable=True)
    contact_email: Mapped[str | None] = mapped_column(String(255), nullable=True)
    contact_phone: Mapped[str | None] = mapped_column(String(50), nullable=True)
    verified: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, index=True)
    rating: Mapped[float] = mapped_column(Numeric(3, 2, asdecimal=False), nullable=False, default=0)
    total_ratings: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now(), onupdate=_utcnow
    )

    products: Mapped[list["Product"]] = relationship(
        back_populates="business",
        cascade="all, delete-orphan",
        passive_deletes=True,
    )

    @validates("lat", "lng")
    def _validate_coordinate(self, key: str, value: float | None) -> float | None:
        if value is None:
            return None
        limit = 90.0 if key == "lat" else 180.0
        if not -limit <= float(value) <= limit:
            raise ValidationError(f"{key} out of range", details={key: value})
        return float(value)

    @validates("business_type")
    def _validate_business_type(self, _key: str, value: str) -> str:
        try:
            return BusinessType(value).value
        except ValueError:
            raise ValidationError("Unknown business type", details={"business_type": value}) from None


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("price >= 0", name="products_price_non_negative"),
        CheckConstraint("quantity >= 0", name="products_quantity_non_negative"),
        CheckConstraint(f"category IN ({_sql_in(ProductCategory)})", name="products_category_valid"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    business_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("businesses.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    price: Mapped[float] = mapped_column(Numeric(10, 2, asdecimal=False), nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    category: Mapped[str] = mapped_column(String(32), nullable=False, index=True)
    images: Mapped[list[str]] = mapped_column(JSON, nullable=False, default=list)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now(), onupdate=_utcnow
    )

    business: Mapped[Business] = relationship(back_populates="products")

    @hybrid_property
    def in_stock(self) -> bool:
        return self.quantity > 0

    @validates("quantity")
    def _validate_quantity(self, _key: str, value: int) -> int:
        if value is None or int(value) < 0:
            raise ValidationError("quantity must be a non-negative integer", details={"quantity": value})
        return int(value)

    @validates("price")
    def _validate_price(self, _key: str, value: float) -> float:
        if value is None or float(value) < 0:
            raise ValidationError("price must be non-negative", details={"price": value})
        return float(value)

    @validates("category")
    def _validate_category(self, _key: str, value: str) -> str:
        try:
            return ProductCategory(value).value
        except ValueError:
            raise ValidationError("Unknown product category", details={"category": value}) from None
