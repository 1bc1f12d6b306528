from __future__ import annotations

import sys
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest

# Ensure the backend directory (which contains `discovery`) is importable in tests.
BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from discovery.database import init_schema, make_engine, make_session_factory  # noqa: E402
from discovery.models import Business, Product  # noqa: E402
from discovery.services.cache_service import Cache, MemoryCacheBackend  # noqa: E402
from discovery.services.spatial_store import SpatialStore  # noqa: E402

BASE_TIME = datetime(2026, 1, 5, 9, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def engine():
    engine = make_engine("sqlite+pysqlite://")
    init_schema(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def cache():
    return Cache(MemoryCacheBackend())


@pytest.fixture
def store(session_factory):
    return SpatialStore(session_factory)


@pytest.fixture
def add_business(session_factory):
    def _add(name: str, lat: float | None, lng: float | None, **fields) -> uuid.UUID:
        business = Business(
            id=fields.pop("id", uuid.uuid4()),
            name=name,
            lat=lat,
            lng=lng,
            business_type=fields.pop("business_type", "shop"),
            verified=fields.pop("verified", False),
            rating=fields.pop("rating", 0),
            **fields,
        )
        with session_factory() as session:
            session.add(business)
            session.commit()
        return business.id

    return _add


@pytest.fixture
def add_product(session_factory):
    counter = {"n": 0}

    def _add(business_id: uuid.UUID, name: str, price: float, **fields) -> uuid.UUID:
        counter["n"] += 1
        product = Product(
            id=fields.pop("id", uuid.uuid4()),
            business_id=business_id,
            name=name,
            description=fields.pop("description", ""),
            price=price,
            quantity=fields.pop("quantity", 10),
            category=fields.pop("category", "groceries"),
            created_at=fields.pop("created_at", BASE_TIME + timedelta(minutes=counter["n"])),
            **fields,
        )
        with session_factory() as session:
            session.add(product)
            session.commit()
        return product.id

    return _add
