from __future__ import annotations

import sys
import uuid
from pathlib import Path

from sqlalchemy import delete

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from discovery.database import get_engine, get_session_factory, init_schema
from discovery.models import Business, Product
from discovery.services.cache_service import GEOLOCATION_PATTERN, SEARCH_PATTERN, build_cache
from discovery.telemetry import configure_logging

NAMESPACE = uuid.UUID("5f0c1a52-7a8e-4d0b-9b1e-2c7d1f6a3e10")

BUSINESSES = [
    {
        "name": "Westlands Fresh Grocers",
        "business_type": "shop",
        "lat": -1.2676,
        "lng": 36.8108,
        "address": "Woodvale Grove",
        "city": "Nairobi",
        "country": "Kenya",
        "verified": True,
        "rating": 4.6,
        "products": [
            ("Pishori Rice 2kg", "Aromatic Mwea pishori rice", 420, 35, "groceries"),
            ("Brown Rice 1kg", "Whole grain rice", 310, 12, "groceries"),
            ("Maize Flour 2kg", "Sifted maize meal", 180, 0, "groceries"),
        ],
    },
    {
        "name": "CBD Mini Mart",
        "business_type": "shop",
        "lat": -1.2841,
        "lng": 36.8233,
        "address": "Moi Avenue",
        "city": "Nairobi",
        "country": "Kenya",
        "verified": False,
        "rating": 3.9,
        "products": [
            ("Basmati Rice 1kg", "Long grain rice", 380, 20, "groceries"),
            ("Rice Cakes", "Crunchy puffed rice snack", 250, 8, "food"),
        ],
    },
    {
        "name": "Kilimani Phone Repair",
        "business_type": "service",
        "lat": -1.2921,
        "lng": 36.7856,
        "address": "Argwings Kodhek Road",
        "city": "Nairobi",
        "country": "Kenya",
        "verified": True,
        "rating": 4.2,
        "products": [
            ("USB-C Cable", "Braided 1m charging cable", 450, 40, "electronics"),
        ],
    },
]


def main() -> None:
    configure_logging()
    engine = get_engine()
    init_schema(engine)
    with get_session_factory()() as session:
        session.execute(delete(Product))
        session.execute(delete(Business))
        for item in BUSINESSES:
            business = Business(
                id=uuid.uuid5(NAMESPACE, item["name"]),
                name=item["name"],
                business_type=item["business_type"],
                lat=item["lat"],
                lng=item["lng"],
                address=item["address"],
                city=item["city"],
                country=item["country"],
                verified=item["verified"],
                rating=item["rating"],
            )
            session.add(business)
            for name, description, price, quantity, category in item["products"]:
                session.add(
                    Product(
                        id=uuid.uuid5(NAMESPACE, f"{item['name']}:{name}"),
                        business_id=business.id,
                        name=name,
                        description=description,
                        price=price,
                        quantity=quantity,
                        category=category,
                    )
                )
        session.commit()

    cache = build_cache()
    try:
        for pattern in (SEARCH_PATTERN, GEOLOCATION_PATTERN):
            cache.invalidate(pattern)
    finally:
        cache.close()
    print(f"Seeded {len(BUSINESSES)} businesses.")


if __name__ == "__main__":
    main()
