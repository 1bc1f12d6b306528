from __future__ import annotations

import uuid

import pytest

from discovery.errors import ValidationError
from discovery.models import Product
from discovery.services.cache_service import SEARCH_NAMESPACE, Cache, CacheUnavailable
from discovery.services.geometry import GeoPoint, destination_point, haversine_m
from discovery.services.search_service import SearchQuery, SearchService

CENTER = GeoPoint(-1.283, 36.817)


class DownBackend:
    def get(self, key):
        raise ConnectionError("cache down")

    def set(self, key, value, ttl_seconds):
        raise ConnectionError("cache down")

    def delete_pattern(self, pattern):
        raise ConnectionError("cache down")

    def close(self):
        pass


@pytest.fixture
def search(store, cache):
    return SearchService(store, cache)


def _shop_at(add_business, name: str, distance_m: float, bearing: float = 90.0, **fields):
    point = destination_point(CENTER.lat, CENTER.lng, bearing, distance_m)
    return add_business(name, point.lat, point.lng, **fields)


def test_rice_near_center_sorted_by_distance(search, add_business, add_product):
    close = _shop_at(add_business, "Close grocer", 800)
    middle = _shop_at(add_business, "Middle grocer", 2_500, bearing=180)
    far = _shop_at(add_business, "Far grocer", 4_500, bearing=270)
    outside = _shop_at(add_business, "Outside grocer", 7_000)

    add_product(far, "Pishori Rice 2kg", 450)
    add_product(middle, "Basmati RICE", 320)
    add_product(close, "Brown rice", 280)
    add_product(close, "Premium rice", 900)
    add_product(outside, "Cheap rice", 100)
    add_product(close, "Maize flour", 150, description="Not rice-free, just flour")
    add_product(middle, "Rice cooker", 300, category="electronics")

    page = search.search(
        SearchQuery(
            keyword="rice",
            category="groceries",
            max_price=500,
            center=CENTER,
            radius_m=5_000,
            sort_by="distance",
            sort_order="asc",
            limit=2,
        )
    )

    assert len(page.results) == 2
    # Both hits at the closest shop share a distance; their order is by product id.
    assert {result.name for result in page.results} == {"Brown rice", "Maize flour"}
    for result in page.results:
        text = f"{result.name} {result.description}".lower()
        assert "rice" in text
        assert result.price <= 500
        location = result.business.location
        assert haversine_m(CENTER.lat, CENTER.lng, location.lat, location.lng) <= 5_000
    distances = [result.distance_km for result in page.results]
    assert distances == sorted(distances)
    assert page.total == 4
    assert page.page.has_more is True


def test_distance_sort_requires_center(search):
    with pytest.raises(ValidationError):
        search.search(SearchQuery(keyword="rice", sort_by="distance"))


def test_distance_sort_descending(search, add_business, add_product):
    near = _shop_at(add_business, "Near", 500)
    far = _shop_at(add_business, "Far", 3_000)
    add_product(near, "Near beans", 100)
    add_product(far, "Far beans", 100)

    page = search.search(SearchQuery(center=CENTER, radius_m=5_000, sort_by="distance", sort_order="DESC"))

    assert [result.name for result in page.results] == ["Far beans", "Near beans"]
    assert page.sort_order == "desc"


def test_equal_prices_break_ties_by_product_id(search, add_business, add_product):
    shop = _shop_at(add_business, "Shop", 100)
    high = uuid.UUID("ffffffff-ffff-ffff-ffff-000000000000")
    low = uuid.UUID("00000000-0000-0000-0000-000000000001")
    add_product(shop, "Sugar B", 120, id=high)
    add_product(shop, "Sugar A", 120, id=low)
    add_product(shop, "Salt", 60)

    page = search.search(SearchQuery(sort_by="price", sort_order="asc"))

    assert [result.name for result in page.results] == ["Salt", "Sugar A", "Sugar B"]


def test_keyword_match_is_case_insensitive_on_name_and_description(search, add_business, add_product):
    shop = _shop_at(add_business, "Shop", 100)
    add_product(shop, "UGALI Mix", 80)
    add_product(shop, "Flour", 90, description="Great for ugali")
    add_product(shop, "Sugar", 70)

    page = search.search(SearchQuery(keyword="Ugali"))

    assert {result.name for result in page.results} == {"UGALI Mix", "Flour"}


def test_keyword_wildcards_are_literal(search, add_business, add_product):
    shop = _shop_at(add_business, "Shop", 100)
    add_product(shop, "100% juice", 80)
    add_product(shop, "Plain juice", 60)

    page = search.search(SearchQuery(keyword="100%"))

    assert [result.name for result in page.results] == ["100% juice"]


def test_default_sort_is_newest_first(search, add_business, add_product):
    shop = _shop_at(add_business, "Shop", 100)
    add_product(shop, "Older", 10)
    add_product(shop, "Newer", 10)

    page = search.search(SearchQuery())

    assert [result.name for result in page.results] == ["Newer", "Older"]
    assert page.sort_by == "created_at"
    assert page.results[0].distance_km is None


def test_price_range_is_inclusive(search, add_business, add_product):
    shop = _shop_at(add_business, "Shop", 100)
    for price in (99, 100, 150, 200, 201):
        add_product(shop, f"Item {price}", price)

    page = search.search(SearchQuery(min_price=100, max_price=200, sort_by="price", sort_order="asc"))

    assert [result.price for result in page.results] == [100, 150, 200]


@pytest.mark.parametrize(
    "query",
    [
        SearchQuery(min_price=10, max_price=5),
        SearchQuery(min_price=-1),
        SearchQuery(category="spaceships"),
        SearchQuery(radius_m=1_000),
        SearchQuery(center=CENTER, radius_m=10),
        SearchQuery(center=CENTER, radius_m=1_000, south_west=GeoPoint(-2, 36), north_east=GeoPoint(-1, 37)),
        SearchQuery(south_west=GeoPoint(-2, 36)),
        SearchQuery(sort_by="popularity"),
        SearchQuery(sort_order="sideways"),
        SearchQuery(limit=0),
        SearchQuery(limit=101),
        SearchQuery(offset=-1),
    ],
)
def test_invalid_queries_are_rejected(search, query):
    with pytest.raises(ValidationError):
        search.search(query)


def test_pagination_total_counts_whole_result_set(search, add_business, add_product):
    shop = _shop_at(add_business, "Shop", 100)
    for idx in range(5):
        add_product(shop, f"Tea {idx}", 10 + idx)

    first = search.search(SearchQuery(keyword="tea", sort_by="price", sort_order="asc", limit=2))
    last = search.search(SearchQuery(keyword="tea", sort_by="price", sort_order="asc", limit=2, offset=4))
    beyond = search.search(SearchQuery(keyword="tea", sort_by="price", sort_order="asc", limit=2, offset=10))

    assert [result.name for result in first.results] == ["Tea 0", "Tea 1"]
    assert (first.total, first.page.has_more) == (5, True)
    assert [result.name for result in last.results] == ["Tea 4"]
    assert (last.total, last.page.has_more) == (5, False)
    assert beyond.results == []
    assert (beyond.total, beyond.page.has_more) == (5, False)


def test_empty_result_has_zero_total(search):
    page = search.search(SearchQuery(keyword="nothing here"))
    assert page.results == []
    assert page.total == 0
    assert page.page.has_more is False


def test_results_carry_owner_summary(search, add_business, add_product):
    shop = _shop_at(add_business, "Mama Mboga", 1_000, verified=True, rating=4.7)
    add_product(shop, "Sukuma wiki", 30)

    result = search.search(SearchQuery(center=CENTER, radius_m=2_000)).results[0]

    assert result.business.id == shop
    assert result.business.name == "Mama Mboga"
    assert result.business.verified is True
    assert result.business.rating == pytest.approx(4.7)
    assert result.distance_km == pytest.approx(1.0, abs=0.01)


def test_bounds_filter_limits_to_viewport(search, add_business, add_product):
    inside = add_business("Inside", -1.28, 36.82)
    outside = add_business("Outside", -1.9, 37.5)
    add_product(inside, "Milk", 60)
    add_product(outside, "Milk", 55)

    page = search.search(SearchQuery(south_west=GeoPoint(-1.4, 36.7), north_east=GeoPoint(-1.2, 36.9)))

    assert [result.business.name for result in page.results] == ["Inside"]


def test_in_stock_only_hides_sold_out_products(search, add_business, add_product):
    shop = _shop_at(add_business, "Shop", 100)
    add_product(shop, "Bread", 50, quantity=3)
    add_product(shop, "Cake", 300, quantity=0)

    everything = search.search(SearchQuery())
    available = search.search(SearchQuery(in_stock_only=True))

    assert {result.name: result.in_stock for result in everything.results} == {"Bread": True, "Cake": False}
    assert [result.name for result in available.results] == ["Bread"]


def test_stock_change_is_visible_after_write_notification(search, session_factory, add_business, add_product):
    shop = _shop_at(add_business, "Shop", 100)
    product_id = add_product(shop, "Eggs", 15, quantity=5)

    assert search.search(SearchQuery(keyword="eggs")).results[0].in_stock is True

    with session_factory() as session:
        product = session.get(Product, product_id)
        product.quantity = 0
        session.commit()

    # Still the cached page until the write is announced.
    assert search.search(SearchQuery(keyword="eggs")).results[0].in_stock is True

    search.on_entity_write(product_id, "product")
    refreshed = search.search(SearchQuery(keyword="eggs")).results[0]
    assert refreshed.in_stock is False
    assert refreshed.quantity == 0


def test_equivalent_queries_share_a_cache_entry(search, add_business, add_product):
    shop = _shop_at(add_business, "Shop", 100)
    add_product(shop, "Rice", 100)
    search.search(SearchQuery(keyword="rice", max_price=500))

    add_product(shop, "More rice", 110)

    page = search.search(SearchQuery(max_price=500.0, keyword="  rice "))
    assert [result.name for result in page.results] == ["Rice"]


def test_on_entity_write_rejects_unknown_kind(search):
    with pytest.raises(ValidationError):
        search.on_entity_write(uuid.uuid4(), "order")


def test_on_entity_write_fails_loudly_when_cache_is_down(store):
    service = SearchService(store, Cache(DownBackend()))
    with pytest.raises(CacheUnavailable):
        service.on_entity_write(uuid.uuid4(), "business")


def test_search_still_answers_when_cache_is_down(store, add_business, add_product):
    shop = _shop_at(add_business, "Shop", 100)
    add_product(shop, "Rice", 100)
    service = SearchService(store, Cache(DownBackend()))

    page = service.search(SearchQuery(keyword="rice"))

    assert [result.name for result in page.results] == ["Rice"]


def test_distance_sort_leaves_out_unlocated_businesses(search, add_business, add_product):
    located = _shop_at(add_business, "Located", 1_000)
    pending = add_business("Pending", None, None)
    add_product(located, "Beans", 100)
    add_product(pending, "Beans", 90)

    for order in ("asc", "desc"):
        page = search.search(SearchQuery(center=CENTER, sort_by="distance", sort_order=order))
        assert [result.business.name for result in page.results] == ["Located"]
        assert page.total == 1
        assert page.results[0].distance_km is not None


def test_center_without_distance_sort_keeps_unlocated_businesses(search, add_business, add_product):
    located = _shop_at(add_business, "Located", 1_000)
    pending = add_business("Pending", None, None)
    add_product(located, "Beans", 100)
    add_product(pending, "Beans", 90)

    page = search.search(SearchQuery(center=CENTER, sort_by="price", sort_order="asc"))

    assert [(result.business.name, result.distance_km is None) for result in page.results] == [
        ("Pending", True),
        ("Located", False),
    ]


def test_keywords_that_fold_differently_get_separate_cache_entries(search, add_business, add_product):
    shop = _shop_at(add_business, "Shop", 100)
    add_product(shop, "Straße map", 100)
    add_product(shop, "Strasse map", 100)

    sharp_s = search.search(SearchQuery(keyword="ß"))
    double_s = search.search(SearchQuery(keyword="SS"))

    assert [result.name for result in sharp_s.results] == ["Straße map"]
    assert [result.name for result in double_s.results] == ["Strasse map"]
    assert search.cache.compute_key(SEARCH_NAMESPACE, SearchQuery(keyword="ß").validated().cache_params()) != (
        search.cache.compute_key(SEARCH_NAMESPACE, SearchQuery(keyword="SS").validated().cache_params())
    )


def _record_statement_timeouts(monkeypatch, store) -> list[int]:
    seen: list[int] = []
    open_session = store.session

    def session(timeout=None):
        seen.append(store.statement_timeout_ms(timeout))
        return open_session(timeout)

    monkeypatch.setattr(store, "session", session)
    return seen


def test_search_timeout_bounds_the_store_query(monkeypatch, store, cache, add_business, add_product):
    shop = _shop_at(add_business, "Shop", 100)
    add_product(shop, "Rice", 100)
    seen = _record_statement_timeouts(monkeypatch, store)
    service = SearchService(store, cache)

    service.search(SearchQuery(keyword="rice"), timeout=0.75)
    service.search(SearchQuery(keyword="beans"))

    assert seen == [750, 5_000]


def test_search_rejects_non_positive_timeout(search):
    with pytest.raises(ValidationError):
        search.search(SearchQuery(keyword="rice"), timeout=0)


def test_unreadable_cached_page_is_refetched(search, add_business, add_product):
    shop = _shop_at(add_business, "Shop", 100)
    add_product(shop, "Rice", 100)
    query = SearchQuery(keyword="rice")
    key = search.cache.compute_key(SEARCH_NAMESPACE, query.validated().cache_params())
    search.cache.set(key, '{"results": "not a list"', 300)

    page = search.search(query)

    assert [result.name for result in page.results] == ["Rice"]
    assert search.cache.get_model(key, type(page)) == page
