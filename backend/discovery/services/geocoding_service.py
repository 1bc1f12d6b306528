"""Forward and reverse geocoding through an ordered chain of providers."""

from __future__ import annotations

import logging
from time import perf_counter
from typing import Any, Protocol, Sequence

import httpx

from ..config import Settings, settings
from ..errors import NotFound, ProviderUnavailable, ValidationError
from ..schemas import GeocodeResult, Location, ReverseGeocodeResult
from ..telemetry import timed_stage, traced_query
from .cache_service import (
    GEOCODE_FORWARD_NAMESPACE,
    GEOCODE_REVERSE_NAMESPACE,
    Cache,
    compute_key,
)
from .geometry import GeoPoint, ensure_point, is_valid_coordinate

logger = logging.getLogger(__name__)


class ProviderError(RuntimeError):
    """A single provider call failed; the chain moves on to the next provider."""


class GeocodeProvider(Protocol):
    name: str

    def resolve_forward(self, address: str, timeout: float) -> GeocodeResult | None: ...

    def resolve_reverse(self, point: GeoPoint, timeout: float) -> ReverseGeocodeResult | None: ...


def normalize_address(address: str) -> str:
    return " ".join(address.split()).casefold()


def _request_json(
    client: httpx.Client,
    provider: str,
    url: str,
    params: dict[str, Any],
    timeout: float,
    headers: dict[str, str] | None = None,
) -> Any:
    try:
        response = client.get(url, params=params, headers=headers, timeout=timeout)
    except httpx.TimeoutException as exc:
        raise ProviderError(f"{provider} timed out after {timeout:.2f}s") from exc
    except httpx.HTTPError as exc:
        raise ProviderError(f"{provider} transport error: {exc}") from exc

    if not response.is_success:
        raise ProviderError(f"{provider} returned HTTP {response.status_code}")
    try:
        return response.json()
    except ValueError as exc:
        raise ProviderError(f"{provider} returned a non-JSON payload") from exc


def _coerce_float(value: Any) -> float | None:
    if value is None:
        return None
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _checked_location(provider: str, lat: Any, lng: Any) -> Location:
    lat_f = _coerce_float(lat)
    lng_f = _coerce_float(lng)
    if not is_valid_coordinate(lat_f, lng_f):
        raise ProviderError(f"{provider} returned out-of-range coordinates ({lat}, {lng})")
    return Location(lat=lat_f, lng=lng_f)


def _nominatim_precision(place_rank: Any) -> str:
    try:
        rank = int(place_rank)
    except (TypeError, ValueError):
        return "approximate"
    if rank >= 30:
        return "rooftop"
    if rank >= 26:
        return "street"
    if rank >= 16:
        return "locality"
    if rank >= 8:
        return "region"
    return "approximate"


_GOOGLE_PRECISION = {
    "ROOFTOP": "rooftop",
    "RANGE_INTERPOLATED": "street",
    "GEOMETRIC_CENTER": "locality",
    "APPROXIMATE": "approximate",
}


class NominatimProvider:
    """OpenStreetMap Nominatim, free and keyless."""

    name = "nominatim"

    def __init__(self, client: httpx.Client, base_url: str | None = None, user_agent: str | None = None) -> None:
        self._client = client
        self._base_url = (base_url or settings.nominatim_base_url).rstrip("/")
        self._headers = {"User-Agent": user_agent or settings.nominatim_user_agent}

    def _get(self, path: str, params: dict[str, Any], timeout: float) -> Any:
        return _request_json(
            self._client,
            self.name,
            f"{self._base_url}{path}",
            params,
            timeout,
            headers=self._headers,
        )

    def resolve_forward(self, address: str, timeout: float) -> GeocodeResult | None:
        payload = self._get("/search", {"q": address, "format": "jsonv2", "limit": 1}, timeout)
        if not isinstance(payload, list):
            raise ProviderError(f"{self.name} returned an unexpected payload")
        if not payload:
            return None
        item = payload[0]
        return GeocodeResult(
            address=address,
            location=_checked_location(self.name, item.get("lat"), item.get("lon")),
            formatted_address=item.get("display_name"),
            provider=self.name,
            precision=_nominatim_precision(item.get("place_rank")),
        )

    def resolve_reverse(self, point: GeoPoint, timeout: float) -> ReverseGeocodeResult | None:
        payload = self._get(
            "/reverse",
            {"lat": point.lat, "lon": point.lng, "format": "jsonv2", "addressdetails": 1},
            timeout,
        )
        if not isinstance(payload, dict):
            raise ProviderError(f"{self.name} returned an unexpected payload")
        display_name = payload.get("display_name")
        if payload.get("error") or not display_name:
            return None
        details = payload.get("address") if isinstance(payload.get("address"), dict) else {}
        return ReverseGeocodeResult(
            location=_checked_location(self.name, payload.get("lat", point.lat), payload.get("lon", point.lng)),
            address=display_name,
            city=details.get("city") or details.get("town") or details.get("village") or "",
            country=details.get("country") or "",
            formatted_address=display_name,
            provider=self.name,
            precision=_nominatim_precision(payload.get("place_rank")),
        )


class GoogleGeocodingProvider:
    """Google Maps Geocoding API, used as the paid fallback."""

    name = "google"

    def __init__(self, client: httpx.Client, api_key: str, url: str | None = None) -> None:
        self._client = client
        self._api_key = api_key
        self._url = url or settings.google_geocode_url

    def _first_result(self, params: dict[str, Any], timeout: float) -> dict[str, Any] | None:
        payload = _request_json(self._client, self.name, self._url, {**params, "key": self._api_key}, timeout)
        if not isinstance(payload, dict):
            raise ProviderError(f"{self.name} returned an unexpected payload")
        status = payload.get("status")
        if status == "ZERO_RESULTS":
            return None
        if status != "OK":
            raise ProviderError(f"{self.name} status={status} error={payload.get('error_message')}")
        results = payload.get("results") or []
        return results[0] if results else None

    def resolve_forward(self, address: str, timeout: float) -> GeocodeResult | None:
        result = self._first_result({"address": address}, timeout)
        if result is None:
            return None
        geometry = result.get("geometry") or {}
        location = geometry.get("location") or {}
        return GeocodeResult(
            address=address,
            location=_checked_location(self.name, location.get("lat"), location.get("lng")),
            formatted_address=result.get("formatted_address"),
            provider=self.name,
            precision=_GOOGLE_PRECISION.get(geometry.get("location_type"), "approximate"),
        )

    def resolve_reverse(self, point: GeoPoint, timeout: float) -> ReverseGeocodeResult | None:
        result = self._first_result({"latlng": f"{point.lat},{point.lng}"}, timeout)
        if result is None:
            return None
        city = ""
        country = ""
        for component in result.get("address_components") or []:
            types = component.get("types") or []
            if not city and ("locality" in types or "postal_town" in types):
                city = component.get("long_name", "")
            if "country" in types:
                country = component.get("long_name", "")
        geometry = result.get("geometry") or {}
        location = geometry.get("location") or {"lat": point.lat, "lng": point.lng}
        formatted = result.get("formatted_address") or ""
        if not formatted:
            return None
        return ReverseGeocodeResult(
            location=_checked_location(self.name, location.get("lat"), location.get("lng")),
            address=formatted,
            city=city,
            country=country,
            formatted_address=formatted,
            provider=self.name,
            precision=_GOOGLE_PRECISION.get(geometry.get("location_type"), "approximate"),
        )


class GeocodeChain:
    def __init__(
        self,
        providers: Sequence[GeocodeProvider],
        cache: Cache,
        *,
        provider_timeout: float | None = None,
        ttl_seconds: int | None = None,
        reverse_precision: int | None = None,
    ) -> None:
        if not providers:
            raise ValueError("GeocodeChain needs at least one provider")
        self.providers = list(providers)
        self.cache = cache
        self.provider_timeout = provider_timeout or settings.geocode_timeout_seconds
        self.ttl_seconds = ttl_seconds or settings.geocode_cache_ttl_seconds
        self.reverse_precision = (
            settings.reverse_geocode_precision if reverse_precision is None else reverse_precision
        )

    def _run_chain(self, operation: str, call, subject: str, timeout: float | None):
        deadline = perf_counter() + timeout if timeout is not None else None
        failures: list[str] = []
        answered_empty = False

        for provider in self.providers:
            call_timeout = self.provider_timeout
            if deadline is not None:
                remaining = deadline - perf_counter()
                if remaining <= 0:
                    failures.append("deadline exceeded")
                    break
                call_timeout = min(call_timeout, remaining)

            try:
                with timed_stage("geocode"):
                    result = call(provider, call_timeout)
            except ProviderError as exc:
                logger.warning("%s geocode via %s failed for %r: %s", operation, provider.name, subject, exc)
                failures.append(f"{provider.name}: {exc}")
                continue

            if result is None:
                logger.info("%s geocode via %s found nothing for %r", operation, provider.name, subject)
                answered_empty = True
                continue
            return result

        if answered_empty:
            raise NotFound(f"No {operation} geocode result", details={"query": subject})
        raise ProviderUnavailable("Geocoding service unavailable", details={"failures": failures})

    def forward_geocode(
        self,
        address: str,
        city: str | None = None,
        country: str | None = None,
        *,
        timeout: float | None = None,
    ) -> GeocodeResult:
        parts = [part.strip() for part in (address, city, country) if part and part.strip()]
        full_address = ", ".join(parts)
        normalized = normalize_address(full_address)
        if not normalized:
            raise ValidationError("Address is required")

        with traced_query("geocode.forward", address=normalized) as trace:
            key = compute_key(GEOCODE_FORWARD_NAMESPACE, {"address": normalized})
            cached = self.cache.get_model(key, GeocodeResult)
            if cached is not None:
                trace.mark_cache_hit()
                return cached

            result = self._run_chain(
                "forward",
                lambda provider, call_timeout: provider.resolve_forward(full_address, call_timeout),
                full_address,
                timeout,
            )
            self.cache.set(key, result.model_dump_json(), self.ttl_seconds)
            trace.set_result_count(1)
            return result

    def reverse_geocode(self, point: GeoPoint, *, timeout: float | None = None) -> ReverseGeocodeResult:
        point = ensure_point(point.lat, point.lng)
        with traced_query("geocode.reverse", lat=point.lat, lng=point.lng) as trace:
            key = compute_key(
                GEOCODE_REVERSE_NAMESPACE,
                {"lat": point.lat, "lng": point.lng},
                self.reverse_precision,
            )
            cached = self.cache.get_model(key, ReverseGeocodeResult)
            if cached is not None:
                trace.mark_cache_hit()
                return cached

            result = self._run_chain(
                "reverse",
                lambda provider, call_timeout: provider.resolve_reverse(point, call_timeout),
                f"{point.lat},{point.lng}",
                timeout,
            )
            self.cache.set(key, result.model_dump_json(), self.ttl_seconds)
            trace.set_result_count(1)
            return result


def build_geocode_chain(cache: Cache, client: httpx.Client, config: Settings | None = None) -> GeocodeChain:
    config = config or settings
    providers: list[GeocodeProvider] = [
        NominatimProvider(client, base_url=config.nominatim_base_url, user_agent=config.nominatim_user_agent)
    ]
    if config.google_maps_api_key:
        providers.append(GoogleGeocodingProvider(client, config.google_maps_api_key, config.google_geocode_url))
    return GeocodeChain(
        providers,
        cache,
        provider_timeout=config.geocode_timeout_seconds,
        ttl_seconds=config.geocode_cache_ttl_seconds,
        reverse_precision=config.reverse_geocode_precision,
    )
