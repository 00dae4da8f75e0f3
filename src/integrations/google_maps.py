"""Google Maps Places integration — nearest place for a keyword.

Implements PlacesPort with the legacy Places Nearby Search endpoint:
1. rankby=distance around the coordinate (no radius allowed with rankby).
   A transport failure here is logged and treated as "no results".
2. If nothing came back, a radius-bounded search. Failures here raise
   PlacesError.

The first returned result is the best match.
"""

from __future__ import annotations

import logging

import httpx

from src.config import ConfigurationError
from src.ports.places_port import Place, PlacesError

logger = logging.getLogger(__name__)

_NEARBY_SEARCH_URL = "https://maps.googleapis.com/maps/api/place/nearbysearch/json"
_TIMEOUT_SECONDS = 10
_MAX_KEYWORD_CHARS = 64
_DEFAULT_RADIUS = 500


def _normalize_place(result: dict) -> Place | None:
    if not isinstance(result, dict) or not result.get("place_id"):
        return None
    location = (result.get("geometry") or {}).get("location") or {}
    return Place(
        id=result["place_id"],
        name=result.get("name", ""),
        lat=location.get("lat"),
        lng=location.get("lng"),
        rating=result.get("rating"),
    )


def _results(data: object) -> list[dict]:
    if not isinstance(data, dict):
        return []
    results = data.get("results")
    return results if isinstance(results, list) else []


class GooglePlacesClient:
    """Google Places implementation of PlacesPort."""

    def __init__(self, api_key: str | None = None, timeout: float = _TIMEOUT_SECONDS) -> None:
        if api_key is None:
            from src.config import settings
            api_key = settings.GOOGLE_MAPS_API_KEY
        self._api_key = api_key
        self._timeout = timeout

    async def find_nearest_by_keyword(
        self, lat: float, lng: float, radius: int, keyword: str,
    ) -> Place | None:
        if not self._api_key:
            raise ConfigurationError("GOOGLE_MAPS_API_KEY not configured")

        kw = str(keyword or "")[:_MAX_KEYWORD_CHARS]
        base_params = {"key": self._api_key, "location": f"{lat},{lng}", "keyword": kw}

        async with httpx.AsyncClient(timeout=self._timeout) as client:
            results: list[dict] = []
            try:
                logger.debug("Places rankby=distance lookup for '%s' at %s,%s", kw, lat, lng)
                resp = await client.get(_NEARBY_SEARCH_URL, params={**base_params, "rankby": "distance"})
                resp.raise_for_status()
                results = _results(resp.json())
            except (httpx.HTTPError, ValueError) as exc:
                logger.warning("Places distance lookup failed, falling back to radius: %s", exc)

            if not results:
                logger.debug("Places radius lookup for '%s' (radius=%s)", kw, radius)
                try:
                    resp = await client.get(
                        _NEARBY_SEARCH_URL,
                        params={**base_params, "radius": str(radius or _DEFAULT_RADIUS)},
                    )
                    resp.raise_for_status()
                    results = _results(resp.json())
                except httpx.HTTPStatusError as exc:
                    raise PlacesError(f"Places error {exc.response.status_code}") from exc
                except (httpx.HTTPError, ValueError) as exc:
                    raise PlacesError(f"Places request failed: {exc}") from exc

        logger.info("Places lookup for '%s': %d results", kw, len(results))
        for result in results:
            place = _normalize_place(result)
            if place is not None:
                return place
        return None
