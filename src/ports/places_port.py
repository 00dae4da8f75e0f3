"""Places port — abstract interface for keyword lookups near a coordinate.

The location trigger engine depends on this protocol, never on a specific
maps provider.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


class PlacesError(Exception):
    """Raised when a places lookup fails (as opposed to finding nothing)."""


@dataclass
class Place:
    """Best-matching place for a keyword."""

    id: str
    name: str
    lat: float | None
    lng: float | None
    rating: float | None = None


class PlacesPort(Protocol):
    """Abstract places interface used by core modules."""

    async def find_nearest_by_keyword(
        self, lat: float, lng: float, radius: int, keyword: str,
    ) -> Place | None: ...
