"""Postal-code reference table and great-circle distance estimation."""

from __future__ import annotations

import csv
import logging
import math
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, Iterable, Iterator, Mapping, Optional, Tuple

from data_paths import resolve_zip_database
from services.validation import UnknownPostalCodeError

LOGGER = logging.getLogger(__name__)

EARTH_RADIUS_MILES = 3959.0
US_ZIP_PATTERN = re.compile(r"^(\d{5})(?:-\d{4})?$")


@dataclass(frozen=True)
class PostalPoint:
    code: str
    latitude: float
    longitude: float
    city: str
    state: str


def haversine_miles(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    delta_phi = math.radians(lat2 - lat1)
    delta_lambda = math.radians(lon2 - lon1)

    a = (
        math.sin(delta_phi / 2) ** 2
        + math.cos(phi1) * math.cos(phi2) * math.sin(delta_lambda / 2) ** 2
    )
    # Floating point noise can push ``a`` a hair past 1 for antipodal points.
    a = min(1.0, max(0.0, a))
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return EARTH_RADIUS_MILES * c


def normalize_postal_code(code: object) -> str:
    """Return the five-digit ZIP for ``12345`` or ``12345-6789`` input."""
    if not isinstance(code, str):
        raise UnknownPostalCodeError(code)
    match = US_ZIP_PATTERN.match(code.strip())
    if not match:
        raise UnknownPostalCodeError(code)
    return match.group(1)


def _iter_rows(path: Path) -> Iterator[Dict[str, str]]:
    with open(path, newline="", encoding="utf-8") as handle:
        yield from csv.DictReader(handle)


def load_postal_points(path: Path) -> Dict[str, PostalPoint]:
    """Parse the ZIP reference CSV into ``{zip: PostalPoint}``.

    Rows outside the US or without usable coordinates are skipped.
    """
    points: Dict[str, PostalPoint] = {}
    skipped = 0
    for row in _iter_rows(path):
        country = (row.get("country") or "").strip().upper()
        code = (row.get("zip") or "").strip()
        if country != "US" or not code:
            skipped += 1
            continue
        try:
            latitude = float(row.get("latitude") or "")
            longitude = float(row.get("longitude") or "")
        except ValueError:
            skipped += 1
            continue
        if math.isnan(latitude) or math.isnan(longitude):
            skipped += 1
            continue
        # Spreadsheet exports drop leading zeros from New England ZIPs.
        code = code.zfill(5)
        points[code] = PostalPoint(
            code=code,
            latitude=latitude,
            longitude=longitude,
            city=(row.get("primary_city") or "").strip(),
            state=(row.get("state") or "").strip(),
        )
    LOGGER.info("Loaded %s US ZIP codes from %s (%s rows skipped)", len(points), path, skipped)
    return points


class PostalDirectory:
    """Read-only lookup over a set of :class:`PostalPoint` records."""

    def __init__(self, points: Mapping[str, PostalPoint] | Iterable[PostalPoint]):
        if isinstance(points, Mapping):
            entries = dict(points)
        else:
            entries = {point.code: point for point in points}
        self._points: Dict[str, PostalPoint] = entries

    @classmethod
    def from_csv(cls, path: Path) -> "PostalDirectory":
        return cls(load_postal_points(Path(path)))

    def lookup(self, code: object) -> PostalPoint:
        normalized = normalize_postal_code(code)
        point = self._points.get(normalized)
        if point is None:
            raise UnknownPostalCodeError(code)
        return point

    def __contains__(self, code: object) -> bool:
        try:
            self.lookup(code)
        except UnknownPostalCodeError:
            return False
        return True

    def __len__(self) -> int:
        return len(self._points)


class DistanceEstimator:
    """Distances from a fixed origin ZIP to destinations in a directory."""

    def __init__(self, directory: PostalDirectory, origin_code: str):
        self.directory = directory
        self._origin = directory.lookup(origin_code)

    @property
    def origin(self) -> PostalPoint:
        return self._origin

    def resolve(self, code: object) -> PostalPoint:
        return self.directory.lookup(code)

    @staticmethod
    def distance_between(a: PostalPoint, b: PostalPoint) -> float:
        return haversine_miles(a.latitude, a.longitude, b.latitude, b.longitude)

    def distance_to(self, code: object) -> Tuple[PostalPoint, float]:
        """Resolve ``code`` and return it with its distance from the origin, in miles."""
        destination = self.resolve(code)
        miles = self.distance_between(self._origin, destination)
        return destination, round(miles, 2)


def build_estimator(origin_code: str, zip_database: Optional[Path] = None) -> DistanceEstimator:
    directory = PostalDirectory.from_csv(resolve_zip_database(zip_database))
    return DistanceEstimator(directory, origin_code)
