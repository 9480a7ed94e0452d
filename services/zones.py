"""Distance-bucket zone table used to price the distance component of a quote."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple


@dataclass(frozen=True)
class ZoneRule:
    """One distance bucket.

    ``max_distance`` is inclusive and ``None`` means unbounded. ``min_distance``
    is exclusive, except for the first bucket which starts at zero.
    """

    zone: int
    label: str
    min_distance: float
    max_distance: Optional[float]
    surcharge: float

    def contains(self, distance: float) -> bool:
        if distance < 0:
            return False
        if self.min_distance > 0 and distance <= self.min_distance:
            return False
        return self.max_distance is None or distance <= self.max_distance

    @property
    def name(self) -> str:
        return f"Zone {self.zone} ({self.label})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "zone": self.zone,
            "name": self.name,
            "minDistance": self.min_distance,
            "maxDistance": self.max_distance,
            "cost": self.surcharge,
        }


def _build_table(bounds: List[Tuple[Optional[float], float, str]]) -> Tuple[ZoneRule, ...]:
    rules = []
    lower = 0.0
    for index, (upper, surcharge, label) in enumerate(bounds, start=1):
        rules.append(ZoneRule(index, label, lower, upper, surcharge))
        if upper is not None:
            lower = upper
    return tuple(rules)


# Upper bound in miles, surcharge in USD, label.
ZONE_TABLE = _build_table([
    (50.0, 0.00, "Local"),
    (150.0, 2.50, "Regional"),
    (300.0, 5.00, "Regional"),
    (600.0, 7.50, "Regional"),
    (1000.0, 10.00, "National"),
    (1400.0, 12.50, "National"),
    (1800.0, 15.00, "National"),
    (None, 17.50, "Cross-Country"),
])


def find_zone(distance: float) -> ZoneRule:
    """Return the first rule whose inclusive upper bound covers ``distance``."""
    if distance < 0:
        raise ValueError(f"Distance must be non-negative, got {distance}")
    for rule in ZONE_TABLE:
        if rule.max_distance is None or distance <= rule.max_distance:
            return rule
    return ZONE_TABLE[-1]


def zone_cost(distance: float) -> float:
    return find_zone(distance).surcharge


def describe_zones() -> List[Dict[str, Any]]:
    return [rule.to_dict() for rule in ZONE_TABLE]
