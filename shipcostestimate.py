"""Shipping cost estimation for storefront checkout.

Prices a parcel shipped from the warehouse origin ZIP to a US destination:

    total = carrier base ($8.50) + packaging/handling overhead ($15.00)
            + zone surcharge(distance) + weight charge

The zone surcharge comes from the distance-bucket table in
``services.zones``; the distance is the great-circle distance between the
two ZIP centroids. The standard package is 1 lb, so the weight charge only
applies to heavier parcels.

Run as a script for a quick estimate from the command line::

    python shipcostestimate.py --zip 90210
"""
from __future__ import annotations

import argparse
import logging
import math
import sys
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict, List, Optional, Sequence

from services.postal import DistanceEstimator, PostalPoint, build_estimator
from services.rate_api import CarrierRateClient
from services.validation import (
    ShippingError,
    ShippingQuoteRequest,
    UpstreamError,
    parse_quote_request,
)
from services.zones import ZoneRule, find_zone

LOGGER = logging.getLogger(__name__)

DEFAULT_ORIGIN_ZIP = "11549"

CARRIER_BASE_COST = 8.50
FIXED_OVERHEAD = 15.00
FIXED_BASE_COST = CARRIER_BASE_COST + FIXED_OVERHEAD
STANDARD_PACKAGE_WEIGHT_LBS = 1
ADDITIONAL_POUND_RATE = 0.75

RATE_SOURCE_LOCAL = "local"
RATE_SOURCE_CARRIER = "carrier"

ALGORITHM = {
    "type": "Zone-Based Flat Rate",
    "description": "CTotal = 23.50 + CZone(Destination ZIP)",
    "factors": [
        "Carrier base cost ($8.50)",
        "Packaging and handling overhead ($15.00)",
        "Distance zone surcharge ($0.00 - $17.50)",
        "Weight charge ($0.75 per lb above the 1 lb standard package)",
    ],
}

BREAKDOWN_FIELDS = ("base", "distance", "weight", "fuelSurcharge", "operational", "geographic", "seasonal")


def round_money(value: float) -> float:
    """Round to cents, halves away from zero."""
    return float(Decimal(str(value)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def billable_weight(weight: Optional[float]) -> int:
    """Whole pounds charged for a parcel; fractions round up."""
    if weight is None:
        return STANDARD_PACKAGE_WEIGHT_LBS
    return max(STANDARD_PACKAGE_WEIGHT_LBS, math.ceil(weight))


def weight_charge(weight: Optional[float]) -> float:
    extra_pounds = billable_weight(weight) - STANDARD_PACKAGE_WEIGHT_LBS
    return round_money(extra_pounds * ADDITIONAL_POUND_RATE)


@dataclass
class ShippingQuoteResult:
    total_cost: float
    breakdown: Dict[str, float]
    distance_miles: float
    city: str
    state: str
    zone: ZoneRule
    rate_source: str = RATE_SOURCE_LOCAL
    details: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "shippingCost": self.total_cost,
            "breakdown": dict(self.breakdown),
            "distance": self.distance_miles,
            "city": self.city,
            "state": self.state,
            "zone": self.zone.name,
            "zoneCost": self.zone.surcharge,
            "rateSource": self.rate_source,
            "calculationDetails": list(self.details),
        }


def _finalize(breakdown: Dict[str, float]) -> float:
    return round_money(sum(breakdown[name] for name in BREAKDOWN_FIELDS))


class QuoteEngine:
    """Turns validated quote requests into priced results.

    Without a rate client every quote is a pure function of the request and
    the reference tables. With one, the live carrier rate stands in for the
    carrier base and zone surcharge; any upstream failure falls back to the
    local table price.
    """

    def __init__(self, estimator: DistanceEstimator, rate_client: Optional[CarrierRateClient] = None):
        self.estimator = estimator
        self.rate_client = rate_client

    @property
    def origin(self) -> PostalPoint:
        return self.estimator.origin

    def quote(self, request: ShippingQuoteRequest) -> ShippingQuoteResult:
        destination, distance = self.estimator.distance_to(request.destination_postal_code)
        zone = find_zone(distance)

        if self.rate_client is not None:
            try:
                live_rate = self.rate_client.fetch_rate(
                    self.origin, destination, float(billable_weight(request.weight))
                )
            except UpstreamError as exc:
                LOGGER.warning(
                    "Carrier rate unavailable for %s, using local estimate: %s",
                    destination.code,
                    exc,
                )
            else:
                return self._carrier_result(destination, distance, zone, live_rate)

        return self._local_result(destination, distance, zone, request.weight)

    def quote_postal_code(self, postal_code: str, weight: Optional[float] = None) -> ShippingQuoteResult:
        return self.quote(ShippingQuoteRequest(destination_postal_code=postal_code, weight=weight))

    def _local_result(self, destination, distance, zone, weight) -> ShippingQuoteResult:
        breakdown = {
            "base": round_money(CARRIER_BASE_COST),
            "distance": round_money(zone.surcharge),
            "weight": weight_charge(weight),
            "fuelSurcharge": 0.0,
            "operational": round_money(FIXED_OVERHEAD),
            "geographic": 0.0,
            "seasonal": 0.0,
        }
        total = _finalize(breakdown)
        details = [
            f"Distance: {distance:.2f} miles from {self.origin.code} -> {zone.name}",
            f"Base: ${CARRIER_BASE_COST:.2f} carrier + ${FIXED_OVERHEAD:.2f} overhead",
            f"Zone: ${zone.surcharge:.2f}",
        ]
        if breakdown["weight"]:
            details.append(f"Weight: {billable_weight(weight)} lb billable = ${breakdown['weight']:.2f}")
        details.append(f"TOTAL: ${total:.2f}")
        return ShippingQuoteResult(
            total_cost=total,
            breakdown=breakdown,
            distance_miles=distance,
            city=destination.city,
            state=destination.state,
            zone=zone,
            rate_source=RATE_SOURCE_LOCAL,
            details=details,
        )

    def _carrier_result(self, destination, distance, zone, live_rate) -> ShippingQuoteResult:
        breakdown = {name: 0.0 for name in BREAKDOWN_FIELDS}
        breakdown["base"] = round_money(live_rate)
        breakdown["operational"] = round_money(FIXED_OVERHEAD)
        total = _finalize(breakdown)
        return ShippingQuoteResult(
            total_cost=total,
            breakdown=breakdown,
            distance_miles=distance,
            city=destination.city,
            state=destination.state,
            zone=zone,
            rate_source=RATE_SOURCE_CARRIER,
            details=[
                f"Carrier rate: ${breakdown['base']:.2f}",
                f"Overhead: ${FIXED_OVERHEAD:.2f}",
                f"TOTAL: ${total:.2f}",
            ],
        )


def calculate_shipping_cost(destination_zip, destination_country="US", weight=None, engine=None):
    """Validate the inputs and quote them; raises ``ShippingError`` subclasses."""
    if engine is None:
        engine = QuoteEngine(build_estimator(DEFAULT_ORIGIN_ZIP))
    payload: Dict[str, Any] = {
        "destinationZip": destination_zip,
        "destinationCountry": destination_country,
    }
    if weight is not None:
        payload["weight"] = weight
    return engine.quote(parse_quote_request(payload))


def _parse_args(argv: Optional[Sequence[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Estimate storefront shipping cost for a US ZIP code.")
    parser.add_argument("--zip", dest="destination_zip", required=True, help="destination ZIP code, e.g. 90210")
    parser.add_argument("--country", default="US", help="destination country code (only US is supported)")
    parser.add_argument("--weight", type=float, default=None, help="package weight in pounds")
    parser.add_argument("--origin", default=DEFAULT_ORIGIN_ZIP, help="origin ZIP code")
    parser.add_argument("--zip-database", default=None, help="path to the ZIP reference CSV")
    return parser.parse_args(argv)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    try:
        engine = QuoteEngine(build_estimator(args.origin, args.zip_database))
        result = calculate_shipping_cost(args.destination_zip, args.country, args.weight, engine=engine)
    except ShippingError as exc:
        print(f"Error: {exc.message}", file=sys.stderr)
        return 1

    print("\n--- Shipping Cost Estimate ---")
    print(f"  Origin ZIP:      {engine.origin.code}")
    print(f"  Destination:     {args.destination_zip} ({result.city}, {result.state})")
    print(f"  Distance:        {result.distance_miles:.2f} miles")
    print(f"  Zone:            {result.zone.name}")
    for name in BREAKDOWN_FIELDS:
        print(f"  {name:<16} ${result.breakdown[name]:.2f}")
    print(f"  Estimated Cost:  ${result.total_cost:.2f}")
    print("\nDisclaimer: This is a simplified estimate and not an official quote.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
