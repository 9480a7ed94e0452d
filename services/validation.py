"""Request validation and the error taxonomy for shipping quotes."""

from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Any, Dict, Optional

__all__ = [
    "ShippingError",
    "ValidationError",
    "MAX_PACKAGE_WEIGHT_LBS",
    "UnsupportedRegionError",
    "UnknownPostalCodeError",
    "UpstreamError",
    "ShippingQuoteRequest",
    "validate_us_shipping",
    "parse_quote_request",
]

SUPPORTED_COUNTRY = "US"
MAX_PACKAGE_WEIGHT_LBS = 150


class ShippingError(Exception):
    """Base class for errors raised while producing a shipping quote."""

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(ShippingError):
    """Raised when a request is missing fields or carries malformed values."""


class UnsupportedRegionError(ShippingError):
    """Raised when the destination is outside the supported shipping region."""


class UnknownPostalCodeError(ShippingError, LookupError):
    """Raised when a postal code is malformed or absent from the reference table."""

    def __init__(self, postal_code: Any):
        super().__init__(f"Invalid US ZIP code: {postal_code}")
        self.postal_code = postal_code


class UpstreamError(ShippingError, RuntimeError):
    """Raised when the outbound carrier-rate API cannot produce a rate."""

    status_code = 502


@dataclass(frozen=True)
class ShippingQuoteRequest:
    destination_postal_code: str
    destination_country: str = SUPPORTED_COUNTRY
    weight: Optional[float] = None


def validate_us_shipping(country: Optional[str]) -> bool:
    """Return True when ``country`` names the United States."""
    if not isinstance(country, str):
        return False
    return country.strip().upper() == SUPPORTED_COUNTRY


def _clean_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    if isinstance(value, str):
        return value.strip()
    return ""


def _parse_weight(value: Any) -> Optional[float]:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        raise ValidationError("Weight must be a number")
    try:
        weight = float(value)
    except (TypeError, ValueError):
        raise ValidationError("Weight must be a number") from None
    if math.isnan(weight) or math.isinf(weight):
        raise ValidationError("Weight must be a number")
    if weight <= 0:
        raise ValidationError("Weight must be greater than 0")
    if weight > MAX_PACKAGE_WEIGHT_LBS:
        raise ValidationError(f"Weight must not exceed {MAX_PACKAGE_WEIGHT_LBS} lbs")
    return weight


def parse_quote_request(payload: Optional[Dict[str, Any]]) -> ShippingQuoteRequest:
    """Validate a JSON body and build a :class:`ShippingQuoteRequest`.

    Checks run in order: body shape, required fields, region, weight. The
    first failure is raised and nothing is computed.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Request body must be a JSON object")

    destination_zip = _clean_text(payload.get("destinationZip"))
    destination_country = _clean_text(payload.get("destinationCountry"))
    if not destination_zip or not destination_country:
        raise ValidationError("Missing required fields: destinationZip and destinationCountry")

    if not validate_us_shipping(destination_country):
        raise UnsupportedRegionError("Shipping is currently only available within the United States")

    weight = _parse_weight(payload.get("weight"))

    return ShippingQuoteRequest(
        destination_postal_code=destination_zip,
        destination_country=destination_country.upper(),
        weight=weight,
    )
