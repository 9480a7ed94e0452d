"""Client for the optional outbound carrier-rate API."""

from __future__ import annotations

import logging
from typing import Any, Dict, Mapping, Optional

import requests

from services.postal import PostalPoint
from services.validation import UpstreamError

LOGGER = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


def _address(point: PostalPoint) -> Dict[str, str]:
    return {
        "city": point.city,
        "state": point.state,
        "zip": point.code,
        "country": "US",
    }


class CarrierRateClient:
    """Posts origin, destination and package weight and reads back ``rate.total``."""

    def __init__(
        self,
        url: str,
        api_key: Optional[str] = None,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        session: Optional[requests.Session] = None,
    ):
        if not url:
            raise ValueError("Carrier rate API URL is required")
        self.url = url
        self.api_key = api_key
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> Dict[str, str]:
        headers = {"Content-Type": "application/json"}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"
        return headers

    def fetch_rate(self, origin: PostalPoint, destination: PostalPoint, weight: float) -> float:
        payload = {
            "origin": _address(origin),
            "destination": _address(destination),
            "package": {"weight": weight},
        }
        try:
            response = self.session.post(
                self.url, json=payload, headers=self._headers(), timeout=self.timeout
            )
            response.raise_for_status()
            body: Any = response.json()
        except requests.RequestException as exc:
            raise UpstreamError(f"Carrier rate request failed: {exc}") from exc
        except ValueError as exc:
            raise UpstreamError("Carrier rate response was not valid JSON") from exc

        try:
            total = float(body["rate"]["total"])
        except (KeyError, TypeError, ValueError) as exc:
            raise UpstreamError("Carrier rate response did not include rate.total") from exc
        if total <= 0:
            raise UpstreamError(f"Carrier returned a non-positive rate: {total}")

        LOGGER.debug("Carrier rate %s -> %s (%s lb): %.2f", origin.code, destination.code, weight, total)
        return total


def build_rate_client(env: Mapping[str, str]) -> Optional[CarrierRateClient]:
    """Construct a client from environment settings, or ``None`` when unconfigured."""
    url = (env.get("CARRIER_RATE_API_URL") or "").strip()
    if not url:
        return None
    raw_timeout = env.get("CARRIER_RATE_API_TIMEOUT")
    try:
        timeout = float(raw_timeout) if raw_timeout else DEFAULT_TIMEOUT_SECONDS
    except ValueError:
        LOGGER.warning("Ignoring invalid CARRIER_RATE_API_TIMEOUT=%r", raw_timeout)
        timeout = DEFAULT_TIMEOUT_SECONDS
    return CarrierRateClient(url, api_key=env.get("CARRIER_RATE_API_KEY") or None, timeout=timeout)
