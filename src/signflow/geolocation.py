"""Best-effort geolocation capture for signature events.

Location is enrichment, never a precondition: :meth:`GeolocationCapture.capture`
always returns a :class:`LocationResult` and never raises for permission,
timeout or device failures. A failed reverse-geocode lookup only leaves
the address empty.

The device itself is abstracted as a :class:`PositionSource` so the same
capture logic runs against a browser bridge, fixed coordinates reported by
a client, or a test double. Reverse geocoding defaults to OpenStreetMap's
Nominatim endpoint.
"""

import asyncio
import json
import logging
import urllib.parse
import urllib.request
from enum import Enum
from typing import Optional, Protocol

from pydantic import BaseModel, Field

from .config import SignflowConfig
from .models import Location

logger = logging.getLogger("signflow.geolocation")

DEFAULT_TIMEOUT_MS = 10000
DEFAULT_GEOCODER_URL = "https://nominatim.openstreetmap.org/reverse"


# ---------------------------------------------------------------------------
# Position source
# ---------------------------------------------------------------------------

class LocationErrorCode(str, Enum):
    """Why a position could not be obtained."""

    PERMISSION_DENIED = "permission_denied"
    POSITION_UNAVAILABLE = "position_unavailable"
    TIMEOUT = "timeout"
    UNSUPPORTED = "unsupported"


LOCATION_ERROR_MESSAGES: dict[LocationErrorCode, str] = {
    LocationErrorCode.PERMISSION_DENIED: (
        "Location permission was denied. You can sign anyway."
    ),
    LocationErrorCode.POSITION_UNAVAILABLE: (
        "Could not determine your location. You can sign anyway."
    ),
    LocationErrorCode.TIMEOUT: (
        "Locating your device took too long. You can sign anyway."
    ),
    LocationErrorCode.UNSUPPORTED: (
        "Your device does not support location. You can sign anyway."
    ),
}


class PositionOptions(BaseModel):
    """Options for a single position request.

    ``maximum_age_ms=0`` forbids cached fixes.
    """

    enable_high_accuracy: bool = True
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    maximum_age_ms: int = 0


class Position(BaseModel):
    latitude: float
    longitude: float
    accuracy: Optional[float] = None


class PositionError(Exception):
    """Raised by a position source when no fix can be produced."""

    def __init__(self, code: LocationErrorCode, message: str = "") -> None:
        super().__init__(message or code.value)
        self.code = code


class PositionSource(Protocol):
    async def get_current_position(self, options: PositionOptions) -> Position:
        ...


class StaticPositionSource:
    """Position source returning coordinates already reported by a client."""

    def __init__(self, latitude: float, longitude: float) -> None:
        self._position = Position(latitude=latitude, longitude=longitude)

    async def get_current_position(self, options: PositionOptions) -> Position:
        return self._position


# ---------------------------------------------------------------------------
# Reverse geocoding
# ---------------------------------------------------------------------------

class ReverseGeocoder(Protocol):
    def reverse(self, latitude: float, longitude: float) -> Optional[str]:
        ...


class NominatimGeocoder:
    """Reverse geocoder backed by a Nominatim-compatible HTTP endpoint.

    Args:
        url: Reverse endpoint URL.
        timeout_seconds: HTTP timeout.
        user_agent: Identifying User-Agent (required by Nominatim's policy).
    """

    def __init__(
        self,
        url: str = DEFAULT_GEOCODER_URL,
        timeout_seconds: float = 5.0,
        user_agent: str = "signflow/0.1",
    ) -> None:
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.user_agent = user_agent

    @classmethod
    def from_config(cls, config: SignflowConfig) -> "NominatimGeocoder":
        return cls(
            url=config.geocoder_url,
            timeout_seconds=config.geocoder_timeout_seconds,
            user_agent=config.geocoder_user_agent,
        )

    def reverse(self, latitude: float, longitude: float) -> Optional[str]:
        """Resolve coordinates to a display address.

        Returns:
            The display address, or None if the service has no match.

        Raises:
            RuntimeError: If the HTTP request or response parsing fails.
        """
        query = urllib.parse.urlencode(
            {"format": "jsonv2", "lat": f"{latitude:.7f}", "lon": f"{longitude:.7f}"}
        )
        req = urllib.request.Request(
            f"{self.url}?{query}",
            headers={"User-Agent": self.user_agent, "Accept": "application/json"},
            method="GET",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                payload = json.loads(resp.read().decode("utf-8"))
        except Exception as exc:
            raise RuntimeError(f"Reverse geocoding failed: {exc}") from exc

        if not isinstance(payload, dict):
            return None
        return payload.get("display_name") or None


# ---------------------------------------------------------------------------
# Capture
# ---------------------------------------------------------------------------

class LocationResult(BaseModel):
    """Outcome of one capture attempt.

    Attributes:
        location: Captured coordinates/address (all-null on failure).
        error: Failure reason, or None on success.
        message: User-facing explanation of the failure.
    """

    location: Location = Field(default_factory=Location)
    error: Optional[LocationErrorCode] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def failed(cls, code: LocationErrorCode) -> "LocationResult":
        return cls(error=code, message=LOCATION_ERROR_MESSAGES[code])


class GeolocationCapture:
    """Single-attempt position capture with optional reverse geocoding.

    Args:
        source: Device position source (None means unsupported).
        geocoder: Reverse geocoder for the display address.
        geocoder_timeout_seconds: Upper bound for the address lookup.
    """

    def __init__(
        self,
        source: Optional[PositionSource],
        geocoder: Optional[ReverseGeocoder] = None,
        geocoder_timeout_seconds: float = 5.0,
    ) -> None:
        self.source = source
        self.geocoder = geocoder
        self.geocoder_timeout_seconds = geocoder_timeout_seconds

    @classmethod
    def from_config(
        cls, source: Optional[PositionSource], config: SignflowConfig
    ) -> "GeolocationCapture":
        """Capture wired to the configured Nominatim endpoint."""
        return cls(
            source,
            NominatimGeocoder.from_config(config),
            geocoder_timeout_seconds=config.geocoder_timeout_seconds,
        )

    async def capture(self, timeout_ms: int = DEFAULT_TIMEOUT_MS) -> LocationResult:
        """Obtain the signer's coordinates and, if possible, an address.

        Args:
            timeout_ms: Hard timeout for the position fix.

        Returns:
            A LocationResult; failures are reported in ``error``.
        """
        if self.source is None:
            return LocationResult.failed(LocationErrorCode.UNSUPPORTED)

        options = PositionOptions(timeout_ms=timeout_ms)
        try:
            position = await asyncio.wait_for(
                self.source.get_current_position(options), timeout_ms / 1000
            )
        except asyncio.TimeoutError:
            logger.info("Position request timed out after %d ms", timeout_ms)
            return LocationResult.failed(LocationErrorCode.TIMEOUT)
        except PositionError as exc:
            logger.info("Position unavailable: %s", exc.code.value)
            return LocationResult.failed(exc.code)
        except Exception as exc:
            logger.warning("Position source failed: %s", exc)
            return LocationResult.failed(LocationErrorCode.POSITION_UNAVAILABLE)

        address = await self._reverse(position)
        return LocationResult(
            location=Location(
                latitude=position.latitude,
                longitude=position.longitude,
                address=address,
            )
        )

    async def _reverse(self, position: Position) -> Optional[str]:
        if self.geocoder is None:
            return None
        try:
            return await asyncio.wait_for(
                asyncio.to_thread(
                    self.geocoder.reverse, position.latitude, position.longitude
                ),
                self.geocoder_timeout_seconds,
            )
        except Exception as exc:
            logger.warning("Reverse geocoding skipped: %s", exc)
            return None
