"""One signer's pass through the signing flow.

Opening a session starts geolocation right away, in the background. The
signer draws or uploads meanwhile. At submission the location is read,
never awaited: if the fix has not resolved yet the event goes out with an
empty location. Cancelling discards everything; nothing is persisted
until the submitter accepts the event.
"""

import asyncio
import json
import logging
import urllib.error
import urllib.parse
import urllib.request
from datetime import date, datetime
from typing import Optional, Protocol

from .config import SignflowConfig
from .errors import SubmissionError
from .events import SignatureEventBuilder
from .geolocation import GeolocationCapture, LocationResult, PositionSource
from .models import Location, SignatureEvent
from .surface import SignatureSurface

logger = logging.getLogger("signflow.session")


class SignatureSubmitter(Protocol):
    async def submit(self, contract_id: str, email: str, event: SignatureEvent) -> None:
        ...


class HttpSubmitter:
    """Submit signature events to a signflow API.

    Args:
        base_url: API origin, e.g. ``https://sign.example.com``.
        timeout_seconds: HTTP timeout per attempt.
    """

    def __init__(self, base_url: str, timeout_seconds: float = 30.0) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds

    @classmethod
    def from_config(cls, config: SignflowConfig) -> "HttpSubmitter":
        return cls(config.public_base_url, timeout_seconds=config.submission_timeout_seconds)

    async def submit(self, contract_id: str, email: str, event: SignatureEvent) -> None:
        """PUT the event to ``/api/contracts/{id}/sign``.

        Raises:
            SubmissionError: On a non-2xx response or a network failure.
        """
        await asyncio.to_thread(self._put, contract_id, email, event)

    def _put(self, contract_id: str, email: str, event: SignatureEvent) -> None:
        body = event.model_dump(mode="json")
        body["signature_method"] = body.pop("method")
        body["signatoryEmail"] = email
        url = f"{self.base_url}/api/contracts/{urllib.parse.quote(contract_id)}/sign"
        req = urllib.request.Request(
            url,
            data=json.dumps(body).encode("utf-8"),
            headers={"Content-Type": "application/json"},
            method="PUT",
        )
        try:
            with urllib.request.urlopen(req, timeout=self.timeout_seconds) as resp:
                resp.read()
        except urllib.error.HTTPError as exc:
            raise SubmissionError(_error_message(exc), status_code=exc.code) from exc
        except (urllib.error.URLError, OSError) as exc:
            raise SubmissionError(f"Could not reach the signing server: {exc}") from exc


def _error_message(exc: "urllib.error.HTTPError") -> str:
    try:
        payload = json.loads(exc.read().decode("utf-8"))
    except (ValueError, OSError):
        return f"Signing failed (HTTP {exc.code})"
    if isinstance(payload, dict) and payload.get("error"):
        return str(payload["error"])
    return f"Signing failed (HTTP {exc.code})"


class SigningSession:
    """Drive one signatory's signing flow.

    Args:
        contract_id: Contract being signed.
        email: The signatory's e-mail (identity key).
        surface: Signature surface the signer draws or uploads on.
        builder: Event builder holding the form's validation rules.
        capture: Geolocation capture (None skips location entirely).
        submitter: Persists the event (usually :class:`HttpSubmitter`).
        geolocation_timeout_ms: Hard timeout for the position fix.
    """

    def __init__(
        self,
        contract_id: str,
        email: str,
        surface: SignatureSurface,
        builder: SignatureEventBuilder,
        capture: Optional[GeolocationCapture],
        submitter: SignatureSubmitter,
        geolocation_timeout_ms: int = 10000,
    ) -> None:
        self.contract_id = contract_id
        self.email = email
        self.surface = surface
        self.builder = builder
        self.capture = capture
        self.submitter = submitter
        self.geolocation_timeout_ms = geolocation_timeout_ms

        self._location_task: Optional[asyncio.Task] = None
        self.submitted = False
        self.cancelled = False

    @classmethod
    def from_config(
        cls,
        contract_id: str,
        email: str,
        config: SignflowConfig,
        source: Optional[PositionSource] = None,
        submitter: Optional[SignatureSubmitter] = None,
        device_pixel_ratio: float = 1.0,
    ) -> "SigningSession":
        """Assemble a session from configuration.

        Args:
            source: Device position source; None skips geolocation.
            submitter: Defaults to an :class:`HttpSubmitter` on
                ``public_base_url``.
            device_pixel_ratio: Physical pixels per CSS pixel of the canvas.
        """
        return cls(
            contract_id,
            email,
            SignatureSurface.from_config(config, device_pixel_ratio=device_pixel_ratio),
            SignatureEventBuilder.from_config(config),
            GeolocationCapture.from_config(source, config) if source is not None else None,
            submitter or HttpSubmitter.from_config(config),
            geolocation_timeout_ms=config.geolocation_timeout_ms,
        )

    def open(self) -> None:
        """Enter the flow and start geolocation eagerly. Needs a running loop."""
        if self.capture is not None and self._location_task is None:
            self._location_task = asyncio.get_running_loop().create_task(
                self.capture.capture(self.geolocation_timeout_ms)
            )

    def location_result(self) -> Optional[LocationResult]:
        """The geolocation outcome if it has resolved, else None."""
        task = self._location_task
        if task is None or not task.done() or task.cancelled():
            return None
        if task.exception() is not None:
            logger.warning("Geolocation task failed: %s", task.exception())
            return None
        return task.result()

    def location_snapshot(self) -> Location:
        """Current location without waiting; empty when not (yet) known."""
        result = self.location_result()
        if result is None:
            return Location()
        return result.location

    async def submit(
        self,
        cpf: Optional[str],
        birth_date: Optional[date],
        now: datetime,
        client_name: Optional[str] = None,
    ) -> SignatureEvent:
        """Validate, build and submit the signature event.

        Returns:
            The submitted event.

        Raises:
            SignatureValidationError: When local validation fails; nothing
                is sent.
            SubmissionError: When the server rejects or cannot be reached;
                the session stays open for a manual retry.
            RuntimeError: If the session was cancelled or already submitted.
        """
        if self.cancelled or self.submitted:
            raise RuntimeError("Signing session is closed")

        event = self.builder.build(
            self.surface,
            cpf,
            birth_date,
            self.location_snapshot(),
            now,
            client_name=client_name,
        )
        try:
            await self.submitter.submit(self.contract_id, self.email, event)
        except SubmissionError as exc:
            logger.warning("Submission for %s failed: %s", self.contract_id[:8], exc)
            raise

        self.submitted = True
        self._stop_location()
        logger.info("Signature submitted for %s", self.contract_id[:8])
        return event

    def cancel(self) -> None:
        """Abandon the flow, discarding strokes and the pending location."""
        self.cancelled = True
        self._stop_location()
        self.surface.clear()

    def _stop_location(self) -> None:
        if self._location_task is not None and not self._location_task.done():
            self._location_task.cancel()
