"""Assemble and validate a signature event before submission.

The builder is the last local gate: every unmet precondition is reported
at once and nothing is emitted until all of them pass.
"""

import logging
from datetime import date, datetime
from typing import Optional

from .config import SignflowConfig
from .errors import SignatureValidationError
from .models import Location, SignatureEvent, SignatureMethod
from .surface import SignatureSurface, SurfaceMode
from .validators import birth_date_error, is_valid_cpf, normalize_cpf

logger = logging.getLogger("signflow.events")


class SignatureEventBuilder:
    """Build :class:`SignatureEvent` records from signing-form input.

    Args:
        require_cpf: Demand an 11-digit CPF (most contract flows do).
        require_birth_date: Demand a birth date not in the future.
    """

    def __init__(self, require_cpf: bool = True, require_birth_date: bool = True) -> None:
        self.require_cpf = require_cpf
        self.require_birth_date = require_birth_date

    @classmethod
    def from_config(cls, config: SignflowConfig) -> "SignatureEventBuilder":
        return cls(
            require_cpf=config.require_cpf,
            require_birth_date=config.require_birth_date,
        )

    def errors(
        self,
        surface: SignatureSurface,
        cpf: Optional[str],
        birth_date: Optional[date],
        now: datetime,
    ) -> list[str]:
        """Return every user-facing validation message (empty when valid)."""
        messages: list[str] = []
        if not surface.has_content():
            messages.append("Draw or upload your signature first")

        # Optional fields are still checked when the signer fills them in.
        if (self.require_cpf or cpf) and not is_valid_cpf(cpf):
            messages.append("CPF must have exactly 11 digits")

        if self.require_birth_date or birth_date is not None:
            problem = birth_date_error(birth_date, now.date())
            if problem:
                messages.append(problem)
        return messages

    def build(
        self,
        surface: SignatureSurface,
        cpf: Optional[str],
        birth_date: Optional[date],
        location: Optional[Location],
        now: datetime,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        client_name: Optional[str] = None,
    ) -> SignatureEvent:
        """Validate the inputs and emit the event.

        Args:
            surface: The signature surface (must have content).
            cpf: CPF as typed; formatting characters are stripped.
            birth_date: Declared birth date.
            location: Last geolocation result, taken verbatim (may be None).
            now: Submission time; becomes ``signed_at``.
            ip_address: Signer's IP, if known.
            user_agent: Signer's client string, if known.
            client_name: Name typed by the signer, if the form asks for it.

        Returns:
            The validated SignatureEvent.

        Raises:
            SignatureValidationError: With every unmet precondition.
        """
        messages = self.errors(surface, cpf, birth_date, now)
        if messages:
            raise SignatureValidationError(messages)

        method = (
            SignatureMethod.UPLOADED
            if surface.mode == SurfaceMode.UPLOAD
            else SignatureMethod.DRAWN
        )
        event = SignatureEvent(
            method=method,
            signature_image=surface.to_image(),
            cpf=normalize_cpf(cpf) if cpf else None,
            birth_date=birth_date,
            signed_at=now,
            location=location or Location(),
            ip_address=ip_address,
            user_agent=user_agent,
            client_name=client_name,
        )
        logger.debug("Built %s signature event at %s", method.value, now.isoformat())
        return event
