"""Error taxonomy for the signflow signing workflow.

Lifecycle errors (not found, forbidden, expired, already signed) are
terminal: the API renders them as read-only views or ``{"error": ...}``
responses. Validation errors are local and recoverable, the signer fixes
the input and resubmits. Location failures are never raised, see
:class:`signflow.geolocation.LocationResult`.
"""

from typing import Optional


class SigningError(Exception):
    """Base class for every error raised by the signing workflow."""


class ContractNotFound(SigningError, LookupError):
    """No contract exists for the given identifier."""

    def __init__(self, contract_id: str) -> None:
        super().__init__(f"Contract not found: {contract_id}")
        self.contract_id = contract_id


class NotASignatory(SigningError, PermissionError):
    """The e-mail on a scoped signing link is not on the signatory list."""

    def __init__(self, email: str) -> None:
        super().__init__("You are not a signatory on this contract")
        self.email = email


class SignatoryNotFound(SigningError, LookupError):
    """A lifecycle operation named a signatory the contract does not have."""

    def __init__(self, key: str) -> None:
        super().__init__(f"Signatory not found: {key}")
        self.key = key


class AlreadySigned(SigningError):
    """The signatory (or the whole contract) has already signed.

    Informational rather than a failure: revisiting a link after signing
    never re-opens the signing flow.
    """


class ContractExpired(SigningError):
    """The contract's ``expires_at`` has passed before it was fully signed."""


class InvalidTransition(SigningError, ValueError):
    """The requested lifecycle transition is not allowed from this state."""


class StaleContract(SigningError):
    """The stored contract changed since it was read (version mismatch)."""

    def __init__(self, contract_id: str, expected: int, actual: int) -> None:
        super().__init__(
            f"Contract {contract_id} was modified concurrently "
            f"(expected version {expected}, found {actual})"
        )
        self.expected = expected
        self.actual = actual


class SignatureValidationError(SigningError, ValueError):
    """One or more signing inputs failed validation.

    Attributes:
        messages: Every user-facing validation message, in input order.
    """

    def __init__(self, messages: "list[str] | str") -> None:
        if isinstance(messages, str):
            messages = [messages]
        self.messages: list[str] = list(messages)
        super().__init__("; ".join(self.messages))


class SubmissionError(SigningError):
    """Submitting a signature to the persistence endpoint failed.

    The signer may retry manually; nothing is retried automatically.

    Attributes:
        status_code: HTTP status returned by the server, if any.
    """

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class EvidenceError(SigningError):
    """The evidence PDF could not be composed (e.g. unreadable source PDF)."""
