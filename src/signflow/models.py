"""Core data models for signflow contract signing.

A contract carries an ordered list of signatories. Each signatory is
identified by e-mail (case-insensitive); list position is only a derived
lookup because operators can reorder or extend the list while editing.

Signature events are validated here, at the boundary, before anything
reaches the lifecycle engine. Records are persisted as JSON through
pydantic, so the same models serve the store, the API and the CLI.
"""

from datetime import date, datetime, timezone
from enum import Enum
from typing import Annotated, Optional
from uuid import uuid4

from pydantic import AfterValidator, BaseModel, Field, field_validator, model_validator

from .validators import (
    ALLOWED_IMAGE_TYPES,
    is_valid_cpf,
    normalize_cpf,
    normalize_email,
)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _assume_utc(value: datetime) -> datetime:
    """Timestamps without an offset are taken as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


UtcDatetime = Annotated[datetime, AfterValidator(_assume_utc)]


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class ContractStatus(str, Enum):
    """Lifecycle states for a contract."""

    DRAFT = "draft"
    SENT = "sent"
    PENDING = "pending"
    SIGNED = "signed"
    EXPIRED = "expired"


class SignatureMethod(str, Enum):
    """How the signature image was produced."""

    DRAWN = "drawn"
    UPLOADED = "uploaded"


class AuditAction(str, Enum):
    """Actions recorded in the audit trail."""

    CREATED = "created"
    UPDATED = "updated"
    SENT = "sent"
    SIGNED = "signed"
    COMPLETED = "completed"
    DUPLICATED = "duplicated"
    EXPIRED = "expired"
    EVIDENCE_GENERATED = "evidence_generated"
    DELETED = "deleted"


# ---------------------------------------------------------------------------
# Location
# ---------------------------------------------------------------------------

class Location(BaseModel):
    """Where a signature was captured.

    Every field is optional: location is enrichment, never a precondition
    for signing. The all-null location means "not captured".
    """

    latitude: Optional[float] = None
    longitude: Optional[float] = None
    address: Optional[str] = None

    @property
    def is_empty(self) -> bool:
        return self.latitude is None and self.longitude is None and self.address is None

    @property
    def has_coordinates(self) -> bool:
        """Both latitude and longitude are known."""
        return self.latitude is not None and self.longitude is not None


# ---------------------------------------------------------------------------
# Signatory
# ---------------------------------------------------------------------------

class Signatory(BaseModel):
    """A party who must sign the contract.

    Attributes:
        name: Display name.
        email: Identity key within the contract (compared case-insensitively).
        signed: Whether this signatory has signed. Never reverts to False.
        signed_at: Client timestamp of the signature.
        signature_image: PNG/JPEG data URI of the signature.
        signature_method: Drawn on the surface or uploaded as a file.
        cpf: 11-digit national identifier, digits only.
        birth_date: Signer's declared birth date.
        location: Geolocation captured at signing time.
        ip_address: Signer's IP at submission (audit only).
        user_agent: Signer's client string (audit only).
    """

    name: str
    email: str
    signed: bool = False
    signed_at: Optional[UtcDatetime] = None
    signature_image: Optional[str] = None
    signature_method: Optional[SignatureMethod] = None
    cpf: Optional[str] = None
    birth_date: Optional[date] = None
    location: Optional[Location] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @model_validator(mode="after")
    def _signed_requires_signature(self) -> "Signatory":
        if self.signed and (self.signed_at is None or not self.signature_image):
            raise ValueError(
                "A signed signatory must have signed_at and signature_image"
            )
        return self

    @property
    def key(self) -> str:
        """Canonical identity key (normalized e-mail)."""
        return normalize_email(self.email)

    def reset(self) -> "Signatory":
        """Return an unsigned copy with every signature field cleared."""
        return Signatory(name=self.name, email=self.email)


# ---------------------------------------------------------------------------
# Signature event
# ---------------------------------------------------------------------------

class SignatureEvent(BaseModel):
    """The bundle captured at the moment of signing.

    Tagged by ``method`` so drawn and uploaded signatures travel the same
    path but stay distinguishable in the audit trail. Built client-side by
    :class:`signflow.events.SignatureEventBuilder` or parsed from a
    submission body; either way it is validated before the engine sees it.
    """

    method: SignatureMethod = SignatureMethod.DRAWN
    signature_image: str
    cpf: Optional[str] = None
    birth_date: Optional[date] = None
    signed_at: UtcDatetime
    location: Location = Field(default_factory=Location)
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    client_name: Optional[str] = None

    @field_validator("signature_image")
    @classmethod
    def _image_is_data_uri(cls, value: str) -> str:
        value = value.strip()
        head, sep, payload = value.partition(",")
        if not sep or not head.startswith("data:") or ";base64" not in head:
            raise ValueError("signature_image must be a base64 data URI")
        mime = head[len("data:"):].split(";", 1)[0].lower()
        if mime not in ALLOWED_IMAGE_TYPES:
            raise ValueError(f"Unsupported signature image type: {mime}")
        if not payload.strip():
            raise ValueError("No signature provided")
        return value

    @field_validator("cpf")
    @classmethod
    def _cpf_digits(cls, value: Optional[str]) -> Optional[str]:
        if value is None or not value.strip():
            return None
        if not is_valid_cpf(value):
            raise ValueError("CPF must have exactly 11 digits")
        return normalize_cpf(value)


# ---------------------------------------------------------------------------
# Audit trail
# ---------------------------------------------------------------------------

class AuditEntry(BaseModel):
    """Immutable audit log entry for a contract.

    Attributes:
        entry_id: Unique identifier.
        contract_id: Related contract.
        action: What happened.
        actor_email: Who did it (signatory e-mail or operator id).
        actor_name: Human-readable name.
        timestamp: When it happened.
        details: Free-form details about the action.
        ip_address: IP at the time of the action.
    """

    entry_id: str = Field(default_factory=lambda: str(uuid4()))
    contract_id: str
    action: AuditAction
    actor_email: Optional[str] = None
    actor_name: Optional[str] = None
    timestamp: UtcDatetime = Field(default_factory=_utcnow)
    details: str = ""
    ip_address: Optional[str] = None


# ---------------------------------------------------------------------------
# Contract (the main entity)
# ---------------------------------------------------------------------------

class Contract(BaseModel):
    """A contract in the signing workflow.

    Attributes:
        id: Unique identifier, also the path segment of signing links.
        title: Human-readable title.
        file_url: Reference to the source document (URL or stored path).
        client_id: CRM client this contract belongs to.
        client_name: Display name of the client.
        owner_id: Operator/tenant that owns the contract.
        signatories: Ordered parties who must sign.
        status: Stored lifecycle status (expiry is applied on read).
        sent_at: When the contract was last sent for signature.
        signed_at: When the last signatory signed.
        created_at: Creation timestamp.
        updated_at: Last modification timestamp.
        expires_at: Signing deadline, advisory.
        version: Optimistic concurrency counter, bumped by the store.
        audit_trail: Chronological event log.
        metadata: Arbitrary key-value metadata.
    """

    id: str = Field(default_factory=lambda: str(uuid4()))
    title: str
    file_url: Optional[str] = None
    client_id: Optional[str] = None
    client_name: Optional[str] = None
    owner_id: Optional[str] = None
    signatories: list[Signatory] = Field(default_factory=list)
    status: ContractStatus = ContractStatus.DRAFT
    sent_at: Optional[UtcDatetime] = None
    signed_at: Optional[UtcDatetime] = None
    created_at: UtcDatetime = Field(default_factory=_utcnow)
    updated_at: Optional[UtcDatetime] = None
    expires_at: Optional[UtcDatetime] = None
    version: int = 0
    audit_trail: list[AuditEntry] = Field(default_factory=list)
    metadata: dict[str, str] = Field(default_factory=dict)

    @property
    def is_complete(self) -> bool:
        """Every signatory has signed (and there is at least one)."""
        return bool(self.signatories) and all(s.signed for s in self.signatories)

    @property
    def pending_signatories(self) -> list[Signatory]:
        """Signatories who haven't signed yet."""
        return [s for s in self.signatories if not s.signed]

    @property
    def signed_count(self) -> int:
        return sum(1 for s in self.signatories if s.signed)

    def signatory_index(self, email: str) -> int:
        """Position of the signatory with this e-mail, or -1."""
        key = normalize_email(email)
        for i, s in enumerate(self.signatories):
            if s.key == key:
                return i
        return -1

    def find_signatory(self, email: str) -> Optional[Signatory]:
        idx = self.signatory_index(email)
        return self.signatories[idx] if idx >= 0 else None


class ContractChanges(BaseModel):
    """Operator edits to a contract. Only fields explicitly set are applied,
    so ``expires_at=None`` clears the deadline while omitting it keeps it."""

    title: Optional[str] = None
    file_url: Optional[str] = None
    client_id: Optional[str] = None
    client_name: Optional[str] = None
    signatories: Optional[list[Signatory]] = None
    expires_at: Optional[UtcDatetime] = None
    metadata: Optional[dict[str, str]] = None
