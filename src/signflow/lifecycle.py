"""Contract lifecycle engine: status transitions and signature merging.

States::

    draft -> sent -> pending -> signed
      \\________\\_______\\-----> expired   (advisory, evaluated on read)

The engine is stateless. It takes a contract in, validates the requested
transition, mutates the contract and appends audit entries; persisting the
result is the caller's job. Time is always passed in explicitly so every
transition is deterministic under test.

Signatories are addressed by normalized e-mail. List positions shift when
operators edit the list, so the index is only ever derived from the e-mail.
"""

import logging
from datetime import datetime
from typing import Optional

from .errors import (
    AlreadySigned,
    ContractExpired,
    InvalidTransition,
    SignatoryNotFound,
    SignatureValidationError,
)
from .models import (
    AuditAction,
    AuditEntry,
    Contract,
    ContractChanges,
    ContractStatus,
    Location,
    SignatureEvent,
    Signatory,
)
from .validators import is_valid_email

logger = logging.getLogger("signflow.lifecycle")


class ContractLifecycleEngine:
    """Owns every contract and signatory status transition.

    Stateless: all state lives in the Contract model.
    """

    # ------------------------------------------------------------------
    # Creation and editing
    # ------------------------------------------------------------------

    def create(
        self,
        title: str,
        signatories: list[Signatory],
        now: datetime,
        file_url: Optional[str] = None,
        client_id: Optional[str] = None,
        client_name: Optional[str] = None,
        owner_id: Optional[str] = None,
        expires_at: Optional[datetime] = None,
        metadata: Optional[dict[str, str]] = None,
    ) -> Contract:
        """Create a draft contract.

        Signature fields on the given signatories are ignored: a new
        contract always starts with nobody signed.

        Raises:
            SignatureValidationError: If a signatory e-mail is invalid or
                repeated.
        """
        contract = Contract(
            title=title,
            file_url=file_url,
            client_id=client_id,
            client_name=client_name,
            owner_id=owner_id,
            signatories=[s.reset() for s in self._check_signatories(signatories)],
            status=ContractStatus.DRAFT,
            created_at=now,
            updated_at=now,
            expires_at=expires_at,
            metadata=dict(metadata or {}),
        )
        self._audit(
            contract,
            AuditAction.CREATED,
            now,
            actor_email=owner_id,
            details=f"Contract created: {title}",
        )
        logger.info("Created contract %s (%s)", contract.id[:8], title)
        return contract

    def update(
        self, contract: Contract, changes: ContractChanges, now: datetime
    ) -> Contract:
        """Apply operator edits to a contract that is not fully signed.

        Signatories who already signed must stay on the list; their
        signature records are carried over untouched.

        Raises:
            InvalidTransition: If the contract is signed or an edit would
                drop a signed signatory.
            SignatureValidationError: If the new signatory list is invalid.
        """
        if contract.status == ContractStatus.SIGNED:
            raise InvalidTransition("Cannot edit a fully signed contract")

        fields = changes.model_fields_set
        if "signatories" in fields and changes.signatories is not None:
            contract.signatories = self._merge_signatories(
                contract, changes.signatories
            )
        for name in ("title", "file_url", "client_id", "client_name", "expires_at"):
            if name in fields:
                setattr(contract, name, getattr(changes, name))
        if "metadata" in fields:
            contract.metadata = dict(changes.metadata or {})

        if contract.status == ContractStatus.EXPIRED and not self.is_expired(contract, now):
            # Deadline was extended or cleared.
            contract.status = (
                ContractStatus.PENDING if contract.signed_count else ContractStatus.SENT
            )
        if contract.status != ContractStatus.DRAFT and contract.signed_count:
            # An expired contract stays expired unless the edit completes it.
            if contract.is_complete or contract.status != ContractStatus.EXPIRED:
                self._recompute_status(contract, now)

        contract.updated_at = now
        self._audit(
            contract,
            AuditAction.UPDATED,
            now,
            details="Updated: " + ", ".join(sorted(fields)) if fields else "No changes",
        )
        return contract

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def send(self, contract: Contract, now: datetime) -> Contract:
        """Mark the contract as sent for signature.

        Raises:
            InvalidTransition: If it is already signed, has no signatories
                or its deadline has passed.
        """
        if contract.status == ContractStatus.SIGNED:
            raise InvalidTransition("Contract is already signed")
        if self.is_expired(contract, now):
            raise InvalidTransition("Contract has expired; extend the deadline before sending")
        if not contract.signatories:
            raise InvalidTransition("Add at least one signatory before sending")

        contract.status = ContractStatus.SENT
        contract.sent_at = now
        contract.updated_at = now
        self._audit(
            contract,
            AuditAction.SENT,
            now,
            details=f"Sent to {len(contract.signatories)} signatories",
        )
        logger.info("Sent contract %s", contract.id[:8])
        return contract

    def apply_signature(
        self,
        contract: Contract,
        email: str,
        event: SignatureEvent,
        now: datetime,
    ) -> Contract:
        """Merge a signature event into one signatory and recompute status.

        Only the matched signatory's record is touched, so concurrent
        signatures from different signatories never overwrite each other.

        Args:
            contract: The contract being signed.
            email: Signatory identity key (case-insensitive).
            event: Validated signature event.
            now: Server time; stamps ``signed_at`` on completion.

        Returns:
            The updated contract (``pending`` or ``signed``).

        Raises:
            SignatoryNotFound: If no signatory has this e-mail.
            AlreadySigned: If the signatory or the contract already signed.
            ContractExpired: If the signing deadline has passed.
            InvalidTransition: If the contract was never sent.
        """
        idx = contract.signatory_index(email)
        if idx < 0:
            raise SignatoryNotFound(email)
        signatory = contract.signatories[idx]

        if contract.status == ContractStatus.SIGNED:
            raise AlreadySigned("This contract has already been signed")
        if signatory.signed:
            raise AlreadySigned(f"{signatory.name} has already signed this contract")
        if self.is_expired(contract, now) or contract.status == ContractStatus.EXPIRED:
            raise ContractExpired("This contract has expired")
        if contract.status == ContractStatus.DRAFT:
            raise InvalidTransition("Contract has not been sent for signature")

        signatory.signed = True
        signatory.signed_at = event.signed_at
        signatory.signature_image = event.signature_image
        signatory.signature_method = event.method
        signatory.cpf = event.cpf
        signatory.birth_date = event.birth_date
        signatory.location = Location.model_validate(event.location.model_dump())
        signatory.ip_address = event.ip_address
        signatory.user_agent = event.user_agent

        where = ""
        if event.location.has_coordinates:
            where = f" at {event.location.latitude:.5f},{event.location.longitude:.5f}"
        self._audit(
            contract,
            AuditAction.SIGNED,
            now,
            actor_email=signatory.email,
            actor_name=event.client_name or signatory.name,
            details=f"Signed ({event.method.value}){where}",
            ip_address=event.ip_address,
        )

        self._recompute_status(contract, now)
        contract.updated_at = now
        logger.info(
            "Signatory %d/%d signed contract %s",
            contract.signed_count,
            len(contract.signatories),
            contract.id[:8],
        )
        return contract

    def duplicate(self, contract: Contract, now: datetime) -> Contract:
        """Copy a contract into a fresh draft with every signature cleared."""
        copy = Contract(
            title=f"{contract.title} (copy)",
            file_url=contract.file_url,
            client_id=contract.client_id,
            client_name=contract.client_name,
            owner_id=contract.owner_id,
            signatories=[s.reset() for s in contract.signatories],
            status=ContractStatus.DRAFT,
            created_at=now,
            updated_at=now,
            metadata=dict(contract.metadata),
        )
        self._audit(
            copy,
            AuditAction.DUPLICATED,
            now,
            details=f"Duplicated from {contract.id}",
        )
        return copy

    def mark_expired(self, contract: Contract, now: datetime) -> Contract:
        """Persist the advisory expired state once the deadline has passed.

        Raises:
            InvalidTransition: If the contract is not expired at ``now``.
        """
        if not self.is_expired(contract, now):
            raise InvalidTransition("Contract has not expired")
        if contract.status != ContractStatus.EXPIRED:
            contract.status = ContractStatus.EXPIRED
            contract.updated_at = now
            self._audit(contract, AuditAction.EXPIRED, now, details="Signing deadline passed")
        return contract

    # ------------------------------------------------------------------
    # Read-time queries
    # ------------------------------------------------------------------

    @staticmethod
    def is_expired(contract: Contract, now: datetime) -> bool:
        """Deadline passed and not fully signed. Signed contracts never expire."""
        return (
            contract.expires_at is not None
            and contract.expires_at < now
            and contract.status != ContractStatus.SIGNED
        )

    def effective_status(self, contract: Contract, now: datetime) -> ContractStatus:
        """Stored status with lazy expiry applied."""
        if self.is_expired(contract, now):
            return ContractStatus.EXPIRED
        return contract.status

    def can_sign(self, contract: Contract, now: datetime) -> bool:
        return self.effective_status(contract, now) in (
            ContractStatus.SENT,
            ContractStatus.PENDING,
        )

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _check_signatories(signatories: list[Signatory]) -> list[Signatory]:
        seen: set[str] = set()
        messages: list[str] = []
        for s in signatories:
            if not s.name.strip():
                messages.append(f"Signatory name is required ({s.email})")
            if not is_valid_email(s.email):
                messages.append(f"Invalid signatory e-mail: {s.email}")
            elif s.key in seen:
                messages.append(f"Duplicate signatory e-mail: {s.email}")
            seen.add(s.key)
        if messages:
            raise SignatureValidationError(messages)
        return signatories

    def _merge_signatories(
        self, contract: Contract, incoming: list[Signatory]
    ) -> list[Signatory]:
        self._check_signatories(incoming)
        existing = {s.key: s for s in contract.signatories if s.signed}
        incoming_keys = {s.key for s in incoming}
        for key, s in existing.items():
            if key not in incoming_keys:
                raise InvalidTransition(
                    f"Cannot remove {s.name}: they have already signed"
                )
        return [existing.get(s.key) or s.reset() for s in incoming]

    def _recompute_status(self, contract: Contract, now: datetime) -> None:
        if contract.is_complete:
            contract.status = ContractStatus.SIGNED
            contract.signed_at = now
            self._audit(
                contract,
                AuditAction.COMPLETED,
                now,
                details="All signatories have signed.",
            )
        else:
            contract.status = ContractStatus.PENDING

    @staticmethod
    def _audit(
        contract: Contract,
        action: AuditAction,
        now: datetime,
        actor_email: Optional[str] = None,
        actor_name: Optional[str] = None,
        details: str = "",
        ip_address: Optional[str] = None,
    ) -> AuditEntry:
        entry = AuditEntry(
            contract_id=contract.id,
            action=action,
            actor_email=actor_email,
            actor_name=actor_name,
            timestamp=now,
            details=details,
            ip_address=ip_address,
        )
        contract.audit_trail.append(entry)
        return entry
