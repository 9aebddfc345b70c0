"""Resolve an inbound signing link to an access decision and a view state.

Links look like ``/{route}/{contract_id}`` with an optional
``?email=signatory@example.com``. Without the e-mail the link is "open"
(any signatory may pick themselves); with it the flow is scoped to that
signatory. Resolution only reads the store; nothing is mutated here.
"""

import logging
import urllib.parse
from datetime import datetime
from enum import Enum
from typing import Optional, Protocol

from pydantic import BaseModel

from .errors import ContractNotFound
from .lifecycle import ContractLifecycleEngine
from .models import Contract, ContractStatus

logger = logging.getLogger("signflow.resolver")


class ViewState(str, Enum):
    """What the link recipient gets to see."""

    INVALID = "invalid"
    FORBIDDEN = "forbidden"
    UNAVAILABLE = "unavailable"
    OPEN = "open"
    COMPLETE = "complete"
    ALREADY_SIGNED = "already_signed"
    EXPIRED = "expired"
    SIGN = "sign"


VIEW_MESSAGES: dict[ViewState, str] = {
    ViewState.INVALID: "This signing link is invalid.",
    ViewState.FORBIDDEN: "You are not a signatory on this contract.",
    ViewState.UNAVAILABLE: "This contract has not been sent for signature yet.",
    ViewState.OPEN: "Select your name to sign.",
    ViewState.COMPLETE: "This contract has been signed by every party.",
    ViewState.ALREADY_SIGNED: "You have already signed this contract.",
    ViewState.EXPIRED: "This contract has expired and can no longer be signed.",
    ViewState.SIGN: "Review the contract and sign below.",
}


class ContractReader(Protocol):
    def load_contract(self, contract_id: str) -> Contract:
        ...


# ---------------------------------------------------------------------------
# Public projections
# ---------------------------------------------------------------------------

class PublicSignatory(BaseModel):
    name: str
    email: str
    signed: bool
    signed_at: Optional[datetime] = None


class PublicContract(BaseModel):
    """What an unauthenticated signer may see of a contract.

    Signature images, CPFs and locations are never exposed here.
    """

    id: str
    title: str
    file_url: Optional[str] = None
    client_name: Optional[str] = None
    status: ContractStatus
    created_at: datetime
    expires_at: Optional[datetime] = None
    signatories: list[PublicSignatory]

    @classmethod
    def from_contract(cls, contract: Contract, status: ContractStatus) -> "PublicContract":
        return cls(
            id=contract.id,
            title=contract.title,
            file_url=contract.file_url,
            client_name=contract.client_name,
            status=status,
            created_at=contract.created_at,
            expires_at=contract.expires_at,
            signatories=[
                PublicSignatory(
                    name=s.name, email=s.email, signed=s.signed, signed_at=s.signed_at
                )
                for s in contract.signatories
            ],
        )


class LinkResolution(BaseModel):
    """Outcome of resolving a signing link.

    Attributes:
        view: The view state to render.
        contract: Public projection of the contract (None when invalid).
        signatory_index: Position of the scoped signatory, when matched.
        email: The scoped signatory's e-mail as stored on the contract.
        message: User-facing text for the view.
    """

    view: ViewState
    contract: Optional[PublicContract] = None
    signatory_index: Optional[int] = None
    email: Optional[str] = None
    message: str = ""

    @property
    def can_sign(self) -> bool:
        return self.view in (ViewState.SIGN, ViewState.OPEN)


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

class SigningLinkResolver:
    """Decide what a signing-link recipient may see or do.

    Args:
        store: Anything with ``load_contract(contract_id)``.
        engine: Lifecycle engine used for read-time expiry.
    """

    def __init__(
        self,
        store: ContractReader,
        engine: Optional[ContractLifecycleEngine] = None,
    ) -> None:
        self.store = store
        self.engine = engine or ContractLifecycleEngine()

    def resolve(
        self,
        contract_id: str,
        email: Optional[str],
        now: datetime,
    ) -> LinkResolution:
        """Resolve a link.

        Args:
            contract_id: Contract identifier from the link path.
            email: Optional ``?email=`` parameter.
            now: Current time for expiry evaluation.

        Returns:
            A LinkResolution; lookup failures become ``invalid``/``forbidden``
            views rather than exceptions.
        """
        try:
            contract = self.store.load_contract(contract_id)
        except ContractNotFound:
            logger.info("Invalid signing link for %s", (contract_id or "")[:8])
            return self._view(ViewState.INVALID)

        status = self.engine.effective_status(contract, now)
        public = PublicContract.from_contract(contract, status)

        if not email:
            if status == ContractStatus.SIGNED:
                return self._view(ViewState.COMPLETE, public)
            if status == ContractStatus.EXPIRED:
                return self._view(ViewState.EXPIRED, public)
            if status == ContractStatus.DRAFT:
                return self._view(ViewState.UNAVAILABLE, public)
            return self._view(ViewState.OPEN, public)

        idx = contract.signatory_index(email)
        if idx < 0:
            logger.info("Link for %s opened by a non-signatory", contract.id[:8])
            return self._view(ViewState.FORBIDDEN)

        signatory = contract.signatories[idx]
        if signatory.signed:
            view = ViewState.ALREADY_SIGNED
        elif status == ContractStatus.EXPIRED:
            view = ViewState.EXPIRED
        elif status == ContractStatus.DRAFT:
            view = ViewState.UNAVAILABLE
        else:
            view = ViewState.SIGN
        return self._view(view, public, idx, signatory.email)

    @staticmethod
    def _view(
        view: ViewState,
        contract: Optional[PublicContract] = None,
        signatory_index: Optional[int] = None,
        email: Optional[str] = None,
    ) -> LinkResolution:
        return LinkResolution(
            view=view,
            contract=contract,
            signatory_index=signatory_index,
            email=email,
            message=VIEW_MESSAGES[view],
        )


def build_signing_link(
    base_url: str,
    route: str,
    contract_id: str,
    email: Optional[str] = None,
) -> str:
    """Build ``{base_url}/{route}/{contract_id}[?email=...]``."""
    url = f"{base_url.rstrip('/')}/{route.strip('/')}/{contract_id}"
    if email:
        url += "?" + urllib.parse.urlencode({"email": email})
    return url
