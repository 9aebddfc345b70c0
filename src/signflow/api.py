"""signflow REST API: FastAPI server for contract signing.

Two audiences share one app. Signers use the public routes (fetch a
contract for signing, submit a signature, resolve a signing link);
operators use the CRUD routes under ``/api/contracts``. Every workflow
error comes back as ``{"error": "..."}`` with a status matching its kind.
"""

import logging
from datetime import date, datetime, timezone
from pathlib import Path
from typing import Any, Optional

from fastapi import Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response
from pydantic import BaseModel, Field, ValidationError, model_validator

from . import __version__
from .config import SignflowConfig
from .errors import (
    AlreadySigned,
    ContractExpired,
    ContractNotFound,
    EvidenceError,
    InvalidTransition,
    NotASignatory,
    SignatoryNotFound,
    SignatureValidationError,
    SigningError,
    StaleContract,
)
from .evidence import EvidenceGenerator
from .lifecycle import ContractLifecycleEngine
from .models import (
    AuditAction,
    AuditEntry,
    Contract,
    ContractChanges,
    ContractStatus,
    Location,
    SignatureEvent,
    SignatureMethod,
    Signatory,
    UtcDatetime,
)
from .resolver import LinkResolution, PublicContract, SigningLinkResolver, build_signing_link
from .store import ContractStore
from .surface import decode_data_uri, image_has_ink
from .validators import birth_date_error, validate_image_upload, validate_pdf_upload

logger = logging.getLogger("signflow.api")

app = FastAPI(
    title="signflow",
    description="Contract signing: drawn or uploaded signatures, geolocation, evidence PDFs.",
    version=__version__,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

_store: Optional[ContractStore] = None
_config: Optional[SignflowConfig] = None
_engine = ContractLifecycleEngine()

ERROR_STATUS: dict[type, int] = {
    ContractNotFound: 404,
    SignatoryNotFound: 404,
    NotASignatory: 403,
    AlreadySigned: 409,
    ContractExpired: 410,
    SignatureValidationError: 400,
    InvalidTransition: 409,
    StaleContract: 409,
    EvidenceError: 422,
}


def configure(data_dir: Optional[Path] = None) -> None:
    """Point the app at a data directory (used by ``signflow serve``)."""
    global _store, _config
    _store = ContractStore(data_dir)
    _config = SignflowConfig.load(_store.base)


# ---------------------------------------------------------------------------
# Dependencies
# ---------------------------------------------------------------------------

def get_store() -> ContractStore:
    global _store
    if _store is None:
        _store = ContractStore()
    return _store


def get_config() -> SignflowConfig:
    global _config
    if _config is None:
        _config = SignflowConfig.load(get_store().base)
    return _config


def get_clock() -> datetime:
    return datetime.now(timezone.utc)


# ---------------------------------------------------------------------------
# Error handling
# ---------------------------------------------------------------------------

@app.exception_handler(SigningError)
async def signing_error_handler(request: Request, exc: SigningError) -> JSONResponse:
    status = next(
        (ERROR_STATUS[cls] for cls in type(exc).__mro__ if cls in ERROR_STATUS), 400
    )
    return JSONResponse(status_code=status, content={"error": str(exc)})


@app.exception_handler(RequestValidationError)
async def request_validation_handler(
    request: Request, exc: RequestValidationError
) -> JSONResponse:
    return JSONResponse(
        status_code=400, content={"error": "; ".join(_messages(exc.errors()))}
    )


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"error": str(exc.detail)})


def _messages(errors: list[dict]) -> list[str]:
    out = []
    for err in errors:
        msg = str(err.get("msg", "Invalid input"))
        out.append(msg.removeprefix("Value error, "))
    return out


# ---------------------------------------------------------------------------
# Request / response models
# ---------------------------------------------------------------------------

class SignatoryIn(BaseModel):
    name: str
    email: str


class CreateContractRequest(BaseModel):
    """Request body for creating a contract."""

    title: str
    signatories: list[SignatoryIn] = []
    file_url: Optional[str] = None
    client_id: Optional[str] = None
    client_name: Optional[str] = None
    owner_id: Optional[str] = None
    expires_at: Optional[UtcDatetime] = None
    metadata: dict[str, str] = {}


class SignSubmission(BaseModel):
    """Request body for submitting a signature.

    Accepts the flat form and the nested ``signatureData`` form
    (``signatureImage``, ``birthDate``, ``signedAt``) sent by older clients.
    """

    signatory_email: Optional[str] = Field(None, alias="signatoryEmail")
    client_name: Optional[str] = None
    cpf: Optional[str] = None
    birth_date: Optional[date] = None
    signature_image: str = ""
    signature_method: SignatureMethod = SignatureMethod.DRAWN
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    location: Optional[Location] = None
    signed_at: Optional[UtcDatetime] = None

    model_config = {"populate_by_name": True}

    @model_validator(mode="before")
    @classmethod
    def _flatten_signature_data(cls, data: Any) -> Any:
        if not isinstance(data, dict) or not isinstance(data.get("signatureData"), dict):
            return data
        nested = data["signatureData"]
        flat = {k: v for k, v in data.items() if k != "signatureData"}
        for src, dst in (
            ("signatureImage", "signature_image"),
            ("birthDate", "birth_date"),
            ("signedAt", "signed_at"),
            ("cpf", "cpf"),
            ("location", "location"),
        ):
            if src in nested:
                flat.setdefault(dst, nested[src])
        return flat


class LinkResponse(BaseModel):
    url: str
    email: Optional[str] = None


# ---------------------------------------------------------------------------
# Public signing endpoints
# ---------------------------------------------------------------------------

@app.get("/api/contracts/{contract_id}/sign", response_model=PublicContract)
async def get_contract_for_signing(
    contract_id: str,
    store: ContractStore = Depends(get_store),
    now: datetime = Depends(get_clock),
) -> PublicContract:
    """Fetch what a signer needs to render the signing page."""
    contract = store.load_contract(contract_id)
    return PublicContract.from_contract(contract, _engine.effective_status(contract, now))


@app.api_route("/api/contracts/{contract_id}/sign", methods=["PUT", "POST"])
async def submit_signature(
    contract_id: str,
    req: SignSubmission,
    request: Request,
    store: ContractStore = Depends(get_store),
    config: SignflowConfig = Depends(get_config),
    now: datetime = Depends(get_clock),
) -> dict:
    """Record one signatory's signature.

    The contract moves to ``pending``, or to ``signed`` once the last
    signatory signs. A late attempt on an expired contract persists the
    ``expired`` status and answers 410.
    """
    contract = store.load_contract(contract_id)
    email = _submission_email(contract, req.signatory_email)
    event = _build_event(req, request, config, now)

    try:
        store.update_contract(
            contract_id, lambda c: _engine.apply_signature(c, email, event, now)
        )
    except ContractExpired:
        current = store.load_contract(contract_id)
        if current.status != ContractStatus.EXPIRED and _engine.is_expired(current, now):
            store.update_contract(contract_id, lambda c: _engine.mark_expired(c, now))
        raise
    return {}


def _submission_email(contract: Contract, email: Optional[str]) -> str:
    if email:
        return email
    pending = contract.pending_signatories
    if len(pending) == 1:
        return pending[0].email
    if contract.is_complete:
        raise AlreadySigned("This contract has already been signed")
    raise SignatureValidationError("signatoryEmail is required")


def _build_event(
    req: SignSubmission,
    request: Request,
    config: SignflowConfig,
    now: datetime,
) -> SignatureEvent:
    messages: list[str] = []
    image = req.signature_image.strip()
    if not image:
        messages.append("No signature provided")
    else:
        try:
            mime, data = decode_data_uri(image)
        except ValueError:
            messages.append("Invalid signature image")
        else:
            try:
                validate_image_upload(len(data), mime, config.max_signature_image_bytes)
                if not image_has_ink(data):
                    messages.append("No signature provided")
            except SignatureValidationError as exc:
                messages.extend(exc.messages)
            except ValueError:
                messages.append("Invalid signature image")

    if config.require_cpf and not (req.cpf or "").strip():
        messages.append("CPF must have exactly 11 digits")
    if config.require_birth_date or req.birth_date is not None:
        problem = birth_date_error(req.birth_date, now.date())
        if problem:
            messages.append(problem)
    if messages:
        raise SignatureValidationError(messages)

    try:
        return SignatureEvent(
            method=req.signature_method,
            signature_image=image,
            cpf=req.cpf,
            birth_date=req.birth_date,
            signed_at=req.signed_at or now,
            location=req.location or Location(),
            ip_address=req.ip_address or (request.client.host if request.client else None),
            user_agent=req.user_agent or request.headers.get("user-agent"),
            client_name=req.client_name,
        )
    except ValidationError as exc:
        raise SignatureValidationError(_messages(exc.errors())) from exc


# ---------------------------------------------------------------------------
# Contract endpoints (operator)
# ---------------------------------------------------------------------------

@app.post("/api/contracts", response_model=Contract, status_code=201)
async def create_contract(
    req: CreateContractRequest,
    store: ContractStore = Depends(get_store),
    now: datetime = Depends(get_clock),
) -> Contract:
    """Create a draft contract."""
    contract = _engine.create(
        title=req.title,
        signatories=[Signatory(name=s.name, email=s.email) for s in req.signatories],
        now=now,
        file_url=req.file_url,
        client_id=req.client_id,
        client_name=req.client_name,
        owner_id=req.owner_id,
        expires_at=req.expires_at,
        metadata=req.metadata,
    )
    return store.save_contract(contract)


@app.get("/api/contracts", response_model=list[Contract])
async def list_contracts(
    status: Optional[str] = Query(None, description="Filter by stored status"),
    client_id: Optional[str] = Query(None, description="Filter by client"),
    store: ContractStore = Depends(get_store),
) -> list[Contract]:
    """List contracts, newest first."""
    try:
        status_filter = ContractStatus(status) if status else None
    except ValueError:
        raise SignatureValidationError(f"Unknown status: {status}")
    return store.list_contracts(status=status_filter, client_id=client_id)


@app.get("/api/contracts/{contract_id}", response_model=Contract)
async def get_contract(
    contract_id: str,
    store: ContractStore = Depends(get_store),
    now: datetime = Depends(get_clock),
) -> Contract:
    """Get a contract with its stored status replaced by the effective one."""
    contract = store.load_contract(contract_id)
    contract.status = _engine.effective_status(contract, now)
    return contract


@app.put("/api/contracts/{contract_id}", response_model=Contract)
async def update_contract(
    contract_id: str,
    changes: ContractChanges,
    store: ContractStore = Depends(get_store),
    now: datetime = Depends(get_clock),
) -> Contract:
    """Edit title, file, client, expiry or signatories."""
    return store.update_contract(contract_id, lambda c: _engine.update(c, changes, now))


@app.delete("/api/contracts/{contract_id}", status_code=204)
async def delete_contract(
    contract_id: str,
    store: ContractStore = Depends(get_store),
    now: datetime = Depends(get_clock),
) -> Response:
    """Delete a contract and its files. Irreversible."""
    if not store.delete_contract(contract_id):
        raise ContractNotFound(contract_id)
    store.append_audit(
        AuditEntry(contract_id=contract_id, action=AuditAction.DELETED, timestamp=now)
    )
    return Response(status_code=204)


@app.post("/api/contracts/{contract_id}/send", response_model=Contract)
async def send_contract(
    contract_id: str,
    store: ContractStore = Depends(get_store),
    now: datetime = Depends(get_clock),
) -> Contract:
    """Mark a contract as sent for signature."""
    return store.update_contract(contract_id, lambda c: _engine.send(c, now))


@app.post("/api/contracts/{contract_id}/duplicate", response_model=Contract, status_code=201)
async def duplicate_contract(
    contract_id: str,
    store: ContractStore = Depends(get_store),
    now: datetime = Depends(get_clock),
) -> Contract:
    """Copy a contract into a fresh draft."""
    source = store.load_contract(contract_id)
    copy = _engine.duplicate(source, now)
    store.save_contract(copy)
    pdf = store.get_source(contract_id)
    if pdf is not None:
        store.save_source(copy.id, pdf)
    return copy


@app.post("/api/contracts/{contract_id}/upload", response_model=Contract)
async def upload_pdf(
    contract_id: str,
    file: UploadFile = File(...),
    store: ContractStore = Depends(get_store),
    config: SignflowConfig = Depends(get_config),
    now: datetime = Depends(get_clock),
) -> Contract:
    """Attach the source PDF to a contract."""
    store.load_contract(contract_id)
    pdf_data = await file.read()
    validate_pdf_upload(
        len(pdf_data), file.content_type or "", config.max_source_pdf_bytes
    )
    if not pdf_data.startswith(b"%PDF-"):
        raise SignatureValidationError("Only PDF files are allowed.")

    changes = ContractChanges(file_url=f"/api/contracts/{contract_id}/source")
    contract = store.update_contract(contract_id, lambda c: _engine.update(c, changes, now))
    store.save_source(contract_id, pdf_data)
    return contract


@app.get("/api/contracts/{contract_id}/source")
async def download_source(
    contract_id: str,
    store: ContractStore = Depends(get_store),
) -> Response:
    """Download the source PDF."""
    pdf_data = store.get_source(contract_id)
    if pdf_data is None:
        raise HTTPException(status_code=404, detail="No PDF attached")
    return Response(content=pdf_data, media_type="application/pdf")


@app.get("/api/contracts/{contract_id}/audit", response_model=list[AuditEntry])
async def get_audit_trail(
    contract_id: str,
    store: ContractStore = Depends(get_store),
) -> list[AuditEntry]:
    """Get the audit trail for a contract."""
    return store.get_audit_trail(contract_id)


@app.get("/api/contracts/{contract_id}/link", response_model=LinkResponse)
async def get_signing_link(
    contract_id: str,
    email: Optional[str] = Query(None),
    store: ContractStore = Depends(get_store),
    config: SignflowConfig = Depends(get_config),
) -> LinkResponse:
    """Build the signing link, open or scoped to one signatory."""
    contract = store.load_contract(contract_id)
    if email:
        signatory = contract.find_signatory(email)
        if signatory is None:
            raise NotASignatory(email)
        email = signatory.email
    url = build_signing_link(
        config.public_base_url, config.signing_route, contract.id, email
    )
    return LinkResponse(url=url, email=email)


@app.get("/api/contracts/{contract_id}/evidence")
async def get_evidence(
    contract_id: str,
    store: ContractStore = Depends(get_store),
    now: datetime = Depends(get_clock),
) -> Response:
    """Download the evidence PDF of a fully signed contract."""
    contract = store.load_contract(contract_id)
    bundle = EvidenceGenerator(store).generate(contract, now=now)
    return Response(
        content=bundle.pdf,
        media_type="application/pdf",
        headers={
            "Content-Disposition": f'attachment; filename="contract-{contract.id[:8]}-signed.pdf"',
            "X-Verification-Code": bundle.verification_code,
            "X-Evidence-Digest": bundle.digest,
        },
    )


# ---------------------------------------------------------------------------
# Health
# ---------------------------------------------------------------------------

@app.get("/api/health")
async def health() -> dict:
    """Health check."""
    return {
        "status": "ok",
        "service": "signflow",
        "version": __version__,
    }


# ---------------------------------------------------------------------------
# Signing links (registered last: the path is a catch-all)
# ---------------------------------------------------------------------------

@app.get("/{route}/{contract_id}", response_model=LinkResolution)
async def resolve_signing_link(
    route: str,
    contract_id: str,
    email: Optional[str] = Query(None),
    store: ContractStore = Depends(get_store),
    config: SignflowConfig = Depends(get_config),
    now: datetime = Depends(get_clock),
) -> LinkResolution:
    """Resolve ``/{signing_route}/{id}?email=`` to a view state."""
    if route != config.signing_route:
        raise HTTPException(status_code=404, detail="Not found")
    return SigningLinkResolver(store, _engine).resolve(contract_id, email, now)
