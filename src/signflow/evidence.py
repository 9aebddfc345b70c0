"""Evidence PDF for fully signed contracts.

The evidence document is the source PDF with every signature stamped on
each page (image, name, date), a verification footer, and an appended
certificate page listing the document hash, signatories, audit log and
legal basis. Without a source PDF the certificate stands alone.

Generation is allowed only for ``signed`` contracts and is idempotent:
the digest and verification code depend only on the signed state, and
when a store is attached the first bundle is cached and returned as-is
on every later call, with no new audit event.
"""

import hashlib
import io
import json
import logging
from datetime import datetime, timezone
from typing import Optional

from PIL import Image, UnidentifiedImageError
from pydantic import BaseModel
from pypdf import PdfReader, PdfWriter
from pypdf.errors import PdfReadError
from reportlab.lib.pagesizes import A4
from reportlab.lib.utils import ImageReader
from reportlab.pdfgen import canvas

from .errors import EvidenceError, InvalidTransition
from .models import AuditAction, AuditEntry, Contract, ContractStatus, Signatory
from .surface import decode_data_uri
from .validators import mask_cpf

logger = logging.getLogger("signflow.evidence")

DATE_FORMAT = "%d/%m/%Y %H:%M"
DATETIME_FORMAT = "%d/%m/%Y %H:%M:%S"

LEGAL_BASIS = [
    "This document was signed electronically under:",
    "",
    "- Medida Provisoria n. 2.200-2/2001 (ICP-Brasil)",
    "- Lei n. 14.063/2020 (electronic signatures)",
    "",
    "Signature type: simple electronic signature.",
]

# Stamp geometry, in points from the bottom-right corner.
_STAMP_X_OFFSET = 200
_STAMP_Y_START = 60
_STAMP_Y_STEP = 80
_STAMP_SIZE = (150, 40)


class EvidenceBundle(BaseModel):
    """A generated evidence document.

    Attributes:
        contract_id: Contract the evidence belongs to.
        pdf: The composed PDF bytes.
        digest: SHA-256 over the signed state (hex).
        verification_code: Short code printed on every page.
        source_hash: SHA-256 of the source PDF, if one was used.
        generated_at: When the bundle was first produced.
    """

    contract_id: str
    pdf: bytes
    digest: str
    verification_code: str
    source_hash: Optional[str] = None
    generated_at: datetime

    def meta(self) -> dict:
        return self.model_dump(mode="json", exclude={"pdf"})


class EvidenceGenerator:
    """Compose evidence PDFs, caching them in a store when given one.

    Args:
        store: Optional :class:`signflow.store.ContractStore` used for the
            source PDF, the bundle cache and the audit log.
    """

    def __init__(self, store=None) -> None:
        self.store = store

    def generate(
        self,
        contract: Contract,
        source_pdf: Optional[bytes] = None,
        now: Optional[datetime] = None,
    ) -> EvidenceBundle:
        """Produce the evidence bundle for a signed contract.

        Args:
            contract: A contract with status ``signed``.
            source_pdf: Source document bytes (read from the store if omitted).
            now: Generation time, recorded in the audit log.

        Returns:
            The EvidenceBundle (the cached one on repeated calls).

        Raises:
            InvalidTransition: If the contract is not fully signed.
            EvidenceError: If the source PDF cannot be read.
        """
        if contract.status != ContractStatus.SIGNED or not contract.is_complete:
            raise InvalidTransition("Evidence is only available for signed contracts")

        if self.store is not None:
            cached = self.store.get_evidence(contract.id)
            if cached is not None:
                pdf, meta = cached
                logger.debug("Returning cached evidence for %s", contract.id[:8])
                return EvidenceBundle(pdf=pdf, **meta)
            if source_pdf is None:
                source_pdf = self.store.get_source(contract.id)

        source_hash = hashlib.sha256(source_pdf).hexdigest() if source_pdf else None
        digest = evidence_digest(contract, source_hash)
        code = verification_code(digest)
        generated_at = now or datetime.now(timezone.utc)

        pdf = self._compose(contract, source_pdf, source_hash, digest, code)
        bundle = EvidenceBundle(
            contract_id=contract.id,
            pdf=pdf,
            digest=digest,
            verification_code=code,
            source_hash=source_hash,
            generated_at=generated_at,
        )

        if self.store is not None:
            self.store.save_evidence(contract.id, bundle.pdf, bundle.meta())
            self.store.append_audit(
                AuditEntry(
                    contract_id=contract.id,
                    action=AuditAction.EVIDENCE_GENERATED,
                    timestamp=generated_at,
                    details=f"Evidence generated, code {code}",
                )
            )
        logger.info("Generated evidence for %s (code %s)", contract.id[:8], code)
        return bundle

    # ------------------------------------------------------------------
    # Composition
    # ------------------------------------------------------------------

    def _compose(
        self,
        contract: Contract,
        source_pdf: Optional[bytes],
        source_hash: Optional[str],
        digest: str,
        code: str,
    ) -> bytes:
        writer = PdfWriter()
        stamps = [(s, _signature_reader(s)) for s in contract.signatories]

        if source_pdf:
            try:
                reader = PdfReader(io.BytesIO(source_pdf))
                pages = list(reader.pages)
            except (PdfReadError, ValueError) as exc:
                raise EvidenceError(f"Source PDF could not be read: {exc}") from exc
            for i, page in enumerate(pages):
                width = float(page.mediabox.width)
                height = float(page.mediabox.height)
                overlay = _page_overlay(width, height, stamps, code, i + 1, len(pages))
                page.merge_page(PdfReader(io.BytesIO(overlay)).pages[0])
                writer.add_page(page)

        certificate = _certificate(contract, source_hash, digest, code)
        for page in PdfReader(io.BytesIO(certificate)).pages:
            writer.add_page(page)

        out = io.BytesIO()
        writer.write(out)
        return out.getvalue()


# ---------------------------------------------------------------------------
# Digest
# ---------------------------------------------------------------------------

def evidence_digest(contract: Contract, source_hash: Optional[str]) -> str:
    """Deterministic SHA-256 over the signed state of a contract.

    Sorted JSON keeps the digest reproducible across platforms.
    """
    payload = {
        "contract_id": contract.id,
        "title": contract.title,
        "source_hash": source_hash,
        "signed_at": contract.signed_at.isoformat() if contract.signed_at else None,
        "signatories": [s.model_dump(mode="json") for s in contract.signatories],
    }
    data = json.dumps(payload, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256(data.encode("utf-8")).hexdigest()


def verification_code(digest: str) -> str:
    """Short human-checkable code: the first 16 hex digits, grouped by 4."""
    head = digest[:16].upper()
    return "-".join(head[i:i + 4] for i in range(0, 16, 4))


# ---------------------------------------------------------------------------
# Drawing helpers
# ---------------------------------------------------------------------------

def _signature_reader(signatory: Signatory) -> Optional[ImageReader]:
    if not signatory.signed or not signatory.signature_image:
        return None
    try:
        _, data = decode_data_uri(signatory.signature_image)
        image = Image.open(io.BytesIO(data))
        image.load()
        return ImageReader(image.convert("RGBA"))
    except (ValueError, UnidentifiedImageError, OSError) as exc:
        logger.warning("Skipping unreadable signature image for %s: %s", signatory.email, exc)
        return None


def _fmt(value: Optional[datetime], pattern: str = DATE_FORMAT) -> str:
    return value.strftime(pattern) if value else "pending"


def _page_overlay(
    width: float,
    height: float,
    stamps: list[tuple[Signatory, Optional[ImageReader]]],
    code: str,
    page_number: int,
    page_count: int,
) -> bytes:
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=(width, height), invariant=1)

    x = width - _STAMP_X_OFFSET
    y = _STAMP_Y_START
    for signatory, image in stamps:
        if image is None:
            continue
        c.drawImage(image, x, y, width=_STAMP_SIZE[0], height=_STAMP_SIZE[1], mask="auto")
        c.setFillColorRGB(0, 0, 0)
        c.setFont("Helvetica", 8)
        c.drawString(x, y - 12, signatory.name)
        c.setFillColorRGB(0.4, 0.4, 0.4)
        c.setFont("Helvetica", 7)
        c.drawString(x, y - 24, _fmt(signatory.signed_at))
        y += _STAMP_Y_STEP

    c.setFillColorRGB(0.4, 0.4, 0.4)
    c.setFont("Helvetica", 7)
    c.drawString(50, 20, f"Verifiable document | Code: {code}")
    c.drawString(width - 100, 20, f"Page {page_number} of {page_count}")
    c.save()
    return buf.getvalue()


class _CertificateWriter:
    """Top-down text layout on A4 pages with automatic page breaks."""

    MARGIN = 50
    BOTTOM = 60

    def __init__(self) -> None:
        self.buf = io.BytesIO()
        self.canvas = canvas.Canvas(self.buf, pagesize=A4, invariant=1)
        self.width, self.height = A4
        self.y = self.height - self.MARGIN

    def heading(self, text: str, size: int = 12) -> None:
        self._ensure(size + 25)
        self.canvas.setFont("Helvetica-Bold", size)
        self.canvas.drawString(self.MARGIN, self.y, text)
        self.y -= 25

    def line(self, text: str, size: int = 9, indent: int = 10, bold: bool = False) -> None:
        self._ensure(size + 6)
        self.canvas.setFont("Helvetica-Bold" if bold else "Helvetica", size)
        self.canvas.drawString(self.MARGIN + indent, self.y, text)
        self.y -= size + 6

    def gap(self, points: int = 15) -> None:
        self.y -= points

    def finish(self) -> bytes:
        self.canvas.save()
        return self.buf.getvalue()

    def _ensure(self, needed: float) -> None:
        if self.y - needed < self.BOTTOM:
            self.canvas.showPage()
            self.y = self.height - self.MARGIN


def _certificate(
    contract: Contract,
    source_hash: Optional[str],
    digest: str,
    code: str,
) -> bytes:
    w = _CertificateWriter()
    w.heading("CERTIFICATE OF AUTHENTICITY AND LEGAL VALIDITY", size=16)
    w.gap(10)

    w.heading("1. DOCUMENT")
    for text in (
        f"Title: {contract.title}",
        f"Contract ID: {contract.id}",
        f"Client: {contract.client_name or 'not provided'}",
        f"Created: {_fmt(contract.created_at, DATETIME_FORMAT)}",
        f"Source SHA-256: {source_hash or 'no source document'}",
        f"Evidence digest: {digest}",
        f"Verification code: {code}",
        "Status: Signed",
    ):
        w.line(text)
    w.gap()

    w.heading("2. SIGNATORIES")
    for idx, s in enumerate(contract.signatories, start=1):
        w.line(f"Signatory {idx}:", size=10, bold=True)
        location = s.location
        coords = "not captured"
        if location is not None and location.has_coordinates:
            coords = f"{location.latitude:.6f}, {location.longitude:.6f}"
        for text in (
            f"Name: {s.name}",
            f"E-mail: {s.email}",
            f"Signed at: {_fmt(s.signed_at, DATETIME_FORMAT)}",
            f"Method: {s.signature_method.value if s.signature_method else 'drawn'}",
            f"CPF: {mask_cpf(s.cpf)}",
            f"Birth date: {s.birth_date.strftime('%d/%m/%Y') if s.birth_date else 'not provided'}",
            f"Coordinates: {coords}",
            f"Address: {(location.address if location else None) or 'not captured'}",
            f"IP: {s.ip_address or 'not recorded'}",
            f"Client: {s.user_agent or 'not recorded'}",
        ):
            w.line(text, size=8, indent=20)
        w.gap(10)

    w.heading("3. AUDIT LOG")
    for entry in contract.audit_trail:
        who = f" by {entry.actor_name or entry.actor_email}" if (entry.actor_name or entry.actor_email) else ""
        w.line(f"{_fmt(entry.timestamp)} - {entry.action.value}{who}")
    w.gap()

    w.heading("4. LEGAL VALIDITY")
    for text in LEGAL_BASIS:
        w.line(text, size=8)
    w.line(f"Verification code: {code}", size=8)

    w.gap(20)
    w.line(f"Issued: {_fmt(contract.signed_at, DATETIME_FORMAT)}", size=8, indent=0)
    return w.finish()
