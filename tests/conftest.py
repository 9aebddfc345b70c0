"""Shared fixtures for signflow tests."""

import base64
import io
from datetime import date, datetime, timezone

import pytest
from PIL import Image, ImageDraw
from reportlab.lib.pagesizes import A4
from reportlab.pdfgen import canvas

from signflow.lifecycle import ContractLifecycleEngine
from signflow.models import Location, SignatureEvent, SignatureMethod, Signatory


NOW = datetime(2025, 3, 10, 12, 0, tzinfo=timezone.utc)
CPF = "123.456.789-09"
BIRTH_DATE = date(1990, 5, 17)


def make_png(ink: bool = True, size: tuple[int, int] = (120, 60), mode: str = "RGBA") -> bytes:
    """A small PNG; with ``ink`` it carries a black scribble."""
    background = (0, 0, 0, 0) if mode == "RGBA" else "white"
    image = Image.new(mode, size, background)
    if ink:
        ImageDraw.Draw(image).line([(10, 40), (50, 10), (110, 45)], fill="black", width=4)
    buf = io.BytesIO()
    image.save(buf, format="PNG")
    return buf.getvalue()


def data_uri(data: bytes, mime: str = "image/png") -> str:
    return f"data:{mime};base64,{base64.b64encode(data).decode('ascii')}"


@pytest.fixture
def now() -> datetime:
    return NOW


@pytest.fixture
def engine() -> ContractLifecycleEngine:
    return ContractLifecycleEngine()


@pytest.fixture
def tmp_store(tmp_path):
    """Create a temporary ContractStore."""
    from signflow.store import ContractStore

    return ContractStore(base_dir=tmp_path)


@pytest.fixture
def signature_image() -> str:
    """A PNG data URI with visible ink."""
    return data_uri(make_png())


@pytest.fixture
def make_event(signature_image):
    """Factory for valid signature events."""

    def _make(**overrides) -> SignatureEvent:
        fields = dict(
            method=SignatureMethod.DRAWN,
            signature_image=signature_image,
            cpf=CPF,
            birth_date=BIRTH_DATE,
            signed_at=NOW,
            location=Location(latitude=-23.5505, longitude=-46.6333, address="Sao Paulo, SP"),
            ip_address="203.0.113.7",
            user_agent="pytest",
        )
        fields.update(overrides)
        return SignatureEvent(**fields)

    return _make


@pytest.fixture
def contract(engine):
    """Draft contract with two signatories."""
    return engine.create(
        title="Service Agreement",
        signatories=[
            Signatory(name="Ana Lima", email="ana@example.com"),
            Signatory(name="Bruno Souza", email="Bruno@Example.com"),
        ],
        now=NOW,
        client_name="Acme Ltda",
    )


@pytest.fixture
def sent_contract(engine, contract):
    return engine.send(contract, NOW)


@pytest.fixture
def signed_contract(engine, sent_contract, make_event):
    engine.apply_signature(sent_contract, "ana@example.com", make_event(), NOW)
    engine.apply_signature(sent_contract, "bruno@example.com", make_event(), NOW)
    return sent_contract


@pytest.fixture
def sample_pdf() -> bytes:
    """Minimal PDF header bytes (enough for upload checks)."""
    return (
        b"%PDF-1.4\n"
        b"1 0 obj<</Type/Catalog/Pages 2 0 R>>endobj\n"
        b"2 0 obj<</Type/Pages/Kids[3 0 R]/Count 1>>endobj\n"
        b"3 0 obj<</Type/Page/MediaBox[0 0 612 792]/Parent 2 0 R>>endobj\n"
        b"trailer<</Size 4/Root 1 0 R>>\n"
        b"%%EOF"
    )


@pytest.fixture
def source_pdf() -> bytes:
    """A well-formed two-page PDF."""
    buf = io.BytesIO()
    c = canvas.Canvas(buf, pagesize=A4, invariant=1)
    for page in (1, 2):
        c.drawString(72, 750, f"Service Agreement, page {page}")
        c.showPage()
    c.save()
    return buf.getvalue()
