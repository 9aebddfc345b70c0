"""Tests for evidence PDF generation."""

import io

import pytest
from pypdf import PdfReader

from signflow.errors import EvidenceError, InvalidTransition
from signflow.evidence import EvidenceGenerator, evidence_digest, verification_code
from signflow.models import AuditAction, Location

from conftest import NOW


def _text(pdf: bytes) -> str:
    return "\n".join(page.extract_text() or "" for page in PdfReader(io.BytesIO(pdf)).pages)


class TestDigest:
    def test_deterministic(self, signed_contract):
        assert evidence_digest(signed_contract, "abc") == evidence_digest(signed_contract, "abc")

    def test_depends_on_source(self, signed_contract):
        assert evidence_digest(signed_contract, "abc") != evidence_digest(signed_contract, "def")

    def test_verification_code_format(self):
        assert verification_code("0123456789abcdef" + "0" * 48) == "0123-4567-89AB-CDEF"


class TestGenerate:
    """Composition without a store."""

    def test_requires_signed_contract(self, sent_contract):
        with pytest.raises(InvalidTransition):
            EvidenceGenerator().generate(sent_contract)

    def test_certificate_only(self, signed_contract):
        bundle = EvidenceGenerator().generate(signed_contract, now=NOW)
        assert bundle.pdf.startswith(b"%PDF")
        assert bundle.source_hash is None
        text = _text(bundle.pdf)
        assert "CERTIFICATE OF AUTHENTICITY" in text
        assert "Ana Lima" in text
        assert "123.***.***-09" in text
        assert bundle.verification_code in text

    def test_latitude_only_location(self, engine, sent_contract, make_event):
        half = make_event(location=Location(latitude=-23.5))
        engine.apply_signature(sent_contract, "ana@example.com", half, NOW)
        engine.apply_signature(sent_contract, "bruno@example.com", make_event(), NOW)
        text = _text(EvidenceGenerator().generate(sent_contract, now=NOW).pdf)
        assert "Coordinates: not captured" in text
        assert "-23.550500, -46.633300" in text

    def test_overlays_every_source_page(self, signed_contract, source_pdf):
        bundle = EvidenceGenerator().generate(signed_contract, source_pdf=source_pdf, now=NOW)
        reader = PdfReader(io.BytesIO(bundle.pdf))
        # two source pages plus at least one certificate page
        assert len(reader.pages) >= 3
        first = reader.pages[0].extract_text()
        assert "Service Agreement, page 1" in first
        assert "Page 1 of 2" in first
        assert bundle.verification_code in first
        assert "Bruno Souza" in first
        assert bundle.source_hash is not None

    def test_same_state_same_digest(self, signed_contract, source_pdf):
        a = EvidenceGenerator().generate(signed_contract, source_pdf=source_pdf, now=NOW)
        b = EvidenceGenerator().generate(signed_contract, source_pdf=source_pdf, now=NOW)
        assert a.digest == b.digest
        assert a.verification_code == b.verification_code

    def test_unreadable_source(self, signed_contract):
        with pytest.raises(EvidenceError):
            EvidenceGenerator().generate(signed_contract, source_pdf=b"definitely not a pdf")


class TestCachedGenerate:
    """Idempotence through the store."""

    def test_repeat_returns_cached_bundle(self, tmp_store, signed_contract, source_pdf):
        tmp_store.save_contract(signed_contract)
        tmp_store.save_source(signed_contract.id, source_pdf)
        generator = EvidenceGenerator(tmp_store)

        first = generator.generate(signed_contract, now=NOW)
        second = generator.generate(signed_contract)
        assert second.pdf == first.pdf
        assert second.digest == first.digest
        assert second.generated_at == first.generated_at

        actions = [e.action for e in tmp_store.get_audit_trail(signed_contract.id)]
        assert actions.count(AuditAction.EVIDENCE_GENERATED) == 1

    def test_reads_source_from_store(self, tmp_store, signed_contract, source_pdf):
        tmp_store.save_contract(signed_contract)
        tmp_store.save_source(signed_contract.id, source_pdf)
        bundle = EvidenceGenerator(tmp_store).generate(signed_contract, now=NOW)
        assert bundle.source_hash is not None
        assert len(PdfReader(io.BytesIO(bundle.pdf)).pages) >= 3
