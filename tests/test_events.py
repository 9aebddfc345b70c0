"""Tests for the signature event builder."""

from datetime import date, timedelta

import pytest

from signflow.errors import SignatureValidationError
from signflow.events import SignatureEventBuilder
from signflow.models import Location, SignatureMethod
from signflow.surface import PointerEvent, PointerKind, SignatureSurface

from conftest import BIRTH_DATE, CPF, NOW, make_png


@pytest.fixture
def drawn_surface():
    s = SignatureSurface()
    s.handle(PointerEvent(PointerKind.DOWN, 10, 10))
    s.handle(PointerEvent(PointerKind.MOVE, 80, 40))
    s.handle(PointerEvent(PointerKind.UP, 80, 40))
    return s


class TestValidation:
    """Every unmet precondition is reported at once."""

    def test_all_errors_reported(self):
        builder = SignatureEventBuilder()
        messages = builder.errors(SignatureSurface(), "123", None, NOW)
        assert messages == [
            "Draw or upload your signature first",
            "CPF must have exactly 11 digits",
            "Birth date is required",
        ]

    def test_future_birth_date(self, drawn_surface):
        future = NOW.date() + timedelta(days=1)
        with pytest.raises(SignatureValidationError) as exc_info:
            SignatureEventBuilder().build(drawn_surface, CPF, future, None, NOW)
        assert exc_info.value.messages == ["Birth date cannot be in the future"]

    def test_empty_surface_blocks_build(self):
        with pytest.raises(SignatureValidationError, match="Draw or upload"):
            SignatureEventBuilder().build(SignatureSurface(), CPF, BIRTH_DATE, None, NOW)

    def test_checksum_invalid_cpf_accepted(self, drawn_surface):
        event = SignatureEventBuilder().build(drawn_surface, "111.111.111-11", BIRTH_DATE, None, NOW)
        assert event.cpf == "11111111111"

    def test_optional_fields_may_be_omitted(self, drawn_surface):
        builder = SignatureEventBuilder(require_cpf=False, require_birth_date=False)
        event = builder.build(drawn_surface, None, None, None, NOW)
        assert event.cpf is None
        assert event.birth_date is None

    def test_optional_fields_still_checked_when_given(self, drawn_surface):
        builder = SignatureEventBuilder(require_cpf=False, require_birth_date=False)
        assert builder.errors(drawn_surface, "12", date(2999, 1, 1), NOW) == [
            "CPF must have exactly 11 digits",
            "Birth date cannot be in the future",
        ]


class TestBuild:
    """Event assembly."""

    def test_drawn_event(self, drawn_surface):
        location = Location(latitude=-23.5, longitude=-46.6, address="Sao Paulo")
        event = SignatureEventBuilder().build(
            drawn_surface, CPF, BIRTH_DATE, location, NOW, ip_address="198.51.100.4"
        )
        assert event.method == SignatureMethod.DRAWN
        assert event.signature_image.startswith("data:image/png;base64,")
        assert event.cpf == "12345678909"
        assert event.birth_date == BIRTH_DATE
        assert event.signed_at == NOW
        assert event.location == location
        assert event.ip_address == "198.51.100.4"

    def test_missing_location_is_all_null(self, drawn_surface):
        event = SignatureEventBuilder().build(drawn_surface, CPF, BIRTH_DATE, None, NOW)
        assert event.location.is_empty

    def test_uploaded_event(self):
        s = SignatureSurface()
        s.upload(make_png(), "image/png")
        event = SignatureEventBuilder().build(s, CPF, BIRTH_DATE, None, NOW)
        assert event.method == SignatureMethod.UPLOADED
