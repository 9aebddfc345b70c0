"""Tests for shared field validators."""

from datetime import date

import pytest

from signflow.errors import SignatureValidationError
from signflow.validators import (
    MAX_IMAGE_SIZE,
    birth_date_error,
    is_valid_cpf,
    is_valid_email,
    mask_cpf,
    normalize_cpf,
    normalize_email,
    validate_image_upload,
    validate_pdf_upload,
)


class TestCpf:
    """CPF checks are length-only."""

    @pytest.mark.parametrize(
        "value",
        ["12345678909", "123.456.789-09", " 111.111.111-11 ", "00000000000", "12345678900"],
    )
    def test_any_eleven_digits_accepted(self, value):
        assert is_valid_cpf(value) is True

    @pytest.mark.parametrize("value", ["", None, "1234567890", "123456789012", "abc.def.ghi-jk"])
    def test_wrong_length_rejected(self, value):
        assert is_valid_cpf(value) is False

    def test_normalize(self):
        assert normalize_cpf("123.456.789-09") == "12345678909"

    def test_mask(self):
        assert mask_cpf("12345678909") == "123.***.***-09"
        assert mask_cpf("123.456.789-09") == "123.***.***-09"
        assert mask_cpf("1234") == "not provided"
        assert mask_cpf(None) == "not provided"


class TestEmail:
    def test_normalize(self):
        assert normalize_email("  Ana@Example.COM ") == "ana@example.com"

    @pytest.mark.parametrize("value", ["a@b.co", "first.last@sub.example.org"])
    def test_valid(self, value):
        assert is_valid_email(value)

    @pytest.mark.parametrize("value", ["", "plain", "a@b", "a b@c.com", "@example.com"])
    def test_invalid(self, value):
        assert not is_valid_email(value)


class TestBirthDate:
    def test_required(self):
        assert birth_date_error(None, date(2025, 1, 1)) == "Birth date is required"

    def test_future(self):
        assert birth_date_error(date(2025, 1, 2), date(2025, 1, 1)) == "Birth date cannot be in the future"

    def test_today_is_fine(self):
        assert birth_date_error(date(2025, 1, 1), date(2025, 1, 1)) is None


class TestUploads:
    def test_image_ok(self):
        validate_image_upload(1024, "image/png")
        validate_image_upload(MAX_IMAGE_SIZE, "IMAGE/JPEG")

    def test_image_type_rejected(self):
        with pytest.raises(SignatureValidationError, match="File type not allowed"):
            validate_image_upload(10, "image/svg+xml")

    def test_image_too_large(self):
        with pytest.raises(SignatureValidationError, match="at most 5MB"):
            validate_image_upload(6 * 1024 * 1024, "image/png")

    def test_pdf(self):
        validate_pdf_upload(1024, "application/pdf")
        with pytest.raises(SignatureValidationError):
            validate_pdf_upload(1024, "image/png")
        with pytest.raises(SignatureValidationError, match="at most 10MB"):
            validate_pdf_upload(11 * 1024 * 1024, "application/pdf")
