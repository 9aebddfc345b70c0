"""Field validators shared by the signing surface, event builder and API.

CPF validation is deliberately format-only: exactly 11 digits after
stripping punctuation, no mod-11 checksum. Records already signed in
production carry checksum-invalid CPFs, so tightening this needs a
product decision and a data migration.
"""

import re
from datetime import date
from typing import Optional

from .errors import SignatureValidationError

ALLOWED_IMAGE_TYPES: tuple[str, ...] = (
    "image/png",
    "image/jpeg",
    "image/jpg",
    "image/webp",
    "image/gif",
)
ALLOWED_PDF_TYPES: tuple[str, ...] = ("application/pdf",)

MAX_IMAGE_SIZE = 5 * 1024 * 1024
MAX_PDF_SIZE = 10 * 1024 * 1024

CPF_LENGTH = 11

_NON_DIGITS = re.compile(r"\D")
_EMAIL_RE = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")


# ---------------------------------------------------------------------------
# CPF
# ---------------------------------------------------------------------------

def normalize_cpf(value: str) -> str:
    """Strip everything but digits (``"123.456.789-09"`` -> ``"12345678909"``)."""
    return _NON_DIGITS.sub("", value or "")


def is_valid_cpf(value: Optional[str]) -> bool:
    """True when the value has exactly 11 digits once formatting is removed."""
    if not value:
        return False
    return len(normalize_cpf(value)) == CPF_LENGTH


def mask_cpf(value: Optional[str]) -> str:
    """Hide the middle digits for printed evidence: ``123.***.***-09``."""
    digits = normalize_cpf(value or "")
    if len(digits) != CPF_LENGTH:
        return "not provided"
    return f"{digits[:3]}.***.***-{digits[9:]}"


# ---------------------------------------------------------------------------
# E-mail
# ---------------------------------------------------------------------------

def normalize_email(value: str) -> str:
    return (value or "").strip().lower()


def is_valid_email(value: str) -> bool:
    return bool(_EMAIL_RE.match((value or "").strip()))


# ---------------------------------------------------------------------------
# Birth date
# ---------------------------------------------------------------------------

def birth_date_error(birth_date: Optional[date], today: date) -> Optional[str]:
    """Return a user-facing message if the birth date is unusable, else None."""
    if birth_date is None:
        return "Birth date is required"
    if birth_date > today:
        return "Birth date cannot be in the future"
    return None


# ---------------------------------------------------------------------------
# Uploads
# ---------------------------------------------------------------------------

def validate_image_upload(
    size: int,
    mime_type: str,
    max_bytes: int = MAX_IMAGE_SIZE,
) -> None:
    """Check a signature image upload before it touches the canvas.

    Raises:
        SignatureValidationError: If the type is not allowed or the file is
            too large.
    """
    if (mime_type or "").lower() not in ALLOWED_IMAGE_TYPES:
        raise SignatureValidationError(
            "File type not allowed. Use JPG, PNG, WEBP or GIF."
        )
    if size > max_bytes:
        raise SignatureValidationError(
            f"The image must be at most {max_bytes // (1024 * 1024)}MB."
        )


def validate_pdf_upload(
    size: int,
    mime_type: str,
    max_bytes: int = MAX_PDF_SIZE,
) -> None:
    """Check a contract source document upload.

    Raises:
        SignatureValidationError: If it is not a PDF or is too large.
    """
    if (mime_type or "").lower() not in ALLOWED_PDF_TYPES:
        raise SignatureValidationError("Only PDF files are allowed.")
    if size > max_bytes:
        raise SignatureValidationError(
            f"The PDF must be at most {max_bytes // (1024 * 1024)}MB."
        )
