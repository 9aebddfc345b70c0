"""Runtime configuration for signflow.

Defaults work out of the box; a ``config.json`` in the data directory
overrides any subset of fields::

    {"public_base_url": "https://sign.example.com", "require_birth_date": false}
"""

import json
import logging
from pathlib import Path
from typing import Optional

from pydantic import BaseModel

from .validators import MAX_IMAGE_SIZE, MAX_PDF_SIZE

logger = logging.getLogger("signflow.config")

DEFAULT_SIGNFLOW_DIR = Path.home() / ".signflow"
CONFIG_FILENAME = "config.json"


class SignflowConfig(BaseModel):
    """Configuration for links, uploads, geolocation and the signing form.

    Attributes:
        public_base_url: Origin used when building signing links.
        signing_route: Path segment of signing links (``/{route}/{id}``).
        max_signature_image_bytes: Upload bound for signature images.
        max_source_pdf_bytes: Upload bound for contract PDFs.
        require_cpf: Whether the signing form demands a CPF.
        require_birth_date: Whether the signing form demands a birth date.
        surface_width: Signature canvas width in CSS pixels.
        surface_height: Signature canvas height in CSS pixels.
        stroke_width: Pen width in CSS pixels (scaled by device pixel ratio).
        geolocation_timeout_ms: Hard timeout for a position fix.
        geocoder_url: Reverse-geocoding endpoint (Nominatim-compatible).
        geocoder_timeout_seconds: HTTP timeout for reverse geocoding.
        geocoder_user_agent: User-Agent sent to the geocoder.
        submission_timeout_seconds: HTTP timeout for signature submission.
    """

    public_base_url: str = "http://127.0.0.1:8400"
    signing_route: str = "sign"
    max_signature_image_bytes: int = MAX_IMAGE_SIZE
    max_source_pdf_bytes: int = MAX_PDF_SIZE
    require_cpf: bool = True
    require_birth_date: bool = True
    surface_width: int = 600
    surface_height: int = 300
    stroke_width: float = 2.0
    geolocation_timeout_ms: int = 10000
    geocoder_url: str = "https://nominatim.openstreetmap.org/reverse"
    geocoder_timeout_seconds: float = 5.0
    geocoder_user_agent: str = "signflow/0.1"
    submission_timeout_seconds: float = 30.0

    model_config = {"populate_by_name": True}

    @classmethod
    def load(cls, base_dir: Optional[Path] = None) -> "SignflowConfig":
        """Load ``config.json`` from the data directory, or defaults.

        Args:
            base_dir: Data directory (default: ``~/.signflow``).

        Returns:
            The merged configuration.
        """
        path = (base_dir or DEFAULT_SIGNFLOW_DIR) / CONFIG_FILENAME
        if not path.exists():
            return cls()
        data = json.loads(path.read_text(encoding="utf-8"))
        logger.info("Loaded configuration from %s", path)
        return cls.model_validate(data)
