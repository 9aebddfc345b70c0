"""Signature input surface: freehand drawing or image upload onto one canvas.

The surface is a Pillow RGBA canvas sized in device pixels. Pointer input
(mouse, touch or pen) arrives in client/CSS coordinates and is normalized
against the canvas origin and the device pixel ratio, so a stroke looks
the same width on any screen density. Exactly one raster image comes out
of :meth:`SignatureSurface.to_image`, as a PNG data URI.

A blank canvas still serializes to a valid PNG, so "the surface exists"
is never treated as "a signature was provided": callers must check
:meth:`SignatureSurface.has_content` (the event builder does).
"""

import base64
import io
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from PIL import Image, ImageDraw, UnidentifiedImageError

from .config import SignflowConfig
from .errors import SignatureValidationError
from .validators import MAX_IMAGE_SIZE, validate_image_upload

logger = logging.getLogger("signflow.surface")

_DATA_URI_RE = re.compile(r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)?(?:;[^,]*)?;base64,(?P<data>.*)$", re.IGNORECASE | re.DOTALL)

# Luma at or above this counts as paper, below it counts as ink.
_INK_THRESHOLD = 250


class SurfaceMode(str, Enum):
    DRAW = "draw"
    UPLOAD = "upload"


class PointerKind(str, Enum):
    DOWN = "down"
    MOVE = "move"
    UP = "up"
    LEAVE = "leave"


class PointerType(str, Enum):
    MOUSE = "mouse"
    TOUCH = "touch"
    PEN = "pen"


@dataclass(frozen=True)
class PointerEvent:
    """A unified mouse/touch/pen event in client (CSS pixel) coordinates.

    For touch input, ``client_x``/``client_y`` are those of the first touch
    point, matching what the browser surface forwards.
    """

    kind: PointerKind
    client_x: float
    client_y: float
    pointer_type: PointerType = PointerType.MOUSE


class SignatureSurface:
    """Drawing/upload surface that produces a single signature image.

    Args:
        width: Canvas width in CSS pixels.
        height: Canvas height in CSS pixels.
        device_pixel_ratio: Physical pixels per CSS pixel.
        origin: Client coordinates of the canvas' top-left corner.
        stroke_width: Pen width in CSS pixels.
        max_upload_bytes: Size bound for uploaded images.
    """

    COLOR = (0, 0, 0, 255)

    def __init__(
        self,
        width: int = 600,
        height: int = 300,
        device_pixel_ratio: float = 1.0,
        origin: tuple[float, float] = (0.0, 0.0),
        stroke_width: float = 2.0,
        max_upload_bytes: int = MAX_IMAGE_SIZE,
    ) -> None:
        if device_pixel_ratio <= 0:
            raise ValueError("device_pixel_ratio must be positive")
        self.width = width
        self.height = height
        self.device_pixel_ratio = device_pixel_ratio
        self.origin = origin
        self.stroke_width = stroke_width
        self.max_upload_bytes = max_upload_bytes
        self.mode = SurfaceMode.DRAW

        self._size = (
            max(1, round(width * device_pixel_ratio)),
            max(1, round(height * device_pixel_ratio)),
        )
        self._canvas = self._blank()
        self._strokes: list[list[tuple[float, float]]] = []
        self._active: Optional[list[tuple[float, float]]] = None
        self._segments = 0
        self._uploaded = False

    @classmethod
    def from_config(
        cls,
        config: SignflowConfig,
        device_pixel_ratio: float = 1.0,
        origin: tuple[float, float] = (0.0, 0.0),
    ) -> "SignatureSurface":
        """Surface sized and bounded by the configuration."""
        return cls(
            width=config.surface_width,
            height=config.surface_height,
            device_pixel_ratio=device_pixel_ratio,
            origin=origin,
            stroke_width=config.stroke_width,
            max_upload_bytes=config.max_signature_image_bytes,
        )

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def pixel_size(self) -> tuple[int, int]:
        """Canvas size in device pixels."""
        return self._size

    @property
    def strokes(self) -> list[list[tuple[float, float]]]:
        """Completed and in-progress strokes, in device-pixel coordinates."""
        return [list(s) for s in self._strokes]

    @property
    def is_drawing(self) -> bool:
        return self._active is not None

    def has_content(self) -> bool:
        """True once a stroke segment was rendered or an image was uploaded."""
        return self._segments > 0 or self._uploaded

    def clear(self) -> None:
        """Reset to a blank canvas, discarding strokes and uploads."""
        self._canvas = self._blank()
        self._strokes = []
        self._active = None
        self._segments = 0
        self._uploaded = False

    def set_mode(self, mode: SurfaceMode) -> None:
        self.mode = SurfaceMode(mode)
        self._active = None

    # ------------------------------------------------------------------
    # Draw mode
    # ------------------------------------------------------------------

    def to_canvas(self, client_x: float, client_y: float) -> tuple[float, float]:
        """Map client coordinates to device-pixel canvas coordinates."""
        dpr = self.device_pixel_ratio
        return (
            (client_x - self.origin[0]) * dpr,
            (client_y - self.origin[1]) * dpr,
        )

    def handle(self, event: PointerEvent) -> None:
        """Dispatch a pointer event to the matching handler."""
        if event.kind == PointerKind.DOWN:
            self.pointer_down(event.client_x, event.client_y)
        elif event.kind == PointerKind.MOVE:
            self.pointer_move(event.client_x, event.client_y)
        else:
            self.pointer_up()

    def pointer_down(self, client_x: float, client_y: float) -> None:
        if self.mode != SurfaceMode.DRAW:
            return
        self._active = [self.to_canvas(client_x, client_y)]
        self._strokes.append(self._active)

    def pointer_move(self, client_x: float, client_y: float) -> None:
        if self._active is None or self.mode != SurfaceMode.DRAW:
            return
        point = self.to_canvas(client_x, client_y)
        self._render_segment(self._active[-1], point)
        self._active.append(point)
        self._segments += 1

    def pointer_up(self) -> None:
        """End the active stroke (also used for pointer-leave)."""
        self._active = None

    pointer_leave = pointer_up

    def _render_segment(
        self, start: tuple[float, float], end: tuple[float, float]
    ) -> None:
        width = max(1, round(self.stroke_width * self.device_pixel_ratio))
        draw = ImageDraw.Draw(self._canvas)
        draw.line([start, end], fill=self.COLOR, width=width, joint="curve")
        # ImageDraw has no line caps; round them off with discs.
        r = width / 2
        for x, y in (start, end):
            draw.ellipse((x - r, y - r, x + r, y + r), fill=self.COLOR)

    # ------------------------------------------------------------------
    # Upload mode
    # ------------------------------------------------------------------

    def upload(self, data: bytes, mime_type: str) -> None:
        """Place an uploaded image on the canvas, scaled to fit and centered.

        Type and size are checked, and the image decoded, before the canvas
        is touched; a rejected upload leaves the surface exactly as it was.

        Args:
            data: Raw image bytes.
            mime_type: Declared MIME type of the upload.

        Raises:
            SignatureValidationError: If the type, size or content is invalid.
        """
        validate_image_upload(len(data), mime_type, self.max_upload_bytes)
        try:
            image = Image.open(io.BytesIO(data))
            image.load()
            image = image.convert("RGBA")
        except (UnidentifiedImageError, OSError, ValueError) as exc:
            logger.warning("Rejected undecodable signature upload: %s", exc)
            raise SignatureValidationError("Invalid or corrupt image file") from exc

        cw, ch = self._size
        scale = min(cw / image.width, ch / image.height)
        fitted = image.resize(
            (max(1, round(image.width * scale)), max(1, round(image.height * scale))),
            Image.Resampling.LANCZOS,
        )

        canvas = self._blank()
        canvas.alpha_composite(
            fitted, dest=((cw - fitted.width) // 2, (ch - fitted.height) // 2)
        )
        self._canvas = canvas
        self._strokes = []
        self._active = None
        self._segments = 0
        self._uploaded = True
        self.mode = SurfaceMode.UPLOAD

    # ------------------------------------------------------------------
    # Export
    # ------------------------------------------------------------------

    def to_png(self) -> bytes:
        buf = io.BytesIO()
        self._canvas.save(buf, format="PNG")
        return buf.getvalue()

    def to_image(self) -> str:
        """Serialize the canvas to a PNG data URI.

        Raises:
            SignatureValidationError: If nothing was drawn or uploaded.
        """
        if not self.has_content():
            raise SignatureValidationError("Draw or upload your signature first")
        return encode_data_uri(self.to_png(), "image/png")

    def _blank(self) -> Image.Image:
        return Image.new("RGBA", self._size, (0, 0, 0, 0))


# ---------------------------------------------------------------------------
# Data URI helpers
# ---------------------------------------------------------------------------

def encode_data_uri(data: bytes, mime_type: str = "image/png") -> str:
    return f"data:{mime_type};base64,{base64.b64encode(data).decode('ascii')}"


def decode_data_uri(uri: str) -> tuple[str, bytes]:
    """Split a base64 data URI into ``(mime_type, raw_bytes)``.

    Whitespace inside the payload and missing padding are tolerated.

    Raises:
        ValueError: If the value is not a decodable base64 data URI.
    """
    match = _DATA_URI_RE.match((uri or "").strip())
    if not match:
        raise ValueError("Not a base64 data URI")
    mime = (match.group("mime") or "application/octet-stream").lower()
    payload = re.sub(r"[^A-Za-z0-9+/=]", "", match.group("data"))
    missing = len(payload) % 4
    if missing:
        payload += "=" * (4 - missing)
    try:
        return mime, base64.b64decode(payload, validate=True)
    except ValueError as exc:
        raise ValueError(f"Invalid base64 payload: {exc}") from exc


def image_has_ink(data: bytes) -> bool:
    """Whether an encoded image contains any visible mark.

    The image is flattened onto white; anything darker than near-white
    counts as ink. Fully transparent or plain white images have none.

    Raises:
        ValueError: If the bytes are not a decodable image.
    """
    try:
        image = Image.open(io.BytesIO(data))
        image.load()
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError(f"Invalid image: {exc}") from exc

    rgba = image.convert("RGBA")
    paper = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
    luma = Image.alpha_composite(paper, rgba).convert("L")
    ink = luma.point(lambda p: 255 if p < _INK_THRESHOLD else 0)
    return ink.getbbox() is not None
