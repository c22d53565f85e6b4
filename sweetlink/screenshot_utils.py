"""Screenshot scaling and data-URL helpers shared by the bridge and the server."""

from __future__ import annotations

import base64
import io
import re
from typing import Any

DEFAULT_SCREENSHOT_SCALE = 0.25
DEFAULT_SCREENSHOT_QUALITY = 0.7

_DATA_URL_PREFIX = re.compile(r"^data:image/(png|jpeg|jpg|webp);base64,", re.IGNORECASE)


def extract_base64_from_data_url(data_url: str) -> str:
    return _DATA_URL_PREFIX.sub("", data_url or "", count=1)


def decode_data_url(data_url: str) -> bytes:
    return base64.b64decode(extract_base64_from_data_url(data_url))


def _open_image(raw: bytes) -> Any:
    from PIL import Image

    img = Image.open(io.BytesIO(raw))
    img.load()
    return img


def scale_image(img: Any, scale: float) -> Any:
    """Return ``img`` resized by ``scale`` (never below 1x1)."""
    from PIL import Image

    factor = float(scale or 1.0)
    if factor <= 0 or factor == 1.0:
        return img
    width = max(1, int(round(img.width * factor)))
    height = max(1, int(round(img.height * factor)))
    return img.resize((width, height), Image.LANCZOS)


def image_to_data_url(img: Any, *, fmt: str = "jpeg", quality: float = DEFAULT_SCREENSHOT_QUALITY) -> str:
    fmt = (fmt or "jpeg").lower()
    buf = io.BytesIO()
    if fmt == "png":
        img.save(buf, format="PNG")
        mime = "image/png"
    else:
        # JPEG has no alpha channel.
        if img.mode not in ("RGB", "L"):
            img = img.convert("RGB")
        q = int(round(max(0.0, min(1.0, float(quality))) * 100)) or 1
        img.save(buf, format="JPEG", quality=q)
        mime = "image/jpeg"
    return f"data:{mime};base64,{base64.b64encode(buf.getvalue()).decode('ascii')}"


def encode_capture(
    raw: bytes,
    *,
    scale: float = 1.0,
    fmt: str = "png",
    quality: float = DEFAULT_SCREENSHOT_QUALITY,
) -> tuple[str, int, int]:
    """Scale and encode a raw captured image; returns (data_url, width, height)."""
    img = scale_image(_open_image(raw), scale)
    return image_to_data_url(img, fmt=fmt, quality=quality), int(img.width), int(img.height)
