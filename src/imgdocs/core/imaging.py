"""PNG and base64 conversions for image payloads."""

from __future__ import annotations

import base64
import binascii
import io

from PIL import Image, UnidentifiedImageError


def encode_png(image: Image.Image) -> bytes:
    """Serialize a PIL image to PNG bytes."""
    buffer = io.BytesIO()
    image.save(buffer, format="PNG")
    return buffer.getvalue()


def decode_base64_image(data: str) -> bytes:
    """Decode a base64 image (optionally a ``data:`` URL) to PNG bytes.

    Non-PNG images are re-encoded so that every stored slot is a PNG.

    Raises:
        ValueError: If *data* is not valid base64 or not a readable image.
    """
    if data.startswith("data:"):
        _, _, data = data.partition(",")

    try:
        raw = base64.b64decode(data, validate=True)
    except binascii.Error as exc:
        raise ValueError(f"Invalid base64 payload: {exc}") from exc

    try:
        with Image.open(io.BytesIO(raw)) as image:
            if image.format == "PNG":
                image.verify()
                return raw
            image.load()
            return encode_png(image)
    except (UnidentifiedImageError, OSError) as exc:
        raise ValueError(f"Payload is not a readable image: {exc}") from exc
