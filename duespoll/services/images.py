"""Image payload validation for proofs and candidate pictures."""
from __future__ import annotations

import io
from dataclasses import dataclass

from PIL import Image, UnidentifiedImageError

from duespoll.services.errors import InvalidImageError

_FORMAT_CONTENT_TYPES = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "GIF": "image/gif",
    "WEBP": "image/webp",
    "BMP": "image/bmp",
}


@dataclass(slots=True, frozen=True)
class ImagePayload:
    data: bytes
    content_type: str
    filename: str


def validate_image(
    data: bytes,
    *,
    content_type: str | None,
    filename: str | None,
    max_bytes: int,
    label: str = "file",
) -> ImagePayload:
    """Ensure ``data`` is a decodable image and normalise its metadata.

    The declared content type must be ``image/*`` and Pillow must recognise
    the bytes as one of the supported formats.
    """

    if not data:
        raise InvalidImageError(f"Please upload a valid image {label}.")
    if len(data) > max_bytes:
        raise InvalidImageError(f"The {label} exceeds the {max_bytes // 1024} KiB upload limit.")
    declared = (content_type or "").split(";")[0].strip().lower()
    if declared and not declared.startswith("image/"):
        raise InvalidImageError(f"Please upload a valid image {label}.")

    try:
        with Image.open(io.BytesIO(data)) as image:
            image.verify()
            image_format = image.format
    except (UnidentifiedImageError, OSError, SyntaxError) as exc:
        raise InvalidImageError(f"Please upload a valid image {label}.") from exc

    resolved_type = _FORMAT_CONTENT_TYPES.get(image_format or "")
    if resolved_type is None:
        raise InvalidImageError(f"Unsupported image format for {label}.")

    name = (filename or "").replace("\\", "/").rsplit("/", 1)[-1].strip()
    if not name:
        name = f"image.{(image_format or 'bin').lower()}"
    return ImagePayload(data=data, content_type=resolved_type, filename=name)


__all__ = ["ImagePayload", "validate_image"]
