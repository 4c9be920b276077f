"""Utilities for turning goal images into the engine's transport encoding."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import pyvips

from .codec import b64decode, b64encode


# Raw pixel layouts accepted in a goal, mapped to their channel count.
RAW_ENCODINGS = {
    "mono8": 1,
    "rgb8": 3,
    "bgr8": 3,
    "rgba8": 4,
    "bgra8": 4,
}
COMPRESSED_ENCODINGS = frozenset({"jpeg", "png", "webp", "auto"})

DEFAULT_JPEG_QUALITY = 90


@dataclass(frozen=True)
class ImagePayload:
    """Image bytes attached to a goal, tagged with their encoding."""

    data: bytes
    encoding: str
    width: int = 0
    height: int = 0

    def __post_init__(self) -> None:
        encoding = self.encoding.lower()
        object.__setattr__(self, "encoding", encoding)
        if encoding not in RAW_ENCODINGS and encoding not in COMPRESSED_ENCODINGS:
            valid = ", ".join(sorted(set(RAW_ENCODINGS) | COMPRESSED_ENCODINGS))
            raise ValueError(f"Unsupported image encoding '{encoding}'. Expected one of: {valid}")
        if encoding in RAW_ENCODINGS and self.data:
            if self.width <= 0 or self.height <= 0:
                raise ValueError("Raw images require positive width and height")
            expected = self.width * self.height * RAW_ENCODINGS[encoding]
            if len(self.data) != expected:
                raise ValueError(
                    f"Raw {encoding} image of {self.width}x{self.height} needs "
                    f"{expected} bytes, received {len(self.data)}"
                )

    @property
    def is_empty(self) -> bool:
        return len(self.data) == 0

    @property
    def is_raw(self) -> bool:
        return self.encoding in RAW_ENCODINGS


def image_payload_from_array(array: np.ndarray) -> ImagePayload:
    """Wrap an HxW or HxWxC uint8 array (RGB order) as a raw payload."""

    pixels = np.ascontiguousarray(array)
    if pixels.dtype != np.uint8:
        raise ValueError(f"Expected a uint8 array, received {pixels.dtype}")
    if pixels.ndim == 2:
        pixels = pixels[:, :, None]
    if pixels.ndim != 3:
        raise ValueError(f"Expected an HxW or HxWxC array, received shape {pixels.shape}")
    height, width, bands = pixels.shape
    encoding = {1: "mono8", 3: "rgb8", 4: "rgba8"}.get(bands)
    if encoding is None:
        raise ValueError(f"Unsupported channel count {bands}")
    return ImagePayload(data=pixels.tobytes(), encoding=encoding, width=width, height=height)


def image_payload_from_base64(data: str) -> ImagePayload:
    """Decode a base64 string (raw or ``data:image/...``) into a compressed payload."""

    encoding = "auto"
    if data.startswith("data:image"):
        header, _, payload = data.partition(",")
        if not payload:
            raise ValueError("Invalid data URL: missing payload")
        subtype = header[len("data:image/") :].split(";", 1)[0].lower()
        if subtype in ("jpeg", "jpg"):
            encoding = "jpeg"
        elif subtype in ("png", "webp"):
            encoding = subtype
        data = payload
    try:
        raw = b64decode(data.strip())
    except ValueError as exc:
        raise ValueError("Invalid base64 image data") from exc
    return ImagePayload(data=raw, encoding=encoding)


def load_vips(payload: ImagePayload) -> pyvips.Image:
    """Decode ``payload`` into an 8-bit sRGB pyvips image."""

    if payload.is_empty:
        raise ValueError("Image payload is empty")

    if payload.is_raw:
        bands = RAW_ENCODINGS[payload.encoding]
        image = pyvips.Image.new_from_memory(
            payload.data, payload.width, payload.height, bands, "uchar"
        )
        if payload.encoding in ("bgr8", "bgra8"):
            # Swap blue and red; keep alpha in place if present.
            swapped = [image.extract_band(1), image.extract_band(0)]
            if bands == 4:
                swapped.append(image.extract_band(3))
            image = image.extract_band(2).bandjoin(swapped)
        image = image.copy(interpretation="srgb" if bands >= 3 else "b-w")
    else:
        try:
            image = pyvips.Image.new_from_buffer(payload.data, "", access="sequential")
        except pyvips.Error as exc:
            raise ValueError("Invalid image payload") from exc

    return ensure_srgb(image)


def ensure_srgb(image: pyvips.Image) -> pyvips.Image:
    """Return an image in 8-bit sRGB without alpha."""

    if image.format != "uchar":
        image = image.cast("uchar")

    if image.hasalpha():
        # Flatten over an opaque black background
        image = image.flatten(background=[0, 0, 0])

    if image.bands == 1:
        image = image.colourspace("srgb")
    elif image.bands > 3:
        image = image.extract_band(0, n=3)

    if image.format != "uchar":
        image = image.cast("uchar")
    if image.interpretation not in ("srgb", "rgb"):
        image = image.copy(interpretation="srgb")
    return image.copy_memory()


def encode_jpeg(payload: ImagePayload, *, quality: int = DEFAULT_JPEG_QUALITY) -> bytes:
    image = load_vips(payload)
    try:
        return image.jpegsave_buffer(Q=quality)
    except pyvips.Error as exc:
        raise ValueError("Failed to encode image as JPEG") from exc


def encode_image(
    payload: ImagePayload,
    *,
    url: bool = False,
    quality: int = DEFAULT_JPEG_QUALITY,
) -> str:
    """Convert a goal image into the base64 JPEG string the engine loads."""

    return b64encode(encode_jpeg(payload, quality=quality), url=url)


__all__ = [
    "COMPRESSED_ENCODINGS",
    "ImagePayload",
    "RAW_ENCODINGS",
    "encode_image",
    "encode_jpeg",
    "ensure_srgb",
    "image_payload_from_array",
    "image_payload_from_base64",
    "load_vips",
]
