"""Image and encoding helpers."""

from .codec import b64decode, b64encode
from .image import ImagePayload, encode_image

__all__ = ["ImagePayload", "b64decode", "b64encode", "encode_image"]
