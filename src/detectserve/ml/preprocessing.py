"""Image decoding: raw upload bytes to an HxWx3 RGB uint8 array.

Any format Pillow can open is accepted. 8-bit modes are converted to RGB;
high bit-depth and float modes have no lossless 8-bit RGB form and are
reported as unsupported rather than rescaled.
"""

from __future__ import annotations

import io
import logging
import struct
from dataclasses import dataclass
from typing import TYPE_CHECKING

import numpy as np
from PIL import Image, UnidentifiedImageError

from detectserve.errors import DecodeError, ImageTooLargeError, UnsupportedImageShape

if TYPE_CHECKING:
    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

RGB_CONVERTIBLE_MODES = frozenset({"RGB", "RGBA", "RGBX", "L", "LA", "P", "PA", "1", "CMYK", "YCbCr"})

# Pillow plugins report malformed input through any of these.
PIL_DECODE_ERRORS = (
    UnidentifiedImageError,
    Image.DecompressionBombError,
    OSError,
    SyntaxError,
    ValueError,
    EOFError,
    struct.error,
)


@dataclass(frozen=True)
class DecodedImage:
    """A decoded image; ``rgb`` is None when the mode cannot become 8-bit RGB."""

    width: int
    height: int
    mode: str
    rgb: NDArray[np.uint8] | None

    def require_rgb(self) -> NDArray[np.uint8]:
        """Return the RGB pixels or raise UnsupportedImageShape."""
        if self.rgb is None:
            raise UnsupportedImageShape(self.mode, self.width, self.height)
        return self.rgb


def decode_image(data: bytes, *, max_pixels: int, strict_rgb: bool = False) -> DecodedImage:
    """Decode image bytes.

    Args:
        data: Raw file bytes (any supported format).
        max_pixels: Largest accepted ``width * height``.
        strict_rgb: Accept only images that are already 8-bit RGB.

    Returns:
        The decoded image with its dimensions.

    Raises:
        DecodeError: If the bytes are not a readable image.
        ImageTooLargeError: If the image exceeds ``max_pixels``.
    """
    try:
        with Image.open(io.BytesIO(data)) as image:
            width, height = image.size
            if width * height > max_pixels:
                raise ImageTooLargeError(f"Image is {width}x{height}, limit is {max_pixels} pixels")
            image.load()
            mode = image.mode
            rgb = _to_rgb_array(image, strict_rgb=strict_rgb)
    except ImageTooLargeError:
        raise
    except PIL_DECODE_ERRORS as exc:
        raise DecodeError(f"Cannot decode image: {exc}") from exc

    if rgb is None:
        logger.debug("Image mode %s (%dx%d) is not convertible to RGB", mode, width, height)
    return DecodedImage(width=width, height=height, mode=mode, rgb=rgb)


def _to_rgb_array(image: Image.Image, *, strict_rgb: bool) -> NDArray[np.uint8] | None:
    if image.mode == "RGB":
        return np.asarray(image, dtype=np.uint8)
    if strict_rgb or image.mode not in RGB_CONVERTIBLE_MODES:
        return None
    return np.asarray(image.convert("RGB"), dtype=np.uint8)
