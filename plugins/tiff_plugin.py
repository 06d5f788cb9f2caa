"""
TIFF decoding with explicit colourspace handling.

Pillow opens most TIFF layouts but hands back whatever mode the file declares
(16-bit grayscale, YCbCr, ...) and its own conversions are lossy or missing
for some of them. The dedicated strategy normalises the pixel data with numpy
to 8-bit RGB; anything it does not understand falls through to the plain
raster decoder.
"""
import logging
from typing import List

import numpy as np
from PIL import Image, UnidentifiedImageError

from utils.color import gray_to_rgb, high_byte, ycbcr_to_rgb

from .base_plugin import BasePlugin, DecodeError, DecodeStrategy, MediaClass
from .pil_plugin import open_raster

logger = logging.getLogger(__name__)

_GRAY_16_MODES = ("I;16", "I;16L", "I;16B", "I;16N")


def tiff_to_rgb(img: Image.Image) -> Image.Image:
    """Convert a decoded TIFF frame to 8-bit RGB according to its colourspace."""
    mode = img.mode
    if mode == "L":
        rgb = gray_to_rgb(np.asarray(img))
    elif mode in _GRAY_16_MODES or mode == "I":
        rgb = gray_to_rgb(high_byte(np.asarray(img)))
    elif mode == "RGB":
        rgb = np.asarray(img)
    elif mode == "YCbCr":
        rgb = ycbcr_to_rgb(np.asarray(img))
    else:
        raise DecodeError(f"unsupported TIFF colourspace {mode}")
    return Image.fromarray(np.ascontiguousarray(rgb, dtype=np.uint8))


def decode_tiff(image_path: str) -> Image.Image:
    try:
        with Image.open(image_path) as img:
            if img.format != "TIFF":
                raise DecodeError(f"not a TIFF file (detected {img.format})")
            img.load()
            logger.debug("TIFF %s: mode %s, %dx%d", image_path, img.mode, img.width, img.height)
            return tiff_to_rgb(img)
    except UnidentifiedImageError as e:
        raise DecodeError(f"TIFF decoder cannot identify {image_path}") from e
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise DecodeError(f"TIFF decode failed: {e}") from e


class TiffPlugin(BasePlugin):
    """Plugin for TIFF files."""

    media_class = MediaClass.TIFF

    def get_supported_formats(self) -> List[str]:
        return ['.tif', '.tiff']

    def strategies(self, file_extension: str) -> List[DecodeStrategy]:
        return [
            DecodeStrategy("tiff", decode_tiff),
            DecodeStrategy("raster", open_raster),
        ]
