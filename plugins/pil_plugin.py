import logging
import os
from typing import List

from PIL import Image, ImageOps, UnidentifiedImageError

from .base_plugin import BasePlugin, DecodeError, DecodeStrategy, MediaClass, UnsupportedFormatError
from .raw_plugin import decode_raw_buffer

logger = logging.getLogger(__name__)

RASTER_EXTENSIONS = ['.jpg', '.jpeg', '.png', '.gif', '.bmp', '.webp']

# RAW formats without a dedicated plugin. They go through the raster decoder
# first and fall back to the embedded-preview locator when it gives up.
OTHER_RAW_EXTENSIONS = [
    '.3fr', '.ari', '.bay', '.crw', '.dcr', '.erf', '.fff', '.iiq', '.k25',
    '.kdc', '.mdc', '.mos', '.mrw', '.pef', '.ptx', '.pxn', '.r3d', '.rwl',
    '.sr2', '.srf', '.srw', '.x3f',
]


def open_raster(image_path: str) -> Image.Image:
    """Open and fully decode *image_path* with Pillow, honouring EXIF orientation."""
    try:
        with Image.open(image_path) as img:
            img.load()
            return ImageOps.exif_transpose(img)
    except UnidentifiedImageError as e:
        raise UnsupportedFormatError(f"unrecognised image format: {image_path}") from e
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise DecodeError(f"raster decode failed: {e}") from e


class PILPlugin(BasePlugin):
    """Plugin for standard raster formats using PIL/Pillow."""

    media_class = MediaClass.RASTER

    def get_supported_formats(self) -> List[str]:
        return RASTER_EXTENSIONS + OTHER_RAW_EXTENSIONS

    def strategies(self, file_extension: str) -> List[DecodeStrategy]:
        chain = [DecodeStrategy("raster", open_raster)]
        if file_extension in OTHER_RAW_EXTENSIONS:
            chain.append(DecodeStrategy("embedded preview", self.decode_embedded,
                                        runs_after=(UnsupportedFormatError,)))
        return chain

    def decode_embedded(self, image_path: str) -> Image.Image:
        try:
            with open(image_path, "rb") as f:
                data = f.read()
        except OSError as e:
            raise DecodeError(f"cannot read {image_path}: {e}") from e
        return decode_raw_buffer(self, data, os.path.splitext(image_path)[1], image_path)
