import io
import logging
import os
from typing import List

from PIL import Image

from .base_plugin import BasePlugin, DecodeError, DecodeStrategy, MediaClass
from .embedded_preview import decode_candidates, locate_candidates
from .exiftool_process import is_exiftool_available

logger = logging.getLogger(__name__)

# Orientation lives in the TIFF/EXIF header at the start of the container.
_HEADER_SCAN_BYTES = 256 * 1024


class RawPlugin(BasePlugin):
    """Plugin for camera RAW formats with a dedicated preview-extraction path."""

    media_class = MediaClass.RAW

    def __init__(self, use_exiftool: bool = True):
        self.use_exiftool = use_exiftool

    def get_supported_formats(self) -> List[str]:
        return [
            ".nef",   # Nikon
            ".cr2",   # Canon
            ".cr3",   # Canon
            ".arw",   # Sony
            ".orf",   # Olympus / OM System
            ".rw2",   # Panasonic
            ".raf",   # Fujifilm
            ".dng",   # Adobe / universal
        ]

    def strategies(self, file_extension: str) -> List[DecodeStrategy]:
        chain = []
        if self.use_exiftool:
            chain.append(DecodeStrategy("exiftool preview", self.decode_with_exiftool))
        chain.append(DecodeStrategy("embedded preview", self.decode_embedded))
        return chain

    def decode_with_exiftool(self, image_path: str) -> Image.Image:
        if not is_exiftool_available():
            raise DecodeError("exiftool is not available")
        try:
            data = self._get_exiftool().largest_preview(image_path)
        except (OSError, RuntimeError, TimeoutError) as e:
            raise DecodeError(f"exiftool extraction failed: {e}") from e
        if not data:
            raise DecodeError("exiftool found no preview image")
        try:
            img = Image.open(io.BytesIO(data))
            img.load()
        except (OSError, ValueError) as e:
            raise DecodeError(f"exiftool preview is not decodable: {e}") from e
        return self._apply_orientation(img, self._get_orientation(image_path))

    def decode_embedded(self, image_path: str) -> Image.Image:
        try:
            with open(image_path, "rb") as f:
                data = f.read()
        except OSError as e:
            raise DecodeError(f"cannot read {image_path}: {e}") from e
        return decode_raw_buffer(self, data, os.path.splitext(image_path)[1], image_path)

    def _get_orientation(self, image_path: str) -> int:
        """Extract EXIF Orientation via a fast binary scan of the file header."""
        try:
            with open(image_path, "rb") as f:
                buf = f.read(_HEADER_SCAN_BYTES)
            return self._scan_exif_orientation(buf)
        except OSError as e:
            logger.warning("Could not read orientation from %s: %s", image_path, e)
        return 1


def decode_raw_buffer(plugin: BasePlugin, data: bytes, file_extension: str,
                      source: str) -> Image.Image:
    """Locate, decode and orient the best embedded JPEG in a RAW file buffer."""
    candidates = locate_candidates(data, file_extension)
    logger.debug("%d embedded JPEG candidate(s) in %s", len(candidates), source)
    img = decode_candidates(data, candidates, source)
    orientation = plugin._scan_exif_orientation(data[:_HEADER_SCAN_BYTES])
    return plugin._apply_orientation(img, orientation)
