import os
import logging
import struct
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Dict, List, Optional, Set, Tuple, Type

from PIL import Image

from plugins.exiftool_process import ExifToolProcess

logger = logging.getLogger(__name__)


class MediaClass(Enum):
    RASTER = "raster"
    TIFF = "tiff"
    RAW = "raw"
    VIDEO = "video"


class DecodeError(Exception):
    """A decode strategy could not produce a usable image."""


class UnsupportedFormatError(DecodeError):
    """The generic raster decoder does not recognise the file's format."""


class NoUsablePreviewError(DecodeError):
    """Every embedded JPEG candidate in a RAW file was rejected."""


@dataclass(frozen=True)
class DecodeStrategy:
    """One step of a plugin's fallback chain.

    ``func`` takes the source path and returns a decoded image or raises
    DecodeError. ``runs_after`` restricts the step to chains whose previous
    failure is one of the listed error types; the first step always runs.
    """
    name: str
    func: Callable[[str], Image.Image]
    runs_after: Tuple[Type[DecodeError], ...] = (DecodeError,)


class PluginRegistry:
    """Maps file extensions to the plugin that owns their media class."""

    def __init__(self):
        self.plugins: Dict[str, 'BasePlugin'] = {}
        self.format_map: Dict[str, 'BasePlugin'] = {}

    def register_plugin(self, plugin: 'BasePlugin'):
        plugin_name = plugin.__class__.__name__
        self.plugins[plugin_name] = plugin

        formats = plugin.get_supported_formats()
        for ext in formats:
            if ext in self.format_map:
                logger.warning("Format %s already registered by %s, overriding with %s",
                               ext, self.format_map[ext].__class__.__name__, plugin_name)
            self.format_map[ext] = plugin
        logger.debug("Plugin %s registered for %s: %s",
                     plugin_name, plugin.media_class.value, ", ".join(formats))

    def get_plugin_for_format(self, file_extension: str) -> Optional['BasePlugin']:
        if not file_extension.startswith('.'):
            file_extension = '.' + file_extension
        return self.format_map.get(file_extension.lower())

    def get_supported_formats(self) -> Set[str]:
        return set(self.format_map.keys())

    def classify(self, image_path: str) -> Optional[MediaClass]:
        plugin = self.get_plugin_for_format(os.path.splitext(image_path)[1])
        return plugin.media_class if plugin else None

    def decode(self, image_path: str) -> Image.Image:
        """Decode *image_path* with the chain of the plugin owning its extension."""
        ext = os.path.splitext(image_path)[1].lower()
        plugin = self.get_plugin_for_format(ext) if ext else None
        if plugin is None:
            raise UnsupportedFormatError(f"no plugin for extension '{ext}' ({image_path})")
        return plugin.decode(image_path)


class BasePlugin(ABC):
    """Base class for the per-media-class decoder plugins."""

    media_class: MediaClass

    @abstractmethod
    def get_supported_formats(self) -> List[str]:
        """Return list of supported file extensions (with dots, lowercase)."""

    @abstractmethod
    def strategies(self, file_extension: str) -> List[DecodeStrategy]:
        """Ordered decode strategies for a file with the given extension."""

    def decode(self, image_path: str) -> Image.Image:
        """Run the fallback chain; the first strategy that succeeds wins."""
        ext = os.path.splitext(image_path)[1].lower()
        failures: List[str] = []
        last_error: Optional[DecodeError] = None
        for strategy in self.strategies(ext):
            if last_error is not None and not isinstance(last_error, strategy.runs_after):
                logger.debug("Skipping %s for %s after %s", strategy.name, image_path,
                             type(last_error).__name__)
                continue
            logger.debug("Trying %s for %s", strategy.name, image_path)
            try:
                img = strategy.func(image_path)
            except DecodeError as e:
                logger.warning("%s failed for %s: %s", strategy.name, image_path, e)
                failures.append(f"{strategy.name}: {e}")
                last_error = e
                continue
            logger.debug("%s decoded %s (%dx%d)", strategy.name, image_path, img.width, img.height)
            return img
        raise DecodeError(f"all strategies failed for {image_path} ({'; '.join(failures)})")

    # Thread-local storage for per-thread ExifToolProcess instances.
    _local = threading.local()

    def _get_exiftool(self) -> ExifToolProcess:
        """Return (or lazily create) the per-thread ExifToolProcess."""
        if not hasattr(self._local, "proc"):
            self._local.proc = ExifToolProcess()
        return self._local.proc

    def _apply_orientation(self, img: Image.Image, orientation: int) -> Image.Image:
        """Apply rotation/flip to a PIL Image based on the EXIF Orientation tag value."""
        T = Image.Transpose
        ops = {
            2: T.FLIP_LEFT_RIGHT,
            3: T.ROTATE_180,
            4: T.FLIP_TOP_BOTTOM,
            5: T.TRANSPOSE,
            6: T.ROTATE_270,
            7: T.TRANSVERSE,
            8: T.ROTATE_90,
        }
        op = ops.get(orientation)
        if op is not None:
            img = img.transpose(op)
        return img

    @staticmethod
    def _scan_exif_orientation(buf: bytes) -> int:
        """
        Fast binary scan for the EXIF Orientation IFD entry (tag 0x0112, SHORT,
        count 1) in either byte order. Returns the orientation value, or 1 if
        not found.
        """
        for tag_sig, fmt in ((b"\x12\x01\x03\x00\x01\x00\x00\x00", "<H"),
                             (b"\x01\x12\x00\x03\x00\x00\x00\x01", ">H")):
            pos = buf.find(tag_sig)
            if pos != -1:
                try:
                    value = struct.unpack(fmt, buf[pos + 8: pos + 10])[0]
                except struct.error:
                    continue
                if 1 <= value <= 8:
                    return value
        return 1
