import logging
from typing import Optional

from plugins.base_plugin import PluginRegistry
from plugins.pil_plugin import PILPlugin
from plugins.raw_plugin import RawPlugin
from plugins.tiff_plugin import TiffPlugin
from plugins.video_plugin import VideoPlugin

logger = logging.getLogger(__name__)


def load_plugins(registry: Optional[PluginRegistry] = None,
                 use_exiftool: bool = True) -> PluginRegistry:
    """
    Register one plugin per media class and return the registry.

    Plugins are registered in a fixed order so that the dedicated RAW and
    TIFF plugins own their extensions regardless of what the raster plugin
    claims.
    """
    if registry is None:
        registry = PluginRegistry()
    registry.register_plugin(PILPlugin())
    registry.register_plugin(TiffPlugin())
    registry.register_plugin(RawPlugin(use_exiftool=use_exiftool))
    registry.register_plugin(VideoPlugin())
    logger.info("Loaded %d plugins covering %d formats",
                len(registry.plugins), len(registry.get_supported_formats()))
    return registry
