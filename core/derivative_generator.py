"""
Cache-through derivative generation shared by interactive requests and the
background stages: normalise the path, serve a cached entry if there is
one, otherwise decode, scale, encode and write the result back.
"""
import logging
import os
from typing import Optional

from core.cache_store import CacheStore, DerivativeTier, derive_key
from plugins.base_plugin import DecodeError, PluginRegistry
from utils.scaling import ResizeHook, render_jpeg

logger = logging.getLogger(__name__)

SIDECAR_SUFFIX = ".xmp"


def normalize_source_path(source_path: str) -> str:
    """Map a sidecar path (``img.cr2.xmp``) to the media file it describes."""
    if source_path.lower().endswith(SIDECAR_SUFFIX):
        return source_path[:-len(SIDECAR_SUFFIX)]
    return source_path


class DerivativeGenerator:
    """
    Single entry point for producing derivative JPEGs: cache lookup, then the
    decoder chain, then write-through. Callable from any number of threads.
    """

    def __init__(self, cache_store: CacheStore, plugin_registry: PluginRegistry,
                 resize_hook: Optional[ResizeHook] = None):
        self.cache_store = cache_store
        self.plugin_registry = plugin_registry
        self.resize_hook = resize_hook

    def is_cached(self, source_path: str, tier: DerivativeTier) -> bool:
        return self.cache_store.exists(tier, derive_key(normalize_source_path(source_path)))

    def generate(self, source_path: str, tier: DerivativeTier, force: bool = False) -> Optional[bytes]:
        """
        Return the tier's JPEG for *source_path*, or None when the source is
        missing or no strategy could decode it.

        ``force`` skips the cache read but still writes the fresh result back.
        """
        path = normalize_source_path(source_path)
        if not os.path.exists(path):
            logger.debug("Source not found: %s", path)
            return None

        key = derive_key(path)
        if not force:
            cached = self.cache_store.read(tier, key)
            if cached is not None:
                logger.debug("%s cache hit for %s", tier.label, path)
                return cached
        logger.debug("%s cache miss for %s", tier.label, path)

        try:
            img = self.plugin_registry.decode(path)
            data = render_jpeg(img, tier.max_dimension, tier.quality, self.resize_hook)
        except DecodeError as e:
            logger.error("No %s for %s: %s", tier.label, path, e)
            return None
        except (OSError, ValueError) as e:
            logger.error("Encoding %s failed for %s: %s", tier.label, path, e)
            return None

        try:
            self.cache_store.write(tier, key, data)
        except OSError as e:
            logger.error("Failed to cache %s for %s: %s", tier.label, path, e)
        logger.info("Generated %s for %s (%d bytes)", tier.label, path, len(data))
        return data
