"""
Content-addressed disk cache for derivative JPEGs.

An entry is ``<tier_root>/<sha256(path)>.jpg`` and nothing else: no index, no
sidecar metadata. Entries are created on the first successful generation and
never updated, invalidated or evicted here; a changed source keeps serving
the old derivative until someone deletes the file.
"""
import enum
import hashlib
import logging
import os
import tempfile
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class CacheRootError(OSError):
    """A tier's cache root does not exist and cannot be created."""


class DerivativeTier(enum.Enum):
    THUMBNAIL = ("thumbnail", 200, 50)
    PREVIEW = ("preview", 1980, 60)

    def __init__(self, label: str, max_dimension: int, quality: int):
        self.label = label
        self.max_dimension = max_dimension
        self.quality = quality


def derive_key(source_path: str) -> str:
    """Cache key for an already-normalised source path: 64 hex characters."""
    return hashlib.sha256(source_path.encode("utf-8")).hexdigest()


class CacheStore:
    """Tier-partitioned JPEG cache. Safe to share between threads."""

    def __init__(self, thumbnail_dir: str, preview_dir: str):
        self._roots: Dict[DerivativeTier, str] = {
            DerivativeTier.THUMBNAIL: os.path.expanduser(thumbnail_dir),
            DerivativeTier.PREVIEW: os.path.expanduser(preview_dir),
        }

    def cache_root(self, tier: DerivativeTier) -> str:
        """Return the tier's root directory, (re)creating it if it is missing."""
        root = self._roots[tier]
        try:
            os.makedirs(root, exist_ok=True)
        except OSError as e:
            raise CacheRootError(e.errno, f"cannot create {tier.label} cache root {root}: {e.strerror}") from e
        return root

    def entry_path(self, tier: DerivativeTier, key: str) -> str:
        return os.path.join(self.cache_root(tier), f"{key}.jpg")

    def exists(self, tier: DerivativeTier, key: str) -> bool:
        return os.path.isfile(os.path.join(self._roots[tier], f"{key}.jpg"))

    def read(self, tier: DerivativeTier, key: str) -> Optional[bytes]:
        """Cached bytes, or None if the entry is absent or unreadable."""
        path = os.path.join(self._roots[tier], f"{key}.jpg")
        try:
            with open(path, "rb") as f:
                return f.read()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.warning("Unreadable %s cache entry %s, treating as miss: %s", tier.label, path, e)
            return None

    def write(self, tier: DerivativeTier, key: str, data: bytes) -> str:
        """
        Store *data* as the entry for *key*, replacing any existing file.

        The bytes go to a temporary file in the same directory first, so a
        reader never sees a half-written JPEG. Concurrent writers for the same
        key race harmlessly; the last rename wins. Raises OSError.
        """
        root = self.cache_root(tier)
        path = os.path.join(root, f"{key}.jpg")
        fd, tmp_path = tempfile.mkstemp(dir=root, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as f:
                f.write(data)
            os.replace(tmp_path, path)
        except OSError:
            try:
                os.unlink(tmp_path)
            except OSError:
                pass
            raise
        logger.debug("Wrote %s cache entry %s (%d bytes)", tier.label, path, len(data))
        return path
