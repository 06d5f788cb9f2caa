"""
Shared pytest fixtures for imagefind tests.
"""
import io
import os
import sqlite3
import sys

# Ensure project root is on path for all tests
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

import numpy as np
import pytest
from PIL import Image

from core.cache_store import CacheStore
from plugins.plugin_loader import load_plugins


def noise_jpeg(width: int, height: int, quality: int = 95, seed: int = 0) -> bytes:
    """JPEG of random pixels: incompressible enough to clear the size floors."""
    rng = np.random.default_rng(seed)
    pixels = rng.integers(0, 256, size=(height, width, 3), dtype=np.uint8)
    buf = io.BytesIO()
    Image.fromarray(pixels).save(buf, "JPEG", quality=quality)
    return buf.getvalue()


def fake_raw(jpeg: bytes, header: bytes = b"II*\x00", padding: int = 4096) -> bytes:
    """A RAW-like container: a header, zero filler, the JPEG, more filler."""
    return header + b"\x00" * padding + jpeg + b"\x00" * padding


def create_registry(db_path: str, paths) -> str:
    conn = sqlite3.connect(db_path)
    try:
        conn.execute("CREATE TABLE file (path TEXT PRIMARY KEY)")
        conn.executemany("INSERT INTO file (path) VALUES (?)", [(p,) for p in paths])
        conn.commit()
    finally:
        conn.close()
    return db_path


@pytest.fixture()
def cache_store(tmp_path):
    return CacheStore(str(tmp_path / "thumbnails"), str(tmp_path / "previews"))


@pytest.fixture()
def plugin_registry():
    """Full plugin set with the external exiftool strategy switched off."""
    return load_plugins(use_exiftool=False)


@pytest.fixture()
def sample_images(tmp_path):
    """Creates 5 small JPEG images and returns their paths."""
    img_dir = tmp_path / "images"
    img_dir.mkdir()
    paths: list[str] = []
    for i in range(5):
        path = img_dir / f"image_{i:04d}.jpg"
        color = (i * 40 % 255, i * 7 % 255, i * 3 % 255)
        Image.new("RGB", (800, 600), color=color).save(str(path), "JPEG")
        paths.append(str(path))
    return paths
