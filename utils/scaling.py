"""
Scaling policy applied to every decoded source before it is written as a
derivative JPEG.

Small sources are re-encoded untouched, very large sources are shrunk in two
passes (a fast bilinear pass to an intermediate box, then a bicubic pass to
the target box), everything else gets a single bicubic pass. The bounding box
is a maximum: aspect ratio is kept and nothing is ever upscaled.
"""
import io
import logging
from typing import Callable, Optional, Tuple

from PIL import Image

from utils.color import to_rgb

logger = logging.getLogger(__name__)

PASSTHROUGH_MAX = 400
LARGE_SOURCE_MIN = 2000
INTERMEDIATE_FACTOR = 4

FAST_FILTER = Image.Resampling.BILINEAR
QUALITY_FILTER = Image.Resampling.BICUBIC

# Called as hook(filter, (width, height)) for every resize that is performed.
ResizeHook = Callable[[Image.Resampling, Tuple[int, int]], None]


def fit_within(width: int, height: int, box: int) -> Tuple[int, int]:
    ratio = min(box / width, box / height, 1.0)
    return max(1, round(width * ratio)), max(1, round(height * ratio))


def _resize(img: Image.Image, size: Tuple[int, int], resample: Image.Resampling,
            hook: Optional[ResizeHook]) -> Image.Image:
    if hook is not None:
        hook(resample, size)
    return img.resize(size, resample)


def scale_image(img: Image.Image, max_dimension: int,
                resize_hook: Optional[ResizeHook] = None) -> Image.Image:
    width, height = img.size
    if width <= PASSTHROUGH_MAX and height <= PASSTHROUGH_MAX:
        logger.debug("Small source (%dx%d), re-encoding without resize", width, height)
        return img

    if width > LARGE_SOURCE_MIN or height > LARGE_SOURCE_MIN:
        # Halfway to the target at most, so the quality pass always has work to do.
        longest = max(width, height)
        intermediate_box = min(max_dimension * INTERMEDIATE_FACTOR, (longest + max_dimension) // 2)
        if intermediate_box < longest:
            logger.debug("Large source (%dx%d), fast pass to %d box", width, height, intermediate_box)
            img = _resize(img, fit_within(width, height, intermediate_box), FAST_FILTER, resize_hook)

    target = fit_within(img.width, img.height, max_dimension)
    if target != img.size:
        img = _resize(img, target, QUALITY_FILTER, resize_hook)
    return img


def encode_jpeg(img: Image.Image, quality: int) -> bytes:
    buf = io.BytesIO()
    to_rgb(img).save(buf, "JPEG", quality=quality)
    return buf.getvalue()


def render_jpeg(img: Image.Image, max_dimension: int, quality: int,
                resize_hook: Optional[ResizeHook] = None) -> bytes:
    """Scale *img* to fit *max_dimension* and return it as JPEG bytes."""
    return encode_jpeg(scale_image(to_rgb(img), max_dimension, resize_hook), quality)
