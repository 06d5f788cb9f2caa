"""Sample-level colour helpers shared by the TIFF decoder and the JPEG encoder."""
import numpy as np
from PIL import Image

# ITU-R BT.601 full-range coefficients.
_CR_TO_R = 1.402
_CB_TO_G = 0.344136
_CR_TO_G = 0.714136
_CB_TO_B = 1.772

_SIXTEEN_BIT_MODES = ("I;16", "I;16L", "I;16B", "I;16N", "I")


def high_byte(samples: np.ndarray) -> np.ndarray:
    """Reduce 16-bit samples to 8 bits by keeping the most significant byte."""
    wide = np.clip(samples.astype(np.int64), 0, 0xFFFF)
    return (wide >> 8).astype(np.uint8)


def gray_to_rgb(samples: np.ndarray) -> np.ndarray:
    return np.repeat(samples[..., np.newaxis], 3, axis=-1)


def ycbcr_to_rgb(samples: np.ndarray) -> np.ndarray:
    """Convert an (h, w, 3) YCbCr array of 8-bit samples to RGB."""
    ycc = samples.astype(np.float32)
    y = ycc[..., 0]
    cb = ycc[..., 1] - 128.0
    cr = ycc[..., 2] - 128.0
    rgb = np.stack(
        (
            y + _CR_TO_R * cr,
            y - _CB_TO_G * cb - _CR_TO_G * cr,
            y + _CB_TO_B * cb,
        ),
        axis=-1,
    )
    return np.clip(rgb, 0.0, 255.0).astype(np.uint8)


def to_rgb(img: Image.Image) -> Image.Image:
    """Return an 8-bit RGB image suitable for the JPEG encoder."""
    if img.mode == "RGB":
        return img
    if img.mode in _SIXTEEN_BIT_MODES:
        return Image.fromarray(gray_to_rgb(high_byte(np.asarray(img))))
    if img.mode == "F":
        gray = np.clip(np.asarray(img), 0.0, 255.0).astype(np.uint8)
        return Image.fromarray(gray_to_rgb(gray))
    return img.convert("RGB")
