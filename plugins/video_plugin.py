import functools
import io
import subprocess
import logging
from typing import List

from PIL import Image

from plugins.base_plugin import BasePlugin, DecodeError, DecodeStrategy, MediaClass

logger = logging.getLogger(__name__)

VIDEO_EXTENSIONS = [
    '.mp4', '.avi', '.mov', '.wmv', '.flv', '.webm', '.mkv', '.m4v',
    '.3gp', '.ogv',
]

# Bounding box of the extracted frame; the tier scaling happens afterwards.
FRAME_BOX = 200


@functools.lru_cache(maxsize=1)
def is_ffmpeg_available() -> bool:
    try:
        subprocess.run(
            ["ffmpeg", "-version"],
            capture_output=True, check=True, timeout=5,
        )
        return True
    except (FileNotFoundError, subprocess.SubprocessError):
        logger.warning("ffmpeg not found or unavailable.")
        return False


def extract_frame(video_path: str) -> Image.Image:
    """Pull one frame out of *video_path*, scaled into the frame box, via ffmpeg."""
    if not is_ffmpeg_available():
        raise DecodeError("ffmpeg is not available")
    try:
        result = subprocess.run(
            [
                "ffmpeg", "-v", "error",
                "-i", video_path,
                "-vf", f"scale={FRAME_BOX}:{FRAME_BOX}:force_original_aspect_ratio=decrease",
                "-frames:v", "1",
                "-q:v", "2",
                "-f", "image2pipe",
                "-vcodec", "mjpeg",
                "pipe:1",
            ],
            capture_output=True, check=True,
        )
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.decode(errors="replace").strip() if e.stderr else ""
        raise DecodeError(f"ffmpeg exited with {e.returncode}: {stderr}") from e
    except (OSError, subprocess.SubprocessError) as e:
        raise DecodeError(f"ffmpeg failed: {e}") from e

    if not result.stdout:
        raise DecodeError("ffmpeg produced no frame")
    try:
        img = Image.open(io.BytesIO(result.stdout))
        img.load()
    except (OSError, ValueError) as e:
        raise DecodeError(f"ffmpeg frame is not decodable: {e}") from e
    return img


class VideoPlugin(BasePlugin):

    media_class = MediaClass.VIDEO

    def get_supported_formats(self) -> List[str]:
        return VIDEO_EXTENSIONS

    def strategies(self, file_extension: str) -> List[DecodeStrategy]:
        return [DecodeStrategy("ffmpeg frame", extract_frame)]
