"""
480p preview clips for videos.

Clips live flat in the video-preview root as ``<stem>_480p.mp4``. The
request path only looks them up; ``transcode_directory`` produces them in
bulk with ffmpeg.
"""
import logging
import os
import subprocess
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, List, Optional

from plugins.video_plugin import VIDEO_EXTENSIONS, is_ffmpeg_available

logger = logging.getLogger(__name__)

PREVIEW_SUFFIX = "_480p.mp4"
DEFAULT_JOBS = 5


def transcoded_preview_path(video_preview_dir: str, source_path: str) -> str:
    stem = os.path.splitext(os.path.basename(source_path))[0]
    return os.path.join(os.path.expanduser(video_preview_dir), stem + PREVIEW_SUFFIX)


def find_transcoded_preview(video_preview_dir: str, source_path: str) -> Optional[str]:
    """Path of the pre-transcoded clip for *source_path*, or None if there is none."""
    path = transcoded_preview_path(video_preview_dir, source_path)
    if os.path.isfile(path):
        return path
    logger.debug("No transcoded preview for %s", source_path)
    return None


def transcode_command(source_path: str, output_path: str) -> List[str]:
    return [
        "ffmpeg", "-hide_banner", "-loglevel", "error",
        "-i", source_path,
        "-vf", "scale=-2:480",
        "-c:v", "libx264", "-preset", "medium",
        "-r", "25",
        "-c:a", "aac", "-b:a", "128k",
        output_path,
    ]


def transcode_preview(source_path: str, video_preview_dir: str) -> Optional[str]:
    """
    Transcode one video into the preview root. Existing clips are left alone.
    Returns the clip path, or None when ffmpeg failed.
    """
    output_path = transcoded_preview_path(video_preview_dir, source_path)
    if os.path.exists(output_path):
        logger.info("Skipping %s, %s already exists", source_path, output_path)
        return output_path

    logger.info("Transcoding %s -> %s", source_path, output_path)
    try:
        subprocess.run(transcode_command(source_path, output_path),
                       capture_output=True, check=True)
    except subprocess.CalledProcessError as e:
        stderr = e.stderr.decode(errors="replace").strip() if e.stderr else ""
        logger.error("ffmpeg failed for %s (exit %d): %s", source_path, e.returncode, stderr)
        _remove_partial(output_path)
        return None
    except OSError as e:
        logger.error("Could not run ffmpeg for %s: %s", source_path, e)
        return None
    return output_path


def _remove_partial(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as e:
        logger.warning("Could not remove partial clip %s: %s", path, e)


def find_videos(scan_dir: str) -> List[str]:
    videos = []
    for root, _dirs, files in os.walk(scan_dir):
        for name in files:
            if os.path.splitext(name)[1].lower() in VIDEO_EXTENSIONS:
                videos.append(os.path.join(root, name))
    return sorted(videos)


@dataclass
class TranscodeReport:
    transcoded: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    failed: List[str] = field(default_factory=list)


def transcode_directory(scan_dir: str, video_preview_dir: str,
                        jobs: int = DEFAULT_JOBS,
                        sources: Optional[Iterable[str]] = None) -> TranscodeReport:
    """Transcode every video under *scan_dir* with up to *jobs* ffmpeg processes at once."""
    if not is_ffmpeg_available():
        raise RuntimeError("ffmpeg is required for transcoding but was not found")
    os.makedirs(os.path.expanduser(video_preview_dir), exist_ok=True)

    report = TranscodeReport()
    pending = []
    for source in (sources if sources is not None else find_videos(scan_dir)):
        if os.path.exists(transcoded_preview_path(video_preview_dir, source)):
            report.skipped.append(source)
        else:
            pending.append(source)

    with ThreadPoolExecutor(max_workers=max(1, jobs), thread_name_prefix="transcode") as pool:
        results = pool.map(lambda src: (src, transcode_preview(src, video_preview_dir)), pending)
        for source, output in results:
            (report.transcoded if output else report.failed).append(source)

    logger.info("Transcoding done: %d new, %d skipped, %d failed",
                len(report.transcoded), len(report.skipped), len(report.failed))
    return report
