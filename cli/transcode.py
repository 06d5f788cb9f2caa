#!/usr/bin/env python3
"""Transcode videos to 480p preview clips (skip existing).

Usage:
    imagefind-transcode [scan_folder] [target_folder] [num_jobs]

    scan_folder    folder searched recursively for videos (default: .)
    target_folder  where <name>_480p.mp4 clips are written
                   (default: cache.video_preview_dir from the config)
    num_jobs       parallel ffmpeg processes (default: 5)
"""

import logging
import sys

from config.config_manager import ConfigManager
from core.video_previews import DEFAULT_JOBS, transcode_directory


def main():
    args = sys.argv[1:]
    if len(args) > 3 or any(a in ("-h", "--help") for a in args):
        print(__doc__.strip())
        sys.exit(0 if args and args[0] in ("-h", "--help") else 1)

    logging.basicConfig(level=logging.INFO, format='%(asctime)s [%(levelname)s] %(message)s')

    scan_dir = args[0] if len(args) > 0 else "."
    if len(args) > 1:
        target_dir = args[1]
    else:
        target_dir = ConfigManager().get_path("cache.video_preview_dir")
    try:
        jobs = int(args[2]) if len(args) > 2 else DEFAULT_JOBS
    except ValueError:
        print(f"num_jobs must be an integer, got {args[2]!r}", file=sys.stderr)
        sys.exit(1)

    try:
        report = transcode_directory(scan_dir, target_dir, jobs=jobs)
    except RuntimeError as e:
        print(str(e), file=sys.stderr)
        sys.exit(1)

    print(f"Done. {len(report.transcoded)} transcoded, {len(report.skipped)} skipped, "
          f"{len(report.failed)} failed.")
    if report.failed:
        sys.exit(1)


if __name__ == "__main__":
    main()
