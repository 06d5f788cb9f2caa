"""
Persistent exiftool process (``-stay_open`` mode) used to pull embedded
preview images out of RAW files.

Each worker thread owns one process so the Perl start-up cost is paid once
per thread instead of once per file. Commands are tagged with numbered
``-execute`` IDs, which makes the end-of-output sentinel safe to detect in
arbitrary binary output.
"""
import functools
import logging
import select
import subprocess
import threading
import time
from typing import List, Optional, Tuple

logger = logging.getLogger(__name__)

# Binary preview tags, in the order exiftool is asked for them.
PREVIEW_TAGS: Tuple[str, ...] = ("JpgFromRaw", "PreviewImage", "OtherImage")

_RESPONSE_TIMEOUT = 30.0

_all_processes: List["ExifToolProcess"] = []
_registry_lock = threading.Lock()


@functools.lru_cache(maxsize=1)
def is_exiftool_available() -> bool:
    """Return True if exiftool is on PATH. Result is cached after the first call."""
    try:
        subprocess.run(["exiftool", "-ver"], capture_output=True, check=True, timeout=5)
        return True
    except (subprocess.CalledProcessError, FileNotFoundError, subprocess.TimeoutExpired):
        logger.warning("exiftool not found or unavailable.")
        return False


class ExifToolProcess:
    """Wraps a single persistent exiftool -stay_open process."""

    def __init__(self) -> None:
        self._process = self._spawn()
        self._counter = 0
        with _registry_lock:
            _all_processes.append(self)

    def _spawn(self) -> subprocess.Popen:
        return subprocess.Popen(
            ["exiftool", "-stay_open", "True", "-@", "-"],
            stdin=subprocess.PIPE,
            stdout=subprocess.PIPE,
            stderr=subprocess.DEVNULL,
        )

    def execute(self, args: List[str]) -> bytes:
        """Send args to the persistent process and return its stdout bytes.

        A broken or hung process is restarted once and the command retried.
        """
        try:
            return self._do_execute(args)
        except (OSError, RuntimeError, TimeoutError) as e:
            logger.warning("exiftool command failed (%s); restarting process.", e)
            self._restart()
            return self._do_execute(args)

    def extract_binary(self, tag: str, path: str) -> Optional[bytes]:
        """Return the binary value of *tag* in *path*, or None if it is absent."""
        data = self.execute([f"-{tag}", "-b", path])
        return data or None

    def largest_preview(self, path: str) -> Optional[bytes]:
        """Return the largest JPEG preview exiftool can extract from *path*."""
        best: Optional[bytes] = None
        for tag in PREVIEW_TAGS:
            data = self.extract_binary(tag, path)
            if not data or not data.startswith(b"\xff\xd8"):
                continue
            logger.debug("exiftool %s: %d bytes from %s", tag, len(data), path)
            if best is None or len(data) > len(best):
                best = data
        return best

    def _do_execute(self, args: List[str], timeout: float = _RESPONSE_TIMEOUT) -> bytes:
        self._counter += 1
        exec_id = self._counter
        sentinel = f"{{ready{exec_id}}}\n".encode()

        cmd = "\n".join(args) + f"\n-execute{exec_id}\n"
        self._process.stdin.write(cmd.encode())  # type: ignore[union-attr]
        self._process.stdin.flush()              # type: ignore[union-attr]

        output = bytearray()
        deadline = time.monotonic() + timeout
        while not output.endswith(sentinel):
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise TimeoutError(f"exiftool did not respond within {timeout}s")
            ready, _, _ = select.select([self._process.stdout], [], [], remaining)
            if not ready:
                raise TimeoutError(f"exiftool did not respond within {timeout}s")
            chunk = self._process.stdout.read1(65536)  # type: ignore[union-attr]
            if not chunk:
                raise RuntimeError("exiftool process closed stdout unexpectedly")
            output.extend(chunk)

        del output[-len(sentinel):]
        return bytes(output)

    def _restart(self) -> None:
        self._kill()
        self._process = self._spawn()
        self._counter = 0
        logger.info("exiftool process restarted.")

    def _kill(self) -> None:
        try:
            self._process.kill()
            self._process.wait(timeout=2)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug("exiftool kill: %s", e)

    def terminate(self) -> None:
        """Ask exiftool to exit cleanly, then force-kill if needed."""
        try:
            self._process.stdin.write(b"-stay_open\nFalse\n")  # type: ignore[union-attr]
            self._process.stdin.flush()                         # type: ignore[union-attr]
            self._process.wait(timeout=5)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.debug("exiftool did not exit cleanly: %s", e)
        finally:
            self._kill()


def shutdown_all() -> None:
    """Terminate every registered ExifToolProcess. Called at daemon shutdown."""
    with _registry_lock:
        processes = list(_all_processes)
        _all_processes.clear()
    for proc in processes:
        proc.terminate()
    logger.info("Terminated %d exiftool process(es).", len(processes))
