"""
Locate camera-embedded JPEG previews inside RAW files without a RAW decoder.

Three scanners produce ``EmbeddedJpegCandidate`` ranges over the raw file
bytes:

* ``find_jpegs`` - generic: every SOI ... first following EOI range larger
  than 50 KB.
* ``find_raf_jpegs`` - Fujifilm: gated on the RAF file signature, scans past
  the header and steps over APPn segments so EOI-like bytes in their
  payloads do not cut the stream short. Floor 10 KB.
* ``find_nef_jpegs`` - Nikon: a marker-by-marker walk of the JPEG syntax
  (segment lengths, scan headers, byte stuffing, restart markers) that
  delimits complete streams precisely. Floor 3 KB, since Nikon previews run
  smaller.

``locate_candidates`` picks the scanner by extension and falls back to the
generic one when a format-specific scan finds nothing. ``decode_candidates``
then tries the ranges largest-first and returns the first one that decodes
to a usable size.
"""
import io
import logging
from typing import List, NamedTuple

from PIL import Image

from plugins.base_plugin import NoUsablePreviewError

logger = logging.getLogger(__name__)

SOI = b"\xff\xd8"
EOI = b"\xff\xd9"

GENERIC_MIN_SIZE = 50_000
RAF_MIN_SIZE = 10_000
NEF_MIN_SIZE = 3_000

RAF_SIGNATURE = b"FUJIFILMCCD-RAW "
RAF_HEADER_SKIP = 100

MIN_PREVIEW_DIMENSION = 200
MIN_HEADER_BYTES = 10

# Markers that stand alone, without a length field.
_RST_MARKERS = range(0xD0, 0xD8)
_MARKER_SOI = 0xD8
_MARKER_EOI = 0xD9
_MARKER_SOS = 0xDA
_MARKER_TEM = 0x01
_STUFFED = 0x00
_FILL = 0xFF


class EmbeddedJpegCandidate(NamedTuple):
    start: int
    end: int
    length: int


def _segment_length(data: bytes, pos: int) -> int:
    return (data[pos] << 8) | data[pos + 1]


def _by_size(candidates: List[EmbeddedJpegCandidate]) -> List[EmbeddedJpegCandidate]:
    return sorted(candidates, key=lambda c: c.length, reverse=True)


def find_jpegs(data: bytes, min_size: int = GENERIC_MIN_SIZE) -> List[EmbeddedJpegCandidate]:
    candidates = []
    i = data.find(SOI)
    while i != -1:
        eoi = data.find(EOI, i + 2)
        if eoi == -1:
            # No end marker after this start; none after any later start either.
            break
        end = eoi + 2
        if end - i > min_size:
            candidates.append(EmbeddedJpegCandidate(i, end, end - i))
            logger.debug("JPEG candidate: %d bytes at offset %d", end - i, i)
        i = data.find(SOI, end)
    logger.debug("Generic scan found %d JPEG candidate(s)", len(candidates))
    return _by_size(candidates)


def _raf_stream_end(data: bytes, start: int) -> int:
    """Return the offset just past the EOI of the stream at *start*, or -1."""
    n = len(data)
    pos = start + 2
    while pos < n - 1:
        pos = data.find(b"\xff", pos, n - 1)
        if pos == -1:
            return -1
        marker = data[pos + 1]
        if marker == _MARKER_EOI:
            return pos + 2
        if 0xE0 <= marker <= 0xEF and pos + 3 < n:
            pos += 2 + _segment_length(data, pos + 2)
            continue
        pos += 1
    return -1


def find_raf_jpegs(data: bytes, min_size: int = RAF_MIN_SIZE) -> List[EmbeddedJpegCandidate]:
    if len(data) <= len(RAF_SIGNATURE) or not data.startswith(RAF_SIGNATURE):
        logger.debug("RAF signature missing, skipping RAF scan")
        return []

    candidates = []
    i = data.find(SOI, RAF_HEADER_SKIP)
    while i != -1:
        end = _raf_stream_end(data, i)
        if end == -1:
            i = data.find(SOI, i + 2)
            continue
        if end - i > min_size:
            candidates.append(EmbeddedJpegCandidate(i, end, end - i))
            logger.debug("RAF JPEG candidate: %d bytes at offset %d", end - i, i)
        i = data.find(SOI, end)
    logger.debug("RAF scan found %d JPEG candidate(s)", len(candidates))
    return _by_size(candidates)


def _walk_jpeg_stream(data: bytes, start: int) -> int:
    """
    Walk the marker structure of the stream beginning at *start*.

    Returns the offset just past its EOI, or -1 when the stream is truncated
    or another SOI shows up at marker level first.
    """
    n = len(data)
    pos = start + 2
    in_scan = False
    while pos < n - 1:
        if data[pos] != 0xFF:
            nxt = data.find(b"\xff", pos, n - 1)
            if nxt == -1:
                return -1
            pos = nxt
        marker = data[pos + 1]

        if marker == _MARKER_EOI:
            return pos + 2
        if marker == _MARKER_SOI:
            logger.debug("Nested SOI at offset %d ends stream at %d", pos, start)
            return -1
        if marker == _STUFFED:
            pos += 2 if in_scan else 1
        elif marker == _FILL:
            pos += 1
        elif marker in _RST_MARKERS or marker == _MARKER_TEM:
            pos += 2
        elif marker == _MARKER_SOS:
            pos += 2
            if pos + 1 < n:
                pos += _segment_length(data, pos)
                in_scan = True
        else:
            # APPn, DQT, DHT, SOFn, DRI, COM, ... all carry a length field.
            pos += 2
            if pos + 1 < n:
                length = _segment_length(data, pos)
                pos += length if length >= 2 else 1
    return -1


def find_nef_jpegs(data: bytes, min_size: int = NEF_MIN_SIZE) -> List[EmbeddedJpegCandidate]:
    candidates = []
    i = data.find(SOI)
    while i != -1:
        end = _walk_jpeg_stream(data, i)
        if end == -1:
            logger.debug("Incomplete JPEG stream at offset %d", i)
            i = data.find(SOI, i + 2)
            continue
        if end - i > min_size:
            candidates.append(EmbeddedJpegCandidate(i, end, end - i))
            logger.debug("NEF JPEG candidate: %d bytes at offset %d", end - i, i)
        i = data.find(SOI, end)
    logger.debug("NEF scan found %d JPEG candidate(s)", len(candidates))
    return _by_size(candidates)


_FORMAT_SCANNERS = {
    ".nef": find_nef_jpegs,
    ".raf": find_raf_jpegs,
}


def locate_candidates(data: bytes, file_extension: str) -> List[EmbeddedJpegCandidate]:
    """Candidate ranges for a RAW file, best first."""
    scanner = _FORMAT_SCANNERS.get(file_extension.lower())
    if scanner is not None:
        candidates = scanner(data)
        if candidates:
            return candidates
        logger.info("No %s-specific JPEG candidates, falling back to generic scan",
                    file_extension.lower().lstrip("."))
    return find_jpegs(data)


def decode_candidates(data: bytes, candidates: List[EmbeddedJpegCandidate],
                      source: str = "<buffer>") -> Image.Image:
    """Decode the first candidate that is a valid JPEG of usable size."""
    for idx, candidate in enumerate(candidates, start=1):
        chunk = data[candidate.start:candidate.end]
        if len(chunk) < MIN_HEADER_BYTES or not chunk.startswith(SOI):
            logger.warning("Candidate #%d in %s has no JPEG header, skipping", idx, source)
            continue
        try:
            with Image.open(io.BytesIO(chunk)) as img:
                img.load()
                if img.width < MIN_PREVIEW_DIMENSION or img.height < MIN_PREVIEW_DIMENSION:
                    logger.debug("Candidate #%d in %s too small (%dx%d), trying next",
                                 idx, source, img.width, img.height)
                    continue
                return img.copy()
        except (OSError, ValueError, Image.DecompressionBombError) as e:
            logger.warning("Candidate #%d in %s failed to decode: %s (head %s, tail %s)",
                           idx, source, e, chunk[:8].hex(" "), chunk[-8:].hex(" "))
    raise NoUsablePreviewError(f"no usable embedded preview in {source}")
