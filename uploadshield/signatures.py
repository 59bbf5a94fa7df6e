"""
signatures.py – Magic-number detection and entropy for uploaded images.

The signature table is the authoritative source for a file's type; the
client-declared MIME type and extension are never trusted.
"""

from collections import Counter
from pathlib import Path
import logging
import math

from uploadshield.results import Err, Ok, Result

logger = logging.getLogger("uploadshield.signatures")

MAGIC_PREFIX_LENGTH = 16
ENTROPY_WINDOW = 4096

# Order matters: the first matching prefix wins.
IMAGE_SIGNATURES: list[tuple[bytes, str]] = [
    (bytes.fromhex("FFD8FF"), "image/jpeg"),
    (bytes.fromhex("89504E47"), "image/png"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"RIFF", "image/webp"),  # only with "WEBP" at offset 8
    (b"BM", "image/bmp"),
    (bytes.fromhex("49492A00"), "image/tiff"),
    (bytes.fromhex("4D4D002A"), "image/tiff"),
    (bytes.fromhex("00000100"), "image/x-icon"),
]

WEBP_MARKER = b"WEBP"
WEBP_MARKER_OFFSET = 8


def detect_mime_type(header: bytes) -> str | None:
    """Return the image MIME type whose signature prefixes ``header``."""
    for signature, mime_type in IMAGE_SIGNATURES:
        if not header.startswith(signature):
            continue
        if signature == b"RIFF":
            marker = header[WEBP_MARKER_OFFSET:WEBP_MARKER_OFFSET + len(WEBP_MARKER)]
            if marker == WEBP_MARKER:
                return mime_type
            continue
        return mime_type
    return None


def detect_magic_number(file_path: str | Path) -> Result[str]:
    """Read the first 16 bytes of ``file_path`` and match the signature table."""
    try:
        with open(file_path, "rb") as fh:
            header = fh.read(MAGIC_PREFIX_LENGTH)
    except OSError as exc:
        logger.warning("Could not read %s for signature detection: %s", file_path, exc)
        return Err(f"File read error: {exc}")

    if not header:
        return Err("File is empty or unreadable")

    mime_type = detect_mime_type(header)
    if mime_type is None:
        return Err("Invalid file format - unsupported image type")
    return Ok(mime_type)


def shannon_entropy(data: bytes) -> float:
    """Shannon entropy in bits per byte, in the range [0, 8]."""
    length = len(data)
    if length == 0:
        return 0.0
    entropy = 0.0
    for count in Counter(data).values():
        probability = count / length
        entropy -= probability * math.log2(probability)
    return entropy


def prefix_entropy(data: bytes, window: int = ENTROPY_WINDOW) -> float:
    return shannon_entropy(data[:window])
