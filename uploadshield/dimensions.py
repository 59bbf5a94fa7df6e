"""
dimensions.py – Header-only geometry extraction and dimension limits.

Extractors never decode pixel data. Every malformed or truncated header raises
a format-specific ``DimensionError`` subclass instead of returning zeros.
"""

from dataclasses import dataclass, field
import logging
import struct

from uploadshield.results import Err, Ok, Result

logger = logging.getLogger("uploadshield.dimensions")

MIB = 1024 * 1024

MAX_FILE_SIZES: dict[str, int] = {
    "image/jpeg": 50 * MIB,
    "image/png": 50 * MIB,
    "image/gif": 20 * MIB,
    "image/webp": 30 * MIB,
    "image/bmp": 100 * MIB,
    "image/tiff": 100 * MIB,
    "image/x-icon": 1 * MIB,
}

BYTES_PER_PIXEL = 4
MAX_ESTIMATED_MEMORY = 1024 * MIB
HIGH_MEMORY_WARNING = 100 * MIB


@dataclass(frozen=True)
class DimensionLimits:
    max_pixels: int
    max_dimension: int


DIMENSION_LIMITS: dict[str, DimensionLimits] = {
    "image/jpeg": DimensionLimits(max_pixels=100 * MIB, max_dimension=15000),
    "image/png": DimensionLimits(max_pixels=50 * MIB, max_dimension=10000),
    "image/gif": DimensionLimits(max_pixels=10 * MIB, max_dimension=5000),
    "image/webp": DimensionLimits(max_pixels=75 * MIB, max_dimension=12000),
    "image/bmp": DimensionLimits(max_pixels=25 * MIB, max_dimension=8000),
    "image/tiff": DimensionLimits(max_pixels=200 * MIB, max_dimension=20000),
}
DEFAULT_DIMENSION_LIMITS = DimensionLimits(max_pixels=50 * MIB, max_dimension=10000)


class DimensionError(ValueError):
    """Raised when image geometry cannot be read from a header."""


class PNGHeaderError(DimensionError):
    pass


class JPEGHeaderError(DimensionError):
    pass


class GIFHeaderError(DimensionError):
    pass


class BMPHeaderError(DimensionError):
    pass


class WebPHeaderError(DimensionError):
    pass


class TIFFHeaderError(DimensionError):
    pass


class ICOHeaderError(DimensionError):
    pass


class UnsupportedFormatError(DimensionError):
    pass


@dataclass(frozen=True)
class Dimensions:
    width: int
    height: int

    @property
    def pixels(self) -> int:
        return self.width * self.height


def _checked(width: int, height: int, error: type[DimensionError]) -> Dimensions:
    if width <= 0 or height <= 0:
        raise error(f"Header declares empty geometry {width}x{height}")
    return Dimensions(width=width, height=height)


PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"


def png_dimensions(data: bytes) -> Dimensions:
    if len(data) < 24:
        raise PNGHeaderError("Invalid PNG file - header too short")
    if data[:8] != PNG_SIGNATURE:
        raise PNGHeaderError("Invalid PNG signature")
    if data[12:16] != b"IHDR":
        raise PNGHeaderError("PNG is missing the IHDR chunk")
    width, height = struct.unpack_from(">II", data, 16)
    return _checked(width, height, PNGHeaderError)


# Markers without a length field.
_JPEG_STANDALONE_MARKERS = {0x01, *range(0xD0, 0xDA)}


def jpeg_dimensions(data: bytes) -> Dimensions:
    if len(data) < 4 or data[0] != 0xFF or data[1] != 0xD8:
        raise JPEGHeaderError("Invalid JPEG file - missing SOI marker")

    offset = 2
    while offset + 4 <= len(data):
        if data[offset] != 0xFF:
            offset += 1
            continue
        marker = data[offset + 1]
        if marker == 0xFF:
            # fill byte
            offset += 1
            continue
        if 0xC0 <= marker <= 0xC3:
            if offset + 9 > len(data):
                raise JPEGHeaderError("Truncated JPEG start-of-frame segment")
            height, width = struct.unpack_from(">HH", data, offset + 5)
            return _checked(width, height, JPEGHeaderError)
        if marker in _JPEG_STANDALONE_MARKERS:
            offset += 2
            continue
        (segment_length,) = struct.unpack_from(">H", data, offset + 2)
        if segment_length < 2:
            raise JPEGHeaderError(f"Corrupt JPEG segment length {segment_length}")
        offset += 2 + segment_length

    raise JPEGHeaderError("JPEG dimensions not found")


def gif_dimensions(data: bytes) -> Dimensions:
    if len(data) < 10:
        raise GIFHeaderError("Invalid GIF file - header too short")
    if data[:6] not in (b"GIF87a", b"GIF89a"):
        raise GIFHeaderError("Invalid GIF signature")
    width, height = struct.unpack_from("<HH", data, 6)
    return _checked(width, height, GIFHeaderError)


def bmp_dimensions(data: bytes) -> Dimensions:
    if len(data) < 26:
        raise BMPHeaderError("Invalid BMP file - header too short")
    if data[:2] != b"BM":
        raise BMPHeaderError("Invalid BMP signature")
    width, height = struct.unpack_from("<ii", data, 18)
    # Negative height marks a top-down bitmap.
    return _checked(width, abs(height), BMPHeaderError)


def webp_dimensions(data: bytes) -> Dimensions:
    if len(data) < 30:
        raise WebPHeaderError("Invalid WebP file - header too short")
    if data[:4] != b"RIFF":
        raise WebPHeaderError("Invalid RIFF signature")
    if data[8:12] != b"WEBP":
        raise WebPHeaderError("Invalid WebP signature")

    chunk = data[12:16]
    if chunk == b"VP8 ":
        width = struct.unpack_from("<H", data, 26)[0] & 0x3FFF
        height = struct.unpack_from("<H", data, 28)[0] & 0x3FFF
    elif chunk == b"VP8L":
        (bits,) = struct.unpack_from("<I", data, 21)
        width = (bits & 0x3FFF) + 1
        height = ((bits >> 14) & 0x3FFF) + 1
    elif chunk == b"VP8X":
        width = int.from_bytes(data[24:27], "little") + 1
        height = int.from_bytes(data[27:30], "little") + 1
    else:
        raise WebPHeaderError(f"Unsupported WebP chunk {chunk!r}")
    return _checked(width, height, WebPHeaderError)


_TIFF_WIDTH_TAG = 256
_TIFF_HEIGHT_TAG = 257
_TIFF_SHORT = 3
_TIFF_LONG = 4


def tiff_dimensions(data: bytes) -> Dimensions:
    if len(data) < 8:
        raise TIFFHeaderError("Invalid TIFF file - header too short")
    if data[:4] == b"II*\x00":
        endian = "<"
    elif data[:4] == b"MM\x00*":
        endian = ">"
    else:
        raise TIFFHeaderError("Invalid TIFF signature")

    (ifd_offset,) = struct.unpack_from(endian + "I", data, 4)
    if ifd_offset + 2 > len(data):
        raise TIFFHeaderError("TIFF IFD offset points past end of file")
    (entry_count,) = struct.unpack_from(endian + "H", data, ifd_offset)

    found: dict[int, int] = {}
    for index in range(entry_count):
        entry = ifd_offset + 2 + index * 12
        if entry + 12 > len(data):
            raise TIFFHeaderError("Truncated TIFF IFD")
        tag, field_type, _count = struct.unpack_from(endian + "HHI", data, entry)
        if tag not in (_TIFF_WIDTH_TAG, _TIFF_HEIGHT_TAG):
            continue
        if field_type == _TIFF_SHORT:
            (value,) = struct.unpack_from(endian + "H", data, entry + 8)
        elif field_type == _TIFF_LONG:
            (value,) = struct.unpack_from(endian + "I", data, entry + 8)
        else:
            raise TIFFHeaderError(f"Unexpected TIFF field type {field_type} for tag {tag}")
        found[tag] = value

    if _TIFF_WIDTH_TAG not in found or _TIFF_HEIGHT_TAG not in found:
        raise TIFFHeaderError("TIFF dimensions not found")
    return _checked(found[_TIFF_WIDTH_TAG], found[_TIFF_HEIGHT_TAG], TIFFHeaderError)


def ico_dimensions(data: bytes) -> Dimensions:
    if len(data) < 22:
        raise ICOHeaderError("Invalid ICO file - header too short")
    reserved, image_type, count = struct.unpack_from("<HHH", data, 0)
    if reserved != 0 or image_type != 1:
        raise ICOHeaderError("Invalid ICO signature")
    if count == 0:
        raise ICOHeaderError("ICO file contains no images")
    # A zero byte encodes 256.
    width = data[6] or 256
    height = data[7] or 256
    return Dimensions(width=width, height=height)


EXTRACTORS = {
    "image/png": png_dimensions,
    "image/jpeg": jpeg_dimensions,
    "image/gif": gif_dimensions,
    "image/bmp": bmp_dimensions,
    "image/webp": webp_dimensions,
    "image/tiff": tiff_dimensions,
    "image/x-icon": ico_dimensions,
}


def extract_dimensions(data: bytes, mime_type: str | None) -> Dimensions:
    extractor = EXTRACTORS.get(mime_type or "")
    if extractor is None:
        raise UnsupportedFormatError(f"Unsupported image format: {mime_type}")
    return extractor(data)


def validate_file_size(file_size: int, mime_type: str) -> Result[int]:
    max_size = MAX_FILE_SIZES.get(mime_type)
    if max_size is None:
        return Err(f"Unsupported MIME type: {mime_type}")
    if file_size > max_size:
        return Err(
            f"File too large: {round(file_size / MIB)}MB. Maximum: {round(max_size / MIB)}MB"
        )
    return Ok(file_size)


@dataclass
class DimensionReport:
    """Outcome of the dimension checks for one file."""

    dimensions: Dimensions | None = None
    error: str | None = None
    estimated_memory: int | None = None
    compression_ratio: float | None = None
    warnings: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return self.error is None


def validate_image_dimensions(data: bytes, mime_type: str, file_size: int) -> DimensionReport:
    limits = DIMENSION_LIMITS.get(mime_type, DEFAULT_DIMENSION_LIMITS)
    report = DimensionReport()

    try:
        dims = extract_dimensions(data, mime_type)
    except DimensionError as exc:
        report.warnings.append(f"Could not extract image dimensions: {exc}")
        return report

    report.dimensions = dims
    width, height = dims.width, dims.height

    if width > limits.max_dimension or height > limits.max_dimension:
        report.error = (
            f"Image dimensions too large: {width}x{height}. "
            f"Maximum dimension: {limits.max_dimension}px"
        )
        return report

    pixels = dims.pixels
    if pixels > limits.max_pixels:
        report.error = (
            f"Total pixel count too high: {pixels:,}. Maximum: {limits.max_pixels:,}"
        )
        return report

    memory = pixels * BYTES_PER_PIXEL
    report.estimated_memory = memory
    if memory > MAX_ESTIMATED_MEMORY:
        report.error = f"Estimated memory usage too high: {round(memory / MIB)}MB"
        return report

    if file_size > 0:
        ratio = (pixels * 3) / file_size
        report.compression_ratio = ratio
        if ratio < 1:
            report.warnings.append(
                f"Suspicious compression ratio: {ratio:.2f} - file larger than expected"
            )
        elif ratio > 1000:
            report.warnings.append(
                f"Very high compression ratio: {ratio:.2f} - possible hidden data"
            )

    aspect = width / height
    if aspect > 100 or aspect < 0.01:
        report.warnings.append(f"Suspicious aspect ratio: {aspect:.2f}")

    if memory > HIGH_MEMORY_WARNING:
        report.warnings.append(f"High memory usage: {round(memory / MIB)}MB")

    return report
