"""
filenames.py – Extension policy, secure filename generation and path checks.
"""

from datetime import UTC, datetime
from hashlib import sha256
from pathlib import Path, PurePosixPath
from urllib.parse import unquote
import logging
import os
import re
import secrets
import time

from uploadshield.results import Err, Ok, Result

logger = logging.getLogger("uploadshield.filenames")

DANGEROUS_EXTENSIONS = frozenset({
    ".exe", ".bat", ".cmd", ".com", ".pif", ".scr", ".vbs", ".js", ".jar",
    ".php", ".asp", ".aspx", ".jsp", ".py", ".rb", ".pl", ".sh", ".ps1",
    ".msi", ".deb", ".rpm", ".dmg", ".app", ".ipa", ".apk",
})

ALLOWED_IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".tiff", ".ico")

MAX_FILENAME_LENGTH = 255
MAX_SANITIZED_LENGTH = 100
MAX_STEM_LENGTH = 50
FALLBACK_BASENAME = "secure_upload"

PATH_TRAVERSAL_PATTERNS = (
    "../", "..\\",
    "%2e%2e", "%2e%2e%2f", "%2e%2e%5c",
    "..%2f", "..%5c", "%252e%252e",
    "0x2e0x2e0x2f", "0x2e0x2e0x5c",
)

_CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")
_RESERVED_CHARS_RE = re.compile(r'[<>:"/\\|?*]')
_UNSAFE_CHARS_RE = re.compile(r"[^a-zA-Z0-9._-]")
_REPEATED_UNDERSCORES_RE = re.compile(r"_{2,}")
_REPEATED_DOTS_RE = re.compile(r"\.{2,}")
_EDGE_CHARS_RE = re.compile(r"^[._-]+|[._-]+$")

SUSPICIOUS_PATH_PATTERNS = (
    re.compile(r"\.\.[/\\]"),
    re.compile(r"[/\\]\.\.[/\\]"),
    re.compile(r"[/\\]\.$"),
    re.compile(r"^\.\."),
    re.compile(r"\x00"),
    re.compile(r"%2e%2e", re.IGNORECASE),
    re.compile(r"%2f", re.IGNORECASE),
    re.compile(r"%5c", re.IGNORECASE),
)


def _extension(filename: str) -> str:
    return os.path.splitext(filename)[1].lower()


def validate_extension(filename: str) -> Result[str]:
    """Check the extension against the blacklist, then the image whitelist."""
    ext = _extension(filename)
    if ext in DANGEROUS_EXTENSIONS:
        return Err(f"Dangerous file extension: {ext}")
    if ext not in ALLOWED_IMAGE_EXTENSIONS:
        return Err(
            f"Unsupported file extension: {ext or '(none)'}. "
            f"Allowed: {', '.join(ALLOWED_IMAGE_EXTENSIONS)}"
        )
    return Ok(ext)


def detect_path_traversal(filename: str) -> str | None:
    """
    Return the first traversal pattern found in a raw client filename.

    A ``..`` only counts as a parent reference when it is a whole path
    component; ``holiday..beach.png`` is an ordinary name.
    """
    lowered = filename.lower()
    for pattern in PATH_TRAVERSAL_PATTERNS:
        if pattern in lowered:
            return pattern
    if lowered.strip() == ".." or lowered.endswith(("/..", "\\..")):
        return ".."
    return None


def _basename(filename: str) -> str:
    # Decode twice so double-encoded separators collapse before splitting.
    decoded = unquote(unquote(filename))
    name = PurePosixPath(decoded.replace("\\", "/")).name
    return name


def _sanitize(basename: str) -> str:
    name = _CONTROL_CHARS_RE.sub("", basename)
    name = _RESERVED_CHARS_RE.sub("_", name)
    name = _UNSAFE_CHARS_RE.sub("_", name)
    name = _REPEATED_UNDERSCORES_RE.sub("_", name)
    name = _REPEATED_DOTS_RE.sub(".", name)
    name = _EDGE_CHARS_RE.sub("", name)
    return name[:MAX_SANITIZED_LENGTH]


def generate_secure_filename(original_filename: str, owner_id: str) -> str:
    """
    Build ``<owner hash>_<ms timestamp>_<16 hex>_<stem><ext>``.

    The result never contains path separators or control characters and is at
    most 255 characters long.
    """
    if not original_filename or not isinstance(original_filename, str):
        raise ValueError("Invalid filename")
    if not owner_id or not isinstance(owner_id, str):
        raise ValueError("Invalid owner id")

    owner_hash = sha256(owner_id.encode("utf-8")).hexdigest()[:8]

    pattern = detect_path_traversal(original_filename)
    if pattern:
        logger.warning(
            "Path traversal attempt in filename: filename=%r pattern=%r owner=%s",
            original_filename, pattern, owner_hash,
        )

    safe_name = _sanitize(_basename(original_filename))
    if not safe_name:
        logger.warning("Filename empty after sanitization: %r", original_filename)
        safe_name = FALLBACK_BASENAME

    stem, ext = os.path.splitext(safe_name)
    ext = ext.lower()
    stem = (stem or "file")[:MAX_STEM_LENGTH]

    timestamp = int(time.time() * 1000)
    random_part = secrets.token_hex(8)
    prefix = f"{owner_hash}_{timestamp}_{random_part}_"

    secure = f"{prefix}{stem}{ext}"
    if len(secure) > MAX_FILENAME_LENGTH:
        room = max(1, MAX_FILENAME_LENGTH - len(prefix) - len(ext))
        secure = f"{prefix}{stem[:room]}{ext}"[:MAX_FILENAME_LENGTH]

    logger.debug("Secure filename generated: original=%r secure=%s", original_filename, secure)
    return secure


def validate_and_sanitize_path(file_path: str, allowed_base_path: str | Path) -> Result[Path]:
    """Accept ``file_path`` only if it resolves inside ``allowed_base_path``."""
    raw = str(file_path)
    for pattern in SUSPICIOUS_PATH_PATTERNS:
        if pattern.search(raw):
            return Err(f"Suspicious path pattern detected: {pattern.pattern}")

    try:
        base = Path(allowed_base_path).resolve()
        resolved = Path(raw).resolve()
    except (OSError, ValueError) as exc:
        return Err(f"Path validation error: {exc}")

    if resolved != base and base not in resolved.parents:
        return Err("Path traversal attempt detected - file outside allowed directory")
    return Ok(resolved)


def create_secure_upload_directory(owner_id: str, base_upload_path: str | Path) -> Result[Path]:
    """Create ``base/<owner hash>/<YYYY-MM-DD>`` and return it."""
    if not owner_id or not base_upload_path:
        return Err("Invalid owner id or base upload path")

    owner_hash = sha256(owner_id.encode("utf-8")).hexdigest()[:16]
    date_part = datetime.now(UTC).strftime("%Y-%m-%d")
    directory = Path(base_upload_path) / owner_hash / date_part

    checked = validate_and_sanitize_path(str(directory), base_upload_path)
    if isinstance(checked, Err):
        return checked

    try:
        checked.value.mkdir(parents=True, exist_ok=True, mode=0o755)
    except OSError as exc:
        return Err(f"Directory creation error: {exc}")
    return Ok(checked.value)
