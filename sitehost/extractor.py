"""Upload ingestion: turn an uploaded HTML file or ZIP bundle into a site directory.

Uploads are untrusted. A ZIP bundle is checked in two passes before anything
is written:

    1. Name check - every decoded entry name is rejected if it contains a
       ``..`` segment, a NUL byte, a leading slash, or a drive letter.
    2. Containment check - every entry is joined to the destination, resolved,
       and must still live strictly inside the destination directory.

Files are then written one at a time while a running byte total is held
against the extraction ceiling. Any failure removes the destination directory
before the error propagates, so a refused upload never leaves a partial site
behind.

ZIP entry names stored without the UTF-8 flag (bit 11 of the general purpose
flags) are re-decoded from their raw bytes using ZIP_LEGACY_ENCODING, which
covers archives made by Windows tools in Chinese locales.

Usage:
    from sitehost.extractor import ingest_upload

    result = ingest_upload(tmp_path, "site.zip", "application/zip", dest, MAX_EXTRACT_SIZE)
    result.entry_file   # "index.html" or e.g. "dist/index.html"
    result.total_bytes  # bytes written
"""

from __future__ import annotations

import logging
import shutil
import zipfile
import zlib
from collections import deque
from dataclasses import dataclass
from pathlib import Path, PureWindowsPath

from .config import MAX_ARCHIVE_ENTRIES, ZIP_LEGACY_ENCODING
from .errors import ExtractionError, ExtractionErrorKind
from .paths import DEFAULT_ENTRY_FILE

_LOG = logging.getLogger(__name__)

# =============================================================================
# Constants
# =============================================================================

ZIP_CONTENT_TYPES: frozenset[str] = frozenset({"application/zip", "application/x-zip-compressed"})
"""Declared content types treated as ZIP bundles."""

HTML_CONTENT_TYPE: str = "text/html"
"""The only content type accepted for single-file uploads."""

UTF8_NAME_FLAG: int = 0x800
"""ZIP general purpose flag bit marking UTF-8 encoded entry names."""

MAX_INDEX_SEARCH_DEPTH: int = 32
"""Deepest directory level searched for a nested index.html."""

COPY_CHUNK_SIZE: int = 64 * 1024

_SYMLINK_MODE: int = 0o120000


@dataclass
class ExtractionResult:
    """Outcome of a successful ingestion.

    Attributes:
        entry_file: Posix path of the landing page, relative to the destination.
        total_bytes: Total bytes written into the destination.
    """

    entry_file: str
    total_bytes: int


# =============================================================================
# Upload Type Detection
# =============================================================================


def media_type(content_type: str | None) -> str:
    """Strip parameters from a Content-Type value and lowercase it."""
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def is_zip_upload(filename: str | None, content_type: str | None) -> bool:
    """Check whether an upload should be treated as a ZIP bundle.

    Args:
        filename: Client-supplied filename.
        content_type: Client-supplied Content-Type of the file part.

    Returns:
        True for a ZIP content type or a ``.zip`` filename.
    """
    if media_type(content_type) in ZIP_CONTENT_TYPES:
        return True
    return bool(filename) and filename.lower().endswith(".zip")


# =============================================================================
# Entry Name Handling
# =============================================================================


def decode_entry_name(info: zipfile.ZipInfo, legacy_encoding: str = ZIP_LEGACY_ENCODING) -> str:
    """Decode a ZIP entry name, honoring the UTF-8 flag.

    The zipfile module decodes unflagged names as CP437, which maps every
    byte, so encoding back to CP437 recovers the raw name bytes exactly.

    Args:
        info: Entry metadata from the archive.
        legacy_encoding: Charset for names without the UTF-8 flag.

    Returns:
        The decoded name. Falls back to the CP437 reading when the legacy
        charset cannot decode the raw bytes.
    """
    if info.flag_bits & UTF8_NAME_FLAG:
        return info.orig_filename
    try:
        raw = info.orig_filename.encode("cp437")
    except UnicodeEncodeError:
        return info.orig_filename
    try:
        return raw.decode(legacy_encoding)
    except (UnicodeDecodeError, LookupError):
        return info.orig_filename


def check_entry_name(name: str) -> str:
    """Reject entry names that try to leave the destination directory.

    Args:
        name: Decoded entry name.

    Returns:
        The name with backslashes normalized to forward slashes.

    Raises:
        ExtractionError: MALICIOUS_ARCHIVE for traversal, absolute paths,
            drive letters, or NUL bytes.
    """
    if "\x00" in name:
        raise ExtractionError(ExtractionErrorKind.MALICIOUS_ARCHIVE, f"NUL byte in entry name: {name!r}")

    normalized = name.replace("\\", "/")
    if normalized.startswith("/"):
        raise ExtractionError(ExtractionErrorKind.MALICIOUS_ARCHIVE, f"Absolute entry path: {name}")
    if PureWindowsPath(name).drive:
        raise ExtractionError(ExtractionErrorKind.MALICIOUS_ARCHIVE, f"Drive letter in entry path: {name}")
    if ".." in normalized.split("/"):
        raise ExtractionError(ExtractionErrorKind.MALICIOUS_ARCHIVE, f"Directory traversal in entry path: {name}")
    return normalized


def contained_path(root: Path, relative: str) -> Path:
    """Join a relative path to a resolved root and require containment.

    Args:
        root: Resolved destination directory.
        relative: Relative posix path.

    Returns:
        The resolved absolute path (may equal ``root`` for "." style names).

    Raises:
        ExtractionError: MALICIOUS_ARCHIVE if the path resolves outside root.
    """
    target = (root / relative).resolve()
    if target != root and not target.is_relative_to(root):
        raise ExtractionError(ExtractionErrorKind.MALICIOUS_ARCHIVE, f"Entry escapes destination: {relative}")
    return target


def _is_symlink(info: zipfile.ZipInfo) -> bool:
    unix_mode = (info.external_attr >> 16) & 0xFFFF
    return (unix_mode & 0o170000) == _SYMLINK_MODE


# =============================================================================
# Extraction
# =============================================================================


def _plan_entries(
    zf: zipfile.ZipFile,
    root: Path,
    max_entries: int,
    legacy_encoding: str,
) -> list[tuple[zipfile.ZipInfo, Path]]:
    """Validate every entry and compute its output path before writing anything."""
    infos = zf.infolist()
    if len(infos) > max_entries:
        raise ExtractionError(
            ExtractionErrorKind.QUOTA_EXCEEDED,
            f"Archive has {len(infos)} entries (max {max_entries})",
        )

    names = []
    for info in infos:
        name = check_entry_name(decode_entry_name(info, legacy_encoding))
        if _is_symlink(info):
            raise ExtractionError(ExtractionErrorKind.MALICIOUS_ARCHIVE, f"Symlink entry: {name}")
        names.append(name)

    plan = []
    for info, name in zip(infos, names):
        target = contained_path(root, name)
        if target == root:
            if info.is_dir():
                continue
            raise ExtractionError(ExtractionErrorKind.MALICIOUS_ARCHIVE, f"Entry resolves to destination: {name}")
        plan.append((info, target))
    return plan


def _copy_entry(zf: zipfile.ZipFile, info: zipfile.ZipInfo, target: Path, budget: int) -> int:
    """Write one entry, counting bytes as they are written."""
    written = 0
    with zf.open(info) as src, open(target, "wb") as dst:
        while True:
            chunk = src.read(COPY_CHUNK_SIZE)
            if not chunk:
                break
            written += len(chunk)
            if written > budget:
                raise ExtractionError(
                    ExtractionErrorKind.QUOTA_EXCEEDED,
                    f"Entry {info.filename} exceeds the extraction size limit",
                )
            dst.write(chunk)
    return written


def _extract_into(
    archive_path: Path,
    root: Path,
    max_total_bytes: int,
    max_entries: int,
    legacy_encoding: str,
) -> int:
    try:
        zf = zipfile.ZipFile(archive_path)
    except zipfile.BadZipFile as e:
        raise ExtractionError(ExtractionErrorKind.UNSUPPORTED_FORMAT, "Uploaded file is not a valid ZIP archive") from e

    total = 0
    with zf:
        for info, target in _plan_entries(zf, root, max_entries, legacy_encoding):
            if info.is_dir():
                target.mkdir(parents=True, exist_ok=True)
                continue

            if total + info.file_size > max_total_bytes:
                raise ExtractionError(
                    ExtractionErrorKind.QUOTA_EXCEEDED,
                    f"Extracted content exceeds the limit of {max_total_bytes} bytes",
                )
            target.parent.mkdir(parents=True, exist_ok=True)
            total += _copy_entry(zf, info, target, max_total_bytes - total)
    return total


def extract_archive(
    archive_path: Path,
    destination_dir: Path,
    max_total_bytes: int,
    max_entries: int = MAX_ARCHIVE_ENTRIES,
    legacy_encoding: str = ZIP_LEGACY_ENCODING,
) -> ExtractionResult:
    """Safely extract a ZIP bundle and find its entry page.

    Args:
        archive_path: Path to the uploaded archive.
        destination_dir: Directory to extract into (created if missing).
        max_total_bytes: Ceiling on total uncompressed bytes written.
        max_entries: Ceiling on the number of archive entries.
        legacy_encoding: Charset for names without the UTF-8 flag.

    Returns:
        ExtractionResult with the entry file and bytes written.

    Raises:
        ExtractionError: On traversal attempts, size/count limits, or an
            unreadable archive. The destination directory is removed first.
    """
    destination_dir = Path(destination_dir)
    destination_dir.mkdir(parents=True, exist_ok=True)
    root = destination_dir.resolve()

    try:
        try:
            total = _extract_into(Path(archive_path), root, max_total_bytes, max_entries, legacy_encoding)
        except (zipfile.BadZipFile, zlib.error, NotImplementedError, RuntimeError, EOFError) as e:
            # Corrupt data, unsupported compression or encrypted entries
            raise ExtractionError(ExtractionErrorKind.UNSUPPORTED_FORMAT, f"Unreadable archive: {e}") from e
        except (FileExistsError, NotADirectoryError, IsADirectoryError) as e:
            raise ExtractionError(ExtractionErrorKind.UNSUPPORTED_FORMAT, "Archive has conflicting entries") from e
    except ExtractionError as e:
        shutil.rmtree(destination_dir, ignore_errors=True)
        if e.kind == ExtractionErrorKind.MALICIOUS_ARCHIVE:
            _LOG.warning("[Security] Rejected archive %s: %s", archive_path, e.detail)
        else:
            _LOG.info("Rejected archive %s: %s", archive_path, e.detail)
        raise
    except BaseException:
        shutil.rmtree(destination_dir, ignore_errors=True)
        raise

    entry_file = find_entry_file(root)
    _LOG.info("Extracted %d bytes into %s (entry: %s)", total, root, entry_file)
    return ExtractionResult(entry_file=entry_file, total_bytes=total)


def find_entry_file(root: Path, max_depth: int = MAX_INDEX_SEARCH_DEPTH) -> str:
    """Find the shallowest index.html below root.

    Breadth-first over sorted directory listings, so the result is
    deterministic: the shallowest match wins, ties go to the first path in
    lexical order.

    Args:
        root: Extracted site directory.
        max_depth: Deepest directory level to descend into.

    Returns:
        Posix path relative to root, or DEFAULT_ENTRY_FILE when nothing matches.
    """
    if (root / DEFAULT_ENTRY_FILE).is_file():
        return DEFAULT_ENTRY_FILE

    queue: deque[tuple[Path, int]] = deque([(root, 0)])
    while queue:
        current, depth = queue.popleft()
        try:
            children = sorted(current.iterdir(), key=lambda p: p.name)
        except OSError:
            continue

        for child in children:
            if child.name == DEFAULT_ENTRY_FILE and child.is_file():
                return child.relative_to(root).as_posix()

        if depth < max_depth:
            queue.extend((child, depth + 1) for child in children if child.is_dir() and not child.is_symlink())

    return DEFAULT_ENTRY_FILE


# =============================================================================
# Upload Entry Point
# =============================================================================


def ingest_upload(
    upload_path: Path,
    filename: str | None,
    content_type: str | None,
    destination_dir: Path,
    max_total_bytes: int,
    max_entries: int = MAX_ARCHIVE_ENTRIES,
    legacy_encoding: str = ZIP_LEGACY_ENCODING,
) -> ExtractionResult:
    """Store an uploaded file as a site in destination_dir.

    ZIP bundles are extracted. Anything else must be declared as text/html and
    is stored as index.html; the filename extension alone is never trusted.

    Args:
        upload_path: Temporary file holding the upload. A single HTML upload is
            moved away from this path.
        filename: Client-supplied filename.
        content_type: Client-supplied Content-Type.
        destination_dir: Directory that becomes the site root.
        max_total_bytes: Ceiling on bytes stored.
        max_entries: Ceiling on ZIP entry count.
        legacy_encoding: Charset for non-UTF-8 ZIP entry names.

    Raises:
        ExtractionError: UNSUPPORTED_FORMAT, QUOTA_EXCEEDED or MALICIOUS_ARCHIVE.
    """
    if is_zip_upload(filename, content_type):
        return extract_archive(upload_path, destination_dir, max_total_bytes, max_entries, legacy_encoding)

    if media_type(content_type) != HTML_CONTENT_TYPE:
        raise ExtractionError(
            ExtractionErrorKind.UNSUPPORTED_FORMAT,
            "Only HTML files are allowed for single file upload",
        )

    size = Path(upload_path).stat().st_size
    if size > max_total_bytes:
        raise ExtractionError(
            ExtractionErrorKind.QUOTA_EXCEEDED,
            f"File exceeds the limit of {max_total_bytes} bytes",
        )

    destination_dir = Path(destination_dir)
    destination_dir.mkdir(parents=True, exist_ok=True)
    shutil.move(str(upload_path), str(destination_dir / DEFAULT_ENTRY_FILE))
    return ExtractionResult(entry_file=DEFAULT_ENTRY_FILE, total_bytes=size)
