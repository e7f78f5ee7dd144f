"""
Archive expander: turns an uploaded blob into ordered (logical_path, bytes) entries.

A single source file is yielded as-is; ZIP-family archives (.zip/.jar/.war/.ear
or a zip MIME type) are walked entry by entry. Entries are filtered by the
path denylist and the extension allowlist, oversize entries are skipped with a
warning, and any traversal attempt fails the whole expansion before a single
entry is returned.
"""

from __future__ import annotations

import io
import zipfile
import zlib
from dataclasses import dataclass, field
from pathlib import PurePosixPath
from typing import Iterable, List, Optional

from config.settings import RoleQuota, settings
from src.core.errors import ErrorCode, ExpansionError, QuotaError
from src.core.models import ExpansionResult, FileEntry
from src.log import get_logger

logger = get_logger(__name__)

ZIP_MIME_TYPES = frozenset({
    "application/zip",
    "application/x-zip-compressed",
    "application/x-zip",
    "application/zip-compressed",
    "application/java-archive",
    "application/x-java-archive",
})


@dataclass
class ExpansionCaps:
    max_files: int = 5000
    max_total_bytes: int = 500 * 1024 * 1024
    max_file_bytes: int = 50 * 1024 * 1024
    extension_allowlist: List[str] = field(default_factory=list)
    path_denylist: List[str] = field(default_factory=list)
    archive_extensions: List[str] = field(default_factory=lambda: [".zip"])

    @classmethod
    def from_settings(cls, quota: Optional[RoleQuota] = None) -> "ExpansionCaps":
        """Global upload caps, tightened by the caller's role quota when given."""
        u = settings.upload
        caps = cls(
            max_files=u.max_files,
            max_total_bytes=u.max_total_bytes,
            max_file_bytes=u.max_file_bytes,
            extension_allowlist=list(u.extension_allowlist),
            path_denylist=list(u.path_denylist),
            archive_extensions=list(u.archive_extensions),
        )
        if quota is not None:
            caps.max_files = min(caps.max_files, quota.max_files_per_session)
            caps.max_file_bytes = min(caps.max_file_bytes, quota.max_file_bytes)
        return caps


def is_archive(filename: str, caps: ExpansionCaps, mime: Optional[str] = None) -> bool:
    ext = PurePosixPath(filename.replace("\\", "/")).suffix.lower()
    return ext in caps.archive_extensions or (mime or "").lower() in ZIP_MIME_TYPES


def normalize_path(name: str) -> str:
    """
    Normalize an entry name to a relative POSIX path.

    Raises ExpansionError(traversal) for absolute paths, drive prefixes and
    any '..' segment.
    """
    raw = name.replace("\\", "/")
    if raw.startswith("/") or (len(raw) > 1 and raw[1] == ":"):
        raise ExpansionError.traversal(name)
    parts = [p for p in raw.split("/") if p not in ("", ".")]
    if any(p == ".." for p in parts):
        raise ExpansionError.traversal(name)
    return "/".join(parts)


def is_denied(logical_path: str, denylist: Iterable[str]) -> bool:
    """True when any path segment matches a denylist entry (case-insensitive)."""
    deny = {d.lower() for d in denylist}
    return any(seg.lower() in deny for seg in logical_path.split("/"))


def _extension_allowed(logical_path: str, caps: ExpansionCaps) -> bool:
    if not caps.extension_allowlist:
        return True
    return PurePosixPath(logical_path).suffix.lower() in caps.extension_allowlist


def check_entry(logical_path: str, size_bytes: int, caps: ExpansionCaps) -> Optional[str]:
    """Why an already-stored entry violates *caps*, or None when it passes."""
    if is_denied(logical_path, caps.path_denylist):
        return f"Skipping denied path: {logical_path}"
    if not _extension_allowed(logical_path, caps):
        return f"Skipping file with unsupported extension: {logical_path}"
    if size_bytes > caps.max_file_bytes:
        return f"Skipping large file: {logical_path} ({size_bytes} bytes)"
    return None


def expand(blob: bytes, filename: str, caps: ExpansionCaps, mime: Optional[str] = None) -> ExpansionResult:
    """Expand one upload into an ExpansionResult ordered by logical_path."""
    if is_archive(filename, caps, mime):
        return _expand_zip(blob, caps)
    return _expand_single(blob, filename, caps)


def _expand_single(blob: bytes, filename: str, caps: ExpansionCaps) -> ExpansionResult:
    result = ExpansionResult()
    logical_path = PurePosixPath(normalize_path(filename)).name or "upload"
    if not _extension_allowed(logical_path, caps):
        result.skipped.append(logical_path)
        result.warnings.append(f"Skipping file with unsupported extension: {logical_path}")
        return result
    if len(blob) > caps.max_file_bytes:
        result.skipped.append(logical_path)
        result.warnings.append(f"Skipping large file: {logical_path} ({len(blob)} bytes)")
        return result
    result.entries.append(FileEntry(logical_path=logical_path, data=blob, size_bytes=len(blob)))
    return result


def _expand_zip(blob: bytes, caps: ExpansionCaps) -> ExpansionResult:
    try:
        zf = zipfile.ZipFile(io.BytesIO(blob))
    except (zipfile.BadZipFile, zipfile.LargeZipFile) as e:
        raise ExpansionError.corrupt(str(e)) from e

    result = ExpansionResult()
    with zf:
        infos = [i for i in zf.infolist() if not i.is_dir()]

        # traversal anywhere fails the whole upload before anything is read
        named = [(normalize_path(i.filename), i) for i in infos]

        selected = {}
        for logical_path, info in named:
            if not logical_path or is_denied(logical_path, caps.path_denylist):
                continue
            if not _extension_allowed(logical_path, caps):
                result.skipped.append(logical_path)
                continue
            if info.file_size > caps.max_file_bytes:
                result.skipped.append(logical_path)
                result.warnings.append(f"Skipping large file: {logical_path} ({info.file_size} bytes)")
                continue
            if logical_path in selected:
                result.warnings.append(f"Duplicate archive entry, keeping the last one: {logical_path}")
            selected[logical_path] = info

        if len(selected) > caps.max_files:
            raise QuotaError(
                ErrorCode.TOO_MANY_FILES,
                f"Archive holds {len(selected)} files, limit is {caps.max_files}",
                details={"files": len(selected), "limit": caps.max_files},
            )
        declared = sum(i.file_size for i in selected.values())
        if declared > caps.max_total_bytes:
            raise ExpansionError.too_large(declared, caps.max_total_bytes)

        total = 0
        for logical_path in sorted(selected):
            info = selected[logical_path]
            try:
                with zf.open(info) as fh:
                    data = fh.read(caps.max_file_bytes + 1)
            except (zipfile.BadZipFile, zlib.error, EOFError) as e:
                raise ExpansionError.corrupt(f"{logical_path}: {e}") from e
            # header sizes can lie; trust the decompressed length
            if len(data) > caps.max_file_bytes:
                result.skipped.append(logical_path)
                result.warnings.append(f"Skipping large file: {logical_path} (> {caps.max_file_bytes} bytes)")
                continue
            total += len(data)
            if total > caps.max_total_bytes:
                raise ExpansionError.too_large(total, caps.max_total_bytes)
            result.entries.append(FileEntry(logical_path=logical_path, data=data, size_bytes=len(data)))

    result.skipped.sort()
    logger.info(
        "[expand] %d entries kept, %d skipped, %d bytes",
        len(result.entries), len(result.skipped), result.total_bytes,
    )
    return result
