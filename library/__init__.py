"""Filesystem media scanner for the Carmine backend."""
from __future__ import annotations

import base64
import binascii
import logging
import mimetypes
import os
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Optional, Union

from pydantic import BaseModel

VIDEO_EXTS = (".mp4", ".mkv", ".avi", ".mov", ".wmv", ".flv", ".webm", ".m4v")
AUDIO_EXTS = (".mp3", ".flac", ".wav", ".aac", ".ogg", ".m4a", ".wma")
IMAGE_EXTS = (".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp", ".svg")

MEDIA_TYPES = ("video", "audio", "image")

_EXT_TABLE: dict[str, str] = {}
for _ext in VIDEO_EXTS:
    _EXT_TABLE[_ext] = "video"
for _ext in AUDIO_EXTS:
    _EXT_TABLE[_ext] = "audio"
for _ext in IMAGE_EXTS:
    _EXT_TABLE[_ext] = "image"

# mimetypes has no entry for some of these on a bare interpreter
_EXTRA_MIME = {
    ".mkv": "video/x-matroska",
    ".flv": "video/x-flv",
    ".wmv": "video/x-ms-wmv",
    ".m4v": "video/x-m4v",
    ".webm": "video/webm",
    ".flac": "audio/flac",
    ".aac": "audio/aac",
    ".m4a": "audio/mp4",
    ".wma": "audio/x-ms-wma",
    ".ogg": "audio/ogg",
    ".webp": "image/webp",
    ".svg": "image/svg+xml",
}


def log_enabled(cat: str) -> bool:
    """LOG_ALL (default on) gates every category; LOG_<CAT> overrides it."""
    base = os.environ.get("LOG_ALL", "1")
    base_on = str(base).lower() not in ("0", "false", "no")
    specific = os.environ.get(f"LOG_{cat.upper()}")
    if specific is not None:
        return str(specific).lower() in ("1", "true", "yes")
    return base_on


def _scan_log(level: int, msg: str, *args) -> None:
    if log_enabled("scan"):
        logging.log(level, "[scan] " + msg, *args)


class LibraryError(Exception):
    """Base error for scanner and identifier failures."""


class InvalidMediaId(LibraryError):
    """Raised when an id is not a valid encoded path."""


class MediaRecord(BaseModel):  # type: ignore
    id: str
    name: str
    path: str
    relative_path: str
    type: str
    mime_type: str
    size: int
    modified: datetime
    created: datetime


def encode_id(path: Union[str, Path]) -> str:
    """Return the URL-safe base64 id for an absolute path (no padding)."""
    raw = str(path).encode("utf-8", "surrogateescape")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_id(media_id: str) -> str:
    """Inverse of encode_id. Padding is optional; any other spelling of an id is rejected."""
    if not isinstance(media_id, str) or not media_id:
        raise InvalidMediaId("empty id")
    if "+" in media_id or "/" in media_id:
        raise InvalidMediaId(f"not base64url: {media_id!r}")
    s = media_id + "=" * (-len(media_id) % 4)
    try:
        raw = base64.b64decode(s.encode("ascii"), altchars=b"-_", validate=True)
    except (binascii.Error, UnicodeEncodeError, ValueError) as e:
        raise InvalidMediaId(f"not base64url: {media_id!r}") from e
    path = raw.decode("utf-8", "surrogateescape")
    # set trailing bits or odd padding decode to the same path under another id
    if encode_id(path) != media_id.rstrip("="):
        raise InvalidMediaId(f"non-canonical id: {media_id!r}")
    return path


def media_type(name: Union[str, Path]) -> Optional[str]:
    """Classify a file name by extension; None when it is not media."""
    return _EXT_TABLE.get(os.path.splitext(str(name))[1].lower())


def mime_type(name: Union[str, Path], default: str = "application/octet-stream") -> str:
    ext = os.path.splitext(str(name))[1].lower()
    if ext in _EXTRA_MIME:
        return _EXTRA_MIME[ext]
    return mimetypes.guess_type(str(name))[0] or default


def _ts(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def stat_times(st: os.stat_result) -> tuple[datetime, datetime]:
    """(modified, created) for a stat result; created falls back to ctime."""
    born = getattr(st, "st_birthtime", None)
    return _ts(st.st_mtime), _ts(born if born is not None else st.st_ctime)


def scan_directory(root: Union[str, Path], filter_type: Optional[str] = None) -> list[MediaRecord]:
    """
    Recursively collect media files under root.

    Dot-prefixed entries are skipped, and hidden directories are not entered.
    Symlinks are neither followed nor reported. Unreadable directories are
    logged and skipped; a missing root yields an empty list. Order is not
    guaranteed.
    """
    if filter_type is not None and filter_type not in MEDIA_TYPES:
        raise ValueError(f"unknown media type: {filter_type}")
    base = Path(root)
    results: list[MediaRecord] = []

    def _walk(current: Path, rel: str) -> None:
        try:
            with os.scandir(current) as it:
                entries = list(it)
        except OSError as e:
            _scan_log(logging.WARNING, "skipping %s: %s", current, e)
            return
        for entry in entries:
            if entry.name.startswith("."):
                continue
            full = Path(entry.path)
            rel_path = os.path.join(rel, entry.name) if rel else entry.name
            try:
                if entry.is_dir(follow_symlinks=False):
                    _walk(full, rel_path)
                    continue
                if not entry.is_file(follow_symlinks=False):
                    continue
            except OSError as e:
                _scan_log(logging.WARNING, "skipping %s: %s", full, e)
                continue
            kind = media_type(entry.name)
            if kind is None or (filter_type and kind != filter_type):
                continue
            try:
                st = entry.stat(follow_symlinks=False)
            except OSError as e:
                # removed between listing and stat
                _scan_log(logging.WARNING, "skipping %s: %s", full, e)
                continue
            modified, created = stat_times(st)
            results.append(MediaRecord(
                id=encode_id(full),
                name=entry.name,
                path=str(full),
                relative_path=rel_path,
                type=kind,
                mime_type=mime_type(entry.name),
                size=st.st_size,
                modified=modified,
                created=created,
            ))

    if not base.is_dir():
        return results
    _walk(base, "")
    return results


def scan_roots(roots: Iterable[Union[str, Path]], filter_type: Optional[str] = None) -> list[MediaRecord]:
    """Scan each existing root and concatenate the results."""
    out: list[MediaRecord] = []
    for root in roots:
        p = Path(root)
        if not p.exists():
            _scan_log(logging.INFO, "root missing, skipped: %s", p)
            continue
        out.extend(scan_directory(p, filter_type))
    return out


def format_file_size(size: int) -> str:
    if size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    i = 0
    while size >= 1024 ** (i + 1) and i < len(units) - 1:
        i += 1
    value = round(size / (1024 ** i), 2)
    return f"{value:g} {units[i]}"


def format_duration(seconds: float) -> str:
    total = int(max(0.0, float(seconds or 0)))
    hrs, rem = divmod(total, 3600)
    mins, secs = divmod(rem, 60)
    if hrs > 0:
        return f"{hrs}:{mins:02d}:{secs:02d}"
    return f"{mins}:{secs:02d}"


__all__ = [
    "VIDEO_EXTS",
    "AUDIO_EXTS",
    "IMAGE_EXTS",
    "MEDIA_TYPES",
    "log_enabled",
    "LibraryError",
    "InvalidMediaId",
    "MediaRecord",
    "encode_id",
    "decode_id",
    "media_type",
    "mime_type",
    "stat_times",
    "scan_directory",
    "scan_roots",
    "format_file_size",
    "format_duration",
]
