"""JSON file stores for the Carmine backend (settings, tags, albums, playlists)."""
from __future__ import annotations

import copy
import json
import logging
import os
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Iterator, Optional, Union

from library import log_enabled

MEDIA_KINDS = ("videos", "music", "photos")

# settings kind -> scanner media type
KIND_TYPES = {"videos": "video", "music": "audio", "photos": "image"}

DEFAULT_SETTINGS: dict[str, Any] = {
    "server": {"host": "0.0.0.0", "port": 3000},
    "media": {"videos": ["../media/videos"], "music": ["../media/music"], "photos": ["../media/photos"]},
}

DEFAULT_CATEGORIES: dict[str, Any] = {
    "categories": [
        {"id": "movies", "name": "Movies", "icon": "film"},
        {"id": "tvshows", "name": "TV Shows", "icon": "tv"},
        {"id": "homevideos", "name": "Home Videos", "icon": "video"},
    ],
    "assignments": {},
}


class StoreError(Exception):
    """Raised when a store cannot be written or holds invalid data."""


class InvalidSettings(StoreError):
    """Settings document failed validation."""


def _json_dump_atomic(path: Path, data: Any) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(path.suffix + ".tmp")
    tmp.write_text(json.dumps(data, indent=2), encoding="utf-8")
    os.replace(tmp, path)


class JsonStore:
    """A single JSON document on disk with a default shape."""

    def __init__(self, path: Union[str, Path], default: Any) -> None:
        resolved = Path(path).expanduser()
        if not resolved.is_absolute():
            resolved = resolved.resolve()
        self.path = resolved
        self.default = default
        self._lock = threading.RLock()

    def read(self) -> Any:
        """Parsed document, or a copy of the default when missing or unreadable."""
        try:
            if self.path.exists():
                return json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            if log_enabled("store"):
                logging.warning("[store] failed to read %s: %s", self.path, e)
        return copy.deepcopy(self.default)

    def write(self, data: Any) -> None:
        try:
            _json_dump_atomic(self.path, data)
        except OSError as e:
            raise StoreError(f"failed to write {self.path}: {e}") from e

    @contextmanager
    def session(self) -> Iterator[Any]:
        """Read-modify-write under the store lock; writes back on clean exit."""
        with self._lock:
            data = self.read()
            yield data
            self.write(data)


class SettingsStore(JsonStore):
    """Settings document plus media-root resolution."""

    def __init__(self, path: Union[str, Path]) -> None:
        super().__init__(path, DEFAULT_SETTINGS)

    @property
    def base_dir(self) -> Path:
        return self.path.parent

    def load(self) -> dict:
        data = self.read()
        if not isinstance(data, dict):
            if log_enabled("settings"):
                logging.warning("[settings] %s is not an object; using defaults", self.path)
            data = copy.deepcopy(DEFAULT_SETTINGS)
        server = data.get("server")
        if not isinstance(server, dict):
            data["server"] = copy.deepcopy(DEFAULT_SETTINGS["server"])
        media = data.get("media")
        if not isinstance(media, dict):
            media = {}
            data["media"] = media
        for kind in MEDIA_KINDS:
            dirs = media.get(kind)
            media[kind] = [str(d) for d in dirs if isinstance(d, str)] if isinstance(dirs, list) else []
        return data

    def save(self, settings: dict) -> dict:
        validate_settings(settings)
        with self._lock:
            self.write(settings)
        return settings

    def resolve(self, entry: str) -> Path:
        """Absolute path for a configured directory (relative to the settings file)."""
        p = Path(entry).expanduser()
        if not p.is_absolute():
            p = self.base_dir / p
        return Path(os.path.normpath(str(p)))

    def roots(self, settings: dict, kind: str) -> list[Path]:
        return [self.resolve(d) for d in (settings.get("media") or {}).get(kind, [])]


def validate_settings(settings: Any) -> None:
    if not isinstance(settings, dict):
        raise InvalidSettings("settings must be an object")
    if not isinstance(settings.get("server"), dict) or not isinstance(settings.get("media"), dict):
        raise InvalidSettings("Invalid configuration")
    for kind in MEDIA_KINDS:
        dirs = settings["media"].get(kind, [])
        if not isinstance(dirs, list) or not all(isinstance(d, str) for d in dirs):
            raise InvalidSettings(f"media.{kind} must be a list of paths")


class Stores:
    """All JSON stores for one server instance."""

    def __init__(self, settings_path: Union[str, Path], data_dir: Optional[Union[str, Path]] = None) -> None:
        self.settings = SettingsStore(settings_path)
        base = Path(data_dir).expanduser() if data_dir else self.settings.base_dir
        self.data_dir = base
        self.photo_tags = JsonStore(base / "photo-tags.json", {})
        self.albums = JsonStore(base / "albums.json", {"albums": []})
        self.playlists = JsonStore(base / "playlists.json", {"playlists": []})
        self.categories = JsonStore(base / "video-categories.json", DEFAULT_CATEGORIES)


__all__ = [
    "MEDIA_KINDS",
    "KIND_TYPES",
    "DEFAULT_SETTINGS",
    "DEFAULT_CATEGORIES",
    "StoreError",
    "InvalidSettings",
    "JsonStore",
    "SettingsStore",
    "Stores",
    "validate_settings",
]
