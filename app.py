from __future__ import annotations
import os
import re
import io
import copy
import time
import uuid
import random
import string
import socket
import logging
import platform
import threading
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterator, List, Optional

import mutagen
import psutil
from mutagen.mp4 import MP4Cover
from pydantic import BaseModel, Field
from PIL import Image, ImageOps

from fastapi import FastAPI, APIRouter, HTTPException, Request, Depends
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, HTMLResponse, RedirectResponse, FileResponse
from fastapi.staticfiles import StaticFiles
from fastapi.middleware.cors import CORSMiddleware
from starlette.responses import Response, StreamingResponse

import library
from library import MediaRecord, InvalidMediaId, decode_id, encode_id, log_enabled, scan_roots
from store import KIND_TYPES, MEDIA_KINDS, InvalidSettings, StoreError, Stores

_BASE = Path(__file__).parent
_PUBLIC = _BASE / "public"

STREAM_CHUNK = 1024 * 1024
THUMB_SIZE = 400
THUMB_QUALITY = 80

VIDEO_PLACEHOLDER = "/assets/icons/video-placeholder.svg"
MUSIC_PLACEHOLDER = "/assets/icons/music-placeholder.svg"

# Per-collection wiring: scanner type, label for errors, fallback content type
COLLECTIONS: Dict[str, Dict[str, str]] = {
    "videos": {"type": "video", "label": "Video", "default_mime": "video/mp4"},
    "music": {"type": "audio", "label": "Track", "default_mime": "audio/mpeg"},
    "photos": {"type": "image", "label": "Photo", "default_mime": "image/jpeg"},
}


# ------------------------------------------------------------
# Logging categories (coarse grained, opt-in / opt-out)
#   LOG_ALL=0 disables all unless explicitly enabled; LOG_ALL=1 (default)
#   enables all unless disabled. Per-category overrides: LOG_SCAN, LOG_STREAM,
#   LOG_STORE, LOG_SETTINGS, LOG_STARTUP. The scanner and stores share the gate.
# ------------------------------------------------------------
def _log(cat: str, msg: str, level: int = logging.INFO) -> None:
    """Emit an application log line for a given category."""
    if not log_enabled(cat):
        return
    logging.log(level, "[%s] %s", cat, msg)


def _default_config_path() -> Path:
    return Path(os.environ.get("CARMINE_CONFIG") or (_BASE / "config" / "settings.json")).expanduser()


class ServerContext:
    """
    Explicit runtime configuration handed to every handler.

    Holds the stores and the current settings document; settings updates
    replace the document under a lock and persist it through the store.
    """

    def __init__(self, stores: Stores) -> None:
        self.stores = stores
        self.settings: dict = stores.settings.load()
        self.started_at = time.time()
        self._lock = threading.Lock()

    def roots(self, kind: str) -> list[Path]:
        return self.stores.settings.roots(self.settings, kind)

    def update_settings(self, mutate) -> dict:
        """Apply mutate(copy) and persist; the live document is swapped only on success."""
        with self._lock:
            draft = copy.deepcopy(self.settings)
            result = mutate(draft)
            self.stores.settings.save(draft)
            self.settings = draft
            return result if result is not None else draft


def create_context(config_path: Optional[os.PathLike | str] = None, data_dir: Optional[os.PathLike | str] = None) -> ServerContext:
    cfg = Path(config_path) if config_path else _default_config_path()
    data = data_dir or os.environ.get("CARMINE_DATA_DIR") or None
    return ServerContext(Stores(cfg, data))


def get_ctx(request: Request) -> ServerContext:
    return request.app.state.ctx


def api_success(data=None, message: str = "OK", status_code: int = 200):
    return JSONResponse({"status": "success", "message": message, "data": data}, status_code=status_code)


def api_error(message: str, status_code: int = 400, data=None):
    return JSONResponse({"status": "error", "message": message, "data": data}, status_code=status_code)


def raise_api_error(message: str, status_code: int = 400, data=None, headers: Optional[dict] = None):
    raise HTTPException(status_code=status_code, detail={"status": "error", "message": message, "data": data}, headers=headers)


@asynccontextmanager
async def lifespan(app_obj: FastAPI):  # type: ignore[override]
    ctx: ServerContext = app_obj.state.ctx
    _log("startup", f"settings={ctx.stores.settings.path} data_dir={ctx.stores.data_dir}")
    for kind in MEDIA_KINDS:
        for root in ctx.roots(kind):
            if not root.is_dir():
                _log("startup", f"{kind} root missing: {root}", logging.WARNING)
    yield


app = FastAPI(title="Carmine", version="1.0", lifespan=lifespan)
app.state.ctx = create_context()
api = APIRouter(prefix="/api")


@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    headers = getattr(exc, "headers", None)
    if isinstance(exc.detail, dict) and exc.detail.get("status") == "error":
        return JSONResponse(exc.detail, status_code=exc.status_code, headers=headers)
    return JSONResponse({"status": "error", "message": str(exc.detail), "data": None}, status_code=exc.status_code, headers=headers)


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        {"status": "error", "message": "invalid parameters", "data": jsonable_encoder(exc.errors())},
        status_code=400,
    )


# -----------------------------
# CORS: configure via CORS_ALLOW_ORIGINS (comma-separated). Defaults to *.
# -----------------------------
def _cors_origins() -> list[str]:
    v = os.environ.get("CORS_ALLOW_ORIGINS")
    if not v or not v.strip():
        return ["*"]
    out = [part.strip() for part in v.split(",") if part.strip()]
    return out or ["*"]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_cors_origins(),
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)


############################
# Helpers
############################

def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _natural_key(name: str) -> list:
    # alternating str/int chunks so "ep2" sorts before "ep10"
    return [int(tok) if i % 2 else tok.lower() for i, tok in enumerate(re.split(r"([0-9]+)", name))]


def _dump(records: List[MediaRecord]) -> list[dict]:
    return [r.model_dump(mode="json") for r in records]


def _scan_kind(ctx: ServerContext, kind: str) -> list[MediaRecord]:
    return scan_roots(ctx.roots(kind), KIND_TYPES[kind])


def _within_roots(p: str, roots: list[Path]) -> bool:
    """True when p is a normalized absolute path inside one of roots (after resolving links too)."""
    if "\x00" in p or not os.path.isabs(p) or os.path.normpath(p) != p:
        return False
    real = os.path.realpath(p)
    for root in roots:
        r = str(root)
        rr = os.path.realpath(r)
        try:
            if os.path.commonpath([r, p]) == r and os.path.commonpath([rr, real]) == rr:
                return True
        except ValueError:
            continue
    return False


def _resolve_media(ctx: ServerContext, kind: str, media_id: str) -> Path:
    """Decode an id to an existing file of this collection or raise a 404."""
    meta = COLLECTIONS[kind]
    not_found = f"{meta['label']} not found"
    try:
        p = decode_id(media_id)
    except InvalidMediaId:
        raise_api_error(not_found, status_code=404)
    if library.media_type(p) != meta["type"] or not _within_roots(p, ctx.roots(kind)):
        raise_api_error(not_found, status_code=404)
    fp = Path(p)
    if not fp.is_file():
        raise_api_error(not_found, status_code=404)
    return fp


def _canonical_id(kind: str, media_id: str) -> str:
    """Unpadded spelling of an id used as a store key; undecodable ids are a 404."""
    try:
        return encode_id(decode_id(media_id))
    except InvalidMediaId:
        raise_api_error(f"{COLLECTIONS[kind]['label']} not found", status_code=404)


def _canonical_ids(ids: List[str]) -> list[str]:
    out = []
    for media_id in ids:
        try:
            out.append(encode_id(decode_id(media_id)))
        except InvalidMediaId:
            raise_api_error(f"Invalid media id: {media_id}", status_code=400)
    return out


def _media_info(ctx: ServerContext, kind: str, media_id: str) -> dict:
    fp = _resolve_media(ctx, kind, media_id)
    try:
        st = fp.stat()
    except FileNotFoundError:
        raise_api_error(f"{COLLECTIONS[kind]['label']} not found", status_code=404)
    modified, _created = library.stat_times(st)
    return {
        "id": encode_id(fp),
        "name": fp.name,
        "path": str(fp),
        "size": st.st_size,
        "size_formatted": library.format_file_size(st.st_size),
        "modified": modified.isoformat(),
    }


def _delete_media(ctx: ServerContext, kind: str, media_id: str) -> dict:
    fp = _resolve_media(ctx, kind, media_id)
    label = COLLECTIONS[kind]["label"]
    try:
        fp.unlink()
    except FileNotFoundError:
        raise_api_error(f"{label} not found", status_code=404)
    except OSError as e:
        raise_api_error(f"failed to delete: {e}", status_code=500)
    _log("store", f"deleted {kind} file {fp}")
    return {"success": True, "message": f"{label} deleted successfully"}


_RANGE_RE = re.compile(r"^\s*(\d*)\s*-\s*(\d*)\s*$", re.ASCII)


def parse_range(header: str, size: int) -> tuple[int, int]:
    """
    Parse a single byte range against a file size, returning inclusive (start, end).

    Only the first clause of a multi-range header is used. An omitted end means
    end of file and an end past EOF is clamped; "-N" is the last N bytes.
    Raises ValueError when the range cannot be satisfied.
    """
    unit, sep, spec = header.partition("=")
    if not sep or unit.strip().lower() != "bytes":
        raise ValueError(f"unsupported range unit: {header!r}")
    first = spec.split(",", 1)[0]
    m = _RANGE_RE.match(first)
    if not m:
        raise ValueError(f"malformed range: {header!r}")
    start_s, end_s = m.groups()
    if not start_s:
        if not end_s or int(end_s) == 0:
            raise ValueError(f"malformed range: {header!r}")
        start = max(0, size - int(end_s))
        end = size - 1
    else:
        start = int(start_s)
        end = min(int(end_s), size - 1) if end_s else size - 1
    if start >= size or start > end:
        raise ValueError(f"range not satisfiable: {header!r} size={size}")
    return start, end


def _file_chunks(f: BinaryIO, start: int, end: int) -> Iterator[bytes]:
    """Yield [start, end] from an open handle; the handle is closed when the generator ends or is closed."""
    try:
        f.seek(start)
        remaining = end - start + 1
        while remaining > 0:
            data = f.read(min(STREAM_CHUNK, remaining))
            if not data:
                break
            remaining -= len(data)
            yield data
    finally:
        f.close()


def _open_media(file_path: Path) -> tuple[BinaryIO, int]:
    """Open before any response is built so failures surface as errors, not truncated bodies."""
    try:
        f = open(file_path, "rb")
    except FileNotFoundError:
        raise_api_error("Not found", status_code=404)
    except OSError as e:
        _log("stream", f"open failed for {file_path.name}: {e}", logging.ERROR)
        raise_api_error(f"failed to open file: {e}", status_code=500)
    try:
        return f, os.fstat(f.fileno()).st_size
    except OSError as e:
        f.close()
        raise_api_error(f"failed to open file: {e}", status_code=500)


def _serve_range(request: Request, file_path: Path, media_type: str):
    range_header = request.headers.get("range")
    f, file_size = _open_media(file_path)
    if range_header:
        try:
            start, end = parse_range(range_header, file_size)
        except ValueError as e:
            f.close()
            _log("stream", f"416 {file_path.name}: {e}")
            raise_api_error("Invalid Range", status_code=416, headers={"Content-Range": f"bytes */{file_size}"})
        if "," in range_header:
            _log("stream", f"multi-range requested for {file_path.name}; serving first clause only")
        headers = {
            "Content-Range": f"bytes {start}-{end}/{file_size}",
            "Accept-Ranges": "bytes",
            "Content-Length": str(end - start + 1),
            "Content-Type": media_type,
        }
        _log("stream", f"206 {file_path.name} {start}-{end}/{file_size} ct={media_type}")
        return StreamingResponse(_file_chunks(f, start, end), status_code=206, headers=headers)
    headers = {
        "Accept-Ranges": "bytes",
        "Content-Type": media_type,
        "Content-Length": str(file_size),
    }
    _log("stream", f"200 {file_path.name} full size={file_size} ct={media_type}")
    return StreamingResponse(_file_chunks(f, 0, file_size - 1), status_code=200, headers=headers)


def _stream_media(request: Request, ctx: ServerContext, kind: str, media_id: str):
    fp = _resolve_media(ctx, kind, media_id)
    mt = library.mime_type(fp.name, default=COLLECTIONS[kind]["default_mime"])
    return _serve_range(request, fp, mt)


def _store_call(fn):
    """Run a store operation, mapping write failures to a 500."""
    try:
        return fn()
    except InvalidSettings as e:
        raise_api_error(str(e), status_code=400)
    except StoreError as e:
        _log("store", str(e), logging.ERROR)
        raise_api_error(str(e), status_code=500)


############################
# Request bodies
############################

class CategoryUpdate(BaseModel):  # type: ignore
    category_id: Optional[str] = None


class TagsUpdate(BaseModel):  # type: ignore
    people: List[str]


class AlbumCreate(BaseModel):  # type: ignore
    name: str = ""


class AlbumUpdate(BaseModel):  # type: ignore
    name: Optional[str] = None
    cover_photo_id: Optional[str] = None


class PhotoIds(BaseModel):  # type: ignore
    photo_ids: List[str]


class PlaylistCreate(BaseModel):  # type: ignore
    name: str = ""
    tracks: List[str] = Field(default_factory=list)


class PlaylistUpdate(BaseModel):  # type: ignore
    name: Optional[str] = None
    tracks: Optional[List[str]] = None


class TrackIds(BaseModel):  # type: ignore
    track_ids: List[str]


class MediaDir(BaseModel):  # type: ignore
    path: str = ""


############################
# Core API
############################

@api.get("/health")
def health(ctx: ServerContext = Depends(get_ctx)):
    return {
        "ok": True,
        "time": time.time(),
        "uptime": max(0.0, time.time() - ctx.started_at),
        "settings": str(ctx.stores.settings.path),
        "version": app.version,
        "pid": os.getpid(),
    }


@api.get("/stats")
def stats(ctx: ServerContext = Depends(get_ctx)):
    counts = {kind: len(_scan_kind(ctx, kind)) for kind in MEDIA_KINDS}
    return api_success({**counts, "total_files": sum(counts.values())})


def _primary_ipv4() -> str:
    for _name, addrs in psutil.net_if_addrs().items():
        for addr in addrs:
            if addr.family == socket.AF_INET and not addr.address.startswith("127."):
                return addr.address
    return "127.0.0.1"


def _existing_dir(p: Path) -> Path:
    cur = p
    while not cur.exists() and cur.parent != cur:
        cur = cur.parent
    return cur


@api.get("/system")
def system_info(ctx: ServerContext = Depends(get_ctx)):
    vm = psutil.virtual_memory()
    du = psutil.disk_usage(str(_existing_dir(ctx.stores.data_dir)))
    up = int(time.time() - ctx.started_at)
    days, rem = divmod(up, 86400)
    hours, rem = divmod(rem, 3600)
    minutes = rem // 60
    return api_success({
        "cpu": {
            "usage": round(psutil.cpu_percent(interval=0.1)),
            "cores": psutil.cpu_count() or 1,
            "model": platform.processor() or platform.machine() or "Unknown",
        },
        "memory": {
            "total": vm.total,
            "used": vm.total - vm.available,
            "free": vm.available,
            "percentage": round(vm.percent),
        },
        "disk": {
            "total": du.total,
            "used": du.used,
            "free": du.free,
            "percentage": round(du.percent),
        },
        "uptime": {
            "days": days,
            "hours": hours,
            "minutes": minutes,
            "formatted": f"{days}d {hours}h {minutes}m",
        },
        "network": {
            "ip": _primary_ipv4(),
            "hostname": socket.gethostname(),
            "platform": sys.platform,
        },
        "timestamp": _now_iso(),
    })


# -----------------------------
# Videos
# -----------------------------

def _categories_with_counts(data: dict, videos: list[MediaRecord]) -> list[dict]:
    assignments = data.get("assignments") or {}
    counts = {c["id"]: 0 for c in data.get("categories", [])}
    uncategorized = 0
    for v in videos:
        cid = assignments.get(v.id)
        if cid and cid in counts:
            counts[cid] += 1
        else:
            uncategorized += 1
    out = [{**c, "count": counts[c["id"]]} for c in data.get("categories", [])]
    if uncategorized > 0:
        out.append({"id": "uncategorized", "name": "Uncategorized", "icon": "folder", "count": uncategorized})
    return out


@api.get("/videos")
def videos_list(ctx: ServerContext = Depends(get_ctx)):
    videos = _scan_kind(ctx, "videos")
    videos.sort(key=lambda r: _natural_key(r.name))
    return api_success(_dump(videos))


@api.get("/videos/categories")
def videos_categories(ctx: ServerContext = Depends(get_ctx)):
    data = ctx.stores.categories.read()
    return api_success(_categories_with_counts(data, _scan_kind(ctx, "videos")))


@api.get("/videos/categories/{category_id}")
def videos_by_category(category_id: str, ctx: ServerContext = Depends(get_ctx)):
    assignments = ctx.stores.categories.read().get("assignments") or {}
    videos = _scan_kind(ctx, "videos")
    if category_id == "uncategorized":
        picked = [v for v in videos if not assignments.get(v.id)]
    else:
        picked = [v for v in videos if assignments.get(v.id) == category_id]
    picked.sort(key=lambda r: r.modified, reverse=True)
    return api_success(_dump(picked))


def _tv_videos(ctx: ServerContext) -> list[MediaRecord]:
    assignments = ctx.stores.categories.read().get("assignments") or {}
    return [v for v in _scan_kind(ctx, "videos") if assignments.get(v.id) == "tvshows"]


@api.get("/videos/tvshows")
def videos_tvshows(ctx: ServerContext = Depends(get_ctx)):
    shows: dict[str, dict] = {}
    for v in _tv_videos(ctx):
        parent = os.path.dirname(v.path)
        show_id = encode_id(parent)
        show = shows.setdefault(show_id, {
            "id": show_id,
            "name": os.path.basename(parent),
            "path": parent,
            "episodes": [],
        })
        show["episodes"].append(v)
    out = []
    for show in shows.values():
        episodes = sorted(show.pop("episodes"), key=lambda r: _natural_key(r.name))
        show["episode_count"] = len(episodes)
        show["cover_video_id"] = episodes[0].id if episodes else None
        out.append(show)
    out.sort(key=lambda s: s["name"].lower())
    return api_success(out)


@api.get("/videos/tvshows/{show_id}/episodes")
def videos_tvshow_episodes(show_id: str, ctx: ServerContext = Depends(get_ctx)):
    try:
        show_path = decode_id(show_id)
    except InvalidMediaId:
        raise_api_error("Show not found", status_code=404)
    episodes = [v for v in _tv_videos(ctx) if os.path.dirname(v.path) == show_path]
    episodes.sort(key=lambda r: _natural_key(r.name))
    items = []
    for n, ep in enumerate(episodes, start=1):
        items.append({**ep.model_dump(mode="json"), "episode_number": n})
    return api_success({"show_id": show_id, "show_name": os.path.basename(show_path), "episodes": items})


@api.get("/videos/{media_id}/category")
def video_category_get(media_id: str, ctx: ServerContext = Depends(get_ctx)):
    media_id = _canonical_id("videos", media_id)
    assignments = ctx.stores.categories.read().get("assignments") or {}
    return api_success({"category_id": assignments.get(media_id)})


@api.put("/videos/{media_id}/category")
def video_category_set(media_id: str, payload: CategoryUpdate, ctx: ServerContext = Depends(get_ctx)):
    media_id = _canonical_id("videos", media_id)
    cid = payload.category_id

    def _apply():
        with ctx.stores.categories.session() as data:
            assignments = data.setdefault("assignments", {})
            if cid is None or cid == "uncategorized":
                assignments.pop(media_id, None)
            else:
                assignments[media_id] = cid

    _store_call(_apply)
    return api_success({"success": True, "category_id": cid})


@api.get("/videos/{media_id}")
def video_get(media_id: str, ctx: ServerContext = Depends(get_ctx)):
    return api_success(_media_info(ctx, "videos", media_id))


@api.delete("/videos/{media_id}")
def video_delete(media_id: str, ctx: ServerContext = Depends(get_ctx)):
    return api_success(_delete_media(ctx, "videos", media_id))


@api.get("/videos/{media_id}/stream")
def video_stream(media_id: str, request: Request, ctx: ServerContext = Depends(get_ctx)):
    return _stream_media(request, ctx, "videos", media_id)


@api.get("/videos/{media_id}/thumb")
def video_thumb(media_id: str):
    # video frames are not extracted server-side
    return RedirectResponse(VIDEO_PLACEHOLDER, status_code=302)


# -----------------------------
# Music
# -----------------------------

def _year(value: Optional[str]) -> Optional[int]:
    m = re.match(r"\s*(\d{4})", value or "")
    return int(m.group(1)) if m else None


def _audio_cover(path: Path) -> Optional[tuple[bytes, str]]:
    """Embedded artwork as (bytes, mime), or None."""
    try:
        audio = mutagen.File(str(path))
    except Exception as e:
        _log("scan", f"cover unreadable for {path.name}: {e}", logging.DEBUG)
        return None
    if audio is None:
        return None
    pictures = getattr(audio, "pictures", None)
    if pictures:
        pic = pictures[0]
        return bytes(pic.data), pic.mime or "image/jpeg"
    tags = audio.tags
    if tags is None:
        return None
    if hasattr(tags, "getall"):
        apic = tags.getall("APIC")
        if apic:
            return bytes(apic[0].data), apic[0].mime or "image/jpeg"
    covr = tags.get("covr") if hasattr(tags, "get") else None
    if covr:
        cover = covr[0]
        fmt = getattr(cover, "imageformat", MP4Cover.FORMAT_JPEG)
        return bytes(cover), "image/png" if fmt == MP4Cover.FORMAT_PNG else "image/jpeg"
    return None


def _audio_metadata(path: Path) -> dict:
    """Tag summary for a track; any extraction failure degrades to filename defaults."""
    meta: Dict[str, Any] = {
        "title": path.stem,
        "artist": "Unknown Artist",
        "album": "Unknown Album",
        "year": None,
        "duration": None,
        "has_cover": False,
    }
    try:
        audio = mutagen.File(str(path), easy=True)
    except Exception as e:
        _log("scan", f"metadata unreadable for {path.name}: {e}", logging.DEBUG)
        return meta
    if audio is None:
        return meta

    def first(key: str) -> Optional[str]:
        try:
            vals = (audio.tags or {}).get(key)
        except Exception:
            return None
        if vals:
            return str(vals[0]).strip() or None
        return None

    meta["title"] = first("title") or meta["title"]
    meta["artist"] = first("artist") or meta["artist"]
    meta["album"] = first("album") or meta["album"]
    meta["year"] = _year(first("date"))
    length = getattr(getattr(audio, "info", None), "length", None)
    meta["duration"] = float(length) if length else None
    if meta["duration"]:
        meta["duration_formatted"] = library.format_duration(meta["duration"])
    meta["has_cover"] = _audio_cover(path) is not None
    return meta


@api.get("/music")
def music_list(ctx: ServerContext = Depends(get_ctx)):
    tracks = _scan_kind(ctx, "music")
    tracks.sort(key=lambda r: r.name.lower())
    out = []
    for t in tracks:
        item = t.model_dump(mode="json")
        item["metadata"] = _audio_metadata(Path(t.path))
        out.append(item)
    return api_success(out)


def _find_playlist(data: dict, playlist_id: str) -> dict:
    for pl in data.get("playlists", []):
        if pl.get("id") == playlist_id:
            return pl
    raise_api_error("Playlist not found", status_code=404)


def _new_playlist_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"playlist-{int(time.time() * 1000)}-{suffix}"


@api.get("/music/playlists/all")
def playlists_all(ctx: ServerContext = Depends(get_ctx)):
    return api_success(ctx.stores.playlists.read().get("playlists", []))


@api.post("/music/playlists")
def playlist_create(payload: PlaylistCreate, ctx: ServerContext = Depends(get_ctx)):
    name = payload.name.strip()
    if not name:
        raise_api_error("Playlist name is required", status_code=400)
    now = _now_iso()
    playlist = {
        "id": _new_playlist_id(),
        "name": name,
        "tracks": list(dict.fromkeys(_canonical_ids(payload.tracks))),
        "created": now,
        "modified": now,
    }

    def _apply():
        with ctx.stores.playlists.session() as data:
            data.setdefault("playlists", []).append(playlist)

    _store_call(_apply)
    return api_success(playlist, status_code=201)


@api.get("/music/playlists/{playlist_id}")
def playlist_get(playlist_id: str, ctx: ServerContext = Depends(get_ctx)):
    return api_success(_find_playlist(ctx.stores.playlists.read(), playlist_id))


@api.put("/music/playlists/{playlist_id}")
def playlist_update(playlist_id: str, payload: PlaylistUpdate, ctx: ServerContext = Depends(get_ctx)):
    fields = payload.model_dump(exclude_unset=True)
    if fields.get("tracks") is not None:
        fields["tracks"] = _canonical_ids(fields["tracks"])

    def _apply():
        with ctx.stores.playlists.session() as data:
            pl = _find_playlist(data, playlist_id)
            if fields.get("name") is not None:
                pl["name"] = fields["name"].strip() or pl["name"]
            if fields.get("tracks") is not None:
                pl["tracks"] = list(fields["tracks"])
            pl["modified"] = _now_iso()
            return pl

    return api_success(_store_call(_apply))


@api.post("/music/playlists/{playlist_id}/tracks")
def playlist_add_tracks(playlist_id: str, payload: TrackIds, ctx: ServerContext = Depends(get_ctx)):
    track_ids = _canonical_ids(payload.track_ids)

    def _apply():
        with ctx.stores.playlists.session() as data:
            pl = _find_playlist(data, playlist_id)
            tracks = pl.setdefault("tracks", [])
            for tid in track_ids:
                if tid not in tracks:
                    tracks.append(tid)
            pl["modified"] = _now_iso()
            return pl

    return api_success(_store_call(_apply))


@api.delete("/music/playlists/{playlist_id}/tracks")
def playlist_remove_tracks(playlist_id: str, payload: TrackIds, ctx: ServerContext = Depends(get_ctx)):
    drop = set(_canonical_ids(payload.track_ids))

    def _apply():
        with ctx.stores.playlists.session() as data:
            pl = _find_playlist(data, playlist_id)
            pl["tracks"] = [t for t in pl.get("tracks", []) if t not in drop]
            pl["modified"] = _now_iso()
            return pl

    return api_success(_store_call(_apply))


@api.delete("/music/playlists/{playlist_id}")
def playlist_delete(playlist_id: str, ctx: ServerContext = Depends(get_ctx)):
    def _apply():
        with ctx.stores.playlists.session() as data:
            pl = _find_playlist(data, playlist_id)
            data["playlists"].remove(pl)

    _store_call(_apply)
    return api_success({"success": True})


@api.get("/music/{media_id}")
def track_get(media_id: str, ctx: ServerContext = Depends(get_ctx)):
    return api_success(_media_info(ctx, "music", media_id))


@api.delete("/music/{media_id}")
def track_delete(media_id: str, ctx: ServerContext = Depends(get_ctx)):
    return api_success(_delete_media(ctx, "music", media_id))


@api.get("/music/{media_id}/stream")
def track_stream(media_id: str, request: Request, ctx: ServerContext = Depends(get_ctx)):
    return _stream_media(request, ctx, "music", media_id)


@api.get("/music/{media_id}/cover")
def track_cover(media_id: str, ctx: ServerContext = Depends(get_ctx)):
    fp = _resolve_media(ctx, "music", media_id)
    cover = _audio_cover(fp)
    if cover is None:
        return RedirectResponse(MUSIC_PLACEHOLDER, status_code=302)
    data, mt = cover
    return Response(content=data, media_type=mt)


# -----------------------------
# Photos
# -----------------------------

def _photos_newest_first(ctx: ServerContext) -> list[MediaRecord]:
    photos = _scan_kind(ctx, "photos")
    photos.sort(key=lambda r: r.modified, reverse=True)
    return photos


@api.get("/photos")
def photos_list(ctx: ServerContext = Depends(get_ctx)):
    return api_success(_dump(_photos_newest_first(ctx)))


@api.get("/photos/tags/people")
def photos_people(ctx: ServerContext = Depends(get_ctx)):
    tags = ctx.stores.photo_tags.read()
    people: set[str] = set()
    for names in tags.values():
        if isinstance(names, list):
            people.update(str(n) for n in names)
    return api_success(sorted(people))


@api.get("/photos/by-person/{name}")
def photos_by_person(name: str, ctx: ServerContext = Depends(get_ctx)):
    tags = ctx.stores.photo_tags.read()
    matching = [p for p in _photos_newest_first(ctx) if name in (tags.get(p.id) or [])]
    return api_success(_dump(matching))


def _find_album(data: dict, album_id: str) -> dict:
    for album in data.get("albums", []):
        if album.get("id") == album_id:
            return album
    raise_api_error("Album not found", status_code=404)


@api.get("/photos/albums/all")
def albums_all(ctx: ServerContext = Depends(get_ctx)):
    return api_success(ctx.stores.albums.read().get("albums", []))


@api.post("/photos/albums")
def album_create(payload: AlbumCreate, ctx: ServerContext = Depends(get_ctx)):
    name = payload.name.strip()
    if not name:
        raise_api_error("Album name is required", status_code=400)
    album = {
        "id": str(uuid.uuid4()),
        "name": name,
        "photo_ids": [],
        "cover_photo_id": None,
        "created": _now_iso(),
    }

    def _apply():
        with ctx.stores.albums.session() as data:
            data.setdefault("albums", []).append(album)

    _store_call(_apply)
    return api_success(album, status_code=201)


@api.get("/photos/albums/{album_id}")
def album_get(album_id: str, ctx: ServerContext = Depends(get_ctx)):
    album = _find_album(ctx.stores.albums.read(), album_id)
    by_id = {p.id: p for p in _scan_kind(ctx, "photos")}
    # ids whose files are gone are dropped, not reported
    photos = [by_id[pid] for pid in album.get("photo_ids", []) if pid in by_id]
    return api_success({**album, "photos": _dump(photos)})


@api.put("/photos/albums/{album_id}")
def album_update(album_id: str, payload: AlbumUpdate, ctx: ServerContext = Depends(get_ctx)):
    fields = payload.model_dump(exclude_unset=True)
    if fields.get("cover_photo_id") is not None:
        fields["cover_photo_id"] = _canonical_id("photos", fields["cover_photo_id"])

    def _apply():
        with ctx.stores.albums.session() as data:
            album = _find_album(data, album_id)
            if fields.get("name") is not None:
                album["name"] = fields["name"].strip() or album["name"]
            if "cover_photo_id" in fields:
                album["cover_photo_id"] = fields["cover_photo_id"]
            return album

    return api_success(_store_call(_apply))


@api.delete("/photos/albums/{album_id}")
def album_delete(album_id: str, ctx: ServerContext = Depends(get_ctx)):
    def _apply():
        with ctx.stores.albums.session() as data:
            album = _find_album(data, album_id)
            data["albums"].remove(album)

    _store_call(_apply)
    return api_success({"success": True})


@api.post("/photos/albums/{album_id}/photos")
def album_add_photos(album_id: str, payload: PhotoIds, ctx: ServerContext = Depends(get_ctx)):
    photo_ids = _canonical_ids(payload.photo_ids)

    def _apply():
        with ctx.stores.albums.session() as data:
            album = _find_album(data, album_id)
            ids = album.setdefault("photo_ids", [])
            for pid in photo_ids:
                if pid not in ids:
                    ids.append(pid)
            if not album.get("cover_photo_id") and ids:
                album["cover_photo_id"] = ids[0]
            return album

    return api_success(_store_call(_apply))


@api.delete("/photos/albums/{album_id}/photos")
def album_remove_photos(album_id: str, payload: PhotoIds, ctx: ServerContext = Depends(get_ctx)):
    drop = set(_canonical_ids(payload.photo_ids))

    def _apply():
        with ctx.stores.albums.session() as data:
            album = _find_album(data, album_id)
            album["photo_ids"] = [p for p in album.get("photo_ids", []) if p not in drop]
            if album.get("cover_photo_id") in drop:
                album["cover_photo_id"] = album["photo_ids"][0] if album["photo_ids"] else None
            return album

    return api_success(_store_call(_apply))


@api.get("/photos/{media_id}/tags")
def photo_tags_get(media_id: str, ctx: ServerContext = Depends(get_ctx)):
    media_id = _canonical_id("photos", media_id)
    tags = ctx.stores.photo_tags.read()
    return api_success({"people": tags.get(media_id) or []})


@api.put("/photos/{media_id}/tags")
def photo_tags_set(media_id: str, payload: TagsUpdate, ctx: ServerContext = Depends(get_ctx)):
    media_id = _canonical_id("photos", media_id)
    people = [p.strip() for p in payload.people if p.strip()]

    def _apply():
        with ctx.stores.photo_tags.session() as tags:
            if people:
                tags[media_id] = people
            else:
                tags.pop(media_id, None)

    _store_call(_apply)
    return api_success({"success": True, "people": people})


@api.get("/photos/{media_id}")
def photo_get(media_id: str, ctx: ServerContext = Depends(get_ctx)):
    return api_success(_media_info(ctx, "photos", media_id))


@api.delete("/photos/{media_id}")
def photo_delete(media_id: str, ctx: ServerContext = Depends(get_ctx)):
    return api_success(_delete_media(ctx, "photos", media_id))


@api.get("/photos/{media_id}/full")
def photo_full(media_id: str, request: Request, ctx: ServerContext = Depends(get_ctx)):
    return _stream_media(request, ctx, "photos", media_id)


def _thumbnail_bytes(path: Path) -> bytes:
    with Image.open(path) as im:
        im = ImageOps.exif_transpose(im)
        thumb = ImageOps.fit(im.convert("RGB"), (THUMB_SIZE, THUMB_SIZE), method=Image.Resampling.LANCZOS, centering=(0.5, 0.5))
    buf = io.BytesIO()
    thumb.save(buf, format="JPEG", quality=THUMB_QUALITY)
    return buf.getvalue()


@api.get("/photos/{media_id}/thumb")
def photo_thumb(media_id: str, ctx: ServerContext = Depends(get_ctx)):
    fp = _resolve_media(ctx, "photos", media_id)
    try:
        return Response(content=_thumbnail_bytes(fp), media_type="image/jpeg")
    except Exception as e:
        # formats Pillow cannot decode (svg, truncated files) fall back to the original
        _log("scan", f"thumbnail failed for {fp.name}: {e}", logging.DEBUG)
        return FileResponse(str(fp), media_type=library.mime_type(fp.name, default="image/jpeg"))


# -----------------------------
# Settings
# -----------------------------

def _check_kind(kind: str) -> None:
    if kind not in MEDIA_KINDS:
        raise_api_error("Invalid media type", status_code=400)


@api.get("/settings")
def settings_get(ctx: ServerContext = Depends(get_ctx)):
    return api_success(ctx.settings)


@api.put("/settings")
def settings_put(payload: Dict[str, Any], ctx: ServerContext = Depends(get_ctx)):
    def _merge(draft: dict) -> dict:
        draft.update(payload)
        return draft

    updated = _store_call(lambda: ctx.update_settings(_merge))
    _log("settings", f"settings replaced: keys={sorted(payload.keys())}")
    return api_success(updated)


@api.post("/settings/media/{kind}")
def settings_add_media(kind: str, payload: MediaDir, ctx: ServerContext = Depends(get_ctx)):
    _check_kind(kind)
    entry = payload.path.strip()
    if not entry:
        raise_api_error("Path is required", status_code=400)
    if not ctx.stores.settings.resolve(entry).is_dir():
        raise_api_error("Directory does not exist", status_code=400)

    def _add(draft: dict) -> dict:
        dirs = draft["media"].setdefault(kind, [])
        if entry not in dirs:
            dirs.append(entry)
            _log("settings", f"added {kind} root {entry}")
        return draft

    return api_success(_store_call(lambda: ctx.update_settings(_add)))


@api.delete("/settings/media/{kind}")
def settings_remove_media(kind: str, payload: MediaDir, ctx: ServerContext = Depends(get_ctx)):
    _check_kind(kind)
    entry = payload.path.strip()

    def _remove(draft: dict) -> dict:
        dirs = draft["media"].setdefault(kind, [])
        if entry in dirs:
            dirs.remove(entry)
            _log("settings", f"removed {kind} root {entry}")
        return draft

    return api_success(_store_call(lambda: ctx.update_settings(_remove)))


@api.post("/settings/scan")
def settings_scan(ctx: ServerContext = Depends(get_ctx)):
    counts = {kind: len(_scan_kind(ctx, kind)) for kind in MEDIA_KINDS}
    _log("scan", "rescan: " + ", ".join(f"{k}={v}" for k, v in counts.items()))
    return api_success({"success": True, **counts, "total": sum(counts.values())})


app.include_router(api)


############################
# Static assets
############################

@app.get("/", include_in_schema=False)
def index_html():
    idx = _PUBLIC / "index.html"
    if idx.exists():
        return HTMLResponse(idx.read_text(encoding="utf-8"))
    return HTMLResponse("<h1>UI missing</h1>")


if (_PUBLIC / "assets").is_dir():
    app.mount("/assets", StaticFiles(directory=str(_PUBLIC / "assets")), name="assets")


if __name__ == "__main__":  # pragma: no cover
    try:
        import uvicorn  # type: ignore
    except Exception as e:  # pragma: no cover
        sys.stderr.write("[app] Missing dependency: uvicorn. Install with: pip install uvicorn\n")
        raise SystemExit(1) from e
    # Require an explicit opt-in to start the server when running this file directly
    run_flag = os.environ.get("RUN_SERVER") or os.environ.get("RUN_STANDALONE")
    if str(run_flag).strip().lower() not in {"1", "true", "yes", "y"}:
        sys.stderr.write(
            "[app] Not starting server. To run directly, set RUN_SERVER=1 (or RUN_STANDALONE=1).\n"
        )
        sys.exit(0)
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(message)s")
    server_cfg = app.state.ctx.settings.get("server") or {}
    host = os.environ.get("HOST") or str(server_cfg.get("host") or "0.0.0.0")
    try:
        port = int(os.environ.get("PORT") or server_cfg.get("port") or 3000)
    except ValueError:
        port = 3000
    uvicorn.run(app, host=host, port=port)
