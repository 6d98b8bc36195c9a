import os
from pathlib import Path

from library import encode_id


def write_media(root: Path, rel: str, data: bytes = b"00", *, mtime: float | None = None) -> Path:
    p = root / rel
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(data)
    if mtime is not None:
        os.utime(p, (mtime, mtime))
    return p


def media_id(path: Path) -> str:
    return encode_id(str(path))


def pattern_bytes(n: int) -> bytes:
    return bytes(i % 251 for i in range(n))


def data_of(resp):
    body = resp.json()
    assert body["status"] == "success", body
    return body["data"]


_B64URL = "ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_"


def spare_bit_alias(media: str) -> str:
    """Same bytes under another spelling: flip an unused low bit of the last character."""
    assert len(media) % 4, "id has no spare bits"
    return media[:-1] + _B64URL[_B64URL.index(media[-1]) ^ 1]


def write_padded_media(root: Path, ext: str) -> Path:
    """A file whose path length leaves the unpadded id two characters short of a quad."""
    for stem in ("a", "ab", "abc"):
        name = f"{stem}{ext}"
        if len(str(root / name).encode("utf-8")) % 3 == 1:
            return write_media(root, name)
    raise AssertionError("unreachable")
