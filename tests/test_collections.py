import json

from helpers import data_of, media_id, spare_bit_alias, write_media, write_padded_media


# -----------------------------
# Photo tags
# -----------------------------

def test_photo_tags_round_trip(client, media_root):
    root = media_root / "media" / "photos"
    a = media_id(write_media(root, "a.jpg", mtime=1_600_000_000))
    b = media_id(write_media(root, "b.jpg", mtime=1_700_000_000))
    assert data_of(client.get(f"/api/photos/{a}/tags")) == {"people": []}

    body = data_of(client.put(f"/api/photos/{a}/tags", json={"people": [" Ana ", "Bo", ""]}))
    assert body["people"] == ["Ana", "Bo"]
    data_of(client.put(f"/api/photos/{b}/tags", json={"people": ["Ana"]}))

    assert data_of(client.get(f"/api/photos/{a}/tags")) == {"people": ["Ana", "Bo"]}
    assert data_of(client.get("/api/photos/tags/people")) == ["Ana", "Bo"]
    assert [p["name"] for p in data_of(client.get("/api/photos/by-person/Ana"))] == ["b.jpg", "a.jpg"]
    assert [p["name"] for p in data_of(client.get("/api/photos/by-person/Bo"))] == ["a.jpg"]

    data_of(client.put(f"/api/photos/{a}/tags", json={"people": []}))
    assert data_of(client.get("/api/photos/tags/people")) == ["Ana"]
    stored = json.loads((media_root / "config" / "photo-tags.json").read_text())
    assert stored == {b: ["Ana"]}


def test_photo_tags_requires_list(client):
    r = client.put("/api/photos/abc/tags", json={"people": "Ana"})
    assert r.status_code == 400
    assert r.json()["status"] == "error"


# -----------------------------
# Albums
# -----------------------------

def test_album_lifecycle(client, media_root):
    root = media_root / "media" / "photos"
    p1 = media_id(write_media(root, "one.jpg"))
    p2 = media_id(write_media(root, "two.jpg"))

    r = client.post("/api/photos/albums", json={"name": "  Summer "})
    assert r.status_code == 201
    album = data_of(r)
    assert album["name"] == "Summer"
    assert album["photo_ids"] == [] and album["cover_photo_id"] is None
    aid = album["id"]

    added = data_of(client.post(f"/api/photos/albums/{aid}/photos", json={"photo_ids": [p1, p2, p1]}))
    assert added["photo_ids"] == [p1, p2]
    assert added["cover_photo_id"] == p1

    detail = data_of(client.get(f"/api/photos/albums/{aid}"))
    assert [p["name"] for p in detail["photos"]] == ["one.jpg", "two.jpg"]

    removed = data_of(client.request("DELETE", f"/api/photos/albums/{aid}/photos", json={"photo_ids": [p1]}))
    assert removed["photo_ids"] == [p2]
    assert removed["cover_photo_id"] == p2

    renamed = data_of(client.put(f"/api/photos/albums/{aid}", json={"name": "Winter"}))
    assert renamed["name"] == "Winter"
    assert [a["id"] for a in data_of(client.get("/api/photos/albums/all"))] == [aid]

    assert data_of(client.delete(f"/api/photos/albums/{aid}")) == {"success": True}
    assert data_of(client.get("/api/photos/albums/all")) == []
    assert client.get(f"/api/photos/albums/{aid}").status_code == 404


def test_album_drops_photos_whose_files_are_gone(client, media_root):
    p = write_media(media_root / "media" / "photos", "gone.jpg")
    aid = data_of(client.post("/api/photos/albums", json={"name": "A"}))["id"]
    client.post(f"/api/photos/albums/{aid}/photos", json={"photo_ids": [media_id(p)]})
    p.unlink()
    detail = data_of(client.get(f"/api/photos/albums/{aid}"))
    assert detail["photos"] == []
    assert detail["photo_ids"] == [media_id(p)]


def test_album_requires_name(client):
    r = client.post("/api/photos/albums", json={"name": "   "})
    assert r.status_code == 400
    assert r.json()["message"] == "Album name is required"


def test_album_not_found(client):
    assert client.put("/api/photos/albums/nope", json={"name": "x"}).status_code == 404
    assert client.delete("/api/photos/albums/nope").status_code == 404
    assert client.post("/api/photos/albums/nope/photos", json={"photo_ids": []}).status_code == 404


# -----------------------------
# Playlists
# -----------------------------

def test_playlist_lifecycle(client, media_root):
    root = media_root / "media" / "music"
    t1 = media_id(write_media(root, "a.mp3"))
    t2 = media_id(write_media(root, "b.mp3"))

    r = client.post("/api/music/playlists", json={"name": "Road trip", "tracks": [t1]})
    assert r.status_code == 201
    pl = data_of(r)
    assert pl["id"].startswith("playlist-")
    assert pl["tracks"] == [t1]
    assert pl["created"] == pl["modified"]
    pid = pl["id"]

    added = data_of(client.post(f"/api/music/playlists/{pid}/tracks", json={"track_ids": [t2, t1]}))
    assert added["tracks"] == [t1, t2]

    removed = data_of(client.request("DELETE", f"/api/music/playlists/{pid}/tracks", json={"track_ids": [t1]}))
    assert removed["tracks"] == [t2]

    updated = data_of(client.put(f"/api/music/playlists/{pid}", json={"name": "Night drive", "tracks": [t1, t2]}))
    assert updated["name"] == "Night drive"
    assert updated["tracks"] == [t1, t2]

    assert data_of(client.get(f"/api/music/playlists/{pid}"))["name"] == "Night drive"
    assert len(data_of(client.get("/api/music/playlists/all"))) == 1
    assert data_of(client.delete(f"/api/music/playlists/{pid}")) == {"success": True}
    assert client.get(f"/api/music/playlists/{pid}").status_code == 404


def test_playlist_requires_name(client):
    r = client.post("/api/music/playlists", json={"name": ""})
    assert r.status_code == 400
    assert r.json()["message"] == "Playlist name is required"


def test_playlist_ids_are_unique(client):
    ids = {data_of(client.post("/api/music/playlists", json={"name": f"p{n}"}))["id"] for n in range(5)}
    assert len(ids) == 5


# -----------------------------
# Video categories and TV shows
# -----------------------------

def test_categories_count_assignments(client, media_root):
    root = media_root / "media" / "videos"
    a = media_id(write_media(root, "a.mp4"))
    write_media(root, "b.mp4")

    cats = {c["id"]: c["count"] for c in data_of(client.get("/api/videos/categories"))}
    assert cats == {"movies": 0, "tvshows": 0, "homevideos": 0, "uncategorized": 2}

    body = data_of(client.put(f"/api/videos/{a}/category", json={"category_id": "movies"}))
    assert body["category_id"] == "movies"
    assert data_of(client.get(f"/api/videos/{a}/category")) == {"category_id": "movies"}

    cats = {c["id"]: c["count"] for c in data_of(client.get("/api/videos/categories"))}
    assert cats["movies"] == 1 and cats["uncategorized"] == 1
    assert [v["name"] for v in data_of(client.get("/api/videos/categories/movies"))] == ["a.mp4"]
    assert [v["name"] for v in data_of(client.get("/api/videos/categories/uncategorized"))] == ["b.mp4"]

    data_of(client.put(f"/api/videos/{a}/category", json={"category_id": None}))
    assert data_of(client.get(f"/api/videos/{a}/category")) == {"category_id": None}


def test_uncategorized_is_omitted_when_empty(client):
    ids = [c["id"] for c in data_of(client.get("/api/videos/categories"))]
    assert ids == ["movies", "tvshows", "homevideos"]


def test_tv_shows_group_by_folder(client, media_root):
    root = media_root / "media" / "videos"
    eps = [write_media(root, f"Show A/s01e{n}.mp4") for n in (10, 2, 1)]
    other = write_media(root, "Show B/pilot.mkv")
    write_media(root, "movie.mp4")
    for p in eps + [other]:
        data_of(client.put(f"/api/videos/{media_id(p)}/category", json={"category_id": "tvshows"}))

    shows = data_of(client.get("/api/videos/tvshows"))
    assert [s["name"] for s in shows] == ["Show A", "Show B"]
    show_a = shows[0]
    assert show_a["episode_count"] == 3
    assert show_a["cover_video_id"] == media_id(root / "Show A" / "s01e1.mp4")

    listing = data_of(client.get(f"/api/videos/tvshows/{show_a['id']}/episodes"))
    assert listing["show_name"] == "Show A"
    assert [(e["name"], e["episode_number"]) for e in listing["episodes"]] == [
        ("s01e1.mp4", 1),
        ("s01e2.mp4", 2),
        ("s01e10.mp4", 3),
    ]


def test_tv_show_unknown_id(client):
    assert client.get("/api/videos/tvshows/***/episodes").status_code == 404


# -----------------------------
# Id spellings
# -----------------------------

def test_id_aliases_are_rejected_and_padding_is_normalized(client, media_root):
    pid = media_id(write_padded_media(media_root / "media" / "photos", ".jpg"))
    padded = pid + "=="
    alias = spare_bit_alias(pid)

    assert client.get(f"/api/photos/{alias}").status_code == 404
    assert client.put(f"/api/photos/{alias}/tags", json={"people": ["Ana"]}).status_code == 404
    assert data_of(client.get("/api/photos/tags/people")) == []

    assert data_of(client.get(f"/api/photos/{padded}"))["id"] == pid
    data_of(client.put(f"/api/photos/{padded}/tags", json={"people": ["Ana"]}))
    assert [p["id"] for p in data_of(client.get("/api/photos/by-person/Ana"))] == [pid]
    assert data_of(client.get(f"/api/photos/{pid}/tags")) == {"people": ["Ana"]}

    aid = data_of(client.post("/api/photos/albums", json={"name": "A"}))["id"]
    album = data_of(client.post(f"/api/photos/albums/{aid}/photos", json={"photo_ids": [padded, pid]}))
    assert album["photo_ids"] == [pid]
    r = client.post(f"/api/photos/albums/{aid}/photos", json={"photo_ids": [alias]})
    assert r.status_code == 400


def test_video_category_uses_canonical_id(client, media_root):
    vid = media_id(write_padded_media(media_root / "media" / "videos", ".mp4"))
    data_of(client.put(f"/api/videos/{vid}==/category", json={"category_id": "movies"}))
    assert [v["id"] for v in data_of(client.get("/api/videos/categories/movies"))] == [vid]
    assert client.put(f"/api/videos/{spare_bit_alias(vid)}/category", json={"category_id": "movies"}).status_code == 404


def test_playlist_rejects_malformed_track_ids(client):
    r = client.post("/api/music/playlists", json={"name": "x", "tracks": ["not an id!"]})
    assert r.status_code == 400
    assert r.json()["status"] == "error"
