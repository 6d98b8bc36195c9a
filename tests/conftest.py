import importlib
import json
import sys
from pathlib import Path

import pytest
from fastapi.testclient import TestClient


@pytest.fixture()
def media_root(tmp_path):
    """Isolated settings file with one root per media kind under tmp_path."""
    roots = {kind: tmp_path / "media" / kind for kind in ("videos", "music", "photos")}
    for p in roots.values():
        p.mkdir(parents=True, exist_ok=True)
    config = tmp_path / "config" / "settings.json"
    config.parent.mkdir(parents=True, exist_ok=True)
    config.write_text(json.dumps({
        "server": {"host": "127.0.0.1", "port": 3000},
        "media": {kind: [str(p)] for kind, p in roots.items()},
    }, indent=2))
    return tmp_path


@pytest.fixture()
def app_module(media_root, monkeypatch):
    monkeypatch.setenv("CARMINE_CONFIG", str(media_root / "config" / "settings.json"))
    monkeypatch.delenv("CARMINE_DATA_DIR", raising=False)
    monkeypatch.setenv("LOG_ALL", "0")
    repo_root = Path(__file__).resolve().parents[1]
    if str(repo_root) not in sys.path:
        sys.path.insert(0, str(repo_root))
    if "app" in sys.modules:
        module = importlib.reload(sys.modules["app"])
    else:
        module = importlib.import_module("app")
    yield module


@pytest.fixture()
def client(app_module):
    with TestClient(app_module.app) as test_client:
        yield test_client
