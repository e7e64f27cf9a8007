import json

import pytest
from fastapi.testclient import TestClient

from helpers import COMPRESSION_CONFIG, FakeRunner
from projects import ProjectRegistry


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch):
    """Keep developer env vars from leaking into catalog/compression behaviour."""
    for name in ("MEDIA_EXTS", "WORKSPACE_ROOT", "LEGACY_DAILIES", "COMPRESSION_CONFIG", "AUDIT_ROOT",
                 "FFMPEG", "FFPROBE", "FFMPEG_TIMELIMIT", "THUMBNAIL_PLACEHOLDER"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture()
def workspace(tmp_path):
    ws = tmp_path / "work"
    ws.mkdir()
    return ws


@pytest.fixture()
def fake_runner():
    return FakeRunner()


@pytest.fixture()
def registry(workspace):
    return ProjectRegistry(workspace)


@pytest.fixture()
def compression_config_path(tmp_path):
    p = tmp_path / "compression-config.json"
    p.write_text(json.dumps(COMPRESSION_CONFIG))
    return p


@pytest.fixture()
def legacy_dir(tmp_path):
    d = tmp_path / "legacy-dailies"
    d.mkdir()
    return d


@pytest.fixture()
def app_module(workspace, fake_runner, compression_config_path, legacy_dir):
    import app

    app.configure(
        workspace_root=workspace,
        legacy_dir=legacy_dir,
        compression_config=compression_config_path,
        runner=fake_runner,
        audit_root=workspace,
    )
    yield app
    app.STATE.clear()


@pytest.fixture()
def client(app_module):
    with TestClient(app_module.app) as test_client:
        yield test_client
