import importlib.util
import json
from pathlib import Path

import pytest

from helpers import FakeRunner, write_video


@pytest.fixture()
def cli():
    spec = importlib.util.spec_from_file_location(
        "catalog_cli", Path(__file__).resolve().parent.parent / "tools" / "catalog.py"
    )
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)  # type: ignore[union-attr]
    return module


def test_dir_mode_builds_index(cli, tmp_path, capsys):
    src = tmp_path / "src"
    write_video(src, "a.mp4")
    rc = cli.main(["--dir", str(src), "--workdir", str(tmp_path / "idx")], runner=FakeRunner())
    assert rc == 0
    out = capsys.readouterr().out
    assert "a.mp4: 1920x1080 h264 10.00s" in out
    assert (tmp_path / "idx" / "database.json").exists()


def test_project_mode_json_and_errors(cli, registry, workspace, capsys):
    registry.create_project("Cli Test")
    write_video(workspace / "cli-test" / "dailies", "good.mp4")
    write_video(workspace / "cli-test" / "dailies", "bad.mp4")
    runner = FakeRunner(fail_probe={"bad.mp4"})
    rc = cli.main(["--workspace", str(workspace), "--project", "cli-test", "--refresh", "--json"], runner=runner)
    assert rc == 1
    data = json.loads(capsys.readouterr().out)
    assert sorted(data) == ["bad.mp4", "good.mp4"]
    assert "error" in data["bad.mp4"]


def test_unknown_project_and_missing_dir(cli, workspace, tmp_path):
    assert cli.main(["--workspace", str(workspace), "--project", "ghost"], runner=FakeRunner()) == 1
    assert cli.main(["--dir", str(tmp_path / "nope")], runner=FakeRunner()) == 2


def test_list_projects(cli, registry, workspace, capsys):
    registry.create_project("Listed")
    assert cli.main(["--workspace", str(workspace), "--list"]) == 0
    assert capsys.readouterr().out.startswith("listed\tListed\t")
