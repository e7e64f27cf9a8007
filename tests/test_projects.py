import json

import pytest

import db
from errors import ConflictError, NotFoundError, PersistenceError, ValidationError
from projects import SLUG_MAX_LEN, SLUG_RE, ProjectRegistry, is_valid_slug, slugify


@pytest.mark.parametrize(
    "name,expected",
    [
        ("My Film", "my-film"),
        ("  Day 01 -- Scene #4  ", "day-01-scene-4"),
        ("Éclair!!", "clair"),
        ("already-a-slug", "already-a-slug"),
    ],
)
def test_slugify(name, expected):
    assert slugify(name) == expected


def test_slugify_truncates_without_trailing_hyphen():
    name = "a" * 49 + " b" + "c" * 10
    slug = slugify(name)
    assert len(slug) <= SLUG_MAX_LEN
    assert not slug.endswith("-")
    assert SLUG_RE.match(slug)


@pytest.mark.parametrize("slug", ["-lead", "trail-", "UPPER", "under_score", "", "a" * 51, "sp ace"])
def test_invalid_slugs(slug):
    assert not is_valid_slug(slug)


def test_create_project_layout_and_listing(registry, workspace):
    info = registry.create_project("My Film")
    assert info["slug"] == "my-film"
    root = workspace / "my-film"
    assert (root / "dailies").is_dir()
    assert (root / "thumbnails").is_dir()
    assert db.read_json(root / "database.json") == {}
    prefs = db.read_json(root / "preferences.json")
    assert prefs["name"] == "My Film"
    assert prefs["settings"]["compressionProfile"] == "workspace_basic"

    listed = registry.list_projects()
    assert [p["slug"] for p in listed] == ["my-film"]
    # persisted registry survives a reload
    again = ProjectRegistry(workspace)
    assert again.project_exists("my-film")


def test_create_project_with_explicit_slug(registry):
    info = registry.create_project("Anything", "custom-slug")
    assert info["slug"] == "custom-slug"


def test_create_project_rejects_empty_name_and_bad_slug(registry):
    with pytest.raises(ValidationError):
        registry.create_project("   ")
    with pytest.raises(ValidationError):
        registry.create_project("Film", "Bad_Slug")
    with pytest.raises(ValidationError):
        registry.create_project("!!!")
    assert registry.list_projects() == []


def test_duplicate_slug_conflicts_and_leaves_original(registry, workspace):
    registry.create_project("Alpha")
    (workspace / "alpha" / "dailies" / "keep.mp4").write_bytes(b"x")
    with pytest.raises(ConflictError):
        registry.create_project("ALPHA")
    assert registry.get_project("alpha")["name"] == "Alpha"
    assert (workspace / "alpha" / "dailies" / "keep.mp4").exists()
    assert len(registry.list_projects()) == 1


def test_create_refuses_existing_directory(registry, workspace):
    outputs = workspace / "renders" / "film" / "web"
    outputs.mkdir(parents=True)
    (outputs / "a_mp4_web.mp4").write_bytes(b"encoded")
    with pytest.raises(ConflictError):
        registry.create_project("Renders")
    assert not registry.project_exists("renders")
    assert (outputs / "a_mp4_web.mp4").read_bytes() == b"encoded"


def test_create_failure_removes_partial_tree(registry, workspace, monkeypatch):
    def boom(path, data):
        raise OSError("disk full")

    monkeypatch.setattr(db, "write_json", boom)
    with pytest.raises(PersistenceError):
        registry.create_project("Broken")
    assert not (workspace / "broken").exists()
    assert not registry.project_exists("broken")


def test_get_project_includes_paths_and_preferences(registry, workspace):
    registry.create_project("Film")
    project = registry.get_project("film")
    assert project["preferences"]["slug"] == "film"
    assert project["paths"]["dailies"] == str(workspace / "film" / "dailies")
    with pytest.raises(NotFoundError):
        registry.get_project("nope")


def test_get_project_tolerates_corrupt_preferences(registry, workspace):
    registry.create_project("Film")
    (workspace / "film" / "preferences.json").write_text("{not json")
    assert registry.get_project("film")["preferences"] == {}


def test_rename_updates_registry_and_preferences(registry, workspace):
    registry.create_project("Old Name")
    registry.rename_project("old-name", "New Name")
    assert registry.get_project("old-name")["name"] == "New Name"
    prefs = json.loads((workspace / "old-name" / "preferences.json").read_text())
    assert prefs["name"] == "New Name"
    with pytest.raises(ValidationError):
        registry.rename_project("old-name", "")
    with pytest.raises(NotFoundError):
        registry.rename_project("missing", "x")


def test_delete_then_lookups_fail(registry, workspace):
    registry.create_project("Gone")
    registry.delete_project("gone")
    assert not (workspace / "gone").exists()
    with pytest.raises(NotFoundError):
        registry.get_project("gone")
    with pytest.raises(NotFoundError):
        registry.delete_project("gone")


def test_stats_are_recomputed_from_disk(registry, workspace):
    registry.create_project("Stats")
    root = workspace / "stats"
    (root / "dailies" / "a.mp4").write_bytes(b"1")
    (root / "dailies" / "b.MOV").write_bytes(b"1")
    (root / "dailies" / "notes.txt").write_text("x")
    (root / "thumbnails" / "a.jpg").write_bytes(b"1")
    db.write_json(root / "database.json", {"a.mp4": {}})
    assert registry.get_project_stats("stats") == {
        "videoCount": 2,
        "thumbnailCount": 1,
        "catalogEntryCount": 1,
    }
    (root / "dailies" / "c.avi").write_bytes(b"1")
    assert registry.get_project_stats("stats")["videoCount"] == 3


def test_update_last_accessed_persists(registry, workspace):
    registry.create_project("Touch")
    before = registry.projects["touch"]["lastAccessed"]
    registry.projects["touch"]["lastAccessed"] = "2000-01-01T00:00:00+00:00"
    registry.update_last_accessed("touch")
    reloaded = ProjectRegistry(workspace)
    assert reloaded.projects["touch"]["lastAccessed"] >= before


def test_unreadable_registry_is_treated_as_empty(workspace):
    (workspace / "projects.json").write_text("[[[")
    assert ProjectRegistry(workspace).list_projects() == []


def test_default_workspace_profile_reads_preferences(registry, workspace):
    registry.create_project("Prefs")
    with db.session(workspace / "prefs" / "preferences.json") as prefs:
        prefs["settings"]["compressionProfile"] = "workspace_prores"
    assert registry.default_workspace_profile("prefs") == "workspace_prores"
    assert registry.default_workspace_profile("missing") == "workspace_basic"
