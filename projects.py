"""
Project registry: maps display names to filesystem-safe slugs and owns each
project's directory tree under the workspace root.

Layout per project::

    <workspace>/<slug>/
        dailies/           source media (populated externally)
        thumbnails/        generated <stem>.jpg files
        database.json      catalog index
        preferences.json   name/slug/created + settings
"""
from __future__ import annotations

import logging
import re
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import db
from config import log, media_exts
from errors import ConflictError, NotFoundError, PersistenceError, ValidationError

SLUG_RE = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?$")
SLUG_MAX_LEN = 50

REGISTRY_FILE = "projects.json"
DAILIES_DIR = "dailies"
THUMBNAILS_DIR = "thumbnails"
DATABASE_FILE = "database.json"
PREFERENCES_FILE = "preferences.json"
THUMBNAIL_EXTS = (".jpg", ".png")

DEFAULT_WORKSPACE_PROFILE = "workspace_basic"

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def slugify(name: str) -> str:
    s = (name or "").strip().lower()
    # replace non-alnum runs with a single '-'
    s = re.sub(r"[^a-z0-9]+", "-", s)
    s = s.strip("-")[:SLUG_MAX_LEN]
    return s.rstrip("-")


def is_valid_slug(slug: str) -> bool:
    return bool(slug) and len(slug) <= SLUG_MAX_LEN and SLUG_RE.match(slug) is not None


def default_preferences(name: str, slug: str) -> dict:
    return {
        "name": name,
        "slug": slug,
        "created": _now(),
        "settings": {
            "videoFormat": "MP4",
            "compressionProfile": DEFAULT_WORKSPACE_PROFILE,
            "thumbnailQuality": "medium",
            "autoGenerateThumbnails": True,
        },
        "metadata": {
            "description": "",
            "tags": [],
            "collaborators": [],
        },
    }


class ProjectRegistry:
    """Registry of projects persisted in ``<workspace>/projects.json``."""

    def __init__(self, workspace_root: Path) -> None:
        self.workspace_root = Path(workspace_root)
        self.registry_file = self.workspace_root / REGISTRY_FILE
        self.projects: Dict[str, dict] = self._load()

    def _load(self) -> Dict[str, dict]:
        try:
            data = db.read_json(self.registry_file)
        except FileNotFoundError:
            return {}
        except (OSError, ValueError) as e:
            logger.warning("[projects] unreadable registry %s: %s", self.registry_file, e)
            return {}
        if not isinstance(data, dict):
            logger.warning("[projects] registry %s is not an object; ignoring", self.registry_file)
            return {}
        return data

    def _save(self) -> None:
        db.write_json(self.registry_file, self.projects)

    # -----------------------------
    # Paths
    # -----------------------------
    def project_exists(self, slug: str) -> bool:
        return slug in self.projects

    def project_path(self, slug: str) -> Path:
        return self.workspace_root / slug

    def paths(self, slug: str) -> Dict[str, Path]:
        root = self.project_path(slug)
        return {
            "root": root,
            "dailies": root / DAILIES_DIR,
            "thumbnails": root / THUMBNAILS_DIR,
            "database": root / DATABASE_FILE,
            "preferences": root / PREFERENCES_FILE,
        }

    def _require(self, slug: str) -> dict:
        info = self.projects.get(slug)
        if info is None:
            raise NotFoundError(f"Project '{slug}' not found")
        return info

    # -----------------------------
    # Lifecycle
    # -----------------------------
    def create_project(self, name: str, slug: Optional[str] = None) -> dict:
        name = (name or "").strip()
        if not name:
            raise ValidationError("Project name is required")
        slug = slug if slug else slugify(name)
        if not is_valid_slug(slug):
            raise ValidationError(
                f"Invalid project slug: {slug!r}. Must contain only lowercase letters, numbers, "
                f"and hyphens (max {SLUG_MAX_LEN} characters)."
            )
        if self.project_exists(slug):
            raise ConflictError(f"Project with slug '{slug}' already exists")

        paths = self.paths(slug)
        root = paths["root"]
        # a project owns its root outright; delete_project removes all of it
        if root.exists():
            raise ConflictError(f"Path for slug '{slug}' already exists in the workspace: {root}")
        try:
            paths["dailies"].mkdir(parents=True, exist_ok=True)
            paths["thumbnails"].mkdir(parents=True, exist_ok=True)
            db.write_json(paths["preferences"], default_preferences(name, slug))
            db.write_json(paths["database"], {})
            now = _now()
            self.projects[slug] = {
                "name": name,
                "slug": slug,
                "created": now,
                "lastAccessed": now,
                "path": str(root),
            }
            self._save()
        except OSError as e:
            self.projects.pop(slug, None)
            if root.exists():
                shutil.rmtree(root, ignore_errors=True)
            raise PersistenceError(f"Failed to create project: {e}") from e

        log("projects", f"[projects] created slug={slug} name={name!r} path={root}")
        return {"slug": slug, "name": name, "path": str(root)}

    def get_project(self, slug: str) -> dict:
        info = self._require(slug)
        paths = self.paths(slug)
        preferences: dict = {}
        try:
            loaded = db.read_json(paths["preferences"])
            if isinstance(loaded, dict):
                preferences = loaded
        except FileNotFoundError:
            pass
        except (OSError, ValueError) as e:
            logger.warning("[projects] unreadable preferences for %s: %s", slug, e)
        return {
            **info,
            "preferences": preferences,
            "paths": {k: str(v) for k, v in paths.items()},
        }

    def list_projects(self) -> List[dict]:
        return [
            {
                "slug": p.get("slug", slug),
                "name": p.get("name"),
                "created": p.get("created"),
                "lastAccessed": p.get("lastAccessed"),
            }
            for slug, p in self.projects.items()
        ]

    def rename_project(self, slug: str, new_name: str) -> None:
        info = self._require(slug)
        new_name = (new_name or "").strip()
        if not new_name:
            raise ValidationError("Project name is required")
        try:
            info["name"] = new_name
            self._save()
            prefs_path = self.paths(slug)["preferences"]
            if prefs_path.exists():
                with db.session(prefs_path) as prefs:
                    prefs["name"] = new_name
        except (OSError, ValueError) as e:
            raise PersistenceError(f"Failed to rename project: {e}") from e
        log("projects", f"[projects] renamed slug={slug} name={new_name!r}")

    def delete_project(self, slug: str) -> None:
        self._require(slug)
        root = self.project_path(slug)
        try:
            if root.exists():
                shutil.rmtree(root)
            del self.projects[slug]
            self._save()
        except OSError as e:
            raise PersistenceError(f"Failed to delete project: {e}") from e
        log("projects", f"[projects] deleted slug={slug}")

    def update_last_accessed(self, slug: str) -> None:
        info = self.projects.get(slug)
        if info is None:
            return
        info["lastAccessed"] = _now()
        self._save()

    def get_project_stats(self, slug: str) -> Dict[str, int]:
        self._require(slug)
        paths = self.paths(slug)
        exts = media_exts()
        video_count = 0
        thumbnail_count = 0
        entry_count = 0
        if paths["dailies"].is_dir():
            video_count = sum(
                1 for p in paths["dailies"].iterdir() if p.is_file() and p.suffix.lower() in exts
            )
        if paths["thumbnails"].is_dir():
            thumbnail_count = sum(
                1 for p in paths["thumbnails"].iterdir() if p.is_file() and p.suffix.lower() in THUMBNAIL_EXTS
            )
        try:
            data: Any = db.read_json(paths["database"])
            if isinstance(data, dict):
                entry_count = len(data)
        except FileNotFoundError:
            pass
        except (OSError, ValueError) as e:
            logger.warning("[projects] unreadable catalog index for %s: %s", slug, e)
        return {
            "videoCount": video_count,
            "thumbnailCount": thumbnail_count,
            "catalogEntryCount": entry_count,
        }

    def default_workspace_profile(self, slug: str) -> str:
        try:
            prefs = self.get_project(slug).get("preferences") or {}
        except NotFoundError:
            return DEFAULT_WORKSPACE_PROFILE
        return str((prefs.get("settings") or {}).get("compressionProfile") or DEFAULT_WORKSPACE_PROFILE)


__all__ = [
    "SLUG_RE",
    "SLUG_MAX_LEN",
    "DEFAULT_WORKSPACE_PROFILE",
    "ProjectRegistry",
    "slugify",
    "is_valid_slug",
    "default_preferences",
]
