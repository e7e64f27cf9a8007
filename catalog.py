"""
Media catalog: a flat ``filename -> entry`` index of one dailies directory,
persisted as a single JSON document.

The catalog is not an authoritative store. Its entry set is rebuilt from the
directory listing on every import, so files added or removed on disk show up
only after the next refresh.
"""
from __future__ import annotations

import logging
import threading
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import db
from commands import CommandRunner, SubprocessRunner, generate_thumbnail, probe_media
from config import env_float, env_int, log, media_exts
from errors import ExternalToolError, NotFoundError, PersistenceError
from projects import ProjectRegistry

LEGACY_KEY = "legacy"

logger = logging.getLogger(__name__)


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _to_int(v: Any) -> Optional[int]:
    if v is None or v == "":
        return None
    try:
        return int(float(v))
    except (TypeError, ValueError):
        return None


def _to_float(v: Any) -> Optional[float]:
    if v is None or v == "":
        return None
    try:
        return float(v)
    except (TypeError, ValueError):
        return None


def parse_frame_rate(rate: Any) -> Optional[float]:
    """ffprobe reports rates as "30000/1001"; "0/0" means unknown."""
    if rate is None:
        return None
    s = str(rate).strip()
    if "/" in s:
        num_s, den_s = s.split("/", 1)
        num = _to_float(num_s)
        den = _to_float(den_s)
        if num is None or not den:
            return None
        return round(num / den, 3) or None
    return _to_float(s)


def _first_stream(streams: list, codec_type: str) -> Optional[dict]:
    for st in streams:
        if isinstance(st, dict) and st.get("codec_type") == codec_type:
            return st
    return None


def summarize_probe(raw: dict) -> dict:
    """Reduce an ffprobe document to the catalog's stream/duration fields."""
    streams = raw.get("streams") or []
    fmt = raw.get("format") or {}
    video = _first_stream(streams, "video")
    audio = _first_stream(streams, "audio")

    video_stream = None
    if video is not None:
        video_stream = {
            "codec": video.get("codec_name"),
            "width": _to_int(video.get("width")),
            "height": _to_int(video.get("height")),
            "frameRate": parse_frame_rate(video.get("avg_frame_rate") or video.get("r_frame_rate")),
            "bitRate": _to_int(video.get("bit_rate")),
        }
    audio_stream = None
    if audio is not None:
        audio_stream = {
            "codec": audio.get("codec_name"),
            "sampleRate": _to_int(audio.get("sample_rate")),
            "channels": _to_int(audio.get("channels")),
            "bitRate": _to_int(audio.get("bit_rate")),
        }

    duration = _to_float(fmt.get("duration"))
    if duration is None and video is not None:
        duration = _to_float(video.get("duration"))

    created = (fmt.get("tags") or {}).get("creation_time")
    if not created and video is not None:
        created = (video.get("tags") or {}).get("creation_time")

    return {
        "videoStream": video_stream,
        "audioStream": audio_stream,
        "durationSeconds": duration,
        "createdAt": created or _now(),
    }


class MediaCatalog:
    """Catalog over explicit paths: a dailies dir, a thumbnails dir and an index file.

    Project catalogs and the legacy single-directory catalog are the same
    class; only the paths (and the ``project`` tag stamped on entries) differ.
    """

    def __init__(
        self,
        dailies_dir: Path,
        thumbnails_dir: Path,
        index_path: Path,
        *,
        project: Optional[str] = None,
        runner: Optional[CommandRunner] = None,
    ) -> None:
        self.dailies_dir = Path(dailies_dir)
        self.thumbnails_dir = Path(thumbnails_dir)
        self.index_path = Path(index_path)
        self.project = project
        self.runner = runner or SubprocessRunner()
        self.data: Dict[str, dict] = {}
        self._listing: Optional[List[str]] = None

    @classmethod
    def for_directory(
        cls,
        source_dir: Path,
        workdir: Optional[Path] = None,
        *,
        runner: Optional[CommandRunner] = None,
    ) -> "MediaCatalog":
        work = Path(workdir) if workdir else Path(source_dir)
        return cls(Path(source_dir), work / "thumbnails", work / "database.json", runner=runner)

    @classmethod
    def for_project(
        cls,
        registry: ProjectRegistry,
        slug: str,
        *,
        runner: Optional[CommandRunner] = None,
    ) -> "MediaCatalog":
        if not registry.project_exists(slug):
            raise NotFoundError(f"Project '{slug}' not found")
        p = registry.paths(slug)
        return cls(p["dailies"], p["thumbnails"], p["database"], project=slug, runner=runner)

    @property
    def key(self) -> str:
        return self.project or LEGACY_KEY

    # -----------------------------
    # Persistence
    # -----------------------------
    def load(self) -> Dict[str, dict]:
        """Read the index; rebuild from disk when it is missing or unparsable."""
        self.data = {}
        data: Any = None
        try:
            data = db.read_json(self.index_path)
        except FileNotFoundError:
            log("catalog", f"[catalog] index missing key={self.key} path={self.index_path}; importing")
        except (OSError, ValueError) as e:
            logger.warning("[catalog] unreadable index %s (%s); rebuilding", self.index_path, e)
        if isinstance(data, dict):
            self.data = data
            log("catalog", f"[catalog] loaded key={self.key} entries={len(self.data)}")
            return self.data
        if data is not None:
            logger.warning("[catalog] index %s is not an object; rebuilding", self.index_path)
        self.import_media()
        self.save()
        return self.data

    def save(self) -> None:
        try:
            db.write_json(self.index_path, self.data)
        except OSError as e:
            raise PersistenceError(f"Failed to write catalog index {self.index_path}: {e}") from e
        log("catalog", f"[catalog] saved key={self.key} entries={len(self.data)} path={self.index_path}")

    def refresh(self) -> Dict[str, dict]:
        self.import_media()
        self.save()
        return self.data

    # -----------------------------
    # Import
    # -----------------------------
    def video_filenames(self) -> List[str]:
        if not self.dailies_dir.is_dir():
            log("catalog", f"[catalog] dailies folder missing key={self.key} path={self.dailies_dir}")
            return []
        exts = media_exts()
        names = [
            p.name
            for p in self.dailies_dir.iterdir()
            if p.is_file() and not p.name.startswith("._") and p.suffix.lower() in exts
        ]
        names.sort(key=lambda n: (n.lower(), n))
        return names

    def import_media(self) -> Dict[str, dict]:
        """Rebuild every entry from the current directory listing."""
        names = self.video_filenames()
        log("catalog", f"[catalog] import start key={self.key} files={len(names)}")
        fresh: Dict[str, dict] = {}
        errors = 0
        self._listing = names
        try:
            for name in names:
                self.ensure_thumbnail(name)
                entry = self.build_entry(name)
                if "error" in entry:
                    errors += 1
                fresh[name] = entry
        finally:
            self._listing = None
        self.data = fresh
        log("catalog", f"[catalog] import end key={self.key} entries={len(fresh)} errors={errors}")
        return self.data

    def ensure_thumbnail(self, filename: str) -> bool:
        """Generate the thumbnail unless it already exists. Never raises for tool failures."""
        out = self.thumbnail_path(filename)
        if out.exists():
            return True
        try:
            generate_thumbnail(
                self.runner,
                self.video_path(filename),
                out,
                offset=env_float("THUMBNAIL_OFFSET", 1.0),
                width=env_int("THUMBNAIL_WIDTH", 320),
                quality=env_int("THUMBNAIL_QUALITY", 4),
            )
        except ExternalToolError as e:
            logger.warning("[catalog] thumbnail failed for %s: %s", filename, e)
            return False
        return out.exists()

    def build_entry(self, filename: str) -> dict:
        path = self.video_path(filename)
        try:
            raw = probe_media(self.runner, path)
        except ExternalToolError as e:
            logger.warning("[catalog] metadata extraction failed for %s: %s", filename, e)
            return {
                "filename": filename,
                "project": self.project,
                "error": str(e),
                "createdAt": _now(),
            }
        entry = {
            "filename": filename,
            "project": self.project,
            "fileSize": path.stat().st_size if path.exists() else None,
            **summarize_probe(raw),
            "thumbnail": self.thumbnail_path(filename).name if self.has_thumbnail(filename) else None,
            "info": {"ffprobe": raw},
        }
        return entry

    # -----------------------------
    # Accessors
    # -----------------------------
    def get(self, filename: str) -> Optional[dict]:
        return self.data.get(filename)

    def has(self, filename: str) -> bool:
        return filename in self.data

    def values(self) -> List[dict]:
        return list(self.data.values())

    def keys(self) -> List[str]:
        return list(self.data.keys())

    def size(self) -> int:
        return len(self.data)

    def __iter__(self) -> Iterator[str]:
        return iter(list(self.data))

    def video_path(self, filename: str) -> Path:
        return self.dailies_dir / filename

    def _shared_stems(self) -> set:
        names = self._listing if self._listing is not None else self.data
        counts = Counter(Path(n).stem for n in names)
        return {stem for stem, n in counts.items() if n > 1}

    def thumbnail_path(self, filename: str) -> Path:
        """``<stem>.jpg``, or ``<stem>_<ext>.jpg`` when another file shares the stem."""
        p = Path(filename)
        if p.stem in self._shared_stems():
            return self.thumbnails_dir / f"{p.stem}_{p.suffix.lstrip('.').lower()}.jpg"
        return self.thumbnails_dir / f"{p.stem}.jpg"

    def has_thumbnail(self, filename: str) -> bool:
        return self.thumbnail_path(filename).exists()


class CatalogCache:
    """
    Per-process cache of project catalogs keyed by slug.

    A catalog is built and loaded on first access; every access touches the
    project's lastAccessed stamp. Deleting a project must call invalidate().
    """

    def __init__(
        self,
        registry: ProjectRegistry,
        *,
        runner: Optional[CommandRunner] = None,
        legacy_dir: Optional[Path] = None,
        legacy_workdir: Optional[Path] = None,
    ) -> None:
        self.registry = registry
        self.runner = runner or SubprocessRunner()
        self.legacy_dir = Path(legacy_dir) if legacy_dir else None
        self.legacy_workdir = Path(legacy_workdir) if legacy_workdir else None
        self._catalogs: Dict[str, MediaCatalog] = {}
        self._legacy: Optional[MediaCatalog] = None
        self._lock = threading.Lock()

    def get(self, slug: str) -> MediaCatalog:
        if not self.registry.project_exists(slug):
            self.invalidate(slug)
            raise NotFoundError(f"Project '{slug}' not found")
        with self._lock:
            cat = self._catalogs.get(slug)
        if cat is None:
            fresh = MediaCatalog.for_project(self.registry, slug, runner=self.runner)
            fresh.load()
            # new projects start with an empty seed index
            if fresh.size() == 0 and fresh.video_filenames():
                fresh.refresh()
            with self._lock:
                cat = self._catalogs.setdefault(slug, fresh)
        self.registry.update_last_accessed(slug)
        return cat

    def refresh(self, slug: str) -> MediaCatalog:
        cat = self.get(slug)
        cat.refresh()
        return cat

    def invalidate(self, slug: str) -> None:
        with self._lock:
            self._catalogs.pop(slug, None)

    def legacy(self) -> Optional[MediaCatalog]:
        """Catalog of the configured legacy directory, or None when unset."""
        if self.legacy_dir is None:
            return None
        with self._lock:
            cat = self._legacy
        if cat is None:
            fresh = MediaCatalog.for_directory(self.legacy_dir, self.legacy_workdir, runner=self.runner)
            fresh.load()
            with self._lock:
                if self._legacy is None:
                    self._legacy = fresh
                cat = self._legacy
        return cat

    def loaded_legacy(self) -> Optional[MediaCatalog]:
        """The legacy catalog if something already loaded it; never imports."""
        with self._lock:
            return self._legacy

    def cached(self) -> List[str]:
        with self._lock:
            return list(self._catalogs)


__all__ = [
    "LEGACY_KEY",
    "MediaCatalog",
    "CatalogCache",
    "summarize_probe",
    "parse_frame_rate",
]
