"""
Filesystem auditor: walks a directory tree and records per-file size and line
counts, then aggregates them by extension and directory.

Independent of the catalog; the server exposes it for housekeeping.
"""
from __future__ import annotations

import fnmatch
import logging
import os
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import db
from config import log

DEFAULT_EXCLUDES = [
    "node_modules",
    ".git",
    "__pycache__",
    ".venv",
    ".pytest_cache",
    "_compressed",
    ".DS_Store",
    "Thumbs.db",
    "*.log",
]

TEXT_EXTENSIONS = {
    ".py", ".js", ".ts", ".jsx", ".tsx", ".json", ".html", ".htm", ".css", ".md",
    ".txt", ".yml", ".yaml", ".toml", ".cfg", ".ini", ".xml", ".sh", ".sql",
}

_LANGUAGES = {
    ".py": "Python",
    ".js": "JavaScript/TypeScript",
    ".ts": "JavaScript/TypeScript",
    ".jsx": "JavaScript/TypeScript",
    ".tsx": "JavaScript/TypeScript",
    ".html": "HTML",
    ".htm": "HTML",
    ".css": "CSS",
    ".json": "JSON",
    ".sh": "Shell",
}

_COMMENT_RE = {
    "Python": re.compile(r"^\s*#", re.M),
    "Shell": re.compile(r"^\s*#", re.M),
    "JavaScript/TypeScript": re.compile(r"^\s*(//|/\*|\*)", re.M),
}
_EMPTY_RE = re.compile(r"^\s*$", re.M)

REPORT_NAME = "filesizes.json"

logger = logging.getLogger(__name__)


def format_file_size(size: int) -> str:
    if not size or size <= 0:
        return "0 Bytes"
    units = ["Bytes", "KB", "MB", "GB", "TB"]
    value = float(size)
    i = 0
    while value >= 1024 and i < len(units) - 1:
        value /= 1024
        i += 1
    return f"{round(value, 2):g} {units[i]}"


class FileAuditor:
    def __init__(
        self,
        root: Path,
        output_dir: Path,
        *,
        exclude_patterns: Optional[Iterable[str]] = None,
    ) -> None:
        self.root = Path(root)
        self.output_dir = Path(output_dir)
        self.exclude_patterns: List[str] = list(exclude_patterns if exclude_patterns is not None else DEFAULT_EXCLUDES)

    @property
    def report_path(self) -> Path:
        return self.output_dir / REPORT_NAME

    def add_exclude_pattern(self, pattern: str) -> None:
        if pattern not in self.exclude_patterns:
            self.exclude_patterns.append(pattern)

    def remove_exclude_pattern(self, pattern: str) -> None:
        self.exclude_patterns = [p for p in self.exclude_patterns if p != pattern]

    def is_excluded(self, rel: str, name: str) -> bool:
        parts = Path(rel).parts
        for pattern in self.exclude_patterns:
            if any(ch in pattern for ch in "*?["):
                if fnmatch.fnmatch(name, pattern):
                    return True
            elif name == pattern or pattern in parts or rel.startswith(pattern.rstrip("/") + "/"):
                return True
        return False

    def analyze_file(self, full: Path, rel: str, st: os.stat_result) -> dict:
        ext = full.suffix.lower()
        info: Dict[str, Any] = {
            "path": rel,
            "name": full.name,
            "extension": ext,
            "size": st.st_size,
            "sizeFormatted": format_file_size(st.st_size),
            "lines": 0,
            "created": datetime.fromtimestamp(st.st_ctime, timezone.utc).isoformat(),
            "modified": datetime.fromtimestamp(st.st_mtime, timezone.utc).isoformat(),
            "isText": False,
        }
        if ext not in TEXT_EXTENSIONS:
            return info
        info["isText"] = True
        try:
            content = full.read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            logger.warning("[monitor] could not read %s: %s", rel, e)
            return info
        info["lines"] = len(content.split("\n"))
        lang = _LANGUAGES.get(ext)
        if lang:
            info["language"] = lang
        comment_re = _COMMENT_RE.get(lang or "")
        if comment_re is not None:
            info["emptyLines"] = len(_EMPTY_RE.findall(content))
            info["commentLines"] = len(comment_re.findall(content))
        return info

    def scan(self) -> dict:
        data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "projectRoot": str(self.root),
            "scan": {"totalFiles": 0, "totalSize": 0, "totalLines": 0, "directories": {}},
            "files": [],
            "summary": {},
        }
        self._scan_dir(self.root, "", data)
        data["summary"] = self.summarize(data["files"])
        return data

    def _scan_dir(self, dir_path: Path, rel_dir: str, data: dict) -> None:
        try:
            items = sorted(os.scandir(dir_path), key=lambda e: e.name)
        except OSError as e:
            logger.warning("[monitor] could not scan %s: %s", dir_path, e)
            return
        scan = data["scan"]
        for item in items:
            rel = f"{rel_dir}/{item.name}" if rel_dir else item.name
            if self.is_excluded(rel, item.name):
                continue
            try:
                if item.is_dir(follow_symlinks=False):
                    scan["directories"][rel] = {"files": 0, "size": 0, "lines": 0}
                    self._scan_dir(Path(item.path), rel, data)
                elif item.is_file(follow_symlinks=False):
                    info = self.analyze_file(Path(item.path), rel, item.stat())
                    data["files"].append(info)
                    scan["totalFiles"] += 1
                    scan["totalSize"] += info["size"]
                    scan["totalLines"] += info["lines"]
                    d = scan["directories"].get(rel_dir)
                    if d is not None:
                        d["files"] += 1
                        d["size"] += info["size"]
                        d["lines"] += info["lines"]
            except OSError as e:
                logger.warning("[monitor] could not stat %s: %s", rel, e)

    @staticmethod
    def summarize(files: List[dict]) -> dict:
        by_ext: Dict[str, dict] = {}
        by_dir: Dict[str, dict] = {}
        for f in files:
            ext = f.get("extension") or "no-extension"
            e = by_ext.setdefault(ext, {"count": 0, "totalSize": 0, "totalLines": 0})
            e["count"] += 1
            e["totalSize"] += f["size"]
            e["totalLines"] += f["lines"]
            parent = os.path.dirname(f["path"]) or "."
            d = by_dir.setdefault(parent, {"count": 0, "totalSize": 0, "totalLines": 0})
            d["count"] += 1
            d["totalSize"] += f["size"]
            d["totalLines"] += f["lines"]
        for e in by_ext.values():
            e["averageSize"] = round(e["totalSize"] / e["count"])
            e["totalSizeFormatted"] = format_file_size(e["totalSize"])
            e["averageSizeFormatted"] = format_file_size(e["averageSize"])
        largest = sorted(files, key=lambda f: f["size"], reverse=True)[:10]
        most_lines = sorted((f for f in files if f.get("isText")), key=lambda f: f["lines"], reverse=True)[:10]
        return {
            "byExtension": by_ext,
            "byDirectory": by_dir,
            "largestFiles": [
                {"path": f["path"], "size": f["size"], "sizeFormatted": f["sizeFormatted"]} for f in largest
            ],
            "mostLines": [
                {"path": f["path"], "lines": f["lines"], "size": f["size"], "sizeFormatted": f["sizeFormatted"]}
                for f in most_lines
            ],
        }

    def generate_report(self) -> dict:
        """Scan, persist the full report, and return a short summary."""
        log("monitor", f"[monitor] scan start root={self.root}")
        data = self.scan()
        out = db.write_json(self.report_path, data)
        scan = data["scan"]
        log(
            "monitor",
            f"[monitor] scan end files={scan['totalFiles']} size={format_file_size(scan['totalSize'])} "
            f"lines={scan['totalLines']} out={out}",
        )
        return {
            "outputFile": str(out),
            "totalFiles": scan["totalFiles"],
            "totalSize": scan["totalSize"],
            "totalSizeFormatted": format_file_size(scan["totalSize"]),
            "totalLines": scan["totalLines"],
        }

    def latest(self) -> Optional[dict]:
        try:
            data = db.read_json(self.report_path)
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as e:
            logger.warning("[monitor] unreadable report %s: %s", self.report_path, e)
            return None
        return data if isinstance(data, dict) else None


__all__ = [
    "DEFAULT_EXCLUDES",
    "TEXT_EXTENSIONS",
    "FileAuditor",
    "format_file_size",
]
