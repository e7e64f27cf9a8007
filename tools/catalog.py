#!/usr/bin/env python3
"""
CLI to build, refresh or dump a media catalog without running the server.

Usage:
    python tools/catalog.py --project my-film [--refresh] [--json]
    python tools/catalog.py --dir /path/to/dailies [--workdir /tmp/idx] [--refresh]
    python tools/catalog.py --list

Notes:
- Respects WORKSPACE_ROOT if set; --workspace overrides.
- Uses the same media extension list as the server (MEDIA_EXTS env).
- Requires ffmpeg/ffprobe on PATH (or FFMPEG/FFPROBE env) for metadata; probe
  failures are recorded on the entry instead of aborting.
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from pathlib import Path
from typing import Optional


def _ensure_repo_on_path() -> None:
    """
    Make the top-level modules importable regardless of current working directory.

    When running this script as `python tools/catalog.py`, Python sets
    sys.path[0] to the tools directory, not the project root.
    """
    root = str(Path(__file__).resolve().parents[1])
    if root not in sys.path:
        sys.path.insert(0, root)


_ensure_repo_on_path()

from catalog import MediaCatalog  # noqa: E402
from commands import CommandRunner  # noqa: E402
from errors import DailiesError  # noqa: E402
from projects import ProjectRegistry  # noqa: E402


def _summary_line(entry: dict) -> str:
    if entry.get("error"):
        return f"{entry['filename']}: ERROR {entry['error']}"
    v = entry.get("videoStream") or {}
    dur = entry.get("durationSeconds")
    dims = f"{v.get('width')}x{v.get('height')}" if v else "-"
    dur_s = f"{dur:.2f}s" if isinstance(dur, (int, float)) else "?"
    return f"{entry['filename']}: {dims} {v.get('codec') or '-'} {dur_s}"


def main(argv: list[str], runner: Optional[CommandRunner] = None) -> int:
    ap = argparse.ArgumentParser(description="Build or inspect a dailies catalog without running the server")
    ap.add_argument("--workspace", default=os.environ.get("WORKSPACE_ROOT", "./var/work"), help="Workspace root holding projects.json")
    src = ap.add_mutually_exclusive_group(required=True)
    src.add_argument("--project", help="Project slug inside the workspace")
    src.add_argument("--dir", help="Plain directory of media files (legacy mode)")
    src.add_argument("--list", action="store_true", help="List registered projects and exit")
    ap.add_argument("--workdir", help="Where to keep database.json/thumbnails for --dir (defaults to the directory itself)")
    ap.add_argument("--refresh", action="store_true", help="Rebuild the index from disk even if one exists")
    ap.add_argument("--json", action="store_true", help="Print the full index as JSON")
    ap.add_argument("--ffmpeg-timelimit", type=int, default=None, help="Hard cap for each ffmpeg/ffprobe call in seconds")
    args = ap.parse_args(argv)

    if args.ffmpeg_timelimit and args.ffmpeg_timelimit > 0:
        os.environ["FFMPEG_TIMELIMIT"] = str(int(args.ffmpeg_timelimit))

    workspace = Path(args.workspace).expanduser().resolve()
    try:
        if args.list:
            registry = ProjectRegistry(workspace)
            projects = registry.list_projects()
            if args.json:
                print(json.dumps(projects, indent=2))
            else:
                for p in projects:
                    print(f"{p['slug']}\t{p['name']}\t{p['lastAccessed']}")
            return 0
        if args.project:
            registry = ProjectRegistry(workspace)
            cat = MediaCatalog.for_project(registry, args.project, runner=runner)
        else:
            source = Path(args.dir).expanduser().resolve()
            if not source.is_dir():
                print(f"[cli] Directory not found: {source}", file=sys.stderr)
                return 2
            workdir = Path(args.workdir).expanduser().resolve() if args.workdir else None
            cat = MediaCatalog.for_directory(source, workdir, runner=runner)
        if args.refresh:
            cat.refresh()
        else:
            cat.load()
    except DailiesError as e:
        print(f"[cli] {e.error}: {e}", file=sys.stderr)
        return 1

    if args.json:
        print(json.dumps(cat.data, indent=2))
    else:
        for name in cat:
            print(_summary_line(cat.get(name) or {}))
    failed = sum(1 for e in cat.values() if e.get("error"))
    print(f"[cli] {cat.size()} entries ({failed} with errors) index={cat.index_path}", file=sys.stderr)
    return 1 if failed else 0


if __name__ == "__main__":
    sys.exit(main(sys.argv[1:]))
