"""Environment-driven settings and categorised logging for the dailies server."""
from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional

DEFAULT_MEDIA_EXTS = {".mp4", ".mov", ".avi"}


def env_int(name: str, default: int) -> int:
    try:
        v = os.environ.get(name)
        return int(v) if v is not None and str(v).strip() != "" else int(default)
    except ValueError:
        return int(default)


def env_float(name: str, default: float) -> float:
    try:
        v = os.environ.get(name)
        return float(v) if v is not None and str(v).strip() != "" else float(default)
    except ValueError:
        return float(default)


def env_on(name: str, default: bool = False) -> bool:
    v = os.environ.get(name)
    if v is None:
        return default
    return str(v).lower() in ("1", "true", "yes")


def env_path(name: str, default: Optional[str] = None) -> Optional[Path]:
    v = os.environ.get(name) or default
    if not v:
        return None
    return Path(v).expanduser().resolve()


def workspace_root() -> Path:
    return env_path("WORKSPACE_ROOT", "./var/work")  # type: ignore[return-value]


def media_exts() -> set[str]:
    """
    Allowed media extensions (lowercased with dot).
    Configure via MEDIA_EXTS env (comma-separated). Defaults to mp4/mov/avi.
    """
    env = os.environ.get("MEDIA_EXTS")
    if env:
        out: set[str] = set()
        for part in env.split(","):
            s = part.strip().lower()
            if not s:
                continue
            if not s.startswith("."):
                s = "." + s
            out.add(s)
        if out:
            return out
    return set(DEFAULT_MEDIA_EXTS)


# ------------------------------------------------------------
# Logging categories (coarse grained, opt-in / opt-out)
#   LOG_ALL=0 disables all unless explicitly enabled.
#   Per-category env vars override: LOG_CATALOG, LOG_PROJECTS, LOG_THUMBNAIL,
#   LOG_PROBE, LOG_COMPRESS, LOG_STREAM, LOG_MONITOR
# ------------------------------------------------------------
def log_enabled(cat: str) -> bool:
    base_on = str(os.environ.get("LOG_ALL", "1")).lower() not in ("0", "false", "no")
    specific = os.environ.get(f"LOG_{cat.upper()}")
    if specific is not None:
        return str(specific).lower() in ("1", "true", "yes")
    return base_on


def log(cat: str, msg: str) -> None:
    """Emit an application log line for a given category.

    Goes through the standard logging pipeline so lines show up under
    uvicorn's handlers as well as pytest's caplog.
    """
    if not log_enabled(cat):
        return
    logging.getLogger(f"dailies.{cat}").info("%s", msg)


__all__ = [
    "DEFAULT_MEDIA_EXTS",
    "env_int",
    "env_float",
    "env_on",
    "env_path",
    "workspace_root",
    "media_exts",
    "log_enabled",
    "log",
]
