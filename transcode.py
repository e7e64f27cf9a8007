"""
Profile-driven video compression on top of ffmpeg.

Profiles live in a JSON file (see ``compression-config.json``) validated with
pydantic. Encodes run one at a time; a batch is a plain loop over the
catalog.
"""
from __future__ import annotations

import logging
import os
import re
import time
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, Dict, List, Optional, Union

from pydantic import BaseModel, Field, ValidationError

import db
from catalog import LEGACY_KEY, MediaCatalog
from commands import CommandRunner, SubprocessRunner, ffmpeg_bin
from config import log
from errors import NotFoundError
from monitoring import format_file_size

DEFAULT_PROFILE = "web"
DEFAULT_WORKSPACE_PROFILE = "workspace_basic"
# legacy catalog outputs; the underscore keeps them out of the slug namespace
LEGACY_OUTPUT_DIR = f"_{LEGACY_KEY}"

ProgressCallback = Callable[[dict], None]

logger = logging.getLogger(__name__)


# -----------------------------
# Configuration schema
# -----------------------------
class VideoSettings(BaseModel):  # type: ignore
    codec: Optional[str] = None
    bitrate: Optional[str] = None
    resolution: Optional[str] = None
    framerate: Optional[Union[int, float, str]] = None
    preset: Optional[str] = None


class AudioSettings(BaseModel):  # type: ignore
    codec: Optional[str] = None
    bitrate: Optional[str] = None


class CompressionProfile(BaseModel):  # type: ignore
    description: str = ""
    category: Optional[str] = None
    video: VideoSettings = Field(default_factory=VideoSettings)
    audio: AudioSettings = Field(default_factory=AudioSettings)
    # each option is either a single argv token or a group of tokens
    options: List[Union[str, List[str]]] = Field(default_factory=list)
    format: str = "mp4"
    suffix: Optional[str] = None


class CompressionConfig(BaseModel):  # type: ignore
    profiles: Dict[str, CompressionProfile] = Field(default_factory=dict)
    default_profile: str = DEFAULT_PROFILE
    default_workspace_profile: str = DEFAULT_WORKSPACE_PROFILE
    output_dir: str = "_compressed"
    ffmpeg_path: Optional[str] = None
    overwrite: bool = False


def is_workspace_profile(name: str, profile: CompressionProfile) -> bool:
    return profile.category == "workspace" or name.startswith("workspace_")


def load_compression_config(path: Optional[Path]) -> CompressionConfig:
    """Load and validate the profiles file.

    A missing or invalid file yields an empty config (no profiles) so the
    server still starts; the problem is logged.
    """
    if path is None:
        return CompressionConfig()
    try:
        raw = db.read_json(path)
    except FileNotFoundError:
        logger.warning("[compress] config not found: %s (compression disabled)", path)
        return CompressionConfig()
    except (OSError, ValueError) as e:
        logger.warning("[compress] unreadable config %s: %s (compression disabled)", path, e)
        return CompressionConfig()
    try:
        cfg = CompressionConfig(**(raw if isinstance(raw, dict) else {}))
    except (ValidationError, TypeError) as e:
        logger.warning("[compress] invalid config %s: %s (compression disabled)", path, e)
        return CompressionConfig()
    log("compress", f"[compress] loaded profiles: {', '.join(cfg.profiles) or '(none)'}")
    return cfg


# -----------------------------
# Progress
# -----------------------------
class ProgressParser(ABC):
    """Turns one line of tool output into elapsed media seconds, or None."""

    @abstractmethod
    def parse(self, line: str) -> Optional[float]:
        ...


class FfmpegTimeParser(ProgressParser):
    TIME_RE = re.compile(r"time=(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")

    def parse(self, line: str) -> Optional[float]:
        m = self.TIME_RE.search(line)
        if not m:
            return None
        return int(m.group(1)) * 3600 + int(m.group(2)) * 60 + float(m.group(3))


def build_ffmpeg_args(input_path: Path, output_path: Path, profile: CompressionProfile) -> List[str]:
    args: List[str] = ["-y", "-i", str(input_path)]
    v = profile.video
    if v.codec:
        args += ["-c:v", v.codec]
    if v.bitrate:
        args += ["-b:v", v.bitrate]
    if v.resolution:
        args += ["-s", v.resolution]
    if v.framerate is not None and str(v.framerate) != "":
        args += ["-r", str(v.framerate)]
    if v.preset:
        args += ["-preset", v.preset]
    a = profile.audio
    if a.codec:
        args += ["-c:a", a.codec]
    if a.bitrate:
        args += ["-b:a", a.bitrate]
    for opt in profile.options:
        if isinstance(opt, list):
            args.extend(str(o) for o in opt)
        else:
            args.append(str(opt))
    args.append(str(output_path))
    return args


def _compression_ratio(input_size: int, output_size: int) -> str:
    if input_size <= 0:
        return "0.00%"
    return f"{(input_size - output_size) / input_size * 100:.2f}%"


def _source_name(output_stem: str, suffix: str) -> str:
    """Invert the output naming: ``a_mp4_web`` with suffix ``web`` is ``a.mp4``."""
    tail = f"_{suffix}"
    base = output_stem[: -len(tail)] if output_stem.endswith(tail) else output_stem
    stem, sep, ext = base.rpartition("_")
    return f"{stem}.{ext}" if sep and stem and ext else base


class CompressionService:
    def __init__(
        self,
        config: CompressionConfig,
        output_root: Path,
        *,
        runner: Optional[CommandRunner] = None,
        parser: Optional[ProgressParser] = None,
    ) -> None:
        self.config = config
        self.output_root = Path(output_root)
        self.runner = runner or SubprocessRunner()
        self.parser = parser or FfmpegTimeParser()

    def profiles(self) -> Dict[str, CompressionProfile]:
        return dict(self.config.profiles)

    def workspace_profiles(self) -> Dict[str, CompressionProfile]:
        return {k: p for k, p in self.config.profiles.items() if is_workspace_profile(k, p)}

    def resolve_profile(self, profile_name: Optional[str]) -> tuple[str, CompressionProfile]:
        name = profile_name or self.config.default_profile
        profile = self.config.profiles.get(name)
        if profile is None:
            raise NotFoundError(f"Compression profile not found: {name}")
        return name, profile

    def output_path(self, catalog: MediaCatalog, filename: str, profile_name: str, profile: CompressionProfile) -> Path:
        """``<root>/<slug or _legacy>/<profile>/<stem>_<ext>_<suffix>.<format>``.

        The source extension stays in the name so a.mp4 and a.mov never share
        an output.
        """
        src = Path(filename)
        ext = src.suffix.lstrip(".").lower()
        base = f"{src.stem}_{ext}" if ext else src.stem
        suffix = profile.suffix or profile_name
        fmt = (profile.format or "mp4").lstrip(".")
        key_dir = catalog.project or LEGACY_OUTPUT_DIR
        return self.output_root / key_dir / profile_name / f"{base}_{suffix}.{fmt}"

    @staticmethod
    def _partial_path(out: Path) -> Path:
        # same extension so ffmpeg still picks the muxer from it
        return out.with_name(f".{out.stem}.partial{out.suffix}")

    def compress_one(
        self,
        catalog: MediaCatalog,
        filename: str,
        profile_name: Optional[str] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> dict:
        """Encode one catalogued file with a profile.

        Unknown profile or filename raises NotFoundError. A failed encode does
        not raise; it comes back as ``{"success": False, "status": "error", ...}``.
        """
        name, profile = self.resolve_profile(profile_name)
        entry = catalog.get(filename)
        if entry is None:
            raise NotFoundError(f"Video not found: {filename}")
        input_path = catalog.video_path(filename)
        if not input_path.exists():
            raise NotFoundError(f"Video file not found: {filename}")
        out = self.output_path(catalog, filename, name, profile)
        input_size = input_path.stat().st_size

        if out.exists() and not self.config.overwrite:
            log("compress", f"[compress] skip existing video={filename} profile={name} out={out}")
            return self._success(filename, name, input_path, out, input_size, status="exists")

        out.parent.mkdir(parents=True, exist_ok=True)
        partial = self._partial_path(out)
        args = build_ffmpeg_args(input_path, partial, profile)
        duration = entry.get("durationSeconds") or 0
        on_output = None
        if progress_callback is not None:
            on_output = self._progress_reader(filename, out.name, float(duration), progress_callback)

        log("compress", f"[compress] start video={filename} profile={name} args={' '.join(args)}")
        t0 = time.time()
        replaced = False
        try:
            proc = self.runner.run(self.config.ffmpeg_path or ffmpeg_bin(), args, on_output=on_output)
            if proc.returncode == 0 and partial.exists():
                os.replace(partial, out)
                replaced = True
        finally:
            # ffmpeg writes as it goes; never leave a truncated encode behind
            partial.unlink(missing_ok=True)
        elapsed = time.time() - t0
        if not replaced:
            err = (proc.stderr or "").strip()
            if len(err) > 1200:
                err = err[-1200:]
            log("compress", f"[compress] fail video={filename} profile={name} code={proc.returncode} elapsed={elapsed:.1f}s")
            return {
                "success": False,
                "status": "error",
                "videoId": filename,
                "profile": name,
                "error": f"ffmpeg exited with code {proc.returncode}: {err or 'no output'}",
                "exitCode": proc.returncode,
            }
        result = self._success(filename, name, input_path, out, input_size, status="ok")
        log(
            "compress",
            f"[compress] done video={filename} profile={name} ratio={result['compressionRatio']} elapsed={elapsed:.1f}s",
        )
        return result

    def _progress_reader(
        self, video_id: str, out_name: str, duration: float, callback: ProgressCallback
    ) -> Callable[[str], None]:
        def on_line(line: str) -> None:
            if duration <= 0:
                return
            current = self.parser.parse(line)
            if current is None:
                return
            fraction = min(1.0, max(0.0, current / duration))
            callback({
                "videoId": video_id,
                "filename": out_name,
                "progress": int(round(fraction * 100)),
                "fraction": fraction,
                "currentTime": current,
                "totalTime": duration,
            })
        return on_line

    @staticmethod
    def _success(filename: str, profile: str, input_path: Path, out: Path, input_size: int, *, status: str) -> dict:
        output_size = out.stat().st_size
        return {
            "success": True,
            "status": status,
            "videoId": filename,
            "profile": profile,
            "inputPath": str(input_path),
            "outputPath": str(out),
            "inputSize": input_size,
            "outputSize": output_size,
            "compressionRatio": _compression_ratio(input_size, output_size),
            "outputSizeFormatted": format_file_size(output_size),
        }

    def compress_all(
        self,
        catalog: MediaCatalog,
        profile_name: Optional[str] = None,
        progress_callback: Optional[ProgressCallback] = None,
    ) -> dict:
        name, _ = self.resolve_profile(profile_name)
        filenames = catalog.keys()
        log("compress", f"[compress] batch start key={catalog.key} profile={name} total={len(filenames)}")
        results: List[dict] = []
        for filename in filenames:
            try:
                results.append(self.compress_one(catalog, filename, name, progress_callback))
            except Exception as e:
                logger.warning("[compress] %s failed: %s", filename, e)
                results.append({
                    "success": False,
                    "status": "error",
                    "videoId": filename,
                    "profile": name,
                    "error": str(e),
                    "exitCode": getattr(e, "exit_code", None),
                })
        successful = sum(1 for r in results if r.get("success"))
        skipped = sum(1 for r in results if r.get("status") == "exists")
        summary = {
            "profile": name,
            "total": len(results),
            "successful": successful,
            "failed": len(results) - successful,
            "skipped": skipped,
            "results": results,
        }
        log(
            "compress",
            f"[compress] batch end key={catalog.key} profile={name} ok={successful} failed={summary['failed']} skipped={skipped}",
        )
        return summary

    def list_outputs(self) -> List[dict]:
        """Compressed files on disk (``<root>/<key>/<profile>/<file>``), newest first."""
        out: List[dict] = []
        if not self.output_root.is_dir():
            return out
        for key_dir in sorted(self.output_root.iterdir()):
            if not key_dir.is_dir():
                continue
            for profile_dir in sorted(key_dir.iterdir()):
                if not profile_dir.is_dir():
                    continue
                profile = self.config.profiles.get(profile_dir.name)
                suffix = (profile.suffix if profile else None) or profile_dir.name
                for f in profile_dir.iterdir():
                    if not f.is_file() or f.name.startswith("."):
                        continue
                    st = f.stat()
                    out.append({
                        "videoId": _source_name(f.stem, suffix),
                        "project": LEGACY_KEY if key_dir.name == LEGACY_OUTPUT_DIR else key_dir.name,
                        "profile": profile_dir.name,
                        "filename": f.name,
                        "path": str(f),
                        "size": st.st_size,
                        "sizeFormatted": format_file_size(st.st_size),
                        "created": datetime.fromtimestamp(st.st_ctime, timezone.utc).isoformat(),
                        "modified": datetime.fromtimestamp(st.st_mtime, timezone.utc).isoformat(),
                        "_mtime": st.st_mtime,
                    })
        out.sort(key=lambda r: r["_mtime"], reverse=True)
        for r in out:
            r.pop("_mtime", None)
        return out


__all__ = [
    "AudioSettings",
    "CompressionConfig",
    "CompressionProfile",
    "CompressionService",
    "FfmpegTimeParser",
    "ProgressParser",
    "VideoSettings",
    "build_ffmpeg_args",
    "is_workspace_profile",
    "load_compression_config",
]
