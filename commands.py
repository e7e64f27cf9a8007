"""
External tool seam: every ffprobe/ffmpeg call goes through a CommandRunner.

Commands are always argument vectors (never shell strings), so filenames are
passed through verbatim and tests can swap in a fake runner that records the
calls and fabricates outputs.
"""
from __future__ import annotations

import json
import os
import re
import shutil
import subprocess
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Callable, Optional, Sequence

from config import env_int, env_on, log
from errors import ExternalToolError

# Exit code reported when the executable itself cannot be started (mirrors sh).
EXIT_NOT_FOUND = 127
EXIT_TIMEOUT = -9

_LINE_SPLIT = re.compile(r"[\r\n]")

OutputCallback = Callable[[str], None]


def ffmpeg_bin() -> str:
    return os.environ.get("FFMPEG") or "ffmpeg"


def ffprobe_bin() -> str:
    return os.environ.get("FFPROBE") or "ffprobe"


def ffmpeg_available() -> bool:
    """Return True if an ffmpeg executable is available on PATH (or via FFMPEG env)."""
    return shutil.which(ffmpeg_bin()) is not None


def ffprobe_available() -> bool:
    """Return True if an ffprobe executable is available on PATH (or via FFPROBE env)."""
    return shutil.which(ffprobe_bin()) is not None


def _timelimit() -> Optional[float]:
    tl = env_int("FFMPEG_TIMELIMIT", 0)
    return float(tl) if tl > 0 else None


class CommandRunner(ABC):
    """Runs ``executable`` with ``args`` and reports exit code and output.

    ``on_output`` receives stderr one line at a time while the process is
    running; lines are split on both ``\\r`` and ``\\n`` because ffmpeg
    redraws its status line with carriage returns.
    """

    @abstractmethod
    def run(
        self,
        executable: str,
        args: Sequence[str],
        *,
        on_output: Optional[OutputCallback] = None,
    ) -> subprocess.CompletedProcess:
        ...


class SubprocessRunner(CommandRunner):
    def run(
        self,
        executable: str,
        args: Sequence[str],
        *,
        on_output: Optional[OutputCallback] = None,
    ) -> subprocess.CompletedProcess:
        cmd = [executable, *[str(a) for a in args]]
        tl = _timelimit()
        if on_output is None:
            try:
                return subprocess.run(cmd, capture_output=True, text=True, timeout=tl)
            except FileNotFoundError:
                return subprocess.CompletedProcess(cmd, EXIT_NOT_FOUND, "", f"executable not found: {executable}")
            except subprocess.TimeoutExpired:
                return subprocess.CompletedProcess(cmd, EXIT_TIMEOUT, "", f"timed out after {tl:.0f}s")
        return self._run_streaming(cmd, on_output, tl)

    @staticmethod
    def _run_streaming(cmd: list[str], on_output: OutputCallback, tl: Optional[float]) -> subprocess.CompletedProcess:
        with tempfile.TemporaryFile() as out_buf:
            try:
                proc = subprocess.Popen(cmd, stdout=out_buf, stderr=subprocess.PIPE)
            except FileNotFoundError:
                return subprocess.CompletedProcess(cmd, EXIT_NOT_FOUND, "", f"executable not found: {cmd[0]}")
            timer = threading.Timer(tl, proc.kill) if tl else None
            if timer is not None:
                timer.daemon = True
                timer.start()
            err_lines: list[str] = []
            pending = ""
            try:
                assert proc.stderr is not None
                while True:
                    chunk = os.read(proc.stderr.fileno(), 4096)
                    if not chunk:
                        break
                    pending += chunk.decode("utf-8", errors="replace")
                    parts = _LINE_SPLIT.split(pending)
                    pending = parts.pop()
                    for line in parts:
                        if line:
                            err_lines.append(line)
                            on_output(line)
                if pending:
                    err_lines.append(pending)
                    on_output(pending)
                rc = proc.wait()
            finally:
                if timer is not None:
                    timer.cancel()
                if proc.stderr is not None:
                    proc.stderr.close()
                if proc.poll() is None:
                    proc.kill()
                    proc.wait()
            out_buf.seek(0)
            stdout = out_buf.read().decode("utf-8", errors="replace")
        if timer is not None and rc < 0:
            err_lines.append(f"timed out after {tl:.0f}s")
        return subprocess.CompletedProcess(cmd, rc, stdout, "\n".join(err_lines))


def _trim(text: str, limit: int = 1200) -> str:
    text = (text or "").strip()
    if len(text) > limit:
        return text[:limit] + "..."
    return text


def probe_media(runner: CommandRunner, video: Path) -> dict[str, Any]:
    """Return ffprobe's format/streams document for ``video``.

    Raises ExternalToolError on a non-zero exit or unparsable output.
    """
    log("probe", f"probe start path={video}")
    t0 = time.time()
    proc = runner.run(
        ffprobe_bin(),
        ["-v", "error", "-print_format", "json", "-show_format", "-show_streams", str(video)],
    )
    elapsed = time.time() - t0
    if proc.returncode != 0:
        err = _trim(proc.stderr)
        log("probe", f"probe fail path={video} code={proc.returncode} elapsed={elapsed:.3f}s stderr={err!r}")
        raise ExternalToolError(
            f"ffprobe exited with code {proc.returncode}: {err or 'no output'}",
            exit_code=proc.returncode,
            stderr=proc.stderr or "",
        )
    try:
        payload = json.loads(proc.stdout or "")
    except ValueError as e:
        raise ExternalToolError(f"ffprobe returned invalid JSON: {e}", exit_code=0) from e
    if not isinstance(payload, dict) or not payload:
        raise ExternalToolError("ffprobe returned an empty document", exit_code=0)
    log("probe", f"probe end path={video} streams={len(payload.get('streams') or [])} elapsed={elapsed:.3f}s")
    return payload


def write_placeholder_thumbnail(out: Path, quality: int = 60) -> None:
    from PIL import Image

    out.parent.mkdir(parents=True, exist_ok=True)
    img = Image.new("RGB", (320, 180), color=(17, 17, 17))
    img.save(out, format="JPEG", quality=quality)


def generate_thumbnail(
    runner: CommandRunner,
    video: Path,
    out: Path,
    *,
    offset: float = 1.0,
    width: int = 320,
    quality: int = 4,
) -> None:
    """Grab one frame at ``offset`` seconds into ``out`` (JPEG).

    When ffmpeg cannot be started and THUMBNAIL_PLACEHOLDER is on (default),
    a dark placeholder image is written instead.
    """
    out.parent.mkdir(parents=True, exist_ok=True)
    log("thumbnail", f"thumbnail start path={video} out={out} offset={offset:.3f}s")
    args = [
        "-y",
        "-ss", f"{max(0.0, offset):.3f}",
        "-i", str(video),
        "-frames:v", "1",
        # scale by width keeping aspect ratio, even height
        "-vf", f"scale='min({int(width)},iw)':-2",
        "-q:v", str(max(2, min(31, int(quality)))),
        str(out),
    ]
    t0 = time.time()
    proc = runner.run(ffmpeg_bin(), args)
    elapsed = time.time() - t0
    if proc.returncode == EXIT_NOT_FOUND and env_on("THUMBNAIL_PLACEHOLDER", True):
        write_placeholder_thumbnail(out)
        log("thumbnail", f"thumbnail placeholder written (ffmpeg missing) path={video}")
        return
    if proc.returncode != 0:
        err = _trim(proc.stderr)
        log("thumbnail", f"thumbnail fail path={video} code={proc.returncode} elapsed={elapsed:.3f}s stderr={err!r}")
        raise ExternalToolError(
            f"ffmpeg thumbnail exited with code {proc.returncode}: {err or 'no output'}",
            exit_code=proc.returncode,
            stderr=proc.stderr or "",
        )
    if not out.exists():
        raise ExternalToolError("ffmpeg finished without writing a thumbnail", exit_code=0)
    log("thumbnail", f"thumbnail end path={video} size={out.stat().st_size} elapsed={elapsed:.3f}s")


__all__ = [
    "EXIT_NOT_FOUND",
    "EXIT_TIMEOUT",
    "CommandRunner",
    "SubprocessRunner",
    "ffmpeg_bin",
    "ffprobe_bin",
    "ffmpeg_available",
    "ffprobe_available",
    "probe_media",
    "generate_thumbnail",
    "write_placeholder_thumbnail",
]
