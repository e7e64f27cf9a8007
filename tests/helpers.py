import json
import subprocess
from pathlib import Path

from commands import EXIT_NOT_FOUND, CommandRunner


def probe_document(path: Path, *, duration: float = 10.0, width: int = 1920, height: int = 1080,
                   with_audio: bool = True) -> dict:
    streams = [
        {
            "codec_type": "video",
            "codec_name": "h264",
            "width": width,
            "height": height,
            "avg_frame_rate": "24000/1001",
            "bit_rate": "8000000",
            "tags": {"creation_time": "2024-05-01T10:00:00.000000Z"},
        }
    ]
    if with_audio:
        streams.append({
            "codec_type": "audio",
            "codec_name": "aac",
            "sample_rate": "48000",
            "channels": 2,
            "bit_rate": "192000",
        })
    return {
        "format": {
            "filename": str(path),
            "duration": str(duration),
            "size": str(path.stat().st_size) if path.exists() else "0",
            "tags": {"creation_time": "2024-05-01T10:00:00.000000Z"},
        },
        "streams": streams,
    }


class FakeRunner(CommandRunner):
    """Stands in for ffprobe/ffmpeg: records calls and fabricates outputs.

    fail_probe / fail_thumb / fail_compress hold source filenames that should
    make the respective tool exit non-zero.
    """

    def __init__(self, *, fail_probe=(), fail_thumb=(), fail_compress=(), progress_lines=None,
                 missing=False, duration: float = 10.0):
        self.fail_probe = set(fail_probe)
        self.fail_thumb = set(fail_thumb)
        self.fail_compress = set(fail_compress)
        self.progress_lines = list(progress_lines or [])
        self.missing = missing
        self.duration = duration
        self.calls = []

    def run(self, executable, args, *, on_output=None):
        args = [str(a) for a in args]
        cmd = [executable, *args]
        self.calls.append(cmd)
        if self.missing:
            return subprocess.CompletedProcess(cmd, EXIT_NOT_FOUND, "", f"executable not found: {executable}")
        if "ffprobe" in Path(executable).name:
            target = Path(args[-1])
            if target.name in self.fail_probe:
                return subprocess.CompletedProcess(cmd, 1, "", f"{target}: Invalid data found when processing input")
            doc = probe_document(target, duration=self.duration)
            return subprocess.CompletedProcess(cmd, 0, json.dumps(doc), "")

        src = Path(args[args.index("-i") + 1])
        out = Path(args[-1])
        if "-frames:v" in args:
            if src.name in self.fail_thumb:
                return subprocess.CompletedProcess(cmd, 1, "", "Output file is empty, nothing was encoded")
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_bytes(b"\xff\xd8\xff\xe0fake-jpeg")
            return subprocess.CompletedProcess(cmd, 0, "", "")

        if src.name in self.fail_compress:
            # ffmpeg leaves whatever it muxed before dying
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_bytes(b"partial")
            return subprocess.CompletedProcess(cmd, 1, "", "Conversion failed!")
        for line in self.progress_lines:
            if on_output is not None:
                on_output(line)
        out.write_bytes(b"c" * max(1, src.stat().st_size // 4))
        return subprocess.CompletedProcess(cmd, 0, "", "\n".join(self.progress_lines))

    def calls_for(self, tool: str) -> list:
        if tool == "thumbnail":
            return [c for c in self.calls if "-frames:v" in c]
        if tool == "compress":
            return [c for c in self.calls if "ffprobe" not in Path(c[0]).name and "-frames:v" not in c]
        return [c for c in self.calls if "ffprobe" in Path(c[0]).name]


def write_video(directory: Path, name: str, size: int = 1000) -> Path:
    directory.mkdir(parents=True, exist_ok=True)
    p = directory / name
    # deterministic content so byte ranges can be checked
    p.write_bytes(bytes(i % 256 for i in range(size)))
    return p


COMPRESSION_CONFIG = {
    "default_profile": "web",
    "default_workspace_profile": "workspace_basic",
    "output_dir": "_compressed",
    "profiles": {
        "web": {
            "description": "H.264 for the browser",
            "video": {"codec": "libx264", "bitrate": "2M", "resolution": "1280x720", "framerate": 24, "preset": "fast"},
            "audio": {"codec": "aac", "bitrate": "128k"},
            "options": ["-movflags", "+faststart"],
        },
        "workspace_basic": {
            "description": "Editing proxy",
            "category": "workspace",
            "video": {"codec": "libx264"},
            "audio": {"codec": "pcm_s16le"},
            "options": [["-g", "1"]],
            "format": "mov",
            "suffix": "proxy",
        },
        "workspace_alt": {
            "description": "Named like a workspace profile",
            "video": {"codec": "mpeg4"},
        },
    },
}
