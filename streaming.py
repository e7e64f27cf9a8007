"""Byte-range helpers for video delivery, plus a tracker of open streams."""
from __future__ import annotations

import threading
import time
import uuid
from pathlib import Path
from typing import Callable, Dict, Iterator, Optional, Tuple

from config import log

CHUNK_SIZE = 1024 * 1024


class RangeNotSatisfiable(Exception):
    def __init__(self, size: int, header: str = "") -> None:
        super().__init__(f"Requested range not satisfiable: {header!r} (size {size})")
        self.size = size
        self.header = header


def parse_range(header: Optional[str], size: int) -> Optional[Tuple[int, int]]:
    """
    Parse a ``Range: bytes=<start>-<end>`` header against a file of ``size`` bytes.

    Returns None when no header is given, else an inclusive (start, end)
    pair. ``end`` past EOF is clamped to ``size - 1``; ``bytes=-N`` selects
    the last N bytes; only the first range of a list is honoured. Anything
    unparsable or outside the file raises RangeNotSatisfiable.
    """
    if header is None or not header.strip():
        return None
    unit, sep, spec = header.strip().partition("=")
    if not sep or unit.strip().lower() != "bytes":
        raise RangeNotSatisfiable(size, header)
    first = spec.split(",", 1)[0].strip()
    start_s, dash, end_s = first.partition("-")
    start_s = start_s.strip()
    end_s = end_s.strip()
    if not dash or (not start_s and not end_s):
        raise RangeNotSatisfiable(size, header)
    try:
        if not start_s:
            suffix = int(end_s)
            if suffix <= 0:
                raise RangeNotSatisfiable(size, header)
            start = max(0, size - suffix)
            end = size - 1
        else:
            start = int(start_s)
            end = int(end_s) if end_s else size - 1
    except ValueError:
        raise RangeNotSatisfiable(size, header)
    end = min(end, size - 1)
    if size <= 0 or start < 0 or start >= size or start > end:
        raise RangeNotSatisfiable(size, header)
    return start, end


def iter_file(
    path: Path,
    start: int,
    end: int,
    *,
    chunk_size: int = CHUNK_SIZE,
    on_close: Optional[Callable[[], None]] = None,
) -> Iterator[bytes]:
    """Yield bytes ``start..end`` (inclusive) of ``path``.

    The file handle lives inside the generator, so closing the generator
    (the server does that when the client goes away) releases it.
    """
    try:
        with open(path, "rb") as f:
            f.seek(start)
            remaining = end - start + 1
            while remaining > 0:
                data = f.read(min(chunk_size, remaining))
                if not data:
                    break
                remaining -= len(data)
                yield data
    finally:
        if on_close is not None:
            on_close()


class ConnectionTracker:
    """Counts open streaming responses; entries are removed when a stream ends."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._active: Dict[str, dict] = {}
        self.total = 0
        self.video_streams = 0
        self.max_concurrent = 0

    def open(self, kind: str, *, client: Optional[str] = None, target: str = "") -> str:
        cid = f"{kind}-{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._active[cid] = {
                "id": cid,
                "type": kind,
                "target": target,
                "clientIP": client,
                "startTime": time.time(),
            }
            self.total += 1
            if kind == "video-stream":
                self.video_streams += 1
            self.max_concurrent = max(self.max_concurrent, len(self._active))
            active = len(self._active)
        log("stream", f"[stream] open id={cid} target={target} client={client} active={active}")
        return cid

    def close(self, cid: str) -> None:
        with self._lock:
            conn = self._active.pop(cid, None)
            if conn is None:
                return
            if conn["type"] == "video-stream":
                self.video_streams -= 1
            active = len(self._active)
        elapsed_ms = int((time.time() - conn["startTime"]) * 1000)
        log("stream", f"[stream] close id={cid} duration={elapsed_ms}ms active={active}")

    def stats(self) -> dict:
        now = time.time()
        with self._lock:
            return {
                "total": self.total,
                "active": len(self._active),
                "videoStreams": self.video_streams,
                "maxConcurrent": self.max_concurrent,
                "connections": [
                    {
                        "id": c["id"],
                        "type": c["type"],
                        "target": c["target"],
                        "duration": int((now - c["startTime"]) * 1000),
                        "clientIP": c["clientIP"],
                    }
                    for c in self._active.values()
                ],
            }


__all__ = [
    "CHUNK_SIZE",
    "RangeNotSatisfiable",
    "parse_range",
    "iter_file",
    "ConnectionTracker",
]
