"""JSON file helpers for the dailies workspace.

Everything the server persists (the project registry, each catalog index and
each preferences file) is a single pretty-printed JSON document that is read
and written wholesale.
"""
from __future__ import annotations

from contextlib import contextmanager
import json
import os
from pathlib import Path
import tempfile
from typing import Any, Callable, Iterator, Union

PathLike = Union[str, Path]


def read_json(path: PathLike) -> Any:
    """Parse a JSON file. Raises FileNotFoundError or ValueError on bad content."""
    return json.loads(Path(path).read_text(encoding="utf-8"))


def write_json(path: PathLike, data: Any) -> Path:
    """Write ``data`` as indented JSON, creating parent directories.

    The document is written to a sibling temp file and moved into place so a
    reader never observes a half-written index.
    """
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{target.name}.", dir=str(target.parent))
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(json.dumps(data, indent=2))
        os.replace(tmp, target)
    except BaseException:
        if os.path.exists(tmp):
            os.unlink(tmp)
        raise
    return target


@contextmanager
def session(path: PathLike, default_factory: Callable[[], Any] = dict) -> Iterator[Any]:
    """Read-modify-write a JSON document; writes back only when the block succeeds."""
    try:
        data = read_json(path)
    except FileNotFoundError:
        data = default_factory()
    yield data
    write_json(path, data)


__all__ = [
    "read_json",
    "write_json",
    "session",
]
