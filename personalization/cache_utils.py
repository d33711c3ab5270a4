"""JSON document helpers shared by the file cache and the JSON store."""

from __future__ import annotations

import json
import os
import tempfile
from pathlib import Path
from typing import Any


def atomic_write_json(path: Path, data: Any) -> None:
    """Replace ``path`` with ``data`` as JSON; readers never see a partial file.

    Parent directories are created on demand. Datetimes and other non-JSON
    values are written through ``str``.
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        "w", dir=path.parent, suffix=".tmp", delete=False
    ) as tmp:
        tmp_path = Path(tmp.name)
        try:
            json.dump(data, tmp, default=str)
        except (TypeError, ValueError):
            tmp.close()
            tmp_path.unlink(missing_ok=True)
            raise
    try:
        os.replace(tmp_path, path)
    except OSError:
        tmp_path.unlink(missing_ok=True)
        raise


def read_json(path: Path, default: Any = None) -> Any:
    """Parsed JSON at ``path``, or ``default`` when the file does not exist."""
    try:
        text = path.read_text()
    except FileNotFoundError:
        return default
    return json.loads(text)


def evict_oldest(directory: Path, pattern: str, keep: int) -> list[Path]:
    """Delete the least recently written files beyond ``keep``; returns what was removed."""
    if keep <= 0:
        return []
    files = sorted(directory.glob(pattern), key=lambda p: (p.stat().st_mtime, p.name))
    removed = []
    for stale in files[: max(0, len(files) - keep)]:
        try:
            stale.unlink()
        except FileNotFoundError:
            continue
        removed.append(stale)
    return removed
