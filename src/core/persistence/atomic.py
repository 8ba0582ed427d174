"""
Atomic file writes — temp file in the target directory, then rename.

A crash mid-write leaves either the old file or the new one, never a
truncated mix.
"""

from __future__ import annotations

import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


def write_text_atomic(path: Path, content: str, *, prefix: str = ".tmp_") -> None:
    """Write text to ``path`` atomically, creating parent directories."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=prefix, suffix=".tmp")
    tmp = Path(tmp_path)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as fh:
            fh.write(content)
        tmp.replace(path)
    except Exception:
        tmp.unlink(missing_ok=True)
        raise


def write_json_atomic(path: Path, data: Any, *, prefix: str = ".tmp_") -> None:
    """Serialize ``data`` as indented JSON and write it atomically."""
    content = json.dumps(data, indent=2, ensure_ascii=False) + "\n"
    write_text_atomic(path, content, prefix=prefix)


def read_json(path: Path, default: Any = None) -> Any:
    """Read JSON from ``path``; return ``default`` if missing or unparseable."""
    if not path.is_file():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as e:
        logger.warning("Cannot read %s: %s", path, e)
        return default
