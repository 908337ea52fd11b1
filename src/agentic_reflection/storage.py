"""Durable JSON persistence for the ledger and the context window.

Writes go to a temp file in the target directory, are fsynced, then renamed
over the target, so a crash leaves either the previous document or the new
one on disk, never a torn write.
"""

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Any

from agentic_reflection.errors import LedgerCorruptError


SESSIONS_DIR = "sessions"
CONTEXT_DIR = "context"

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def safe_name(identifier: str) -> str:
    """Turn a session or task id into a single safe path component."""
    cleaned = _UNSAFE_CHARS.sub("_", identifier).strip(".")
    if not cleaned:
        raise ValueError(f"Identifier cannot be used as a file name: {identifier!r}")
    return cleaned


def write_text_atomic(path: Path, content: str) -> None:
    """Atomically replace ``path`` with ``content``."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(
        prefix=f".{path.name}.", suffix=".tmp", dir=str(path.parent)
    )
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        try:
            os.unlink(tmp_name)
        except FileNotFoundError:
            pass
        raise


def write_json_atomic(path: Path, data: Any) -> None:
    write_text_atomic(path, json.dumps(data, indent=2))


def read_json(path: Path, default: Any = None) -> Any:
    """
    Read a JSON document, returning ``default`` if it does not exist.

    Raises:
        LedgerCorruptError: If the file exists but is not valid JSON.
    """
    path = Path(path)
    if not path.exists():
        return default
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise LedgerCorruptError(f"Corrupt state file {path}: {e}")


def attempts_path(state_dir: Path, session_id: str, task_id: str) -> Path:
    return Path(state_dir) / SESSIONS_DIR / safe_name(session_id) / f"{safe_name(task_id)}.attempts.json"


def history_path(state_dir: Path, session_id: str) -> Path:
    return Path(state_dir) / CONTEXT_DIR / f"{safe_name(session_id)}.history.json"


def summary_path(state_dir: Path, session_id: str) -> Path:
    return Path(state_dir) / CONTEXT_DIR / f"{safe_name(session_id)}.summary.md"
