"""Shared markdown and JSON I/O for persistent data files.

Records are one file per item: YAML frontmatter holding the dataclass fields
plus a markdown body holding its `message` field. Every write goes through a
temp file + os.replace so a crash never leaves a half-written record.
"""

import contextlib
import dataclasses
import fcntl
import json
import logging
import os
import tempfile
from collections.abc import Iterator
from dataclasses import asdict
from pathlib import Path
from typing import Any, TypeVar

import yaml

from eldercare.config import DATA_DIR_DEFAULT
from eldercare.config import TZ as TZ

DATA_DIR = DATA_DIR_DEFAULT
STATE_DIR = DATA_DIR / "state"

T = TypeVar("T")
log = logging.getLogger(__name__)

_STR_TYPES = (str, "str", str | None, "str | None")


def _atomic_write(target: Path, content: str) -> None:
    target.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=target.parent, suffix=".tmp")
    try:
        os.write(fd, content.encode())
    finally:
        os.close(fd)
    os.replace(tmp, target)


# --- Markdown I/O ---


def _defaults(cls: type) -> dict[str, Any]:
    fields = dataclasses.fields(cls)
    defaults = {
        f.name: f.default for f in fields if f.default is not dataclasses.MISSING
    }
    defaults.update(
        {
            f.name: f.default_factory()
            for f in fields
            if f.default_factory is not dataclasses.MISSING
        }
    )
    return defaults


def _serialize_md(item: Any) -> str:
    """Build YAML frontmatter + markdown body from a dataclass with a `message` field."""
    data = asdict(item)
    message = data.pop("message")
    defaults = _defaults(type(item))
    front = {
        key: value
        for key, value in data.items()
        if key not in defaults or value != defaults[key]
    }
    header = yaml.safe_dump(front, sort_keys=False, allow_unicode=True)
    return f"---\n{header}---\n{message}\n"


def _parse_md(text: str, cls: type[T]) -> T:
    """Parse a single markdown file with YAML frontmatter into a dataclass."""
    parts = text.split("---", 2)
    if len(parts) < 3:
        raise ValueError("Missing YAML frontmatter delimiters")
    body = parts[2].strip()

    data = yaml.safe_load(parts[1])
    if not isinstance(data, dict):
        raise ValueError("YAML frontmatter is not a mapping")

    fields = {f.name: f for f in dataclasses.fields(cls)}  # type: ignore[arg-type]
    filtered: dict[str, object] = {}
    for key, value in data.items():
        if key not in fields:
            continue
        # Hand-edited files may carry unquoted ids or timestamps
        if fields[key].type in _STR_TYPES and value is not None:
            filtered[key] = value.isoformat() if hasattr(value, "isoformat") else str(value)
        else:
            filtered[key] = value
    filtered["message"] = body
    return cls(**filtered)


def read_md(filepath: Path, cls: type[T]) -> T | None:
    """None when the file is missing or corrupt."""
    try:
        text = filepath.read_text()
    except FileNotFoundError:
        return None
    try:
        return _parse_md(text, cls)
    except (ValueError, yaml.YAMLError, TypeError, KeyError):
        log.warning("Skipping corrupt file: %s", filepath)
        return None


def read_md_dir(dir_path: Path, cls: type[T]) -> list[T]:
    """Read all .md files in a directory into dataclass instances."""
    if not dir_path.is_dir():
        return []
    result: list[T] = []
    for filepath in sorted(dir_path.glob("*.md")):
        item = read_md(filepath, cls)
        if item is not None:
            result.append(item)
    return result


def write_md(filepath: Path, item: Any) -> None:
    _atomic_write(filepath, _serialize_md(item))


def remove_file(filepath: Path) -> bool:
    try:
        filepath.unlink()
    except FileNotFoundError:
        return False
    return True


# --- JSON state ---


def read_json(filepath: Path, default: T) -> T:
    """Missing or unreadable files fall back to `default`."""
    if not filepath.exists():
        return default
    try:
        return json.loads(filepath.read_text())
    except json.JSONDecodeError:
        log.warning("Ignoring corrupt state file: %s", filepath)
        return default


def write_json(filepath: Path, data: Any) -> None:
    """Atomic write via tempfile + os.replace."""
    _atomic_write(filepath, json.dumps(data, indent=2, sort_keys=True))


@contextlib.contextmanager
def locked(filepath: Path) -> Iterator[None]:
    """Exclusive lock on `filepath`, held against other processes and threads.

    Uses a `.lock` file beside the target, since the target itself is replaced
    on every write.
    """
    lock_path = filepath.with_name(filepath.name + ".lock")
    lock_path.parent.mkdir(parents=True, exist_ok=True)
    with open(lock_path, "a") as fh:
        fcntl.flock(fh, fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(fh, fcntl.LOCK_UN)
