"""Wrappers for text and JSON file I/O with consistent encoding (UTF-8)."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any

PathLike = Path | str


def read_text(path: PathLike, errors: str = "strict", **kwargs: Any) -> str:
    """Read path as text with UTF-8 encoding. Forwards extra kwargs to Path.read_text."""
    p = path if isinstance(path, Path) else Path(path)
    return p.read_text(encoding="utf-8", errors=errors, **kwargs)


def write_text(path: PathLike, text: str, **kwargs: Any) -> None:
    """Write text to path with UTF-8 encoding, creating parent directories."""
    p = path if isinstance(path, Path) else Path(path)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_text(text, encoding="utf-8", **kwargs)


def read_json(path: PathLike) -> Any | None:
    """Return the decoded JSON document at *path*.

    A missing, empty or undecodable file reads as ``None``; callers treat that
    as absence rather than an error.
    """
    p = path if isinstance(path, Path) else Path(path)
    try:
        raw = read_text(p)
    except (FileNotFoundError, IsADirectoryError, UnicodeDecodeError):
        return None
    if not raw.strip():
        return None
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return None


def write_json(path: PathLike, data: Any) -> None:
    """Write *data* as indented JSON (whole-document rewrite)."""
    write_text(path, json.dumps(data, indent=2) + "\n")
