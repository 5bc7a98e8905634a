"""Whole-document JSON persistence with crash-safe writes.

Every cache the engine keeps on disk (position ledger, symbol universe,
precision table) is a single JSON document that is always replaced as a
whole.  Writes go to a temporary file in the same directory followed by
``os.replace`` so readers never observe a half-written document.
"""

from __future__ import annotations

import json
import os
import tempfile
from typing import Any

from log_utils import setup_logger

logger = setup_logger(__name__)


def load_json(path: str, default: Any = None) -> Any:
    """Return the JSON document at ``path`` or ``default`` when unusable."""

    fallback = {} if default is None else default
    try:
        with open(path, "r", encoding="utf-8") as f:
            text = f.read().strip()
            if not text:
                raise json.JSONDecodeError("empty", "", 0)
            return json.loads(text)
    except FileNotFoundError:
        return fallback
    except json.JSONDecodeError as e:
        logger.warning("Resetting corrupted %s (%s)", path, e)
        return fallback


def dump_json(path: str, obj: Any) -> None:
    """Atomically replace the document at ``path`` with ``obj``."""

    d = os.path.dirname(path) or "."
    os.makedirs(d, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=".engine_", suffix=".json", dir=d, text=True)
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(obj, f, ensure_ascii=False, indent=2)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)
    finally:
        try:
            if os.path.exists(tmp):
                os.remove(tmp)
        except OSError:
            pass


__all__ = ["load_json", "dump_json"]
