"""
Run bookkeeping: stable parameter hashing, JSON-safe parameter snapshots,
manifest files and per-run output directories.
"""

from __future__ import annotations

import dataclasses
import datetime as _dt
import hashlib
import json
import logging
import time
from enum import Enum
from pathlib import Path
from typing import Any, Dict

import numpy as np

logger = logging.getLogger(__name__)

RUN_DIR_FORMAT = "%Y%m%dT%H%M%S"
SHORT_HASH_LENGTH = 8


def normalize_abs_posix(path: str | Path) -> str:
    """Absolute, symlink-resolved path written with forward slashes."""
    return Path(path).resolve().as_posix()


def canonical_json_dumps(payload: dict[str, Any]) -> str:
    """
    Serialize payload so equal content always gives equal text: keys sorted,
    no insignificant whitespace, non-ASCII kept as-is.
    """
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def canonical_json_hash(payload: dict[str, Any]) -> tuple[str, str]:
    """sha256 of the canonical JSON text, as (short prefix, full hex digest)."""
    digest = hashlib.sha256(canonical_json_dumps(payload).encode("utf-8")).hexdigest()
    return digest[:SHORT_HASH_LENGTH], digest


def _dataclass_fields(obj: Any) -> dict[str, Any]:
    return {f.name: getattr(obj, f.name) for f in dataclasses.fields(obj)}


def _sanitize_for_json(obj: Any) -> Any:
    """
    Reduce obj to JSON primitives.

    Paths become absolute POSIX strings, enums their member name, numpy values
    plain Python numbers or lists, datetimes ISO-8601 text. Dataclasses,
    mappings and sequences are walked recursively; mapping keys are
    stringified. Anything else falls back to str().
    """
    if obj is None or isinstance(obj, (bool, int, float, str)):
        return obj
    if isinstance(obj, Path):
        return normalize_abs_posix(obj)
    if isinstance(obj, Enum):
        return obj.name
    if isinstance(obj, _dt.datetime):
        return obj.isoformat()
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return _sanitize_for_json(_dataclass_fields(obj))
    if isinstance(obj, dict):
        return {str(key): _sanitize_for_json(value) for key, value in obj.items()}
    if isinstance(obj, (list, tuple, set, frozenset)):
        return [_sanitize_for_json(item) for item in obj]
    return str(obj)


def build_effective_parameters(**sections: Any) -> dict[str, Any]:
    """
    Snapshot named parameter objects, e.g.
    build_effective_parameters(analysis=params, render=render).

    Dataclass sections are read field by field, so new fields show up in the
    snapshot (and therefore in the run hash) without further changes.
    """
    snapshot: dict[str, Any] = {}
    for name, section in sections.items():
        if dataclasses.is_dataclass(section) and not isinstance(section, type):
            values = _dataclass_fields(section)
        elif hasattr(section, "__dict__"):
            values = vars(section)
        else:
            values = {"value": section}
        snapshot[name] = _sanitize_for_json(values)
    return snapshot


def write_manifest(path: str | Path, manifest: Dict[str, Any]) -> None:
    """Write manifest as indented UTF-8 JSON, creating the parent directory if needed."""
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_text(json.dumps(manifest, indent=2, ensure_ascii=False), encoding="utf-8")
    logger.debug("Wrote manifest %s", target)


def utc_timestamp_seconds() -> str:
    """Current UTC time like 2024-05-01T12:00:00Z."""
    return _dt.datetime.now(_dt.timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def ensure_run_dir(base: Path | str = ".", prefix: str = "output") -> Path:
    """Create and return <base>/<prefix>/<local timestamp> for one run."""
    run_dir = Path(base) / prefix / time.strftime(RUN_DIR_FORMAT, time.localtime())
    run_dir.mkdir(parents=True, exist_ok=True)
    logger.debug("Using run directory %s", run_dir)
    return run_dir
