from __future__ import annotations

import dataclasses
import datetime as _dt
import hashlib
import json
import logging
import math
import threading
import time
import zipfile
from pathlib import Path
from typing import Any, Dict

import numpy as np
import pandas as pd

logger = logging.getLogger(__name__)


# -------------------------
# Path utilities
# -------------------------
def normalize_abs_posix(path: str | Path) -> str:
    """
    Return an absolute POSIX-style path string for the given input.
    Ensures deterministic representation across platforms.
    """
    p = Path(path).resolve()
    return p.as_posix()


# -------------------------
# Hashing utilities
# -------------------------
def canonical_json_dumps(payload: dict[str, Any]) -> str:
    """
    Deterministic JSON string for hashing and storage:
    - separators=(',', ':')
    - sort_keys=True
    - ensure_ascii=False
    """
    return json.dumps(
        payload, ensure_ascii=False, separators=(",", ":"), sort_keys=True
    )


def canonical_json_hash(payload: dict[str, Any]) -> tuple[str, str]:
    """
    Return (short_hash8, full_hash_hex) computed over canonical JSON bytes (UTF-8).
    """
    s = canonical_json_dumps(payload)
    b = s.encode("utf-8")
    h = hashlib.sha256(b).hexdigest()
    return h[:8], h


def content_digest(text: str) -> str:
    """SHA-256 hex digest of the UTF-8 encoded input text."""
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


# -------------------------
# Manifest helpers
# -------------------------
def _sanitize_for_json(obj: Any) -> Any:
    """
    Recursively convert arbitrary objects into strict-JSON Python primitives.

    Conversions performed:
    - non-finite floats -> "inf" / "-inf" / "nan" (strict JSON has no infinities)
    - pathlib.Path -> normalized POSIX string via normalize_abs_posix()
    - Enums (have .name) -> .name string
    - dataclasses -> dict of fields, sanitized recursively
    - numpy scalars -> Python int/float via .item()
    - pandas DataFrames -> list of row dicts
    - dicts -> sanitized dict with stringified keys
    - lists/tuples/sets -> lists with sanitized elements
    - datetime.datetime -> ISO-8601 string
    """
    if obj is None or isinstance(obj, (bool, int, str)):
        return obj

    if isinstance(obj, float):
        if math.isfinite(obj):
            return obj
        if math.isnan(obj):
            return "nan"
        return "inf" if obj > 0 else "-inf"

    if isinstance(obj, Path):
        return normalize_abs_posix(obj)

    if isinstance(obj, _dt.datetime):
        return obj.isoformat()

    if isinstance(obj, np.generic):
        return _sanitize_for_json(obj.item())
    if isinstance(obj, np.ndarray):
        return [_sanitize_for_json(x) for x in obj.tolist()]
    if isinstance(obj, pd.DataFrame):
        return [_sanitize_for_json(row) for row in obj.to_dict(orient="records")]

    if hasattr(obj, "name") and isinstance(getattr(obj, "name"), str):
        return getattr(obj, "name")

    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        return _sanitize_for_json(
            {f.name: getattr(obj, f.name) for f in dataclasses.fields(obj)}
        )

    if isinstance(obj, dict):
        return {
            (k if isinstance(k, str) else str(k)): _sanitize_for_json(v)
            for k, v in obj.items()
        }

    if isinstance(obj, (list, tuple, set)):
        return [_sanitize_for_json(x) for x in obj]

    if isinstance(obj, (bytes, bytearray)):
        return obj.decode("utf-8", errors="replace")

    return str(obj)


def build_effective_parameters(diff: Any, window: Any) -> dict[str, Any]:
    """
    Build a JSON-serializable mapping of effective parameters derived from the
    provided DiffParams and WindowParams dataclass instances.

    Returns a mapping shaped as {"diff": {...}, "window": {...}} so manifest
    consumers can rely on a stable layout as fields are added.
    """
    return {
        "diff": _sanitize_for_json(diff),
        "window": _sanitize_for_json(window),
    }


def write_manifest(path: str | Path, manifest: Dict[str, Any]) -> None:
    """
    Write manifest JSON with UTF-8 encoding and stable formatting (indent=2 for readability).
    """
    p = Path(path)
    p.write_text(
        json.dumps(_sanitize_for_json(manifest), ensure_ascii=False, indent=2),
        encoding="utf-8",
    )


def utc_timestamp_seconds() -> str:
    """
    ISO-8601 UTC timestamp with seconds precision and Z suffix.
    """
    now = _dt.datetime.now(_dt.timezone.utc).replace(tzinfo=None)
    return now.isoformat(timespec="seconds") + "Z"


# -------------------------
# Small orchestration helpers (shared by CLI and Gradio UI)
# -------------------------
def ensure_run_dir(base: Path | str = ".", prefix: str = "output") -> Path:
    """
    Ensure and return a per-run directory under `base`/`prefix`/<timestamp>.

    Timestamp format: time.strftime("%Y%m%dT%H%M%S", time.localtime()); the
    retention helper in gradio_ui relies on names sorting chronologically.
    """
    run_ts = time.strftime("%Y%m%dT%H%M%S", time.localtime())
    run_dir = Path(base) / prefix / run_ts
    run_dir.mkdir(parents=True, exist_ok=True)
    logger.debug("Ensured run_dir=%s", str(run_dir))
    return run_dir


def create_zip_async(zip_path: str, artifact_paths: list[Path]) -> threading.Thread:
    """
    Create a ZIP archive at zip_path containing artifact_paths in a background daemon thread.

    The returned Thread is already started. Exceptions inside the thread are
    logged; the thread will not raise to the caller. Missing artifacts are skipped.
    """

    def _worker(zip_path_local: str, paths: list[Path]) -> None:
        try:
            with zipfile.ZipFile(
                zip_path_local, "w", compression=zipfile.ZIP_DEFLATED
            ) as zf:
                for p in paths:
                    pth = Path(p)
                    if pth.exists():
                        zf.write(str(pth), arcname=pth.name)
                    else:
                        logger.debug("Skipping missing artifact for zip: %s", str(pth))
            logger.debug("Async zip created at %s", zip_path_local)
        except Exception as e:
            logger.warning("Async zip failed for %s: %s", zip_path_local, e)

    thread = threading.Thread(
        target=_worker, args=(zip_path, list(artifact_paths)), daemon=True
    )
    thread.start()
    return thread


def write_text_report(report_text: str, run_dir: Path, short_hash: str) -> Path:
    """
    Write the textual report into run_dir/report-<short_hash>.txt using UTF-8.

    Best-effort: on IO failures the error is logged and the intended Path is
    returned (it may not exist if the write failed).
    """
    target = Path(run_dir) / f"report-{short_hash}.txt"
    try:
        target.write_text(report_text, encoding="utf-8")
        logger.debug("Wrote textual report to %s", str(target))
    except OSError as e:
        logger.warning("Failed to write textual report to %s: %s", str(target), e)
    return target
