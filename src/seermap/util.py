"""Logging setup, run provenance and manifest writing."""

from __future__ import annotations

import hashlib
import json
import logging
import subprocess
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Mapping, Sequence


LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
# Geometry readers and font lookup are chatty at DEBUG.
_QUIET_LOGGERS = ("matplotlib", "pyogrio", "fiona", "PIL")


def setup_logging(log_file: Path | None = None, verbose: bool = False) -> None:
    """Log seermap to the console and, when given, to `log_file`."""
    handlers: list[logging.Handler] = [logging.StreamHandler()]
    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, encoding="utf-8"))
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True,
    )
    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def ensure_directories(paths: Iterable[Path]) -> None:
    for path in paths:
        path.mkdir(parents=True, exist_ok=True)


def run_provenance(config_path: Path, data_path: Path) -> dict[str, str | None]:
    """Timestamp, input hashes and git commit identifying one map run."""
    return {
        "generated_at_utc": datetime.now(timezone.utc).isoformat(),
        "config_hash_sha256": _sha256(config_path),
        "data_hash_sha256": _sha256(data_path),
        "git_commit": _git_commit(config_path.parent),
    }


def write_manifest(image_path: Path, manifest: Mapping[str, Any]) -> Path:
    """Write `manifest` as JSON beside the map image and return its path."""
    path = image_path.with_suffix(".json")
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", encoding="utf-8") as fh:
        json.dump(dict(manifest), fh, indent=2, sort_keys=True, ensure_ascii=False)
        fh.write("\n")
    return path


def _sha256(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(1 << 20), b""):
            digest.update(chunk)
    return digest.hexdigest()


def _git_commit(cwd: Path) -> str | None:
    try:
        proc = subprocess.run(
            ["git", "rev-parse", "HEAD"],
            cwd=str(cwd),
            capture_output=True,
            text=True,
            check=True,
        )
    except (FileNotFoundError, subprocess.CalledProcessError):
        return None
    return proc.stdout.strip() or None


def format_id_list(values: Sequence[str], limit: int = 12) -> str:
    if len(values) <= limit:
        return ", ".join(values)
    shown = ", ".join(values[:limit])
    return f"{shown}, ... (+{len(values) - limit} more)"
