"""Per-host CSV log for check records."""

from __future__ import annotations

import csv
import logging
import re
from dataclasses import fields
from pathlib import Path
from typing import Dict, List, Optional

from observers.dc_connectivity.errors import DirectoryCreationError, PersistenceError
from observers.dc_connectivity.observer import (
    PING_DISABLED,
    PING_FAILED,
    PING_SKIPPED,
    CheckRecord,
)

logger = logging.getLogger("dc_observer.store")

UNRESOLVED = "Unresolved"
NOT_AVAILABLE = "N/A"
PING_TOKENS = {
    PING_DISABLED: "Disabled",
    PING_SKIPPED: "Skipped",
    PING_FAILED: "Failed",
}
TIMESTAMP_FORMAT = "%Y-%m-%d %H:%M:%S"

COLUMNS = tuple(item.name for item in fields(CheckRecord) if item.name != "ping_status")


def ensure_log_dir(path: Path) -> Path:
    """Create the log directory; the only failure that aborts an invocation."""

    path = Path(path)
    try:
        path.mkdir(parents=True, exist_ok=True)
    except OSError as exc:
        raise DirectoryCreationError(f"unable to create log directory {path}: {exc}") from exc
    if not path.is_dir():
        raise DirectoryCreationError(f"log directory path is not a directory: {path}")
    return path


def log_path(log_dir: Path, host_identity: str) -> Path:
    safe_name = re.sub(r"[^A-Za-z0-9_.-]", "_", host_identity) or "localhost"
    return Path(log_dir) / f"{safe_name}.csv"


def _latency(value: Optional[float]) -> str:
    if value is None:
        return NOT_AVAILABLE
    return f"{value:.2f}"


def record_to_row(record: CheckRecord) -> Dict[str, str]:
    if record.ping_latency_ms is not None:
        ping_token = _latency(record.ping_latency_ms)
    else:
        ping_token = PING_TOKENS.get(record.ping_status, PING_TOKENS[PING_FAILED])

    return {
        "timestamp": record.timestamp.strftime(TIMESTAMP_FORMAT),
        "host_identity": record.host_identity,
        "assigned_controller": record.assigned_controller or UNRESOLVED,
        "controller_address": record.controller_address or UNRESOLVED,
        "ping_latency_ms": ping_token,
        "directory_dc_used": record.directory_dc_used or UNRESOLVED,
        "directory_bind_latency_ms": _latency(record.directory_bind_latency_ms),
        "directory_bind_status": record.directory_bind_status,
        "secure_channel_status": record.secure_channel_status,
        "error_summary": " ".join(record.error_summary.split()),
    }


def _write_row(path: Path, row: Dict[str, str]) -> None:
    try:
        write_header = not path.exists() or path.stat().st_size == 0
        with path.open("a", encoding="utf-8", newline="") as handle:
            writer = csv.DictWriter(handle, fieldnames=COLUMNS)
            if write_header:
                writer.writeheader()
            writer.writerow(row)
    except (OSError, csv.Error) as exc:
        raise PersistenceError(f"{path}: {exc}") from exc


def append_record(log_dir: Path, record: CheckRecord) -> Optional[Path]:
    """Append ``record`` to its host log. Failures are logged, never raised."""

    path = log_path(log_dir, record.host_identity)
    try:
        _write_row(path, record_to_row(record))
    except PersistenceError as exc:
        logger.error("failed to persist check record: %s", exc)
        return None
    logger.info("check record written to %s", path)
    return path


def read_records(path: Path) -> List[Dict[str, str]]:
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8", newline="") as handle:
        return [dict(row) for row in csv.DictReader(handle)]
