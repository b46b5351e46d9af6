"""Single check run for the dc-connectivity observer.

One run walks the probe primitives in a fixed order (assigned controller,
address, ping, actual controller + bind, secure channel) and folds every
outcome into one :class:`CheckRecord`. A failing step only degrades the
fields it owns and the steps that need its output; the run itself always
completes.
"""

from __future__ import annotations

import logging
import socket
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, List, Optional

from observers.dc_connectivity import probes
from observers.dc_connectivity.config import Config
from observers.dc_connectivity.errors import ProbeError

OBSERVER_NAME = "dc-connectivity"

PING_OK = "ok"
PING_FAILED = "failed"
PING_SKIPPED = "skipped"
PING_DISABLED = "disabled"

BIND_SUCCESS = "success"
BIND_FAILED = "failed"

CHANNEL_HEALTHY = probes.CHANNEL_HEALTHY
CHANNEL_BROKEN = probes.CHANNEL_BROKEN
CHANNEL_ERROR = "error"

NO_CONTROLLER_NOTE = "bind: no controller determined, bind not attempted"

logger = logging.getLogger("dc_observer.check")


@dataclass(frozen=True)
class CheckRecord:
    """Evidence captured by one check run."""

    timestamp: datetime
    host_identity: str
    assigned_controller: Optional[str]
    controller_address: Optional[str]
    ping_latency_ms: Optional[float]
    directory_dc_used: Optional[str]
    directory_bind_latency_ms: Optional[float]
    directory_bind_status: str
    secure_channel_status: str
    error_summary: str
    ping_status: str = PING_SKIPPED


@dataclass(frozen=True)
class CheckOutcome:
    record: CheckRecord
    latency_ms: Optional[float]


def host_identity() -> str:
    name = socket.gethostname().split(".")[0].strip()
    return name or "localhost"


def summarize_errors(notes: Iterable[str]) -> str:
    """Join notes into a single pipe-delimited line."""

    joined = " | ".join(note for note in notes if note and note.strip())
    return " ".join(joined.split())


def _record_failure(notes: List[str], error: ProbeError) -> None:
    note = error.note()
    logger.warning("%s", note)
    notes.append(note)


def run_check(config: Config, host: Optional[str] = None) -> CheckOutcome:
    """Run every probe once and return the record and its bind latency."""

    host = host or host_identity()
    timestamp = datetime.now().astimezone()
    notes: List[str] = []

    logger.info("[1/5] locating assigned controller for %s", config.domain)
    assigned = probes.discover_controller(config.domain, config)
    assigned_controller: Optional[str] = None
    address: Optional[str] = None
    if assigned.ok:
        assigned_controller = assigned.value
        logger.info("assigned controller: %s", assigned_controller)
        resolved = probes.resolve_address(assigned_controller, config)
        if resolved.ok:
            address = resolved.value
            logger.info("controller address: %s", address)
        else:
            _record_failure(notes, resolved.error)
    else:
        _record_failure(notes, assigned.error)

    ping_latency: Optional[float] = None
    if not config.ping_enabled:
        ping_status = PING_DISABLED
        logger.info("[2/5] ping disabled")
    elif address is None:
        ping_status = PING_SKIPPED
        logger.info("[2/5] ping skipped, no controller address")
    else:
        logger.info("[2/5] pinging %s", address)
        pinged = probes.ping(address, config)
        if pinged.ok:
            ping_status = PING_OK
            ping_latency = pinged.value
            logger.info("ping latency: %.2f ms", ping_latency)
        else:
            ping_status = PING_FAILED
            _record_failure(notes, pinged.error)

    logger.info("[3/5] locating controller in use and binding")
    actual = probes.discover_actual_controller(config.domain, host, config)
    dc_used: Optional[str] = None
    bind_latency: Optional[float] = None
    if actual.ok:
        dc_used = actual.value
        logger.info("controller in use: %s", dc_used)
        bound = probes.bind_directory(dc_used, config)
        if bound.ok:
            bind_status = BIND_SUCCESS
            bind_latency = bound.value
            logger.info("directory bind to %s succeeded in %.2f ms", dc_used, bind_latency)
        else:
            bind_status = BIND_FAILED
            _record_failure(notes, bound.error)
    else:
        bind_status = BIND_FAILED
        _record_failure(notes, actual.error)
        logger.warning("%s", NO_CONTROLLER_NOTE)
        notes.append(NO_CONTROLLER_NOTE)

    logger.info("[4/5] verifying secure channel")
    channel = probes.check_secure_channel(config)
    if channel.ok:
        channel_status = channel.value
        logger.info("secure channel: %s", channel_status)
    else:
        channel_status = CHANNEL_ERROR
        _record_failure(notes, channel.error)

    error_summary = summarize_errors(notes)
    logger.info("[5/5] check complete (%d error note(s))", len(notes))

    record = CheckRecord(
        timestamp=timestamp,
        host_identity=host,
        assigned_controller=assigned_controller,
        controller_address=address,
        ping_latency_ms=ping_latency,
        directory_dc_used=dc_used,
        directory_bind_latency_ms=bind_latency,
        directory_bind_status=bind_status,
        secure_channel_status=channel_status,
        error_summary=error_summary,
        ping_status=ping_status,
    )
    return CheckOutcome(record=record, latency_ms=bind_latency)
