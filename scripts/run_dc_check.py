#!/usr/bin/env python3
"""Run the domain controller connectivity check and persist the results.

One invocation performs a single check run. When the directory bind latency
of that run exceeds the configured threshold, a flat burst of extra runs is
taken, spaced by a fixed delay, so the log captures the high latency period.
Every run appends one row to the per-host CSV log.
"""

from __future__ import annotations

import argparse
import logging
import sys
import time as time_module
from contextlib import contextmanager
from dataclasses import dataclass, replace
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence

import fcntl

from observers.dc_connectivity import observer, store
from observers.dc_connectivity.config import Config, load_config
from observers.dc_connectivity.errors import DirectoryCreationError

LOGGER_NAME = "dc_observer"
LOG_FILE_NAME = "dc-observer.log"
LOCK_FILE_NAME = ".dc-observer.lock"

logger = logging.getLogger(f"{LOGGER_NAME}.retry")


@dataclass(frozen=True)
class RetrySession:
    sequence: int
    trigger_latency_ms: Optional[float]
    threshold_ms: float
    retry_count: int
    retry_delay_s: float


def _parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Check domain controller connectivity and log the results")
    parser.add_argument("--config", help="Path to an alternate config.json")
    parser.add_argument("--domain", help="Fully qualified domain name to check")
    parser.add_argument("--log-dir", help="Directory holding the per-host CSV logs")
    parser.add_argument("--no-ping", action="store_true", help="Do not ping the assigned controller")
    parser.add_argument("--retry-count", type=int, help="Extra runs taken when latency is high")
    parser.add_argument("--retry-threshold-ms", type=float, help="Bind latency that triggers extra runs")
    parser.add_argument("--retry-delay-s", type=float, help="Seconds to wait before each extra run")
    parser.add_argument(
        "--retry-on-bind-failure",
        action="store_true",
        help="Also take extra runs when the directory bind fails outright",
    )
    return parser.parse_args(argv)


def _build_config(args: argparse.Namespace) -> Config:
    config = load_config(Path(args.config) if args.config else None)
    overrides: Dict[str, Any] = {}
    if args.domain:
        overrides["domain"] = args.domain.strip()
    if args.log_dir:
        overrides["log_dir"] = Path(args.log_dir)
    if args.no_ping:
        overrides["ping_enabled"] = False
    if args.retry_count is not None:
        overrides["retry_count"] = max(0, args.retry_count)
    if args.retry_threshold_ms is not None:
        overrides["retry_threshold_ms"] = max(0.0, args.retry_threshold_ms)
    if args.retry_delay_s is not None:
        overrides["retry_delay_s"] = max(0.0, args.retry_delay_s)
    if args.retry_on_bind_failure:
        overrides["retry_on_bind_failure"] = True
    return replace(config, **overrides)


def _logger(log_dir: Path) -> logging.Logger:
    logger = logging.getLogger(LOGGER_NAME)
    if logger.handlers:
        return logger

    logger.setLevel(logging.INFO)
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(message)s")

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    try:
        file_handler = TimedRotatingFileHandler(
            log_dir / LOG_FILE_NAME,
            when="midnight",
            interval=1,
            backupCount=14,
            encoding="utf-8",
            utc=True,
        )
    except OSError as exc:
        logger.warning("file logging disabled, %s not writable: %s", log_dir / LOG_FILE_NAME, exc)
        return logger
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    return logger


@contextmanager
def _lock_execution(path: Path):
    try:
        handle = path.open("w", encoding="utf-8")
    except OSError as exc:
        logger.warning("running without lock, %s not writable: %s", path, exc)
        yield
        return
    with handle:
        try:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise SystemExit("dc-observer already running against this log directory")
        yield


def should_retry(latency_ms: Optional[float], config: Config) -> bool:
    """Decide whether the initial run warrants a retry burst."""

    if latency_ms is None:
        return config.retry_on_bind_failure
    return latency_ms > config.retry_threshold_ms


def _check_and_store(config: Config, session: RetrySession) -> observer.CheckOutcome:
    if session.sequence == 1:
        logger.info("check run 1 starting")
    elif session.trigger_latency_ms is None:
        logger.info(
            "check run %d of %d starting (triggered by failed bind)",
            session.sequence,
            session.retry_count + 1,
        )
    else:
        logger.info(
            "check run %d of %d starting (triggered by %.2f ms > %.2f ms)",
            session.sequence,
            session.retry_count + 1,
            session.trigger_latency_ms,
            session.threshold_ms,
        )
    outcome = observer.run_check(config)
    store.append_record(config.log_dir, outcome.record)
    return outcome


def run_session(config: Config) -> List[observer.CheckOutcome]:
    """Run the initial check and, when warranted, the flat retry burst."""

    initial = RetrySession(
        sequence=1,
        trigger_latency_ms=None,
        threshold_ms=config.retry_threshold_ms,
        retry_count=config.retry_count,
        retry_delay_s=config.retry_delay_s,
    )
    first = _check_and_store(config, initial)
    outcomes = [first]

    if config.retry_count <= 0 or not should_retry(first.latency_ms, config):
        return outcomes

    if first.latency_ms is None:
        logger.warning("directory bind failed; taking %d extra run(s)", config.retry_count)
    else:
        logger.warning(
            "bind latency %.2f ms exceeds %.2f ms; taking %d extra run(s) every %gs",
            first.latency_ms,
            config.retry_threshold_ms,
            config.retry_count,
            config.retry_delay_s,
        )

    for sequence in range(2, config.retry_count + 2):
        session = replace(initial, sequence=sequence, trigger_latency_ms=first.latency_ms)
        logger.info("waiting %gs before check run %d", session.retry_delay_s, sequence)
        time_module.sleep(session.retry_delay_s)
        outcomes.append(_check_and_store(config, session))

    return outcomes


def main(argv: Optional[Sequence[str]] = None) -> int:
    args = _parse_args(argv)
    config = _build_config(args)

    try:
        log_dir = store.ensure_log_dir(config.log_dir)
    except DirectoryCreationError as exc:
        print(f"[{observer.OBSERVER_NAME}] {exc}", file=sys.stderr)
        return 1

    log = _logger(log_dir)
    with _lock_execution(log_dir / LOCK_FILE_NAME):
        log.info(
            "starting connectivity check for %s (ping=%s, threshold=%gms, retries=%d, delay=%gs)",
            config.domain,
            "on" if config.ping_enabled else "off",
            config.retry_threshold_ms,
            config.retry_count,
            config.retry_delay_s,
        )
        outcomes = run_session(config)

    with_errors = sum(1 for outcome in outcomes if outcome.record.error_summary)
    log.info(
        "completed %d check run(s), %d with errors; log: %s",
        len(outcomes),
        with_errors,
        store.log_path(log_dir, outcomes[0].record.host_identity),
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
