from __future__ import annotations

import sys
from pathlib import Path

REPO_ROOT = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(REPO_ROOT))

from observers.dc_connectivity import observer, probes
from observers.dc_connectivity.config import Config
from observers.dc_connectivity.errors import (
    BindError,
    ChannelError,
    DiscoveryError,
    ResolutionError,
    UnreachableError,
)
from observers.dc_connectivity.probes import ProbeResult


class FakeProbes:
    """Scripted probe outcomes; records which primitives were called."""

    def __init__(self, **outcomes):
        self.outcomes = {
            "discover_controller": ProbeResult(value="DC01", duration_ms=3.0),
            "resolve_address": ProbeResult(value="10.0.0.5", duration_ms=1.0),
            "ping": ProbeResult(value=12.0, duration_ms=12.0),
            "discover_actual_controller": ProbeResult(value="DC01", duration_ms=5.0),
            "bind_directory": ProbeResult(value=45.0, duration_ms=45.0),
            "check_secure_channel": ProbeResult(value=probes.CHANNEL_HEALTHY, duration_ms=20.0),
        }
        self.outcomes.update(outcomes)
        self.calls = []

    def install(self, monkeypatch) -> None:
        for name in self.outcomes:
            monkeypatch.setattr(probes, name, self._make(name))

    def _make(self, name):
        def _probe(*args):
            self.calls.append((name, args[:-1]))
            return self.outcomes[name]

        return _probe

    def called(self, name) -> bool:
        return any(call[0] == name for call in self.calls)


def test_all_probes_succeed(monkeypatch) -> None:
    fake = FakeProbes()
    fake.install(monkeypatch)

    outcome = observer.run_check(Config(domain="corp.example.com"), host="WS01")
    record = outcome.record

    assert record.host_identity == "WS01"
    assert record.assigned_controller == "DC01"
    assert record.controller_address == "10.0.0.5"
    assert record.ping_latency_ms == 12.0
    assert record.ping_status == observer.PING_OK
    assert record.directory_dc_used == "DC01"
    assert record.directory_bind_latency_ms == 45.0
    assert record.directory_bind_status == observer.BIND_SUCCESS
    assert record.secure_channel_status == observer.CHANNEL_HEALTHY
    assert record.error_summary == ""
    assert outcome.latency_ms == 45.0
    assert [call[0] for call in fake.calls] == [
        "discover_controller",
        "resolve_address",
        "ping",
        "discover_actual_controller",
        "bind_directory",
        "check_secure_channel",
    ]


def test_discovery_failure_still_binds_and_checks_channel(monkeypatch) -> None:
    fake = FakeProbes(discover_controller=ProbeResult(error=DiscoveryError("no controller found for corp")))
    fake.install(monkeypatch)

    outcome = observer.run_check(Config(), host="WS01")
    record = outcome.record

    assert record.assigned_controller is None
    assert record.controller_address is None
    assert record.ping_status == observer.PING_SKIPPED
    assert record.ping_latency_ms is None
    assert not fake.called("resolve_address")
    assert not fake.called("ping")
    assert fake.called("bind_directory")
    assert fake.called("check_secure_channel")
    assert record.directory_bind_status == observer.BIND_SUCCESS
    assert record.error_summary == "discovery: no controller found for corp"


def test_no_actual_controller_means_no_bind_attempt(monkeypatch) -> None:
    fake = FakeProbes(discover_actual_controller=ProbeResult(error=DiscoveryError("winbind down")))
    fake.install(monkeypatch)

    outcome = observer.run_check(Config(), host="WS01")

    assert not fake.called("bind_directory")
    assert outcome.record.directory_bind_status == observer.BIND_FAILED
    assert outcome.record.directory_dc_used is None
    assert outcome.latency_ms is None
    assert observer.NO_CONTROLLER_NOTE in outcome.record.error_summary


def test_ping_disabled_is_never_attempted(monkeypatch) -> None:
    fake = FakeProbes()
    fake.install(monkeypatch)

    record = observer.run_check(Config(ping_enabled=False), host="WS01").record

    assert not fake.called("ping")
    assert record.ping_status == observer.PING_DISABLED
    assert record.ping_latency_ms is None


def test_ping_failure_only_adds_a_note(monkeypatch) -> None:
    fake = FakeProbes(ping=ProbeResult(error=UnreachableError("no echo reply from 10.0.0.5")))
    fake.install(monkeypatch)

    outcome = observer.run_check(Config(), host="WS01")

    assert outcome.record.ping_status == observer.PING_FAILED
    assert outcome.record.directory_bind_status == observer.BIND_SUCCESS
    assert outcome.record.error_summary == "ping: no echo reply from 10.0.0.5"


def test_every_failure_is_folded_into_one_line(monkeypatch, caplog) -> None:
    fake = FakeProbes(
        resolve_address=ProbeResult(error=ResolutionError("dc01:\nnxdomain")),
        bind_directory=ProbeResult(error=BindError("DC01: Can't contact\r\nLDAP server")),
        check_secure_channel=ProbeResult(error=ChannelError("wbinfo:\nWBC_ERR_WINBIND_NOT_AVAILABLE")),
    )
    fake.install(monkeypatch)

    with caplog.at_level("WARNING", logger="dc_observer"):
        record = observer.run_check(Config(), host="WS01").record

    assert "\n" not in record.error_summary
    assert "\r" not in record.error_summary
    assert record.error_summary.split(" | ") == [
        "resolution: dc01: nxdomain",
        "bind: DC01: Can't contact LDAP server",
        "secure-channel: wbinfo: WBC_ERR_WINBIND_NOT_AVAILABLE",
    ]
    assert record.secure_channel_status == observer.CHANNEL_ERROR
    assert record.directory_bind_status == observer.BIND_FAILED
    assert len([r for r in caplog.records if r.levelname == "WARNING"]) == 3


def test_broken_channel_is_data_not_error(monkeypatch) -> None:
    fake = FakeProbes(check_secure_channel=ProbeResult(value=probes.CHANNEL_BROKEN))
    fake.install(monkeypatch)

    record = observer.run_check(Config(), host="WS01").record

    assert record.secure_channel_status == observer.CHANNEL_BROKEN
    assert record.error_summary == ""


def test_summarize_errors_skips_blank_notes() -> None:
    assert observer.summarize_errors(["a\n b", "  ", "", "c"]) == "a b | c"
