"""Probe primitives for domain controller connectivity.

Each primitive wraps one external collaborator (DNS, ``ping``, winbind/sssd
client tools, ``ldapsearch``, ``adcli``) behind a timeout and returns a
:class:`ProbeResult`. Primitives never raise: collaborator failures are
converted into the matching :class:`ProbeError` subclass and carried on the
result so the caller can keep going.
"""

from __future__ import annotations

import ipaddress
import logging
import math
import re
import subprocess
import time
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import dns.exception
import dns.resolver

from observers.dc_connectivity.config import Config
from observers.dc_connectivity.errors import (
    BindError,
    ChannelError,
    DiscoveryError,
    ProbeError,
    ResolutionError,
    UnreachableError,
)

logger = logging.getLogger("dc_observer.probes")

PING_TIMEOUT_SEC = 2
BIND_ATTRIBUTE = "dnsHostName"

CHANNEL_HEALTHY = "healthy"
CHANNEL_BROKEN = "broken"

PING_TIME_RE = re.compile(r"time[=<]\s*([\d.]+)\s*ms")
WINBIND_DC_RE = re.compile(r'dc connection to "([^"]+)"')
SSSD_DC_RE = re.compile(r"AD Domain Controller:\s*(\S+)")
# machine account credential failures; DNS/KDC lookup failures are not listed
ADCLI_BROKEN_JOIN_RE = re.compile(
    r"couldn't authenticate|couldn't get kerberos ticket for machine account"
    r"|not found in kerberos database|preauthentication failed"
    r"|keytab contains no suitable keys|couldn't lookup domain info from keytab",
    re.IGNORECASE,
)


@dataclass(frozen=True)
class ProbeResult:
    """Outcome of a single primitive: a value or an error, plus elapsed time."""

    value: Any = None
    duration_ms: Optional[float] = None
    error: Optional[ProbeError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _elapsed_ms(start: float) -> float:
    return round((time.perf_counter() - start) * 1000, 2)


def _first_line(text: str) -> str:
    for line in text.splitlines():
        if line.strip():
            return line.strip()
    return ""


def _run_command(args: Sequence[str], timeout_s: float) -> subprocess.CompletedProcess[str]:
    logger.debug("running: %s", " ".join(args))
    return subprocess.run(
        list(args),
        capture_output=True,
        text=True,
        encoding="utf-8",
        errors="replace",
        check=False,
        timeout=timeout_s,
    )


def _command_failure(exc: Exception, tool: str, timeout_s: float) -> str:
    if isinstance(exc, FileNotFoundError):
        return f"{tool} command not available"
    if isinstance(exc, subprocess.TimeoutExpired):
        return f"{tool} timed out after {timeout_s:g}s"
    return f"{tool} failed: {exc}"


def _describe_dns_error(exc: Exception) -> str:
    if isinstance(exc, dns.resolver.NXDOMAIN):
        return "nxdomain"
    if isinstance(exc, dns.exception.Timeout):
        return "timeout"
    if isinstance(exc, dns.resolver.NoNameservers):
        return "servfail"
    if isinstance(exc, dns.resolver.NoAnswer):
        return "no answer"
    return str(exc) or exc.__class__.__name__


def _make_resolver(config: Config) -> dns.resolver.Resolver:
    resolver = dns.resolver.Resolver(configure=not config.nameservers)
    if config.nameservers:
        resolver.nameservers = list(config.nameservers)
    resolver.timeout = config.dns_timeout_s
    resolver.lifetime = config.dns_timeout_s
    return resolver


def _srv_names(domain: str, site: str) -> List[str]:
    names = []
    if site:
        names.append(f"_ldap._tcp.{site}._sites.dc._msdcs.{domain}.")
    names.append(f"_ldap._tcp.dc._msdcs.{domain}.")
    return names


def discover_controller(domain: str, config: Config) -> ProbeResult:
    """Return the controller the domain locator assigns to this client."""

    start = time.perf_counter()
    domain = (domain or "").strip().strip(".")
    if not domain:
        return ProbeResult(error=DiscoveryError("no domain context available"))

    try:
        resolver = _make_resolver(config)
    except dns.exception.DNSException as exc:
        return ProbeResult(error=DiscoveryError(f"resolver unavailable: {_describe_dns_error(exc)}"))

    last_error = "empty answer"
    for qname in _srv_names(domain, config.site):
        try:
            answer = resolver.resolve(qname, "SRV")
        except dns.exception.DNSException as exc:
            last_error = _describe_dns_error(exc)
            logger.debug("SRV lookup %s failed: %s", qname, last_error)
            continue

        candidates: List[Tuple[int, int, str]] = []
        for record in answer:
            target = str(record.target).rstrip(".")
            if target:
                candidates.append((int(record.priority), -int(record.weight), target))
        if candidates:
            candidates.sort()
            return ProbeResult(value=candidates[0][2], duration_ms=_elapsed_ms(start))

    return ProbeResult(
        duration_ms=_elapsed_ms(start),
        error=DiscoveryError(f"no controller found for {domain} ({last_error})"),
    )


def resolve_address(hostname: Optional[str], config: Config) -> ProbeResult:
    """Resolve ``hostname`` to its first IPv4 address."""

    if not hostname:
        return ProbeResult(error=ResolutionError("no hostname to resolve"))

    start = time.perf_counter()
    try:
        answer = _make_resolver(config).resolve(hostname, "A")
    except dns.exception.DNSException as exc:
        return ProbeResult(
            duration_ms=_elapsed_ms(start),
            error=ResolutionError(f"{hostname}: {_describe_dns_error(exc)}"),
        )

    for record in answer:
        try:
            address = ipaddress.ip_address(record.to_text())
        except ValueError:
            continue
        if address.version == 4:
            return ProbeResult(value=str(address), duration_ms=_elapsed_ms(start))

    return ProbeResult(
        duration_ms=_elapsed_ms(start),
        error=ResolutionError(f"no IPv4 record for {hostname}"),
    )


def ping(address: Optional[str], config: Config) -> ProbeResult:
    """Send one ICMP echo to ``address`` and return the reported round trip."""

    if not address:
        return ProbeResult(error=UnreachableError("no address to ping"))

    start = time.perf_counter()
    try:
        completed = _run_command(
            ["ping", "-c", "1", "-W", str(PING_TIMEOUT_SEC), address],
            config.command_timeout_s,
        )
    except (OSError, subprocess.SubprocessError) as exc:
        return ProbeResult(error=UnreachableError(_command_failure(exc, "ping", config.command_timeout_s)))

    elapsed = _elapsed_ms(start)
    if completed.returncode != 0:
        return ProbeResult(duration_ms=elapsed, error=UnreachableError(f"no echo reply from {address}"))

    match = PING_TIME_RE.search(completed.stdout)
    if not match:
        return ProbeResult(duration_ms=elapsed, error=UnreachableError("unable to parse ping output"))
    return ProbeResult(value=float(match.group(1)), duration_ms=elapsed)


def _ldapsearch_args(controller: str, config: Config) -> List[str]:
    args = [
        "ldapsearch",
        "-LLL",
        "-H",
        f"ldap://{controller}",
        "-o",
        f"nettimeout={max(1, int(math.ceil(config.command_timeout_s)))}",
        "-s",
        "base",
        "-b",
        "",
    ]
    if config.ldap_bind_mech == "GSSAPI":
        args.extend(["-Y", "GSSAPI", "-Q"])
    else:
        args.append("-x")
    args.extend(["(objectClass=*)", BIND_ATTRIBUTE])
    return args


def bind_directory(controller: Optional[str], config: Config) -> ProbeResult:
    """Bind to ``controller`` and read one root DSE attribute.

    The returned value is the wall clock time in milliseconds from starting
    the connection until the attribute was read back.
    """

    if not controller:
        return ProbeResult(error=BindError("no controller to bind"))

    start = time.perf_counter()
    try:
        completed = _run_command(_ldapsearch_args(controller, config), config.command_timeout_s)
    except (OSError, subprocess.SubprocessError) as exc:
        return ProbeResult(error=BindError(_command_failure(exc, "ldapsearch", config.command_timeout_s)))
    elapsed = _elapsed_ms(start)

    if completed.returncode != 0:
        detail = _first_line(completed.stderr) or f"exit status {completed.returncode}"
        return ProbeResult(duration_ms=elapsed, error=BindError(f"{controller}: {detail}"))
    if f"{BIND_ATTRIBUTE.lower()}:" not in completed.stdout.lower():
        return ProbeResult(duration_ms=elapsed, error=BindError(f"{controller}: {BIND_ATTRIBUTE} not returned"))
    return ProbeResult(value=elapsed, duration_ms=elapsed)


def discover_actual_controller(domain: str, local_host: str, config: Config) -> ProbeResult:
    """Ask the local domain client which controller it is talking to right now."""

    domain = (domain or "").strip().strip(".")
    if config.client_backend == "sssd":
        if not domain:
            return ProbeResult(error=DiscoveryError("no domain context available"))
        args = ["sssctl", "domain-status", domain, "--active-server"]
        pattern = SSSD_DC_RE
    else:
        args = ["wbinfo", "--ping-dc"]
        pattern = WINBIND_DC_RE
    tool = args[0]

    start = time.perf_counter()
    try:
        completed = _run_command(args, config.command_timeout_s)
    except (OSError, subprocess.SubprocessError) as exc:
        return ProbeResult(error=DiscoveryError(_command_failure(exc, tool, config.command_timeout_s)))
    elapsed = _elapsed_ms(start)

    output = "\n".join([completed.stdout, completed.stderr])
    match = pattern.search(output)
    if completed.returncode != 0 or not match or match.group(1).lower() == "not":
        detail = _first_line(output) or f"exit status {completed.returncode}"
        return ProbeResult(
            duration_ms=elapsed,
            error=DiscoveryError(f"{local_host} has no active controller for {domain or 'domain'} ({detail})"),
        )
    return ProbeResult(value=match.group(1).rstrip("."), duration_ms=elapsed)


def check_secure_channel(config: Config) -> ProbeResult:
    """Verify the machine account trust with the domain."""

    if config.client_backend == "sssd":
        args = ["adcli", "testjoin", "--domain", config.domain]
    else:
        args = ["wbinfo", "-t"]
    tool = args[0]

    start = time.perf_counter()
    try:
        completed = _run_command(args, config.command_timeout_s)
    except (OSError, subprocess.SubprocessError) as exc:
        return ProbeResult(error=ChannelError(_command_failure(exc, tool, config.command_timeout_s)))
    elapsed = _elapsed_ms(start)

    if completed.returncode == 0:
        return ProbeResult(value=CHANNEL_HEALTHY, duration_ms=elapsed)

    output = "\n".join([completed.stdout, completed.stderr])
    if config.client_backend == "sssd":
        if ADCLI_BROKEN_JOIN_RE.search(output):
            return ProbeResult(value=CHANNEL_BROKEN, duration_ms=elapsed)
    elif "via RPC calls failed" in output:
        return ProbeResult(value=CHANNEL_BROKEN, duration_ms=elapsed)

    detail = _first_line(output) or f"exit status {completed.returncode}"
    return ProbeResult(duration_ms=elapsed, error=ChannelError(f"{tool}: {detail}"))
