"""Configuration loading for the dc-connectivity observer."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional

MODULE_DIR = Path(__file__).resolve().parent
CONFIG_PATH = MODULE_DIR / "config.json"

CLIENT_BACKENDS = ("winbind", "sssd")
LDAP_BIND_MECHS = ("simple", "GSSAPI")


@dataclass(frozen=True)
class Config:
    domain: str = "corp.example.com"
    log_dir: Path = Path("/var/log/dc-observer")
    ping_enabled: bool = True
    retry_count: int = 10
    retry_threshold_ms: float = 1000.0
    retry_delay_s: float = 10.0
    retry_on_bind_failure: bool = False
    command_timeout_s: float = 10.0
    dns_timeout_s: float = 3.0
    site: str = ""
    nameservers: List[str] = field(default_factory=list)
    client_backend: str = "winbind"
    ldap_bind_mech: str = "simple"


def _load_json(path: Path) -> Dict[str, Any]:
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError):
        return {}
    if not isinstance(payload, dict):
        return {}
    return payload


def _as_bool(value: Any, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    if isinstance(value, (int, float)):
        return bool(value)
    return default


def load_config(path: Optional[Path] = None) -> Config:
    """Load config.json (or ``path``) on top of the built-in defaults."""

    payload = _load_json(path or CONFIG_PATH)
    defaults = Config()

    nameservers = payload.get("nameservers", [])
    if not isinstance(nameservers, list):
        nameservers = []

    backend = str(payload.get("client_backend", defaults.client_backend)).strip().lower()
    if backend not in CLIENT_BACKENDS:
        backend = defaults.client_backend

    mech = str(payload.get("ldap_bind_mech", defaults.ldap_bind_mech)).strip()
    if mech.upper() == "GSSAPI":
        mech = "GSSAPI"
    elif mech not in LDAP_BIND_MECHS:
        mech = defaults.ldap_bind_mech

    return Config(
        domain=str(payload.get("domain", defaults.domain)).strip(),
        log_dir=Path(str(payload.get("log_dir", defaults.log_dir))),
        ping_enabled=_as_bool(payload.get("ping_enabled"), defaults.ping_enabled),
        retry_count=max(0, int(payload.get("retry_count", defaults.retry_count))),
        retry_threshold_ms=max(0.0, float(payload.get("retry_threshold_ms", defaults.retry_threshold_ms))),
        retry_delay_s=max(0.0, float(payload.get("retry_delay_s", defaults.retry_delay_s))),
        retry_on_bind_failure=_as_bool(payload.get("retry_on_bind_failure"), defaults.retry_on_bind_failure),
        command_timeout_s=max(0.5, float(payload.get("command_timeout_s", defaults.command_timeout_s))),
        dns_timeout_s=max(0.5, float(payload.get("dns_timeout_s", defaults.dns_timeout_s))),
        site=str(payload.get("site", "") or "").strip(),
        nameservers=[str(item).strip() for item in nameservers if str(item).strip()],
        client_backend=backend,
        ldap_bind_mech=mech,
    )
