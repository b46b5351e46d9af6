"""Error taxonomy for the dc-connectivity observer."""

from __future__ import annotations


class ProbeError(Exception):
    """Base class for recoverable probe primitive failures."""

    kind = "probe"

    def note(self) -> str:
        return f"{self.kind}: {self}"


class DiscoveryError(ProbeError):
    kind = "discovery"


class ResolutionError(ProbeError):
    kind = "resolution"


class UnreachableError(ProbeError):
    kind = "ping"


class BindError(ProbeError):
    kind = "bind"


class ChannelError(ProbeError):
    kind = "secure-channel"


class PersistenceError(Exception):
    """Writing a record to the per-host log failed."""


class DirectoryCreationError(Exception):
    """The log directory could not be created; fatal for the invocation."""
