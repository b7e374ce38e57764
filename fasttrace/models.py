"""Data models: target descriptors, catalog entries, probe configs, results."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from fasttrace.geoip import GeoSession


class AddressFamily(Enum):
    """IP address family of a target or source address."""

    V4 = "4"
    V6 = "6"

    @classmethod
    def of(cls, address: str) -> AddressFamily:
        """Return the family of a literal IP address.

        Raises:
            ValueError: If *address* is not a literal IPv4/IPv6 address.
        """
        if ipaddress.ip_address(address).version == 4:
            return cls.V4
        return cls.V6


class ProbeMethod(Enum):
    """Transport used by the diagnostic engine."""

    ICMP = "icmp"
    TCP = "tcp"


class RunMode(Enum):
    """Where hop records are rendered for the whole batch."""

    INTERACTIVE = "interactive"
    LOGGING = "logging"


class FailurePolicy(Enum):
    """What the batch does after a target fails."""

    ABORT = "abort"
    CONTINUE = "continue"


class FailureKind(Enum):
    """Classification of an engine failure."""

    TIMEOUT = "timeout"
    RESOLUTION = "resolution"
    INVALID_DESTINATION = "invalid_destination"
    PERMISSION = "permission"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"

    @property
    def retryable(self) -> bool:
        return self in (FailureKind.TIMEOUT, FailureKind.RESOLUTION)


class TargetOutcome(Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"


class RunState(Enum):
    """Lifecycle of a ``BatchRunner``."""

    IDLE = "idle"
    MODE_SELECTED = "mode_selected"
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED_ON_ERROR = "aborted_on_error"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class TargetDescriptor:
    """A single destination of a batch run.

    Attributes:
        address: Literal IPv4 or IPv6 address to probe.
        label: Display text; the original unresolved text when the user
            supplied no label.
        family: Address family of ``address``.
    """

    address: str
    label: str
    family: AddressFamily


@dataclass(frozen=True)
class ISPEndpoint:
    """A carrier's reference endpoint at one catalog location.

    Attributes:
        location_key: Stable key of the owning location (e.g. ``"beijing"``).
        location: Display name of the owning location.
        carrier: Carrier group (``"telecom"``, ``"unicom"``, ``"mobile"``,
            ``"education"``).
        name: Display name of the endpoint (e.g. ``"Telecom 163"``).
        key: Endpoint key, unique within its location (e.g. ``"ct163"``).
        ipv4: Hostname or literal used for IPv4 runs, if any.
        ipv6: Hostname or literal used for IPv6 runs, if any.
    """

    location_key: str
    location: str
    carrier: str
    name: str
    key: str = ""
    ipv4: str | None = None
    ipv6: str | None = None

    def host_for(self, family: AddressFamily) -> str | None:
        return self.ipv4 if family is AddressFamily.V4 else self.ipv6


@dataclass(frozen=True)
class LocationGroup:
    """A catalog location and its endpoints, in declared order."""

    key: str
    name: str
    endpoints: tuple[ISPEndpoint, ...] = ()


@dataclass(frozen=True)
class GeoInfo:
    """Geolocation data attached to a hop."""

    city: str | None = None
    country: str | None = None
    country_code: str | None = None
    asn: int | None = None
    asn_org: str | None = None


@dataclass(frozen=True)
class HopRecord:
    """One hop discovered by the engine.

    Attributes:
        ttl: TTL at which the hop answered.
        address: Responding address, or ``None`` if every probe timed out.
        hostname: Reverse-DNS name, when available.
        rtts: Round-trip times in milliseconds; ``None`` marks a lost probe.
        geo: Geolocation enrichment, when a session was available.
    """

    ttl: int
    address: str | None = None
    hostname: str | None = None
    rtts: tuple[float | None, ...] = ()
    geo: GeoInfo | None = None


@dataclass(frozen=True)
class ProbeConfig:
    """Per-target configuration handed to the diagnostic engine."""

    method: ProbeMethod
    begin_hop: int
    max_hops: int
    destination: str
    family: AddressFamily
    label: str
    destination_port: int = 80
    measurements_per_hop: int = 3
    parallelism: int = 18
    packet_interval: int = 100
    ttl_interval: int = 500
    rdns: bool = True
    always_wait_rdns: bool = False
    timeout: float = 1.0
    source_address: str | None = None
    packet_size: int = 52
    language: str = "en"
    dont_fragment: bool = False
    renderer: Any = None
    geo: GeoSession | None = None


@dataclass
class TraceResult:
    """Result returned by ``DiagnosticEngine.run_probe``."""

    destination: str
    hops: list[HopRecord] = field(default_factory=list)


@dataclass
class TargetResult:
    """Outcome of one target within a batch.

    Attributes:
        target: The descriptor that was (or would have been) probed.
        outcome: What happened to it.
        failure_kind: Classification of the failure, if any.
        error: Human-readable error message, if any.
        attempts: Number of engine invocations made.
        hop_count: Number of hops reported on success.
    """

    target: TargetDescriptor
    outcome: TargetOutcome
    failure_kind: FailureKind | None = None
    error: str | None = None
    attempts: int = 0
    hop_count: int = 0


@dataclass
class BatchReport:
    """Aggregated per-target results of a batch run."""

    state: RunState
    results: list[TargetResult] = field(default_factory=list)

    def _with(self, outcome: TargetOutcome) -> list[TargetResult]:
        return [r for r in self.results if r.outcome is outcome]

    @property
    def succeeded(self) -> list[TargetResult]:
        return self._with(TargetOutcome.SUCCEEDED)

    @property
    def failed(self) -> list[TargetResult]:
        return self._with(TargetOutcome.FAILED)

    @property
    def skipped(self) -> list[TargetResult]:
        return self._with(TargetOutcome.SKIPPED)

    @property
    def cancelled(self) -> list[TargetResult]:
        return self._with(TargetOutcome.CANCELLED)

    @property
    def ok(self) -> bool:
        """True when the run completed and no target failed."""
        return self.state is RunState.COMPLETED and not self.failed
