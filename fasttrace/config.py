"""YAML configuration file loading."""

import logging
from dataclasses import dataclass, field, fields
from pathlib import Path

import yaml

from fasttrace.models import AddressFamily, FailurePolicy, ProbeMethod, RunMode

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_DIR = Path.home() / ".fasttrace"
DEFAULT_CONFIG_PATH = DEFAULT_CONFIG_DIR / "config.yaml"
DEFAULT_LOG_PATH = "/tmp/trace.log"


@dataclass
class FastTraceConfig:
    """Run configuration for a fasttrace batch.

    Every field has a default so a bare ``fasttrace`` invocation runs the
    fast catalog subset over ICMP with interactive output.

    Attributes:
        src_dev: Network interface to pick a source address from.
        src_addr: Explicit source address override.
        begin_hop: First TTL to probe.
        max_hops: Last TTL to probe.
        rdns: Resolve hop addresses to hostnames.
        always_wait_rdns: Wait for reverse-DNS answers before rendering.
        lang: Language tag for geolocation names.
        pkt_size: Probe packet size in bytes.
        timeout: Per-probe timeout in seconds.
        file: Target list file; ``None`` selects targets from the catalog.
        dont_fragment: Set the don't-fragment bit on probes.
        method: ``"icmp"`` or ``"tcp"``.
        output_mode: ``"interactive"`` or ``"logging"``.
        family: ``"4"`` or ``"6"``; address family for catalog targets.
        isp: Catalog group (``fast``, ``telecom``, ``unicom``, ``mobile``,
            ``education``, ``all``).
        locations: Restrict catalog targets to these location keys.
        log_path: Append-only log written in logging mode.
        failure_policy: ``"continue"`` or ``"abort"`` after a failed target.
        retries: Extra attempts for retryable engine failures.
        hide_dst_ip: Mask destination addresses in target headers.
        maxmind_city_db: Path to GeoLite2-City.mmdb, or None.
        maxmind_asn_db: Path to GeoLite2-ASN.mmdb, or None.
        traceroute_binary: Path (or bare name for $PATH lookup) of the
            system traceroute binary.
    """

    src_dev: str | None = None
    src_addr: str | None = None
    begin_hop: int = 1
    max_hops: int = 30
    rdns: bool = True
    always_wait_rdns: bool = False
    lang: str = "en"
    pkt_size: int = 52
    timeout: float = 1.0
    file: str | None = None
    dont_fragment: bool = False
    method: str = "icmp"
    output_mode: str = "interactive"
    family: str = "4"
    isp: str = "fast"
    locations: list[str] = field(default_factory=list)
    log_path: str = DEFAULT_LOG_PATH
    failure_policy: str = "continue"
    retries: int = 0
    hide_dst_ip: bool = False
    maxmind_city_db: str | None = None
    maxmind_asn_db: str | None = None
    traceroute_binary: str = "traceroute"

    @property
    def probe_method(self) -> ProbeMethod:
        return _coerce(ProbeMethod, self.method, "method")

    @property
    def run_mode(self) -> RunMode:
        return _coerce(RunMode, self.output_mode, "output_mode")

    @property
    def address_family(self) -> AddressFamily:
        return _coerce(AddressFamily, str(self.family), "family")

    @property
    def policy(self) -> FailurePolicy:
        return _coerce(FailurePolicy, self.failure_policy, "failure_policy")


def load_config(path: Path | str | None = None) -> FastTraceConfig:
    """Load configuration from a YAML file.

    Args:
        path: Explicit path to a YAML config file.  If ``None``, the
            default location (``~/.fasttrace/config.yaml``) is tried.  If
            the default file doesn't exist, a ``FastTraceConfig`` with all
            defaults is returned silently.

    Returns:
        A populated ``FastTraceConfig`` instance.

    Raises:
        FileNotFoundError: If an explicit *path* was given but doesn't exist.
        ConfigError: If the file contains invalid YAML, has an unexpected
            top-level structure, or holds an invalid enumerated value.
    """
    resolved = _resolve_path(path)

    if resolved is None:
        logger.debug("No config file found; using defaults")
        return FastTraceConfig()

    logger.debug("Loading config from %s", resolved)
    text = resolved.read_text(encoding="utf-8")

    try:
        raw = yaml.safe_load(text)
    except yaml.YAMLError as exc:
        raise ConfigError(f"Invalid YAML in {resolved}: {exc}") from exc

    if raw is None:
        # Empty file: all defaults.
        return FastTraceConfig()

    if not isinstance(raw, dict):
        raise ConfigError(
            f"Expected a YAML mapping at the top level in {resolved}, "
            f"got {type(raw).__name__}"
        )

    return _build_config(raw, source=resolved)


def validate_config(cfg: FastTraceConfig) -> FastTraceConfig:
    """Check enumerated fields and hop bounds.

    Raises:
        ConfigError: If any value is out of range.
    """
    for enum_cls, name in (
        (ProbeMethod, "method"),
        (RunMode, "output_mode"),
        (AddressFamily, "family"),
        (FailurePolicy, "failure_policy"),
    ):
        _coerce(enum_cls, str(getattr(cfg, name)), name)
    if cfg.begin_hop < 1 or cfg.max_hops < cfg.begin_hop:
        raise ConfigError(
            f"Invalid hop range: begin_hop={cfg.begin_hop}, max_hops={cfg.max_hops}"
        )
    if cfg.retries < 0:
        raise ConfigError(f"retries must be >= 0, got {cfg.retries}")
    return cfg


class ConfigError(Exception):
    """Raised when a configuration file is malformed or unreadable."""


# ------------------------------------------------------------------
# Internal helpers
# ------------------------------------------------------------------


def _coerce(enum_cls, value: str, name: str):
    try:
        return enum_cls(value)
    except ValueError:
        known = ", ".join(m.value for m in enum_cls)
        raise ConfigError(f"Invalid {name} {value!r}; expected one of: {known}") from None


def _resolve_path(path: Path | str | None) -> Path | None:
    """Return a concrete ``Path`` to read, or ``None`` if nothing to read.

    Raises:
        FileNotFoundError: If the caller supplied an explicit path that
            doesn't exist on disk.
    """
    if path is not None:
        p = Path(path).expanduser()
        if not p.is_file():
            raise FileNotFoundError(f"Config file not found: {p}")
        return p

    default = DEFAULT_CONFIG_PATH.expanduser()
    if default.is_file():
        return default
    return None


def _build_config(raw: dict, source: Path) -> FastTraceConfig:
    """Map raw YAML dict to a ``FastTraceConfig``, ignoring unknown keys."""
    known = {f.name for f in fields(FastTraceConfig)}
    kwargs = {key: value for key, value in raw.items() if key in known}

    if "family" in kwargs:
        kwargs["family"] = str(kwargs["family"])

    unknown = set(raw) - known
    if unknown:
        logger.warning(
            "Ignoring unknown config keys in %s: %s",
            source,
            ", ".join(sorted(unknown)),
        )

    return validate_config(FastTraceConfig(**kwargs))
