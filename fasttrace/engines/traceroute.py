"""Engine adapter driving the system ``traceroute`` binary."""

import dataclasses
import ipaddress
import logging
import re
import shutil
import subprocess

from fasttrace.config import FastTraceConfig
from fasttrace.engines import DiagnosticEngine, EngineError
from fasttrace.models import (
    AddressFamily,
    FailureKind,
    HopRecord,
    ProbeConfig,
    ProbeMethod,
    TraceResult,
)

logger = logging.getLogger(__name__)

# matches a hop row: "<ttl>  <rest>"; the "traceroute to ..." banner has no leading ttl
_HOP_LINE_RE = re.compile(r"^\s*(?P<ttl>\d+)\s+(?P<rest>.*)$")

# stderr fragments → failure classification, checked in order
_ERROR_PATTERNS: list[tuple[re.Pattern, FailureKind]] = [
    (re.compile(r"not permitted|must be root|enough privileges|permission denied", re.I),
     FailureKind.PERMISSION),
    (re.compile(r"name or service not known|temporary failure in name|unknown host", re.I),
     FailureKind.RESOLUTION),
    (re.compile(r"cannot handle|bad address|network is unreachable|no route to host", re.I),
     FailureKind.INVALID_DESTINATION),
    (re.compile(r"timed out", re.I), FailureKind.TIMEOUT),
]


class SystemTracerouteEngine(DiagnosticEngine):
    """Run traces through the Linux ``traceroute`` binary.

    Probe parallelism, per-hop measurements, packet interval, source
    address and don't-fragment map onto traceroute flags.  The TTL interval
    and the always-wait-for-rDNS switch have no traceroute equivalent and
    are ignored; reverse DNS is done by traceroute itself unless disabled.

    Args:
        binary: Path (or bare name for $PATH lookup) of ``traceroute``.
    """

    def __init__(self, binary: str = "traceroute") -> None:
        self.binary = binary

    @classmethod
    def from_config(cls, config: FastTraceConfig) -> "SystemTracerouteEngine":
        return cls(binary=config.traceroute_binary)

    def build_command(self, method: ProbeMethod, config: ProbeConfig) -> list[str]:
        """Translate a probe configuration into a traceroute argv."""
        cmd = [shutil.which(self.binary) or self.binary]
        cmd.append("-4" if config.family is AddressFamily.V4 else "-6")
        if method is ProbeMethod.TCP:
            cmd += ["-T", "-p", str(config.destination_port)]
        else:
            cmd.append("-I")
        cmd += [
            "-f", str(config.begin_hop),
            "-m", str(config.max_hops),
            "-q", str(config.measurements_per_hop),
            "-N", str(config.parallelism),
            "-z", str(config.packet_interval),
            "-w", f"{config.timeout:g}",
        ]
        if config.source_address:
            cmd += ["-s", config.source_address]
        if config.dont_fragment:
            cmd.append("-F")
        if not config.rdns:
            cmd.append("-n")
        cmd += [config.destination, str(config.packet_size)]
        return cmd

    def run_probe(self, method: ProbeMethod, config: ProbeConfig) -> TraceResult:
        cmd = self.build_command(method, config)
        logger.debug("Running %s", " ".join(cmd))

        try:
            proc = subprocess.Popen(
                cmd,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
            )
        except FileNotFoundError as exc:
            raise EngineError(
                f"traceroute binary not found: {self.binary}", FailureKind.UNAVAILABLE
            ) from exc
        except PermissionError as exc:
            raise EngineError(
                f"cannot execute {self.binary}: {exc}", FailureKind.PERMISSION
            ) from exc

        result = TraceResult(destination=config.destination)
        with proc:
            for line in proc.stdout:
                hop = parse_hop_line(line)
                if hop is None:
                    continue
                if config.geo is not None and hop.address:
                    hop = dataclasses.replace(hop, geo=config.geo.lookup(hop.address))
                result.hops.append(hop)
                if config.renderer is not None:
                    config.renderer.render(hop)
            stderr = proc.stderr.read()
        returncode = proc.wait()

        if returncode != 0:
            message = stderr.strip() or f"traceroute exited with status {returncode}"
            raise EngineError(message, classify_error(message))
        return result


def classify_error(message: str) -> FailureKind:
    """Map a traceroute error message to a ``FailureKind``."""
    for pattern, kind in _ERROR_PATTERNS:
        if pattern.search(message):
            return kind
    return FailureKind.UNKNOWN


def parse_hop_line(line: str) -> HopRecord | None:
    """Parse one traceroute output row into a ``HopRecord``.

    Handles both ``host (ip)  1.2 ms`` and ``-n`` style ``ip  1.2 ms`` rows,
    lost probes (``*``) and ICMP annotations such as ``!H``.  Only the
    first responder of a TTL is kept.

    Returns:
        A ``HopRecord``, or ``None`` if *line* is not a hop row.
    """
    m = _HOP_LINE_RE.match(line)
    if not m:
        return None

    address: str | None = None
    hostname: str | None = None
    rtts: list[float | None] = []
    tokens = m.group("rest").split()
    i = 0
    while i < len(tokens):
        tok = tokens[i]
        if tok == "*":
            rtts.append(None)
        elif i + 1 < len(tokens) and tokens[i + 1] == "ms":
            try:
                rtts.append(float(tok))
            except ValueError:
                rtts.append(None)
            i += 1
        elif tok.startswith("(") and tok.endswith(")"):
            if address is None or address == hostname:
                address = tok[1:-1]
        elif tok.startswith("!"):
            pass
        elif address is None and hostname is None:
            if _is_ip(tok):
                address = tok
            hostname = tok
        i += 1

    if hostname is not None and hostname == address:
        hostname = None
    return HopRecord(ttl=int(m.group("ttl")), address=address, hostname=hostname, rtts=tuple(rtts))


def _is_ip(text: str) -> bool:
    try:
        ipaddress.ip_address(text)
    except ValueError:
        return False
    return True
