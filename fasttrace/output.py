"""Output sinks (interactive console, append-only log) and report renderers."""

import dataclasses
import ipaddress
import json
import logging
import sys
from abc import ABC, abstractmethod
from enum import Enum
from io import StringIO
from typing import TextIO

from rich.console import Console
from rich.markup import escape
from rich.table import Table

from fasttrace.catalog import TargetCatalog
from fasttrace.models import BatchReport, HopRecord, ProbeConfig, RunMode, TraceResult

logger = logging.getLogger(__name__)

_OUTCOME_STYLES = {
    "succeeded": "green",
    "failed": "red",
    "skipped": "yellow",
    "cancelled": "magenta",
}


def hide_ip_part(address: str) -> str:
    """Mask the host part of an address: ``/16`` for IPv4, ``/32`` for IPv6."""
    ip = ipaddress.ip_address(address)
    prefix = 16 if ip.version == 4 else 32
    return str(ipaddress.ip_network(f"{ip}/{prefix}", strict=False))


def target_header(config: ProbeConfig, hide_dst_ip: bool = False) -> tuple[str, str]:
    """Return the ``(title, banner)`` lines printed before a target's hops."""
    dest = hide_ip_part(config.destination) if hide_dst_ip else config.destination
    banner = (
        f"traceroute to {dest}, {config.max_hops} hops max, "
        f"{config.packet_size} byte packets"
    )
    return f"[{config.label}]", banner


def format_hop(hop: HopRecord) -> str:
    """Format a hop as a single plain-text line."""
    if hop.address is None:
        where = "*"
    elif hop.hostname:
        where = f"{hop.hostname} ({hop.address})"
    else:
        where = hop.address

    parts = [f"{hop.ttl:<3}", f"{where:<40}"]
    if hop.geo is not None:
        if hop.geo.asn is not None:
            parts.append(f"AS{hop.geo.asn}")
        place = ", ".join(p for p in (hop.geo.city, hop.geo.country) if p)
        if place:
            parts.append(place)
        if hop.geo.asn_org:
            parts.append(hop.geo.asn_org)
    parts.append(" ".join(_fmt_rtt(r) for r in hop.rtts))
    return "  ".join(p for p in parts if p).rstrip()


class OutputSink(ABC):
    """Rendering destination for a whole batch.

    The runner calls ``begin_target`` before the engine runs, ``render`` for
    every hop, ``end_target`` afterwards (also on failure, with
    ``result=None``), and ``separator`` between targets.
    """

    @abstractmethod
    def begin_target(self, config: ProbeConfig) -> None:
        """Start a target: print or write its header."""

    @abstractmethod
    def render(self, hop: HopRecord) -> None:
        """Emit one hop record."""

    def end_target(self, config: ProbeConfig, result: TraceResult | None) -> None:
        pass

    def separator(self) -> None:
        pass


class InteractiveSink(OutputSink):
    """Write hops to the terminal as they arrive.

    Args:
        console: ``rich`` console to print to (default: stdout).
        hide_dst_ip: Mask destination addresses in headers.
    """

    def __init__(self, console: Console | None = None, hide_dst_ip: bool = False) -> None:
        self.console = console or Console(highlight=False)
        self.hide_dst_ip = hide_dst_ip

    def begin_target(self, config: ProbeConfig) -> None:
        title, banner = target_header(config, self.hide_dst_ip)
        self.console.print(f"[bold yellow]{escape(title)}[/bold yellow]")
        self.console.print(banner)

    def render(self, hop: HopRecord) -> None:
        self.console.print(escape(format_hop(hop)))

    def separator(self) -> None:
        self.console.print()


class LogFileSink(OutputSink):
    """Append hop records to a plain-text log, one target at a time.

    The log is opened in ``begin_target`` and closed in ``end_target`` so
    that a failure on a later target never loses earlier records.  If the
    log cannot be opened, that target's records are dropped with a warning
    and the batch carries on.

    Args:
        path: Log file path.
        console: Console for short progress notes (default: stdout).
        hide_dst_ip: Mask destination addresses in headers.
    """

    def __init__(
        self,
        path: str,
        console: Console | None = None,
        hide_dst_ip: bool = False,
    ) -> None:
        self.path = path
        self.console = console or Console(highlight=False)
        self.hide_dst_ip = hide_dst_ip
        self._fp: TextIO | None = None

    def begin_target(self, config: ProbeConfig) -> None:
        title, banner = target_header(config, self.hide_dst_ip)
        self.console.print(f"[bold yellow]{escape(title)}[/bold yellow] → {escape(self.path)}")
        try:
            self._fp = open(self.path, "a", encoding="utf-8")
        except OSError as exc:
            logger.warning("Cannot open log %s: %s; not logging %s", self.path, exc, config.label)
            self._fp = None
            return
        self._write(title)
        self._write(banner)

    def render(self, hop: HopRecord) -> None:
        self._write(format_hop(hop))

    def end_target(self, config: ProbeConfig, result: TraceResult | None) -> None:
        if self._fp is None:
            return
        try:
            self._fp.close()
        finally:
            self._fp = None

    def _write(self, line: str) -> None:
        if self._fp is None:
            return
        try:
            self._fp.write(line + "\n")
            self._fp.flush()
        except OSError as exc:
            logger.warning(
                "Cannot write log %s: %s; dropping the rest of this target", self.path, exc
            )
            fp, self._fp = self._fp, None
            try:
                fp.close()
            except OSError:
                logger.debug("Closing %s after a write error failed", self.path)


def make_sink(
    mode: RunMode,
    *,
    log_path: str,
    console: Console | None = None,
    hide_dst_ip: bool = False,
) -> OutputSink:
    """Build the sink for a batch's run mode."""
    if mode is RunMode.LOGGING:
        return LogFileSink(log_path, console=console, hide_dst_ip=hide_dst_ip)
    return InteractiveSink(console=console, hide_dst_ip=hide_dst_ip)


# ---------------------------------------------------------------------------
# Batch report
# ---------------------------------------------------------------------------


def render_report(
    report: BatchReport,
    fmt: str,
    *,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Dispatch a batch report to the appropriate formatter.

    Args:
        report: Batch report to render.
        fmt: Output format, ``"table"`` or ``"json"``.
        file: Writable file object for output (default: ``sys.stdout``).
        width: Explicit console width (default: auto-detect).

    Raises:
        ValueError: If *fmt* is not ``"table"`` or ``"json"``.
    """
    if fmt == "table":
        render_report_table(report, file=file, width=width)
    elif fmt == "json":
        render_report_json(report, file=file)
    else:
        raise ValueError(f"Unknown output format: {fmt!r}")


def render_report_table(
    report: BatchReport,
    *,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Render a report as a ``rich`` table followed by a summary line."""
    out = file or sys.stdout
    console = Console(file=out, highlight=False, width=width)

    table = Table(title=f"Batch {report.state.value.replace('_', ' ')}")
    table.add_column("#", justify="right")
    table.add_column("Target")
    table.add_column("Address")
    table.add_column("Outcome")
    table.add_column("Hops", justify="right")
    table.add_column("Error")

    for idx, res in enumerate(report.results, start=1):
        outcome = res.outcome.value
        style = _OUTCOME_STYLES.get(outcome, "")
        error = res.error or "—"
        if res.failure_kind is not None:
            error = f"{res.failure_kind.value}: {error}"
        table.add_row(
            str(idx),
            escape(res.target.label),
            res.target.address,
            f"[{style}]{outcome}[/{style}]" if style else outcome,
            str(res.hop_count) if res.hop_count else "—",
            escape(error),
        )

    console.print(table)
    console.print(
        f"  {len(report.results)} targets, {len(report.succeeded)} succeeded, "
        f"{len(report.failed)} failed, {len(report.skipped)} skipped, "
        f"{len(report.cancelled)} cancelled"
    )


def render_report_json(report: BatchReport, *, file: object | None = None) -> None:
    """Render a report as JSON with ``state``, ``ok`` and ``results``."""
    out = file or sys.stdout
    json.dump(_report_to_dict(report), out, indent=2, default=_json_default)
    out.write("\n")  # type: ignore[union-attr]


def render_report_to_string(report: BatchReport, fmt: str, *, width: int = 200) -> str:
    """Render to a string instead of stdout; useful for testing."""
    buf = StringIO()
    render_report(report, fmt, file=buf, width=width)
    return buf.getvalue()


def render_catalog(
    catalog: TargetCatalog,
    *,
    file: object | None = None,
    width: int | None = None,
) -> None:
    """Print every catalog endpoint as a table."""
    console = Console(file=file or sys.stdout, highlight=False, width=width)
    table = Table(title="Reference endpoints")
    for header in ("Location", "Carrier", "Endpoint", "IPv4", "IPv6"):
        table.add_column(header)
    for ep in catalog.all():
        table.add_row(ep.location, ep.carrier, ep.name, ep.ipv4 or "—", ep.ipv6 or "—")
    console.print(table)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _report_to_dict(report: BatchReport) -> dict:
    return {
        "state": report.state,
        "ok": report.ok,
        "results": [dataclasses.asdict(r) for r in report.results],
    }


def _json_default(value: object) -> object:
    if isinstance(value, Enum):
        return value.value
    return str(value)


def _fmt_rtt(value: float | None) -> str:
    if value is None:
        return "*"
    return f"{value:.2f} ms"
