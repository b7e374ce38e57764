"""CLI entry point for the fasttrace tool."""

import logging
import sys

import click

from fasttrace.catalog import GROUPS, TargetCatalog, catalog_targets
from fasttrace.config import ConfigError, FastTraceConfig, load_config, validate_config
from fasttrace.engines import get_engine
from fasttrace.loader import load_targets
from fasttrace.models import ProbeMethod, RunState, TargetDescriptor
from fasttrace.output import make_sink, render_catalog, render_report
from fasttrace.runner import BatchRunner

logger = logging.getLogger(__name__)

FORMATS = ("table", "json")
ENGINE = "traceroute"


@click.command()
@click.option(
    "--file",
    "file",
    default=None,
    type=click.Path(),
    help="Target list file (one '<address> [label]' per line).",
)
@click.option(
    "--isp",
    default=None,
    type=click.Choice(GROUPS, case_sensitive=False),
    help="Catalog group to trace.  [default: fast]",
)
@click.option(
    "--location",
    "locations",
    multiple=True,
    help="Restrict catalog targets to a location key (repeatable).",
)
@click.option(
    "--family",
    default=None,
    type=click.Choice(("4", "6")),
    help="Address family for catalog targets.  [default: 4]",
)
@click.option("-T", "--tcp", is_flag=True, help="Use TCP SYN probes instead of ICMP.")
@click.option(
    "-o",
    "--output",
    "log_output",
    is_flag=True,
    help="Append results to the log file instead of the terminal.",
)
@click.option(
    "--log-path",
    default=None,
    help="Log file used with --output.  [default: /tmp/trace.log]",
)
@click.option(
    "-D",
    "--dev",
    "src_dev",
    default=None,
    help="Pick the source address from this interface.",
)
@click.option("-s", "--source", "src_addr", default=None, help="Source address override.")
@click.option("-b", "--first", "begin_hop", default=None, type=int, help="First TTL to probe.")
@click.option("-m", "--max-hops", default=None, type=int, help="Maximum TTL to probe.")
@click.option(
    "-n",
    "--no-rdns",
    is_flag=True,
    help="Do not resolve hop addresses to hostnames.",
)
@click.option("--always-rdns", is_flag=True, help="Always wait for reverse-DNS answers.")
@click.option("--language", "lang", default=None, help="Language for geolocation names.")
@click.option("--psize", "pkt_size", default=None, type=int, help="Probe packet size in bytes.")
@click.option("--timeout", default=None, type=float, help="Per-probe timeout in seconds.")
@click.option("--dont-fragment", is_flag=True, help="Set the don't-fragment bit.")
@click.option(
    "--on-error",
    "failure_policy",
    default=None,
    type=click.Choice(("continue", "abort")),
    help="Keep going or stop after a failed target.  [default: continue]",
)
@click.option(
    "--retries",
    default=None,
    type=int,
    help="Extra attempts for timeouts and resolution failures.",
)
@click.option("--hide-dst-ip", is_flag=True, help="Mask destination addresses in headers.")
@click.option("--list-targets", is_flag=True, help="Print the endpoint catalog and exit.")
@click.option(
    "--format",
    "-f",
    "output_format",
    default="table",
    type=click.Choice(FORMATS, case_sensitive=False),
    show_default=True,
    help="Batch report format.",
)
@click.option(
    "--config",
    "-c",
    "config_path",
    default=None,
    type=click.Path(exists=False),
    help="Path to YAML config file (default: ~/.fasttrace/config.yaml).",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable debug logging.")
def main(
    tcp: bool,
    log_output: bool,
    no_rdns: bool,
    always_rdns: bool,
    dont_fragment: bool,
    hide_dst_ip: bool,
    list_targets: bool,
    output_format: str,
    config_path: str | None,
    verbose: bool,
    **overrides: object,
) -> None:
    """Trace routes to carrier reference endpoints or a list of targets."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(levelname)s: %(message)s",
    )

    if tcp:
        overrides["method"] = ProbeMethod.TCP.value
    if log_output:
        overrides["output_mode"] = "logging"
    if no_rdns:
        overrides["rdns"] = False
    if always_rdns:
        overrides["always_wait_rdns"] = True
    if dont_fragment:
        overrides["dont_fragment"] = True
    if hide_dst_ip:
        overrides["hide_dst_ip"] = True

    try:
        cfg = _apply_overrides(load_config(config_path), overrides)
    except (ConfigError, FileNotFoundError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    logger.debug("Config loaded: %s", cfg)
    catalog = TargetCatalog.load()

    if list_targets:
        render_catalog(catalog)
        return

    try:
        targets = _collect_targets(cfg, catalog)
    except (OSError, ValueError) as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    if not targets:
        click.echo("Error: no targets to trace", err=True)
        sys.exit(1)

    if cfg.probe_method is ProbeMethod.ICMP:
        click.echo("Tracing with ICMP by default; pass -T/--tcp to use TCP SYN probes.")

    engine = get_engine(ENGINE, cfg)
    sink = make_sink(cfg.run_mode, log_path=cfg.log_path, hide_dst_ip=cfg.hide_dst_ip)
    runner = BatchRunner(cfg, engine, sink, handle_interrupt=True)

    try:
        report = runner.run(targets)
    except KeyboardInterrupt:
        click.echo("Interrupted", err=True)
        sys.exit(130)

    click.echo()
    render_report(report, output_format)

    if report.state is RunState.CANCELLED:
        sys.exit(130)
    if not report.ok:
        sys.exit(1)


def _apply_overrides(cfg: FastTraceConfig, overrides: dict[str, object]) -> FastTraceConfig:
    """Overlay command-line values that were actually given."""
    for name, value in overrides.items():
        if value is None or value == ():
            continue
        if name == "locations":
            value = list(value)
        setattr(cfg, name, value)
    return validate_config(cfg)


def _collect_targets(cfg: FastTraceConfig, catalog: TargetCatalog) -> list[TargetDescriptor]:
    """Materialize the batch's targets from the input file or the catalog."""
    if cfg.file:
        return load_targets(cfg.file)

    endpoints = catalog.select(cfg.isp)
    if cfg.locations:
        wanted = set(catalog.by_location_set(cfg.locations))
        endpoints = tuple(ep for ep in endpoints if ep in wanted)
    return catalog_targets(endpoints, cfg.address_family)
