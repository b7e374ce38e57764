"""Tests for the engine registry and the system traceroute adapter."""

import io
from unittest.mock import MagicMock, patch

import pytest

from fasttrace.config import FastTraceConfig
from fasttrace.engines import DiagnosticEngine, EngineError, get_engine, registered_engines
from fasttrace.engines.traceroute import (
    SystemTracerouteEngine,
    classify_error,
    parse_hop_line,
)
from fasttrace.models import (
    AddressFamily,
    FailureKind,
    GeoInfo,
    HopRecord,
    ProbeConfig,
    ProbeMethod,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

_TRACE_OUTPUT = """\
traceroute to 1.1.1.1 (1.1.1.1), 30 hops max, 52 byte packets
 1  gateway (192.168.1.1)  0.512 ms  0.401 ms  0.388 ms
 2  * * *
 3  202.97.1.1  5.102 ms  5.004 ms *
"""


def _make_probe_config(**overrides) -> ProbeConfig:
    defaults = dict(
        method=ProbeMethod.ICMP,
        begin_hop=1,
        max_hops=30,
        destination="1.1.1.1",
        family=AddressFamily.V4,
        label="Cloudflare",
    )
    defaults.update(overrides)
    return ProbeConfig(**defaults)


def _fake_proc(stdout: str = "", stderr: str = "", returncode: int = 0) -> MagicMock:
    proc = MagicMock()
    proc.stdout = io.StringIO(stdout)
    proc.stderr = io.StringIO(stderr)
    proc.wait.return_value = returncode
    return proc


# ---------------------------------------------------------------------------
# Tests: registry
# ---------------------------------------------------------------------------


class TestRegistry:
    def test_registered_engines(self) -> None:
        assert registered_engines() == ["traceroute"]

    def test_get_engine_uses_config_binary(self) -> None:
        engine = get_engine("traceroute", FastTraceConfig(traceroute_binary="/opt/traceroute"))
        assert isinstance(engine, SystemTracerouteEngine)
        assert isinstance(engine, DiagnosticEngine)
        assert engine.binary == "/opt/traceroute"

    def test_unknown_engine_raises(self) -> None:
        with pytest.raises(ValueError, match="Unknown engine 'mtr'"):
            get_engine("mtr", FastTraceConfig())


class TestEngineError:
    def test_default_kind(self) -> None:
        exc = EngineError("boom")
        assert exc.kind is FailureKind.UNKNOWN
        assert exc.retryable is False

    def test_timeout_is_retryable(self) -> None:
        assert EngineError("slow", FailureKind.TIMEOUT).retryable is True


# ---------------------------------------------------------------------------
# Tests: parsing
# ---------------------------------------------------------------------------


class TestParseHopLine:
    """traceroute row parsing."""

    def test_named_hop(self) -> None:
        hop = parse_hop_line(" 1  gateway (192.168.1.1)  0.512 ms  0.401 ms  0.388 ms\n")
        assert hop == HopRecord(
            ttl=1,
            address="192.168.1.1",
            hostname="gateway",
            rtts=(0.512, 0.401, 0.388),
        )

    def test_numeric_hop(self) -> None:
        hop = parse_hop_line(" 3  202.97.1.1  5.102 ms  5.004 ms *")
        assert hop.address == "202.97.1.1"
        assert hop.hostname is None
        assert hop.rtts == (5.102, 5.004, None)

    def test_all_lost(self) -> None:
        hop = parse_hop_line(" 2  * * *")
        assert hop == HopRecord(ttl=2, rtts=(None, None, None))

    def test_ipv6_hop(self) -> None:
        hop = parse_hop_line("12  2400:3200::1  30.1 ms  29.8 ms  30.0 ms")
        assert hop.address == "2400:3200::1"
        assert hop.ttl == 12

    def test_icmp_annotation_ignored(self) -> None:
        hop = parse_hop_line(" 5  10.0.0.1  1.0 ms !H  1.1 ms !H  *")
        assert hop.address == "10.0.0.1"
        assert hop.rtts == (1.0, 1.1, None)

    def test_first_responder_kept(self) -> None:
        hop = parse_hop_line(" 4  a.example (10.0.0.1)  1.0 ms b.example (10.0.0.2)  2.0 ms")
        assert hop.address == "10.0.0.1"
        assert hop.hostname == "a.example"
        assert hop.rtts == (1.0, 2.0)

    def test_banner_is_not_a_hop(self) -> None:
        assert parse_hop_line("traceroute to 1.1.1.1 (1.1.1.1), 30 hops max") is None

    def test_blank_line(self) -> None:
        assert parse_hop_line("\n") is None


class TestClassifyError:
    @pytest.mark.parametrize(
        ("message", "kind"),
        [
            (
                "You do not have enough privileges to use this traceroute method.",
                FailureKind.PERMISSION,
            ),
            ("socket: Operation not permitted", FailureKind.PERMISSION),
            ("nope.invalid: Name or service not known", FailureKind.RESOLUTION),
            (
                "Cannot handle \"host\" cmdline arg `::1' on position 1",
                FailureKind.INVALID_DESTINATION,
            ),
            ("connect: Network is unreachable", FailureKind.INVALID_DESTINATION),
            ("operation timed out", FailureKind.TIMEOUT),
            ("something else", FailureKind.UNKNOWN),
        ],
    )
    def test_classification(self, message: str, kind: FailureKind) -> None:
        assert classify_error(message) is kind


# ---------------------------------------------------------------------------
# Tests: command line
# ---------------------------------------------------------------------------


@patch("fasttrace.engines.traceroute.shutil.which", return_value="/usr/bin/traceroute")
class TestBuildCommand:
    def test_icmp_defaults(self, _which) -> None:
        cmd = SystemTracerouteEngine().build_command(ProbeMethod.ICMP, _make_probe_config())
        assert cmd == [
            "/usr/bin/traceroute",
            "-4",
            "-I",
            "-f", "1",
            "-m", "30",
            "-q", "3",
            "-N", "18",
            "-z", "100",
            "-w", "1",
            "1.1.1.1",
            "52",
        ]

    def test_tcp_syn_port_80(self, _which) -> None:
        cmd = SystemTracerouteEngine().build_command(ProbeMethod.TCP, _make_probe_config())
        assert cmd[2:5] == ["-T", "-p", "80"]
        assert "-I" not in cmd

    def test_ipv6_and_options(self, _which) -> None:
        config = _make_probe_config(
            destination="2400:3200::1",
            family=AddressFamily.V6,
            source_address="2400:3200::99",
            dont_fragment=True,
            rdns=False,
            begin_hop=3,
            max_hops=20,
            packet_size=60,
            timeout=2.5,
        )

        cmd = SystemTracerouteEngine().build_command(ProbeMethod.ICMP, config)

        assert cmd[1] == "-6"
        assert cmd[cmd.index("-s") + 1] == "2400:3200::99"
        assert "-F" in cmd
        assert "-n" in cmd
        assert cmd[cmd.index("-f") + 1] == "3"
        assert cmd[cmd.index("-m") + 1] == "20"
        assert cmd[cmd.index("-w") + 1] == "2.5"
        assert cmd[-2:] == ["2400:3200::1", "60"]

    def test_binary_not_on_path_used_as_given(self, mock_which) -> None:
        mock_which.return_value = None
        cmd = SystemTracerouteEngine("tr").build_command(ProbeMethod.ICMP, _make_probe_config())
        assert cmd[0] == "tr"


# ---------------------------------------------------------------------------
# Tests: run_probe
# ---------------------------------------------------------------------------


@patch("fasttrace.engines.traceroute.subprocess.Popen")
class TestRunProbe:
    """run_probe() drives traceroute and streams hops to the renderer."""

    def test_hops_rendered_in_order(self, mock_popen: MagicMock) -> None:
        mock_popen.return_value = _fake_proc(_TRACE_OUTPUT)
        renderer = MagicMock()

        result = SystemTracerouteEngine().run_probe(
            ProbeMethod.ICMP, _make_probe_config(renderer=renderer)
        )

        assert result.destination == "1.1.1.1"
        assert [h.ttl for h in result.hops] == [1, 2, 3]
        assert [c.args[0] for c in renderer.render.call_args_list] == result.hops

    def test_hops_enriched_with_geo(self, mock_popen: MagicMock) -> None:
        mock_popen.return_value = _fake_proc(_TRACE_OUTPUT)
        geo = MagicMock()
        geo.lookup.return_value = GeoInfo(asn=4134)

        result = SystemTracerouteEngine().run_probe(
            ProbeMethod.ICMP, _make_probe_config(geo=geo)
        )

        assert result.hops[0].geo == GeoInfo(asn=4134)
        assert result.hops[1].geo is None
        looked_up = [c.args[0] for c in geo.lookup.call_args_list]
        assert looked_up == ["192.168.1.1", "202.97.1.1"]

    def test_nonzero_exit_raises_classified(self, mock_popen: MagicMock) -> None:
        mock_popen.return_value = _fake_proc(
            stderr="You do not have enough privileges to use this traceroute method.\n",
            returncode=1,
        )

        with pytest.raises(EngineError, match="enough privileges") as exc_info:
            SystemTracerouteEngine().run_probe(ProbeMethod.TCP, _make_probe_config())

        assert exc_info.value.kind is FailureKind.PERMISSION

    def test_nonzero_exit_without_stderr(self, mock_popen: MagicMock) -> None:
        mock_popen.return_value = _fake_proc(returncode=2)

        with pytest.raises(EngineError, match="exited with status 2") as exc_info:
            SystemTracerouteEngine().run_probe(ProbeMethod.ICMP, _make_probe_config())

        assert exc_info.value.kind is FailureKind.UNKNOWN

    def test_missing_binary_is_unavailable(self, mock_popen: MagicMock) -> None:
        mock_popen.side_effect = FileNotFoundError("traceroute")

        with pytest.raises(EngineError) as exc_info:
            SystemTracerouteEngine().run_probe(ProbeMethod.ICMP, _make_probe_config())

        assert exc_info.value.kind is FailureKind.UNAVAILABLE
