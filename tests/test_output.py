"""Tests for output sinks and report renderers."""

import json
from io import StringIO
from unittest.mock import MagicMock

import pytest
from rich.console import Console

from fasttrace.catalog import TargetCatalog
from fasttrace.models import (
    AddressFamily,
    BatchReport,
    FailureKind,
    GeoInfo,
    HopRecord,
    ProbeConfig,
    ProbeMethod,
    RunMode,
    RunState,
    TargetDescriptor,
    TargetOutcome,
    TargetResult,
    TraceResult,
)
from fasttrace.output import (
    InteractiveSink,
    LogFileSink,
    OutputSink,
    format_hop,
    hide_ip_part,
    make_sink,
    render_catalog,
    render_report,
    render_report_to_string,
    target_header,
)

# -- Fixtures ----------------------------------------------------------------


def _make_probe_config(**overrides: object) -> ProbeConfig:
    defaults: dict = {
        "method": ProbeMethod.ICMP,
        "begin_hop": 1,
        "max_hops": 30,
        "destination": "202.97.1.1",
        "family": AddressFamily.V4,
        "label": "Beijing Telecom 163",
    }
    defaults.update(overrides)
    return ProbeConfig(**defaults)


def _console() -> Console:
    return Console(file=StringIO(), width=200, highlight=False)


def _hop() -> HopRecord:
    return HopRecord(
        ttl=3,
        address="202.97.1.1",
        hostname="core.example",
        rtts=(5.1, None, 5.3),
        geo=GeoInfo(city="Beijing", country="China", asn=4134, asn_org="CHINANET"),
    )


def _target(address: str, label: str) -> TargetDescriptor:
    return TargetDescriptor(address=address, label=label, family=AddressFamily.of(address))


def _aborted_report() -> BatchReport:
    return BatchReport(
        state=RunState.ABORTED_ON_ERROR,
        results=[
            TargetResult(
                _target("1.1.1.1", "Cloudflare"),
                TargetOutcome.SUCCEEDED,
                attempts=1,
                hop_count=7,
            ),
            TargetResult(
                _target("8.8.8.8", "Google"),
                TargetOutcome.FAILED,
                failure_kind=FailureKind.PERMISSION,
                error="not permitted",
                attempts=1,
            ),
            TargetResult(_target("9.9.9.9", "Quad9"), TargetOutcome.SKIPPED),
        ],
    )


# -- Formatting ----------------------------------------------------------------


class TestHideIpPart:
    def test_ipv4_masked_to_16(self) -> None:
        assert hide_ip_part("202.97.13.44") == "202.97.0.0/16"

    def test_ipv6_masked_to_32(self) -> None:
        assert hide_ip_part("2400:3200:1:2::1") == "2400:3200::/32"


class TestTargetHeader:
    def test_plain(self) -> None:
        title, banner = target_header(_make_probe_config())
        assert title == "[Beijing Telecom 163]"
        assert banner == "traceroute to 202.97.1.1, 30 hops max, 52 byte packets"

    def test_hidden_destination(self) -> None:
        _title, banner = target_header(_make_probe_config(), hide_dst_ip=True)
        assert "202.97.0.0/16" in banner
        assert "202.97.1.1" not in banner


class TestFormatHop:
    def test_full_hop(self) -> None:
        line = format_hop(_hop())
        assert line.startswith("3")
        assert "core.example (202.97.1.1)" in line
        assert "AS4134" in line
        assert "Beijing, China" in line
        assert "CHINANET" in line
        assert line.endswith("5.10 ms * 5.30 ms")

    def test_silent_hop(self) -> None:
        line = format_hop(HopRecord(ttl=4, rtts=(None, None, None)))
        assert line.split() == ["4", "*", "*", "*", "*"]


# -- Sinks ----------------------------------------------------------------


class TestInteractiveSink:
    def test_prints_header_and_hops(self) -> None:
        console = _console()
        sink = InteractiveSink(console=console)

        sink.begin_target(_make_probe_config())
        sink.render(_hop())
        sink.end_target(_make_probe_config(), TraceResult(destination="202.97.1.1"))

        out = console.file.getvalue()
        assert "[Beijing Telecom 163]" in out
        assert "traceroute to 202.97.1.1" in out
        assert "core.example (202.97.1.1)" in out

    def test_hide_dst_ip(self) -> None:
        console = _console()
        InteractiveSink(console=console, hide_dst_ip=True).begin_target(_make_probe_config())
        assert "202.97.0.0/16" in console.file.getvalue()


class TestLogFileSink:
    """Append-only log sink."""

    def test_appends_records(self, tmp_path: pytest.TempPathFactory) -> None:
        log = tmp_path / "trace.log"
        log.write_text("earlier run\n", encoding="utf-8")
        sink = LogFileSink(str(log), console=_console())

        config = _make_probe_config()
        sink.begin_target(config)
        sink.render(_hop())
        sink.end_target(config, None)

        lines = log.read_text(encoding="utf-8").splitlines()
        assert lines[0] == "earlier run"
        assert lines[1] == "[Beijing Telecom 163]"
        assert lines[2].startswith("traceroute to 202.97.1.1")
        assert "core.example" in lines[3]

    def test_records_flushed_before_end(self, tmp_path: pytest.TempPathFactory) -> None:
        log = tmp_path / "trace.log"
        sink = LogFileSink(str(log), console=_console())

        sink.begin_target(_make_probe_config())
        sink.render(_hop())

        assert "core.example" in log.read_text(encoding="utf-8")
        sink.end_target(_make_probe_config(), None)

    def test_console_notes_destination(self, tmp_path: pytest.TempPathFactory) -> None:
        console = _console()
        log = tmp_path / "trace.log"
        LogFileSink(str(log), console=console).begin_target(_make_probe_config())
        assert str(log) in console.file.getvalue()

    def test_unopenable_log_is_skipped(
        self, tmp_path: pytest.TempPathFactory, caplog: pytest.LogCaptureFixture
    ) -> None:
        sink = LogFileSink(str(tmp_path / "missing" / "trace.log"), console=_console())

        sink.begin_target(_make_probe_config())
        sink.render(_hop())
        sink.end_target(_make_probe_config(), None)

        assert "Cannot open log" in caplog.text


    def test_write_failure_drops_target(
        self, tmp_path: pytest.TempPathFactory, caplog: pytest.LogCaptureFixture
    ) -> None:
        sink = LogFileSink(str(tmp_path / "trace.log"), console=_console())
        config = _make_probe_config()
        sink.begin_target(config)
        broken = MagicMock()
        broken.write.side_effect = OSError(28, "No space left on device")
        sink._fp.close()
        sink._fp = broken

        sink.render(_hop())
        sink.render(_hop())
        sink.end_target(config, None)

        assert "Cannot write log" in caplog.text
        broken.write.assert_called_once()
        broken.close.assert_called_once()


class TestOutputSinkBase:
    def test_cannot_instantiate(self) -> None:
        with pytest.raises(TypeError):
            OutputSink()  # type: ignore[abstract]

    def test_subclass_must_render(self) -> None:
        class HeaderOnly(OutputSink):
            def begin_target(self, config: ProbeConfig) -> None:
                pass

        with pytest.raises(TypeError):
            HeaderOnly()  # type: ignore[abstract]


class TestMakeSink:
    def test_interactive(self) -> None:
        assert isinstance(make_sink(RunMode.INTERACTIVE, log_path="/tmp/x"), InteractiveSink)

    def test_logging(self) -> None:
        sink = make_sink(RunMode.LOGGING, log_path="/tmp/x", hide_dst_ip=True)
        assert isinstance(sink, LogFileSink)
        assert sink.path == "/tmp/x"
        assert sink.hide_dst_ip is True


# -- Reports ----------------------------------------------------------------


class TestRenderDispatch:
    """render_report() dispatches to the correct formatter."""

    def test_unknown_format_raises(self) -> None:
        with pytest.raises(ValueError, match="Unknown output format"):
            render_report(_aborted_report(), "csv")

    def test_table_format_produces_output(self) -> None:
        assert render_report_to_string(_aborted_report(), "table")


class TestReportTable:
    def test_title_shows_state(self) -> None:
        out = render_report_to_string(_aborted_report(), "table")
        assert "Batch aborted on error" in out

    def test_rows_and_outcomes(self) -> None:
        out = render_report_to_string(_aborted_report(), "table")
        for text in ("Cloudflare", "8.8.8.8", "succeeded", "failed", "skipped"):
            assert text in out
        assert "permission: not permitted" in out

    def test_summary_line(self) -> None:
        out = render_report_to_string(_aborted_report(), "table")
        assert "3 targets, 1 succeeded, 1 failed, 1 skipped, 0 cancelled" in out

    def test_summary_counts_cancelled(self) -> None:
        report = BatchReport(
            state=RunState.CANCELLED,
            results=[
                TargetResult(_target("1.1.1.1", "Cloudflare"), TargetOutcome.SUCCEEDED),
                TargetResult(_target("8.8.8.8", "Google"), TargetOutcome.CANCELLED),
                TargetResult(_target("9.9.9.9", "Quad9"), TargetOutcome.CANCELLED),
            ],
        )

        out = render_report_to_string(report, "table")

        assert "3 targets, 1 succeeded, 0 failed, 0 skipped, 2 cancelled" in out


class TestReportJson:
    def test_valid_json_with_expected_keys(self) -> None:
        data = json.loads(render_report_to_string(_aborted_report(), "json"))
        assert data["state"] == "aborted_on_error"
        assert data["ok"] is False
        assert len(data["results"]) == 3

    def test_result_fields(self) -> None:
        data = json.loads(render_report_to_string(_aborted_report(), "json"))
        failed = data["results"][1]
        assert failed["target"] == {"address": "8.8.8.8", "label": "Google", "family": "4"}
        assert failed["outcome"] == "failed"
        assert failed["failure_kind"] == "permission"
        assert failed["error"] == "not permitted"


class TestRenderCatalog:
    def test_lists_endpoints(self) -> None:
        buf = StringIO()
        render_catalog(TargetCatalog.load(), file=buf, width=200)
        out = buf.getvalue()
        assert "Reference endpoints" in out
        assert "Telecom 163" in out
        assert "ipv4.pek-4134.endpoint.nxtrace.org" in out
