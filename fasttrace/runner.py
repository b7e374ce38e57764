"""Batch orchestration: per-target probe configs, failure policy, session lifecycle."""

import logging
import signal
import threading
from collections.abc import Callable, Iterable
from contextlib import contextmanager

from fasttrace.config import FastTraceConfig
from fasttrace.engines import DiagnosticEngine, EngineError
from fasttrace.geoip import GeoSession, open_geo_session
from fasttrace.models import (
    AddressFamily,
    BatchReport,
    FailurePolicy,
    ProbeConfig,
    RunState,
    TargetDescriptor,
    TargetOutcome,
    TargetResult,
)
from fasttrace.output import OutputSink
from fasttrace.source_addr import select_source_address

logger = logging.getLogger(__name__)


class EmptyTargetListError(ValueError):
    """Raised when a batch is started without any targets."""


class InvalidStateError(RuntimeError):
    """Raised when a runner method is called in the wrong state."""


class CancellationToken:
    """Cooperative cancellation flag shared by a batch and its interrupt handler."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


class BatchRunner:
    """Run the diagnostic engine over an ordered list of targets.

    One target is traced at a time.  The geolocation session is opened once
    when the batch starts and closed exactly once when it ends, whichever
    way it ends.

    Args:
        config: Run configuration; method, output mode and failure policy
            are fixed by ``select_mode``.
        engine: Diagnostic engine invoked once per target (plus retries).
        sink: Output sink wired into every probe config.
        geo_factory: Opens the batch's geolocation session.
        select_source: Interface → source address selector.
        token: Cancellation token; a fresh one is created if omitted.
        handle_interrupt: Turn SIGINT into a cancellation request for the
            duration of ``run`` (main thread only).
    """

    def __init__(
        self,
        config: FastTraceConfig,
        engine: DiagnosticEngine,
        sink: OutputSink,
        *,
        geo_factory: Callable[[FastTraceConfig], GeoSession] = open_geo_session,
        select_source: Callable[[str, AddressFamily], str | None] = select_source_address,
        token: CancellationToken | None = None,
        handle_interrupt: bool = False,
    ) -> None:
        self.config = config
        self.engine = engine
        self.sink = sink
        self.token = token or CancellationToken()
        self.handle_interrupt = handle_interrupt
        self._geo_factory = geo_factory
        self._select_source = select_source
        self.state = RunState.IDLE

    def select_mode(self) -> None:
        """Fix probe method, output mode and failure policy for the batch.

        Raises:
            InvalidStateError: If the runner is not idle.
            ConfigError: If any of them is invalid.
        """
        if self.state is not RunState.IDLE:
            raise InvalidStateError(f"Cannot select mode in state {self.state.value}")
        self.method = self.config.probe_method
        self.mode = self.config.run_mode
        self.policy = self.config.policy
        logger.debug(
            "Mode selected: method=%s mode=%s policy=%s",
            self.method.value,
            self.mode.value,
            self.policy.value,
        )
        self.state = RunState.MODE_SELECTED

    def run(self, targets: Iterable[TargetDescriptor]) -> BatchReport:
        """Trace every target in order and return the batch report.

        Raises:
            EmptyTargetListError: If *targets* is empty.
            InvalidStateError: If the runner has already run.
        """
        targets = list(targets)
        if self.state is RunState.IDLE:
            self.select_mode()
        if self.state is not RunState.MODE_SELECTED:
            raise InvalidStateError(f"Cannot run in state {self.state.value}")
        if not targets:
            raise EmptyTargetListError("No targets to trace")

        results: list[TargetResult] = []
        self.state = RunState.RUNNING
        logger.info("Tracing %d target(s)", len(targets))

        with self._interrupts():
            session = self._geo_factory(self.config)
            try:
                self.state = self._run_targets(targets, session, results)
            except KeyboardInterrupt:
                self.state = RunState.CANCELLED
                raise
            except Exception:
                self.state = RunState.ABORTED_ON_ERROR
                raise
            finally:
                session.close()
                logger.debug("Geolocation session released")

        return BatchReport(state=self.state, results=results)

    def build_probe_config(
        self,
        target: TargetDescriptor,
        session: GeoSession | None = None,
    ) -> ProbeConfig:
        """Merge the fixed run parameters with one target."""
        cfg = self.config
        return ProbeConfig(
            method=self.method,
            begin_hop=cfg.begin_hop,
            max_hops=cfg.max_hops,
            destination=target.address,
            family=target.family,
            label=target.label,
            rdns=cfg.rdns,
            always_wait_rdns=cfg.always_wait_rdns,
            timeout=cfg.timeout,
            source_address=self.source_address_for(target),
            packet_size=cfg.pkt_size,
            language=cfg.lang,
            dont_fragment=cfg.dont_fragment,
            renderer=self.sink,
            geo=session,
        )

    def source_address_for(self, target: TargetDescriptor) -> str | None:
        """Source address for *target*; always of the target's family or None."""
        cfg = self.config
        if cfg.src_dev:
            selected = self._select_source(cfg.src_dev, target.family)
            if selected:
                return selected

        if not cfg.src_addr:
            return None
        try:
            family = AddressFamily.of(cfg.src_addr)
        except ValueError:
            logger.warning("Ignoring invalid source address %r", cfg.src_addr)
            return None
        if family is not target.family:
            logger.warning(
                "Source address %s is IPv%s but %s is IPv%s; letting routing choose",
                cfg.src_addr,
                family.value,
                target.label,
                target.family.value,
            )
            return None
        return cfg.src_addr

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _run_targets(
        self,
        targets: list[TargetDescriptor],
        session: GeoSession,
        results: list[TargetResult],
    ) -> RunState:
        for idx, target in enumerate(targets):
            if self.token.cancelled:
                results.extend(_mark(targets[idx:], TargetOutcome.CANCELLED))
                return RunState.CANCELLED

            if idx:
                self.sink.separator()

            result = self._run_target(target, session)
            results.append(result)

            if result.outcome is TargetOutcome.CANCELLED:
                results.extend(_mark(targets[idx + 1 :], TargetOutcome.CANCELLED))
                return RunState.CANCELLED

            if result.outcome is TargetOutcome.FAILED and self.policy is FailurePolicy.ABORT:
                logger.error("Aborting batch after %s failed", target.label)
                results.extend(_mark(targets[idx + 1 :], TargetOutcome.SKIPPED))
                return RunState.ABORTED_ON_ERROR

        return RunState.COMPLETED

    def _run_target(self, target: TargetDescriptor, session: GeoSession) -> TargetResult:
        probe_config = self.build_probe_config(target, session)
        attempts = 0
        while True:
            attempts += 1
            trace = None
            self.sink.begin_target(probe_config)
            try:
                trace = self.engine.run_probe(self.method, probe_config)
            except EngineError as exc:
                if self.token.cancelled:
                    return TargetResult(target, TargetOutcome.CANCELLED, attempts=attempts)
                if exc.retryable and attempts <= self.config.retries:
                    logger.warning(
                        "Trace to %s failed (%s); retrying (%d/%d)",
                        target.label,
                        exc,
                        attempts,
                        self.config.retries,
                    )
                    continue
                logger.error("Trace to %s failed: %s", target.label, exc)
                return TargetResult(
                    target,
                    TargetOutcome.FAILED,
                    failure_kind=exc.kind,
                    error=str(exc),
                    attempts=attempts,
                )
            except KeyboardInterrupt:
                self.token.cancel()
                return TargetResult(target, TargetOutcome.CANCELLED, attempts=attempts)
            finally:
                self.sink.end_target(probe_config, trace)

            return TargetResult(
                target,
                TargetOutcome.SUCCEEDED,
                attempts=attempts,
                hop_count=len(trace.hops),
            )

    @contextmanager
    def _interrupts(self):
        """Route SIGINT to the cancellation token while the batch runs."""
        if not self.handle_interrupt or threading.current_thread() is not threading.main_thread():
            yield
            return

        def _on_interrupt(signum, frame):
            if self.token.cancelled:
                raise KeyboardInterrupt
            logger.warning("Interrupted; stopping after the current target")
            self.token.cancel()

        previous = signal.signal(signal.SIGINT, _on_interrupt)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, previous)


def _mark(targets: list[TargetDescriptor], outcome: TargetOutcome) -> list[TargetResult]:
    return [TargetResult(t, outcome) for t in targets]
