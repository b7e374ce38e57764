"""Diagnostic engine registry, abstract engine and error taxonomy."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING

from fasttrace.models import FailureKind

if TYPE_CHECKING:
    from fasttrace.config import FastTraceConfig
    from fasttrace.models import ProbeConfig, ProbeMethod, TraceResult


class EngineError(Exception):
    """An unrecoverable failure of a single engine run.

    Args:
        message: Human-readable description.
        kind: Failure classification used by the batch failure policy.
    """

    def __init__(self, message: str, kind: FailureKind = FailureKind.UNKNOWN) -> None:
        super().__init__(message)
        self.kind = kind

    @property
    def retryable(self) -> bool:
        return self.kind.retryable


class DiagnosticEngine(ABC):
    """Abstract base class for hop-probing engines.

    An engine runs one trace synchronously, calls
    ``config.renderer.render(hop)`` once per discovered hop, and enriches
    hops through ``config.geo`` when a session is present.
    """

    @classmethod
    def from_config(cls, config: FastTraceConfig) -> DiagnosticEngine:
        return cls()

    @abstractmethod
    def run_probe(self, method: ProbeMethod, config: ProbeConfig) -> TraceResult:
        """Trace the path to ``config.destination``.

        Args:
            method: ICMP or TCP SYN probing.
            config: Per-target probe configuration.

        Returns:
            A ``TraceResult`` with every hop that was rendered.

        Raises:
            EngineError: On a run-level failure.
        """


def _build_registry() -> dict[str, type[DiagnosticEngine]]:
    """Build the engine-name → engine-class mapping.

    Imports are deferred to avoid circular imports.
    """
    from fasttrace.engines.traceroute import SystemTracerouteEngine

    return {
        "traceroute": SystemTracerouteEngine,
    }


def get_engine(name: str, config: FastTraceConfig) -> DiagnosticEngine:
    """Look up and instantiate the engine called *name*.

    Raises:
        ValueError: If *name* is not in the registry.
    """
    registry = _build_registry()
    engine_cls = registry.get(name)
    if engine_cls is None:
        known = ", ".join(sorted(registry))
        raise ValueError(f"Unknown engine {name!r}. Known engines: {known}")
    return engine_cls.from_config(config)


def registered_engines() -> list[str]:
    """Return a sorted list of all registered engine names."""
    return sorted(_build_registry())
