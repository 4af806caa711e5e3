"""OpenTelemetry tracing for the session engine.

Provides spans around compression, model calls and session persistence,
with stdout, OTLP and noop exporters.
"""

from __future__ import annotations

import contextlib
from collections.abc import Generator
from dataclasses import dataclass
from typing import Any

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.trace import NoOpTracer, Span, Tracer

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


@dataclass
class TelemetryConfig:
    """Configuration for the parley tracing subsystem."""

    service_name: str = "parley"
    enabled: bool = True
    exporter: str = "none"  # "stdout" | "otlp" | "none"
    otlp_endpoint: str = "http://localhost:4317"


# ---------------------------------------------------------------------------
# ParleyTracer
# ---------------------------------------------------------------------------


class ParleyTracer:
    """Central tracer.

    Wraps OpenTelemetry ``TracerProvider`` setup and provides helpers for
    creating spans and recording events.
    """

    def __init__(self, config: TelemetryConfig | None = None) -> None:
        self._config = config or TelemetryConfig()
        self._provider: TracerProvider | None = None
        self._tracer: Tracer = NoOpTracer()

    # -- lifecycle -----------------------------------------------------------

    def init(self) -> None:
        """Set up the OTel TracerProvider based on config."""
        cfg = self._config

        if not cfg.enabled or cfg.exporter == "none":
            return

        resource = Resource.create({"service.name": cfg.service_name})

        if cfg.exporter == "stdout":
            from opentelemetry.sdk.trace.export import (
                ConsoleSpanExporter,
                SimpleSpanProcessor,
            )

            provider = TracerProvider(resource=resource)
            provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
            self._provider = provider
            self._tracer = provider.get_tracer(cfg.service_name)

        elif cfg.exporter == "otlp":
            from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
                OTLPSpanExporter,
            )
            from opentelemetry.sdk.trace.export import SimpleSpanProcessor

            exporter = OTLPSpanExporter(endpoint=cfg.otlp_endpoint, insecure=True)
            provider = TracerProvider(resource=resource)
            provider.add_span_processor(SimpleSpanProcessor(exporter))
            self._provider = provider
            self._tracer = provider.get_tracer(cfg.service_name)

        else:
            msg = f"Unknown exporter '{cfg.exporter}'. Valid values: stdout, otlp, none"
            raise ValueError(msg)

    # -- span helpers --------------------------------------------------------

    @contextlib.contextmanager
    def span(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> Generator[Span, None, None]:
        """Create a span as a context manager."""
        with self._tracer.start_as_current_span(name) as s:
            if attributes:
                for k, v in attributes.items():
                    s.set_attribute(k, v)
            yield s

    def record_event(
        self,
        name: str,
        attributes: dict[str, Any] | None = None,
    ) -> None:
        """Record a named event on the current active span (if any)."""
        current_span = trace.get_current_span()
        if current_span.is_recording():
            current_span.add_event(name, dict(attributes) if attributes else {})

    def shutdown(self) -> None:
        """Flush pending spans and shut down the provider.

        Safe to call multiple times.
        """
        if self._provider is not None:
            self._provider.shutdown()
            self._provider = None


# ---------------------------------------------------------------------------
# Module-level default (lazily initialised)
# ---------------------------------------------------------------------------

_DEFAULT_TRACER: ParleyTracer | None = None


def get_tracer() -> ParleyTracer:
    global _DEFAULT_TRACER  # noqa: PLW0603
    if _DEFAULT_TRACER is None:
        _DEFAULT_TRACER = ParleyTracer()
    return _DEFAULT_TRACER


def configure(config: TelemetryConfig) -> ParleyTracer:
    """Replace the default tracer (call once at startup)."""
    global _DEFAULT_TRACER  # noqa: PLW0603
    if _DEFAULT_TRACER is not None:
        _DEFAULT_TRACER.shutdown()
    _DEFAULT_TRACER = ParleyTracer(config)
    _DEFAULT_TRACER.init()
    return _DEFAULT_TRACER


# ---------------------------------------------------------------------------
# Convenience context managers
# ---------------------------------------------------------------------------


@contextlib.contextmanager
def trace_compression(session_name: str, budget: int) -> Generator[Span, None, None]:
    """Trace a compression pass."""
    attrs = {"session.name": session_name, "session.token_budget": budget}
    with get_tracer().span("context/compress", attrs) as s:
        yield s


@contextlib.contextmanager
def trace_model_call(model_id: str) -> Generator[Span, None, None]:
    """Trace a streamed model call."""
    with get_tracer().span("model/call", {"model.id": model_id}) as s:
        yield s


@contextlib.contextmanager
def trace_session_save(session_name: str) -> Generator[Span, None, None]:
    """Trace persisting a session."""
    with get_tracer().span("session/save", {"session.name": session_name}) as s:
        yield s


@contextlib.contextmanager
def trace_session_load(session_name: str) -> Generator[Span, None, None]:
    """Trace restoring a session."""
    with get_tracer().span("session/load", {"session.name": session_name}) as s:
        yield s
