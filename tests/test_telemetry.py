"""Tests for telemetry module — OpenTelemetry tracing integration."""

from __future__ import annotations

import pytest

from parley.telemetry import (
    ParleyTracer,
    TelemetryConfig,
    configure,
    get_tracer,
    trace_compression,
    trace_model_call,
    trace_session_load,
    trace_session_save,
)


def test_init_with_none_config_succeeds() -> None:
    tracer = ParleyTracer(TelemetryConfig(exporter="none"))
    tracer.init()
    tracer.shutdown()


def test_init_with_stdout_exporter() -> None:
    tracer = ParleyTracer(TelemetryConfig(exporter="stdout"))
    tracer.init()
    with tracer.span("stdout-span") as s:
        assert s.is_recording()
    tracer.shutdown()


def test_unknown_exporter_rejected() -> None:
    tracer = ParleyTracer(TelemetryConfig(exporter="carrier-pigeon"))
    with pytest.raises(ValueError, match="Unknown exporter"):
        tracer.init()


def test_span_context_manager_works() -> None:
    tracer = ParleyTracer(TelemetryConfig(exporter="none"))
    tracer.init()
    with tracer.span("test-span", {"key": "value"}) as s:
        assert s is not None
    tracer.shutdown()


def test_record_event_does_not_error() -> None:
    tracer = ParleyTracer(TelemetryConfig(exporter="none"))
    tracer.init()
    tracer.record_event("test-event", {"key": "value"})
    tracer.shutdown()


def test_convenience_functions_do_not_error() -> None:
    with trace_compression("temp", 4096) as s:
        assert s is not None
    with trace_model_call("gpt-4o-mini") as s:
        assert s is not None
    with trace_session_save("notes") as s:
        assert s is not None
    with trace_session_load("notes") as s:
        assert s is not None


def test_configure_replaces_default_tracer() -> None:
    first = get_tracer()
    second = configure(TelemetryConfig(exporter="none"))
    assert get_tracer() is second
    assert second is not first


def test_config_defaults_are_correct() -> None:
    config = TelemetryConfig()
    assert config.service_name == "parley"
    assert config.enabled is True
    assert config.exporter == "none"
    assert config.otlp_endpoint == "http://localhost:4317"


def test_shutdown_is_safe_to_call_multiple_times() -> None:
    tracer = ParleyTracer(TelemetryConfig(exporter="none"))
    tracer.init()
    tracer.shutdown()
    tracer.shutdown()
    tracer.shutdown()
