"""Tests for telemetry module.

These tests verify OpenTelemetry setup for traces and metrics.
"""

import os
from unittest.mock import MagicMock, patch

from ralph.config import RalphConfig


class TestSetupTelemetry:
    """Test setup_telemetry function."""

    def test_setup_returns_tracer_and_meter(self):
        """setup_telemetry should return a tracer and meter."""
        from ralph.telemetry import setup_telemetry

        config = RalphConfig()

        # With OTLP disabled (default), no exporters are attached
        with patch.dict(os.environ, {"OTLP_ENABLED": "false"}):
            tracer, meter = setup_telemetry(config)

        assert tracer is not None
        assert meter is not None

    def test_uses_otlp_endpoint_from_config(self):
        """Should use OTLP endpoint from config when enabled."""
        from ralph.telemetry import setup_telemetry

        config = RalphConfig(otlp_endpoint="http://custom:4317")

        with patch.dict(os.environ, {"OTLP_ENABLED": "true"}):
            with patch(
                "opentelemetry.exporter.otlp.proto.grpc.trace_exporter.OTLPSpanExporter"
            ) as mock_span_exporter:
                with patch(
                    "opentelemetry.exporter.otlp.proto.grpc.metric_exporter.OTLPMetricExporter"
                ) as mock_metric_exporter:
                    with patch("opentelemetry.sdk.trace.export.BatchSpanProcessor"):
                        with patch(
                            "opentelemetry.sdk.metrics.export.PeriodicExportingMetricReader"
                        ):
                            setup_telemetry(config)

        mock_span_exporter.assert_called_with(endpoint="http://custom:4317")
        mock_metric_exporter.assert_called_with(endpoint="http://custom:4317")

    def test_tracer_creates_spans(self):
        from ralph.telemetry import setup_telemetry

        with patch.dict(os.environ, {"OTLP_ENABLED": "false"}):
            tracer, _ = setup_telemetry(RalphConfig())

        with tracer.start_as_current_span("ralph.test") as span:
            span.set_attribute("task.id", "US-001")


class TestCreateMetrics:
    """Test metric instrument creation."""

    def test_creates_all_instruments(self):
        from ralph.telemetry import create_metrics

        meter = MagicMock()

        metrics = create_metrics(meter)

        counter_names = [c.args[0] for c in meter.create_counter.call_args_list]
        assert counter_names == [
            "ralph_tasks_total",
            "ralph_iterations_total",
            "ralph_connection_retries_total",
            "ralph_loop_retries_total",
            "ralph_workflow_restarts_total",
            "ralph_dropped_stream_lines_total",
        ]
        meter.create_histogram.assert_called_once()
        assert meter.create_histogram.call_args.args[0] == "ralph_task_duration_seconds"
        assert metrics.tasks is meter.create_counter.return_value

    def test_default_meter_instruments_accept_measurements(self):
        from ralph.telemetry import create_metrics

        metrics = create_metrics()

        metrics.tasks.add(1, {"status": "completed"})
        metrics.task_duration.record(1.5, {"task_id": "US-001"})
