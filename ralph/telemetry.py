"""Telemetry setup for OpenTelemetry traces and metrics.

Configures tracing and metrics export over OTLP when ``OTLP_ENABLED=true``.
Otherwise SDK providers are installed without exporters, so spans and
instruments work but nothing leaves the process.
"""

import logging
import os
from dataclasses import dataclass

from opentelemetry import metrics, trace
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.trace import TracerProvider

from ralph.config import RalphConfig

# Suppress gRPC warnings when collector is unavailable
logging.getLogger("opentelemetry.exporter.otlp.proto.grpc").setLevel(logging.ERROR)


@dataclass
class RalphMetrics:
    """Metric instruments for harness runs.

    Attributes:
        tasks: Tasks finished, labelled by status
        iterations: Agent iterations executed
        connection_retries: Connection retries taken
        loop_retries: Loop retries taken
        workflow_restarts: Workflow restarts after resource exhaustion
        dropped_lines: Stream lines that did not decode into a known event
        task_duration: Task execution duration in seconds
    """

    tasks: metrics.Counter
    iterations: metrics.Counter
    connection_retries: metrics.Counter
    loop_retries: metrics.Counter
    workflow_restarts: metrics.Counter
    dropped_lines: metrics.Counter
    task_duration: metrics.Histogram


def setup_telemetry(config: RalphConfig) -> tuple[trace.Tracer, metrics.Meter]:
    """Initialize OpenTelemetry with optional OTLP export.

    Args:
        config: Harness configuration with OTLP endpoint and service name

    Returns:
        Tuple of (tracer, meter) for creating spans and recording metrics
    """
    otlp_enabled = os.getenv("OTLP_ENABLED", "false").lower() == "true"

    if otlp_enabled and config.otlp_endpoint:
        # Import OTLP exporters only when needed
        from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import (
            OTLPMetricExporter,
        )
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import (
            OTLPSpanExporter,
        )
        from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
        from opentelemetry.sdk.trace.export import BatchSpanProcessor

        trace_provider = TracerProvider()
        trace_provider.add_span_processor(
            BatchSpanProcessor(OTLPSpanExporter(endpoint=config.otlp_endpoint))
        )
        trace.set_tracer_provider(trace_provider)

        metric_reader = PeriodicExportingMetricReader(
            OTLPMetricExporter(endpoint=config.otlp_endpoint)
        )
        metrics.set_meter_provider(MeterProvider(metric_readers=[metric_reader]))
    else:
        trace.set_tracer_provider(TracerProvider())
        metrics.set_meter_provider(MeterProvider())

    tracer = trace.get_tracer(config.service_name)
    meter = metrics.get_meter(config.service_name)

    return tracer, meter


def create_metrics(meter: metrics.Meter | None = None) -> RalphMetrics:
    """Create metric instruments for harness tracking.

    Args:
        meter: Meter to create instruments on; the global meter if None

    Returns:
        RalphMetrics holding every instrument
    """
    meter = meter or metrics.get_meter("ralph")
    return RalphMetrics(
        tasks=meter.create_counter(
            "ralph_tasks_total",
            description="Total tasks finished",
        ),
        iterations=meter.create_counter(
            "ralph_iterations_total",
            description="Total agent iterations executed",
        ),
        connection_retries=meter.create_counter(
            "ralph_connection_retries_total",
            description="Total connection retries",
        ),
        loop_retries=meter.create_counter(
            "ralph_loop_retries_total",
            description="Total loop retries",
        ),
        workflow_restarts=meter.create_counter(
            "ralph_workflow_restarts_total",
            description="Total workflow restarts after resource exhaustion",
        ),
        dropped_lines=meter.create_counter(
            "ralph_dropped_stream_lines_total",
            description="Total unrecognized agent stream lines",
        ),
        task_duration=meter.create_histogram(
            "ralph_task_duration_seconds",
            description="Task execution duration",
            unit="s",
        ),
    )
