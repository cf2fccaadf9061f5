"""
OpenTelemetry Distributed Tracing — tracing.py
===============================================
Provides TracingConfig, configure_tracing(), get_tracer(), and context
managers for the pipeline's instrumentation points (run, stage, agent
invocation).

Until configure_tracing() installs an SDK provider, the OpenTelemetry API
hands out its own non-recording tracer, so spans cost next to nothing.

Usage:
    from manipula.tracing import configure_tracing, TracingConfig
    configure_tracing(TracingConfig(enabled=True, otlp_endpoint="http://localhost:4317"))
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterator, Optional

from opentelemetry import trace
from opentelemetry.sdk.resources import Resource
from opentelemetry.sdk.trace import TracerProvider
from opentelemetry.sdk.trace.export import (
    BatchSpanProcessor, ConsoleSpanExporter, SimpleSpanProcessor,
)
from opentelemetry.sdk.trace.sampling import TraceIdRatioBased

logger = logging.getLogger("manipula.tracing")

# ── Module-level singletons (reset between tests) ──────────────────────────────
_tracer = None
_provider: Optional[TracerProvider] = None


@dataclass
class TracingConfig:
    enabled: bool = False
    service_name: str = "manipula"
    otlp_endpoint: Optional[str] = None   # None → ConsoleSpanExporter (dev)
    sample_rate: float = 1.0


def configure_tracing(cfg: TracingConfig) -> None:
    """Initialise the global OTEL TracerProvider. Safe to call multiple times."""
    global _tracer, _provider

    if not cfg.enabled:
        _tracer = trace.get_tracer("manipula")
        return

    resource = Resource.create({"service.name": cfg.service_name})
    provider = TracerProvider(resource=resource, sampler=TraceIdRatioBased(cfg.sample_rate))

    if cfg.otlp_endpoint:
        # The OTLP exporter is an optional extra: manipula[otlp]
        from opentelemetry.exporter.otlp.proto.grpc.trace_exporter import OTLPSpanExporter
        exporter = OTLPSpanExporter(endpoint=cfg.otlp_endpoint, insecure=True)
        provider.add_span_processor(BatchSpanProcessor(exporter))
        logger.info(f"OTEL tracing → {cfg.otlp_endpoint}")
    else:
        provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
        logger.info("OTEL tracing → console (dev mode)")

    _provider = provider
    _tracer = provider.get_tracer(cfg.service_name)


def get_tracer():
    """Return the configured tracer, or the API's default tracer."""
    global _tracer
    if _tracer is None:
        _tracer = trace.get_tracer("manipula")
    return _tracer


def reset_tracing() -> None:
    global _tracer, _provider
    if _provider is not None:
        _provider.shutdown()
    _tracer = None
    _provider = None


# ── Context managers ───────────────────────────────────────────────────────────

@contextmanager
def traced_run(run_id: str, project_id: str) -> Iterator:
    """Span for one PipelineRun."""
    with get_tracer().start_as_current_span("pipeline_run") as span:
        span.set_attribute("run.id", run_id)
        span.set_attribute("project.id", project_id)
        yield span


@contextmanager
def traced_stage(stage: str, task_hint: str = "") -> Iterator:
    """Span for one stage, covering all of its attempts."""
    with get_tracer().start_as_current_span(f"stage:{stage}") as span:
        span.set_attribute("stage.name", stage)
        span.set_attribute("stage.task_hint", task_hint)
        yield span


@contextmanager
def traced_invocation(stage: str, model: str, attempt: int) -> Iterator:
    """Span for a single agent invocation."""
    with get_tracer().start_as_current_span(f"invoke:{stage}") as span:
        span.set_attribute("llm.model", model)
        span.set_attribute("invocation.attempt", attempt)
        yield span
