"""OpenTelemetry spans around each rollback pipeline stage.

Uses only the OpenTelemetry API. Without an SDK configured by the host
process the spans are no-ops.
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import TYPE_CHECKING, Any

from opentelemetry import trace

if TYPE_CHECKING:
    from collections.abc import Iterator

TRACER_NAME = "slot_control"

ATTR_ENVIRONMENT = "slot_control.environment"
ATTR_SLOT = "slot_control.slot"
ATTR_OUTCOME = "slot_control.outcome"


def get_tracer(tracer_provider: trace.TracerProvider | None = None) -> trace.Tracer:
    from slot_control import __version__

    return trace.get_tracer(TRACER_NAME, __version__, tracer_provider)


@contextmanager
def pipeline_span(
    tracer: trace.Tracer,
    stage: str,
    environment: str,
    **attributes: Any,
) -> Iterator[trace.Span]:
    """Run a pipeline stage inside a ``slot_control.<stage>`` span.

    Exceptions are recorded on the span, which is marked as an error, and
    re-raised.
    """
    with tracer.start_as_current_span(f"slot_control.{stage}") as span:
        span.set_attribute(ATTR_ENVIRONMENT, environment)
        for key, value in attributes.items():
            if value is not None:
                span.set_attribute(f"slot_control.{key}", value)
        try:
            yield span
        except Exception as exc:
            span.set_attribute(ATTR_OUTCOME, type(exc).__name__)
            raise
