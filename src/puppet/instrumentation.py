"""Optional OpenTelemetry instrumentation for puppet.

Call ``puppet.instrumentation.instrument()`` once at startup to enable
tracing.  Requires ``opentelemetry-api`` to be installed; the engine
works identically without it.
"""

import importlib.util
import logging
from contextlib import asynccontextmanager

logger = logging.getLogger(__name__)

_tracer = None


def instrument(*, tracer_name: str = "puppet") -> None:
    """Enable OpenTelemetry tracing for chat exchanges.

    Call once at startup, after configuring your TracerProvider.
    Requires ``opentelemetry-api``: ``pip install puppet[otel]``

    Args:
        tracer_name: Name passed to ``trace.get_tracer()``.

    Raises:
        ImportError: If ``opentelemetry-api`` is not installed.
    """
    global _tracer
    if importlib.util.find_spec("opentelemetry.trace") is None:
        raise ImportError(
            "opentelemetry-api is required for instrumentation. "
            "Install it with: pip install puppet[otel]"
        )
    from opentelemetry import trace
    _tracer = trace.get_tracer(tracer_name)
    if isinstance(_tracer, trace.NoOpTracer):
        logger.info(
            "No TracerProvider configured, spans will be "
            "discarded. Set up a TracerProvider to export "
            "traces."
        )
    else:
        logger.info("puppet instrumentation enabled")


def uninstrument() -> None:
    """Disable OpenTelemetry tracing."""
    global _tracer
    _tracer = None


@asynccontextmanager
async def chat_span(provider: str, model: str):
    """Wrap one ``generate`` exchange, covering all of its turns."""
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        f"chat {model}",
        attributes={
            "gen_ai.operation.name": "chat",
            "gen_ai.provider.name": provider,
            "gen_ai.request.model": model,
        },
    ) as span:
        yield span


@asynccontextmanager
async def turn_span(provider: str, model: str, turn: int):
    """Wrap one request/stream-drain cycle."""
    if _tracer is None:
        yield None
        return
    from opentelemetry.trace import SpanKind

    with _tracer.start_as_current_span(
        f"turn {turn}",
        kind=SpanKind.CLIENT,
        attributes={
            "gen_ai.operation.name": "chat",
            "gen_ai.provider.name": provider,
            "gen_ai.request.model": model,
            "puppet.turn": turn,
        },
    ) as span:
        yield span


@asynccontextmanager
async def tool_span(tool_name: str, call_id: str):
    """Wrap a tool execution in an ``execute_tool`` span."""
    if _tracer is None:
        yield None
        return
    with _tracer.start_as_current_span(
        f"execute_tool {tool_name}",
        attributes={
            "gen_ai.operation.name": "execute_tool",
            "gen_ai.tool.name": tool_name,
            "gen_ai.tool.call.id": call_id,
        },
    ) as span:
        yield span


def record_usage(span, usage) -> None:
    """Set token-usage attributes on a span."""
    if span is None or usage is None:
        return
    span.set_attribute("gen_ai.usage.input_tokens", usage.prompt_tokens)
    span.set_attribute("gen_ai.usage.output_tokens", usage.completion_tokens)


def record_error(span, exception: BaseException) -> None:
    """Record an exception and set ERROR status on a span.

    No-ops when *span* is ``None`` (tracing disabled).
    """
    if span is None:
        return
    from opentelemetry.trace import StatusCode

    span.set_status(StatusCode.ERROR, str(exception))
    span.record_exception(exception)
    span.set_attribute(
        "error.type", type(exception).__qualname__
    )
