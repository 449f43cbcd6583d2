import asyncio
import logging
from collections.abc import AsyncIterator, Iterable
from contextlib import aclosing
from pathlib import Path
from typing import Any

from puppet.errors import PuppetError, TurnLimitExceeded
from puppet.events import (
    ChatListener,
    DeltaEvent,
    EndEvent,
    StreamEvent,
    ToolCallEvent,
    ToolResultEvent,
)
from puppet.instrumentation import (
    chat_span,
    record_error,
    record_usage,
    turn_span,
)
from puppet.message import (
    Message,
    MessageRole,
    TextPart,
    ToolCallRequestMessage,
    ToolCallResultMessage,
)
from puppet.provider import ModelProvider
from puppet.session import Session
from puppet.streaming import StreamAccumulator, Usage
from puppet.tools import FunctionRegistry, ToolDispatcher
from puppet.transport import HttpTransport

logger = logging.getLogger(__name__)


class ChatEngine:
    """Runs the request / stream / tool-dispatch loop for one session.

    Each ``generate`` call issues requests until a turn produces plain
    text.  A turn that ends in tool calls records the calls, runs them
    through the dispatcher, appends one tool result per call and loops.
    Errors abort the call without rolling back earlier appends; nothing
    is retried.

    ``generate()`` and ``generate_stream()`` both drain ``iter()``.

    Args:
        provider: Adapter for the provider's wire format.
        registry: Tools the model may call.  Empty means no tools are
            offered.
        transport: HTTP transport; a default ``HttpTransport`` is
            created when omitted.
        session: Conversation state; a new empty one when omitted.
        listener: Optional receiver of every event, for live display.
        max_turns: Upper bound on requests per ``generate`` call.
            ``None`` leaves the loop unbounded.
    """

    def __init__(
        self,
        provider: ModelProvider,
        registry: FunctionRegistry | None = None,
        transport: HttpTransport | None = None,
        session: Session | None = None,
        listener: ChatListener | None = None,
        max_turns: int | None = None,
    ):
        self.provider = provider
        self.registry = registry or FunctionRegistry()
        self.transport = transport or HttpTransport()
        self.session = session or Session()
        self.listener = listener
        self.max_turns = max_turns
        self.dispatcher = ToolDispatcher(self.registry)
        self.last_usage = Usage()
        self._lock = asyncio.Lock()

    # ------------------------------------------------------------------
    # Conversation state
    # ------------------------------------------------------------------

    def set_system_message(self, text: str) -> None:
        self.session.set_system_message(text)

    def add_user_message(
        self, text: str, attachments: Iterable[str | Path] = (),
    ) -> Message:
        return self.session.add_user_message(text, attachments)

    def add_assistant_message(self, text: str) -> Message:
        return self.session.add_assistant_message(text)

    def set_option(self, **options: Any) -> None:
        self.session.set_option(**options)

    # ------------------------------------------------------------------
    # Generation
    # ------------------------------------------------------------------

    async def generate(self) -> str:
        """Run the turn loop and return the final assistant text."""
        text: str | None = None
        async with aclosing(self.iter()) as events:
            async for event in events:
                if isinstance(event, EndEvent):
                    text = event.text
        if text is None:
            raise RuntimeError("iter() ended without emitting EndEvent")
        return text

    async def generate_stream(self) -> AsyncIterator[str]:
        """Run the turn loop, yielding text deltas as they arrive."""
        async with aclosing(self.iter()) as events:
            async for event in events:
                if isinstance(event, DeltaEvent):
                    yield event.text

    async def iter(self) -> AsyncIterator[StreamEvent]:
        """Run the turn loop, yielding events as execution proceeds."""
        async with self._lock:
            async with chat_span(self.provider.name, self.provider.model) as span:
                try:
                    async with aclosing(self._run()) as events:
                        async for event in events:
                            yield event
                except PuppetError as e:
                    record_error(span, e)
                    raise
                record_usage(span, self.last_usage)

    def _emit(self, event: StreamEvent) -> StreamEvent:
        if self.listener is not None:
            self.listener.on_event(event)
        return event

    async def _run(self) -> AsyncIterator[StreamEvent]:
        tools = self.registry.definitions()
        self.last_usage = Usage()
        turn = 0
        while True:
            if self.max_turns is not None and turn >= self.max_turns:
                raise TurnLimitExceeded(
                    f"maximum turns reached, max_turns={self.max_turns}"
                )
            turn += 1

            acc = StreamAccumulator()
            async with aclosing(self._stream_turn(acc, tools, turn)) as events:
                async for event in events:
                    yield event
            result = acc.result

            self.last_usage = self.last_usage + result.usage
            self.session.usage = self.session.usage + result.usage
            logger.debug(
                f"usage, prompt_tokens={result.usage.prompt_tokens}, "
                f"completion_tokens={result.usage.completion_tokens}"
            )

            if not result.tool_calls:
                self.session.add_assistant_message(result.text)
                yield self._emit(EndEvent(text=result.text, usage=self.last_usage))
                return

            self.session.append(
                ToolCallRequestMessage(
                    role=MessageRole.ASSISTANT, tool_calls=result.tool_calls,
                )
            )
            for tc in result.tool_calls:
                yield self._emit(ToolCallEvent(
                    call_id=tc.id, name=tc.name, arguments=tc.arguments,
                ))

            results = await self.dispatcher.dispatch(result.tool_calls)
            for r in results:
                self.session.append(ToolCallResultMessage(
                    content=[TextPart(text=r.output())],
                    tool_call_id=r.id,
                    name=r.name,
                ))
                yield self._emit(ToolResultEvent(
                    call_id=r.id, name=r.name, value=r.value,
                ))

    async def _stream_turn(
        self, acc: StreamAccumulator, tools: list, turn: int,
    ) -> AsyncIterator[StreamEvent]:
        request = self.provider.build_request(self.session, tools)
        decoder = self.provider.decoder()
        async with turn_span(self.provider.name, self.provider.model, turn) as span:
            try:
                async with self.transport.stream(request) as chunks:
                    async for payload in self.provider.frames(chunks):
                        for frame in decoder.decode(payload):
                            text = acc.feed(frame)
                            if text:
                                yield self._emit(DeltaEvent(text=text))
                acc.finish()
            except PuppetError as e:
                acc.fail()
                record_error(span, e)
                raise
            record_usage(span, acc.result.usage)
