"""Streaming primitives for provider responses.

Provider decoders turn each frame into :data:`StreamingFrame` values.
The :class:`ToolCallAccumulator` reassembles tool calls whose arguments
arrive in fragments across multiple frames, and the
:class:`StreamAccumulator` drives one turn from first frame to a
:class:`TurnResult`.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Union

from puppet.errors import DecodeError
from puppet.message import ToolCall


@dataclass(frozen=True)
class TextDelta:
    """A fragment of assistant text."""

    text: str


@dataclass(frozen=True)
class ToolCallDelta:
    """A fragment of a tool call, addressed by its positional index."""

    index: int
    call_id: str | None = None
    name: str | None = None
    arguments_delta: str = ""


@dataclass(frozen=True)
class UsageUpdate:
    prompt_tokens: int = 0
    completion_tokens: int = 0


@dataclass(frozen=True)
class End:
    """The current choice finished; trailing usage frames may follow."""

    finish_reason: str | None = None


StreamingFrame = Union[TextDelta, ToolCallDelta, UsageUpdate, End]


@dataclass
class Usage:
    """Token counters.  Add two together to total a multi-turn exchange."""

    prompt_tokens: int = 0
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.prompt_tokens + self.completion_tokens

    def __add__(self, other: Usage) -> Usage:
        return Usage(
            prompt_tokens=self.prompt_tokens + other.prompt_tokens,
            completion_tokens=self.completion_tokens + other.completion_tokens,
        )


@dataclass
class PendingToolCall:
    id: str = ""
    name: str = ""
    arguments: str = ""


class ToolCallAccumulator:
    """Assembles complete tool calls from streaming fragments.

    ``id`` and ``name`` are taken from the first fragment that carries
    them and never overwritten; argument fragments are concatenated in
    arrival order.
    """

    def __init__(self) -> None:
        self._pending: dict[int, PendingToolCall] = {}

    def __bool__(self) -> bool:
        return bool(self._pending)

    def feed(self, fragment: ToolCallDelta) -> None:
        if fragment.index not in self._pending:
            self._pending[fragment.index] = PendingToolCall()
        tc = self._pending[fragment.index]
        if fragment.call_id and not tc.id:
            tc.id = fragment.call_id
        if fragment.name and not tc.name:
            tc.name = fragment.name
        if fragment.arguments_delta:
            tc.arguments += fragment.arguments_delta

    def finalize(self) -> list[ToolCall]:
        """Return completed tool calls in index order.

        Raises:
            DecodeError: A call never received its ``id`` or ``name``.
        """
        calls = []
        for index in sorted(self._pending):
            tc = self._pending[index]
            if not tc.id or not tc.name:
                raise DecodeError(
                    f"incomplete tool call, index={index}, id={tc.id!r}, "
                    f"name={tc.name!r}"
                )
            calls.append(
                ToolCall(id=tc.id, name=tc.name, arguments=tc.arguments)
            )
        return calls


class StreamState(Enum):
    COLLECTING = "collecting"
    DONE = "done"
    FAILED = "failed"


@dataclass
class TurnResult:
    """Outcome of one request/stream-drain cycle.

    Exactly one of ``text`` and ``tool_calls`` is meaningful: when tool
    calls are present the text is discarded.
    """

    text: str | None = None
    tool_calls: list[ToolCall] = field(default_factory=list)
    usage: Usage = field(default_factory=Usage)
    finish_reason: str | None = None


class StreamAccumulator:
    """Owns the in-progress assistant message of a single turn."""

    def __init__(self) -> None:
        self.state = StreamState.COLLECTING
        self.usage = Usage()
        self.finish_reason: str | None = None
        self._text: list[str] = []
        self.result: TurnResult | None = None
        self._tool_calls = ToolCallAccumulator()

    @property
    def text(self) -> str:
        return "".join(self._text)

    def feed(self, frame: StreamingFrame) -> str | None:
        """Apply one frame.

        Returns:
            The text to forward to a live listener, or ``None``.
        """
        if self.state is not StreamState.COLLECTING:
            raise DecodeError(f"frame received after stream {self.state.value}")
        if isinstance(frame, TextDelta):
            if not frame.text:
                return None
            self._text.append(frame.text)
            return frame.text
        if isinstance(frame, ToolCallDelta):
            self._tool_calls.feed(frame)
        elif isinstance(frame, UsageUpdate):
            self.usage = Usage(
                prompt_tokens=frame.prompt_tokens,
                completion_tokens=frame.completion_tokens,
            )
        elif isinstance(frame, End):
            self.finish_reason = frame.finish_reason
        return None

    def finish(self) -> TurnResult:
        """Close the turn once the frame stream is exhausted."""
        if self.state is not StreamState.COLLECTING:
            raise DecodeError(f"stream already {self.state.value}")
        try:
            if self._tool_calls:
                result = TurnResult(
                    tool_calls=self._tool_calls.finalize(),
                    usage=self.usage,
                    finish_reason=self.finish_reason,
                )
            elif self._text:
                result = TurnResult(
                    text=self.text,
                    usage=self.usage,
                    finish_reason=self.finish_reason,
                )
            else:
                raise DecodeError(
                    "response ended without text or tool calls, "
                    f"finish_reason={self.finish_reason}"
                )
        except DecodeError:
            self.state = StreamState.FAILED
            raise
        self.state = StreamState.DONE
        self.result = result
        return result

    def fail(self) -> None:
        self.state = StreamState.FAILED
