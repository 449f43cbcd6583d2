"""Events emitted while a chat engine runs."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol

from puppet.streaming import Usage


@dataclass
class StreamEvent:
    """Base for all streaming events."""


@dataclass
class DeltaEvent(StreamEvent):
    """Text fragment from the provider stream, forwarded as it arrives."""

    text: str = ""


@dataclass
class ToolCallEvent(StreamEvent):
    call_id: str = ""
    name: str = ""
    arguments: str = ""


@dataclass
class ToolResultEvent(StreamEvent):
    call_id: str = ""
    name: str = ""
    value: Any = None


@dataclass
class EndEvent(StreamEvent):
    """Final event of a ``generate`` call; always the last event yielded."""

    text: str = ""
    usage: Usage = field(default_factory=Usage)


class ChatListener(Protocol):
    def on_event(self, event: StreamEvent) -> None:
        ...
