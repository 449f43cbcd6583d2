import logging
import uuid
from collections.abc import Iterable
from pathlib import Path
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field, SerializeAsAny

from puppet.attachments import load_attachment
from puppet.errors import ValidationError
from puppet.message import (
    Message,
    MessageRole,
    TextPart,
    ToolCallRequestMessage,
    ToolCallResultMessage,
)
from puppet.streaming import Usage

logger = logging.getLogger(__name__)


class GenerationOptions(BaseModel):
    """Per-session request parameters.  ``None`` means provider default."""

    model_config = ConfigDict(extra="forbid", validate_assignment=True)

    temperature: float | None = None
    top_p: float | None = None
    response_format: dict | None = None
    max_completion_tokens: int | None = None


class Session(BaseModel):
    """The conversation state owned by one chat engine.

    The transcript is append-only.  At most one system message exists and
    it is always first.  A tool result must answer a call made by the
    assistant message that opened the current run of tool results.
    """

    session_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    transcript: list[SerializeAsAny[Message]] = Field(default_factory=list)
    options: GenerationOptions = Field(default_factory=GenerationOptions)
    usage: Usage = Field(default_factory=Usage)

    @property
    def system_message(self) -> str | None:
        if self.transcript and self.transcript[0].role == MessageRole.SYSTEM:
            return self.transcript[0].text
        return None

    def set_system_message(self, text: str) -> None:
        message = Message.from_text(MessageRole.SYSTEM, text)
        if self.system_message is not None:
            self.transcript[0] = message
        else:
            self.transcript.insert(0, message)
        logger.debug(f"[chat] system: {text}")

    def append(self, message: Message) -> None:
        if message.role == MessageRole.SYSTEM:
            raise ValidationError("use set_system_message for system messages")
        if isinstance(message, ToolCallResultMessage):
            self._check_tool_result(message)
        self.transcript.append(message)

    def _check_tool_result(self, message: ToolCallResultMessage) -> None:
        for previous in reversed(self.transcript):
            if isinstance(previous, ToolCallResultMessage):
                continue
            if isinstance(previous, ToolCallRequestMessage):
                if any(tc.id == message.tool_call_id for tc in previous.tool_calls):
                    return
            break
        raise ValidationError(
            f"tool result does not match a pending call, id={message.tool_call_id}"
        )

    def add_user_message(
        self, text: str, attachments: Iterable[str | Path] = (),
    ) -> Message:
        parts = [load_attachment(path) for path in attachments]
        message = Message(
            role=MessageRole.USER, content=[TextPart(text=text), *parts],
        )
        self.append(message)
        logger.debug(f"[chat] user: {text}")
        return message

    def add_assistant_message(self, text: str) -> Message:
        message = Message.from_text(MessageRole.ASSISTANT, text)
        self.append(message)
        logger.debug(f"[chat] assistant: {text}")
        return message

    def set_option(self, **options: Any) -> None:
        try:
            updated = GenerationOptions.model_validate(
                {**self.options.model_dump(), **options}
            )
        except pydantic.ValidationError as e:
            raise ValidationError(f"invalid option, error={e}") from e
        self.options = updated

    def last_user_message(self) -> Message | None:
        for message in reversed(self.transcript):
            if message.role == MessageRole.USER:
                return message
        return None
