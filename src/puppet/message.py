import json
from enum import Enum
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_serializer

from puppet.errors import DecodeError


class MessageRole(Enum):
    SYSTEM = "system"
    ASSISTANT = "assistant"
    USER = "user"
    TOOL = "tool"


class TextPart(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: Literal["text"] = "text"
    text: str


class ImagePart(BaseModel):
    """Reference to an image by URL (http(s) or ``data:`` URI)."""

    model_config = ConfigDict(frozen=True)

    type: Literal["image_url"] = "image_url"
    url: str


class InlineDataPart(BaseModel):
    """Binary content carried inline as base64."""

    model_config = ConfigDict(frozen=True)

    type: Literal["inline_data"] = "inline_data"
    mime_type: str
    data: str

    @property
    def data_url(self) -> str:
        return f"data:{self.mime_type};base64,{self.data}"


ContentPart = Annotated[
    Union[TextPart, ImagePart, InlineDataPart],
    Field(discriminator="type"),
]


class ToolCall(BaseModel):
    """A tool invocation requested by the model.

    ``arguments`` is the raw JSON text exactly as streamed; it is parsed
    only when the call is dispatched.
    """

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    arguments: str = ""

    def parsed_arguments(self) -> Any:
        if not self.arguments.strip():
            return {}
        try:
            return json.loads(self.arguments)
        except json.JSONDecodeError as e:
            raise DecodeError(
                f"invalid function arguments, name={self.name}, "
                f"id={self.id}, arguments={self.arguments}"
            ) from e


class Message(BaseModel):
    model_config = ConfigDict(frozen=True)

    role: MessageRole
    content: list[ContentPart] = Field(default_factory=list)

    @field_serializer('role')
    def serialize_role(self, role: MessageRole, _info) -> str:
        return role.value

    @classmethod
    def from_text(cls, role: MessageRole, text: str) -> "Message":
        return cls(role=role, content=[TextPart(text=text)])

    @property
    def text(self) -> str:
        """Concatenation of all text parts."""
        return "".join(
            p.text for p in self.content if isinstance(p, TextPart)
        )

    @property
    def has_inline_data(self) -> bool:
        return any(isinstance(p, InlineDataPart) for p in self.content)


class ToolCallRequestMessage(Message):
    role: MessageRole = MessageRole.ASSISTANT
    tool_calls: list[ToolCall]


class ToolCallResultMessage(Message):
    role: MessageRole = MessageRole.TOOL
    tool_call_id: str
    name: str
