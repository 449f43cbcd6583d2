"""Provider adapters.

An adapter is the small capability set that isolates one provider's
wire format from the chat engine: it builds the HTTP request from the
session, picks the framing of the streamed body, and supplies a
per-turn decoder that projects frame payloads into
:data:`~puppet.streaming.StreamingFrame` values.
"""

from __future__ import annotations

import json
import logging
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from typing import Any

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from puppet.errors import DecodeError
from puppet.message import (
    ImagePart,
    InlineDataPart,
    Message,
    MessageRole,
    TextPart,
    ToolCallRequestMessage,
    ToolCallResultMessage,
)
from puppet.session import Session
from puppet.sse import iter_json_array_frames, iter_sse_frames
from puppet.streaming import (
    End,
    StreamingFrame,
    TextDelta,
    ToolCallDelta,
    UsageUpdate,
)
from puppet.tools import ToolDefinition

logger = logging.getLogger(__name__)


@dataclass
class WireRequest:
    url: str
    headers: dict[str, str] = field(default_factory=dict)
    body: dict[str, Any] = field(default_factory=dict)


class FrameDecoder:
    """Turns one frame payload into zero or more streaming frames."""

    def decode(self, payload: str) -> list[StreamingFrame]:
        raise NotImplementedError


def _validate(model: type[BaseModel], payload: str) -> Any:
    try:
        return model.model_validate_json(payload)
    except pydantic.ValidationError as e:
        raise DecodeError(f"invalid frame, error={e}, data={payload}") from e


class ModelProvider:
    """Base adapter.

    Args:
        url: Completion endpoint.
        model: Model or deployment id.
        api_key: Credential sent with every request.
    """

    name = "base"

    def __init__(self, url: str, model: str, api_key: str = ""):
        self.url = url
        self.model = model
        self.api_key = api_key

    def build_request(
        self, session: Session, tools: list[ToolDefinition],
    ) -> WireRequest:
        raise NotImplementedError

    def frames(self, chunks: AsyncIterator[bytes]) -> AsyncIterator[str]:
        return iter_sse_frames(chunks)

    def decoder(self) -> FrameDecoder:
        raise NotImplementedError

    def decode_frame(self, payload: str) -> list[StreamingFrame]:
        """Decode a single payload with a fresh decoder."""
        return self.decoder().decode(payload)


# ---------------------------------------------------------------------------
# OpenAI chat completions
# ---------------------------------------------------------------------------

class StreamFunctionCall(BaseModel):
    name: str | None = None
    arguments: str | None = None


class StreamToolCall(BaseModel):
    index: int = 0
    id: str | None = None
    function: StreamFunctionCall = Field(default_factory=StreamFunctionCall)


class ChatStreamDelta(BaseModel):
    content: str | None = None
    tool_calls: list[StreamToolCall] | None = None


class ChatStreamChoice(BaseModel):
    index: int = 0
    delta: ChatStreamDelta = Field(default_factory=ChatStreamDelta)
    finish_reason: str | None = None


class ChatStreamUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class ChatStreamResponse(BaseModel):
    choices: list[ChatStreamChoice] = Field(default_factory=list)
    usage: ChatStreamUsage | None = None


class OpenAIFrameDecoder(FrameDecoder):
    def decode(self, payload: str) -> list[StreamingFrame]:
        response = _validate(ChatStreamResponse, payload)
        frames: list[StreamingFrame] = []
        # only n=1 is requested
        for choice in response.choices[:1]:
            delta = choice.delta
            if delta.tool_calls:
                for call in delta.tool_calls:
                    frames.append(ToolCallDelta(
                        index=call.index,
                        call_id=call.id,
                        name=call.function.name,
                        arguments_delta=call.function.arguments or "",
                    ))
            elif delta.content is not None:
                frames.append(TextDelta(text=delta.content))
            if choice.finish_reason is not None:
                frames.append(End(finish_reason=choice.finish_reason))
        if response.usage is not None:
            frames.append(UsageUpdate(
                prompt_tokens=response.usage.prompt_tokens,
                completion_tokens=response.usage.completion_tokens,
            ))
        return frames


def openai_content(message: Message) -> list[dict]:
    content = []
    for part in message.content:
        if isinstance(part, TextPart):
            content.append({"type": "text", "text": part.text})
        elif isinstance(part, ImagePart):
            content.append({"type": "image_url", "image_url": {"url": part.url}})
        elif isinstance(part, InlineDataPart):
            if part.mime_type.startswith("image/"):
                content.append(
                    {"type": "image_url", "image_url": {"url": part.data_url}}
                )
            else:
                content.append({"type": "file", "file": {"file_data": part.data_url}})
    return content


def openai_message(message: Message) -> dict:
    if isinstance(message, ToolCallRequestMessage):
        return {
            "role": message.role.value,
            "tool_calls": [
                {
                    "id": t.id,
                    "type": "function",
                    "function": {
                        "arguments": t.arguments,
                        "name": t.name,
                    },
                }
                for t in message.tool_calls
            ],
        }
    wire: dict[str, Any] = {
        "role": message.role.value,
        "content": openai_content(message),
    }
    if isinstance(message, ToolCallResultMessage):
        wire["tool_call_id"] = message.tool_call_id
    return wire


class OpenAIProvider(ModelProvider):
    """OpenAI-compatible ``/chat/completions`` endpoint streamed as SSE.

    Both a bearer token and an ``api-key`` header are sent so the same
    adapter works against Azure-style gateways.
    """

    name = "openai"
    include_usage = True

    def headers(self) -> dict[str, str]:
        return {
            "Content-Type": "application/json",
            "api-key": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
        }

    def build_request(
        self, session: Session, tools: list[ToolDefinition],
    ) -> WireRequest:
        options = session.options
        body: dict[str, Any] = {
            "model": self.model,
            "messages": [openai_message(m) for m in session.transcript],
            "temperature": 1.0 if options.temperature is None else options.temperature,
            "top_p": 1.0 if options.top_p is None else options.top_p,
            "stream": True,
        }
        if self.include_usage:
            body["stream_options"] = {"include_usage": True}
        if options.max_completion_tokens is not None:
            body["max_completion_tokens"] = options.max_completion_tokens
        if tools:
            body["tool_choice"] = "auto"
            body["tools"] = [t.get_schema() for t in tools]
        if options.response_format is not None:
            body["response_format"] = options.response_format
        return WireRequest(url=self.url, headers=self.headers(), body=body)

    def decoder(self) -> FrameDecoder:
        return OpenAIFrameDecoder()


class AzureOpenAIProvider(OpenAIProvider):
    """Azure OpenAI deployment.  Usage reporting in streams is not requested."""

    name = "azure"
    include_usage = False
    api_version = "2024-06-01"

    @classmethod
    def for_deployment(
        cls, endpoint: str, deployment: str, api_key: str,
    ) -> "AzureOpenAIProvider":
        endpoint = endpoint.rstrip("/")
        url = (
            f"{endpoint}/openai/deployments/{deployment}/chat/completions"
            f"?api-version={cls.api_version}"
        )
        return cls(url=url, model=deployment, api_key=api_key)

    def headers(self) -> dict[str, str]:
        return {"Content-Type": "application/json", "api-key": self.api_key}


# ---------------------------------------------------------------------------
# Vertex AI Gemini
# ---------------------------------------------------------------------------

class GeminiFunctionCall(BaseModel):
    name: str
    args: Any = None


class GeminiPart(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    text: str | None = None
    function_call: GeminiFunctionCall | None = Field(default=None, alias="functionCall")


class GeminiContent(BaseModel):
    role: str | None = None
    parts: list[GeminiPart] = Field(default_factory=list)


class GeminiCandidate(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    content: GeminiContent | None = None
    finish_reason: str | None = Field(default=None, alias="finishReason")


class GeminiUsageMetadata(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    prompt_token_count: int = Field(default=0, alias="promptTokenCount")
    candidates_token_count: int = Field(default=0, alias="candidatesTokenCount")


class GenerateContentResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    candidates: list[GeminiCandidate] = Field(default_factory=list)
    usage_metadata: GeminiUsageMetadata | None = Field(default=None, alias="usageMetadata")


class GeminiFrameDecoder(FrameDecoder):
    """Gemini sends each function call whole, without an id.

    Calls are numbered in arrival order within the turn and given the
    synthetic id ``call_<index>``.
    """

    def __init__(self) -> None:
        self._calls = 0

    def decode(self, payload: str) -> list[StreamingFrame]:
        response = _validate(GenerateContentResponse, payload)
        frames: list[StreamingFrame] = []
        for candidate in response.candidates[:1]:
            if candidate.content is not None:
                for part in candidate.content.parts:
                    if part.function_call is not None:
                        index = self._calls
                        self._calls += 1
                        frames.append(ToolCallDelta(
                            index=index,
                            call_id=f"call_{index}",
                            name=part.function_call.name,
                            arguments_delta=json.dumps(part.function_call.args or {}),
                        ))
                    elif part.text is not None:
                        frames.append(TextDelta(text=part.text))
            if candidate.finish_reason is not None:
                frames.append(End(finish_reason=candidate.finish_reason))
        if response.usage_metadata is not None:
            frames.append(UsageUpdate(
                prompt_tokens=response.usage_metadata.prompt_token_count,
                completion_tokens=response.usage_metadata.candidates_token_count,
            ))
        return frames


def gemini_parts(message: Message) -> list[dict]:
    if isinstance(message, ToolCallRequestMessage):
        return [
            {"functionCall": {"name": t.name, "args": t.parsed_arguments()}}
            for t in message.tool_calls
        ]
    if isinstance(message, ToolCallResultMessage):
        try:
            response = json.loads(message.text)
        except json.JSONDecodeError:
            response = message.text
        if not isinstance(response, dict):
            response = {"content": response}
        return [{"functionResponse": {"name": message.name, "response": response}}]

    parts = []
    for part in message.content:
        if isinstance(part, InlineDataPart):
            parts.append({"inlineData": {"mimeType": part.mime_type, "data": part.data}})
        elif isinstance(part, ImagePart):
            if part.url.startswith("data:"):
                header, _, data = part.url.partition(",")
                mime_type = header[len("data:"):].split(";")[0]
                parts.append({"inlineData": {"mimeType": mime_type, "data": data}})
            else:
                parts.append({"fileData": {"fileUri": part.url}})
    # inline data goes before the text it refers to
    parts.extend(
        {"text": p.text} for p in message.content if isinstance(p, TextPart)
    )
    return parts


class GeminiProvider(ModelProvider):
    """Vertex AI ``streamGenerateContent``, streamed as a JSON array."""

    name = "gemini"

    @classmethod
    def for_model(
        cls, endpoint: str, project: str, location: str, model: str,
        api_key: str,
    ) -> "GeminiProvider":
        endpoint = endpoint.rstrip("/")
        url = (
            f"{endpoint}/v1/projects/{project}/locations/{location}"
            f"/publishers/google/models/{model}:streamGenerateContent"
        )
        return cls(url=url, model=model, api_key=api_key)

    def build_request(
        self, session: Session, tools: list[ToolDefinition],
    ) -> WireRequest:
        options = session.options
        contents: list[dict] = []
        previous: Message | None = None
        for message in session.transcript:
            if message.role == MessageRole.SYSTEM:
                continue
            parts = gemini_parts(message)
            # responses to one batch of calls share a single content
            if isinstance(message, ToolCallResultMessage) and isinstance(
                previous, ToolCallResultMessage,
            ):
                contents[-1]["parts"].extend(parts)
            else:
                role = "model" if message.role == MessageRole.ASSISTANT else "user"
                contents.append({"role": role, "parts": parts})
            previous = message

        generation_config: dict[str, Any] = {
            "temperature": 1.0 if options.temperature is None else options.temperature,
            "topP": 0.95 if options.top_p is None else options.top_p,
            "maxOutputTokens": options.max_completion_tokens or 4096,
        }
        response_format = options.response_format or {}
        if response_format.get("type") in ("json_object", "json_schema"):
            generation_config["responseMimeType"] = "application/json"
            schema = (response_format.get("json_schema") or {}).get("schema")
            if schema is not None:
                generation_config["responseSchema"] = schema

        body: dict[str, Any] = {
            "contents": contents,
            "generationConfig": generation_config,
        }
        if session.system_message is not None:
            body["systemInstruction"] = {"parts": [{"text": session.system_message}]}

        last_user = session.last_user_message()
        if tools and last_user is not None and last_user.has_inline_data:
            logger.info("function call not supported with inline data, tools omitted")
        elif tools:
            body["tools"] = [{
                "functionDeclarations": [
                    t.get_schema()["function"] for t in tools
                ],
            }]

        headers = {
            "Content-Type": "application/json",
            "Accept": "application/json",
            "Authorization": f"Bearer {self.api_key}",
        }
        return WireRequest(url=self.url, headers=headers, body=body)

    def frames(self, chunks: AsyncIterator[bytes]) -> AsyncIterator[str]:
        return iter_json_array_frames(chunks)

    def decoder(self) -> FrameDecoder:
        return GeminiFrameDecoder()


PROVIDERS: dict[str, type[ModelProvider]] = {
    "openai": OpenAIProvider,
    "azure": AzureOpenAIProvider,
    "gemini": GeminiProvider,
}
