import json

import httpx
import pytest

from puppet.engine import ChatEngine
from puppet.provider import GeminiProvider, OpenAIProvider
from puppet.tools import FunctionRegistry, tool
from puppet.transport import HttpTransport


# ---------------------------------------------------------------------------
# Wire payload builders (mirror the OpenAI streaming chunk shape)
# ---------------------------------------------------------------------------

def text_chunk(text: str, finish_reason: str | None = None) -> dict:
    return {
        "choices": [{
            "index": 0,
            "delta": {"content": text},
            "finish_reason": finish_reason,
        }],
    }


def tool_call_chunk(
    index: int = 0,
    call_id: str | None = None,
    name: str | None = None,
    arguments: str = "",
) -> dict:
    function = {"arguments": arguments}
    if name is not None:
        function["name"] = name
    call = {"index": index, "function": function}
    if call_id is not None:
        call["id"] = call_id
    return {
        "choices": [{
            "index": 0,
            "delta": {"content": None, "tool_calls": [call]},
            "finish_reason": None,
        }],
    }


def finish_chunk(reason: str = "stop") -> dict:
    return {"choices": [{"index": 0, "delta": {}, "finish_reason": reason}]}


def usage_chunk(prompt_tokens: int, completion_tokens: int) -> dict:
    return {
        "choices": [],
        "usage": {
            "prompt_tokens": prompt_tokens,
            "completion_tokens": completion_tokens,
            "total_tokens": prompt_tokens + completion_tokens,
        },
    }


def sse_body(*payloads: dict, done: bool = True) -> bytes:
    """Encode payloads as ``data: <json>\\n\\n`` frames."""
    body = "".join(f"data: {json.dumps(p)}\n\n" for p in payloads)
    if done:
        body += "data: [DONE]\n\n"
    return body.encode("utf-8")


def text_response(text: str, usage: tuple[int, int] | None = None) -> bytes:
    """Fake streamed response with text only (no tool calls)."""
    payloads = [text_chunk(text), finish_chunk("stop")]
    if usage is not None:
        payloads.append(usage_chunk(*usage))
    return sse_body(*payloads)


def tool_call_response(
    name: str,
    args: dict,
    call_id: str = "call_1",
    usage: tuple[int, int] | None = None,
) -> bytes:
    """Fake streamed response containing a single tool call whose
    arguments arrive in two fragments."""
    arguments = json.dumps(args)
    half = len(arguments) // 2
    payloads = [
        tool_call_chunk(0, call_id=call_id, name=name),
        tool_call_chunk(0, arguments=arguments[:half]),
        tool_call_chunk(0, arguments=arguments[half:]),
        finish_chunk("tool_calls"),
    ]
    if usage is not None:
        payloads.append(usage_chunk(*usage))
    return sse_body(*payloads)


def multi_tool_call_response(calls: list[tuple[str, dict, str]]) -> bytes:
    """Each item in *calls* is ``(func_name, args_dict, call_id)``."""
    payloads = []
    for index, (name, args, call_id) in enumerate(calls):
        payloads.append(tool_call_chunk(index, call_id=call_id, name=name))
        payloads.append(tool_call_chunk(index, arguments=json.dumps(args)))
    payloads.append(finish_chunk("tool_calls"))
    return sse_body(*payloads)


def split(body: bytes, size: int) -> list[bytes]:
    """Cut *body* into network-sized chunks."""
    return [body[i:i + size] for i in range(0, len(body), size)]


async def achunks(*parts: bytes):
    for part in parts:
        yield part


# ---------------------------------------------------------------------------
# Mock server
# ---------------------------------------------------------------------------

class MockServer:
    """Serves pre-queued streamed bodies through ``httpx.MockTransport``.
    No network calls."""

    def __init__(self):
        self.responses: list[tuple[int, list[bytes]]] = []
        self.requests: list[httpx.Request] = []

    def queue(self, body: bytes | list[bytes], status: int = 200) -> None:
        chunks = body if isinstance(body, list) else [body]
        self.responses.append((status, chunks))

    @property
    def bodies(self) -> list[dict]:
        return [json.loads(r.content) for r in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        status, chunks = self.responses.pop(0)
        return httpx.Response(status, content=achunks(*chunks))

    def transport(self) -> HttpTransport:
        return HttpTransport(
            client=httpx.AsyncClient(transport=httpx.MockTransport(self.handler)),
        )


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

@tool
def echo(text: str):
    """Echo text back."""
    return text


@tool
def get_random_number(max: int):
    """Generate random number."""
    return 7


@pytest.fixture
def server():
    return MockServer()


@pytest.fixture
def openai_provider():
    return OpenAIProvider(
        url="https://llm.test/v1/chat/completions",
        model="gpt-test",
        api_key="sk-test",
    )


@pytest.fixture
def gemini_provider():
    return GeminiProvider.for_model(
        endpoint="https://vertex.test",
        project="proj",
        location="us-central1",
        model="gemini-test",
        api_key="token",
    )


@pytest.fixture
def make_engine(server, openai_provider):
    """Factory fixture building engines wired to the mock server."""
    def _make(tools=None, provider=None, **kwargs):
        return ChatEngine(
            provider=provider or openai_provider,
            registry=FunctionRegistry(tools or []),
            transport=server.transport(),
            **kwargs,
        )
    return _make
