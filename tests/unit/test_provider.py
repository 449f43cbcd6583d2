import json

import pytest

from puppet.errors import DecodeError
from puppet.message import (
    ImagePart,
    InlineDataPart,
    Message,
    MessageRole,
    TextPart,
    ToolCall,
    ToolCallRequestMessage,
    ToolCallResultMessage,
)
from puppet.provider import (
    PROVIDERS,
    AzureOpenAIProvider,
    GeminiProvider,
    OpenAIProvider,
)
from puppet.session import Session
from puppet.streaming import End, TextDelta, ToolCallDelta, UsageUpdate
from tests.conftest import (
    finish_chunk,
    get_random_number,
    text_chunk,
    tool_call_chunk,
    usage_chunk,
)


@pytest.fixture
def session():
    session = Session()
    session.set_system_message("be brief")
    session.add_user_message("pick a number")
    return session


def tool_round(session):
    session.append(ToolCallRequestMessage(
        tool_calls=[ToolCall(id="c1", name="get_random_number", arguments='{"max": 10}')],
    ))
    session.append(ToolCallResultMessage(
        content=[TextPart(text='{"success": true, "result": 3}')],
        tool_call_id="c1",
        name="get_random_number",
    ))


# ---------------------------------------------------------------------------
# OpenAI
# ---------------------------------------------------------------------------


class TestOpenAIRequest:
    def test_body_defaults(self, openai_provider, session):
        request = openai_provider.build_request(session, [])

        assert request.url == "https://llm.test/v1/chat/completions"
        assert request.headers["Authorization"] == "Bearer sk-test"
        assert request.headers["api-key"] == "sk-test"
        assert request.body == {
            "model": "gpt-test",
            "messages": [
                {"role": "system", "content": [{"type": "text", "text": "be brief"}]},
                {"role": "user", "content": [{"type": "text", "text": "pick a number"}]},
            ],
            "temperature": 1.0,
            "top_p": 1.0,
            "stream": True,
            "stream_options": {"include_usage": True},
        }

    def test_options_and_tools(self, openai_provider, session):
        session.set_option(
            temperature=0.2, top_p=0.5, max_completion_tokens=64,
            response_format={"type": "json_object"},
        )
        body = openai_provider.build_request(session, [get_random_number]).body

        assert body["temperature"] == 0.2
        assert body["top_p"] == 0.5
        assert body["max_completion_tokens"] == 64
        assert body["response_format"] == {"type": "json_object"}
        assert body["tool_choice"] == "auto"
        assert body["tools"][0]["function"]["name"] == "get_random_number"

    def test_tool_round_trip_messages(self, openai_provider, session):
        tool_round(session)
        messages = openai_provider.build_request(session, []).body["messages"]

        assert messages[2] == {
            "role": "assistant",
            "tool_calls": [{
                "id": "c1",
                "type": "function",
                "function": {"arguments": '{"max": 10}', "name": "get_random_number"},
            }],
        }
        assert messages[3]["role"] == "tool"
        assert messages[3]["tool_call_id"] == "c1"

    def test_inline_data_parts(self, openai_provider):
        session = Session()
        session.append(Message(role=MessageRole.USER, content=[
            TextPart(text="compare"),
            InlineDataPart(mime_type="image/png", data="AAA"),
            InlineDataPart(mime_type="application/pdf", data="BBB"),
            ImagePart(url="https://example.com/a.jpg"),
        ]))
        content = openai_provider.build_request(session, []).body["messages"][0]["content"]

        assert content[1] == {
            "type": "image_url", "image_url": {"url": "data:image/png;base64,AAA"},
        }
        assert content[2] == {
            "type": "file", "file": {"file_data": "data:application/pdf;base64,BBB"},
        }
        assert content[3]["image_url"]["url"] == "https://example.com/a.jpg"


class TestOpenAIDecode:
    def test_text(self, openai_provider):
        frames = openai_provider.decode_frame(json.dumps(text_chunk("hi")))
        assert frames == [TextDelta("hi")]

    def test_tool_call_fragment(self, openai_provider):
        payload = json.dumps(tool_call_chunk(1, call_id="c1", name="f", arguments='{"'))
        assert openai_provider.decode_frame(payload) == [
            ToolCallDelta(index=1, call_id="c1", name="f", arguments_delta='{"'),
        ]

    def test_finish_and_usage(self, openai_provider):
        assert openai_provider.decode_frame(json.dumps(finish_chunk("stop"))) == [
            End("stop"),
        ]
        assert openai_provider.decode_frame(json.dumps(usage_chunk(10, 15))) == [
            UsageUpdate(prompt_tokens=10, completion_tokens=15),
        ]

    def test_invalid_frame(self, openai_provider):
        with pytest.raises(DecodeError, match="invalid frame"):
            openai_provider.decode_frame("{not json")
        with pytest.raises(DecodeError):
            openai_provider.decode_frame('{"choices": "nope"}')


# ---------------------------------------------------------------------------
# Azure
# ---------------------------------------------------------------------------


def test_azure_deployment_request(session):
    provider = AzureOpenAIProvider.for_deployment(
        "https://res.openai.azure.com/", "gpt4o", "key",
    )
    request = provider.build_request(session, [])

    assert request.url == (
        "https://res.openai.azure.com/openai/deployments/gpt4o/chat/completions"
        "?api-version=2024-06-01"
    )
    assert request.headers == {"Content-Type": "application/json", "api-key": "key"}
    assert "stream_options" not in request.body


def test_provider_table():
    assert PROVIDERS["openai"] is OpenAIProvider
    assert PROVIDERS["azure"] is AzureOpenAIProvider
    assert PROVIDERS["gemini"] is GeminiProvider


# ---------------------------------------------------------------------------
# Gemini
# ---------------------------------------------------------------------------


class TestGeminiRequest:
    def test_url(self, gemini_provider):
        assert gemini_provider.url == (
            "https://vertex.test/v1/projects/proj/locations/us-central1"
            "/publishers/google/models/gemini-test:streamGenerateContent"
        )

    def test_body(self, gemini_provider, session):
        request = gemini_provider.build_request(session, [get_random_number])

        assert request.headers["Authorization"] == "Bearer token"
        assert request.body["systemInstruction"] == {"parts": [{"text": "be brief"}]}
        assert request.body["contents"] == [
            {"role": "user", "parts": [{"text": "pick a number"}]},
        ]
        assert request.body["generationConfig"] == {
            "temperature": 1.0, "topP": 0.95, "maxOutputTokens": 4096,
        }
        declarations = request.body["tools"][0]["functionDeclarations"]
        assert declarations[0]["name"] == "get_random_number"

    def test_tool_round_trip_contents(self, gemini_provider, session):
        tool_round(session)
        contents = gemini_provider.build_request(session, []).body["contents"]

        assert contents[1] == {
            "role": "model",
            "parts": [{"functionCall": {"name": "get_random_number", "args": {"max": 10}}}],
        }
        assert contents[2] == {
            "role": "user",
            "parts": [{"functionResponse": {
                "name": "get_random_number",
                "response": {"success": True, "result": 3},
            }}],
        }

    def test_non_object_result_is_wrapped(self, gemini_provider, session):
        session.append(ToolCallRequestMessage(
            tool_calls=[ToolCall(id="c1", name="f", arguments="")],
        ))
        session.append(ToolCallResultMessage(
            content=[TextPart(text="7")], tool_call_id="c1", name="f",
        ))
        parts = gemini_provider.build_request(session, []).body["contents"][2]["parts"]
        assert parts[0]["functionResponse"]["response"] == {"content": 7}

    def test_inline_data_omits_tools(self, gemini_provider):
        session = Session()
        session.append(Message(role=MessageRole.USER, content=[
            TextPart(text="describe"),
            InlineDataPart(mime_type="image/png", data="AAA"),
        ]))
        body = gemini_provider.build_request(session, [get_random_number]).body

        assert "tools" not in body
        assert body["contents"][0]["parts"] == [
            {"inlineData": {"mimeType": "image/png", "data": "AAA"}},
            {"text": "describe"},
        ]

    def test_json_response_format(self, gemini_provider, session):
        schema = {"type": "object", "properties": {"n": {"type": "integer"}}}
        session.set_option(response_format={
            "type": "json_schema", "json_schema": {"name": "n", "schema": schema},
        })
        config = gemini_provider.build_request(session, []).body["generationConfig"]

        assert config["responseMimeType"] == "application/json"
        assert config["responseSchema"] == schema


class TestGeminiDecode:
    def test_text_and_usage(self, gemini_provider):
        payload = json.dumps({
            "candidates": [{
                "content": {"role": "model", "parts": [{"text": "hi"}]},
                "finishReason": "STOP",
            }],
            "usageMetadata": {"promptTokenCount": 4, "candidatesTokenCount": 2},
        })
        assert gemini_provider.decode_frame(payload) == [
            TextDelta("hi"),
            End("STOP"),
            UsageUpdate(prompt_tokens=4, completion_tokens=2),
        ]

    def test_function_calls_get_sequential_ids(self, gemini_provider):
        decoder = gemini_provider.decoder()
        first = json.dumps({"candidates": [{"content": {"parts": [
            {"functionCall": {"name": "f", "args": {"x": 1}}},
        ]}}]})
        second = json.dumps({"candidates": [{"content": {"parts": [
            {"functionCall": {"name": "g"}},
        ]}}]})

        assert decoder.decode(first) == [
            ToolCallDelta(index=0, call_id="call_0", name="f", arguments_delta='{"x": 1}'),
        ]
        assert decoder.decode(second) == [
            ToolCallDelta(index=1, call_id="call_1", name="g", arguments_delta="{}"),
        ]


def test_gemini_next_user_message_gets_own_content(gemini_provider, session):
    tool_round(session)
    session.add_user_message("again")
    contents = gemini_provider.build_request(session, []).body["contents"]

    assert [c["role"] for c in contents] == ["user", "model", "user", "user"]
    assert contents[3]["parts"] == [{"text": "again"}]
