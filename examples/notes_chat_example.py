"""Streaming chat with local note-taking tools.

Demonstrates:
- Defining tools with @tool, sync and async
- Building a ChatEngine for an OpenAI-compatible endpoint
- Printing text deltas live through a listener
- Optional OpenTelemetry tracing

Usage:
    OPENAI_API_KEY=... uv run examples/notes_chat_example.py --model gpt-4o-mini --trace
    uv run examples/notes_chat_example.py --url http://localhost:8000/v1/chat/completions --model Qwen/Qwen3-8B
"""

import argparse
import asyncio
import os

from puppet.cli import ConsoleListener
from puppet.engine import ChatEngine
from puppet.errors import PuppetError
from puppet.provider import OpenAIProvider
from puppet.tools import FunctionRegistry, tool

NOTES: dict[str, str] = {}


def setup_tracing(service_name: str):
    from opentelemetry import trace
    from opentelemetry.sdk.resources import SERVICE_NAME, Resource
    from opentelemetry.sdk.trace import TracerProvider
    from opentelemetry.sdk.trace.export import (
        SimpleSpanProcessor, ConsoleSpanExporter,
    )
    from puppet.instrumentation import instrument

    provider = TracerProvider(
        resource=Resource({SERVICE_NAME: service_name})
    )
    provider.add_span_processor(SimpleSpanProcessor(ConsoleSpanExporter()))
    trace.set_tracer_provider(provider)
    instrument()


@tool
def add_note(title: str, content: str):
    """Save a note with the given title and content."""
    NOTES[title] = content
    return f"Saved note '{title}'."


@tool
def get_note(title: str):
    """Retrieve a note by title."""
    return NOTES.get(title, f"No note found with title '{title}'.")


@tool
async def list_notes():
    """List all saved note titles."""
    if not NOTES:
        return "No notes yet."
    return ", ".join(NOTES)


async def main():
    parser = argparse.ArgumentParser(description="Notes chat")
    parser.add_argument("--model", default="gpt-4o-mini")
    parser.add_argument("--url", default="https://api.openai.com/v1/chat/completions")
    parser.add_argument("--trace", action="store_true")
    args = parser.parse_args()

    if args.trace:
        setup_tracing("notes-chat")

    engine = ChatEngine(
        provider=OpenAIProvider(
            url=args.url,
            model=args.model,
            api_key=os.environ.get("OPENAI_API_KEY", ""),
        ),
        registry=FunctionRegistry([add_note, get_note, list_notes]),
        listener=ConsoleListener(),
        max_turns=8,
    )
    engine.set_system_message(
        "You are a helpful note-taking assistant. "
        "Use the provided tools to manage the user's notes."
    )

    print("Note-taking Assistant\n")

    while True:
        try:
            user_input = input("You: ")
        except (KeyboardInterrupt, EOFError):
            print("\nGoodbye!")
            break

        engine.add_user_message(user_input)
        try:
            await engine.generate()
        except PuppetError as e:
            print(f"Error: {e}")
        print()

    await engine.transport.aclose()


if __name__ == "__main__":
    asyncio.run(main())
