"""Command line entry point.

Usage:
    puppet chat --conf ~/.config/puppet/llm.json --name main
    puppet complete prompt.md --name main
"""

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from puppet.builtin import default_registry
from puppet.config import Config
from puppet.engine import ChatEngine
from puppet.errors import PuppetError
from puppet.events import DeltaEvent, EndEvent, StreamEvent
from puppet.prompt import append_answer, apply_prompt, parse_prompt

logger = logging.getLogger(__name__)

WELCOME = """---
# Welcome to Puppet Chat
---
- /quit to quit the application.
- /file {file} to add a file to the next message.
---"""


def setup_logging(verbose: bool = False) -> None:
    console = logging.StreamHandler()
    console.setLevel(logging.INFO if verbose else logging.WARNING)
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format='%(asctime)s:%(name)s:%(levelname)s:%(message)s',
        datefmt='%Y-%m-%d %H:%M:%S',
        handlers=[
            logging.FileHandler('puppet.log'),
            console,
        ]
    )


class ConsoleListener:
    """Prints text deltas as they arrive."""

    def __init__(self, out=None):
        self.out = out or sys.stdout

    def on_event(self, event: StreamEvent) -> None:
        if isinstance(event, DeltaEvent):
            self.out.write(event.text)
            self.out.flush()
        elif isinstance(event, EndEvent):
            self.out.write("\n")
            self.out.flush()
            logger.info(
                f"usage, prompt_tokens={event.usage.prompt_tokens}, "
                f"completion_tokens={event.usage.completion_tokens}"
            )


def create_engine(args: argparse.Namespace) -> ChatEngine:
    config = Config.load(args.conf)
    engine = config.create(args.name, default_registry(), max_turns=args.max_turns)
    engine.listener = ConsoleListener()
    return engine


async def chat(args: argparse.Namespace) -> int:
    engine = create_engine(args)
    print(WELCOME)
    files: list[Path] = []
    while True:
        try:
            line = await asyncio.to_thread(input, "> ")
        except EOFError:
            break
        line = line.strip()
        if not line:
            continue
        if line.startswith("/quit"):
            break
        if line.startswith("/file "):
            file = Path(line[len("/file "):].strip()).expanduser()
            if not file.exists():
                print(f"file not exists, path: {file}")
            else:
                print(f"added file, path: {file}")
                files.append(file)
            continue

        try:
            engine.add_user_message(line, files)
            files = []
            await engine.generate()
        except PuppetError as e:
            print(f"Error: {e}")
    await engine.transport.aclose()
    return 0


async def complete(args: argparse.Namespace) -> int:
    engine = create_engine(args)
    try:
        apply_prompt(parse_prompt(args.prompt), engine)
        text = await engine.generate()
    finally:
        await engine.transport.aclose()
    append_answer(args.prompt, args.name, text)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="puppet", description="puppet ai")
    parser.add_argument("--verbose", action="store_true", help="log to console")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def common(sub: argparse.ArgumentParser) -> None:
        sub.add_argument("--conf", default=None, help="conf path")
        sub.add_argument("--name", default="main", help="agent name")
        sub.add_argument(
            "--max-turns", type=int, default=None,
            help="maximum requests per message",
        )

    chat_parser = subparsers.add_parser("chat", help="interactive chat")
    common(chat_parser)
    chat_parser.set_defaults(handler=chat)

    complete_parser = subparsers.add_parser("complete", help="complete prompt file")
    complete_parser.add_argument("prompt", type=Path, help="prompt file path")
    common(complete_parser)
    complete_parser.set_defaults(handler=complete)
    return parser


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    setup_logging(args.verbose)
    try:
        return asyncio.run(args.handler(args))
    except PuppetError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1


if __name__ == "__main__":
    sys.exit(main())
