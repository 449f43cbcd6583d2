"""Prompt files: a whole conversation written as markdown.

Example::

    # system, temperature=0.2
    You are a terse reviewer.

    # user
    Review this diagram.
    > file: diagram.png

    # assistant (main)
    ...

Sections start with ``# system``, ``# user`` or ``# assistant``; text
before the first header belongs to the user.  ``> file: <name>`` attaches
a file relative to the prompt file; ``.txt`` files are inlined into the
message instead.
"""

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

from puppet.engine import ChatEngine
from puppet.errors import ValidationError
from puppet.message import MessageRole

logger = logging.getLogger(__name__)

FILE_PREFIX = "> file: "
OPTION_PATTERN = re.compile(r"\b(temperature|top_p)=(\d+(?:\.\d+)?)")


@dataclass
class PromptMessage:
    role: MessageRole
    text: str
    files: list[Path] = field(default_factory=list)


@dataclass
class Prompt:
    messages: list[PromptMessage] = field(default_factory=list)
    options: dict[str, float] = field(default_factory=dict)


def read_text(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise ValidationError(f"can not read file, path={path}, error={e}") from e


def parse_options(line: str) -> dict[str, float]:
    return {key: float(value) for key, value in OPTION_PATTERN.findall(line)}


def parse_prompt(path: str | Path) -> Prompt:
    path = Path(path)
    prompt = Prompt()
    role = MessageRole.USER
    lines: list[str] = []
    files: list[Path] = []

    def flush():
        text = "".join(lines)
        if not text and not files:
            return
        if role == MessageRole.ASSISTANT and files:
            raise ValidationError(
                f"cannot include file in assistant message, files={files}"
            )
        prompt.messages.append(PromptMessage(role=role, text=text, files=list(files)))
        lines.clear()
        files.clear()

    for line in read_text(path).splitlines():
        if not line:
            continue
        if line.startswith("# system"):
            if prompt.messages or lines or files:
                raise ValidationError("system message must be at first")
            role = MessageRole.SYSTEM
            prompt.options.update(parse_options(line))
        elif line.startswith("# user"):
            flush()
            role = MessageRole.USER
        elif line.startswith("# assistant"):
            flush()
            role = MessageRole.ASSISTANT
        elif line.startswith(FILE_PREFIX):
            file = path.with_name(line[len(FILE_PREFIX):].strip())
            if file.suffix == ".txt":
                lines.append(f"> start of file: {file}\n")
                lines.append(read_text(file))
                lines.append(f"> end of file: {file}\n")
            else:
                logger.info(f"file: {file}")
                files.append(file)
        else:
            lines.append(line + "\n")
    flush()
    return prompt


def apply_prompt(prompt: Prompt, engine: ChatEngine) -> None:
    """Load *prompt* into the engine's conversation."""
    if prompt.options:
        logger.info(f"option: {prompt.options}")
        engine.set_option(**prompt.options)
    for message in prompt.messages:
        if message.role == MessageRole.SYSTEM:
            engine.set_system_message(message.text)
        elif message.role == MessageRole.USER:
            engine.add_user_message(message.text, message.files)
        else:
            engine.add_assistant_message(message.text)


def append_answer(path: str | Path, agent: str, text: str) -> None:
    with open(path, "a", encoding="utf-8") as f:
        f.write(f"\n# assistant ({agent})\n\n")
        f.write(text)
