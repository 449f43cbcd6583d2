import asyncio
import inspect
import json
import logging
from collections.abc import Iterable, Iterator
from types import MappingProxyType
from typing import Any, Callable

from pydantic import BaseModel, ConfigDict, Field

from puppet.errors import ToolExecutionError, ValidationError
from puppet.instrumentation import record_error, tool_span
from puppet.message import ToolCall

logger = logging.getLogger(__name__)


class ToolCallResult(BaseModel):
    id: str
    name: str
    value: Any = None

    def output(self) -> str:
        """JSON text sent back to the model."""
        return json.dumps(self.value)


class ToolDefinition(BaseModel):
    """A named, schema-described function the model may call.

    ``implementation`` receives the parsed argument JSON (usually a dict)
    and returns a JSON-serialisable value.  It may be a plain function or
    a coroutine function.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    name: str
    description: str = ""
    parameters: dict | None = None
    implementation: Callable[[Any], Any] = Field(exclude=True)

    def get_schema(self) -> dict:
        function: dict[str, Any] = {
            "name": self.name,
            "description": self.description,
        }
        if self.parameters is not None:
            function["parameters"] = self.parameters
        return {"type": "function", "function": function}

    async def __call__(self, arguments: Any) -> Any:
        if inspect.iscoroutinefunction(self.implementation):
            return await self.implementation(arguments)
        # run sync implementations off the event loop so a batch runs concurrently
        return await asyncio.to_thread(self.implementation, arguments)


def normalize_to_json_type(python_type_str: str) -> str:
    type_mapping = {
        'str': 'string',
        'int': 'integer',
        'float': 'number',
        'bool': 'boolean',
        'NoneType': 'null',
        'dict': 'object',
        'list': 'array',
        'tuple': 'array',  # closest equivalent
        'set': 'array',    # closest equivalent
    }
    return type_mapping.get(python_type_str, 'string')


def parse_properties(func: Callable) -> dict[str, dict[str, str]]:
    signature = inspect.signature(func)
    properties = {}
    for param_name, param in signature.parameters.items():
        annotation = param.annotation
        type_name = getattr(annotation, "__name__", str(annotation))
        if annotation is inspect.Parameter.empty:
            type_name = "str"
        properties[param_name] = {
            "type": normalize_to_json_type(type_name),
            "description": "",
        }
    return properties


def get_required_params(func: Callable) -> list[str]:
    signature = inspect.signature(func)
    return [
        name
        for name, param in signature.parameters.items()
        if param.default is inspect.Parameter.empty
    ]


def tool(
    func: Callable | None = None,
    *,
    name: str | None = None,
    description: str | None = None,
):
    """Build a :class:`ToolDefinition` from a Python function.

    The parameter schema is derived from the signature; the docstring
    becomes the description.  The model's arguments are passed as keyword
    arguments.

    Example::

        @tool
        def get_weather(city: str):
            \"\"\"Current weather for a city.\"\"\"
            return {"city": city, "sky": "clear"}
    """

    def wrap(f: Callable) -> ToolDefinition:
        if inspect.iscoroutinefunction(f):
            async def implementation(arguments):
                return await f(**(arguments or {}))
        else:
            def implementation(arguments):
                return f(**(arguments or {}))

        properties = parse_properties(f)
        return ToolDefinition(
            name=name or f.__name__,
            description=description or inspect.getdoc(f) or "",
            parameters={
                "type": "object",
                "properties": properties,
                "required": get_required_params(f),
            } if properties else None,
            implementation=implementation,
        )

    if func is not None:
        return wrap(func)
    return wrap


class FunctionRegistry:
    """Read-only table of tool definitions, keyed by name.

    Built once, then shared by reference with engines and concurrent
    tool tasks.

    Args:
        tools: Definitions to register.  Duplicate names are rejected.
    """

    def __init__(self, tools: Iterable[ToolDefinition] = ()):
        table: dict[str, ToolDefinition] = {}
        for t in tools:
            if t.name in table:
                raise ValidationError(f"duplicate function, name={t.name}")
            table[t.name] = t
        self._tools = MappingProxyType(table)

    def __len__(self) -> int:
        return len(self._tools)

    def __bool__(self) -> bool:
        return bool(self._tools)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def __iter__(self) -> Iterator[ToolDefinition]:
        return iter(self._tools.values())

    def get(self, name: str) -> ToolDefinition:
        tool_def = self._tools.get(name)
        if tool_def is None:
            raise ValidationError(f"function not found, name={name}")
        return tool_def

    def definitions(self) -> list[ToolDefinition]:
        return list(self._tools.values())

    def subset(self, names: Iterable[str]) -> "FunctionRegistry":
        """A registry containing only *names*, in the given order."""
        return FunctionRegistry(self.get(n) for n in names)


class ToolDispatcher:
    """Fans a batch of tool calls out to concurrent tasks and back in.

    Results come back in call order regardless of completion order.  The
    first failure cancels the remaining tasks and fails the batch.
    """

    def __init__(self, registry: FunctionRegistry):
        self.registry = registry

    async def dispatch(self, calls: list[ToolCall]) -> list[ToolCallResult]:
        prepared = [
            (call, self.registry.get(call.name), call.parsed_arguments())
            for call in calls
        ]
        tasks = [
            asyncio.ensure_future(self._call(call, tool_def, arguments))
            for call, tool_def, arguments in prepared
        ]
        try:
            return list(await asyncio.gather(*tasks))
        except BaseException:
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise

    async def _call(
        self, call: ToolCall, tool_def: ToolDefinition, arguments: Any,
    ) -> ToolCallResult:
        logger.info(
            f"call function, id={call.id}, name={call.name}, args={arguments}"
        )
        async with tool_span(call.name, call.id) as span:
            try:
                value = await tool_def(arguments)
                json.dumps(value)
            except Exception as e:
                logger.error(f"Tool {call.name} raised: {e}")
                error = ToolExecutionError(call.name, call.id, str(e))
                record_error(span, error)
                raise error from e
        logger.debug(f"function result, id={call.id}, value={value}")
        return ToolCallResult(id=call.id, name=call.name, value=value)
