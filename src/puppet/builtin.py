"""Functions available to agents out of the box."""

import random

from puppet.tools import FunctionRegistry, ToolDefinition


def get_random_number(arguments: dict) -> dict:
    maximum = int(arguments["max"])
    return {"success": True, "result": random.randrange(maximum)}


def close_door(arguments: dict) -> dict:
    return {"success": True}


BUILTIN_TOOLS = [
    ToolDefinition(
        name="get_random_number",
        description="generate random number",
        parameters={
            "type": "object",
            "properties": {
                "max": {
                    "type": "number",
                    "description": "max of value",
                },
            },
            "required": ["max"],
        },
        implementation=get_random_number,
    ),
    ToolDefinition(
        name="close_door",
        description="close door of home",
        implementation=close_door,
    ),
]


def default_registry() -> FunctionRegistry:
    return FunctionRegistry(BUILTIN_TOOLS)
