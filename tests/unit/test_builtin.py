import pytest

from puppet.builtin import BUILTIN_TOOLS, close_door, default_registry, get_random_number


def test_default_registry_names():
    assert [t.name for t in default_registry()] == ["get_random_number", "close_door"]


def test_random_number_within_bound():
    for _ in range(20):
        result = get_random_number({"max": 5})
        assert result["success"] is True
        assert 0 <= result["result"] < 5


def test_random_number_accepts_float_bound():
    assert get_random_number({"max": 1.0})["result"] == 0


def test_close_door():
    assert close_door({}) == {"success": True}


def test_schemas():
    random_schema, door_schema = (t.get_schema() for t in BUILTIN_TOOLS)
    assert random_schema["function"]["parameters"]["required"] == ["max"]
    assert "parameters" not in door_schema["function"]


@pytest.mark.asyncio
async def test_dispatchable_through_definition():
    tool_def = default_registry().get("close_door")
    assert await tool_def({}) == {"success": True}
