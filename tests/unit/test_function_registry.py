import asyncio

import pytest

from assistant.domain.types import Role
from assistant.tools.registry import (
    FunctionRegistry,
    ToolArgumentError,
    ToolContext,
    UnknownToolError,
)

CONTEXT = ToolContext(org_id="org-a", actor_id="user-1", role=Role.EMPLOYEE)


def test_register_rejects_names_outside_catalog() -> None:
    with pytest.raises(UnknownToolError):
        FunctionRegistry().register("dropDatabase", lambda arguments, context: None)


def test_execute_validates_arguments() -> None:
    registry = FunctionRegistry()
    registry.register("searchEmployees", lambda arguments, context: [])

    with pytest.raises(ToolArgumentError, match="query"):
        asyncio.run(registry.execute("searchEmployees", {}, CONTEXT))


def test_execute_without_handler_is_unknown() -> None:
    with pytest.raises(UnknownToolError):
        asyncio.run(FunctionRegistry().execute("getEmployeeCount", {}, CONTEXT))


def test_execute_awaits_async_handlers_and_scrubs_results() -> None:
    registry = FunctionRegistry()

    async def search(arguments: dict[str, object], context: ToolContext) -> list[dict[str, object]]:
        return [
            {"id": "e-1", "name": str(arguments["query"]), "__typename": "Employee"},
            {"id": "e-2", "name": context.org_id, "_passwordHash": "x", "$ref": "#"},
        ]

    registry.register("searchEmployees", search)
    result = asyncio.run(registry.execute("searchEmployees", {"query": "ada"}, CONTEXT))

    assert result == [{"id": "e-1", "name": "ada"}, {"id": "e-2", "name": "org-a"}]
    assert registry.has_handler("searchEmployees") is True
