"""Execution side of the tool catalog.

Handlers are registered by name and receive validated arguments plus the
calling actor's context.  Results are scrubbed of internal keys before
they are handed back to the model.
"""

import inspect
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from typing import Any

from jsonschema import Draft202012Validator
from jsonschema.exceptions import ValidationError as SchemaValidationError

from assistant.domain.types import Role
from assistant.security.json_scrub import JsonValue, scrub_json
from assistant.tools.catalog import DEFAULT_CATALOG, ToolDefinition


class ToolError(Exception):
    """Base class for failures raised while executing a tool."""


class UnknownToolError(ToolError):
    def __init__(self, name: str):
        super().__init__(f"Unknown function: {name}")
        self.name = name


class ToolArgumentError(ToolError):
    def __init__(self, name: str, detail: str):
        super().__init__(f"Invalid arguments for {name}: {detail}")
        self.name = name
        self.detail = detail


@dataclass(frozen=True)
class ToolContext:
    org_id: str
    actor_id: str
    role: Role


ToolHandler = Callable[[dict[str, Any], ToolContext], Any | Awaitable[Any]]


class FunctionRegistry:
    def __init__(self, catalog: Iterable[ToolDefinition] = DEFAULT_CATALOG) -> None:
        self._definitions = {definition.name: definition for definition in catalog}
        self._validators = {
            name: Draft202012Validator(definition.parameters)
            for name, definition in self._definitions.items()
        }
        self._handlers: dict[str, ToolHandler] = {}

    @property
    def catalog(self) -> list[ToolDefinition]:
        return list(self._definitions.values())

    def register(self, name: str, handler: ToolHandler) -> None:
        if name not in self._definitions:
            raise UnknownToolError(name)
        self._handlers[name] = handler

    def has_handler(self, name: str) -> bool:
        return name in self._handlers

    def validate_arguments(self, name: str, arguments: dict[str, Any]) -> None:
        validator = self._validators.get(name)
        if validator is None:
            raise UnknownToolError(name)
        try:
            validator.validate(arguments)
        except SchemaValidationError as exc:
            raise ToolArgumentError(name, exc.message) from exc

    async def execute(
        self, name: str, arguments: dict[str, Any], context: ToolContext
    ) -> JsonValue:
        """Run a handler and return its scrubbed result.

        Raises ``ToolError`` subclasses for unknown names or bad arguments;
        handler exceptions propagate unchanged.
        """
        handler = self._handlers.get(name)
        if handler is None:
            raise UnknownToolError(name)
        self.validate_arguments(name, arguments)
        result = handler(arguments, context)
        if inspect.isawaitable(result):
            result = await result
        return scrub_json(result)
