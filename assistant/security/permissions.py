"""Role gate over the tool catalog.

Disallowed tools are removed from what the model is offered; the same
check is repeated right before a tool runs.
"""

from collections.abc import Iterable

from assistant.domain.types import Role
from assistant.tools.catalog import DEFAULT_CATALOG, ToolDefinition

ALL_DOMAINS = "*"

DEFAULT_ROLE_DOMAINS: dict[Role, frozenset[str]] = {
    Role.EMPLOYEE: frozenset({"operations", "projects"}),
    Role.MANAGER: frozenset({"operations", "projects", "hr", "purchasing"}),
    Role.DIRECTOR: frozenset({ALL_DOMAINS}),
}


class PermissionFilter:
    def __init__(
        self,
        catalog: Iterable[ToolDefinition] = DEFAULT_CATALOG,
        role_domains: dict[Role, frozenset[str]] | None = None,
    ) -> None:
        self._catalog = {definition.name: definition for definition in catalog}
        self._role_domains = dict(role_domains) if role_domains else DEFAULT_ROLE_DOMAINS

    def get(self, name: str) -> ToolDefinition | None:
        return self._catalog.get(name)

    def can_access_function(self, name: str, role: Role) -> bool:
        definition = self._catalog.get(name)
        if definition is None:
            return False
        if definition.requires_admin and not role.is_elevated:
            return False
        if definition.requires_domain is not None:
            domains = self._role_domains.get(role, frozenset())
            if ALL_DOMAINS not in domains and definition.requires_domain not in domains:
                return False
        return True

    def get_accessible_functions(self, role: Role) -> list[str]:
        return [name for name in self._catalog if self.can_access_function(name, role)]

    def tools_for_role(self, role: Role) -> list[ToolDefinition]:
        return [d for d in self._catalog.values() if self.can_access_function(d.name, role)]
