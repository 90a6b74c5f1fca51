from collections.abc import Iterator
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

from assistant.config.settings import clear_settings_cache
from assistant.domain.types import Member, Organization, Role, Tier
from assistant.main import create_app
from assistant.metrics import reset_metrics
from assistant.storage.memory import InMemoryStore
from assistant.tools.registry import FunctionRegistry, ToolContext


def seed_directory(store: InMemoryStore) -> None:
    store.save_organization(Organization(id="org-a", name="Acme Trading", tier=Tier.FREE))
    store.save_organization(Organization(id="org-b", name="Globex", tier=Tier.PLUS))
    store.save_member(Member(id="user-1", org_id="org-a", name="Ada", role=Role.EMPLOYEE))
    store.save_member(Member(id="manager-1", org_id="org-a", name="Lin", role=Role.MANAGER))
    store.save_member(Member(id="admin-1", org_id="org-a", name="Grace", role=Role.DIRECTOR))
    store.save_member(Member(id="user-b", org_id="org-b", name="Hank", role=Role.EMPLOYEE))


@pytest.fixture(autouse=True)
def _clean_metrics() -> Iterator[None]:
    reset_metrics()
    yield
    reset_metrics()


@pytest.fixture
def store() -> InMemoryStore:
    memory = InMemoryStore()
    seed_directory(memory)
    return memory


@pytest.fixture
def registry() -> FunctionRegistry:
    functions = FunctionRegistry()

    def employee_count(arguments: dict[str, object], context: ToolContext) -> dict[str, object]:
        return {"count": 42, "org_id": context.org_id, "_internal_cursor": "abc"}

    functions.register("getEmployeeCount", employee_count)
    return functions


@pytest.fixture
def client(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
    store: InMemoryStore,
    registry: FunctionRegistry,
) -> TestClient:
    monkeypatch.setenv("AIA_API_KEYS", "test-key")
    monkeypatch.setenv("AIA_DATABASE_PATH", str(tmp_path / "assistant.db"))
    monkeypatch.setenv("AIA_PROVIDER_NAME", "stub")
    monkeypatch.setenv("AIA_PROVIDER_BACKOFF_BASE_S", "0")
    clear_settings_cache()
    app = create_app(store=store, registry=registry)
    return TestClient(app)


@pytest.fixture
def auth_headers() -> dict[str, str]:
    return {
        "Authorization": "Bearer test-key",
        "x-aia-org-id": "org-a",
        "x-aia-user-id": "user-1",
    }


@pytest.fixture
def admin_headers() -> dict[str, str]:
    return {
        "Authorization": "Bearer test-key",
        "x-aia-org-id": "org-a",
        "x-aia-user-id": "admin-1",
    }
