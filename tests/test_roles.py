"""Tests for role storage and role-definition resolution."""

from __future__ import annotations

from pathlib import Path

import pytest
from azure_mock import SUBSCRIPTION_SCOPE, MockAzureContext

from azsecrets.backend import Backend, Operation, Request
from azsecrets.context import RequestContext
from azsecrets.errors import InvalidConfiguration, RoleNotFound
from azsecrets.models import Role
from azsecrets.provider import RoleDefinition
from azsecrets.roles import RoleStore
from azsecrets.storage import FileStorage

READER_ID = f"{SUBSCRIPTION_SCOPE}/providers/Microsoft.Authorization/roleDefinitions/reader"


@pytest.fixture
def roles(configured_backend: Backend) -> RoleStore:
    return configured_backend.roles


def write(backend: Backend, name: str, data: dict) -> Role:
    config = backend.config_store.get()
    assert config is not None
    provider = backend.clients.get_client(RequestContext(), config)
    return backend.roles.write(RequestContext(), name, data, provider)


class TestRoleWrite:
    """Tests for RoleStore.write."""

    def test_role_name_resolved_to_id(self, configured_backend: Backend) -> None:
        role = write(
            configured_backend,
            "reader",
            {"azure_roles": [{"role_name": "Reader", "scope": SUBSCRIPTION_SCOPE}], "ttl": "1h"},
        )

        assert role.azure_roles[0].role_id == READER_ID
        assert role.ttl == 3600

    def test_role_id_resolved_to_name(self, configured_backend: Backend) -> None:
        role = write(
            configured_backend,
            "reader",
            {"azure_roles": [{"role_id": READER_ID, "scope": SUBSCRIPTION_SCOPE}]},
        )

        assert role.azure_roles[0].role_name == "Reader"

    def test_unknown_role_name(self, configured_backend: Backend) -> None:
        with pytest.raises(InvalidConfiguration) as exc_info:
            write(
                configured_backend,
                "owner",
                {"azure_roles": [{"role_name": "Owner", "scope": SUBSCRIPTION_SCOPE}]},
            )

        assert "Owner" in str(exc_info.value)
        assert configured_backend.roles.get("owner") is None

    def test_ambiguous_role_name(self, configured_backend: Backend, azure: MockAzureContext) -> None:
        azure.directory.role_definitions.append(RoleDefinition(id="custom-reader", role_name="Reader"))

        with pytest.raises(InvalidConfiguration) as exc_info:
            write(
                configured_backend,
                "reader",
                {"azure_roles": [{"role_name": "Reader", "scope": SUBSCRIPTION_SCOPE}]},
            )

        assert "role_id" in str(exc_info.value)

    def test_role_requires_something_to_grant(self, configured_backend: Backend) -> None:
        with pytest.raises(InvalidConfiguration):
            write(configured_backend, "empty", {"ttl": 60})

    def test_ttl_above_max_ttl(self, configured_backend: Backend) -> None:
        with pytest.raises(InvalidConfiguration) as exc_info:
            write(
                configured_backend,
                "static",
                {"application_object_id": "app", "ttl": "2h", "max_ttl": "1h"},
            )

        assert "max_ttl" in str(exc_info.value)

    def test_update_merges(self, configured_backend: Backend) -> None:
        write(
            configured_backend,
            "reader",
            {"azure_roles": [{"role_name": "Reader", "scope": SUBSCRIPTION_SCOPE}], "ttl": 60},
        )

        role = write(configured_backend, "reader", {"max_ttl": 120})

        assert role.ttl == 60
        assert role.max_ttl == 120
        assert role.azure_roles[0].role_name == "Reader"


class TestRoleStore:
    """Tests for read, list and delete."""

    def test_list_and_delete(self, configured_backend: Backend, roles: RoleStore) -> None:
        write(configured_backend, "b", {"application_object_id": "app-b"})
        write(configured_backend, "a", {"application_object_id": "app-a"})

        assert roles.list() == ["a", "b"]

        roles.delete("a")

        assert roles.list() == ["b"]
        assert roles.get("a") is None

    def test_require_missing(self, roles: RoleStore) -> None:
        with pytest.raises(RoleNotFound) as exc_info:
            roles.require("nope")

        assert exc_info.value.name == "nope"


class TestRoleRequests:
    def test_role_write_requires_configuration(self, backend: Backend) -> None:
        response = backend.handle_request(
            Request(Operation.UPDATE, "roles/web", {"application_object_id": "app"})
        )

        assert response.is_error
        assert response.error_type == "InvalidConfiguration"

    def test_role_round_trip(self, configured_backend: Backend) -> None:
        written = configured_backend.handle_request(
            Request(Operation.CREATE, "roles/web", {"application_object_id": "app", "ttl": "30m"})
        )
        assert not written.is_error

        read = configured_backend.handle_request(Request(Operation.READ, "roles/web"))
        listed = configured_backend.handle_request(Request(Operation.LIST, "roles"))

        assert read.data is not None
        assert read.data["ttl"] == 1800
        assert listed.data == {"keys": ["web"]}

    def test_read_missing_role(self, configured_backend: Backend) -> None:
        response = configured_backend.handle_request(Request(Operation.READ, "roles/missing"))

        assert not response.is_error
        assert response.data is None

    @pytest.mark.parametrize(
        ("operation", "path"),
        [
            (Operation.READ, "roles/../config"),
            (Operation.DELETE, "roles/../config"),
            (Operation.READ, "roles/a/b"),
            (Operation.READ, "creds/../config"),
        ],
    )
    def test_invalid_role_name_is_an_error_response(
        self, tmp_path: Path, azure: MockAzureContext, operation: Operation, path: str
    ) -> None:
        backend = Backend(FileStorage(tmp_path), provider_factory=azure.directory.provider_factory, environ={})
        backend.storage.put("config", {"tenant_id": "t"})

        response = backend.handle_request(Request(operation, path))

        assert response.is_error
        assert response.error_type == "InvalidConfiguration"
        assert backend.storage.get("config") == {"tenant_id": "t"}

    def test_invalid_role_name_rejected_on_write(self, configured_backend: Backend) -> None:
        response = configured_backend.handle_request(
            Request(Operation.CREATE, "roles/../config", {"application_object_id": "app"})
        )

        assert response.error_type == "InvalidConfiguration"
        assert configured_backend.roles.list() == []


class TestRoleNames:
    @pytest.mark.parametrize("name", ["", "a/b", "..", "x..y"])
    def test_rejected(self, roles: RoleStore, name: str) -> None:
        with pytest.raises(InvalidConfiguration):
            roles.get(name)
        with pytest.raises(InvalidConfiguration):
            roles.delete(name)
