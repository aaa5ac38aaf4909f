"""Role storage and Azure role-name resolution."""

from __future__ import annotations

import logging
from collections.abc import Mapping
from typing import Any

from pydantic import ValidationError

from .context import RequestContext
from .errors import InvalidConfiguration, RoleNotFound
from .models import AzureRoleAssignment, Role
from .provider import Provider
from .storage import Storage

logger = logging.getLogger(__name__)

ROLE_STORAGE_PREFIX = "roles/"


class RoleStore:
    """CRUD for roles at ``roles/<name>``."""

    def __init__(self, storage: Storage) -> None:
        self._storage = storage

    def get(self, name: str) -> Role | None:
        raw = self._storage.get(_role_key(name))
        return None if raw is None else Role.model_validate(raw)

    def require(self, name: str) -> Role:
        role = self.get(name)
        if role is None:
            raise RoleNotFound(name)
        return role

    def list(self) -> list[str]:
        return self._storage.list(ROLE_STORAGE_PREFIX)

    def write(
        self,
        ctx: RequestContext,
        name: str,
        data: Mapping[str, Any],
        provider: Provider,
    ) -> Role:
        """Create or merge-update a role.

        Azure role names are resolved to definition ids (and ids to names)
        against the role's scope, so issuance never has to look them up.

        Raises:
            InvalidConfiguration: If the role is malformed or a role
                definition cannot be resolved unambiguously.
        """
        key = _role_key(name)
        existing = self.get(name)
        merged: dict[str, Any] = existing.model_dump() if existing else {}
        merged.update(data)
        try:
            role = Role.model_validate(merged)
        except ValidationError as e:
            problems = [err["msg"] for err in e.errors()]
            raise InvalidConfiguration(
                f"Role '{name}' validation failed:\n  - " + "\n  - ".join(problems)
            ) from e

        resolved = [resolve_azure_role(ctx, provider, r) for r in role.azure_roles]
        role = role.model_copy(update={"azure_roles": resolved})

        self._storage.put(key, role.model_dump())
        logger.info(
            "Role written",
            extra={
                "role": name,
                "azure_roles": len(role.azure_roles),
                "azure_groups": len(role.azure_groups),
                "static": role.is_static,
            },
        )
        return role

    def delete(self, name: str) -> None:
        self._storage.delete(_role_key(name))


def _role_key(name: str) -> str:
    if not name:
        raise InvalidConfiguration("role name is required")
    if "/" in name or ".." in name:
        raise InvalidConfiguration(f"invalid role name '{name}'")
    return ROLE_STORAGE_PREFIX + name


def resolve_azure_role(
    ctx: RequestContext, provider: Provider, assignment: AzureRoleAssignment
) -> AzureRoleAssignment:
    if assignment.role_id:
        definition = provider.get_role_definition(ctx, assignment.role_id)
        if definition is None:
            raise InvalidConfiguration(f"no role definition found for role_id {assignment.role_id}")
        return assignment.model_copy(update={"role_name": definition.role_name})

    matches = provider.find_role_definitions(ctx, assignment.scope, assignment.role_name)
    if not matches:
        raise InvalidConfiguration(f"no role definition found for role_name '{assignment.role_name}'")
    if len(matches) > 1:
        raise InvalidConfiguration(
            f"multiple role definitions found for role_name '{assignment.role_name}', use role_id"
        )
    return assignment.model_copy(update={"role_id": matches[0].id})
