"""In-memory Azure directory implementing the engine's Provider protocol.

Holds applications, service principals, passwords, groups and RBAC role
assignments. Failures can be injected per operation to exercise error
paths.
"""

from __future__ import annotations

import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime

from azsecrets.context import RequestContext
from azsecrets.errors import UpstreamUnavailable
from azsecrets.provider import Application, PasswordCredential, RoleDefinition

SUBSCRIPTION_SCOPE = "/subscriptions/00000000-0000-0000-0000-000000000000"


@dataclass
class MockApplication:
    object_id: str
    app_id: str
    display_name: str
    tags: list[str] = field(default_factory=list)
    passwords: dict[str, PasswordCredential] = field(default_factory=dict)


@dataclass
class MockRoleAssignment:
    id: str
    scope: str
    role_definition_id: str
    principal_id: str


class MockDirectory:
    """Fake Graph + ARM authorization backend.

    Thread-safe: all state changes happen under one lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.applications: dict[str, MockApplication] = {}
        self.service_principals: dict[str, str] = {}  # sp object id -> app id
        self.groups: dict[str, set[str]] = {}
        self.role_definitions: list[RoleDefinition] = [
            RoleDefinition(
                id=f"{SUBSCRIPTION_SCOPE}/providers/Microsoft.Authorization/roleDefinitions/reader",
                role_name="Reader",
            ),
            RoleDefinition(
                id=f"{SUBSCRIPTION_SCOPE}/providers/Microsoft.Authorization/roleDefinitions/contributor",
                role_name="Contributor",
            ),
        ]
        self.role_assignments: dict[str, MockRoleAssignment] = {}
        self.permanently_deleted: set[str] = set()
        self.calls: list[str] = []
        self.federated_token_valid = True
        self.managed_identity_available = True
        self._failures: dict[str, UpstreamUnavailable] = {}

    # ------------------------------------------------------------------
    # Test helpers
    # ------------------------------------------------------------------

    def set_failure(self, operation: str, error: UpstreamUnavailable | None = None) -> None:
        """Make every call to ``operation`` fail until cleared."""
        self._failures[operation] = error or UpstreamUnavailable(
            f"simulated {operation} failure", status_code=503
        )

    def clear_failure(self, operation: str) -> None:
        self._failures.pop(operation, None)

    def register_application(self, display_name: str, secret: str | None = None) -> MockApplication:
        app = MockApplication(
            object_id=str(uuid.uuid4()),
            app_id=str(uuid.uuid4()),
            display_name=display_name,
        )
        if secret is not None:
            key_id = str(uuid.uuid4())
            app.passwords[key_id] = PasswordCredential(
                key_id=key_id, display_name="initial", secret_text=secret
            )
        with self._lock:
            self.applications[app.object_id] = app
        return app

    def add_group(self, group_id: str) -> None:
        self.groups[group_id] = set()

    def is_valid_secret(self, app_id: str, secret: str) -> bool:
        with self._lock:
            for app in self.applications.values():
                if app.app_id == app_id:
                    return any(p.secret_text == secret for p in app.passwords.values())
        return False

    def app_by_app_id(self, app_id: str) -> MockApplication | None:
        return next((a for a in self.applications.values() if a.app_id == app_id), None)

    def provider_factory(self, settings: object, credential: object) -> MockDirectory:
        return self

    def _enter(self, ctx: RequestContext, operation: str) -> None:
        ctx.check(operation)
        self.calls.append(operation)
        if operation in self._failures:
            raise self._failures[operation]

    # ------------------------------------------------------------------
    # Provider protocol
    # ------------------------------------------------------------------

    def get_application_by_app_id(self, ctx: RequestContext, app_id: str) -> Application | None:
        self._enter(ctx, "get_application_by_app_id")
        app = self.app_by_app_id(app_id)
        return None if app is None else Application(app.object_id, app.app_id, app.display_name)

    def get_application(self, ctx: RequestContext, object_id: str) -> Application | None:
        self._enter(ctx, "get_application")
        app = self.applications.get(object_id)
        return None if app is None else Application(app.object_id, app.app_id, app.display_name)

    def find_applications_by_display_name(self, ctx: RequestContext, display_name: str) -> list[Application]:
        self._enter(ctx, "find_applications_by_display_name")
        with self._lock:
            matches = [a for a in self.applications.values() if a.display_name == display_name]
        return [Application(a.object_id, a.app_id, a.display_name) for a in matches]

    def create_application(
        self,
        ctx: RequestContext,
        display_name: str,
        *,
        sign_in_audience: str = "",
        tags: list[str] | None = None,
    ) -> Application:
        self._enter(ctx, "create_application")
        app = self.register_application(display_name)
        app.tags = list(tags or [])
        return Application(app.object_id, app.app_id, app.display_name)

    def delete_application(self, ctx: RequestContext, object_id: str, *, permanently: bool = False) -> None:
        self._enter(ctx, "delete_application")
        with self._lock:
            app = self.applications.pop(object_id, None)
            if app is not None:
                for sp_id, app_id in list(self.service_principals.items()):
                    if app_id == app.app_id:
                        del self.service_principals[sp_id]
            if permanently:
                self.permanently_deleted.add(object_id)

    def create_service_principal(self, ctx: RequestContext, app_id: str, *, tags: list[str] | None = None) -> str:
        self._enter(ctx, "create_service_principal")
        sp_id = str(uuid.uuid4())
        with self._lock:
            self.service_principals[sp_id] = app_id
        return sp_id

    def add_password(
        self, ctx: RequestContext, app_object_id: str, display_name: str, end_date_time: datetime
    ) -> PasswordCredential:
        self._enter(ctx, "add_password")
        password = PasswordCredential(
            key_id=str(uuid.uuid4()),
            display_name=display_name,
            end_date_time=end_date_time,
            secret_text=f"secret-{uuid.uuid4().hex}",
        )
        with self._lock:
            app = self.applications.get(app_object_id)
            if app is None:
                raise UpstreamUnavailable("application not found", status_code=404)
            app.passwords[password.key_id] = password
        return password

    def list_passwords(self, ctx: RequestContext, app_object_id: str) -> list[PasswordCredential]:
        self._enter(ctx, "list_passwords")
        app = self.applications.get(app_object_id)
        if app is None:
            raise UpstreamUnavailable("application not found", status_code=404)
        return [
            PasswordCredential(key_id=p.key_id, display_name=p.display_name, end_date_time=p.end_date_time)
            for p in app.passwords.values()
        ]

    def remove_password(self, ctx: RequestContext, app_object_id: str, key_id: str) -> None:
        self._enter(ctx, "remove_password")
        with self._lock:
            app = self.applications.get(app_object_id)
            if app is not None:
                app.passwords.pop(key_id, None)

    def add_group_member(self, ctx: RequestContext, group_object_id: str, member_object_id: str) -> None:
        self._enter(ctx, "add_group_member")
        if group_object_id not in self.groups:
            raise UpstreamUnavailable("group not found", status_code=404)
        self.groups[group_object_id].add(member_object_id)

    def remove_group_member(self, ctx: RequestContext, group_object_id: str, member_object_id: str) -> None:
        self._enter(ctx, "remove_group_member")
        self.groups.get(group_object_id, set()).discard(member_object_id)

    def find_role_definitions(self, ctx: RequestContext, scope: str, role_name: str) -> list[RoleDefinition]:
        self._enter(ctx, "find_role_definitions")
        return [d for d in self.role_definitions if d.role_name == role_name]

    def get_role_definition(self, ctx: RequestContext, role_id: str) -> RoleDefinition | None:
        self._enter(ctx, "get_role_definition")
        return next((d for d in self.role_definitions if d.id == role_id), None)

    def create_role_assignment(
        self, ctx: RequestContext, scope: str, role_definition_id: str, principal_id: str
    ) -> str:
        self._enter(ctx, "create_role_assignment")
        assignment = MockRoleAssignment(
            id=f"{scope}/providers/Microsoft.Authorization/roleAssignments/{uuid.uuid4()}",
            scope=scope,
            role_definition_id=role_definition_id,
            principal_id=principal_id,
        )
        with self._lock:
            self.role_assignments[assignment.id] = assignment
        return assignment.id

    def delete_role_assignment(self, ctx: RequestContext, assignment_id: str) -> None:
        self._enter(ctx, "delete_role_assignment")
        with self._lock:
            self.role_assignments.pop(assignment_id, None)
