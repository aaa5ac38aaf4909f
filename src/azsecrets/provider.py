"""Azure control-plane access: Microsoft Graph and ARM authorization.

``Provider`` is the boundary the rest of the engine codes against; the
tests substitute an in-memory fake. ``AzureProvider`` is the real
implementation: Graph calls go through an azure-core pipeline, RBAC calls
through ``AuthorizationManagementClient``.

Every call takes a ``RequestContext``: the context is checked before the
request and its remaining time bounds the transport timeouts. SDK errors
are translated to ``UpstreamUnavailable`` here and nowhere else.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, TypeVar

from azure.core import PipelineClient
from azure.core.credentials import TokenCredential
from azure.core.exceptions import (
    AzureError,
    HttpResponseError,
    ResourceNotFoundError,
    map_error,
)
from azure.core.pipeline.policies import (
    BearerTokenCredentialPolicy,
    HeadersPolicy,
    NetworkTraceLoggingPolicy,
    RetryPolicy,
    UserAgentPolicy,
)
from azure.core.rest import HttpRequest
from azure.mgmt.authorization import AuthorizationManagementClient
from azure.mgmt.authorization.models import RoleAssignmentCreateParameters

from .context import RequestContext
from .errors import UpstreamUnavailable

if TYPE_CHECKING:
    from .client import ClientSettings

logger = logging.getLogger(__name__)

GRAPH_API_VERSION = "v1.0"
PRINCIPAL_TYPE_SERVICE_PRINCIPAL = "ServicePrincipal"

# A new service principal is not visible to ARM immediately
ROLE_ASSIGNMENT_ATTEMPTS = 6
ROLE_ASSIGNMENT_BACKOFF_SECONDS = 5.0

T = TypeVar("T")


@dataclass(frozen=True)
class Application:
    """A directory application registration."""

    object_id: str
    app_id: str
    display_name: str = ""


@dataclass(frozen=True)
class PasswordCredential:
    """An application password. ``secret_text`` is only set on creation."""

    key_id: str
    display_name: str = ""
    end_date_time: datetime | None = None
    secret_text: str = field(default="", repr=False)


@dataclass(frozen=True)
class RoleDefinition:
    """An Azure RBAC role definition."""

    id: str
    role_name: str


class Provider(Protocol):
    """Operations the engine needs from the Azure control plane."""

    def get_application_by_app_id(self, ctx: RequestContext, app_id: str) -> Application | None: ...

    def get_application(self, ctx: RequestContext, object_id: str) -> Application | None: ...

    def find_applications_by_display_name(self, ctx: RequestContext, display_name: str) -> list[Application]: ...

    def create_application(
        self, ctx: RequestContext, display_name: str, *, sign_in_audience: str = "", tags: list[str] | None = None
    ) -> Application: ...

    def delete_application(self, ctx: RequestContext, object_id: str, *, permanently: bool = False) -> None: ...

    def create_service_principal(self, ctx: RequestContext, app_id: str, *, tags: list[str] | None = None) -> str: ...

    def add_password(
        self, ctx: RequestContext, app_object_id: str, display_name: str, end_date_time: datetime
    ) -> PasswordCredential: ...

    def list_passwords(self, ctx: RequestContext, app_object_id: str) -> list[PasswordCredential]: ...

    def remove_password(self, ctx: RequestContext, app_object_id: str, key_id: str) -> None: ...

    def add_group_member(self, ctx: RequestContext, group_object_id: str, member_object_id: str) -> None: ...

    def remove_group_member(self, ctx: RequestContext, group_object_id: str, member_object_id: str) -> None: ...

    def find_role_definitions(self, ctx: RequestContext, scope: str, role_name: str) -> list[RoleDefinition]: ...

    def get_role_definition(self, ctx: RequestContext, role_id: str) -> RoleDefinition | None: ...

    def create_role_assignment(
        self, ctx: RequestContext, scope: str, role_definition_id: str, principal_id: str
    ) -> str: ...

    def delete_role_assignment(self, ctx: RequestContext, assignment_id: str) -> None: ...


@contextmanager
def translate_errors(operation: str, *, allow_missing: bool = False) -> Iterator[None]:
    """Map Azure SDK exceptions to UpstreamUnavailable.

    With ``allow_missing`` a 404 propagates as ResourceNotFoundError so the
    caller can treat it as success.
    """
    try:
        yield
    except ResourceNotFoundError as e:
        if allow_missing:
            raise
        raise UpstreamUnavailable(f"{operation} failed: resource not found", status_code=404) from e
    except HttpResponseError as e:
        error_code = e.error.code if e.error else None
        logger.error(
            f"{operation} failed with Azure API error",
            extra={"status_code": e.status_code, "error_code": error_code},
        )
        raise UpstreamUnavailable(
            f"{operation} failed ({e.status_code}): {e.message}", status_code=e.status_code
        ) from e
    except AzureError as e:
        logger.error(f"{operation} failed with Azure error", extra={"error": str(e)})
        raise UpstreamUnavailable(f"{operation} failed: {e}") from e


class AzureProvider:
    """Provider backed by Microsoft Graph and the ARM authorization API."""

    def __init__(self, settings: ClientSettings, credential: TokenCredential) -> None:
        self._settings = settings
        self._graph = PipelineClient(
            base_url=settings.graph_uri,
            policies=[
                HeadersPolicy(),
                UserAgentPolicy(sdk_moniker="azsecrets"),
                RetryPolicy(),
                BearerTokenCredentialPolicy(credential, settings.environment.graph_scope),
                NetworkTraceLoggingPolicy(),
            ],
        )
        self._authorization = AuthorizationManagementClient(
            credential=credential,
            subscription_id=settings.subscription_id,
            base_url=settings.resource_manager_uri,
            credential_scopes=[settings.environment.resource_manager_scope],
        )

    # ------------------------------------------------------------------
    # Graph plumbing
    # ------------------------------------------------------------------

    def _graph_request(
        self,
        ctx: RequestContext,
        method: str,
        path: str,
        *,
        body: dict[str, Any] | None = None,
        params: dict[str, str] | None = None,
        allow_missing: bool = False,
    ) -> dict[str, Any]:
        ctx.check(f"graph {method} {path}")
        request = HttpRequest(
            method,
            f"{self._settings.graph_uri}/{GRAPH_API_VERSION}/{path.lstrip('/')}",
            json=body,
            params=params,
        )
        with translate_errors(f"Graph {method} {path}", allow_missing=allow_missing):
            response = self._graph.send_request(request, **_transport_timeouts(ctx))
            if response.status_code >= 400:
                map_error(
                    status_code=response.status_code,
                    response=response,
                    error_map={404: ResourceNotFoundError},
                )
                raise HttpResponseError(response=response)
        if response.status_code == 204 or not response.content:
            return {}
        return response.json()

    def _call(
        self,
        ctx: RequestContext,
        operation: str,
        fn: Callable[..., T],
        *args: Any,
        allow_missing: bool = False,
    ) -> T:
        ctx.check(operation)
        with translate_errors(operation, allow_missing=allow_missing):
            return fn(*args, **_transport_timeouts(ctx))

    # ------------------------------------------------------------------
    # Applications and service principals
    # ------------------------------------------------------------------

    def get_application_by_app_id(self, ctx: RequestContext, app_id: str) -> Application | None:
        result = self._graph_request(
            ctx, "GET", "applications", params={"$filter": f"appId eq '{app_id}'"}
        )
        values = result.get("value", [])
        if not values:
            return None
        return _application_from_json(values[0])

    def get_application(self, ctx: RequestContext, object_id: str) -> Application | None:
        try:
            result = self._graph_request(ctx, "GET", f"applications/{object_id}", allow_missing=True)
        except ResourceNotFoundError:
            return None
        return _application_from_json(result)

    def find_applications_by_display_name(self, ctx: RequestContext, display_name: str) -> list[Application]:
        result = self._graph_request(
            ctx, "GET", "applications", params={"$filter": f"displayName eq '{display_name}'"}
        )
        return [_application_from_json(v) for v in result.get("value", [])]

    def create_application(
        self,
        ctx: RequestContext,
        display_name: str,
        *,
        sign_in_audience: str = "",
        tags: list[str] | None = None,
    ) -> Application:
        body: dict[str, Any] = {"displayName": display_name, "tags": tags or []}
        if sign_in_audience:
            body["signInAudience"] = sign_in_audience
        return _application_from_json(self._graph_request(ctx, "POST", "applications", body=body))

    def delete_application(self, ctx: RequestContext, object_id: str, *, permanently: bool = False) -> None:
        try:
            self._graph_request(ctx, "DELETE", f"applications/{object_id}", allow_missing=True)
        except ResourceNotFoundError:
            logger.info("Application already deleted", extra={"object_id": object_id})
        if permanently:
            try:
                self._graph_request(
                    ctx, "DELETE", f"directory/deletedItems/{object_id}", allow_missing=True
                )
            except ResourceNotFoundError:
                pass

    def create_service_principal(
        self, ctx: RequestContext, app_id: str, *, tags: list[str] | None = None
    ) -> str:
        result = self._graph_request(
            ctx, "POST", "servicePrincipals", body={"appId": app_id, "tags": tags or []}
        )
        return result["id"]

    # ------------------------------------------------------------------
    # Passwords
    # ------------------------------------------------------------------

    def add_password(
        self, ctx: RequestContext, app_object_id: str, display_name: str, end_date_time: datetime
    ) -> PasswordCredential:
        result = self._graph_request(
            ctx,
            "POST",
            f"applications/{app_object_id}/addPassword",
            body={
                "passwordCredential": {
                    "displayName": display_name,
                    "endDateTime": end_date_time.isoformat(),
                }
            },
        )
        return _password_from_json(result)

    def list_passwords(self, ctx: RequestContext, app_object_id: str) -> list[PasswordCredential]:
        result = self._graph_request(
            ctx,
            "GET",
            f"applications/{app_object_id}",
            params={"$select": "passwordCredentials"},
        )
        return [_password_from_json(p) for p in result.get("passwordCredentials", [])]

    def remove_password(self, ctx: RequestContext, app_object_id: str, key_id: str) -> None:
        try:
            result = self._graph_request(
                ctx,
                "GET",
                f"applications/{app_object_id}",
                params={"$select": "passwordCredentials"},
                allow_missing=True,
            )
        except ResourceNotFoundError:
            return
        if key_id not in {p.get("keyId") for p in result.get("passwordCredentials", [])}:
            return
        try:
            self._graph_request(
                ctx,
                "POST",
                f"applications/{app_object_id}/removePassword",
                body={"keyId": key_id},
                allow_missing=True,
            )
        except ResourceNotFoundError:
            pass

    # ------------------------------------------------------------------
    # Groups
    # ------------------------------------------------------------------

    def add_group_member(self, ctx: RequestContext, group_object_id: str, member_object_id: str) -> None:
        member_ref = f"{self._settings.graph_uri}/{GRAPH_API_VERSION}/directoryObjects/{member_object_id}"
        self._graph_request(
            ctx, "POST", f"groups/{group_object_id}/members/$ref", body={"@odata.id": member_ref}
        )

    def remove_group_member(self, ctx: RequestContext, group_object_id: str, member_object_id: str) -> None:
        try:
            self._graph_request(
                ctx,
                "DELETE",
                f"groups/{group_object_id}/members/{member_object_id}/$ref",
                allow_missing=True,
            )
        except ResourceNotFoundError:
            pass

    # ------------------------------------------------------------------
    # RBAC
    # ------------------------------------------------------------------

    def find_role_definitions(self, ctx: RequestContext, scope: str, role_name: str) -> list[RoleDefinition]:
        definitions = self._call(
            ctx,
            "List role definitions",
            lambda **kw: list(
                self._authorization.role_definitions.list(
                    scope, filter=f"roleName eq '{role_name}'", **kw
                )
            ),
        )
        return [RoleDefinition(id=d.id, role_name=d.role_name) for d in definitions]

    def get_role_definition(self, ctx: RequestContext, role_id: str) -> RoleDefinition | None:
        try:
            definition = self._call(
                ctx,
                "Get role definition",
                self._authorization.role_definitions.get_by_id,
                role_id,
                allow_missing=True,
            )
        except ResourceNotFoundError:
            return None
        return RoleDefinition(id=definition.id, role_name=definition.role_name)

    def create_role_assignment(
        self, ctx: RequestContext, scope: str, role_definition_id: str, principal_id: str
    ) -> str:
        parameters = RoleAssignmentCreateParameters(
            role_definition_id=role_definition_id,
            principal_id=principal_id,
            principal_type=PRINCIPAL_TYPE_SERVICE_PRINCIPAL,
        )
        for attempt in range(1, ROLE_ASSIGNMENT_ATTEMPTS + 1):
            try:
                assignment = self._call(
                    ctx,
                    "Create role assignment",
                    self._authorization.role_assignments.create,
                    scope,
                    str(uuid.uuid4()),
                    parameters,
                )
                return assignment.id
            except UpstreamUnavailable as e:
                if not _is_principal_not_found(e) or attempt == ROLE_ASSIGNMENT_ATTEMPTS:
                    raise
                logger.info(
                    "Service principal not replicated yet, retrying role assignment",
                    extra={"attempt": attempt, "max_attempts": ROLE_ASSIGNMENT_ATTEMPTS},
                )
                ctx.sleep(ROLE_ASSIGNMENT_BACKOFF_SECONDS)
        raise AssertionError("unreachable")

    def delete_role_assignment(self, ctx: RequestContext, assignment_id: str) -> None:
        try:
            self._call(
                ctx,
                "Delete role assignment",
                self._authorization.role_assignments.delete_by_id,
                assignment_id,
                allow_missing=True,
            )
        except ResourceNotFoundError:
            logger.info("Role assignment already deleted", extra={"assignment_id": assignment_id})


def _transport_timeouts(ctx: RequestContext) -> dict[str, float]:
    remaining = ctx.remaining()
    if remaining is None:
        return {}
    return {"connection_timeout": remaining, "read_timeout": remaining}


def _is_principal_not_found(error: UpstreamUnavailable) -> bool:
    cause = error.__cause__
    if not isinstance(cause, HttpResponseError) or cause.error is None:
        return False
    return cause.error.code == "PrincipalNotFound"


def _application_from_json(data: dict[str, Any]) -> Application:
    return Application(
        object_id=data["id"],
        app_id=data["appId"],
        display_name=data.get("displayName", ""),
    )


def _password_from_json(data: dict[str, Any]) -> PasswordCredential:
    end = data.get("endDateTime")
    return PasswordCredential(
        key_id=data["keyId"],
        display_name=data.get("displayName") or "",
        end_date_time=datetime.fromisoformat(end.replace("Z", "+00:00")) if end else None,
        secret_text=data.get("secretText") or "",
    )
