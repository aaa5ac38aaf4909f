"""Backend wiring and request dispatch.

The hosting framework turns external calls into ``Request`` objects; the
backend routes them to the configuration store, roles, issuance and
rotation. Errors come back as a response-level error object rather than
an exception, mirroring how the host surfaces them to its callers.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .client import ClientCache, ProviderFactory, default_provider_factory
from .config_store import CONFIG_STORAGE_KEY, ConfigStore
from .context import DEFAULT_REQUEST_TIMEOUT_SECONDS, RequestContext
from .credentials import IdentityTokenSource
from .errors import AzSecretsError, InvalidConfiguration
from .issuance import DEFAULT_LEASE_TTL_SECONDS, MAX_LEASE_TTL_SECONDS, CredentialIssuer
from .models import Lease, LeaseInternal
from .roles import RoleStore
from .rotation import RootRotator, RotationResult
from .storage import Storage

logger = logging.getLogger(__name__)

BACKEND_HELP = """
The Azure secrets backend dynamically generates Azure service principals.
The credentials have a configurable lease and are revoked at the end of
the lease.

Configure credentials for managing Azure resources with the "config"
path and write policies with "roles/<name>" before requesting
credentials from "creds/<name>".
"""


class Operation(str, Enum):
    """Logical operations the host can request."""

    CREATE = "create"
    UPDATE = "update"
    READ = "read"
    DELETE = "delete"
    LIST = "list"


class UnsupportedOperation(AzSecretsError):
    """Raised when no handler exists for an operation and path."""

    pass


@dataclass
class Request:
    operation: Operation
    path: str
    data: dict[str, Any] = field(default_factory=dict)
    timeout: float | None = None


@dataclass
class Response:
    data: dict[str, Any] | None = None
    error: str | None = None
    error_type: str | None = None

    @property
    def is_error(self) -> bool:
        return self.error is not None


class Backend:
    """One mounted instance of the secrets engine."""

    def __init__(
        self,
        storage: Storage,
        *,
        provider_factory: ProviderFactory = default_provider_factory,
        token_source: IdentityTokenSource | None = None,
        environ: Mapping[str, str] | None = None,
        default_lease_ttl: int = DEFAULT_LEASE_TTL_SECONDS,
        max_lease_ttl: int = MAX_LEASE_TTL_SECONDS,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT_SECONDS,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._request_timeout = request_timeout
        self.storage = storage
        self.config_store = ConfigStore(storage)
        self.clients = ClientCache(
            provider_factory=provider_factory,
            token_source=token_source,
            environ=environ,
        )
        self.roles = RoleStore(storage)
        self.issuer = CredentialIssuer(
            self.config_store,
            self.roles,
            self.clients,
            default_ttl=default_lease_ttl,
            max_ttl=max_lease_ttl,
            clock=clock,
        )
        self.rotator = RootRotator(self.config_store, self.clients, storage, clock=clock)
        self.config_store.add_listener(self)

    # ------------------------------------------------------------------
    # Invalidation
    # ------------------------------------------------------------------

    def on_config_changed(self) -> None:
        """Configuration changed here or elsewhere; drop the cached client."""
        self.clients.reset()

    def invalidate(self, key: str) -> None:
        """Storage-change notification hook."""
        if key == CONFIG_STORAGE_KEY:
            self.on_config_changed()

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def handle_request(self, request: Request) -> Response:
        ctx = RequestContext(request.timeout or self._request_timeout)
        try:
            data = self._dispatch(ctx, request)
        except AzSecretsError as e:
            logger.warning(
                "Request failed",
                extra={
                    "operation": request.operation.value,
                    "path": request.path,
                    "error_type": type(e).__name__,
                    "error": str(e),
                },
            )
            return Response(error=str(e), error_type=type(e).__name__)
        return Response(data=data)

    def _dispatch(self, ctx: RequestContext, request: Request) -> dict[str, Any] | None:
        op = request.operation
        path = request.path.strip("/")

        if path == CONFIG_STORAGE_KEY:
            return self._handle_config(op, request.data)

        if path == "roles" and op in (Operation.LIST, Operation.READ):
            return {"keys": self.roles.list()}

        if path.startswith("roles/"):
            return self._handle_role(ctx, op, path.removeprefix("roles/"), request.data)

        if path.startswith("creds/") and op == Operation.READ:
            lease = self.issuer.issue(ctx, path.removeprefix("creds/"))
            return lease.model_dump(mode="json")

        if path == "rotate-root" and op in (Operation.CREATE, Operation.UPDATE):
            result = self.rotator.rotate(ctx)
            return _rotation_response(result)

        raise UnsupportedOperation(f"unsupported operation {op.value} on path '{path}'")

    def _handle_config(self, op: Operation, data: dict[str, Any]) -> dict[str, Any] | None:
        if op in (Operation.CREATE, Operation.UPDATE):
            return self.config_store.create_or_update(data, is_create=op == Operation.CREATE)
        if op == Operation.READ:
            return self.config_store.read()
        if op == Operation.DELETE:
            self.config_store.delete()
            return None
        raise UnsupportedOperation(f"unsupported operation {op.value} on config")

    def _handle_role(
        self, ctx: RequestContext, op: Operation, name: str, data: dict[str, Any]
    ) -> dict[str, Any] | None:
        if op in (Operation.CREATE, Operation.UPDATE):
            config = self.config_store.get()
            if config is None:
                raise InvalidConfiguration("backend must be configured before roles are written")
            provider = self.clients.get_client(ctx, config)
            return self.roles.write(ctx, name, data, provider).model_dump()
        if op == Operation.READ:
            role = self.roles.get(name)
            return None if role is None else role.model_dump()
        if op == Operation.DELETE:
            self.roles.delete(name)
            return None
        raise UnsupportedOperation(f"unsupported operation {op.value} on role")

    # ------------------------------------------------------------------
    # Lease callbacks
    # ------------------------------------------------------------------

    def revoke(self, internal: LeaseInternal | Mapping[str, Any], timeout: float | None = None) -> None:
        """Lease revocation callback. Raises on transient failure so the host retries."""
        if not isinstance(internal, LeaseInternal):
            internal = LeaseInternal.model_validate(dict(internal))
        self.issuer.revoke(RequestContext(timeout or self._request_timeout), internal)

    def renew(self, lease: Lease) -> Lease:
        """Lease renewal callback."""
        return self.issuer.renew(lease)

    def rotation_tick(self) -> RotationResult:
        """Periodic check driven by the host's scheduler."""
        return self.rotator.rotate_if_due(RequestContext(self._request_timeout))


def _rotation_response(result: RotationResult) -> dict[str, Any]:
    return {
        "rotated": result.rotated,
        "key_id": result.key_id,
        "expires_at": result.expires_at.isoformat() if result.expires_at else None,
    }
