"""Dynamic credential issuance, renewal and revocation.

A dynamic role gets a fresh application + service principal per lease,
with its RBAC assignments and group memberships. A static role (one with
``application_object_id``) only gets a new password on an existing
application. Revocation undoes exactly what issuance recorded in the
lease's internal data and treats anything already gone as success.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Callable
from datetime import UTC, datetime, timedelta

from .audit import log_security_audit_event, mask_identifier
from .client import ClientCache
from .config_store import ConfigStore
from .context import RequestContext
from .errors import AzSecretsError, InvalidConfiguration
from .models import Lease, LeaseInternal, Role
from .provider import Provider
from .roles import RoleStore

logger = logging.getLogger(__name__)

APP_NAME_PREFIX = "azsecrets-"
PASSWORD_DISPLAY_NAME = "azsecrets-lease"

DEFAULT_LEASE_TTL_SECONDS = 3600
MAX_LEASE_TTL_SECONDS = 86400 * 32

# Cleanup after a failed or cancelled issuance runs on its own deadline
CLEANUP_TIMEOUT_SECONDS = 60.0


def compute_ttl(
    role_ttl: int,
    role_max_ttl: int,
    default_ttl: int = DEFAULT_LEASE_TTL_SECONDS,
    system_max_ttl: int = MAX_LEASE_TTL_SECONDS,
) -> tuple[int, int]:
    """Return ``(ttl, max_ttl)`` for a new lease.

    Role values override the backend defaults; the system max always caps.
    """
    max_ttl = role_max_ttl or system_max_ttl
    if system_max_ttl and max_ttl > system_max_ttl:
        max_ttl = system_max_ttl
    ttl = role_ttl or default_ttl
    if max_ttl and ttl > max_ttl:
        ttl = max_ttl
    return ttl, max_ttl


class CredentialIssuer:
    """Creates and destroys cloud identities for leases."""

    def __init__(
        self,
        config_store: ConfigStore,
        roles: RoleStore,
        clients: ClientCache,
        *,
        default_ttl: int = DEFAULT_LEASE_TTL_SECONDS,
        max_ttl: int = MAX_LEASE_TTL_SECONDS,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self._config_store = config_store
        self._roles = roles
        self._clients = clients
        self._default_ttl = default_ttl
        self._max_ttl = max_ttl
        self._clock = clock

    def _provider(self, ctx: RequestContext) -> Provider:
        config = self._config_store.get()
        if config is None:
            raise InvalidConfiguration("backend is not configured")
        return self._clients.get_client(ctx, config)

    # ------------------------------------------------------------------
    # Issue
    # ------------------------------------------------------------------

    def issue(self, ctx: RequestContext, role_name: str) -> Lease:
        """Create a credential for ``role_name``.

        Raises:
            RoleNotFound: If the role does not exist.
            InvalidConfiguration: If the backend cannot build a client.
            UpstreamUnavailable: If an Azure call fails.
            Cancelled: If the context ends; partial identities are cleaned up.
        """
        role = self._roles.require(role_name)
        provider = self._provider(ctx)
        ttl, max_ttl = compute_ttl(role.ttl, role.max_ttl, self._default_ttl, self._max_ttl)
        now = self._clock()

        if role.is_static:
            internal, data = self._issue_static(ctx, provider, role_name, role, now, max_ttl)
        else:
            internal, data = self._issue_dynamic(ctx, provider, role_name, role, now, max_ttl)

        lease = Lease(
            lease_id=str(uuid.uuid4()),
            data=data,
            ttl=ttl,
            max_ttl=max_ttl,
            issued_at=now,
            expires_at=now + timedelta(seconds=ttl),
            internal=internal,
        )
        log_security_audit_event(
            "issue",
            target=role_name,
            action="create_service_principal" if internal.dynamic else "add_password",
            result="success",
            client_id=mask_identifier(data["client_id"]),
            ttl=ttl,
        )
        return lease

    def _issue_static(
        self,
        ctx: RequestContext,
        provider: Provider,
        role_name: str,
        role: Role,
        now: datetime,
        max_ttl: int,
    ) -> tuple[LeaseInternal, dict[str, str]]:
        app = provider.get_application(ctx, role.application_object_id)
        if app is None:
            raise InvalidConfiguration(
                f"application {role.application_object_id} for role '{role_name}' does not exist"
            )
        password = provider.add_password(
            ctx, app.object_id, PASSWORD_DISPLAY_NAME, now + timedelta(seconds=max_ttl)
        )
        internal = LeaseInternal(
            role=role_name,
            dynamic=False,
            app_object_id=app.object_id,
            key_id=password.key_id,
        )
        return internal, {"client_id": app.app_id, "client_secret": password.secret_text}

    def _issue_dynamic(
        self,
        ctx: RequestContext,
        provider: Provider,
        role_name: str,
        role: Role,
        now: datetime,
        max_ttl: int,
    ) -> tuple[LeaseInternal, dict[str, str]]:
        display_name = f"{APP_NAME_PREFIX}{role_name}-{uuid.uuid4()}"
        internal = LeaseInternal(
            role=role_name,
            dynamic=True,
            app_object_id="",
            permanently_delete=role.permanently_delete,
        )

        try:
            app = provider.create_application(
                ctx, display_name, sign_in_audience=role.sign_in_audience, tags=role.tags
            )
            internal.app_object_id = app.object_id
            internal.sp_object_id = provider.create_service_principal(ctx, app.app_id, tags=role.tags)
            password = provider.add_password(
                ctx, app.object_id, PASSWORD_DISPLAY_NAME, now + timedelta(seconds=max_ttl)
            )
            internal.key_id = password.key_id

            for assignment in role.azure_roles:
                assignment_id = provider.create_role_assignment(
                    ctx, assignment.scope, assignment.role_id, internal.sp_object_id
                )
                internal.role_assignment_ids.append(assignment_id)

            for group in role.azure_groups:
                provider.add_group_member(ctx, group.object_id, internal.sp_object_id)
                internal.group_object_ids.append(group.object_id)
        except Exception as e:
            logger.error(
                "Issuance failed, removing partially created identity",
                extra={"role": role_name, "error": str(e), "error_type": type(e).__name__},
            )
            if internal.app_object_id:
                self._cleanup(provider, internal)
            else:
                self._cleanup_unrecorded_application(provider, internal, display_name)
            log_security_audit_event(
                "issue", target=role_name, action="create_service_principal", result="failure"
            )
            raise

        return internal, {"client_id": app.app_id, "client_secret": password.secret_text}

    def _cleanup(self, provider: Provider, internal: LeaseInternal) -> None:
        cleanup_ctx = RequestContext(CLEANUP_TIMEOUT_SECONDS)
        try:
            self._revoke_dynamic(cleanup_ctx, provider, internal)
        except AzSecretsError as e:
            logger.error(
                "Cleanup of partially created identity failed",
                extra={"app_object_id": internal.app_object_id, "error": str(e)},
            )

    def _cleanup_unrecorded_application(
        self, provider: Provider, internal: LeaseInternal, display_name: str
    ) -> None:
        """Find an application whose create call failed after Azure accepted it."""
        try:
            found = provider.find_applications_by_display_name(
                RequestContext(CLEANUP_TIMEOUT_SECONDS), display_name
            )
        except AzSecretsError as e:
            logger.error(
                "Lookup of possibly created application failed",
                extra={"display_name": display_name, "error": str(e)},
            )
            return
        for app in found:
            logger.warning(
                "Removing application created by a failed issuance",
                extra={"app_object_id": app.object_id},
            )
            self._cleanup(provider, internal.model_copy(update={"app_object_id": app.object_id}))

    # ------------------------------------------------------------------
    # Renew
    # ------------------------------------------------------------------

    def renew(self, lease: Lease) -> Lease:
        """Extend a lease without touching the credential.

        Raises:
            RoleNotFound: If the lease's role was deleted.
            InvalidConfiguration: If the lease is past its max TTL.
        """
        role = self._roles.require(lease.internal.role)
        now = self._clock()
        remaining = int((lease.issued_at + timedelta(seconds=lease.max_ttl) - now).total_seconds())
        if remaining <= 0:
            raise InvalidConfiguration("lease is past its max TTL and cannot be renewed")

        ttl, _ = compute_ttl(role.ttl, role.max_ttl, self._default_ttl, self._max_ttl)
        ttl = min(ttl, remaining)
        logger.info("Lease renewed", extra={"lease_id": lease.lease_id, "ttl": ttl})
        return lease.model_copy(update={"ttl": ttl, "expires_at": now + timedelta(seconds=ttl)})

    # ------------------------------------------------------------------
    # Revoke
    # ------------------------------------------------------------------

    def revoke(self, ctx: RequestContext, internal: LeaseInternal) -> None:
        """Delete what a lease created. Safe to call repeatedly.

        Raises:
            UpstreamUnavailable: On a transient Azure failure; retryable.
        """
        provider = self._provider(ctx)
        if internal.dynamic:
            self._revoke_dynamic(ctx, provider, internal)
        else:
            provider.remove_password(ctx, internal.app_object_id, internal.key_id)

        log_security_audit_event(
            "revoke",
            target=internal.role,
            action="delete_service_principal" if internal.dynamic else "remove_password",
            result="success",
            app_object_id=mask_identifier(internal.app_object_id),
        )

    def _revoke_dynamic(self, ctx: RequestContext, provider: Provider, internal: LeaseInternal) -> None:
        for assignment_id in internal.role_assignment_ids:
            provider.delete_role_assignment(ctx, assignment_id)
        if internal.sp_object_id:
            for group_id in internal.group_object_ids:
                provider.remove_group_member(ctx, group_id, internal.sp_object_id)
        provider.delete_application(ctx, internal.app_object_id, permanently=internal.permanently_delete)
