"""Azure credential construction for each authentication mode.

Static secret   -> ClientSecretCredential
Federated (WIF) -> ClientAssertionCredential fed by the host's identity tokens
Unconfigured    -> ManagedIdentityCredential of the host
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING

from azure.core.credentials import AccessToken, TokenCredential
from azure.core.exceptions import AzureError, ClientAuthenticationError
from azure.identity import (
    ClientAssertionCredential,
    ClientSecretCredential,
    ManagedIdentityCredential,
)

from .audit import mask_identifier
from .context import RequestContext
from .errors import InvalidConfiguration, UpstreamUnavailable
from .models import FederatedIdentity, StaticSecret

if TYPE_CHECKING:
    from .client import ClientSettings

logger = logging.getLogger(__name__)

# Signature: (audience, ttl_seconds) -> signed JWT issued by the host
IdentityTokenSource = Callable[[str, int], str]

# New application passwords take a while to replicate across the directory
SECRET_VERIFY_ATTEMPTS = 5
SECRET_VERIFY_BACKOFF_SECONDS = 2.0


def build_credential(
    settings: ClientSettings,
    token_source: IdentityTokenSource | None = None,
) -> TokenCredential:
    """Create the credential for the configured authentication mode.

    Raises:
        InvalidConfiguration: If federated identity is selected but the host
            cannot issue identity tokens.
    """
    mode = settings.auth_mode
    authority = settings.environment.authority_host

    if isinstance(mode, StaticSecret):
        logger.info(
            "Using client secret credential",
            extra={"client_id": mask_identifier(mode.client_id)},
        )
        return ClientSecretCredential(
            tenant_id=settings.tenant_id,
            client_id=mode.client_id,
            client_secret=mode.client_secret,
            authority=authority,
        )

    if isinstance(mode, FederatedIdentity):
        if token_source is None:
            raise InvalidConfiguration(
                "identity_token_audience is set but no identity token source is available"
            )

        def get_assertion() -> str:
            return token_source(mode.audience, mode.token_ttl)

        logger.info(
            "Using federated identity credential",
            extra={"client_id": mask_identifier(mode.client_id), "audience": mode.audience},
        )
        return ClientAssertionCredential(
            tenant_id=settings.tenant_id,
            client_id=mode.client_id,
            func=get_assertion,
            authority=authority,
        )

    if mode.client_id:
        logger.info(
            "Using user-assigned managed identity",
            extra={"client_id": mask_identifier(mode.client_id)},
        )
        return ManagedIdentityCredential(client_id=mode.client_id)

    logger.info("Using system-assigned managed identity")
    return ManagedIdentityCredential()


def acquire_token(credential: TokenCredential, scope: str, ctx: RequestContext) -> AccessToken:
    """Acquire a token, translating SDK failures.

    Raises:
        Cancelled: If the context is done.
        UpstreamUnavailable: If the token exchange fails.
    """
    ctx.check("token acquisition")
    try:
        return credential.get_token(scope)
    except ClientAuthenticationError as e:
        raise UpstreamUnavailable(f"authentication failed: {e.message}") from e
    except AzureError as e:
        raise UpstreamUnavailable(f"token acquisition failed: {e}") from e


def verify_client_secret(
    settings: ClientSettings,
    client_id: str,
    client_secret: str,
    ctx: RequestContext,
    *,
    attempts: int = SECRET_VERIFY_ATTEMPTS,
    backoff_seconds: float = SECRET_VERIFY_BACKOFF_SECONDS,
) -> None:
    """Confirm a freshly created secret can authenticate.

    Retries with linear backoff to ride out directory replication.

    Raises:
        UpstreamUnavailable: If the secret never becomes usable.
        Cancelled: If the context ends first.
    """
    credential = ClientSecretCredential(
        tenant_id=settings.tenant_id,
        client_id=client_id,
        client_secret=client_secret,
        authority=settings.environment.authority_host,
    )
    last_error: UpstreamUnavailable | None = None

    for attempt in range(1, attempts + 1):
        try:
            acquire_token(credential, settings.environment.resource_manager_scope, ctx)
            return
        except UpstreamUnavailable as e:
            if ctx.expired():
                raise
            last_error = e
            if attempt < attempts:
                logger.warning(
                    "New secret not usable yet, retrying",
                    extra={"attempt": attempt, "max_attempts": attempts, "error": str(e)},
                )
                ctx.sleep(backoff_seconds * attempt)

    assert last_error is not None, "Verify loop completed without setting last_error"
    raise last_error
