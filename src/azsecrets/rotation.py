"""Root credential rotation.

Rotation never leaves the backend without a working credential:

1. a new password is added next to the current one,
2. the new password is proven usable by acquiring a token with it,
3. only then is it written to the configuration, provided the stored
   record is still the one rotation started from (this resets the cached
   client),
4. and only after that are older root passwords removed.

A failure before step 3 leaves the stored configuration untouched and the
new password is removed again. Rotations are serialised by a lock; a
scheduled check that finds a rotation running simply skips.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from enum import Enum
from typing import Any

from croniter import croniter

from .audit import log_security_audit_event, mask_identifier
from .client import ClientCache
from .config_store import ConfigStore
from .context import RequestContext
from .credentials import verify_client_secret
from .errors import AzSecretsError, Cancelled, InvalidConfiguration
from .models import Configuration, StaticSecret
from .provider import PasswordCredential, Provider
from .storage import Storage

logger = logging.getLogger(__name__)

ROTATION_STATE_KEY = "rotation/root"
ROOT_PASSWORD_DISPLAY_NAME = "azsecrets-root"

CLEANUP_TIMEOUT_SECONDS = 60.0


class RotationStatus(str, Enum):
    """Observable state of the root credential."""

    ACTIVE = "active"
    ROTATING = "rotating"
    ROTATION_FAILED = "rotation_failed"


@dataclass
class RotationState:
    """Persisted bookkeeping for scheduled rotation."""

    last_rotated: datetime | None = None
    key_id: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "last_rotated": self.last_rotated.isoformat() if self.last_rotated else None,
            "key_id": self.key_id,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RotationState:
        return cls(
            last_rotated=(
                datetime.fromisoformat(data["last_rotated"]) if data.get("last_rotated") else None
            ),
            key_id=data.get("key_id", ""),
        )


@dataclass
class RotationResult:
    """Outcome of a rotation request."""

    rotated: bool
    key_id: str = ""
    expires_at: datetime | None = None
    skipped_reason: str = ""


def scheduled_rotation_due(
    config: Configuration,
    last_rotated: datetime,
    now: datetime,
) -> bool:
    """Whether the rotation policy calls for a rotation at ``now``.

    Period policy: due once ``rotation_period`` has elapsed.
    Cron policy: due when the latest scheduled time is after the last
    rotation and, with a window, ``now`` is still inside that window.
    """
    if config.rotation_period:
        return now >= last_rotated + timedelta(seconds=config.rotation_period)

    if config.rotation_schedule:
        previous = croniter(config.rotation_schedule, now).get_prev(datetime)
        if previous <= last_rotated:
            return False
        if config.rotation_window and now > previous + timedelta(seconds=config.rotation_window):
            logger.warning(
                "Rotation window missed, waiting for next scheduled time",
                extra={"scheduled_at": previous.isoformat(), "window_seconds": config.rotation_window},
            )
            return False
        return True

    return False


class RootRotator:
    """Rotates the static root secret stored in the configuration."""

    def __init__(
        self,
        config_store: ConfigStore,
        clients: ClientCache,
        storage: Storage,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
        verify: Callable[..., None] = verify_client_secret,
    ) -> None:
        self._config_store = config_store
        self._clients = clients
        self._storage = storage
        self._clock = clock
        self._verify = verify
        self._lock = threading.Lock()
        self._status = RotationStatus.ACTIVE

    @property
    def status(self) -> RotationStatus:
        return self._status

    def load_state(self) -> RotationState:
        raw = self._storage.get(ROTATION_STATE_KEY)
        return RotationState() if raw is None else RotationState.from_dict(raw)

    def _save_state(self, state: RotationState) -> None:
        self._storage.put(ROTATION_STATE_KEY, state.to_dict())

    def rotate(self, ctx: RequestContext) -> RotationResult:
        """Rotate now, waiting for any in-flight rotation to finish first.

        Raises:
            InvalidConfiguration: If the backend does not use a static secret.
            UpstreamUnavailable: If Azure rejects any step; the old secret stays.
            Cancelled: If the context ends first.
        """
        remaining = ctx.remaining()
        acquired = self._lock.acquire(timeout=-1 if remaining is None else remaining)
        if not acquired:
            raise Cancelled("timed out waiting for an in-flight rotation")
        try:
            return self._rotate(ctx)
        finally:
            self._lock.release()

    def rotate_if_due(self, ctx: RequestContext) -> RotationResult:
        """Scheduled entry point; rotates only when the policy says so."""
        config = self._config_store.get()
        if config is None:
            return RotationResult(rotated=False, skipped_reason="not configured")
        if config.disable_automated_rotation:
            return RotationResult(rotated=False, skipped_reason="automated rotation disabled")
        if not config.has_rotation_policy:
            return RotationResult(rotated=False, skipped_reason="no rotation policy")
        if not isinstance(config.auth_mode, StaticSecret):
            return RotationResult(rotated=False, skipped_reason="no static secret to rotate")

        now = self._clock()
        state = self.load_state()
        if state.last_rotated is None:
            # Start the clock on first sight of a policy
            state.last_rotated = now
            self._save_state(state)
            return RotationResult(rotated=False, skipped_reason="rotation clock started")

        if not scheduled_rotation_due(config, state.last_rotated, now):
            return RotationResult(rotated=False, skipped_reason="not due")

        if not self._lock.acquire(blocking=False):
            return RotationResult(rotated=False, skipped_reason="rotation in progress")
        try:
            # A rotation may have finished between the check above and the lock
            state = self.load_state()
            config = self._config_store.get()
            if config is None or state.last_rotated is None:
                return RotationResult(rotated=False, skipped_reason="not configured")
            if not scheduled_rotation_due(config, state.last_rotated, now):
                return RotationResult(rotated=False, skipped_reason="not due")
            return self._rotate(ctx)
        finally:
            self._lock.release()

    def _rotate(self, ctx: RequestContext) -> RotationResult:
        config = self._config_store.get()
        if config is None:
            raise InvalidConfiguration("backend is not configured")
        mode = config.auth_mode
        if not isinstance(mode, StaticSecret):
            raise InvalidConfiguration("root rotation requires client_id and client_secret")

        settings = self._clients.get_client_settings(config)
        provider = self._clients.get_client(ctx, config)
        previous = self.load_state()

        self._status = RotationStatus.ROTATING
        app_object_id = ""
        new_password: PasswordCredential | None = None
        try:
            app = provider.get_application_by_app_id(ctx, mode.client_id)
            if app is None:
                raise InvalidConfiguration(
                    f"no application found for client_id {mask_identifier(mode.client_id)}"
                )
            app_object_id = app.object_id
            now = self._clock()
            expires_at = now + timedelta(seconds=config.root_password_ttl)
            new_password = provider.add_password(ctx, app_object_id, ROOT_PASSWORD_DISPLAY_NAME, expires_at)

            self._verify(settings, mode.client_id, new_password.secret_text, ctx)
            ctx.check("root rotation")
            self._config_store.write_rotated_secret(mode.client_id, mode.client_secret, new_password.secret_text)
        except Exception as e:
            self._status = RotationStatus.ROTATION_FAILED
            logger.error(
                "Root credential rotation failed, keeping current secret",
                extra={"error": str(e), "error_type": type(e).__name__},
            )
            if new_password is not None:
                self._discard_password(provider, app_object_id, new_password.key_id)
            log_security_audit_event("rotate", action="rotate_root", result="failure")
            raise

        self._save_state(RotationState(last_rotated=now, key_id=new_password.key_id))
        self._status = RotationStatus.ACTIVE
        self._remove_previous_passwords(provider, app_object_id, new_password.key_id, previous.key_id)

        log_security_audit_event(
            "rotate",
            target=mask_identifier(mode.client_id),
            action="rotate_root",
            result="success",
            key_id=new_password.key_id,
            expires_at=expires_at.isoformat(),
        )
        return RotationResult(rotated=True, key_id=new_password.key_id, expires_at=expires_at)

    def _discard_password(self, provider: Provider, app_object_id: str, key_id: str) -> None:
        try:
            provider.remove_password(RequestContext(CLEANUP_TIMEOUT_SECONDS), app_object_id, key_id)
        except AzSecretsError as e:
            logger.error(
                "Failed to remove unused root password",
                extra={"key_id": key_id, "error": str(e)},
            )

    def _remove_previous_passwords(
        self,
        provider: Provider,
        app_object_id: str,
        current_key_id: str,
        previous_key_id: str,
    ) -> None:
        """Best effort: the new secret is already in place."""
        ctx = RequestContext(CLEANUP_TIMEOUT_SECONDS)
        try:
            passwords = provider.list_passwords(ctx, app_object_id)
            stale = {
                p.key_id
                for p in passwords
                if p.key_id != current_key_id
                and (p.display_name == ROOT_PASSWORD_DISPLAY_NAME or p.key_id == previous_key_id)
            }
            for key_id in sorted(stale):
                provider.remove_password(ctx, app_object_id, key_id)
            logger.info("Removed previous root passwords", extra={"count": len(stale)})
        except AzSecretsError as e:
            logger.warning(
                "Could not remove previous root passwords",
                extra={"app_object_id": app_object_id, "error": str(e)},
            )
