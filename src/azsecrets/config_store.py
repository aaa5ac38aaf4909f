"""Configuration create/update/read/delete with validation.

All checks run before anything is written, so a rejected request never
leaves partial state behind. Successful writes notify registered
listeners, which is how the client cache learns it must be rebuilt.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Mapping
from typing import Any, Protocol

from croniter import croniter
from pydantic import ValidationError

from .audit import log_security_audit_event
from .environments import resolve_environment
from .errors import InvalidConfiguration
from .models import (
    DEFAULT_ROOT_PASSWORD_TTL_SECONDS,
    ROTATION_FIELDS,
    ConfigPatch,
    Configuration,
    StaticSecret,
)
from .storage import Storage

logger = logging.getLogger(__name__)

CONFIG_STORAGE_KEY = "config"

# Keys that belong to the generic storage-rotation contract, not to
# root-credential rotation
RESERVED_ROTATION_KEYS = frozenset({"resource"})


class ConfigChangeListener(Protocol):
    def on_config_changed(self) -> None: ...


class ConfigStore:
    """Owns the configuration record at ``CONFIG_STORAGE_KEY``."""

    def __init__(self, storage: Storage) -> None:
        self._storage = storage
        self._listeners: list[ConfigChangeListener] = []
        # Serialises read-merge-write within this process
        self._write_lock = threading.Lock()

    def add_listener(self, listener: ConfigChangeListener) -> None:
        self._listeners.append(listener)

    def get(self) -> Configuration | None:
        """Return the stored record, or None if never written."""
        raw = self._storage.get(CONFIG_STORAGE_KEY)
        if raw is None:
            return None
        return Configuration.model_validate(raw)

    def read(self) -> dict[str, Any]:
        """Return the normalised view with secrets removed.

        An absent record reads as the all-zero shape.
        """
        return (self.get() or Configuration()).to_response()

    def create_or_update(self, data: Mapping[str, Any], *, is_create: bool) -> dict[str, Any]:
        """Merge ``data`` onto the stored record, validate and persist.

        Raises:
            InvalidConfiguration: If the merged record is invalid.
        """
        _reject_reserved_keys(data)
        patch = _parse_patch(data)

        with self._write_lock:
            # Create on an already configured mount merges like an update
            merged = patch.apply_to(self.get() or Configuration())

            if not merged.root_password_ttl:
                merged = merged.model_copy(
                    update={"root_password_ttl": DEFAULT_ROOT_PASSWORD_TTL_SECONDS}
                )

            validate_configuration(merged)
            self._storage.put(CONFIG_STORAGE_KEY, merged.model_dump())

        log_security_audit_event(
            "config",
            action="create" if is_create else "update",
            result="success",
            fields=sorted(patch.model_fields_set),
            auth_mode=merged.auth_mode.type,
            environment=merged.environment or "default",
        )
        self._notify()
        return merged.to_response()

    def write_rotated_secret(self, client_id: str, previous_secret: str, client_secret: str) -> Configuration:
        """Swap in a new root secret.

        The swap is a compare-and-set: it only happens while the stored
        record still authenticates as ``client_id`` with ``previous_secret``.
        Only the static-secret field changes, so the cross-field checks of
        ``create_or_update`` are not repeated.

        Raises:
            InvalidConfiguration: If no configuration is stored, or it changed
                since rotation started.
        """
        with self._write_lock:
            current = self.get()
            if current is None:
                raise InvalidConfiguration("no configuration to rotate")
            mode = current.auth_mode
            if (
                not isinstance(mode, StaticSecret)
                or mode.client_id != client_id
                or mode.client_secret != previous_secret
            ):
                raise InvalidConfiguration("configuration changed during root rotation")
            updated = current.model_copy(update={"client_secret": client_secret})
            self._storage.put(CONFIG_STORAGE_KEY, updated.model_dump())

        self._notify()
        return updated

    def delete(self) -> None:
        with self._write_lock:
            self._storage.delete(CONFIG_STORAGE_KEY)
        logger.info("Configuration deleted")
        log_security_audit_event("config", action="delete", result="success")
        self._notify()

    def _notify(self) -> None:
        for listener in self._listeners:
            listener.on_config_changed()


def validate_configuration(config: Configuration) -> None:
    """Cross-field validation of a merged configuration.

    Collects every problem so callers see them all at once.

    Raises:
        InvalidConfiguration: If any check fails.
    """
    errors: list[str] = []

    if not config.subscription_id:
        errors.append("subscription_id is required")
    if not config.tenant_id:
        errors.append("tenant_id is required")

    if config.client_secret and config.identity_token_audience:
        errors.append("only one of client_secret or identity_token_audience can be set")
    if config.client_secret and not config.client_id:
        errors.append("client_id is required when client_secret is set")

    if config.rotation_period and config.rotation_schedule:
        errors.append(
            "mutually exclusive fields rotation_schedule and rotation_period were both "
            "specified; only one of them can be provided"
        )
    if config.rotation_schedule and not croniter.is_valid(config.rotation_schedule):
        errors.append(f"rotation_schedule is not a valid cron expression: {config.rotation_schedule}")

    if errors:
        error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
        raise InvalidConfiguration(error_msg)

    resolve_environment(config.environment)


def _reject_reserved_keys(data: Mapping[str, Any]) -> None:
    reserved = RESERVED_ROTATION_KEYS.intersection(data)
    if not reserved:
        return
    rotation = sorted(set(ROTATION_FIELDS).intersection(data))
    if rotation:
        raise InvalidConfiguration(
            f"fields {rotation} cannot be combined with {sorted(reserved)}: "
            "this backend only rotates its own root credential"
        )
    logger.warning("Ignoring unsupported configuration keys", extra={"keys": sorted(reserved)})


def _parse_patch(data: Mapping[str, Any]) -> ConfigPatch:
    try:
        return ConfigPatch.model_validate(dict(data))
    except ValidationError as e:
        problems = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in e.errors()]
        raise InvalidConfiguration(
            "Configuration validation failed:\n  - " + "\n  - ".join(problems)
        ) from e
