"""Process settings loaded from the environment.

Bounds are enforced at load time so a misconfigured process fails at
startup rather than on its first request.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from .issuance import DEFAULT_LEASE_TTL_SECONDS, MAX_LEASE_TTL_SECONDS


class ConfigurationError(Exception):
    """Raised when process settings validation fails."""

    pass


DEFAULT_STORAGE_DIR = "~/.azsecrets"

DEFAULT_REQUEST_TIMEOUT_SECONDS = 60
MIN_REQUEST_TIMEOUT_SECONDS = 5
MAX_REQUEST_TIMEOUT_SECONDS = 600

DEFAULT_ROTATION_CHECK_INTERVAL_SECONDS = 60
MIN_ROTATION_CHECK_INTERVAL_SECONDS = 10
MAX_ROTATION_CHECK_INTERVAL_SECONDS = 3600


@dataclass(frozen=True)
class Settings:
    """Settings for the CLI and the rotation daemon."""

    storage_dir: Path = field(default_factory=lambda: Path(DEFAULT_STORAGE_DIR).expanduser())
    request_timeout_seconds: int = DEFAULT_REQUEST_TIMEOUT_SECONDS
    default_lease_ttl_seconds: int = DEFAULT_LEASE_TTL_SECONDS
    max_lease_ttl_seconds: int = MAX_LEASE_TTL_SECONDS
    rotation_check_interval_seconds: int = DEFAULT_ROTATION_CHECK_INTERVAL_SECONDS
    enable_audit_logging: bool = True

    def __post_init__(self) -> None:
        errors: list[str] = []

        if not (
            MIN_REQUEST_TIMEOUT_SECONDS
            <= self.request_timeout_seconds
            <= MAX_REQUEST_TIMEOUT_SECONDS
        ):
            errors.append(
                f"AZSECRETS_REQUEST_TIMEOUT must be between {MIN_REQUEST_TIMEOUT_SECONDS} "
                f"and {MAX_REQUEST_TIMEOUT_SECONDS} seconds"
            )

        if self.default_lease_ttl_seconds < 1:
            errors.append("AZSECRETS_DEFAULT_LEASE_TTL must be at least 1 second")
        if self.max_lease_ttl_seconds < self.default_lease_ttl_seconds:
            errors.append("AZSECRETS_MAX_LEASE_TTL cannot be less than AZSECRETS_DEFAULT_LEASE_TTL")

        if not (
            MIN_ROTATION_CHECK_INTERVAL_SECONDS
            <= self.rotation_check_interval_seconds
            <= MAX_ROTATION_CHECK_INTERVAL_SECONDS
        ):
            errors.append(
                f"AZSECRETS_ROTATION_CHECK_INTERVAL must be between "
                f"{MIN_ROTATION_CHECK_INTERVAL_SECONDS} and {MAX_ROTATION_CHECK_INTERVAL_SECONDS} seconds"
            )

        if errors:
            error_msg = "Configuration validation failed:\n  - " + "\n  - ".join(errors)
            raise ConfigurationError(error_msg)

    @classmethod
    def from_env(cls) -> Settings:
        """Load settings from environment variables.

        Environment Variables:
            AZSECRETS_STORAGE_DIR: Directory for the file-backed store (default: ~/.azsecrets)
            AZSECRETS_REQUEST_TIMEOUT: Deadline for one request in seconds (default: 60)
            AZSECRETS_DEFAULT_LEASE_TTL: Lease TTL when a role sets none (default: 3600)
            AZSECRETS_MAX_LEASE_TTL: Upper bound on any lease (default: 32 days)
            AZSECRETS_ROTATION_CHECK_INTERVAL: Seconds between rotation checks (default: 60)
            AZSECRETS_ENABLE_AUDIT_LOGGING: Emit JSON audit logs (default: true)
        """

        def get_int(key: str, default: int) -> int:
            value = os.environ.get(key)
            if value is None:
                return default
            try:
                return int(value)
            except ValueError as e:
                raise ConfigurationError(f"{key} must be an integer: {value}") from e

        def get_bool(key: str, default: bool) -> bool:
            value = os.environ.get(key, "").lower()
            if not value:
                return default
            return value in ("true", "1", "yes")

        return cls(
            storage_dir=Path(os.environ.get("AZSECRETS_STORAGE_DIR", DEFAULT_STORAGE_DIR)).expanduser(),
            request_timeout_seconds=get_int(
                "AZSECRETS_REQUEST_TIMEOUT", DEFAULT_REQUEST_TIMEOUT_SECONDS
            ),
            default_lease_ttl_seconds=get_int("AZSECRETS_DEFAULT_LEASE_TTL", DEFAULT_LEASE_TTL_SECONDS),
            max_lease_ttl_seconds=get_int("AZSECRETS_MAX_LEASE_TTL", MAX_LEASE_TTL_SECONDS),
            rotation_check_interval_seconds=get_int(
                "AZSECRETS_ROTATION_CHECK_INTERVAL", DEFAULT_ROTATION_CHECK_INTERVAL_SECONDS
            ),
            enable_audit_logging=get_bool("AZSECRETS_ENABLE_AUDIT_LOGGING", True),
        )
