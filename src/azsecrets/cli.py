"""Command line interface (azsecrets).

Drives a backend over a file-backed store, for operators and for local
development.

Usage:
    azsecrets config write -f config.yaml       # Create or update config
    azsecrets config write tenant_id=...         # Partial update
    azsecrets config read                        # Show config (no secrets)
    azsecrets role write web -f role.yaml        # Define a role
    azsecrets creds web                          # Issue a credential
    azsecrets revoke -f lease.json               # Revoke an issued credential
    azsecrets rotate-root                        # Rotate the root secret now
    azsecrets rotation run                       # Run the rotation daemon
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from pathlib import Path
from typing import Any

import click
import yaml

from . import __version__
from .audit import setup_logging
from .backend import Backend, Operation, Request, Response
from .credentials import IdentityTokenSource
from .errors import AzSecretsError
from .main import run_rotation_loop
from .settings import ConfigurationError, Settings
from .storage import FileStorage

IDENTITY_TOKEN_FILE_ENV = "AZSECRETS_IDENTITY_TOKEN_FILE"


def file_token_source(path: Path) -> IdentityTokenSource:
    """Identity tokens projected into a file by the host (e.g. a kubelet)."""

    def read_token(audience: str, ttl: int) -> str:
        return path.read_text(encoding="utf-8").strip()

    return read_token


def build_backend(settings: Settings) -> Backend:
    token_file = os.environ.get(IDENTITY_TOKEN_FILE_ENV)
    return Backend(
        FileStorage(settings.storage_dir),
        token_source=file_token_source(Path(token_file)) if token_file else None,
        default_lease_ttl=settings.default_lease_ttl_seconds,
        max_lease_ttl=settings.max_lease_ttl_seconds,
        request_timeout=settings.request_timeout_seconds,
    )


def load_payload(file: Path | None, pairs: tuple[str, ...]) -> dict[str, Any]:
    """Merge a YAML/JSON file with ``key=value`` overrides.

    Values are parsed as YAML scalars, so ``rotation_period=3600`` is an int
    and ``disable_automated_rotation=true`` a bool.
    """
    data: dict[str, Any] = {}
    if file is not None:
        loaded = yaml.safe_load(file.read_text(encoding="utf-8")) or {}
        if not isinstance(loaded, dict):
            raise click.ClickException(f"{file} must contain a mapping")
        data.update(loaded)
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise click.ClickException(f"Expected key=value, got: {pair}")
        data[key] = yaml.safe_load(value) if value else ""
    return data


def emit(response: Response) -> None:
    if response.is_error:
        raise click.ClickException(f"{response.error_type}: {response.error}")
    if response.data is not None:
        click.echo(json.dumps(response.data, indent=2, sort_keys=True))


# =============================================================================
# Main CLI Group
# =============================================================================


@click.group()
@click.version_option(version=__version__, prog_name="azsecrets")
@click.option(
    "--storage-dir",
    type=click.Path(file_okay=False, path_type=Path),
    help="Override AZSECRETS_STORAGE_DIR",
)
@click.option("--log-level", default="WARNING", show_default=True, help="Logging level")
@click.option("--json-logs/--text-logs", default=True, help="Log format")
@click.pass_context
def cli(ctx: click.Context, storage_dir: Path | None, log_level: str, json_logs: bool) -> None:
    """Azure secrets engine CLI (azsecrets).

    Issues short-lived Azure service principal credentials and rotates
    the root credential used to create them.
    """
    setup_logging(getattr(logging, log_level.upper(), logging.WARNING), json_output=json_logs)
    try:
        settings = Settings.from_env()
    except ConfigurationError as e:
        raise click.ClickException(str(e)) from e
    if storage_dir is not None:
        settings = dataclasses.replace(settings, storage_dir=storage_dir)
    if not settings.enable_audit_logging:
        logging.getLogger("azsecrets.audit").setLevel(logging.WARNING)
    ctx.obj = {"settings": settings, "backend": build_backend(settings)}


def _backend(ctx: click.Context) -> Backend:
    return ctx.obj["backend"]


# =============================================================================
# Config Commands
# =============================================================================


@cli.group()
def config() -> None:
    """Backend configuration: write, read, delete."""
    pass


@config.command("write")
@click.option("--file", "-f", "file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.option("--create", is_flag=True, help="Treat as a create instead of an update")
@click.argument("pairs", nargs=-1)
@click.pass_context
def config_write(ctx: click.Context, file: Path | None, create: bool, pairs: tuple[str, ...]) -> None:
    """Create or update the configuration."""
    data = load_payload(file, pairs)
    operation = Operation.CREATE if create else Operation.UPDATE
    emit(_backend(ctx).handle_request(Request(operation, "config", data)))


@config.command("read")
@click.pass_context
def config_read(ctx: click.Context) -> None:
    """Show the configuration with secrets removed."""
    emit(_backend(ctx).handle_request(Request(Operation.READ, "config")))


@config.command("delete")
@click.confirmation_option(prompt="Reset the backend configuration?")
@click.pass_context
def config_delete(ctx: click.Context) -> None:
    """Reset the configuration to defaults."""
    emit(_backend(ctx).handle_request(Request(Operation.DELETE, "config")))
    click.secho("✓ Configuration deleted", fg="green")


# =============================================================================
# Role Commands
# =============================================================================


@cli.group()
def role() -> None:
    """Role management: write, read, list, delete."""
    pass


@role.command("write")
@click.argument("name")
@click.option("--file", "-f", "file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.argument("pairs", nargs=-1)
@click.pass_context
def role_write(ctx: click.Context, name: str, file: Path | None, pairs: tuple[str, ...]) -> None:
    """Create or update a role."""
    data = load_payload(file, pairs)
    emit(_backend(ctx).handle_request(Request(Operation.UPDATE, f"roles/{name}", data)))


@role.command("read")
@click.argument("name")
@click.pass_context
def role_read(ctx: click.Context, name: str) -> None:
    """Show a role."""
    response = _backend(ctx).handle_request(Request(Operation.READ, f"roles/{name}"))
    if not response.is_error and response.data is None:
        raise click.ClickException(f"Role not found: {name}")
    emit(response)


@role.command("list")
@click.pass_context
def role_list(ctx: click.Context) -> None:
    """List role names."""
    emit(_backend(ctx).handle_request(Request(Operation.LIST, "roles")))


@role.command("delete")
@click.argument("name")
@click.pass_context
def role_delete(ctx: click.Context, name: str) -> None:
    """Delete a role. Existing leases are not revoked."""
    emit(_backend(ctx).handle_request(Request(Operation.DELETE, f"roles/{name}")))


# =============================================================================
# Credential Commands
# =============================================================================


@cli.command()
@click.argument("role_name")
@click.pass_context
def creds(ctx: click.Context, role_name: str) -> None:
    """Issue a credential for a role and print the lease."""
    emit(_backend(ctx).handle_request(Request(Operation.READ, f"creds/{role_name}")))


@cli.command()
@click.option(
    "--file",
    "-f",
    "file",
    required=True,
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    help="Lease as printed by 'azsecrets creds'",
)
@click.pass_context
def revoke(ctx: click.Context, file: Path) -> None:
    """Revoke a previously issued credential."""
    lease = load_payload(file, ())
    if "internal" not in lease:
        raise click.ClickException(f"{file} is not a lease")
    try:
        _backend(ctx).revoke(lease["internal"])
    except AzSecretsError as e:
        raise click.ClickException(f"{type(e).__name__}: {e}") from e
    click.secho("✓ Credential revoked", fg="green")


@cli.command("rotate-root")
@click.pass_context
def rotate_root(ctx: click.Context) -> None:
    """Rotate the root client secret now."""
    emit(_backend(ctx).handle_request(Request(Operation.UPDATE, "rotate-root")))


# =============================================================================
# Rotation Daemon
# =============================================================================


@cli.group()
def rotation() -> None:
    """Scheduled root rotation."""
    pass


@rotation.command("run")
@click.pass_context
def rotation_run(ctx: click.Context) -> None:
    """Apply the rotation policy until interrupted."""
    ctx.exit(run_rotation_loop(_backend(ctx), ctx.obj["settings"]))


def run() -> None:
    """Entry point for the azsecrets console script."""
    cli()


if __name__ == "__main__":
    run()
