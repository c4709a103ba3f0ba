"""Add command -- install global packages from an ADO npm registry.

Makes sure the registry is authorized (signing in and minting a PAT only
when needed), then hands over to ``npm add -g``. Unknown options are passed
through to ``npm`` untouched.

Example::

    ado-npm add -r contoso/ux @contoso/cli
"""

from __future__ import annotations

import shutil
import subprocess
from typing import Optional

import typer

from ado_npm.commands._common import REGISTRY_HELP, get_stores
from ado_npm.config import DEFAULT_TENANT, get_config, resolve_option
from ado_npm.exceptions import (
    InvalidRegistryError,
    MissingOptionError,
    PackageManagerError,
)
from ado_npm.npm import authorize_registries, get_unauthorized_registries
from ado_npm.output import debug
from ado_npm.registry import parse_registry


def run_npm(args: list[str]) -> None:
    """Run ``npm`` with *args*, inheriting stdio.

    Raises:
        PackageManagerError: If ``npm`` is missing or exits non-zero; the
            exit code is carried over.
    """
    executable = shutil.which("npm") or "npm"
    debug(f"Running: npm {' '.join(args)}")
    try:
        completed = subprocess.run([executable, *args], check=False)
    except FileNotFoundError as exc:
        raise PackageManagerError("npm was not found on PATH", exit_code=127) from exc
    if completed.returncode != 0:
        raise PackageManagerError(
            f"npm exited with code {completed.returncode}",
            exit_code=completed.returncode,
        )


def add_command(
    ctx: typer.Context,
    packages: list[str] = typer.Argument(..., help="Packages to install globally."),
    registry: Optional[str] = typer.Option(None, "--registry", "-r", help=REGISTRY_HELP),
    lifetime: Optional[int] = typer.Option(
        None, "--lifetime", "-l", min=1, help="New PAT lifetime in days (default 90)."
    ),
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Tenant name or ID."),
) -> None:
    """Install global packages from an ADO npm registry."""
    stores = get_stores(ctx)
    config = get_config(stores)
    registry = resolve_option("registry", registry, config)
    tenant = resolve_option("tenant", tenant, config, DEFAULT_TENANT)

    if not registry:
        raise MissingOptionError("Missing required option: --registry")

    parsed = parse_registry(registry)
    if parsed is None:
        raise InvalidRegistryError(f"Invalid registry: {registry}")

    unauthorized = get_unauthorized_registries([parsed.url], stores=stores)
    if unauthorized:
        authorize_registries(unauthorized, tenant, lifetime, stores=stores)

    run_npm(["add", "-g", "--registry", parsed.url, *packages, *ctx.args])
