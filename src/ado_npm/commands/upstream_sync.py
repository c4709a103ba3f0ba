"""Upstream-sync command -- pull one upstream package version into a feed.

Upstream sources such as ``https://registry.npmjs.org/`` are synced into
ADO feeds every few hours; until then, new versions cannot be installed
through the feed. Requesting the version's content once through the
packaging API makes the feed ingest it immediately.

Example::

    ado-npm upstream-sync -r contoso/ux left-pad@1.3.0
"""

from __future__ import annotations

import re
from typing import Optional

import typer

from ado_npm.client import request
from ado_npm.commands._common import REGISTRY_HELP, get_stores
from ado_npm.config import DEFAULT_TENANT, get_config, resolve_option
from ado_npm.exceptions import ConfigError, InvalidRegistryError, MissingOptionError
from ado_npm.login import authenticate
from ado_npm.output import success
from ado_npm.pat import API_VERSION
from ado_npm.registry import parse_registry

_PACKAGE_SPEC_RE = re.compile(r"^((?:@[\w-]+/)?[\w-]+)@(\d+\.\d+\.\d+(?:-[\w.-]+)?)$")


def upstream_sync_command(
    ctx: typer.Context,
    package: str = typer.Argument(..., help="Package version as <package>@<version>."),
    registry: Optional[str] = typer.Option(None, "--registry", "-r", help=REGISTRY_HELP),
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Tenant name or ID."),
) -> None:
    """Add a recent upstream package to an ADO npm registry."""
    config = get_config(get_stores(ctx))
    registry = resolve_option("registry", registry, config)
    tenant = resolve_option("tenant", tenant, config, DEFAULT_TENANT)

    if not registry:
        raise MissingOptionError("Missing required option: --registry")

    parsed = parse_registry(registry)
    if parsed is None:
        raise InvalidRegistryError(f"Invalid registry: {registry}")

    match = _PACKAGE_SPEC_RE.match(package)
    if not match:
        raise ConfigError(f"Invalid package spec: {package}")
    name, version = match.groups()

    session = authenticate(tenant)
    request(
        f"https://pkgs.dev.azure.com/{parsed.org}/_apis/packaging/feeds/{parsed.feed}"
        f"/npm/packages/{name}/versions/{version}/content",
        method="HEAD",
        auth=f"Bearer {session.get_access_token()}",
        query={"api-version": API_VERSION},
    )

    success(f"Synchronized {name}@{version}")
