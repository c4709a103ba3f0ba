"""Auth command -- authorize ADO npm registries.

Checks the credentials stored in ``~/.npmrc`` for each requested registry
and, for any that are missing or rejected, signs the user in and mints new
personal access tokens.

Both URL variants of every registry (``pkgs.dev.azure.com`` and
``<org>.pkgs.visualstudio.com``) are authorized, because ``npm`` matches
credentials by URL prefix and lock files may use either host.

Typical workflow::

    ado-npm auth --detect               # every registry in ./.npmrc
    ado-npm auth -r contoso/dev/ux      # one project-scoped feed
    ado-npm auth -r contoso/ux --force  # replace working tokens too
"""

from __future__ import annotations

from typing import Optional

import typer

from ado_npm.commands._common import REGISTRY_HELP, get_stores
from ado_npm.config import DEFAULT_TENANT, get_config, resolve_option
from ado_npm.exceptions import InvalidRegistryError, MissingOptionError
from ado_npm.npm import (
    RegistryStatus,
    authorize_registries,
    find_npm_registries,
    get_unauthorized_registries,
)
from ado_npm.output import info, status
from ado_npm.registry import get_registry_urls, parse_registry


def auth_command(
    ctx: typer.Context,
    registry: Optional[list[str]] = typer.Option(
        None, "--registry", "-r", help=REGISTRY_HELP + " Can be repeated."
    ),
    lifetime: Optional[int] = typer.Option(
        None, "--lifetime", "-l", min=1, help="New PAT lifetime in days (default 90)."
    ),
    detect: bool = typer.Option(
        False, "--detect", "-d", "--npmrc", help="Find registries in the nearest .npmrc."
    ),
    force: bool = typer.Option(
        False, "--force", "-f", help="Create new PATs even if the stored ones work."
    ),
    tenant: Optional[str] = typer.Option(
        None, "--tenant", "-t", help="Tenant name or ID."
    ),
) -> None:
    """Authorize ADO npm registries.

    Registries come from ``--registry`` (repeatable), from the nearest
    ``.npmrc`` with ``--detect``, or from the configured default registry.

    Raises:
        MissingOptionError: If no registry source is available.
        InvalidRegistryError: If a ``--registry`` value cannot be parsed.

    Example::

        ado-npm auth -r contoso/ux -r contoso/dev/tools
    """
    stores = get_stores(ctx)
    config = get_config(stores)
    default_registry = resolve_option("registry", None, config)
    tenant = resolve_option("tenant", tenant, config, DEFAULT_TENANT)

    if not detect and not registry and not default_registry:
        raise MissingOptionError("Missing required option: --registry|--detect")

    urls: list[str] = []

    if detect:
        for uri in find_npm_registries(stores):
            parsed = parse_registry(uri)
            if parsed is not None:
                urls.extend(get_registry_urls(parsed))

    values = registry or ([default_registry] if not detect else [])
    for uri in values:
        parsed = parse_registry(uri)
        if parsed is None:
            raise InvalidRegistryError(f"Invalid registry value: {uri}")
        urls.extend(get_registry_urls(parsed))

    info("Registries:")
    unauthorized = get_unauthorized_registries(
        urls,
        stores=stores,
        force=force,
        on_result=lambda url, result: status(
            url, f"token {result.value}", ok=result == RegistryStatus.VALID
        ),
    )

    if not unauthorized:
        return

    authorize_registries(unauthorized, tenant, lifetime, stores=stores)
