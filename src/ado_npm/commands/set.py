"""Set command -- view and change the user defaults in ``~/.ado-npm``.

An empty string unsets a previously stored default. The resulting
configuration is printed as JSON on stdout.

Example::

    ado-npm set -r contoso/ux -t contoso.onmicrosoft.com
    ado-npm set -t ""
"""

from __future__ import annotations

from typing import Optional

import typer

from ado_npm.commands._common import REGISTRY_HELP, get_stores
from ado_npm.config import get_config
from ado_npm.exceptions import InvalidRegistryError
from ado_npm.output import format_response
from ado_npm.registry import parse_registry


def set_command(
    ctx: typer.Context,
    registry: Optional[str] = typer.Option(None, "--registry", "-r", help=REGISTRY_HELP),
    tenant: Optional[str] = typer.Option(None, "--tenant", "-t", help="Tenant name or ID."),
) -> None:
    """Set and get default options."""
    config = get_config(get_stores(ctx))

    if registry and parse_registry(registry) is None:
        raise InvalidRegistryError(f"Invalid registry value: {registry}")

    for key, value in (("registry", registry), ("tenant", tenant)):
        if value == "":
            config.data[key] = None
        elif value:
            config.data[key] = value

    config.save()
    format_response({k: v for k, v in config.data.items() if v is not None})
