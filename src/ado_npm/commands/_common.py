"""Helpers shared by the command modules."""

from __future__ import annotations

import typer

from ado_npm.store import StoreRegistry

REGISTRY_HELP = (
    "ADO npm registry: a full URL "
    "(https://pkgs.dev.azure.com/<org>[/<project>]/_packaging/<feed>/npm/registry/) "
    "or a short form (<org>[/<project>]/<feed>)."
)


def get_stores(ctx: typer.Context) -> StoreRegistry:
    """Return the :class:`StoreRegistry` created by the root callback.

    Falls back to a fresh registry when a command is invoked without the
    root callback (e.g. directly from a test).
    """
    ctx.ensure_object(dict)
    stores = ctx.obj.get("stores")
    if stores is None:
        stores = StoreRegistry()
        ctx.obj["stores"] = stores
    return stores
