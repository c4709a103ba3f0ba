"""Azure DevOps npm registry parsing.

A registry can be written as a full feed URL in either host variant::

    https://pkgs.dev.azure.com/<org>[/<project>]/_packaging/<feed>/npm/registry/
    https://<org>.pkgs.visualstudio.com[/<project>]/_packaging/<feed>/npm/registry/

or as a short path form ``<org>[/<project>]/<feed>``. :func:`parse_registry`
turns any of these into a :class:`Registry`, and :func:`get_registry_urls`
expands a registry back into both URL variants, since ``npm`` matches
credentials by URL prefix and projects mix the two hosts.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Optional

_MATCHERS = (
    re.compile(
        r"^(https://pkgs\.dev\.azure\.com/([^/]+)(?:/([^_/][^/]*))?/_packaging/([^/@]+)[^/]*/npm/registry)(?:/|$)"
    ),
    re.compile(
        r"^(https://([^/.]+)\.pkgs\.visualstudio\.com(?:/([^_/][^/]*))?/_packaging/([^/@]+)[^/]*/npm/registry)(?:/|$)"
    ),
    re.compile(r"^()([^/]+)(?:/([^/]+))?/([^/]+)$"),
)


@dataclass(frozen=True)
class Registry:
    """An organization/project/feed-scoped ADO npm registry.

    Two registries compare equal when ``org``, ``project`` and ``feed``
    match, whichever host variant ``url`` uses.

    Attributes:
        org: Azure DevOps organization name.
        project: Project name for project-scoped feeds, else ``None``.
        feed: Feed name (without any ``@view`` suffix).
        url: The registry URL as written (up to ``/npm/registry/``), or the
            canonical ``pkgs.dev.azure.com`` URL for short forms. Always
            ends with a slash.
    """

    org: str
    project: Optional[str]
    feed: str
    url: str = field(compare=False)


def parse_registry(value: str) -> Optional[Registry]:
    """Extract the parts of an ADO registry URL or short form.

    Returns:
        The parsed :class:`Registry`, or ``None`` if *value* matches no
        known form.

    Example::

        parse_registry("contoso/ux").url
        # 'https://pkgs.dev.azure.com/contoso/_packaging/ux/npm/registry/'
    """
    for matcher in _MATCHERS:
        match = matcher.match(value)
        if not match:
            continue
        full_url, org, project, feed = match.groups()
        url = f"{full_url}/" if full_url else _canonical_url(org, project, feed)
        return Registry(org=org, project=project or None, feed=feed, url=url)
    return None


def get_registry_urls(registry: Registry) -> list[str]:
    """Return every valid registry URL for *registry*, trailing-slash terminated."""
    path = f"/{registry.project}" if registry.project else ""
    return [
        _canonical_url(registry.org, registry.project, registry.feed),
        f"https://{registry.org}.pkgs.visualstudio.com{path}/_packaging/{registry.feed}/npm/registry/",
    ]


def _canonical_url(org: str, project: Optional[str], feed: str) -> str:
    path = f"/{project}" if project else ""
    return f"https://pkgs.dev.azure.com/{org}{path}/_packaging/{feed}/npm/registry/"
