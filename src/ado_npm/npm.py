"""Registry credential checks and authorization for npm.

``npm`` looks up registry passwords in the user's ``~/.npmrc`` under keys
of the form ``//<host>/<path>/:_password`` (base64-encoded). This module:

* finds the ADO registries a project uses (:func:`find_npm_registries`),
* reads the stored credentials (:func:`get_registry_credentials`),
* probes each registry to see which lack a working credential
  (:func:`get_unauthorized_registries`), and
* signs the user in once, mints one PAT per organization, and writes the
  credentials back (:func:`authorize_registries`).

Registries are probed one at a time so that progress is reported in a
stable order.
"""

from __future__ import annotations

import base64
import binascii
import enum
import logging
import re
from pathlib import Path
from typing import Callable, Iterable, Optional

import httpx

from ado_npm.client import request
from ado_npm.config import find_up, get_user_npmrc
from ado_npm.exceptions import ConfigError
from ado_npm.login import Session, authenticate
from ado_npm.output import info, status
from ado_npm.pat import Credential, create_token
from ado_npm.registry import parse_registry
from ado_npm.store import StoreRegistry
from ado_npm.utils import unique

logger = logging.getLogger(__name__)

PAT_USERNAME = "ado-npm-pat"
PAT_EMAIL = "npm requires this but does not use it"

_CREDENTIAL_KEY_RES = (
    re.compile(
        r"^(//pkgs\.dev\.azure\.com/[^/]+(?:/(?:[^_/][^/]*))?/_packaging/(?:[^/@]+)[^/]*/npm/registry/):_password$"
    ),
    re.compile(
        r"^(//[^/.]+\.pkgs\.visualstudio\.com(?:/(?:[^_/][^/]*))?/_packaging/(?:[^/@]+)[^/]*/npm/registry/):_password$"
    ),
)
_REGISTRY_KEY_RE = re.compile(r"(^|:)registry$")


class RegistryStatus(str, enum.Enum):
    """Credential status of one registry endpoint."""

    VALID = "valid"
    INVALID = "invalid"
    MISSING = "missing"


ResultCallback = Callable[[str, RegistryStatus], None]
LoginFunc = Callable[[str], Session]
IssueFunc = Callable[[Session, str, Optional[int]], Credential]


def find_npm_registries(stores: StoreRegistry, start: Optional[Path] = None) -> list[str]:
    """Return the registry URLs configured in the nearest ``.npmrc``.

    Both ``registry`` and scoped ``@scope:registry`` keys are collected.

    Args:
        stores: Store registry used to load the file.
        start: Directory to search upward from. Defaults to the working
            directory.
    """
    filename = find_up(".npmrc", start)
    if filename is None:
        logger.debug("No .npmrc found above %s", start or Path.cwd())
        return []

    npmrc = stores.get(filename)
    registries = [
        value
        for key, value in npmrc.data.items()
        if isinstance(value, str) and _REGISTRY_KEY_RE.search(key)
    ]
    return unique(registries)


def get_registry_credentials(stores: StoreRegistry) -> dict[str, str]:
    """Return every stored ADO registry secret, keyed by registry URL.

    Secrets are decoded from base64; entries that do not decode are skipped.
    """
    npmrc = get_user_npmrc(stores)
    credentials: dict[str, str] = {}

    for key, value in npmrc.data.items():
        if not isinstance(value, str):
            continue
        for matcher in _CREDENTIAL_KEY_RES:
            match = matcher.match(key)
            if not match:
                continue
            try:
                credentials["https:" + match.group(1)] = base64.b64decode(
                    value, validate=True
                ).decode("utf-8")
            except (binascii.Error, UnicodeDecodeError):
                logger.debug("Skipping undecodable password for %s", match.group(1))
            break

    return credentials


def _basic_auth(password: str) -> str:
    token = base64.b64encode(f":{password}".encode("utf-8")).decode("ascii")
    return f"Basic {token}"


def _read_status(response: httpx.Response) -> int:
    return response.status_code


def get_unauthorized_registries(
    registries: Iterable[Optional[str]],
    *,
    stores: StoreRegistry,
    force: bool = False,
    on_result: Optional[ResultCallback] = None,
    not_found_is_missing: bool = True,
) -> list[str]:
    """Return the registries that have no working stored credential.

    Registries with no stored secret are reported ``missing`` without any
    network call. The others are probed with a Basic-authenticated GET:
    200 is ``valid``, 401 is ``invalid``, and 404 is ``missing`` (or a
    :class:`ConfigError` when *not_found_is_missing* is ``False``).

    Args:
        registries: Registry URLs; duplicates and ``None`` are ignored.
        stores: Store registry used to load ``~/.npmrc``.
        force: Treat every registry as having no stored credential.
        on_result: Called with each registry and its status, in order.
        not_found_is_missing: How to treat a 404 from the probe.

    Returns:
        The unauthorized registries in their original order.

    Raises:
        UnexpectedStatusError: If a probe answers with any other status.
        ConfigError: On 404 when *not_found_is_missing* is ``False``.
    """
    urls = unique(registries)
    if not urls:
        return []

    credentials = {} if force else get_registry_credentials(stores)
    unauthorized: list[str] = []

    for url in urls:
        password = credentials.get(url)

        if not password:
            result = RegistryStatus.MISSING
        else:
            code = request(
                url,
                method="GET",
                ok=[200, 401, 404],
                auth=_basic_auth(password),
                parser=_read_status,
            )
            if code == 200:
                result = RegistryStatus.VALID
            elif code == 401:
                result = RegistryStatus.INVALID
            elif not_found_is_missing:
                logger.warning("Registry not found (404), treating as unauthorized: %s", url)
                result = RegistryStatus.MISSING
            else:
                raise ConfigError(f"Registry does not exist: {url}")

        if result != RegistryStatus.VALID:
            unauthorized.append(url)
        if on_result is not None:
            on_result(url, result)

    return unauthorized


def authorize_registries(
    registries: Iterable[Optional[str]],
    tenant: Optional[str] = None,
    lifetime_days: Optional[int] = None,
    *,
    stores: StoreRegistry,
    login: LoginFunc = authenticate,
    issue: IssueFunc = create_token,
) -> None:
    """Sign in, mint one PAT per organization, and store the credentials.

    Exactly one interactive sign-in happens, and exactly one PAT is created
    for each distinct organization (in sorted order), however many feeds
    belong to it. Registries whose organization cannot be parsed are
    skipped. Nothing is written to ``~/.npmrc`` unless every token was
    minted.

    Args:
        registries: Registry URLs; duplicates and ``None`` are ignored.
        tenant: Tenant to sign in to. Defaults to ``common``.
        lifetime_days: PAT lifetime. Defaults to 90 days.
        stores: Store registry used to load ``~/.npmrc``.
        login: Interactive sign-in function (tests).
        issue: PAT minting function (tests).
    """
    urls = unique(registries)
    if not urls:
        return

    org_map: dict[str, str] = {}
    for url in urls:
        parsed = parse_registry(url)
        if parsed is None:
            logger.warning("Skipping unrecognized registry: %s", url)
            continue
        org_map[url] = parsed.org

    orgs = sorted(set(org_map.values()))
    session = login(tenant or "common")

    info(f"Tokens ({session.username}):")
    secrets: dict[str, str] = {}
    for org in orgs:
        credential = issue(session, org, lifetime_days)
        status(f"{credential.display_name}@{org}", "created")
        secrets[org] = credential.value

    npmrc = get_user_npmrc(stores)
    info(f"Credentials ({npmrc.path}):")

    for url in urls:
        org = org_map.get(url)
        if org is None:
            continue
        prefix = re.sub(r"^https:", "", url)
        password = base64.b64encode(secrets[org].encode("utf-8")).decode("ascii")
        is_new = f"{prefix}:_password" not in npmrc.data

        npmrc.data[f"{prefix}:username"] = PAT_USERNAME
        npmrc.data[f"{prefix}:email"] = PAT_EMAIL
        npmrc.data[f"{prefix}:_password"] = password

        status(f"{prefix}:*", "added" if is_new else "updated")

    npmrc.save()
