"""Azure DevOps personal access token (PAT) issuer.

:func:`create_token` mints one organization-scoped PAT for a signed-in
:class:`~ado_npm.login.Session`. Tokens are least-privilege
(``vso.packaging_write`` only), limited to a single organization, and named
``ado-npm-<org>-<timestamp>`` so they can be traced and revoked from the
Azure DevOps token page.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Optional

import httpx
from pydantic import BaseModel, Field

from ado_npm.client import request
from ado_npm.exceptions import ProviderError, UnexpectedStatusError
from ado_npm.login import Session

API_VERSION = "6.1-preview.1"
PAT_SCOPE = "vso.packaging_write"
DEFAULT_LIFETIME_DAYS = 90


class Credential(BaseModel):
    """A freshly minted PAT.

    Attributes:
        id: The token's authorization id.
        display_name: Name shown on the Azure DevOps token page.
        value: The secret token. Never logged.
        org: Organization the token is scoped to.
    """

    id: str
    display_name: str
    value: str = Field(repr=False)
    org: str


class _PatToken(BaseModel):
    displayName: str
    authorizationId: str
    token: str


class _CreatePatResponse(BaseModel):
    patToken: _PatToken


def _parse_create_response(response: httpx.Response) -> _PatToken:
    return _CreatePatResponse.model_validate(response.json()).patToken


def create_token(
    session: Session,
    org: str,
    lifetime_days: Optional[int] = DEFAULT_LIFETIME_DAYS,
    *,
    now: Optional[datetime] = None,
) -> Credential:
    """Create a new PAT for *org*.

    Args:
        session: Signed-in session used for the bearer token.
        org: Azure DevOps organization name.
        lifetime_days: Days until the token expires. ``None`` means the
            default of 90.
        now: Creation time override (tests).

    Returns:
        The minted :class:`Credential`.

    Raises:
        ProviderError: If Azure DevOps rejects the request.
        InvalidResponseBodyError: If the response is not a PAT payload.
    """
    now = now or datetime.now(timezone.utc)
    valid_to = now + timedelta(days=lifetime_days or DEFAULT_LIFETIME_DAYS)

    try:
        pat = request(
            f"https://vssps.dev.azure.com/{org}/_apis/tokens/pats",
            method="POST",
            query={"api-version": API_VERSION},
            auth=f"Bearer {session.get_access_token()}",
            body={
                "displayName": f"ado-npm-{org}-{_isoformat(now)}",
                "scope": PAT_SCOPE,
                "validTo": _isoformat(valid_to),
                "allOrgs": False,
            },
            parser=_parse_create_response,
        )
    except UnexpectedStatusError as exc:
        raise ProviderError(f"Failed to create a token for {org}: {exc}") from exc

    return Credential(
        id=pat.authorizationId,
        display_name=pat.displayName,
        value=pat.token,
        org=org,
    )


def _isoformat(value: datetime) -> str:
    """Format like JavaScript's ``toISOString`` (UTC, millisecond precision)."""
    value = value.astimezone(timezone.utc)
    return value.strftime("%Y-%m-%dT%H:%M:%S.") + f"{value.microsecond // 1000:03d}Z"
