"""Blocking HTTP helper with accepted-status checks and error mapping.

:func:`request` wraps :func:`httpx.request` for the handful of calls ado-npm
makes (registry probes, PAT minting, upstream sync). It layers on:

- **JSON bodies** -- dictionaries are sent as pretty-printed JSON with the
  matching ``Content-Type``.
- **Status checks** -- the response status must be one of ``ok``; anything
  else raises :class:`~ado_npm.exceptions.UnexpectedStatusError`, or the
  exception produced by an ``errors`` entry for that status.
- **Parsing** -- an optional ``parser`` turns the response into a value;
  a failing parser raises
  :class:`~ado_npm.exceptions.InvalidResponseBodyError`.

Network failures surface as :class:`~ado_npm.exceptions.NetworkError`.
"""

from __future__ import annotations

import json
import logging
from typing import Any, Callable, Mapping, Optional, TypeVar, Union

import httpx

from ado_npm.exceptions import (
    AdoNpmError,
    InvalidResponseBodyError,
    NetworkError,
    UnexpectedStatusError,
)
from ado_npm.utils import as_list

logger = logging.getLogger(__name__)

T = TypeVar("T")

ErrorFactory = Callable[[httpx.Response], Exception]

DEFAULT_TIMEOUT = 30.0


def _read_text(response: httpx.Response) -> str:
    return response.text


def request(
    url: str,
    *,
    method: str = "GET",
    ok: Union[bool, int, list[int]] = 200,
    errors: Optional[Mapping[int, Union[str, ErrorFactory]]] = None,
    query: Optional[Mapping[str, Any]] = None,
    auth: Optional[str] = None,
    body: Any = None,
    parser: Callable[[httpx.Response], T] = _read_text,  # type: ignore[assignment]
    timeout: float = DEFAULT_TIMEOUT,
) -> T:
    """Send a request and return the parsed response.

    Args:
        url: Absolute request URL.
        method: HTTP method.
        ok: Accepted status code(s), or ``True`` to accept any status.
        errors: Per-status overrides. A string is appended to the default
            error message; a callable receives the response and returns the
            exception to raise.
        query: Query parameters. ``None`` values are dropped.
        auth: Complete ``Authorization`` header value
            (e.g. ``"Bearer <token>"``).
        body: JSON-serialisable request body.
        parser: Turns the response into the return value. Defaults to the
            response text.
        timeout: Request timeout in seconds.

    Returns:
        Whatever *parser* returns.

    Raises:
        UnexpectedStatusError: If the status is not accepted.
        InvalidResponseBodyError: If *parser* fails.
        NetworkError: On connection or timeout failures.
    """
    headers: dict[str, str] = {"Accept": "application/json"}
    content: Optional[str] = None
    if body is not None:
        headers["Content-Type"] = "application/json"
        content = json.dumps(body, indent=2)
    if auth:
        headers["Authorization"] = auth

    params = {k: _format_param(v) for k, v in (query or {}).items() if v is not None}

    logger.debug("%s %s", method.upper(), url)
    try:
        response = httpx.request(
            method.upper(),
            url,
            params=params or None,
            headers=headers,
            content=content,
            timeout=timeout,
            follow_redirects=True,
        )
    except httpx.HTTPError as exc:
        raise NetworkError(f"Request failed ({url}): {exc}") from exc

    if ok is not True and response.status_code not in as_list(ok):
        error = (errors or {}).get(response.status_code)
        if callable(error):
            raise error(response)
        raise UnexpectedStatusError(
            _status_message(response, url, error),
            status_code=response.status_code,
            url=url,
        )

    try:
        return parser(response)
    except AdoNpmError:
        raise
    except Exception as exc:
        raise InvalidResponseBodyError(f"Invalid response body ({url})") from exc


def _format_param(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _status_message(response: httpx.Response, url: str, detail: Optional[str]) -> str:
    message = f"{response.status_code} {response.reason_phrase} ({url})"
    if detail:
        message += f": {detail}"
    return message
