"""Interactive Azure DevOps sign-in via OAuth2 Authorization Code + PKCE.

This module provides :func:`authenticate`, which performs the full
Authorization Code grant with PKCE (:rfc:`7636`) against Microsoft Entra ID:

1. Starts a temporary HTTP server on a random loopback port.
2. Opens the browser at ``http://localhost:<port>/login``, which redirects
   to the provider's authorization page.
3. Receives the redirect back on ``/``, checks the ``state`` token, and
   exchanges the authorization code for tokens.
4. Returns a :class:`Session` that mints access tokens on demand using the
   cached refresh token.

The routing logic lives in :class:`LoopbackFlow`, a plain object mapping a
request to a :class:`LoopbackResponse`; the ``http.server`` handler is only
an adapter around it. Completion is a race between the callback and a
60-second timer, both settling one :class:`ResultSlot`. Callback failures
(state mismatch, provider errors) are logged and the browser is sent to
``/error``, but the attempt stays open so that the user can retry from the
same tab; only the timer turns "still waiting" into a failure.

Also exports :func:`generate_pkce_pair`, the PKCE helper used by
:class:`LoopbackFlow`.

See Also:
    :mod:`ado_npm.pat` for minting PATs with a :class:`Session`.
"""

from __future__ import annotations

import base64
import enum
import hashlib
import json
import logging
import secrets
import threading
import time
import uuid
import webbrowser
from concurrent.futures import Future
from dataclasses import dataclass, field
from http.server import BaseHTTPRequestHandler, ThreadingHTTPServer
from typing import Any, Callable, Generic, Optional, Sequence, TypeVar
from urllib.parse import parse_qs, urlencode, urlsplit

import httpx
from pydantic import BaseModel, Field, ValidationError

from ado_npm.exceptions import (
    AuthTimeoutError,
    InvalidTokenResponseError,
    ProviderError,
)
from ado_npm.output import notice
from ado_npm.utils import unique

logger = logging.getLogger(__name__)

T = TypeVar("T")

CLIENT_ID = "04b07795-8ddb-461a-bbee-02f9e1bf7b46"
AUTHORITY_HOST = "https://login.microsoftonline.com"
DEFAULT_SCOPES = ("499b84ac-1321-427f-aa17-267ca6975798/.default", "offline_access")
LOGIN_TIMEOUT = 60.0
CLOSE_GRACE = 0.5

# Always requested so the token response carries an id_token.
_OIDC_SCOPES = ("openid", "profile")

_INDEX_PAGE = """<!DOCTYPE html>
<html>
<head>
  <title>ado-npm</title>
</head>
<body>
  <p>Click <a href="/login">here</a> to sign in.</p>
</body>
</html>
"""

_SUCCESS_PAGE = """<!DOCTYPE html>
<html>
<head>
  <title>ado-npm</title>
</head>
<body>
  <p>Successfully signed in. You can close this window at anytime.</p>
</body>
</html>
"""

_ERROR_PAGE = """<!DOCTYPE html>
<html>
<head>
  <title>ado-npm</title>
</head>
<body>
  <p>Something went wrong. Check the command line for more information.</p>
</body>
</html>
"""


def generate_pkce_pair() -> tuple[str, str]:
    """Generate a PKCE code_verifier and code_challenge (S256).

    Returns:
        A tuple of ``(code_verifier, code_challenge)``.
    """
    # RFC 7636: 43-128 characters from unreserved character set
    code_verifier = secrets.token_urlsafe(64)[:128]
    digest = hashlib.sha256(code_verifier.encode("ascii")).digest()
    code_challenge = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
    return code_verifier, code_challenge


def decode_id_token(id_token: str) -> dict[str, Any]:
    """Return the claims of a JWT without verifying its signature.

    The token comes straight from the provider's token endpoint over HTTPS
    and is only used to label the session locally.

    Raises:
        InvalidTokenResponseError: If the token is not a decodable JWT.
    """
    try:
        payload = id_token.split(".")[1]
        payload += "=" * (-len(payload) % 4)
        claims = json.loads(base64.urlsafe_b64decode(payload))
    except (AttributeError, IndexError, ValueError) as exc:
        raise InvalidTokenResponseError("Invalid token response: malformed id_token") from exc
    if not isinstance(claims, dict):
        raise InvalidTokenResponseError("Invalid token response: malformed id_token")
    return claims


class Account(BaseModel):
    """The signed-in user, as described by the id token.

    Attributes:
        home_account_id: Stable account key (``<oid>.<tid>``) used to look
            up cached tokens.
        username: Sign-in name (usually the UPN / email).
        name: Display name.
        tenant_id: Directory (tenant) id the user signed in to.
        id_token_claims: All claims from the id token.
    """

    home_account_id: str
    username: str
    name: str = ""
    tenant_id: str = ""
    id_token_claims: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def from_claims(cls, claims: dict[str, Any]) -> Account:
        subject = claims.get("oid") or claims.get("sub") or ""
        tenant_id = claims.get("tid", "")
        return cls(
            home_account_id=f"{subject}.{tenant_id}",
            username=claims.get("preferred_username") or claims.get("upn") or claims.get("email") or "",
            name=claims.get("name", ""),
            tenant_id=tenant_id,
            id_token_claims=claims,
        )


class IdentityClient:
    """Minimal OAuth2 public client for the Microsoft identity platform.

    Builds authorization URLs, redeems authorization codes, and refreshes
    access tokens. Refresh tokens and access tokens are cached in memory
    per account for the life of the process.

    Args:
        tenant: Tenant name or id (``common``, ``organizations``, a domain,
            or a GUID).
        client_id: Public client application id.
        authority_host: Base URL of the identity provider.
    """

    def __init__(
        self,
        tenant: str = "common",
        client_id: str = CLIENT_ID,
        authority_host: str = AUTHORITY_HOST,
    ) -> None:
        self.tenant = tenant
        self.client_id = client_id
        self.authority = f"{authority_host.rstrip('/')}/{tenant}"
        self._refresh_tokens: dict[str, str] = {}
        self._access_tokens: dict[tuple[str, str], tuple[str, float]] = {}
        self._lock = threading.Lock()

    @property
    def authorize_url(self) -> str:
        return f"{self.authority}/oauth2/v2.0/authorize"

    @property
    def token_url(self) -> str:
        return f"{self.authority}/oauth2/v2.0/token"

    def get_authorization_url(
        self,
        *,
        scopes: Sequence[str],
        redirect_uri: str,
        code_challenge: str,
        state: str,
        nonce: str,
        prompt: str = "select_account",
        response_mode: str = "query",
    ) -> str:
        """Build the provider URL the browser is sent to."""
        params = {
            "client_id": self.client_id,
            "response_type": "code",
            "redirect_uri": redirect_uri,
            "scope": _scope_string(scopes),
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
            "prompt": prompt,
            "response_mode": response_mode,
            "nonce": nonce,
            "state": state,
        }
        return f"{self.authorize_url}?{urlencode(params)}"

    def acquire_token_by_code(
        self,
        *,
        code: str,
        scopes: Sequence[str],
        redirect_uri: str,
        code_verifier: str,
    ) -> Account:
        """Redeem an authorization code and cache the resulting tokens.

        Returns:
            The signed-in :class:`Account`.

        Raises:
            ProviderError: If the token endpoint rejects the request.
            InvalidTokenResponseError: If the response has no usable id token
                or a malformed expiry.
        """
        token_data = self._post_token(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": redirect_uri,
                "code_verifier": code_verifier,
                "scope": _scope_string(scopes),
            }
        )
        id_token = token_data.get("id_token")
        if not id_token:
            raise InvalidTokenResponseError("Invalid token response: missing id_token")

        try:
            account = Account.from_claims(decode_id_token(id_token))
        except ValidationError as exc:
            raise InvalidTokenResponseError(
                "Invalid token response: malformed id_token claims"
            ) from exc
        self._cache_tokens(account, scopes, token_data)
        return account

    def acquire_token_silent(self, account: Account, scopes: Sequence[str]) -> str:
        """Return an access token for *scopes* without user interaction.

        A cached token with more than 30 seconds left is returned as is;
        otherwise the account's refresh token is redeemed.

        Raises:
            ProviderError: If no refresh token is cached or the refresh is
                rejected. The caller has to sign in again.
        """
        key = (account.home_account_id, _scope_string(scopes))
        with self._lock:
            cached = self._access_tokens.get(key)
            refresh_token = self._refresh_tokens.get(account.home_account_id)
        if cached and time.monotonic() < cached[1] - 30:
            return cached[0]
        if not refresh_token:
            raise ProviderError(f"No cached session for {account.username}; sign in again")

        token_data = self._post_token(
            {
                "grant_type": "refresh_token",
                "refresh_token": refresh_token,
                "scope": _scope_string(scopes),
            }
        )
        return self._cache_tokens(account, scopes, token_data)

    def _post_token(self, data: dict[str, str]) -> dict[str, Any]:
        data = {"client_id": self.client_id, **data}
        try:
            response = httpx.post(
                self.token_url,
                data=data,
                headers={"Accept": "application/json"},
                timeout=30.0,
            )
            response.raise_for_status()
            token_data: dict[str, Any] = response.json()
        except httpx.HTTPStatusError as exc:
            raise ProviderError(
                f"Token request failed with status {exc.response.status_code}: "
                f"{_provider_error_text(exc.response)}"
            ) from exc
        except httpx.HTTPError as exc:
            raise ProviderError(f"Token request failed: {exc}") from exc
        except ValueError as exc:
            raise InvalidTokenResponseError("Invalid token response: body is not JSON") from exc

        if not isinstance(token_data, dict) or "access_token" not in token_data:
            raise InvalidTokenResponseError("Invalid token response: missing access_token")
        return token_data

    def _cache_tokens(
        self, account: Account, scopes: Sequence[str], token_data: dict[str, Any]
    ) -> str:
        access_token: str = token_data["access_token"]
        try:
            expires_in = float(token_data.get("expires_in", 3600))
        except (TypeError, ValueError) as exc:
            raise InvalidTokenResponseError("Invalid token response: bad expires_in") from exc
        with self._lock:
            self._access_tokens[(account.home_account_id, _scope_string(scopes))] = (
                access_token,
                time.monotonic() + expires_in,
            )
            if token_data.get("refresh_token"):
                self._refresh_tokens[account.home_account_id] = token_data["refresh_token"]
        return access_token


def _scope_string(scopes: Sequence[str]) -> str:
    return " ".join(unique([*scopes, *_OIDC_SCOPES]))


def _provider_error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text
    if isinstance(body, dict) and body.get("error"):
        return f"{body['error']}: {body.get('error_description', '')}".strip()
    return response.text


class Session:
    """A signed-in user who can mint access tokens until the process exits.

    Args:
        client: The identity client holding the cached refresh token.
        account: The signed-in account.
        scopes: Default scopes for :meth:`get_access_token`.
    """

    def __init__(self, client: IdentityClient, account: Account, scopes: Sequence[str]) -> None:
        self._client = client
        self._scopes = list(scopes)
        self.account = account

    @property
    def display_name(self) -> str:
        return self.account.name

    @property
    def username(self) -> str:
        return self.account.username

    @property
    def tenant_id(self) -> str:
        return self.account.tenant_id

    @property
    def id_claims(self) -> dict[str, Any]:
        return self.account.id_token_claims

    def get_access_token(self, scopes: Optional[Sequence[str]] = None) -> str:
        """Return a bearer token for *scopes* (default: the sign-in scopes).

        Raises:
            ProviderError: If the silent refresh fails. Not retried.
        """
        return self._client.acquire_token_silent(self.account, scopes or self._scopes)


class ResultSlot(Generic[T]):
    """A value that can be settled exactly once, by whichever source is first.

    :meth:`resolve` and :meth:`reject` return ``False`` when the slot was
    already settled, so a late second source is ignored rather than raising.
    """

    def __init__(self) -> None:
        self._future: Future[T] = Future()
        self._lock = threading.Lock()

    @property
    def done(self) -> bool:
        return self._future.done()

    def resolve(self, value: T) -> bool:
        with self._lock:
            if self._future.done():
                return False
            self._future.set_result(value)
            return True

    def reject(self, exc: BaseException) -> bool:
        with self._lock:
            if self._future.done():
                return False
            self._future.set_exception(exc)
            return True

    def wait(self, timeout: Optional[float] = None) -> T:
        """Block until settled; return the value or raise the rejection."""
        return self._future.result(timeout)


class FlowState(str, enum.Enum):
    IDLE = "idle"
    LISTENING = "listening"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING = "exchanging"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"


@dataclass
class LoopbackResponse:
    status: int
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""


def _redirect(location: str) -> LoopbackResponse:
    return LoopbackResponse(302, {"Location": location})


def _page(status: int, html: str) -> LoopbackResponse:
    return LoopbackResponse(status, {"Content-Type": "text/html; charset=utf-8"}, html)


class LoopbackFlow:
    """Routing and state for one sign-in attempt, independent of sockets.

    Args:
        client: Identity client used to build URLs and redeem the code.
        scopes: Scopes to request.
        state_token: CSRF token expected back on the callback. Generated
            when omitted.
        pkce: ``(verifier, challenge)`` pair. Generated when omitted.
    """

    def __init__(
        self,
        client: IdentityClient,
        scopes: Sequence[str],
        *,
        state_token: Optional[str] = None,
        pkce: Optional[tuple[str, str]] = None,
    ) -> None:
        self._client = client
        self._scopes = list(scopes)
        self.state_token = state_token or str(uuid.uuid4())
        self._verifier, self._challenge = pkce or generate_pkce_pair()
        self.port: Optional[int] = None
        self.state = FlowState.IDLE
        self.result: ResultSlot[Account] = ResultSlot()

    @property
    def redirect_uri(self) -> str:
        return f"http://localhost:{self.port}"

    def handle(self, method: str, target: str) -> LoopbackResponse:
        """Answer one HTTP request.

        Args:
            method: Request method.
            target: Request target (path plus query string).
        """
        if method != "GET":
            return LoopbackResponse(405)

        url = urlsplit(target)
        query = {k: v[0] for k, v in parse_qs(url.query).items()}

        if url.path == "/":
            return self._handle_root(query)
        if url.path == "/login":
            return self._handle_login()
        if url.path == "/success":
            return _page(200, _SUCCESS_PAGE)
        if url.path == "/error":
            return _page(500, _ERROR_PAGE)
        return LoopbackResponse(404)

    def expire(self, timeout: float = LOGIN_TIMEOUT) -> bool:
        """Fail the attempt with :class:`AuthTimeoutError` unless already settled."""
        if self.result.reject(AuthTimeoutError(f"Timed out waiting for sign-in after {timeout:g}s")):
            self.state = FlowState.TIMED_OUT
            return True
        return False

    def _handle_root(self, query: dict[str, str]) -> LoopbackResponse:
        if "code" in query:
            return self._handle_code(query)
        if "error" in query:
            description = query.get("error_description")
            if description:
                logger.error("%s: %s", query["error"], description)
            else:
                logger.error("%s", query["error"])
            return _redirect("/error")
        return _page(200, _INDEX_PAGE)

    def _handle_code(self, query: dict[str, str]) -> LoopbackResponse:
        if query.get("state") != self.state_token:
            logger.error("States do not match")
            return _redirect("/error")

        if self.result.done:
            return _redirect("/success" if self.state == FlowState.COMPLETED else "/error")

        self.state = FlowState.EXCHANGING
        try:
            account = self._client.acquire_token_by_code(
                code=query["code"],
                scopes=self._scopes,
                redirect_uri=self.redirect_uri,
                code_verifier=self._verifier,
            )
        except (ProviderError, InvalidTokenResponseError) as exc:
            logger.error("%s", exc)
            if not self.result.done:
                self.state = FlowState.AWAITING_CALLBACK
            return _redirect("/error")

        if self.result.resolve(account):
            self.state = FlowState.COMPLETED
            return _redirect("/success")
        return _redirect("/error")

    def _handle_login(self) -> LoopbackResponse:
        auth_url = self._client.get_authorization_url(
            scopes=self._scopes,
            redirect_uri=self.redirect_uri,
            code_challenge=self._challenge,
            state=self.state_token,
            nonce=str(uuid.uuid4()),
        )
        return _redirect(auth_url)


class _LoopbackServer(ThreadingHTTPServer):
    # Connection threads must not keep the interpreter alive.
    daemon_threads = True


def _make_handler(flow: LoopbackFlow) -> type[BaseHTTPRequestHandler]:
    class LoopbackHandler(BaseHTTPRequestHandler):
        def _dispatch(self) -> None:
            response = flow.handle(self.command, self.path)
            body = response.body.encode("utf-8")
            self.send_response(response.status)
            for name, value in response.headers.items():
                self.send_header(name, value)
            self.send_header("Content-Length", str(len(body)))
            self.end_headers()
            if body and self.command != "HEAD":
                self.wfile.write(body)

        do_GET = _dispatch
        do_HEAD = _dispatch
        do_POST = _dispatch
        do_PUT = _dispatch
        do_PATCH = _dispatch
        do_DELETE = _dispatch
        do_OPTIONS = _dispatch

        def log_message(self, format: str, *args: Any) -> None:
            logger.debug("loopback: " + format, *args)

    return LoopbackHandler


def _close_later(server: ThreadingHTTPServer, delay: float) -> threading.Timer:
    def _close() -> None:
        server.shutdown()
        server.server_close()

    timer = threading.Timer(delay, _close)
    timer.daemon = True
    timer.start()
    return timer


def authenticate(
    tenant: str = "common",
    scopes: Optional[Sequence[str]] = None,
    *,
    timeout: float = LOGIN_TIMEOUT,
    close_grace: float = CLOSE_GRACE,
    open_browser: Callable[[str], Any] = webbrowser.open,
    client: Optional[IdentityClient] = None,
) -> Session:
    """Sign the user in interactively through the system browser.

    Args:
        tenant: Tenant name or id.
        scopes: Scopes for the initial token. Defaults to Azure DevOps
            plus ``offline_access``.
        timeout: Seconds to wait for the browser to complete sign-in.
        close_grace: Seconds the listener stays up after completion so the
            final redirect can render.
        open_browser: Called with the local login URL.
        client: Identity client override (tests).

    Returns:
        A :class:`Session` for the signed-in user.

    Raises:
        AuthTimeoutError: If sign-in did not complete within *timeout*.
    """
    scopes = list(scopes or DEFAULT_SCOPES)
    client = client or IdentityClient(tenant)
    flow = LoopbackFlow(client, scopes)

    server = _LoopbackServer(("127.0.0.1", 0), _make_handler(flow))
    flow.port = server.server_address[1]
    threading.Thread(target=server.serve_forever, name="ado-npm-loopback", daemon=True).start()
    flow.state = FlowState.LISTENING

    timer = threading.Timer(timeout, flow.expire, kwargs={"timeout": timeout})
    timer.daemon = True
    timer.start()

    base_url = f"http://localhost:{flow.port}"
    notice(f"\nSign in using your browser ({base_url})\n")

    flow.state = FlowState.AWAITING_CALLBACK
    # Open browser in a separate thread to avoid blocking
    threading.Thread(target=open_browser, args=(f"{base_url}/login",), daemon=True).start()

    try:
        account = flow.result.wait()
    finally:
        timer.cancel()
        _close_later(server, close_grace)

    logger.debug("Signed in as %s (tenant %s)", account.username, account.tenant_id)
    return Session(client, account, scopes)
