"""Tests for the interactive loopback sign-in flow."""

from __future__ import annotations

import base64
import hashlib
import json
import logging
import threading
import time
from typing import Optional
from unittest.mock import MagicMock, patch
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from ado_npm.exceptions import (
    AuthTimeoutError,
    InvalidTokenResponseError,
    ProviderError,
)
from ado_npm.login import (
    Account,
    FlowState,
    IdentityClient,
    LoopbackFlow,
    ResultSlot,
    Session,
    authenticate,
    decode_id_token,
    generate_pkce_pair,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


CLAIMS = {
    "oid": "user-oid",
    "tid": "tenant-id",
    "preferred_username": "ada@contoso.com",
    "name": "Ada Lovelace",
}


def _make_id_token(claims: dict[str, object]) -> str:
    """Build an unsigned JWT carrying *claims*."""

    def _segment(data: dict[str, object]) -> str:
        raw = json.dumps(data).encode("utf-8")
        return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")

    return f"{_segment({'alg': 'none'})}.{_segment(claims)}.signature"


def _make_token_response(
    access_token: str = "access-1",
    refresh_token: Optional[str] = "refresh-1",
    id_token: Optional[str] = None,
    expires_in: object = 3600,
) -> dict[str, object]:
    data: dict[str, object] = {
        "access_token": access_token,
        "token_type": "Bearer",
        "expires_in": expires_in,
    }
    if refresh_token is not None:
        data["refresh_token"] = refresh_token
    if id_token is not None:
        data["id_token"] = id_token
    return data


def _mock_httpx_post(
    token_response: object = None,
    status_code: int = 200,
) -> MagicMock:
    """Create a mock for httpx.post that returns a token response."""
    mock_response = MagicMock(spec=httpx.Response)
    mock_response.status_code = status_code
    mock_response.json.return_value = token_response
    mock_response.text = str(token_response)

    if status_code >= 400:
        mock_response.raise_for_status.side_effect = httpx.HTTPStatusError(
            message=f"HTTP {status_code}",
            request=MagicMock(),
            response=mock_response,
        )
    else:
        mock_response.raise_for_status.return_value = None

    return mock_response


def _account() -> Account:
    return Account.from_claims(CLAIMS)


def _flow() -> LoopbackFlow:
    flow = LoopbackFlow(
        IdentityClient(),
        ["scope/.default"],
        state_token="expected-state",
        pkce=("verifier", "challenge"),
    )
    flow.port = 4321
    flow.state = FlowState.AWAITING_CALLBACK
    return flow


# ---------------------------------------------------------------------------
# PKCE and id_token helpers
# ---------------------------------------------------------------------------


class TestPkce:
    def test_challenge_is_s256_of_verifier(self) -> None:
        verifier, challenge = generate_pkce_pair()
        digest = hashlib.sha256(verifier.encode("ascii")).digest()
        expected = base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")
        assert challenge == expected
        assert 43 <= len(verifier) <= 128

    def test_pairs_are_random(self) -> None:
        assert generate_pkce_pair() != generate_pkce_pair()


class TestDecodeIdToken:
    def test_claims(self) -> None:
        assert decode_id_token(_make_id_token(CLAIMS)) == CLAIMS

    @pytest.mark.parametrize("token", ["", "no-dots", "a.!!!.c", "a.bnVsbA.c"])
    def test_malformed(self, token: str) -> None:
        with pytest.raises(InvalidTokenResponseError):
            decode_id_token(token)


class TestAccount:
    def test_from_claims(self) -> None:
        account = _account()
        assert account.home_account_id == "user-oid.tenant-id"
        assert account.username == "ada@contoso.com"
        assert account.name == "Ada Lovelace"
        assert account.tenant_id == "tenant-id"

    def test_falls_back_to_upn_and_sub(self) -> None:
        account = Account.from_claims({"sub": "s", "tid": "t", "upn": "u@x"})
        assert account.home_account_id == "s.t"
        assert account.username == "u@x"


# ---------------------------------------------------------------------------
# ResultSlot
# ---------------------------------------------------------------------------


class TestResultSlot:
    def test_first_resolution_wins(self) -> None:
        slot: ResultSlot[str] = ResultSlot()
        assert slot.resolve("first") is True
        assert slot.reject(RuntimeError("late")) is False
        assert slot.resolve("second") is False
        assert slot.done
        assert slot.wait(0) == "first"

    def test_rejection_is_raised(self) -> None:
        slot: ResultSlot[str] = ResultSlot()
        assert slot.reject(AuthTimeoutError("too slow")) is True
        assert slot.resolve("late") is False
        with pytest.raises(AuthTimeoutError):
            slot.wait(0)

    def test_concurrent_settlers_settle_once(self) -> None:
        slot: ResultSlot[int] = ResultSlot()
        outcomes: list[bool] = []
        lock = threading.Lock()

        def settle(value: int) -> None:
            result = slot.resolve(value)
            with lock:
                outcomes.append(result)

        threads = [threading.Thread(target=settle, args=(i,)) for i in range(10)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert outcomes.count(True) == 1


# ---------------------------------------------------------------------------
# LoopbackFlow routing
# ---------------------------------------------------------------------------


class TestLoopbackFlowRoutes:
    def test_non_get_is_rejected(self) -> None:
        assert _flow().handle("POST", "/").status == 405

    def test_unknown_path(self) -> None:
        assert _flow().handle("GET", "/favicon.ico").status == 404

    def test_index_page(self) -> None:
        response = _flow().handle("GET", "/")
        assert response.status == 200
        assert 'href="/login"' in response.body
        assert response.headers["Content-Type"].startswith("text/html")

    def test_success_and_error_pages(self) -> None:
        flow = _flow()
        assert flow.handle("GET", "/success").status == 200
        assert flow.handle("GET", "/error").status == 500

    def test_login_redirects_to_provider(self) -> None:
        response = _flow().handle("GET", "/login")
        assert response.status == 302

        location = urlsplit(response.headers["Location"])
        assert f"{location.scheme}://{location.netloc}{location.path}" == (
            "https://login.microsoftonline.com/common/oauth2/v2.0/authorize"
        )
        query = {k: v[0] for k, v in parse_qs(location.query).items()}
        assert query["response_type"] == "code"
        assert query["code_challenge"] == "challenge"
        assert query["code_challenge_method"] == "S256"
        assert query["state"] == "expected-state"
        assert query["prompt"] == "select_account"
        assert query["response_mode"] == "query"
        assert query["redirect_uri"] == "http://localhost:4321"
        assert query["scope"].split() == ["scope/.default", "openid", "profile"]
        assert query["nonce"]

    def test_each_login_uses_a_fresh_nonce(self) -> None:
        flow = _flow()

        def nonce() -> str:
            location = flow.handle("GET", "/login").headers["Location"]
            return parse_qs(urlsplit(location).query)["nonce"][0]

        assert nonce() != nonce()


class TestLoopbackFlowCallback:
    def test_success_resolves(self) -> None:
        flow = _flow()
        account = _account()
        with patch.object(flow._client, "acquire_token_by_code", return_value=account) as mock:
            response = flow.handle("GET", "/?code=abc&state=expected-state")

        assert response.status == 302
        assert response.headers["Location"] == "/success"
        assert flow.state == FlowState.COMPLETED
        assert flow.result.wait(0) is account
        mock.assert_called_once_with(
            code="abc",
            scopes=["scope/.default"],
            redirect_uri="http://localhost:4321",
            code_verifier="verifier",
        )

    def test_state_mismatch_is_logged_and_ignored(self, caplog: pytest.LogCaptureFixture) -> None:
        flow = _flow()
        with patch.object(flow._client, "acquire_token_by_code") as mock:
            with caplog.at_level(logging.ERROR, logger="ado_npm.login"):
                response = flow.handle("GET", "/?code=abc&state=forged")

        assert response.headers["Location"] == "/error"
        assert "States do not match" in caplog.text
        assert not flow.result.done
        assert flow.state == FlowState.AWAITING_CALLBACK
        mock.assert_not_called()

    def test_missing_state_is_a_mismatch(self) -> None:
        flow = _flow()
        with patch.object(flow._client, "acquire_token_by_code") as mock:
            assert flow.handle("GET", "/?code=abc").headers["Location"] == "/error"
        mock.assert_not_called()

    def test_provider_error_query(self, caplog: pytest.LogCaptureFixture) -> None:
        flow = _flow()
        with caplog.at_level(logging.ERROR, logger="ado_npm.login"):
            response = flow.handle(
                "GET", "/?error=access_denied&error_description=User+cancelled"
            )

        assert response.headers["Location"] == "/error"
        assert "access_denied: User cancelled" in caplog.text
        assert not flow.result.done

    def test_exchange_failure_allows_retry(self, caplog: pytest.LogCaptureFixture) -> None:
        flow = _flow()
        account = _account()
        with patch.object(
            flow._client,
            "acquire_token_by_code",
            side_effect=[ProviderError("invalid_grant"), account],
        ):
            with caplog.at_level(logging.ERROR, logger="ado_npm.login"):
                first = flow.handle("GET", "/?code=bad&state=expected-state")
            assert first.headers["Location"] == "/error"
            assert "invalid_grant" in caplog.text
            assert not flow.result.done
            assert flow.state == FlowState.AWAITING_CALLBACK

            second = flow.handle("GET", "/?code=good&state=expected-state")

        assert second.headers["Location"] == "/success"
        assert flow.result.wait(0) is account

    def test_malformed_claims_allow_retry(self, caplog: pytest.LogCaptureFixture) -> None:
        flow = _flow()
        id_token = _make_id_token({"oid": "o", "tid": "t", "name": ["not", "a", "string"]})
        response = _mock_httpx_post(_make_token_response(id_token=id_token))
        with patch("ado_npm.login.httpx.post", return_value=response):
            with caplog.at_level(logging.ERROR, logger="ado_npm.login"):
                result = flow.handle("GET", "/?code=abc&state=expected-state")

        assert result.status == 302
        assert result.headers["Location"] == "/error"
        assert "malformed id_token claims" in caplog.text
        assert not flow.result.done
        assert flow.state == FlowState.AWAITING_CALLBACK

    def test_repeat_callback_after_success_does_not_exchange_again(self) -> None:
        flow = _flow()
        with patch.object(flow._client, "acquire_token_by_code", return_value=_account()) as mock:
            flow.handle("GET", "/?code=abc&state=expected-state")
            response = flow.handle("GET", "/?code=abc&state=expected-state")

        assert response.headers["Location"] == "/success"
        assert mock.call_count == 1

    def test_expire_rejects_with_timeout(self) -> None:
        flow = _flow()
        assert flow.expire(60) is True
        assert flow.state == FlowState.TIMED_OUT
        with pytest.raises(AuthTimeoutError, match="60s"):
            flow.result.wait(0)

    def test_callback_after_timeout_is_ignored(self) -> None:
        flow = _flow()
        flow.expire(60)
        with patch.object(flow._client, "acquire_token_by_code") as mock:
            response = flow.handle("GET", "/?code=abc&state=expected-state")
        assert response.headers["Location"] == "/error"
        mock.assert_not_called()

    def test_expire_after_success_is_a_noop(self) -> None:
        flow = _flow()
        with patch.object(flow._client, "acquire_token_by_code", return_value=_account()):
            flow.handle("GET", "/?code=abc&state=expected-state")
        assert flow.expire(60) is False
        assert flow.state == FlowState.COMPLETED


# ---------------------------------------------------------------------------
# authenticate() over a real loopback socket
# ---------------------------------------------------------------------------


def _local(url: str) -> str:
    return url.replace("://localhost:", "://127.0.0.1:")


def _wait_until_closed(base_url: str, attempts: int = 50) -> bool:
    for _ in range(attempts):
        try:
            httpx.get(base_url, timeout=0.5, trust_env=False)
        except httpx.ConnectError:
            return True
        time.sleep(0.1)
    return False


@pytest.mark.usefixtures("quiet_output")
class TestAuthenticate:
    def test_browser_completes_sign_in(self) -> None:
        client = IdentityClient()
        account = _account()
        opened: list[str] = []

        def browser(url: str) -> None:
            opened.append(url)
            login = httpx.get(_local(url), follow_redirects=False, trust_env=False)
            state = parse_qs(urlsplit(login.headers["location"]).query)["state"][0]
            base = _local(url).rsplit("/login", 1)[0]
            httpx.get(f"{base}/?code=abc&state={state}", follow_redirects=False, trust_env=False)

        with patch.object(client, "acquire_token_by_code", return_value=account):
            session = authenticate(
                "contoso", timeout=10, close_grace=0, open_browser=browser, client=client
            )

        assert isinstance(session, Session)
        assert session.username == "ada@contoso.com"
        assert session.display_name == "Ada Lovelace"
        assert session.tenant_id == "tenant-id"
        assert session.id_claims == CLAIMS
        assert opened[0].startswith("http://localhost:")
        assert opened[0].endswith("/login")

    def test_timeout_closes_listener(self) -> None:
        opened: list[str] = []
        with pytest.raises(AuthTimeoutError):
            authenticate(timeout=0.3, close_grace=0, open_browser=opened.append)

        assert opened
        base_url = _local(opened[0]).rsplit("/login", 1)[0]
        assert _wait_until_closed(base_url)

    def test_forged_callback_never_completes(self) -> None:
        client = IdentityClient()

        def browser(url: str) -> None:
            base = _local(url).rsplit("/login", 1)[0]
            httpx.get(f"{base}/?code=abc&state=forged", follow_redirects=False, trust_env=False)

        with patch.object(client, "acquire_token_by_code") as mock:
            with pytest.raises(AuthTimeoutError):
                authenticate(timeout=0.5, close_grace=0, open_browser=browser, client=client)
        mock.assert_not_called()


# ---------------------------------------------------------------------------
# IdentityClient token endpoint
# ---------------------------------------------------------------------------


class TestIdentityClient:
    def test_urls_use_tenant(self) -> None:
        client = IdentityClient("contoso.onmicrosoft.com")
        assert client.token_url == (
            "https://login.microsoftonline.com/contoso.onmicrosoft.com/oauth2/v2.0/token"
        )
        assert client.authorize_url.endswith("/contoso.onmicrosoft.com/oauth2/v2.0/authorize")

    def test_code_exchange(self) -> None:
        client = IdentityClient()
        response = _mock_httpx_post(_make_token_response(id_token=_make_id_token(CLAIMS)))
        with patch("ado_npm.login.httpx.post", return_value=response) as mock_post:
            account = client.acquire_token_by_code(
                code="abc",
                scopes=["scope/.default"],
                redirect_uri="http://localhost:4321",
                code_verifier="verifier",
            )

        assert account.username == "ada@contoso.com"
        args, kwargs = mock_post.call_args
        assert args[0] == client.token_url
        assert kwargs["data"]["grant_type"] == "authorization_code"
        assert kwargs["data"]["code"] == "abc"
        assert kwargs["data"]["code_verifier"] == "verifier"
        assert kwargs["data"]["client_id"] == client.client_id

    def test_code_exchange_without_id_token(self) -> None:
        client = IdentityClient()
        with patch("ado_npm.login.httpx.post", return_value=_mock_httpx_post(_make_token_response())):
            with pytest.raises(InvalidTokenResponseError, match="id_token"):
                client.acquire_token_by_code(
                    code="abc", scopes=["s"], redirect_uri="http://localhost:1", code_verifier="v"
                )

    def test_provider_rejection(self) -> None:
        client = IdentityClient()
        response = _mock_httpx_post(
            {"error": "invalid_grant", "error_description": "Code expired"}, status_code=400
        )
        with patch("ado_npm.login.httpx.post", return_value=response):
            with pytest.raises(ProviderError, match="invalid_grant: Code expired"):
                client.acquire_token_by_code(
                    code="abc", scopes=["s"], redirect_uri="http://localhost:1", code_verifier="v"
                )

    def test_network_failure(self) -> None:
        client = IdentityClient()
        with patch("ado_npm.login.httpx.post", side_effect=httpx.ConnectError("refused")):
            with pytest.raises(ProviderError, match="refused"):
                client.acquire_token_by_code(
                    code="abc", scopes=["s"], redirect_uri="http://localhost:1", code_verifier="v"
                )

    def test_malformed_claims(self) -> None:
        client = IdentityClient()
        id_token = _make_id_token({"oid": "o", "tid": 42, "preferred_username": "ada"})
        response = _mock_httpx_post(_make_token_response(id_token=id_token))
        with patch("ado_npm.login.httpx.post", return_value=response):
            with pytest.raises(InvalidTokenResponseError, match="claims"):
                client.acquire_token_by_code(
                    code="abc", scopes=["s"], redirect_uri="http://localhost:1", code_verifier="v"
                )

    def test_id_token_not_a_string(self) -> None:
        client = IdentityClient()
        response = _mock_httpx_post(_make_token_response(id_token=12345))  # type: ignore[arg-type]
        with patch("ado_npm.login.httpx.post", return_value=response):
            with pytest.raises(InvalidTokenResponseError, match="malformed id_token"):
                client.acquire_token_by_code(
                    code="abc", scopes=["s"], redirect_uri="http://localhost:1", code_verifier="v"
                )

    def test_non_numeric_expires_in(self) -> None:
        client = IdentityClient()
        response = _mock_httpx_post(
            _make_token_response(id_token=_make_id_token(CLAIMS), expires_in="soon")
        )
        with patch("ado_npm.login.httpx.post", return_value=response):
            with pytest.raises(InvalidTokenResponseError, match="expires_in"):
                client.acquire_token_by_code(
                    code="abc", scopes=["s"], redirect_uri="http://localhost:1", code_verifier="v"
                )

    def test_missing_access_token(self) -> None:
        client = IdentityClient()
        with patch("ado_npm.login.httpx.post", return_value=_mock_httpx_post({"token_type": "x"})):
            with pytest.raises(InvalidTokenResponseError, match="access_token"):
                client.acquire_token_by_code(
                    code="abc", scopes=["s"], redirect_uri="http://localhost:1", code_verifier="v"
                )

    def test_silent_uses_cache_then_refresh_token(self) -> None:
        client = IdentityClient()
        exchange = _mock_httpx_post(_make_token_response(id_token=_make_id_token(CLAIMS)))
        refresh = _mock_httpx_post(_make_token_response(access_token="access-2"))

        with patch("ado_npm.login.httpx.post", side_effect=[exchange, refresh]) as mock_post:
            account = client.acquire_token_by_code(
                code="abc", scopes=["a"], redirect_uri="http://localhost:1", code_verifier="v"
            )
            assert client.acquire_token_silent(account, ["a"]) == "access-1"
            assert mock_post.call_count == 1

            assert client.acquire_token_silent(account, ["b"]) == "access-2"

        assert mock_post.call_count == 2
        data = mock_post.call_args.kwargs["data"]
        assert data["grant_type"] == "refresh_token"
        assert data["refresh_token"] == "refresh-1"
        assert data["scope"].split()[0] == "b"

    def test_expired_token_is_refreshed(self) -> None:
        client = IdentityClient()
        exchange = _mock_httpx_post(
            _make_token_response(id_token=_make_id_token(CLAIMS), expires_in=10)
        )
        refresh = _mock_httpx_post(_make_token_response(access_token="access-2"))

        with patch("ado_npm.login.httpx.post", side_effect=[exchange, refresh]):
            account = client.acquire_token_by_code(
                code="abc", scopes=["a"], redirect_uri="http://localhost:1", code_verifier="v"
            )
            assert client.acquire_token_silent(account, ["a"]) == "access-2"

    def test_silent_without_session(self) -> None:
        with pytest.raises(ProviderError, match="sign in again"):
            IdentityClient().acquire_token_silent(_account(), ["a"])


class TestSession:
    def test_get_access_token_uses_default_scopes(self) -> None:
        client = MagicMock(spec=IdentityClient)
        client.acquire_token_silent.return_value = "tok"
        account = _account()
        session = Session(client, account, ["a", "offline_access"])

        assert session.get_access_token() == "tok"
        client.acquire_token_silent.assert_called_once_with(account, ["a", "offline_access"])

        session.get_access_token(["b"])
        client.acquire_token_silent.assert_called_with(account, ["b"])
