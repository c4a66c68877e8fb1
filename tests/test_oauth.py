from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
import respx

from portal.oauth import (
    AUTHORIZATION_ENDPOINT,
    GoogleOAuthClient,
    OAuthError,
    OAuthTokens,
    TOKEN_ENDPOINT,
    USERINFO_ENDPOINT,
)

REDIRECT_URI = "http://localhost:3000/auth/google/callback"

PROFILE = {
    "sub": "g-1",
    "email": "a@x.com",
    "name": "Alice",
    "picture": "https://example.com/alice.png",
}


def _client() -> GoogleOAuthClient:
    return GoogleOAuthClient("client-id", "client-secret")


def test_authorization_url_requests_profile_and_email() -> None:
    url = _client().authorization_url(redirect_uri=REDIRECT_URI, state="state-123")

    assert url.startswith(AUTHORIZATION_ENDPOINT)
    query = parse_qs(urlsplit(url).query)
    assert query["scope"] == ["profile email"]
    assert query["response_type"] == ["code"]
    assert query["redirect_uri"] == [REDIRECT_URI]
    assert query["state"] == ["state-123"]
    assert query["client_id"] == ["client-id"]


def test_unconfigured_client_refuses_to_start_flow() -> None:
    client = GoogleOAuthClient("", "")

    assert client.configured is False
    with pytest.raises(OAuthError):
        client.authorization_url(redirect_uri=REDIRECT_URI, state="s")


@pytest.mark.anyio
async def test_authenticate_exchanges_code_and_reads_profile() -> None:
    with respx.mock:
        token_route = respx.post(TOKEN_ENDPOINT).mock(
            return_value=httpx.Response(200, json={"access_token": "at-1", "expires_in": 3599})
        )
        userinfo_route = respx.get(USERINFO_ENDPOINT).mock(
            return_value=httpx.Response(200, json=PROFILE)
        )

        assertion = await _client().authenticate("auth-code", redirect_uri=REDIRECT_URI)

    assert assertion.subject_id == "g-1"
    assert assertion.email == "a@x.com"
    assert assertion.display_name == "Alice"
    assert assertion.avatar_url == "https://example.com/alice.png"

    form = parse_qs(token_route.calls.last.request.content.decode())
    assert form["grant_type"] == ["authorization_code"]
    assert form["code"] == ["auth-code"]
    assert form["redirect_uri"] == [REDIRECT_URI]
    assert userinfo_route.calls.last.request.headers["Authorization"] == "Bearer at-1"


@pytest.mark.anyio
async def test_exchange_code_keeps_only_the_access_token() -> None:
    payload = {
        "access_token": "at-1",
        "refresh_token": "rt-1",
        "id_token": "header.claims.sig",
        "expires_in": 3599,
    }
    with respx.mock:
        respx.post(TOKEN_ENDPOINT).mock(return_value=httpx.Response(200, json=payload))

        tokens = await _client().exchange_code("auth-code", redirect_uri=REDIRECT_URI)

    assert tokens == OAuthTokens(access_token="at-1")


@pytest.mark.anyio
async def test_token_endpoint_rejection_raises() -> None:
    with respx.mock:
        respx.post(TOKEN_ENDPOINT).mock(
            return_value=httpx.Response(400, json={"error": "invalid_grant"})
        )

        with pytest.raises(OAuthError):
            await _client().exchange_code("expired", redirect_uri=REDIRECT_URI)


@pytest.mark.anyio
async def test_token_response_without_access_token_raises() -> None:
    with respx.mock:
        respx.post(TOKEN_ENDPOINT).mock(return_value=httpx.Response(200, json={}))

        with pytest.raises(OAuthError):
            await _client().exchange_code("code", redirect_uri=REDIRECT_URI)


@pytest.mark.anyio
async def test_profile_without_email_raises() -> None:
    with respx.mock:
        respx.get(USERINFO_ENDPOINT).mock(
            return_value=httpx.Response(200, json={"sub": "g-1", "name": "Alice"})
        )

        with pytest.raises(OAuthError):
            await _client().fetch_identity("at-1")


@pytest.mark.anyio
async def test_network_failure_raises_oauth_error() -> None:
    with respx.mock:
        respx.post(TOKEN_ENDPOINT).mock(side_effect=httpx.ConnectError("unreachable"))

        with pytest.raises(OAuthError):
            await _client().exchange_code("code", redirect_uri=REDIRECT_URI)
