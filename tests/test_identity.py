"""Unit tests for identity verification.

Tests for:
- HS256 token issue/verify
- Signature, algorithm, issuer, audience and expiry checks
- Remote identity toolkit lookup and account deletion
"""

import base64
import json
import time

import httpx
import pytest

from chatwarden.service.errors import TokenInvalid
from chatwarden.service.identity import (
    IdentityVerifier,
    JWTIdentityProvider,
    RemoteIdentityProvider,
)

SECRET = "unit-test-secret-that-is-long-enough-0123456789"


@pytest.fixture
def provider():
    return JWTIdentityProvider(SECRET, issuer="chatwarden", audience="chatwarden-clients")


def _b64(data: dict) -> str:
    return base64.urlsafe_b64encode(json.dumps(data).encode()).decode().rstrip("=")


class TestJWTProvider:
    """Tests for the self-issued token backend."""

    def test_short_secret_rejected(self):
        with pytest.raises(ValueError):
            JWTIdentityProvider("too-short", issuer="i", audience="a")

    async def test_round_trip_claims(self, provider):
        token = provider.issue_token("user-0000000001", email="a@example.com")
        claims = await provider.verify_token(token)
        assert claims["sub"] == "user-0000000001"
        assert claims["email"] == "a@example.com"
        assert claims["iss"] == "chatwarden"

    async def test_tampered_payload_rejected(self, provider):
        token = provider.issue_token("user-0000000001")
        header, _, signature = token.split(".")
        forged = _b64(
            {"sub": "admin-000000001", "iss": "chatwarden", "aud": "chatwarden-clients", "exp": time.time() + 60}
        )
        with pytest.raises(TokenInvalid):
            await provider.verify_token(f"{header}.{forged}.{signature}")

    async def test_alg_none_rejected(self, provider):
        token = provider.issue_token("user-0000000001")
        _, payload, _ = token.split(".")
        header = _b64({"alg": "none", "typ": "JWT"})
        with pytest.raises(TokenInvalid):
            await provider.verify_token(f"{header}.{payload}.")

    async def test_expired_token_rejected(self, provider):
        token = provider.issue_token("user-0000000001", ttl_seconds=-120)
        with pytest.raises(TokenInvalid):
            await provider.verify_token(token)

    async def test_clock_skew_tolerated(self, provider):
        token = provider.issue_token("user-0000000001", ttl_seconds=-5)
        claims = await provider.verify_token(token)
        assert claims["sub"] == "user-0000000001"

    async def test_wrong_audience_rejected(self, provider):
        other = JWTIdentityProvider(SECRET, issuer="chatwarden", audience="somebody-else")
        with pytest.raises(TokenInvalid):
            await provider.verify_token(other.issue_token("user-0000000001"))

    async def test_wrong_issuer_rejected(self, provider):
        other = JWTIdentityProvider(SECRET, issuer="elsewhere", audience="chatwarden-clients")
        with pytest.raises(TokenInvalid):
            await provider.verify_token(other.issue_token("user-0000000001"))

    async def test_foreign_secret_rejected(self, provider):
        other = JWTIdentityProvider("x" * 40, issuer="chatwarden", audience="chatwarden-clients")
        with pytest.raises(TokenInvalid):
            await provider.verify_token(other.issue_token("user-0000000001"))

    async def test_garbage_rejected(self, provider):
        with pytest.raises(TokenInvalid):
            await provider.verify_token("not-a-jwt-at-all")

    async def test_delete_account_is_noop(self, provider):
        await provider.delete_account("user-0000000001")


class TestIdentityVerifier:
    """Tests for turning claims into a SubjectIdentity."""

    async def test_subject_comes_from_claims(self, provider):
        verifier = IdentityVerifier(provider)
        identity = await verifier.verify(provider.issue_token("user-0000000001", email="a@example.com"))
        assert identity.subject_id == "user-0000000001"
        assert identity.email == "a@example.com"

    async def test_empty_token(self, provider):
        with pytest.raises(TokenInvalid):
            await IdentityVerifier(provider).verify("")

    async def test_claims_without_subject(self):
        class NoSubject:
            async def verify_token(self, token):
                return {"email": "x@example.com"}

            async def delete_account(self, subject_id):
                return None

        with pytest.raises(TokenInvalid):
            await IdentityVerifier(NoSubject()).verify("any-token-value")


def _remote(handler, **kwargs):
    return RemoteIdentityProvider(
        "https://identity.test/v1",
        "api-key-123",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


class TestRemoteProvider:
    """Tests for the hosted identity toolkit backend."""

    def test_requires_api_key(self):
        with pytest.raises(ValueError):
            RemoteIdentityProvider("https://identity.test/v1", "")

    async def test_lookup_success(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["url"] = str(request.url)
            seen["body"] = json.loads(request.content)
            return httpx.Response(
                200, json={"users": [{"localId": "remote-user-0001", "email": "r@example.com"}]}
            )

        claims = await _remote(handler).verify_token("remote-token-value")
        assert claims["sub"] == "remote-user-0001"
        assert claims["email"] == "r@example.com"
        assert "accounts:lookup" in seen["url"]
        assert "key=api-key-123" in seen["url"]
        assert seen["body"] == {"idToken": "remote-token-value"}

    async def test_lookup_rejected(self):
        def handler(request):
            return httpx.Response(400, json={"error": {"message": "INVALID_ID_TOKEN"}})

        with pytest.raises(TokenInvalid):
            await _remote(handler).verify_token("remote-token-value")

    async def test_disabled_account(self):
        def handler(request):
            return httpx.Response(200, json={"users": [{"localId": "remote-user-0001", "disabled": True}]})

        with pytest.raises(TokenInvalid):
            await _remote(handler).verify_token("remote-token-value")

    async def test_no_users(self):
        def handler(request):
            return httpx.Response(200, json={"users": []})

        with pytest.raises(TokenInvalid):
            await _remote(handler).verify_token("remote-token-value")

    async def test_transport_error(self):
        def handler(request):
            raise httpx.ConnectError("unreachable", request=request)

        with pytest.raises(TokenInvalid):
            await _remote(handler).verify_token("remote-token-value")

    async def test_delete_account_uses_admin_token(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers.get("Authorization")
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={})

        await _remote(handler, admin_token="svc-token").delete_account("remote-user-0001")
        assert seen["auth"] == "Bearer svc-token"
        assert seen["path"].endswith("accounts:delete")
        assert seen["body"] == {"localId": "remote-user-0001"}

    async def test_delete_account_without_admin_token(self):
        def handler(request):
            return httpx.Response(200, json={})

        with pytest.raises(RuntimeError):
            await _remote(handler).delete_account("remote-user-0001")

    async def test_delete_account_error_status(self):
        def handler(request):
            return httpx.Response(500, json={})

        with pytest.raises(httpx.HTTPStatusError):
            await _remote(handler, admin_token="svc-token").delete_account("remote-user-0001")
