from __future__ import annotations

import base64
import hashlib
import hmac
import json
import time
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Protocol

import httpx

from chatwarden.logging import get_logger
from chatwarden.service.errors import TokenInvalid

logger = get_logger(__name__)


@dataclass(frozen=True)
class SubjectIdentity:
    """A subject whose identity was established by the token's own claims."""

    subject_id: str
    email: Optional[str] = None
    claims: Dict[str, Any] = field(default_factory=dict, compare=False)


class IdentityProvider(Protocol):
    async def verify_token(self, token: str) -> Dict[str, Any]:
        """Return verified claims containing ``sub`` or raise ``TokenInvalid``."""
        ...

    async def delete_account(self, subject_id: str) -> None: ...


class JWTIdentityProvider:
    """HS256 tokens signed with a shared secret.

    Used when this service is its own token issuer (single-node deployments,
    operator tooling and tests).
    """

    def __init__(
        self,
        secret: str,
        *,
        issuer: str,
        audience: str,
        clock_skew_seconds: int = 30,
    ) -> None:
        if not secret or len(secret) < 32:
            raise ValueError("JWT secret must be at least 32 characters")
        self._secret = secret.encode()
        self.issuer = issuer
        self.audience = audience
        self.clock_skew_seconds = clock_skew_seconds

    @staticmethod
    def _encode_segment(data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    @staticmethod
    def _decode_segment(segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def issue_token(
        self,
        subject_id: str,
        *,
        email: Optional[str] = None,
        ttl_seconds: int = 3600,
        extra_claims: Optional[Dict[str, Any]] = None,
    ) -> str:
        now = int(time.time())
        payload: Dict[str, Any] = {
            **(extra_claims or {}),
            "sub": subject_id,
            "iss": self.issuer,
            "aud": self.audience,
            "iat": now,
            "exp": now + ttl_seconds,
            "jti": str(uuid.uuid4()),
        }
        if email:
            payload["email"] = email
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = self._encode_segment(json.dumps(payload, separators=(",", ":")).encode())
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    async def verify_token(self, token: str) -> Dict[str, Any]:
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError:
            raise TokenInvalid("malformed token") from None

        # Pin the algorithm to prevent alg confusion ("none", RS/HS swaps)
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError):
            raise TokenInvalid("malformed token header") from None
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            raise TokenInvalid("unsupported token algorithm")

        signing_input = f"{header_b64}.{payload_b64}"
        if not hmac.compare_digest(self._sign(signing_input), sig_b64):
            raise TokenInvalid("bad token signature")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError):
            raise TokenInvalid("malformed token payload") from None
        if not isinstance(payload, dict):
            raise TokenInvalid("malformed token payload")

        if payload.get("iss") != self.issuer:
            raise TokenInvalid("unexpected issuer")
        aud = payload.get("aud")
        if isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = aud == self.audience
        if not valid_aud:
            raise TokenInvalid("unexpected audience")
        try:
            exp_ts = float(payload["exp"])
        except (KeyError, TypeError, ValueError):
            raise TokenInvalid("token has no expiry") from None
        if exp_ts <= time.time() - self.clock_skew_seconds:
            raise TokenInvalid("token expired")
        return payload

    async def delete_account(self, subject_id: str) -> None:
        # Self-issued tokens carry no provider-side account; they lapse at exp
        logger.info("identity_account_removal_skipped", subject_id=subject_id, backend="jwt")


class RemoteIdentityProvider:
    """Hosted identity toolkit reached over REST.

    ``accounts:lookup`` verifies the ID token server-side and returns the
    account it belongs to; ``accounts:delete`` removes an account using a
    service credential.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str,
        *,
        admin_token: Optional[str] = None,
        timeout: float = 10.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if not api_key:
            raise ValueError("identity API key is required for the remote backend")
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key
        self.admin_token = admin_token
        self.timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self.timeout, follow_redirects=False, transport=self._transport
        )

    async def verify_token(self, token: str) -> Dict[str, Any]:
        try:
            async with self._client() as client:
                response = await client.post(
                    f"{self.base_url}/accounts:lookup",
                    params={"key": self.api_key},
                    json={"idToken": token},
                    headers={"Accept": "application/json"},
                )
        except httpx.HTTPError as exc:
            logger.warning("identity_lookup_transport_error", error=str(exc))
            raise TokenInvalid("identity provider unreachable") from None

        if response.status_code != 200:
            logger.info("identity_lookup_rejected", status_code=response.status_code)
            raise TokenInvalid("token rejected by identity provider")
        try:
            body = response.json()
        except ValueError:
            raise TokenInvalid("unreadable identity provider response") from None

        users = body.get("users") if isinstance(body, dict) else None
        if not isinstance(users, list) or not users or not isinstance(users[0], dict):
            raise TokenInvalid("token does not resolve to an account")
        account = users[0]
        if account.get("disabled"):
            raise TokenInvalid("account disabled")
        subject_id = account.get("localId")
        if not isinstance(subject_id, str) or not subject_id:
            raise TokenInvalid("token does not resolve to an account")
        return {"sub": subject_id, "email": account.get("email"), "provider": "remote"}

    async def delete_account(self, subject_id: str) -> None:
        if not self.admin_token:
            raise RuntimeError("IDENTITY_ADMIN_TOKEN is required to delete provider accounts")
        async with self._client() as client:
            response = await client.post(
                f"{self.base_url}/accounts:delete",
                json={"localId": subject_id},
                headers={
                    "Authorization": f"Bearer {self.admin_token}",
                    "Accept": "application/json",
                },
            )
            response.raise_for_status()


class IdentityVerifier:
    """Turns an opaque bearer token into a :class:`SubjectIdentity`.

    The subject id is read from the verified claims only; nothing else in the
    request body can influence who the caller is.
    """

    def __init__(self, provider: IdentityProvider) -> None:
        self.provider = provider

    async def verify(self, token: str) -> SubjectIdentity:
        if not isinstance(token, str) or not token:
            raise TokenInvalid("missing token")
        try:
            claims = await self.provider.verify_token(token)
        except TokenInvalid as exc:
            logger.info("token_rejected", reason=exc.message)
            raise
        subject_id = claims.get("sub")
        if not isinstance(subject_id, str) or not subject_id:
            logger.info("token_rejected", reason="no subject claim")
            raise TokenInvalid("token carries no subject")
        email = claims.get("email")
        return SubjectIdentity(
            subject_id=subject_id,
            email=email if isinstance(email, str) else None,
            claims=dict(claims),
        )
