from __future__ import annotations

import asyncio
import json
import logging
import time
from typing import Any

import httpx
import jwt

from chatgate.core.config import Settings, get_settings, split_csv
from chatgate.core.errors import UnauthenticatedError
from chatgate.services.resilience import retry_async
from chatgate.services.telemetry import record_external_call


logger = logging.getLogger(__name__)

_ASYMMETRIC_ALGS = {"RS256", "RS384", "RS512", "ES256", "ES384", "ES512"}


def parse_bearer_token(header_value: str | None) -> str:
    # Enforce Bearer token format before any verification work.
    if not header_value:
        raise UnauthenticatedError("No token provided")
    parts = header_value.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise UnauthenticatedError("Missing or invalid bearer token")
    return parts[1]


def _select_jwk(jwks: dict[str, Any], kid: str | None) -> dict[str, Any]:
    # Select the appropriate JWK based on kid header.
    keys = jwks.get("keys") or []
    if kid:
        for key in keys:
            if key.get("kid") == kid:
                return key
    if len(keys) == 1:
        return keys[0]
    raise ValueError("No matching JWK for token")


def _jwk_to_key(jwk: dict[str, Any], alg: str) -> Any:
    # Convert a JWK payload into a cryptography key for PyJWT.
    payload = json.dumps(jwk)
    if alg.startswith("RS"):
        return jwt.algorithms.RSAAlgorithm.from_jwk(payload)
    if alg.startswith("ES"):
        return jwt.algorithms.ECAlgorithm.from_jwk(payload)
    raise ValueError("Unsupported JWT algorithm")


class TokenVerifier:
    """Resolve a bearer credential to the account id it was issued for.

    With `AUTH_JWT_SECRET` set, tokens are HS256 and verified locally. Otherwise the
    signing keys come from `AUTH_JWKS_URL`, cached for `AUTH_JWKS_CACHE_TTL_S`.
    """

    def __init__(self, settings: Settings | None = None, client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._jwks: dict[str, Any] | None = None
        self._jwks_expires_at = 0.0
        self._jwks_lock = asyncio.Lock()

    async def verify_header(self, header_value: str | None) -> str:
        return await self.verify(parse_bearer_token(header_value))

    async def verify(self, token: str) -> str:
        settings = self._settings
        try:
            if settings.auth_jwt_secret:
                key: Any = settings.auth_jwt_secret
                algorithms = ["HS256"]
            else:
                header = jwt.get_unverified_header(token)
                alg = header.get("alg")
                allowed = set(split_csv(settings.auth_algorithms)) & _ASYMMETRIC_ALGS
                if not alg or alg not in allowed:
                    raise ValueError("Unsupported token algorithm")
                jwks = await self._get_jwks()
                key = _jwk_to_key(_select_jwk(jwks, header.get("kid")), alg)
                algorithms = [alg]
            claims = jwt.decode(
                token,
                key,
                algorithms=algorithms,
                audience=settings.auth_audience,
                issuer=settings.auth_issuer,
                leeway=settings.auth_clock_skew_seconds,
                options={"verify_aud": settings.auth_audience is not None},
            )
        except (jwt.PyJWTError, ValueError, httpx.HTTPError, asyncio.TimeoutError) as exc:
            logger.info("auth_token_rejected reason=%s", type(exc).__name__)
            raise UnauthenticatedError("Invalid or expired token") from exc

        subject = claims.get("sub")
        if not isinstance(subject, str) or not subject:
            raise UnauthenticatedError("Token has no subject")
        return subject

    async def _get_jwks(self) -> dict[str, Any]:
        async with self._jwks_lock:
            now = time.monotonic()
            if self._jwks is not None and now < self._jwks_expires_at:
                return self._jwks
            self._jwks = await self._fetch_jwks()
            self._jwks_expires_at = now + max(0, self._settings.auth_jwks_cache_ttl_s)
            return self._jwks

    async def _fetch_jwks(self) -> dict[str, Any]:
        # Fetch JWKS from the identity provider; transient failures and 5xx are retried.
        url = self._settings.auth_jwks_url

        async def _call(client: httpx.AsyncClient) -> dict[str, Any]:
            response = await client.get(url)
            response.raise_for_status()
            return response.json()

        start = time.monotonic()
        try:
            if self._client is not None:
                jwks = await retry_async(lambda: _call(self._client), integration="auth_jwks")
            else:
                async with httpx.AsyncClient() as client:
                    jwks = await retry_async(lambda: _call(client), integration="auth_jwks")
        except (httpx.HTTPError, asyncio.TimeoutError):
            record_external_call(integration="auth.jwks", latency_ms=(time.monotonic() - start) * 1000.0, success=False)
            raise
        record_external_call(integration="auth.jwks", latency_ms=(time.monotonic() - start) * 1000.0, success=True)
        return jwks


_token_verifier: TokenVerifier | None = None


def get_token_verifier() -> TokenVerifier:
    global _token_verifier
    if _token_verifier is None:
        _token_verifier = TokenVerifier()
    return _token_verifier


def reset_token_verifier() -> None:
    # Reset cached services for deterministic tests.
    global _token_verifier
    _token_verifier = None
