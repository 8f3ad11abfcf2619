from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass
from http.client import HTTPException
from typing import Mapping
from urllib.request import urlopen

from jose import jwt
from jose.exceptions import JOSEError
from sqlalchemy import insert, select
from sqlalchemy.engine import Connection

from finally_api.config import Settings
from finally_api.db import users

logger = logging.getLogger(__name__)

BEARER_PREFIX = "Bearer "
DEFAULT_ALGORITHMS = ("RS256",)
MOCK_IDENTITY_SUB = "test-user-123"
MOCK_IDENTITY_EMAIL = "test@example.com"


@dataclass(frozen=True)
class AuthenticatedIdentity:
    sub: str
    email: str | None = None
    username: str | None = None
    name: str | None = None


class KeyProviderUnavailable(RuntimeError):
    """Raised when the signing keys cannot be fetched."""


@dataclass(frozen=True)
class StaticKeyProvider:
    """Serves a fixed JSON Web Key Set."""

    keys: tuple[Mapping[str, object], ...] = ()

    def get_keys(self) -> tuple[Mapping[str, object], ...]:
        return self.keys


@dataclass
class JwksKeyProvider:
    url: str
    cache_ttl_seconds: int = 12 * 60 * 60
    timeout_seconds: int = 5
    _cached_keys: tuple[Mapping[str, object], ...] | None = None
    _expires_at: float = 0.0

    def get_keys(self) -> tuple[Mapping[str, object], ...]:
        now = time.monotonic()
        if self._cached_keys is not None and self._expires_at > now:
            return self._cached_keys

        keys = self._fetch_keys()
        self._cached_keys = keys
        self._expires_at = now + self.cache_ttl_seconds
        return keys

    def _fetch_keys(self) -> tuple[Mapping[str, object], ...]:
        try:
            with urlopen(self.url, timeout=self.timeout_seconds) as response:
                payload = json.load(response)
        except (OSError, HTTPException, ValueError) as exc:
            raise KeyProviderUnavailable("JWKS endpoint unavailable") from exc

        keys = payload.get("keys") if isinstance(payload, dict) else None
        if not isinstance(keys, list):
            raise KeyProviderUnavailable("JWKS response missing keys")
        return tuple(key for key in keys if isinstance(key, dict))


@dataclass
class TokenVerifier:
    """Verifies identity-provider bearer tokens.

    ``verify`` answers with an identity or ``None``; it never raises, so a
    failed verification always turns into a 401 at the request boundary.
    """

    key_provider: StaticKeyProvider | JwksKeyProvider | None
    accepted_client_ids: frozenset[str]
    issuer: str | None = None
    algorithms: tuple[str, ...] = DEFAULT_ALGORITHMS
    mock_auth: bool = False

    def verify(self, authorization: str | None) -> AuthenticatedIdentity | None:
        if self.mock_auth:
            return AuthenticatedIdentity(
                sub=MOCK_IDENTITY_SUB,
                email=MOCK_IDENTITY_EMAIL,
                username="test-user",
                name="Test User",
            )
        token = _extract_bearer(authorization)
        if token is None:
            logger.info("Rejected request without a bearer token")
            return None
        try:
            claims = self._decode(token)
        except (JOSEError, KeyProviderUnavailable, ValueError) as exc:
            logger.info("Rejected bearer token: %s", exc)
            return None

        sub = claims.get("sub")
        if not isinstance(sub, str) or not sub:
            logger.info("Rejected bearer token without subject")
            return None
        if not self._client_accepted(claims):
            logger.info("Rejected bearer token for unknown client")
            return None
        return AuthenticatedIdentity(
            sub=sub,
            email=claims.get("email"),
            username=claims.get("cognito:username") or claims.get("username"),
            name=claims.get("name"),
        )

    def _decode(self, token: str) -> dict:
        if self.key_provider is None:
            raise ValueError("No signing keys configured")
        header = jwt.get_unverified_header(token)
        key = _select_key(self.key_provider.get_keys(), header.get("kid"))
        options = {"verify_aud": False}
        kwargs = {}
        if self.issuer:
            kwargs["issuer"] = self.issuer
        else:
            options["verify_iss"] = False
        return jwt.decode(
            token,
            key,
            algorithms=list(self.algorithms),
            options=options,
            **kwargs,
        )

    def _client_accepted(self, claims: Mapping[str, object]) -> bool:
        audience = claims.get("aud")
        candidates: list[object] = []
        if isinstance(audience, list):
            candidates.extend(audience)
        elif audience is not None:
            candidates.append(audience)
        if claims.get("client_id") is not None:
            candidates.append(claims.get("client_id"))
        return any(candidate in self.accepted_client_ids for candidate in candidates)


def build_token_verifier(settings: Settings) -> TokenVerifier:
    key_provider = None
    if settings.jwks_url:
        key_provider = JwksKeyProvider(url=settings.jwks_url)
    return TokenVerifier(
        key_provider=key_provider,
        accepted_client_ids=settings.accepted_client_ids,
        issuer=settings.issuer,
        mock_auth=settings.mock_auth,
    )


def resolve_user_id(conn: Connection, identity: AuthenticatedIdentity) -> int:
    """Return the user row for ``identity``, creating it on first sight."""
    user_id = conn.execute(
        select(users.c.id).where(users.c.cognito_sub == identity.sub)
    ).scalar_one_or_none()
    if user_id is not None:
        return user_id

    user_id = conn.execute(
        insert(users)
        .values(
            cognito_sub=identity.sub,
            email=identity.email or f"user-{identity.sub}@example.com",
            display_name=identity.name or identity.username,
        )
        .returning(users.c.id)
    ).scalar_one()
    logger.info("Created user %s for subject %s", user_id, identity.sub)
    return user_id


def _extract_bearer(authorization: str | None) -> str | None:
    if not authorization or not authorization.startswith(BEARER_PREFIX):
        return None
    token = authorization[len(BEARER_PREFIX):].strip()
    return token or None


def _select_key(
    keys: tuple[Mapping[str, object], ...], kid: object
) -> Mapping[str, object]:
    for key in keys:
        if kid is None or key.get("kid") == kid:
            return key
    raise ValueError("No signing key matches the token")
