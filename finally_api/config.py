from __future__ import annotations

import os
from dataclasses import dataclass, field

DEFAULT_DATABASE_URL = "sqlite:///./finally.db"
DEFAULT_SERVICE_NAME = "FinAlly API"
TRUTHY_VALUES = {"1", "true", "yes", "on"}


def parse_bool(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in TRUTHY_VALUES


def parse_client_ids(value: str | None) -> frozenset[str]:
    if not value:
        return frozenset()
    return frozenset(part.strip() for part in value.split(",") if part.strip())


@dataclass(frozen=True)
class Settings:
    """Runtime configuration.

    Everything comes from environment variables; ``from_env`` is the only
    place that reads them.
    """

    database_url: str = DEFAULT_DATABASE_URL
    cognito_region: str | None = None
    cognito_user_pool_id: str | None = None
    jwks_url_override: str | None = None
    accepted_client_ids: frozenset[str] = field(default_factory=frozenset)
    cors_allow_origin: str = "*"
    mock_auth: bool = False
    log_level: str = "INFO"
    service_name: str = DEFAULT_SERVICE_NAME

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL", DEFAULT_DATABASE_URL),
            cognito_region=os.getenv("COGNITO_REGION") or None,
            cognito_user_pool_id=os.getenv("COGNITO_USER_POOL_ID") or None,
            jwks_url_override=os.getenv("JWKS_URL") or None,
            accepted_client_ids=parse_client_ids(os.getenv("COGNITO_CLIENT_IDS")),
            cors_allow_origin=os.getenv("CORS_ALLOW_ORIGIN", "*").strip() or "*",
            mock_auth=parse_bool(os.getenv("MOCK_AUTH")),
            log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
            service_name=os.getenv("SERVICE_NAME", DEFAULT_SERVICE_NAME),
        )

    @property
    def issuer(self) -> str | None:
        if not self.cognito_region or not self.cognito_user_pool_id:
            return None
        return (
            f"https://cognito-idp.{self.cognito_region}.amazonaws.com/"
            f"{self.cognito_user_pool_id}"
        )

    @property
    def jwks_url(self) -> str | None:
        if self.jwks_url_override:
            return self.jwks_url_override
        issuer = self.issuer
        if issuer is None:
            return None
        return f"{issuer}/.well-known/jwks.json"
