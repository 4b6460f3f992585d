"""Token verification for the control surface and the real-time channel."""

from dataclasses import dataclass
from typing import Any, Protocol

from fastmcp.server.auth import StaticTokenVerifier
from fastmcp.server.auth.providers.jwt import JWTVerifier

from crateflow.config import get_settings
from crateflow.utils import get_logger
from crateflow.utils.exceptions import AuthFailedError

logger = get_logger(__name__)


@dataclass(frozen=True)
class Identity:
    """Authenticated caller of the channel."""

    user_id: str
    username: str
    role: str

    def to_dict(self) -> dict[str, str]:
        """Convert to the shape sent in the authenticated event."""
        return {"id": self.user_id, "username": self.username, "role": self.role}


class IdentityVerifier(Protocol):
    """Resolves a bearer token into an identity."""

    async def verify(self, token: str) -> Identity:
        """
        Verify a token.

        Raises:
            AuthFailedError: If the token is invalid or expired
        """
        ...


class TokenIdentityVerifier:
    """IdentityVerifier backed by a fastmcp token verifier."""

    def __init__(self, token_verifier: Any, admin_role: str | None = None) -> None:
        """
        Initialize token identity verifier.

        Args:
            token_verifier: fastmcp verifier exposing async verify_token()
            admin_role: Role granted to tokens carrying it as a scope
        """
        self.token_verifier = token_verifier
        self.admin_role = admin_role or get_settings().admin_role

    async def verify(self, token: str) -> Identity:
        """
        Verify a token and extract the caller identity.

        The verifier reports invalid and expired tokens the same way, so both
        raise AuthFailedError with the same reason.

        Args:
            token: Bearer token sent by the client

        Returns:
            Identity of the caller

        Raises:
            AuthFailedError: If the token is missing, invalid or expired
        """
        if not token:
            raise AuthFailedError("Token required for authentication")

        access = await self.token_verifier.verify_token(token)
        if access is None:
            raise AuthFailedError()

        claims = getattr(access, "claims", None) or {}
        user_id = str(claims.get("user_id") or claims.get("sub") or access.client_id)
        username = str(claims.get("username") or claims.get("preferred_username") or user_id)

        role = claims.get("role")
        if not role:
            role = self.admin_role if self.admin_role in (access.scopes or []) else "user"

        return Identity(user_id=user_id, username=username, role=str(role))


def create_token_verifier() -> Any:
    """
    Create the fastmcp token verifier for the configured auth mode.

    Returns:
        StaticTokenVerifier or JWTVerifier instance

    Raises:
        ValueError: If the selected mode is missing its configuration
    """
    settings = get_settings()

    if settings.auth_mode == "static":
        tokens = settings.static_tokens_map
        if not tokens:
            raise ValueError("Static authentication requires CRATEFLOW_STATIC_TOKENS to be set")
        logger.info("Configuring static token authentication", extra={"tokens": len(tokens)})
        return StaticTokenVerifier(tokens=tokens)

    if settings.auth_mode == "jwt":
        if not settings.jwt_secret:
            raise ValueError("JWT authentication requires CRATEFLOW_JWT_SECRET to be set")
        logger.info(
            "Configuring JWT authentication",
            extra={"algorithm": settings.jwt_algorithm, "issuer": settings.jwt_issuer},
        )
        return JWTVerifier(
            public_key=settings.jwt_secret,
            algorithm=settings.jwt_algorithm,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
        )

    raise ValueError(f"Invalid auth_mode: {settings.auth_mode}")


def create_identity_verifier(token_verifier: Any | None = None) -> TokenIdentityVerifier:
    """Create the channel's identity verifier, sharing the control-surface verifier."""
    return TokenIdentityVerifier(token_verifier or create_token_verifier())
