"""
bridge_identity.py — Verification of identity-provider tokens.

The authorization flow receives an identity token issued by an external
identity provider. It is verified here before any authorization code is
minted; the verified token is later stored verbatim for the identity bridge.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Protocol

import jwt
from jwt import PyJWKClient
from jwt.exceptions import PyJWKClientError

logger = logging.getLogger("idbridge-identity")


class IdentityVerificationError(Exception):
    """Raised when an identity token cannot be verified."""


@dataclass(frozen=True)
class VerifiedIdentity:
    subject: str
    claims: dict[str, Any] = field(default_factory=dict)


class IdentityVerifier(Protocol):
    async def verify(self, token: str) -> VerifiedIdentity: ...


class JWKSIdentityVerifier:
    """Verifies identity-provider JWTs against the provider's JWKS.

    The JWKS fetch is blocking (PyJWKClient uses urllib), so key resolution
    runs in a worker thread. Signing keys are cached by PyJWKClient.
    """

    def __init__(
        self,
        jwks_url: str,
        issuer: str | None = None,
        audience: str | None = None,
        algorithms: tuple[str, ...] = ("ES256", "RS256"),
        leeway: int = 0,
    ):
        self.jwks_url = jwks_url
        self.issuer = issuer
        self.audience = audience
        self.algorithms = list(algorithms)
        self.leeway = leeway
        self._jwks_client = PyJWKClient(
            jwks_url,
            cache_keys=True,
            headers={"User-Agent": "idbridge/0.1", "Accept": "application/json"},
        )

    async def verify(self, token: str) -> VerifiedIdentity:
        try:
            signing_key = await asyncio.to_thread(
                self._jwks_client.get_signing_key_from_jwt, token
            )
            claims = jwt.decode(
                token,
                signing_key.key,
                algorithms=self.algorithms,
                issuer=self.issuer,
                audience=self.audience,
                leeway=self.leeway,
                options={
                    "require": ["sub", "exp", "iat"],
                    "verify_aud": self.audience is not None,
                },
            )
        except PyJWKClientError as e:
            logger.warning("Identity token key lookup failed: %s", e)
            raise IdentityVerificationError("Unable to resolve identity provider signing key") from e
        except jwt.InvalidTokenError as e:
            logger.warning("Identity token verification failed: %s", e)
            raise IdentityVerificationError(f"Identity token rejected: {e}") from e

        subject = claims.get("sub")
        if not subject:
            raise IdentityVerificationError("Identity token has no subject")
        return VerifiedIdentity(subject=subject, claims=claims)
