"""
bridge_jwt.py — RS256 access-token minting and verification.

Access tokens are self-contained JWTs signed with the server's RSA key.
The header carries a fixed ``kid`` so verifiers can pick the right public
key from the JWKS document if keys are ever rotated.
"""

import base64
import binascii
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Iterable, Mapping

import jwt
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from jwt.algorithms import RSAAlgorithm

logger = logging.getLogger("idbridge-jwt")

JWT_ALGORITHM = "RS256"
DEFAULT_KEY_ID = "key-1"
ACCESS_TOKEN_LIFETIME = 3600  # 1 hour


class TokenVerificationError(Exception):
    """Raised when a bearer JWT fails verification."""


def parse_scope(scope: str) -> list[str]:
    """Split a space-delimited scope string. An empty string yields []."""
    return scope.split()


# ---------------------------------------------------------------------------
# Signing key
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SigningKey:
    key_id: str
    private_key: rsa.RSAPrivateKey

    @property
    def public_key(self) -> rsa.RSAPublicKey:
        return self.private_key.public_key()

    def public_jwk(self) -> dict[str, Any]:
        jwk = json.loads(RSAAlgorithm.to_jwk(self.public_key))
        jwk.update({"kid": self.key_id, "use": "sig", "alg": JWT_ALGORITHM})
        return jwk

    def jwks(self) -> dict[str, Any]:
        return {"keys": [self.public_jwk()]}


def generate_signing_key(key_id: str = DEFAULT_KEY_ID) -> SigningKey:
    private_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    return SigningKey(key_id=key_id, private_key=private_key)


def load_signing_key(pem: str | bytes | None, key_id: str = DEFAULT_KEY_ID) -> SigningKey:
    """Load an RSA private key from PEM text, or from base64-encoded PEM.

    With no key configured an ephemeral key is generated; tokens minted with
    it do not survive a restart.
    """
    if not pem:
        logger.warning(
            "No JWT signing key configured - generated an ephemeral RSA key. "
            "Access tokens will not verify after a restart. "
            "Set BRIDGE_JWT_PRIVATE_KEY for production use."
        )
        return generate_signing_key(key_id)

    raw = pem.encode() if isinstance(pem, str) else pem
    if b"-----BEGIN" not in raw:
        try:
            raw = base64.b64decode(raw, validate=True)
        except (binascii.Error, ValueError) as e:
            raise ValueError(f"JWT private key is neither PEM nor base64 PEM: {e}") from e

    private_key = serialization.load_pem_private_key(raw, password=None)
    if not isinstance(private_key, rsa.RSAPrivateKey):
        raise ValueError("JWT private key must be an RSA key")
    return SigningKey(key_id=key_id, private_key=private_key)


# ---------------------------------------------------------------------------
# Signer
# ---------------------------------------------------------------------------

class JWTSigner:
    """Mints access tokens with the fixed claim set
    ``{sub, scope, aud, client_id, iss, iat, exp}``."""

    def __init__(self, key: SigningKey, issuer: str,
                 lifetime: int = ACCESS_TOKEN_LIFETIME):
        self.key = key
        self.issuer = issuer.rstrip("/")
        self.lifetime = lifetime

    def mint(self, *, subject: str, scopes: Iterable[str], audience: str,
             client_id: str, issued_at: int | None = None) -> str:
        iat = int(time.time()) if issued_at is None else issued_at
        payload = {
            "sub": subject,
            "scope": " ".join(scopes),
            "aud": audience,
            "client_id": client_id,
            "iss": self.issuer,
            "iat": iat,
            "exp": iat + self.lifetime,
        }
        return jwt.encode(
            payload,
            self.key.private_key,
            algorithm=JWT_ALGORITHM,
            headers={"kid": self.key.key_id},
        )

    def verifier(self, audiences: Iterable[str] = ()) -> "JWTVerifier":
        accepted = [self.issuer, *audiences]
        return JWTVerifier({self.key.key_id: self.key.public_key}, self.issuer, accepted)


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class VerifiedToken:
    token: str
    claims: dict[str, Any]
    subject: str
    scopes: list[str]
    client_id: str | None
    expires_at: int


class JWTVerifier:
    """Verifies bearer JWTs against known public keys.

    Checks performed:
    1. ``kid`` names a known key and the RS256 signature validates
    2. ``iss`` equals the server's issuer
    3. ``aud`` is one of the accepted audiences (server base URL or a resource)
    4. ``exp`` has not passed
    """

    def __init__(self, public_keys: Mapping[str, rsa.RSAPublicKey], issuer: str,
                 audiences: Iterable[str]):
        self.public_keys = dict(public_keys)
        self.issuer = issuer.rstrip("/")
        self.audiences = list(audiences)

    def verify(self, token: str, audience: str | list[str] | None = None,
               verify_audience: bool = True) -> VerifiedToken:
        try:
            header = jwt.get_unverified_header(token)
        except jwt.InvalidTokenError as e:
            raise TokenVerificationError(f"Malformed token: {e}") from e

        public_key = self.public_keys.get(header.get("kid", ""))
        if public_key is None:
            raise TokenVerificationError("Unknown signing key")

        expected_aud = self.audiences if audience is None else audience
        try:
            claims = jwt.decode(
                token,
                public_key,
                algorithms=[JWT_ALGORITHM],
                issuer=self.issuer,
                audience=expected_aud if verify_audience else None,
                options={
                    "require": ["sub", "exp", "iat", "iss", "aud"],
                    "verify_aud": verify_audience,
                },
            )
        except jwt.ExpiredSignatureError as e:
            raise TokenVerificationError("Token expired") from e
        except jwt.InvalidAudienceError as e:
            raise TokenVerificationError("Invalid audience") from e
        except jwt.InvalidIssuerError as e:
            raise TokenVerificationError("Invalid issuer") from e
        except jwt.InvalidTokenError as e:
            raise TokenVerificationError(str(e)) from e

        scope = claims.get("scope", "")
        if not isinstance(scope, str):
            raise TokenVerificationError("Invalid scope claim")

        return VerifiedToken(
            token=token,
            claims=claims,
            subject=claims["sub"],
            scopes=parse_scope(scope),
            client_id=claims.get("client_id"),
            expires_at=claims["exp"],
        )
