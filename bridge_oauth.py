"""
bridge_oauth.py — Authorization Code + PKCE issuance and token exchange.

The user authenticates with an external identity provider; the consent page
posts the resulting identity token to /authorize/complete. This module
verifies it, issues a short-lived single-use authorization code, and later
redeems that code (or a refresh token) for an RS256 access token plus a
rotated refresh token.

Security features:
  - S256-only PKCE, constant-time comparison
  - Single-use authorization codes (atomic mark-and-delete in the store)
  - Single-use refresh tokens (rotation on every refresh grant)
  - Bridge scope always granted so every token can reach the identity bridge
  - Structured audit logging (JSON-lines to idbridge-audit logger)

Known limitations:
  - The stored identity token is never re-verified for freshness; refresh
    rotation carries it forward for the lifetime of the refresh chain.
"""

import base64
import hashlib
import hmac
import json
import logging
import secrets
import time
from dataclasses import dataclass
from typing import Annotated, Any, Iterable, Literal, Mapping, Union

from mcp.server.auth.provider import construct_redirect_uri
from mcp.shared.auth import OAuthToken
from pydantic import BaseModel, Field, TypeAdapter, ValidationError

from bridge_identity import IdentityVerificationError, IdentityVerifier
from bridge_jwt import JWTSigner
from bridge_store import (
    AccessTokenRecord,
    AuthorizationCode,
    CredentialStore,
    RefreshToken,
)

logger = logging.getLogger("idbridge-oauth")
audit_logger = logging.getLogger("idbridge-audit")

# ---------------------------------------------------------------------------
# Policy
# ---------------------------------------------------------------------------

AUTHORIZATION_CODE_TTL = 30  # seconds
REFRESH_TOKEN_LIFETIME = 30 * 86400  # 30 days
BRIDGE_SCOPE = "identity:token:exchange"
SUPPORTED_SCOPES = ("read", "write", "profile", BRIDGE_SCOPE)
CODE_CHALLENGE_METHOD = "S256"
GRANT_TYPES = ("authorization_code", "refresh_token")


# ---------------------------------------------------------------------------
# Audit logging
# ---------------------------------------------------------------------------

def _audit(event: str, **kwargs: Any) -> None:
    """Emit a structured JSON audit log entry."""
    entry = {"ts": time.time(), "event": event, **kwargs}
    audit_logger.info(json.dumps(entry))


def _preview(token: str) -> str:
    return f"{token[:4]}...{token[-4:]}" if len(token) > 12 else "***"


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

_STATUS_BY_ERROR = {
    "invalid_token": 401,
    "insufficient_scope": 403,
    "server_error": 500,
}


class OAuthError(Exception):
    """An OAuth error that maps directly onto ``{error, error_description}``.

    When ``redirect_uri`` is set the error happened after both the identity
    and the redirect URI were verified, so it may be delivered by redirect.
    """

    def __init__(self, error: str, description: str, status_code: int | None = None,
                 redirect_uri: str | None = None, state: str | None = None):
        super().__init__(f"{error}: {description}")
        self.error = error
        self.description = description
        self.status_code = status_code or _STATUS_BY_ERROR.get(error, 400)
        self.redirect_uri = redirect_uri
        self.state = state

    @property
    def redirectable(self) -> bool:
        return self.redirect_uri is not None

    def to_dict(self) -> dict[str, str]:
        body = {"error": self.error, "error_description": self.description}
        if self.redirect_uri is not None:
            body["redirect_uri"] = construct_redirect_uri(
                self.redirect_uri,
                error=self.error,
                error_description=self.description,
                state=self.state,
            )
        return body


def _describe_validation_error(exc: ValidationError) -> str:
    names: list[str] = []
    for err in exc.errors():
        loc = err.get("loc") or ("body",)
        name = str(loc[-1])
        if name not in names:
            names.append(name)
    return f"Missing or invalid parameter(s): {', '.join(names)}"


# ---------------------------------------------------------------------------
# PKCE
# ---------------------------------------------------------------------------

def s256_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


def verify_pkce(verifier: str, challenge: str) -> bool:
    try:
        expected = s256_challenge(verifier)
    except UnicodeEncodeError:
        return False
    return hmac.compare_digest(expected, challenge)


# ---------------------------------------------------------------------------
# Scope policy
# ---------------------------------------------------------------------------

def compute_final_scopes(requested: str | Iterable[str], allowed: Iterable[str],
                         bridge_scope: str = BRIDGE_SCOPE) -> list[str]:
    """Requested scopes the client may hold, plus the bridge scope.

    Order of first appearance is kept and duplicates dropped. The bridge
    scope is always present in the result, whether or not it was requested.
    """
    if isinstance(requested, str):
        requested = requested.split()
    allowed_set = set(allowed)
    final: list[str] = []
    for scope in requested:
        if scope in allowed_set and scope not in final:
            final.append(scope)
    if bridge_scope not in final:
        final.append(bridge_scope)
    return final


# ---------------------------------------------------------------------------
# Request models
# ---------------------------------------------------------------------------

NonEmpty = Annotated[str, Field(min_length=1)]


class AuthorizationRequest(BaseModel):
    client_id: NonEmpty
    redirect_uri: NonEmpty
    state: str
    scope: str = ""
    code_challenge: NonEmpty
    code_challenge_method: str = CODE_CHALLENGE_METHOD
    external_identity_token: NonEmpty
    external_user_id: str | None = None
    resource: str | None = None


class AuthorizationCodeGrant(BaseModel):
    grant_type: Literal["authorization_code"]
    code: NonEmpty
    code_verifier: NonEmpty
    client_id: NonEmpty
    redirect_uri: str | None = None
    resource: str | None = None


class RefreshTokenGrant(BaseModel):
    grant_type: Literal["refresh_token"]
    refresh_token: NonEmpty
    client_id: NonEmpty
    resource: str | None = None


TokenGrant = Annotated[
    Union[AuthorizationCodeGrant, RefreshTokenGrant],
    Field(discriminator="grant_type"),
]
_token_grant_adapter: TypeAdapter[TokenGrant] = TypeAdapter(TokenGrant)


def parse_authorization_request(data: Mapping[str, Any]) -> AuthorizationRequest:
    try:
        return AuthorizationRequest.model_validate(dict(data))
    except ValidationError as e:
        raise OAuthError("invalid_request", _describe_validation_error(e)) from e


def parse_token_request(data: Mapping[str, Any]) -> AuthorizationCodeGrant | RefreshTokenGrant:
    grant_type = data.get("grant_type")
    if grant_type not in GRANT_TYPES:
        raise OAuthError("unsupported_grant_type", f"Unsupported grant_type: {grant_type}")
    try:
        return _token_grant_adapter.validate_python(dict(data))
    except ValidationError as e:
        raise OAuthError("invalid_request", _describe_validation_error(e)) from e


# ---------------------------------------------------------------------------
# Authorization Issuer
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AuthorizationResult:
    code: str
    redirect_uri: str
    state: str


class AuthorizationIssuer:
    """Turns a verified identity into a single-use authorization code.

    Errors raised before both the identity and the redirect URI are
    verified are never redirectable.
    """

    def __init__(self, store: CredentialStore, identity_verifier: IdentityVerifier,
                 code_ttl: int = AUTHORIZATION_CODE_TTL):
        self.store = store
        self.identity_verifier = identity_verifier
        self.code_ttl = code_ttl

    async def authorize(self, request: AuthorizationRequest) -> AuthorizationResult:
        client = await self.store.get_client(request.client_id)
        if client is None:
            _audit("authorize_rejected", reason="unknown_client", client_id=request.client_id)
            raise OAuthError("invalid_client", "Unknown client_id")

        if request.redirect_uri not in client.redirect_uris:
            _audit("authorize_rejected", reason="redirect_uri_mismatch", client_id=client.client_id)
            raise OAuthError("invalid_client", "redirect_uri does not match registration")

        if request.code_challenge_method != CODE_CHALLENGE_METHOD:
            raise OAuthError("invalid_request",
                             "Only S256 code_challenge_method is supported")

        try:
            identity = await self.identity_verifier.verify(request.external_identity_token)
        except IdentityVerificationError as e:
            _audit("authorize_rejected", reason="identity_verification_failed",
                   client_id=client.client_id)
            raise OAuthError("invalid_token", "Failed to verify identity token") from e

        if request.external_user_id and request.external_user_id != identity.subject:
            _audit("authorize_rejected", reason="subject_mismatch", client_id=client.client_id)
            raise OAuthError("invalid_request",
                             "external_user_id does not match the verified identity",
                             redirect_uri=request.redirect_uri, state=request.state)

        scopes = compute_final_scopes(request.scope, client.allowed_scopes)

        now = time.time()
        code = secrets.token_urlsafe(32)
        try:
            await self.store.put_authorization_code(AuthorizationCode(
                code=code,
                client_id=client.client_id,
                redirect_uri=request.redirect_uri,
                scopes=scopes,
                code_challenge=request.code_challenge,
                code_challenge_method=CODE_CHALLENGE_METHOD,
                subject=identity.subject,
                identity_token=request.external_identity_token,
                identity_claims=dict(identity.claims),
                created_at=now,
                expires_at=now + self.code_ttl,
                resource=request.resource,
            ))
        except Exception as e:
            logger.exception("authorize: failed to store authorization code")
            raise OAuthError("server_error", "Failed to issue authorization code",
                             redirect_uri=request.redirect_uri, state=request.state) from e

        _audit("authorize_approved", client_id=client.client_id, sub=identity.subject,
               scope=" ".join(scopes))
        return AuthorizationResult(code=code, redirect_uri=request.redirect_uri,
                                   state=request.state)


# ---------------------------------------------------------------------------
# Token Exchanger
# ---------------------------------------------------------------------------

class TokenExchanger:
    """Redeems authorization codes and refresh tokens for token pairs."""

    def __init__(self, store: CredentialStore, signer: JWTSigner, default_audience: str,
                 refresh_token_lifetime: int = REFRESH_TOKEN_LIFETIME):
        self.store = store
        self.signer = signer
        self.default_audience = default_audience.rstrip("/")
        self.refresh_token_lifetime = refresh_token_lifetime

    async def exchange(self, grant: AuthorizationCodeGrant | RefreshTokenGrant) -> OAuthToken:
        if isinstance(grant, AuthorizationCodeGrant):
            return await self.exchange_authorization_code(grant)
        if isinstance(grant, RefreshTokenGrant):
            return await self.exchange_refresh_token(grant)
        raise OAuthError("unsupported_grant_type", "Unsupported grant_type")

    async def exchange_authorization_code(self, grant: AuthorizationCodeGrant) -> OAuthToken:
        auth_code = await self.store.get_authorization_code(grant.code)
        if auth_code is None:
            raise OAuthError("invalid_grant", "Invalid or expired authorization code")

        if auth_code.used:
            raise OAuthError("invalid_grant", "Authorization code has already been used")

        if auth_code.expires_at < time.time():
            await self.store.delete_authorization_code(grant.code)
            _audit("token_rejected", reason="code_expired", client_id=grant.client_id)
            raise OAuthError("invalid_grant", "Authorization code has expired")

        if auth_code.client_id != grant.client_id:
            _audit("token_rejected", reason="client_mismatch", client_id=grant.client_id)
            raise OAuthError("invalid_grant", "client_id does not match authorization code")

        if grant.redirect_uri and grant.redirect_uri != auth_code.redirect_uri:
            raise OAuthError("invalid_grant", "redirect_uri does not match")

        if not verify_pkce(grant.code_verifier, auth_code.code_challenge):
            _audit("token_rejected", reason="pkce_failed", client_id=grant.client_id)
            raise OAuthError("invalid_grant", "Invalid code_verifier (PKCE validation failed)")

        if not await self.store.redeem_authorization_code(grant.code):
            _audit("token_rejected", reason="code_reused", client_id=grant.client_id)
            raise OAuthError("invalid_grant", "Authorization code has already been used")

        return await self._issue(
            grant_type=grant.grant_type,
            client_id=auth_code.client_id,
            subject=auth_code.subject,
            identity_token=auth_code.identity_token,
            scopes=auth_code.scopes,
            resource=grant.resource or auth_code.resource,
        )

    async def exchange_refresh_token(self, grant: RefreshTokenGrant) -> OAuthToken:
        stored = await self.store.get_refresh_token(grant.refresh_token)
        if stored is None:
            raise OAuthError("invalid_grant", "Invalid refresh_token")

        if stored.client_id != grant.client_id:
            _audit("token_rejected", reason="client_mismatch", client_id=grant.client_id)
            raise OAuthError("invalid_grant", "Client mismatch for refresh_token")

        if stored.expires_at < time.time():
            await self.store.delete_refresh_token(grant.refresh_token)
            raise OAuthError("invalid_grant", "refresh_token has expired")

        # Rotation: whoever deletes the token owns the refresh.
        if not await self.store.delete_refresh_token(grant.refresh_token):
            _audit("token_rejected", reason="refresh_reused", client_id=grant.client_id)
            raise OAuthError("invalid_grant", "Invalid refresh_token")

        return await self._issue(
            grant_type=grant.grant_type,
            client_id=stored.client_id,
            subject=stored.subject,
            identity_token=stored.identity_token,
            scopes=stored.scopes,
            resource=grant.resource or stored.resource,
        )

    async def _issue(self, *, grant_type: str, client_id: str, subject: str,
                     identity_token: str, scopes: list[str],
                     resource: str | None) -> OAuthToken:
        now = int(time.time())
        audience = resource or self.default_audience
        access_token = self.signer.mint(
            subject=subject,
            scopes=scopes,
            audience=audience,
            client_id=client_id,
            issued_at=now,
        )
        # The claim set carries no jti and RS256 is deterministic, so equal
        # sub/scope/aud/client_id within one second yield the same JWT and
        # the newer record replaces the older one.
        if await self.store.get_access_token(access_token) is not None:
            _audit("token_collision", client_id=client_id, sub=subject, aud=audience)
        expires_in = self.signer.lifetime
        await self.store.put_access_token(AccessTokenRecord(
            token=access_token,
            client_id=client_id,
            subject=subject,
            identity_token=identity_token,
            scopes=list(scopes),
            expires_at=now + expires_in,
        ))

        refresh_token = secrets.token_urlsafe(32)
        await self.store.put_refresh_token(RefreshToken(
            token=refresh_token,
            client_id=client_id,
            subject=subject,
            identity_token=identity_token,
            scopes=list(scopes),
            expires_at=now + self.refresh_token_lifetime,
            resource=resource,
        ))

        _audit("token_issued", grant_type=grant_type, client_id=client_id, sub=subject,
               aud=audience, expires_in=expires_in)
        logger.info("token_issued: grant=%s client=%s refresh=%s",
                    grant_type, client_id, _preview(refresh_token))

        return OAuthToken(
            access_token=access_token,
            token_type="Bearer",
            expires_in=expires_in,
            scope=" ".join(scopes),
            refresh_token=refresh_token,
        )


