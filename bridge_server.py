#!/usr/bin/env python3
"""
bridge_server.py — HTTP surface of the identity bridge authorization server.

Implements:
  /.well-known/oauth-authorization-server  — RFC 8414 metadata
  /.well-known/openid-configuration        — same document
  /.well-known/oauth-protected-resource    — RFC 9728 metadata
  /.well-known/jwks.json                   — public signing key
  /authorize/complete                      — consent page posts the verified login here
  /token                                   — authorization_code and refresh_token grants
  /token/introspect                        — token introspection (unauthenticated)
  /token/bridge                            — access token -> original identity token

All OAuth state is in-memory and swept every 5 minutes.
"""

import argparse
import asyncio
import json
import logging
from contextlib import asynccontextmanager, suppress
from pathlib import Path
from typing import Any, AsyncIterator

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse, Response
from starlette.routing import Route

from bridge_auth import AuthContext, requires_scopes
from bridge_config import BridgeSettings, load_clients
from bridge_identity import IdentityVerifier, JWKSIdentityVerifier
from bridge_jwt import JWTSigner, SigningKey, TokenVerificationError, load_signing_key
from bridge_oauth import (
    BRIDGE_SCOPE,
    CODE_CHALLENGE_METHOD,
    GRANT_TYPES,
    SUPPORTED_SCOPES,
    AuthorizationIssuer,
    OAuthError,
    TokenExchanger,
    _audit,
    parse_authorization_request,
    parse_token_request,
)
from bridge_store import (
    SWEEP_INTERVAL,
    CredentialStore,
    MemoryCredentialStore,
    RegisteredClient,
    run_periodic_sweep,
)

logger = logging.getLogger("idbridge")

NO_STORE = {"Cache-Control": "no-store", "Pragma": "no-cache"}


# ---------------------------------------------------------------------------
# Request helpers
# ---------------------------------------------------------------------------

async def _read_params(request: Request) -> dict[str, Any]:
    """Read a JSON or form-encoded request body into a flat dict."""
    content_type = request.headers.get("content-type", "")
    if content_type.startswith("application/json"):
        try:
            data = await request.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise OAuthError("invalid_request", "Request body is not valid JSON") from e
        if not isinstance(data, dict):
            raise OAuthError("invalid_request", "Request body must be a JSON object")
        return data
    form = await request.form()
    return {k: v for k, v in form.items() if isinstance(v, str)}


def _error_response(error: OAuthError, headers: dict[str, str] | None = None) -> JSONResponse:
    return JSONResponse(error.to_dict(), status_code=error.status_code, headers=headers)


def _server_error(description: str, headers: dict[str, str] | None = None) -> JSONResponse:
    return _error_response(OAuthError("server_error", description), headers)


# ---------------------------------------------------------------------------
# Application
# ---------------------------------------------------------------------------

def create_app(
    settings: BridgeSettings,
    identity_verifier: IdentityVerifier,
    *,
    clients: list[RegisteredClient] | None = None,
    store: CredentialStore | None = None,
    signing_key: SigningKey | None = None,
    sweep_interval: float = SWEEP_INTERVAL,
) -> Starlette:
    """Wire the OAuth engine into a Starlette app.

    ``store`` defaults to an in-memory store seeded with ``clients``. The
    periodic sweep starts with the app lifespan.
    """
    if store is None:
        store = MemoryCredentialStore(clients if clients is not None else load_clients(settings.clients_file))
    if signing_key is None:
        signing_key = load_signing_key(settings.jwt_private_key, settings.jwt_key_id)

    signer = JWTSigner(signing_key, issuer=settings.issuer)
    verifier = signer.verifier(settings.resources)
    issuer = AuthorizationIssuer(store, identity_verifier)
    exchanger = TokenExchanger(store, signer, default_audience=settings.base_url)
    base = settings.base_url

    # --- discovery ---

    async def authorization_server_metadata(request: Request) -> Response:
        """RFC 8414 — OAuth Authorization Server Metadata."""
        return JSONResponse({
            "issuer": settings.issuer,
            "authorization_endpoint": settings.authorize_url,
            "token_endpoint": f"{base}/token",
            "jwks_uri": f"{base}/.well-known/jwks.json",
            "introspection_endpoint": f"{base}/token/introspect",
            "scopes_supported": list(SUPPORTED_SCOPES),
            "response_types_supported": ["code"],
            "grant_types_supported": list(GRANT_TYPES),
            "code_challenge_methods_supported": [CODE_CHALLENGE_METHOD],
            "token_endpoint_auth_methods_supported": ["none"],
        })

    async def protected_resource_metadata(request: Request) -> Response:
        """RFC 9728 — OAuth Protected Resource Metadata."""
        return JSONResponse({
            "resource": base,
            "authorization_servers": [settings.issuer],
            "scopes_supported": list(SUPPORTED_SCOPES),
            "bearer_methods_supported": ["header"],
        })

    async def jwks(request: Request) -> Response:
        return JSONResponse(signing_key.jwks())

    # --- authorization ---

    async def authorize_complete(request: Request) -> Response:
        try:
            params = await _read_params(request)
            auth_request = parse_authorization_request(params)
            result = await issuer.authorize(auth_request)
        except OAuthError as e:
            return _error_response(e)
        except Exception:
            logger.exception("authorize/complete: unexpected error")
            return _server_error("An error occurred while completing authorization")

        return JSONResponse({
            "code": result.code,
            "redirect_uri": result.redirect_uri,
            "state": result.state,
        })

    # --- token ---

    async def token(request: Request) -> Response:
        try:
            params = await _read_params(request)
            grant = parse_token_request(params)
            oauth_token = await exchanger.exchange(grant)
        except OAuthError as e:
            return _error_response(e, NO_STORE)
        except Exception:
            logger.exception("token: unexpected error")
            return _server_error("An error occurred while generating the access token", NO_STORE)

        return JSONResponse(oauth_token.model_dump(exclude_none=True), headers=NO_STORE)

    async def introspect(request: Request) -> Response:
        # No client authentication; signature, issuer and expiry only.
        try:
            params = await _read_params(request)
            token_value = params.get("token")
            if not token_value or not isinstance(token_value, str):
                return JSONResponse({"active": False}, status_code=400)
            verified = verifier.verify(token_value, verify_audience=False)
        except OAuthError:
            return JSONResponse({"active": False}, status_code=400)
        except TokenVerificationError:
            return JSONResponse({"active": False})
        except Exception:
            logger.exception("token/introspect: unexpected error")
            return _server_error("An error occurred while introspecting the token")

        claims = verified.claims
        return JSONResponse({
            "active": True,
            "sub": claims.get("sub"),
            "scope": claims.get("scope"),
            "client_id": claims.get("client_id"),
            "exp": claims.get("exp"),
            "iat": claims.get("iat"),
            "iss": claims.get("iss"),
            "aud": claims.get("aud"),
        })

    # --- identity bridge ---

    @requires_scopes(verifier, [BRIDGE_SCOPE], settings.resource_metadata_url)
    async def bridge(request: Request) -> Response:
        auth: AuthContext = request.state.auth
        try:
            record = await store.get_access_token(auth.token)
        except Exception:
            logger.exception("token/bridge: store lookup failed")
            return _server_error("Failed to exchange token")

        if record is None:
            _audit("bridge_rejected", reason="token_not_found", sub=auth.subject)
            return JSONResponse({
                "error": "token_not_found",
                "error_description": "Access token is not known to this server",
            }, status_code=404)

        _audit("bridge_exchanged", sub=record.subject, client_id=record.client_id)
        return JSONResponse({
            "bridgedToken": record.identity_token,
            "expiresAt": int(record.expires_at),
            "subject": record.subject,
            "scope": record.scopes,
        }, headers=NO_STORE)

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        task = asyncio.create_task(run_periodic_sweep(store, sweep_interval))
        try:
            yield
        finally:
            task.cancel()
            with suppress(asyncio.CancelledError):
                await task

    routes = [
        Route("/.well-known/oauth-authorization-server", authorization_server_metadata, methods=["GET"]),
        Route("/.well-known/openid-configuration", authorization_server_metadata, methods=["GET"]),
        Route("/.well-known/oauth-protected-resource", protected_resource_metadata, methods=["GET"]),
        Route("/.well-known/jwks.json", jwks, methods=["GET"]),
        Route("/authorize/complete", authorize_complete, methods=["POST"]),
        Route("/token", token, methods=["POST"]),
        Route("/token/introspect", introspect, methods=["POST"]),
        Route("/token/bridge", bridge, methods=["POST"]),
    ]
    app = Starlette(routes=routes, lifespan=lifespan)
    app.state.store = store
    app.state.signer = signer
    app.state.verifier = verifier
    return app


def _build_identity_verifier(settings: BridgeSettings) -> IdentityVerifier:
    if not settings.idp_jwks_url:
        raise SystemExit("BRIDGE_IDP_JWKS_URL is required: identity tokens cannot be verified without it")
    return JWKSIdentityVerifier(
        settings.idp_jwks_url,
        issuer=settings.idp_issuer,
        audience=settings.idp_audience,
        algorithms=settings.idp_algorithms,
    )


def _setup_logging(audit_log_path: Path) -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(name)s] %(levelname)s: %(message)s",
    )

    # Audit logger: JSON-lines to its own file
    audit_log_path.parent.mkdir(parents=True, exist_ok=True)
    audit_handler = logging.FileHandler(audit_log_path)
    audit_handler.setFormatter(logging.Formatter("%(message)s"))
    audit_logger = logging.getLogger("idbridge-audit")
    audit_logger.addHandler(audit_handler)
    audit_logger.setLevel(logging.INFO)
    audit_logger.propagate = False


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(description="Identity bridge OAuth authorization server")
    parser.add_argument("--port", type=int, default=3002)
    parser.add_argument("--host", default="127.0.0.1")
    parser.add_argument("--clients", type=Path, default=None,
                        help="Client registry YAML (overrides BRIDGE_CLIENTS_FILE)")
    args = parser.parse_args(argv)

    settings = BridgeSettings.from_env()
    _setup_logging(settings.audit_log_path)

    import uvicorn

    clients = load_clients(args.clients or settings.clients_file)
    app = create_app(settings, _build_identity_verifier(settings), clients=clients)

    logger.info(f"idbridge: issuer {settings.issuer}, {len(clients)} registered client(s)")
    logger.info(f"idbridge: starting HTTP server on {args.host}:{args.port}")

    config = uvicorn.Config(app, host=args.host, port=args.port, log_level="info",
                            proxy_headers=True, forwarded_allow_ips="*")
    server = uvicorn.Server(config)
    asyncio.run(server.serve())


if __name__ == "__main__":
    main()
