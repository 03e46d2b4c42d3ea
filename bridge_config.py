"""
bridge_config.py — Environment configuration and the client registry.

Environment variables (all optional):
- BRIDGE_BASE_URL: Issuer and default token audience (default: http://localhost:3002)
- BRIDGE_AUTHORIZATION_ENDPOINT: Consent page URL (default: {base}/authorize)
- BRIDGE_JWT_PRIVATE_KEY: RSA private key, PEM or base64 PEM (ephemeral if unset)
- BRIDGE_JWT_KEY_ID: ``kid`` header value (default: key-1)
- BRIDGE_RESOURCES: Comma-separated extra audiences accepted on bearer tokens
- BRIDGE_CLIENTS_FILE: YAML client registry (default: clients.yaml beside this file)
- BRIDGE_IDP_JWKS_URL: Identity provider JWKS URL (required to serve)
- BRIDGE_IDP_ISSUER: Expected ``iss`` of identity tokens
- BRIDGE_IDP_AUDIENCE: Expected ``aud`` of identity tokens
- BRIDGE_IDP_ALGORITHMS: Accepted identity token algorithms (default: ES256,RS256)
- BRIDGE_AUDIT_LOG: Audit log path (default: ~/.idbridge/audit.log)
"""

import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

import yaml

from bridge_oauth import BRIDGE_SCOPE, SUPPORTED_SCOPES
from bridge_store import RegisteredClient

logger = logging.getLogger("idbridge-config")

DEFAULT_BASE_URL = "http://localhost:3002"
DEFAULT_CLIENT_SCOPES = tuple(s for s in SUPPORTED_SCOPES if s != BRIDGE_SCOPE)

# Used when no clients.yaml exists.
DEFAULT_CLIENTS = (
    RegisteredClient(
        client_id="chatgpt-connector",
        client_name="ChatGPT",
        redirect_uris=frozenset({
            "https://chat.openai.com/connector_platform_oauth_redirect",
            "https://chatgpt.com/connector_platform_oauth_redirect",
        }),
        allowed_scopes=DEFAULT_CLIENT_SCOPES,
    ),
)


def _split(value: str | None) -> tuple[str, ...]:
    if not value:
        return ()
    return tuple(v.strip() for v in value.split(",") if v.strip())


@dataclass(frozen=True)
class BridgeSettings:
    base_url: str = DEFAULT_BASE_URL
    authorization_endpoint: str | None = None
    jwt_private_key: str | None = None
    jwt_key_id: str = "key-1"
    resources: tuple[str, ...] = ()
    clients_file: Path = Path(__file__).parent / "clients.yaml"
    idp_jwks_url: str | None = None
    idp_issuer: str | None = None
    idp_audience: str | None = None
    idp_algorithms: tuple[str, ...] = ("ES256", "RS256")
    audit_log_path: Path = field(default_factory=lambda: Path.home() / ".idbridge" / "audit.log")

    def __post_init__(self) -> None:
        object.__setattr__(self, "base_url", self.base_url.rstrip("/"))

    @property
    def issuer(self) -> str:
        return self.base_url

    @property
    def authorize_url(self) -> str:
        return self.authorization_endpoint or f"{self.base_url}/authorize"

    @property
    def resource_metadata_url(self) -> str:
        return f"{self.base_url}/.well-known/oauth-protected-resource"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> "BridgeSettings":
        env = os.environ if environ is None else environ
        kwargs = {
            "base_url": env.get("BRIDGE_BASE_URL", DEFAULT_BASE_URL),
            "authorization_endpoint": env.get("BRIDGE_AUTHORIZATION_ENDPOINT"),
            "jwt_private_key": env.get("BRIDGE_JWT_PRIVATE_KEY"),
            "jwt_key_id": env.get("BRIDGE_JWT_KEY_ID", "key-1"),
            "resources": _split(env.get("BRIDGE_RESOURCES")),
            "idp_jwks_url": env.get("BRIDGE_IDP_JWKS_URL"),
            "idp_issuer": env.get("BRIDGE_IDP_ISSUER"),
            "idp_audience": env.get("BRIDGE_IDP_AUDIENCE"),
        }
        if env.get("BRIDGE_CLIENTS_FILE"):
            kwargs["clients_file"] = Path(env["BRIDGE_CLIENTS_FILE"])
        if env.get("BRIDGE_IDP_ALGORITHMS"):
            kwargs["idp_algorithms"] = _split(env["BRIDGE_IDP_ALGORITHMS"])
        if env.get("BRIDGE_AUDIT_LOG"):
            kwargs["audit_log_path"] = Path(env["BRIDGE_AUDIT_LOG"]).expanduser()
        return cls(**kwargs)


def load_clients(config_path: Path | None = None) -> list[RegisteredClient]:
    """Load the client registry from a YAML file.

    Expected shape::

        clients:
          chatgpt-connector:
            name: ChatGPT
            redirect_uris:
              - https://chatgpt.com/connector_platform_oauth_redirect
            scopes: [read, write]
    """
    if config_path is None:
        config_path = BridgeSettings().clients_file
    if not config_path.exists():
        logger.warning("Client registry %s not found - using built-in default clients",
                       config_path)
        return list(DEFAULT_CLIENTS)

    with open(config_path) as f:
        raw = yaml.safe_load(f)

    if not isinstance(raw, dict) or not isinstance(raw.get("clients"), dict):
        raise SystemExit(f"Invalid client registry: expected top-level 'clients' mapping in {config_path}")

    clients: list[RegisteredClient] = []
    for client_id, cfg in raw["clients"].items():
        if not isinstance(cfg, dict):
            raise SystemExit(f"Invalid client '{client_id}' in {config_path}: expected a mapping")
        redirect_uris = cfg.get("redirect_uris")
        if not isinstance(redirect_uris, list) or not redirect_uris \
                or not all(isinstance(u, str) for u in redirect_uris):
            raise SystemExit(
                f"Invalid client '{client_id}' in {config_path}: "
                "'redirect_uris' must be a non-empty list of strings"
            )
        scopes = cfg.get("scopes", list(DEFAULT_CLIENT_SCOPES))
        if isinstance(scopes, str):
            scopes = scopes.split()
        unknown = [s for s in scopes if s not in SUPPORTED_SCOPES]
        if unknown:
            raise SystemExit(
                f"Invalid scopes {unknown} for client '{client_id}'. "
                f"Valid options: {', '.join(SUPPORTED_SCOPES)}"
            )
        clients.append(RegisteredClient(
            client_id=str(client_id),
            client_name=cfg.get("name", str(client_id)),
            redirect_uris=frozenset(redirect_uris),
            allowed_scopes=tuple(scopes),
        ))

    if not clients:
        raise SystemExit(f"No clients defined in {config_path}")

    return clients
