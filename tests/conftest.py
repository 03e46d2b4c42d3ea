"""Shared fixtures for the idbridge tests."""
import sys
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from bridge_identity import IdentityVerificationError, VerifiedIdentity
from bridge_jwt import JWTSigner, generate_signing_key
from bridge_oauth import AuthorizationIssuer, TokenExchanger
from bridge_store import MemoryCredentialStore, RegisteredClient

ISSUER = "https://auth.example.com"
CLIENT_ID = "test-client"
REDIRECT_URI = "https://client.example/cb"


class FakeIdentityVerifier:
    """Accepts tokens registered with ``add`` and rejects everything else."""

    def __init__(self):
        self.identities: dict[str, VerifiedIdentity] = {}
        self.calls: list[str] = []

    def add(self, token: str, subject: str, **claims) -> None:
        self.identities[token] = VerifiedIdentity(subject=subject, claims={"sub": subject, **claims})

    async def verify(self, token: str) -> VerifiedIdentity:
        self.calls.append(token)
        identity = self.identities.get(token)
        if identity is None:
            raise IdentityVerificationError("unknown test token")
        return identity


def make_client(client_id=CLIENT_ID, redirect_uris=(REDIRECT_URI,),
                allowed_scopes=("read", "write", "profile")):
    return RegisteredClient(
        client_id=client_id,
        client_name="Test Client",
        redirect_uris=frozenset(redirect_uris),
        allowed_scopes=tuple(allowed_scopes),
    )


@pytest.fixture(scope="session")
def signing_key():
    # RSA generation is slow; one key per test session.
    return generate_signing_key("test-key")


@pytest.fixture
def signer(signing_key):
    return JWTSigner(signing_key, issuer=ISSUER)


@pytest.fixture
def store():
    return MemoryCredentialStore([make_client()])


@pytest.fixture
def identity_verifier():
    verifier = FakeIdentityVerifier()
    verifier.add("idp-token-1", "user-1", email="user1@example.com")
    verifier.add("idp-token-2", "user-2")
    return verifier


@pytest.fixture
def issuer(store, identity_verifier):
    return AuthorizationIssuer(store, identity_verifier)


@pytest.fixture
def exchanger(store, signer):
    return TokenExchanger(store, signer, default_audience=ISSUER)
