"""Tests for bridge_store.py."""
import asyncio
import sys
import time
from pathlib import Path

import pytest

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

from bridge_store import (
    AccessTokenRecord,
    AuthorizationCode,
    MemoryCredentialStore,
    RefreshToken,
    run_periodic_sweep,
)
from conftest import make_client


def _code(code="code-1", expires_at=None):
    now = time.time()
    return AuthorizationCode(
        code=code,
        client_id="test-client",
        redirect_uri="https://client.example/cb",
        scopes=["read"],
        code_challenge="challenge",
        code_challenge_method="S256",
        subject="user-1",
        identity_token="idp-token-1",
        identity_claims={},
        created_at=now,
        expires_at=now + 30 if expires_at is None else expires_at,
    )


def _refresh(token="rt-1", expires_at=None):
    return RefreshToken(
        token=token,
        client_id="test-client",
        subject="user-1",
        identity_token="idp-token-1",
        scopes=["read"],
        expires_at=time.time() + 3600 if expires_at is None else expires_at,
    )


def _access(token="at-1", expires_at=None):
    return AccessTokenRecord(
        token=token,
        client_id="test-client",
        subject="user-1",
        identity_token="idp-token-1",
        scopes=["read"],
        expires_at=time.time() + 3600 if expires_at is None else expires_at,
    )


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------

class TestClients:
    @pytest.mark.asyncio
    async def test_seeded_clients_are_found(self):
        store = MemoryCredentialStore([make_client()])
        client = await store.get_client("test-client")
        assert client is not None
        assert "https://client.example/cb" in client.redirect_uris

    @pytest.mark.asyncio
    async def test_unknown_client(self):
        store = MemoryCredentialStore()
        assert await store.get_client("nope") is None

    @pytest.mark.asyncio
    async def test_delete_client(self):
        store = MemoryCredentialStore([make_client()])
        assert await store.delete_client("test-client") is True
        assert await store.delete_client("test-client") is False


# ---------------------------------------------------------------------------
# Authorization code redemption
# ---------------------------------------------------------------------------

class TestRedeemAuthorizationCode:
    @pytest.mark.asyncio
    async def test_redeem_removes_code(self):
        store = MemoryCredentialStore()
        await store.put_authorization_code(_code())
        assert await store.redeem_authorization_code("code-1") is True
        assert await store.get_authorization_code("code-1") is None

    @pytest.mark.asyncio
    async def test_second_redeem_fails(self):
        store = MemoryCredentialStore()
        await store.put_authorization_code(_code())
        assert await store.redeem_authorization_code("code-1") is True
        assert await store.redeem_authorization_code("code-1") is False

    @pytest.mark.asyncio
    async def test_used_code_cannot_be_redeemed(self):
        store = MemoryCredentialStore()
        entry = _code()
        entry.used = True
        await store.put_authorization_code(entry)
        assert await store.redeem_authorization_code("code-1") is False

    @pytest.mark.asyncio
    async def test_concurrent_redeem_has_one_winner(self):
        store = MemoryCredentialStore()
        await store.put_authorization_code(_code())
        results = await asyncio.gather(
            *(store.redeem_authorization_code("code-1") for _ in range(10))
        )
        assert results.count(True) == 1


# ---------------------------------------------------------------------------
# Refresh tokens
# ---------------------------------------------------------------------------

class TestRefreshTokens:
    @pytest.mark.asyncio
    async def test_delete_returns_true_once(self):
        store = MemoryCredentialStore()
        await store.put_refresh_token(_refresh())
        assert await store.delete_refresh_token("rt-1") is True
        assert await store.delete_refresh_token("rt-1") is False
        assert await store.get_refresh_token("rt-1") is None


# ---------------------------------------------------------------------------
# Sweep
# ---------------------------------------------------------------------------

class TestSweep:
    @pytest.mark.asyncio
    async def test_removes_only_expired(self):
        store = MemoryCredentialStore()
        past = time.time() - 10
        await store.put_authorization_code(_code("old", expires_at=past))
        await store.put_authorization_code(_code("new"))
        await store.put_access_token(_access("old-at", expires_at=past))
        await store.put_access_token(_access("new-at"))
        await store.put_refresh_token(_refresh("old-rt", expires_at=past))
        await store.put_refresh_token(_refresh("new-rt"))

        assert await store.sweep() == 3
        assert set(store.auth_codes) == {"new"}
        assert set(store.access_tokens) == {"new-at"}
        assert set(store.refresh_tokens) == {"new-rt"}

    @pytest.mark.asyncio
    async def test_explicit_now(self):
        store = MemoryCredentialStore()
        await store.put_access_token(_access(expires_at=1000.0))
        assert await store.sweep(now=999.0) == 0
        assert await store.sweep(now=1001.0) == 1

    @pytest.mark.asyncio
    async def test_clients_survive_sweep(self):
        store = MemoryCredentialStore([make_client()])
        await store.sweep(now=time.time() + 10 ** 9)
        assert await store.get_client("test-client") is not None

    @pytest.mark.asyncio
    async def test_periodic_sweep_runs(self):
        store = MemoryCredentialStore()
        await store.put_access_token(_access(expires_at=time.time() - 1))
        task = asyncio.create_task(run_periodic_sweep(store, interval=0.01))
        try:
            for _ in range(100):
                if not store.access_tokens:
                    break
                await asyncio.sleep(0.01)
        finally:
            task.cancel()
        assert store.access_tokens == {}


# ---------------------------------------------------------------------------
# Access tokens
# ---------------------------------------------------------------------------

class TestAccessTokens:
    @pytest.mark.asyncio
    async def test_replacing_record_is_logged(self, caplog):
        store = MemoryCredentialStore()
        await store.put_access_token(_access())
        replacement = _access()
        replacement.identity_token = "idp-token-2"
        await store.put_access_token(replacement)
        assert store.access_tokens["at-1"].identity_token == "idp-token-2"
        assert "replaced existing record" in caplog.text

    @pytest.mark.asyncio
    async def test_first_put_is_quiet(self, caplog):
        store = MemoryCredentialStore()
        await store.put_access_token(_access())
        assert "replaced existing record" not in caplog.text
