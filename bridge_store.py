"""
bridge_store.py — Credential records and the in-memory credential store.

Four keyed collections live here: registered clients, authorization codes,
access tokens (keyed by the JWT string) and refresh tokens. Every entry
except clients carries an ``expires_at`` and is reclaimed by ``sweep()``.

All state is in-memory and ephemeral. A restart discards every code and
token; callers re-authenticate.
"""

import asyncio
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Iterable, Protocol

logger = logging.getLogger("idbridge-store")

SWEEP_INTERVAL = 300  # 5 minutes


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RegisteredClient:
    client_id: str
    redirect_uris: frozenset[str]
    allowed_scopes: tuple[str, ...]
    client_name: str = ""


@dataclass
class AuthorizationCode:
    code: str
    client_id: str
    redirect_uri: str
    scopes: list[str]
    code_challenge: str
    code_challenge_method: str
    subject: str
    identity_token: str
    identity_claims: dict[str, Any]
    created_at: float
    expires_at: float
    resource: str | None = None
    used: bool = False


@dataclass
class AccessTokenRecord:
    token: str
    client_id: str
    subject: str
    identity_token: str
    scopes: list[str]
    expires_at: float


@dataclass
class RefreshToken:
    token: str
    client_id: str
    subject: str
    identity_token: str
    scopes: list[str]
    expires_at: float
    resource: str | None = None


# ---------------------------------------------------------------------------
# Store interface
# ---------------------------------------------------------------------------

class CredentialStore(Protocol):
    """Backend for OAuth state.

    ``redeem_authorization_code`` and ``delete_refresh_token`` are the two
    race-sensitive operations: exactly one concurrent caller may see True.
    """

    async def get_client(self, client_id: str) -> RegisteredClient | None: ...
    async def put_client(self, client: RegisteredClient) -> None: ...
    async def delete_client(self, client_id: str) -> bool: ...

    async def get_authorization_code(self, code: str) -> AuthorizationCode | None: ...
    async def put_authorization_code(self, code: AuthorizationCode) -> None: ...
    async def delete_authorization_code(self, code: str) -> bool: ...
    async def redeem_authorization_code(self, code: str) -> bool: ...

    async def get_access_token(self, token: str) -> AccessTokenRecord | None: ...
    async def put_access_token(self, record: AccessTokenRecord) -> None: ...
    async def delete_access_token(self, token: str) -> bool: ...

    async def get_refresh_token(self, token: str) -> RefreshToken | None: ...
    async def put_refresh_token(self, record: RefreshToken) -> None: ...
    async def delete_refresh_token(self, token: str) -> bool: ...

    async def sweep(self, now: float | None = None) -> int: ...


# ---------------------------------------------------------------------------
# In-memory implementation
# ---------------------------------------------------------------------------

class MemoryCredentialStore:
    """Dict-backed CredentialStore guarded by a single lock.

    The lock is a threading.Lock and no critical section awaits, so the
    store is safe both for coroutines on one loop and for worker threads.
    """

    def __init__(self, clients: Iterable[RegisteredClient] = ()):
        self._lock = threading.Lock()
        self.clients: dict[str, RegisteredClient] = {c.client_id: c for c in clients}
        self.auth_codes: dict[str, AuthorizationCode] = {}
        self.access_tokens: dict[str, AccessTokenRecord] = {}
        self.refresh_tokens: dict[str, RefreshToken] = {}

    # --- clients ---

    async def get_client(self, client_id: str) -> RegisteredClient | None:
        with self._lock:
            return self.clients.get(client_id)

    async def put_client(self, client: RegisteredClient) -> None:
        with self._lock:
            self.clients[client.client_id] = client

    async def delete_client(self, client_id: str) -> bool:
        with self._lock:
            return self.clients.pop(client_id, None) is not None

    # --- authorization codes ---

    async def get_authorization_code(self, code: str) -> AuthorizationCode | None:
        with self._lock:
            return self.auth_codes.get(code)

    async def put_authorization_code(self, code: AuthorizationCode) -> None:
        with self._lock:
            self.auth_codes[code.code] = code

    async def delete_authorization_code(self, code: str) -> bool:
        with self._lock:
            return self.auth_codes.pop(code, None) is not None

    async def redeem_authorization_code(self, code: str) -> bool:
        """Mark the code used and delete it in one step.

        Returns False if the code is gone or was already marked used.
        """
        with self._lock:
            entry = self.auth_codes.get(code)
            if entry is None or entry.used:
                return False
            entry.used = True
            del self.auth_codes[code]
            return True

    # --- access tokens ---

    async def get_access_token(self, token: str) -> AccessTokenRecord | None:
        with self._lock:
            return self.access_tokens.get(token)

    async def put_access_token(self, record: AccessTokenRecord) -> None:
        with self._lock:
            previous = self.access_tokens.get(record.token)
            self.access_tokens[record.token] = record
        if previous is not None:
            logger.warning(
                "put_access_token: replaced existing record for client=%s sub=%s "
                "(identical JWT minted twice in one second)",
                previous.client_id, previous.subject,
            )

    async def delete_access_token(self, token: str) -> bool:
        with self._lock:
            return self.access_tokens.pop(token, None) is not None

    # --- refresh tokens ---

    async def get_refresh_token(self, token: str) -> RefreshToken | None:
        with self._lock:
            return self.refresh_tokens.get(token)

    async def put_refresh_token(self, record: RefreshToken) -> None:
        with self._lock:
            self.refresh_tokens[record.token] = record

    async def delete_refresh_token(self, token: str) -> bool:
        with self._lock:
            return self.refresh_tokens.pop(token, None) is not None

    # --- maintenance ---

    async def sweep(self, now: float | None = None) -> int:
        """Drop every code and token whose expires_at has passed."""
        now = time.time() if now is None else now
        removed = 0
        with self._lock:
            for collection in (self.auth_codes, self.access_tokens, self.refresh_tokens):
                expired = [k for k, v in collection.items() if v.expires_at < now]
                for k in expired:
                    del collection[k]
                removed += len(expired)
        if removed:
            logger.info("sweep: removed %d expired entries", removed)
        return removed


async def run_periodic_sweep(store: CredentialStore, interval: float = SWEEP_INTERVAL) -> None:
    """Background loop that sweeps expired credentials every ``interval`` seconds."""
    while True:
        await asyncio.sleep(interval)
        try:
            await store.sweep()
        except Exception:
            logger.exception("sweep: periodic sweep failed")
