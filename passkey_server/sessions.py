"""Ceremony session stores.

A session is written once when a ceremony begins and read at most once when it
completes: ``consume`` is a get-and-delete, so a token can satisfy a single
finish call whatever its outcome. Expiry and consumption look the same to the
caller (``SessionNotFound``).
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from datetime import timedelta
from typing import Callable, Dict, Iterable, Optional, Protocol, Tuple

import redis

from .entities import CeremonyKind, CeremonySession, SessionRecordModel, utcnow
from .errors import SessionNotFound

LOGGER = logging.getLogger(__name__)

DEFAULT_TTL_SECONDS = 300


def new_token() -> str:
    return secrets.token_hex(32)


def _build_record(
    kind: CeremonyKind,
    challenge: bytes,
    ttl: int,
    bound_account_id: Optional[str],
    excluded_credential_ids: Iterable[bytes],
    user_verification: str,
) -> str:
    session = CeremonySession(
        token="",
        challenge=challenge,
        kind=kind,
        expires_at=utcnow() + timedelta(seconds=ttl),
        bound_account_id=bound_account_id,
        excluded_credential_ids=list(excluded_credential_ids),
        user_verification=user_verification,
    )
    return session.to_model().encode()


class SessionStore(Protocol):
    ttl: int

    def create(
        self,
        kind: CeremonyKind,
        challenge: bytes,
        bound_account_id: Optional[str] = None,
        *,
        excluded_credential_ids: Iterable[bytes] = (),
        user_verification: str = "preferred",
    ) -> str:
        ...

    def consume(self, token: str) -> CeremonySession:
        ...


class MemorySessionStore:
    """Process-local store; suitable for a single worker and for tests."""

    def __init__(
        self,
        ttl: int = DEFAULT_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self._clock = clock
        self._sessions: Dict[str, Tuple[float, str]] = {}
        self._lock = threading.Lock()

    def create(
        self,
        kind: CeremonyKind,
        challenge: bytes,
        bound_account_id: Optional[str] = None,
        *,
        excluded_credential_ids: Iterable[bytes] = (),
        user_verification: str = "preferred",
    ) -> str:
        token = new_token()
        blob = _build_record(
            kind, challenge, self.ttl, bound_account_id, excluded_credential_ids, user_verification
        )
        now = self._clock()
        with self._lock:
            # abandoned ceremonies are never consumed, so sweep them here
            self._purge_locked(now)
            self._sessions[token] = (now + self.ttl, blob)
        return token

    def consume(self, token: str) -> CeremonySession:
        with self._lock:
            entry = self._sessions.pop(token, None)
        if entry is None:
            LOGGER.debug("Session %s… not found", token[:8])
            raise SessionNotFound("Session not found")
        deadline, blob = entry
        if self._clock() >= deadline:
            LOGGER.debug("Session %s… expired", token[:8])
            raise SessionNotFound("Session not found")
        return CeremonySession.from_model(token, SessionRecordModel.decode(blob))

    def _purge_locked(self, now: float) -> int:
        expired = [token for token, (deadline, _) in self._sessions.items() if now >= deadline]
        for token in expired:
            del self._sessions[token]
        if expired:
            LOGGER.debug("Purged %d expired sessions", len(expired))
        return len(expired)

    def purge_expired(self) -> int:
        now = self._clock()
        with self._lock:
            return self._purge_locked(now)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class RedisSessionStore:
    """Redis backed store; expiry is Redis' own key TTL."""

    key_prefix = "passkey:session:"

    def __init__(self, client, ttl: int = DEFAULT_TTL_SECONDS) -> None:
        self.client = client
        self.ttl = ttl

    @classmethod
    def from_url(cls, url: str, ttl: int = DEFAULT_TTL_SECONDS, timeout: float = 2.0) -> "RedisSessionStore":
        client = redis.Redis.from_url(
            url,
            socket_timeout=timeout,
            socket_connect_timeout=timeout,
        )
        return cls(client, ttl=ttl)

    def _key(self, token: str) -> str:
        return f"{self.key_prefix}{token}"

    def create(
        self,
        kind: CeremonyKind,
        challenge: bytes,
        bound_account_id: Optional[str] = None,
        *,
        excluded_credential_ids: Iterable[bytes] = (),
        user_verification: str = "preferred",
    ) -> str:
        token = new_token()
        blob = _build_record(
            kind, challenge, self.ttl, bound_account_id, excluded_credential_ids, user_verification
        )
        self.client.set(self._key(token), blob, ex=self.ttl)
        return token

    def consume(self, token: str) -> CeremonySession:
        # GET and DEL run inside one MULTI/EXEC block
        with self.client.pipeline(transaction=True) as pipe:
            pipe.get(self._key(token))
            pipe.delete(self._key(token))
            blob, _ = pipe.execute()
        if blob is None:
            raise SessionNotFound("Session not found")
        return CeremonySession.from_model(token, SessionRecordModel.decode(blob))
