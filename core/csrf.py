# core/csrf.py
"""
CSRF token issue and verification

Tokens are 32 random bytes rendered as 64 lowercase hex characters. A token
is only accepted when it is well formed AND was issued server-side for the
same session key and has not expired (or, in single-use mode, been spent).
"""

import logging
import re
import secrets
import threading
import time
from abc import ABC, abstractmethod
from typing import Callable, Dict, Optional, Tuple

import redis

logger = logging.getLogger(__name__)

DEFAULT_TOKEN_BYTES = 32


def generate_token(nbytes: int = DEFAULT_TOKEN_BYTES) -> str:
    return secrets.token_hex(nbytes)


def is_well_formed(token, nbytes: int = DEFAULT_TOKEN_BYTES) -> bool:
    """Lexical check only: non-empty lowercase hex of exactly 2 * nbytes chars"""
    if not token or not isinstance(token, str):
        return False
    return re.fullmatch(f'[0-9a-f]{{{nbytes * 2}}}', token) is not None


class TokenStore(ABC):
    """Server-side record of issued tokens"""

    @abstractmethod
    def save(self, session_key: str, token: str, ttl_seconds: int) -> None:
        pass

    @abstractmethod
    def exists(self, session_key: str, token: str) -> bool:
        pass

    @abstractmethod
    def consume(self, session_key: str, token: str) -> bool:
        """Atomically remove the token; True if it was present and live"""


class InMemoryTokenStore(TokenStore):

    def __init__(self, clock: Optional[Callable[[], float]] = None):
        self._tokens: Dict[Tuple[str, str], float] = {}
        self._lock = threading.Lock()
        self.clock = clock or time.time

    def save(self, session_key: str, token: str, ttl_seconds: int) -> None:
        now = self.clock()
        with self._lock:
            # Expired tokens are dropped whenever a new one is issued
            for key in [k for k, expiry in self._tokens.items() if expiry <= now]:
                del self._tokens[key]
            self._tokens[(session_key, token)] = now + ttl_seconds

    def exists(self, session_key: str, token: str) -> bool:
        with self._lock:
            expiry = self._tokens.get((session_key, token))
        return expiry is not None and expiry > self.clock()

    def consume(self, session_key: str, token: str) -> bool:
        with self._lock:
            expiry = self._tokens.pop((session_key, token), None)
        return expiry is not None and expiry > self.clock()


class RedisTokenStore(TokenStore):

    def __init__(self, redis_client: redis.Redis, key_prefix: str = 'csrf'):
        self.redis = redis_client
        self.key_prefix = key_prefix

    def _key(self, session_key: str, token: str) -> str:
        return f"{self.key_prefix}:{session_key}:{token}"

    def save(self, session_key: str, token: str, ttl_seconds: int) -> None:
        self.redis.setex(self._key(session_key, token), ttl_seconds, '1')

    def exists(self, session_key: str, token: str) -> bool:
        return bool(self.redis.exists(self._key(session_key, token)))

    def consume(self, session_key: str, token: str) -> bool:
        # DEL reports how many keys it removed, so only one caller can win
        return self.redis.delete(self._key(session_key, token)) == 1


class CSRFTokenManager:
    """Issues session-bound tokens and verifies submitted ones"""

    def __init__(self, store: Optional[TokenStore] = None,
                 ttl_seconds: int = 3600,
                 single_use: bool = True,
                 token_bytes: int = DEFAULT_TOKEN_BYTES):
        self.store = store or InMemoryTokenStore()
        self.ttl_seconds = ttl_seconds
        self.single_use = single_use
        self.token_bytes = token_bytes

    def issue(self, session_key: str) -> str:
        """Create a token bound to ``session_key``"""
        token = generate_token(self.token_bytes)
        self.store.save(session_key, token, self.ttl_seconds)
        return token

    def validate(self, token, session_key: Optional[str]) -> bool:
        """
        Verify a submitted token

        Args:
            token: Value submitted with the form
            session_key: Key of the session the token must belong to

        Returns:
            True only for a well-formed, issued, live token of this session
        """
        if not is_well_formed(token, self.token_bytes) or not session_key:
            return False

        try:
            if self.single_use:
                return self.store.consume(session_key, token)
            return self.store.exists(session_key, token)
        except redis.RedisError as e:
            # Fail closed: an unverifiable token is an invalid token
            logger.error(f"CSRF token lookup failed: {str(e)}")
            return False
