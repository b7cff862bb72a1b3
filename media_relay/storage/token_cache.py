"""
Session token cache for HTTP storage backends.

Keeps one token per backend instance, which is one per partition in the usual
layout, so requests do not re-authenticate every time.
"""

import time
from typing import Awaitable, Callable, Dict, Optional

import aiorwlock

from ..state.models import CachedToken
from ..utils.exceptions import AuthError
from ..utils.logger import get_logger


logger = get_logger(__name__)


Authenticator = Callable[[], Awaitable[str]]


class TokenCache:
    """
    Cached session tokens guarded by a read/write lock.

    Readers share the lock on the fast path. A refresh takes the lock
    exclusively. Two callers that both see an expired token may both
    authenticate; the last token written wins.
    """

    def __init__(
        self,
        validity_margin: float = 50 * 60,
        clock: Callable[[], float] = time.monotonic
    ):
        """
        Initialize token cache.

        Args:
            validity_margin: Seconds a fresh token is reused. Keep it below the
                backend's token lifetime so a token never expires mid-request.
            clock: Monotonic time source
        """
        self.validity_margin = validity_margin
        self._clock = clock
        self._lock = aiorwlock.RWLock()
        self._tokens: Dict[str, CachedToken] = {}
        self._authenticators: Dict[str, Authenticator] = {}

    def register(self, key: str, authenticate: Authenticator) -> None:
        """
        Register how to obtain a new token for a backend.

        Args:
            key: Cache key (the sink name)
            authenticate: Coroutine function returning a fresh token
        """
        self._authenticators[key] = authenticate

    async def get_token(self, key: str) -> str:
        """
        Return a valid token for key, authenticating if needed.

        Raises:
            AuthError: If no authenticator is registered or authentication fails
        """
        async with self._lock.reader_lock:
            cached = self._tokens.get(key)
            if cached is not None and cached.is_valid(self._clock()):
                return cached.token

        authenticate = self._authenticators.get(key)
        if authenticate is None:
            raise AuthError(f"No authenticator registered for '{key}'")

        async with self._lock.writer_lock:
            logger.debug(f"Refreshing session token for '{key}'")
            token = await authenticate()
            self._tokens[key] = CachedToken(
                token=token,
                expires_at=self._clock() + self.validity_margin
            )

        return token

    async def invalidate(self, key: Optional[str] = None) -> None:
        """Drop one cached token, or all of them."""
        async with self._lock.writer_lock:
            if key is None:
                self._tokens.clear()
            else:
                self._tokens.pop(key, None)
