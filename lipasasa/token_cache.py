import logging
from typing import Optional

from redis.asyncio import Redis

logger = logging.getLogger(__name__)


class TokenCache:
    """Provider access tokens kept in Redis until shortly before they expire.

    Cache failures never fail a payment; the adapter just asks the provider
    for a fresh token.
    """

    _EXPIRY_MARGIN = 60
    _MIN_TTL = 30

    def __init__(self, redis: Optional[Redis]):
        self._redis = redis

    @staticmethod
    def _cache_key(provider: str, credential_id: str) -> str:
        return f"provider-token:{provider}:{credential_id}"

    async def get(self, provider: str, credential_id: str) -> Optional[str]:
        if self._redis is None:
            return None
        try:
            return await self._redis.get(self._cache_key(provider, credential_id))
        except Exception as exc:
            logger.warning("Token cache lookup failed for %s: %s", provider, exc)
            return None

    async def set(
        self, provider: str, credential_id: str, token: str, expires_in: int
    ) -> None:
        if self._redis is None:
            return
        ttl = max(int(expires_in) - self._EXPIRY_MARGIN, self._MIN_TTL)
        try:
            await self._redis.setex(self._cache_key(provider, credential_id), ttl, token)
        except Exception as exc:
            logger.warning("Failed to cache token for %s: %s", provider, exc)
