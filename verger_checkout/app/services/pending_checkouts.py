# app/services/pending_checkouts.py
"""
Checkout payloads waiting for their payment confirmation.

Entries live in Redis under `checkout:pending:<remoteSessionId>` and expire on
their own, so an abandoned checkout never needs a sweeper.
"""
from __future__ import annotations

from typing import Optional

import redis.asyncio as aioredis
import structlog

from ..schemas.orders import PendingCheckout
from ..settings import settings

logger = structlog.get_logger(__name__)

KEY_PREFIX = "checkout:pending:"


class PendingCheckoutCache:
    def __init__(self, redis_client: Optional[aioredis.Redis] = None, ttl_seconds: Optional[int] = None):
        self._redis = redis_client
        self.ttl_seconds = ttl_seconds or settings.pending_checkout_ttl_seconds

    def _client(self) -> aioredis.Redis:
        if self._redis is None:
            self._redis = aioredis.from_url(
                settings.redis_url,
                encoding="utf-8",
                decode_responses=True,
            )
        return self._redis

    @staticmethod
    def key(remote_session_id: str) -> str:
        return f"{KEY_PREFIX}{remote_session_id}"

    async def put(self, remote_session_id: str, payload: PendingCheckout) -> None:
        await self._client().set(
            self.key(remote_session_id),
            payload.model_dump_json(),
            ex=self.ttl_seconds,
        )
        logger.debug("pending_checkout_stashed", remote_session_id=remote_session_id, ttl=self.ttl_seconds)

    async def get(self, remote_session_id: str) -> Optional[PendingCheckout]:
        raw = await self._client().get(self.key(remote_session_id))
        if raw is None:
            return None
        return PendingCheckout.model_validate_json(raw)

    async def delete(self, remote_session_id: str) -> bool:
        removed = await self._client().delete(self.key(remote_session_id))
        return bool(removed)

    async def close(self) -> None:
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None
