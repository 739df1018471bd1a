"""
MealSnap Backend — Meal Cache Service
=======================================

What:  Redis read-through cache for meal detail responses.
How:   `meal:{id}` holds the serialized MealResponse plus its owner's id.
       Entries live 24 hours; a read that finds less than half of that left
       extends the entry to 7 days, so meals that keep being opened stay warm.
Who:   MealService (get, list after correction, analyse).
When:  Meal detail reads, and after every write to a meal.

Failure Policy:
    The cache is best-effort. Redis errors are logged and reads degrade to a
    miss; the database stays the source of truth.
"""

import json
import logging
import uuid
from typing import Optional

import redis.asyncio as redis
from redis.exceptions import RedisError

from mealsnap.schemas.meal import MealResponse

logger = logging.getLogger(__name__)

KEY_PREFIX = "meal:"


def cache_key(meal_id: uuid.UUID) -> str:
    return f"{KEY_PREFIX}{meal_id}"


class MealCacheService:
    """
    Args:
        client:       redis.asyncio client (decode_responses=True)
        ttl:          Seconds a fresh entry lives
        extended_ttl: Seconds an entry is extended to when read past half-life
    """

    def __init__(self, client: redis.Redis, ttl: int = 86_400, extended_ttl: int = 604_800):
        self.client = client
        self.ttl = ttl
        self.extended_ttl = extended_ttl

    @classmethod
    def from_url(cls, url: str, ttl: int = 86_400, extended_ttl: int = 604_800) -> "MealCacheService":
        return cls(redis.from_url(url, decode_responses=True), ttl=ttl, extended_ttl=extended_ttl)

    async def get(self, meal_id: uuid.UUID, user_id: str) -> Optional[MealResponse]:
        """Cached meal for this owner, or None on miss, owner mismatch or Redis error."""
        key = cache_key(meal_id)
        try:
            raw = await self.client.get(key)
            if raw is None:
                return None
            remaining = await self.client.ttl(key)
            if 0 <= remaining < self.ttl // 2:
                await self.client.expire(key, self.extended_ttl)
                logger.debug("Extended cache TTL for %s to %ds", key, self.extended_ttl)
        except RedisError as e:
            logger.warning("Meal cache read failed for %s: %s", key, e)
            return None

        try:
            document = json.loads(raw)
            if document.get("user_id") != user_id:
                return None
            return MealResponse.model_validate(document["meal"])
        except (ValueError, KeyError, TypeError) as e:
            logger.warning("Discarding unreadable cache entry %s: %s", key, e)
            await self.invalidate(meal_id)
            return None

    async def set(self, meal: MealResponse, user_id: str) -> None:
        key = cache_key(meal.id)
        document = {"user_id": user_id, "meal": meal.model_dump(mode="json", by_alias=True)}
        try:
            await self.client.set(key, json.dumps(document), ex=self.ttl)
        except RedisError as e:
            logger.warning("Meal cache write failed for %s: %s", key, e)

    async def invalidate(self, meal_id: uuid.UUID) -> None:
        key = cache_key(meal_id)
        try:
            await self.client.delete(key)
        except RedisError as e:
            logger.warning("Meal cache invalidation failed for %s: %s", key, e)

    async def ping(self) -> bool:
        try:
            return bool(await self.client.ping())
        except RedisError as e:
            logger.warning("Redis ping failed: %s", e)
            return False

    async def aclose(self) -> None:
        await self.client.aclose()
