"""Кэш каталога RoamWiFi в Redis."""
import json
import logging
from typing import Any, Awaitable, Callable

import redis.asyncio as redis

from esim_app.config import settings

logger = logging.getLogger(__name__)

CATALOG_PREFIX = "roamwifi"


class CacheService:
    """
    Кэш в Redis.

    Redis не обязателен: если подключиться не удалось, get возвращает None,
    set/delete ничего не делают, а данные каждый раз грузятся заново.
    """

    def __init__(self, url: str | None = None):
        self.url = url or settings.redis_url
        self._redis: redis.Redis | None = None

    @property
    def connected(self) -> bool:
        return self._redis is not None

    async def connect(self):
        """Подключение к Redis при старте приложения."""
        if self._redis:
            return
        client = redis.from_url(self.url, encoding="utf-8", decode_responses=True)
        try:
            await client.ping()
        except Exception as e:
            # Работаем без кэша
            logger.warning(f"Redis недоступен ({e}), кэш каталога отключен")
            await client.aclose()
            return
        self._redis = client
        logger.info("Redis подключен")

    async def disconnect(self):
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def get(self, key: str) -> Any | None:
        if not self._redis:
            return None
        try:
            value = await self._redis.get(key)
        except Exception as e:
            logger.debug(f"Cache get {key} failed: {e}")
            return None
        return json.loads(value) if value else None

    async def set(self, key: str, value: Any, ttl: int) -> bool:
        if not self._redis:
            return False
        try:
            await self._redis.setex(key, ttl, json.dumps(value, default=str))
        except Exception as e:
            logger.debug(f"Cache set {key} failed: {e}")
            return False
        return True

    async def delete(self, key: str) -> bool:
        if not self._redis:
            return False
        try:
            await self._redis.delete(key)
        except Exception as e:
            logger.debug(f"Cache delete {key} failed: {e}")
            return False
        return True

    async def get_or_load(self, key: str, loader: Callable[[], Awaitable[Any]], ttl: int | None = None) -> Any:
        """
        Значение из кэша или результат loader(), который сразу кладется в кэш.

        loader должен вернуть JSON-совместимое значение. Ошибки loader пробрасываются.
        """
        cached = await self.get(key)
        if cached is not None:
            return cached
        value = await loader()
        await self.set(key, value, ttl if ttl is not None else settings.catalog_cache_ttl)
        return value


# Глобальный экземпляр
cache_service = CacheService()


def get_cache_key_skus() -> str:
    return f"{CATALOG_PREFIX}:skus"


def get_cache_key_packages(sku_id: str) -> str:
    return f"{CATALOG_PREFIX}:packages:{sku_id}"
