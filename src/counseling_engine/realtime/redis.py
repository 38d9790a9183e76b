"""
Redis-клиент для pub/sub и состояния провайдеров.

Назначение:
- Единая точка подключения к Redis
- Используется публикатором событий, WS-ретранслятором и video_service

Клиент вызывается на пути запроса (публикация, circuit breaker), поэтому
у сокета всегда есть таймауты: зависший Redis не блокирует accept/select.
"""

from __future__ import annotations

import redis

from counseling_engine.common.config import get_settings

_client: redis.Redis | None = None


def build_redis_client() -> redis.Redis:
    s = get_settings()
    return redis.Redis.from_url(
        s.redis_url,
        decode_responses=True,
        socket_timeout=float(s.redis_socket_timeout_sec),
        socket_connect_timeout=float(s.redis_connect_timeout_sec),
    )


def redis_client() -> redis.Redis:
    """
    Singleton Redis client.
    """
    global _client
    if _client is None:
        _client = build_redis_client()
    return _client


def reset_redis_client() -> None:
    """Сбросить singleton (смена REDIS_URL / таймаутов)."""
    global _client
    if _client is not None:
        _client.close()
    _client = None
