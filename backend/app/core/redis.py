"""
Redis 连接模块 (Redis Connection Module)

Redis 在本服务中只用作多进程共享的自动化事件队列（AUTOMATION_QUEUE_BACKEND=redis）。
使用内存队列时不会建立任何 Redis 连接。

Redis is only used as the shared automation event queue between API processes
(AUTOMATION_QUEUE_BACKEND=redis). With the in-memory queue no connection is opened.
"""
import redis.asyncio as redis
from redis.exceptions import RedisError

from app.core.config import settings

# 全局 Redis 客户端实例，首次使用时创建
redis_client: redis.Redis | None = None


async def get_redis() -> redis.Redis:
    """
    获取 Redis 客户端实例 (Get Redis Client)

    socket 超时需大于 BRPOP 的阻塞时间，否则空闲的监听会被误判为断线。
    """
    global redis_client
    if redis_client is None:
        redis_client = redis.from_url(
            settings.redis_url,
            decode_responses=True,
            socket_timeout=settings.automation_queue_poll_seconds + 5,
            health_check_interval=30,
        )
    return redis_client


async def redis_available() -> bool:
    """健康检查：PING 成功返回 True。"""
    try:
        client = await get_redis()
        return bool(await client.ping())
    except (RedisError, OSError):
        return False


async def close_redis() -> None:
    """关闭 Redis 连接 (Close Redis Connection)"""
    global redis_client
    if redis_client is not None:
        await redis_client.close()
        redis_client = None
