"""
RMM Autopilot 自动化引擎 - 共享事件队列
RMM Autopilot Automation Engine - Shared Event Queue

多个 API 进程共享同一个 Redis 列表作为事件队列：
接收 Webhook 的进程 LPUSH 事件 ID，各进程的监听任务用 BRPOP 取出后交给本地 worker 池。
BRPOP 保证每个事件 ID 只被一个进程取走。

Several API processes share one Redis list as the event queue: the process that
receives a webhook LPUSHes the event id, and each process's listener BRPOPs ids
into its local worker pool. BRPOP hands every id to exactly one process.

事件格式 (Event Format):
列表元素为告警事件的数据库 ID 字符串，例如 "42"。
"""
from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING

from redis.asyncio import Redis
from redis.exceptions import RedisError

if TYPE_CHECKING:
    from .engine import AutomationEngine

logger = logging.getLogger(__name__)

DEFAULT_KEY = "rmm:automation:events"


class RedisEventQueue:
    """基于 Redis 列表的共享事件队列。"""

    def __init__(self, redis: Redis, key: str = DEFAULT_KEY, poll_timeout: int = 5) -> None:
        self.redis = redis
        self.key = key
        self.poll_timeout = poll_timeout

    async def publish(self, event_id: int) -> bool:
        """推送事件 ID；Redis 不可用时返回 False，由调用方退回本地队列。"""
        try:
            await self.redis.lpush(self.key, str(event_id))
        except RedisError as e:
            logger.warning("Failed to push event %s to %s: %s", event_id, self.key, e)
            return False
        return True

    async def _requeue(self, event_id: int) -> None:
        try:
            await self.redis.lpush(self.key, str(event_id))
        except RedisError as e:
            logger.error(
                "Could not return event %s to %s, it stays pending until the next start: %s", event_id, self.key, e,
            )

    async def listen(self, engine: "AutomationEngine") -> None:
        """
        持续从 Redis 列表取事件交给引擎 (Continuously feed events from Redis into the engine)

        单个元素格式错误只记录警告；Redis 连接错误等待后重试，不会终止监听。
        本地队列拒收的事件放回列表尾部，等待后再继续取。
        取消任务即可优雅停止。
        """
        logger.info("Automation listener consuming %s", self.key)
        try:
            while True:
                try:
                    item = await self.redis.brpop(self.key, timeout=self.poll_timeout)
                except RedisError as e:
                    logger.warning("Automation listener lost Redis connection: %s", e)
                    await asyncio.sleep(self.poll_timeout)
                    continue
                if item is None:
                    continue
                _, raw = item
                try:
                    event_id = int(raw)
                except (TypeError, ValueError):
                    logger.warning("Skipping malformed queue item %r", raw)
                    continue
                if engine.submit(event_id):
                    continue
                if engine.is_scheduled(event_id):
                    logger.debug("Event %s already queued locally", event_id)
                    continue
                # 本进程无法接收（未启动或队列已满），放回共享队列交给其他实例
                logger.warning("Event %s refused by local queue, returning it to %s", event_id, self.key)
                await self._requeue(event_id)
                await asyncio.sleep(self.poll_timeout)
        except asyncio.CancelledError:
            logger.info("Automation listener shutting down")
            raise
