"""
自动化事件监听后台任务入口

在 main.py lifespan 中被调用（AUTOMATION_QUEUE_BACKEND=redis 时），
从 Redis 列表取事件 ID 交给本进程的自动化引擎。
"""
import logging

from app.automation.engine import AutomationEngine
from app.automation.listener import RedisEventQueue

logger = logging.getLogger(__name__)


async def automation_listener_loop(queue: RedisEventQueue, engine: AutomationEngine) -> None:
    """后台任务入口：启动 Redis 事件队列监听。"""
    logger.info("Automation listener task started")
    await queue.listen(engine)
