"""
升级调度任务 (Escalation Scheduler Task)

定时扫描到期的升级执行并推进到下一级，通知新负责人。
在 main.py lifespan 中作为后台任务运行，也可以作为独立进程运行。

Scheduled task that scans due escalation executions and advances them one level,
notifying the new assignee. Runs as a background task in the main.py lifespan,
or standalone.
"""
import asyncio
import logging
from datetime import datetime, timezone

from app.automation.escalation import EscalationController

logger = logging.getLogger(__name__)


async def run_escalation_scan(controller: EscalationController) -> dict:
    """
    执行一次升级扫描 (Execute One Escalation Scan)

    单个升级执行推进失败不影响其余执行，由 EscalationController.advance_due 隔离。

    Returns:
        dict: scanned / advanced / failed / scan_time
    """
    start_time = datetime.now(timezone.utc)
    scan_result = await controller.advance_due()
    execution_time = (datetime.now(timezone.utc) - start_time).total_seconds()

    if scan_result["scanned"]:
        logger.info(
            "Escalation scan finished: scanned=%d advanced=%d failed=%d (%.2fs)",
            scan_result["scanned"], scan_result["advanced"], scan_result["failed"], execution_time,
        )
    if scan_result["failed"]:
        logger.warning("%d escalation(s) failed to advance, check the logs above", scan_result["failed"])
    return scan_result


async def escalation_scheduler_loop(controller: EscalationController, interval: int = 60) -> None:
    """
    升级调度器主循环 (Escalation Scheduler Main Loop)

    每 interval 秒扫描一次。扫描出错时记录日志后等待下一轮，取消任务即可停止。
    """
    logger.info("Escalation scheduler started (interval %ss)", interval)
    while True:
        try:
            await run_escalation_scan(controller)
        except asyncio.CancelledError:
            logger.info("Escalation scheduler stopped")
            raise
        except Exception:
            logger.exception("Escalation scan failed")
        await asyncio.sleep(interval)


async def _standalone() -> None:
    from app.automation.engine import build_engine
    from app.core.config import settings
    from app.core.database import async_session, engine

    automation = build_engine(settings, async_session)
    try:
        await escalation_scheduler_loop(automation.escalation, settings.escalation_scan_interval_seconds)
    finally:
        await engine.dispose()


if __name__ == "__main__":
    """
    独立运行升级调度器 (Run Escalation Scheduler Standalone)

    python -m app.tasks.escalation_scheduler
    """
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S"
    )

    try:
        asyncio.run(_standalone())
    except KeyboardInterrupt:
        logger.info("Escalation scheduler stopped")
