"""
执行账本：规则执行、动作结果、升级执行的追加写入与过滤查询。

动作结果逐条提交；规则执行结束时，执行记录与规则统计在同一事务中更新。
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import NotFoundError
from app.models.automation import ActionExecution, AutomationRule, MappingExecution
from app.models.escalation import EscalationExecution

from .escalation import failure_streak
from .models import ActionOutcome, ExecutionStatus, PipelineOutcome, RuleDefinition

UTC = timezone.utc

logger = logging.getLogger(__name__)

TERMINAL_STATUSES = [
    ExecutionStatus.SUCCESS.value, ExecutionStatus.FAILURE.value, ExecutionStatus.PARTIAL.value,
]


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    # SQLite 读回的时间不带时区，统一按 UTC 处理
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


class ExecutionLedger:
    """规则执行账本。"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def open_execution(
        self, rule: RuleDefinition, event_id: Optional[int], test_mode: bool = False,
    ) -> int:
        """创建状态为 running 的执行记录。"""
        async with self._session_factory() as db:
            row = MappingExecution(
                rule_id=rule.id,
                rule_name=rule.name,
                event_id=event_id,
                status=ExecutionStatus.RUNNING.value,
                test_mode=test_mode,
                skipped_actions=[],
                started_at=datetime.now(UTC),
            )
            db.add(row)
            await db.commit()
            return row.id

    async def append_action_result(self, execution_id: int, outcome: ActionOutcome) -> None:
        async with self._session_factory() as db:
            db.add(ActionExecution(
                mapping_execution_id=execution_id,
                action_order=outcome.order,
                action_type=outcome.action_type.value,
                action_snapshot=outcome.action,
                status=outcome.status.value,
                attempts=outcome.attempts,
                timed_out=outcome.timed_out,
                output=outcome.output,
                error=outcome.error,
                started_at=outcome.started_at,
                ended_at=outcome.ended_at,
            ))
            await db.commit()

    async def complete_execution(
        self,
        execution_id: int,
        rule_id: int,
        outcome: PipelineOutcome,
        update_stats: bool = True,
    ) -> int:
        """
        写入执行终态，并在同一事务中更新规则统计与连续失败计数。

        返回更新后的连续失败计数；update_stats=False（测试模式）时不修改规则。
        """
        now = datetime.now(UTC)
        async with self._session_factory() as db:
            row = await db.get(MappingExecution, execution_id)
            if row is None:
                raise NotFoundError(f"Mapping execution {execution_id} not found")
            row.status = outcome.status.value
            row.timed_out = outcome.timed_out
            row.skipped_actions = list(outcome.skipped_orders)
            row.error = outcome.error
            row.ended_at = now
            row.duration_ms = int((now - _aware(row.started_at)).total_seconds() * 1000)

            streak = 0
            rule = await db.get(AutomationRule, rule_id, with_for_update=True)
            if rule is not None:
                streak = rule.consecutive_failures or 0
                if update_stats:
                    rule.execution_count = (rule.execution_count or 0) + 1
                    if outcome.status == ExecutionStatus.SUCCESS:
                        rule.success_count = (rule.success_count or 0) + 1
                    elif outcome.status == ExecutionStatus.FAILURE:
                        rule.failure_count = (rule.failure_count or 0) + 1
                    rule.last_executed_at = now
                    rule.last_execution_status = outcome.status.value
                    streak = failure_streak(streak, outcome.status)
                    rule.consecutive_failures = streak
            await db.commit()
            return streak

    async def mark_escalated(self, execution_id: int, escalation_execution_id: int, target: str) -> None:
        async with self._session_factory() as db:
            row = await db.get(MappingExecution, execution_id)
            if row is None:
                return
            row.escalated = True
            row.escalated_to = target
            row.escalation_execution_id = escalation_execution_id
            await db.commit()

    async def find_terminal_execution(self, rule_id: int, event_id: int) -> Optional[MappingExecution]:
        """同一规则 × 事件已完成的生产执行（非测试模式）。"""
        async with self._session_factory() as db:
            result = await db.execute(
                select(MappingExecution)
                .where(
                    MappingExecution.rule_id == rule_id,
                    MappingExecution.event_id == event_id,
                    MappingExecution.test_mode == False,  # noqa: E712
                    MappingExecution.status.in_(TERMINAL_STATUSES),
                )
                .order_by(MappingExecution.id)
                .limit(1)
            )
            return result.scalar_one_or_none()

    # ------------------------------------------------------------------
    # 查询
    # ------------------------------------------------------------------

    async def list_executions(
        self,
        rule_id: Optional[int] = None,
        event_id: Optional[int] = None,
        status: Optional[str] = None,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[MappingExecution], int]:
        """按规则、事件、状态、时间范围过滤执行记录，最新的在前。"""
        filters = []
        if rule_id is not None:
            filters.append(MappingExecution.rule_id == rule_id)
        if event_id is not None:
            filters.append(MappingExecution.event_id == event_id)
        if status:
            filters.append(MappingExecution.status == status)
        if since is not None:
            filters.append(MappingExecution.started_at >= since)
        if until is not None:
            filters.append(MappingExecution.started_at < until)
        async with self._session_factory() as db:
            total = (await db.execute(select(func.count(MappingExecution.id)).where(*filters))).scalar()
            q = (
                select(MappingExecution)
                .where(*filters)
                .order_by(MappingExecution.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            rows = (await db.execute(q)).scalars().all()
            return list(rows), total

    async def get_execution(self, execution_id: int) -> tuple[MappingExecution, list[ActionExecution]]:
        """执行记录及其动作结果（按写入顺序）。"""
        async with self._session_factory() as db:
            row = await db.get(MappingExecution, execution_id)
            if row is None:
                raise NotFoundError(f"Mapping execution {execution_id} not found")
            result = await db.execute(
                select(ActionExecution)
                .where(ActionExecution.mapping_execution_id == execution_id)
                .order_by(ActionExecution.id)
            )
            return row, list(result.scalars().all())

    async def list_escalations(
        self,
        rule_id: Optional[int] = None,
        status: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[EscalationExecution], int]:
        filters = []
        if rule_id is not None:
            filters.append(EscalationExecution.rule_id == rule_id)
        if status:
            filters.append(EscalationExecution.status == status)
        async with self._session_factory() as db:
            total = (await db.execute(select(func.count(EscalationExecution.id)).where(*filters))).scalar()
            q = (
                select(EscalationExecution)
                .where(*filters)
                .order_by(EscalationExecution.id.desc())
                .offset((page - 1) * page_size)
                .limit(page_size)
            )
            rows = (await db.execute(q)).scalars().all()
            return list(rows), total

    async def rule_stats(self, rule_id: int) -> dict:
        """规则的汇总统计。"""
        async with self._session_factory() as db:
            rule = await db.get(AutomationRule, rule_id)
            if rule is None:
                raise NotFoundError(f"Automation rule {rule_id} not found")
            partial = (await db.execute(
                select(func.count(MappingExecution.id)).where(
                    MappingExecution.rule_id == rule_id,
                    MappingExecution.test_mode == False,  # noqa: E712
                    MappingExecution.status == ExecutionStatus.PARTIAL.value,
                )
            )).scalar()
            avg_duration = (await db.execute(
                select(func.avg(MappingExecution.duration_ms)).where(
                    MappingExecution.rule_id == rule_id,
                    MappingExecution.test_mode == False,  # noqa: E712
                )
            )).scalar()
            escalations = (await db.execute(
                select(func.count(EscalationExecution.id)).where(EscalationExecution.rule_id == rule_id)
            )).scalar()
            active_escalations = (await db.execute(
                select(func.count(EscalationExecution.id)).where(
                    EscalationExecution.rule_id == rule_id,
                    EscalationExecution.status == "active",
                )
            )).scalar()

        executions = rule.execution_count or 0
        return {
            "rule_id": rule.id,
            "rule_name": rule.name,
            "execution_count": executions,
            "success_count": rule.success_count or 0,
            "failure_count": rule.failure_count or 0,
            "partial_count": partial or 0,
            "success_rate": round((rule.success_count or 0) / executions, 4) if executions else None,
            "consecutive_failures": rule.consecutive_failures or 0,
            "last_executed_at": rule.last_executed_at,
            "last_execution_status": rule.last_execution_status,
            "avg_duration_ms": int(avg_duration) if avg_duration is not None else None,
            "escalation_count": escalations or 0,
            "active_escalations": active_escalations or 0,
        }
