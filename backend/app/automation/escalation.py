"""
升级控制器 (Escalation Controller)

按规则维护连续失败计数；执行以 failure 结束且计数达到 escalate_after_failures 时，
从升级链第 1 级（或规则配置的单一升级目标）开始一次升级执行。
每一级等待其 delay_minutes 后自动推进到下一级，直到运维人员标记为已解决；
到达最后一级后保持 active，不会自动关闭。

Tracks consecutive failures per rule and drives multi-level escalation. Failing to
notify an escalation target is logged and never blocks level advancement.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Any, Optional

from sqlalchemy import and_, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import InvalidTransitionError, NotFoundError
from app.models.automation import AutomationRule
from app.models.escalation import EscalationChain, EscalationExecution

from .capabilities import Escalator
from .models import (
    EscalationChainDefinition,
    EscalationLevel,
    EscalationStatus,
    ExecutionStatus,
    RuleDefinition,
)

UTC = timezone.utc

logger = logging.getLogger(__name__)


def failure_streak(current: int, status: ExecutionStatus) -> int:
    """success 清零，failure 加一，partial 不变。"""
    if status == ExecutionStatus.SUCCESS:
        return 0
    if status == ExecutionStatus.FAILURE:
        return current + 1
    return current


def should_escalate(rule: RuleDefinition, status: ExecutionStatus, streak: int) -> bool:
    return (
        status == ExecutionStatus.FAILURE
        and rule.escalate_after_failures is not None
        and streak >= rule.escalate_after_failures
    )


def _now(now: Optional[datetime]) -> datetime:
    now = now or datetime.now(UTC)
    return now if now.tzinfo else now.replace(tzinfo=UTC)


def _history_entry(level: EscalationLevel, entered_at: datetime) -> dict[str, Any]:
    return {
        "level": level.level,
        "assignee": level.target().label(),
        "entered_at": entered_at.isoformat(),
        "left_at": None,
        "outcome": None,
    }


def _next_advance(levels: list[EscalationLevel], current: int, entered_at: datetime) -> Optional[datetime]:
    if current >= len(levels):
        return None
    return entered_at + timedelta(minutes=levels[current - 1].delay_minutes)


class EscalationController:
    """升级执行的创建、推进和解决。"""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        escalator: Escalator,
    ) -> None:
        self._session_factory = session_factory
        self.escalator = escalator

    async def _resolve_levels(self, db: AsyncSession, rule: RuleDefinition) -> tuple[list[EscalationLevel], Optional[int]]:
        if rule.escalation_chain_id is not None:
            chain_row = await db.get(EscalationChain, rule.escalation_chain_id)
            if chain_row is not None and chain_row.is_active:
                chain = EscalationChainDefinition.model_validate(chain_row)
                return chain.levels, chain.id
            logger.warning(
                "Rule '%s' references missing or inactive escalation chain %s",
                rule.name, rule.escalation_chain_id,
            )
        if rule.escalation_target is not None:
            target = rule.escalation_target
            return [EscalationLevel(level=1, assignee_ref=target.ref, assignee_kind=target.kind, delay_minutes=0)], None
        return [], None

    async def start_escalation(
        self,
        rule: RuleDefinition,
        *,
        mapping_execution_id: Optional[int] = None,
        event_id: Optional[int] = None,
        reason: str = "",
        now: Optional[datetime] = None,
    ) -> Optional[EscalationExecution]:
        """
        从第 1 级开始升级，并在同一事务中把规则的连续失败计数清零。

        没有可用的升级目标时记录错误并返回 None。
        """
        now = _now(now)
        async with self._session_factory() as db:
            levels, chain_id = await self._resolve_levels(db, rule)
            if not levels:
                logger.error("Rule '%s' reached escalation threshold but has no escalation target", rule.name)
                return None
            row = EscalationExecution(
                rule_id=rule.id,
                chain_id=chain_id,
                mapping_execution_id=mapping_execution_id,
                event_id=event_id,
                levels=[level.model_dump(mode="json") for level in levels],
                current_level=1,
                level_history=[_history_entry(levels[0], now)],
                status=EscalationStatus.ACTIVE.value,
                trigger_reason=reason,
                next_advance_at=_next_advance(levels, 1, now),
                started_at=now,
            )
            db.add(row)
            rule_row = await db.get(AutomationRule, rule.id, with_for_update=True)
            if rule_row is not None:
                rule_row.consecutive_failures = 0
            await db.commit()
            await db.refresh(row)
        logger.info(
            "Started escalation %s for rule '%s' at level 1 (%s)",
            row.id, rule.name, levels[0].target().label(),
        )
        return row

    async def notify(self, row: EscalationExecution, context: Optional[dict[str, Any]] = None) -> bool:
        """通知当前级别的负责人。失败只记录日志。"""
        level = EscalationLevel.model_validate(row.levels[row.current_level - 1])
        payload = {
            "escalationId": row.id,
            "ruleId": row.rule_id,
            "level": row.current_level,
            "reason": row.trigger_reason or "",
            **(context or {}),
        }
        try:
            result = await self.escalator.escalate(level.target(), payload)
        except Exception:
            logger.exception("Escalation %s: notifying %s raised", row.id, level.target().label())
            return False
        if not result.success:
            logger.error(
                "Escalation %s: failed to notify %s: %s", row.id, level.target().label(), result.error,
            )
        return result.success

    async def advance_level(self, escalation_id: int, now: Optional[datetime] = None) -> EscalationExecution:
        """推进到下一级；已在最后一级时不变（保持 active）。已解决的升级不能推进。"""
        now = _now(now)
        async with self._session_factory() as db:
            row = await db.get(EscalationExecution, escalation_id, with_for_update=True)
            if row is None:
                raise NotFoundError(f"Escalation execution {escalation_id} not found")
            if row.status != EscalationStatus.ACTIVE.value:
                raise InvalidTransitionError(f"Escalation execution {escalation_id} is {row.status}")
            levels = [EscalationLevel.model_validate(level) for level in row.levels]
            if row.current_level >= len(levels):
                row.next_advance_at = None
                await db.commit()
                logger.info("Escalation %s already at final level %d", row.id, row.current_level)
                return row

            history = [dict(entry) for entry in row.level_history]
            if history:
                history[-1]["left_at"] = now.isoformat()
                history[-1]["outcome"] = "escalated"
            row.current_level += 1
            history.append(_history_entry(levels[row.current_level - 1], now))
            row.level_history = history
            row.next_advance_at = _next_advance(levels, row.current_level, now)
            await db.commit()
            await db.refresh(row)

        logger.info("Escalation %s advanced to level %d", row.id, row.current_level)
        await self.notify(row)
        return row

    async def mark_resolved(
        self,
        escalation_id: int,
        resolved_by: Optional[str] = None,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> EscalationExecution:
        now = _now(now)
        async with self._session_factory() as db:
            row = await db.get(EscalationExecution, escalation_id, with_for_update=True)
            if row is None:
                raise NotFoundError(f"Escalation execution {escalation_id} not found")
            if row.status != EscalationStatus.ACTIVE.value:
                raise InvalidTransitionError(f"Escalation execution {escalation_id} is already {row.status}")
            history = [dict(entry) for entry in row.level_history]
            if history:
                history[-1]["left_at"] = now.isoformat()
                history[-1]["outcome"] = "resolved"
            row.level_history = history
            row.status = EscalationStatus.RESOLVED.value
            row.resolved_at = now
            row.resolved_by = resolved_by
            row.resolution_notes = notes
            row.next_advance_at = None
            await db.commit()
            await db.refresh(row)
        logger.info("Escalation %s resolved by %s", escalation_id, resolved_by or "unknown")
        return row

    async def get(self, escalation_id: int) -> EscalationExecution:
        async with self._session_factory() as db:
            row = await db.get(EscalationExecution, escalation_id)
            if row is None:
                raise NotFoundError(f"Escalation execution {escalation_id} not found")
            return row

    async def advance_due(self, now: Optional[datetime] = None) -> dict:
        """
        扫描到期的升级执行并推进一级 (Scan and advance due escalations)

        单个执行推进失败不影响其余执行。

        Returns:
            dict: scanned / advanced / failed / scan_time
        """
        now = _now(now)
        async with self._session_factory() as db:
            result = await db.execute(
                select(EscalationExecution.id).where(
                    and_(
                        EscalationExecution.status == EscalationStatus.ACTIVE.value,
                        EscalationExecution.next_advance_at.isnot(None),
                        EscalationExecution.next_advance_at <= now,
                    )
                )
            )
            due_ids = list(result.scalars().all())

        advanced = failed = 0
        for escalation_id in due_ids:
            try:
                await self.advance_level(escalation_id, now=now)
                advanced += 1
            except Exception:
                logger.exception("Failed to advance escalation %s", escalation_id)
                failed += 1

        summary = {"scanned": len(due_ids), "advanced": advanced, "failed": failed, "scan_time": now}
        if due_ids:
            logger.info("Escalation scan finished: %s", summary)
        return summary
