"""
自动化存储：告警事件、规则、升级链的读写。

通过注入的 async_sessionmaker 访问数据库，不依赖全局会话。
SQLAlchemyError / OSError 表示存储不可用，一律向上传播，由 worker 重投事件。
"""
from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.exceptions import ConflictError, InvalidTransitionError, NotFoundError, RuleValidationError
from app.models.alert_event import AlertEvent
from app.models.automation import AutomationRule
from app.models.escalation import EscalationChain

from .models import AlertEventData, EscalationChainDefinition, EventStatus, RuleDefinition

UTC = timezone.utc

logger = logging.getLogger(__name__)

# 允许的事件状态流转；processing → processing 用于重投时重新认领
ALLOWED_TRANSITIONS: dict[EventStatus, set[EventStatus]] = {
    EventStatus.PENDING: {EventStatus.PROCESSING, EventStatus.FAILED, EventStatus.IGNORED},
    EventStatus.PROCESSING: {EventStatus.PROCESSING, EventStatus.PROCESSED, EventStatus.FAILED},
    EventStatus.PROCESSED: set(),
    EventStatus.FAILED: set(),
    EventStatus.IGNORED: set(),
}

# 规则中由引擎维护的统计字段，克隆时重置
RULE_STAT_FIELDS = (
    "execution_count", "success_count", "failure_count", "consecutive_failures",
    "last_executed_at", "last_execution_status",
)


def validate_rule(data: dict[str, Any]) -> RuleDefinition:
    """按规则模型校验，失败时抛出 RuleValidationError。"""
    try:
        return RuleDefinition.model_validate(data)
    except PydanticValidationError as e:
        raise RuleValidationError("Invalid automation rule", detail=str(e)) from e


def validate_chain(data: dict[str, Any]) -> EscalationChainDefinition:
    try:
        return EscalationChainDefinition.model_validate(data)
    except PydanticValidationError as e:
        raise RuleValidationError("Invalid escalation chain", detail=str(e)) from e


def rule_from_row(row: AutomationRule) -> RuleDefinition:
    return RuleDefinition.model_validate(row)


def _rule_values(rule: RuleDefinition) -> dict[str, Any]:
    return rule.model_dump(mode="json", exclude={"id"})


class AutomationStore:
    """告警事件、规则和升级链的存储。"""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    @property
    def session_factory(self) -> async_sessionmaker[AsyncSession]:
        return self._session_factory

    # ------------------------------------------------------------------
    # 告警事件
    # ------------------------------------------------------------------

    async def add_event(self, event: AlertEventData) -> tuple[AlertEventData, bool]:
        """保存新事件；external_id 已存在时返回已有事件。第二个返回值表示是否新建。"""
        async with self._session_factory() as db:
            existing = await self._event_by_external_id(db, event.external_id)
            if existing is not None:
                return AlertEventData.model_validate(existing), False
            row = AlertEvent(
                external_id=event.external_id,
                source=event.source,
                event_type=event.event_type,
                attributes=event.attributes,
                headers=event.headers,
                status=event.status.value,
                retry_count=0,
                last_error=event.last_error,
                received_at=event.received_at,
                processed_at=datetime.now(UTC) if event.status.is_terminal else None,
            )
            db.add(row)
            try:
                await db.commit()
            except IntegrityError:
                # 并发投递同一事件，另一请求已写入
                await db.rollback()
                existing = await self._event_by_external_id(db, event.external_id)
                if existing is None:
                    raise
                return AlertEventData.model_validate(existing), False
            await db.refresh(row)
            return AlertEventData.model_validate(row), True

    async def get_event(self, event_id: int) -> Optional[AlertEventData]:
        async with self._session_factory() as db:
            row = await db.get(AlertEvent, event_id)
            return AlertEventData.model_validate(row) if row else None

    async def get_event_row(self, event_id: int) -> Optional[AlertEvent]:
        async with self._session_factory() as db:
            return await db.get(AlertEvent, event_id)

    async def get_event_by_external_id(self, external_id: str) -> Optional[AlertEventData]:
        async with self._session_factory() as db:
            row = await self._event_by_external_id(db, external_id)
            return AlertEventData.model_validate(row) if row else None

    @staticmethod
    async def _event_by_external_id(db: AsyncSession, external_id: str) -> Optional[AlertEvent]:
        result = await db.execute(select(AlertEvent).where(AlertEvent.external_id == external_id))
        return result.scalar_one_or_none()

    async def claim_event(self, event_id: int) -> bool:
        """把 pending/processing 的事件标记为 processing；事件已终态时返回 False。"""
        async with self._session_factory() as db:
            result = await db.execute(
                update(AlertEvent)
                .where(
                    AlertEvent.id == event_id,
                    AlertEvent.status.in_([EventStatus.PENDING.value, EventStatus.PROCESSING.value]),
                )
                .values(status=EventStatus.PROCESSING.value)
            )
            await db.commit()
            return result.rowcount > 0

    async def transition_event(
        self,
        event_id: int,
        status: EventStatus,
        *,
        result: Optional[dict] = None,
        error: Optional[str] = None,
    ) -> AlertEventData:
        """单向推进事件状态，后退或离开终态时抛出 InvalidTransitionError。"""
        async with self._session_factory() as db:
            row = await db.get(AlertEvent, event_id)
            if row is None:
                raise NotFoundError(f"Alert event {event_id} not found")
            current = EventStatus(row.status)
            if status not in ALLOWED_TRANSITIONS[current]:
                raise InvalidTransitionError(
                    f"Alert event {event_id} cannot move from {current.value} to {status.value}"
                )
            row.status = status.value
            if result is not None:
                row.result = result
            if error is not None:
                row.last_error = error
            if status.is_terminal:
                row.processed_at = datetime.now(UTC)
            await db.commit()
            await db.refresh(row)
            return AlertEventData.model_validate(row)

    async def record_event_retry(self, event_id: int, error: str) -> int:
        """记录一次存储失败导致的重投，返回累计重投次数。"""
        async with self._session_factory() as db:
            row = await db.get(AlertEvent, event_id)
            if row is None:
                return 0
            row.retry_count = (row.retry_count or 0) + 1
            row.last_error = error
            await db.commit()
            return row.retry_count

    async def unfinished_event_ids(self) -> list[int]:
        """尚未处理完的事件（启动时重新入队）。"""
        async with self._session_factory() as db:
            result = await db.execute(
                select(AlertEvent.id)
                .where(AlertEvent.status.in_([EventStatus.PENDING.value, EventStatus.PROCESSING.value]))
                .order_by(AlertEvent.id)
            )
            return list(result.scalars().all())

    async def list_events(
        self,
        source: Optional[str] = None,
        status: Optional[str] = None,
        page: int = 1,
        page_size: int = 20,
    ) -> tuple[list[AlertEvent], int]:
        async with self._session_factory() as db:
            q = select(AlertEvent)
            count_q = select(func.count(AlertEvent.id))
            if source:
                q = q.where(AlertEvent.source == source)
                count_q = count_q.where(AlertEvent.source == source)
            if status:
                q = q.where(AlertEvent.status == status)
                count_q = count_q.where(AlertEvent.status == status)
            total = (await db.execute(count_q)).scalar()
            q = q.order_by(AlertEvent.id.desc()).offset((page - 1) * page_size).limit(page_size)
            rows = (await db.execute(q)).scalars().all()
            return list(rows), total

    # ------------------------------------------------------------------
    # 规则
    # ------------------------------------------------------------------

    async def list_active_rules(self) -> list[RuleDefinition]:
        """所有已启用规则，按优先级降序、创建顺序升序。无法解析的规则记录错误后跳过。"""
        async with self._session_factory() as db:
            result = await db.execute(
                select(AutomationRule)
                .where(AutomationRule.is_active == True)  # noqa: E712
                .order_by(AutomationRule.priority.desc(), AutomationRule.id)
            )
            rules = []
            for row in result.scalars().all():
                try:
                    rules.append(rule_from_row(row))
                except PydanticValidationError as e:
                    logger.error("Automation rule %s (%s) failed to load: %s", row.id, row.name, e)
            return rules

    async def list_rules(
        self, is_active: Optional[bool] = None, page: int = 1, page_size: int = 20,
    ) -> tuple[list[AutomationRule], int]:
        async with self._session_factory() as db:
            q = select(AutomationRule)
            count_q = select(func.count(AutomationRule.id))
            if is_active is not None:
                q = q.where(AutomationRule.is_active == is_active)
                count_q = count_q.where(AutomationRule.is_active == is_active)
            total = (await db.execute(count_q)).scalar()
            q = q.order_by(AutomationRule.priority.desc(), AutomationRule.id)
            q = q.offset((page - 1) * page_size).limit(page_size)
            rows = (await db.execute(q)).scalars().all()
            return list(rows), total

    async def get_rule_row(self, rule_id: int) -> AutomationRule:
        async with self._session_factory() as db:
            row = await db.get(AutomationRule, rule_id)
            if row is None:
                raise NotFoundError(f"Automation rule {rule_id} not found")
            return row

    async def get_rule(self, rule_id: int) -> RuleDefinition:
        return rule_from_row(await self.get_rule_row(rule_id))

    async def create_rule(self, rule: RuleDefinition) -> AutomationRule:
        async with self._session_factory() as db:
            await self._check_rule_refs(db, rule)
            row = AutomationRule(**_rule_values(rule))
            db.add(row)
            await self._commit_unique(db, f"Automation rule name '{rule.name}' already exists")
            await db.refresh(row)
            logger.info("Created automation rule %s (%s)", row.id, row.name)
            return row

    async def update_rule(self, rule_id: int, changes: dict[str, Any]) -> AutomationRule:
        """部分更新：合并到现有定义后整体重新校验。"""
        async with self._session_factory() as db:
            row = await db.get(AutomationRule, rule_id)
            if row is None:
                raise NotFoundError(f"Automation rule {rule_id} not found")
            merged = {**rule_from_row(row).model_dump(mode="json"), **changes}
            rule = validate_rule(merged)
            await self._check_rule_refs(db, rule)
            for key, value in _rule_values(rule).items():
                setattr(row, key, value)
            await self._commit_unique(db, f"Automation rule name '{rule.name}' already exists")
            await db.refresh(row)
            logger.info("Updated automation rule %s (%s)", row.id, row.name)
            return row

    async def delete_rule(self, rule_id: int) -> None:
        async with self._session_factory() as db:
            row = await db.get(AutomationRule, rule_id)
            if row is None:
                raise NotFoundError(f"Automation rule {rule_id} not found")
            await db.delete(row)
            await db.commit()
            logger.info("Deleted automation rule %s (%s)", rule_id, row.name)

    async def clone_rule(self, rule_id: int, name: Optional[str] = None) -> AutomationRule:
        """复制规则，统计字段清零，新规则默认停用。"""
        source = await self.get_rule(rule_id)
        data = source.model_dump(mode="json", exclude={"id"})
        data["name"] = name or f"{source.name} (Copy)"
        data["is_active"] = False
        return await self.create_rule(validate_rule(data))

    async def _check_rule_refs(self, db: AsyncSession, rule: RuleDefinition) -> None:
        if rule.escalation_chain_id is None:
            return
        chain = await db.get(EscalationChain, rule.escalation_chain_id)
        if chain is None:
            raise RuleValidationError(f"Escalation chain {rule.escalation_chain_id} does not exist")

    @staticmethod
    async def _commit_unique(db: AsyncSession, message: str) -> None:
        try:
            await db.commit()
        except IntegrityError as e:
            await db.rollback()
            raise ConflictError(message) from e

    # ------------------------------------------------------------------
    # 升级链
    # ------------------------------------------------------------------

    async def create_chain(self, chain: EscalationChainDefinition) -> EscalationChain:
        async with self._session_factory() as db:
            row = EscalationChain(
                name=chain.name,
                description=chain.description,
                is_active=chain.is_active,
                levels=[level.model_dump(mode="json") for level in chain.levels],
            )
            db.add(row)
            await self._commit_unique(db, f"Escalation chain name '{chain.name}' already exists")
            await db.refresh(row)
            logger.info("Created escalation chain %s (%s, %d levels)", row.id, row.name, len(chain.levels))
            return row

    async def update_chain(self, chain_id: int, changes: dict[str, Any]) -> EscalationChain:
        async with self._session_factory() as db:
            row = await db.get(EscalationChain, chain_id)
            if row is None:
                raise NotFoundError(f"Escalation chain {chain_id} not found")
            merged = {**EscalationChainDefinition.model_validate(row).model_dump(mode="json"), **changes}
            chain = validate_chain(merged)
            row.name = chain.name
            row.description = chain.description
            row.is_active = chain.is_active
            row.levels = [level.model_dump(mode="json") for level in chain.levels]
            await self._commit_unique(db, f"Escalation chain name '{chain.name}' already exists")
            await db.refresh(row)
            return row

    async def delete_chain(self, chain_id: int) -> None:
        async with self._session_factory() as db:
            row = await db.get(EscalationChain, chain_id)
            if row is None:
                raise NotFoundError(f"Escalation chain {chain_id} not found")
            in_use = await db.execute(
                select(func.count(AutomationRule.id)).where(AutomationRule.escalation_chain_id == chain_id)
            )
            if in_use.scalar():
                raise ConflictError(f"Escalation chain {chain_id} is referenced by automation rules")
            await db.delete(row)
            await db.commit()

    async def get_chain(self, chain_id: int) -> Optional[EscalationChainDefinition]:
        async with self._session_factory() as db:
            row = await db.get(EscalationChain, chain_id)
            return EscalationChainDefinition.model_validate(row) if row else None

    async def list_chains(self) -> list[EscalationChain]:
        async with self._session_factory() as db:
            result = await db.execute(select(EscalationChain).order_by(EscalationChain.id))
            return list(result.scalars().all())
