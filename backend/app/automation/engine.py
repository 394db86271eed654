"""
自动化引擎：把规范化、规则选择、动作执行、升级和账本串起来。

所有协作者都通过构造函数注入。事件由有界队列交给固定数量的 worker 处理；
同一规则的统计与连续失败计数通过每规则一把 asyncio.Lock 串行更新。
处理过程中除存储故障外的任何失败都记录在数据模型里，不向外抛出。
"""
from __future__ import annotations

import asyncio
import logging
from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, Mapping, Optional

from pydantic import BaseModel, Field
from sqlalchemy.exc import SQLAlchemyError

from app.core.exceptions import NotFoundError

from .capabilities import Capabilities, Notifier, NotifierEscalator, WebhookNotifier
from .conditions import matches
from .escalation import EscalationController, should_escalate
from .executor import ActionPipelineExecutor, DryRunExecutor
from .ledger import ExecutionLedger
from .models import (
    ActionOutcome,
    AlertEventData,
    EventProcessingResult,
    EventStatus,
    ExecutionStatus,
    PipelineOutcome,
    RuleDefinition,
    RuleRunResult,
)
from .normalizer import EventNormalizer, RawPayload
from .selector import select_rules
from .store import AutomationStore

UTC = timezone.utc

logger = logging.getLogger(__name__)

# 存储不可用：事件保留为未完成状态，稍后重投
STORE_ERRORS = (SQLAlchemyError, OSError)


class ManualRunResult(BaseModel):
    """手动触发规则（测试模式）的结果。"""
    rule_id: int
    matched: bool
    dry_run: bool = False
    run: Optional[RuleRunResult] = None
    results: list[ActionOutcome] = Field(default_factory=list)
    skipped_orders: list[int] = Field(default_factory=list)


class AutomationEngine:
    """告警到动作的自动化引擎。"""

    def __init__(
        self,
        store: AutomationStore,
        ledger: ExecutionLedger,
        executor: ActionPipelineExecutor,
        escalation: EscalationController,
        normalizer: Optional[EventNormalizer] = None,
        notifier: Optional[Notifier] = None,
        concurrency: int = 5,
        queue_size: int = 1000,
        store_retry_limit: int = 3,
        store_retry_delay: float = 5,
        publish: Optional[Callable[[int], Awaitable[bool]]] = None,
        clock: Callable[[], datetime] = lambda: datetime.now(UTC),
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.executor = executor
        self.escalation = escalation
        self.normalizer = normalizer or EventNormalizer()
        self.notifier = notifier
        self.concurrency = max(1, concurrency)
        self.queue_size = queue_size
        self.store_retry_limit = store_retry_limit
        self.store_retry_delay = store_retry_delay
        self._publish = publish
        self._clock = clock

        self._rule_locks: dict[int, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._queue: Optional[asyncio.Queue[int]] = None
        self._workers: list[asyncio.Task] = []
        self._retry_tasks: set[asyncio.Task] = set()
        self._scheduled: set[int] = set()
        self._store_failures: dict[int, int] = defaultdict(int)
        self._dry_run_executor: Optional[DryRunExecutor] = None
        self._running = False

    @property
    def running(self) -> bool:
        return self._running

    # ------------------------------------------------------------------
    # 接收
    # ------------------------------------------------------------------

    async def ingest(
        self,
        source: str,
        raw: RawPayload,
        headers: Optional[Mapping[str, Any]] = None,
    ) -> AlertEventData:
        """
        接收一次 Webhook 投递 (Ingest a webhook delivery)

        规范化后按 external_id 幂等保存。重复投递返回已有事件，不会再次执行已完成的事件。
        解析失败的载荷保存为 failed，不抛出异常。
        """
        event = self.normalizer.normalize(source, raw, headers)
        stored, created = await self.store.add_event(event)
        if created:
            logger.info(
                "Ingested %s event %s (%s) as %s", stored.source, stored.id, stored.external_id, stored.status.value,
            )
        else:
            logger.info("Duplicate delivery of %s (event %s, %s)", stored.external_id, stored.id, stored.status.value)

        if stored.status == EventStatus.PENDING:
            await self._dispatch(stored.id)
        return stored

    async def _dispatch(self, event_id: int) -> None:
        # publish 返回 False 表示共享队列不可用，退回本地队列
        if self._publish is not None and await self._publish(event_id):
            return
        self.submit(event_id)

    def submit(self, event_id: int) -> bool:
        """把事件放入本地队列；未启动、已排队或队列已满时返回 False。"""
        if not self._running or self._queue is None:
            return False
        if event_id in self._scheduled:
            return False
        try:
            self._queue.put_nowait(event_id)
        except asyncio.QueueFull:
            logger.warning("Automation queue full, event %s not accepted", event_id)
            return False
        self._scheduled.add(event_id)
        return True

    def is_scheduled(self, event_id: int) -> bool:
        return event_id in self._scheduled

    # ------------------------------------------------------------------
    # 处理
    # ------------------------------------------------------------------

    async def process_event(self, event_id: int) -> EventProcessingResult:
        """
        处理一个告警事件 (Process one alert event)

        已处于终态的事件直接返回之前的结果。存储故障（SQLAlchemyError/OSError）向上抛出，
        其余失败把事件标记为 failed。
        """
        event = await self.store.get_event(event_id)
        if event is None:
            raise NotFoundError(f"Alert event {event_id} not found")
        if event.status.is_terminal:
            return self._prior_result(event)
        if not await self.store.claim_event(event_id):
            return self._prior_result(await self.store.get_event(event_id))

        result = EventProcessingResult(event_id=event_id, status=EventStatus.PROCESSED)
        try:
            rules = await self.store.list_active_rules()
            selected = select_rules(rules, event, now=self._clock())
            result.matched_rule_ids = [r.id for r in selected]
            for rule in selected:
                run = await self._run_or_reuse(rule, event)
                result.runs.append(run)
                if rule.stop_on_first_success and run.status == ExecutionStatus.SUCCESS:
                    result.stopped_by_rule_id = rule.id
                    logger.info(
                        "Rule '%s' succeeded with stop_on_first_success, skipping %d lower-priority rule(s)",
                        rule.name, len(selected) - len(result.runs),
                    )
                    break
        except STORE_ERRORS:
            raise
        except Exception as e:
            logger.exception("Processing event %s failed", event_id)
            result.status = EventStatus.FAILED
            result.error = f"{type(e).__name__}: {e}"
            await self.store.transition_event(
                event_id, EventStatus.FAILED, result=result.model_dump(mode="json"), error=result.error,
            )
            return result

        await self.store.transition_event(event_id, EventStatus.PROCESSED, result=result.model_dump(mode="json"))
        self._store_failures.pop(event_id, None)
        logger.info(
            "Event %s processed: %d rule(s) matched, %d run(s)",
            event_id, len(result.matched_rule_ids), len(result.runs),
        )
        return result

    @staticmethod
    def _prior_result(event: AlertEventData) -> EventProcessingResult:
        row_result = getattr(event, "result", None)
        return EventProcessingResult(event_id=event.id, status=event.status, error=event.last_error) \
            if not row_result else EventProcessingResult.model_validate(row_result)

    async def _run_or_reuse(self, rule: RuleDefinition, event: AlertEventData) -> RuleRunResult:
        """同一事件重投时复用已完成的执行，保证每条规则对每个事件最多执行一次。"""
        existing = await self.ledger.find_terminal_execution(rule.id, event.id)
        if existing is not None:
            logger.info("Reusing execution %s of rule '%s' for event %s", existing.id, rule.name, event.id)
            return RuleRunResult(
                rule_id=rule.id,
                rule_name=rule.name,
                execution_id=existing.id,
                status=ExecutionStatus(existing.status),
                escalated=existing.escalated,
                escalation_execution_id=existing.escalation_execution_id,
                reused=True,
                error=existing.error,
            )
        return await self.run_rule(rule, event)

    async def run_rule(
        self,
        rule: RuleDefinition,
        event: AlertEventData,
        test_mode: bool = False,
        executor: Optional[ActionPipelineExecutor] = None,
    ) -> RuleRunResult:
        run, _ = await self._execute_rule(rule, event, test_mode, executor or self.executor)
        return run

    async def _execute_rule(
        self,
        rule: RuleDefinition,
        event: AlertEventData,
        test_mode: bool,
        executor: ActionPipelineExecutor,
    ) -> tuple[RuleRunResult, PipelineOutcome]:
        execution_id = await self.ledger.open_execution(rule, event.id, test_mode=test_mode)

        async def record(outcome: ActionOutcome) -> None:
            await self.ledger.append_action_result(execution_id, outcome)

        outcome = await executor.run(rule, event, recorder=record)

        escalation_row = None
        async with self._rule_locks[rule.id]:
            streak = await self.ledger.complete_execution(
                execution_id, rule.id, outcome, update_stats=not test_mode,
            )
            if not test_mode and should_escalate(rule, outcome.status, streak):
                escalation_row = await self.escalation.start_escalation(
                    rule,
                    mapping_execution_id=execution_id,
                    event_id=event.id,
                    reason=f"Rule '{rule.name}' failed {streak} consecutive time(s): {outcome.error or 'unknown error'}",
                )
                if escalation_row is not None:
                    await self.ledger.mark_escalated(
                        execution_id, escalation_row.id, escalation_row.level_history[0]["assignee"],
                    )

        if escalation_row is not None:
            await self.escalation.notify(escalation_row, {
                "ruleName": rule.name,
                "externalId": event.external_id,
                "summary": event.summary(),
            })

        run = RuleRunResult(
            rule_id=rule.id,
            rule_name=rule.name,
            execution_id=execution_id,
            status=outcome.status,
            escalated=escalation_row is not None,
            escalation_execution_id=escalation_row.id if escalation_row is not None else None,
            test_mode=test_mode,
            error=outcome.error,
        )
        logger.info("Execution %s finished for event %s: %s", execution_id, event.external_id, run.summary())
        if not test_mode:
            await self._notify_run(rule, event, run)
        return run, outcome

    async def _notify_run(self, rule: RuleDefinition, event: AlertEventData, run: RuleRunResult) -> None:
        """按规则的通知设置发送执行摘要；通知失败只记录日志。"""
        settings = rule.notification_settings
        if self.notifier is None or settings is None or not settings.channels:
            return
        if run.escalated and settings.on_escalation:
            kind = "escalation"
        elif run.status == ExecutionStatus.SUCCESS and settings.on_success:
            kind = "success"
        elif run.status in (ExecutionStatus.FAILURE, ExecutionStatus.PARTIAL) and settings.on_failure:
            kind = "failure"
        else:
            return
        payload = {
            "title": f"[{kind.upper()}] Automation rule '{rule.name}'",
            "message": f"{event.summary()}: {run.summary()}" + (f" ({run.error})" if run.error else ""),
            "priority": "high" if kind != "success" else "normal",
            "recipients": settings.recipients,
            "executionId": run.execution_id,
        }
        for channel in settings.channels:
            try:
                result = await self.notifier.send_notification(channel, payload)
            except Exception:
                logger.exception("Run notification to %s raised", channel)
                continue
            if not result.success:
                logger.error("Run notification to %s failed: %s", channel, result.error)

    # ------------------------------------------------------------------
    # 手动触发（测试模式）
    # ------------------------------------------------------------------

    async def trigger_rule(
        self,
        rule_id: int,
        payload: dict[str, Any],
        dry_run: bool = False,
    ) -> ManualRunResult:
        """
        用合成事件手动触发规则。

        与生产运行共用条件评估器和动作执行器，只跳过时间窗口、统计和升级。
        dry_run=True 时使用 DryRunExecutor，不触达外部系统。
        """
        rule = await self.store.get_rule(rule_id)
        event = self.normalizer.normalize("test", payload)
        if not matches(rule.conditions, event):
            return ManualRunResult(rule_id=rule_id, matched=False, dry_run=dry_run)
        executor = self.dry_run_executor if dry_run else self.executor
        run, outcome = await self._execute_rule(rule, event, True, executor)
        return ManualRunResult(
            rule_id=rule_id,
            matched=True,
            dry_run=dry_run,
            run=run,
            results=outcome.results,
            skipped_orders=outcome.skipped_orders,
        )

    @property
    def dry_run_executor(self) -> DryRunExecutor:
        if isinstance(self.executor, DryRunExecutor):
            return self.executor
        if self._dry_run_executor is None:
            self._dry_run_executor = DryRunExecutor(self.executor.capabilities)
        return self._dry_run_executor

    # ------------------------------------------------------------------
    # Worker 池
    # ------------------------------------------------------------------

    async def start(self, recover: bool = True) -> None:
        """启动 worker；recover=True 时把未完成的事件重新入队。"""
        if self._running:
            return
        self._queue = asyncio.Queue(maxsize=self.queue_size)
        self._running = True
        self._workers = [
            asyncio.create_task(self._worker(i), name=f"automation-worker-{i}")
            for i in range(self.concurrency)
        ]
        logger.info("Automation engine started with %d worker(s)", self.concurrency)
        if recover:
            try:
                unfinished = await self.store.unfinished_event_ids()
            except STORE_ERRORS as e:
                logger.warning("Could not load unfinished events: %s", e)
                unfinished = []
            for event_id in unfinished:
                self.submit(event_id)
            if unfinished:
                logger.info("Re-queued %d unfinished event(s)", len(unfinished))

    async def stop(self) -> None:
        self._running = False
        tasks = [*self._workers, *self._retry_tasks]
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._workers = []
        self._retry_tasks.clear()
        self._scheduled.clear()
        logger.info("Automation engine stopped")

    async def join(self) -> None:
        """等待队列中的事件全部处理完（重投中的事件除外）。"""
        if self._queue is not None:
            await self._queue.join()

    async def _worker(self, index: int) -> None:
        assert self._queue is not None
        while True:
            event_id = await self._queue.get()
            self._scheduled.discard(event_id)
            try:
                await self.process_event(event_id)
            except STORE_ERRORS as e:
                await self._handle_store_failure(event_id, e)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception("Worker %d: unexpected error processing event %s", index, event_id)
            finally:
                self._queue.task_done()

    async def _handle_store_failure(self, event_id: int, error: BaseException) -> None:
        self._store_failures[event_id] += 1
        attempts = self._store_failures[event_id]
        message = f"Store failure: {type(error).__name__}: {error}"
        try:
            await self.store.record_event_retry(event_id, message)
        except STORE_ERRORS:
            logger.debug("Could not record retry for event %s", event_id)

        if attempts > self.store_retry_limit:
            logger.error("Event %s gave up after %d store failure(s): %s", event_id, attempts, message)
            self._store_failures.pop(event_id, None)
            try:
                await self.store.transition_event(event_id, EventStatus.FAILED, error=message)
            except STORE_ERRORS:
                logger.error("Event %s left unfinished; it will be re-queued on the next start", event_id)
            return

        logger.warning(
            "Event %s hit a store failure (attempt %d/%d), re-delivering in %ss: %s",
            event_id, attempts, self.store_retry_limit, self.store_retry_delay, message,
        )
        task = asyncio.create_task(self._redeliver(event_id))
        self._retry_tasks.add(task)
        task.add_done_callback(self._retry_tasks.discard)

    async def _redeliver(self, event_id: int) -> None:
        await asyncio.sleep(self.store_retry_delay)
        self.submit(event_id)


def build_engine(
    settings,
    session_factory,
    capabilities: Optional[Capabilities] = None,
    publish: Optional[Callable[[int], Awaitable[bool]]] = None,
) -> AutomationEngine:
    """按配置组装引擎及其协作者。capabilities 为空时使用 Webhook 通知器，其余能力为未配置。"""
    if capabilities is None:
        capabilities = Capabilities()
        if settings.notification_webhook_url:
            notifier = WebhookNotifier(settings.notification_webhook_url, settings.notification_timeout_seconds)
            capabilities.notifier = notifier
            capabilities.escalator = NotifierEscalator(notifier)

    if settings.automation_dry_run:
        executor: ActionPipelineExecutor = DryRunExecutor(capabilities)
    else:
        executor = ActionPipelineExecutor(capabilities)

    return AutomationEngine(
        store=AutomationStore(session_factory),
        ledger=ExecutionLedger(session_factory),
        executor=executor,
        escalation=EscalationController(session_factory, capabilities.escalator),
        normalizer=EventNormalizer({
            "connectwise": settings.connectwise_webhook_secret,
            "nable": settings.nable_webhook_secret,
            "generic": settings.generic_webhook_secret,
        }),
        notifier=capabilities.notifier,
        concurrency=settings.automation_concurrency,
        queue_size=settings.automation_queue_size,
        store_retry_limit=settings.automation_store_retry_limit,
        store_retry_delay=settings.automation_store_retry_delay_seconds,
        publish=publish,
    )
