"""
动作流水线执行器。

按 order 升序执行规则的动作；失败按固定间隔重试；整次执行受 execution_timeout_seconds 预算约束。
每个动作的结果产生后立即交给 recorder 持久化。DryRunExecutor 只模拟外部调用，其余逻辑完全相同。
"""
from __future__ import annotations

import asyncio
import logging
import re
import time
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, NamedTuple, Optional

from .capabilities import Capabilities
from .conditions import resolve_field
from .models import (
    ActionOutcome,
    ActionStatus,
    ActionType,
    AlertEventData,
    CapabilityResult,
    ExecutionStatus,
    PipelineOutcome,
    RuleDefinition,
)

UTC = timezone.utc

logger = logging.getLogger(__name__)

Recorder = Callable[[ActionOutcome], Awaitable[None]]

_TEMPLATE_VAR = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")

# 设备类动作通过脚本执行器下发内置脚本
BUILTIN_SCRIPTS = {
    ActionType.RESTART_SERVICE: "restart_service",
    ActionType.CLEAR_CACHE: "clear_cache",
    ActionType.INSTALL_UPDATE: "install_update",
}


class ActionConfigError(Exception):
    """动作缺少必要的引用（设备、工单、升级目标），重试也无法成功。"""


class PlannedCall(NamedTuple):
    """一次外部能力调用：Capabilities 上的属性名、方法名、参数。"""
    capability: str
    method: str
    args: tuple
    description: str


def render_template(template: Optional[str], variables: dict[str, Any]) -> Optional[str]:
    """替换 {{var}} 占位符；未知变量原样保留。"""
    if template is None:
        return None

    def _sub(match: re.Match) -> str:
        value = resolve_field(variables, match.group(1), default=None)
        if value is None:
            return match.group(0)
        return str(value)

    return _TEMPLATE_VAR.sub(_sub, template)


def template_variables(rule: RuleDefinition, event: AlertEventData) -> dict[str, Any]:
    return {
        **event.attributes,
        "ruleName": rule.name,
        "ruleId": rule.id,
        "source": event.source,
        "eventType": event.event_type,
        "externalId": event.external_id,
        "eventId": event.id,
        "timestamp": datetime.now(UTC).isoformat(),
    }


class ActionPipelineExecutor:
    """执行一条规则的动作流水线。"""

    def __init__(
        self,
        capabilities: Capabilities,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.capabilities = capabilities
        self._sleep = sleep
        self._clock = clock

    async def run(
        self,
        rule: RuleDefinition,
        event: AlertEventData,
        recorder: Optional[Recorder] = None,
    ) -> PipelineOutcome:
        """运行规则的全部动作，返回整体结果。recorder 抛出的异常（存储故障）向上传播。"""
        deadline = self._clock() + rule.execution_timeout_seconds
        variables = template_variables(rule, event)
        outcome = PipelineOutcome(status=ExecutionStatus.RUNNING)
        succeeded = failed = 0
        stop_reason: Optional[str] = None
        aborted = False

        actions = rule.ordered_actions()
        for action in actions:
            if stop_reason is None and self._clock() >= deadline:
                outcome.timed_out = True
                stop_reason = f"Execution budget of {rule.execution_timeout_seconds}s exhausted"
            if stop_reason is not None:
                outcome.skipped_orders.append(action.order)
                continue

            result = await self._run_action(rule, action, event, variables, deadline)
            outcome.results.append(result)
            if recorder is not None:
                await recorder(result)

            if result.status == ActionStatus.SUCCESS:
                succeeded += 1
                continue
            failed += 1
            if result.timed_out:
                outcome.timed_out = True
                stop_reason = result.error
            elif not action.continue_on_error:
                aborted = True
                stop_reason = f"Action {action.order} ({action.type}) failed: {result.error}"

        if outcome.skipped_orders:
            logger.warning(
                "Rule '%s': skipped actions %s (%s)", rule.name, outcome.skipped_orders, stop_reason,
            )
            outcome.status = ExecutionStatus.FAILURE
            outcome.error = stop_reason
        elif outcome.timed_out or aborted:
            # 最后一个动作失败且不允许继续时没有可跳过的动作，仍然是 failure
            outcome.status = ExecutionStatus.FAILURE
            outcome.error = stop_reason
        elif failed == 0:
            outcome.status = ExecutionStatus.SUCCESS
        elif succeeded == 0:
            outcome.status = ExecutionStatus.FAILURE
            outcome.error = stop_reason or "All actions failed"
        else:
            outcome.status = ExecutionStatus.PARTIAL
        return outcome

    async def _run_action(
        self,
        rule: RuleDefinition,
        action,
        event: AlertEventData,
        variables: dict[str, Any],
        deadline: float,
    ) -> ActionOutcome:
        """执行单个动作，失败按 retry_delay_seconds 固定间隔重试，最多 max_retries 次。"""
        started_at = datetime.now(UTC)
        outcome = ActionOutcome(
            order=action.order,
            action_type=action.type,
            action=action.model_dump(mode="json"),
            status=ActionStatus.FAILURE,
            started_at=started_at,
        )
        try:
            calls = self._plan(rule, action, event, variables)
        except ActionConfigError as e:
            logger.warning("Rule '%s' action %d misconfigured: %s", rule.name, action.order, e)
            outcome.error = str(e)
            outcome.ended_at = datetime.now(UTC)
            return outcome

        delay = rule.retry_delay_seconds
        max_attempts = rule.max_retries + 1
        while True:
            remaining = deadline - self._clock()
            if remaining <= 0:
                outcome.timed_out = True
                outcome.error = f"Timed out: execution budget exhausted ({outcome.error or 'no attempt completed'})"
                break

            outcome.attempts += 1
            try:
                result = await self._attempt(calls, remaining)
            except asyncio.TimeoutError:
                outcome.timed_out = True
                outcome.error = f"Timed out after {rule.execution_timeout_seconds}s execution budget"
                logger.warning("Rule '%s' action %d timed out", rule.name, action.order)
                break

            if result.success:
                outcome.status = ActionStatus.SUCCESS
                outcome.output = result.output
                outcome.error = None
                break

            outcome.output = result.output
            outcome.error = result.error or "Action failed"
            if outcome.attempts >= max_attempts:
                break
            if deadline - self._clock() <= delay:
                outcome.timed_out = True
                outcome.error = f"Timed out: execution budget exhausted before retry ({outcome.error})"
                logger.warning("Rule '%s' action %d: no budget left for retry", rule.name, action.order)
                break
            logger.warning(
                "Rule '%s' action %d failed (attempt %d/%d), retrying in %ss: %s",
                rule.name, action.order, outcome.attempts, max_attempts, delay, outcome.error,
            )
            await self._sleep(delay)

        outcome.ended_at = datetime.now(UTC)
        return outcome

    async def _attempt(self, calls: list[PlannedCall], remaining: float) -> CapabilityResult:
        cancellable = all(
            getattr(getattr(self.capabilities, c.capability), "supports_cancellation", True)
            for c in calls
        )
        if cancellable:
            return await asyncio.wait_for(self._perform(calls), timeout=remaining)
        # 不支持取消：等待调用结束，超时由调用方在下一次调度前检查
        return await self._perform(calls)

    async def _perform(self, calls: list[PlannedCall]) -> CapabilityResult:
        """依次执行调用，全部成功才算成功。"""
        outputs = []
        for call in calls:
            capability = getattr(self.capabilities, call.capability)
            try:
                result = await getattr(capability, call.method)(*call.args)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.exception("Capability %s.%s raised", call.capability, call.method)
                return CapabilityResult(success=False, error=f"{type(e).__name__}: {e}")
            if not result.success:
                return CapabilityResult(success=False, output=result.output, error=result.error)
            if result.output:
                outputs.append(result.output)
        return CapabilityResult(success=True, output="\n".join(outputs) or None)

    # ------------------------------------------------------------------
    # 动作 → 外部调用
    # ------------------------------------------------------------------

    def _plan(
        self,
        rule: RuleDefinition,
        action,
        event: AlertEventData,
        variables: dict[str, Any],
    ) -> list[PlannedCall]:
        p = action.parameters
        t = ActionType(action.type)

        if t == ActionType.RUN_SCRIPT:
            device = self._device(p.device_id, event)
            params = {
                k: render_template(v, variables) if isinstance(v, str) else v
                for k, v in p.script_parameters.items()
            }
            return [PlannedCall("script_runner", "run_script", (p.script_ref, device, params),
                                f"run script {p.script_ref} on {device}")]

        if t in BUILTIN_SCRIPTS:
            device = self._device(p.device_id, event)
            if t == ActionType.RESTART_SERVICE:
                params = {"serviceName": p.service_name}
            elif t == ActionType.CLEAR_CACHE:
                params = {"cacheType": p.cache_type}
            else:
                params = {"patchId": p.patch_id, "reboot": p.reboot}
            script = BUILTIN_SCRIPTS[t]
            return [PlannedCall("script_runner", "run_script", (script, device, params),
                                f"{script} on {device}")]

        if t == ActionType.SEND_NOTIFICATION:
            payload = {
                "title": render_template(p.title, variables),
                "message": render_template(p.message, variables),
                "priority": p.priority,
                "recipients": p.recipients,
                "ruleName": rule.name,
                "externalId": event.external_id,
            }
            return [
                PlannedCall("notifier", "send_notification", (channel, payload), f"notify {channel}")
                for channel in p.channels
            ]

        if t == ActionType.ESCALATE:
            target = p.target or rule.escalation_target
            if target is None:
                raise ActionConfigError("No escalation target configured")
            context = {
                "reason": render_template(p.reason, variables),
                "ruleId": rule.id,
                "ruleName": rule.name,
                "eventId": event.id,
                "externalId": event.external_id,
                "alertType": event.attributes.get("alertType"),
                "severity": event.attributes.get("severity"),
                "deviceName": event.attributes.get("deviceName"),
            }
            return [PlannedCall("escalator", "escalate", (target, context), f"escalate to {target.label()}")]

        ticket = self._ticket(p.ticket_ref, event, variables)
        if t == ActionType.UPDATE_TICKET:
            patch: dict[str, Any] = {}
            if p.status:
                patch["status"] = p.status
            if p.priority:
                patch["priority"] = p.priority
            if p.note_template:
                patch["note"] = render_template(p.note_template, variables)
            if p.custom_fields:
                patch["customFields"] = p.custom_fields
        elif t == ActionType.CLOSE_TICKET:
            resolution = render_template(p.resolution, variables)
            patch = {"status": p.status, "resolution": resolution, "note": resolution}
        elif t == ActionType.ADD_NOTE:
            patch = {"note": render_template(p.note_template, variables), "internal": p.internal}
        elif t == ActionType.ASSIGN_TICKET:
            patch = {"assignee": {"kind": p.assignee_kind.value, "ref": p.assignee}}
        else:
            raise ActionConfigError(f"Unsupported action type: {action.type}")
        return [PlannedCall("ticket_system", "update_ticket", (ticket, patch), f"{t.value} on ticket {ticket}")]

    @staticmethod
    def _device(device_id: Optional[str], event: AlertEventData) -> str:
        device = device_id or event.attributes.get("deviceId")
        if not device:
            raise ActionConfigError("No device id on action or event")
        return str(device)

    @staticmethod
    def _ticket(ticket_ref: Optional[str], event: AlertEventData, variables: dict[str, Any]) -> str:
        ticket = render_template(ticket_ref, variables) if ticket_ref else event.attributes.get("ticketId")
        if not ticket:
            raise ActionConfigError("No ticket reference on action or event")
        return str(ticket)


class DryRunExecutor(ActionPipelineExecutor):
    """模拟执行：规划调用、渲染模板、记录结果都照常进行，但不触达外部系统。"""

    def __init__(
        self,
        capabilities: Optional[Capabilities] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(capabilities or Capabilities(), sleep=sleep, clock=clock)

    async def _attempt(self, calls: list[PlannedCall], remaining: float) -> CapabilityResult:
        return await self._perform(calls)

    async def _perform(self, calls: list[PlannedCall]) -> CapabilityResult:
        for call in calls:
            logger.info("[DRY RUN] Would %s", call.description)
        return CapabilityResult(
            success=True,
            output="\n".join(f"[DRY RUN] Would {c.description}" for c in calls),
        )
