"""
外部能力接口：脚本执行、工单系统、通知、升级。

引擎只通过这些接口调用外部系统，具体实现由外部协作方提供并在构造引擎时注入。
supports_cancellation 表示调用可以被超时取消；为 False 时超时后仍等待调用结束。
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Optional

import httpx

from .models import CapabilityResult, EscalationTarget

logger = logging.getLogger(__name__)


class ScriptRunner(ABC):
    """在设备上执行脚本。"""
    supports_cancellation: bool = True

    @abstractmethod
    async def run_script(self, script_ref: str, device_id: Optional[str], params: dict[str, Any]) -> CapabilityResult:
        ...


class TicketSystem(ABC):
    """更新 PSA 工单（状态、优先级、备注、指派）。"""
    supports_cancellation: bool = True

    @abstractmethod
    async def update_ticket(self, ticket_ref: str, patch: dict[str, Any]) -> CapabilityResult:
        ...


class Notifier(ABC):
    """向某个通知渠道发送消息。"""
    supports_cancellation: bool = True

    @abstractmethod
    async def send_notification(self, channel: str, payload: dict[str, Any]) -> CapabilityResult:
        ...


class Escalator(ABC):
    """把问题升级给用户或用户组。"""
    supports_cancellation: bool = True

    @abstractmethod
    async def escalate(self, target: EscalationTarget, context: dict[str, Any]) -> CapabilityResult:
        ...


class UnconfiguredCapability(ScriptRunner, TicketSystem, Notifier, Escalator):
    """未配置外部系统时的默认实现，所有调用都返回失败。"""

    def __init__(self, name: str = "capability") -> None:
        self.name = name

    def _fail(self) -> CapabilityResult:
        return CapabilityResult(success=False, error=f"{self.name} not configured")

    async def run_script(self, script_ref, device_id, params) -> CapabilityResult:
        return self._fail()

    async def update_ticket(self, ticket_ref, patch) -> CapabilityResult:
        return self._fail()

    async def send_notification(self, channel, payload) -> CapabilityResult:
        return self._fail()

    async def escalate(self, target, context) -> CapabilityResult:
        return self._fail()


class WebhookNotifier(Notifier):
    """把通知以 JSON POST 到一个 Webhook 地址（Teams/Slack 兼容的 text 字段）。"""

    def __init__(self, url: str, timeout: float = 10) -> None:
        self.url = url
        self.timeout = timeout

    async def send_notification(self, channel: str, payload: dict[str, Any]) -> CapabilityResult:
        title = payload.get("title", "")
        message = payload.get("message", "")
        body = {"channel": channel, "text": f"{title}\n{message}".strip(), **payload}
        try:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                resp = await client.post(self.url, json=body)
        except httpx.HTTPError as e:
            logger.warning("Notification to %s failed: %s", channel, e)
            return CapabilityResult(success=False, error=f"{type(e).__name__}: {e}")
        if resp.status_code >= 400:
            return CapabilityResult(success=False, error=f"HTTP {resp.status_code}: {resp.text[:500]}")
        return CapabilityResult(success=True, output=f"delivered to {channel}")


class NotifierEscalator(Escalator):
    """通过通知渠道完成升级：给每个渠道发送一条升级消息，任一渠道成功即视为成功。"""

    def __init__(self, notifier: Notifier, channels: Optional[list[str]] = None) -> None:
        self.notifier = notifier
        self.channels = channels or ["escalation"]

    async def escalate(self, target: EscalationTarget, context: dict[str, Any]) -> CapabilityResult:
        payload = {
            "title": f"Escalation to {target.label()}",
            "message": context.get("reason", ""),
            "priority": "high",
            "recipients": [target.ref],
            "context": context,
        }
        errors = []
        for channel in self.channels:
            result = await self.notifier.send_notification(channel, payload)
            if result.success:
                return CapabilityResult(success=True, output=f"escalated to {target.label()} via {channel}")
            errors.append(f"{channel}: {result.error}")
        return CapabilityResult(success=False, error="; ".join(errors))


@dataclass
class Capabilities:
    """注入给动作执行器的外部能力集合。"""
    script_runner: ScriptRunner = field(default_factory=lambda: UnconfiguredCapability("script runner"))
    ticket_system: TicketSystem = field(default_factory=lambda: UnconfiguredCapability("ticket system"))
    notifier: Notifier = field(default_factory=lambda: UnconfiguredCapability("notifier"))
    escalator: Escalator = field(default_factory=lambda: UnconfiguredCapability("escalator"))
