"""
RMM Autopilot 测试基础配置

提供 SQLite 异步数据库、mock Redis、记录调用的外部能力替身、自动化引擎和 HTTP 测试客户端等通用 fixture。
所有测试使用隔离的 SQLite 数据库，不依赖外部 PostgreSQL/Redis。
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, AsyncGenerator, Optional

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

# 必须在导入 app 之前设置环境变量，避免真实连接
import os
os.environ["POSTGRES_HOST"] = "localhost"
os.environ["POSTGRES_PORT"] = "5432"
os.environ["REDIS_HOST"] = "localhost"
os.environ["AUTOMATION_QUEUE_BACKEND"] = "memory"
os.environ["AUTOMATION_DRY_RUN"] = "false"

from app.automation.capabilities import Capabilities, Escalator, Notifier, ScriptRunner, TicketSystem
from app.automation.engine import AutomationEngine
from app.automation.escalation import EscalationController
from app.automation.executor import ActionPipelineExecutor
from app.automation.ledger import ExecutionLedger
from app.automation.models import AlertEventData, CapabilityResult, EscalationTarget, RuleDefinition
from app.automation.store import AutomationStore
from app.core.database import Base
import app.models  # noqa: F401  注册所有表

UTC = timezone.utc


# ── Mock Redis ────────────────────────────────────────────────────────
class FakeRedis:
    """内存级 Redis 模拟，支持事件队列用到的 lpush/brpop/ping。"""
    def __init__(self):
        self._lists: dict[str, list[str]] = {}

    async def lpush(self, key: str, *values: str) -> int:
        items = self._lists.setdefault(key, [])
        for v in values:
            items.insert(0, v)
        return len(items)

    async def brpop(self, key: str, timeout: int = 0) -> Optional[tuple[str, str]]:
        items = self._lists.get(key)
        if not items:
            await asyncio.sleep(0)
            return None
        return key, items.pop()

    async def llen(self, key: str) -> int:
        return len(self._lists.get(key, []))

    async def ping(self) -> bool:
        return True

    async def close(self) -> None:
        pass


# ── 外部能力替身 (Capability doubles) ─────────────────────────────────
class FakeScriptRunner(ScriptRunner):
    """记录脚本调用；failing 中的脚本返回失败，calls_for 可按脚本名过滤。"""
    def __init__(self, failing=(), clock=None, duration: float = 0, cancellable: bool = True):
        self.calls: list[tuple[str, Optional[str], dict]] = []
        self.failing = set(failing)
        self.clock = clock
        self.duration = duration
        self.supports_cancellation = cancellable

    async def run_script(self, script_ref, device_id, params) -> CapabilityResult:
        self.calls.append((script_ref, device_id, params))
        if self.clock is not None and self.duration:
            self.clock.advance(self.duration)
        if script_ref in self.failing:
            return CapabilityResult(success=False, error=f"{script_ref} exited with code 1")
        return CapabilityResult(success=True, output=f"{script_ref} ok")

    def scripts(self) -> list[str]:
        return [c[0] for c in self.calls]


class FakeTicketSystem(TicketSystem):
    def __init__(self, fail: bool = False):
        self.calls: list[tuple[str, dict]] = []
        self.fail = fail

    async def update_ticket(self, ticket_ref, patch) -> CapabilityResult:
        self.calls.append((ticket_ref, patch))
        if self.fail:
            return CapabilityResult(success=False, error="PSA returned 500")
        return CapabilityResult(success=True, output=f"ticket {ticket_ref} updated")


class FakeNotifier(Notifier):
    def __init__(self, fail: bool = False):
        self.calls: list[tuple[str, dict]] = []
        self.fail = fail

    async def send_notification(self, channel, payload) -> CapabilityResult:
        self.calls.append((channel, payload))
        if self.fail:
            return CapabilityResult(success=False, error="channel unavailable")
        return CapabilityResult(success=True)


class FakeEscalator(Escalator):
    def __init__(self, fail: bool = False):
        self.calls: list[tuple[EscalationTarget, dict]] = []
        self.fail = fail

    async def escalate(self, target, context) -> CapabilityResult:
        self.calls.append((target, context))
        if self.fail:
            return CapabilityResult(success=False, error="pager unreachable")
        return CapabilityResult(success=True)


class FakeClock:
    """单调时钟替身：sleep 只推进时间，不真正等待。"""
    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


async def no_sleep(_seconds: float) -> None:
    return None


# ── 构造辅助函数 ──────────────────────────────────────────────────────
def make_rule(**kwargs) -> RuleDefinition:
    defaults: dict[str, Any] = dict(
        name="Disk cleanup",
        priority=0,
        conditions={"all": [{"field": "alertType", "operator": "equals", "value": "DISK_SPACE_LOW"}]},
        actions=[{"type": "run_script", "order": 1, "parameters": {"script_ref": "disk_cleanup"}}],
        max_retries=0,
        retry_delay_seconds=0,
    )
    defaults.update(kwargs)
    return RuleDefinition.model_validate(defaults)


def make_event(**attributes) -> AlertEventData:
    attrs = {
        "alertType": "DISK_SPACE_LOW",
        "severity": "CRITICAL",
        "deviceId": "dev-1",
        "deviceName": "web-01",
        "message": "Disk C: at 92%",
        "ticketId": "T-100",
    }
    attrs.update(attributes)
    return AlertEventData(id=1, external_id="generic:evt-1", source="generic", event_type="alert.created", attributes=attrs)


def alert_payload(alert_id: str, **fields) -> dict:
    """generic 来源的告警载荷。"""
    payload = {
        "alertId": alert_id,
        "alertType": "DISK_SPACE_LOW",
        "severity": "CRITICAL",
        "deviceId": "dev-1",
        "deviceName": "web-01",
        "message": "Disk C: at 92%",
    }
    payload.update(fields)
    return payload


# ── Fixtures ──────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_engine(tmp_path):
    """每个测试一个 SQLite 文件数据库，各会话使用独立连接。"""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(db_engine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
def store(session_factory) -> AutomationStore:
    return AutomationStore(session_factory)


@pytest.fixture
def ledger(session_factory) -> ExecutionLedger:
    return ExecutionLedger(session_factory)


@pytest.fixture
def script_runner() -> FakeScriptRunner:
    return FakeScriptRunner()


@pytest.fixture
def ticket_system() -> FakeTicketSystem:
    return FakeTicketSystem()


@pytest.fixture
def notifier() -> FakeNotifier:
    return FakeNotifier()


@pytest.fixture
def escalator() -> FakeEscalator:
    return FakeEscalator()


@pytest.fixture
def capabilities(script_runner, ticket_system, notifier, escalator) -> Capabilities:
    return Capabilities(
        script_runner=script_runner,
        ticket_system=ticket_system,
        notifier=notifier,
        escalator=escalator,
    )


@pytest.fixture
def escalation(session_factory, escalator) -> EscalationController:
    return EscalationController(session_factory, escalator)


@pytest.fixture
def engine_clock():
    """引擎的墙钟，默认为周一 2026-10-19 10:00 UTC，测试可以修改 value。"""
    class _Clock:
        value = datetime(2026, 10, 19, 10, 0, tzinfo=UTC)

        def __call__(self) -> datetime:
            return self.value

    return _Clock()


@pytest_asyncio.fixture
async def automation_engine(
    store, ledger, capabilities, escalation, engine_clock,
) -> AsyncGenerator[AutomationEngine, None]:
    """注入了替身能力的自动化引擎（未启动 worker 池）。"""
    engine = AutomationEngine(
        store=store,
        ledger=ledger,
        executor=ActionPipelineExecutor(capabilities, sleep=no_sleep),
        escalation=escalation,
        notifier=capabilities.notifier,
        concurrency=1,
        store_retry_delay=0,
        clock=engine_clock,
    )
    yield engine
    await engine.stop()


@pytest_asyncio.fixture
async def client(automation_engine: AutomationEngine) -> AsyncGenerator[AsyncClient, None]:
    """提供挂载测试引擎的异步 HTTP 测试客户端（不运行 lifespan）。"""
    from app.main import app

    app.state.engine = automation_engine
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
