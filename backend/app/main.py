"""
RMM Autopilot 后端应用入口模块 (RMM Autopilot Backend Application Entry Module)

RMM Autopilot 告警到动作自动化服务的主应用入口，负责 FastAPI 应用的完整生命周期管理。
包含应用初始化、自动化引擎组装、路由注册、后台任务启动等核心功能。

Main application entry point for the RMM Autopilot alert-to-action automation service,
responsible for complete FastAPI application lifecycle management.
Includes application initialization, automation engine wiring, route registration, and background task startup.

主要功能 (Main Features):
- 数据库表自动创建和初始化 (Automatic database table creation and initialization)
- 自动化引擎组装与 worker 池启动 (Automation engine wiring and worker pool startup)
- 可选的 Redis 共享事件队列监听 (Optional shared Redis event queue listener)
- 升级调度后台任务 (Escalation scheduler background task)
- 健康检查和监控 (Health checks and monitoring)
"""
import asyncio
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy import text

from app.automation.engine import build_engine
from app.automation.listener import RedisEventQueue
from app.core.config import settings as app_settings
from app.core.exceptions import register_exception_handlers
from app.core.database import engine, async_session, Base
from app.core.redis import get_redis, redis_available, close_redis
# 导入所有模型以确保 SQLAlchemy 表注册 (Import all models to ensure SQLAlchemy table registration)
from app.models import AlertEvent, AutomationRule, MappingExecution, ActionExecution, EscalationChain, EscalationExecution  # noqa: F401
# 导入所有路由模块 (Import all router modules)
from app.routers import webhooks
from app.routers import automation
from app.routers import escalation
from app.tasks.automation_listener import automation_listener_loop
from app.tasks.escalation_scheduler import escalation_scheduler_loop

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """
    应用生命周期管理器 (Application Lifecycle Manager)

    启动时创建数据表、组装自动化引擎并启动 worker 池、Redis 监听和升级调度；
    关闭时按相反顺序停止后台任务并释放连接。

    Creates tables, wires the automation engine and starts the worker pool, the Redis
    listener and the escalation scheduler at startup; stops them in reverse order
    and releases connections at shutdown.
    """
    # 自动创建数据库表结构 (Automatically create database table structure)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    # Redis 共享队列（仅在配置启用时） (Shared Redis queue, only if enabled)
    queue = None
    if app_settings.automation_queue_backend == "redis":
        queue = RedisEventQueue(
            await get_redis(),
            key=app_settings.automation_queue_key,
            poll_timeout=app_settings.automation_queue_poll_seconds,
        )

    automation_engine = build_engine(
        app_settings, async_session, publish=queue.publish if queue is not None else None,
    )
    app.state.engine = automation_engine

    background_tasks = []
    if app_settings.automation_enabled:
        await automation_engine.start()
        if queue is not None:
            background_tasks.append(asyncio.create_task(automation_listener_loop(queue, automation_engine)))
        background_tasks.append(asyncio.create_task(escalation_scheduler_loop(
            automation_engine.escalation, app_settings.escalation_scan_interval_seconds,
        )))
    else:
        logger.warning("AUTOMATION_ENABLED is false, webhooks are recorded but not processed")

    # 应用运行阶段 (Application running phase)
    yield

    # 关闭阶段：清理资源和取消任务 (Shutdown Phase: Cleanup resources and cancel tasks)
    for task in background_tasks:
        task.cancel()
    await asyncio.gather(*background_tasks, return_exceptions=True)
    await automation_engine.stop()

    # 关闭连接池和资源 (Close connection pools and resources)
    await close_redis()
    await engine.dispose()


# 创建 FastAPI 应用实例 (Create FastAPI application instance)
app = FastAPI(
    title="RMM Autopilot",
    description="Alert-to-action automation for RMM/PSA platforms | RMM/PSA 告警到动作自动化引擎",
    version="0.1.0",
    lifespan=lifespan,
)

# 注册全局异常处理器 (Register global exception handlers)
register_exception_handlers(app)

# 配置 CORS 中间件 (Configure CORS middleware)
# 生产环境下不开放跨域 (No cross-origin access in production)
is_production = app_settings.environment.lower() == "production"
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"] if not is_production else [],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["*"],
)

# 注册所有 API 路由模块 (Register all API router modules)
app.include_router(webhooks.router)  # Webhook 接收 (Webhook ingestion)
app.include_router(automation.router)  # 自动化规则与执行记录 (Automation rules and executions)
app.include_router(escalation.router)  # 升级链与升级执行 (Escalation chains and executions)


@app.get("/health")
@app.get("/api/v1/health")
async def health():
    """
    健康检查接口 (Health Check Endpoint)

    验证数据库连通性，以及启用 Redis 队列时的 Redis 连通性，并报告自动化引擎是否在运行。
    用于负载均衡器健康检查和运维故障排查。

    Verifies database connectivity, Redis connectivity when the Redis queue is enabled,
    and reports whether the automation engine is running.

    Returns:
        dict: 包含各组件状态和时间戳的健康检查结果 (Health check results with component status and timestamp)
    """
    checks = {"api": "ok"}

    # 数据库连通性检查 (Database connectivity check)
    try:
        async with engine.connect() as conn:
            await conn.execute(text("SELECT 1"))
        checks["database"] = "ok"
    except Exception:
        checks["database"] = "error"

    # Redis 连通性检查 (Redis connectivity check)
    if app_settings.automation_queue_backend == "redis":
        checks["redis"] = "ok" if await redis_available() else "error"

    automation_engine = getattr(app.state, "engine", None)
    checks["automation"] = "ok" if automation_engine is not None and automation_engine.running else "stopped"

    # 所有组件正常则返回 ok，否则返回 degraded (Return 'ok' if all components are healthy, otherwise 'degraded')
    status = "ok" if all(v == "ok" for v in checks.values()) else "degraded"

    return {
        "status": status,
        "checks": checks,
        "timestamp": datetime.now(timezone.utc).isoformat()
    }
