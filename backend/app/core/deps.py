"""
FastAPI 依赖项模块 (FastAPI Dependencies Module)

从 app.state 取出在 lifespan 中组装好的自动化引擎及其协作者，供路由注入使用。
路由不直接创建引擎、存储或账本，测试时只需替换 app.state.engine。

Provides dependency functions that fetch the automation engine and its collaborators
wired in the application lifespan from app.state. Routers never construct them directly,
so tests only need to replace app.state.engine.
"""
from fastapi import Depends, Request

from app.automation.engine import AutomationEngine
from app.automation.escalation import EscalationController
from app.automation.ledger import ExecutionLedger
from app.automation.store import AutomationStore


def get_engine(request: Request) -> AutomationEngine:
    """当前应用的自动化引擎 (The application's automation engine)"""
    return request.app.state.engine


def get_store(engine: AutomationEngine = Depends(get_engine)) -> AutomationStore:
    return engine.store


def get_ledger(engine: AutomationEngine = Depends(get_engine)) -> ExecutionLedger:
    return engine.ledger


def get_escalation(engine: AutomationEngine = Depends(get_engine)) -> EscalationController:
    return engine.escalation
