"""
数据模型包 (Data Models Package)

集中导出所有 SQLAlchemy ORM 模型：告警事件、自动化规则及其执行账本、升级链与升级执行。

Centrally exports all SQLAlchemy ORM models: alert events, automation rules and
their execution ledger, escalation chains and escalation executions.
"""
from app.models.alert_event import AlertEvent
from app.models.automation import AutomationRule, MappingExecution, ActionExecution
from app.models.escalation import EscalationChain, EscalationExecution

# 导出所有模型类供外部模块使用 (Export all model classes for external modules)
__all__ = [
    "AlertEvent", "AutomationRule", "MappingExecution", "ActionExecution",
    "EscalationChain", "EscalationExecution",
]
