"""
自动化规则模式定义 (Automation Rule Schema Definitions)

定义自动化规则、规则执行记录、告警事件相关的 API 请求和响应模式。
规则的创建与更新直接复用引擎的 RuleDefinition 校验，保存前即可发现格式错误的规则。

Defines API request and response schemas for automation rules, mapping executions
and alert events. Rule create/update reuse the engine's RuleDefinition validation
so malformed rules are rejected at save time.
"""
from datetime import datetime
from typing import Any, Optional, List

from pydantic import BaseModel, Field

from app.automation.models import (
    Action,
    ConditionGroup,
    EscalationTarget,
    NotificationSettings,
    RuleDefinition,
    ScheduleRestriction,
)


class RuleCreate(RuleDefinition):
    """创建自动化规则请求模式 (Create Automation Rule Request Schema)"""
    pass


class RuleUpdate(BaseModel):
    """更新自动化规则请求模式，只包含需要修改的字段 (Update Automation Rule Request Schema)"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    is_active: Optional[bool] = None
    priority: Optional[int] = None
    conditions: Optional[ConditionGroup] = None
    actions: Optional[List[Action]] = None
    max_retries: Optional[int] = Field(None, ge=0, le=10)
    retry_delay_seconds: Optional[int] = Field(None, ge=0)
    execution_timeout_seconds: Optional[int] = Field(None, ge=1)
    stop_on_first_success: Optional[bool] = None
    escalate_after_failures: Optional[int] = Field(None, ge=1)
    escalation_target: Optional[EscalationTarget] = None
    escalation_chain_id: Optional[int] = None
    schedule: Optional[ScheduleRestriction] = None
    notification_settings: Optional[NotificationSettings] = None


class RuleResponse(BaseModel):
    """自动化规则响应模式 (Automation Rule Response Schema)"""
    id: int
    name: str
    description: Optional[str] = None
    is_active: bool
    priority: int
    conditions: dict
    actions: list
    max_retries: int
    retry_delay_seconds: int
    execution_timeout_seconds: int
    stop_on_first_success: bool
    escalate_after_failures: Optional[int] = None
    escalation_target: Optional[dict] = None
    escalation_chain_id: Optional[int] = None
    schedule: Optional[dict] = None
    notification_settings: Optional[dict] = None
    execution_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    consecutive_failures: int = 0
    last_executed_at: Optional[datetime] = None
    last_execution_status: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class RuleCloneRequest(BaseModel):
    """克隆规则请求模式 (Clone Rule Request Schema)"""
    name: Optional[str] = Field(None, min_length=1, max_length=255, description="新规则名称，默认为原名称加 (Copy)")


class RuleTestRequest(BaseModel):
    """手动触发规则请求模式 (Manual Rule Trigger Request Schema)"""
    payload: dict[str, Any] = Field(default_factory=dict, description="合成告警载荷")
    dry_run: bool = Field(True, description="是否只模拟外部调用")


class RuleStatsResponse(BaseModel):
    """规则统计响应模式 (Rule Statistics Response Schema)"""
    rule_id: int
    rule_name: str
    execution_count: int
    success_count: int
    failure_count: int
    partial_count: int
    success_rate: Optional[float] = None
    consecutive_failures: int
    last_executed_at: Optional[datetime] = None
    last_execution_status: Optional[str] = None
    avg_duration_ms: Optional[int] = None
    escalation_count: int
    active_escalations: int


class ActionExecutionResponse(BaseModel):
    """动作执行结果响应模式 (Action Execution Result Response Schema)"""
    id: int
    action_order: int
    action_type: str
    action_snapshot: dict
    status: str
    attempts: int
    timed_out: bool
    output: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class MappingExecutionResponse(BaseModel):
    """规则执行记录响应模式 (Mapping Execution Response Schema)"""
    id: int
    rule_id: int
    rule_name: str
    event_id: Optional[int] = None
    status: str
    test_mode: bool
    timed_out: bool
    skipped_actions: List[int] = Field(default_factory=list)
    escalated: bool
    escalated_to: Optional[str] = None
    escalation_execution_id: Optional[int] = None
    error: Optional[str] = None
    started_at: datetime
    ended_at: Optional[datetime] = None
    duration_ms: Optional[int] = None

    model_config = {"from_attributes": True}


class MappingExecutionDetail(MappingExecutionResponse):
    """规则执行详情，含各动作结果 (Mapping Execution Detail with Action Results)"""
    actions: List[ActionExecutionResponse] = Field(default_factory=list)


class AlertEventResponse(BaseModel):
    """告警事件响应模式 (Alert Event Response Schema)"""
    id: int
    external_id: str
    source: str
    event_type: str
    attributes: dict
    status: str
    retry_count: int
    last_error: Optional[str] = None
    result: Optional[dict] = None
    received_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class WebhookAck(BaseModel):
    """Webhook 接收确认 (Webhook Receipt Acknowledgement)"""
    received: bool = True
    event_id: int
    external_id: str
    status: str
