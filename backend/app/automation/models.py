"""
自动化模块的 Pydantic 数据模型。

规则的条件、动作、时间窗口在保存时按这里的类型校验，引擎内部只传递这些强类型对象。
动作是按 type 区分的联合类型，每种动作有自己的参数模型。
"""
from __future__ import annotations

import enum
import math
import re
from datetime import datetime, timezone
from typing import Annotated, Any, Literal, Optional, Union
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

UTC = timezone.utc


# ============================================================
# 枚举 (Enums)
# ============================================================

class EventStatus(str, enum.Enum):
    """告警事件处理状态，只能单向流转。"""
    PENDING = "pending"
    PROCESSING = "processing"
    PROCESSED = "processed"
    FAILED = "failed"
    IGNORED = "ignored"

    @property
    def is_terminal(self) -> bool:
        return self in (EventStatus.PROCESSED, EventStatus.FAILED, EventStatus.IGNORED)


class ConditionOperator(str, enum.Enum):
    """条件运算符。"""
    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    REGEX = "regex"
    IN = "in"
    NOT_IN = "not_in"
    GREATER_THAN = "greater_than"
    LESS_THAN = "less_than"


class ActionType(str, enum.Enum):
    """动作类型。"""
    RUN_SCRIPT = "run_script"
    UPDATE_TICKET = "update_ticket"
    SEND_NOTIFICATION = "send_notification"
    ESCALATE = "escalate"
    CLOSE_TICKET = "close_ticket"
    ADD_NOTE = "add_note"
    ASSIGN_TICKET = "assign_ticket"
    RESTART_SERVICE = "restart_service"
    CLEAR_CACHE = "clear_cache"
    INSTALL_UPDATE = "install_update"


class ExecutionStatus(str, enum.Enum):
    """规则执行的整体状态。"""
    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILURE = "failure"
    PARTIAL = "partial"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionStatus.SUCCESS, ExecutionStatus.FAILURE, ExecutionStatus.PARTIAL)


class ActionStatus(str, enum.Enum):
    """单个动作的结果。被跳过的动作不产生结果，只记录在 skipped_orders。"""
    SUCCESS = "success"
    FAILURE = "failure"


class AssigneeKind(str, enum.Enum):
    USER = "user"
    GROUP = "group"


class EscalationStatus(str, enum.Enum):
    ACTIVE = "active"
    RESOLVED = "resolved"


# ============================================================
# 条件 (Conditions)
# ============================================================

NUMERIC_OPERATORS = (ConditionOperator.GREATER_THAN, ConditionOperator.LESS_THAN)
SET_OPERATORS = (ConditionOperator.IN, ConditionOperator.NOT_IN)


class Condition(BaseModel):
    """单个条件：字段路径 + 运算符 + 比较值。"""
    field: str = Field(min_length=1)
    operator: ConditionOperator
    value: Any = None

    @model_validator(mode="after")
    def _check_value(self) -> "Condition":
        if self.operator in SET_OPERATORS:
            if not isinstance(self.value, (list, tuple, set)):
                raise ValueError(f"operator {self.operator.value} requires a list value")
            self.value = list(self.value)
        elif self.operator == ConditionOperator.REGEX:
            if not isinstance(self.value, str):
                raise ValueError("operator regex requires a string pattern")
            try:
                re.compile(self.value)
            except re.error as e:
                raise ValueError(f"invalid regex pattern: {e}") from e
        elif self.operator in NUMERIC_OPERATORS:
            if isinstance(self.value, bool):
                raise ValueError(f"operator {self.operator.value} requires a numeric value")
            try:
                number = float(self.value)
            except (TypeError, ValueError):
                raise ValueError(f"operator {self.operator.value} requires a numeric value") from None
            if math.isnan(number):
                raise ValueError(f"operator {self.operator.value} requires a numeric value")
        return self


class ConditionGroup(BaseModel):
    """all 为合取，any 为析取；两者都为空时匹配一切。"""
    all: list[Condition] = Field(default_factory=list)
    any: list[Condition] = Field(default_factory=list)


# ============================================================
# 动作参数 (Action Parameters)
# ============================================================

class EscalationTarget(BaseModel):
    """升级目标：用户或用户组。"""
    kind: AssigneeKind = AssigneeKind.USER
    ref: str = Field(min_length=1)

    def label(self) -> str:
        return f"{self.kind.value}:{self.ref}"


class RunScriptParams(BaseModel):
    script_ref: str = Field(min_length=1)
    device_id: Optional[str] = None  # 为空时使用事件的 deviceId
    script_parameters: dict[str, Any] = Field(default_factory=dict)


class UpdateTicketParams(BaseModel):
    ticket_ref: Optional[str] = None  # 为空时使用事件的 ticketId
    status: Optional[str] = None
    priority: Optional[str] = None
    note_template: Optional[str] = None
    custom_fields: dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="after")
    def _check_patch(self) -> "UpdateTicketParams":
        if not (self.status or self.priority or self.note_template or self.custom_fields):
            raise ValueError("update_ticket needs at least one of status, priority, note_template, custom_fields")
        return self


class SendNotificationParams(BaseModel):
    channels: list[str] = Field(min_length=1)
    title: str = "[{{severity}}] {{alertType}} on {{deviceName}}"
    message: str = "{{message}}"
    priority: str = "normal"
    recipients: list[str] = Field(default_factory=list)


class EscalateParams(BaseModel):
    target: Optional[EscalationTarget] = None  # 为空时使用规则的升级目标
    reason: str = "Escalated by automation rule {{ruleName}}"


class CloseTicketParams(BaseModel):
    ticket_ref: Optional[str] = None
    status: str = "Closed"
    resolution: str = "Resolved automatically by {{ruleName}}"


class AddNoteParams(BaseModel):
    ticket_ref: Optional[str] = None
    note_template: str = Field(min_length=1)
    internal: bool = True


class AssignTicketParams(BaseModel):
    ticket_ref: Optional[str] = None
    assignee: str = Field(min_length=1)
    assignee_kind: AssigneeKind = AssigneeKind.USER


class RestartServiceParams(BaseModel):
    service_name: str = Field(min_length=1)
    device_id: Optional[str] = None


class ClearCacheParams(BaseModel):
    cache_type: str = "system"
    device_id: Optional[str] = None


class InstallUpdateParams(BaseModel):
    patch_id: Optional[str] = None  # 为空表示安装所有待装补丁
    device_id: Optional[str] = None
    reboot: bool = False


# ============================================================
# 动作 (Actions)，按 type 区分的联合类型
# ============================================================

class ActionBase(BaseModel):
    order: int = Field(ge=0)
    continue_on_error: bool = False


class RunScriptAction(ActionBase):
    type: Literal["run_script"] = "run_script"
    parameters: RunScriptParams


class UpdateTicketAction(ActionBase):
    type: Literal["update_ticket"] = "update_ticket"
    parameters: UpdateTicketParams


class SendNotificationAction(ActionBase):
    type: Literal["send_notification"] = "send_notification"
    parameters: SendNotificationParams


class EscalateAction(ActionBase):
    type: Literal["escalate"] = "escalate"
    parameters: EscalateParams = Field(default_factory=EscalateParams)


class CloseTicketAction(ActionBase):
    type: Literal["close_ticket"] = "close_ticket"
    parameters: CloseTicketParams = Field(default_factory=CloseTicketParams)


class AddNoteAction(ActionBase):
    type: Literal["add_note"] = "add_note"
    parameters: AddNoteParams


class AssignTicketAction(ActionBase):
    type: Literal["assign_ticket"] = "assign_ticket"
    parameters: AssignTicketParams


class RestartServiceAction(ActionBase):
    type: Literal["restart_service"] = "restart_service"
    parameters: RestartServiceParams


class ClearCacheAction(ActionBase):
    type: Literal["clear_cache"] = "clear_cache"
    parameters: ClearCacheParams = Field(default_factory=ClearCacheParams)


class InstallUpdateAction(ActionBase):
    type: Literal["install_update"] = "install_update"
    parameters: InstallUpdateParams = Field(default_factory=InstallUpdateParams)


Action = Annotated[
    Union[
        RunScriptAction,
        UpdateTicketAction,
        SendNotificationAction,
        EscalateAction,
        CloseTicketAction,
        AddNoteAction,
        AssignTicketAction,
        RestartServiceAction,
        ClearCacheAction,
        InstallUpdateAction,
    ],
    Field(discriminator="type"),
]


# ============================================================
# 时间窗口 (Schedule Restriction)
# ============================================================

class HourWindow(BaseModel):
    """允许执行的小时区间 [start, end)；start > end 表示跨越午夜。"""
    start: int = Field(ge=0, le=23)
    end: int = Field(ge=1, le=24)

    @model_validator(mode="after")
    def _check_window(self) -> "HourWindow":
        if self.start == self.end:
            raise ValueError("allowed_hours start and end must differ")
        return self


class BlackoutPeriod(BaseModel):
    """禁止执行的时间段 [start, end)。"""
    start: datetime
    end: datetime
    reason: Optional[str] = None

    @model_validator(mode="after")
    def _check_period(self) -> "BlackoutPeriod":
        # 时区感知与否须一致，否则无法比较
        if (self.start.tzinfo is None) != (self.end.tzinfo is None):
            raise ValueError("blackout start and end must both be timezone-aware or both naive")
        if self.end <= self.start:
            raise ValueError("blackout end must be after start")
        return self


class ScheduleRestriction(BaseModel):
    """规则的执行时间限制。allowed_days 以周日为 0。"""
    enabled: bool = False
    timezone: str = "UTC"
    allowed_days: list[int] = Field(default_factory=lambda: [0, 1, 2, 3, 4, 5, 6])
    allowed_hours: Optional[HourWindow] = None
    blackout_periods: list[BlackoutPeriod] = Field(default_factory=list)

    @field_validator("timezone")
    @classmethod
    def _check_timezone(cls, v: str) -> str:
        try:
            ZoneInfo(v)
        except (ZoneInfoNotFoundError, ValueError) as e:
            raise ValueError(f"unknown timezone: {v}") from e
        return v

    @field_validator("allowed_days")
    @classmethod
    def _check_days(cls, v: list[int]) -> list[int]:
        if any(d < 0 or d > 6 for d in v):
            raise ValueError("allowed_days must be within 0 (Sunday) .. 6 (Saturday)")
        return sorted(set(v))

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone)


class NotificationSettings(BaseModel):
    """规则执行结束后的通知设置。"""
    on_success: bool = False
    on_failure: bool = True
    on_escalation: bool = True
    channels: list[str] = Field(default_factory=list)
    recipients: list[str] = Field(default_factory=list)


# ============================================================
# 规则 (Automation Rule)
# ============================================================

class RuleDefinition(BaseModel):
    """自动化规则定义，保存时整体校验。"""
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    is_active: bool = True
    priority: int = 0
    conditions: ConditionGroup = Field(default_factory=ConditionGroup)
    actions: list[Action] = Field(min_length=1)
    max_retries: int = Field(default=3, ge=0, le=10)
    retry_delay_seconds: int = Field(default=60, ge=0)
    execution_timeout_seconds: int = Field(default=300, ge=1)
    stop_on_first_success: bool = False
    escalate_after_failures: Optional[int] = Field(default=None, ge=1)
    escalation_target: Optional[EscalationTarget] = None
    escalation_chain_id: Optional[int] = None
    schedule: Optional[ScheduleRestriction] = None
    notification_settings: Optional[NotificationSettings] = None

    @model_validator(mode="after")
    def _check_rule(self) -> "RuleDefinition":
        orders = [a.order for a in self.actions]
        if len(orders) != len(set(orders)):
            raise ValueError("action order values must be unique within a rule")
        has_target = self.escalation_target is not None or self.escalation_chain_id is not None
        if self.escalate_after_failures is not None and not has_target:
            raise ValueError("escalate_after_failures requires an escalation_target or escalation_chain_id")
        for action in self.actions:
            if isinstance(action, EscalateAction) and action.parameters.target is None and self.escalation_target is None:
                raise ValueError(f"escalate action at order {action.order} has no target and the rule has no escalation_target")
        return self

    def ordered_actions(self) -> list:
        return sorted(self.actions, key=lambda a: a.order)


# ============================================================
# 事件与执行结果 (Events and Outcomes)
# ============================================================

class AlertEventData(BaseModel):
    """引擎内部传递的告警事件快照。"""
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    external_id: str
    source: str
    event_type: str = "unknown"
    attributes: dict[str, Any] = Field(default_factory=dict)
    headers: Optional[dict[str, str]] = None
    status: EventStatus = EventStatus.PENDING
    retry_count: int = 0
    last_error: Optional[str] = None
    result: Optional[dict[str, Any]] = None
    received_at: datetime = Field(default_factory=lambda: datetime.now(UTC))

    def summary(self) -> str:
        attrs = self.attributes
        return (
            f"[{attrs.get('severity', 'unknown')}] {attrs.get('alertType', self.event_type)} "
            f"on {attrs.get('deviceName') or attrs.get('deviceId') or 'unknown'}"
        )


class CapabilityResult(BaseModel):
    """外部能力调用结果。"""
    success: bool
    output: Optional[str] = None
    error: Optional[str] = None


class ActionOutcome(BaseModel):
    """单个动作的执行结果。"""
    order: int
    action_type: ActionType
    action: dict[str, Any]
    status: ActionStatus
    attempts: int = 0
    timed_out: bool = False
    output: Optional[str] = None
    error: Optional[str] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None


class PipelineOutcome(BaseModel):
    """一次动作流水线运行的结果。"""
    status: ExecutionStatus
    results: list[ActionOutcome] = Field(default_factory=list)
    skipped_orders: list[int] = Field(default_factory=list)
    timed_out: bool = False
    error: Optional[str] = None


class RuleRunResult(BaseModel):
    """一条规则针对一个事件的运行摘要。"""
    rule_id: int
    rule_name: str
    execution_id: Optional[int] = None
    status: ExecutionStatus
    escalated: bool = False
    escalation_execution_id: Optional[int] = None
    reused: bool = False
    test_mode: bool = False
    error: Optional[str] = None

    def summary(self) -> str:
        esc = f", escalated={self.escalation_execution_id}" if self.escalated else ""
        return f"rule={self.rule_name} status={self.status.value}{esc}"


class EventProcessingResult(BaseModel):
    """一个告警事件的处理结果，保存在事件的 result 字段。"""
    event_id: int
    status: EventStatus
    matched_rule_ids: list[int] = Field(default_factory=list)
    runs: list[RuleRunResult] = Field(default_factory=list)
    stopped_by_rule_id: Optional[int] = None
    error: Optional[str] = None


# ============================================================
# 升级链 (Escalation Chains)
# ============================================================

class EscalationLevel(BaseModel):
    """升级链中的一级。"""
    level: int = Field(ge=1)
    assignee_ref: str = Field(min_length=1)
    assignee_kind: AssigneeKind = AssigneeKind.USER
    delay_minutes: int = Field(default=15, ge=0)

    def target(self) -> EscalationTarget:
        return EscalationTarget(kind=self.assignee_kind, ref=self.assignee_ref)


class EscalationChainDefinition(BaseModel):
    """升级链定义，级别必须从 1 开始连续编号。"""
    model_config = ConfigDict(from_attributes=True)

    id: Optional[int] = None
    name: str = Field(min_length=1, max_length=255)
    description: Optional[str] = None
    is_active: bool = True
    levels: list[EscalationLevel] = Field(min_length=1)

    @field_validator("levels")
    @classmethod
    def _check_levels(cls, v: list[EscalationLevel]) -> list[EscalationLevel]:
        numbers = sorted(level.level for level in v)
        if numbers != list(range(1, len(v) + 1)):
            raise ValueError("escalation levels must be consecutive starting from 1")
        return sorted(v, key=lambda level: level.level)
