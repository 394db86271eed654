"""
自动化规则模型 (Automation Rule Model)

定义告警到动作映射规则（Mapping）及其执行记录的表结构。
条件树、动作列表和时间窗口以 JSON 保存，加载时解析为强类型的 pydantic 模型。

Defines the alert-to-action mapping rule table and its execution ledger.
Condition trees, actions and schedules are stored as JSON and parsed into
typed pydantic models on load.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, Boolean, DateTime, Text, JSON, func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class AutomationRule(Base):
    """
    自动化规则表 (Automation Rule Table)

    引擎只修改统计字段（执行次数、成功/失败次数、连续失败计数、最近执行信息），
    其余字段由运维人员通过管理接口维护。

    The engine mutates only the statistics fields; everything else is maintained
    by operators through the management API.
    """
    __tablename__ = "automation_rules"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)  # 主键 ID (Primary Key ID)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)  # 规则名称 (Rule Name)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # 规则描述 (Description)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)  # 是否启用 (Is Active)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # 优先级，越大越先执行 (Priority, higher first)
    conditions: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)  # 条件组 all/any (Condition Group)
    actions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)  # 有序动作列表 (Ordered Actions)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)  # 最大重试次数 (Max Retries)
    retry_delay_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=60)  # 固定重试间隔 (Fixed Retry Delay)
    execution_timeout_seconds: Mapped[int] = mapped_column(Integer, nullable=False, default=300)  # 执行超时预算 (Execution Budget)
    stop_on_first_success: Mapped[bool] = mapped_column(Boolean, default=False)  # 成功后停止低优先级规则 (Stop On First Success)
    escalate_after_failures: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # 连续失败 N 次后升级 (Escalate After N Failures)
    escalation_target: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)  # 升级目标 {kind, ref} (Escalation Target)
    escalation_chain_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # 升级链 ID (Escalation Chain ID)
    schedule: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)  # 执行时间窗口 (Schedule Restriction)
    notification_settings: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)  # 执行结果通知 (Notification Settings)
    # 统计字段 (Statistics)
    execution_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # 执行次数 (Execution Count)
    success_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # 成功次数 (Success Count)
    failure_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # 失败次数 (Failure Count)
    consecutive_failures: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # 连续失败计数 (Consecutive Failures)
    last_executed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)  # 最近执行时间 (Last Executed At)
    last_execution_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)  # 最近执行状态 (Last Execution Status)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )  # 创建时间 (Creation Time)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )  # 更新时间 (Update Time)


class MappingExecution(Base):
    """
    规则执行记录表 (Mapping Execution Table)

    每个 规则 × 事件 一条记录，进入终态（success/failure/partial）后只读。

    One row per rule-trigger pair; read-only once terminal.
    """
    __tablename__ = "mapping_executions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)  # 主键 ID (Primary Key ID)
    rule_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)  # 规则 ID (Rule ID)
    rule_name: Mapped[str] = mapped_column(String(255), nullable=False)  # 规则名称快照 (Rule Name Snapshot)
    event_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True, index=True)  # 告警事件 ID (Alert Event ID)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)  # 执行状态 (Overall Status)
    test_mode: Mapped[bool] = mapped_column(Boolean, default=False)  # 是否为测试执行 (Test Mode Run)
    timed_out: Mapped[bool] = mapped_column(Boolean, default=False)  # 是否超出执行预算 (Budget Exhausted)
    skipped_actions: Mapped[list] = mapped_column(JSON, nullable=False, default=list)  # 被跳过的动作顺序号 (Skipped Action Orders)
    escalated: Mapped[bool] = mapped_column(Boolean, default=False)  # 是否触发升级 (Escalated)
    escalated_to: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)  # 升级目标 (Escalation Target)
    escalation_execution_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # 升级执行 ID (Escalation Execution ID)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # 失败原因 (Failure Reason)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)  # 开始时间 (Start Time)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)  # 结束时间 (End Time)
    duration_ms: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # 耗时毫秒 (Duration ms)


class ActionExecution(Base):
    """
    动作执行结果表 (Action Execution Result Table)

    每个动作结果产生后立即写入，执行中途崩溃也会留下可检查的部分记录。

    Each action outcome is committed as soon as it is produced, so a crash
    mid-pipeline still leaves an inspectable partial record.
    """
    __tablename__ = "action_executions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)  # 主键 ID (Primary Key ID)
    mapping_execution_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)  # 所属执行 ID (Mapping Execution ID)
    action_order: Mapped[int] = mapped_column(Integer, nullable=False)  # 动作顺序 (Action Order)
    action_type: Mapped[str] = mapped_column(String(50), nullable=False)  # 动作类型 (Action Type)
    action_snapshot: Mapped[dict] = mapped_column(JSON, nullable=False)  # 动作快照 (Action Snapshot)
    status: Mapped[str] = mapped_column(String(20), nullable=False)  # success/failure
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # 尝试次数 (Attempts)
    timed_out: Mapped[bool] = mapped_column(Boolean, default=False)  # 是否超时 (Timed Out)
    output: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # 输出 (Captured Output)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # 错误 (Error)
    started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)  # 开始时间 (Start Time)
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)  # 结束时间 (End Time)
