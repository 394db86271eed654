"""
升级模型 (Escalation Model)

定义升级链与升级执行记录的数据结构。规则连续失败达到阈值后创建升级执行，
按每一级配置的延迟自动推进到下一级，直到被人工标记为已解决。

Defines escalation chains and escalation execution records. An escalation
execution is opened when a rule fails repeatedly and advances level by level
after each level's delay until an operator marks it resolved.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, Boolean, Text, DateTime, JSON, func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class EscalationChain(Base):
    """
    升级链表 (Escalation Chain Table)

    levels 为有序级别列表：[{level, assignee_ref, assignee_kind, delay_minutes}]，级别从 1 连续编号。

    levels is an ordered list numbered consecutively from 1.
    """
    __tablename__ = "escalation_chains"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)  # 主键 ID (Primary Key ID)
    name: Mapped[str] = mapped_column(String(255), nullable=False, unique=True)  # 升级链名称 (Chain Name)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # 描述 (Description)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)  # 是否启用 (Is Active)
    levels: Mapped[list] = mapped_column(JSON, nullable=False)  # 升级级别配置 JSON (Escalation Levels Config)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )  # 创建时间 (Creation Time)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )  # 更新时间 (Update Time)


class EscalationExecution(Base):
    """
    升级执行记录表 (Escalation Execution Table)

    current_level 只增不减；到达最后一级且未解决时保持 active，不会自动关闭。

    current_level only increases; an unresolved execution at the final level
    stays active indefinitely.
    """
    __tablename__ = "escalation_executions"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)  # 主键 ID (Primary Key ID)
    rule_id: Mapped[int] = mapped_column(Integer, nullable=False, index=True)  # 触发规则 ID (Rule ID)
    chain_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # 升级链 ID (Chain ID)
    mapping_execution_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # 触发的规则执行 ID (Triggering Execution ID)
    event_id: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)  # 触发事件 ID (Triggering Event ID)
    levels: Mapped[list] = mapped_column(JSON, nullable=False)  # 级别快照 (Levels Snapshot)
    current_level: Mapped[int] = mapped_column(Integer, nullable=False, default=1)  # 当前级别 (Current Level)
    level_history: Mapped[list] = mapped_column(JSON, nullable=False, default=list)  # 各级时间线 (Per-level Timeline)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active", index=True)  # active/resolved
    trigger_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # 触发原因 (Trigger Reason)
    next_advance_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)  # 下次推进时间 (Next Advance Time)
    started_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)  # 开始时间 (Start Time)
    resolved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)  # 解决时间 (Resolved Time)
    resolved_by: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)  # 解决人 (Resolved By)
    resolution_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # 解决说明 (Resolution Notes)
