"""
告警事件模型 (Alert Event Model)

记录从外部 RMM/PSA 平台 Webhook 接收并规范化后的告警事件。
事件状态只能单向流转：pending → processing → processed/failed/ignored。

Records alert events received from external RMM/PSA webhooks after normalization.
Status transitions are one-directional: pending → processing → processed/failed/ignored.
"""
from datetime import datetime
from typing import Optional

from sqlalchemy import String, Integer, DateTime, Text, JSON, func
from sqlalchemy.orm import Mapped, mapped_column

from app.core.database import Base


class AlertEvent(Base):
    """
    告警事件表 (Alert Event Table)

    external_id 由来源平台的事件/工单 ID 派生，唯一约束保证重复投递幂等。
    attributes 保存规范化字段与原始载荷（metadata 键），供条件匹配使用。

    external_id is derived from the provider's event/ticket id; the unique constraint
    makes re-delivery idempotent. attributes holds the canonical fields plus the
    original payload under the metadata key for condition matching.
    """
    __tablename__ = "alert_events"

    id: Mapped[int] = mapped_column(primary_key=True, autoincrement=True)  # 主键 ID (Primary Key ID)
    external_id: Mapped[str] = mapped_column(String(255), nullable=False, unique=True, index=True)  # 幂等标识 (Idempotency Key)
    source: Mapped[str] = mapped_column(String(50), nullable=False, index=True)  # 来源：connectwise/nable/generic (Source Tag)
    event_type: Mapped[str] = mapped_column(String(100), nullable=False, default="unknown")  # 事件类型 (Event Type)
    attributes: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)  # 规范化属性 (Canonical Attributes)
    headers: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)  # 请求头（已脱敏） (Sanitized Headers)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending", index=True)  # 处理状态 (Processing Status)
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)  # 重投次数 (Retry Count)
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)  # 最近错误 (Last Error)
    result: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)  # 处理结果摘要 (Result Summary)
    received_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )  # 接收时间 (Arrival Time)
    processed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)  # 处理完成时间 (Processed Time)
