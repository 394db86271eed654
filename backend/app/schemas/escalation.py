"""
升级模式定义 (Escalation Schema Definitions)

定义升级链和升级执行相关的 API 请求和响应模式。
升级链的级别校验（从 1 开始连续编号）复用引擎的 EscalationChainDefinition。

Defines API request and response schemas for escalation chains and escalation
executions. Level validation reuses the engine's EscalationChainDefinition.
"""
from datetime import datetime
from typing import Optional, List

from pydantic import BaseModel, Field

from app.automation.models import EscalationChainDefinition, EscalationLevel


class EscalationChainCreate(EscalationChainDefinition):
    """创建升级链请求模式 (Create Escalation Chain Request Schema)"""
    pass


class EscalationChainUpdate(BaseModel):
    """更新升级链请求模式 (Update Escalation Chain Request Schema)"""
    name: Optional[str] = Field(None, min_length=1, max_length=255, description="升级链名称")
    description: Optional[str] = None
    is_active: Optional[bool] = Field(None, description="是否启用")
    levels: Optional[List[EscalationLevel]] = Field(None, description="升级级别配置")


class EscalationChainResponse(BaseModel):
    """升级链响应模式 (Escalation Chain Response Schema)"""
    id: int
    name: str
    description: Optional[str] = None
    is_active: bool
    levels: list
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class EscalationExecutionResponse(BaseModel):
    """升级执行响应模式 (Escalation Execution Response Schema)"""
    id: int
    rule_id: int
    chain_id: Optional[int] = None
    mapping_execution_id: Optional[int] = None
    event_id: Optional[int] = None
    levels: list
    current_level: int
    level_history: list
    status: str
    trigger_reason: Optional[str] = None
    next_advance_at: Optional[datetime] = None
    started_at: datetime
    resolved_at: Optional[datetime] = None
    resolved_by: Optional[str] = None
    resolution_notes: Optional[str] = None

    model_config = {"from_attributes": True}


class ResolveEscalationRequest(BaseModel):
    """标记升级已解决请求模式 (Resolve Escalation Request Schema)"""
    resolved_by: Optional[str] = Field(None, max_length=255, description="解决人")
    notes: Optional[str] = Field(None, description="解决说明")
