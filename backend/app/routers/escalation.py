"""
升级管理路由模块 (Escalation Management Router)

功能说明：提供升级链配置和升级执行的管理接口
核心职责：
  - 升级链的创建、查询、更新、删除（级别从 1 开始连续编号）
  - 升级执行的查询、手动推进到下一级、标记已解决
  - 已解决的升级不能再推进或重复解决（返回 409）
依赖关系：依赖存储 (AutomationStore)、执行账本 (ExecutionLedger)、升级控制器 (EscalationController)
API端点：CRUD for escalation chains + escalation executions + advance + resolve

Author: RMM Autopilot Team
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.automation.escalation import EscalationController
from app.automation.ledger import ExecutionLedger
from app.automation.store import AutomationStore
from app.core.deps import get_escalation, get_ledger, get_store
from app.schemas.escalation import (
    EscalationChainCreate, EscalationChainUpdate, EscalationChainResponse,
    EscalationExecutionResponse, ResolveEscalationRequest,
)

router = APIRouter(prefix="/api/v1/escalation", tags=["escalation"])


# ===== 升级链管理 (Escalation Chain Management) =====

@router.get("/chains", response_model=list[EscalationChainResponse])
async def list_chains(store: AutomationStore = Depends(get_store)):
    """升级链列表接口 (Escalation Chain List)"""
    rows = await store.list_chains()
    return [EscalationChainResponse.model_validate(r) for r in rows]


@router.post("/chains", response_model=EscalationChainResponse, status_code=201)
async def create_chain(
    data: EscalationChainCreate,
    store: AutomationStore = Depends(get_store),
):
    """
    创建升级链接口 (Create Escalation Chain)

    级别必须从 1 开始连续编号，名称重复返回 409。
    """
    row = await store.create_chain(data)
    return EscalationChainResponse.model_validate(row)


@router.put("/chains/{chain_id}", response_model=EscalationChainResponse)
async def update_chain(
    chain_id: int,
    data: EscalationChainUpdate,
    store: AutomationStore = Depends(get_store),
):
    """更新升级链接口 (Update Escalation Chain)，只更新请求中出现的字段"""
    row = await store.update_chain(chain_id, data.model_dump(mode="json", exclude_unset=True))
    return EscalationChainResponse.model_validate(row)


@router.delete("/chains/{chain_id}")
async def delete_chain(chain_id: int, store: AutomationStore = Depends(get_store)):
    """删除升级链接口 (Delete Escalation Chain)，仍被规则引用时返回 409"""
    await store.delete_chain(chain_id)
    return {"message": "Escalation chain deleted successfully"}


# ===== 升级执行 (Escalation Executions) =====

@router.get("/executions", response_model=dict)
async def list_escalation_executions(
    rule_id: Optional[int] = None,
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    ledger: ExecutionLedger = Depends(get_ledger),
):
    """
    升级执行列表接口 (Escalation Execution List)

    Args:
        rule_id: 规则ID筛选
        status: 状态筛选 (active/resolved)
        page: 页码，从1开始
        page_size: 每页数量，限制1-100之间
    Returns:
        dict: 包含升级执行列表、总数、分页信息的响应
    """
    rows, total = await ledger.list_escalations(rule_id=rule_id, status=status, page=page, page_size=page_size)
    return {
        "items": [EscalationExecutionResponse.model_validate(r).model_dump(mode="json") for r in rows],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


@router.get("/executions/{escalation_id}", response_model=EscalationExecutionResponse)
async def get_escalation_execution(
    escalation_id: int,
    controller: EscalationController = Depends(get_escalation),
):
    """升级执行详情接口 (Escalation Execution Detail)"""
    return EscalationExecutionResponse.model_validate(await controller.get(escalation_id))


@router.post("/executions/{escalation_id}/advance", response_model=EscalationExecutionResponse)
async def advance_escalation(
    escalation_id: int,
    controller: EscalationController = Depends(get_escalation),
):
    """
    手动推进升级接口 (Manually Advance Escalation)

    推进到下一级并通知新负责人；已在最后一级时保持不变。
    """
    row = await controller.advance_level(escalation_id)
    return EscalationExecutionResponse.model_validate(row)


@router.post("/executions/{escalation_id}/resolve", response_model=EscalationExecutionResponse)
async def resolve_escalation(
    escalation_id: int,
    data: Optional[ResolveEscalationRequest] = None,
    controller: EscalationController = Depends(get_escalation),
):
    """标记升级已解决接口 (Resolve Escalation)"""
    data = data or ResolveEscalationRequest()
    row = await controller.mark_resolved(escalation_id, resolved_by=data.resolved_by, notes=data.notes)
    return EscalationExecutionResponse.model_validate(row)
