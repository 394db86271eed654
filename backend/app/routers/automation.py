"""
自动化规则管理路由模块 (Automation Rule Management Router)

功能说明：提供自动化规则、规则执行记录、告警事件的管理与查询接口
核心职责：
  - 规则的创建、查询、更新、删除、克隆（保存前完整校验条件与动作参数）
  - 用合成事件手动触发规则（测试模式，默认 dry-run）
  - 规则统计、执行记录及动作结果查询
  - 告警事件列表查询
依赖关系：依赖自动化引擎 (AutomationEngine)、存储 (AutomationStore)、执行账本 (ExecutionLedger)
API端点：CRUD for rules + clone + test + stats + executions + events

Author: RMM Autopilot Team
"""
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query

from app.automation.engine import AutomationEngine
from app.automation.ledger import ExecutionLedger
from app.automation.store import AutomationStore
from app.core.deps import get_engine, get_ledger, get_store
from app.schemas.automation import (
    RuleCreate, RuleUpdate, RuleResponse, RuleCloneRequest, RuleTestRequest, RuleStatsResponse,
    MappingExecutionResponse, MappingExecutionDetail, ActionExecutionResponse, AlertEventResponse,
)

router = APIRouter(prefix="/api/v1/automation", tags=["automation"])


# ===== 规则管理 (Rule Management) =====

@router.get("/rules", response_model=dict)
async def list_rules(
    is_active: Optional[bool] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    store: AutomationStore = Depends(get_store),
):
    """
    规则列表查询接口 (Rule List Query)

    按优先级降序分页返回规则，支持按启用状态筛选。

    Args:
        is_active: 是否启用状态筛选
        page: 页码，从1开始
        page_size: 每页数量，限制1-100之间
    Returns:
        dict: 包含规则列表、总数、分页信息的响应
    """
    rows, total = await store.list_rules(is_active=is_active, page=page, page_size=page_size)
    return {
        "items": [RuleResponse.model_validate(r).model_dump(mode="json") for r in rows],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


@router.post("/rules", response_model=RuleResponse, status_code=201)
async def create_rule(
    data: RuleCreate,
    store: AutomationStore = Depends(get_store),
):
    """
    创建规则接口 (Create Rule)

    条件、动作参数和升级配置在这里完成校验，格式错误的规则不会被保存。
    名称重复返回 409，引用不存在的升级链返回 422。
    """
    row = await store.create_rule(data)
    return RuleResponse.model_validate(row)


@router.get("/rules/{rule_id}", response_model=RuleResponse)
async def get_rule(rule_id: int, store: AutomationStore = Depends(get_store)):
    """规则详情接口 (Get Rule Detail)"""
    return RuleResponse.model_validate(await store.get_rule_row(rule_id))


@router.put("/rules/{rule_id}", response_model=RuleResponse)
async def update_rule(
    rule_id: int,
    data: RuleUpdate,
    store: AutomationStore = Depends(get_store),
):
    """
    更新规则接口 (Update Rule)

    只更新请求中出现的字段，合并后按完整规则重新校验。
    """
    changes = data.model_dump(mode="json", exclude_unset=True)
    row = await store.update_rule(rule_id, changes)
    return RuleResponse.model_validate(row)


@router.delete("/rules/{rule_id}")
async def delete_rule(rule_id: int, store: AutomationStore = Depends(get_store)):
    """删除规则接口 (Delete Rule)，已有执行记录保留"""
    await store.delete_rule(rule_id)
    return {"message": "Rule deleted successfully"}


@router.post("/rules/{rule_id}/clone", response_model=RuleResponse, status_code=201)
async def clone_rule(
    rule_id: int,
    data: Optional[RuleCloneRequest] = None,
    store: AutomationStore = Depends(get_store),
):
    """
    克隆规则接口 (Clone Rule)

    新规则默认停用，统计字段清零。
    """
    row = await store.clone_rule(rule_id, data.name if data else None)
    return RuleResponse.model_validate(row)


@router.post("/rules/{rule_id}/test", response_model=dict)
async def test_rule(
    rule_id: int,
    data: RuleTestRequest,
    engine: AutomationEngine = Depends(get_engine),
):
    """
    手动触发规则接口 (Manually Trigger Rule)

    用请求中的载荷构造合成事件，与生产运行共用条件评估与动作执行逻辑。
    执行记录标记为测试模式，不计入统计，也不会触发升级。
    dry_run=True（默认）时只记录将要执行的动作，不调用外部系统。

    Returns:
        dict: matched、执行结果及每个动作的结果
    """
    result = await engine.trigger_rule(rule_id, data.payload, dry_run=data.dry_run)
    return result.model_dump(mode="json")


@router.get("/rules/{rule_id}/stats", response_model=RuleStatsResponse)
async def rule_stats(rule_id: int, ledger: ExecutionLedger = Depends(get_ledger)):
    """
    规则统计接口 (Rule Statistics)

    执行次数、成功率、平均耗时、连续失败计数及升级次数。
    """
    return RuleStatsResponse(**await ledger.rule_stats(rule_id))


# ===== 执行记录 (Mapping Executions) =====

@router.get("/executions", response_model=dict)
async def list_executions(
    rule_id: Optional[int] = None,
    event_id: Optional[int] = None,
    status: Optional[str] = None,
    since: Optional[datetime] = None,
    until: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    ledger: ExecutionLedger = Depends(get_ledger),
):
    """
    执行记录列表接口 (Mapping Execution List)

    支持按规则、事件、状态和开始时间范围 [since, until) 筛选，最新的在前。
    """
    rows, total = await ledger.list_executions(
        rule_id=rule_id, event_id=event_id, status=status,
        since=since, until=until, page=page, page_size=page_size,
    )
    return {
        "items": [MappingExecutionResponse.model_validate(r).model_dump(mode="json") for r in rows],
        "total": total,
        "page": page,
        "page_size": page_size,
    }


@router.get("/executions/{execution_id}", response_model=MappingExecutionDetail)
async def get_execution(execution_id: int, ledger: ExecutionLedger = Depends(get_ledger)):
    """执行详情接口，含各动作结果 (Mapping Execution Detail with Action Results)"""
    row, actions = await ledger.get_execution(execution_id)
    detail = MappingExecutionDetail.model_validate(row)
    detail.actions = [ActionExecutionResponse.model_validate(a) for a in actions]
    return detail


# ===== 告警事件 (Alert Events) =====

@router.get("/events", response_model=dict)
async def list_events(
    source: Optional[str] = None,
    status: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    store: AutomationStore = Depends(get_store),
):
    """告警事件列表接口 (Alert Event List)，支持按来源和状态筛选"""
    rows, total = await store.list_events(source=source, status=status, page=page, page_size=page_size)
    return {
        "items": [AlertEventResponse.model_validate(r).model_dump(mode="json") for r in rows],
        "total": total,
        "page": page,
        "page_size": page_size,
    }
