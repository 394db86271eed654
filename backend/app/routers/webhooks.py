"""
Webhook 接收路由模块 (Webhook Ingestion Router)

功能说明：接收 RMM/PSA 平台推送的告警 Webhook，交给自动化引擎规范化并排队处理
核心职责：
  - 读取原始请求体和请求头（签名校验需要原始字节）
  - 按 external_id 幂等保存事件，重复投递返回已有事件
  - 无论载荷是否可解析都返回 200，解析失败的事件记录为 failed
依赖关系：依赖自动化引擎 (AutomationEngine)
API端点：POST /api/v1/webhooks/{source}

Author: RMM Autopilot Team
"""
import logging

from fastapi import APIRouter, Depends, Request

from app.automation.engine import AutomationEngine
from app.core.deps import get_engine
from app.schemas.automation import WebhookAck

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1/webhooks", tags=["webhooks"])


@router.post("/{source}", response_model=WebhookAck)
async def receive_webhook(
    source: str,
    request: Request,
    engine: AutomationEngine = Depends(get_engine),
):
    """
    接收告警 Webhook (Receive Alert Webhook)

    source 为来源标识（connectwise / nable / generic），未知来源按 generic 处理。
    事件处理是异步的，响应只表示事件已记录。

    Args:
        source: 来源平台标识
        request: 原始请求，读取 body 与 headers
        engine: 自动化引擎依赖注入
    Returns:
        WebhookAck: 事件 ID、external_id 和当前状态
    """
    body = await request.body()
    event = await engine.ingest(source, body, dict(request.headers))
    return WebhookAck(event_id=event.id, external_id=event.external_id, status=event.status.value)
