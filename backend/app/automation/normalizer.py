"""
事件规范化：把各平台的 Webhook 载荷转换为统一的告警事件。

每个来源一个规范化函数，用简单字典注册。解析失败不抛异常，
而是返回 status=failed 并记录错误；非告警类事件返回 status=ignored。
"""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable, Mapping, NamedTuple, Optional, Union

from .models import AlertEventData, EventStatus

UTC = timezone.utc

logger = logging.getLogger(__name__)

RawPayload = Union[bytes, str, Mapping[str, Any]]

# 存储前从请求头中去掉的凭据字段
SENSITIVE_HEADERS = {"authorization", "cookie", "x-api-key", "proxy-authorization"}
SIGNATURE_HEADER = "x-signature"

CONNECTWISE_EVENT_TYPES = {"TicketCreated", "TicketUpdated"}
CONNECTWISE_ACTIONS = {"added", "updated"}
NABLE_EVENT_TYPES = {"alert.created", "alert.updated"}

# N-able 检查类型 ID → 统一告警类型
NABLE_CHECK_TYPES: dict[int, str] = {
    1001: "ANTIVIRUS_OUTDATED",
    1002: "BACKUP_FAILED",
    1004: "DISK_SPACE_LOW",
    1007: "HIGH_CPU",
    1008: "DISK_HEALTH",
    1009: "HIGH_MEMORY",
    1010: "PING_FAILED",
    1011: "TCP_SERVICE_DOWN",
    1013: "SERVICE_STOPPED",
    1014: "CRITICAL_EVENTS",
    1022: "SERVICE_STOPPED",
    1025: "VULNERABILITY",
    2001: "ANTIVIRUS_OUTDATED",
    2002: "BACKUP_FAILED",
    2004: "DISK_SPACE_LOW",
    2007: "HIGH_CPU",
    2008: "DISK_HEALTH",
    2009: "HIGH_MEMORY",
    2010: "PING_FAILED",
    2011: "TCP_SERVICE_DOWN",
    2013: "SERVICE_STOPPED",
    2027: "PROCESS_STOPPED",
    3004: "DISK_SPACE_LOW",
    3008: "DISK_HEALTH",
    3013: "SERVICE_STOPPED",
    3027: "PROCESS_STOPPED",
}


class PayloadError(ValueError):
    """载荷无法解析。"""


class SourceFields(NamedTuple):
    """来源规范化函数的输出。"""
    event_type: str
    provider_id: Optional[str]
    attributes: dict[str, Any]
    actionable: bool


def sanitize_headers(headers: Optional[Mapping[str, Any]]) -> dict[str, str]:
    """请求头键转小写并去掉凭据。"""
    if not headers:
        return {}
    return {
        str(k).lower(): str(v)
        for k, v in headers.items()
        if str(k).lower() not in SENSITIVE_HEADERS
    }


def verify_signature(secret: str, body: bytes, header_value: Optional[str]) -> bool:
    """校验 X-Signature: sha256=<hex>。"""
    if not header_value:
        return False
    provided = header_value.strip()
    if provided.lower().startswith("sha256="):
        provided = provided[len("sha256="):]
    expected = hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, provided.lower())


def _raw_bytes(raw: RawPayload) -> bytes:
    if isinstance(raw, bytes):
        return raw
    if isinstance(raw, str):
        return raw.encode()
    return json.dumps(raw, separators=(",", ":"), default=str).encode()


def _parse(raw: RawPayload) -> dict[str, Any]:
    if isinstance(raw, Mapping):
        return dict(raw)
    try:
        data = json.loads(raw)
    except (json.JSONDecodeError, UnicodeDecodeError) as e:
        raise PayloadError(f"Invalid JSON payload: {e}") from e
    if not isinstance(data, dict):
        raise PayloadError(f"Payload must be a JSON object, got {type(data).__name__}")
    return data


def _first(data: Mapping[str, Any], *keys: str) -> Any:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return value
    return None


def _as_dict(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _str_or_none(value: Any) -> Optional[str]:
    return None if value is None else str(value)


def _canonical(
    alert_type: Any, severity: Any, device_id: Any, device_name: Any,
    message: Any, ticket_id: Any, client_name: Any, payload: dict[str, Any],
) -> dict[str, Any]:
    return {
        "alertType": _str_or_none(alert_type) or "UNKNOWN",
        "severity": _str_or_none(severity) or "unknown",
        "deviceId": _str_or_none(device_id),
        "deviceName": _str_or_none(device_name),
        "message": _str_or_none(message) or "",
        "ticketId": _str_or_none(ticket_id),
        "clientName": _str_or_none(client_name),
        "metadata": payload,
    }


def _normalize_connectwise(payload: dict[str, Any]) -> SourceFields:
    """ConnectWise Manage 回调：ID/Type/Action/Entity，Entity 可能是 JSON 字符串。"""
    entity = payload.get("Entity") or {}
    if isinstance(entity, str):
        try:
            entity = json.loads(entity)
        except json.JSONDecodeError as e:
            raise PayloadError(f"Invalid ConnectWise Entity: {e}") from e
    if not isinstance(entity, dict):
        entity = {}

    cw_type = str(payload.get("Type") or "unknown")
    action = str(payload.get("Action") or "").lower()
    if cw_type in CONNECTWISE_EVENT_TYPES:
        event_type = cw_type
        actionable = True
    else:
        event_type = f"{cw_type}.{action}" if action else cw_type
        actionable = cw_type.lower() == "ticket" and action in CONNECTWISE_ACTIONS

    ticket_id = _first(payload, "ID", "id") or entity.get("id")
    provider_id = None
    if ticket_id is not None:
        updated = _as_dict(entity.get("_info")).get("lastUpdated") or payload.get("lastUpdated") or ""
        provider_id = f"{ticket_id}:{action or cw_type}:{updated}"

    company = _as_dict(entity.get("company"))
    priority = _as_dict(entity.get("priority"))
    attributes = _canonical(
        alert_type=_first(payload, "alertType") or _as_dict(entity.get("type")).get("name") or "TICKET",
        severity=_first(payload, "severity") or priority.get("name"),
        device_id=_first(payload, "deviceId") or entity.get("deviceId"),
        device_name=_first(payload, "deviceName") or entity.get("deviceName"),
        message=entity.get("summary") or _first(payload, "message", "summary"),
        ticket_id=ticket_id,
        client_name=company.get("name") or _first(payload, "clientName", "companyName"),
        payload={**payload, "Entity": entity},
    )
    return SourceFields(event_type, _str_or_none(provider_id), attributes, actionable)


def _normalize_nable(payload: dict[str, Any]) -> SourceFields:
    """N-able N-sight 告警：eventType/alertId/checkType 以及设备字段。"""
    event_type = str(payload.get("eventType") or "unknown")
    alert_type = payload.get("alertType")
    check_type = payload.get("checkType")
    if not alert_type and check_type is not None:
        try:
            alert_type = NABLE_CHECK_TYPES.get(int(check_type))
        except (TypeError, ValueError):
            alert_type = None
        if alert_type is None:
            logger.debug("Unmapped N-able check type %s", check_type)

    alert_id = _first(payload, "alertId", "alert_id", "id")
    provider_id = None
    if alert_id is not None:
        stamp = _first(payload, "updatedAt", "timestamp") or ""
        provider_id = f"{alert_id}:{event_type}:{stamp}"

    attributes = _canonical(
        alert_type=alert_type,
        severity=_first(payload, "severity", "priority"),
        device_id=_first(payload, "deviceId", "device_id"),
        device_name=_first(payload, "deviceName", "device_name"),
        message=_first(payload, "message", "description", "checkDescription"),
        ticket_id=_first(payload, "ticketId", "psaTicketId", "ticketNumber"),
        client_name=_first(payload, "clientName", "customerName"),
        payload=payload,
    )
    return SourceFields(event_type, _str_or_none(provider_id), attributes, event_type in NABLE_EVENT_TYPES)


def _normalize_generic(payload: dict[str, Any]) -> SourceFields:
    """任意 JSON 对象；原始键也平铺进属性表。"""
    event_type = str(payload.get("eventType") or payload.get("type") or "alert.created")
    provider_id = _first(payload, "externalId", "eventId", "alertId", "id")
    attributes = {
        **payload,
        **_canonical(
            alert_type=_first(payload, "alertType"),
            severity=_first(payload, "severity"),
            device_id=_first(payload, "deviceId"),
            device_name=_first(payload, "deviceName"),
            message=_first(payload, "message", "summary"),
            ticket_id=_first(payload, "ticketId"),
            client_name=_first(payload, "clientName"),
            payload=payload,
        ),
    }
    return SourceFields(event_type, _str_or_none(provider_id), attributes, True)


SOURCE_NORMALIZERS: dict[str, Callable[[dict[str, Any]], SourceFields]] = {
    "connectwise": _normalize_connectwise,
    "nable": _normalize_nable,
    "generic": _normalize_generic,
}


def generate_external_id(source: str) -> str:
    return f"{source}:gen:{uuid.uuid4().hex}"


class EventNormalizer:
    """把原始 Webhook 载荷转换为 AlertEventData。各来源的签名密钥由调用方传入。"""

    def __init__(self, secrets: Optional[Mapping[str, str]] = None) -> None:
        self._secrets = {k: v for k, v in (secrets or {}).items() if v}
        self._normalizers = dict(SOURCE_NORMALIZERS)

    def register(self, source: str, func: Callable[[dict[str, Any]], SourceFields]) -> None:
        self._normalizers[source] = func

    def normalize(
        self,
        source: str,
        raw: RawPayload,
        headers: Optional[Mapping[str, Any]] = None,
    ) -> AlertEventData:
        source = (source or "generic").strip().lower()
        clean_headers = sanitize_headers(headers)
        now = datetime.now(UTC)

        secret = self._secrets.get(source)
        if secret and not verify_signature(secret, _raw_bytes(raw), clean_headers.get(SIGNATURE_HEADER)):
            logger.warning("Rejected %s webhook: invalid signature", source)
            return self._failed(source, raw, clean_headers, "Invalid webhook signature", now)

        normalizer = self._normalizers.get(source, _normalize_generic)
        try:
            payload = _parse(raw)
            fields = normalizer(payload)
        except PayloadError as e:
            logger.warning("Failed to parse %s webhook payload: %s", source, e)
            return self._failed(source, raw, clean_headers, str(e), now)
        except (AttributeError, TypeError, KeyError) as e:
            # 结构不符合预期的载荷同样记录为 failed
            logger.warning("Unexpected %s webhook payload shape: %s", source, e)
            return self._failed(source, raw, clean_headers, f"Unexpected payload shape: {type(e).__name__}: {e}", now)

        external_id = f"{source}:{fields.provider_id}" if fields.provider_id else generate_external_id(source)
        status = EventStatus.PENDING if fields.actionable else EventStatus.IGNORED
        if status == EventStatus.IGNORED:
            logger.info("Unhandled %s event type: %s", source, fields.event_type)
        return AlertEventData(
            external_id=external_id,
            source=source,
            event_type=fields.event_type,
            attributes=fields.attributes,
            headers=clean_headers,
            status=status,
            received_at=now,
        )

    @staticmethod
    def _failed(
        source: str, raw: RawPayload, headers: dict[str, str], error: str, now: datetime,
    ) -> AlertEventData:
        if isinstance(raw, Mapping):
            preserved: Any = dict(raw)
        else:
            preserved = _raw_bytes(raw).decode("utf-8", errors="replace")[:10000]
        return AlertEventData(
            external_id=generate_external_id(source),
            source=source,
            event_type="unknown",
            attributes={"metadata": {"raw": preserved}},
            headers=headers,
            status=EventStatus.FAILED,
            last_error=error,
            received_at=now,
        )
