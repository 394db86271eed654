"""
规则选择器：找出匹配事件的已启用规则，按优先级排序。
"""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Iterable, Optional

from .conditions import matches
from .models import AlertEventData, RuleDefinition
from .schedule import is_within_schedule

logger = logging.getLogger(__name__)


def sort_by_priority(rules: Iterable[RuleDefinition]) -> list[RuleDefinition]:
    """优先级高的在前；同优先级按创建顺序（id 小的在前）。"""
    return sorted(rules, key=lambda r: (-r.priority, r.id if r.id is not None else 0))


def select_rules(
    rules: Iterable[RuleDefinition],
    event: AlertEventData,
    now: Optional[datetime] = None,
    respect_schedule: bool = True,
) -> list[RuleDefinition]:
    """返回已启用、在执行时间窗口内且条件匹配的规则。"""
    selected = []
    for rule in rules:
        if not rule.is_active:
            continue
        if respect_schedule and not is_within_schedule(rule.schedule, now):
            logger.info("Rule '%s' skipped for event %s: outside schedule", rule.name, event.external_id)
            continue
        if matches(rule.conditions, event):
            selected.append(rule)
    ordered = sort_by_priority(selected)
    if ordered:
        logger.info(
            "Event %s matched %d rule(s): %s",
            event.external_id, len(ordered), ", ".join(r.name for r in ordered),
        )
    return ordered
