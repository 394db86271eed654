"""
条件评估器：纯函数，判断规则的条件组是否匹配告警事件。

不抛异常。字段缺失、类型不符、正则非法都按固定规则返回 True/False。
"""
from __future__ import annotations

import logging
import math
import re
from typing import Any, Callable, Mapping, Union

from .models import AlertEventData, Condition, ConditionGroup, ConditionOperator

logger = logging.getLogger(__name__)

_MISSING = object()

# 缺失字段时返回 True 的运算符（"不存在"即"不等于/不包含/不属于"）
_TRUE_WHEN_MISSING = {
    ConditionOperator.NOT_EQUALS,
    ConditionOperator.NOT_CONTAINS,
    ConditionOperator.NOT_IN,
}

EventLike = Union[AlertEventData, Mapping[str, Any]]


def resolve_field(data: Any, path: str, default: Any = _MISSING) -> Any:
    """沿点分路径取值，列表支持数字下标；取不到返回 default。"""
    if isinstance(data, Mapping) and path in data:
        return data[path]
    current = data
    for part in path.split("."):
        if isinstance(current, Mapping):
            if part not in current:
                return default
            current = current[part]
        elif isinstance(current, (list, tuple)):
            try:
                current = current[int(part)]
            except (ValueError, IndexError):
                return default
        else:
            return default
    return current


def _to_number(value: Any) -> float | None:
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        try:
            number = float(value.strip())
        except ValueError:
            return None
    else:
        return None
    return None if math.isnan(number) else number


def _equal(actual: Any, expected: Any) -> bool:
    # True == 1 在 Python 中成立，这里不认为相等
    if isinstance(actual, bool) != isinstance(expected, bool):
        return False
    return actual == expected


def _text(value: Any) -> str | None:
    if isinstance(value, str):
        return value
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return str(value)
    return None


def _contains(actual: Any, expected: Any) -> bool:
    if isinstance(actual, (list, tuple, set)):
        return any(_equal(item, expected) for item in actual)
    text, needle = _text(actual), _text(expected)
    if text is None or needle is None:
        return False
    return needle.lower() in text.lower()


def _starts_with(actual: Any, expected: Any) -> bool:
    text, prefix = _text(actual), _text(expected)
    if text is None or prefix is None:
        return False
    return text.lower().startswith(prefix.lower())


def _ends_with(actual: Any, expected: Any) -> bool:
    text, suffix = _text(actual), _text(expected)
    if text is None or suffix is None:
        return False
    return text.lower().endswith(suffix.lower())


def _regex(actual: Any, pattern: Any) -> bool:
    text = _text(actual)
    if text is None or not isinstance(pattern, str):
        return False
    try:
        return re.search(pattern, text) is not None
    except re.error as e:
        logger.debug("Invalid regex %r in condition: %s", pattern, e)
        return False


def _in(actual: Any, expected: Any) -> bool:
    if not isinstance(expected, (list, tuple, set)):
        return False
    return any(_equal(actual, item) for item in expected)


def _numeric(compare: Callable[[float, float], bool]) -> Callable[[Any, Any], bool]:
    def check(actual: Any, expected: Any) -> bool:
        left, right = _to_number(actual), _to_number(expected)
        if left is None or right is None:
            return False
        return compare(left, right)
    return check


# 运算符映射
OPERATORS: dict[ConditionOperator, Callable[[Any, Any], bool]] = {
    ConditionOperator.EQUALS: _equal,
    ConditionOperator.NOT_EQUALS: lambda a, e: not _equal(a, e),
    ConditionOperator.CONTAINS: _contains,
    ConditionOperator.NOT_CONTAINS: lambda a, e: not _contains(a, e),
    ConditionOperator.STARTS_WITH: _starts_with,
    ConditionOperator.ENDS_WITH: _ends_with,
    ConditionOperator.REGEX: _regex,
    ConditionOperator.IN: _in,
    ConditionOperator.NOT_IN: lambda a, e: not _in(a, e),
    ConditionOperator.GREATER_THAN: _numeric(lambda a, b: a > b),
    ConditionOperator.LESS_THAN: _numeric(lambda a, b: a < b),
}


def _event_context(event: EventLike) -> Mapping[str, Any]:
    if isinstance(event, AlertEventData):
        context = dict(event.attributes)
        context.setdefault("source", event.source)
        context.setdefault("eventType", event.event_type)
        return context
    return event


def evaluate(condition: Condition, event: EventLike) -> bool:
    """评估单个条件。"""
    actual = resolve_field(_event_context(event), condition.field)
    if actual is _MISSING:
        return condition.operator in _TRUE_WHEN_MISSING
    return OPERATORS[condition.operator](actual, condition.value)


def matches(group: ConditionGroup, event: EventLike) -> bool:
    """all 全部为真（或为空）且 any 为空或至少一个为真。"""
    context = _event_context(event)
    if not all(evaluate(c, context) for c in group.all):
        return False
    if group.any and not any(evaluate(c, context) for c in group.any):
        return False
    return True
