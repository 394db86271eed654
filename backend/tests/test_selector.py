"""规则选择器测试：启用状态、时间窗口、优先级排序。"""
from datetime import datetime, timezone

from app.automation.selector import select_rules, sort_by_priority
from tests.conftest import make_event, make_rule

UTC = timezone.utc
SATURDAY = datetime(2026, 10, 17, 12, 0, tzinfo=UTC)
MONDAY = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)

WEEKDAYS_ONLY = {"enabled": True, "timezone": "UTC", "allowed_days": [1, 2, 3, 4, 5]}


def test_sorted_by_priority_then_creation_order():
    rules = [
        make_rule(id=3, name="c", priority=5),
        make_rule(id=1, name="a", priority=5),
        make_rule(id=2, name="b", priority=10),
    ]
    assert [r.id for r in sort_by_priority(rules)] == [2, 1, 3]


def test_inactive_rules_are_skipped():
    rules = [make_rule(id=1, name="a"), make_rule(id=2, name="b", is_active=False)]
    assert [r.id for r in select_rules(rules, make_event(), now=MONDAY)] == [1]


def test_non_matching_rules_are_skipped():
    rules = [
        make_rule(id=1, name="disk"),
        make_rule(id=2, name="cpu", conditions={"all": [{"field": "alertType", "operator": "equals", "value": "HIGH_CPU"}]}),
    ]
    assert [r.id for r in select_rules(rules, make_event(), now=MONDAY)] == [1]


def test_schedule_gate_treats_rule_as_non_matching():
    rules = [make_rule(id=1, name="weekdays", schedule=WEEKDAYS_ONLY), make_rule(id=2, name="always")]
    assert [r.id for r in select_rules(rules, make_event(), now=SATURDAY)] == [2]
    assert [r.id for r in select_rules(rules, make_event(), now=MONDAY)] == [1, 2]


def test_schedule_can_be_bypassed():
    rules = [make_rule(id=1, name="weekdays", schedule=WEEKDAYS_ONLY)]
    assert select_rules(rules, make_event(), now=SATURDAY, respect_schedule=False)
