"""规则与升级链保存时校验测试，以及存储层的增删改、克隆和引用检查。"""
import pytest
from pydantic import ValidationError

from app.automation.models import (
    ActionType,
    Condition,
    EscalationChainDefinition,
    RuleDefinition,
    ScheduleRestriction,
)
from app.automation.store import validate_chain, validate_rule
from app.core.exceptions import ConflictError, NotFoundError, RuleValidationError
from tests.conftest import make_rule


def _rule_data(**overrides) -> dict:
    data = {
        "name": "Restart spooler",
        "conditions": {"all": [{"field": "alertType", "operator": "equals", "value": "SERVICE_STOPPED"}]},
        "actions": [{"type": "restart_service", "order": 1, "parameters": {"service_name": "Spooler"}}],
    }
    data.update(overrides)
    return data


class TestConditionValidation:
    def test_invalid_regex_rejected(self):
        with pytest.raises(ValidationError):
            Condition(field="deviceName", operator="regex", value="([unclosed")

    def test_in_requires_list(self):
        with pytest.raises(ValidationError):
            Condition(field="severity", operator="in", value="HIGH")

    @pytest.mark.parametrize("value", ["high", True, None, float("nan")])
    def test_numeric_operator_requires_number(self, value):
        with pytest.raises(ValidationError):
            Condition(field="cpu", operator="greater_than", value=value)

    def test_numeric_string_accepted(self):
        assert Condition(field="cpu", operator="less_than", value="90").value == "90"

    def test_unknown_operator_rejected(self):
        with pytest.raises(ValidationError):
            Condition(field="cpu", operator="between", value=[1, 2])


class TestActionValidation:
    def test_actions_parse_into_typed_variants(self):
        rule = validate_rule(_rule_data(actions=[
            {"type": "send_notification", "order": 2, "parameters": {"channels": ["email"]}},
            {"type": "restart_service", "order": 1, "parameters": {"service_name": "Spooler"}},
        ]))
        assert [a.type for a in rule.ordered_actions()] == [ActionType.RESTART_SERVICE.value, ActionType.SEND_NOTIFICATION.value]
        assert rule.ordered_actions()[1].parameters.channels == ["email"]

    def test_unknown_action_type_rejected(self):
        with pytest.raises(RuleValidationError):
            validate_rule(_rule_data(actions=[{"type": "reboot_planet", "order": 1}]))

    def test_missing_required_parameter_rejected(self):
        with pytest.raises(RuleValidationError):
            validate_rule(_rule_data(actions=[{"type": "run_script", "order": 1, "parameters": {}}]))

    def test_empty_ticket_update_rejected(self):
        with pytest.raises(RuleValidationError):
            validate_rule(_rule_data(actions=[{"type": "update_ticket", "order": 1, "parameters": {}}]))

    def test_notification_needs_a_channel(self):
        with pytest.raises(RuleValidationError):
            validate_rule(_rule_data(actions=[{"type": "send_notification", "order": 1, "parameters": {"channels": []}}]))

    def test_duplicate_orders_rejected(self):
        action = {"type": "clear_cache", "order": 1}
        with pytest.raises(RuleValidationError):
            validate_rule(_rule_data(actions=[action, dict(action)]))

    def test_rule_needs_an_action(self):
        with pytest.raises(RuleValidationError):
            validate_rule(_rule_data(actions=[]))


class TestRuleSettings:
    def test_defaults(self):
        rule = validate_rule(_rule_data())
        assert rule.is_active is True
        assert rule.max_retries == 3
        assert rule.retry_delay_seconds == 60
        assert rule.execution_timeout_seconds == 300
        assert rule.schedule is None

    def test_max_retries_bounds(self):
        with pytest.raises(RuleValidationError):
            validate_rule(_rule_data(max_retries=11))

    def test_escalation_threshold_needs_target(self):
        with pytest.raises(RuleValidationError):
            validate_rule(_rule_data(escalate_after_failures=3))
        assert validate_rule(_rule_data(escalate_after_failures=3, escalation_chain_id=1))

    def test_escalate_action_needs_a_target(self):
        with pytest.raises(RuleValidationError):
            validate_rule(_rule_data(actions=[{"type": "escalate", "order": 1}]))
        rule = validate_rule(_rule_data(
            actions=[{"type": "escalate", "order": 1, "parameters": {"target": {"kind": "group", "ref": "noc"}}}],
        ))
        assert rule.actions[0].parameters.target.label() == "group:noc"

    @pytest.mark.parametrize("schedule", [
        {"enabled": True, "timezone": "Mars/Olympus"},
        {"enabled": True, "allowed_days": [7]},
        {"enabled": True, "allowed_hours": {"start": 9, "end": 9}},
        {"enabled": True, "blackout_periods": [{"start": "2026-10-20T00:00:00Z", "end": "2026-10-19T00:00:00Z"}]},
    ])
    def test_invalid_schedule_rejected(self, schedule):
        with pytest.raises(ValidationError):
            ScheduleRestriction.model_validate(schedule)

    def test_chain_levels_must_be_consecutive(self):
        with pytest.raises(RuleValidationError):
            validate_chain({"name": "gap", "levels": [
                {"level": 1, "assignee_ref": "a"}, {"level": 3, "assignee_ref": "b"},
            ]})

    def test_rule_definition_round_trips_through_json(self):
        rule = make_rule(schedule={"enabled": True, "allowed_days": [1, 2]})
        again = RuleDefinition.model_validate(rule.model_dump(mode="json"))
        assert again == rule


class TestRuleStore:
    @pytest.mark.asyncio
    async def test_duplicate_name_conflicts(self, store):
        await store.create_rule(make_rule())
        with pytest.raises(ConflictError):
            await store.create_rule(make_rule())

    @pytest.mark.asyncio
    async def test_missing_chain_rejected(self, store):
        with pytest.raises(RuleValidationError):
            await store.create_rule(make_rule(escalate_after_failures=2, escalation_chain_id=99))

    @pytest.mark.asyncio
    async def test_partial_update_revalidates(self, store):
        row = await store.create_rule(make_rule())
        updated = await store.update_rule(row.id, {"priority": 7, "description": "nightly"})
        assert updated.priority == 7
        assert updated.description == "nightly"
        assert updated.actions == row.actions

        with pytest.raises(RuleValidationError):
            await store.update_rule(row.id, {"escalate_after_failures": 2})
        assert (await store.get_rule(row.id)).escalate_after_failures is None

    @pytest.mark.asyncio
    async def test_clone_is_inactive_with_fresh_stats(self, store, ledger):
        row = await store.create_rule(make_rule(priority=4))
        clone = await store.clone_rule(row.id)
        assert clone.name == "Disk cleanup (Copy)"
        assert clone.is_active is False
        assert clone.priority == 4
        assert clone.execution_count == 0

        named = await store.clone_rule(row.id, name="Disk cleanup v2")
        assert named.name == "Disk cleanup v2"

    @pytest.mark.asyncio
    async def test_inactive_rules_not_loaded_for_matching(self, store):
        await store.create_rule(make_rule(name="on", priority=1))
        await store.create_rule(make_rule(name="off", is_active=False))
        await store.create_rule(make_rule(name="first", priority=9))
        assert [r.name for r in await store.list_active_rules()] == ["first", "on"]

    @pytest.mark.asyncio
    async def test_delete_rule(self, store):
        row = await store.create_rule(make_rule())
        await store.delete_rule(row.id)
        with pytest.raises(NotFoundError):
            await store.get_rule(row.id)
        with pytest.raises(NotFoundError):
            await store.delete_rule(row.id)


class TestChainStore:
    @pytest.mark.asyncio
    async def test_chain_in_use_cannot_be_deleted(self, store):
        chain = await store.create_chain(EscalationChainDefinition.model_validate({
            "name": "On-call", "levels": [{"level": 1, "assignee_ref": "alice"}],
        }))
        rule = await store.create_rule(make_rule(escalate_after_failures=2, escalation_chain_id=chain.id))
        with pytest.raises(ConflictError):
            await store.delete_chain(chain.id)

        await store.delete_rule(rule.id)
        await store.delete_chain(chain.id)
        assert await store.get_chain(chain.id) is None

    @pytest.mark.asyncio
    async def test_update_chain_levels(self, store):
        chain = await store.create_chain(EscalationChainDefinition.model_validate({
            "name": "On-call", "levels": [{"level": 1, "assignee_ref": "alice"}],
        }))
        updated = await store.update_chain(chain.id, {"levels": [
            {"level": 1, "assignee_ref": "alice", "delay_minutes": 5},
            {"level": 2, "assignee_ref": "managers", "assignee_kind": "group"},
        ]})
        assert len(updated.levels) == 2
        assert updated.levels[1]["assignee_kind"] == "group"

        with pytest.raises(RuleValidationError):
            await store.update_chain(chain.id, {"levels": []})
