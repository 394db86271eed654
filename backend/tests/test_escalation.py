"""升级控制器测试：连续失败计数、按延迟推进、最后一级保持 active、人工解决。"""
from datetime import datetime, timedelta, timezone

import pytest

from app.automation.escalation import EscalationController, failure_streak, should_escalate
from app.automation.models import EscalationChainDefinition, ExecutionStatus
from app.automation.store import rule_from_row
from app.core.exceptions import InvalidTransitionError, NotFoundError
from tests.conftest import FakeEscalator, make_rule

UTC = timezone.utc
T0 = datetime(2026, 10, 19, 10, 0, tzinfo=UTC)


def _chain(**overrides) -> EscalationChainDefinition:
    data = {
        "name": "Tier escalation",
        "levels": [
            {"level": 2, "assignee_ref": "tier2", "assignee_kind": "group", "delay_minutes": 30},
            {"level": 1, "assignee_ref": "alice", "assignee_kind": "user", "delay_minutes": 15},
        ],
    }
    data.update(overrides)
    return EscalationChainDefinition.model_validate(data)


async def _chain_rule(store, chain=None, **kwargs):
    chain_row = await store.create_chain(chain or _chain())
    row = await store.create_rule(make_rule(escalate_after_failures=2, escalation_chain_id=chain_row.id, **kwargs))
    return rule_from_row(row)


class TestFailureStreak:
    def test_streak_transitions(self):
        assert failure_streak(0, ExecutionStatus.FAILURE) == 1
        assert failure_streak(4, ExecutionStatus.SUCCESS) == 0
        assert failure_streak(2, ExecutionStatus.PARTIAL) == 2

    def test_should_escalate_only_on_failure_at_threshold(self):
        rule = make_rule(escalate_after_failures=3, escalation_target={"kind": "user", "ref": "bob"})
        assert not should_escalate(rule, ExecutionStatus.FAILURE, 2)
        assert should_escalate(rule, ExecutionStatus.FAILURE, 3)
        assert not should_escalate(rule, ExecutionStatus.PARTIAL, 3)
        assert not should_escalate(make_rule(), ExecutionStatus.FAILURE, 10)


class TestChainEscalation:
    @pytest.mark.asyncio
    async def test_levels_are_sorted_and_start_at_one(self, store, escalation):
        rule = await _chain_rule(store)
        row = await escalation.start_escalation(rule, reason="disk cleanup failed twice", now=T0)

        assert row.status == "active"
        assert row.current_level == 1
        assert [level["level"] for level in row.levels] == [1, 2]
        assert row.level_history[0]["assignee"] == "user:alice"
        assert row.trigger_reason == "disk cleanup failed twice"

    @pytest.mark.asyncio
    async def test_advances_after_level_delay(self, store, escalation, escalator):
        rule = await _chain_rule(store)
        row = await escalation.start_escalation(rule, now=T0)

        early = await escalation.advance_due(T0 + timedelta(minutes=14))
        assert early["advanced"] == 0

        due = await escalation.advance_due(T0 + timedelta(minutes=16))
        assert due["scanned"] == 1
        assert due["advanced"] == 1

        current = await escalation.get(row.id)
        assert current.current_level == 2
        assert current.status == "active"
        assert current.level_history[0]["outcome"] == "escalated"
        assert current.level_history[0]["left_at"] is not None
        assert current.level_history[1]["assignee"] == "group:tier2"
        assert escalator.calls[0][0].label() == "group:tier2"
        assert escalator.calls[0][1]["level"] == 2

    @pytest.mark.asyncio
    async def test_final_level_stays_active(self, store, escalation):
        rule = await _chain_rule(store)
        row = await escalation.start_escalation(rule, now=T0)
        await escalation.advance_level(row.id, now=T0 + timedelta(minutes=15))

        later = await escalation.advance_due(T0 + timedelta(days=2))
        assert later["scanned"] == 0

        current = await escalation.advance_level(row.id, now=T0 + timedelta(days=2))
        assert current.current_level == 2
        assert current.status == "active"
        assert current.next_advance_at is None

    @pytest.mark.asyncio
    async def test_resolve_closes_escalation(self, store, escalation):
        rule = await _chain_rule(store)
        row = await escalation.start_escalation(rule, now=T0)
        resolved = await escalation.mark_resolved(row.id, resolved_by="alice", notes="freed disk space", now=T0)

        assert resolved.status == "resolved"
        assert resolved.resolved_by == "alice"
        assert resolved.resolution_notes == "freed disk space"
        assert resolved.level_history[-1]["outcome"] == "resolved"

        with pytest.raises(InvalidTransitionError):
            await escalation.advance_level(row.id)
        with pytest.raises(InvalidTransitionError):
            await escalation.mark_resolved(row.id)
        assert (await escalation.advance_due(T0 + timedelta(hours=1)))["scanned"] == 0

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_block_advance(self, store, session_factory):
        controller = EscalationController(session_factory, FakeEscalator(fail=True))
        rule = await _chain_rule(store)
        row = await controller.start_escalation(rule, now=T0)
        assert await controller.notify(row) is False

        advanced = await controller.advance_level(row.id, now=T0 + timedelta(minutes=20))
        assert advanced.current_level == 2

    @pytest.mark.asyncio
    async def test_unknown_escalation(self, escalation):
        with pytest.raises(NotFoundError):
            await escalation.get(42)
        with pytest.raises(NotFoundError):
            await escalation.advance_level(42)


class TestSingleTarget:
    @pytest.mark.asyncio
    async def test_rule_target_becomes_single_level(self, store, escalation):
        row = await store.create_rule(make_rule(
            escalate_after_failures=1, escalation_target={"kind": "group", "ref": "noc"},
        ))
        escalation_row = await escalation.start_escalation(rule_from_row(row), now=T0)
        assert escalation_row.current_level == 1
        assert escalation_row.next_advance_at is None
        assert escalation_row.chain_id is None
        assert escalation_row.level_history[0]["assignee"] == "group:noc"

    @pytest.mark.asyncio
    async def test_inactive_chain_falls_back_to_target(self, store, escalation):
        rule = await _chain_rule(
            store, chain=_chain(is_active=False), escalation_target={"kind": "user", "ref": "fallback"},
        )
        row = await escalation.start_escalation(rule, now=T0)
        assert row.level_history[0]["assignee"] == "user:fallback"

    @pytest.mark.asyncio
    async def test_no_target_returns_none(self, escalation):
        assert await escalation.start_escalation(make_rule(id=7), now=T0) is None
