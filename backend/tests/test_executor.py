"""动作流水线测试：顺序、中止、continue_on_error、固定间隔重试、超时预算、DryRunExecutor。"""
import asyncio

import pytest

from app.automation.capabilities import Capabilities
from app.automation.executor import ActionPipelineExecutor, DryRunExecutor, render_template
from app.automation.models import ActionStatus, ExecutionStatus
from tests.conftest import (
    FakeClock, FakeEscalator, FakeNotifier, FakeScriptRunner, FakeTicketSystem, make_event, make_rule,
)


def _scripts(*refs, continue_on_error=()):
    return [
        {
            "type": "run_script",
            "order": i,
            "continue_on_error": ref in continue_on_error,
            "parameters": {"script_ref": ref},
        }
        for i, ref in enumerate(refs, start=1)
    ]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def runner() -> FakeScriptRunner:
    return FakeScriptRunner(failing={"broken"})


@pytest.fixture
def executor(runner, clock) -> ActionPipelineExecutor:
    return ActionPipelineExecutor(Capabilities(script_runner=runner), sleep=clock.sleep, clock=clock)


class TestOrderingAndStatus:
    @pytest.mark.asyncio
    async def test_actions_run_in_ascending_order(self, executor, runner):
        rule = make_rule(actions=[
            {"type": "run_script", "order": 30, "parameters": {"script_ref": "third"}},
            {"type": "run_script", "order": 10, "parameters": {"script_ref": "first"}},
            {"type": "run_script", "order": 20, "parameters": {"script_ref": "second"}},
        ])
        outcome = await executor.run(rule, make_event())
        assert runner.scripts() == ["first", "second", "third"]
        assert outcome.status == ExecutionStatus.SUCCESS
        assert [r.order for r in outcome.results] == [10, 20, 30]

    @pytest.mark.asyncio
    async def test_failure_aborts_remaining_actions(self, executor, runner):
        """动作 2 失败且不继续：只记录 2 个结果，动作 3 被跳过，整体 failure。"""
        rule = make_rule(actions=_scripts("ok1", "broken", "ok3"))
        recorded = []

        async def recorder(result):
            recorded.append(result)

        outcome = await executor.run(rule, make_event(), recorder=recorder)
        assert outcome.status == ExecutionStatus.FAILURE
        assert len(outcome.results) == 2
        assert len(recorded) == 2
        assert outcome.skipped_orders == [3]
        assert runner.scripts() == ["ok1", "broken"]
        assert "broken exited with code 1" in outcome.error

    @pytest.mark.asyncio
    async def test_failing_last_action_without_continue_is_failure(self, executor, runner):
        rule = make_rule(actions=_scripts("ok1", "broken"))
        outcome = await executor.run(rule, make_event())
        assert outcome.status == ExecutionStatus.FAILURE
        assert outcome.skipped_orders == []
        assert [r.status for r in outcome.results] == [ActionStatus.SUCCESS, ActionStatus.FAILURE]
        assert outcome.error.startswith("Action 2 (run_script) failed")

    @pytest.mark.asyncio
    async def test_continue_on_error_gives_partial(self, executor, runner):
        rule = make_rule(actions=_scripts("ok1", "broken", "ok3", continue_on_error={"broken"}))
        outcome = await executor.run(rule, make_event())
        assert outcome.status == ExecutionStatus.PARTIAL
        assert [r.status for r in outcome.results] == [ActionStatus.SUCCESS, ActionStatus.FAILURE, ActionStatus.SUCCESS]
        assert outcome.skipped_orders == []

    @pytest.mark.asyncio
    async def test_all_failed_is_failure(self, executor):
        rule = make_rule(actions=_scripts("broken", continue_on_error={"broken"}))
        outcome = await executor.run(rule, make_event())
        assert outcome.status == ExecutionStatus.FAILURE

    @pytest.mark.asyncio
    async def test_results_are_recorded_as_they_happen(self, executor, runner):
        rule = make_rule(actions=_scripts("ok1", "ok2"))
        seen_calls = []

        async def recorder(result):
            seen_calls.append(len(runner.calls))

        await executor.run(rule, make_event(), recorder=recorder)
        assert seen_calls == [1, 2]

    @pytest.mark.asyncio
    async def test_recorder_failure_propagates(self, executor):
        rule = make_rule(actions=_scripts("ok1", "ok2"))

        async def recorder(result):
            raise OSError("database unavailable")

        with pytest.raises(OSError):
            await executor.run(rule, make_event(), recorder=recorder)


class TestRetries:
    @pytest.mark.asyncio
    async def test_fixed_delay_between_retries(self, executor, clock):
        rule = make_rule(actions=_scripts("broken"), max_retries=2, retry_delay_seconds=30)
        outcome = await executor.run(rule, make_event())
        assert outcome.results[0].attempts == 3
        assert clock.sleeps == [30, 30]
        assert not outcome.results[0].timed_out

    @pytest.mark.asyncio
    async def test_success_after_retry(self, executor, runner, clock):
        rule = make_rule(actions=_scripts("flaky"), max_retries=3, retry_delay_seconds=5)
        runner.failing.add("flaky")

        async def heal(seconds):
            clock.sleeps.append(seconds)
            runner.failing.discard("flaky")

        executor._sleep = heal
        outcome = await executor.run(rule, make_event())
        assert outcome.status == ExecutionStatus.SUCCESS
        assert outcome.results[0].attempts == 2
        assert outcome.results[0].error is None

    @pytest.mark.asyncio
    async def test_budget_exhausted_before_retry_is_timeout(self, executor, clock):
        rule = make_rule(
            actions=_scripts("broken", "ok2"),
            max_retries=3, retry_delay_seconds=60, execution_timeout_seconds=10,
        )
        outcome = await executor.run(rule, make_event())
        result = outcome.results[0]
        assert result.attempts == 1
        assert result.timed_out is True
        assert result.status == ActionStatus.FAILURE
        assert outcome.timed_out is True
        assert outcome.status == ExecutionStatus.FAILURE
        assert outcome.skipped_orders == [2]
        assert clock.sleeps == []


class TestTimeouts:
    @pytest.mark.asyncio
    async def test_cancellable_call_is_cancelled(self):
        class SlowRunner(FakeScriptRunner):
            async def run_script(self, script_ref, device_id, params):
                self.calls.append((script_ref, device_id, params))
                await asyncio.sleep(30)
                return await super().run_script(script_ref, device_id, params)

        executor = ActionPipelineExecutor(Capabilities(script_runner=SlowRunner()))
        rule = make_rule(actions=_scripts("slow", "after"), execution_timeout_seconds=1)
        outcome = await executor.run(rule, make_event())
        assert outcome.results[0].timed_out is True
        assert "Timed out" in outcome.results[0].error
        assert outcome.skipped_orders == [2]
        assert outcome.status == ExecutionStatus.FAILURE

    @pytest.mark.asyncio
    async def test_non_cancellable_call_completes_then_stops(self, clock):
        runner = FakeScriptRunner(clock=clock, duration=20, cancellable=False)
        executor = ActionPipelineExecutor(Capabilities(script_runner=runner), sleep=clock.sleep, clock=clock)
        rule = make_rule(actions=_scripts("long", "next"), execution_timeout_seconds=10)
        outcome = await executor.run(rule, make_event())
        assert outcome.results[0].status == ActionStatus.SUCCESS
        assert runner.scripts() == ["long"]
        assert outcome.skipped_orders == [2]
        assert outcome.timed_out is True
        assert outcome.status == ExecutionStatus.FAILURE


class TestActionTypes:
    @pytest.mark.asyncio
    async def test_ticket_and_notification_actions(self, clock):
        tickets, notifier = FakeTicketSystem(), FakeNotifier()
        executor = ActionPipelineExecutor(
            Capabilities(ticket_system=tickets, notifier=notifier), sleep=clock.sleep, clock=clock,
        )
        rule = make_rule(name="Disk rule", actions=[
            {"type": "update_ticket", "order": 1, "parameters": {
                "status": "In Progress", "note_template": "{{alertType}} on {{deviceName}} by {{ruleName}}",
            }},
            {"type": "assign_ticket", "order": 2, "parameters": {"assignee": "noc", "assignee_kind": "group"}},
            {"type": "add_note", "order": 3, "parameters": {"note_template": "{{message}}", "internal": False}},
            {"type": "close_ticket", "order": 4},
            {"type": "send_notification", "order": 5, "parameters": {"channels": ["teams", "email"]}},
        ])
        outcome = await executor.run(rule, make_event())
        assert outcome.status == ExecutionStatus.SUCCESS
        assert tickets.calls[0] == ("T-100", {"status": "In Progress", "note": "DISK_SPACE_LOW on web-01 by Disk rule"})
        assert tickets.calls[1] == ("T-100", {"assignee": {"kind": "group", "ref": "noc"}})
        assert tickets.calls[2] == ("T-100", {"note": "Disk C: at 92%", "internal": False})
        assert tickets.calls[3][1]["status"] == "Closed"
        assert tickets.calls[3][1]["resolution"] == "Resolved automatically by Disk rule"
        assert [c[0] for c in notifier.calls] == ["teams", "email"]
        assert notifier.calls[0][1]["title"] == "[CRITICAL] DISK_SPACE_LOW on web-01"

    @pytest.mark.asyncio
    async def test_device_actions_use_builtin_scripts(self, executor, runner):
        rule = make_rule(actions=[
            {"type": "restart_service", "order": 1, "parameters": {"service_name": "Spooler"}},
            {"type": "clear_cache", "order": 2},
            {"type": "install_update", "order": 3, "parameters": {"patch_id": "KB500", "device_id": "dev-2"}},
        ])
        await executor.run(rule, make_event())
        assert runner.calls == [
            ("restart_service", "dev-1", {"serviceName": "Spooler"}),
            ("clear_cache", "dev-1", {"cacheType": "system"}),
            ("install_update", "dev-2", {"patchId": "KB500", "reboot": False}),
        ]

    @pytest.mark.asyncio
    async def test_escalate_action_uses_rule_target(self, clock):
        escalator = FakeEscalator()
        executor = ActionPipelineExecutor(Capabilities(escalator=escalator), sleep=clock.sleep, clock=clock)
        rule = make_rule(
            actions=[{"type": "escalate", "order": 1}],
            escalation_target={"kind": "group", "ref": "tier2"},
        )
        outcome = await executor.run(rule, make_event())
        assert outcome.status == ExecutionStatus.SUCCESS
        target, context = escalator.calls[0]
        assert target.label() == "group:tier2"
        assert context["reason"] == f"Escalated by automation rule {rule.name}"

    @pytest.mark.asyncio
    async def test_missing_device_fails_without_retry(self, executor, runner):
        rule = make_rule(actions=_scripts("cleanup"), max_retries=3)
        outcome = await executor.run(rule, make_event(deviceId=None))
        assert outcome.status == ExecutionStatus.FAILURE
        assert outcome.results[0].attempts == 0
        assert "No device id" in outcome.results[0].error
        assert runner.calls == []

    @pytest.mark.asyncio
    async def test_capability_exception_becomes_failure(self, clock):
        class ExplodingRunner(FakeScriptRunner):
            async def run_script(self, script_ref, device_id, params):
                raise RuntimeError("agent offline")

        executor = ActionPipelineExecutor(Capabilities(script_runner=ExplodingRunner()), sleep=clock.sleep, clock=clock)
        outcome = await executor.run(make_rule(), make_event())
        assert outcome.status == ExecutionStatus.FAILURE
        assert outcome.results[0].error == "RuntimeError: agent offline"

    @pytest.mark.asyncio
    async def test_unconfigured_capability_fails(self, clock):
        executor = ActionPipelineExecutor(Capabilities(), sleep=clock.sleep, clock=clock)
        outcome = await executor.run(make_rule(), make_event())
        assert outcome.results[0].error == "script runner not configured"


class TestDryRun:
    @pytest.mark.asyncio
    async def test_dry_run_never_calls_capabilities(self, runner):
        tickets = FakeTicketSystem()
        executor = DryRunExecutor(Capabilities(script_runner=runner, ticket_system=tickets))
        rule = make_rule(actions=[
            {"type": "run_script", "order": 1, "parameters": {"script_ref": "broken"}},
            {"type": "update_ticket", "order": 2, "parameters": {"status": "Resolved"}},
        ])
        outcome = await executor.run(rule, make_event())
        assert outcome.status == ExecutionStatus.SUCCESS
        assert runner.calls == []
        assert tickets.calls == []
        assert outcome.results[0].output == "[DRY RUN] Would run script broken on dev-1"
        assert outcome.results[1].output == "[DRY RUN] Would update_ticket on ticket T-100"

    @pytest.mark.asyncio
    async def test_dry_run_still_reports_misconfiguration(self):
        outcome = await DryRunExecutor().run(make_rule(), make_event(deviceId=None))
        assert outcome.status == ExecutionStatus.FAILURE


def test_render_template_keeps_unknown_variables():
    assert render_template("{{ severity }} {{nope}}", {"severity": "HIGH"}) == "HIGH {{nope}}"
    assert render_template("{{attrs.cpu}}%", {"attrs": {"cpu": 97}}) == "97%"
