"""Tests for the action executor."""

import tempfile
import time
import os
import pytest

import sys
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from core.config import EngineConfig
from core.models import Action, ActionType, ContentRecord, ExecutionTier, Opportunity
from core.store import StateStore
from handlers import create_default_registry
from handlers.base import ActionHandler, HandlerRegistry, HandlerResult, ValidationResult
from orchestrator.executor import ActionExecutor


class FakeClock:
    """Manually advanced clock."""

    def __init__(self, now: float = None):
        self.now = now if now is not None else time.time()

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeHandler(ActionHandler):
    """Scriptable handler for executor tests."""

    tier = ExecutionTier.AUTO

    def __init__(self, store, action_type=ActionType.EXPAND_CONTENT, error=None,
                 invalid_reason=None, with_rollback=True, rollback_ok=True):
        super().__init__(store)
        self.action_type = action_type
        self.error = error
        self.invalid_reason = invalid_reason
        self.with_rollback = with_rollback
        self.rollback_ok = rollback_ok
        self.executed = []
        self.rolled_back = []

    async def validate(self, action):
        if self.invalid_reason:
            return ValidationResult.fail(self.invalid_reason)
        return ValidationResult.ok()

    async def prepare_rollback(self, action):
        if not self.with_rollback:
            return None
        return self.rollback_payload(action_id=action.id, marker="before")

    async def execute(self, action):
        self.executed.append(action.id)
        if self.error:
            raise RuntimeError(self.error)
        return HandlerResult(success=True, output={"done": True})

    async def rollback(self, rollback_data):
        self.rolled_back.append(rollback_data)
        return self.rollback_ok


class RecordingNotifications:
    """Captures executor notifications."""

    def __init__(self, fail=False):
        self.fail = fail
        self.results = []
        self.breaker_events = []

    async def notify_execution_result(self, notice):
        if self.fail:
            raise RuntimeError("slack down")
        self.results.append(notice)

    async def notify_circuit_breaker(self, opened):
        self.breaker_events.append(opened)


@pytest.fixture
async def store():
    """Create a temporary store."""
    with tempfile.TemporaryDirectory() as tmpdir:
        store = StateStore(os.path.join(tmpdir, "test_engine.db"))
        await store.initialize()
        yield store
        await store.close()


def make_executor(store, *handlers, config=None, clock=None, notifications=None):
    registry = HandlerRegistry()
    for handler in handlers:
        registry.register(handler)
    return ActionExecutor(
        store,
        registry,
        config=config or EngineConfig(),
        notifications=notifications,
        clock=clock or FakeClock(),
    )


async def make_action(store, action_type=ActionType.EXPAND_CONTENT, tier=1, auto=True,
                      status="PENDING", confidence=0.9, impact=5.0, opportunity=None, **kwargs):
    if opportunity is None:
        opportunity = await store.create_opportunity("Opp", "SEO", confidence, impact, content_id="c1")
    return await store.create_action(
        opportunity.id, action_type.value, {"content_id": "c1"},
        execution_tier=tier, auto_executable=auto, status=status, **kwargs
    )


class TestExecute:
    """Test single-action execution."""

    @pytest.mark.asyncio
    async def test_success_marks_executed(self, store):
        """Test success writes a log and closes out the opportunity."""
        handler = FakeHandler(store)
        executor = make_executor(store, handler)
        action = await make_action(store)

        result = await executor.execute(action.id)

        assert result.success
        assert result.error_type is None
        assert result.output == {"done": True}

        loaded = await store.get_action(action.id)
        assert loaded.status == "EXECUTED"
        assert loaded.execution_attempts == 1
        assert loaded.executed_at is not None
        assert loaded.last_attempt_at is not None
        assert loaded.execution_result["success"] is True

        log = await store.get_execution_log(result.execution_log_id)
        assert log.success is True
        assert log.executed_by == "manual"
        assert log.input_data == {"content_id": "c1"}
        assert log.rollback_data == {"action_type": "EXPAND_CONTENT", "action_id": action.id, "marker": "before"}

        opportunity = await store.get_opportunity(action.opportunity_id)
        assert opportunity.status == "IMPLEMENTED"
        assert opportunity.implemented_at is not None

    @pytest.mark.asyncio
    async def test_closeout_waits_for_siblings(self, store):
        executor = make_executor(store, FakeHandler(store))
        first = await make_action(store)
        opportunity = await store.get_opportunity(first.opportunity_id)
        await make_action(store, opportunity=opportunity)

        await executor.execute(first.id)

        assert (await store.get_opportunity(opportunity.id)).status == "PENDING"

    @pytest.mark.asyncio
    async def test_handler_exception_marks_failed(self, store):
        """Test a raised handler error takes the failure path."""
        handler = FakeHandler(store, error="network timeout")
        executor = make_executor(store, handler)
        action = await make_action(store)

        result = await executor.execute(action.id, "auto")

        assert result.success is False
        assert result.error == "network timeout"
        assert result.error_type == "execution"

        loaded = await store.get_action(action.id)
        assert loaded.status == "FAILED"
        assert loaded.execution_attempts == 1
        assert loaded.executed_at is None
        assert executor.circuit_breaker.failure_count == 1

        log = await store.get_execution_log(result.execution_log_id)
        assert log.success is False
        assert log.error_message == "network timeout"
        assert log.executed_by == "auto"

    @pytest.mark.asyncio
    async def test_failed_action_not_reexecuted(self, store):
        handler = FakeHandler(store, error="flaky")
        executor = make_executor(store, handler)
        action = await make_action(store)

        await executor.execute(action.id)
        result = await executor.execute(action.id)

        assert result.error_type == "invalid_state"
        assert result.error == "Action cannot be executed - status is FAILED"

    @pytest.mark.asyncio
    async def test_validation_failure_leaves_action_untouched(self, store):
        """Test validation failure is logged without a state change."""
        handler = FakeHandler(store, invalid_reason="Content record not found")
        executor = make_executor(store, handler)
        action = await make_action(store)

        result = await executor.execute(action.id)

        assert result.success is False
        assert result.error == "Content record not found"
        assert result.error_type == "validation"
        assert handler.executed == []

        loaded = await store.get_action(action.id)
        assert loaded.status == "PENDING"
        assert loaded.execution_attempts == 0
        assert executor.circuit_breaker.failure_count == 0

        logs = await store.get_execution_logs_for_action(action.id)
        assert len(logs) == 1
        assert logs[0].success is False
        assert logs[0].error_message == "Content record not found"

    @pytest.mark.asyncio
    async def test_rejects_missing_action(self, store):
        executor = make_executor(store, FakeHandler(store))

        result = await executor.execute("missing")

        assert result.success is False
        assert result.error == "Action not found"
        assert result.error_type == "not_found"

    @pytest.mark.asyncio
    async def test_rejects_action_without_opportunity(self, store):
        """Test an orphaned action fails before its handler runs."""
        handler = FakeHandler(store)
        executor = make_executor(store, handler)
        action = await store.create_action(
            "no-such-opportunity", ActionType.EXPAND_CONTENT.value, {"content_id": "c1"},
            execution_tier=1, auto_executable=True,
        )

        result = await executor.execute(action.id)

        assert result.success is False
        assert result.error == "Opportunity not found"
        assert result.error_type == "not_found"
        assert handler.executed == []

        loaded = await store.get_action(action.id)
        assert loaded.status == "PENDING"
        assert loaded.execution_attempts == 0
        assert await store.get_execution_logs_for_action(action.id) == []

    @pytest.mark.asyncio
    async def test_rejects_executed_action(self, store):
        """Test re-execution of an executed action is refused."""
        executor = make_executor(store, FakeHandler(store))
        action = await make_action(store)
        await executor.execute(action.id)

        result = await executor.execute(action.id)

        assert result.error == "Action cannot be executed - status is EXECUTED"
        assert result.error_type == "invalid_state"
        assert (await store.get_action(action.id)).execution_attempts == 1

    @pytest.mark.asyncio
    async def test_rejects_unregistered_type(self, store):
        executor = make_executor(store, FakeHandler(store))
        action = await make_action(store, action_type=ActionType.UPDATE_AD_PLACEMENT)

        result = await executor.execute(action.id)

        assert result.error == "No handler found for action type: UPDATE_AD_PLACEMENT"
        assert result.error_type == "not_found"
        assert await store.get_execution_logs_for_action(action.id) == []

    @pytest.mark.asyncio
    async def test_notifications(self, store):
        notifications = RecordingNotifications()
        config = EngineConfig(circuit_breaker={"failure_threshold": 1})
        executor = make_executor(store, FakeHandler(store, error="boom"),
                                 config=config, notifications=notifications)
        action = await make_action(store)

        await executor.execute(action.id)

        assert notifications.breaker_events == [True]
        assert len(notifications.results) == 1
        assert notifications.results[0].success is False
        assert notifications.results[0].error == "boom"

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_escape(self, store):
        executor = make_executor(store, FakeHandler(store), notifications=RecordingNotifications(fail=True))
        action = await make_action(store)

        result = await executor.execute(action.id)

        assert result.success
        assert (await store.get_action(action.id)).status == "EXECUTED"

    @pytest.mark.asyncio
    async def test_real_handler_end_to_end(self, store):
        """Test the built-in meta description handler through the executor."""
        await store.create_content_record(ContentRecord(id="c1", title="Cozy Sofa", short_description="Old"))
        executor = ActionExecutor(store, create_default_registry(store), clock=FakeClock())
        action = await make_action(store, action_type=ActionType.UPDATE_META_DESCRIPTION)

        result = await executor.execute(action.id)
        assert result.success
        assert (await store.get_content_record("c1")).short_description.startswith("Download this")

        rollback = await executor.rollback(result.execution_log_id, "ops")
        assert rollback.success
        assert (await store.get_content_record("c1")).short_description == "Old"


class TestRollback:
    """Test rollback of executions."""

    @pytest.mark.asyncio
    async def test_rollback_success(self, store):
        """Test rollback stamps the log and the action."""
        handler = FakeHandler(store)
        executor = make_executor(store, handler)
        action = await make_action(store)
        executed = await executor.execute(action.id)

        result = await executor.rollback(executed.execution_log_id, "ops", reason="bad copy")

        assert result.success
        assert handler.rolled_back == [{"action_type": "EXPAND_CONTENT", "action_id": action.id, "marker": "before"}]

        loaded = await store.get_action(action.id)
        assert loaded.status == "ROLLED_BACK"
        assert loaded.rolled_back_at is not None

        log = await store.get_execution_log(executed.execution_log_id)
        assert log.rolled_back_by == "ops"
        assert log.rollback_reason == "bad copy"
        assert log.rolled_back_at is not None

    @pytest.mark.asyncio
    async def test_second_rollback_refused(self, store):
        executor = make_executor(store, FakeHandler(store))
        action = await make_action(store)
        executed = await executor.execute(action.id)
        await executor.rollback(executed.execution_log_id, "ops")

        result = await executor.rollback(executed.execution_log_id, "ops")

        assert result.success is False
        assert result.error == "Action has already been rolled back"
        assert result.error_type == "invalid_state"

    @pytest.mark.asyncio
    async def test_rollback_of_failed_execution_refused(self, store):
        executor = make_executor(store, FakeHandler(store, error="boom"))
        action = await make_action(store)
        executed = await executor.execute(action.id)

        result = await executor.rollback(executed.execution_log_id, "ops")

        assert result.error == "Cannot rollback a failed execution"
        assert result.error_type == "invalid_state"

    @pytest.mark.asyncio
    async def test_rollback_missing_log(self, store):
        executor = make_executor(store, FakeHandler(store))

        result = await executor.rollback("missing", "ops")

        assert result.error == "Execution log not found"
        assert result.error_type == "not_found"

    @pytest.mark.asyncio
    async def test_rollback_without_data(self, store):
        executor = make_executor(store, FakeHandler(store, with_rollback=False))
        action = await make_action(store)
        executed = await executor.execute(action.id)

        result = await executor.rollback(executed.execution_log_id, "ops")

        assert result.error == "No rollback data available"
        assert result.error_type == "rollback"

    @pytest.mark.asyncio
    async def test_handler_refusal_leaves_state(self, store):
        """Test a failed rollback can be retried."""
        handler = FakeHandler(store, rollback_ok=False)
        executor = make_executor(store, handler)
        action = await make_action(store)
        executed = await executor.execute(action.id)

        result = await executor.rollback(executed.execution_log_id, "ops")

        assert result.error == "Rollback failed"
        assert (await store.get_action(action.id)).status == "EXECUTED"
        assert (await store.get_execution_log(executed.execution_log_id)).rolled_back_at is None

        handler.rollback_ok = True
        assert (await executor.rollback(executed.execution_log_id, "ops")).success


class TestAutoExecution:
    """Test the scheduled sweep."""

    def test_can_auto_execute(self):
        """Test every eligibility condition."""
        executor = ActionExecutor(store=None, registry=HandlerRegistry())

        def action(**overrides):
            fields = dict(id="a", opportunity_id="o", action_type="X", action_data={}, status="PENDING",
                          execution_tier=1, auto_executable=True, execution_attempts=0, created_at=0)
            fields.update(overrides)
            return Action(**fields)

        def opportunity(**overrides):
            fields = dict(id="o", title="t", opportunity_type="SEO", confidence=0.9,
                          estimated_revenue_impact=5.0, content_id=None, status="PENDING", created_at=0)
            fields.update(overrides)
            return Opportunity(**fields)

        assert executor.can_auto_execute(action(), opportunity())
        assert not executor.can_auto_execute(action(execution_tier=2), opportunity())
        assert not executor.can_auto_execute(action(auto_executable=False), opportunity())
        assert not executor.can_auto_execute(action(execution_attempts=3), opportunity())
        assert not executor.can_auto_execute(action(), opportunity(confidence=0.69))
        assert not executor.can_auto_execute(action(), opportunity(estimated_revenue_impact=0.05))
        assert not executor.can_auto_execute(action(), opportunity(estimated_revenue_impact=None))
        assert executor.can_auto_execute(action(), opportunity(confidence=0.7, estimated_revenue_impact=0.10))

    @pytest.mark.asyncio
    async def test_sweep_executes_eligible(self, store):
        handler = FakeHandler(store)
        executor = make_executor(store, handler)
        eligible = await make_action(store)
        await make_action(store, confidence=0.5)
        await make_action(store, auto=False)
        await make_action(store, tier=3)

        sweep = await executor.execute_auto_actions()

        assert sweep.to_dict() == {"executed": 1, "failed": 0, "skipped": 1}
        assert handler.executed == [eligible.id]
        log = (await store.get_execution_logs_for_action(eligible.id))[0]
        assert log.executed_by == "auto"

    @pytest.mark.asyncio
    async def test_open_breaker_blocks_sweep(self, store):
        """Test nothing runs while the breaker is open."""
        handler = FakeHandler(store)
        executor = make_executor(store, handler)
        for _ in range(3):
            await executor.circuit_breaker.record_failure()
        action = await make_action(store)
        await make_action(store, tier=2, status="APPROVED")

        sweep = await executor.execute_auto_actions()

        assert sweep.to_dict() == {"executed": 0, "failed": 0, "skipped": 0}
        assert handler.executed == []
        assert (await store.get_action(action.id)).status == "PENDING"

    @pytest.mark.asyncio
    async def test_breaker_trip_halts_sweep(self, store):
        """Test a mid-sweep trip stops both passes."""
        handler = FakeHandler(store, error="boom")
        notifications = RecordingNotifications()
        executor = make_executor(store, handler, notifications=notifications)
        for _ in range(5):
            await make_action(store)
        approved = await make_action(store, tier=2, status="APPROVED")

        sweep = await executor.execute_auto_actions()

        assert sweep.to_dict() == {"executed": 0, "failed": 3, "skipped": 0}
        assert len(handler.executed) == 3
        assert executor.circuit_breaker.is_open
        assert notifications.breaker_events == [True]
        assert (await store.get_action(approved.id)).status == "APPROVED"

    @pytest.mark.asyncio
    async def test_hourly_cap(self, store):
        handler = FakeHandler(store)
        config = EngineConfig(limits={"max_auto_executions_per_hour": 2})
        executor = make_executor(store, handler, config=config)
        for _ in range(5):
            await make_action(store)

        sweep = await executor.execute_auto_actions()
        assert sweep.executed == 2

        again = await executor.execute_auto_actions()
        assert again.to_dict() == {"executed": 0, "failed": 0, "skipped": 0}

    @pytest.mark.asyncio
    async def test_daily_cap(self, store):
        """Test the daily cap bounds a sweep even with hourly headroom."""
        clock = FakeClock()
        handler = FakeHandler(store)
        config = EngineConfig(limits={"max_auto_executions_per_hour": 10, "max_auto_executions_per_day": 3})
        executor = make_executor(store, handler, config=config, clock=clock)

        old = await make_action(store, status="EXECUTED")
        for _ in range(2):
            await store.create_execution_log(old.id, "auto", {}, True, None, {}, 1, executed_at=clock.now - 7200)
        for _ in range(5):
            await make_action(store)

        sweep = await executor.execute_auto_actions()

        assert sweep.executed == 1

    @pytest.mark.asyncio
    async def test_sweep_batch_size(self, store):
        handler = FakeHandler(store)
        config = EngineConfig(limits={"sweep_batch_size": 2})
        executor = make_executor(store, handler, config=config)
        for _ in range(4):
            await make_action(store)

        sweep = await executor.execute_auto_actions()

        assert sweep.executed == 2

    @pytest.mark.asyncio
    async def test_approved_tier_two_runs_outside_caps(self, store):
        """Test approved actions run with executed_by=approved."""
        clock = FakeClock()
        handler = FakeHandler(store)
        config = EngineConfig(limits={"max_auto_executions_per_hour": 1})
        executor = make_executor(store, handler, config=config, clock=clock)
        await make_action(store)
        approved = [await make_action(store, tier=2, auto=False, status="APPROVED") for _ in range(2)]
        await make_action(store, tier=2, auto=False, status="PENDING")

        sweep = await executor.execute_auto_actions()

        assert sweep.executed == 3
        for action in approved:
            log = (await store.get_execution_logs_for_action(action.id))[0]
            assert log.executed_by == "approved"
            assert (await store.get_action(action.id)).status == "EXECUTED"

    @pytest.mark.asyncio
    async def test_exhausted_attempts_not_picked(self, store):
        handler = FakeHandler(store)
        executor = make_executor(store, handler)
        await make_action(store, execution_attempts=3)

        sweep = await executor.execute_auto_actions()

        assert sweep.to_dict() == {"executed": 0, "failed": 0, "skipped": 0}


class TestOperatorOperations:
    """Test stats and breaker reset."""

    @pytest.mark.asyncio
    async def test_execution_stats(self, store):
        executor = make_executor(store, FakeHandler(store))
        ok = await make_action(store)
        await executor.execute(ok.id, "auto")

        stats = await executor.get_execution_stats()

        assert stats["today"]["auto_executed"] == 1
        assert stats["today"]["failed"] == 0
        assert stats["today"]["by_type"]["EXPAND_CONTENT"]["success"] == 1
        assert stats["recent_executions"][0]["action_id"] == ok.id
        assert stats["circuit_breaker"]["state"] == "closed"
        assert stats["rate_limit"]["hourly_count"] == 1

    @pytest.mark.asyncio
    async def test_reset_circuit_breaker(self, store):
        notifications = RecordingNotifications()
        executor = make_executor(store, FakeHandler(store), notifications=notifications)
        for _ in range(3):
            await executor.circuit_breaker.record_failure()

        assert await executor.reset_circuit_breaker() is True
        assert executor.circuit_breaker.is_open is False
        assert notifications.breaker_events == [False]
        assert await executor.reset_circuit_breaker() is False
