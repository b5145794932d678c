"""Action executor: single-action execution, the auto-execution sweep, and rollback."""

import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Union

import structlog

from core.config import EngineConfig
from core.errors import (
    EngineError,
    ErrorCategory,
    HandlerValidationError,
    InvalidStateError,
    NotFoundError,
    RollbackError,
)
from core.models import (
    Action,
    ActionStatus,
    EXECUTABLE_STATUSES,
    ExecutionTier,
    Opportunity,
    OpportunityStatus,
    TriggerSource,
)
from core.store import StateStore
from handlers.base import HandlerRegistry, HandlerResult
from notifications.service import ExecutionNotice, NotificationService
from safety.circuit_breaker import CircuitBreaker
from safety.rate_limit import ExecutionRateLimiter


logger = structlog.get_logger()


@dataclass
class ExecutionResult:
    """Result of executing one action."""
    success: bool
    action_id: str
    output: Optional[dict] = None
    error: Optional[str] = None
    error_type: Optional[str] = None
    duration_ms: float = 0
    execution_log_id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "action_id": self.action_id,
            "output": self.output,
            "error": self.error,
            "error_type": self.error_type,
            "duration_ms": self.duration_ms,
            "execution_log_id": self.execution_log_id,
        }


@dataclass
class RollbackResult:
    """Result of rolling back one execution."""
    success: bool
    execution_log_id: str
    error: Optional[str] = None
    error_type: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "execution_log_id": self.execution_log_id,
            "error": self.error,
            "error_type": self.error_type,
        }


@dataclass
class SweepResult:
    """Aggregate counts of one auto-execution sweep."""
    executed: int = 0
    failed: int = 0
    skipped: int = 0
    results: list[ExecutionResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, int]:
        return {"executed": self.executed, "failed": self.failed, "skipped": self.skipped}


class ActionExecutor:
    """
    Runs actions through their handlers with policy gates and an audit trail.

    Every public operation returns a result object; errors never escape.
    Callers must ensure at most one sweep is in flight (see EngineScheduler).
    """

    def __init__(
        self,
        store: StateStore,
        registry: HandlerRegistry,
        config: Optional[EngineConfig] = None,
        notifications: Optional[NotificationService] = None,
        circuit_breaker: Optional[CircuitBreaker] = None,
        rate_limiter: Optional[ExecutionRateLimiter] = None,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.store = store
        self.registry = registry
        self.config = config or EngineConfig()
        self.notifications = notifications
        self._clock = clock or time.time

        limits = self.config.limits
        self.circuit_breaker = circuit_breaker or CircuitBreaker(
            failure_threshold=self.config.circuit_breaker.failure_threshold,
            window_seconds=self.config.circuit_breaker.window_seconds,
            clock=self._clock,
        )
        self.rate_limiter = rate_limiter or ExecutionRateLimiter(
            store,
            max_per_hour=limits.max_auto_executions_per_hour,
            max_per_day=limits.max_auto_executions_per_day,
            clock=self._clock,
        )

    # ==================== Single Action ====================

    async def execute(
        self,
        action_id: str,
        executed_by: Union[str, TriggerSource] = TriggerSource.MANUAL,
    ) -> ExecutionResult:
        """
        Execute one action.

        Validation failures are logged but leave the action untouched.
        Handler failures (returned or raised) mark it FAILED, count an
        attempt and feed the circuit breaker.
        """
        if isinstance(executed_by, TriggerSource):
            executed_by = executed_by.value

        try:
            return await self._execute(action_id, executed_by)
        except EngineError as e:
            logger.warning(
                "action_execution_rejected",
                action_id=action_id,
                executed_by=executed_by,
                error=e.message,
                error_type=e.error_type,
            )
            return ExecutionResult(
                success=False,
                action_id=action_id,
                error=e.message,
                error_type=e.error_type,
            )
        except Exception as e:
            logger.exception("action_execution_error", action_id=action_id)
            return ExecutionResult(
                success=False,
                action_id=action_id,
                error=str(e),
                error_type=ErrorCategory.EXECUTION.value,
            )

    async def _execute(self, action_id: str, executed_by: str) -> ExecutionResult:
        start = time.monotonic()

        action = await self.store.get_action(action_id)
        if not action:
            raise NotFoundError("Action not found", entity="action", entity_id=action_id)

        opportunity = await self.store.get_opportunity(action.opportunity_id)
        if not opportunity:
            raise NotFoundError(
                "Opportunity not found",
                entity="opportunity",
                entity_id=action.opportunity_id,
            )

        if action.status not in [s.value for s in EXECUTABLE_STATUSES]:
            raise InvalidStateError(
                f"Action cannot be executed - status is {action.status}",
                current_status=action.status,
            )

        handler = self.registry.get_handler(action.action_type)
        if not handler:
            raise NotFoundError(
                f"No handler found for action type: {action.action_type}",
                entity="handler",
                entity_id=action.action_type,
            )

        prepared_rollback = None
        try:
            validation = await handler.validate(action)
            if not validation.valid:
                raise HandlerValidationError(validation.reason or "Validation failed", action_id=action.id)

            prepared_rollback = await handler.prepare_rollback(action)
            result = await handler.execute(action)

        except HandlerValidationError as e:
            duration_ms = (time.monotonic() - start) * 1000
            log = await self.store.create_execution_log(
                action_id=action.id,
                executed_by=executed_by,
                input_data=action.action_data,
                success=False,
                error_message=e.message,
                output_data=None,
                duration_ms=duration_ms,
                executed_at=self._clock(),
            )
            logger.info(
                "action_validation_failed",
                action_id=action.id,
                action_type=action.action_type,
                reason=e.message,
            )
            return ExecutionResult(
                success=False,
                action_id=action.id,
                error=e.message,
                error_type=e.error_type,
                duration_ms=duration_ms,
                execution_log_id=log.id,
            )

        except Exception as e:
            # A raised handler error is recorded exactly like a returned failure
            result = HandlerResult(success=False, error=str(e) or type(e).__name__)

        return await self._record_outcome(action, executed_by, result, prepared_rollback, start)

    async def _record_outcome(
        self,
        action: Action,
        executed_by: str,
        result: HandlerResult,
        prepared_rollback: Optional[dict],
        start: float,
    ) -> ExecutionResult:
        duration_ms = (time.monotonic() - start) * 1000
        now = self._clock()
        error = None if result.success else (result.error or "Execution failed")

        log = await self.store.create_execution_log(
            action_id=action.id,
            executed_by=executed_by,
            input_data=action.action_data,
            success=result.success,
            error_message=error,
            output_data=result.output,
            duration_ms=duration_ms,
            rollback_data=result.rollback_data or prepared_rollback,
            executed_at=now,
        )

        updates: dict[str, Any] = {
            "status": ActionStatus.EXECUTED.value if result.success else ActionStatus.FAILED.value,
            "execution_result": {"success": result.success, "output": result.output, "error": error},
            "last_attempt_at": now,
        }
        if result.success:
            updates["executed_at"] = now
        await self.store.update_action(action.id, increment_attempts=True, **updates)

        if result.success:
            logger.info(
                "action_executed",
                action_id=action.id,
                action_type=action.action_type,
                executed_by=executed_by,
                duration_ms=round(duration_ms, 1),
            )
            await self._close_out_opportunity(action.opportunity_id)
        else:
            logger.warning(
                "action_execution_failed",
                action_id=action.id,
                action_type=action.action_type,
                executed_by=executed_by,
                error=error,
            )
            tripped = await self.circuit_breaker.record_failure()
            if tripped and self.notifications:
                await self._notify(self.notifications.notify_circuit_breaker(opened=True))

        if self.notifications:
            await self._notify(self.notifications.notify_execution_result(
                ExecutionNotice(
                    action_id=action.id,
                    action_type=action.action_type,
                    success=result.success,
                    error=error,
                )
            ))

        return ExecutionResult(
            success=result.success,
            action_id=action.id,
            output=result.output,
            error=error,
            error_type=None if result.success else ErrorCategory.EXECUTION.value,
            duration_ms=duration_ms,
            execution_log_id=log.id,
        )

    async def _close_out_opportunity(self, opportunity_id: str) -> None:
        """Mark the opportunity IMPLEMENTED once no sibling action is unresolved."""
        remaining = await self.store.count_unresolved_actions(opportunity_id)
        if remaining == 0:
            await self.store.update_opportunity(
                opportunity_id,
                status=OpportunityStatus.IMPLEMENTED.value,
                implemented_at=self._clock(),
            )
            logger.info("opportunity_implemented", opportunity_id=opportunity_id)

    async def _notify(self, coro) -> None:
        """Await a notification; failures are logged, never propagated."""
        try:
            await coro
        except Exception as e:
            logger.error("notification_failed", error=str(e))

    # ==================== Auto-Execution ====================

    def can_auto_execute(self, action: Action, opportunity: Opportunity) -> bool:
        """Every condition must hold for an action to run unattended."""
        thresholds = self.config.auto_execution
        return (
            action.execution_tier == ExecutionTier.AUTO
            and action.auto_executable
            and action.execution_attempts < self.config.limits.max_execution_attempts
            and opportunity.confidence >= thresholds.min_confidence
            and (opportunity.estimated_revenue_impact or 0.0) >= thresholds.min_revenue_impact
        )

    async def execute_auto_actions(self) -> SweepResult:
        """
        One scheduled sweep.

        Tier-1 pending actions run within the hourly/daily caps; then a
        small batch of approved tier-2 actions runs outside the caps. An
        open breaker (before or during the sweep) stops all execution.
        """
        sweep = SweepResult()
        limits = self.config.limits

        if self.circuit_breaker.is_open:
            logger.warning("auto_execution_skipped_circuit_open")
            return sweep

        usage = await self.rate_limiter.check()
        if usage.exhausted:
            logger.info("auto_execution_skipped_rate_limit", **usage.to_dict())
            return sweep

        take = min(limits.sweep_batch_size, usage.hourly_remaining, usage.daily_remaining)
        candidates = await self.store.find_sweep_candidates(
            status=ActionStatus.PENDING.value,
            execution_tier=int(ExecutionTier.AUTO),
            max_attempts=limits.max_execution_attempts,
            limit=take,
            auto_executable=True,
        )

        for item in candidates:
            if self.circuit_breaker.is_open:
                break
            if not self.can_auto_execute(item.action, item.opportunity):
                sweep.skipped += 1
                logger.debug("auto_execution_ineligible", action_id=item.action.id)
                continue
            self._tally(sweep, await self.execute(item.action.id, TriggerSource.AUTO))

        if self.circuit_breaker.is_open:
            logger.warning("auto_execution_halted_circuit_open", **sweep.to_dict())
            return sweep

        approved = await self.store.find_sweep_candidates(
            status=ActionStatus.APPROVED.value,
            execution_tier=int(ExecutionTier.AFTER_APPROVAL),
            max_attempts=limits.max_execution_attempts,
            limit=limits.approved_batch_size,
            not_executed=True,
        )

        for item in approved:
            if self.circuit_breaker.is_open:
                break
            self._tally(sweep, await self.execute(item.action.id, TriggerSource.APPROVED))

        logger.info("auto_execution_completed", **sweep.to_dict())
        return sweep

    @staticmethod
    def _tally(sweep: SweepResult, result: ExecutionResult) -> None:
        sweep.results.append(result)
        if result.success:
            sweep.executed += 1
        else:
            sweep.failed += 1

    # ==================== Rollback ====================

    async def rollback(
        self,
        execution_log_id: str,
        rolled_back_by: str,
        reason: Optional[str] = None,
    ) -> RollbackResult:
        """
        Undo a successful execution.

        State is only stamped after the handler reports success, so a
        failed rollback can be retried.
        """
        try:
            await self._rollback(execution_log_id, rolled_back_by, reason)
        except EngineError as e:
            logger.warning(
                "rollback_rejected",
                execution_log_id=execution_log_id,
                error=e.message,
                error_type=e.error_type,
            )
            return RollbackResult(
                success=False,
                execution_log_id=execution_log_id,
                error=e.message,
                error_type=e.error_type,
            )
        except Exception as e:
            logger.exception("rollback_error", execution_log_id=execution_log_id)
            return RollbackResult(
                success=False,
                execution_log_id=execution_log_id,
                error=str(e),
                error_type=ErrorCategory.ROLLBACK.value,
            )

        return RollbackResult(success=True, execution_log_id=execution_log_id)

    async def _rollback(self, execution_log_id: str, rolled_back_by: str, reason: Optional[str]) -> None:
        log = await self.store.get_execution_log(execution_log_id)
        if not log:
            raise NotFoundError("Execution log not found", entity="execution_log", entity_id=execution_log_id)

        if not log.success:
            raise InvalidStateError("Cannot rollback a failed execution")

        if log.rolled_back_at is not None:
            raise InvalidStateError("Action has already been rolled back")

        rollback_data = log.rollback_data
        if rollback_data is None and isinstance(log.output_data, dict):
            rollback_data = log.output_data.get("rollback_data")
        if not rollback_data:
            raise RollbackError("No rollback data available", execution_log_id=execution_log_id)

        action = await self.store.get_action(log.action_id)
        if not action:
            raise NotFoundError("Action not found", entity="action", entity_id=log.action_id)

        handler = self.registry.get_handler(action.action_type)
        if not handler:
            raise NotFoundError(
                f"No handler found for action type: {action.action_type}",
                entity="handler",
                entity_id=action.action_type,
            )

        if not await handler.rollback(rollback_data):
            raise RollbackError("Rollback failed", execution_log_id=execution_log_id)

        now = self._clock()
        await self.store.update_execution_log(
            log.id,
            rolled_back_at=now,
            rolled_back_by=rolled_back_by,
            rollback_reason=reason,
        )
        await self.store.update_action(
            action.id,
            status=ActionStatus.ROLLED_BACK.value,
            rolled_back_at=now,
        )
        logger.info(
            "action_rolled_back",
            action_id=action.id,
            execution_log_id=log.id,
            rolled_back_by=rolled_back_by,
            reason=reason,
        )

    # ==================== Operator ====================

    async def get_execution_stats(self) -> dict[str, Any]:
        """Today's counts, recent executions, breaker and rate-limit status."""
        now = self._clock()
        today = datetime.fromtimestamp(now).replace(hour=0, minute=0, second=0, microsecond=0).timestamp()

        recent = await self.store.recent_execution_logs(limit=20)
        usage = await self.rate_limiter.check()

        return {
            "today": {
                "auto_executed": await self.store.count_execution_logs(
                    since=today, executed_by=TriggerSource.AUTO.value, success=True
                ),
                "approved_executed": await self.store.count_execution_logs(
                    since=today, executed_by=TriggerSource.APPROVED.value, success=True
                ),
                "failed": await self.store.count_execution_logs(since=today, success=False),
                "rolled_back": await self.store.count_rolled_back_since(today),
                "by_type": await self.store.execution_counts_by_type(today),
            },
            "recent_executions": [
                {
                    "id": log.id,
                    "action_id": log.action_id,
                    "executed_by": log.executed_by,
                    "executed_at": log.executed_at,
                    "success": log.success,
                    "error_message": log.error_message,
                    "duration_ms": log.duration_ms,
                    "rolled_back_at": log.rolled_back_at,
                }
                for log in recent
            ],
            "circuit_breaker": self.circuit_breaker.status(),
            "rate_limit": usage.to_dict(),
        }

    async def reset_circuit_breaker(self) -> bool:
        """Close the breaker; announces the change if it was open."""
        was_open = await self.circuit_breaker.reset()
        if was_open and self.notifications:
            await self._notify(self.notifications.notify_circuit_breaker(opened=False))
        return was_open
