"""Per-contact execution state machine.

``advance`` drives one ``running`` execution forward until it waits, finishes
or hits the per-tick step limit. Every write is a conditional UPDATE on
``status == 'running'``: an execution cancelled while a step is in flight
keeps its cancelled status, and the machine stops after recording the
in-flight step's attempt.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..config import JourneySettings, settings as default_settings
from ..errors import ContactNotFoundError, ContactStoreError
from ..models.execution import JourneyExecution
from ..models.journey import Journey
from ..services import execution_svc, journey_svc
from ..timeutil import as_utc, utcnow
from .actions import ActionExecutor, StepContext, StepOutcome
from .evaluator import explain_condition
from .steps import StepDefinition, StepType, WaitConfig

logger = logging.getLogger(__name__)


class _Stopped(Exception):
    """Raised internally when a conditional write finds the execution no longer running."""


def retry_backoff(attempt_no: int, base_seconds: int, max_seconds: int) -> timedelta:
    """Exponential backoff: base, 2*base, 4*base ... capped at max."""
    exponent = max(attempt_no - 1, 0)
    return timedelta(seconds=min(base_seconds * 2 ** exponent, max_seconds))


class ExecutionStateMachine:
    """Advances journey executions one step at a time."""

    def __init__(
        self,
        actions: ActionExecutor,
        contacts,
        settings_obj: JourneySettings | None = None,
        clock=utcnow,
    ):
        self.actions = actions
        self.contacts = contacts
        self.settings = settings_obj or default_settings
        self.clock = clock

    async def advance(
        self, db: AsyncSession, execution: JourneyExecution, now: datetime | None = None
    ) -> JourneyExecution:
        """Run the execution's current step and keep going while steps are immediate."""
        if execution.status != "running":
            return execution
        clock = (lambda: now) if now is not None else self.clock

        journey = (
            await db.execute(select(Journey).where(Journey.id == execution.journey_id))
        ).scalar_one()
        steps = await journey_svc.get_steps(db, journey)
        by_id = {s.id: s for s in steps}
        by_order = {s.order_no: s for s in steps}

        try:
            if execution.current_step_id is None:
                if not steps:
                    await self._finish(db, execution, None, "completed", clock())
                    return await self._reload(db, execution)
                step = steps[0]
                if await self._enter_wait(db, execution, step, clock()):
                    return await self._reload(db, execution)
            else:
                step = by_id.get(execution.current_step_id)
                if step is None:
                    await self._finish(
                        db, execution, None, "failed", clock(),
                        error=f"Step {execution.current_step_id} is not part of journey version {journey.version}",
                    )
                    return await self._reload(db, execution)

            executed = 0
            while True:
                if executed >= self.settings.max_steps_per_tick:
                    # Yield to the dispatcher; the step runs on the next poll.
                    await self._write(
                        db, execution, clock(),
                        status="waiting", current_step_id=step.id, next_step_at=clock(),
                    )
                    logger.info(
                        "Execution %s hit the %d step per tick limit; rescheduled",
                        execution.id, self.settings.max_steps_per_tick,
                    )
                    break

                next_order, finished = await self._run_step(db, execution, journey, step, clock)
                executed += 1
                if finished:
                    break

                following = by_order.get(next_order) if next_order is not None else None
                if following is None:
                    await self._finish(db, execution, None, "completed", clock())
                    break
                step = following
                if await self._enter_wait(db, execution, step, clock()):
                    break
        except _Stopped:
            logger.info("Execution %s is no longer running; stopping", execution.id)

        return await self._reload(db, execution)

    # ── Step execution ───────────────────────────────────────────────────

    async def _run_step(
        self,
        db: AsyncSession,
        execution: JourneyExecution,
        journey: Journey,
        step: StepDefinition,
        clock,
    ) -> tuple[int | None, bool]:
        """Run one step; returns (next order_no, whether the execution stopped)."""
        if step.is_branch:
            return await self._run_branch(db, execution, step, clock)

        if step.step_type == StepType.END:
            await self._finish(db, execution, step, "completed", clock(), outcome="success")
            return None, True

        prior_retries = await execution_svc.trailing_retry_count(db, execution.id, step.id)
        attempt_no = prior_retries + 1
        ctx = StepContext(
            tenant_id=execution.tenant_id,
            journey_id=journey.id,
            execution_id=execution.id,
            contact_id=execution.contact_id,
            step_id=step.id,
            attempt_no=attempt_no,
            trigger_data=execution.trigger_data,
        )
        outcome = await self.actions.execute(step.step_type, step.config, ctx)

        if outcome.ok:
            await execution_svc.record_attempt(
                db, execution.id, step.id, "success", attempt_no, detail=outcome.output or None
            )
            await self._write(db, execution, clock(), current_step_id=step.id, attempt_count=0, last_error=None)
            return step.order_no + 1, False

        if outcome.status == "retryable_failure":
            await self._retry_or_fail(db, execution, step, outcome, attempt_no, clock())
            return None, True

        await self._finish(
            db, execution, step, "failed", clock(),
            outcome="fatal_failure", error=outcome.reason, attempt_no=attempt_no,
        )
        return None, True

    async def _run_branch(
        self, db: AsyncSession, execution: JourneyExecution, step: StepDefinition, clock
    ) -> tuple[int | None, bool]:
        attempt_no = await execution_svc.trailing_retry_count(db, execution.id, step.id) + 1
        try:
            snapshot = await self.contacts.get_snapshot(
                execution.tenant_id, execution.contact_id, trigger=execution.trigger_data
            )
        except ContactNotFoundError as exc:
            await self._finish(
                db, execution, step, "failed", clock(),
                outcome="fatal_failure", error=str(exc), attempt_no=attempt_no,
            )
            return None, True
        except ContactStoreError as exc:
            await self._retry_or_fail(
                db, execution, step, StepOutcome.retryable(str(exc)), attempt_no, clock()
            )
            return None, True

        result = explain_condition(step.conditions, snapshot)
        if result.missing_paths:
            logger.warning(
                "Execution %s step %d: unknown attribute paths %s evaluated as false",
                execution.id, step.order_no, ", ".join(result.missing_paths),
            )
        target = step.on_true_order_no if result.value else step.on_false_order_no
        await execution_svc.record_attempt(
            db, execution.id, step.id, "success", attempt_no,
            detail={
                "branch": result.value,
                "target_order_no": target,
                "missing_paths": list(result.missing_paths),
            },
        )
        await self._write(db, execution, clock(), current_step_id=step.id, attempt_count=0, last_error=None)
        if target is None:
            await self._finish(db, execution, None, "completed", clock())
            return None, True
        return target, False

    async def _retry_or_fail(
        self,
        db: AsyncSession,
        execution: JourneyExecution,
        step: StepDefinition,
        outcome: StepOutcome,
        attempt_no: int,
        now: datetime,
    ) -> None:
        max_attempts = self.settings.max_attempts_for(step.step_type.value)
        if attempt_no >= max_attempts:
            await self._finish(
                db, execution, step, "failed", now,
                outcome="retryable_failure",
                error=f"Gave up after {attempt_no} attempts: {outcome.reason}",
                attempt_no=attempt_no,
            )
            return

        wake = now + retry_backoff(
            attempt_no,
            self.settings.retry_backoff_base_seconds,
            self.settings.retry_backoff_max_seconds,
        )
        await execution_svc.record_attempt(
            db, execution.id, step.id, "retryable_failure", attempt_no, error=outcome.reason
        )
        await self._write(
            db, execution, now,
            status="waiting",
            current_step_id=step.id,
            next_step_at=wake,
            attempt_count=attempt_no,
            last_error=outcome.reason,
        )
        logger.warning(
            "Execution %s step %d attempt %d/%d failed, retrying at %s: %s",
            execution.id, step.order_no, attempt_no, max_attempts, wake.isoformat(), outcome.reason,
        )

    async def _enter_wait(
        self, db: AsyncSession, execution: JourneyExecution, step: StepDefinition, now: datetime
    ) -> bool:
        """Park the execution on a wait step; False when the wake time already passed."""
        if step.step_type != StepType.WAIT or step.is_branch:
            return False
        config: WaitConfig = step.config
        wake = as_utc(config.wake_time(now))
        if wake <= now:
            return False
        await self._write(
            db, execution, now,
            status="waiting", current_step_id=step.id, next_step_at=wake,
            attempt_count=0, last_error=None,
        )
        logger.info("Execution %s waiting at step %d until %s", execution.id, step.order_no, wake.isoformat())
        return True

    # ── Persistence ──────────────────────────────────────────────────────

    async def _finish(
        self,
        db: AsyncSession,
        execution: JourneyExecution,
        step: StepDefinition | None,
        status: str,
        now: datetime,
        outcome: str | None = None,
        error: str | None = None,
        attempt_no: int = 1,
    ) -> None:
        if step is not None and outcome is not None:
            await execution_svc.record_attempt(
                db, execution.id, step.id, outcome, attempt_no, error=error
            )
        values = {"status": status, "completed_at": now, "last_error": error}
        if step is not None:
            values["current_step_id"] = step.id
        if status == "failed":
            values["attempt_count"] = attempt_no
        await self._write(db, execution, now, **values)
        if status == "failed":
            logger.warning("Execution %s failed: %s", execution.id, error)
        else:
            logger.info("Execution %s %s", execution.id, status)

    async def _write(
        self, db: AsyncSession, execution: JourneyExecution, now: datetime, **values
    ) -> None:
        """Apply ``values`` only if the execution is still running, committing staged attempts."""
        if values.get("status", "running") != "waiting":
            values["next_step_at"] = None
        if values.get("status", "running") != "running":
            values["leased_at"] = None
        result = await db.execute(
            update(JourneyExecution)
            .where(JourneyExecution.id == execution.id, JourneyExecution.status == "running")
            .values(updated_at=now, **values)
            .execution_options(synchronize_session=False)
        )
        await db.commit()
        if result.rowcount == 0:
            raise _Stopped()

    async def _reload(self, db: AsyncSession, execution: JourneyExecution) -> JourneyExecution:
        await db.refresh(execution)
        return execution
