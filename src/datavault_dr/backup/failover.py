"""
Failover Orchestrator

Executes a failover plan's steps strictly in order. Each step gets
1 + retries attempts, each bounded by the step timeout. When a step
exhausts its attempts the remaining forward steps are skipped and the
plan's rollback steps run in order as compensation.
"""
from __future__ import annotations

import asyncio
import shlex
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from datavault_dr.backup.events import EventChannel, EventKind
from datavault_dr.backup.models import FailoverAction, FailoverPlan, FailoverStep, utc_now
from datavault_dr.exceptions import FailoverError, FailoverStepFailed
from datavault_dr.logging import get_logger, get_logger_with_context

logger = get_logger(__name__)


class StepHandler(ABC):
    """Performs one kind of remediation action."""

    @abstractmethod
    async def execute(self, step: FailoverStep) -> dict[str, Any] | None:
        """Run the step. Raise on failure; the return value is recorded as output."""
        pass


class NotificationStepHandler(StepHandler):
    """Sends the step's message through the event channel."""

    def __init__(self, events: EventChannel):
        self.events = events

    async def execute(self, step: FailoverStep) -> dict[str, Any] | None:
        await self.events.publish(
            EventKind.FAILOVER_NOTIFICATION,
            step_id=step.step_id,
            message=step.config.get("message", step.description),
            channels=step.config.get("channels", []),
        )
        return None


class CommandStepHandler(StepHandler):
    """Runs ``config["command"]`` (string or argv list) and fails on a non-zero exit."""

    async def execute(self, step: FailoverStep) -> dict[str, Any] | None:
        command = step.config.get("command")
        if not command:
            raise FailoverError(f"Step '{step.step_id}' has no command configured")
        argv = shlex.split(command) if isinstance(command, str) else [str(c) for c in command]

        process = await asyncio.create_subprocess_exec(
            *argv,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        try:
            stdout, stderr = await process.communicate()
        except asyncio.CancelledError:
            process.kill()
            raise
        if process.returncode != 0:
            raise FailoverError(
                f"Command exited with {process.returncode}: {stderr.decode(errors='replace').strip()}"
            )
        return {"returncode": 0, "stdout": stdout.decode(errors="replace").strip()}


class Route53DnsSwitchHandler(StepHandler):
    """Points a DNS record at the failover target with a Route 53 UPSERT."""

    def __init__(self, client=None):
        self._client = client

    @property
    def client(self):
        if self._client is None:
            import boto3

            self._client = boto3.client("route53")
        return self._client

    def _upsert(self, config: dict[str, Any]) -> dict[str, Any]:
        response = self.client.change_resource_record_sets(
            HostedZoneId=config["hosted_zone_id"],
            ChangeBatch={
                "Comment": config.get("comment", "datavault-dr failover"),
                "Changes": [{
                    "Action": "UPSERT",
                    "ResourceRecordSet": {
                        "Name": config["record_name"],
                        "Type": config.get("record_type", "CNAME"),
                        "TTL": int(config.get("ttl", 60)),
                        "ResourceRecords": [{"Value": config["target"]}],
                    },
                }],
            },
        )
        return {"change_id": response["ChangeInfo"]["Id"], "status": response["ChangeInfo"]["Status"]}

    async def execute(self, step: FailoverStep) -> dict[str, Any] | None:
        return await asyncio.to_thread(self._upsert, step.config)


class RunStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ROLLED_BACK = "rolled_back"


@dataclass
class StepOutcome:
    step_id: str
    action: FailoverAction
    phase: str
    success: bool
    attempts: int
    duration_seconds: float
    error: str | None = None
    output: dict[str, Any] | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            'step_id': self.step_id,
            'action': self.action.value,
            'phase': self.phase,
            'success': self.success,
            'attempts': self.attempts,
            'duration_seconds': round(self.duration_seconds, 3),
            'error': self.error,
            'output': self.output,
        }


@dataclass
class FailoverRun:
    """Record of one plan execution."""
    plan_id: str
    trigger: str
    status: RunStatus = RunStatus.RUNNING
    started_at: datetime = field(default_factory=utc_now)
    finished_at: datetime | None = None
    outcomes: list[StepOutcome] = field(default_factory=list)
    failed_step: str | None = None

    @property
    def executed_step_ids(self) -> list[str]:
        return [o.step_id for o in self.outcomes if o.phase == "forward"]

    @property
    def rollback_step_ids(self) -> list[str]:
        return [o.step_id for o in self.outcomes if o.phase == "rollback"]

    def to_dict(self) -> dict[str, Any]:
        return {
            'plan_id': self.plan_id,
            'trigger': self.trigger,
            'status': self.status.value,
            'started_at': self.started_at.isoformat(),
            'finished_at': self.finished_at.isoformat() if self.finished_at else None,
            'failed_step': self.failed_step,
            'outcomes': [o.to_dict() for o in self.outcomes],
        }


class FailoverOrchestrator:
    """Runs failover plans through pluggable per-action handlers."""

    def __init__(self, events: EventChannel, retry_delay: float = 1.0, max_history: int = 100):
        self.events = events
        self.retry_delay = retry_delay
        self.max_history = max_history
        self._handlers: dict[FailoverAction, StepHandler] = {}
        self._lock = asyncio.Lock()
        self.history: list[FailoverRun] = []

    def register_handler(self, action: FailoverAction | str, handler: StepHandler) -> None:
        self._handlers[FailoverAction(action)] = handler

    def has_handler(self, action: FailoverAction) -> bool:
        return action in self._handlers

    def validate_plan(self, plan: FailoverPlan) -> dict[str, Any]:
        """Report steps whose action has no registered handler, without running anything."""
        missing = [
            step.step_id
            for step in [*plan.steps, *plan.rollback_steps]
            if step.action not in self._handlers
        ]
        return {
            'plan_id': plan.plan_id,
            'ready': not missing and bool(plan.steps),
            'steps': len(plan.steps),
            'rollback_steps': len(plan.rollback_steps),
            'missing_handlers': missing,
        }

    async def _run_step(self, step: FailoverStep, phase: str, plan_id: str) -> StepOutcome:
        log = get_logger_with_context(__name__, plan_id=plan_id, step_id=step.step_id)
        handler = self._handlers.get(step.action)
        started = time.monotonic()

        if handler is None:
            outcome = StepOutcome(
                step.step_id, step.action, phase, False, 0, 0.0,
                error=f"No handler registered for action '{step.action.value}'",
            )
            log.error(f"{phase} step {step.step_id} failed: {outcome.error}")
            return outcome

        attempts = 0
        last_error: str | None = None
        for attempt in range(step.retries + 1):
            attempts = attempt + 1
            try:
                output = await asyncio.wait_for(handler.execute(step), timeout=step.timeout_seconds)
            except asyncio.TimeoutError:
                last_error = f"timed out after {step.timeout_seconds}s"
            except Exception as e:
                last_error = str(e) or type(e).__name__
            else:
                duration = time.monotonic() - started
                log.info(f"{phase} step {step.step_id} ({step.action.value}) succeeded in {duration:.2f}s")
                return StepOutcome(step.step_id, step.action, phase, True, attempts, duration, output=output)

            log.warning(f"{phase} step {step.step_id} attempt {attempts}/{step.retries + 1} failed: {last_error}")
            if attempt < step.retries and self.retry_delay > 0:
                await asyncio.sleep(self.retry_delay)

        duration = time.monotonic() - started
        log.error(f"{phase} step {step.step_id} failed after {attempts} attempt(s) in {duration:.2f}s")
        return StepOutcome(step.step_id, step.action, phase, False, attempts, duration, error=last_error)

    async def run_plan(self, plan: FailoverPlan, trigger: str = "manual") -> FailoverRun:
        """
        Execute a plan.

        Returns:
            The completed run record

        Raises:
            FailoverStepFailed: A forward step exhausted its retries; rollback
                has already run and the record is attached as ``run``
        """
        async with self._lock:
            run = FailoverRun(plan_id=plan.plan_id, trigger=trigger)
            self.history.append(run)
            del self.history[:-self.max_history]

            logger.warning(f"Starting failover plan '{plan.plan_id}' ({plan.name}), trigger: {trigger}")
            await self.events.publish(
                EventKind.FAILOVER_STARTED, plan_id=plan.plan_id, name=plan.name, trigger=trigger
            )

            for step in plan.steps:
                outcome = await self._run_step(step, "forward", plan.plan_id)
                run.outcomes.append(outcome)
                if outcome.success:
                    await self.events.publish(EventKind.FAILOVER_STEP_COMPLETED, plan_id=plan.plan_id, **outcome.to_dict())
                    continue

                run.failed_step = step.step_id
                await self.events.publish(EventKind.FAILOVER_STEP_FAILED, plan_id=plan.plan_id, **outcome.to_dict())
                await self._rollback(plan, run)
                raise FailoverStepFailed(plan.plan_id, step.step_id, outcome.error or "unknown error", run=run)

            run.status = RunStatus.COMPLETED
            run.finished_at = utc_now()
            logger.info(f"Failover plan '{plan.plan_id}' completed")
            await self.events.publish(EventKind.FAILOVER_COMPLETED, plan_id=plan.plan_id, trigger=trigger)
            return run

    async def _rollback(self, plan: FailoverPlan, run: FailoverRun) -> None:
        logger.warning(f"Rolling back failover plan '{plan.plan_id}' ({len(plan.rollback_steps)} step(s))")
        for step in plan.rollback_steps:
            outcome = await self._run_step(step, "rollback", plan.plan_id)
            run.outcomes.append(outcome)
            if not outcome.success:
                logger.error(f"Rollback step {step.step_id} of plan '{plan.plan_id}' failed: {outcome.error}")

        run.status = RunStatus.ROLLED_BACK
        run.finished_at = utc_now()
        await self.events.publish(
            EventKind.FAILOVER_ROLLED_BACK,
            plan_id=plan.plan_id,
            failed_step=run.failed_step,
            rollback_steps=run.rollback_step_ids,
            rollback_failures=[o.step_id for o in run.outcomes if o.phase == "rollback" and not o.success],
        )
