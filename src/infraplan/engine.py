"""Execution engine.

Runs a compiled plan against a provider with bounded concurrency. A step is
dispatched only once every step it depends on has succeeded and committed
its state record. Failures are contained: the failing step's transitive
dependents are never dispatched, independent branches keep going, and the
run always ends with an ApplyResult rather than an exception.
"""

from __future__ import annotations

import asyncio
import dataclasses
import heapq
import logging
import time
from typing import Any

from .exceptions import MissingOutputError
from .models import (
    Action,
    ApplyResult,
    EngineOptions,
    ErrorKind,
    Phase,
    Plan,
    PlanStep,
    Ref,
    ResourceId,
    StateRecord,
    StepFailure,
    substitute_refs,
)
from .provider import ProviderProtocol, classify_error
from .state_protocol import StateStoreProtocol

logger = logging.getLogger(__name__)


def _now() -> str:
    return time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime())


class Executor:
    """
    Applies a plan through a provider, committing state as steps succeed.

    Args:
        provider: Performs the infrastructure mutations
        store: Receives a record commit or delete after every successful step
        options: Concurrency, retry and dry-run settings

    Example:
        executor = Executor(LocalProvider(), InMemoryStateStore())
        result = await executor.run(plan)
        if not result.ok:
            for failure in result.failed:
                print(failure.key, failure.error)
    """

    def __init__(
        self,
        provider: ProviderProtocol,
        store: StateStoreProtocol,
        options: EngineOptions | None = None,
    ) -> None:
        self.provider = provider
        self.store = store
        self.options = options or EngineOptions()
        self._classify = self.options.classify_error or classify_error
        self._cancelled = False
        self._records: dict[ResourceId, StateRecord] = {}

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        """
        Stop dispatching new steps.

        Steps already in flight run to completion (including their commit).
        Steps not yet dispatched are reported as skipped.
        """
        if not self._cancelled:
            logger.warning("Cancellation requested; waiting for in-flight steps")
        self._cancelled = True

    async def run(self, plan: Plan) -> ApplyResult:
        """Execute ``plan`` and report what happened."""
        result = ApplyResult(dry_run=self.options.dry_run, planned=plan.keys)
        if self.options.dry_run:
            logger.info("Dry run: %d step(s) planned, nothing applied", len(plan))
            return result
        if plan.is_empty:
            return result

        self._records = dict(await self.store.load())

        position = {step.key: i for i, step in enumerate(plan)}
        remaining = {step.key: len(step.depends_on) for step in plan}
        dependents: dict[str, list[str]] = {step.key: [] for step in plan}
        for step in plan:
            for dep in step.depends_on:
                dependents[dep].append(step.key)

        ready = [position[step.key] for step in plan if not step.depends_on]
        heapq.heapify(ready)
        running: dict[asyncio.Task[StepFailure | None], PlanStep] = {}
        completed: set[str] = set()
        halves: dict[ResourceId, int] = {}

        while ready or running:
            while ready and len(running) < self.options.concurrency and not self._cancelled:
                step = plan.steps[heapq.heappop(ready)]
                logger.debug("Dispatching %s", step.key)
                running[asyncio.create_task(self._execute(step))] = step

            if not running:
                break

            finished, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in finished:
                step = running.pop(task)
                failure = task.result()
                if failure is not None:
                    result.failed.append(failure)
                    continue

                completed.add(step.key)
                self._report_success(step, result, halves)
                for child in dependents[step.key]:
                    remaining[child] -= 1
                    if remaining[child] == 0:
                        heapq.heappush(ready, position[child])

        failed = {f.key for f in result.failed}
        result.skipped = [key for key in plan.keys if key not in completed and key not in failed]
        result.cancelled = self._cancelled
        for key in result.skipped:
            logger.warning("Skipped %s", key)
        logger.info(
            "Run %s finished: %d succeeded, %d failed, %d skipped",
            result.run_id,
            len(completed),
            len(result.failed),
            len(result.skipped),
        )
        return result

    def _report_success(
        self, step: PlanStep, result: ApplyResult, halves: dict[ResourceId, int]
    ) -> None:
        rid = step.resource_id
        if step.action is Action.CREATE:
            result.created.append(rid)
        elif step.action is Action.UPDATE:
            result.updated.append(rid)
        elif step.action is Action.DELETE:
            result.deleted.append(rid)
        else:
            halves[rid] = halves.get(rid, 0) + 1
            if halves[rid] == 2:
                result.replaced.append(rid)

    # -------------------------------------------------------------------------
    # Single step
    # -------------------------------------------------------------------------

    async def _execute(self, step: PlanStep) -> StepFailure | None:
        """Run one step to completion. Returns a failure instead of raising."""
        try:
            resolved = dataclasses.replace(step, attributes=self._resolve(step))
        except MissingOutputError as e:
            logger.error("Step %s failed: %s", step.key, e)
            return StepFailure(step.key, step.resource_id, str(e), attempts=0)

        attempt = 0
        while True:
            attempt += 1
            try:
                outputs = await self.provider.apply(resolved)
                break
            except Exception as e:
                transient = self._classify(e) is ErrorKind.TRANSIENT
                if transient and attempt < self.options.max_attempts:
                    delay = self.options.backoff_delay(attempt)
                    logger.warning(
                        "Step %s failed (attempt %d/%d), retrying in %.2fs: %s",
                        step.key,
                        attempt,
                        self.options.max_attempts,
                        delay,
                        e,
                    )
                    await asyncio.sleep(delay)
                    continue
                logger.error("Step %s failed after %d attempt(s): %s", step.key, attempt, e)
                return StepFailure(
                    step.key,
                    step.resource_id,
                    f"{type(e).__name__}: {e}",
                    attempts=attempt,
                    transient=transient,
                )

        try:
            await self._record(resolved, outputs or {})
        except Exception as e:
            logger.error("Step %s applied but state was not recorded: %s", step.key, e)
            return StepFailure(step.key, step.resource_id, f"{type(e).__name__}: {e}", attempt)

        logger.info("Completed %s", step.describe())
        return None

    def _resolve(self, step: PlanStep) -> dict[str, Any]:
        """Substitute references with committed runtime outputs."""

        def lookup(ref: Ref) -> Any:
            record = self._records.get(ref.resource)
            if record is None:
                raise MissingOutputError(step.resource_id, ref.resource, ref.attribute)
            try:
                return record.value(ref.attribute)
            except KeyError:
                raise MissingOutputError(step.resource_id, ref.resource, ref.attribute) from None

        resolved: dict[str, Any] = substitute_refs(step.attributes, lookup)
        return resolved

    async def _record(self, step: PlanStep, outputs: dict[str, Any]) -> None:
        """Commit or remove the state record after a successful provider call."""
        rid = step.resource_id
        current = self._records.get(rid)

        if step.phase is Phase.APPLY:
            deposed = current.deposed if current else None
            if step.action is Action.REPLACE and current is not None:
                # Create-before-destroy: the old object stays until its destroy
                deposed = dataclasses.replace(current, deposed=None)
            record = StateRecord(
                attributes=step.attributes,
                outputs=dict(outputs),
                dependencies=step.dependencies,
                serial=(current.serial if current else 0) + 1,
                updated_at=_now(),
                deposed=deposed,
            )
            await self.store.commit(rid, record)
            self._records[rid] = record
            return

        has_deposed = current is not None and current.deposed is not None
        if step.deposed or (step.action is Action.REPLACE and has_deposed):
            # Only the old object went away; the live record stays
            if current is None or not has_deposed:
                return
            record = dataclasses.replace(
                current, deposed=None, serial=current.serial + 1, updated_at=_now()
            )
            await self.store.commit(rid, record)
            self._records[rid] = record
            return

        await self.store.delete(rid)
        self._records.pop(rid, None)
