from __future__ import annotations

import logging
import threading
import time
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Mapping, Sequence

from seedsmith.services.constraint_validator import (
    AutoFix,
    ConstraintValidator,
    ConstraintViolationError,
    ValidationContext,
    ValidationResult,
)
from seedsmith.services.field_generators import FieldValueGenerator
from seedsmith.services.seeding_backend import SeedingBackend
from seedsmith.services.workflow_builder import (
    FieldSource,
    OnError,
    StepType,
    UserCreationWorkflow,
    WorkflowField,
    WorkflowStep,
)

logger = logging.getLogger(__name__)


class StepStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


_TRANSITIONS: dict[StepStatus, frozenset[StepStatus]] = {
    StepStatus.PENDING: frozenset({StepStatus.RUNNING, StepStatus.SKIPPED}),
    StepStatus.RUNNING: frozenset({StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED}),
    StepStatus.COMPLETED: frozenset(),
    StepStatus.FAILED: frozenset(),
    StepStatus.SKIPPED: frozenset(),
}


class StepExecutionError(RuntimeError):
    """Raised by a single step; the step's on_error policy decides what follows."""


class StepTimeoutError(StepExecutionError):
    """Raised when a step exceeds its timeout."""


class WorkflowDefinitionError(RuntimeError):
    """Raised when workflow steps cannot be ordered."""


class CancellationToken:
    """Cooperative cancellation flag checked between steps."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


@dataclass
class StepResult:
    step_id: str
    status: StepStatus = StepStatus.PENDING
    attempts: int = 0
    data: dict[str, Any] | None = None
    error: str | None = None
    duration_ms: float = 0.0

    def transition(self, status: StepStatus) -> None:
        if status not in _TRANSITIONS[self.status]:
            raise ValueError(f"Step {self.step_id} cannot move from {self.status.value} to {status.value}")
        self.status = status


@dataclass
class ExecutionResult:
    execution_id: str
    workflow_id: str
    success: bool = False
    step_results: dict[str, StepResult] = field(default_factory=dict)
    completed_steps: list[str] = field(default_factory=list)
    failed_step: str | None = None
    error: str | None = None
    rollback_required: bool = False
    rollback_completed: bool = False
    rollback_errors: list[str] = field(default_factory=list)
    duration_ms: float = 0.0
    principal_id: str | None = None
    entity_id: Any = None
    applied_fixes: list[AutoFix] = field(default_factory=list)
    validation_results: dict[str, ValidationResult] = field(default_factory=dict)
    cancelled: bool = False
    unsettled_steps: list[str] = field(default_factory=list)


@dataclass(frozen=True)
class ExecutionOptions:
    enable_rollback: bool = True
    enable_constraint_validation: bool = True
    enable_auto_fixes: bool = True
    default_timeout_seconds: float | None = 30.0
    retry_backoff_seconds: float = 0.5
    # Bound on waiting for a timed-out write before retrying or rolling back
    late_write_timeout_seconds: float | None = 30.0


class WorkflowExecutor:
    """Run a user creation workflow step by step against a seeding backend."""

    def __init__(
        self,
        backend: SeedingBackend,
        *,
        validator: ConstraintValidator | None = None,
        generator: FieldValueGenerator | None = None,
        options: ExecutionOptions | None = None,
        sleep: Callable[[float], None] = time.sleep,
        max_workers: int = 4,
    ) -> None:
        self.backend = backend
        self.validator = validator
        self.generator = generator or FieldValueGenerator()
        self.options = options or ExecutionOptions()
        self._sleep = sleep
        self._max_workers = max_workers

    @staticmethod
    def execution_order(steps: Sequence[WorkflowStep]) -> list[WorkflowStep]:
        """Stable topological order of ``steps`` by their declared dependencies."""

        by_id = {step.id: step for step in steps}
        indegree = {step.id: 0 for step in steps}
        dependents: dict[str, list[str]] = {step.id: [] for step in steps}
        for step in steps:
            for dependency in dict.fromkeys(step.dependencies):
                if dependency not in by_id:
                    raise WorkflowDefinitionError(f"Step {step.id} depends on unknown step {dependency}")
                indegree[step.id] += 1
                dependents[dependency].append(step.id)

        position = {step.id: index for index, step in enumerate(steps)}
        ready = [step_id for step_id, degree in indegree.items() if degree == 0]
        order: list[WorkflowStep] = []
        while ready:
            ready.sort(key=position.__getitem__)
            current = ready.pop(0)
            order.append(by_id[current])
            for successor in dependents[current]:
                indegree[successor] -= 1
                if indegree[successor] == 0:
                    ready.append(successor)

        if len(order) != len(steps):
            raise WorkflowDefinitionError("Workflow steps contain a dependency cycle")
        return order

    def execute(
        self,
        workflow: UserCreationWorkflow,
        request: Mapping[str, Any],
        *,
        cancel_token: CancellationToken | None = None,
        validator: ConstraintValidator | None = None,
    ) -> ExecutionResult:
        """Run ``workflow`` for ``request``.

        ``validator`` overrides the executor's own validator for this run only.
        """

        started = time.perf_counter()
        if validator is None:
            validator = self.validator
        result = ExecutionResult(execution_id=f"exec_{uuid.uuid4().hex[:12]}", workflow_id=workflow.id)
        result.step_results = {step.id: StepResult(step_id=step.id) for step in workflow.steps}
        logger.info("Executing workflow %s (%s)", workflow.id, result.execution_id)

        try:
            ordered = self.execution_order(workflow.steps)
        except WorkflowDefinitionError as exc:
            result.error = str(exc)
            result.duration_ms = (time.perf_counter() - started) * 1000
            return result

        pool = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="seed-step")
        in_flight: dict[str, Future] = {}
        try:
            for step in ordered:
                if cancel_token is not None and cancel_token.cancelled:
                    result.cancelled = True
                    result.error = "Workflow cancelled"
                    result.rollback_required = bool(result.completed_steps)
                    break

                blocked = self._blocking_dependency(step, workflow, result)
                if blocked is not None:
                    step_result = result.step_results[step.id]
                    step_result.transition(StepStatus.SKIPPED)
                    step_result.error = f"Dependency {blocked} did not complete"
                    continue

                if not self._run_step(pool, in_flight, workflow, step, request, result, validator):
                    result.failed_step = step.id
                    result.error = result.step_results[step.id].error
                    result.rollback_required = True
                    break
        finally:
            self._settle_in_flight(in_flight, result)
            pool.shutdown(wait=False)

        result.success = result.failed_step is None and not result.cancelled
        if result.success:
            primary = next(
                (s for s in workflow.insert_steps if s.table == workflow.primary_table),
                None,
            )
            if primary is not None:
                data = result.step_results[primary.id].data or {}
                result.entity_id = data.get(primary.key_column) if primary.key_column else None
            if result.entity_id is None:
                result.entity_id = result.principal_id
        elif result.rollback_required and self.options.enable_rollback:
            self._rollback(workflow, result)

        result.duration_ms = (time.perf_counter() - started) * 1000
        logger.info(
            "Workflow %s finished: success=%s failed_step=%s (%.1f ms)",
            workflow.id,
            result.success,
            result.failed_step,
            result.duration_ms,
        )
        return result

    def _blocking_dependency(
        self, step: WorkflowStep, workflow: UserCreationWorkflow, result: ExecutionResult
    ) -> str | None:
        for dependency in step.dependencies:
            dependency_result = result.step_results[dependency]
            if dependency_result.status is StepStatus.COMPLETED:
                continue
            dependency_step = workflow.step(dependency)
            non_blocking = dependency_step is not None and dependency_step.on_error in (OnError.SKIP, OnError.CONTINUE)
            if non_blocking and dependency_result.status in (StepStatus.SKIPPED, StepStatus.FAILED):
                continue
            return dependency
        return None

    def _run_step(
        self,
        pool: ThreadPoolExecutor,
        in_flight: dict[str, Future],
        workflow: UserCreationWorkflow,
        step: WorkflowStep,
        request: Mapping[str, Any],
        result: ExecutionResult,
        validator: ConstraintValidator | None,
    ) -> bool:
        """Run one step under its error policy; False means the workflow must stop.

        Inputs are resolved once so every retry sends the same values. A
        timed-out attempt is left in ``in_flight`` and awaited before the next
        attempt starts.
        """

        step_result = result.step_results[step.id]
        step_result.transition(StepStatus.RUNNING)
        max_attempts = 1 + (step.retry_count if step.on_error is OnError.RETRY else 0)
        timeout = step.timeout_seconds if step.timeout_seconds is not None else self.options.default_timeout_seconds
        step_started = time.perf_counter()
        inputs: dict[str, Any] | None = None

        while True:
            step_result.attempts += 1
            try:
                if inputs is None:
                    inputs = self._prepare_inputs(workflow, step, request, result)
                if timeout is None:
                    data = self._perform(step, inputs, request, result, validator)
                else:
                    future = pool.submit(self._perform, step, inputs, request, result, validator)
                    try:
                        data = future.result(timeout=timeout)
                    except FutureTimeoutError as exc:
                        if not future.cancel():
                            in_flight[step.id] = future
                        raise StepTimeoutError(f"Step {step.id} timed out after {timeout}s") from exc
            except Exception as exc:  # noqa: BLE001
                step_result.error = str(exc)
                can_retry = step_result.attempts < max_attempts
                if can_retry and step.id in in_flight:
                    late = self._await_late_attempt(step.id, in_flight)
                    if late is not None:
                        logger.warning("Step %s completed after timing out; keeping its result", step.id)
                        return self._complete(step, step_result, late, result, step_started)
                    can_retry = step.id not in in_flight
                if can_retry:
                    delay = self.options.retry_backoff_seconds * (2 ** (step_result.attempts - 1))
                    logger.warning(
                        "Step %s failed (attempt %d/%d), retrying in %.2fs: %s",
                        step.id,
                        step_result.attempts,
                        max_attempts,
                        delay,
                        exc,
                    )
                    if delay > 0:
                        self._sleep(delay)
                    continue
                step_result.duration_ms = (time.perf_counter() - step_started) * 1000
                return self._handle_failure(step, step_result, exc)

            return self._complete(step, step_result, data, result, step_started)

    @staticmethod
    def _complete(
        step: WorkflowStep,
        step_result: StepResult,
        data: dict[str, Any],
        result: ExecutionResult,
        step_started: float,
    ) -> bool:
        step_result.data = data
        step_result.error = None
        step_result.duration_ms = (time.perf_counter() - step_started) * 1000
        step_result.transition(StepStatus.COMPLETED)
        result.completed_steps.append(step.id)
        logger.debug("Step %s completed in %.1f ms", step.id, step_result.duration_ms)
        return True

    def _await_late_attempt(self, step_id: str, in_flight: dict[str, Future]) -> dict[str, Any] | None:
        """Wait for a timed-out attempt; return its data when it succeeded after all."""

        future = in_flight[step_id]
        done, _ = wait([future], timeout=self.options.late_write_timeout_seconds)
        if not done:
            logger.warning("Step %s is still running; not retrying", step_id)
            return None
        del in_flight[step_id]
        if future.exception() is not None:
            return None
        return future.result()

    def _settle_in_flight(self, in_flight: dict[str, Future], result: ExecutionResult) -> None:
        """Wait for timed-out writes so rollback can see the rows they created."""

        if not in_flight:
            return
        done, _ = wait(list(in_flight.values()), timeout=self.options.late_write_timeout_seconds)
        for step_id, future in in_flight.items():
            step_result = result.step_results[step_id]
            if future not in done:
                logger.warning("Step %s is still running after the workflow stopped", step_id)
                result.unsettled_steps.append(step_id)
            elif future.exception() is None and step_result.data is None:
                logger.warning("Step %s wrote after timing out; its record will be compensated", step_id)
                step_result.data = future.result()
        in_flight.clear()

    @staticmethod
    def _handle_failure(step: WorkflowStep, step_result: StepResult, exc: Exception) -> bool:
        if step.on_error is OnError.SKIP:
            logger.warning("Step %s skipped after failure: %s", step.id, exc)
            step_result.transition(StepStatus.SKIPPED)
            return True
        step_result.transition(StepStatus.FAILED)
        if step.on_error is OnError.CONTINUE:
            logger.warning("Step %s failed, continuing: %s", step.id, exc)
            return True
        logger.error("Step %s failed: %s", step.id, exc)
        return False

    def _prepare_inputs(
        self,
        workflow: UserCreationWorkflow,
        step: WorkflowStep,
        request: Mapping[str, Any],
        result: ExecutionResult,
    ) -> dict[str, Any]:
        if step.step_type in (StepType.CREATE_PRINCIPAL, StepType.INSERT_RECORD):
            return self._resolve_fields(step.fields, request, result)
        if step.step_type is StepType.VALIDATE_CONSTRAINT:
            target = workflow.step(step.target_step) if step.target_step else None
            if target is None:
                return dict(request)
            return self._resolve_fields(target.fields, request, result, strict=False)
        return {}

    def _perform(
        self,
        step: WorkflowStep,
        inputs: Mapping[str, Any],
        request: Mapping[str, Any],
        result: ExecutionResult,
        validator: ConstraintValidator | None,
    ) -> dict[str, Any]:
        if step.step_type is StepType.CREATE_PRINCIPAL:
            email = inputs.get("email")
            if not email:
                raise StepExecutionError("An email address is required to create a principal")
            metadata = dict(request.get("metadata") or {})
            principal_id = self.backend.create_principal(email, inputs.get("password"), metadata)
            result.principal_id = str(principal_id)
            return {"id": result.principal_id, "email": email}

        if step.step_type is StepType.INSERT_RECORD:
            return self._insert(step, inputs, result, validator)

        if step.step_type is StepType.VALIDATE_CONSTRAINT:
            return self._validate_constraint(step, inputs, validator)

        if step.step_type is StepType.EXECUTE_TRIGGER:
            # Database triggers fire with the insert itself; record the expectation
            return {"trigger": step.trigger_name, "table": step.table}

        if step.step_type is StepType.CONDITIONAL_ACTION:
            return self._compensate(step, result)

        raise StepExecutionError(f"Unsupported step type: {step.step_type}")

    def _insert(
        self,
        step: WorkflowStep,
        inputs: Mapping[str, Any],
        result: ExecutionResult,
        validator: ConstraintValidator | None,
    ) -> dict[str, Any]:
        data = dict(inputs)
        if self.options.enable_constraint_validation and validator is not None and validator.initialized:
            context = ValidationContext(table=step.table, data=data, key_column=step.key_column)
            validation = validator.validate_operation(context)
            if not validation.valid and self.options.enable_auto_fixes and validation.auto_fixes:
                outcome = validator.apply_auto_fixes(data, validation.auto_fixes)
                data = outcome.data
                result.applied_fixes.extend(outcome.applied)
                validation = validator.validate_operation(
                    ValidationContext(table=step.table, data=data, key_column=step.key_column)
                )
            result.validation_results[step.table] = validation
            if not validation.valid:
                raise ConstraintViolationError(step.table, validation.errors)
        return self.backend.insert_record(step.table, data, step.key_column)

    @staticmethod
    def _validate_constraint(
        step: WorkflowStep, candidate: Mapping[str, Any], validator: ConstraintValidator | None
    ) -> dict[str, Any]:
        if validator is None or not validator.initialized:
            return {"rule": step.rule_id, "checked": False}
        validation = validator.validate_rule(step.rule_id, ValidationContext(table=step.table, data=dict(candidate)))
        if not validation.valid:
            raise ConstraintViolationError(step.table, validation.errors)
        return {"rule": step.rule_id, "checked": True}

    def _compensate(self, step: WorkflowStep, result: ExecutionResult) -> dict[str, Any]:
        # A failed or skipped step can still hold the row of a write that landed after its timeout
        forward = result.step_results.get(step.target_step)
        if forward is None or not forward.data or not step.key_column:
            return {"deleted": False}
        key_value = forward.data.get(step.key_column)
        if key_value is None:
            return {"deleted": False}
        self.backend.delete_record(step.table, step.key_column, key_value)
        return {"deleted": True, "key": key_value}

    def _resolve_fields(
        self,
        fields: Sequence[WorkflowField],
        request: Mapping[str, Any],
        result: ExecutionResult,
        *,
        strict: bool = True,
    ) -> dict[str, Any]:
        values: dict[str, Any] = {}
        context = dict(request)
        for item in fields:
            value = self._resolve_field(item, request, result, context, strict)
            if value is None:
                continue
            values[item.name] = value
            if item.semantic_field:
                context.setdefault(item.semantic_field, value)
        return values

    def _resolve_field(
        self,
        item: WorkflowField,
        request: Mapping[str, Any],
        result: ExecutionResult,
        context: Mapping[str, Any],
        strict: bool,
    ) -> Any:
        if item.source is FieldSource.REFERENCE:
            source = result.step_results.get(item.reference_step)
            if source is None or source.data is None or item.reference_field not in source.data:
                if strict and item.required:
                    raise StepExecutionError(
                        f"Reference {item.reference_step}.{item.reference_field} for {item.name} is unavailable"
                    )
                return None
            return source.data[item.reference_field]

        if item.source in (FieldSource.INPUT, FieldSource.COMPUTED):
            custom = request.get("custom_fields") or {}
            value = custom.get(item.name)
            if value is None and item.input_key:
                value = request.get(item.input_key)
            if value is not None:
                return value
            if item.generator and (item.required or item.source is FieldSource.INPUT):
                return self.generator.generate(item.generator, context)
            return None

        if item.generator:
            return self.generator.generate(item.generator, context)
        return None

    def _rollback(self, workflow: UserCreationWorkflow, result: ExecutionResult) -> None:
        """Best-effort compensation; errors are collected, never raised."""

        logger.info("Rolling back workflow %s", workflow.id)
        for step in workflow.rollback_steps:
            try:
                self._compensate(step, result)
            except Exception as exc:  # noqa: BLE001
                logger.warning("Rollback step %s failed: %s", step.id, exc)
                result.rollback_errors.append(f"{step.id}: {exc}")
        for step_id in result.unsettled_steps:
            result.rollback_errors.append(f"{step_id}: write still in progress, record may remain")
        result.rollback_completed = not result.rollback_errors
