"""Workflow Execution Engine — sequential step interpreter.

Takes a validated workflow definition and runs its steps strictly in
document order against a binding environment:

- plain steps: interpolate inputs, resolve the capability, call it
  (through the resilience layer when it talks to the network) and bind
  the result under ``outputAs``
- forEach steps: evaluate the items expression once, then run the nested
  steps once per element, sequentially, with the element bound under
  ``itemAs`` (and its position under ``indexAs``)
- conditional steps: evaluate the condition once and run exactly one
  branch

The first failing step halts the attempt. Nothing after it runs, and
the result names the failing step's id.

Every attempt gets a fresh ExecutionContext; no bindings survive from a
previous attempt.
"""

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from capabilities.registry import CapabilityRegistry
from core.constants import TRIGGER_ROOT, WORKFLOW_ROOT, CREDENTIAL_ROOTS, TriggerType
from core.exceptions import StepExecutionError
from workflow.conditions import evaluate_condition
from workflow.definition import StepDefinition, StepKind, WorkflowDocument
from workflow.interpolation import BindingEnvironment, interpolate
from workflow.resilience import ResilienceLayer
from workflow.validation import WorkflowValidator

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


# ─── Step Status ──────────────────────────────────────────────

class StepStatus(str, Enum):
    """Per-step state: pending -> running -> succeeded | failed."""
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    SKIPPED = "skipped"


# ─── Results ──────────────────────────────────────────────────

@dataclass
class StepResult:
    """Result of executing a single step (and, for blocks, its children)."""
    step_id: str
    status: StepStatus = StepStatus.PENDING
    capability: Optional[str] = None
    output: Any = None
    error: Optional[str] = None
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    duration_ms: int = 0
    attempt: int = 1
    branch: Optional[str] = None
    children: list["StepResult"] = field(default_factory=list)
    exception: Optional[BaseException] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict:
        data = {
            "step_id": self.step_id,
            "status": self.status.value,
            "output": self.output,
            "error": self.error,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "duration_ms": self.duration_ms,
            "attempt": self.attempt,
        }
        if self.capability:
            data["capability"] = self.capability
        if self.branch:
            data["branch"] = self.branch
        if self.children:
            data["children"] = [c.to_dict() for c in self.children]
        return data


@dataclass
class ExecutionContext:
    """Everything one execution attempt can see.

    The binding environment is rooted at ``trigger``, ``credential``
    (also reachable as ``user``) and ``workflow``; step outputs are bound
    on top as the attempt proceeds.
    """

    workflow_id: str
    user_id: Optional[str] = None
    organization_id: Optional[str] = None
    workflow_name: str = ""
    trigger_type: str = TriggerType.MANUAL.value
    trigger_payload: dict[str, Any] = field(default_factory=dict)
    credentials: dict[str, Any] = field(default_factory=dict)
    attempt: int = 1
    job_id: Optional[str] = None
    storage: Any = None
    execution_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    env: BindingEnvironment = field(init=False, repr=False)

    def __post_init__(self):
        roots = {
            TRIGGER_ROOT: self.trigger_payload,
            WORKFLOW_ROOT: {
                "id": self.workflow_id,
                "name": self.workflow_name,
                "executionId": self.execution_id,
                "jobId": self.job_id,
                "attempt": self.attempt,
                "triggerType": self.trigger_type,
            },
        }
        for root in CREDENTIAL_ROOTS:
            roots[root] = self.credentials
        self.env = BindingEnvironment(roots)


@dataclass
class ExecutionResult:
    """Outcome of one execution attempt."""
    success: bool
    steps: list[StepResult] = field(default_factory=list)
    return_value: Any = None
    output_display: Optional[dict] = None
    error: Optional[str] = None
    failed_step_id: Optional[str] = None
    duration_ms: int = 0
    execution_id: Optional[str] = None
    attempt: int = 1
    exception: Optional[BaseException] = field(default=None, repr=False, compare=False)

    def to_dict(self) -> dict:
        return {
            "success": self.success,
            "execution_id": self.execution_id,
            "attempt": self.attempt,
            "steps": [s.to_dict() for s in self.steps],
            "return_value": self.return_value,
            "output_display": self.output_display,
            "error": self.error,
            "failed_step_id": self.failed_step_id,
            "duration_ms": self.duration_ms,
        }

    def to_exception(self) -> StepExecutionError:
        return StepExecutionError(
            step_id=self.failed_step_id or "unknown",
            message=self.error or "step failed",
            attempt=self.attempt,
            cause=self.exception,
            result=self.to_dict(),
        )


class _BlockFailed(Exception):
    """Carries the results of a block up to the step that contains it."""

    def __init__(self, results: list[StepResult], inner: StepResult):
        self.results = results
        self.inner = inner
        super().__init__(inner.error)


# ─── Step Executor ─────────────────────────────────────────────

class StepExecutor:
    """Executes single steps against a binding environment."""

    def __init__(self, registry: CapabilityRegistry, resilience: Optional[ResilienceLayer] = None):
        self.registry = registry
        self.resilience = resilience

    async def run_block(
        self,
        steps: list[StepDefinition],
        env: BindingEnvironment,
        context: ExecutionContext,
    ) -> list[StepResult]:
        """Run steps in order, binding outputs into ``env``.

        Raises:
            _BlockFailed: as soon as one step fails, carrying the results
                of the steps run so far
        """
        results: list[StepResult] = []
        for step in steps:
            result = await self.execute_step(step, env, context)
            results.append(result)
            if result.status == StepStatus.FAILED:
                raise _BlockFailed(results, result)
            if step.output_as:
                env.bind(step.output_as, result.output)
        return results

    async def execute_step(
        self,
        step: StepDefinition,
        env: BindingEnvironment,
        context: ExecutionContext,
    ) -> StepResult:
        """Execute one step. Never raises; failures are reported on the result."""
        started = time.monotonic()
        result = StepResult(
            step_id=step.id,
            status=StepStatus.RUNNING,
            capability=step.capability,
            started_at=_now().isoformat(),
            attempt=context.attempt,
        )
        logger.debug(f"Step {step.id} started (attempt {context.attempt})")

        try:
            if step.kind == StepKind.FOR_EACH:
                result.output = await self._execute_for_each(step, env, context, result)
            elif step.kind == StepKind.CONDITIONAL:
                result.output = await self._execute_conditional(step, env, context, result)
            else:
                result.output = await self._execute_plain(step, env, context)
            result.status = StepStatus.SUCCEEDED
        except _BlockFailed as failed:
            result.status = StepStatus.FAILED
            result.error = failed.inner.error
            result.exception = failed.inner.exception
        except Exception as e:
            result.status = StepStatus.FAILED
            result.error = str(e) or type(e).__name__
            result.exception = e
            logger.warning(f"Step {step.id} failed: {result.error}")

        result.completed_at = _now().isoformat()
        result.duration_ms = int((time.monotonic() - started) * 1000)
        return result

    async def _execute_plain(
        self, step: StepDefinition, env: BindingEnvironment, context: ExecutionContext
    ) -> Any:
        descriptor = self.registry.resolve(step.capability)
        inputs = interpolate(step.inputs, env)
        args, kwargs = self.registry.build_call(descriptor, inputs, context)

        if descriptor.external and self.resilience is not None:
            return await self.resilience.call(descriptor, lambda: descriptor.call(args, kwargs))
        return await descriptor.call(args, kwargs)

    async def _execute_for_each(
        self,
        step: StepDefinition,
        env: BindingEnvironment,
        context: ExecutionContext,
        result: StepResult,
    ) -> list:
        items = interpolate(step.items, env)
        if items is None:
            items = []
        if isinstance(items, dict):
            items = list(items.values())
        if not isinstance(items, (list, tuple)):
            raise TypeError(
                f"forEach items must be a list, got {type(items).__name__}"
            )

        outputs = []
        for index, item in enumerate(items):
            scope = env.child(**{step.item_as: item})
            if step.index_as:
                scope.bind(step.index_as, index)
            try:
                iteration = await self.run_block(step.steps, scope, context)
            except _BlockFailed as failed:
                result.children.extend(failed.results)
                raise
            result.children.extend(iteration)
            outputs.append(iteration[-1].output if iteration else None)
        return outputs

    async def _execute_conditional(
        self,
        step: StepDefinition,
        env: BindingEnvironment,
        context: ExecutionContext,
        result: StepResult,
    ) -> Any:
        matched = evaluate_condition(step.condition, env)
        result.branch = "then" if matched else "else"
        branch = step.then if matched else step.otherwise
        logger.debug(f"Step {step.id} took the '{result.branch}' branch")

        try:
            executed = await self.run_block(branch, env.child(), context)
        except _BlockFailed as failed:
            result.children.extend(failed.results)
            raise
        result.children.extend(executed)
        return executed[-1].output if executed else None


def _innermost_failure(result: StepResult) -> StepResult:
    for child in result.children:
        if child.status == StepStatus.FAILED:
            return _innermost_failure(child)
    return result


# ─── Workflow Engine ──────────────────────────────────────────

class WorkflowEngine:
    """Validates and runs workflow definitions."""

    def __init__(
        self,
        registry: CapabilityRegistry,
        resilience: Optional[ResilienceLayer] = None,
        validator: Optional[WorkflowValidator] = None,
    ):
        self.registry = registry
        self.validator = validator or WorkflowValidator(registry)
        self.executor = StepExecutor(registry, resilience)

    async def execute(self, definition: WorkflowDocument, context: ExecutionContext) -> ExecutionResult:
        """Run one attempt of a workflow.

        Raises:
            ValidationError: if the static pass finds problems; no step runs
        """
        report = self.validator.prepare(definition)
        document = report.document
        started = time.monotonic()
        result = ExecutionResult(
            success=False,
            execution_id=context.execution_id,
            attempt=context.attempt,
        )
        logger.info(
            f"Executing workflow {context.workflow_id} "
            f"(execution {context.execution_id}, attempt {context.attempt})"
        )

        try:
            result.steps = await self.executor.run_block(document.steps, context.env, context)
        except _BlockFailed as failed:
            result.steps = failed.results
            innermost = _innermost_failure(failed.inner)
            result.failed_step_id = innermost.step_id
            result.error = innermost.error
            result.exception = innermost.exception
            result.duration_ms = int((time.monotonic() - started) * 1000)
            logger.warning(
                f"Workflow {context.workflow_id} failed at step {result.failed_step_id}: {result.error}"
            )
            return result

        if document.config.return_value is not None:
            try:
                result.return_value = interpolate(document.config.return_value, context.env)
            except Exception as e:
                result.failed_step_id = "returnValue"
                result.error = str(e)
                result.exception = e
                result.duration_ms = int((time.monotonic() - started) * 1000)
                return result

        if document.config.output_display is not None:
            result.output_display = document.config.output_display.model_dump(mode="json")

        result.success = True
        result.duration_ms = int((time.monotonic() - started) * 1000)
        logger.info(
            f"Workflow {context.workflow_id} completed: "
            f"{len(result.steps)} steps in {result.duration_ms}ms"
        )
        return result
