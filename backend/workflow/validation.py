"""
Static validation of workflow documents.

Runs before anything executes (on import and at the start of every
execution attempt) and checks:

- step ids and ``outputAs`` names are unique across the whole workflow
- every capability path resolves to exactly one registered capability
- inputs satisfy the capability's parameter schema
- every ``{{ }}`` reference points at a root already bound at that point
  in document order (earlier outputs, loop aliases, ``trigger``,
  ``credential``/``user``, ``workflow``)
- forEach / conditional blocks are well formed

Deprecated capability paths and parameter names are rewritten to their
canonical form on the returned copy, and every rewrite is listed in
``changes``; nothing is corrected silently.
"""

from dataclasses import dataclass, field
from typing import Any, Iterable, Optional

import structlog

from capabilities.registry import CapabilityRegistry
from core.constants import CREDENTIAL_ROOTS, RESERVED_ROOTS, TriggerType
from core.exceptions import ValidationError
from triggers.scheduler import cron_problems
from workflow.conditions import check_condition
from workflow.definition import StepDefinition, StepKind, WorkflowDocument
from workflow.interpolation import find_references

logger = structlog.get_logger(__name__)


@dataclass
class ValidationReport:
    document: WorkflowDocument
    changes: list[str] = field(default_factory=list)
    issues: list[str] = field(default_factory=list)
    credential_keys: set[str] = field(default_factory=set)

    @property
    def ok(self) -> bool:
        return not self.issues

    def raise_for_issues(self) -> None:
        if self.issues:
            raise ValidationError(issues=list(self.issues), changes=list(self.changes))


class _Walk:
    """Mutable state of one validation pass."""

    def __init__(self, all_outputs: set[str]):
        self.all_outputs = all_outputs
        self.step_ids: set[str] = set()
        self.outputs: set[str] = set()
        self.changes: list[str] = []
        self.issues: list[str] = []
        self.credential_keys: set[str] = set()


def _declared_outputs(steps: Iterable[StepDefinition]) -> set[str]:
    names = set()
    for step in steps:
        if step.output_as:
            names.add(step.output_as)
        names |= _declared_outputs(step.children())
    return names


class WorkflowValidator:
    """Validates and normalizes workflow documents against a registry."""

    def __init__(self, registry: CapabilityRegistry):
        self.registry = registry

    def validate(self, document: WorkflowDocument) -> ValidationReport:
        walk = _Walk(_declared_outputs(document.steps))
        scope = set(RESERVED_ROOTS)

        if not document.steps:
            walk.issues.append("workflow has no steps")
        walk.issues.extend(self._check_trigger(document))

        steps = self._check_block(document.steps, scope, walk)

        if document.config.return_value is not None:
            self._check_references("returnValue", document.config.return_value, scope, walk)

        normalized = document.model_copy(
            update={"config": document.config.model_copy(update={"steps": steps})}
        )
        report = ValidationReport(
            document=normalized,
            changes=walk.changes,
            issues=walk.issues,
            credential_keys=walk.credential_keys,
        )
        if report.changes:
            logger.info("workflow_normalized", workflow=document.name, changes=report.changes)
        return report

    def prepare(self, document: WorkflowDocument) -> ValidationReport:
        """Validate and raise ``ValidationError`` if any issue remains."""
        report = self.validate(document)
        report.raise_for_issues()
        return report

    @staticmethod
    def _check_trigger(document: WorkflowDocument) -> list[str]:
        trigger = document.trigger
        if trigger.type == TriggerType.CRON:
            return [f"trigger: {p}" for p in cron_problems(trigger.cron_expression)]
        if trigger.type == TriggerType.INBOUND_EMAIL and "pollCron" in trigger.config:
            return [f"trigger: {p}" for p in cron_problems(trigger.config["pollCron"])]
        return []

    # ─── Blocks ───────────────────────────────────────────────

    def _check_block(
        self, steps: list[StepDefinition], scope: set[str], walk: _Walk
    ) -> list[StepDefinition]:
        """Check steps in order; ``scope`` grows as outputs are declared."""
        checked = []
        for step in steps:
            checked.append(self._check_step(step, scope, walk))
            if step.output_as:
                scope.add(step.output_as)
        return checked

    def _check_step(self, step: StepDefinition, scope: set[str], walk: _Walk) -> StepDefinition:
        label = f"step '{step.id}'"

        if step.id in walk.step_ids:
            walk.issues.append(f"duplicate step id '{step.id}'")
        walk.step_ids.add(step.id)

        if step.output_as:
            if step.output_as in walk.outputs:
                walk.issues.append(f"{label}: output name '{step.output_as}' is already used")
            elif step.output_as in RESERVED_ROOTS:
                walk.issues.append(f"{label}: output name '{step.output_as}' is reserved")
            walk.outputs.add(step.output_as)

        if step.kind == StepKind.PLAIN:
            return self._check_plain(step, scope, walk)
        if step.kind == StepKind.FOR_EACH:
            return self._check_for_each(step, scope, walk)
        return self._check_conditional(step, scope, walk)

    def _check_plain(self, step: StepDefinition, scope: set[str], walk: _Walk) -> StepDefinition:
        label = f"step '{step.id}'"
        if not step.capability:
            walk.issues.append(f"{label}: 'module' is required")
            return step

        self._check_references(label, step.inputs, scope, walk)

        try:
            normalized, changes = self.registry.normalize_step(step)
        except ValidationError:
            walk.issues.append(f"{label}: unknown capability '{step.capability}'")
            return step

        walk.changes.extend(f"{label}: {change}" for change in changes)
        descriptor = self.registry.resolve(normalized.capability)
        walk.issues.extend(
            f"{label}: {problem}" for problem in descriptor.check_inputs(normalized.inputs)
        )
        return normalized

    def _check_for_each(self, step: StepDefinition, scope: set[str], walk: _Walk) -> StepDefinition:
        label = f"step '{step.id}'"
        if step.items is None:
            walk.issues.append(f"{label}: forEach needs 'items'")
        else:
            self._check_references(label, step.items, scope, walk)
        if not step.steps:
            walk.issues.append(f"{label}: forEach needs at least one nested step")

        inner = set(scope) | {step.item_as}
        if step.index_as:
            inner.add(step.index_as)
        for alias in filter(None, (step.item_as, step.index_as)):
            if alias in RESERVED_ROOTS:
                walk.issues.append(f"{label}: loop alias '{alias}' is reserved")

        nested = self._check_block(step.steps, inner, walk)
        return step.model_copy(update={"steps": nested})

    def _check_conditional(self, step: StepDefinition, scope: set[str], walk: _Walk) -> StepDefinition:
        label = f"step '{step.id}'"
        walk.issues.extend(f"{label}: {p}" for p in check_condition(step.condition))
        if step.condition is not None:
            self._check_references(label, step.condition, scope, walk)
        if not step.then and not step.otherwise:
            walk.issues.append(f"{label}: conditional needs a 'then' or 'else' branch")

        then = self._check_block(step.then, set(scope), walk)
        otherwise = self._check_block(step.otherwise, set(scope), walk)
        return step.model_copy(update={"then": then, "otherwise": otherwise})

    # ─── References ───────────────────────────────────────────

    def _check_references(self, label: str, value: Any, scope: set[str], walk: _Walk) -> None:
        try:
            references = list(find_references(value))
        except ValidationError as e:
            walk.issues.extend(f"{label}: {issue}" for issue in e.issues)
            return

        for ref in references:
            if ref.root in CREDENTIAL_ROOTS:
                if ref.segments and isinstance(ref.segments[0], str):
                    walk.credential_keys.add(ref.segments[0])
                else:
                    walk.issues.append(
                        f"{label}: '{{{{{ref.expression}}}}}' must name a credential"
                    )
                continue
            if ref.root in scope:
                continue
            if ref.root in walk.all_outputs:
                walk.issues.append(
                    f"{label}: '{{{{{ref.expression}}}}}' references '{ref.root}' "
                    f"before the step that produces it (or outside its block)"
                )
            else:
                walk.issues.append(
                    f"{label}: '{{{{{ref.expression}}}}}' references undefined '{ref.root}'"
                )


def credential_keys_for(document: WorkflowDocument, report: Optional[ValidationReport] = None) -> set[str]:
    """Credential names an execution must resolve: declared plus referenced."""
    keys = set(document.metadata.requires_credentials)
    if report is not None:
        keys |= report.credential_keys
    return keys
