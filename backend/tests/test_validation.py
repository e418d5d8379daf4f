"""Tests for static workflow validation and normalization."""

import pytest

from core.exceptions import ValidationError
from workflow.definition import StepKind, WorkflowDocument
from workflow.validation import WorkflowValidator, credential_keys_for


def _doc(steps, trigger=None, **config) -> WorkflowDocument:
    data = {"name": "wf", "config": {"steps": steps, **config}}
    if trigger:
        data["trigger"] = trigger
    return WorkflowDocument.parse(data)


@pytest.fixture
def validator(registry):
    return WorkflowValidator(registry)


@pytest.mark.unit
class TestDocumentParsing:
    """Shape errors and aliases in the document model."""

    def test_step_type_aliases(self):
        doc = _doc([{"id": "loop", "type": "loop", "items": [], "steps": []}])
        assert doc.steps[0].kind == StepKind.FOR_EACH

    def test_unknown_step_type(self):
        with pytest.raises(ValidationError) as exc:
            _doc([{"id": "x", "type": "teleport"}])
        assert "unknown step type" in exc.value.issues[0]

    def test_trigger_aliases(self):
        doc = _doc([], trigger={"type": "schedule", "config": {"schedule": "0 * * * *"}})
        assert doc.trigger.type.value == "cron"
        assert doc.trigger.cron_expression == "0 * * * *"

    def test_name_is_required(self):
        with pytest.raises(ValidationError):
            WorkflowDocument.parse({"config": {"steps": []}})

    def test_export_redacts_secrets(self):
        doc = _doc([], trigger={"type": "webhook", "config": {"secret": "s3cret", "path": "x"}})
        exported = doc.to_document()
        assert exported["trigger"]["config"] == {"secret": "********", "path": "x"}
        assert doc.to_document(redact_secrets=False)["trigger"]["config"]["secret"] == "s3cret"


@pytest.mark.unit
class TestValidator:
    """Reference scoping, capability checks and auto-correction."""

    def test_valid_workflow(self, validator):
        report = validator.validate(_doc(
            [
                {"id": "a", "module": "utilities.math.add", "inputs": {"a": 1, "b": 2}, "outputAs": "sum"},
                {"id": "b", "module": "utilities.math.multiply",
                 "inputs": {"a": "{{sum}}", "b": "{{trigger.factor}}"}, "outputAs": "product"},
            ],
            returnValue="{{product}}",
        ))
        assert report.ok
        assert report.changes == []

    def test_empty_workflow(self, validator):
        assert "workflow has no steps" in validator.validate(_doc([])).issues

    def test_forward_reference_rejected(self, validator):
        report = validator.validate(_doc([
            {"id": "a", "module": "utilities.string.toUpperCase", "inputs": {"text": "{{later}}"}},
            {"id": "b", "module": "utilities.string.toLowerCase", "inputs": {"text": "x"}, "outputAs": "later"},
        ]))
        assert not report.ok
        assert "before the step that produces it" in report.issues[0]

    def test_undefined_reference_rejected(self, validator):
        report = validator.validate(_doc([
            {"id": "a", "module": "utilities.string.toUpperCase", "inputs": {"text": "{{ghost}}"}},
        ]))
        assert "references undefined 'ghost'" in report.issues[0]

    def test_duplicate_ids_and_outputs(self, validator):
        report = validator.validate(_doc([
            {"id": "a", "module": "utilities.math.add", "inputs": {"a": 1, "b": 2}, "outputAs": "x"},
            {"id": "a", "module": "utilities.math.add", "inputs": {"a": 1, "b": 2}, "outputAs": "x"},
        ]))
        assert "duplicate step id 'a'" in report.issues
        assert any("output name 'x' is already used" in i for i in report.issues)

    def test_reserved_output_name(self, validator):
        report = validator.validate(_doc([
            {"id": "a", "module": "utilities.math.add", "inputs": {"a": 1, "b": 2}, "outputAs": "trigger"},
        ]))
        assert any("is reserved" in i for i in report.issues)

    def test_unknown_capability(self, validator):
        report = validator.validate(_doc([{"id": "a", "module": "nope.nope.nope"}]))
        assert report.issues == ["step 'a': unknown capability 'nope.nope.nope'"]

    def test_missing_parameter(self, validator):
        report = validator.validate(_doc([{"id": "a", "module": "utilities.math.add", "inputs": {"a": 1}}]))
        assert report.issues == ["step 'a': missing required parameter 'b'"]

    def test_loop_alias_only_visible_inside_loop(self, validator):
        report = validator.validate(_doc([
            {"id": "loop", "type": "forEach", "items": "{{trigger.items}}", "itemAs": "row",
             "steps": [{"id": "up", "module": "utilities.string.toUpperCase", "inputs": {"text": "{{row}}"}}],
             "outputAs": "rows"},
            {"id": "after", "module": "utilities.string.toUpperCase", "inputs": {"text": "{{row}}"}},
        ]))
        assert len(report.issues) == 1
        assert "step 'after'" in report.issues[0]

    def test_conditional_needs_branch_and_condition(self, validator):
        report = validator.validate(_doc([{"id": "c", "type": "conditional"}]))
        assert "step 'c': condition is required" in report.issues
        assert "step 'c': conditional needs a 'then' or 'else' branch" in report.issues

    def test_invalid_cron_trigger(self, validator):
        report = validator.validate(_doc(
            [{"id": "a", "module": "utilities.math.add", "inputs": {"a": 1, "b": 2}}],
            trigger={"type": "cron", "config": {"schedule": "* * *"}},
        ))
        assert report.issues and report.issues[0].startswith("trigger:")

    def test_deprecated_names_are_corrected_and_listed(self, validator):
        report = validator.validate(_doc([
            {"id": "p", "module": "utilities.json.parseJson", "inputs": {"json": "{\"a\": 1}"}, "outputAs": "parsed"},
            {"id": "g", "module": "utilities.object.get", "inputs": {"obj": "{{parsed}}", "path": "a"}},
        ]))
        assert report.ok
        assert report.changes == [
            "step 'p': capability 'utilities.json.parseJson' renamed to 'utilities.json.parse'",
            "step 'p': parameter 'json' renamed to 'text'",
            "step 'g': parameter 'obj' renamed to 'data'",
        ]
        steps = report.document.steps
        assert steps[0].capability == "utilities.json.parse"
        assert steps[1].inputs == {"data": "{{parsed}}", "path": "a"}

    def test_corrections_do_not_touch_the_input_document(self, validator):
        doc = _doc([{"id": "g", "module": "utilities.object.get", "inputs": {"obj": {}, "path": "a"}}])
        validator.validate(doc)
        assert doc.steps[0].inputs == {"obj": {}, "path": "a"}

    def test_prepare_raises_with_all_issues(self, validator):
        with pytest.raises(ValidationError) as exc:
            validator.prepare(_doc([
                {"id": "a", "module": "utilities.math.add", "inputs": {}},
            ]))
        assert len(exc.value.issues) == 2

    def test_credential_keys_collected(self, validator):
        doc = WorkflowDocument.parse({
            "name": "wf",
            "config": {"steps": [
                {"id": "a", "module": "utilities.string.toUpperCase", "inputs": {"text": "{{credential.openai}}"}},
                {"id": "b", "module": "utilities.string.toLowerCase", "inputs": {"text": "{{user.twitter.token}}"}},
            ]},
            "metadata": {"requiresCredentials": ["slack"]},
        })
        report = validator.validate(doc)
        assert report.ok
        assert credential_keys_for(doc, report) == {"openai", "twitter", "slack"}
