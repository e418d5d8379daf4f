"""Tests for template interpolation and condition evaluation."""

import pytest

from core.exceptions import UnresolvedReferenceError, ValidationError
from workflow.conditions import check_condition, evaluate_condition
from workflow.interpolation import (
    BindingEnvironment,
    find_references,
    interpolate,
    parse_expression,
)


@pytest.fixture
def env():
    return BindingEnvironment({
        "a": {"b": 5},
        "tweets": [{"text": "first", "id": 1}, {"text": "second", "id": 2}],
        "trigger": {"body": {"x-id": "abc"}, "name": "Ada"},
        "flag": False,
        "nothing": None,
    })


@pytest.mark.unit
class TestParsing:
    """Reference path syntax."""

    def test_dotted_path(self):
        ref = parse_expression(" a.b.c ")
        assert ref.root == "a"
        assert ref.segments == ("b", "c")

    def test_index_and_quoted_key(self):
        ref = parse_expression('tweets[0]["text"]')
        assert ref.segments == (0, "text")

    def test_malformed_path_is_a_validation_error(self):
        with pytest.raises(ValidationError):
            parse_expression("a..b")

    def test_find_references_walks_nested_values(self):
        refs = list(find_references({"x": ["{{a.b}} and {{tweets[1]}}"], "y": 3}))
        assert [r.root for r in refs] == ["a", "tweets"]


@pytest.mark.unit
class TestInterpolate:
    """Whole-token typing and string rendering."""

    def test_whole_token_keeps_type(self, env):
        assert interpolate("{{a.b}}", env) == 5
        assert interpolate("  {{ tweets }}  ", env) == env.lookup("tweets")

    def test_embedded_token_renders_text(self, env):
        assert interpolate("value={{a.b}}", env) == "value=5"
        assert interpolate("{{a}}", env) == {"b": 5}
        assert interpolate("obj: {{a}}", env) == 'obj: {"b": 5}'

    def test_booleans_and_null_render_as_json_words(self, env):
        assert interpolate("{{flag}}!", env) == "false!"
        assert interpolate("[{{nothing}}]", env) == "[]"

    def test_index_then_key(self, env):
        assert interpolate("{{tweets[1].text}}", env) == "second"

    def test_quoted_key_with_dash(self, env):
        assert interpolate('{{trigger.body["x-id"]}}', env) == "abc"

    def test_length_of_list(self, env):
        assert interpolate("{{tweets.length}}", env) == 2

    def test_recurses_through_dicts_and_lists(self, env):
        value = {"greeting": "Hi {{trigger.name}}", "ids": ["{{tweets[0].id}}", 7]}
        assert interpolate(value, env) == {"greeting": "Hi Ada", "ids": [1, 7]}

    def test_static_strings_pass_through(self, env):
        assert interpolate("no tokens here", env) == "no tokens here"

    def test_unknown_root_raises(self, env):
        with pytest.raises(UnresolvedReferenceError) as exc:
            interpolate("{{missing.value}}", env)
        assert "'missing' is not defined" in str(exc.value)

    def test_missing_key_never_becomes_empty_string(self, env):
        with pytest.raises(UnresolvedReferenceError):
            interpolate("prefix {{a.c}}", env)

    def test_index_out_of_range(self, env):
        with pytest.raises(UnresolvedReferenceError) as exc:
            interpolate("{{tweets[5]}}", env)
        assert "out of range" in str(exc.value)

    def test_child_scope_sees_parent(self, env):
        scope = env.child(item={"v": 1})
        assert interpolate("{{item.v}}-{{a.b}}", scope) == "1-5"
        assert not env.has("item")


@pytest.mark.unit
class TestConditions:
    """Conditional step predicates."""

    def test_truthiness_of_single_value(self, env):
        assert evaluate_condition("{{tweets}}", env) is True
        assert evaluate_condition("{{flag}}", env) is False
        assert evaluate_condition("false", env) is False

    def test_comparison_operators(self, env):
        assert evaluate_condition({"left": "{{tweets.length}}", "operator": "greaterThan", "right": 1}, env)
        assert evaluate_condition({"left": "{{a.b}}", "operator": "==", "right": 5}, env)
        assert not evaluate_condition({"left": "{{trigger.name}}", "operator": "contains", "right": "z"}, env)

    def test_unary_operators(self, env):
        assert evaluate_condition({"left": "{{nothing}}", "operator": "notExists"}, env)
        assert evaluate_condition({"left": "{{tweets}}", "operator": "isNotEmpty"}, env)

    def test_unary_operators_on_missing_path(self, env):
        assert evaluate_condition({"left": "{{trigger.body.absent}}", "operator": "exists"}, env) is False
        assert evaluate_condition({"left": "{{trigger.body.absent}}", "operator": "notExists"}, env) is True
        assert evaluate_condition({"left": "{{a.missing.deep}}", "operator": "isEmpty"}, env) is True
        assert evaluate_condition({"left": "{{tweets[9].text}}", "operator": "isNotEmpty"}, env) is False

    def test_binary_operator_on_missing_path_still_fails(self, env):
        with pytest.raises(UnresolvedReferenceError):
            evaluate_condition({"left": "{{trigger.body.absent}}", "operator": "greaterThan", "right": 1}, env)

    def test_unknown_operator_is_a_static_problem(self):
        problems = check_condition({"left": 1, "operator": "roughly", "right": 2})
        assert problems == ["unknown operator 'roughly'"]

    def test_binary_operator_needs_right(self):
        assert check_condition({"left": 1, "operator": "equals"}) == ["operator 'equals' needs 'right'"]

    def test_numeric_operator_on_text_fails(self, env):
        with pytest.raises(ValueError):
            evaluate_condition({"left": "{{trigger.name}}", "operator": "lessThan", "right": 3}, env)
