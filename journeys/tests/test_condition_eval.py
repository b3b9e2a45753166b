"""Tests for the condition expression evaluator."""

from __future__ import annotations

from journeys.engine.context import MISSING, ContactSnapshot
from journeys.engine.evaluator import evaluate_condition, explain_condition, validate_expression


def _snapshot(**contact) -> ContactSnapshot:
    base = {"id": "c1", "email": "ada@example.com", "tags": ["lead"], "fields": {"score": 42, "plan": "pro"}}
    base.update(contact)
    return ContactSnapshot(base, trigger={"source": "webinar", "amount": 99.5})


class TestEvaluator:
    def test_equals(self):
        snap = _snapshot()
        assert evaluate_condition({"field": "contact.email", "operator": "equals", "value": "ada@example.com"}, snap) is True
        assert evaluate_condition({"field": "email", "operator": "equals", "value": "bob@example.com"}, snap) is False

    def test_not_equals(self):
        snap = _snapshot()
        assert evaluate_condition({"field": "fields.plan", "operator": "not_equals", "value": "free"}, snap) is True

    def test_tags_contains(self):
        snap = _snapshot(tags=["vip", "lead"])
        assert evaluate_condition({"field": "tags", "operator": "contains", "value": "vip"}, snap) is True
        assert evaluate_condition({"field": "tags", "operator": "not_contains", "value": "vip"}, snap) is False

    def test_contains_substring(self):
        snap = _snapshot()
        assert evaluate_condition({"field": "email", "operator": "contains", "value": "@example"}, snap) is True

    def test_numeric_comparisons(self):
        snap = _snapshot()
        assert evaluate_condition({"field": "fields.score", "operator": "greater_than", "value": 40}, snap) is True
        assert evaluate_condition({"field": "fields.score", "operator": "greater_than_or_equal", "value": 42}, snap) is True
        assert evaluate_condition({"field": "fields.score", "operator": "less_than", "value": 42}, snap) is False
        assert evaluate_condition({"field": "trigger.amount", "operator": "less_than_or_equal", "value": "100"}, snap) is True

    def test_non_numeric_comparison_is_false(self):
        snap = _snapshot()
        assert evaluate_condition({"field": "email", "operator": "greater_than", "value": 3}, snap) is False

    def test_is_set(self):
        snap = _snapshot(phone="")
        assert evaluate_condition({"field": "email", "operator": "is_set"}, snap) is True
        assert evaluate_condition({"field": "phone", "operator": "is_set"}, snap) is False
        assert evaluate_condition({"field": "fields.missing", "operator": "is_not_set"}, snap) is True

    def test_trigger_root(self):
        snap = _snapshot()
        assert evaluate_condition({"field": "trigger.source", "operator": "equals", "value": "webinar"}, snap) is True


class TestCompound:
    def test_and(self):
        snap = _snapshot(tags=["vip"])
        expr = {
            "logic": "and",
            "conditions": [
                {"field": "tags", "operator": "contains", "value": "vip"},
                {"field": "fields.score", "operator": "greater_than", "value": 10},
            ],
        }
        assert evaluate_condition(expr, snap) is True

    def test_or(self):
        snap = _snapshot()
        expr = {
            "logic": "or",
            "conditions": [
                {"field": "tags", "operator": "contains", "value": "vip"},
                {"field": "fields.plan", "operator": "equals", "value": "pro"},
            ],
        }
        assert evaluate_condition(expr, snap) is True

    def test_nested(self):
        snap = _snapshot()
        expr = {
            "logic": "and",
            "conditions": [
                {"field": "email", "operator": "is_set"},
                {
                    "logic": "or",
                    "conditions": [
                        {"field": "tags", "operator": "contains", "value": "vip"},
                        {"field": "tags", "operator": "contains", "value": "lead"},
                    ],
                },
            ],
        }
        assert evaluate_condition(expr, snap) is True

    def test_empty_expression_is_true(self):
        assert evaluate_condition({}, _snapshot()) is True
        assert evaluate_condition(None, _snapshot()) is True


class TestUnknownPaths:
    def test_unknown_path_is_false_and_reported(self):
        snap = _snapshot()
        result = explain_condition({"field": "fields.nope", "operator": "equals", "value": 1}, snap)
        assert result.value is False
        assert result.missing_paths == ("fields.nope",)

    def test_unknown_path_never_throws(self):
        snap = _snapshot()
        for op in ("equals", "not_equals", "greater_than", "contains", "not_contains"):
            assert evaluate_condition({"field": "a.b.c", "operator": op, "value": 1}, snap) is False

    def test_all_children_reported(self):
        snap = _snapshot()
        expr = {
            "logic": "or",
            "conditions": [
                {"field": "fields.x", "operator": "equals", "value": 1},
                {"field": "trigger.y", "operator": "equals", "value": 2},
            ],
        }
        assert explain_condition(expr, snap).missing_paths == ("fields.x", "trigger.y")

    def test_lookup_missing_sentinel(self):
        assert _snapshot().lookup("fields.ghost") is MISSING

    def test_same_input_same_result(self):
        snap = _snapshot(tags=["vip"])
        expr = {"field": "tags", "operator": "contains", "value": "vip"}
        assert {evaluate_condition(expr, snap) for _ in range(5)} == {True}


class TestValidateExpression:
    def test_valid_leaf(self):
        assert validate_expression({"field": "tags", "operator": "contains", "value": "vip"}) == []

    def test_reports_every_problem(self):
        errors = validate_expression({
            "logic": "xor",
            "conditions": [
                {"operator": "equals", "value": 1},
                {"field": "tags", "operator": "matches", "value": "x"},
                {"field": "tags", "operator": "equals"},
            ],
        })
        assert len(errors) == 4
        assert any("logic" in e for e in errors)
        assert any("conditions[0].field" in e for e in errors)
        assert any("unknown operator 'matches'" in e for e in errors)
        assert any("conditions[2].value" in e for e in errors)

    def test_presence_operator_needs_no_value(self):
        assert validate_expression({"field": "email", "operator": "is_set"}) == []

    def test_empty_compound(self):
        assert validate_expression({"logic": "and", "conditions": []}) == ["conditions.conditions: must be a non-empty list"]
