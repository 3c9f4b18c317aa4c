"""Unit tests for the jq filter executor.

Covers gate semantics (the exact falsy rule), projection of program
outputs, the fallback projection, fault isolation and the evaluation
timeout.
"""

import asyncio
import time

import pytest

from src.gateway.filters.executor import (
    FilterExecutor,
    FilterResult,
    fallback_projection,
    json_type,
)


@pytest.fixture
def executor():
    return FilterExecutor()


class TestGateSemantics:
    def test_select_matching_action_is_truthy(self, executor):
        result = executor.evaluate('select(.action=="opened")', {"action": "opened"})

        assert result.ok
        assert not result.is_falsy

    def test_select_other_action_is_falsy(self, executor):
        result = executor.evaluate('select(.action=="opened")', {"action": "closed"})

        assert result.ok
        assert result.values == []
        assert result.is_falsy

    def test_false_is_falsy(self, executor):
        assert executor.evaluate(".draft", {"draft": False}).is_falsy

    def test_null_is_falsy(self, executor):
        assert executor.evaluate(".missing", {}).is_falsy

    def test_empty_is_falsy(self, executor):
        assert executor.evaluate("empty", {"a": 1}).is_falsy

    @pytest.mark.parametrize("value", [0, "", [], {}, True, "no"])
    def test_other_single_values_are_truthy(self, executor, value):
        assert not executor.evaluate(".x", {"x": value}).is_falsy

    def test_multiple_outputs_are_truthy(self, executor):
        result = executor.evaluate(".[]", [False, None])

        assert len(result.values) == 2
        assert not result.is_falsy


class TestErrors:
    def test_compile_error_is_captured(self, executor):
        result = executor.evaluate("((", {"a": 1})

        assert not result.ok
        assert result.error
        assert result.is_falsy

    def test_runtime_error_is_captured(self, executor):
        result = executor.evaluate(".a.b", {"a": 5})

        assert not result.ok
        assert result.is_falsy

    def test_error_does_not_affect_next_evaluation(self, executor):
        executor.evaluate("((", {})

        result = executor.evaluate(".a", {"a": 1})

        assert result.ok
        assert result.values == [1]


class TestProjection:
    def test_object_construction(self, executor):
        result = executor.evaluate("{title:.title}", {"action": "opened", "title": "Fix bug"})

        assert result.projection() == {"title": "Fix bug"}

    def test_multiple_outputs_become_list(self, executor):
        result = executor.evaluate(".items[].id", {"items": [{"id": 1}, {"id": 2}]})

        assert result.projection() == [1, 2]

    def test_no_output_is_none(self):
        assert FilterResult().projection() is None

    def test_unicode_values_pass_through(self, executor):
        result = executor.evaluate(".name", {"name": "café ☕"})

        assert result.projection() == "café ☕"


class TestFallbackProjection:
    def test_object_lists_sorted_keys(self):
        assert fallback_projection({"b": 1, "a": 2}) == {"fields": ["a", "b"]}

    def test_array_counts_items(self):
        assert fallback_projection([1, 2, 3]) == {"items": 3}

    @pytest.mark.parametrize(
        "value,expected",
        [
            ("text", "string"),
            (3, "number"),
            (2.5, "number"),
            (True, "boolean"),
            (None, "null"),
        ],
    )
    def test_scalars_report_type(self, value, expected):
        assert fallback_projection(value) == {"type": expected}
        assert json_type(value) == expected


class TestEvaluateAsync:
    def test_result_matches_sync_evaluation(self, executor):
        result = asyncio.run(
            executor.evaluate_async(".a", {"a": [1, 2]}, timeout=2.0)
        )

        assert result.values == [[1, 2]]

    def test_timeout_becomes_error(self, executor, monkeypatch):
        def slow_evaluate(expression, value):
            time.sleep(0.3)
            return FilterResult(values=[True])

        monkeypatch.setattr(executor, "evaluate", slow_evaluate)

        result = asyncio.run(executor.evaluate_async(".", {}, timeout=0.05))

        assert not result.ok
        assert "timed out" in result.error
        assert result.is_falsy
