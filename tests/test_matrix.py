"""Tests for matrix expansion and dynamic matrix resolution."""

import pytest

from actionci.context import ExecutionContext, SecretStore
from actionci.errors import SchemaError
from actionci.matrix import combination_label, expand_matrix, resolve_matrix
from actionci.model import MatrixSpec


def needs_ctx(outputs):
    ctx = ExecutionContext.create(github={}, secrets=SecretStore())
    needs = {"setup": {"result": "success", "outputs": outputs}}
    return ctx.with_needs(needs, ctx.status)


class TestExpandMatrix:
    """Cartesian product, exclude and include."""

    def test_no_matrix_is_one_empty_combination(self):
        assert expand_matrix(None) == [{}]

    def test_product_order_last_axis_fastest(self):
        spec = MatrixSpec(axes={"os": ["a", "b"], "v": [1, 2]})
        assert expand_matrix(spec) == [
            {"os": "a", "v": 1},
            {"os": "a", "v": 2},
            {"os": "b", "v": 1},
            {"os": "b", "v": 2},
        ]

    def test_exclude_drops_matching_combinations(self):
        spec = MatrixSpec(axes={"os": ["a", "b"], "v": [1, 2]}, exclude=[{"os": "a", "v": 2}])
        assert expand_matrix(spec) == [
            {"os": "a", "v": 1},
            {"os": "b", "v": 1},
            {"os": "b", "v": 2},
        ]

    def test_partial_exclude(self):
        spec = MatrixSpec(axes={"os": ["a", "b"], "v": [1, 2]}, exclude=[{"os": "b"}])
        assert expand_matrix(spec) == [{"os": "a", "v": 1}, {"os": "a", "v": 2}]

    def test_include_extends_matching_combinations(self):
        spec = MatrixSpec(
            axes={"os": ["a", "b"], "v": [1]},
            include=[{"os": "b", "experimental": True}],
        )
        assert expand_matrix(spec) == [
            {"os": "a", "v": 1},
            {"os": "b", "v": 1, "experimental": True},
        ]

    def test_include_without_match_is_appended(self):
        spec = MatrixSpec(axes={"os": ["a"]}, include=[{"os": "c", "v": 9}])
        assert expand_matrix(spec) == [{"os": "a"}, {"os": "c", "v": 9}]

    def test_include_never_overwrites_axis_values(self):
        spec = MatrixSpec(axes={"os": ["a"], "v": [1]}, include=[{"v": 2, "extra": "x"}])
        assert expand_matrix(spec) == [{"os": "a", "v": 1}, {"v": 2, "extra": "x"}]

    def test_later_include_may_overwrite_added_values(self):
        spec = MatrixSpec(
            axes={"os": ["a"]},
            include=[{"os": "a", "node": 16}, {"os": "a", "node": 18}],
        )
        assert expand_matrix(spec) == [{"os": "a", "node": 18}]

    def test_repeated_axis_values_count_once(self):
        spec = MatrixSpec(axes={"os": ["a", "b", "a"], "v": [1]})
        assert expand_matrix(spec) == [{"os": "a", "v": 1}, {"os": "b", "v": 1}]

    def test_boolean_and_number_values_are_distinct(self):
        spec = MatrixSpec(axes={"flag": [True, 1]}, exclude=[{"flag": 1}])
        assert expand_matrix(spec) == [{"flag": True}]

    def test_include_does_not_match_boolean_against_number(self):
        spec = MatrixSpec(axes={"flag": [True]}, include=[{"flag": 1, "extra": "x"}])
        assert expand_matrix(spec) == [{"flag": True}, {"flag": 1, "extra": "x"}]

    def test_include_only_matrix(self):
        spec = MatrixSpec(include=[{"name": "x"}, {"name": "y"}])
        assert expand_matrix(spec) == [{"name": "x"}, {"name": "y"}]

    def test_everything_excluded_fails(self):
        spec = MatrixSpec(axes={"os": ["a"]}, exclude=[{"os": "a"}])
        with pytest.raises(SchemaError):
            expand_matrix(spec)

    def test_unresolved_matrix_cannot_expand(self):
        with pytest.raises(SchemaError):
            expand_matrix(MatrixSpec(axes={"os": "${{ fromJSON('[1]') }}"}))

    def test_combination_label(self):
        assert combination_label({"os": "linux", "v": 3, "x": True}) == "linux, 3, true"


class TestResolveMatrix:
    """Expressions in the matrix are evaluated against needs outputs."""

    def test_static_matrix_is_returned_as_is(self):
        spec = MatrixSpec(axes={"v": [1]})
        assert resolve_matrix(spec, needs_ctx({})) is spec

    def test_whole_matrix_expression(self):
        spec = MatrixSpec(expression="${{ fromJSON(needs.setup.outputs.m) }}", max_parallel=1)
        ctx = needs_ctx({"m": '{"os": ["a", "b"], "exclude": [{"os": "b"}]}'})
        resolved = resolve_matrix(spec, ctx)
        assert not resolved.dynamic
        assert resolved.max_parallel == 1
        assert expand_matrix(resolved) == [{"os": "a"}]

    def test_per_axis_expression(self):
        spec = MatrixSpec(axes={"v": "${{ fromJSON(needs.setup.outputs.versions) }}", "os": ["x"]})
        resolved = resolve_matrix(spec, needs_ctx({"versions": "[1, 2]"}))
        assert expand_matrix(resolved) == [{"v": 1, "os": "x"}, {"v": 2, "os": "x"}]

    def test_whole_matrix_must_be_a_mapping(self):
        spec = MatrixSpec(expression="${{ fromJSON('[1, 2]') }}")
        with pytest.raises(SchemaError, match="mapping"):
            resolve_matrix(spec, needs_ctx({}))

    def test_axis_must_be_a_list(self):
        spec = MatrixSpec(axes={"v": "${{ needs.setup.outputs.v }}"})
        with pytest.raises(SchemaError, match="list"):
            resolve_matrix(spec, needs_ctx({"v": "1"}))
