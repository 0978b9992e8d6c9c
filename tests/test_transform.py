"""Tests for array-level data transformation."""
import pytest

from flowforge.errors import ValidationError
from node_sdk import NodeItem
from workflow_runtime import (
    MergeStrategy,
    apply_field_operations,
    coerce_value,
    filter_data,
    merge_input_data,
    paginate_data,
    sort_data,
    transform_data_types,
    validate_data,
)


def make_items(*payloads):
    return [NodeItem(json_data=payload) for payload in payloads]


class TestPaginate:
    def test_middle_page(self):
        page = paginate_data(list(range(125)), page=2, page_size=50)

        assert page.items == list(range(50, 100))
        assert page.total == 125
        assert page.total_pages == 3
        assert page.has_next is True
        assert page.has_prev is True

    def test_last_partial_page(self):
        page = paginate_data(list(range(125)), page=3, page_size=50)

        assert len(page.items) == 25
        assert page.has_next is False

    def test_page_past_end_is_empty(self):
        assert paginate_data([1, 2], page=5, page_size=10).items == []

    def test_empty_input(self):
        page = paginate_data([], page=1, page_size=10)

        assert page.total_pages == 0
        assert page.has_next is False
        assert page.has_prev is False

    def test_to_dict(self):
        data = paginate_data([1, 2, 3], page=1, page_size=2).to_dict()

        assert data["items"] == [1, 2]
        assert data["pagination"]["totalPages"] == 2
        assert data["pagination"]["hasNext"] is True

    @pytest.mark.parametrize("page,size", [(0, 10), (1, 0)])
    def test_invalid_arguments(self, page, size):
        with pytest.raises(ValidationError):
            paginate_data([1], page=page, page_size=size)


class TestSort:
    def test_stable_with_missing_first(self):
        items = make_items({"id": 1, "n": 2}, {"id": 2}, {"id": 3, "n": 1}, {"id": 4, "n": 2})

        result = sort_data(items, "n")

        assert [item.json_data["id"] for item in result] == [2, 3, 1, 4]

    def test_descending_keeps_equal_order(self):
        items = make_items({"id": 1, "n": 2}, {"id": 2}, {"id": 3, "n": 1}, {"id": 4, "n": 2})

        result = sort_data(items, "n", "desc")

        assert [item.json_data["id"] for item in result] == [1, 4, 3, 2]

    def test_nested_path(self):
        items = make_items({"a": {"b": "z"}}, {"a": {"b": "m"}})

        assert [item.json_data["a"]["b"] for item in sort_data(items, "a.b")] == ["m", "z"]

    def test_invalid_direction(self):
        with pytest.raises(ValidationError):
            sort_data([], "n", "sideways")

    def test_input_not_modified(self):
        items = make_items({"n": 2}, {"n": 1})

        sort_data(items, "n")

        assert [item.json_data["n"] for item in items] == [2, 1]


class TestFilter:
    def test_callable_predicate(self):
        items = make_items({"n": 1}, {"n": 5}, {"n": 9})

        kept = filter_data(items, lambda item, index: item.json_data["n"] > 3)

        assert [item.json_data["n"] for item in kept] == [5, 9]

    def test_expression_predicate(self, node_context, engine):
        items = make_items({"status": "open"}, {"status": "closed"}, {"status": "open"})

        kept = filter_data(items, "{{ $json.status == 'open' }}", node_context(), engine)

        assert len(kept) == 2

    def test_expression_requires_context(self):
        with pytest.raises(ValueError):
            filter_data(make_items({"n": 1}), "$json.n > 0")


class TestMerge:
    def test_append_keeps_declared_order(self):
        merged = merge_input_data({
            "input1": make_items({"src": "a1"}, {"src": "a2"}),
            "input2": make_items({"src": "b1"}),
        })

        assert [item.json_data["src"] for item in merged] == ["a1", "a2", "b1"]
        assert merged[2].paired_item.input == 1
        assert merged[2].paired_item.item == 0

    def test_combine_by_position(self):
        merged = merge_input_data(
            [make_items({"id": 1, "a": 1}, {"id": 2}), make_items({"id": 1, "a": 2, "b": 3})],
            MergeStrategy.COMBINE,
        )

        assert [item.json_data for item in merged] == [{"id": 1, "a": 2, "b": 3}, {"id": 2}]

    def test_unknown_strategy(self):
        with pytest.raises(ValueError):
            merge_input_data([], "zip")


class TestTypeCoercion:
    def test_valid_coercions(self):
        items = make_items({"n": "42", "f": "3.5", "flag": "TRUE", "when": "2024-01-15", "obj": '{"a": 1}'})

        (result,) = transform_data_types(
            items, {"n": "number", "f": "number", "flag": "boolean", "when": "date", "obj": "object"}
        )

        assert result.json_data == {
            "n": 42,
            "f": 3.5,
            "flag": True,
            "when": "2024-01-15T00:00:00+00:00",
            "obj": {"a": 1},
        }

    def test_fallbacks(self):
        items = make_items({"n": "abc", "when": "not a date", "s": {"a": 1}})

        (result,) = transform_data_types(items, {"n": "number", "when": "date", "s": "string", "gone": "number"})

        assert result.json_data == {"n": 0, "when": None, "s": '{"a": 1}'}

    @pytest.mark.parametrize("value", ["NaN", "nan", float("nan")])
    def test_nan_becomes_zero(self, value):
        assert coerce_value(value, "number") == 0

    def test_infinity_kept(self):
        assert coerce_value("Infinity", "number") == float("inf")

    def test_numeric_date_read_as_milliseconds(self):
        assert coerce_value(1705276800000, "date") == "2024-01-15T00:00:00+00:00"

    def test_original_item_unchanged(self):
        items = make_items({"n": "1"})

        transform_data_types(items, {"n": "number"})

        assert items[0].json_data == {"n": "1"}


class TestValidateData:
    def test_reports_all_issues(self):
        items = make_items(
            {"email": "ada@example.com", "age": 36},
            {"email": "not-an-email", "age": "old"},
            {"age": 20},
        )
        schema = {
            "required": ["email"],
            "types": {"age": "number"},
            "patterns": {"email": r"^[^@]+@[^@]+$"},
        }

        issues = validate_data(items, schema)

        assert [(issue["itemIndex"], issue["field"]) for issue in issues] == [
            (1, "age"),
            (1, "email"),
            (2, "email"),
        ]

    def test_invalid_pattern_is_an_issue(self):
        issues = validate_data(make_items({"a": "x"}), {"patterns": {"a": "("}})

        assert "Invalid pattern" in issues[0]["error"]


class TestFieldOperations:
    def test_add_remove_rename(self):
        items = make_items({"first": "Ada", "tmp": 1})

        (result,) = apply_field_operations(
            items, add={"meta.source": "crm"}, remove=["tmp"], rename={"first": "firstName"}
        )

        assert result.json_data == {"firstName": "Ada", "meta": {"source": "crm"}}
        assert items[0].json_data == {"first": "Ada", "tmp": 1}
