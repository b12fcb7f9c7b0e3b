"""Tests for line-entry arithmetic (tax, shipping, discount and override lines)."""

import json

from ordering.ledger.lines import dump_lines, find_line, load_lines, remove_line, sum_lines, upsert_line


class TestLoadAndDump:
    def test_missing_storage_is_empty(self):
        assert load_lines(None) == []
        assert load_lines("") == []

    def test_load_decodes_json(self):
        assert load_lines('[{"name": "VAT", "price": 80}]') == [{"name": "VAT", "price": 80}]

    def test_load_accepts_a_list(self):
        lines = [{"name": "VAT", "price": 80}]
        assert load_lines(lines) == lines

    def test_dump_encodes_json(self):
        assert json.loads(dump_lines([{"name": "Shipping", "price": 500}])) == [{"name": "Shipping", "price": 500}]

    def test_dump_none_is_empty_array(self):
        assert dump_lines(None) == "[]"


class TestSumLines:
    def test_sums_prices(self):
        assert sum_lines([{"name": "A", "price": 80}, {"name": "B", "price": 20}]) == 100

    def test_sums_stored_json(self):
        assert sum_lines('[{"name": "A", "price": 15}]') == 15

    def test_empty_is_zero(self):
        assert sum_lines([]) == 0
        assert sum_lines(None) == 0

    def test_missing_price_counts_as_zero(self):
        assert sum_lines([{"name": "A"}, {"name": "B", "price": 5}]) == 5


class TestUpsertLine:
    def test_adds_new_line_at_end(self):
        lines = upsert_line([{"name": "Promo", "price": 100}], "Account Balance", 300)
        assert lines == [{"name": "Promo", "price": 100}, {"name": "Account Balance", "price": 300}]

    def test_replaces_existing_line_in_place(self):
        original = [
            {"name": "Account Balance", "price": 300},
            {"name": "Promo", "price": 100},
        ]
        lines = upsert_line(original, "Account Balance", 50)
        assert lines == [{"name": "Account Balance", "price": 50}, {"name": "Promo", "price": 100}]

    def test_does_not_mutate_input(self):
        original = [{"name": "Account Balance", "price": 300}]
        upsert_line(original, "Account Balance", 50)
        assert original == [{"name": "Account Balance", "price": 300}]


class TestRemoveAndFind:
    def test_remove_drops_named_line(self):
        lines = [{"name": "A", "price": 1}, {"name": "B", "price": 2}]
        assert remove_line(lines, "A") == [{"name": "B", "price": 2}]

    def test_remove_unknown_is_noop(self):
        lines = [{"name": "A", "price": 1}]
        assert remove_line(lines, "Z") == lines

    def test_find_returns_line(self):
        assert find_line([{"name": "A", "price": 1}], "A") == {"name": "A", "price": 1}

    def test_find_returns_none_when_absent(self):
        assert find_line([], "A") is None
