"""Unit tests for the ranking engine."""

import random

from pbscraper.ranking import NO_LISTING, WE_ARE_LAST, WE_LEAD, normalize_quotes, rank_price


class TestRankPrice:
    def test_middle_of_three(self):
        row = rank_price([("A", 100), ("B", 90), ("C", 95)], "C", "RE12345", "JOHN DEERE")

        assert row["part_number"] == "RE12345"
        assert row["brand_name"] == "JOHN DEERE"
        assert row["rank_pos"] == 2
        assert row["our_price"] == 95
        assert (row["leader_code"], row["leader_price"]) == ("B", 90)
        assert (row["over_code"], row["over_price"]) == ("B", 90)
        assert (row["under_code"], row["under_price"]) == ("A", 100)

    def test_single_quote_is_ours(self):
        row = rank_price([("OURS", 50)], "OURS", "P1", "CLAAS")

        assert row["rank_pos"] == 1
        assert row["our_price"] == 50
        assert row["leader_price"] == 50
        assert row["leader_code"] == "OURS"
        assert row["over_code"] == row["over_price"] == WE_LEAD
        assert row["under_code"] == row["under_price"] == WE_ARE_LAST

    def test_empty_quotes_all_no_listing(self):
        row = rank_price([], "1269", "P1", "CLAAS")

        assert row["part_number"] == "P1"
        assert row["brand_name"] == "CLAAS"
        for field in ("rank_pos", "our_price", "leader_code", "leader_price",
                      "over_code", "over_price", "under_code", "under_price"):
            assert row[field] == NO_LISTING

    def test_our_code_absent_never_partial(self):
        row = rank_price([("A", 10), ("B", 20)], "1269", "P1", "CLAAS")

        assert all(v == NO_LISTING for k, v in row.items() if k not in ("part_number", "brand_name"))

    def test_we_lead_with_competitors(self):
        row = rank_price([(7, 300), (1269, 120), (9, 200)], 1269, "P1", "MANITOU")

        assert row["rank_pos"] == 1
        assert row["leader_price"] == 120
        assert row["over_price"] == WE_LEAD
        assert (row["under_code"], row["under_price"]) == ("9", 200)

    def test_we_are_last(self):
        row = rank_price([("A", 10), ("B", 20), ("US", 30)], "US", "P1", "CLAAS")

        assert row["rank_pos"] == 3
        assert (row["over_code"], row["over_price"]) == ("B", 20)
        assert row["under_code"] == row["under_price"] == WE_ARE_LAST
        assert (row["leader_code"], row["leader_price"]) == ("A", 10)

    def test_ties_keep_input_order(self):
        row = rank_price([("X", 50), ("US", 50), ("Y", 50)], "US", "P1", "CLAAS")

        assert row["rank_pos"] == 2
        assert row["over_code"] == "X"
        assert row["under_code"] == "Y"

    def test_string_prices_with_whitespace(self):
        row = rank_price([("A", "1 200"), ("US", " 999 "), ("B", "abc")], "US", "P1", "CLAAS")

        assert row["rank_pos"] == 1
        assert row["our_price"] == 999
        assert row["under_price"] == 1200

    def test_non_finite_prices_dropped(self):
        row = rank_price([("A", float("nan")), ("B", "inf"), ("US", 5)], "US", "P1", "CLAAS")

        assert row["rank_pos"] == 1
        assert row["under_price"] == WE_ARE_LAST


class TestNormalizeQuotes:
    def test_drops_missing_and_empty(self):
        quotes = [(None, 5), ("A", None), ("B", ""), ("C", "7"), ("D", True)]
        assert normalize_quotes(quotes) == [("C", 7.0)]

    def test_digit_separators_rejected(self):
        assert normalize_quotes([("A", "1_000"), ("B", " 1 000 "), ("C", 1_000)]) == [("B", 1000.0), ("C", 1000.0)]

    def test_ranks_are_bijection_with_min_first(self):
        rng = random.Random(42)
        quotes = [(f"S{i}", rng.randint(1, 20)) for i in range(30)]
        prices = sorted(p for _, p in quotes)

        positions = set()
        for code, _ in quotes:
            row = rank_price(quotes, code, "P", "B")
            positions.add(row["rank_pos"])
            assert 1 <= row["rank_pos"] <= len(quotes)
            assert row["our_price"] == prices[row["rank_pos"] - 1]
            assert row["leader_price"] == prices[0]

        assert positions == set(range(1, len(quotes) + 1))
