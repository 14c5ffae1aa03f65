"""Unit tests for the prices table and PriceStore."""

import sqlite3

import pytest

from pbscraper.models import get_connection, upsert_prices
from pbscraper.ranking import NO_LISTING, WE_LEAD, rank_price


def _row(part="P1", brand="CLAAS", **overrides):
    row = rank_price([("A", 100), ("B", 90), ("C", 95)], "C", part, brand)
    row.update(overrides)
    return row


class TestPriceStore:
    def test_exists(self, store):
        assert store.exists("P1", "CLAAS") is False
        store.upsert_batch([_row()])
        assert store.exists("P1", "CLAAS") is True
        assert store.exists("P1", "MANITOU") is False

    def test_upsert_is_idempotent(self, store):
        store.upsert_batch([_row()])
        store.upsert_batch([_row()])

        rows = store.fetch_all()
        assert len(rows) == 1
        assert rows[0]["rank_pos"] == 2
        assert rows[0]["leader_code"] == "B"

    def test_latest_write_wins(self, store):
        store.upsert_batch([_row()])
        store.upsert_batch([_row(our_price=80, rank_pos=1)])

        row = store.fetch_all()[0]
        assert row["our_price"] == 80
        assert row["rank_pos"] == 1

    def test_sentinel_text_in_numeric_columns(self, store):
        store.upsert_batch([
            rank_price([], "1269", "P1", "CLAAS"),
            rank_price([("1269", 50)], "1269", "P2", "CLAAS"),
        ])

        rows = {r["part_number"]: r for r in store.fetch_all()}
        assert rows["P1"]["rank_pos"] == NO_LISTING
        assert rows["P1"]["our_price"] == NO_LISTING
        assert rows["P2"]["over_price"] == WE_LEAD
        assert rows["P2"]["our_price"] == 50

    def test_count_fetch_and_wipe(self, store):
        store.upsert_batch([_row("P1"), _row("P2"), _row("P3", brand="MANITOU")])

        assert store.count() == 3
        assert [r["part_number"] for r in store.fetch_all(brand_name="MANITOU")] == ["P3"]
        assert len(store.fetch_all(limit=2)) == 2
        assert store.wipe() == 3
        assert store.count() == 0

    def test_failed_batch_is_rolled_back(self, store):
        bad = _row("P2")
        bad["part_number"] = None  # NOT NULL violation
        with pytest.raises(sqlite3.IntegrityError):
            store.upsert_batch([_row("P1"), bad])
        assert store.count() == 0


def test_upsert_prices_empty(tmp_path):
    conn = get_connection(tmp_path / "x.sqlite")
    try:
        assert upsert_prices(conn, []) == 0
    finally:
        conn.close()
