"""
partsbooking SQLite schema (WAL mode).
partsbooking.sqlite: prices table, one ranked summary row per (part_number, brand_name).
rank_pos and price columns are NUMERIC and code columns TEXT so sentinel labels fit.
"""
import sqlite3
from contextlib import closing
from pathlib import Path

from pbscraper.config import DB_PATH

PRICE_COLUMNS = [
    "part_number", "brand_name", "rank_pos", "our_price",
    "leader_code", "leader_price", "over_code", "over_price", "under_code", "under_price",
]


def get_connection(db_path: Path | str | None = None) -> sqlite3.Connection:
    path = Path(db_path or DB_PATH)
    path.parent.mkdir(parents=True, exist_ok=True)
    conn = sqlite3.connect(path, timeout=30)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path | str | None = None) -> None:
    """Create prices table: composite key (part_number, brand_name) plus ranking summary."""
    with closing(get_connection(db_path)) as conn, conn:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS prices (
                part_number TEXT NOT NULL,
                brand_name TEXT NOT NULL,
                rank_pos NUMERIC,
                our_price NUMERIC,
                leader_code TEXT,
                leader_price NUMERIC,
                over_code TEXT,
                over_price NUMERIC,
                under_code TEXT,
                under_price NUMERIC,
                updated_at TEXT NOT NULL DEFAULT (datetime('now')),
                PRIMARY KEY (part_number, brand_name)
            )
        """)
        conn.execute("CREATE INDEX IF NOT EXISTS idx_prices_brand ON prices(brand_name)")


def exists_price(conn: sqlite3.Connection, part_number: str, brand_name: str) -> bool:
    row = conn.execute(
        "SELECT 1 FROM prices WHERE part_number = ? AND brand_name = ? LIMIT 1",
        (part_number, brand_name),
    ).fetchone()
    return row is not None


def upsert_prices(conn: sqlite3.Connection, rows: list[dict]) -> int:
    """Insert or replace ranked rows; latest write wins per (part_number, brand_name). Caller commits."""
    if not rows:
        return 0
    placeholders = ", ".join("?" * len(PRICE_COLUMNS))
    updates = ", ".join(f"{c}=excluded.{c}" for c in PRICE_COLUMNS[2:])
    conn.executemany(
        f"""
        INSERT INTO prices ({", ".join(PRICE_COLUMNS)}, updated_at)
        VALUES ({placeholders}, datetime('now'))
        ON CONFLICT(part_number, brand_name) DO UPDATE SET
            {updates},
            updated_at=excluded.updated_at
        """,
        [tuple(r.get(c) for c in PRICE_COLUMNS) for r in rows],
    )
    return len(rows)


def fetch_prices(conn: sqlite3.Connection, brand_name: str | None = None, limit: int | None = None) -> list[sqlite3.Row]:
    query = "SELECT * FROM prices"
    params: list = []
    if brand_name:
        query += " WHERE brand_name = ?"
        params.append(brand_name)
    query += " ORDER BY brand_name, part_number"
    if limit:
        query += " LIMIT ?"
        params.append(limit)
    return conn.execute(query, params).fetchall()


class PriceStore:
    """
    Storage collaborator used by workers and the aggregator.
    Every call opens its own connection, so a flush may run in a worker thread
    while the event loop keeps checking existence.
    """

    def __init__(self, db_path: Path | str | None = None):
        self.db_path = Path(db_path or DB_PATH)

    def init(self) -> None:
        init_db(self.db_path)

    def exists(self, part_number: str, brand_name: str) -> bool:
        with closing(get_connection(self.db_path)) as conn:
            return exists_price(conn, part_number, brand_name)

    def upsert_batch(self, rows: list[dict]) -> int:
        """Write the whole batch in one transaction; rolls back and re-raises on failure."""
        with closing(get_connection(self.db_path)) as conn, conn:
            return upsert_prices(conn, rows)

    def fetch_all(self, brand_name: str | None = None, limit: int | None = None) -> list[dict]:
        with closing(get_connection(self.db_path)) as conn:
            return [dict(r) for r in fetch_prices(conn, brand_name, limit)]

    def count(self) -> int:
        with closing(get_connection(self.db_path)) as conn:
            return conn.execute("SELECT COUNT(*) FROM prices").fetchone()[0]

    def wipe(self) -> int:
        with closing(get_connection(self.db_path)) as conn, conn:
            return conn.execute("DELETE FROM prices").rowcount
