"""SQLite database operations for suppliers, backoff state and prices."""

from __future__ import annotations

import json
import sqlite3
import uuid
from collections.abc import Callable
from datetime import datetime, UTC
from pathlib import Path

from .models import RunSummary, Source, SourceStatus
from .rules import domain_for_website

# Columns that make up a supplier's backoff state
BACKOFF_COLUMNS = {
    "status": "scrape_status",
    "consecutive_failures": "consecutive_scrape_failures",
    "failure_timestamps": "scrape_failure_dates",
    "cooldown_until": "scrape_cooldown_until",
    "last_failure_at": "last_scrape_failure_at",
}


def _parse_timestamp(value: str | None) -> datetime | None:
    """Parse stored ISO timestamps as aware UTC datetimes."""
    if not value:
        return None
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        return parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


def _format_timestamp(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).isoformat()


def _encode_backoff_value(field: str, value):
    if field == "status":
        return SourceStatus(value).value
    if field == "failure_timestamps":
        return json.dumps([_format_timestamp(ts) for ts in value or []])
    if field in ("cooldown_until", "last_failure_at"):
        return _format_timestamp(value)
    return value


class SupplierDatabase:
    """SQLite store for suppliers, scraped prices and scrape runs."""

    def __init__(self, db_path: Path | None = None):
        self.db_path = db_path or Path(__file__).parent.parent / "output" / "prices.db"
        self._init_db()

    def _init_db(self):
        """Initialize the database schema."""
        self.db_path.parent.mkdir(parents=True, exist_ok=True)

        with sqlite3.connect(self.db_path) as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS suppliers (
                    id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    website TEXT,
                    active BOOLEAN DEFAULT 1,
                    allow_price_display BOOLEAN DEFAULT 1,
                    scrape_status TEXT NOT NULL DEFAULT 'active',
                    consecutive_scrape_failures INTEGER NOT NULL DEFAULT 0,
                    scrape_failure_dates TEXT NOT NULL DEFAULT '[]',
                    scrape_cooldown_until TEXT,
                    last_scrape_failure_at TEXT,
                    created_at TEXT NOT NULL,
                    updated_at TEXT NOT NULL
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_suppliers_status
                ON suppliers (scrape_status)
            """)

            # Price observations (append-only history)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS supplier_prices (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    supplier_id TEXT NOT NULL,
                    price_per_gallon REAL NOT NULL,
                    min_gallons INTEGER,
                    fuel_type TEXT NOT NULL DEFAULT 'heating_oil',
                    source_type TEXT NOT NULL,
                    source_url TEXT,
                    scraped_at TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    is_valid BOOLEAN DEFAULT 1,
                    created_at TEXT NOT NULL,
                    FOREIGN KEY (supplier_id) REFERENCES suppliers(id)
                )
            """)
            conn.execute("""
                CREATE INDEX IF NOT EXISTS idx_supplier_prices_supplier
                ON supplier_prices (supplier_id, scraped_at)
            """)

            # Batch sweep history
            conn.execute("""
                CREATE TABLE IF NOT EXISTS scrape_runs (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_at TEXT NOT NULL,
                    success_count INTEGER NOT NULL,
                    failed_count INTEGER NOT NULL,
                    skipped_count INTEGER NOT NULL,
                    duration_ms INTEGER,
                    failures TEXT NOT NULL DEFAULT '[]'
                )
            """)

            conn.commit()

    @staticmethod
    def _row_to_source(row: sqlite3.Row) -> Source:
        dates = json.loads(row["scrape_failure_dates"] or "[]")
        return Source(
            id=row["id"],
            name=row["name"],
            website=row["website"],
            status=SourceStatus(row["scrape_status"]),
            consecutive_failures=row["consecutive_scrape_failures"] or 0,
            failure_timestamps=sorted(_parse_timestamp(d) for d in dates if d),
            cooldown_until=_parse_timestamp(row["scrape_cooldown_until"]),
            last_failure_at=_parse_timestamp(row["last_scrape_failure_at"]),
        )

    # --- Suppliers ---

    def add_source(
        self,
        name: str,
        website: str | None,
        source_id: str | None = None,
        active: bool = True,
        allow_price_display: bool = True,
    ) -> Source:
        """Insert a new supplier and return it."""
        now = datetime.now(UTC).isoformat()
        source_id = source_id or str(uuid.uuid4())
        with sqlite3.connect(self.db_path) as conn:
            conn.execute(
                """
                INSERT INTO suppliers (id, name, website, active, allow_price_display,
                                       created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (source_id, name, website, active, allow_price_display, now, now),
            )
            conn.commit()
        return self.get_source(source_id)

    def upsert_source(self, website: str, name: str, keep_name: bool = False) -> bool:
        """Create or update a supplier matched by website domain.

        Returns:
            True if a new supplier was created
        """
        domain = domain_for_website(website)
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute("SELECT id, website FROM suppliers").fetchall()
            existing = next(
                (row for row in rows if domain and domain_for_website(row["website"]) == domain),
                None,
            )

            if existing is None:
                now = datetime.now(UTC).isoformat()
                conn.execute(
                    """
                    INSERT INTO suppliers (id, name, website, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (str(uuid.uuid4()), name, website, now, now),
                )
                conn.commit()
                return True

            if not keep_name:
                conn.execute(
                    "UPDATE suppliers SET name = ?, updated_at = ? WHERE id = ?",
                    (name, datetime.now(UTC).isoformat(), existing["id"]),
                )
                conn.commit()
            return False

    def get_source(self, source_id: str) -> Source | None:
        """Get a supplier by ID."""
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            row = conn.execute(
                "SELECT * FROM suppliers WHERE id = ?",
                (source_id,),
            ).fetchone()
            return self._row_to_source(row) if row else None

    def get_scrapable_sources(self, name_filter: str | None = None) -> list[Source]:
        """Get active suppliers that allow price display and have a website."""
        query = """
            SELECT * FROM suppliers
            WHERE active = 1
            AND allow_price_display = 1
            AND website IS NOT NULL
            AND website != ''
        """
        params: list = []
        if name_filter:
            query += " AND name LIKE ?"
            params.append(f"%{name_filter}%")
        query += " ORDER BY name"

        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            cursor = conn.execute(query, params)
            return [self._row_to_source(row) for row in cursor.fetchall()]

    # --- Backoff state ---

    @staticmethod
    def _write_backoff(conn: sqlite3.Connection, source_id: str, fields: dict) -> None:
        unknown = set(fields) - set(BACKOFF_COLUMNS)
        if unknown:
            raise ValueError(f"Unknown backoff fields: {', '.join(sorted(unknown))}")

        assignments = [f"{BACKOFF_COLUMNS[name]} = ?" for name in fields]
        values = [_encode_backoff_value(name, value) for name, value in fields.items()]
        assignments.append("updated_at = ?")
        values.append(datetime.now(UTC).isoformat())
        values.append(source_id)

        conn.execute(
            f"UPDATE suppliers SET {', '.join(assignments)} WHERE id = ?",
            values,
        )

    def update_source_backoff(self, source_id: str, **fields) -> None:
        """Overwrite backoff fields for a supplier (manual override)."""
        if not fields:
            return
        with sqlite3.connect(self.db_path) as conn:
            self._write_backoff(conn, source_id, fields)
            conn.commit()

    def modify_source_backoff(
        self, source_id: str, mutate: Callable[[Source], dict]
    ) -> Source | None:
        """
        Atomically read, modify and write a supplier's backoff state.

        The row is read inside a ``BEGIN IMMEDIATE`` transaction so concurrent
        writers to the same supplier are serialized.

        Args:
            source_id: Supplier to update
            mutate: Receives the current state, returns the fields to write

        Returns:
            The updated supplier, or None if it does not exist
        """
        conn = sqlite3.connect(self.db_path, isolation_level=None)
        conn.row_factory = sqlite3.Row
        try:
            conn.execute("BEGIN IMMEDIATE")
            row = conn.execute(
                "SELECT * FROM suppliers WHERE id = ?",
                (source_id,),
            ).fetchone()
            if row is None:
                conn.execute("ROLLBACK")
                return None

            fields = mutate(self._row_to_source(row))
            if fields:
                self._write_backoff(conn, source_id, fields)
            conn.execute("COMMIT")
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        finally:
            conn.close()

        return self.get_source(source_id)

    def reset_phone_only_sources(self) -> list[str]:
        """Move every phone_only supplier back to active. Returns their names."""
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                UPDATE suppliers
                SET scrape_status = 'active', consecutive_scrape_failures = 0,
                    scrape_cooldown_until = NULL, updated_at = ?
                WHERE scrape_status = 'phone_only'
                RETURNING name
                """,
                (datetime.now(UTC).isoformat(),),
            )
            names = [row[0] for row in cursor.fetchall()]
            conn.commit()
            return names

    def get_backoff_counts(self) -> dict:
        """Count active suppliers with websites per scrape status."""
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT
                    COALESCE(SUM(CASE WHEN scrape_status = 'active' THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN scrape_status = 'cooldown' THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN scrape_status = 'phone_only' THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN consecutive_scrape_failures > 0 THEN 1 ELSE 0 END), 0)
                FROM suppliers
                WHERE active = 1
                AND website IS NOT NULL
                AND website != ''
                """
            ).fetchone()

        return {
            "active_count": row[0],
            "cooldown_count": row[1],
            "phone_only_count": row[2],
            "with_recent_failures": row[3],
        }

    # --- Prices ---

    def insert_price_observation(
        self,
        source_id: str,
        price: float,
        min_gallons: int | None,
        source_type: str,
        source_url: str | None,
        scraped_at: datetime,
        expires_at: datetime,
    ) -> int:
        """Store one scraped price and return its row ID."""
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                INSERT INTO supplier_prices (
                    supplier_id, price_per_gallon, min_gallons, source_type,
                    source_url, scraped_at, expires_at, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    source_id,
                    price,
                    min_gallons,
                    str(getattr(source_type, "value", source_type)),
                    source_url,
                    _format_timestamp(scraped_at),
                    _format_timestamp(expires_at),
                    datetime.now(UTC).isoformat(),
                ),
            )
            conn.commit()
            return cursor.lastrowid

    def get_price_history(self, source_id: str) -> list[dict]:
        """Get all price observations for a supplier, oldest first."""
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            cursor = conn.execute(
                """
                SELECT * FROM supplier_prices
                WHERE supplier_id = ?
                ORDER BY scraped_at ASC, id ASC
                """,
                (source_id,),
            )
            return [dict(row) for row in cursor.fetchall()]

    def get_active_price_stats(self, now: datetime | None = None) -> dict:
        """Summarize valid, unexpired prices."""
        now_str = _format_timestamp(now or datetime.now(UTC))
        with sqlite3.connect(self.db_path) as conn:
            row = conn.execute(
                """
                SELECT
                    COUNT(*),
                    COALESCE(SUM(CASE WHEN source_type = 'scraped' THEN 1 ELSE 0 END), 0),
                    COALESCE(SUM(CASE WHEN source_type = 'aggregator_signal' THEN 1 ELSE 0 END), 0),
                    MIN(price_per_gallon),
                    MAX(price_per_gallon),
                    AVG(price_per_gallon)
                FROM supplier_prices
                WHERE is_valid = 1
                AND expires_at > ?
                """,
                (now_str,),
            ).fetchone()

        return {
            "total": row[0],
            "scraped": row[1],
            "aggregator_signal": row[2],
            "min_price": row[3],
            "max_price": row[4],
            "avg_price": row[5],
        }

    # --- Scrape runs ---

    def record_scrape_run(self, summary: RunSummary, run_at: datetime | None = None) -> int:
        """Log a batch sweep and return its run ID."""
        with sqlite3.connect(self.db_path) as conn:
            cursor = conn.execute(
                """
                INSERT INTO scrape_runs (run_at, success_count, failed_count,
                                         skipped_count, duration_ms, failures)
                VALUES (?, ?, ?, ?, ?, ?)
                """,
                (
                    _format_timestamp(run_at or datetime.now(UTC)),
                    summary.success,
                    summary.failed,
                    summary.skipped_unconfigured + summary.skipped_backoff,
                    summary.duration_ms,
                    json.dumps(summary.failures),
                ),
            )
            conn.commit()
            return cursor.lastrowid

    def get_scrape_runs(self, limit: int = 30) -> list[dict]:
        """Get recent scrape runs, newest first."""
        with sqlite3.connect(self.db_path) as conn:
            conn.row_factory = sqlite3.Row
            cursor = conn.execute(
                "SELECT * FROM scrape_runs ORDER BY run_at DESC, id DESC LIMIT ?",
                (limit,),
            )
            runs = []
            for row in cursor.fetchall():
                run = dict(row)
                run["failures"] = json.loads(run["failures"] or "[]")
                runs.append(run)
            return runs
