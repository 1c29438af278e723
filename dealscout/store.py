"""
Listing stores - the upsert-capable persistence the gateway writes through.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Optional, Protocol

import mysql.connector
from mysql.connector import Error

from .config import MySQLConfig
from .errors import StoreUnavailableError, StoreWriteError
from .models.listing import COLUMN_MAP, NON_NEGATIVE_FIELDS


logger = logging.getLogger(__name__)


ID_COLUMN = COLUMN_MAP["external_id"]

# MySQL client errors that mean the server is unreachable
UNAVAILABLE_ERRNOS = {2002, 2003, 2005, 2006, 2013, 2055}


@dataclass
class BatchWriteResult:
    """Outcome of one upsert call. ``rejected`` maps listing id -> reason."""
    written: int = 0
    rejected: dict[str, str] = field(default_factory=dict)


class ListingStore(Protocol):
    def upsert_batch(self, records: list[dict[str, Any]]) -> BatchWriteResult:
        """Insert or update records keyed by listing id."""
        ...

    def list_known_ids(self) -> set[str]:
        ...


def record_violations(record: dict[str, Any]) -> list[str]:
    """Schema checks shared by every store (mirrors the table constraints)."""
    problems = []
    if not record.get(ID_COLUMN):
        problems.append(f"{ID_COLUMN} must not be empty")
    for attr in NON_NEGATIVE_FIELDS:
        value = record.get(COLUMN_MAP[attr])
        if value is not None and value < 0:
            problems.append(f"{COLUMN_MAP[attr]} must be non-negative (got {value:g})")
    score = record.get("quality_score")
    if score is not None and not 0 <= score <= 100:
        problems.append(f"quality_score out of range (got {score:g})")
    confidence = record.get("extraction_confidence")
    if confidence is not None and not 0 <= confidence <= 1:
        problems.append(f"extraction_confidence out of range (got {confidence:g})")
    return problems


class InMemoryListingStore:
    """
    Dict-backed store with the listing table's constraints.

    Used for tests and dry runs. ``fail_batches_over`` makes any call with
    more records than that raise without naming a record, ``delay`` slows
    every call down, and ``unavailable`` makes every call fail as if the
    server were down.
    """

    def __init__(
        self,
        fail_batches_over: Optional[int] = None,
        delay: float = 0.0,
        unavailable: bool = False,
    ):
        self.rows: dict[str, dict[str, Any]] = {}
        self.fail_batches_over = fail_batches_over
        self.delay = delay
        self.unavailable = unavailable
        self.calls: list[int] = []
        self._lock = threading.Lock()

    def upsert_batch(self, records: list[dict[str, Any]]) -> BatchWriteResult:
        self.calls.append(len(records))
        if self.delay:
            time.sleep(self.delay)
        if self.unavailable:
            raise StoreUnavailableError("In-memory store marked unavailable")
        if self.fail_batches_over is not None and len(records) > self.fail_batches_over:
            raise StoreWriteError(f"Batch of {len(records)} records failed")

        result = BatchWriteResult()
        with self._lock:
            for record in records:
                problems = record_violations(record)
                if problems:
                    result.rejected[str(record.get(ID_COLUMN))] = "; ".join(problems)
                    continue
                listing_id = record[ID_COLUMN]
                existing = self.rows.get(listing_id)
                row = dict(record)
                if existing is not None and existing.get("first_seen_at") is not None:
                    row["first_seen_at"] = existing["first_seen_at"]
                self.rows[listing_id] = row
                result.written += 1
        return result

    def list_known_ids(self) -> set[str]:
        if self.unavailable:
            raise StoreUnavailableError("In-memory store marked unavailable")
        with self._lock:
            return set(self.rows)

    def get(self, listing_id: str) -> Optional[dict[str, Any]]:
        with self._lock:
            return self.rows.get(listing_id)


class MySQLListingStore:
    """MySQL-backed listing table using INSERT ... ON DUPLICATE KEY UPDATE."""

    TABLE = "listings"

    COLUMNS = (
        ("listing_id", "VARCHAR(128) NOT NULL PRIMARY KEY"),
        ("title", "VARCHAR(512)"),
        ("listing_url", "VARCHAR(2048)"),
        ("asking_price", "DECIMAL(14,2) CHECK (asking_price >= 0)"),
        ("monthly_revenue", "DECIMAL(14,2) CHECK (monthly_revenue >= 0)"),
        ("monthly_profit", "DECIMAL(14,2) CHECK (monthly_profit >= 0)"),
        ("annual_revenue", "DECIMAL(16,2)"),
        ("annual_profit", "DECIMAL(16,2)"),
        ("revenue_multiple", "DECIMAL(8,2)"),
        ("profit_multiple", "DECIMAL(8,2)"),
        ("profit_margin", "DECIMAL(8,1)"),
        ("size_category", "VARCHAR(16)"),
        ("industry", "VARCHAR(128)"),
        ("business_type", "VARCHAR(64)"),
        ("monetization_method", "VARCHAR(128)"),
        ("traffic_verified", "BOOLEAN DEFAULT FALSE"),
        ("revenue_verified", "BOOLEAN DEFAULT FALSE"),
        ("manually_vetted", "BOOLEAN DEFAULT FALSE"),
        ("quality_score", "DECIMAL(5,1)"),
        ("extraction_confidence", "DECIMAL(4,3)"),
        ("low_confidence", "BOOLEAN DEFAULT FALSE"),
        ("warnings", "TEXT"),
        ("raw_data", "MEDIUMTEXT"),
        ("source", "VARCHAR(16)"),
        ("schema_version", "VARCHAR(8)"),
        ("first_seen_at", "DATETIME"),
        ("last_seen_at", "DATETIME"),
    )

    def __init__(self, config: Optional[MySQLConfig] = None):
        self.config = config or MySQLConfig()
        self._initialized = False

    def _connect(self):
        try:
            return mysql.connector.connect(
                host=self.config.host,
                port=self.config.port,
                user=self.config.user,
                password=self.config.password,
                database=self.config.database,
            )
        except Error as e:
            raise StoreUnavailableError(f"Cannot connect to MySQL at {self.config.host}: {e}") from e

    def init_db(self) -> None:
        """Create the listings table if it doesn't exist."""
        columns = ",\n".join(f"{name} {ddl}" for name, ddl in self.COLUMNS)
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute(f"CREATE TABLE IF NOT EXISTS {self.TABLE} (\n{columns}\n)")
            conn.commit()
        finally:
            conn.close()
        self._initialized = True

    def upsert_batch(self, records: list[dict[str, Any]]) -> BatchWriteResult:
        if not self._initialized:
            self.init_db()

        result = BatchWriteResult()
        rows = []
        for record in records:
            problems = record_violations(record)
            if problems:
                result.rejected[str(record.get(ID_COLUMN))] = "; ".join(problems)
            else:
                rows.append(record)
        if not rows:
            return result

        names = [name for name, _ in self.COLUMNS]
        updates = ", ".join(
            f"{name} = VALUES({name})" for name in names
            if name not in ("listing_id", "first_seen_at")
        )
        sql = (
            f"INSERT INTO {self.TABLE} ({', '.join(names)}) "
            f"VALUES ({', '.join(['%s'] * len(names))}) "
            f"ON DUPLICATE KEY UPDATE {updates}"
        )
        params = [tuple(row.get(name) for name in names) for row in rows]

        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.executemany(sql, params)
            conn.commit()
            result.written = len(rows)
        except Error as e:
            conn.rollback()
            if getattr(e, "errno", None) in UNAVAILABLE_ERRNOS:
                raise StoreUnavailableError(f"MySQL connection lost: {e}") from e
            raise StoreWriteError(f"Upsert of {len(rows)} records failed: {e}") from e
        finally:
            conn.close()
        return result

    def list_known_ids(self) -> set[str]:
        if not self._initialized:
            self.init_db()
        conn = self._connect()
        try:
            cursor = conn.cursor()
            cursor.execute(f"SELECT listing_id FROM {self.TABLE}")
            return {row[0] for row in cursor.fetchall()}
        except Error as e:
            raise StoreUnavailableError(f"Could not read known listing ids: {e}") from e
        finally:
            conn.close()
