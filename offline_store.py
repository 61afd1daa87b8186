#!/usr/bin/env python3
# Local durable store: SQLite collections for the catalog, pending sales and cached users
import datetime as dt
import json
import logging
import os
import sqlite3
import threading
from contextlib import contextmanager
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import offline_config as cfg

logger = logging.getLogger(__name__)

PRODUCTS = "products"
SALES = "sales"
USERS = "users"

# collection -> natural key field of the stored item
COLLECTION_KEYS = {
    PRODUCTS: "id",
    SALES: "invoiceId",
    USERS: "username",
}
CACHE_COLLECTIONS = (PRODUCTS, USERS)

BILL_COUNTER = "bill_no"
SALES_SYNCED_INDEX = "idx_sales_synced"

SCHEMA_VERSION = 3

# v1: the three collections. v2: synced index + bill_no column. v3: counters, sync_rejections.
_TABLES = (
    """
    CREATE TABLE IF NOT EXISTS products (
      item_key     TEXT PRIMARY KEY,
      payload_json TEXT NOT NULL,
      updated_utc  TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sales (
      item_key     TEXT PRIMARY KEY,
      bill_no      INTEGER,
      synced       INTEGER NOT NULL DEFAULT 0,
      created_utc  TEXT NOT NULL,
      payload_json TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS users (
      item_key     TEXT PRIMARY KEY,
      payload_json TEXT NOT NULL,
      updated_utc  TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS counters (
      name  TEXT PRIMARY KEY,
      value INTEGER NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS sync_rejections (
      invoice_id  TEXT PRIMARY KEY,
      attempts    INTEGER NOT NULL DEFAULT 0,
      last_error  TEXT,
      updated_utc TEXT
    )
    """,
)

# Secondary indexes required by each schema version; created on open when missing.
VERSION_INDEXES = {
    2: {SALES_SYNCED_INDEX: "CREATE INDEX IF NOT EXISTS idx_sales_synced ON sales(synced)"},
}


class StoreOpenError(Exception):
    """Raised when the local store cannot be created, opened or upgraded."""


def iso_now() -> str:
    return dt.datetime.now(dt.timezone.utc).replace(microsecond=0, tzinfo=None).isoformat() + "Z"


def is_unsynced(item: Dict[str, Any]) -> bool:
    value = item.get("synced")
    return value is False or (type(value) is int and value == 0)


def _dumps(item: Dict[str, Any]) -> str:
    return json.dumps(item, separators=(",", ":"), ensure_ascii=False)


def _loads(raw: Optional[str]) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(raw or "")
    except ValueError:
        logger.warning("Skipping unreadable row in local store")
        return None
    return data if isinstance(data, dict) else None


class LocalStore:
    """Per-device store backed by one SQLite file.

    Every operation uses its own short-lived connection so the store can be
    shared between Flask request threads, the sync worker thread and the
    connectivity monitor. Writers serialize on ``BEGIN IMMEDIATE``.
    """

    def __init__(self, path: str):
        self.path = str(path)
        self.index_available: Dict[str, bool] = {}
        self._opened = False
        self._open_lock = threading.Lock()

    # ---------- CONNECTIONS ----------
    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.path, timeout=30, isolation_level=None)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL;")
        # FULL: a committed sale must survive power loss, not only a process crash
        conn.execute("PRAGMA synchronous=FULL;")
        return conn

    @contextmanager
    def _session(self) -> Iterator[sqlite3.Connection]:
        conn = self._connect()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        self._ensure_open()
        with self._session() as conn:
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    # ---------- OPEN / UPGRADE ----------
    def open(self) -> "LocalStore":
        """Create or upgrade the schema once per handle; later calls are no-ops."""
        with self._open_lock:
            if self._opened:
                return self
            try:
                parent = Path(self.path).parent
                parent.mkdir(parents=True, exist_ok=True)
                with self._session() as conn:
                    self._upgrade(conn)
                    self.index_available = self._ensure_indexes(conn)
            except (sqlite3.Error, OSError) as exc:
                raise StoreOpenError(f"Cannot open local store {self.path}: {exc}") from exc
            self._opened = True
        missing = [name for name, ok in self.index_available.items() if not ok]
        if missing:
            logger.warning("Local store %s running without index(es) %s; using full scans", self.path, ", ".join(missing))
        return self

    def _ensure_open(self) -> None:
        if not self._opened:
            self.open()

    def _upgrade(self, conn: sqlite3.Connection) -> None:
        version = int(conn.execute("PRAGMA user_version").fetchone()[0])
        if version > SCHEMA_VERSION:
            raise StoreOpenError(
                f"Local store {self.path} has schema v{version}; this build understands up to v{SCHEMA_VERSION}"
            )
        conn.execute("BEGIN IMMEDIATE")
        try:
            for ddl in _TABLES:
                conn.execute(ddl)
            self._ensure_sales_columns(conn)
            if version < SCHEMA_VERSION:
                conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        except BaseException:
            conn.execute("ROLLBACK")
            raise
        conn.execute("COMMIT")
        if version and version < SCHEMA_VERSION:
            logger.info("Upgraded local store %s from v%d to v%d", self.path, version, SCHEMA_VERSION)

    def _ensure_sales_columns(self, conn: sqlite3.Connection) -> None:
        """Add columns introduced after v1 when an older sales table is present."""
        existing = {row["name"] for row in conn.execute("PRAGMA table_info(sales)").fetchall()}
        if "bill_no" not in existing:
            conn.execute("ALTER TABLE sales ADD COLUMN bill_no INTEGER")

    def _ensure_indexes(self, conn: sqlite3.Connection) -> Dict[str, bool]:
        for version in sorted(VERSION_INDEXES):
            for name, ddl in VERSION_INDEXES[version].items():
                try:
                    conn.execute(ddl)
                except sqlite3.Error as exc:
                    logger.warning("Could not create index %s: %s", name, exc)
        present = {row["name"] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='index'")}
        return {
            name: name in present
            for indexes in VERSION_INDEXES.values()
            for name in indexes
        }

    # ---------- HELPERS ----------
    @staticmethod
    def _check_collection(collection: str) -> str:
        if collection not in COLLECTION_KEYS:
            raise ValueError(f"Unknown collection: {collection}")
        return collection

    @staticmethod
    def _item_key(collection: str, item: Dict[str, Any]) -> str:
        field = COLLECTION_KEYS[collection]
        value = item.get(field) if isinstance(item, dict) else None
        if value in (None, ""):
            raise ValueError(f"{collection} item is missing '{field}'")
        return str(value)

    def _read(self, sql: str, params: tuple = ()) -> List[sqlite3.Row]:
        self._ensure_open()
        with self._session() as conn:
            return conn.execute(sql, params).fetchall()

    # ---------- GENERIC COLLECTION OPS ----------
    def put(self, collection: str, item: Dict[str, Any]) -> None:
        """Upsert one item by its natural key."""
        self._check_collection(collection)
        key = self._item_key(collection, item)
        payload = _dumps(item)
        with self._transaction() as conn:
            if collection == SALES:
                conn.execute("""
                    INSERT INTO sales (item_key, bill_no, synced, created_utc, payload_json)
                    VALUES (?,?,?,?,?)
                    ON CONFLICT(item_key) DO UPDATE SET
                      bill_no=excluded.bill_no,
                      synced=excluded.synced,
                      payload_json=excluded.payload_json
                """, (key, item.get("billNo"), 0 if is_unsynced(item) else 1,
                      item.get("createdAt") or iso_now(), payload))
            else:
                conn.execute(f"""
                    INSERT INTO {collection} (item_key, payload_json, updated_utc) VALUES (?,?,?)
                    ON CONFLICT(item_key) DO UPDATE SET
                      payload_json=excluded.payload_json,
                      updated_utc=excluded.updated_utc
                """, (key, payload, iso_now()))

    def replace_all(self, collection: str, items: List[Dict[str, Any]]) -> int:
        """Clear a cache collection and bulk-insert ``items`` in one transaction."""
        self._check_collection(collection)
        if collection not in CACHE_COLLECTIONS:
            raise ValueError(f"replace_all is only allowed for cache collections, not {collection}")
        now = iso_now()
        rows = [(self._item_key(collection, item), _dumps(item), now) for item in items]
        with self._transaction() as conn:
            conn.execute(f"DELETE FROM {collection}")
            conn.executemany(f"""
                INSERT INTO {collection} (item_key, payload_json, updated_utc) VALUES (?,?,?)
                ON CONFLICT(item_key) DO UPDATE SET payload_json=excluded.payload_json
            """, rows)
        return len(rows)

    def get(self, collection: str, key: Any) -> Optional[Dict[str, Any]]:
        self._check_collection(collection)
        try:
            rows = self._read(f"SELECT payload_json FROM {collection} WHERE item_key=?", (str(key),))
        except sqlite3.Error as exc:
            logger.error("Failed to read %s/%s from local store: %s", collection, key, exc)
            return None
        return _loads(rows[0]["payload_json"]) if rows else None

    def get_all(self, collection: str) -> List[Dict[str, Any]]:
        self._check_collection(collection)
        try:
            rows = self._read(f"SELECT payload_json FROM {collection} ORDER BY rowid")
        except sqlite3.Error as exc:
            logger.error("Failed to read %s from local store: %s", collection, exc)
            return []
        return [item for item in (_loads(r["payload_json"]) for r in rows) if item is not None]

    def remove(self, collection: str, key: Any) -> bool:
        self._check_collection(collection)
        with self._transaction() as conn:
            cur = conn.execute(f"DELETE FROM {collection} WHERE item_key=?", (str(key),))
            if collection == SALES:
                conn.execute("DELETE FROM sync_rejections WHERE invoice_id=?", (str(key),))
        return cur.rowcount > 0

    # ---------- SYNC QUEUE ----------
    def get_unsynced(self) -> List[Dict[str, Any]]:
        """Sales not yet acknowledged by the server, in insertion order."""
        self._ensure_open()
        if self.index_available.get(SALES_SYNCED_INDEX):
            try:
                return self._unsynced_via_index()
            except sqlite3.Error as exc:
                logger.warning("Synced index scan failed, using full scans from now on: %s", exc)
                self.index_available[SALES_SYNCED_INDEX] = False
        try:
            return self._unsynced_via_scan()
        except sqlite3.Error as exc:
            logger.error("Failed to read pending sales: %s", exc)
            return []

    def _unsynced_via_index(self) -> List[Dict[str, Any]]:
        rows = self._read(
            f"SELECT payload_json FROM sales INDEXED BY {SALES_SYNCED_INDEX} WHERE synced = 0 ORDER BY rowid"
        )
        return [item for item in (_loads(r["payload_json"]) for r in rows) if item is not None]

    def _unsynced_via_scan(self) -> List[Dict[str, Any]]:
        rows = self._read("SELECT payload_json FROM sales ORDER BY rowid")
        out = []
        for r in rows:
            item = _loads(r["payload_json"])
            if item is not None and is_unsynced(item):
                out.append(item)
        return out

    def count_unsynced(self) -> int:
        return len(self.get_unsynced())

    # ---------- SALES (transactional) ----------
    def record_sale(self, sale: Dict[str, Any]) -> Dict[str, Any]:
        """Queue a finalized sale.

        Assigns the next bill number, inserts the sale unsynced, decrements the
        cached stock of every sold product and advances the counter, all in one
        transaction. A duplicate invoice id raises ``sqlite3.IntegrityError``
        and nothing is written.
        """
        record = dict(sale)
        record["synced"] = False
        record.setdefault("createdAt", iso_now())
        key = self._item_key(SALES, record)
        with self._transaction() as conn:
            row = conn.execute("SELECT value FROM counters WHERE name=?", (BILL_COUNTER,)).fetchone()
            bill_no = int(row["value"]) if row else 1
            record["billNo"] = bill_no
            conn.execute("""
                INSERT INTO sales (item_key, bill_no, synced, created_utc, payload_json)
                VALUES (?,?,0,?,?)
            """, (key, bill_no, record["createdAt"], _dumps(record)))
            for line in record.get("items") or []:
                self._decrement_stock(conn, line.get("productId"), line.get("qty"))
            conn.execute("""
                INSERT INTO counters (name, value) VALUES (?,?)
                ON CONFLICT(name) DO UPDATE SET value=excluded.value
            """, (BILL_COUNTER, bill_no + 1))
        return record

    def _decrement_stock(self, conn: sqlite3.Connection, product_id: Any, qty: Any) -> None:
        if product_id in (None, ""):
            return
        row = conn.execute("SELECT payload_json FROM products WHERE item_key=?", (str(product_id),)).fetchone()
        product = _loads(row["payload_json"]) if row else None
        if not product:
            return
        try:
            remaining = max(0, float(product.get("stock") or 0) - float(qty or 0))
        except (TypeError, ValueError):
            return
        product["stock"] = int(remaining) if remaining.is_integer() else remaining
        conn.execute("UPDATE products SET payload_json=?, updated_utc=? WHERE item_key=?",
                     (_dumps(product), iso_now(), str(product_id)))

    def peek_bill_no(self) -> int:
        """Bill number the next recorded sale will receive."""
        try:
            rows = self._read("SELECT value FROM counters WHERE name=?", (BILL_COUNTER,))
        except sqlite3.Error as exc:
            logger.error("Failed to read bill counter: %s", exc)
            return 1
        return int(rows[0]["value"]) if rows else 1

    # ---------- REJECTIONS ----------
    def note_rejection(self, invoice_id: str, message: Optional[str]) -> int:
        """Count one server rejection for ``invoice_id``; returns the running total."""
        with self._transaction() as conn:
            conn.execute("""
                INSERT INTO sync_rejections (invoice_id, attempts, last_error, updated_utc)
                VALUES (?,1,?,?)
                ON CONFLICT(invoice_id) DO UPDATE SET
                  attempts=sync_rejections.attempts + 1,
                  last_error=excluded.last_error,
                  updated_utc=excluded.updated_utc
            """, (str(invoice_id), message, iso_now()))
            row = conn.execute("SELECT attempts FROM sync_rejections WHERE invoice_id=?",
                               (str(invoice_id),)).fetchone()
        return int(row["attempts"]) if row else 0

    def rejection_counts(self) -> Dict[str, Dict[str, Any]]:
        try:
            rows = self._read("SELECT invoice_id, attempts, last_error, updated_utc FROM sync_rejections")
        except sqlite3.Error as exc:
            logger.error("Failed to read sync rejections: %s", exc)
            return {}
        return {
            r["invoice_id"]: {"attempts": int(r["attempts"]), "last_error": r["last_error"], "updated_utc": r["updated_utc"]}
            for r in rows
        }

    def clear_rejections(self, invoice_id: str) -> bool:
        with self._transaction() as conn:
            cur = conn.execute("DELETE FROM sync_rejections WHERE invoice_id=?", (str(invoice_id),))
        return cur.rowcount > 0


_STORES: Dict[str, LocalStore] = {}
_STORES_LOCK = threading.Lock()


def open_store(path: Optional[str] = None) -> LocalStore:
    """Return the opened store handle for ``path`` (default POS_OFFLINE_DB_PATH)."""
    target = os.path.abspath(path or cfg.OFFLINE_DB_PATH)
    with _STORES_LOCK:
        store = _STORES.get(target)
        if store is None:
            store = LocalStore(target)
        store.open()
        _STORES[target] = store
    return store
