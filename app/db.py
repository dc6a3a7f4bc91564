import contextlib
import itertools
import sqlite3
from typing import Iterable

try:
    import psycopg2
    import psycopg2.extras
except ImportError:  # pragma: no cover - optional dependency for postgres
    psycopg2 = None

from flask import current_app, g


_SAVEPOINT_IDS = itertools.count(1)

DATABASE_ERRORS: tuple = (sqlite3.Error,) + ((psycopg2.Error,) if psycopg2 is not None else ())


class Database:
    def __init__(self, backend: str, connection):
        self.backend = backend
        self._conn = connection

    def execute(self, sql: str, params: Iterable | None = None):
        if self.backend == "postgres":
            cursor = self._conn.cursor(cursor_factory=psycopg2.extras.RealDictCursor)
            if params:
                sql = _convert_qmark_to_pg(sql)
                cursor.execute(sql, list(params))
            else:
                cursor.execute(sql)
            return cursor
        return self._conn.execute(sql, params or ())

    def commit(self):
        self._conn.commit()

    def rollback(self):
        self._conn.rollback()

    @contextlib.contextmanager
    def savepoint(self):
        """Run a block of statements that can be undone without losing earlier work."""
        if self.backend == "sqlite" and not self._conn.in_transaction:
            self._conn.execute("BEGIN")
        name = f"sp_{next(_SAVEPOINT_IDS)}"
        self.execute(f"SAVEPOINT {name}")
        try:
            yield self
        except BaseException:
            self.execute(f"ROLLBACK TO SAVEPOINT {name}")
            self.execute(f"RELEASE SAVEPOINT {name}")
            raise
        else:
            self.execute(f"RELEASE SAVEPOINT {name}")

    def close(self):
        self._conn.close()


def _convert_qmark_to_pg(sql: str) -> str:
    return sql.replace("?", "%s")


def connect_database(db_path: str) -> Database:
    if db_path.lower().startswith("postgres"):
        if psycopg2 is None:
            raise RuntimeError("psycopg2 is not installed.")
        conn = psycopg2.connect(db_path)
        conn.autocommit = False
        return Database("postgres", conn)

    conn = sqlite3.connect(db_path, timeout=30.0, check_same_thread=False)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return Database("sqlite", conn)


def get_db():
    if "db" not in g:
        g.db = connect_database(current_app.config["DB_PATH"])
    return g.db


def get_read_db():
    if "db_read" not in g:
        db_path = current_app.config.get("DATABASE_READ_URL") or current_app.config["DB_PATH"]
        g.db_read = connect_database(db_path)
    return g.db_read


def close_db(_error=None):
    db = g.pop("db", None)
    if db is not None:
        db.close()
    db_read = g.pop("db_read", None)
    if db_read is not None:
        db_read.close()


def init_db():
    db = get_db()
    if db.backend == "postgres":
        _init_db_postgres(db)
    else:
        _init_db_sqlite(db)
    _ensure_sales_tables(db)
    db.commit()


def _init_db_sqlite(db: Database):
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS products (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            external_id TEXT UNIQUE,
            sku TEXT,
            name TEXT NOT NULL,
            description TEXT,
            category TEXT NOT NULL DEFAULT 'novelty',
            subcategory TEXT,
            brand TEXT,
            tags TEXT NOT NULL DEFAULT '[]',
            base_price REAL NOT NULL DEFAULT 0,
            compare_at_price REAL,
            min_order_quantity INTEGER NOT NULL DEFAULT 1,
            case_pack_size INTEGER NOT NULL DEFAULT 1,
            stock_quantity INTEGER NOT NULL DEFAULT 0,
            low_stock_threshold INTEGER NOT NULL DEFAULT 10,
            erp_status TEXT,
            is_online INTEGER NOT NULL DEFAULT 1,
            delisted INTEGER NOT NULL DEFAULT 0,
            erp_modified_at TEXT,
            units_sold INTEGER NOT NULL DEFAULT 0,
            is_featured INTEGER NOT NULL DEFAULT 0,
            is_special INTEGER NOT NULL DEFAULT 0,
            local_notes TEXT,
            image_url TEXT,
            display_order INTEGER NOT NULL DEFAULT 0,
            last_synced_at TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS customers (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            email TEXT NOT NULL UNIQUE,
            contact_name TEXT,
            company_name TEXT,
            phone TEXT,
            external_id TEXT UNIQUE,
            erp_status TEXT,
            erp_is_active INTEGER NOT NULL DEFAULT 1,
            delisted INTEGER NOT NULL DEFAULT 0,
            erp_modified_at TEXT,
            storefront_status TEXT NOT NULL DEFAULT 'pending_approval' CHECK (
                storefront_status IN ('pending_approval','approved','suspended')
            ),
            price_tier TEXT,
            local_notes TEXT,
            last_synced_at TEXT,
            erp_last_checked_at TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS orders (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_number TEXT NOT NULL UNIQUE,
            customer_id INTEGER NOT NULL REFERENCES customers(id),
            status TEXT NOT NULL DEFAULT 'pending' CHECK (
                status IN ('pending','approved','processing','shipped','cancelled')
            ),
            shipping_address TEXT,
            notes TEXT,
            total_amount REAL NOT NULL DEFAULT 0,
            external_id TEXT UNIQUE,
            erp_order_number TEXT,
            erp_pushed_at TEXT,
            erp_idempotency_key TEXT,
            created_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TEXT NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS order_items (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            order_id INTEGER NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
            product_id INTEGER REFERENCES products(id),
            sku TEXT,
            product_name TEXT,
            quantity INTEGER NOT NULL DEFAULT 1,
            unit_price REAL NOT NULL DEFAULT 0
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_runs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            kind TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'running' CHECK (
                status IN ('running','completed','failed')
            ),
            sync_mode TEXT NOT NULL DEFAULT 'incremental' CHECK (
                sync_mode IN ('full','incremental','record')
            ),
            triggered_by TEXT NOT NULL DEFAULT 'manual',
            since TEXT,
            records_in INTEGER NOT NULL DEFAULT 0,
            created INTEGER NOT NULL DEFAULT 0,
            updated INTEGER NOT NULL DEFAULT 0,
            skipped INTEGER NOT NULL DEFAULT 0,
            delisted INTEGER NOT NULL DEFAULT 0,
            errors INTEGER NOT NULL DEFAULT 0,
            error_messages TEXT NOT NULL DEFAULT '[]',
            error_summary TEXT,
            started_at TEXT NOT NULL,
            finished_at TEXT,
            duration_ms INTEGER
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            job_type TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            entity_id INTEGER NOT NULL,
            idempotency_key TEXT NOT NULL UNIQUE,
            status TEXT NOT NULL DEFAULT 'pending' CHECK (
                status IN ('pending','processing','completed','failed')
            ),
            payload TEXT NOT NULL DEFAULT '{}',
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            error_message TEXT,
            external_id TEXT,
            next_attempt_at TEXT,
            last_attempt_at TEXT,
            completed_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )

    _create_indexes(db)


def _init_db_postgres(db: Database) -> None:
    db.execute(
        """
        CREATE TABLE IF NOT EXISTS products (
            id SERIAL PRIMARY KEY,
            external_id TEXT UNIQUE,
            sku TEXT,
            name TEXT NOT NULL,
            description TEXT,
            category TEXT NOT NULL DEFAULT 'novelty',
            subcategory TEXT,
            brand TEXT,
            tags TEXT NOT NULL DEFAULT '[]',
            base_price NUMERIC(12, 2) NOT NULL DEFAULT 0,
            compare_at_price NUMERIC(12, 2),
            min_order_quantity INTEGER NOT NULL DEFAULT 1,
            case_pack_size INTEGER NOT NULL DEFAULT 1,
            stock_quantity INTEGER NOT NULL DEFAULT 0,
            low_stock_threshold INTEGER NOT NULL DEFAULT 10,
            erp_status TEXT,
            is_online INTEGER NOT NULL DEFAULT 1,
            delisted INTEGER NOT NULL DEFAULT 0,
            erp_modified_at TEXT,
            units_sold INTEGER NOT NULL DEFAULT 0,
            is_featured INTEGER NOT NULL DEFAULT 0,
            is_special INTEGER NOT NULL DEFAULT 0,
            local_notes TEXT,
            image_url TEXT,
            display_order INTEGER NOT NULL DEFAULT 0,
            last_synced_at TEXT,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS customers (
            id SERIAL PRIMARY KEY,
            email TEXT NOT NULL UNIQUE,
            contact_name TEXT,
            company_name TEXT,
            phone TEXT,
            external_id TEXT UNIQUE,
            erp_status TEXT,
            erp_is_active INTEGER NOT NULL DEFAULT 1,
            delisted INTEGER NOT NULL DEFAULT 0,
            erp_modified_at TEXT,
            storefront_status TEXT NOT NULL DEFAULT 'pending_approval' CHECK (
                storefront_status IN ('pending_approval','approved','suspended')
            ),
            price_tier TEXT,
            local_notes TEXT,
            last_synced_at TEXT,
            erp_last_checked_at TEXT,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS orders (
            id SERIAL PRIMARY KEY,
            order_number TEXT NOT NULL UNIQUE,
            customer_id INTEGER NOT NULL REFERENCES customers(id),
            status TEXT NOT NULL DEFAULT 'pending' CHECK (
                status IN ('pending','approved','processing','shipped','cancelled')
            ),
            shipping_address TEXT,
            notes TEXT,
            total_amount NUMERIC(12, 2) NOT NULL DEFAULT 0,
            external_id TEXT UNIQUE,
            erp_order_number TEXT,
            erp_pushed_at TEXT,
            erp_idempotency_key TEXT,
            created_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP,
            updated_at TIMESTAMP NOT NULL DEFAULT CURRENT_TIMESTAMP
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS order_items (
            id SERIAL PRIMARY KEY,
            order_id INTEGER NOT NULL REFERENCES orders(id) ON DELETE CASCADE,
            product_id INTEGER REFERENCES products(id),
            sku TEXT,
            product_name TEXT,
            quantity INTEGER NOT NULL DEFAULT 1,
            unit_price NUMERIC(12, 2) NOT NULL DEFAULT 0
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS sync_runs (
            id SERIAL PRIMARY KEY,
            kind TEXT NOT NULL,
            status TEXT NOT NULL DEFAULT 'running' CHECK (
                status IN ('running','completed','failed')
            ),
            sync_mode TEXT NOT NULL DEFAULT 'incremental' CHECK (
                sync_mode IN ('full','incremental','record')
            ),
            triggered_by TEXT NOT NULL DEFAULT 'manual',
            since TEXT,
            records_in INTEGER NOT NULL DEFAULT 0,
            created INTEGER NOT NULL DEFAULT 0,
            updated INTEGER NOT NULL DEFAULT 0,
            skipped INTEGER NOT NULL DEFAULT 0,
            delisted INTEGER NOT NULL DEFAULT 0,
            errors INTEGER NOT NULL DEFAULT 0,
            error_messages TEXT NOT NULL DEFAULT '[]',
            error_summary TEXT,
            started_at TEXT NOT NULL,
            finished_at TEXT,
            duration_ms INTEGER
        )
        """
    )

    db.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id SERIAL PRIMARY KEY,
            job_type TEXT NOT NULL,
            entity_type TEXT NOT NULL,
            entity_id INTEGER NOT NULL,
            idempotency_key TEXT NOT NULL UNIQUE,
            status TEXT NOT NULL DEFAULT 'pending' CHECK (
                status IN ('pending','processing','completed','failed')
            ),
            payload TEXT NOT NULL DEFAULT '{}',
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            error_message TEXT,
            external_id TEXT,
            next_attempt_at TEXT,
            last_attempt_at TEXT,
            completed_at TEXT,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )

    _create_indexes(db)
    _create_postgres_updated_at_triggers(db)


def _create_indexes(db: Database) -> None:
    db.execute("CREATE INDEX IF NOT EXISTS idx_products_delisted ON products (delisted)")
    db.execute("CREATE INDEX IF NOT EXISTS idx_orders_customer ON orders (customer_id)")
    db.execute("CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items (order_id)")
    db.execute("CREATE INDEX IF NOT EXISTS idx_sync_runs_kind_status ON sync_runs (kind, status, started_at)")
    db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_status_created ON jobs (status, created_at, id)")
    db.execute("CREATE INDEX IF NOT EXISTS idx_jobs_entity ON jobs (entity_type, entity_id, status)")


def _create_postgres_updated_at_triggers(db: Database) -> None:
    db.execute(
        """
        CREATE OR REPLACE FUNCTION set_updated_at()
        RETURNS TRIGGER AS $$
        BEGIN
            NEW.updated_at = CURRENT_TIMESTAMP;
            RETURN NEW;
        END;
        $$ LANGUAGE plpgsql;
        """
    )

    for table in ("products", "customers", "orders"):
        db.execute(f"DROP TRIGGER IF EXISTS trg_{table}_updated_at ON {table}")
        db.execute(
            f"""
            CREATE TRIGGER trg_{table}_updated_at
            BEFORE UPDATE ON {table}
            FOR EACH ROW
            EXECUTE FUNCTION set_updated_at()
            """
        )


def _ensure_sales_tables(db: Database) -> None:
    if _table_exists(db, "erp_invoice_lines"):
        return
    id_column = "id SERIAL PRIMARY KEY" if db.backend == "postgres" else "id INTEGER PRIMARY KEY AUTOINCREMENT"
    db.execute(
        f"""
        CREATE TABLE IF NOT EXISTS erp_invoice_lines (
            {id_column},
            invoice_id TEXT NOT NULL,
            line_no INTEGER NOT NULL,
            item_external_id TEXT,
            quantity INTEGER NOT NULL DEFAULT 0,
            invoice_date TEXT,
            UNIQUE (invoice_id, line_no)
        )
        """
    )
    db.execute("CREATE INDEX IF NOT EXISTS idx_invoice_lines_item ON erp_invoice_lines (item_external_id)")


def _table_exists(db: Database, table: str) -> bool:
    if db.backend == "postgres":
        row = db.execute(
            """
            SELECT 1
            FROM information_schema.tables
            WHERE table_schema = 'public' AND table_name = ?
            """,
            (table,),
        ).fetchone()
        return row is not None

    row = db.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name = ?",
        (table,),
    ).fetchone()
    return row is not None


def inserted_id(cursor) -> int:
    """Id from an ``INSERT ... RETURNING id`` cursor; drains it so the statement is finished."""
    rows = cursor.fetchall()
    row = rows[0]
    return int(row["id"] if isinstance(row, dict) else row[0])
