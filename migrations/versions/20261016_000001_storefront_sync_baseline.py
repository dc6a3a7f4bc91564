"""Storefront sync baseline: catalog, customers, orders, sync runs and jobs.

Revision ID: 20261016_000001
Revises:
Create Date: 2026-10-16 00:00:01
"""

from __future__ import annotations

from typing import Iterable, Sequence, Union

from alembic import op
from sqlalchemy.engine import Connection

from app.db import _convert_qmark_to_pg, _init_db_postgres, _init_db_sqlite


# revision identifiers, used by Alembic.
revision: str = "20261016_000001"
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

_TABLES = ("jobs", "sync_runs", "order_items", "orders", "customers", "products")


class _ResultAdapter:
    def __init__(self, result):
        self._result = result

    @staticmethod
    def _map_row(row):
        if row is None:
            return None
        mapping = getattr(row, "_mapping", None)
        return dict(mapping) if mapping is not None else row

    def fetchone(self):
        return self._map_row(self._result.fetchone())

    def fetchall(self):
        return [self._map_row(row) for row in self._result.fetchall()]


class _MigrationDb:
    """Just enough of ``app.db.Database`` for the schema builders."""

    def __init__(self, connection: Connection, backend: str):
        self._connection = connection
        self.backend = backend

    def execute(self, sql: str, params: Iterable | None = None):
        if params is None:
            return _ResultAdapter(self._connection.exec_driver_sql(sql))
        statement = _convert_qmark_to_pg(sql) if self.backend == "postgres" else sql
        return _ResultAdapter(self._connection.exec_driver_sql(statement, tuple(params)))

    def commit(self):
        return None


def _backend(connection: Connection) -> str:
    return "postgres" if (connection.dialect.name or "").lower().startswith("postgres") else "sqlite"


def upgrade() -> None:
    connection = op.get_bind()
    backend = _backend(connection)
    db = _MigrationDb(connection, backend)
    if backend == "postgres":
        _init_db_postgres(db)
    else:
        _init_db_sqlite(db)


def downgrade() -> None:
    if _backend(op.get_bind()) == "postgres":
        op.execute("DROP FUNCTION IF EXISTS set_updated_at() CASCADE")
    for table in _TABLES:
        op.execute(f"DROP TABLE IF EXISTS {table}")
