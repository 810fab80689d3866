from __future__ import annotations

from contextlib import contextmanager
from contextvars import ContextVar
from typing import Any, Dict, Iterator, List, Optional, Sequence

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from gatehouse.logging import get_logger
from gatehouse.storage.errors import ConstraintViolation
from gatehouse.storage.schema import REQUIRED_TABLES, SCHEMA_STATEMENTS

logger = get_logger(__name__)

# Connection bound by an open transaction() block in the current context
_tx_conn: ContextVar[Optional[Any]] = ContextVar("gatehouse_tx_conn", default=None)


class Database:
    """Pooled Postgres access with a transaction scope that binds one connection.

    Statements issued inside ``with db.transaction():`` run on the bound
    connection and commit together; outside a transaction each statement checks
    out its own connection and commits on return.
    """

    def __init__(self, dsn: str, *, min_size: int = 2, max_size: int = 10) -> None:
        self.dsn = dsn
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
            open=True,
        )

    def _connect(self):
        return self.pool.connection()

    @contextmanager
    def _cursor_conn(self) -> Iterator[Any]:
        bound = _tx_conn.get()
        if bound is not None:
            yield bound
            return
        with self._connect() as conn:
            yield conn

    def _run(self, sql: str, params: Optional[Sequence[Any]], fetch: str) -> Any:
        try:
            with self._cursor_conn() as conn:
                cur = conn.execute(sql, params)
                if fetch == "all":
                    return cur.fetchall()
                if fetch == "one":
                    return cur.fetchone()
                return cur.rowcount
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "unique constraint violated", {"constraint": _constraint_name(exc)}
            ) from exc
        except errors.CheckViolation as exc:
            raise ConstraintViolation(
                "check constraint violated", {"constraint": _constraint_name(exc)}
            ) from exc
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation(
                "foreign key violated", {"constraint": _constraint_name(exc)}
            ) from exc

    def query(self, sql: str, params: Optional[Sequence[Any]] = None) -> List[Dict[str, Any]]:
        return self._run(sql, params, "all")

    def query_one(self, sql: str, params: Optional[Sequence[Any]] = None) -> Optional[Dict[str, Any]]:
        return self._run(sql, params, "one")

    def execute(self, sql: str, params: Optional[Sequence[Any]] = None) -> int:
        return self._run(sql, params, "none")

    @contextmanager
    def transaction(self) -> Iterator[Any]:
        """Run the enclosed statements on one connection as one transaction.

        Commits when the block exits normally and rolls back when it raises.
        Nesting is not supported.
        """
        if _tx_conn.get() is not None:
            raise RuntimeError("nested transactions are not supported")
        with self._connect() as conn:
            token = _tx_conn.set(conn)
            try:
                with conn.transaction():
                    yield conn
            finally:
                _tx_conn.reset(token)

    def bootstrap_schema(self) -> None:
        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)
        logger.info("schema_bootstrapped", statements=len(SCHEMA_STATEMENTS))

    def verify_connection(self) -> None:
        """Check connectivity and that the core tables exist."""

        with self._connect() as conn:
            conn.execute("SELECT 1")
            missing = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing.append(table)
        if missing:
            raise RuntimeError(
                "Missing required Postgres tables: {}. Run scripts/bootstrap_db.py first.".format(
                    ", ".join(sorted(missing))
                )
            )

    def close(self) -> None:
        self.pool.close()


def _constraint_name(exc: Exception) -> Optional[str]:
    diag = getattr(exc, "diag", None)
    return getattr(diag, "constraint_name", None)
