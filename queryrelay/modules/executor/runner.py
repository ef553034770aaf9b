"""
Query runners used by the reference agent.

A runner executes resolved query text against the agent's private data
source. Statements that describe a result set are row-producing; anything
else reports the number of rows it affected.
"""

import asyncio
import logging
import sqlite3
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

logger = logging.getLogger("queryrelay.executor.runner")


@dataclass
class QueryResult:
    """Outcome of one statement."""

    rows: Optional[List[Dict[str, Any]]] = None
    columns: Optional[List[str]] = None
    rows_affected: int = 0

    @property
    def row_producing(self) -> bool:
        return self.rows is not None

    @property
    def message(self) -> str:
        return f"{self.rows_affected} rows affected"


class QueryRunner(Protocol):
    """Protocol for executing query text against a data source."""

    async def run(self, query_text: str, params: Sequence[Any] = ()) -> QueryResult:
        ...


class SqliteQueryRunner:
    """Runs statements against a local SQLite database."""

    def __init__(self, database: str, timeout: float = 30.0):
        """
        Initialize SQLite runner.

        Args:
            database: Path to the database file (":memory:" for a private one)
            timeout: Seconds to wait on a locked database
        """
        self.database = database
        self.timeout = timeout
        self._memory_conn: Optional[sqlite3.Connection] = None

    def _connect(self) -> sqlite3.Connection:
        # An in-memory database only lives as long as its connection
        if self.database == ":memory:":
            if self._memory_conn is None:
                self._memory_conn = sqlite3.connect(
                    self.database, timeout=self.timeout, check_same_thread=False
                )
            return self._memory_conn
        return sqlite3.connect(self.database, timeout=self.timeout)

    def _run_sync(self, query_text: str, params: Sequence[Any]) -> QueryResult:
        conn = self._connect()
        try:
            cursor = conn.execute(query_text, tuple(params))
            if cursor.description is not None:
                columns = [d[0] for d in cursor.description]
                rows = [dict(zip(columns, values)) for values in cursor.fetchall()]
                return QueryResult(rows=rows, columns=columns, rows_affected=len(rows))

            conn.commit()
            return QueryResult(rows_affected=max(cursor.rowcount, 0))
        except sqlite3.Error:
            conn.rollback()
            raise
        finally:
            if conn is not self._memory_conn:
                conn.close()

    async def run(self, query_text: str, params: Sequence[Any] = ()) -> QueryResult:
        """
        Execute one statement in a worker thread.

        Args:
            query_text: Statement with ``?`` placeholders
            params: Positional values for the placeholders

        Raises:
            sqlite3.Error: Any database error, unchanged
        """
        logger.debug(f"Running against {self.database}: {query_text} ({len(params)} params)")
        return await asyncio.to_thread(self._run_sync, query_text, params)

    def close(self) -> None:
        if self._memory_conn is not None:
            self._memory_conn.close()
            self._memory_conn = None
