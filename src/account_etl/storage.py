"""account_etl.storage

StorageClient owns the PostgreSQL connection pool for one run.

Create it once at process start and use it as a context manager; the pool
is closed on every exit path.  Loaders borrow one connection at a time via
connection().
"""

from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

import psycopg
from psycopg_pool import ConnectionPool, PoolTimeout

from account_etl.config import (
    POOL_MAX_IDLE_SECONDS,
    POOL_MAX_SIZE,
    POOL_OPEN_TIMEOUT_SECONDS,
)


class StorageClient:
    def __init__(
        self,
        conninfo: str,
        *,
        max_size: int = POOL_MAX_SIZE,
        max_idle: float = POOL_MAX_IDLE_SECONDS,
        open_timeout: float = POOL_OPEN_TIMEOUT_SECONDS,
    ) -> None:
        self._open_timeout = open_timeout
        self._pool = ConnectionPool(
            conninfo,
            min_size=1,
            max_size=max_size,
            max_idle=max_idle,
            kwargs={"autocommit": False},
            open=False,
        )

    def __enter__(self) -> StorageClient:
        self.open()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def open(self) -> None:
        """Open the pool and wait for the first connection.

        Raises psycopg_pool.PoolTimeout when the database is unreachable; the
        pool is closed before the error propagates.
        """
        try:
            self._pool.open(wait=True, timeout=self._open_timeout)
        except PoolTimeout:
            self.close()
            raise

    def close(self) -> None:
        if not self._pool.closed:
            self._pool.close()

    @property
    def closed(self) -> bool:
        return self._pool.closed

    @contextmanager
    def connection(self) -> Iterator[psycopg.Connection]:
        """Borrow a connection; it is returned to the pool on exit."""
        with self._pool.connection() as conn:
            yield conn
