"""account_etl.config

Named constants and database settings for the account contacts load.

Database settings come from the environment (DB_HOST, DB_PORT, DB_NAME,
DB_USER, DB_PASSWORD, or a full DB_DSN); the defaults are placeholders and
must be overridden for a real run.
"""

from __future__ import annotations

from dataclasses import dataclass

from psycopg.conninfo import make_conninfo

# ---------------------------------------------------------------------------
# Load contract
# ---------------------------------------------------------------------------

CREATED_BY_MARKER = "By system"

# The blank set PostgreSQL trims and casts with; str.strip() would also drop
# Unicode spaces such as U+00A0.
ASCII_WHITESPACE = " \t\n\r\f\v"

# Applied in this order; each delimiter splits every fragment of the previous one.
FEATURE_VALUE_DELIMITERS: tuple[str, ...] = (",", ";", "|", "\n", "\t")

# More than this many records switches the loader to batch mode.
BATCH_THRESHOLD = 100

# PostgreSQL caps bind parameters at 65535 per statement; 5 columns per row.
BATCH_CHUNK_SIZE = 5000

TARGET_SCHEMA = "customer"
TARGET_TABLE = "account_contacts"

DEFAULT_SAMPLE_SIZE = 5

# ---------------------------------------------------------------------------
# Database settings
# ---------------------------------------------------------------------------

DEFAULT_DB_HOST = "localhost"
DEFAULT_DB_PORT = 5432
DEFAULT_DB_NAME = "your_database"
DEFAULT_DB_USER = "your_username"
DEFAULT_DB_PASSWORD = "your_password"

POOL_MAX_SIZE = 10
POOL_MAX_IDLE_SECONDS = 30.0
POOL_OPEN_TIMEOUT_SECONDS = 30.0


@dataclass(frozen=True)
class DbSettings:
    host: str = DEFAULT_DB_HOST
    port: int = DEFAULT_DB_PORT
    dbname: str = DEFAULT_DB_NAME
    user: str = DEFAULT_DB_USER
    password: str = DEFAULT_DB_PASSWORD
    dsn: str | None = None

    def conninfo(self) -> str:
        """Return a libpq connection string; an explicit DSN wins over the parts."""
        if self.dsn:
            return self.dsn
        return make_conninfo(
            host=self.host,
            port=self.port,
            dbname=self.dbname,
            user=self.user,
            password=self.password,
        )

    def describe(self) -> str:
        """Connection target without credentials, for log lines."""
        if self.dsn:
            return "dsn"
        return f"{self.user}@{self.host}:{self.port}/{self.dbname}"
