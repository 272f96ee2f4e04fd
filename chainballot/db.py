import logging
import threading

import psycopg2
from psycopg2 import pool as pg_pool

from chainballot.errors import StoreUnavailable

logger = logging.getLogger(__name__)

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS users (
    id TEXT PRIMARY KEY,
    email TEXT UNIQUE NOT NULL,
    name TEXT NOT NULL,
    password_hash TEXT NOT NULL,
    role TEXT NOT NULL DEFAULT 'voter',
    verified BOOLEAN NOT NULL DEFAULT FALSE,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS elections (
    id TEXT PRIMARY KEY,
    ledger_id BIGINT,
    title TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    start_time TIMESTAMPTZ NOT NULL,
    end_time TIMESTAMPTZ NOT NULL,
    is_active BOOLEAN NOT NULL DEFAULT TRUE,
    blockchain_tx_hash TEXT,
    created_by TEXT REFERENCES users(id) ON DELETE SET NULL,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    CHECK (start_time < end_time)
);

CREATE TABLE IF NOT EXISTS candidates (
    id TEXT PRIMARY KEY,
    election_id TEXT NOT NULL REFERENCES elections(id) ON DELETE CASCADE,
    ledger_candidate_id BIGINT,
    name TEXT NOT NULL,
    description TEXT NOT NULL DEFAULT '',
    party TEXT NOT NULL DEFAULT 'Independent',
    image_url TEXT NOT NULL,
    vote_count INTEGER NOT NULL DEFAULT 0,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS election_voters (
    election_id TEXT NOT NULL REFERENCES elections(id) ON DELETE CASCADE,
    voter_id TEXT NOT NULL REFERENCES users(id) ON DELETE CASCADE,
    has_voted BOOLEAN NOT NULL DEFAULT FALSE,
    vote_tx TEXT,
    added_at TIMESTAMPTZ DEFAULT NOW(),
    PRIMARY KEY (election_id, voter_id)
);

CREATE TABLE IF NOT EXISTS votes (
    id TEXT PRIMARY KEY,
    voter_id TEXT NOT NULL REFERENCES users(id),
    election_id TEXT REFERENCES elections(id) ON DELETE SET NULL,
    ledger_election_id BIGINT,
    candidate_id TEXT REFERENCES candidates(id) ON DELETE SET NULL,
    ledger_candidate_id BIGINT,
    tx_hash TEXT,
    confirmed_round BIGINT,
    created_at TIMESTAMPTZ DEFAULT NOW()
);

CREATE TABLE IF NOT EXISTS pending_ledger_writes (
    id SERIAL PRIMARY KEY,
    kind TEXT NOT NULL,
    tx_id TEXT NOT NULL UNIQUE,
    payload_json TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'pending',
    last_error TEXT,
    created_at TIMESTAMPTZ DEFAULT NOW(),
    updated_at TIMESTAMPTZ DEFAULT NOW()
);
"""

INDEX_SQL = (
    """
    CREATE UNIQUE INDEX IF NOT EXISTS elections_unique_ledger_id
    ON elections (ledger_id)
    WHERE ledger_id IS NOT NULL;
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS candidates_unique_ledger_id
    ON candidates (election_id, ledger_candidate_id)
    WHERE ledger_candidate_id IS NOT NULL;
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS votes_unique_voter_election
    ON votes (voter_id, election_id)
    WHERE election_id IS NOT NULL;
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS votes_unique_voter_ledger_election
    ON votes (voter_id, ledger_election_id)
    WHERE ledger_election_id IS NOT NULL;
    """,
    """
    CREATE UNIQUE INDEX IF NOT EXISTS votes_unique_tx_hash
    ON votes (tx_hash)
    WHERE tx_hash IS NOT NULL;
    """,
)


class ConnectionPool:
    """Lazily opened psycopg2 pool shared by every request thread."""

    def __init__(self, dsn: str | None, min_conn: int = 1, max_conn: int = 10, sslmode: str = "require") -> None:
        self.dsn = dsn
        self.min_conn = min_conn
        self.max_conn = max_conn
        self.sslmode = sslmode
        self._pool: pg_pool.ThreadedConnectionPool | None = None
        self._lock = threading.Lock()

    def _ensure_pool(self) -> pg_pool.ThreadedConnectionPool:
        if self._pool is not None:
            return self._pool
        if not self.dsn:
            raise StoreUnavailable("DATABASE_URL environment variable is not set")
        with self._lock:
            if self._pool is None:
                try:
                    self._pool = pg_pool.ThreadedConnectionPool(
                        self.min_conn,
                        self.max_conn,
                        dsn=self.dsn,
                        sslmode=self.sslmode,
                        connect_timeout=10,
                    )
                except psycopg2.OperationalError as exc:
                    logger.error("Could not open database pool: %s", exc)
                    raise StoreUnavailable(f"Database unavailable: {exc}") from exc
        return self._pool

    def get_connection(self):
        pool = self._ensure_pool()
        try:
            return pool.getconn()
        except (pg_pool.PoolError, psycopg2.OperationalError) as exc:
            raise StoreUnavailable(f"Database unavailable: {exc}") from exc

    def release_connection(self, conn) -> None:
        if conn is None or self._pool is None:
            return
        self._pool.putconn(conn, close=bool(conn.closed))

    def close(self) -> None:
        with self._lock:
            if self._pool is not None:
                self._pool.closeall()
                self._pool = None


def ensure_schema(pool: ConnectionPool) -> None:
    conn = pool.get_connection()
    cur = conn.cursor()
    try:
        cur.execute(SCHEMA_SQL)
        for statement in INDEX_SQL:
            cur.execute(statement)
        conn.commit()
    except psycopg2.Error:
        conn.rollback()
        raise
    finally:
        cur.close()
        pool.release_connection(conn)
