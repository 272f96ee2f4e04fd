import json
import logging
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

import psycopg2
import psycopg2.errors
from psycopg2.extras import RealDictCursor

from chainballot.db import ConnectionPool
from chainballot.errors import (
    NotFound,
    StoreDuplicate,
    StoreError,
    StoreUnavailable,
    ValidationError,
)
from chainballot.models import (
    DEFAULT_CANDIDATE_IMAGE,
    DEFAULT_PARTY,
    PendingWrite,
    RosterEntry,
    StoreCandidate,
    StoreElection,
    User,
    VoteRecord,
    as_utc,
)

logger = logging.getLogger(__name__)

ELECTION_COLUMNS = (
    "id, ledger_id, title, description, start_time, end_time, is_active, "
    "blockchain_tx_hash, created_by, created_at"
)
CANDIDATE_COLUMNS = (
    "id, election_id, ledger_candidate_id, name, description, party, image_url, vote_count"
)
VOTE_COLUMNS = (
    "id, voter_id, election_id, ledger_election_id, candidate_id, ledger_candidate_id, "
    "tx_hash, confirmed_round, created_at"
)


def new_id() -> str:
    return uuid.uuid4().hex


def _election(row: dict[str, Any]) -> StoreElection:
    return StoreElection(
        store_id=row["id"],
        title=row["title"],
        description=row["description"] or "",
        start_time=as_utc(row["start_time"]),
        end_time=as_utc(row["end_time"]),
        is_active=bool(row["is_active"]),
        created_by=row["created_by"],
        ledger_id=int(row["ledger_id"]) if row["ledger_id"] is not None else None,
        blockchain_tx_hash=row["blockchain_tx_hash"],
        created_at=row.get("created_at"),
    )


def _candidate(row: dict[str, Any]) -> StoreCandidate:
    ledger_cid = row["ledger_candidate_id"]
    return StoreCandidate(
        id=row["id"],
        election_id=row["election_id"],
        name=row["name"],
        description=row["description"] or "",
        party=row["party"] or DEFAULT_PARTY,
        image_url=row["image_url"] or DEFAULT_CANDIDATE_IMAGE,
        vote_count=int(row["vote_count"]),
        ledger_candidate_id=int(ledger_cid) if ledger_cid is not None else None,
    )


def _vote(row: dict[str, Any]) -> VoteRecord:
    return VoteRecord(
        id=row["id"],
        voter_id=row["voter_id"],
        election_id=row["election_id"],
        ledger_election_id=row["ledger_election_id"],
        candidate_id=row["candidate_id"],
        ledger_candidate_id=row["ledger_candidate_id"],
        tx_hash=row["tx_hash"],
        confirmed_round=row["confirmed_round"],
        created_at=row["created_at"],
    )


def _user(row: dict[str, Any]) -> User:
    return User(
        id=row["id"],
        email=row["email"],
        name=row["name"],
        role=row["role"],
        verified=bool(row["verified"]),
        created_at=row.get("created_at"),
    )


class PostgresStore:
    """Off-chain mirror of elections, candidates, rosters and votes."""

    def __init__(self, pool: ConnectionPool) -> None:
        self.pool = pool

    @contextmanager
    def _transaction(self) -> Iterator[RealDictCursor]:
        conn = self.pool.get_connection()
        cur = None
        try:
            cur = conn.cursor(cursor_factory=RealDictCursor)
            yield cur
            conn.commit()
        except psycopg2.errors.UniqueViolation as exc:
            conn.rollback()
            logger.debug("Unique violation: %s", exc)
            raise StoreDuplicate() from exc
        except psycopg2.errors.CheckViolation as exc:
            conn.rollback()
            raise ValidationError("End time must be after start time") from exc
        except (psycopg2.OperationalError, psycopg2.InterfaceError) as exc:
            if not conn.closed:
                conn.rollback()
            raise StoreUnavailable(f"Database unavailable: {exc}") from exc
        except psycopg2.Error as exc:
            conn.rollback()
            raise StoreError(f"Database error: {exc}") from exc
        except Exception:
            if not conn.closed:
                conn.rollback()
            raise
        finally:
            if cur is not None:
                cur.close()
            self.pool.release_connection(conn)

    def ping(self) -> bool:
        with self._transaction() as cur:
            cur.execute("SELECT 1 AS ok")
            return cur.fetchone()["ok"] == 1

    # Users

    def create_user(self, email: str, name: str, password_hash: str, role: str = "voter") -> User:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO users (id, email, name, password_hash, role)
                VALUES (%s, %s, %s, %s, %s)
                RETURNING id, email, name, role, verified, created_at
                """,
                (new_id(), email, name, password_hash, role),
            )
            return _user(cur.fetchone())

    def get_user(self, user_id: str) -> User | None:
        with self._transaction() as cur:
            cur.execute(
                "SELECT id, email, name, role, verified, created_at FROM users WHERE id = %s",
                (user_id,),
            )
            row = cur.fetchone()
            return _user(row) if row else None

    def get_credentials(self, email: str) -> tuple[User, str] | None:
        with self._transaction() as cur:
            cur.execute(
                """
                SELECT id, email, name, role, verified, created_at, password_hash
                FROM users WHERE email = %s
                """,
                (email,),
            )
            row = cur.fetchone()
            return (_user(row), row["password_hash"]) if row else None

    def set_user_verified(self, user_id: str, verified: bool = True) -> User:
        with self._transaction() as cur:
            cur.execute(
                """
                UPDATE users SET verified = %s WHERE id = %s
                RETURNING id, email, name, role, verified, created_at
                """,
                (verified, user_id),
            )
            row = cur.fetchone()
            if not row:
                raise NotFound("User not found")
            return _user(row)

    # Elections

    def create_election(
        self,
        title: str,
        description: str,
        start_time,
        end_time,
        is_active: bool = True,
        created_by: str | None = None,
        ledger_id: int | None = None,
        blockchain_tx_hash: str | None = None,
    ) -> StoreElection:
        with self._transaction() as cur:
            cur.execute(
                f"""
                INSERT INTO elections (
                    id, ledger_id, title, description, start_time, end_time,
                    is_active, blockchain_tx_hash, created_by
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING {ELECTION_COLUMNS}
                """,
                (
                    new_id(),
                    ledger_id,
                    title,
                    description,
                    start_time,
                    end_time,
                    is_active,
                    blockchain_tx_hash,
                    created_by,
                ),
            )
            return _election(cur.fetchone())

    def get_election(self, store_id: str) -> StoreElection | None:
        with self._transaction() as cur:
            cur.execute(f"SELECT {ELECTION_COLUMNS} FROM elections WHERE id = %s", (store_id,))
            row = cur.fetchone()
            return _election(row) if row else None

    def find_by_ledger_id(self, ledger_id: int) -> StoreElection | None:
        with self._transaction() as cur:
            cur.execute(
                f"SELECT {ELECTION_COLUMNS} FROM elections WHERE ledger_id = %s",
                (int(ledger_id),),
            )
            row = cur.fetchone()
            return _election(row) if row else None

    def list_elections(self) -> list[StoreElection]:
        with self._transaction() as cur:
            cur.execute(f"SELECT {ELECTION_COLUMNS} FROM elections ORDER BY created_at DESC, id")
            return [_election(row) for row in cur.fetchall()]

    def update_election(self, store_id: str, **fields: Any) -> StoreElection:
        allowed = {"title", "description", "start_time", "end_time", "is_active", "blockchain_tx_hash", "ledger_id"}
        updates = {k: v for k, v in fields.items() if k in allowed and v is not None}
        if not updates:
            election = self.get_election(store_id)
            if election is None:
                raise NotFound("Election not found")
            return election
        assignments = ", ".join(f"{column} = %s" for column in updates)
        with self._transaction() as cur:
            cur.execute(
                f"UPDATE elections SET {assignments} WHERE id = %s RETURNING {ELECTION_COLUMNS}",
                (*updates.values(), store_id),
            )
            row = cur.fetchone()
            if not row:
                raise NotFound("Election not found")
            return _election(row)

    def delete_election(self, store_id: str) -> bool:
        with self._transaction() as cur:
            cur.execute("DELETE FROM elections WHERE id = %s", (store_id,))
            return cur.rowcount > 0

    # Candidates

    def add_candidate(
        self,
        election_id: str,
        name: str,
        description: str = "",
        party: str | None = None,
        image_url: str | None = None,
        ledger_candidate_id: int | None = None,
    ) -> StoreCandidate:
        with self._transaction() as cur:
            cur.execute(
                f"""
                INSERT INTO candidates (
                    id, election_id, ledger_candidate_id, name, description, party, image_url
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s)
                RETURNING {CANDIDATE_COLUMNS}
                """,
                (
                    new_id(),
                    election_id,
                    ledger_candidate_id,
                    name,
                    description,
                    party or DEFAULT_PARTY,
                    image_url or DEFAULT_CANDIDATE_IMAGE,
                ),
            )
            return _candidate(cur.fetchone())

    def list_candidates(self, election_id: str) -> list[StoreCandidate]:
        with self._transaction() as cur:
            cur.execute(
                f"SELECT {CANDIDATE_COLUMNS} FROM candidates WHERE election_id = %s ORDER BY created_at, id",
                (election_id,),
            )
            return [_candidate(row) for row in cur.fetchall()]

    def get_candidate(self, candidate_id: str) -> StoreCandidate | None:
        with self._transaction() as cur:
            cur.execute(f"SELECT {CANDIDATE_COLUMNS} FROM candidates WHERE id = %s", (candidate_id,))
            row = cur.fetchone()
            return _candidate(row) if row else None

    def update_candidate(self, candidate_id: str, **fields: Any) -> StoreCandidate:
        allowed = {"name", "description", "party", "image_url"}
        updates = {k: v for k, v in fields.items() if k in allowed and v is not None}
        if not updates:
            candidate = self.get_candidate(candidate_id)
            if candidate is None:
                raise NotFound("Candidate not found")
            return candidate
        assignments = ", ".join(f"{column} = %s" for column in updates)
        with self._transaction() as cur:
            cur.execute(
                f"UPDATE candidates SET {assignments} WHERE id = %s RETURNING {CANDIDATE_COLUMNS}",
                (*updates.values(), candidate_id),
            )
            row = cur.fetchone()
            if not row:
                raise NotFound("Candidate not found")
            return _candidate(row)

    def delete_candidate(self, candidate_id: str) -> bool:
        with self._transaction() as cur:
            cur.execute("DELETE FROM candidates WHERE id = %s", (candidate_id,))
            return cur.rowcount > 0

    def find_candidate_by_ledger_id(self, election_id: str, ledger_candidate_id: int) -> StoreCandidate | None:
        with self._transaction() as cur:
            cur.execute(
                f"""
                SELECT {CANDIDATE_COLUMNS} FROM candidates
                WHERE election_id = %s AND ledger_candidate_id = %s
                """,
                (election_id, int(ledger_candidate_id)),
            )
            row = cur.fetchone()
            return _candidate(row) if row else None

    # Voter roster

    def add_roster_entry(self, election_id: str, voter_id: str) -> RosterEntry:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO election_voters (election_id, voter_id)
                VALUES (%s, %s)
                RETURNING election_id, voter_id, has_voted, vote_tx
                """,
                (election_id, voter_id),
            )
            return RosterEntry(**cur.fetchone())

    def get_roster_entry(self, election_id: str, voter_id: str) -> RosterEntry | None:
        with self._transaction() as cur:
            cur.execute(
                """
                SELECT election_id, voter_id, has_voted, vote_tx
                FROM election_voters WHERE election_id = %s AND voter_id = %s
                """,
                (election_id, voter_id),
            )
            row = cur.fetchone()
            return RosterEntry(**row) if row else None

    def list_roster(self, election_id: str) -> list[RosterEntry]:
        with self._transaction() as cur:
            cur.execute(
                """
                SELECT election_id, voter_id, has_voted, vote_tx
                FROM election_voters WHERE election_id = %s ORDER BY added_at
                """,
                (election_id,),
            )
            return [RosterEntry(**row) for row in cur.fetchall()]

    # Votes

    def record_vote(self, vote: VoteRecord) -> VoteRecord:
        """
        Insert the vote, mark the roster entry and bump the candidate count in
        one transaction. A second vote for the same (voter, election) raises
        StoreDuplicate and leaves nothing behind.
        """
        with self._transaction() as cur:
            cur.execute(
                f"""
                INSERT INTO votes (
                    id, voter_id, election_id, ledger_election_id, candidate_id,
                    ledger_candidate_id, tx_hash, confirmed_round
                )
                VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING {VOTE_COLUMNS}
                """,
                (
                    new_id(),
                    vote.voter_id,
                    vote.election_id,
                    vote.ledger_election_id,
                    vote.candidate_id,
                    vote.ledger_candidate_id,
                    vote.tx_hash,
                    vote.confirmed_round,
                ),
            )
            stored = _vote(cur.fetchone())
            if vote.election_id is not None:
                cur.execute(
                    """
                    INSERT INTO election_voters (election_id, voter_id, has_voted, vote_tx)
                    VALUES (%s, %s, TRUE, %s)
                    ON CONFLICT (election_id, voter_id)
                    DO UPDATE SET has_voted = TRUE, vote_tx = EXCLUDED.vote_tx
                    """,
                    (vote.election_id, vote.voter_id, vote.tx_hash),
                )
            if vote.candidate_id is not None:
                cur.execute(
                    "UPDATE candidates SET vote_count = vote_count + 1 WHERE id = %s",
                    (vote.candidate_id,),
                )
            return stored

    def find_vote(
        self, voter_id: str, election_id: str | None = None, ledger_election_id: int | None = None
    ) -> VoteRecord | None:
        if election_id is None and ledger_election_id is None:
            return None
        with self._transaction() as cur:
            cur.execute(
                f"""
                SELECT {VOTE_COLUMNS} FROM votes
                WHERE voter_id = %s
                AND ((%s IS NOT NULL AND election_id = %s)
                     OR (%s IS NOT NULL AND ledger_election_id = %s))
                ORDER BY created_at LIMIT 1
                """,
                (voter_id, election_id, election_id, ledger_election_id, ledger_election_id),
            )
            row = cur.fetchone()
            return _vote(row) if row else None

    def find_vote_by_tx(self, tx_hash: str) -> VoteRecord | None:
        with self._transaction() as cur:
            cur.execute(f"SELECT {VOTE_COLUMNS} FROM votes WHERE tx_hash = %s", (tx_hash,))
            row = cur.fetchone()
            return _vote(row) if row else None

    def list_votes(self, election_id: str | None = None, ledger_election_id: int | None = None) -> list[VoteRecord]:
        """Votes recorded against the store row or the ledger id, newest first."""
        with self._transaction() as cur:
            cur.execute(
                f"""
                SELECT {VOTE_COLUMNS} FROM votes
                WHERE election_id = %s OR ledger_election_id = %s
                ORDER BY created_at DESC
                """,
                (election_id, ledger_election_id),
            )
            return [_vote(row) for row in cur.fetchall()]

    # Pending ledger writes

    def add_pending(self, kind: str, tx_id: str, payload: dict[str, Any]) -> None:
        with self._transaction() as cur:
            cur.execute(
                """
                INSERT INTO pending_ledger_writes (kind, tx_id, payload_json, status, updated_at)
                VALUES (%s, %s, %s, 'pending', NOW())
                ON CONFLICT (tx_id)
                DO UPDATE SET payload_json = EXCLUDED.payload_json, status = 'pending', updated_at = NOW()
                """,
                (kind, tx_id, json.dumps(payload, sort_keys=True)),
            )

    def list_pending(self) -> list[PendingWrite]:
        with self._transaction() as cur:
            cur.execute(
                """
                SELECT id, kind, tx_id, payload_json, status, last_error
                FROM pending_ledger_writes
                WHERE status = 'pending'
                ORDER BY id
                """
            )
            return [
                PendingWrite(
                    id=row["id"],
                    kind=row["kind"],
                    tx_id=row["tx_id"],
                    payload=json.loads(row["payload_json"]),
                    status=row["status"],
                    last_error=row["last_error"],
                )
                for row in cur.fetchall()
            ]

    def mark_pending(self, tx_id: str, status: str, last_error: str | None = None) -> None:
        with self._transaction() as cur:
            cur.execute(
                """
                UPDATE pending_ledger_writes
                SET status = %s, last_error = %s, updated_at = NOW()
                WHERE tx_id = %s
                """,
                (status, last_error, tx_id),
            )
