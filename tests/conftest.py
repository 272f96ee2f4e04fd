import itertools
import threading
from dataclasses import replace
from datetime import timedelta

import pytest

from chainballot.algorand_client import TxReceipt
from chainballot.app import create_app
from chainballot.config import Settings
from chainballot.errors import (
    ConfirmationAbandoned,
    LedgerReverted,
    LedgerUnavailable,
    NotFound,
    StoreDuplicate,
    StoreUnavailable,
)
from chainballot.models import (
    DEFAULT_CANDIDATE_IMAGE,
    DEFAULT_PARTY,
    LedgerCandidate,
    LedgerElection,
    PendingWrite,
    RosterEntry,
    StoreCandidate,
    StoreElection,
    User,
    utc_now,
)
from chainballot import smart_contract


class FakeStore:
    """In-memory stand-in for PostgresStore with the same unique-index behaviour."""

    def __init__(self):
        self._lock = threading.Lock()
        self._ids = itertools.count(1)
        self.down = False
        self.fail_on = set()
        self.users = {}
        self.passwords = {}
        self.elections = {}
        self.candidates = {}
        self.roster = {}
        self.votes = []
        self.pending = {}

    def _check(self, name):
        if self.down or name in self.fail_on:
            raise StoreUnavailable("Database unavailable: connection refused")

    def _new_id(self):
        return f"s{next(self._ids):04d}"

    def ping(self):
        self._check("ping")
        return True

    def create_user(self, email, name, password_hash, role="voter"):
        self._check("create_user")
        with self._lock:
            if any(u.email == email for u in self.users.values()):
                raise StoreDuplicate("duplicate key value violates unique constraint")
            user = User(self._new_id(), email, name, role, False, utc_now())
            self.users[user.id] = user
            self.passwords[email] = password_hash
            return user

    def get_user(self, user_id):
        self._check("get_user")
        return self.users.get(user_id)

    def get_credentials(self, email):
        self._check("get_credentials")
        for user in self.users.values():
            if user.email == email:
                return user, self.passwords[email]
        return None

    def set_user_verified(self, user_id, verified=True):
        self._check("set_user_verified")
        if user_id not in self.users:
            raise NotFound("User not found")
        self.users[user_id] = replace(self.users[user_id], verified=verified)
        return self.users[user_id]

    def create_election(
        self, title, description, start_time, end_time, is_active=True, created_by=None,
        ledger_id=None, blockchain_tx_hash=None,
    ):
        self._check("create_election")
        with self._lock:
            if ledger_id is not None and any(e.ledger_id == ledger_id for e in self.elections.values()):
                raise StoreDuplicate("duplicate ledger id")
            row = StoreElection(
                self._new_id(), title, description, start_time, end_time, is_active,
                created_by, ledger_id, blockchain_tx_hash, utc_now(),
            )
            self.elections[row.store_id] = row
            return row

    def get_election(self, store_id):
        self._check("get_election")
        return self.elections.get(store_id)

    def find_by_ledger_id(self, ledger_id):
        self._check("find_by_ledger_id")
        for row in self.elections.values():
            if row.ledger_id == ledger_id:
                return row
        return None

    def list_elections(self):
        self._check("list_elections")
        return list(self.elections.values())

    def update_election(self, store_id, **fields):
        self._check("update_election")
        if store_id not in self.elections:
            raise NotFound("Election not found")
        updates = {k: v for k, v in fields.items() if v is not None}
        self.elections[store_id] = replace(self.elections[store_id], **updates)
        return self.elections[store_id]

    def delete_election(self, store_id):
        self._check("delete_election")
        return self.elections.pop(store_id, None) is not None

    def add_candidate(self, election_id, name, description="", party=None, image_url=None, ledger_candidate_id=None):
        self._check("add_candidate")
        with self._lock:
            if ledger_candidate_id is not None and any(
                c.election_id == election_id and c.ledger_candidate_id == ledger_candidate_id
                for c in self.candidates.values()
            ):
                raise StoreDuplicate("duplicate candidate")
            cand = StoreCandidate(
                self._new_id(), election_id, name, description,
                party or DEFAULT_PARTY, image_url or DEFAULT_CANDIDATE_IMAGE, 0, ledger_candidate_id,
            )
            self.candidates[cand.id] = cand
            return cand

    def list_candidates(self, election_id):
        self._check("list_candidates")
        return [c for c in self.candidates.values() if c.election_id == election_id]

    def get_candidate(self, candidate_id):
        self._check("get_candidate")
        return self.candidates.get(candidate_id)

    def update_candidate(self, candidate_id, **fields):
        self._check("update_candidate")
        if candidate_id not in self.candidates:
            raise NotFound("Candidate not found")
        updates = {k: v for k, v in fields.items() if v is not None}
        self.candidates[candidate_id] = replace(self.candidates[candidate_id], **updates)
        return self.candidates[candidate_id]

    def delete_candidate(self, candidate_id):
        self._check("delete_candidate")
        return self.candidates.pop(candidate_id, None) is not None

    def find_candidate_by_ledger_id(self, election_id, ledger_candidate_id):
        self._check("find_candidate_by_ledger_id")
        for cand in self.list_candidates(election_id):
            if cand.ledger_candidate_id == ledger_candidate_id:
                return cand
        return None

    def add_roster_entry(self, election_id, voter_id):
        self._check("add_roster_entry")
        with self._lock:
            if (election_id, voter_id) in self.roster:
                raise StoreDuplicate("duplicate roster entry")
            entry = RosterEntry(election_id, voter_id)
            self.roster[(election_id, voter_id)] = entry
            return entry

    def get_roster_entry(self, election_id, voter_id):
        self._check("get_roster_entry")
        return self.roster.get((election_id, voter_id))

    def list_roster(self, election_id):
        self._check("list_roster")
        return [e for (eid, _), e in self.roster.items() if eid == election_id]

    def record_vote(self, vote):
        self._check("record_vote")
        with self._lock:
            for existing in self.votes:
                if existing.voter_id != vote.voter_id:
                    continue
                if vote.election_id is not None and existing.election_id == vote.election_id:
                    raise StoreDuplicate("duplicate vote")
                if vote.ledger_election_id is not None and existing.ledger_election_id == vote.ledger_election_id:
                    raise StoreDuplicate("duplicate vote")
            stored = replace(vote, id=self._new_id(), created_at=utc_now())
            self.votes.append(stored)
            if vote.election_id is not None:
                self.roster[(vote.election_id, vote.voter_id)] = RosterEntry(
                    vote.election_id, vote.voter_id, True, vote.tx_hash
                )
            if vote.candidate_id in self.candidates:
                cand = self.candidates[vote.candidate_id]
                self.candidates[cand.id] = replace(cand, vote_count=cand.vote_count + 1)
            return stored

    def find_vote(self, voter_id, election_id=None, ledger_election_id=None):
        self._check("find_vote")
        for vote in self.votes:
            if vote.voter_id != voter_id:
                continue
            if election_id is not None and vote.election_id == election_id:
                return vote
            if ledger_election_id is not None and vote.ledger_election_id == ledger_election_id:
                return vote
        return None

    def find_vote_by_tx(self, tx_hash):
        self._check("find_vote_by_tx")
        return next((v for v in self.votes if v.tx_hash == tx_hash), None)

    def list_votes(self, election_id=None, ledger_election_id=None):
        self._check("list_votes")
        return [
            v for v in reversed(self.votes)
            if (election_id is not None and v.election_id == election_id)
            or (ledger_election_id is not None and v.ledger_election_id == ledger_election_id)
        ]

    def add_pending(self, kind, tx_id, payload):
        self._check("add_pending")
        self.pending[tx_id] = PendingWrite(len(self.pending) + 1, kind, tx_id, dict(payload))

    def list_pending(self):
        self._check("list_pending")
        return [p for p in self.pending.values() if p.status == "pending"]

    def mark_pending(self, tx_id, status, last_error=None):
        self._check("mark_pending")
        if tx_id in self.pending:
            self.pending[tx_id] = replace(self.pending[tx_id], status=status, last_error=last_error)


class FakeLedger:
    """Mirrors the contract's rules on top of dicts; every mutation is a numbered tx."""

    def __init__(self):
        self._lock = threading.Lock()
        self._tx = itertools.count(1)
        self.round = 100
        self.down = False
        self.abandon_next = False
        self.count = 0
        self.elections = {}
        self.candidates = {}
        self.verified = set()
        self.ballots = {}
        self.txs = {}
        self.calls = []

    def _check(self):
        if self.down:
            raise LedgerUnavailable("Algorand node unreachable")

    def _commit(self, method):
        tx_id = f"TX{next(self._tx)}"
        self.calls.append(method)
        if self.abandon_next:
            self.abandon_next = False
            self.txs[tx_id] = {"status": "pending", "method": method, "last_valid": self.round + 10}
            return tx_id, None
        self.round += 1
        self.txs[tx_id] = {"status": "confirmed", "method": method, "confirmed_round": self.round}
        return tx_id, self.round

    def get_election_count(self):
        self._check()
        return self.count

    def get_election(self, ledger_id):
        self._check()
        if ledger_id not in self.elections:
            raise NotFound("Election not found on ledger")
        return self.elections[ledger_id]

    def list_elections(self):
        self._check()
        return [self.elections[i] for i in sorted(self.elections)]

    def get_candidate(self, ledger_id, candidate_id):
        self._check()
        if (ledger_id, candidate_id) not in self.candidates:
            raise NotFound("Candidate not found")
        return self.candidates[(ledger_id, candidate_id)]

    def list_candidates(self, ledger_id):
        self.get_election(ledger_id)
        return [c for (eid, _), c in sorted(self.candidates.items()) if eid == ledger_id]

    def is_verified_voter(self, voter_ref):
        self._check()
        return voter_ref in self.verified

    def has_voted(self, ledger_id, voter_ref):
        self._check()
        return (ledger_id, voter_ref) in self.ballots

    def create_election(self, title, description, start, end, is_active=True, cancel=None):
        self._check()
        with self._lock:
            ledger_id = self.count + 1
            tx_id, confirmed = self._commit("create_election")
            self.count = ledger_id
            self.elections[ledger_id] = LedgerElection(ledger_id, title, description, start, end, is_active, 0)
            if confirmed is None:
                raise ConfirmationAbandoned(tx_id, ledger_id=ledger_id, last_valid=self.txs[tx_id]["last_valid"])
            return ledger_id, tx_id

    def add_candidate(self, ledger_id, name, description="", image_url=None, party=None, cancel=None):
        self._check()
        with self._lock:
            election = self.elections.get(ledger_id)
            if election is None:
                raise LedgerReverted(smart_contract.ELECTION_MISSING)
            cid = election.candidate_count + 1
            tx_id, confirmed = self._commit("add_candidate")
            self.elections[ledger_id] = replace(election, candidate_count=cid)
            self.candidates[(ledger_id, cid)] = LedgerCandidate(
                ledger_id, cid, name, description, party or DEFAULT_PARTY, image_url or DEFAULT_CANDIDATE_IMAGE, 0
            )
            if confirmed is None:
                raise ConfirmationAbandoned(tx_id, ledger_candidate_id=cid, last_valid=self.txs[tx_id]["last_valid"])
            return cid, tx_id

    def cast_vote(self, ledger_id, candidate_id, voter_ref, cancel=None):
        self._check()
        with self._lock:
            election = self.elections.get(ledger_id)
            now = utc_now()
            if election is None:
                raise LedgerReverted(smart_contract.ELECTION_MISSING)
            if now < election.start_time:
                raise LedgerReverted(smart_contract.NOT_STARTED)
            if now > election.end_time:
                raise LedgerReverted(smart_contract.ALREADY_ENDED)
            if not election.is_active:
                raise LedgerReverted(smart_contract.NOT_ACTIVE)
            if voter_ref not in self.verified:
                raise LedgerReverted(smart_contract.NOT_VERIFIED)
            if (ledger_id, voter_ref) in self.ballots:
                raise LedgerReverted(smart_contract.ALREADY_VOTED)
            if (ledger_id, candidate_id) not in self.candidates:
                raise LedgerReverted(smart_contract.CANDIDATE_MISSING)
            tx_id, confirmed = self._commit("vote")
            self.ballots[(ledger_id, voter_ref)] = candidate_id
            cand = self.candidates[(ledger_id, candidate_id)]
            self.candidates[(ledger_id, candidate_id)] = replace(cand, vote_count=cand.vote_count + 1)
            if confirmed is None:
                raise ConfirmationAbandoned(tx_id, last_valid=self.txs[tx_id]["last_valid"])
            return TxReceipt(tx_id, confirmed)

    def verify_voter(self, voter_ref, cancel=None):
        self._check()
        self.verified.add(voter_ref)
        return self._commit("verify_voter")[0]

    def set_election_status(self, ledger_id, is_active, cancel=None):
        self._check()
        if ledger_id not in self.elections:
            raise LedgerReverted(smart_contract.ELECTION_MISSING)
        self.elections[ledger_id] = replace(self.elections[ledger_id], is_active=is_active)
        return self._commit("set_status")[0]

    def delete_election(self, ledger_id, cancel=None):
        self._check()
        if self.elections.pop(ledger_id, None) is None:
            raise LedgerReverted(smart_contract.ELECTION_MISSING)
        return self._commit("delete_election")[0]

    def seed(self, ledger_id, title, start, end, is_active=True, candidates=()):
        self.elections[ledger_id] = LedgerElection(
            ledger_id, title, "", start, end, is_active, len(candidates)
        )
        for cid, name in enumerate(candidates, start=1):
            self.candidates[(ledger_id, cid)] = LedgerCandidate(ledger_id, cid, name)
        self.count = max(self.count, ledger_id)
        return self.elections[ledger_id]

    def confirm(self, tx_id):
        self.round += 1
        self.txs[tx_id].update(status="confirmed", confirmed_round=self.round)

    def drop(self, tx_id, rounds=20):
        """The node forgets an unconfirmed transaction and the chain moves on."""
        del self.txs[tx_id]
        self.round += rounds

    def last_round(self):
        self._check()
        return self.round

    def transaction_status(self, tx_id):
        self._check()
        info = self.txs.get(tx_id)
        if info is None:
            return {"status": "unknown", "confirmed_round": 0, "app_id": None, "method": None, "timestamp": 0}
        return {
            "status": info["status"],
            "confirmed_round": info.get("confirmed_round", 0),
            "app_id": 1,
            "method": info["method"],
            "timestamp": 1_700_000_000,
            "pool_error": None,
        }


@pytest.fixture
def store():
    return FakeStore()


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def window():
    now = utc_now().replace(microsecond=0)
    return now - timedelta(hours=1), now + timedelta(days=1)


@pytest.fixture
def settings():
    return Settings(session_secret="test_secret", log_level="WARNING", cors_origins=["*"])


@pytest.fixture
def app(settings, store, ledger):
    app = create_app(settings, store=store, ledger=ledger)
    app.config["TESTING"] = True
    return app


@pytest.fixture
def client(app):
    with app.test_client() as client:
        yield client
