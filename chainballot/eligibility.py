"""
One verified voter, one vote, one election.

Per (voter, election) the guard walks NotEligible -> Eligible -> Voted:

* store-only elections become Eligible when an admin puts the voter on the
  election roster;
* ledger-backed elections become Eligible when the voter is verified
  globally (the user's ``verified`` flag and the contract's verified list);
* Voted is reached by exactly one committed vote and is never left.

A striped lock serialises attempts inside this process. Across processes the
store's unique vote indexes decide, and a duplicate there always means the
vote already landed, whatever an earlier check said.
"""
import logging
import threading
import zlib
from contextlib import contextmanager
from datetime import datetime
from typing import Iterator

from chainballot.errors import (
    AlreadyVoted,
    ElectionNotActive,
    LedgerUnavailable,
    NotEligible,
    StoreDuplicate,
    StoreError,
)
from chainballot.models import ElectionStatus, MergedElection, User, VoteRecord

logger = logging.getLogger(__name__)

STATUS_MESSAGES = {
    ElectionStatus.UPCOMING: "Election has not started",
    ElectionStatus.ENDED: "Election has ended",
    ElectionStatus.INACTIVE: "Election is not active",
}


class EligibilityGuard:
    def __init__(self, store, ledger=None, stripes: int = 64) -> None:
        self.store = store
        self.ledger = ledger
        self._locks = [threading.Lock() for _ in range(stripes)]

    def _lock_for(self, voter_id: str, election_key: str) -> threading.Lock:
        digest = zlib.crc32(f"{voter_id}|{election_key}".encode("utf-8"))
        return self._locks[digest % len(self._locks)]

    @contextmanager
    def hold(self, voter_id: str, election_key: str) -> Iterator[None]:
        lock = self._lock_for(voter_id, election_key)
        with lock:
            yield

    def check(self, user: User, election: MergedElection, now: datetime | None = None) -> None:
        """Raise unless ``user`` may cast a vote in ``election`` right now."""
        status = election.status(now)
        if status != ElectionStatus.ACTIVE:
            raise ElectionNotActive(STATUS_MESSAGES[status])
        if election.ledger_backed:
            self._check_ledger_backed(user, election)
        else:
            self._check_store_only(user, election)

    def _check_store_only(self, user: User, election: MergedElection) -> None:
        roster = self.store.get_roster_entry(election.store_id, user.id)
        if (roster is not None and roster.has_voted) or self.store.find_vote(
            user.id, election_id=election.store_id
        ):
            raise AlreadyVoted()
        if not user.verified:
            raise NotEligible("Only verified voters can vote")
        if roster is None:
            raise NotEligible("You are not registered to vote in this election")

    def _check_ledger_backed(self, user: User, election: MergedElection) -> None:
        try:
            roster = (
                self.store.get_roster_entry(election.store_id, user.id)
                if election.store_id
                else None
            )
            if roster is not None and roster.has_voted:
                raise AlreadyVoted()
            if self.store.find_vote(
                user.id, election_id=election.store_id, ledger_election_id=election.ledger_id
            ):
                raise AlreadyVoted()
        except StoreError as exc:
            # The ledger keeps its own ballot record; the store is advisory here.
            logger.warning("Store roster check skipped for %s: %s", election.key, exc)

        if not user.verified:
            raise NotEligible("Only verified voters can vote")
        if self.ledger is None:
            raise LedgerUnavailable()
        ref = user.voter_ref
        if self.ledger.has_voted(election.ledger_id, ref):
            raise AlreadyVoted()
        if not self.ledger.is_verified_voter(ref):
            raise NotEligible("Only verified voters can vote")

    def commit(self, vote: VoteRecord) -> VoteRecord:
        """Record the Eligible -> Voted transition in the store."""
        try:
            return self.store.record_vote(vote)
        except StoreDuplicate as exc:
            raise AlreadyVoted() from exc
