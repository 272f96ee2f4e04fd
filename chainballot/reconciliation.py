"""
Dual-write / dual-read coordination between the ledger and the store.

Writes go to the ledger first and are mirrored into the store once confirmed;
a failed mirror downgrades the result instead of failing it. Reads query both
sides in parallel and merge by ledger id (see ``chainballot.merge``).
"""
import logging
import threading
from concurrent import futures
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Callable, Iterable

from chainballot.algorand_client import candidate_meta, election_meta
from chainballot.eligibility import EligibilityGuard
from chainballot.errors import (
    AlreadyVoted,
    ChainBallotError,
    ConfirmationAbandoned,
    LedgerError,
    LedgerReverted,
    LedgerUnavailable,
    NotFound,
    StaleSession,
    StoreDuplicate,
    StoreError,
    StoreUnavailable,
    ValidationError,
)
from chainballot.merge import merge_candidates, merge_elections
from chainballot.models import (
    LedgerElection,
    MergedCandidate,
    MergedElection,
    Origin,
    RosterEntry,
    StoreCandidate,
    StoreElection,
    User,
    VoteRecord,
    WriteResult,
    utc_now,
    validate_window,
)
from chainballot.smart_contract import ALREADY_VOTED

logger = logging.getLogger(__name__)

MIRROR_WARNING = "Recorded on-chain, but database sync failed; some features may be limited."
STATUS_PUSH_WARNING = "Status saved, but the on-chain flag could not be updated; the stricter value applies."

# Origins whose ledger id was confirmed by a successful ledger read.
LEDGER_READABLE = (Origin.BOTH, Origin.LEDGER_ONLY)


def parse_election_key(key: Any) -> tuple[str | None, int | None]:
    """Split an election key into (store_id, ledger_id); exactly one is set."""
    text = str(key).strip()
    if not text:
        raise ValidationError("Election id is required")
    if text.startswith("ledger:"):
        text = text[len("ledger:") :]
        if not text.isdigit():
            raise ValidationError("Ledger election id must be an integer")
        return None, int(text)
    if text.startswith("store:"):
        return text[len("store:") :], None
    if text.isdigit():
        return None, int(text)
    return text, None


def find_candidate(election: MergedElection, candidate_ref: Any) -> MergedCandidate:
    ref = str(candidate_ref).strip()
    for cand in election.candidates:
        if ref == cand.key or ref == cand.store_id:
            return cand
        if cand.ledger_candidate_id is not None and ref == str(cand.ledger_candidate_id):
            return cand
    raise ValidationError("Invalid candidate")


@dataclass
class ElectionListing:
    elections: list[MergedElection]
    store_available: bool = True
    ledger_available: bool = True

    def to_dict(self, now: datetime | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {
            "success": True,
            "data": [e.to_dict(now) for e in self.elections],
            "sources": {"store": self.store_available, "ledger": self.ledger_available},
        }
        if not self.store_available:
            body["warning"] = "Database unavailable; showing on-chain elections only."
        elif not self.ledger_available:
            body["warning"] = "Blockchain unavailable; showing database elections only."
        return body


class ReconciliationService:
    def __init__(
        self,
        store,
        ledger=None,
        guard: EligibilityGuard | None = None,
        clock: Callable[[], datetime] = utc_now,
        max_workers: int = 4,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.guard = guard or EligibilityGuard(store, ledger)
        self.clock = clock
        self._pool = futures.ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="reconcile")

    def close(self) -> None:
        self._pool.shutdown(wait=False)

    def _require_ledger(self):
        if self.ledger is None:
            raise LedgerUnavailable()
        return self.ledger

    # Parallel reads

    def _settle(self, future: futures.Future | None, source: str) -> tuple[Any, bool]:
        if future is None:
            return None, False
        try:
            return future.result(), True
        except (StoreError, LedgerError) as exc:
            logger.warning("%s read failed, continuing degraded: %s", source, exc.message)
            return None, False

    def _gather(self, store_call: Callable[[], Any], ledger_call: Callable[[], Any] | None):
        store_future = self._pool.submit(store_call)
        ledger_future = self._pool.submit(ledger_call) if ledger_call and self.ledger else None
        store_result, store_ok = self._settle(store_future, "Store")
        ledger_result, ledger_ok = self._settle(ledger_future, "Ledger")
        return store_result, store_ok, ledger_result, ledger_ok

    def _store_candidates(self, store_id: str | None) -> list:
        if not store_id:
            return []
        try:
            return self.store.list_candidates(store_id)
        except StoreError as exc:
            logger.warning("Candidate read for %s failed: %s", store_id, exc.message)
            return []

    def _ledger_candidates(self, ledger_id: int | None) -> list:
        if ledger_id is None or self.ledger is None:
            return []
        try:
            return self.ledger.list_candidates(ledger_id)
        except NotFound:
            return []
        except LedgerError as exc:
            logger.warning("Ledger candidate read for %s failed: %s", ledger_id, exc.message)
            return []

    def _with_candidates(self, election: MergedElection) -> MergedElection:
        ledger_id = election.ledger_id if election.origin in LEDGER_READABLE else None
        store_future = self._pool.submit(self._store_candidates, election.store_id)
        ledger_future = self._pool.submit(self._ledger_candidates, ledger_id)
        candidates = merge_candidates(store_future.result(), ledger_future.result())
        return replace(election, candidates=candidates)

    def list_elections(self) -> ElectionListing:
        self._resolve_pending_quietly()
        ledger_call = self.ledger.list_elections if self.ledger else None
        store_rows, store_ok, ledger_rows, ledger_ok = self._gather(self.store.list_elections, ledger_call)
        if not store_ok and not ledger_ok:
            raise StoreUnavailable("Neither the database nor the blockchain is reachable")
        merged = merge_elections(store_rows or [], ledger_rows or [], ledger_available=ledger_ok)
        return ElectionListing(
            [self._with_candidates(e) for e in merged],
            store_available=store_ok,
            ledger_available=ledger_ok,
        )

    def _ledger_election(self, ledger_id: int) -> LedgerElection | None:
        try:
            return self._require_ledger().get_election(ledger_id)
        except NotFound:
            return None

    def get_election(self, key: Any, with_candidates: bool = True) -> MergedElection:
        store_id, ledger_id = parse_election_key(key)
        if store_id is not None:
            store_row = self.store.get_election(store_id)
            if store_row is None:
                raise NotFound("Election not found")
            chain, ledger_ok = None, self.ledger is not None
            if store_row.ledger_id is not None and self.ledger is not None:
                chain, ledger_ok = self._settle(
                    self._pool.submit(self._ledger_election, store_row.ledger_id), "Ledger"
                )
        else:
            store_row, _, chain, ledger_ok = self._gather(
                lambda: self.store.find_by_ledger_id(ledger_id),
                lambda: self._ledger_election(ledger_id),
            )
            if store_row is None and chain is None:
                if not ledger_ok:
                    raise LedgerUnavailable()
                raise NotFound("Election not found")
        merged = merge_elections(
            [r for r in (store_row, chain) if r is not None], ledger_available=ledger_ok
        )[0]
        return self._with_candidates(merged) if with_candidates else merged

    # Elections

    def create_election(
        self,
        title: str,
        description: str,
        start_time: datetime,
        end_time: datetime,
        is_active: bool = True,
        created_by: str | None = None,
        candidates: Iterable[dict[str, Any]] = (),
        on_chain: bool = True,
        ledger_id: int | None = None,
        blockchain_tx_hash: str | None = None,
        cancel: threading.Event | None = None,
    ) -> WriteResult:
        title = (title or "").strip()
        if not title:
            raise ValidationError("Title is required")
        validate_window(start_time, end_time)
        candidates = [self._candidate_fields(c) for c in candidates]

        if not on_chain:
            row = self.store.create_election(
                title, description, start_time, end_time, is_active, created_by
            )
            for cand in candidates:
                self.store.add_candidate(row.store_id, **cand)
            logger.info("Created store-only election %s", row.store_id)
            return WriteResult(self.get_election(f"store:{row.store_id}"))

        if ledger_id is not None:
            return self._mirror_existing(ledger_id, blockchain_tx_hash, created_by, candidates)

        ledger = self._require_ledger()
        election_meta(title, description)
        for cand in candidates:
            candidate_meta(cand["name"], cand["description"], cand["party"], cand["image_url"])
        try:
            ledger_id, tx_id = ledger.create_election(
                title, description, start_time, end_time, is_active, cancel=cancel
            )
        except (ConfirmationAbandoned, StaleSession) as exc:
            self._record_pending(
                "create_election",
                exc.tx_id,
                {"ledger_id": exc.context.get("ledger_id"), "created_by": created_by},
                exc.context.get("last_valid"),
            )
            raise
        chain_candidates = []
        for cand in candidates:
            try:
                cid, _ = ledger.add_candidate(
                    ledger_id, cand["name"], cand["description"], cand["image_url"], cand["party"],
                    cancel=cancel,
                )
            except (ConfirmationAbandoned, StaleSession) as exc:
                self._record_pending("create_election", tx_id, {"ledger_id": ledger_id, "created_by": created_by})
                self._record_pending(
                    "add_candidate", exc.tx_id, {"ledger_id": ledger_id}, exc.context.get("last_valid")
                )
                raise
            chain_candidates.append({**cand, "ledger_candidate_id": cid})

        chain = LedgerElection(
            ledger_id, title, description, start_time, end_time, is_active, len(chain_candidates)
        )
        synced, warning = True, None
        try:
            row = self._mirror_election(chain, tx_id, created_by)
            for cand in chain_candidates:
                self._mirror_candidate(row.store_id, cand)
        except StoreError as exc:
            logger.warning("Election %d confirmed in %s but not mirrored: %s", ledger_id, tx_id, exc.message)
            synced, warning = False, MIRROR_WARNING
        return WriteResult(self._read_back(ledger_id, chain), tx_id, synced, warning)

    def _read_back(self, ledger_id: int, chain: LedgerElection) -> MergedElection:
        try:
            return self.get_election(ledger_id)
        except ChainBallotError as exc:
            logger.warning("Read-back of election %d failed: %s", ledger_id, exc.message)
            return merge_elections([chain])[0]

    def _mirror_existing(
        self, ledger_id: int, tx_hash: str | None, created_by: str | None, candidates: list[dict[str, Any]]
    ) -> WriteResult:
        chain = self._ledger_election(ledger_id)
        if chain is None:
            raise ValidationError(f"Election {ledger_id} does not exist on-chain")
        row = self._mirror_election(chain, tx_hash, created_by)
        on_chain = {c.ledger_candidate_id: c for c in self._ledger_candidates(ledger_id)}
        for position, cand in enumerate(candidates, start=1):
            match = on_chain.get(position)
            if match is not None and match.name == cand["name"]:
                cand = {**cand, "ledger_candidate_id": position}
            self._mirror_candidate(row.store_id, cand)
        self._mirror_ledger_candidates(row.store_id, ledger_id)
        return WriteResult(self.get_election(ledger_id), tx_hash)

    @staticmethod
    def _candidate_fields(raw: dict[str, Any]) -> dict[str, Any]:
        name = str(raw.get("name") or "").strip()
        if not name:
            raise ValidationError("Candidate name is required")
        return {
            "name": name,
            "description": str(raw.get("description") or ""),
            "party": raw.get("party") or None,
            "image_url": raw.get("image_url") or raw.get("imageUrl") or raw.get("image") or None,
        }

    def _mirror_election(
        self, chain: LedgerElection, tx_hash: str | None = None, created_by: str | None = None
    ) -> StoreElection:
        try:
            return self.store.create_election(
                chain.title,
                chain.description,
                chain.start_time,
                chain.end_time,
                chain.is_active,
                created_by,
                ledger_id=chain.ledger_id,
                blockchain_tx_hash=tx_hash,
            )
        except StoreDuplicate:
            existing = self.store.find_by_ledger_id(chain.ledger_id)
            if existing is None:
                raise
            return existing

    def _mirror_candidate(self, store_id: str, cand: dict[str, Any]) -> None:
        try:
            self.store.add_candidate(store_id, **cand)
        except StoreDuplicate:
            pass

    def _mirror_ledger_candidates(self, store_id: str, ledger_id: int) -> int:
        known = {
            c.ledger_candidate_id
            for c in self.store.list_candidates(store_id)
            if c.ledger_candidate_id is not None
        }
        added = 0
        for cand in self._ledger_candidates(ledger_id):
            if cand.ledger_candidate_id in known:
                continue
            self._mirror_candidate(
                store_id,
                {
                    "name": cand.name,
                    "description": cand.description,
                    "party": cand.party,
                    "image_url": cand.image_url,
                    "ledger_candidate_id": cand.ledger_candidate_id,
                },
            )
            added += 1
        return added

    def _store_row_for(self, election: MergedElection) -> StoreElection:
        """Store row for ``election``, mirroring a ledger-only election first."""
        if election.store_id is not None:
            row = self.store.get_election(election.store_id)
            if row is not None:
                return row
        chain = self._ledger_election(election.ledger_id)
        if chain is None:
            raise NotFound("Election not found")
        return self._mirror_election(chain, election.blockchain_tx_hash)

    def add_candidate(
        self,
        key: Any,
        name: str,
        description: str = "",
        party: str | None = None,
        image_url: str | None = None,
        cancel: threading.Event | None = None,
    ) -> WriteResult:
        fields = self._candidate_fields(
            {"name": name, "description": description, "party": party, "image_url": image_url}
        )
        election = self.get_election(key, with_candidates=False)
        if not election.ledger_backed:
            self.store.add_candidate(election.store_id, **fields)
            return WriteResult(self.get_election(key))

        ledger = self._require_ledger()
        try:
            cid, tx_id = ledger.add_candidate(
                election.ledger_id, fields["name"], fields["description"], fields["image_url"], fields["party"],
                cancel=cancel,
            )
        except (ConfirmationAbandoned, StaleSession) as exc:
            self._record_pending(
                "add_candidate", exc.tx_id, {"ledger_id": election.ledger_id}, exc.context.get("last_valid")
            )
            raise
        synced, warning = True, None
        try:
            row = self._store_row_for(election)
            self._mirror_candidate(row.store_id, {**fields, "ledger_candidate_id": cid})
        except StoreError as exc:
            logger.warning("Candidate %d of election %d not mirrored: %s", cid, election.ledger_id, exc.message)
            synced, warning = False, MIRROR_WARNING
        return WriteResult(self.get_election(f"ledger:{election.ledger_id}"), tx_id, synced, warning)

    def update_election(
        self,
        key: Any,
        title: str | None = None,
        description: str | None = None,
        start_time: datetime | None = None,
        end_time: datetime | None = None,
    ) -> MergedElection:
        election = self.get_election(key, with_candidates=False)
        if title is not None and not title.strip():
            raise ValidationError("Title is required")
        if election.ledger_backed and (start_time is not None or end_time is not None):
            raise ValidationError("Voting window of an on-chain election cannot be changed")
        if start_time is not None or end_time is not None:
            validate_window(start_time or election.start_time, end_time or election.end_time)
        row = self._store_row_for(election)
        self.store.update_election(
            row.store_id,
            title=title.strip() if title is not None else None,
            description=description,
            start_time=start_time,
            end_time=end_time,
        )
        return self.get_election(key)

    def _store_candidate_for(self, election: MergedElection, candidate_ref: Any) -> StoreCandidate:
        """Store row of a candidate, mirroring ledger candidates into the store when needed."""
        cand = find_candidate(election, candidate_ref)
        row = self.store.get_candidate(cand.store_id) if cand.store_id else None
        if row is None and cand.ledger_candidate_id is not None:
            store_row = self._store_row_for(election)
            row = self.store.find_candidate_by_ledger_id(store_row.store_id, cand.ledger_candidate_id)
            if row is None:
                self._mirror_ledger_candidates(store_row.store_id, election.ledger_id)
                row = self.store.find_candidate_by_ledger_id(store_row.store_id, cand.ledger_candidate_id)
        if row is None:
            raise NotFound("Candidate not found")
        return row

    def update_candidate(
        self,
        key: Any,
        candidate_ref: Any,
        name: str | None = None,
        description: str | None = None,
        party: str | None = None,
        image_url: str | None = None,
    ) -> MergedCandidate:
        if name is not None and not name.strip():
            raise ValidationError("Candidate name is required")
        row = self._store_candidate_for(self.get_election(key), candidate_ref)
        self.store.update_candidate(
            row.id,
            name=name.strip() if name is not None else None,
            description=description,
            party=party,
            image_url=image_url,
        )
        return find_candidate(self.get_election(key), row.id)

    def delete_candidate(self, key: Any, candidate_ref: Any) -> dict[str, Any]:
        election = self.get_election(key)
        cand = find_candidate(election, candidate_ref)
        if cand.ledger_candidate_id is not None:
            raise ValidationError("On-chain candidates cannot be removed")
        self.store.delete_candidate(cand.store_id)
        logger.info("Deleted candidate %s of election %s", cand.store_id, election.key)
        return {"key": cand.key, "deleted": True}

    def set_election_status(
        self, key: Any, is_active: bool, cancel: threading.Event | None = None
    ) -> WriteResult:
        election = self.get_election(key, with_candidates=False)
        tx_id, synced, warning = None, True, None
        has_row = False
        if election.store_id is not None and election.origin != Origin.LEDGER_ONLY:
            self.store.update_election(election.store_id, is_active=bool(is_active))
            has_row = True
        if election.ledger_backed and election.origin != Origin.DANGLING:
            try:
                tx_id = self._require_ledger().set_election_status(election.ledger_id, bool(is_active), cancel=cancel)
            except LedgerError as exc:
                if not has_row:
                    raise
                logger.warning("Status push for election %d failed: %s", election.ledger_id, exc.message)
                synced, warning = False, STATUS_PUSH_WARNING
        return WriteResult(self.get_election(key), tx_id, synced, warning)

    def delete_election(self, key: Any) -> WriteResult:
        election = self.get_election(key, with_candidates=False)
        deleted = {"store": False, "ledger": False}
        errors: list[ChainBallotError] = []
        tx_id = None
        if election.store_id is not None:
            try:
                deleted["store"] = self.store.delete_election(election.store_id)
            except StoreError as exc:
                errors.append(exc)
        if election.ledger_backed and election.origin != Origin.DANGLING:
            try:
                tx_id = self._require_ledger().delete_election(election.ledger_id)
                deleted["ledger"] = True
            except LedgerError as exc:
                errors.append(exc)
        if errors and not any(deleted.values()):
            raise errors[0]
        warning = None
        if errors:
            warning = "Election only partially deleted: " + "; ".join(e.message for e in errors)
            logger.warning("Delete of %s degraded: %s", election.key, warning)
        return WriteResult({"key": election.key, "deleted": deleted}, tx_id, not errors, warning)

    # Voting

    def cast_vote(
        self, user: User, key: Any, candidate_ref: Any, cancel: threading.Event | None = None
    ) -> WriteResult:
        election = self.get_election(key)
        candidate = find_candidate(election, candidate_ref)
        with self.guard.hold(user.id, election.key):
            self.guard.check(user, election, self.clock())
            if not election.ledger_backed:
                vote = VoteRecord(user.id, election.store_id, None, candidate.store_id, None)
                stored = self.guard.commit(vote)
                logger.info("Recorded store-only vote in %s", election.key)
                return WriteResult(stored)
            return self._cast_ledger_vote(user, election, candidate, cancel)

    def _cast_ledger_vote(
        self, user: User, election: MergedElection, candidate: MergedCandidate, cancel: threading.Event | None
    ) -> WriteResult:
        if candidate.ledger_candidate_id is None:
            raise ValidationError("Candidate is not registered on-chain")
        payload = {
            "voter_id": user.id,
            "voter_ref": user.voter_ref,
            "election_id": election.store_id,
            "ledger_id": election.ledger_id,
            "candidate_id": candidate.store_id,
            "ledger_candidate_id": candidate.ledger_candidate_id,
        }
        try:
            receipt = self._require_ledger().cast_vote(
                election.ledger_id, candidate.ledger_candidate_id, user.voter_ref, cancel=cancel
            )
        except (ConfirmationAbandoned, StaleSession) as exc:
            self._record_pending("vote", exc.tx_id, payload, exc.context.get("last_valid"))
            raise
        except LedgerReverted as exc:
            if exc.reason == ALREADY_VOTED:
                raise AlreadyVoted() from exc
            raise

        vote = VoteRecord(
            user.id,
            election.store_id,
            election.ledger_id,
            candidate.store_id,
            candidate.ledger_candidate_id,
            tx_hash=receipt.tx_id,
            confirmed_round=receipt.confirmed_round,
        )
        try:
            return WriteResult(self.store.record_vote(vote), receipt.tx_id)
        except StoreError as exc:
            logger.warning("Vote %s confirmed but not mirrored: %s", receipt.tx_id, exc.message)
            return WriteResult(vote, receipt.tx_id, False, MIRROR_WARNING)

    # Voters

    def add_voter(self, key: Any, voter_id: str) -> RosterEntry:
        if self.store.get_user(voter_id) is None:
            raise NotFound("Voter not found")
        election = self.get_election(key, with_candidates=False)
        row = self._store_row_for(election)
        try:
            return self.store.add_roster_entry(row.store_id, voter_id)
        except StoreDuplicate as exc:
            raise ValidationError("Voter already added to this election") from exc

    def list_voters(self, key: Any) -> list[RosterEntry]:
        election = self.get_election(key, with_candidates=False)
        if election.store_id is None:
            return []
        return self.store.list_roster(election.store_id)

    def list_votes(self, key: Any) -> list[VoteRecord]:
        election = self.get_election(key, with_candidates=False)
        return self.store.list_votes(election.store_id, election.ledger_id)

    def verify_voter(self, user_id: str, cancel: threading.Event | None = None) -> WriteResult:
        user = self.store.get_user(user_id)
        if user is None:
            raise NotFound("User not found")
        tx_id = None
        if self.ledger is not None and not self.ledger.is_verified_voter(user.voter_ref):
            try:
                tx_id = self.ledger.verify_voter(user.voter_ref, cancel=cancel)
            except (ConfirmationAbandoned, StaleSession) as exc:
                self._record_pending(
                    "verify_voter", exc.tx_id, {"user_id": user.id}, exc.context.get("last_valid")
                )
                raise
        try:
            user = self.store.set_user_verified(user.id, True)
        except StoreError as exc:
            if tx_id is None:
                raise
            logger.warning("Voter %s verified on-chain but not in the store: %s", user.id, exc.message)
            return WriteResult(user, tx_id, False, MIRROR_WARNING)
        return WriteResult(user, tx_id)

    # Results and verification

    def results(self, key: Any) -> dict[str, Any]:
        election = self.get_election(key)
        ranked = sorted(election.candidates, key=lambda c: (-c.vote_count, c.key))
        return {
            "election": election.to_dict(self.clock()),
            "results": [c.to_dict() for c in ranked],
            "totalVotes": sum(c.vote_count for c in ranked),
        }

    def verify_vote(self, tx_hash: str) -> dict[str, Any]:
        tx_hash = (tx_hash or "").strip()
        if not tx_hash:
            raise ValidationError("Transaction hash is required")
        vote = None
        try:
            vote = self.store.find_vote_by_tx(tx_hash)
        except StoreError as exc:
            logger.warning("Vote lookup for %s skipped: %s", tx_hash, exc.message)
        chain = self.ledger.transaction_status(tx_hash) if self.ledger else None
        if vote is None and (chain is None or chain["status"] == "unknown"):
            raise NotFound("Transaction not found")
        confirmed = bool(chain and chain["status"] == "confirmed" and chain["method"] == "vote")
        return {
            "transactionHash": tx_hash,
            "verified": confirmed,
            "status": chain["status"] if chain else "unknown",
            "confirmedRound": chain["confirmed_round"] if chain else (vote.confirmed_round if vote else None),
            "timestamp": chain["timestamp"] if chain else None,
            "vote": vote.to_dict() if vote else None,
        }

    # Pending writes and backfill

    def _record_pending(
        self, kind: str, tx_id: str | None, payload: dict[str, Any], last_valid: int | None = None
    ) -> None:
        if not tx_id:
            return
        if last_valid is not None:
            payload = {**payload, "last_valid": int(last_valid)}
        try:
            self.store.add_pending(kind, tx_id, payload)
            logger.info("Recorded pending %s %s", kind, tx_id)
        except StoreError as exc:
            logger.error("Could not record pending %s %s: %s", kind, tx_id, exc.message)

    def _landed(self, kind: str, payload: dict[str, Any]) -> bool:
        ledger = self._require_ledger()
        ledger_id = payload.get("ledger_id")
        if kind == "vote":
            return ledger.has_voted(ledger_id, payload["voter_ref"])
        if kind == "verify_voter":
            user = self.store.get_user(payload["user_id"])
            return bool(user) and ledger.is_verified_voter(user.voter_ref)
        if ledger_id is None:
            return False
        return self._ledger_election(ledger_id) is not None

    def _apply_pending(self, kind: str, tx_id: str, payload: dict[str, Any], confirmed_round: int) -> None:
        if kind == "vote":
            vote = VoteRecord(
                payload["voter_id"],
                payload.get("election_id"),
                payload.get("ledger_id"),
                payload.get("candidate_id"),
                payload.get("ledger_candidate_id"),
                tx_hash=tx_id,
                confirmed_round=confirmed_round or None,
            )
            try:
                self.store.record_vote(vote)
            except StoreDuplicate:
                pass
        elif kind == "verify_voter":
            self.store.set_user_verified(payload["user_id"], True)
        elif kind in ("create_election", "add_candidate"):
            chain = self._ledger_election(payload["ledger_id"])
            if chain is None:
                return
            tx_hash = tx_id if kind == "create_election" else None
            row = self._mirror_election(chain, tx_hash, payload.get("created_by"))
            self._mirror_ledger_candidates(row.store_id, chain.ledger_id)

    def resolve_pending(self) -> dict[str, int]:
        ledger = self._require_ledger()
        counts = {"confirmed": 0, "failed": 0, "pending": 0}
        last_round = None
        for pending in self.store.list_pending():
            try:
                chain = ledger.transaction_status(pending.tx_id)
                status, error = chain["status"], chain.get("pool_error")
                if status == "unknown":
                    if self._landed(pending.kind, pending.payload):
                        status = "confirmed"
                    else:
                        status = "pending"
                        last_valid = pending.payload.get("last_valid")
                        if last_valid is not None:
                            if last_round is None:
                                last_round = ledger.last_round()
                            if last_round > last_valid:
                                status, error = "failed", f"Expired unconfirmed after round {last_valid}"
                if status == "confirmed":
                    self._apply_pending(pending.kind, pending.tx_id, pending.payload, chain["confirmed_round"])
                    self.store.mark_pending(pending.tx_id, "confirmed")
                elif status == "failed":
                    logger.warning("Pending %s %s failed: %s", pending.kind, pending.tx_id, error)
                    self.store.mark_pending(pending.tx_id, "failed", error)
                counts[status] += 1
            except ChainBallotError as exc:
                logger.warning("Pending %s %s not resolved: %s", pending.kind, pending.tx_id, exc.message)
                self.store.mark_pending(pending.tx_id, "pending", exc.message)
                counts["pending"] += 1
        return counts

    def _resolve_pending_quietly(self) -> None:
        if self.ledger is None:
            return
        try:
            self.resolve_pending()
        except ChainBallotError as exc:
            logger.warning("Skipped pending-write resolution: %s", exc.message)

    def backfill(self) -> dict[str, int]:
        ledger = self._require_ledger()
        counts = {"elections": 0, "candidates": 0}
        for chain in ledger.list_elections():
            existing = self.store.find_by_ledger_id(chain.ledger_id)
            if existing is None:
                existing = self._mirror_election(chain)
                counts["elections"] += 1
            counts["candidates"] += self._mirror_ledger_candidates(existing.store_id, chain.ledger_id)
        if counts["elections"] or counts["candidates"]:
            logger.info("Backfilled %(elections)d elections and %(candidates)d candidates", counts)
        return counts

    def reconcile(self) -> dict[str, Any]:
        return {"pending": self.resolve_pending(), "backfill": self.backfill()}

    def health(self) -> dict[str, bool]:
        status = {"store": False, "ledger": False}
        try:
            status["store"] = bool(self.store.ping())
        except StoreError as exc:
            logger.warning("Store health check failed: %s", exc.message)
        if self.ledger is not None:
            try:
                self.ledger.get_election_count()
                status["ledger"] = True
            except LedgerError as exc:
                logger.warning("Ledger health check failed: %s", exc.message)
        return status
