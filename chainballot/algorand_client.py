import base64
import json
import logging
import math
import re
import threading
from concurrent import futures
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable

from algosdk import transaction
from algosdk.error import AlgodHTTPError, IndexerHTTPError
from algosdk.source_map import SourceMap
from algosdk.v2client import algod, indexer

from chainballot.config import Settings
from chainballot.errors import (
    ConfirmationAbandoned,
    LedgerError,
    LedgerReverted,
    LedgerUnavailable,
    NetworkMismatch,
    NotFound,
    StaleSession,
    ValidationError,
)
from chainballot.ledger_session import LedgerSession, SessionTicket
from chainballot.models import (
    DEFAULT_CANDIDATE_IMAGE,
    DEFAULT_PARTY,
    LedgerCandidate,
    LedgerElection,
    from_timestamp,
    to_timestamp,
    validate_window,
)
from chainballot.smart_contract import compile_contract

logger = logging.getLogger(__name__)

PC_PATTERN = re.compile(r"pc=(\d+)")
BOX_QUOTA = 1024
MAX_BOX_REFS = 8
MAX_APP_ARGS_BYTES = 2048


def encode_meta(method: bytes, fixed_args: int, **fields: Any) -> bytes:
    """JSON metadata for an app call after ``fixed_args`` uint64 arguments."""
    meta = json.dumps(fields, sort_keys=True, separators=(",", ":")).encode("utf-8")
    total = len(method) + 8 * fixed_args + len(meta)
    if total > MAX_APP_ARGS_BYTES:
        raise ValidationError(f"Text too long to store on-chain ({total} of {MAX_APP_ARGS_BYTES} bytes)")
    return meta


def election_meta(title: str, description: str) -> bytes:
    return encode_meta(b"create_election", 4, title=title, description=description)


def candidate_meta(name: str, description: str = "", party: str | None = None, image_url: str | None = None) -> bytes:
    return encode_meta(
        b"add_candidate",
        2,
        name=name,
        description=description,
        party=party or DEFAULT_PARTY,
        image=image_url or DEFAULT_CANDIDATE_IMAGE,
    )


def reasons_by_pc(teal: str, pc_to_line: dict[int, int]) -> dict[int, str]:
    """Map program counters to the comment on the TEAL line they came from."""
    lines = teal.splitlines()
    reasons: dict[int, str] = {}
    for pc, line in pc_to_line.items():
        if 0 <= line < len(lines) and "//" in lines[line]:
            reasons[int(pc)] = lines[line].split("//", 1)[1].strip()
    return reasons


def revert_reason(message: str, reasons: dict[int, str]) -> str:
    match = PC_PATTERN.search(message)
    if match:
        reason = reasons.get(int(match.group(1)))
        if reason:
            return reason
    marker = "logic eval error:"
    if marker in message:
        return message.split(marker, 1)[1].split(". Details:", 1)[0].strip()
    return message


@dataclass(frozen=True)
class TxReceipt:
    tx_id: str
    confirmed_round: int
    logs: tuple[bytes, ...] = ()

    def logged_int(self) -> int | None:
        if not self.logs:
            return None
        return int.from_bytes(self.logs[-1], "big")


class AlgorandLedgerClient:
    def __init__(
        self,
        algod_client: algod.AlgodClient,
        app_id: int,
        session: LedgerSession,
        read_timeout: float = 10.0,
        timeout_rounds: int | None = None,
        indexer_client: indexer.IndexerClient | None = None,
        approval_teal: str | None = None,
    ) -> None:
        if app_id <= 0:
            raise RuntimeError("ALGORAND_APP_ID must be set to a deployed application id")
        self.algod = algod_client
        self.indexer = indexer_client
        self.app_id = app_id
        self.session = session
        self.read_timeout = read_timeout
        self.timeout_rounds = timeout_rounds
        self._approval_teal = approval_teal
        self._reasons: dict[int, str] | None = None
        self._sequence_lock = threading.Lock()
        self._readers = futures.ThreadPoolExecutor(max_workers=8, thread_name_prefix="ledger-read")

    @classmethod
    def from_settings(cls, settings: Settings) -> "AlgorandLedgerClient":
        if not settings.service_mnemonic:
            raise RuntimeError("ALGORAND_SERVICE_MNEMONIC is required")
        algod_client = algod.AlgodClient(
            algod_token=settings.algod_token,
            algod_address=settings.algod_address or "",
            headers={"X-API-Key": settings.algod_token},
        )
        indexer_client = None
        if settings.indexer_address:
            indexer_client = indexer.IndexerClient(
                indexer_token=settings.indexer_token,
                indexer_address=settings.indexer_address,
                headers={"X-API-Key": settings.indexer_token},
            )
        session = LedgerSession.from_mnemonic(settings.service_mnemonic, settings.genesis_id)
        return cls(
            algod_client,
            settings.app_id,
            session,
            read_timeout=settings.ledger_read_timeout,
            timeout_rounds=settings.tx_timeout_rounds,
            indexer_client=indexer_client,
        )

    def close(self) -> None:
        self._readers.shutdown(wait=False)

    # Encoding

    @staticmethod
    def _u64(value: int) -> bytes:
        return int(value).to_bytes(8, "big")

    @staticmethod
    def _ref(voter_ref: str) -> bytes:
        raw = bytes.fromhex(voter_ref)
        if len(raw) != 32:
            raise ValueError("voter_ref must be a 32-byte hex digest")
        return raw

    def _election_key(self, ledger_id: int) -> bytes:
        return b"e" + self._u64(ledger_id)

    def _candidate_key(self, ledger_id: int, candidate_id: int) -> bytes:
        return b"c" + self._u64(ledger_id) + self._u64(candidate_id)

    def _box_refs(self, names: list[bytes], payload_size: int = 0) -> list[tuple[int, bytes]]:
        refs = [(self.app_id, name) for name in names]
        # Each reference buys 1KB of box I/O; pad with empty refs for large metadata.
        needed = math.ceil(payload_size / BOX_QUOTA)
        while len(refs) < min(max(needed, len(refs)), MAX_BOX_REFS):
            refs.append((self.app_id, b""))
        return refs

    # Reads

    def _read(self, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        future = self._readers.submit(fn, *args, **kwargs)
        try:
            return future.result(timeout=self.read_timeout)
        except futures.TimeoutError as exc:
            future.cancel()
            logger.error("Ledger read %s timed out after %.1fs", getattr(fn, "__name__", fn), self.read_timeout)
            raise LedgerUnavailable("Ledger read timed out") from exc
        except AlgodHTTPError as exc:
            if exc.code == 404:
                raise NotFound(str(exc)) from exc
            raise LedgerUnavailable(f"Algorand node error: {exc}") from exc
        except OSError as exc:
            raise LedgerUnavailable(f"Algorand node unreachable: {exc}") from exc

    def _box(self, name: bytes) -> bytes | None:
        try:
            resp = self._read(self.algod.application_box_by_name, self.app_id, name)
        except NotFound:
            return None
        return base64.b64decode(resp["value"])

    def _decode_global_state(self, app_state: list[dict[str, Any]]) -> dict[bytes, int | bytes]:
        decoded: dict[bytes, int | bytes] = {}
        for entry in app_state:
            key = base64.b64decode(entry["key"])
            value = entry["value"]
            if value["type"] == 2:
                decoded[key] = int(value.get("uint", 0))
            elif value["type"] == 1:
                decoded[key] = base64.b64decode(value.get("bytes", ""))
        return decoded

    def last_round(self) -> int:
        return int(self._read(self.algod.status)["last-round"])

    def get_election_count(self) -> int:
        app_info = self._read(self.algod.application_info, self.app_id)
        decoded = self._decode_global_state(app_info["params"].get("global-state", []))
        value = decoded.get(b"election_count")
        return int(value) if isinstance(value, int) else 0

    def get_election(self, ledger_id: int) -> LedgerElection:
        raw = self._box(self._election_key(ledger_id))
        if raw is None:
            raise NotFound(f"Election {ledger_id} not found on ledger")
        start, end, active, candidate_count = (
            int.from_bytes(raw[i : i + 8], "big") for i in range(0, 32, 8)
        )
        meta = json.loads(raw[32:] or b"{}")
        return LedgerElection(
            ledger_id=int(ledger_id),
            title=meta.get("title", ""),
            description=meta.get("description", ""),
            start_time=from_timestamp(start),
            end_time=from_timestamp(end),
            is_active=active == 1,
            candidate_count=candidate_count,
        )

    def list_elections(self) -> list[LedgerElection]:
        elections = []
        for ledger_id in range(1, self.get_election_count() + 1):
            try:
                elections.append(self.get_election(ledger_id))
            except NotFound:
                # deleted
                continue
        return elections

    def get_candidate(self, ledger_id: int, candidate_id: int) -> LedgerCandidate:
        raw = self._box(self._candidate_key(ledger_id, candidate_id))
        if raw is None:
            raise NotFound(f"Candidate {candidate_id} not found in election {ledger_id}")
        meta = json.loads(raw[8:] or b"{}")
        return LedgerCandidate(
            ledger_election_id=int(ledger_id),
            ledger_candidate_id=int(candidate_id),
            name=meta.get("name", ""),
            description=meta.get("description", ""),
            party=meta.get("party") or DEFAULT_PARTY,
            image_url=meta.get("image") or DEFAULT_CANDIDATE_IMAGE,
            vote_count=int.from_bytes(raw[:8], "big"),
        )

    def list_candidates(self, ledger_id: int) -> list[LedgerCandidate]:
        election = self.get_election(ledger_id)
        candidates = []
        for candidate_id in range(1, election.candidate_count + 1):
            try:
                candidates.append(self.get_candidate(ledger_id, candidate_id))
            except NotFound:
                continue
        return candidates

    def is_verified_voter(self, voter_ref: str) -> bool:
        return self._box(b"v" + self._ref(voter_ref)) is not None

    def has_voted(self, ledger_id: int, voter_ref: str) -> bool:
        return self._box(b"b" + self._u64(ledger_id) + self._ref(voter_ref)) is not None

    # Transactions

    def _reason_table(self) -> dict[int, str]:
        if self._reasons is None:
            teal = self._approval_teal or compile_contract()[0]
            compiled = self.algod.compile(teal, source_map=True)
            source_map = SourceMap(compiled["sourcemap"])
            self._reasons = reasons_by_pc(teal, source_map.pc_to_line)
        return self._reasons

    def revert_reason(self, message: str) -> str:
        try:
            reasons = self._reason_table()
        except (AlgodHTTPError, OSError, KeyError, ValueError) as exc:
            logger.warning("Could not load contract source map: %s", exc)
            reasons = {}
        return revert_reason(message, reasons)

    def _translate(self, exc: Exception) -> LedgerError:
        if isinstance(exc, AlgodHTTPError):
            message = str(exc)
            if exc.code is not None and exc.code >= 500:
                return LedgerUnavailable(f"Algorand node error: {message}")
            if "logic eval error" in message or "rejected by logic" in message:
                return LedgerReverted(self.revert_reason(message))
            return LedgerReverted(message)
        return LedgerUnavailable(f"Algorand node unreachable: {exc}")

    def _suggested_params(self) -> transaction.SuggestedParams:
        sp = self._read(self.algod.suggested_params)
        expected = self.session.expected_genesis_id
        if expected and sp.gen != expected:
            logger.error("Connected to %s, expected %s", sp.gen, expected)
            raise NetworkMismatch(f"Node is on {sp.gen}, expected {expected}")
        return sp

    def _call(
        self,
        method: bytes,
        args: list[bytes],
        boxes: list[tuple[int, bytes]],
        cancel: threading.Event | None = None,
    ) -> TxReceipt:
        ticket = self.session.ticket()
        sp = self._suggested_params()
        txn = transaction.ApplicationNoOpTxn(
            sender=ticket.address,
            sp=sp,
            index=self.app_id,
            app_args=[method, *args],
            boxes=boxes,
        )
        self.session.ensure_current(ticket)
        signed = self.session.sign(ticket, txn)
        self.session.ensure_current(ticket)
        try:
            tx_id = self.algod.send_transaction(signed)
        except (AlgodHTTPError, OSError) as exc:
            error = self._translate(exc)
            logger.error("%s rejected on submit: %s", method.decode(), error.message)
            raise error from exc
        logger.info("Submitted %s as %s", method.decode(), tx_id)
        try:
            pending = self.wait_for_confirmation(tx_id, ticket=ticket, cancel=cancel)
        except (ConfirmationAbandoned, StaleSession) as exc:
            # Past this round the node will never accept the transaction.
            exc.context["last_valid"] = sp.last
            raise
        logs = tuple(base64.b64decode(entry) for entry in pending.get("logs", []))
        return TxReceipt(tx_id, int(pending.get("confirmed-round", 0)), logs)

    def wait_for_confirmation(
        self,
        tx_id: str,
        timeout_rounds: int | None = None,
        ticket: SessionTicket | None = None,
        cancel: threading.Event | None = None,
    ) -> dict[str, Any]:
        timeout = timeout_rounds if timeout_rounds is not None else self.timeout_rounds
        try:
            start_round = self.algod.status()["last-round"] + 1
        except (AlgodHTTPError, OSError) as exc:
            raise ConfirmationAbandoned(tx_id, f"Lost track of transaction: {exc}") from exc
        current_round = start_round
        while timeout is None or current_round < start_round + timeout:
            if cancel is not None and cancel.is_set():
                raise ConfirmationAbandoned(tx_id)
            if ticket is not None:
                self.session.ensure_current(ticket, tx_id=tx_id)
            try:
                pending_txn = self.algod.pending_transaction_info(tx_id)
            except (AlgodHTTPError, OSError) as exc:
                raise ConfirmationAbandoned(tx_id, f"Lost track of transaction: {exc}") from exc
            confirmed_round = pending_txn.get("confirmed-round", 0)
            if confirmed_round > 0:
                return pending_txn
            pool_error = pending_txn.get("pool-error")
            if pool_error:
                raise LedgerReverted(self.revert_reason(pool_error))
            try:
                self.algod.status_after_block(current_round)
            except (AlgodHTTPError, OSError) as exc:
                raise ConfirmationAbandoned(tx_id, f"Lost track of transaction: {exc}") from exc
            current_round += 1
        raise ConfirmationAbandoned(tx_id, f"Transaction not confirmed after {timeout} rounds")

    def create_election(
        self,
        title: str,
        description: str,
        start: datetime,
        end: datetime,
        is_active: bool = True,
        cancel: threading.Event | None = None,
    ) -> tuple[int, str]:
        validate_window(start, end)
        meta = election_meta(title, description)
        with self._sequence_lock:
            ledger_id = self.get_election_count() + 1
            try:
                receipt = self._call(
                    b"create_election",
                    [
                        self._u64(ledger_id),
                        self._u64(to_timestamp(start)),
                        self._u64(to_timestamp(end)),
                        self._u64(1 if is_active else 0),
                        meta,
                    ],
                    self._box_refs([self._election_key(ledger_id)], 32 + len(meta)),
                    cancel,
                )
            except (ConfirmationAbandoned, StaleSession) as exc:
                exc.context["ledger_id"] = ledger_id
                raise
        logger.info("Election %d created on-chain in %s", ledger_id, receipt.tx_id)
        return receipt.logged_int() or ledger_id, receipt.tx_id

    def add_candidate(
        self,
        ledger_id: int,
        name: str,
        description: str = "",
        image_url: str | None = None,
        party: str | None = None,
        cancel: threading.Event | None = None,
    ) -> tuple[int, str]:
        meta = candidate_meta(name, description, party, image_url)
        with self._sequence_lock:
            candidate_id = self.get_election(ledger_id).candidate_count + 1
            try:
                receipt = self._call(
                    b"add_candidate",
                    [self._u64(ledger_id), self._u64(candidate_id), meta],
                    self._box_refs(
                        [self._election_key(ledger_id), self._candidate_key(ledger_id, candidate_id)],
                        8 + len(meta),
                    ),
                    cancel,
                )
            except (ConfirmationAbandoned, StaleSession) as exc:
                exc.context["ledger_candidate_id"] = candidate_id
                raise
        return receipt.logged_int() or candidate_id, receipt.tx_id

    def cast_vote(
        self,
        ledger_id: int,
        candidate_id: int,
        voter_ref: str,
        cancel: threading.Event | None = None,
    ) -> TxReceipt:
        ref = self._ref(voter_ref)
        receipt = self._call(
            b"vote",
            [self._u64(ledger_id), self._u64(candidate_id), ref],
            self._box_refs(
                [
                    self._election_key(ledger_id),
                    self._candidate_key(ledger_id, candidate_id),
                    b"v" + ref,
                    b"b" + self._u64(ledger_id) + ref,
                ]
            ),
            cancel,
        )
        logger.info("Vote for election %d recorded in round %d", ledger_id, receipt.confirmed_round)
        return receipt

    def verify_voter(self, voter_ref: str, cancel: threading.Event | None = None) -> str:
        ref = self._ref(voter_ref)
        return self._call(b"verify_voter", [ref], self._box_refs([b"v" + ref]), cancel).tx_id

    def set_election_status(self, ledger_id: int, is_active: bool, cancel: threading.Event | None = None) -> str:
        return self._call(
            b"set_status",
            [self._u64(ledger_id), self._u64(1 if is_active else 0)],
            self._box_refs([self._election_key(ledger_id)]),
            cancel,
        ).tx_id

    def delete_election(self, ledger_id: int, cancel: threading.Event | None = None) -> str:
        return self._call(
            b"delete_election",
            [self._u64(ledger_id)],
            self._box_refs([self._election_key(ledger_id)]),
            cancel,
        ).tx_id

    # Transaction lookup

    def _lookup_tx(self, tx_id: str) -> dict[str, Any] | None:
        if self.indexer:
            try:
                resp = self._read(self.indexer.search_transactions, txid=tx_id)
            except IndexerHTTPError as exc:
                logger.warning("Indexer lookup for %s failed: %s", tx_id, exc)
            else:
                txns = resp.get("transactions", [])
                if txns:
                    return txns[0]
        try:
            return self._read(self.algod.pending_transaction_info, tx_id)
        except NotFound:
            return None

    def transaction_status(self, tx_id: str) -> dict[str, Any]:
        """
        Report whether ``tx_id`` is a confirmed call into the election app.

        status is one of confirmed, pending, failed or unknown; unknown means
        neither the indexer nor the node's pool still knows the transaction.
        """
        tx = self._lookup_tx(tx_id)
        if not tx:
            return {"status": "unknown", "confirmed_round": 0, "app_id": None, "method": None, "timestamp": 0}

        if "tx-type" in tx:
            app_txn = tx.get("application-transaction", {})
            args = app_txn.get("application-args", [])
            tx_type = tx.get("tx-type")
            app_id = app_txn.get("application-id")
            confirmed_round = int(tx.get("confirmed-round", 0))
            timestamp = int(tx.get("round-time", 0))
            pool_error = None
        else:
            inner = tx.get("txn", {}).get("txn", {})
            args = inner.get("apaa", [])
            tx_type = inner.get("type")
            app_id = inner.get("apid")
            confirmed_round = int(tx.get("confirmed-round", 0))
            pool_error = tx.get("pool-error") or None
            timestamp = 0
            if confirmed_round > 0:
                block_info = self._read(self.algod.block_info, confirmed_round)
                timestamp = int(block_info["block"]["ts"])

        method = base64.b64decode(args[0]).decode("utf-8") if args else None
        if tx_type != "appl" or app_id != self.app_id:
            status = "failed"
        elif confirmed_round > 0:
            status = "confirmed"
        elif pool_error:
            status = "failed"
        else:
            status = "pending"
        return {
            "status": status,
            "confirmed_round": confirmed_round,
            "app_id": app_id,
            "method": method,
            "timestamp": timestamp,
            "pool_error": pool_error,
        }
