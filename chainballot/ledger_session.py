"""
Explicit ledger session: the signing account and the network it expects.

connect, disconnect and switch_account bump a generation counter. Operations
take a ticket when they start and call ``ensure_current`` before signing,
before submitting and while waiting for confirmation, so work begun against
an earlier session fails instead of completing with a stale signer.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Callable

from algosdk import account, mnemonic, transaction

from chainballot.errors import LedgerRejected, LedgerUnavailable, StaleSession

logger = logging.getLogger(__name__)

Signer = Callable[[transaction.Transaction], transaction.SignedTransaction | None]


class SigningDeclined(Exception):
    """Raised (or signalled by returning None) by a signer that refuses to sign."""


@dataclass(frozen=True)
class SessionTicket:
    generation: int
    address: str


def key_signer(private_key: str) -> Signer:
    def _sign(txn: transaction.Transaction) -> transaction.SignedTransaction:
        return txn.sign(private_key)

    return _sign


class LedgerSession:
    def __init__(self, expected_genesis_id: str | None = None) -> None:
        self.expected_genesis_id = expected_genesis_id
        self._lock = threading.Lock()
        self._generation = 0
        self._address: str | None = None
        self._signer: Signer | None = None

    @classmethod
    def from_mnemonic(cls, phrase: str, expected_genesis_id: str | None = None) -> "LedgerSession":
        session = cls(expected_genesis_id=expected_genesis_id)
        session.connect_mnemonic(phrase)
        return session

    @property
    def connected(self) -> bool:
        return self._address is not None

    @property
    def address(self) -> str | None:
        return self._address

    @property
    def generation(self) -> int:
        return self._generation

    def connect(self, address: str, signer: Signer) -> SessionTicket:
        with self._lock:
            self._generation += 1
            self._address = address
            self._signer = signer
            logger.info("Ledger session connected for %s (generation %d)", address, self._generation)
            return SessionTicket(self._generation, address)

    def connect_mnemonic(self, phrase: str) -> SessionTicket:
        private_key = mnemonic.to_private_key(phrase)
        return self.connect(account.address_from_private_key(private_key), key_signer(private_key))

    def switch_account(self, address: str, signer: Signer) -> SessionTicket:
        return self.connect(address, signer)

    def disconnect(self) -> None:
        with self._lock:
            self._generation += 1
            self._address = None
            self._signer = None
            logger.info("Ledger session disconnected (generation %d)", self._generation)

    def ticket(self) -> SessionTicket:
        with self._lock:
            if self._address is None or self._signer is None:
                raise LedgerUnavailable("No active ledger session")
            return SessionTicket(self._generation, self._address)

    def ensure_current(self, ticket: SessionTicket, tx_id: str | None = None) -> None:
        with self._lock:
            if ticket.generation != self._generation or self._address != ticket.address:
                raise StaleSession(tx_id=tx_id)

    def sign(self, ticket: SessionTicket, txn: transaction.Transaction) -> transaction.SignedTransaction:
        with self._lock:
            if ticket.generation != self._generation or self._signer is None:
                raise StaleSession()
            signer = self._signer
        try:
            signed = signer(txn)
        except SigningDeclined as exc:
            raise LedgerRejected(str(exc) or None) from exc
        if signed is None:
            raise LedgerRejected()
        return signed
