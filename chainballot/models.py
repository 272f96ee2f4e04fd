"""
Domain records for elections, candidates, votes and voters.

Store and ledger records are kept as separate variants (``StoreElection`` and
``LedgerElection``) and only meet in ``chainballot.merge``.
"""
from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any

from chainballot.errors import ValidationError

DEFAULT_PARTY = "Independent"
DEFAULT_CANDIDATE_IMAGE = "https://randomuser.me/api/portraits/lego/1.jpg"


class ElectionStatus(str, Enum):
    UPCOMING = "Upcoming"
    ACTIVE = "Active"
    ENDED = "Ended"
    INACTIVE = "Inactive"


class Origin(str, Enum):
    BOTH = "both"
    LEDGER_ONLY = "ledger_only"
    STORE_ONLY = "store_only"
    # Store row tagged with a ledger id that a successful ledger read did not return.
    DANGLING = "dangling"
    # Store row tagged with a ledger id while the ledger could not be read.
    UNVERIFIED = "unverified"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def from_timestamp(ts: int) -> datetime:
    return datetime.fromtimestamp(int(ts), tz=timezone.utc)


def to_timestamp(value: datetime) -> int:
    return int(as_utc(value).timestamp())


def parse_datetime(value: Any, field_name: str) -> datetime:
    if isinstance(value, datetime):
        return as_utc(value)
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return from_timestamp(int(value))
    if isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            return as_utc(datetime.fromisoformat(text))
        except ValueError as exc:
            raise ValidationError(f"{field_name} must be an ISO-8601 timestamp") from exc
    raise ValidationError(f"{field_name} is required")


def validate_window(start_time: datetime, end_time: datetime) -> None:
    if as_utc(start_time) >= as_utc(end_time):
        raise ValidationError("End time must be after start time")


def derive_status(
    start_time: datetime, end_time: datetime, is_active: bool, now: datetime | None = None
) -> ElectionStatus:
    # Time boundaries first, then the isActive toggle.
    now = as_utc(now or utc_now())
    if now < as_utc(start_time):
        return ElectionStatus.UPCOMING
    if now > as_utc(end_time):
        return ElectionStatus.ENDED
    return ElectionStatus.ACTIVE if is_active else ElectionStatus.INACTIVE


def voter_ref_for(user_id: str) -> str:
    """Ledger-side identity for a user: sha256 hex of the store user id."""
    return hashlib.sha256(str(user_id).encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class User:
    id: str
    email: str
    name: str
    role: str = "voter"
    verified: bool = False
    created_at: datetime | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == "admin"

    @property
    def voter_ref(self) -> str:
        return voter_ref_for(self.id)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "role": self.role,
            "verified": self.verified,
        }


@dataclass(frozen=True)
class StoreCandidate:
    id: str
    election_id: str
    name: str
    description: str = ""
    party: str = DEFAULT_PARTY
    image_url: str = DEFAULT_CANDIDATE_IMAGE
    vote_count: int = 0
    ledger_candidate_id: int | None = None


@dataclass(frozen=True)
class LedgerCandidate:
    ledger_election_id: int
    ledger_candidate_id: int
    name: str
    description: str = ""
    party: str = DEFAULT_PARTY
    image_url: str = DEFAULT_CANDIDATE_IMAGE
    vote_count: int = 0


@dataclass(frozen=True)
class StoreElection:
    store_id: str
    title: str
    description: str
    start_time: datetime
    end_time: datetime
    is_active: bool = True
    created_by: str | None = None
    ledger_id: int | None = None
    blockchain_tx_hash: str | None = None
    created_at: datetime | None = None


@dataclass(frozen=True)
class LedgerElection:
    ledger_id: int
    title: str
    description: str
    start_time: datetime
    end_time: datetime
    is_active: bool
    candidate_count: int = 0


@dataclass(frozen=True)
class MergedCandidate:
    name: str
    description: str
    party: str
    image_url: str
    vote_count: int
    store_id: str | None = None
    ledger_candidate_id: int | None = None

    @property
    def key(self) -> str:
        if self.ledger_candidate_id is not None:
            return f"ledger:{self.ledger_candidate_id}"
        return f"store:{self.store_id}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "id": self.store_id,
            "ledgerCandidateId": self.ledger_candidate_id,
            "name": self.name,
            "description": self.description,
            "party": self.party,
            "imageUrl": self.image_url,
            "voteCount": self.vote_count,
        }


@dataclass(frozen=True)
class MergedElection:
    origin: Origin
    title: str
    description: str
    start_time: datetime
    end_time: datetime
    is_active: bool
    store_id: str | None = None
    ledger_id: int | None = None
    created_by: str | None = None
    blockchain_tx_hash: str | None = None
    candidates: tuple[MergedCandidate, ...] = field(default_factory=tuple)

    @property
    def key(self) -> str:
        if self.ledger_id is not None:
            return f"ledger:{self.ledger_id}"
        return f"store:{self.store_id}"

    @property
    def ledger_backed(self) -> bool:
        return self.ledger_id is not None

    def status(self, now: datetime | None = None) -> ElectionStatus:
        return derive_status(self.start_time, self.end_time, self.is_active, now)

    def to_dict(self, now: datetime | None = None) -> dict[str, Any]:
        return {
            "key": self.key,
            "id": self.store_id,
            "ledgerId": self.ledger_id,
            "origin": self.origin.value,
            "title": self.title,
            "description": self.description,
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat(),
            "isActive": self.is_active,
            "status": self.status(now).value,
            "createdBy": self.created_by,
            "blockchainTxHash": self.blockchain_tx_hash,
            "candidates": [c.to_dict() for c in self.candidates],
        }


@dataclass(frozen=True)
class RosterEntry:
    election_id: str
    voter_id: str
    has_voted: bool = False
    vote_tx: str | None = None


@dataclass(frozen=True)
class VoteRecord:
    voter_id: str
    election_id: str | None
    ledger_election_id: int | None
    candidate_id: str | None
    ledger_candidate_id: int | None
    tx_hash: str | None = None
    confirmed_round: int | None = None
    id: str | None = None
    created_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "voterId": self.voter_id,
            "electionId": self.election_id,
            "ledgerElectionId": self.ledger_election_id,
            "candidateId": self.candidate_id,
            "ledgerCandidateId": self.ledger_candidate_id,
            "transactionHash": self.tx_hash,
            "confirmedRound": self.confirmed_round,
            "timestamp": self.created_at.isoformat() if self.created_at else None,
        }


@dataclass(frozen=True)
class PendingWrite:
    id: int
    kind: str
    tx_id: str
    payload: dict[str, Any]
    status: str = "pending"
    last_error: str | None = None


@dataclass
class WriteResult:
    """Outcome of a dual write. ``synced`` is False when only the ledger side landed."""

    value: Any
    tx_id: str | None = None
    synced: bool = True
    warning: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data = self.value.to_dict() if hasattr(self.value, "to_dict") else self.value
        body: dict[str, Any] = {"success": True, "data": data, "synced": self.synced}
        if self.tx_id:
            body["transactionHash"] = self.tx_id
        if self.warning:
            body["warning"] = self.warning
        return body
