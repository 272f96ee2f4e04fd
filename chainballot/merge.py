"""
Read-time union of store and ledger records, keyed by the ledger id.

Both functions are pure: the same inputs, in any order and with any
repetition, produce the same output list.
"""
from __future__ import annotations

from dataclasses import replace
from typing import Iterable

from chainballot.models import (
    LedgerCandidate,
    LedgerElection,
    MergedCandidate,
    MergedElection,
    Origin,
    StoreCandidate,
    StoreElection,
)


def _freshness(record: LedgerElection) -> tuple:
    return (record.candidate_count, record.title, record.description)


def _narrow_ledger(a: LedgerElection, b: LedgerElection) -> LedgerElection:
    # Two reads of the same ledger record can differ only if one is stale.
    # Display fields come whole from the read with more candidates.
    base = max(a, b, key=_freshness)
    return replace(
        base,
        start_time=max(a.start_time, b.start_time),
        end_time=min(a.end_time, b.end_time),
        is_active=a.is_active and b.is_active,
    )


def _from_store(record: StoreElection, origin: Origin) -> MergedElection:
    return MergedElection(
        origin=origin,
        title=record.title,
        description=record.description,
        start_time=record.start_time,
        end_time=record.end_time,
        is_active=record.is_active,
        store_id=record.store_id,
        ledger_id=record.ledger_id,
        created_by=record.created_by,
        blockchain_tx_hash=record.blockchain_tx_hash,
    )


def _from_ledger(record: LedgerElection) -> MergedElection:
    return MergedElection(
        origin=Origin.LEDGER_ONLY,
        title=record.title,
        description=record.description,
        start_time=record.start_time,
        end_time=record.end_time,
        is_active=record.is_active,
        ledger_id=record.ledger_id,
    )


def _combine(store: StoreElection, chain: LedgerElection) -> MergedElection:
    # Store wins for display fields; status-relevant fields take the more
    # restrictive value of the two.
    return MergedElection(
        origin=Origin.BOTH,
        title=store.title or chain.title,
        description=store.description or chain.description,
        start_time=max(store.start_time, chain.start_time),
        end_time=min(store.end_time, chain.end_time),
        is_active=store.is_active and chain.is_active,
        store_id=store.store_id,
        ledger_id=chain.ledger_id,
        created_by=store.created_by,
        blockchain_tx_hash=store.blockchain_tx_hash,
    )


def merge_elections(
    *sources: Iterable[StoreElection | LedgerElection], ledger_available: bool = True
) -> list[MergedElection]:
    """Merge store and ledger records.

    ``ledger_available=False`` means the ledger was not read at all, so a
    store row with a ledger id is UNVERIFIED rather than DANGLING.
    """
    unmatched = Origin.DANGLING if ledger_available else Origin.UNVERIFIED
    store_keyed: dict[int, StoreElection] = {}
    store_only: dict[str, StoreElection] = {}
    ledger: dict[int, LedgerElection] = {}

    for source in sources:
        for record in source:
            if isinstance(record, StoreElection):
                if record.ledger_id is None:
                    store_only[record.store_id] = record
                    continue
                current = store_keyed.get(record.ledger_id)
                # Several store rows tagged with one ledger id: lowest store id wins.
                if current is None or record.store_id < current.store_id:
                    store_keyed[record.ledger_id] = record
            elif isinstance(record, LedgerElection):
                current_chain = ledger.get(record.ledger_id)
                ledger[record.ledger_id] = (
                    record if current_chain is None else _narrow_ledger(current_chain, record)
                )
            else:
                raise TypeError(f"cannot merge {type(record).__name__}")

    merged: list[MergedElection] = []
    for ledger_id in sorted(set(store_keyed) | set(ledger)):
        store = store_keyed.get(ledger_id)
        chain = ledger.get(ledger_id)
        if store is not None and chain is not None:
            merged.append(_combine(store, chain))
        elif chain is not None:
            merged.append(_from_ledger(chain))
        else:
            merged.append(_from_store(store, unmatched))
    for store_id in sorted(store_only):
        merged.append(_from_store(store_only[store_id], Origin.STORE_ONLY))
    return merged


def merge_candidates(
    store_candidates: Iterable[StoreCandidate], ledger_candidates: Iterable[LedgerCandidate]
) -> tuple[MergedCandidate, ...]:
    keyed: dict[int, StoreCandidate] = {}
    unkeyed: dict[str, StoreCandidate] = {}
    for cand in store_candidates:
        if cand.ledger_candidate_id is None:
            unkeyed[cand.id] = cand
            continue
        current = keyed.get(cand.ledger_candidate_id)
        if current is None or cand.id < current.id:
            keyed[cand.ledger_candidate_id] = cand

    chain: dict[int, LedgerCandidate] = {}
    for cand in ledger_candidates:
        current_chain = chain.get(cand.ledger_candidate_id)
        if current_chain is None or cand.vote_count > current_chain.vote_count:
            chain[cand.ledger_candidate_id] = cand

    merged: list[MergedCandidate] = []
    for cid in sorted(set(keyed) | set(chain)):
        store = keyed.get(cid)
        onchain = chain.get(cid)
        if store is not None and onchain is not None:
            merged.append(
                MergedCandidate(
                    name=store.name or onchain.name,
                    description=store.description or onchain.description,
                    party=store.party,
                    image_url=store.image_url,
                    # Counts only grow; the ledger is authoritative but may lag a read.
                    vote_count=max(store.vote_count, onchain.vote_count),
                    store_id=store.id,
                    ledger_candidate_id=cid,
                )
            )
        elif onchain is not None:
            merged.append(
                MergedCandidate(
                    name=onchain.name,
                    description=onchain.description,
                    party=onchain.party,
                    image_url=onchain.image_url,
                    vote_count=onchain.vote_count,
                    ledger_candidate_id=cid,
                )
            )
        else:
            merged.append(_store_candidate(store))
    for cand_id in sorted(unkeyed):
        merged.append(_store_candidate(unkeyed[cand_id]))
    return tuple(merged)


def _store_candidate(cand: StoreCandidate) -> MergedCandidate:
    return MergedCandidate(
        name=cand.name,
        description=cand.description,
        party=cand.party,
        image_url=cand.image_url,
        vote_count=cand.vote_count,
        store_id=cand.id,
        ledger_candidate_id=cand.ledger_candidate_id,
    )
