from datetime import datetime, timezone

import pytest

from chainballot.merge import merge_candidates, merge_elections
from chainballot.models import LedgerCandidate, LedgerElection, Origin, StoreCandidate, StoreElection

T0 = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)
T1 = datetime(2024, 5, 2, 9, 0, tzinfo=timezone.utc)
T2 = datetime(2024, 5, 3, 9, 0, tzinfo=timezone.utc)


def _store(store_id, ledger_id=None, title="Store title", is_active=True, start=T0, end=T2):
    return StoreElection(store_id, title, "store description", start, end, is_active, "admin", ledger_id)


def _chain(ledger_id, title="Chain title", is_active=True, start=T0, end=T2):
    return LedgerElection(ledger_id, title, "chain description", start, end, is_active)


@pytest.fixture
def store_rows():
    return [_store("a1", ledger_id=1), _store("b2"), _store("c3", ledger_id=3)]


@pytest.fixture
def ledger_rows():
    return [_chain(1), _chain(2), _chain(7)]


def test_merge_is_idempotent_and_order_independent(store_rows, ledger_rows):
    once = merge_elections(store_rows, ledger_rows)
    assert merge_elections(ledger_rows, store_rows) == once
    assert merge_elections(store_rows, ledger_rows, store_rows, ledger_rows) == once
    assert merge_elections(list(reversed(store_rows)), list(reversed(ledger_rows))) == once
    assert len({e.key for e in once}) == len(once) == 5


def test_origins(store_rows, ledger_rows):
    by_key = {e.key: e for e in merge_elections(store_rows, ledger_rows)}
    assert by_key["ledger:1"].origin == Origin.BOTH
    assert by_key["ledger:2"].origin == Origin.LEDGER_ONLY
    assert by_key["ledger:7"].origin == Origin.LEDGER_ONLY
    assert by_key["ledger:3"].origin == Origin.DANGLING
    assert by_key["store:b2"].origin == Origin.STORE_ONLY


def test_store_wins_display_fields_but_most_restrictive_status():
    store = _store("a1", ledger_id=1, title="Edited", is_active=True, start=T0, end=T2)
    chain = _chain(1, title="Original", is_active=False, start=T1, end=T2)
    (merged,) = merge_elections([store], [chain])
    assert merged.title == "Edited"
    assert merged.description == "store description"
    assert merged.is_active is False
    assert merged.start_time == T1
    assert merged.end_time == T2
    assert merged.store_id == "a1"
    assert merged.ledger_id == 1


def test_duplicate_store_rows_for_one_ledger_id_collapse():
    merged = merge_elections([_store("zz", ledger_id=4), _store("aa", ledger_id=4)], [_chain(4)])
    assert len(merged) == 1
    assert merged[0].store_id == "aa"


def test_unknown_record_type_is_rejected():
    with pytest.raises(TypeError):
        merge_elections([object()])


def test_two_ledger_reads_take_display_fields_from_the_fuller_read():
    stale = LedgerElection(1, "Board", "", T0, T2, True, candidate_count=1)
    fresh = LedgerElection(1, "Board", "Annual board vote", T1, T2, False, candidate_count=2)
    merged = merge_elections([stale], [fresh])
    assert merge_elections([fresh], [stale]) == merged
    assert merged[0].description == "Annual board vote"
    assert merged[0].start_time == T1
    assert merged[0].is_active is False


def test_unmatched_store_row_is_unverified_when_ledger_unread(store_rows):
    by_key = {e.key: e for e in merge_elections(store_rows, ledger_available=False)}
    assert by_key["ledger:1"].origin == Origin.UNVERIFIED
    assert by_key["ledger:3"].origin == Origin.UNVERIFIED
    assert by_key["store:b2"].origin == Origin.STORE_ONLY


def test_merge_candidates_prefers_larger_count_and_keeps_one_sided_entries():
    store_side = [
        StoreCandidate("s1", "a1", "Alice", ledger_candidate_id=1, vote_count=2),
        StoreCandidate("s2", "a1", "Write-in"),
    ]
    chain_side = [
        LedgerCandidate(1, 1, "Alice", vote_count=5),
        LedgerCandidate(1, 2, "Bob", vote_count=1),
    ]
    merged = merge_candidates(store_side, chain_side)
    assert [c.key for c in merged] == ["ledger:1", "ledger:2", "store:s2"]
    alice, bob, write_in = merged
    assert alice.vote_count == 5
    assert alice.store_id == "s1"
    assert bob.store_id is None
    assert write_in.ledger_candidate_id is None
    assert merge_candidates(list(reversed(store_side)), list(reversed(chain_side))) == merged
