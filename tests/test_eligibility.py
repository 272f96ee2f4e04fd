from datetime import timedelta

import pytest

from chainballot.eligibility import EligibilityGuard
from chainballot.errors import AlreadyVoted, ElectionNotActive, LedgerUnavailable, NotEligible
from chainballot.models import MergedElection, Origin, VoteRecord, utc_now


def _election(origin=Origin.STORE_ONLY, store_id="e1", ledger_id=None, start=None, end=None, is_active=True):
    now = utc_now()
    return MergedElection(
        origin=origin,
        title="Election",
        description="",
        start_time=start or now - timedelta(hours=1),
        end_time=end or now + timedelta(hours=1),
        is_active=is_active,
        store_id=store_id,
        ledger_id=ledger_id,
    )


@pytest.fixture
def voter(store):
    user = store.create_user("v@example.com", "Voter", "hash")
    return store.set_user_verified(user.id)


@pytest.mark.parametrize(
    "kwargs, message",
    [
        ({"start": utc_now() + timedelta(hours=1), "end": utc_now() + timedelta(hours=2)}, "Election has not started"),
        ({"start": utc_now() - timedelta(hours=2), "end": utc_now() - timedelta(hours=1)}, "Election has ended"),
        ({"is_active": False}, "Election is not active"),
    ],
)
def test_closed_elections_are_rejected_with_reason(store, voter, kwargs, message):
    guard = EligibilityGuard(store)
    with pytest.raises(ElectionNotActive, match=message):
        guard.check(voter, _election(**kwargs))


def test_store_only_transitions(store, voter):
    guard = EligibilityGuard(store)
    election = _election()

    with pytest.raises(NotEligible):
        guard.check(voter, election)

    store.add_roster_entry("e1", voter.id)
    guard.check(voter, election)

    guard.commit(VoteRecord(voter.id, "e1", None, None, None))
    with pytest.raises(AlreadyVoted):
        guard.check(voter, election)
    with pytest.raises(AlreadyVoted):
        guard.commit(VoteRecord(voter.id, "e1", None, None, None))


def test_ledger_backed_requires_global_verification(store, ledger, voter):
    guard = EligibilityGuard(store, ledger)
    election = _election(origin=Origin.LEDGER_ONLY, store_id=None, ledger_id=3)
    with pytest.raises(NotEligible):
        guard.check(voter, election)
    ledger.verified.add(voter.voter_ref)
    guard.check(voter, election)
    ledger.ballots[(3, voter.voter_ref)] = 1
    with pytest.raises(AlreadyVoted):
        guard.check(voter, election)


def test_ledger_backed_check_survives_store_outage(store, ledger, voter):
    guard = EligibilityGuard(store, ledger)
    ledger.verified.add(voter.voter_ref)
    store.fail_on = {"get_roster_entry", "find_vote"}
    guard.check(voter, _election(origin=Origin.BOTH, ledger_id=3))


def test_ledger_backed_without_ledger_is_unavailable(store, voter):
    guard = EligibilityGuard(store)
    with pytest.raises(LedgerUnavailable):
        guard.check(voter, _election(origin=Origin.BOTH, ledger_id=3))


def test_same_pair_always_maps_to_same_lock(store):
    guard = EligibilityGuard(store, stripes=4)
    assert guard._lock_for("u1", "ledger:1") is guard._lock_for("u1", "ledger:1")
