import pytest
from algosdk import account

from chainballot.errors import LedgerRejected, LedgerUnavailable, StaleSession
from chainballot.ledger_session import LedgerSession, SigningDeclined


@pytest.fixture
def addresses():
    return account.generate_account()[1], account.generate_account()[1]


def test_ticket_requires_connection():
    with pytest.raises(LedgerUnavailable):
        LedgerSession().ticket()


def test_switching_account_invalidates_old_tickets(addresses):
    first, second = addresses
    session = LedgerSession()
    session.connect(first, lambda txn: "signed")
    ticket = session.ticket()
    session.ensure_current(ticket)

    session.switch_account(second, lambda txn: "signed")
    with pytest.raises(StaleSession):
        session.ensure_current(ticket, tx_id="TX9")
    with pytest.raises(StaleSession):
        session.sign(ticket, object())
    assert session.ticket().address == second


def test_disconnect_bumps_generation(addresses):
    session = LedgerSession()
    session.connect(addresses[0], lambda txn: "signed")
    generation = session.generation
    session.disconnect()
    assert session.generation == generation + 1
    assert session.connected is False


def test_signer_can_decline(addresses):
    def decline(txn):
        raise SigningDeclined("User rejected the request")

    session = LedgerSession()
    session.connect(addresses[0], decline)
    with pytest.raises(LedgerRejected, match="User rejected the request"):
        session.sign(session.ticket(), object())
