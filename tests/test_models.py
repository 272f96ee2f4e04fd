from datetime import datetime, timedelta, timezone

import pytest

from chainballot.errors import ValidationError
from chainballot.models import (
    ElectionStatus,
    User,
    WriteResult,
    derive_status,
    parse_datetime,
    validate_window,
    voter_ref_for,
)

START = datetime(2024, 5, 1, tzinfo=timezone.utc)
END = datetime(2024, 5, 2, tzinfo=timezone.utc)


@pytest.mark.parametrize(
    "now, is_active, expected",
    [
        (START - timedelta(seconds=1), True, ElectionStatus.UPCOMING),
        (START - timedelta(seconds=1), False, ElectionStatus.UPCOMING),
        (START, True, ElectionStatus.ACTIVE),
        (START + timedelta(hours=1), False, ElectionStatus.INACTIVE),
        (END, True, ElectionStatus.ACTIVE),
        (END + timedelta(seconds=1), True, ElectionStatus.ENDED),
        (END + timedelta(seconds=1), False, ElectionStatus.ENDED),
    ],
)
def test_time_boundaries_take_precedence_over_active_flag(now, is_active, expected):
    assert derive_status(START, END, is_active, now) == expected


def test_parse_datetime_accepts_iso_and_epoch():
    assert parse_datetime("2024-05-01T00:00:00Z", "startTime") == START
    assert parse_datetime(int(START.timestamp()), "startTime") == START
    naive = parse_datetime("2024-05-01T00:00:00", "startTime")
    assert naive.tzinfo is not None


@pytest.mark.parametrize("value", [None, "", "not a date", True])
def test_parse_datetime_rejects_garbage(value):
    with pytest.raises(ValidationError):
        parse_datetime(value, "endTime")


def test_validate_window():
    validate_window(START, END)
    with pytest.raises(ValidationError, match="End time must be after start time"):
        validate_window(END, START)
    with pytest.raises(ValidationError):
        validate_window(START, START)


def test_voter_ref_is_sha256_of_user_id():
    user = User("u1", "a@example.com", "A")
    assert user.voter_ref == voter_ref_for("u1")
    assert len(bytes.fromhex(user.voter_ref)) == 32


def test_write_result_reports_degraded_sync():
    body = WriteResult({"id": 1}, tx_id="TX1", synced=False, warning="partial").to_dict()
    assert body == {
        "success": True,
        "data": {"id": 1},
        "synced": False,
        "transactionHash": "TX1",
        "warning": "partial",
    }
