from datetime import timezone

import pytest

from decision_os.core.clock import is_timezone_qualified, local_hour, minutes_between, parse_iso
from decision_os.schemas import DecisionRequest


def test_trailing_z_is_utc():
    dt = parse_iso("2026-01-20T18:00:00Z")
    assert dt.utcoffset() == timezone.utc.utcoffset(None)
    assert local_hour("2026-01-20T18:00:00Z") == 18
    assert minutes_between("2026-01-20T18:00:00Z", "2026-01-20T13:30:00-05:00") == 30


@pytest.mark.parametrize("value,expected", [
    ("2026-01-20T18:00:00Z", True),
    ("2026-01-20T18:00:00-05:00", True),
    ("2026-01-20T18:00:00", False),
    ("not a time", False),
])
def test_timezone_qualified(value, expected):
    assert is_timezone_qualified(value) is expected


def test_request_accepts_utc_designator():
    req = DecisionRequest(now_iso="2026-01-20T18:00:00Z")
    assert req.now_iso == "2026-01-20T18:00:00Z"
