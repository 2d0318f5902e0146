from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy.exc import OperationalError

from trustauth.domain_errors import BestEffortFailure, ValidationError
from trustauth.models import SecurityEvent
from trustauth.services.anomaly import is_odd_hour, local_time
from trustauth.use_cases.security_events import (
    evaluate_login_context,
    list_security_events,
    record_security_event,
)
from trustauth.use_cases.sessions import create_session

# 06:00 UTC is 11:30 IST (inside the allowed band); 20:00 UTC is 01:30 IST.
DAYTIME = datetime(2026, 10, 14, 6, 0, tzinfo=timezone.utc)
NIGHT = datetime(2026, 10, 14, 20, 0, tzinfo=timezone.utc)


def _types(outcomes):
    return sorted(o.event_type for o in outcomes)


@pytest.mark.parametrize(
    ("at", "expected"),
    [
        (DAYTIME, False),
        (NIGHT, True),
        (datetime(2026, 10, 14, 0, 29, tzinfo=timezone.utc), True),   # 05:59 IST
        (datetime(2026, 10, 14, 0, 30, tzinfo=timezone.utc), False),  # 06:00 IST
        (datetime(2026, 10, 14, 17, 29, tzinfo=timezone.utc), False),  # 22:59 IST
        (datetime(2026, 10, 14, 17, 30, tzinfo=timezone.utc), True),   # 23:00 IST
    ],
)
def test_odd_hour_band_boundaries(at, expected) -> None:
    assert is_odd_hour(at, utc_offset_minutes=330, start_hour=6, end_hour=23) is expected


def test_odd_hour_band_can_wrap_midnight() -> None:
    night_shift = {"utc_offset_minutes": 0, "start_hour": 22, "end_hour": 6}

    assert is_odd_hour(datetime(2026, 1, 1, 23, 0), **night_shift) is False
    assert is_odd_hour(datetime(2026, 1, 1, 3, 0), **night_shift) is False
    assert is_odd_hour(datetime(2026, 1, 1, 12, 0), **night_shift) is True

    with pytest.raises(ValueError):
        is_odd_hour(DAYTIME, utc_offset_minutes=0, start_hour=25, end_hour=6)


def test_local_time_treats_naive_values_as_utc() -> None:
    assert local_time(datetime(2026, 1, 1, 0, 0), utc_offset_minutes=330).strftime("%H:%M") == "05:30"


def test_first_login_only_gets_the_odd_hour_check(db, make_user) -> None:
    user = make_user()

    assert evaluate_login_context(db, user_id=user.id, device_id="a" * 64, ip_address="1.1.1.1", at=DAYTIME) == []

    outcomes = evaluate_login_context(db, user_id=user.id, device_id="a" * 64, ip_address="1.1.1.1", at=NIGHT)
    assert _types(outcomes) == ["ANOMALY_ODD_HOUR_LOGIN"]
    assert outcomes[0].details["local_time"] == "01:30"


def test_known_ip_and_device_raise_nothing(db, make_user) -> None:
    user = make_user()
    create_session(db, user_id=user.id, role="customer", device_id="a" * 64, ip_address="1.1.1.1",
                   now=DAYTIME - timedelta(days=2))

    outcomes = evaluate_login_context(db, user_id=user.id, device_id="a" * 64, ip_address="1.1.1.1", at=DAYTIME)

    assert outcomes == []


def test_new_ip_and_new_device_are_flagged(db, make_user) -> None:
    user = make_user()
    create_session(db, user_id=user.id, role="customer", device_id="a" * 64, ip_address="1.1.1.1",
                   now=DAYTIME - timedelta(days=2))

    outcomes = evaluate_login_context(
        db, user_id=user.id, device_id="b" * 64, ip_address="2.2.2.2", user_agent="pytest", at=DAYTIME
    )
    db.commit()

    assert _types(outcomes) == ["ANOMALY_NEW_DEVICE", "ANOMALY_NEW_IP"]
    stored = db.query(SecurityEvent).filter(SecurityEvent.event_type == "ANOMALY_NEW_IP").one()
    assert stored.severity == "warning"
    assert stored.actor_user_id == user.id
    assert stored.details["ip_address"] == "2.2.2.2"


def test_ip_outside_lookback_counts_as_new(db, make_user) -> None:
    user = make_user()
    create_session(db, user_id=user.id, role="customer", device_id="a" * 64, ip_address="1.1.1.1",
                   now=DAYTIME - timedelta(days=45))

    outcomes = evaluate_login_context(db, user_id=user.id, device_id="a" * 64, ip_address="1.1.1.1", at=DAYTIME)

    assert _types(outcomes) == ["ANOMALY_NEW_IP"]


def test_record_security_event_validates_type_and_severity(db, make_user) -> None:
    user = make_user()

    with pytest.raises(ValidationError) as exc_info:
        record_security_event(db, event_type="ANOMALY_ALIENS", actor_user_id=user.id)
    assert exc_info.value.code == "SECURITY_EVENT_TYPE_UNKNOWN"

    with pytest.raises(ValidationError) as exc_info:
        record_security_event(db, event_type="MFA_CHALLENGE_FAILED", actor_user_id=user.id, severity="fatal")
    assert exc_info.value.code == "SECURITY_EVENT_SEVERITY_INVALID"

    event = record_security_event(db, event_type="MFA_CHALLENGE_FAILED", actor_user_id=user.id)
    assert event.severity == "error"


def test_record_security_event_failure_is_returned_not_raised(db, make_user, monkeypatch) -> None:
    user = make_user()

    def _broken_savepoint():
        raise OperationalError("SAVEPOINT", {}, Exception("database is locked"))

    monkeypatch.setattr(db, "begin_nested", _broken_savepoint)

    outcome = record_security_event(db, event_type="MFA_CHALLENGE_PASSED", actor_user_id=user.id)

    assert isinstance(outcome, BestEffortFailure)
    assert outcome.operation == "security_event:MFA_CHALLENGE_PASSED"


def test_list_security_events_filters(db, make_user) -> None:
    user = make_user()
    other = make_user()
    record_security_event(db, event_type="MFA_CHALLENGE_FAILED", actor_user_id=user.id, at=DAYTIME)
    record_security_event(db, event_type="MFA_CHALLENGE_PASSED", actor_user_id=user.id, at=DAYTIME + timedelta(minutes=1))
    record_security_event(db, event_type="MFA_CHALLENGE_FAILED", actor_user_id=other.id, at=DAYTIME)
    db.commit()

    mine = list_security_events(db, actor_user_id=user.id)
    failures = list_security_events(db, event_type="MFA_CHALLENGE_FAILED")

    assert [e.event_type for e in mine] == ["MFA_CHALLENGE_PASSED", "MFA_CHALLENGE_FAILED"]
    assert len(failures) == 2
