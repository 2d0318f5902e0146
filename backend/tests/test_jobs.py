from __future__ import annotations

import logging

from sqlalchemy.exc import OperationalError

from trustauth import jobs


def test_alert_pass_exits_zero_and_logs_when_the_database_fails(session_factory, monkeypatch, caplog) -> None:
    def _boom(_db):
        raise OperationalError("SELECT", {}, Exception("connection reset"))

    monkeypatch.setattr(jobs, "SessionLocal", session_factory)
    monkeypatch.setattr(jobs, "run_alert_rules", _boom)

    with caplog.at_level(logging.ERROR, logger="trustauth.jobs"):
        assert jobs.main() == 0

    assert "Alert rule pass failed" in caplog.text


def test_alert_pass_exits_zero_on_success(session_factory, monkeypatch, caplog) -> None:
    monkeypatch.setattr(jobs, "SessionLocal", session_factory)
    monkeypatch.setattr(jobs, "run_alert_rules", lambda _db: [])

    with caplog.at_level(logging.INFO, logger="trustauth.jobs"):
        assert jobs.main() == 0

    assert "created 0 alert(s)" in caplog.text
