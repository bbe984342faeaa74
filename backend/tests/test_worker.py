from datetime import timedelta

import pytest

import backend.worker as worker
import database.db as db
from conftest import make_session
from database.models import utcnow


@pytest.fixture(autouse=True)
def quiet_logging(monkeypatch):
    monkeypatch.setattr(worker, "setup_logging", lambda: None)


def test_single_sweep(school):
    session = make_session(school, utcnow() - timedelta(hours=1), minutes=15)

    report = worker.main(["--once"])

    assert report["per_session"] == {session.id: 1}
    assert db.get_session_by_id(session.id).status == "expired"


def test_interval_must_be_positive(temp_db):
    with pytest.raises(SystemExit):
        worker.main(["--interval-minutes", "0"])
