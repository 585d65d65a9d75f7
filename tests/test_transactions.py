"""
Tests for the transactional write path.

mongomock has no sessions, so the client hands out a recording session and
the collection methods note the session they were given before running the
in-memory operation without it.
"""

import mongomock
import pytest

import database
from config import get_settings
from conftest import NOW
from database import DISTRIBUTIONS, DISTRIBUTION_PRODUCERS, OFFER_ITEMS, ORDERS, transaction
from distributions import DistributionService
from errors import InvalidTransition
from offers import OfferEngine
from orders import submit_order
from schemas import CartItem, OfferDraft


class RecordingSession:
    def __init__(self):
        self.started = 0
        self.committed = 0
        self.aborted = 0

    def __enter__(self):
        return self

    def __exit__(self, *exc):
        return False

    def start_transaction(self):
        session = self

        class _Transaction:
            def __enter__(self):
                session.started += 1

            def __exit__(self, exc_type, exc, tb):
                if exc_type is None:
                    session.committed += 1
                else:
                    session.aborted += 1
                return False

        return _Transaction()


@pytest.fixture
def session(monkeypatch):
    recording = RecordingSession()
    enabled = get_settings().model_copy(update={"use_transactions": True})
    monkeypatch.setattr(database, "get_settings", lambda: enabled)
    monkeypatch.setattr(mongomock.MongoClient, "start_session", lambda self, **kwargs: recording, raising=False)
    return recording


@pytest.fixture
def calls(monkeypatch):
    seen = []
    for name in ("find", "bulk_write", "insert_one"):
        real = getattr(mongomock.Collection, name)

        def recording(self, *args, _name=name, _real=real, session=None, **kwargs):
            seen.append((_name, self.name, session))
            return _real(self, *args, **kwargs)

        monkeypatch.setattr(mongomock.Collection, name, recording)
    return seen


def _sessions(calls, method, collection):
    return [s for name, coll, s in calls if name == method and coll == collection]


class TestTransaction:
    def test_yields_the_started_session(self, db, session):
        with transaction(db) as current:
            assert current is session
        assert (session.started, session.committed) == (1, 1)

    def test_aborts_on_error(self, db, session):
        with pytest.raises(RuntimeError):
            with transaction(db):
                raise RuntimeError("boom")
        assert session.aborted == 1
        assert session.committed == 0


class TestSessionsReachTheDriver:
    def test_open_distribution_reads_and_writes_in_the_session(self, db, planned, session, calls):
        DistributionService(db).open_distribution(planned["_id"], now=NOW)

        writes = _sessions(calls, "bulk_write", DISTRIBUTIONS)
        assert writes and all(s is session for s in writes)
        assert session in _sessions(calls, "find", DISTRIBUTIONS)
        assert session.committed == 1

    def test_invalid_open_aborts(self, db, planned, session, calls):
        service = DistributionService(db)
        service.open_distribution(planned["_id"], now=NOW)

        with pytest.raises(InvalidTransition):
            service.open_distribution(planned["_id"], now=NOW)
        assert session.aborted == 1

    def test_offer_save_syncs_in_the_session(self, db, catalogue, planned, session, calls):
        c = catalogue
        OfferEngine(db).save(planned["_id"], [c["farm"]], {
            (c["carrots"], c["carrots_1kg"], 0): OfferDraft(enabled=True),
        })

        for collection in (DISTRIBUTION_PRODUCERS, OFFER_ITEMS):
            assert session in _sessions(calls, "find", collection)
            writes = _sessions(calls, "bulk_write", collection)
            assert writes and all(s is session for s in writes)
        assert session.committed == 1

    def test_order_insert_uses_the_session(self, db, catalogue, planned, member, session, calls):
        c = catalogue
        OfferEngine(db).save(planned["_id"], [c["farm"]], {
            (c["carrots"], c["carrots_1kg"], 0): OfferDraft(enabled=True),
        })
        DistributionService(db).open_distribution(planned["_id"], now=NOW)
        line = CartItem(product_id=c["carrots"], variant_id=c["carrots_1kg"], name="Carottes", unit_price=2.5,
                        producer_id=c["farm"], sale_date_key="2024-03-06")

        submit_order(db, member["_id"], [line])

        assert _sessions(calls, "insert_one", ORDERS) == [session]
