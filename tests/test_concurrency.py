"""
Races between real threads against a file-backed SQLite database. Each worker
pushes its own app context, so each one gets its own session and connection.
"""
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from datetime import date, time as clock_time, timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy.exc import OperationalError

from app import create_app
from config import TestingConfig
from models import db
from models.booking import ACTIVE_BOOKING_STATUSES, Booking
from models.business import Business
from models.idempotency_key import IdempotencyKey
from models.slot import Slot
from models.user import User
from services.errors import RetryLater, SlotUnavailable
from services.reservations import BookingRequest, Outcome, new_idempotency_key, reservation_service
from utils.seed import seed_graph

WORKERS = 8
SETTLE_ATTEMPTS = 50


@pytest.fixture
def race(tmp_path, frozen_clock):
    class SharedFileConfig(TestingConfig):
        SQLALCHEMY_DATABASE_URI = "sqlite:///" + str(tmp_path / "race.db")
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"timeout": 30, "check_same_thread": False}}

    app = create_app(SharedFileConfig)
    with app.app_context():
        db.create_all()
        seed_graph()
        owner = User(email="owner@example.com", password_hash="x")
        db.session.add(owner)
        db.session.commit()
        business = Business(name="Fade Street Barbers", owner_user_id=owner.id)
        db.session.add(business)
        db.session.commit()
        slot = Slot(business_id=business.id, date=date.today() + timedelta(days=1),
                    start_time=clock_time(10, 0), end_time=clock_time(10, 30))
        db.session.add(slot)
        db.session.commit()
        race = SimpleNamespace(app=app, business_id=business.id, slot_id=slot.id)
        db.session.remove()

    yield race

    with app.app_context():
        db.session.remove()
        db.drop_all()
        db.engine.dispose()


def _request(race, n: int) -> BookingRequest:
    return BookingRequest(race.business_id, race.slot_id, f"Customer {n}", f"+91980000{n:04d}")


def _book_until_settled(app, barrier, req, key):
    """
    Behaves like a well-mannered client: in_progress and retry-later answers
    are retried. Returns the settled ReservationResult, or the SlotUnavailable.
    """
    with app.app_context():
        barrier.wait()
        try:
            for _ in range(SETTLE_ATTEMPTS):
                try:
                    result = reservation_service.create_booking(req, key)
                except RetryLater:
                    time.sleep(0.01)
                    continue
                except OperationalError:
                    # surfaced as a 503 with Retry-After over HTTP
                    db.session.rollback()
                    time.sleep(0.01)
                    continue
                except SlotUnavailable as exc:
                    return exc
                if result.outcome is Outcome.IN_PROGRESS:
                    time.sleep(0.01)
                    continue
                return result
            raise AssertionError("reservation never settled")
        finally:
            db.session.remove()


def _run_together(app, jobs):
    barrier = threading.Barrier(len(jobs))
    with ThreadPoolExecutor(max_workers=len(jobs)) as pool:
        futures = [pool.submit(_book_until_settled, app, barrier, req, key) for req, key in jobs]
        return [f.result(timeout=60) for f in futures]


class TestSameKeyRace:
    def test_one_insert_and_every_caller_sees_it(self, race):
        key = new_idempotency_key()
        req = _request(race, 1)

        results = _run_together(race.app, [(req, key)] * WORKERS)

        outcomes = sorted(r.outcome.value for r in results)
        assert outcomes == ["created"] + ["duplicate"] * (WORKERS - 1)
        assert len({r.booking_id for r in results}) == 1
        with race.app.app_context():
            assert Booking.query.count() == 1
            assert IdempotencyKey.query.count() == 1
            assert db.session.get(Slot, race.slot_id).status == "reserved"

    def test_derived_key_race_also_collapses(self, race):
        req = _request(race, 1)

        results = _run_together(race.app, [(req, None)] * WORKERS)

        assert sum(1 for r in results if r.outcome is Outcome.CREATED) == 1
        assert len({r.booking_id for r in results}) == 1
        with race.app.app_context():
            assert Booking.query.count() == 1


class TestSameSlotRace:
    def test_exactly_one_winner(self, race):
        jobs = [(_request(race, n), new_idempotency_key()) for n in range(WORKERS)]

        results = _run_together(race.app, jobs)

        winners = [r for r in results if not isinstance(r, SlotUnavailable)]
        losers = [r for r in results if isinstance(r, SlotUnavailable)]
        assert len(winners) == 1
        assert winners[0].outcome is Outcome.CREATED
        assert len(losers) == WORKERS - 1
        with race.app.app_context():
            active = Booking.query.filter(
                Booking.slot_id == race.slot_id, Booking.status.in_(ACTIVE_BOOKING_STATUSES)
            ).all()
            assert [b.id for b in active] == [winners[0].booking_id]
            assert db.session.get(Slot, race.slot_id).status == "reserved"
            # losers' key claims were rolled back with the rest of their attempt
            assert IdempotencyKey.query.count() == 1
