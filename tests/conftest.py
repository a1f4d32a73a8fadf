from datetime import date, datetime, time, timedelta, timezone

import pytest

from app import create_app
from config import TestingConfig
from models import db
from models.business import Business
from models.slot import Slot
from models.user import Role, User
from security.password import hash_password
from services.reservations import BookingRequest
from utils import clock
from utils.seed import ROLE_ADMIN, ROLE_CUSTOMER, ROLE_OWNER, seed_graph

PASSWORD = "correct-horse-battery"


class FrozenClock:
    """Replaces utils.clock.utcnow; advance() moves time forward."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def frozen_clock(monkeypatch):
    fc = FrozenClock(datetime.now(timezone.utc).replace(tzinfo=None, microsecond=0))
    monkeypatch.setattr(clock, "utcnow", fc)
    return fc


@pytest.fixture
def app(frozen_clock):
    app = create_app(TestingConfig)
    with app.app_context():
        db.create_all()
        seed_graph()
        yield app
        db.session.remove()
        db.drop_all()


def make_user(email: str, *role_names: str) -> User:
    user = User(email=email, password_hash=hash_password(PASSWORD), full_name=email.split("@")[0])
    for name in role_names:
        user.roles.append(Role.query.filter_by(name=name).one())
    db.session.add(user)
    db.session.commit()
    return user


@pytest.fixture
def customer(app):
    return make_user("asha@example.com", ROLE_CUSTOMER)


@pytest.fixture
def other_customer(app):
    return make_user("ravi@example.com", ROLE_CUSTOMER)


@pytest.fixture
def owner(app):
    return make_user("owner@example.com", ROLE_OWNER)


@pytest.fixture
def admin(app):
    return make_user("admin@example.com", ROLE_ADMIN)


@pytest.fixture
def business(owner):
    b = Business(name="Fade Street Barbers", owner_user_id=owner.id)
    db.session.add(b)
    db.session.commit()
    return b


@pytest.fixture
def slots(business):
    day = date.today() + timedelta(days=1)
    rows = [
        Slot(business_id=business.id, date=day, start_time=time(hour, 0), end_time=time(hour, 30))
        for hour in (10, 11, 12)
    ]
    db.session.add_all(rows)
    db.session.commit()
    return rows


@pytest.fixture
def slot(slots):
    return slots[0]


def booking_request(business, slot, customer=None, phone="+919800000001", name="Asha"):
    return BookingRequest(
        business_id=business.id,
        slot_id=slot.id,
        customer_name=name,
        customer_phone=phone,
        customer_user_id=customer.id if customer else None,
        client_ip="10.0.0.1",
    )


@pytest.fixture
def login(app):
    """login(user) -> a test client carrying that user's session cookie."""
    def _login(user):
        client = app.test_client()
        resp = client.post("/auth/login", json={"email": user.email, "password": PASSWORD})
        assert resp.status_code == 200, resp.get_json()
        return client
    return _login
