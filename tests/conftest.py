from datetime import date, datetime, time, timedelta

import pytest

from app import create_app
from config import Config
from models import db
from models.coach import Coach, ServiceMode
from models.venue import Venue
from services import promo_engine

# Fixed clock for service-level tests: bookings are made the day before play
NOW = datetime(2030, 1, 1, 9, 0)
DAY = date(2030, 1, 2)


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = "sqlite://"
    SWEEPER_ENABLED = False
    HOLD_WINDOW_MINUTES = 10
    CANCEL_CUTOFF_HOURS = 0
    STRIPE_SECRET_KEY = "sk_test_dummy"
    STRIPE_WEBHOOK_SECRET = "whsec_dummy"
    STRIPE_SUCCESS_URL = "https://example.test/paid"
    STRIPE_CANCEL_URL = "https://example.test/cancelled"
    LOG_LEVEL = "WARNING"


def _build(config_object):
    app = create_app(config_object)
    ctx = app.app_context()
    ctx.push()
    db.create_all()
    return app, ctx


def _teardown(ctx):
    db.session.remove()
    db.drop_all()
    ctx.pop()


@pytest.fixture
def app():
    app, ctx = _build(TestingConfig)
    yield app
    _teardown(ctx)


@pytest.fixture
def file_app(tmp_path):
    """App on a file-backed database, for tests that hit it from several threads."""

    class FileConfig(TestingConfig):
        SQLALCHEMY_DATABASE_URI = "sqlite:///" + str(tmp_path / "bookings.db")
        SQLALCHEMY_ENGINE_OPTIONS = {"connect_args": {"timeout": 30, "check_same_thread": False}}

    app, ctx = _build(FileConfig)
    yield app
    _teardown(ctx)


@pytest.fixture
def client(app):
    return app.test_client()


def auth(user_id, *roles) -> dict:
    headers = {"X-User-Id": str(user_id)}
    if roles:
        headers["X-User-Roles"] = ",".join(roles)
    return headers


@pytest.fixture
def make_venue():
    def _make(**overrides):
        fields = dict(
            name="Riverside Arena",
            location="Thimphu",
            owner_user_id="owner-1",
            hourly_rate=1000,
            sports="futsal,badminton",
            allow_external_coaches=True,
        )
        fields.update(overrides)
        venue = Venue(**fields)
        db.session.add(venue)
        db.session.commit()
        return venue

    return _make


@pytest.fixture
def make_coach():
    def _make(venue=None, **overrides):
        fields = dict(
            user_id="coach-user-1",
            name="Karma",
            hourly_rate=500,
            sports="futsal",
            service_mode=ServiceMode.FREELANCE,
            venue_id=venue.id if venue else None,
        )
        fields.update(overrides)
        coach = Coach(**fields)
        db.session.add(coach)
        db.session.commit()
        return coach

    return _make


@pytest.fixture
def make_promo():
    def _make(code="SAVE300", discount_type="FIXED_AMOUNT", discount_value=300, **overrides):
        fields = dict(
            valid_from=NOW - timedelta(days=1),
            valid_until=NOW + timedelta(days=30),
        )
        fields.update(overrides)
        return promo_engine.create_promo(code, discount_type, discount_value, **fields)

    return _make


@pytest.fixture
def venue(make_venue):
    return make_venue()


@pytest.fixture
def coach(make_coach, venue):
    return make_coach(venue)


SLOT = dict(day=DAY, start=time(18, 0), end=time(20, 0))
