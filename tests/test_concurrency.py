import random
import threading
from datetime import time, timedelta

import pytest

from conftest import NOW, DAY, SLOT
from models import db
from models.booking import Booking, BookingStatus
from models.slot_hold import SlotHold
from models.venue import Venue
from services import booking_service, payment_ledger, slot_ledger
from services.errors import Conflict
from services.locks import KeyedLocks

HOLD = timedelta(minutes=10)


def _run_threads(app, target, args_list):
    results = []
    errors = []
    guard = threading.Lock()
    barrier = threading.Barrier(len(args_list))

    def worker(args):
        with app.app_context():
            barrier.wait()
            try:
                outcome = target(*args)
            except Conflict:
                outcome = None
            except Exception as exc:
                with guard:
                    errors.append(exc)
                return
            finally:
                db.session.remove()
            with guard:
                results.append((args, outcome))

    threads = [threading.Thread(target=worker, args=(a,)) for a in args_list]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert errors == []
    return results


class TestKeyedLocks:
    def test_registry_is_emptied_after_use(self):
        registry = KeyedLocks()
        with registry.acquire("a"):
            with registry.acquire("b"):
                assert len(registry) == 2
        assert len(registry) == 0

    def test_same_key_is_exclusive(self):
        registry = KeyedLocks()
        inside = []
        overlap = []

        def work():
            with registry.acquire("k"):
                inside.append(1)
                if len(inside) > 1:
                    overlap.append(1)
                inside.pop()

        threads = [threading.Thread(target=work) for _ in range(20)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert overlap == []


class TestConcurrentHolds:
    def test_random_requests_never_double_book(self, file_app):
        rng = random.Random(42)
        requests = []
        for _ in range(24):
            start = rng.randint(8, 18)
            length = rng.randint(1, 3)
            requests.append((time(start), time(min(start + length, 22))))

        def attempt(start, end):
            return slot_ledger.try_hold("venue:1", DAY, start, end, HOLD, now=NOW)

        results = _run_threads(file_app, attempt, requests)
        granted = [args for args, token in results if token]
        assert granted

        for i, (a, b) in enumerate(granted):
            for c, d in granted[i + 1:]:
                assert not slot_ledger.overlaps(a, b, c, d)
        assert SlotHold.query.count() == len(granted)

    def test_same_slot_only_one_winner(self, file_app):
        def attempt(_):
            return slot_ledger.try_hold("venue:1", DAY, time(18), time(19), HOLD, now=NOW)

        results = _run_threads(file_app, attempt, [(i,) for i in range(8)])
        assert len([token for _, token in results if token]) == 1


class TestConcurrentBookings:
    def test_two_players_same_slot(self, file_app):
        venue = Venue(name="Arena", owner_user_id="owner-1", hourly_rate=1000, sports="futsal")
        db.session.add(venue)
        db.session.commit()
        venue_id = venue.id

        def attempt(player):
            booking = booking_service.initiate(player, venue_id, "futsal", now=NOW, **SLOT)
            return booking.id

        results = _run_threads(file_app, attempt, [("player-1",), ("player-2",)])
        winners = [booking_id for _, booking_id in results if booking_id]
        assert len(winners) == 1
        assert Booking.query.count() == 1

    def test_payment_and_sweep_race(self, file_app):
        venue = Venue(name="Arena", owner_user_id="owner-1", hourly_rate=1000, sports="futsal")
        db.session.add(venue)
        db.session.commit()
        booking = booking_service.initiate("player-1", venue.id, "futsal", now=NOW, **SLOT)
        booking_id = booking.id
        payment_id = payment_ledger.for_booking(booking_id)[0].id
        db.session.remove()

        moment = NOW + timedelta(minutes=10)

        def pay():
            return booking_service.settle_payment(payment_id, True, now=moment).status

        def sweep():
            return booking_service.sweep(now=moment).expired

        _run_threads(file_app, lambda fn: fn(), [(pay,), (sweep,)])

        booking = booking_service.get_booking(booking_id)
        assert booking.status == BookingStatus.CANCELLED
        payment = payment_ledger.get(payment_id)
        assert payment.refund_requested_at is not None
