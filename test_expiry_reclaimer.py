from concurrent.futures import ThreadPoolExecutor
import signal
import time
import uuid

import pytest

from expiry_reclaimer import BackgroundSweeper, ExpiryResult
from models import Reservation, ReservationStatus


def hold(services, event, user_id, quantity=1):
    result = services.reservations.reserve(
        user_id, event.id, [{"ticket_type_id": str(event.general_id), "quantity": quantity}]
    )
    return uuid.UUID(result.reservation_id)


def status_of(db, reservation_id):
    with db.get_session() as session:
        return session.get(Reservation, reservation_id).status


def test_expire_if_stale_only_after_deadline(services, event, clock, db, counts):
    reservation_id = hold(services, event, 'user-1', 2)

    assert services.reclaimer.expire_if_stale(reservation_id) is False
    assert status_of(db, reservation_id) == ReservationStatus.ACTIVE

    clock.advance(minutes=10)
    # expires_at is exclusive: a hold is still live at its exact deadline
    assert services.reclaimer.expire_if_stale(reservation_id) is False

    clock.advance(seconds=1)
    assert services.reclaimer.expire_if_stale(reservation_id) is True
    assert services.reclaimer.expire_if_stale(reservation_id) is False
    assert status_of(db, reservation_id) == ReservationStatus.EXPIRED
    assert counts(event.general_id) == (0, 0)


def test_racing_ticks_release_once(services, event, clock, counts):
    reservation_id = hold(services, event, 'user-1', 3)
    hold(services, event, 'user-2', 2)
    clock.advance(minutes=11)

    with ThreadPoolExecutor(max_workers=8) as executor:
        outcomes = list(executor.map(lambda _: services.reclaimer.expire_if_stale(reservation_id), range(8)))

    assert outcomes.count(True) == 1
    assert counts(event.general_id) == (0, 2)


def test_expire_stale_scoped_by_user(services, event, clock, db):
    mine = hold(services, event, 'user-1')
    theirs = hold(services, event, 'user-2')
    clock.advance(minutes=11)

    result = services.reclaimer.expire_stale(user_id='user-1')

    assert result == ExpiryResult(expired_count=1, released_tickets=1)
    assert status_of(db, mine) == ReservationStatus.EXPIRED
    assert status_of(db, theirs) == ReservationStatus.ACTIVE


def test_sweep_drains_in_batches(services, event, clock, counts):
    for n in range(5):
        hold(services, event, f'user-{n}', 2)
    clock.advance(minutes=11)

    result = services.reclaimer.sweep(batch_size=2)

    assert result.to_dict() == {"expired_count": 5, "released_tickets": 10}
    assert counts(event.general_id) == (0, 0)
    assert services.reclaimer.sweep(batch_size=2) == ExpiryResult()


def test_sweep_leaves_live_and_terminal_reservations(services, event, clock, db, counts):
    cancelled = hold(services, event, 'user-1')
    services.reservations.cancel(str(cancelled), 'user-1')
    hold(services, event, 'user-2', 2)
    clock.advance(minutes=5)
    live = hold(services, event, 'user-3', 3)
    clock.advance(minutes=6)

    result = services.reclaimer.sweep()

    assert result.expired_count == 1
    assert status_of(db, cancelled) == ReservationStatus.CANCELLED
    assert status_of(db, live) == ReservationStatus.ACTIVE
    assert counts(event.general_id) == (0, 3)


def test_expiry_results_add_up():
    total = ExpiryResult(1, 2) + ExpiryResult(3, 4)
    assert total == ExpiryResult(expired_count=4, released_tickets=6)


def test_background_sweeper_releases_abandoned_holds(services, event, clock, counts):
    for n in range(3):
        hold(services, event, f'user-{n}')
    clock.advance(minutes=11)

    sweeper = BackgroundSweeper(services.reclaimer, interval_seconds=0.05, batch_size=10)
    sweeper.start()
    try:
        deadline = time.monotonic() + 5
        while counts(event.general_id) != (0, 0) and time.monotonic() < deadline:
            time.sleep(0.05)
        assert sweeper.running
    finally:
        sweeper.stop()
        sweeper.join(timeout=5)

    assert counts(event.general_id) == (0, 0)
    assert not sweeper.running


@pytest.fixture
def restore_signals():
    saved = {signum: signal.getsignal(signum) for signum in (signal.SIGTERM, signal.SIGINT)}
    yield
    for signum, handler in saved.items():
        signal.signal(signum, handler)


def test_signal_handlers_chain_to_the_previous_handler(services, restore_signals):
    seen = []
    signal.signal(signal.SIGTERM, lambda signum, frame: seen.append(signum))
    sweeper = BackgroundSweeper(services.reclaimer, interval_seconds=60)
    sweeper.start()
    sweeper.install_signal_handlers()

    signal.getsignal(signal.SIGTERM)(signal.SIGTERM, None)
    sweeper.join(timeout=5)

    assert seen == [signal.SIGTERM]
    assert not sweeper.running


def test_ctrl_c_still_interrupts_the_server(services, restore_signals):
    signal.signal(signal.SIGINT, signal.default_int_handler)
    sweeper = BackgroundSweeper(services.reclaimer, interval_seconds=60)
    sweeper.start()
    sweeper.install_signal_handlers()

    with pytest.raises(KeyboardInterrupt):
        signal.getsignal(signal.SIGINT)(signal.SIGINT, None)
    sweeper.join(timeout=5)
    assert not sweeper.running
