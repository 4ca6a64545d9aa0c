"""Releases holds whose expires_at has passed.

Expiry is data-driven: nothing waits on a timer. Read paths call one of the
``expire_*`` methods before they look at reservation or availability state,
and an optional background sweep catches the holds nobody reads again.
"""

from dataclasses import asdict, dataclass
import atexit
import logging
import signal
import threading

from inventory_ledger import InventoryLedger
from models import Reservation, ReservationStatus, utcnow

logger = logging.getLogger(__name__)


@dataclass
class ExpiryResult:
    expired_count: int = 0
    released_tickets: int = 0

    def __add__(self, other: 'ExpiryResult') -> 'ExpiryResult':
        return ExpiryResult(
            self.expired_count + other.expired_count,
            self.released_tickets + other.released_tickets,
        )

    def to_dict(self):
        return asdict(self)


class ExpiryReclaimer:

    def __init__(self, db, ledger: InventoryLedger, clock=utcnow):
        self.db = db
        self.ledger = ledger
        self.clock = clock

    def expire_stale_in(
        self,
        session,
        now,
        *,
        reservation_id=None,
        event_id=None,
        user_id=None,
        limit=None,
        skip_locked=False,
    ) -> ExpiryResult:
        """Expire matching stale reservations inside the caller's transaction."""
        query = session.query(Reservation.id).filter(
            Reservation.status == ReservationStatus.ACTIVE,
            Reservation.expires_at < now,
        )
        if reservation_id is not None:
            query = query.filter(Reservation.id == reservation_id)
        if event_id is not None:
            query = query.filter(Reservation.event_id == event_id)
        if user_id is not None:
            query = query.filter(Reservation.user_id == user_id)
        query = query.order_by(Reservation.expires_at)
        if limit:
            query = query.limit(limit)
        if skip_locked:
            # Parallel sweepers on other instances take disjoint batches
            query = query.with_for_update(skip_locked=True)

        result = ExpiryResult()
        for (stale_id,) in query.all():
            # Conditional on status: a racing reader may have released it already
            released = self.ledger.release(
                session, stale_id, ReservationStatus.EXPIRED, expired_before=now
            )
            if released is not None:
                result.expired_count += 1
                result.released_tickets += released
        return result

    def expire_if_stale(self, reservation_id) -> bool:
        """Read-time tick for a single reservation. Returns True if this call expired it."""
        with self.db.get_session() as session:
            result = self.expire_stale_in(session, self.clock(), reservation_id=reservation_id)
        return result.expired_count > 0

    def expire_stale(self, *, event_id=None, user_id=None) -> ExpiryResult:
        """Read-time tick scoped to an event or a user."""
        with self.db.get_session() as session:
            return self.expire_stale_in(session, self.clock(), event_id=event_id, user_id=user_id)

    def sweep(self, batch_size: int = 100) -> ExpiryResult:
        """Expire every stale reservation, one batch per transaction."""
        total = ExpiryResult()
        while True:
            with self.db.get_session() as session:
                batch = self.expire_stale_in(
                    session, self.clock(), limit=batch_size, skip_locked=True
                )
            total = total + batch
            if batch.expired_count < batch_size:
                break
        if total.expired_count > 0:
            logger.info(
                f"Sweep expired {total.expired_count} reservations, "
                f"released {total.released_tickets} tickets"
            )
        return total


class BackgroundSweeper:
    """Periodically run the sweep on a daemon thread so it never blocks HTTP traffic."""

    def __init__(self, reclaimer: ExpiryReclaimer, interval_seconds: int = 10, batch_size: int = 100):
        self.reclaimer = reclaimer
        self.interval_seconds = interval_seconds
        self.batch_size = batch_size
        self._stop = threading.Event()
        self._thread = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self):
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name='reservation-sweeper', daemon=True)
        self._thread.start()
        logger.info(f"Background sweep started (every {self.interval_seconds}s)")

    def _run(self):
        while not self._stop.is_set():
            try:
                self.reclaimer.sweep(self.batch_size)
            except Exception as e:
                logger.error(f"Background sweep error: {e}")
            self._stop.wait(self.interval_seconds)
        logger.info("Sweep thread terminated gracefully.")

    def stop(self, *args):
        """Signal handler to terminate the sweeper gracefully."""
        if not self._stop.is_set():
            self._stop.set()
            logger.info("Stopping background sweep...")

    def join(self, timeout=None):
        if self._thread is not None:
            self._thread.join(timeout)

    def install_signal_handlers(self):
        """Stop the sweeper on SIGTERM/SIGINT, then hand the signal to whatever handled it before."""
        for signum in (signal.SIGTERM, signal.SIGINT):
            signal.signal(signum, self._chain(signal.getsignal(signum)))
        # Fallback for local runs
        atexit.register(self.stop)

    def _chain(self, previous):
        def handler(signum, frame):
            self.stop()
            if callable(previous):
                # SIGINT's default handler raises KeyboardInterrupt so app.run still exits
                previous(signum, frame)
            elif previous == signal.SIG_DFL:
                signal.signal(signum, signal.SIG_DFL)
                signal.raise_signal(signum)
        return handler
