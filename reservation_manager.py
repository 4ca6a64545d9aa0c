"""First checkout phase: turn a cart into a short-lived hold on inventory."""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Dict, List, Optional
import logging
import uuid

from errors import EventNotActive, OutsideSaleWindow, ReservationNotActive, ReservationNotFound
from expiry_reclaimer import ExpiryReclaimer
from inventory_ledger import CENTS, InventoryLedger, within_sale_window
from models import (
    Event, EventStatus, Reservation, ReservationItem, ReservationStatus, TicketType, as_utc, utcnow,
)

logger = logging.getLogger(__name__)

DEFAULT_HOLD_DURATION = timedelta(minutes=10)


def parse_uuid(value, error):
    """Coerce an identifier to UUID, raising ``error`` for anything malformed."""
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        raise error


@dataclass
class ReservationResult:
    reservation_id: str
    expires_at: datetime
    total_amount: Decimal
    hold_duration_minutes: int

    def to_dict(self) -> Dict:
        return {
            "reservation_id": self.reservation_id,
            "expires_at": self.expires_at.isoformat(),
            "total_amount": str(self.total_amount),
            "hold_duration_minutes": self.hold_duration_minutes,
        }


class ReservationManager:

    def __init__(
        self,
        db,
        ledger: InventoryLedger,
        reclaimer: ExpiryReclaimer,
        hold_duration: timedelta = DEFAULT_HOLD_DURATION,
        clock=utcnow,
    ):
        self.db = db
        self.ledger = ledger
        self.reclaimer = reclaimer
        self.hold_duration = hold_duration
        self.clock = clock

    def reserve(self, user_id: str, event_id, items: List[Dict]) -> ReservationResult:
        """Hold the requested quantities for ``hold_duration``.

        Raises:
            EventNotActive: unknown event, or not in the active state.
            OutsideSaleWindow: the event or one of its ticket types is not on sale now.
            TicketTypeNotFound: a line names a type that is missing, inactive or of another event.
            InvalidQuantity: a line violates the type's min/max per order.
            InsufficientInventory: not enough tickets left for a line.
        """
        event_uuid = parse_uuid(event_id, EventNotActive("Event not found or inactive"))
        # Stale holds on this event must not count against the new request
        self.reclaimer.expire_stale(event_id=event_uuid)

        with self.db.get_session() as session:
            now = self.clock()
            reservation = self.create_in(
                session, user_id, event_uuid, items,
                now=now, hold_duration=self.hold_duration, payment_processor=None,
            )
            result = ReservationResult(
                reservation_id=str(reservation.id),
                expires_at=reservation.expires_at,
                total_amount=reservation.total_amount,
                hold_duration_minutes=int(self.hold_duration.total_seconds() // 60),
            )

        logger.info(
            f"Reservation created: {result.reservation_id} user={user_id} "
            f"total={result.total_amount} expires_at={result.expires_at.isoformat()}"
        )
        return result

    def create_in(
        self,
        session,
        user_id: str,
        event_id: uuid.UUID,
        items: List[Dict],
        *,
        now: datetime,
        hold_duration: timedelta,
        payment_processor: Optional[str],
    ) -> Reservation:
        """Validate the event and place the hold inside the caller's transaction."""
        if not user_id:
            raise ValueError("an authenticated user id is required to reserve tickets")
        self.require_active_event(session, event_id, now)
        return self.ledger.check_and_reserve(
            session, user_id, event_id, items,
            now=now,
            expires_at=now + hold_duration,
            payment_processor=payment_processor,
        )

    @staticmethod
    def require_active_event(session, event_id, now: datetime) -> Event:
        event_row = session.get(Event, event_id)
        if event_row is None or event_row.status != EventStatus.ACTIVE:
            raise EventNotActive("Event not found or inactive")
        if not within_sale_window(now, event_row.sale_start, event_row.sale_end):
            raise OutsideSaleWindow("Tickets for this event are not on sale at this time")
        return event_row

    def cancel(self, reservation_id, user_id: str) -> Dict:
        """Abandon an active hold and release its inventory. Owner only."""
        reservation_uuid = parse_uuid(reservation_id, ReservationNotFound())
        self.reclaimer.expire_if_stale(reservation_uuid)

        with self.db.get_session() as session:
            reservation = (
                session.query(Reservation)
                .filter(Reservation.id == reservation_uuid)
                .with_for_update()
                .first()
            )
            if reservation is None or reservation.user_id != user_id:
                raise ReservationNotFound()
            if reservation.status != ReservationStatus.ACTIVE:
                raise ReservationNotActive(reservation.id, reservation.status.value)

            released = self.ledger.release(session, reservation.id, ReservationStatus.CANCELLED)
            if released is None:
                raise ReservationNotActive(reservation.id, 'released')

        logger.info(f"Reservation cancelled: {reservation_uuid}, {released} tickets released")
        return {
            "reservation_id": str(reservation_uuid),
            "status": ReservationStatus.CANCELLED.value,
            "released_tickets": released,
        }

    def list_user_reservations(
        self, user_id: str, status: Optional[ReservationStatus] = ReservationStatus.ACTIVE
    ) -> List[Dict]:
        """Return the user's reservations, newest first, with their items."""
        self.reclaimer.expire_stale(user_id=user_id)

        with self.db.get_session() as session:
            query = session.query(Reservation, Event.name).join(
                Event, Event.id == Reservation.event_id
            ).filter(Reservation.user_id == user_id)
            if status is not None:
                query = query.filter(Reservation.status == status)
            rows = query.order_by(Reservation.created_at.desc()).all()

            results = []
            for reservation, event_name in rows:
                items = (
                    session.query(ReservationItem, TicketType)
                    .join(TicketType, TicketType.id == ReservationItem.ticket_type_id)
                    .filter(ReservationItem.reservation_id == reservation.id)
                    .all()
                )
                results.append({
                    "reservation_id": str(reservation.id),
                    "event_id": str(reservation.event_id),
                    "event_name": event_name,
                    "total_amount": str(Decimal(reservation.total_amount).quantize(CENTS)),
                    "expires_at": as_utc(reservation.expires_at).isoformat(),
                    "status": reservation.status.value,
                    "payment_session_id": reservation.payment_session_id,
                    "created_at": as_utc(reservation.created_at).isoformat(),
                    "items": [
                        {
                            "ticket_type_id": str(item.ticket_type_id),
                            "ticket_name": ticket_type.name,
                            "quantity": item.quantity,
                            "price": str(Decimal(ticket_type.price).quantize(CENTS)),
                        }
                        for item, ticket_type in items
                    ],
                })
            return results

    def get_availability(self, event_id) -> List[Dict]:
        """Ticket availability for an event, after releasing its stale holds."""
        event_uuid = parse_uuid(event_id, EventNotActive("Event not found"))
        self.reclaimer.expire_stale(event_id=event_uuid)

        with self.db.get_session() as session:
            if session.get(Event, event_uuid) is None:
                raise EventNotActive("Event not found")
            return self.ledger.availability(session, event_uuid, self.clock())
