"""Per-ticket-type inventory counters and the only code allowed to move them.

Every mutation is a conditional UPDATE that re-states the ledger invariant
(sold + reserved <= capacity, both counters non-negative) in its WHERE clause,
so two requests racing on a stale read can never both win. Callers pass in the
session of the transaction they are running; nothing here commits.
"""

from collections import OrderedDict
from datetime import datetime
from decimal import Decimal
from typing import Dict, Iterable, List, Optional
import logging
import uuid

from errors import (
    InsufficientInventory, InvalidQuantity, OutsideSaleWindow, ReservationNotActive,
    TicketTypeNotFound,
)
from models import (
    Reservation, ReservationItem, ReservationStatus, TicketType, as_utc,
)

logger = logging.getLogger(__name__)

CENTS = Decimal('0.01')


class LedgerInvariantViolation(RuntimeError):
    """A counter update matched no row; the transaction must roll back."""


def within_sale_window(now: datetime, start: Optional[datetime], end: Optional[datetime]) -> bool:
    start, end = as_utc(start), as_utc(end)
    if start is not None and now < start:
        return False
    if end is not None and now > end:
        return False
    return True


def merge_items(items: Iterable[Dict]) -> "OrderedDict[uuid.UUID, int]":
    """Collapse cart lines into {ticket_type_id: quantity}, summing repeated types."""
    merged: "OrderedDict[uuid.UUID, int]" = OrderedDict()
    for item in items:
        raw_id = item['ticket_type_id']
        try:
            ticket_type_id = raw_id if isinstance(raw_id, uuid.UUID) else uuid.UUID(str(raw_id))
        except ValueError:
            raise TicketTypeNotFound("Ticket type not found", ticket_type_id=str(raw_id))
        quantity = item['quantity']
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
            raise InvalidQuantity(
                "Quantity must be a positive integer", ticket_type_id=str(ticket_type_id)
            )
        merged[ticket_type_id] = merged.get(ticket_type_id, 0) + quantity
    if not merged:
        raise InvalidQuantity("At least one ticket must be requested")
    return merged


class InventoryLedger:

    def check_and_reserve(
        self,
        session,
        user_id: str,
        event_id: uuid.UUID,
        items: Iterable[Dict],
        *,
        now: datetime,
        expires_at: datetime,
        payment_processor: Optional[str] = None,
    ) -> Reservation:
        """Validate every line, move the quantities into reserved_count and persist the hold.

        All-or-nothing: the first failing line raises and the caller's
        transaction rolls back every increment made so far.
        """
        requested = merge_items(items)

        # Lock in a stable order so two carts sharing types cannot deadlock
        type_ids = sorted(requested, key=str)
        locked = (
            session.query(TicketType)
            .filter(TicketType.id.in_(type_ids))
            .order_by(TicketType.id)
            .with_for_update()
            .all()
        )
        by_id = {ticket_type.id: ticket_type for ticket_type in locked}

        for type_id in type_ids:
            ticket_type = by_id.get(type_id)
            if ticket_type is None or ticket_type.event_id != event_id or not ticket_type.active:
                raise TicketTypeNotFound("Ticket type not found", ticket_type_id=str(type_id))

            quantity = requested[type_id]
            if quantity < ticket_type.min_per_order:
                raise InvalidQuantity(
                    f"Minimum order quantity for {ticket_type.name} is {ticket_type.min_per_order}",
                    ticket_type_id=str(type_id),
                )
            if quantity > ticket_type.max_per_order:
                raise InvalidQuantity(
                    f"Maximum order quantity for {ticket_type.name} is {ticket_type.max_per_order}",
                    ticket_type_id=str(type_id),
                )
            if not within_sale_window(now, ticket_type.sale_start, ticket_type.sale_end):
                raise OutsideSaleWindow(
                    f"{ticket_type.name} is not available for sale at this time",
                    ticket_type_id=str(type_id),
                )
            if quantity > ticket_type.available:
                raise InsufficientInventory(type_id, ticket_type.available)

        total = Decimal('0')
        for type_id in type_ids:
            quantity = requested[type_id]
            updated = session.query(TicketType).filter(
                TicketType.id == type_id,
                TicketType.sold_count + TicketType.reserved_count + quantity <= TicketType.capacity,
            ).update(
                {TicketType.reserved_count: TicketType.reserved_count + quantity},
                synchronize_session=False
            )
            if updated != 1:
                session.refresh(by_id[type_id])
                raise InsufficientInventory(type_id, by_id[type_id].available)
            total += Decimal(by_id[type_id].price) * quantity

        reservation = Reservation(
            id=uuid.uuid4(),
            user_id=user_id,
            event_id=event_id,
            total_amount=total.quantize(CENTS),
            status=ReservationStatus.ACTIVE,
            expires_at=expires_at,
            payment_processor=payment_processor,
            created_at=now,
        )
        session.add(reservation)
        for type_id, quantity in requested.items():
            session.add(ReservationItem(
                id=uuid.uuid4(),
                reservation_id=reservation.id,
                ticket_type_id=type_id,
                quantity=quantity,
            ))
        session.flush()
        return reservation

    def release(
        self,
        session,
        reservation_id: uuid.UUID,
        status: ReservationStatus = ReservationStatus.EXPIRED,
        expired_before: Optional[datetime] = None,
    ) -> Optional[int]:
        """Move an active reservation to ``status`` and hand its quantities back.

        Returns the number of tickets released, or None when the reservation
        was no longer active (already released, converted, or not yet expired
        when ``expired_before`` is given). Exactly one concurrent caller wins.
        """
        if status not in (ReservationStatus.EXPIRED, ReservationStatus.CANCELLED):
            raise ValueError(f"cannot release into {status}")

        query = session.query(Reservation).filter(
            Reservation.id == reservation_id,
            Reservation.status == ReservationStatus.ACTIVE,
        )
        if expired_before is not None:
            query = query.filter(Reservation.expires_at < expired_before)
        flipped = query.update({Reservation.status: status}, synchronize_session=False)
        if not flipped:
            return None

        released = 0
        for item in self._items(session, reservation_id):
            updated = session.query(TicketType).filter(
                TicketType.id == item.ticket_type_id,
                TicketType.reserved_count >= item.quantity,
            ).update(
                {TicketType.reserved_count: TicketType.reserved_count - item.quantity},
                synchronize_session=False
            )
            if updated != 1:
                raise LedgerInvariantViolation(
                    f"reserved_count underflow on ticket type {item.ticket_type_id}"
                )
            released += item.quantity

        logger.info(f"Released {released} tickets from reservation {reservation_id} ({status.value})")
        return released

    def commit(self, session, reservation_id: uuid.UUID) -> List[ReservationItem]:
        """Flip an active reservation to converted and move its quantities from reserved to sold."""
        flipped = session.query(Reservation).filter(
            Reservation.id == reservation_id,
            Reservation.status == ReservationStatus.ACTIVE,
        ).update({Reservation.status: ReservationStatus.CONVERTED}, synchronize_session=False)
        if not flipped:
            current = session.query(Reservation.status).filter(Reservation.id == reservation_id).scalar()
            raise ReservationNotActive(reservation_id, current.value if current else 'missing')

        items = self._items(session, reservation_id)
        for item in items:
            updated = session.query(TicketType).filter(
                TicketType.id == item.ticket_type_id,
                TicketType.reserved_count >= item.quantity,
                TicketType.sold_count + item.quantity <= TicketType.capacity,
            ).update(
                {
                    TicketType.reserved_count: TicketType.reserved_count - item.quantity,
                    TicketType.sold_count: TicketType.sold_count + item.quantity,
                },
                synchronize_session=False
            )
            if updated != 1:
                raise LedgerInvariantViolation(
                    f"cannot commit {item.quantity} tickets on ticket type {item.ticket_type_id}"
                )
        return items

    def return_sold(self, session, lines: Iterable) -> int:
        """Give refunded quantities back to inventory. ``lines`` need ticket_type_id and quantity."""
        returned = 0
        for line in lines:
            updated = session.query(TicketType).filter(
                TicketType.id == line.ticket_type_id,
                TicketType.sold_count >= line.quantity,
            ).update(
                {TicketType.sold_count: TicketType.sold_count - line.quantity},
                synchronize_session=False
            )
            if updated != 1:
                raise LedgerInvariantViolation(
                    f"sold_count underflow on ticket type {line.ticket_type_id}"
                )
            returned += line.quantity
        return returned

    def availability(self, session, event_id: uuid.UUID, now: datetime) -> List[Dict]:
        """Current counters for every ticket type of an event."""
        ticket_types = (
            session.query(TicketType)
            .filter(TicketType.event_id == event_id)
            .order_by(TicketType.price, TicketType.name)
            .all()
        )
        rows = []
        for ticket_type in ticket_types:
            available = max(ticket_type.available, 0)
            rows.append({
                "ticket_type_id": str(ticket_type.id),
                "name": ticket_type.name,
                "description": ticket_type.description,
                "price": str(Decimal(ticket_type.price).quantize(CENTS)),
                "capacity": ticket_type.capacity,
                "sold_count": ticket_type.sold_count,
                "reserved_count": ticket_type.reserved_count,
                "available": available,
                "min_per_order": ticket_type.min_per_order,
                "max_per_order": ticket_type.max_per_order,
                "sale_start": _isoformat(ticket_type.sale_start),
                "sale_end": _isoformat(ticket_type.sale_end),
                "is_available": bool(ticket_type.active) and within_sale_window(
                    now, ticket_type.sale_start, ticket_type.sale_end
                ),
                "is_sold_out": available == 0,
            })
        return rows

    @staticmethod
    def _items(session, reservation_id) -> List[ReservationItem]:
        # Same row order check_and_reserve locks in
        return (
            session.query(ReservationItem)
            .filter(ReservationItem.reservation_id == reservation_id)
            .order_by(ReservationItem.ticket_type_id)
            .all()
        )


def _isoformat(value) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value is not None else None
