"""Second checkout phase: bridge an active reservation to a confirmed payment.

State machine per reservation::

    active --billing submitted, session opened--> active (payment_session_id set)
    active --processor confirms, before expiry--> converted (order + tickets)
    active --expires_at passes-------------------> expired  (inventory released)
    active --buyer cancels----------------------> cancelled (inventory released)

converted, expired and cancelled are terminal. The processor call in
``initiate_payment`` happens between two transactions so no row lock is
held while waiting on the network.
"""

from datetime import timedelta
from decimal import ROUND_HALF_UP, Decimal
from typing import Dict, List, Optional
import logging

from errors import (
    CashSalesDisabled, EventNotActive, InvalidBillingInfo, OrderNotFound, OrderNotRefundable,
    PaymentForLapsedReservation, ReservationExpired, ReservationNotActive, ReservationNotFound,
)
from expiry_reclaimer import ExpiryReclaimer
from inventory_ledger import CENTS, InventoryLedger
from models import (
    Event, Order, OrderItem, PaymentStatus, Platform, Reservation, ReservationStatus, Ticket,
    TicketStatus, TicketType, as_utc, utcnow,
)
from payment_gateway import PaymentGateway
from reservation_manager import ReservationManager, parse_uuid
from ticket_materializer import TicketMaterializer

logger = logging.getLogger(__name__)

DOCUMENT_TYPES = ('CC', 'CE', 'DNI', 'RUT', 'RFC', 'CPF', 'PASSPORT', 'OTHER')
REQUIRED_BILLING_FIELDS = ('document_type', 'document_number', 'first_name', 'last_name', 'email')
OPTIONAL_BILLING_FIELDS = ('second_name', 'second_last_name')


def validate_billing_info(billing_info) -> Dict:
    """Return a cleaned copy of the buyer's invoicing details."""
    if not isinstance(billing_info, dict):
        raise InvalidBillingInfo("billing_info must be an object")
    cleaned = {}
    for field in REQUIRED_BILLING_FIELDS:
        value = billing_info.get(field)
        if not isinstance(value, str) or not value.strip():
            raise InvalidBillingInfo(f"{field} is required", field=field)
        cleaned[field] = value.strip()
    for field in OPTIONAL_BILLING_FIELDS:
        value = billing_info.get(field)
        if value is not None:
            if not isinstance(value, str):
                raise InvalidBillingInfo(f"{field} must be a string", field=field)
            if value.strip():
                cleaned[field] = value.strip()
    cleaned['document_type'] = cleaned['document_type'].upper()
    if cleaned['document_type'] not in DOCUMENT_TYPES:
        raise InvalidBillingInfo("Unsupported document type", field='document_type')
    if '@' not in cleaned['email']:
        raise InvalidBillingInfo("email is invalid", field='email')
    cleaned['email'] = cleaned['email'].lower()
    return cleaned


def marketplace_fee(total: Decimal, percentage: Decimal) -> Decimal:
    return (Decimal(total) * Decimal(percentage) / Decimal(100)).quantize(CENTS, rounding=ROUND_HALF_UP)


def order_result(order: Order, tickets: List[Ticket]) -> Dict:
    return {
        "order_id": str(order.id),
        "payment_status": order.payment_status.value,
        "ticket_ids": [str(ticket.id) for ticket in tickets],
        "ticket_codes": [ticket.qr_code for ticket in tickets],
    }


class CheckoutCoordinator:

    def __init__(
        self,
        db,
        ledger: InventoryLedger,
        reservations: ReservationManager,
        reclaimer: ExpiryReclaimer,
        gateway: PaymentGateway,
        materializer: TicketMaterializer,
        *,
        app_url: str = 'http://localhost:5000',
        fee_percentage: Decimal = Decimal('5'),
        cash_hold_duration: timedelta = timedelta(minutes=5),
        clock=utcnow,
    ):
        self.db = db
        self.ledger = ledger
        self.reservations = reservations
        self.reclaimer = reclaimer
        self.gateway = gateway
        self.materializer = materializer
        self.app_url = app_url.rstrip('/')
        self.fee_percentage = Decimal(fee_percentage)
        self.cash_hold_duration = cash_hold_duration
        self.clock = clock

    def _load_active(self, session, reservation_id, user_id=None, lock=False) -> Reservation:
        query = session.query(Reservation).filter(Reservation.id == reservation_id)
        if lock:
            query = query.with_for_update()
        reservation = query.first()
        if reservation is None or (user_id is not None and reservation.user_id != user_id):
            raise ReservationNotFound()
        if reservation.status == ReservationStatus.EXPIRED:
            raise ReservationExpired(reservation.id)
        if reservation.status != ReservationStatus.ACTIVE:
            raise ReservationNotActive(reservation.id, reservation.status.value)
        if as_utc(reservation.expires_at) < self.clock():
            # Lapsed after the read-time tick; the next tick or sweep releases it
            raise ReservationExpired(reservation.id)
        return reservation

    def initiate_payment(self, reservation_id, billing_info, user_id: Optional[str] = None) -> Dict:
        """Open a processor session for an active reservation and return its checkout URL.

        Raises:
            ReservationNotFound: unknown id, or owned by someone else.
            ReservationExpired: the hold lapsed before or during the call.
            ReservationNotActive: already converted or cancelled.
            InvalidBillingInfo: missing or malformed invoicing details.
            PaymentGatewayError: the processor could not open a session.
        """
        billing = validate_billing_info(billing_info)
        reservation_uuid = parse_uuid(reservation_id, ReservationNotFound())
        self.reclaimer.expire_if_stale(reservation_uuid)

        with self.db.get_session() as session:
            reservation = self._load_active(session, reservation_uuid, user_id)
            event_row = session.get(Event, reservation.event_id)
            amount = Decimal(reservation.total_amount).quantize(CENTS)
            currency = event_row.currency
            metadata = {
                "reservation_id": str(reservation.id),
                "event_id": str(reservation.event_id),
                "user_id": reservation.user_id,
                "platform": Platform.WEB.value,
                "expires_at": as_utc(reservation.expires_at).isoformat(),
            }

        # No transaction is open across the processor round-trip
        payment_session = self.gateway.create_payment_session(
            amount, currency, f"{self.app_url}/payment/success", metadata
        )

        with self.db.get_session() as session:
            reservation = self._load_active(session, reservation_uuid, user_id, lock=True)

            # A newer session supersedes any pending one for the same hold
            session.query(Order).filter(
                Order.reservation_id == reservation.id,
                Order.payment_status == PaymentStatus.PENDING,
            ).update({Order.payment_status: PaymentStatus.FAILED}, synchronize_session=False)

            reservation.payment_session_id = payment_session.session_id
            reservation.payment_processor = type(self.gateway).__name__
            reservation.billing_info = billing
            session.add(Order(
                user_id=reservation.user_id,
                event_id=reservation.event_id,
                reservation_id=reservation.id,
                total_amount=amount,
                payment_status=PaymentStatus.PENDING,
                payment_session_id=payment_session.session_id,
                platform=Platform.WEB,
                currency=currency,
                marketplace_fee=marketplace_fee(amount, self.fee_percentage),
                processor_fee=Decimal('0'),
                created_at=self.clock(),
            ))

        logger.info(
            f"Payment session opened: reservation={reservation_uuid} "
            f"session={payment_session.session_id} amount={amount} {currency}"
        )
        return {
            "reservation_id": str(reservation_uuid),
            "payment_session_id": payment_session.session_id,
            "checkout_url": payment_session.redirect_url,
        }

    def _find_by_session(self, session, session_id: str):
        """Resolve a processor session to (reservation, its order for that session)."""
        order = (
            session.query(Order)
            .filter(Order.payment_session_id == session_id)
            .order_by(Order.created_at.desc())
            .first()
        )
        if order is not None and order.reservation_id is not None:
            reservation_id = order.reservation_id
        else:
            reservation_id = (
                session.query(Reservation.id)
                .filter(Reservation.payment_session_id == session_id)
                .scalar()
            )
        if reservation_id is None:
            raise ReservationNotFound("No reservation for this payment session")
        reservation = (
            session.query(Reservation)
            .filter(Reservation.id == reservation_id)
            .with_for_update()
            .first()
        )
        if reservation is None:
            raise ReservationNotFound("No reservation for this payment session")
        return reservation, order

    def confirm_payment(self, session_id: str, processor_fee: Decimal = Decimal('0')) -> Dict:
        """Convert the reservation behind ``session_id`` into a paid order with tickets.

        Safe to call repeatedly for the same session: once converted, the
        existing order is returned. A payment that lands after the hold was
        released raises PaymentForLapsedReservation and must be refunded by
        an operator.
        """
        with self.db.get_session() as session:
            reservation, _ = self._find_by_session(session, session_id)
            reservation_uuid = reservation.id
        self.reclaimer.expire_if_stale(reservation_uuid)

        lapsed = None
        with self.db.get_session() as session:
            reservation, order = self._find_by_session(session, session_id)

            if reservation.status == ReservationStatus.CONVERTED:
                paid = (
                    session.query(Order)
                    .filter(
                        Order.reservation_id == reservation.id,
                        Order.payment_status.in_([PaymentStatus.PAID, PaymentStatus.REFUNDED]),
                    )
                    .first()
                )
                if paid is not None and paid.payment_session_id == session_id:
                    tickets = session.query(Ticket).filter(Ticket.order_id == paid.id).all()
                    logger.info(f"Duplicate confirmation for session {session_id}, order {paid.id}")
                    return order_result(paid, tickets)
                lapsed = PaymentForLapsedReservation(session_id, reservation.id, 'converted')
            elif reservation.status != ReservationStatus.ACTIVE:
                lapsed = PaymentForLapsedReservation(session_id, reservation.id, reservation.status.value)
            elif as_utc(reservation.expires_at) < self.clock():
                # Lapsed after the read-time tick; release it in this transaction
                self.ledger.release(
                    session, reservation.id, ReservationStatus.EXPIRED, expired_before=self.clock()
                )
                lapsed = PaymentForLapsedReservation(session_id, reservation.id, 'expired')
            else:
                order, tickets = self._convert(
                    session, reservation, order,
                    session_id=session_id,
                    platform=Platform.WEB,
                    processor_fee=Decimal(processor_fee),
                )
                result = order_result(order, tickets)

        if lapsed is not None:
            amount = order.total_amount if order is not None else None
            logger.error(
                f"RECONCILIATION REQUIRED: payment for lapsed reservation "
                f"session={session_id} reservation={lapsed.reservation_id} "
                f"status={lapsed.status} amount={amount}"
            )
            raise lapsed

        logger.info(
            f"Reservation converted: session={session_id} order={result['order_id']} "
            f"tickets={len(result['ticket_ids'])}"
        )
        return result

    def _convert(
        self,
        session,
        reservation: Reservation,
        order: Optional[Order],
        *,
        session_id: Optional[str],
        platform: Platform,
        processor_fee: Decimal = Decimal('0'),
        sold_by: Optional[str] = None,
    ):
        """Commit the ledger, finalize the order, snapshot prices and issue tickets in one transaction."""
        now = self.clock()
        items = self.ledger.commit(session, reservation.id)

        if order is None or order.payment_status != PaymentStatus.PENDING:
            event_row = session.get(Event, reservation.event_id)
            order = Order(
                user_id=reservation.user_id,
                event_id=reservation.event_id,
                reservation_id=reservation.id,
                total_amount=reservation.total_amount,
                payment_session_id=session_id,
                platform=platform,
                currency=event_row.currency,
                marketplace_fee=(
                    Decimal('0') if platform == Platform.CASH
                    else marketplace_fee(reservation.total_amount, self.fee_percentage)
                ),
                sold_by=sold_by,
                created_at=now,
            )
            session.add(order)
            session.flush()
        # Superseded sessions for the same hold can no longer be paid
        session.query(Order).filter(
            Order.reservation_id == reservation.id,
            Order.payment_status == PaymentStatus.PENDING,
            Order.id != order.id,
        ).update({Order.payment_status: PaymentStatus.FAILED}, synchronize_session=False)
        order.payment_status = PaymentStatus.PAID
        order.paid_at = now
        order.processor_fee = Decimal(processor_fee).quantize(CENTS)
        session.flush()

        prices = dict(
            session.query(TicketType.id, TicketType.price)
            .filter(TicketType.id.in_([item.ticket_type_id for item in items]))
            .all()
        )
        order_items = []
        for item in items:
            price = Decimal(prices[item.ticket_type_id]).quantize(CENTS)
            order_item = OrderItem(
                order_id=order.id,
                ticket_type_id=item.ticket_type_id,
                quantity=item.quantity,
                price_per_ticket=price,
                subtotal=(price * item.quantity).quantize(CENTS),
            )
            session.add(order_item)
            order_items.append(order_item)

        tickets = self.materializer.materialize(session, order, order_items, now=now)
        return order, tickets

    def record_payment_failure(self, session_id: str) -> Dict:
        """Mark the session's pending order failed; the hold stays active for a retry."""
        with self.db.get_session() as session:
            reservation, order = self._find_by_session(session, session_id)
            if order is not None and order.payment_status == PaymentStatus.PENDING:
                order.payment_status = PaymentStatus.FAILED
                logger.warning(f"Payment failed: session={session_id} reservation={reservation.id}")
            return {
                "reservation_id": str(reservation.id),
                "reservation_status": reservation.status.value,
                "payment_status": order.payment_status.value if order is not None else None,
            }

    def record_cash_sale(self, seller_id: str, buyer_id: str, event_id, items: List[Dict]) -> Dict:
        """Reserve and convert in one transaction for a sale paid in cash at the door."""
        if not seller_id or not buyer_id:
            raise ValueError("seller and buyer ids are required for a cash sale")
        event_uuid = parse_uuid(event_id, EventNotActive("Event not found or inactive"))
        self.reclaimer.expire_stale(event_id=event_uuid)

        with self.db.get_session() as session:
            event_row = session.get(Event, event_uuid)
            if event_row is not None and not event_row.cash_sales_enabled:
                raise CashSalesDisabled("Cash sales are disabled for this event")
            reservation = self.reservations.create_in(
                session, buyer_id, event_uuid, items,
                now=self.clock(),
                hold_duration=self.cash_hold_duration,
                payment_processor=Platform.CASH.value,
            )
            order, tickets = self._convert(
                session, reservation, None,
                session_id=None,
                platform=Platform.CASH,
                sold_by=seller_id,
            )
            result = order_result(order, tickets)

        logger.info(f"Cash sale by {seller_id}: order={result['order_id']} tickets={len(tickets)}")
        return result

    def refund_order(self, order_id, reason: Optional[str] = None) -> Dict:
        """Refund a paid order: cancel its tickets and return its quantities to inventory.

        Call after the money has been returned through the processor.
        """
        order_uuid = parse_uuid(order_id, OrderNotFound())
        with self.db.get_session() as session:
            order = session.get(Order, order_uuid)
            if order is None:
                raise OrderNotFound()

            flipped = session.query(Order).filter(
                Order.id == order_uuid,
                Order.payment_status == PaymentStatus.PAID,
            ).update(
                {Order.payment_status: PaymentStatus.REFUNDED, Order.refund_reason: reason},
                synchronize_session=False
            )
            if not flipped:
                session.refresh(order)
                raise OrderNotRefundable(order.id, order.payment_status.value)

            cancelled = session.query(Ticket).filter(
                Ticket.order_id == order_uuid,
                Ticket.status == TicketStatus.VALID,
            ).update({Ticket.status: TicketStatus.CANCELLED}, synchronize_session=False)

            order_items = session.query(OrderItem).filter(OrderItem.order_id == order_uuid).all()
            returned = self.ledger.return_sold(session, order_items)

        logger.info(f"Order refunded: {order_uuid}, {cancelled} tickets cancelled, {returned} returned")
        return {
            "order_id": str(order_uuid),
            "payment_status": PaymentStatus.REFUNDED.value,
            "cancelled_tickets": cancelled,
            "returned_to_inventory": returned,
        }

    def get_order(self, order_id, user_id: Optional[str] = None) -> Dict:
        """Order with its price snapshots and tickets, for downstream consumers."""
        order_uuid = parse_uuid(order_id, OrderNotFound())
        with self.db.get_session() as session:
            order = session.get(Order, order_uuid)
            if order is None or (user_id is not None and order.user_id != user_id):
                raise OrderNotFound()
            items = session.query(OrderItem).filter(OrderItem.order_id == order_uuid).all()
            tickets = (
                session.query(Ticket)
                .filter(Ticket.order_id == order_uuid)
                .order_by(Ticket.created_at, Ticket.qr_code)
                .all()
            )
            return {
                "order_id": str(order.id),
                "user_id": order.user_id,
                "event_id": str(order.event_id),
                "reservation_id": str(order.reservation_id) if order.reservation_id else None,
                "total_amount": str(Decimal(order.total_amount).quantize(CENTS)),
                "payment_status": order.payment_status.value,
                "payment_session_id": order.payment_session_id,
                "platform": order.platform.value,
                "currency": order.currency,
                "marketplace_fee": str(Decimal(order.marketplace_fee).quantize(CENTS)),
                "processor_fee": str(Decimal(order.processor_fee).quantize(CENTS)),
                "sold_by": order.sold_by,
                "paid_at": as_utc(order.paid_at).isoformat() if order.paid_at else None,
                "items": [
                    {
                        "ticket_type_id": str(item.ticket_type_id),
                        "quantity": item.quantity,
                        "price_per_ticket": str(Decimal(item.price_per_ticket).quantize(CENTS)),
                        "subtotal": str(Decimal(item.subtotal).quantize(CENTS)),
                    }
                    for item in items
                ],
                "tickets": [
                    {
                        "ticket_id": str(ticket.id),
                        "ticket_type_id": str(ticket.ticket_type_id),
                        "qr_code": ticket.qr_code,
                        "status": ticket.status.value,
                    }
                    for ticket in tickets
                ],
            }
