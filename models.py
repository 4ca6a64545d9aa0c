"""ORM model definitions describing the ticket inventory, reservation and order schema."""

from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, Enum, ForeignKey, Index, Integer,
    JSON, Numeric, String, Text, Uuid,
)
from sqlalchemy.orm import declarative_base, relationship
from datetime import datetime, timezone
import enum
import uuid

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value):
    """Attach UTC to timestamps read back from drivers that drop the offset (SQLite)."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class EventStatus(str, enum.Enum):
    DRAFT = 'draft'
    ACTIVE = 'active'
    INACTIVE = 'inactive'
    SOLD_OUT = 'sold_out'
    CANCELLED = 'cancelled'


class ReservationStatus(str, enum.Enum):
    """Reservation lifecycle; everything except ACTIVE is terminal."""
    ACTIVE = 'active'
    EXPIRED = 'expired'
    CONVERTED = 'converted'
    CANCELLED = 'cancelled'


class PaymentStatus(str, enum.Enum):
    PENDING = 'pending'
    PAID = 'paid'
    FAILED = 'failed'
    REFUNDED = 'refunded'


class Platform(str, enum.Enum):
    WEB = 'web'
    APP = 'app'
    CASH = 'cash'


class TicketStatus(str, enum.Enum):
    VALID = 'valid'
    USED = 'used'
    CANCELLED = 'cancelled'
    TRANSFERRED = 'transferred'


def _enum(enum_cls, name):
    return Enum(enum_cls, name=name, values_callable=lambda e: [m.value for m in e])


class Event(Base):
    __tablename__ = 'events'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    status = Column(_enum(EventStatus, 'event_status_enum'), default=EventStatus.ACTIVE, nullable=False)
    sale_start = Column(DateTime(timezone=True))
    sale_end = Column(DateTime(timezone=True))
    currency = Column(String(3), default='COP', nullable=False)
    cash_sales_enabled = Column(Boolean, default=False, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    ticket_types = relationship('TicketType', back_populates='event', cascade='all, delete-orphan')


class TicketType(Base):
    """Inventory ledger row: capacity is fixed, sold/reserved counters move."""
    __tablename__ = 'ticket_types'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    event_id = Column(Uuid, ForeignKey('events.id', ondelete='CASCADE'), nullable=False)
    day_id = Column(Uuid)
    name = Column(String, nullable=False)
    description = Column(Text)
    price = Column(Numeric(10, 2), nullable=False)
    capacity = Column(Integer, nullable=False)
    sold_count = Column(Integer, default=0, nullable=False)
    reserved_count = Column(Integer, default=0, nullable=False)
    min_per_order = Column(Integer, default=1, nullable=False)
    max_per_order = Column(Integer, default=10, nullable=False)
    sale_start = Column(DateTime(timezone=True))
    sale_end = Column(DateTime(timezone=True))
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    event = relationship('Event', back_populates='ticket_types')

    __table_args__ = (
        CheckConstraint(
            'sold_count >= 0 AND reserved_count >= 0 AND capacity > 0',
            name='check_counts_non_negative',
        ),
        CheckConstraint('min_per_order > 0 AND max_per_order >= min_per_order', name='check_order_limits'),
        CheckConstraint('sold_count + reserved_count <= capacity', name='check_capacity_not_exceeded'),
        Index('idx_ticket_types_event', 'event_id'),
    )

    @property
    def available(self) -> int:
        return self.capacity - self.sold_count - self.reserved_count


class Reservation(Base):
    __tablename__ = 'reservations'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=False)
    event_id = Column(Uuid, ForeignKey('events.id', ondelete='CASCADE'), nullable=False)
    total_amount = Column(Numeric(10, 2), nullable=False)
    status = Column(
        _enum(ReservationStatus, 'reservation_status_enum'),
        default=ReservationStatus.ACTIVE, nullable=False,
    )
    expires_at = Column(DateTime(timezone=True), nullable=False)
    payment_session_id = Column(String, unique=True)
    payment_processor = Column(String)
    billing_info = Column(JSON)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    items = relationship('ReservationItem', back_populates='reservation', cascade='all, delete-orphan')

    __table_args__ = (
        Index('idx_reservations_status_expires', 'status', 'expires_at'),
        Index('idx_reservations_user', 'user_id'),
        Index('idx_reservations_event', 'event_id'),
    )


class ReservationItem(Base):
    __tablename__ = 'reservation_items'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    reservation_id = Column(Uuid, ForeignKey('reservations.id', ondelete='CASCADE'), nullable=False)
    ticket_type_id = Column(Uuid, ForeignKey('ticket_types.id', ondelete='CASCADE'), nullable=False)
    quantity = Column(Integer, nullable=False)

    reservation = relationship('Reservation', back_populates='items')

    __table_args__ = (
        CheckConstraint('quantity > 0', name='check_reservation_item_quantity'),
        Index('idx_reservation_items_reservation', 'reservation_id'),
    )


class Order(Base):
    __tablename__ = 'orders'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id = Column(String, nullable=False)
    event_id = Column(Uuid, ForeignKey('events.id', ondelete='CASCADE'), nullable=False)
    reservation_id = Column(Uuid, ForeignKey('reservations.id'))
    total_amount = Column(Numeric(10, 2), nullable=False)
    payment_status = Column(
        _enum(PaymentStatus, 'order_payment_status_enum'),
        default=PaymentStatus.PENDING, nullable=False,
    )
    payment_session_id = Column(String)
    platform = Column(_enum(Platform, 'order_platform_enum'), default=Platform.WEB, nullable=False)
    currency = Column(String(3), default='COP', nullable=False)
    marketplace_fee = Column(Numeric(10, 2), default=0, nullable=False)
    processor_fee = Column(Numeric(10, 2), default=0, nullable=False)
    sold_by = Column(String)
    refund_reason = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    paid_at = Column(DateTime(timezone=True))

    items = relationship('OrderItem', back_populates='order', cascade='all, delete-orphan')
    tickets = relationship('Ticket', back_populates='order', cascade='all, delete-orphan')

    __table_args__ = (
        Index('idx_orders_payment_session', 'payment_session_id'),
        Index('idx_orders_reservation', 'reservation_id'),
        Index('idx_orders_user', 'user_id'),
    )


class OrderItem(Base):
    """Line item with the unit price frozen at purchase time."""
    __tablename__ = 'order_items'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid, ForeignKey('orders.id', ondelete='CASCADE'), nullable=False)
    ticket_type_id = Column(Uuid, ForeignKey('ticket_types.id', ondelete='CASCADE'), nullable=False)
    quantity = Column(Integer, nullable=False)
    price_per_ticket = Column(Numeric(10, 2), nullable=False)
    subtotal = Column(Numeric(10, 2), nullable=False)

    order = relationship('Order', back_populates='items')

    __table_args__ = (
        Index('idx_order_items_order', 'order_id'),
    )


class Ticket(Base):
    __tablename__ = 'tickets'

    id = Column(Uuid, primary_key=True, default=uuid.uuid4)
    order_id = Column(Uuid, ForeignKey('orders.id', ondelete='CASCADE'), nullable=False)
    reservation_id = Column(Uuid, ForeignKey('reservations.id'))
    ticket_type_id = Column(Uuid, ForeignKey('ticket_types.id', ondelete='CASCADE'), nullable=False)
    user_id = Column(String, nullable=False)
    qr_code = Column(String, nullable=False, unique=True)
    status = Column(_enum(TicketStatus, 'ticket_status_enum'), default=TicketStatus.VALID, nullable=False)
    scanned_at = Column(DateTime(timezone=True))
    scanned_by = Column(String)
    platform = Column(_enum(Platform, 'ticket_platform_enum'), default=Platform.WEB, nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    order = relationship('Order', back_populates='tickets')

    __table_args__ = (
        Index('idx_tickets_order', 'order_id'),
        Index('idx_tickets_user', 'user_id'),
    )
