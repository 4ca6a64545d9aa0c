"""Database coordination layer: engine, transactional sessions and operator utilities."""

from sqlalchemy import create_engine, event, text
from sqlalchemy.orm import sessionmaker, scoped_session
from sqlalchemy.exc import IntegrityError
from contextlib import contextmanager
from decimal import Decimal
from typing import Dict, List, Tuple
import logging
import uuid

from models import (
    Base, Event, EventStatus, Order, Reservation, Ticket, TicketType,
)

logger = logging.getLogger(__name__)


def _configure_sqlite(engine):
    """Make SQLite take the write lock at BEGIN so concurrent writers queue instead of deadlocking."""

    @event.listens_for(engine, "connect")
    def _on_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    @event.listens_for(engine, "begin")
    def _on_begin(conn):
        conn.exec_driver_sql("BEGIN IMMEDIATE")


class DatabaseManager:
    """Owns the engine and a thread-scoped session registry for the services."""

    def __init__(self, database_url: str):
        self.is_sqlite = database_url.startswith('sqlite')
        if self.is_sqlite:
            self.engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False, "timeout": 30},
                pool_pre_ping=True,
                echo=False
            )
            _configure_sqlite(self.engine)
        else:
            self.engine = create_engine(
                database_url,
                pool_size=20,
                max_overflow=40,
                pool_pre_ping=True,  # Reconnect if connection lost
                pool_recycle=3600,   # Recycle connections after 1 hour
                echo=False
            )
        self.session_factory = scoped_session(
            sessionmaker(bind=self.engine, expire_on_commit=False)
        )

        # Create tables
        Base.metadata.create_all(self.engine)

    @contextmanager
    def get_session(self):
        """Yield a session that commits when the block exits cleanly and rolls back on error."""
        session = self.session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.error(f"Database error: {e}")
            raise
        finally:
            session.close()

    def dispose(self):
        self.session_factory.remove()
        self.engine.dispose()

    def initialize_event(
        self,
        event_id: str,
        name: str,
        ticket_types: List[Dict],
        *,
        currency: str = 'COP',
        cash_sales_enabled: bool = False,
        sale_start=None,
        sale_end=None,
        status: EventStatus = EventStatus.ACTIVE,
    ) -> Tuple[bool, Dict]:
        """Create an event with its ticket types if it does not already exist."""
        event_uuid = uuid.UUID(str(event_id))
        try:
            with self.get_session() as session:
                if session.get(Event, event_uuid):
                    return False, {"error": "event already exists"}

                event_row = Event(
                    id=event_uuid,
                    name=name,
                    status=status,
                    currency=currency,
                    cash_sales_enabled=cash_sales_enabled,
                    sale_start=sale_start,
                    sale_end=sale_end,
                )
                session.add(event_row)

                created = []
                for entry in ticket_types:
                    ticket_type = TicketType(
                        id=uuid.UUID(str(entry['id'])) if entry.get('id') else uuid.uuid4(),
                        event_id=event_uuid,
                        name=entry['name'],
                        description=entry.get('description'),
                        price=Decimal(str(entry['price'])),
                        capacity=int(entry['capacity']),
                        min_per_order=int(entry.get('min_per_order', 1)),
                        max_per_order=int(entry.get('max_per_order', 10)),
                        sale_start=entry.get('sale_start'),
                        sale_end=entry.get('sale_end'),
                        active=entry.get('active', True),
                    )
                    session.add(ticket_type)
                    created.append({"id": str(ticket_type.id), "name": ticket_type.name})

                return True, {
                    "event_id": str(event_uuid),
                    "ticket_types": created,
                }
        except IntegrityError as e:
            return False, {"error": f"database integrity error: {e.orig}"}

    def health_check(self) -> Dict:
        """Report database connectivity and event count; used by the /health endpoint."""
        try:
            with self.get_session() as session:
                session.execute(text("SELECT 1"))
                event_count = session.query(Event).count()

                return {
                    "status": "healthy",
                    "database": "connected",
                    "events": event_count
                }
        except Exception as e:
            logger.error(f"Health check failed: {e}")
            return {
                "status": "unhealthy",
                "database": "disconnected",
                "error": str(e)
            }

    def reset_all(self) -> Dict[str, int]:
        """Clear reservations, orders and tickets and zero every ledger counter."""
        with self.get_session() as session:
            deleted_tickets = session.query(Ticket).delete(synchronize_session=False)
            deleted_orders = 0
            for order in session.query(Order).all():
                session.delete(order)
                deleted_orders += 1
            session.flush()
            deleted_reservations = 0
            for reservation in session.query(Reservation).all():
                session.delete(reservation)
                deleted_reservations += 1

            reset_types = session.query(TicketType).update(
                {
                    TicketType.sold_count: 0,
                    TicketType.reserved_count: 0,
                },
                synchronize_session=False,
            )

            return {
                "tickets_cleared": deleted_tickets,
                "orders_cleared": deleted_orders,
                "reservations_cleared": deleted_reservations,
                "ticket_types_reset": reset_types,
            }

