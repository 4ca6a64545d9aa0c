from datetime import datetime, timedelta, timezone
from types import SimpleNamespace
import uuid

import pytest

from app import create_app
from checkout import CheckoutCoordinator
from config import Settings
from database_manager import DatabaseManager
from expiry_reclaimer import ExpiryReclaimer
from inventory_ledger import InventoryLedger
from models import TicketType
from payment_gateway import SandboxPaymentGateway
from reservation_manager import ReservationManager
from ticket_materializer import TicketMaterializer

WEBHOOK_SECRET = 'test-webhook-secret'

BILLING_INFO = {
    "document_type": "CC",
    "document_number": "1020304050",
    "first_name": "Ana",
    "last_name": "Gomez",
    "email": "ana@example.com",
}


class FrozenClock:
    """Callable clock the services share so tests can move time forward."""

    def __init__(self):
        self.now = datetime.now(timezone.utc).replace(microsecond=0)

    def __call__(self):
        return self.now

    def advance(self, **kwargs):
        self.now += timedelta(**kwargs)


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'tickets.db'}"


@pytest.fixture
def db(database_url):
    manager = DatabaseManager(database_url)
    yield manager
    manager.dispose()


def _seed(db, *, cash_sales_enabled=False, general_capacity=10, **event_kwargs):
    event_id = uuid.uuid4()
    general_id = uuid.uuid4()
    vip_id = uuid.uuid4()
    success, _ = db.initialize_event(
        event_id,
        "Rock al Parque",
        [
            {"id": general_id, "name": "General", "price": "50000.00",
             "capacity": general_capacity, "min_per_order": 1, "max_per_order": 4},
            {"id": vip_id, "name": "VIP", "price": "150000.00",
             "capacity": 2, "min_per_order": 1, "max_per_order": 2},
        ],
        cash_sales_enabled=cash_sales_enabled,
        **event_kwargs,
    )
    assert success
    return SimpleNamespace(id=event_id, general_id=general_id, vip_id=vip_id)


@pytest.fixture
def event(db):
    return _seed(db)


@pytest.fixture
def cash_event(db):
    return _seed(db, cash_sales_enabled=True)


@pytest.fixture
def seed_event(db):
    """Factory for extra events with custom options."""
    def factory(**kwargs):
        return _seed(db, **kwargs)
    return factory


@pytest.fixture
def counts(db):
    """Return (sold_count, reserved_count) for a ticket type."""
    def read(ticket_type_id):
        with db.get_session() as session:
            ticket_type = session.get(TicketType, ticket_type_id)
            return ticket_type.sold_count, ticket_type.reserved_count
    return read


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def gateway():
    return SandboxPaymentGateway('http://testserver', webhook_secret=WEBHOOK_SECRET)


@pytest.fixture
def services(db, clock, gateway):
    ledger = InventoryLedger()
    reclaimer = ExpiryReclaimer(db, ledger, clock=clock)
    reservations = ReservationManager(db, ledger, reclaimer, clock=clock)
    coordinator = CheckoutCoordinator(
        db, ledger, reservations, reclaimer, gateway, TicketMaterializer(),
        app_url='http://testserver',
        clock=clock,
    )
    return SimpleNamespace(
        ledger=ledger,
        reclaimer=reclaimer,
        reservations=reservations,
        checkout=coordinator,
    )


@pytest.fixture
def settings(database_url):
    return Settings(
        database_url=database_url,
        sweep_enabled=False,
        webhook_secret=WEBHOOK_SECRET,
        app_url='http://testserver',
    )


@pytest.fixture
def client(settings, db, gateway):
    app = create_app(settings=settings, db=db, gateway=gateway)
    app.config['TESTING'] = True
    return app.test_client()
