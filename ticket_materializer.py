"""Expands a paid order into one scannable ticket per purchased unit."""

from datetime import datetime
from typing import Callable, Iterable, List, Optional
import logging
import uuid

from models import Order, Ticket, TicketStatus, utcnow

logger = logging.getLogger(__name__)


def new_scan_code() -> str:
    return f"TCK-{uuid.uuid4().hex.upper()}"


class ScanCodeExhausted(RuntimeError):
    pass


class TicketMaterializer:

    def __init__(self, code_factory: Optional[Callable[[], str]] = None, max_attempts: int = 5):
        self.code_factory = code_factory or new_scan_code
        self.max_attempts = max_attempts

    def materialize(
        self, session, order: Order, order_items: Iterable, now: Optional[datetime] = None
    ) -> List[Ticket]:
        """Create the order's tickets inside the order's own transaction.

        The unique constraint on ``tickets.qr_code`` is the real guarantee;
        the lookup here retries the rare collision before it can abort the
        whole confirmation.
        """
        now = now or utcnow()
        issued = set()
        tickets = []
        for item in order_items:
            for _ in range(item.quantity):
                code = self._unique_code(session, issued)
                issued.add(code)
                ticket = Ticket(
                    id=uuid.uuid4(),
                    order_id=order.id,
                    reservation_id=order.reservation_id,
                    ticket_type_id=item.ticket_type_id,
                    user_id=order.user_id,
                    qr_code=code,
                    status=TicketStatus.VALID,
                    platform=order.platform,
                    created_at=now,
                )
                session.add(ticket)
                tickets.append(ticket)
        session.flush()
        logger.info(f"Materialized {len(tickets)} tickets for order {order.id}")
        return tickets

    def _unique_code(self, session, issued) -> str:
        for _ in range(self.max_attempts):
            code = self.code_factory()
            if code in issued:
                continue
            taken = session.query(Ticket.id).filter(Ticket.qr_code == code).first()
            if taken is None:
                return code
            logger.warning(f"Scan code collision on {code}, retrying")
        raise ScanCodeExhausted(f"no unique scan code after {self.max_attempts} attempts")
