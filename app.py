"""HTTP entrypoint for the ticket reservation and checkout backend."""

from flask import Flask, request, jsonify
from flask_cors import CORS
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple
import logging
import uuid

from checkout import CheckoutCoordinator
from config import Settings
from database_manager import DatabaseManager
from errors import CheckoutError, PaymentForLapsedReservation
from expiry_reclaimer import BackgroundSweeper, ExpiryReclaimer
from inventory_ledger import InventoryLedger
from models import ReservationStatus
from payment_gateway import PaymentGateway, SandboxPaymentGateway, build_gateway
from reservation_manager import ReservationManager
from ticket_materializer import TicketMaterializer

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

DEMO_EVENT_ID = "6f1c1d52-8f7a-4c55-9a4e-2f4a8b0d1e01"
APPROVED_RESULTS = ('approved', 'paid', 'success')
FAILED_RESULTS = ('rejected', 'failed', 'cancelled')


def bad_request(message: str, *, details: Optional[Dict[str, Any]] = None):
    """Return a uniform 400 payload, optionally including field-level details."""
    payload: Dict[str, Any] = {"error": message}
    if details:
        payload["details"] = details
    return jsonify(payload), 400


def require_json_object() -> Tuple[Optional[Dict[str, Any]], Optional[Tuple[str, int]]]:
    """Ensure the request body is a JSON object before proceeding."""
    if not request.is_json:
        return None, bad_request("request body must be a JSON object")

    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        return None, bad_request("request body must be a JSON object")

    return data, None


def require_user() -> Tuple[Optional[str], Optional[Tuple[str, int]]]:
    """Read the caller's id from the header set by the upstream auth layer."""
    user_id = (request.headers.get('X-User-Id') or '').strip()
    if not user_id:
        return None, (jsonify({"error": "authentication required"}), 401)
    return user_id, None


def validate_items(items: Any) -> Tuple[Optional[List[Dict]], Optional[Tuple[str, int]]]:
    """Validate the cart shape; quantity rules are enforced by the ledger."""
    if not isinstance(items, list) or len(items) == 0:
        return None, bad_request("items must be provided as a non-empty JSON array")

    normalized: List[Dict] = []
    for index, item in enumerate(items):
        if not isinstance(item, dict):
            return None, bad_request("each item must be an object", details={"index": index})
        ticket_type_id = item.get('ticket_type_id')
        if not isinstance(ticket_type_id, str) or not ticket_type_id.strip():
            return None, bad_request("ticket_type_id must be a non-empty string", details={"index": index})
        quantity = item.get('quantity')
        if isinstance(quantity, bool) or not isinstance(quantity, int):  # Reject boolean masquerading as int
            return None, bad_request("quantity must be an integer", details={"index": index})
        normalized.append({"ticket_type_id": ticket_type_id.strip(), "quantity": quantity})

    return normalized, None


def parse_timestamp(value: Any, field: str) -> Tuple[Optional[datetime], Optional[Tuple[str, int]]]:
    if value is None:
        return None, None
    if not isinstance(value, str):
        return None, bad_request(f"{field} must be an ISO-8601 string")
    try:
        parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    except ValueError:
        return None, bad_request(f"{field} must be an ISO-8601 string")
    if parsed.tzinfo is None:
        return None, bad_request(f"{field} must include a UTC offset")
    return parsed, None


def validate_ticket_types(raw: Any) -> Tuple[Optional[List[Dict]], Optional[Tuple[str, int]]]:
    if not isinstance(raw, list) or len(raw) == 0:
        return None, bad_request("ticket_types must be provided as a non-empty JSON array")

    parsed: List[Dict] = []
    for index, entry in enumerate(raw):
        if not isinstance(entry, dict):
            return None, bad_request("each ticket type must be an object", details={"index": index})
        name = entry.get('name')
        if not isinstance(name, str) or not name.strip():
            return None, bad_request("ticket type name is required", details={"index": index})
        try:
            price = Decimal(str(entry.get('price')))
        except InvalidOperation:
            return None, bad_request("price must be a number", details={"index": index})
        if not price.is_finite() or price < 0:
            return None, bad_request("price must be a non-negative number", details={"index": index})

        limits = {}
        for field, default in (('capacity', None), ('min_per_order', 1), ('max_per_order', 10)):
            value = entry.get(field, default)
            if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
                return None, bad_request(f"{field} must be a positive integer", details={"index": index})
            limits[field] = value
        if limits['max_per_order'] < limits['min_per_order']:
            return None, bad_request("max_per_order must not be below min_per_order", details={"index": index})

        sale_start, error = parse_timestamp(entry.get('sale_start'), 'sale_start')
        if error:
            return None, error
        sale_end, error = parse_timestamp(entry.get('sale_end'), 'sale_end')
        if error:
            return None, error

        type_id = entry.get('id')
        if type_id is not None:
            try:
                uuid.UUID(str(type_id))
            except ValueError:
                return None, bad_request("ticket type id must be a UUID", details={"index": index})

        parsed.append({
            "id": type_id,
            "name": name.strip(),
            "description": entry.get('description'),
            "price": price,
            "sale_start": sale_start,
            "sale_end": sale_end,
            "active": bool(entry.get('active', True)),
            **limits,
        })

    return parsed, None


def initialize_demo_event(db: DatabaseManager, currency: str):
    """Create an example event so local demos and the stress script have usable data."""
    try:
        success, result = db.initialize_event(
            DEMO_EVENT_ID,
            "Demo Festival 2026",
            [
                {"id": "6f1c1d52-8f7a-4c55-9a4e-2f4a8b0d1e02", "name": "General", "price": "80000",
                 "capacity": 100, "min_per_order": 1, "max_per_order": 6},
                {"id": "6f1c1d52-8f7a-4c55-9a4e-2f4a8b0d1e03", "name": "VIP", "price": "250000",
                 "capacity": 20, "min_per_order": 1, "max_per_order": 4},
            ],
            currency=currency,
            cash_sales_enabled=True,
        )
        if success:
            logger.info(f"Pre-initialized demo event: {DEMO_EVENT_ID}")
        else:
            logger.info(f"Demo event already exists: {DEMO_EVENT_ID}")
    except Exception as e:
        logger.error(f"Failed to initialize demo event: {e}")


def create_app(
    settings: Optional[Settings] = None,
    db: Optional[DatabaseManager] = None,
    gateway: Optional[PaymentGateway] = None,
) -> Flask:
    """Wire the checkout services and register the HTTP routes."""
    settings = settings or Settings.from_env()
    db = db or DatabaseManager(settings.database_url)
    gateway = gateway or build_gateway(settings)

    ledger = InventoryLedger()
    reclaimer = ExpiryReclaimer(db, ledger)
    reservations = ReservationManager(
        db, ledger, reclaimer, hold_duration=timedelta(minutes=settings.hold_duration_minutes)
    )
    coordinator = CheckoutCoordinator(
        db, ledger, reservations, reclaimer, gateway, TicketMaterializer(),
        app_url=settings.app_url,
        fee_percentage=settings.marketplace_fee_percentage,
        cash_hold_duration=timedelta(minutes=settings.cash_hold_duration_minutes),
    )

    app = Flask(__name__)
    CORS(app)
    app.config['SETTINGS'] = settings

    if settings.seed_demo_event:
        initialize_demo_event(db, settings.default_currency)

    if settings.sweep_enabled:
        # Run the sweep in a dedicated daemon so it never blocks HTTP traffic
        sweeper = BackgroundSweeper(
            reclaimer,
            interval_seconds=settings.sweep_interval_seconds,
            batch_size=settings.sweep_batch_size,
        )
        sweeper.start()
        sweeper.install_signal_handlers()
        app.extensions['sweeper'] = sweeper

    @app.errorhandler(CheckoutError)
    def handle_checkout_error(error: CheckoutError):
        return jsonify(error.to_dict()), error.status_code

    # API Endpoints

    @app.route('/events/<event_id>/initialize', methods=['POST'])
    def initialize_event(event_id):
        """Create a new event with its ticket types."""
        data, error_response = require_json_object()
        if error_response:
            return error_response

        try:
            uuid.UUID(event_id)
        except ValueError:
            return bad_request("event_id must be a UUID")

        name = data.get('name')
        if not isinstance(name, str) or not name.strip():
            return bad_request("name must be a non-empty string")
        ticket_types, types_error = validate_ticket_types(data.get('ticket_types'))
        if types_error:
            return types_error
        sale_start, error = parse_timestamp(data.get('sale_start'), 'sale_start')
        if error:
            return error
        sale_end, error = parse_timestamp(data.get('sale_end'), 'sale_end')
        if error:
            return error

        success, result = db.initialize_event(
            event_id,
            name.strip(),
            ticket_types,
            currency=data.get('currency') or settings.default_currency,
            cash_sales_enabled=bool(data.get('cash_sales_enabled', False)),
            sale_start=sale_start,
            sale_end=sale_end,
        )

        if success:
            logger.info(f"Initialized event {event_id} with {len(ticket_types)} ticket types")
            return jsonify(result), 201
        else:
            return jsonify(result), 409

    @app.route('/events/<event_id>/availability', methods=['GET'])
    def get_availability(event_id):
        """Return live per-type availability for an event."""
        return jsonify({
            "event_id": event_id,
            "ticket_types": reservations.get_availability(event_id),
        })

    @app.route('/checkout/reserve', methods=['POST'])
    def reserve():
        """Place a temporary hold on the requested ticket quantities."""
        user_id, auth_error = require_user()
        if auth_error:
            return auth_error
        data, error_response = require_json_object()
        if error_response:
            return error_response

        event_id = data.get('event_id')
        if not isinstance(event_id, str) or not event_id.strip():
            return bad_request("event_id must be a non-empty string")
        items, items_error = validate_items(data.get('items'))
        if items_error:
            return items_error

        result = reservations.reserve(user_id, event_id.strip(), items)
        return jsonify(result.to_dict()), 201

    @app.route('/checkout/payment', methods=['POST'])
    def initiate_payment():
        """Open a processor checkout session for an active reservation."""
        user_id, auth_error = require_user()
        if auth_error:
            return auth_error
        data, error_response = require_json_object()
        if error_response:
            return error_response

        reservation_id = data.get('reservation_id')
        if not isinstance(reservation_id, str) or not reservation_id.strip():
            return bad_request("reservation_id must be a non-empty string")

        result = coordinator.initiate_payment(
            reservation_id.strip(), data.get('billing_info'), user_id=user_id
        )
        return jsonify(result), 200

    @app.route('/checkout/reservations/<reservation_id>/cancel', methods=['POST'])
    def cancel_reservation(reservation_id):
        """Release a hold early, making its tickets available immediately."""
        user_id, auth_error = require_user()
        if auth_error:
            return auth_error
        return jsonify(reservations.cancel(reservation_id, user_id)), 200

    @app.route('/reservations', methods=['GET'])
    def list_reservations():
        """List the caller's reservations, active ones by default."""
        user_id, auth_error = require_user()
        if auth_error:
            return auth_error

        status_raw = request.args.get('status', ReservationStatus.ACTIVE.value)
        if status_raw == 'all':
            status = None
        else:
            try:
                status = ReservationStatus(status_raw)
            except ValueError:
                return bad_request("status must be one of active, expired, converted, cancelled, all")

        return jsonify({"reservations": reservations.list_user_reservations(user_id, status)})

    @app.route('/checkout/webhook', methods=['POST'])
    def payment_webhook():
        """Processor notification: confirm or fail the payment behind a session."""
        event = gateway.verify_webhook(request.get_data(), request.headers)

        session_id = event.get('session_id')
        if not isinstance(session_id, str) or not session_id:
            return bad_request("session_id must be a non-empty string")
        outcome = str(event.get('result', '')).lower()

        if outcome in APPROVED_RESULTS:
            try:
                processor_fee = Decimal(str(event.get('processor_fee', '0')))
            except InvalidOperation:
                return bad_request("processor_fee must be a number")
            try:
                result = coordinator.confirm_payment(session_id, processor_fee)
            except PaymentForLapsedReservation as e:
                # Acknowledge so the processor stops retrying; the refund is manual
                return jsonify({"received": True, **e.to_dict()}), 200
            return jsonify({"received": True, **result}), 200

        if outcome in FAILED_RESULTS:
            return jsonify({"received": True, **coordinator.record_payment_failure(session_id)}), 200

        logger.info(f"Ignoring webhook result '{outcome}' for session {session_id}")
        return jsonify({"received": True, "ignored": True}), 200

    @app.route('/orders/<order_id>', methods=['GET'])
    def get_order(order_id):
        """Return an order with its price snapshots and tickets. Buyer only."""
        user_id, auth_error = require_user()
        if auth_error:
            return auth_error
        return jsonify(coordinator.get_order(order_id, user_id=user_id))

    @app.route('/orders/<order_id>/refund', methods=['POST'])
    def refund_order(order_id):
        """Operator endpoint: mark a paid order refunded and return its tickets to inventory."""
        operator_id, auth_error = require_user()
        if auth_error:
            return auth_error
        reason = None
        if request.data:
            data, error_response = require_json_object()
            if error_response:
                return error_response
            reason = data.get('reason')
            if reason is not None and not isinstance(reason, str):
                return bad_request("reason must be a string")

        result = coordinator.refund_order(order_id, reason)
        logger.info(f"Refund of order {order_id} issued by {operator_id}")
        return jsonify(result), 200

    @app.route('/events/<event_id>/cash-sale', methods=['POST'])
    def cash_sale(event_id):
        """Record a door sale paid in cash; the caller is the seller."""
        seller_id, auth_error = require_user()
        if auth_error:
            return auth_error
        data, error_response = require_json_object()
        if error_response:
            return error_response

        buyer_id = data.get('buyer_id')
        if not isinstance(buyer_id, str) or not buyer_id.strip():
            return bad_request("buyer_id must be a non-empty string")
        items, items_error = validate_items(data.get('items'))
        if items_error:
            return items_error

        result = coordinator.record_cash_sale(seller_id, buyer_id.strip(), event_id, items)
        return jsonify(result), 201

    @app.route('/sandbox/pay/<session_id>', methods=['GET'])
    def sandbox_checkout(session_id):
        """Stand-in for the processor's hosted checkout page."""
        if not isinstance(gateway, SandboxPaymentGateway) or session_id not in gateway.sessions:
            return jsonify({"error": "payment session not found"}), 404
        return jsonify({"session_id": session_id, **gateway.sessions[session_id]})

    @app.route('/reset', methods=['POST'])
    def reset_all():
        """Administrative endpoint to reset the entire dataset."""
        # Optional: allow an empty JSON body for future extensibility while validating if provided
        if request.data:
            data, error_response = require_json_object()
            if error_response:
                return error_response
            if data:
                return bad_request("reset payload must be empty")

        result = db.reset_all()
        logger.info(
            "System reset: %s reservations cleared, %s orders cleared, %s ticket types reset",
            result.get('reservations_cleared', 0),
            result.get('orders_cleared', 0),
            result.get('ticket_types_reset', 0)
        )
        return jsonify({"message": "all events reset", **result}), 200

    @app.route('/health', methods=['GET'])
    def health_check():
        """Expose the database connectivity and event count."""
        return jsonify(db.health_check())

    return app


if __name__ == '__main__':
    settings = Settings.from_env()
    app = create_app(settings)

    logger.info(f"""
    ================================
    TICKET CHECKOUT SYSTEM
    ================================
    Database: {'SQLite' if settings.database_url.startswith('sqlite') else 'PostgreSQL'}
    Hold duration: {settings.hold_duration_minutes} minutes
    Payment gateway: {settings.payment_gateway}
    Concurrency: Row-level locking with SELECT FOR UPDATE
    ================================
    """)

    app.run(host="0.0.0.0", port=settings.port, debug=False, threaded=True)
