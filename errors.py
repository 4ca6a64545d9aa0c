"""Checkout error codes and the exception hierarchy raised by the reservation core."""

from enum import Enum


class ErrorCode(Enum):
    """Stable, client-facing error codes."""

    INVALID_QUANTITY = "INVALID_QUANTITY"
    OUTSIDE_SALE_WINDOW = "OUTSIDE_SALE_WINDOW"
    EVENT_NOT_ACTIVE = "EVENT_NOT_ACTIVE"
    TICKET_TYPE_NOT_FOUND = "TICKET_TYPE_NOT_FOUND"
    INVALID_BILLING_INFO = "INVALID_BILLING_INFO"
    CASH_SALES_DISABLED = "CASH_SALES_DISABLED"
    INSUFFICIENT_INVENTORY = "INSUFFICIENT_INVENTORY"
    RESERVATION_NOT_FOUND = "RESERVATION_NOT_FOUND"
    RESERVATION_EXPIRED = "RESERVATION_EXPIRED"
    RESERVATION_NOT_ACTIVE = "RESERVATION_NOT_ACTIVE"
    PAYMENT_FOR_LAPSED_RESERVATION = "PAYMENT_FOR_LAPSED_RESERVATION"
    ORDER_NOT_FOUND = "ORDER_NOT_FOUND"
    ORDER_NOT_REFUNDABLE = "ORDER_NOT_REFUNDABLE"
    PAYMENT_GATEWAY_ERROR = "PAYMENT_GATEWAY_ERROR"
    INVALID_WEBHOOK_SIGNATURE = "INVALID_WEBHOOK_SIGNATURE"


class CheckoutError(Exception):
    """Base error with code, user-safe message and the HTTP status it maps to."""

    code = None
    status_code = 400

    def __init__(self, message: str, **details) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"

    def to_dict(self) -> dict:
        return {"error": self.message, "code": self.code.value, **self.details}


# Validation errors: the request is wrong, nothing was mutated.

class InvalidQuantity(CheckoutError):
    code = ErrorCode.INVALID_QUANTITY


class OutsideSaleWindow(CheckoutError):
    code = ErrorCode.OUTSIDE_SALE_WINDOW


class EventNotActive(CheckoutError):
    code = ErrorCode.EVENT_NOT_ACTIVE
    status_code = 404


class TicketTypeNotFound(CheckoutError):
    code = ErrorCode.TICKET_TYPE_NOT_FOUND
    status_code = 404


class InvalidBillingInfo(CheckoutError):
    code = ErrorCode.INVALID_BILLING_INFO


class CashSalesDisabled(CheckoutError):
    code = ErrorCode.CASH_SALES_DISABLED
    status_code = 403


# Contention: a legitimate race outcome.

class InsufficientInventory(CheckoutError):
    code = ErrorCode.INSUFFICIENT_INVENTORY
    status_code = 409

    def __init__(self, ticket_type_id, available: int) -> None:
        super().__init__(
            f"Only {max(available, 0)} tickets available",
            ticket_type_id=str(ticket_type_id),
            available=max(available, 0),
        )
        self.ticket_type_id = ticket_type_id
        self.available = max(available, 0)


# Lifecycle: the hold window closed or the identifier is stale.

class ReservationNotFound(CheckoutError):
    code = ErrorCode.RESERVATION_NOT_FOUND
    status_code = 404

    def __init__(self, message: str = "Reservation not found") -> None:
        super().__init__(message)


class ReservationExpired(CheckoutError):
    code = ErrorCode.RESERVATION_EXPIRED
    status_code = 410

    def __init__(self, reservation_id) -> None:
        super().__init__("Your reservation expired, please try again", reservation_id=str(reservation_id))
        self.reservation_id = reservation_id


class ReservationNotActive(CheckoutError):
    code = ErrorCode.RESERVATION_NOT_ACTIVE
    status_code = 409

    def __init__(self, reservation_id, status: str) -> None:
        super().__init__(
            f"Reservation is {status}",
            reservation_id=str(reservation_id),
            status=status,
        )
        self.reservation_id = reservation_id
        self.status = status


class PaymentForLapsedReservation(CheckoutError):
    """Money may have been captured for inventory that was already released."""

    code = ErrorCode.PAYMENT_FOR_LAPSED_RESERVATION
    status_code = 409

    def __init__(self, session_id: str, reservation_id, status: str) -> None:
        super().__init__(
            "Payment received for a reservation that is no longer active",
            session_id=session_id,
            reservation_id=str(reservation_id),
            status=status,
            requires_refund=True,
        )
        self.session_id = session_id
        self.reservation_id = reservation_id
        self.status = status


class OrderNotFound(CheckoutError):
    code = ErrorCode.ORDER_NOT_FOUND
    status_code = 404

    def __init__(self) -> None:
        super().__init__("Order not found")


class OrderNotRefundable(CheckoutError):
    code = ErrorCode.ORDER_NOT_REFUNDABLE
    status_code = 409

    def __init__(self, order_id, payment_status: str) -> None:
        super().__init__(
            f"Order is {payment_status} and cannot be refunded",
            order_id=str(order_id),
            payment_status=payment_status,
        )


# Integration with the payment processor.

class PaymentGatewayError(CheckoutError):
    code = ErrorCode.PAYMENT_GATEWAY_ERROR
    status_code = 502


class InvalidWebhookSignature(CheckoutError):
    code = ErrorCode.INVALID_WEBHOOK_SIGNATURE
    status_code = 401

    def __init__(self) -> None:
        super().__init__("Invalid webhook signature")
