"""Payment processor boundary: open checkout sessions and authenticate their webhooks."""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Mapping
import base64
import hashlib
import hmac
import json
import logging
import uuid

import requests

from errors import InvalidWebhookSignature, PaymentGatewayError

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = 'X-Webhook-Signature'


@dataclass
class PaymentSession:
    session_id: str
    redirect_url: str


def sign_payload(secret: str, payload: bytes) -> str:
    mac = hmac.new(secret.encode(), payload, hashlib.sha256).digest()
    return base64.b64encode(mac).decode()


class PaymentGateway(ABC):

    def __init__(self, webhook_secret: str = ''):
        self.webhook_secret = webhook_secret

    @abstractmethod
    def create_payment_session(
        self, amount: Decimal, currency: str, return_url: str, metadata: Dict
    ) -> PaymentSession:
        ...

    def verify_webhook(self, payload: bytes, headers: Mapping) -> Dict:
        """Check the HMAC signature of a webhook body and return the decoded event."""
        signature = headers.get(SIGNATURE_HEADER)
        if not self.webhook_secret or not signature:
            raise InvalidWebhookSignature()
        expected = sign_payload(self.webhook_secret, payload)
        if not hmac.compare_digest(expected, signature):
            raise InvalidWebhookSignature()
        try:
            event = json.loads(payload.decode())
        except (UnicodeDecodeError, json.JSONDecodeError):
            raise InvalidWebhookSignature()
        if not isinstance(event, dict):
            raise InvalidWebhookSignature()
        return event


class HttpPaymentGateway(PaymentGateway):
    """Generic JSON-over-HTTP processor client."""

    def __init__(self, base_url: str, token: str, webhook_secret: str = '', timeout: float = 10.0,
                 http=None):
        super().__init__(webhook_secret)
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = timeout
        self.http = http or requests.Session()

    def create_payment_session(self, amount, currency, return_url, metadata) -> PaymentSession:
        body = {
            "amount": str(amount),
            "currency": currency,
            "return_url": return_url,
            "metadata": metadata,
        }
        try:
            response = self.http.post(
                f"{self.base_url}/sessions",
                json=body,
                headers={"Authorization": f"Bearer {self.token}"},
                timeout=self.timeout,
            )
            response.raise_for_status()
            data = response.json()
        except (requests.RequestException, ValueError) as e:
            logger.error(f"Payment session request failed: {e}")
            raise PaymentGatewayError("Payment processor unavailable, please try again")

        session_id = data.get("id") or data.get("session_id")
        redirect_url = data.get("redirect_url") or data.get("init_point")
        if not session_id or not redirect_url:
            logger.error(f"Payment processor returned an incomplete session: {data}")
            raise PaymentGatewayError("Payment processor returned an invalid session")
        return PaymentSession(session_id=str(session_id), redirect_url=redirect_url)


class SandboxPaymentGateway(PaymentGateway):
    """Local stand-in processor for development and load tests."""

    def __init__(self, app_url: str, webhook_secret: str = ''):
        super().__init__(webhook_secret)
        self.app_url = app_url.rstrip('/')
        self.sessions: Dict[str, Dict] = {}

    def create_payment_session(self, amount, currency, return_url, metadata) -> PaymentSession:
        session_id = f"sbx_{uuid.uuid4().hex}"
        self.sessions[session_id] = {
            "amount": str(amount),
            "currency": currency,
            "return_url": return_url,
            "metadata": dict(metadata),
        }
        return PaymentSession(session_id=session_id, redirect_url=f"{self.app_url}/sandbox/pay/{session_id}")


def build_gateway(settings) -> PaymentGateway:
    if settings.payment_gateway == 'http':
        return HttpPaymentGateway(
            settings.payment_gateway_url,
            settings.payment_gateway_token,
            webhook_secret=settings.webhook_secret,
            timeout=settings.payment_gateway_timeout,
        )
    return SandboxPaymentGateway(settings.app_url, webhook_secret=settings.webhook_secret)
