"""Outbound gateways used by action processors.

Each gateway call returns a GatewayResult (success flag plus payload) instead
of raising, so processors only translate outcomes. The HTTP gateway performs
real requests with httpx; the email, record, messaging and payment gateways
are simulated providers that generate ids the way the real ones would.
"""

import secrets
import string
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Optional

import httpx

from autoflow.core.logging import get_logger

logger = get_logger(__name__)

_ID_ALPHABET = string.ascii_lowercase + string.digits


def generate_id(prefix: str) -> str:
    """Provider-style id: ``{prefix}_{epoch ms}_{9 random chars}``."""
    suffix = "".join(secrets.choice(_ID_ALPHABET) for _ in range(9))
    return f"{prefix}_{int(time.time() * 1000)}_{suffix}"


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class GatewayResult:
    """Outcome of one gateway call."""
    success: bool
    data: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None


# =============================================================================
# HTTP
# =============================================================================

class HttpGateway:
    """Issues outbound HTTP requests.

    A custom transport can be injected (httpx.MockTransport in tests).
    """

    def __init__(self, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.transport = transport

    async def request(
        self,
        method: str,
        url: str,
        headers: Optional[Dict[str, str]] = None,
        params: Optional[Dict[str, Any]] = None,
        data: Any = None,
        timeout_ms: int = 30000,
    ) -> GatewayResult:
        """Perform a request and describe the response.

        Args:
            method: HTTP method (already upper-cased)
            url: Target URL
            headers: Request headers
            params: Query parameters
            data: Body; dicts and lists are sent as JSON, anything else as raw content
            timeout_ms: Request timeout in milliseconds

        Returns:
            GatewayResult with {status, statusText, headers, data, url, method};
            success is False for transport errors and non-2xx responses
        """
        kwargs: Dict[str, Any] = {"headers": headers or {}, "params": params}
        if isinstance(data, (dict, list)):
            kwargs["json"] = data
        elif data is not None:
            kwargs["content"] = str(data)

        client_kwargs: Dict[str, Any] = {"timeout": timeout_ms / 1000}
        if self.transport is not None:
            client_kwargs["transport"] = self.transport

        try:
            async with httpx.AsyncClient(**client_kwargs) as client:
                response = await client.request(method, url, **kwargs)
        except httpx.TimeoutException:
            return GatewayResult(success=False, error=f"timeout of {timeout_ms}ms exceeded")
        except httpx.HTTPError as e:
            return GatewayResult(success=False, error=f"HTTP request failed: {e}")

        try:
            body = response.json()
        except ValueError:
            body = response.text

        payload = {
            "status": response.status_code,
            "statusText": response.reason_phrase,
            "headers": dict(response.headers),
            "data": body,
            "url": str(response.request.url),
            "method": method.lower(),
        }

        if not response.is_success:
            return GatewayResult(
                success=False,
                data=payload,
                error=f"Request failed with status code {response.status_code}",
            )
        return GatewayResult(success=True, data=payload)


# =============================================================================
# SIMULATED PROVIDERS
# =============================================================================

class EmailGateway:
    """Simulated email provider."""

    async def send(self, to: str, subject: str, body: str,
                   sender: str, provider: str) -> GatewayResult:
        message_id = generate_id("msg")
        logger.debug("Email accepted by provider", provider=provider, to=to, message_id=message_id)
        return GatewayResult(success=True, data={
            "messageId": message_id,
            "to": to,
            "from": sender,
            "subject": subject,
            "provider": provider,
            "status": "sent",
            "timestamp": _timestamp(),
        })


class RecordGateway:
    """Simulated record store for database_save."""

    async def save(self, table: str, operation: str, data: Dict[str, Any]) -> GatewayResult:
        record_id = generate_id("rec")
        logger.debug("Record written", table=table, operation=operation, record_id=record_id)
        return GatewayResult(success=True, data={
            "id": record_id,
            "table": table,
            "operation": operation,
            "data": data,
            "timestamp": _timestamp(),
            "affectedRows": 1,
        })


class MessagingGateway:
    """Simulated WhatsApp provider."""

    async def send_message(self, to: str, message: str, message_type: str) -> GatewayResult:
        message_id = generate_id("wa")
        logger.debug("WhatsApp message accepted", to=to, type=message_type, message_id=message_id)
        return GatewayResult(success=True, data={
            "messageId": message_id,
            "to": to,
            "message": message,
            "type": message_type,
            "status": "sent",
            "timestamp": _timestamp(),
        })


class PaymentGateway:
    """Simulated payment provider."""

    async def charge(self, amount: float, currency: str, customer: Any,
                     provider: str) -> GatewayResult:
        transaction_id = generate_id("txn")
        logger.debug("Payment captured", provider=provider, amount=amount,
                     currency=currency, transaction_id=transaction_id)
        return GatewayResult(success=True, data={
            "transactionId": transaction_id,
            "amount": amount,
            "currency": currency,
            "customer": customer,
            "provider": provider,
            "status": "completed",
            "timestamp": _timestamp(),
            "receipt": {
                "id": transaction_id,
                "amount": amount,
                "currency": currency,
                "status": "paid",
            },
        })


@dataclass
class Gateways:
    """Bundle of gateways handed to the action processors."""
    http: HttpGateway = field(default_factory=HttpGateway)
    email: EmailGateway = field(default_factory=EmailGateway)
    records: RecordGateway = field(default_factory=RecordGateway)
    messaging: MessagingGateway = field(default_factory=MessagingGateway)
    payments: PaymentGateway = field(default_factory=PaymentGateway)
