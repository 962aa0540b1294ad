"""Action processors - HTTP Request, Email, Database Save, WhatsApp, Payment.

Values named in both the node config and the inputs are taken from the
inputs first, except for the HTTP URL which prefers the config.
"""

from typing import Any, Dict, Optional

from pydantic import Field, field_validator

from autoflow.constants import (
    DATABASE_SAVE_OPERATIONS,
    EMAIL_PROVIDERS,
    HTTP_METHODS,
    PAYMENT_CURRENCIES,
    PAYMENT_PROVIDERS,
    WHATSAPP_MESSAGE_TYPES,
)
from autoflow.core.logging import get_logger
from autoflow.services.execution.exceptions import ProcessorRuntimeError
from autoflow.services.execution.models import NodeExecutionResult, NodeJobData
from autoflow.services.gateways import GatewayResult, Gateways
from .base import BaseNodeConfig, BaseProcessor, check_allowed, first_present

logger = get_logger(__name__)


class GatewayProcessor(BaseProcessor):
    """Action processor backed by the shared gateway bundle."""

    def __init__(self, gateways: Optional[Gateways] = None):
        self.gateways = gateways or Gateways()

    def unwrap(self, outcome: GatewayResult) -> Dict[str, Any]:
        if not outcome.success:
            raise ProcessorRuntimeError(self.node_type, outcome.error or "Gateway call failed")
        return outcome.data


# =============================================================================
# HTTP REQUEST
# =============================================================================

class HttpRequestConfig(BaseNodeConfig):
    url: str = Field(min_length=1)
    method: str = "GET"
    headers: Dict[str, str] = Field(default_factory=dict)
    timeout: int = Field(default=30000, gt=0)  # milliseconds

    @field_validator("method")
    @classmethod
    def normalize_method(cls, v: str) -> str:
        method = v.upper()
        if method not in HTTP_METHODS:
            raise ValueError(f"Unsupported HTTP method: {v}")
        return method


class HttpRequestProcessor(GatewayProcessor):
    """Issues an outbound HTTP call; non-2xx responses fail the node."""

    node_type = "http_request"
    config_model = HttpRequestConfig
    label = "HTTP request"

    async def run(self, job_data: NodeJobData, config: HttpRequestConfig) -> NodeExecutionResult:
        inputs = job_data.inputs
        url = config.url

        logger.info("[HTTP Request] Executing", node_id=job_data.node_id,
                    method=config.method, url=url)
        response = self.unwrap(await self.gateways.http.request(
            config.method,
            url,
            headers=config.headers,
            params=inputs.get("params"),
            data=inputs.get("data"),
            timeout_ms=config.timeout,
        ))
        return self.succeed(
            job_data, response,
            f"HTTP request completed ({config.method} {url}) - Status: {response['status']}",
            data={"method": config.method, "url": url, "status": response["status"]},
        )


# =============================================================================
# SEND EMAIL
# =============================================================================

class SendEmailConfig(BaseNodeConfig):
    sender: str = Field(default="noreply@autoflow.com", alias="from", min_length=1)
    provider: str = "smtp"
    to: Optional[str] = None
    subject: Optional[str] = None
    body: Optional[str] = None

    @field_validator("provider")
    @classmethod
    def check_provider(cls, v: str) -> str:
        return check_allowed(v, EMAIL_PROVIDERS, "email provider")


class SendEmailProcessor(GatewayProcessor):
    node_type = "send_email"
    config_model = SendEmailConfig
    label = "Email sending"

    async def run(self, job_data: NodeJobData, config: SendEmailConfig) -> NodeExecutionResult:
        inputs = job_data.inputs
        to = first_present(inputs.get("to"), config.to)
        subject = first_present(inputs.get("subject"), config.subject)
        body = first_present(inputs.get("body"), config.body)
        if not to or not subject or not body:
            raise ValueError("To, subject, and body are required for email")

        sent = self.unwrap(await self.gateways.email.send(
            to=to, subject=subject, body=body, sender=config.sender, provider=config.provider,
        ))
        return self.succeed(
            job_data, sent, f"Email sent successfully to {to}",
            data={"to": to, "subject": subject, "messageId": sent["messageId"]},
        )


# =============================================================================
# DATABASE SAVE
# =============================================================================

class DatabaseSaveConfig(BaseNodeConfig):
    table: str = Field(min_length=1)
    operation: str = "insert"

    @field_validator("operation")
    @classmethod
    def check_operation(cls, v: str) -> str:
        return check_allowed(v, DATABASE_SAVE_OPERATIONS, "database operation")


class DatabaseSaveProcessor(GatewayProcessor):
    """Writes ``inputs.data`` (a dict) to a table."""

    node_type = "database_save"
    config_model = DatabaseSaveConfig
    label = "Database operation"

    async def run(self, job_data: NodeJobData, config: DatabaseSaveConfig) -> NodeExecutionResult:
        data = job_data.inputs.get("data")
        if not isinstance(data, dict) or not data:
            raise ValueError("Data is required for database operation")

        saved = self.unwrap(await self.gateways.records.save(config.table, config.operation, data))
        return self.succeed(
            job_data, saved, f"Database operation completed ({config.operation} on {config.table})",
            data={"table": config.table, "operation": config.operation, "recordId": saved["id"]},
        )


# =============================================================================
# WHATSAPP SEND
# =============================================================================

class WhatsAppSendConfig(BaseNodeConfig):
    type: str = "text"
    to: Optional[str] = None
    message: Optional[str] = None

    @field_validator("type")
    @classmethod
    def check_type(cls, v: str) -> str:
        return check_allowed(v, WHATSAPP_MESSAGE_TYPES, "message type")


class WhatsAppSendProcessor(GatewayProcessor):
    node_type = "whatsapp_send"
    config_model = WhatsAppSendConfig
    label = "WhatsApp sending"

    async def run(self, job_data: NodeJobData, config: WhatsAppSendConfig) -> NodeExecutionResult:
        inputs = job_data.inputs
        to = first_present(inputs.get("to"), config.to)
        message = first_present(inputs.get("message"), config.message)
        if not to or not message:
            raise ValueError("To and message are required for WhatsApp")

        sent = self.unwrap(await self.gateways.messaging.send_message(to, message, config.type))
        return self.succeed(
            job_data, sent, f"WhatsApp message sent to {to}",
            data={"to": to, "type": config.type, "messageId": sent["messageId"]},
        )


# =============================================================================
# PAYMENT PROCESS
# =============================================================================

class PaymentProcessConfig(BaseNodeConfig):
    amount: Optional[float] = Field(default=None, gt=0)
    currency: str = "BRL"
    provider: str = "stripe"
    customer: Any = None

    @field_validator("currency")
    @classmethod
    def check_currency(cls, v: str) -> str:
        return check_allowed(v, PAYMENT_CURRENCIES, "currency")

    @field_validator("provider")
    @classmethod
    def check_provider(cls, v: str) -> str:
        return check_allowed(v, PAYMENT_PROVIDERS, "payment provider")


class PaymentProcessProcessor(GatewayProcessor):
    node_type = "payment_process"
    config_model = PaymentProcessConfig
    label = "Payment processing"

    async def run(self, job_data: NodeJobData, config: PaymentProcessConfig) -> NodeExecutionResult:
        inputs = job_data.inputs
        amount = first_present(inputs.get("amount"), config.amount)
        customer = first_present(inputs.get("customer"), config.customer)
        if not amount or not customer:
            raise ValueError("Amount and customer are required for payment")
        amount = float(amount)
        if amount <= 0:
            raise ValueError("Amount must be a positive number")

        charged = self.unwrap(await self.gateways.payments.charge(
            amount, config.currency, customer, config.provider,
        ))
        return self.succeed(
            job_data, charged, f"Payment processed successfully ({amount} {config.currency})",
            data={"amount": amount, "currency": config.currency,
                  "transactionId": charged["transactionId"]},
        )


ACTION_PROCESSORS: Dict[str, type] = {
    HttpRequestProcessor.node_type: HttpRequestProcessor,
    SendEmailProcessor.node_type: SendEmailProcessor,
    DatabaseSaveProcessor.node_type: DatabaseSaveProcessor,
    WhatsAppSendProcessor.node_type: WhatsAppSendProcessor,
    PaymentProcessProcessor.node_type: PaymentProcessProcessor,
}


def build_action_processors(gateways: Optional[Gateways] = None):
    """Instantiate every action processor around one shared gateway bundle."""
    gateways = gateways or Gateways()
    return [processor_cls(gateways) for processor_cls in ACTION_PROCESSORS.values()]
