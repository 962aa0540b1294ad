"""Tests for the built-in node processors."""

import time
from datetime import datetime

import httpx
import pytest

from autoflow.constants import BUILTIN_PROCESSOR_TYPES
from autoflow.services.gateways import Gateways, HttpGateway
from autoflow.services.processors import builtin_processors
from autoflow.services.processors.actions import (
    DatabaseSaveProcessor,
    HttpRequestProcessor,
    PaymentProcessProcessor,
    SendEmailProcessor,
    WhatsAppSendProcessor,
)
from autoflow.services.processors.conditions import (
    ConditionIfProcessor,
    ErrorHandlerProcessor,
    RetryProcessor,
    ValidationProcessor,
)
from autoflow.services.processors.triggers import (
    DatabaseTriggerProcessor,
    ManualTriggerProcessor,
    ScheduleTriggerProcessor,
    WebhookTriggerProcessor,
    next_run_time,
)
from autoflow.services.processors.utility import (
    CloneProcessor,
    CodeExecutionProcessor,
    DataTransformProcessor,
    DelayProcessor,
    LoggerProcessor,
)
from conftest import HttpRecorder, node_job


def test_every_builtin_type_has_one_processor():
    processors = builtin_processors()
    assert {p.node_type for p in processors} == BUILTIN_PROCESSOR_TYPES
    assert len(processors) == len(BUILTIN_PROCESSOR_TYPES)


class TestTriggers:
    async def test_manual_trigger_echoes_trigger_data(self):
        result = await ManualTriggerProcessor().process(
            node_job("manual_trigger", inputs={"triggerData": {"who": "alice"}}),
        )
        assert result.success
        assert result.data["triggerType"] == "manual"
        assert result.data["data"] == {"who": "alice"}
        assert result.logs[0].message == "Manual trigger executed"

    async def test_webhook_trigger_validates_method(self):
        processor = WebhookTriggerProcessor()
        assert processor.validate({"method": "PUT"})
        assert not processor.validate({"method": "TRACE"})

        result = await processor.process(node_job("webhook_trigger", inputs={
            "headers": {"x-id": "1"}, "body": {"a": 1}, "query": {"q": "z"},
        }))
        assert result.data["method"] == "POST"
        assert result.data["body"] == {"a": 1}
        assert result.data["query"] == {"q": "z"}

    def test_schedule_trigger_requires_five_cron_fields(self):
        processor = ScheduleTriggerProcessor()
        assert processor.validate({"cron": "0 9 * * 1-5"})
        assert not processor.validate({"cron": "0 9 * *"})
        assert not processor.validate({})

    async def test_schedule_trigger_reports_next_execution(self):
        result = await ScheduleTriggerProcessor().process(
            node_job("schedule_trigger", {"cron": "*/5 * * * *", "timezone": "UTC"}),
        )
        assert result.success
        next_execution = datetime.fromisoformat(result.data["nextExecution"])
        assert next_execution.minute % 5 == 0

    def test_next_run_time_honours_timezone(self):
        base = datetime.fromisoformat("2024-01-01T10:00:00+00:00")
        nxt = next_run_time("0 9 * * *", "America/Sao_Paulo", base)
        # 10:00 UTC is 07:00 in Sao Paulo, so 09:00 local is the same day
        assert nxt.hour == 9
        assert nxt.day == 1

    async def test_database_trigger_validates_operation(self):
        processor = DatabaseTriggerProcessor()
        assert processor.validate({"table": "users", "operation": "delete"})
        assert not processor.validate({"table": "users", "operation": "upsert"})
        assert not processor.validate({"table": ""})

        result = await processor.process(node_job(
            "database_trigger", {"table": "users"}, {"record": {"id": 1}},
        ))
        assert result.data["operation"] == "insert"
        assert result.data["record"] == {"id": 1}


class TestHttpRequest:
    def make(self, recorder: HttpRecorder) -> HttpRequestProcessor:
        return HttpRequestProcessor(Gateways(http=HttpGateway(httpx.MockTransport(recorder))))

    def test_validate_rejects_empty_url(self):
        processor = HttpRequestProcessor()
        assert processor.validate({"url": "", "method": "GET"}) is False
        assert processor.validate({"url": "https://x.test", "method": "FETCH"}) is False
        assert processor.validate({"url": "https://x.test"}) is True

    async def test_successful_request(self):
        recorder = HttpRecorder(body={"id": 5})
        result = await self.make(recorder).process(node_job(
            "http_request",
            {"url": "https://api.example.com/users", "method": "post",
             "headers": {"X-Token": "abc"}},
            {"data": {"name": "bob"}, "params": {"page": 2}},
        ))

        assert result.success
        assert result.data["status"] == 200
        assert result.data["data"] == {"id": 5}
        assert result.data["method"] == "post"
        request = recorder.requests[0]
        assert request.method == "POST"
        assert request.url.params["page"] == "2"
        assert request.headers["X-Token"] == "abc"
        assert b'"bob"' in request.content

    async def test_url_comes_only_from_config(self):
        recorder = HttpRecorder()
        result = await self.make(recorder).process(node_job(
            "http_request", {"method": "GET"}, {"url": "https://api.example.com/items"},
        ))
        assert not result.success
        assert recorder.requests == []

    async def test_error_status_fails_node(self):
        result = await self.make(HttpRecorder(status_code=404)).process(
            node_job("http_request", {"url": "https://api.example.com/missing"}),
        )
        assert not result.success
        assert result.error == "Request failed with status code 404"
        assert result.logs[0].level.value == "error"

    async def test_transport_error_fails_node(self):
        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        processor = HttpRequestProcessor(Gateways(http=HttpGateway(httpx.MockTransport(refuse))))
        result = await processor.process(node_job("http_request", {"url": "https://down.test"}))

        assert not result.success
        assert "connection refused" in result.error


class TestSimulatedActions:
    async def test_send_email(self):
        result = await SendEmailProcessor().process(node_job(
            "send_email", {"provider": "sendgrid"},
            {"to": "a@b.co", "subject": "Hi", "body": "Hello"},
        ))
        assert result.success
        assert result.data["messageId"].startswith("msg_")
        assert result.data["from"] == "noreply@autoflow.com"
        assert result.data["status"] == "sent"

    async def test_send_email_requires_recipient(self):
        result = await SendEmailProcessor().process(node_job("send_email", {}, {"subject": "x"}))
        assert result.error == "To, subject, and body are required for email"

    def test_send_email_rejects_unknown_provider(self):
        assert not SendEmailProcessor().validate({"provider": "pigeon"})

    async def test_database_save(self):
        result = await DatabaseSaveProcessor().process(node_job(
            "database_save", {"table": "orders", "operation": "upsert"}, {"data": {"id": 1}},
        ))
        assert result.success
        assert result.data["id"].startswith("rec_")
        assert result.data["affectedRows"] == 1

    async def test_database_save_requires_data(self):
        result = await DatabaseSaveProcessor().process(
            node_job("database_save", {"table": "orders"}, {"data": "not a dict"}),
        )
        assert result.error == "Data is required for database operation"

    async def test_whatsapp_send(self):
        processor = WhatsAppSendProcessor()
        assert not processor.validate({"type": "sticker"})

        result = await processor.process(node_job(
            "whatsapp_send", {"type": "text", "to": "+5511999999999", "message": "oi"},
        ))
        assert result.data["messageId"].startswith("wa_")

    async def test_payment_process(self):
        result = await PaymentProcessProcessor().process(node_job(
            "payment_process", {"currency": "USD"}, {"amount": 25.5, "customer": {"id": "c1"}},
        ))
        assert result.success
        assert result.data["transactionId"].startswith("txn_")
        assert result.data["receipt"]["status"] == "paid"
        assert result.data["provider"] == "stripe"

    def test_payment_validation(self):
        processor = PaymentProcessProcessor()
        assert not processor.validate({"amount": -3})
        assert not processor.validate({"currency": "JPY"})
        assert not processor.validate({"provider": "cash"})
        assert processor.validate({"amount": 10, "currency": "EUR", "provider": "paypal"})

    async def test_payment_requires_customer(self):
        result = await PaymentProcessProcessor().process(
            node_job("payment_process", {"amount": 10}),
        )
        assert result.error == "Amount and customer are required for payment"


class TestConditions:
    async def test_condition_expression_false_branch(self):
        result = await ConditionIfProcessor().process(node_job(
            "condition_if", {"condition": "input.value > 10"}, {"value": 5},
        ))
        assert result.success
        assert result.data["result"] is False
        assert result.next_nodes == ["false"]

    async def test_condition_accepts_javascript_operators(self):
        result = await ConditionIfProcessor().process(node_job(
            "condition_if", {"condition": "input.status === 'paid' && amount >= 10"},
            {"status": "paid", "amount": 12},
        ))
        assert result.data["result"] is True
        assert result.next_nodes == ["true"]

    async def test_condition_evaluation_error_is_false(self):
        result = await ConditionIfProcessor().process(node_job(
            "condition_if", {"condition": "missing_name > 1"}, {},
        ))
        assert result.success
        assert result.next_nodes == ["false"]

    @pytest.mark.parametrize("operator,value,expected", [
        ("equals", "gold", True),
        ("contains", "ol", True),
        ("greater", "a", True),
        ("less", "a", False),
    ])
    async def test_field_operators(self, operator, value, expected):
        result = await ConditionIfProcessor().process(node_job(
            "condition_if", {"condition": "customer.tier", "operator": operator, "value": value},
            {"customer": {"tier": "gold"}},
        ))
        assert result.data["result"] is expected

    def test_condition_requires_condition(self):
        assert not ConditionIfProcessor().validate({})
        assert not ConditionIfProcessor().validate({"condition": "x", "operator": "like"})

    async def test_validation_rules(self):
        result = await ValidationProcessor().process(node_job(
            "validation",
            {"rules": [
                {"type": "required", "field": "name"},
                {"type": "email", "field": "email"},
                {"type": "minLength", "field": "password", "value": 8},
            ]},
            {"input": {"email": "not-an-email", "password": "short"}},
        ))
        assert result.success
        assert result.data["valid"] is False
        assert result.data["errors"] == [
            "Field name is required",
            "Field email must be a valid email",
            "Field password must be at least 8 characters",
        ]
        assert result.next_nodes == ["invalid"]
        assert result.logs[0].level.value == "warn"

    async def test_validation_passes(self):
        result = await ValidationProcessor().process(node_job(
            "validation", {"rules": [{"type": "email", "field": "email"}]},
            {"email": "a@b.co"},
        ))
        assert result.next_nodes == ["valid"]

    async def test_min_length_ignores_values_without_length(self):
        result = await ValidationProcessor().process(node_job(
            "validation",
            {"rules": [{"type": "minLength", "field": "n", "value": 3},
                       {"type": "minLength", "field": "code", "value": 3}]},
            {"n": 12345, "code": "ab"},
        ))
        assert result.success
        assert result.data["errors"] == ["Field code must be at least 3 characters"]

    async def test_error_handler_without_error(self):
        result = await ErrorHandlerProcessor().process(node_job("error_handler"))
        assert result.data["handled"] is False
        assert result.next_nodes == ["success"]

    async def test_error_handler_with_error(self):
        result = await ErrorHandlerProcessor().process(node_job(
            "error_handler", {"type": "fallback", "fallbackAction": "notify"},
            {"error": "upstream failed"},
        ))
        assert result.data["handled"] is True
        assert result.data["fallbackAction"] == "notify"
        assert result.next_nodes == ["handled"]

    def test_error_handler_validation(self):
        assert not ErrorHandlerProcessor().validate({"type": "ignore"})

    async def test_retry_decision(self):
        processor = RetryProcessor()
        assert not processor.validate({"attempts": 11})
        assert not processor.validate({"delay": -1})

        retry = await processor.process(node_job("retry", {"condition": "attempt < 3"}, {"attempt": 1}))
        give_up = await processor.process(node_job("retry", {"condition": "attempt < 3"}, {"attempt": 3}))
        assert retry.next_nodes == ["retry"]
        assert give_up.next_nodes == ["failed"]


class TestUtility:
    async def test_delay_waits_for_duration(self):
        started = time.monotonic()
        result = await DelayProcessor().process(
            node_job("delay", {"duration": 2, "unit": "seconds"}),
        )
        elapsed = time.monotonic() - started

        assert result.success
        assert result.data["delayMs"] == 2000
        assert elapsed >= 2.0

    def test_delay_validation(self):
        assert not DelayProcessor().validate({"duration": -1})
        assert not DelayProcessor().validate({"unit": "days"})

    async def test_transform_sort_desc(self):
        result = await DataTransformProcessor().process(node_job(
            "data_transform_util",
            {"operation": "sort", "mapping": {"sortKey": "score", "order": "desc"}},
            {"input": [{"score": 1}, {"score": 3}, {"score": 2}]},
        ))
        assert [item["score"] for item in result.data["transformedData"]] == [3, 2, 1]

    async def test_transform_reduce_sums_field(self):
        result = await DataTransformProcessor().process(node_job(
            "data_transform_util",
            {"operation": "reduce", "mapping": {"field": "price", "initialValue": 10}},
            {"input": [{"price": 5}, {"price": 7}]},
        ))
        assert result.data["transformedData"] == 22

    async def test_transform_map_and_group(self):
        rows = [{"user": {"name": "ana"}, "team": "a"}, {"user": {"name": "bo"}, "team": "b"}]
        mapped = await DataTransformProcessor().process(node_job(
            "data_transform_util", {"operation": "map", "mapping": {"name": "user.name"}},
            {"input": rows},
        ))
        grouped = await DataTransformProcessor().process(node_job(
            "data_transform_util", {"operation": "group", "mapping": {"groupBy": "team"}},
            {"input": rows},
        ))
        assert mapped.data["transformedData"] == [{"name": "ana"}, {"name": "bo"}]
        assert set(grouped.data["transformedData"]) == {"a", "b"}

    async def test_clone(self):
        result = await CloneProcessor().process(node_job("clone", {"copies": 3}, {"input": {"id": 1}}))
        clones = result.data["clonedData"]
        assert [clone["cloneIndex"] for clone in clones] == [1, 2, 3]
        assert all(clone["id"] == 1 for clone in clones)
        assert not CloneProcessor().validate({"copies": 11})

    async def test_code_execution(self):
        result = await CodeExecutionProcessor().process(node_job(
            "code_execution", {"code": "input.a * 2 + b"}, {"a": 4, "b": 1},
        ))
        assert result.data["result"] == 9
        assert not CodeExecutionProcessor().validate({"code": "x", "language": "python"})

    async def test_code_execution_error(self):
        result = await CodeExecutionProcessor().process(node_job(
            "code_execution", {"code": "__import__('os')"},
        ))
        assert not result.success
        assert result.error.startswith("Code execution error:")

    async def test_logger(self):
        result = await LoggerProcessor().process(node_job(
            "logger", {"level": "warn", "message": "disk almost full"},
        ))
        assert result.data["logId"].startswith("log_")
        assert result.logs[0].level.value == "warn"
        assert result.logs[0].message == "Logger: disk almost full"
