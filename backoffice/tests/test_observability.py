"""Tests for log rendering, request id acceptance and the metrics registry."""

import json
import logging

import pytest

from backoffice.core.logging import JsonFormatter, PrettyFormatter, latency_bucket_ms
from backoffice.core.metrics import MetricsRegistry, normalize_path
from backoffice.core.middleware.request_id import accept_request_id


def make_record(**extra):
    record = logging.LogRecord("backoffice", logging.INFO, __file__, 1, "[webhook] applied", None, None)
    record.request_id = "rid-1"
    for key, value in extra.items():
        setattr(record, key, value)
    return record


def test_json_formatter_includes_extra_fields():
    line = JsonFormatter().format(make_record(provider="flutterwave", subscription_id="sub-1"))
    payload = json.loads(line)

    assert payload["message"] == "[webhook] applied"
    assert payload["request_id"] == "rid-1"
    assert payload["provider"] == "flutterwave"
    assert payload["subscription_id"] == "sub-1"


def test_secrets_are_masked_and_long_values_truncated():
    record = make_record(secret_hash="flw-secret", authorization="Bearer abc", payload="x" * 2000)
    payload = json.loads(JsonFormatter().format(record))

    assert payload["secret_hash"] == "***"
    assert payload["authorization"] == "***"
    assert payload["payload"].endswith("...<truncated>")
    assert len(payload["payload"]) < 600


def test_pretty_formatter_line():
    line = PrettyFormatter().format(make_record(outcome="duplicate"))
    assert "[backoffice] [rid=rid-1] [webhook] applied outcome=duplicate" in line


@pytest.mark.parametrize(
    "latency,bucket",
    [(None, "unknown"), (3, "<10ms"), (50, "10-100ms"), (250, "100-500ms"), (900, "500-1000ms"), (4000, ">=1000ms")],
)
def test_latency_buckets(latency, bucket):
    assert latency_bucket_ms(latency) == bucket


@pytest.mark.parametrize(
    "incoming,kept",
    [("test-rid-123", True), ("abc:42.x_y", True), ("", False), (None, False), ("bad id\nforged", False), ("a" * 200, False)],
)
def test_request_id_acceptance(incoming, kept):
    rid = accept_request_id(incoming)
    assert (rid == incoming) is kept
    assert rid


def test_registry_export_and_label_checks():
    registry = MetricsRegistry()
    calls = registry.counter("billing_gateway_calls_total", "Gateway calls", ["provider", "result"])

    calls.inc({"provider": "stripe", "result": "ok"})
    calls.inc({"provider": "stripe", "result": "ok"}, amount=2)
    calls.inc({"provider": "flutterwave", "result": "error"})

    text = registry.export_prometheus()
    assert "# TYPE billing_gateway_calls_total counter" in text
    assert 'billing_gateway_calls_total{provider="stripe",result="ok"} 3' in text
    assert 'billing_gateway_calls_total{provider="flutterwave",result="error"} 1' in text

    with pytest.raises(ValueError):
        calls.inc({"gateway": "stripe"})
    with pytest.raises(ValueError):
        calls.inc({"provider": "stripe"}, amount=-1)


@pytest.mark.parametrize(
    "path,params,expected",
    [
        ("/api/plans", None, "/api/plans"),
        ("/api/admin/usage/user_ama/reset", {"user_id": "user_ama"}, "/api/admin/usage/:user_id/reset"),
        ("/api/subscriptions/5f0c7a1e-8d1b-4a7e-9a57-0c3f1d2e4b6a/cancel", None, "/api/subscriptions/:id/cancel"),
        ("/api/transactions/4975112", None, "/api/transactions/:id"),
    ],
)
def test_normalize_path(path, params, expected):
    assert normalize_path(path, params) == expected
