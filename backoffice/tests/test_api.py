"""
HTTP surface tests: error contract, request ids, and the billing endpoints.
"""
import logging
from decimal import Decimal

from backoffice.core.metrics import webhook_events_total
from backoffice.tests.mocks import charge_event, signed, verified_payment

AMA = {"X-User-Id": "user_ama"}
KOFI = {"X-User-Id": "user_kofi"}


def start_checkout(client, headers=AMA, plan_id="professional"):
    resp = client.post("/api/subscriptions/create", headers=headers, json={"planId": plan_id, "billingPeriod": "monthly"})
    assert resp.status_code == 200, resp.text
    return resp.json()


def pay(client, reference, provider_transaction_id="fw-1001", amount="90.00"):
    return client.post(
        "/api/webhooks/payment-provider",
        content=charge_event(provider_transaction_id, reference, amount=amount),
        headers=signed(),
    )


class TestErrorContract:
    def test_validation_error_has_standard_shape(self, client):
        resp = client.post("/api/subscriptions/create", headers=AMA, json={"billingPeriod": "monthly"})

        assert resp.status_code == 400
        body = resp.json()
        rid = resp.headers.get("x-request-id")
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["request_id"] == rid
        assert body["detail"] == body["error"]["message"]

    def test_domain_validation_error(self, client):
        resp = client.post("/api/subscriptions/create", headers=AMA, json={"planId": "professional", "billingPeriod": "weekly"})

        assert resp.status_code == 400
        assert "billing_period" in resp.json()["error"]["message"]

    def test_unknown_plan_is_not_found(self, client):
        resp = client.post("/api/subscriptions/create", headers=AMA, json={"planId": "platinum"})

        assert resp.status_code == 404
        assert resp.json()["error"]["code"] == "not_found"

    def test_conflict_and_invalid_state(self, client):
        checkout = start_checkout(client)
        pay(client, checkout["payment_reference"])

        conflict = client.post("/api/subscriptions/create", headers=AMA, json={"planId": "enterprise"})
        assert conflict.status_code == 409
        assert conflict.json()["error"]["code"] == "conflict"

        subscription_id = checkout["subscription"]["id"]
        client.post(f"/api/subscriptions/{subscription_id}/cancel", headers=AMA, json={"immediate": True})
        again = client.put(f"/api/subscriptions/{subscription_id}", headers=AMA, json={"planId": "enterprise"})
        assert again.status_code == 409
        assert again.json()["error"]["code"] == "invalid_state"

    def test_gateway_failure_is_502(self, client, gateway):
        from backoffice.core.errors import GatewayError

        gateway.fail_with = GatewayError("Flutterwave initialize_payment failed: HTTP 503", transient=True)
        resp = client.post("/api/subscriptions/create", headers=AMA, json={"planId": "professional"})

        assert resp.status_code == 502
        assert resp.json()["error"]["code"] == "gateway_error"

    def test_unhandled_errors_are_internal_error(self, client, services, monkeypatch):
        def broken(user_id):
            raise RuntimeError("database exploded")

        monkeypatch.setattr(services.lifecycle, "get_current_subscription", broken)
        resp = client.get("/api/subscriptions/current", headers=AMA)

        assert resp.status_code == 500
        body = resp.json()
        assert body["error"]["code"] == "internal_error"
        assert "exploded" not in body["error"]["message"]


class TestRequestId:
    def test_generates_request_id_when_missing(self, client):
        resp = client.get("/healthz")
        assert resp.status_code == 200
        assert resp.headers.get("x-request-id")

    def test_echoes_provided_request_id(self, client):
        resp = client.get("/api/subscriptions/current", headers={**AMA, "X-Request-Id": "test-rid-123"})

        assert resp.status_code == 404
        assert resp.headers.get("x-request-id") == "test-rid-123"
        assert resp.json()["error"]["request_id"] == "test-rid-123"

    def test_request_id_in_logs(self, client, caplog):
        with caplog.at_level(logging.INFO, logger="backoffice"):
            response = client.get("/api/plans")
        rid = response.headers.get("x-request-id")
        records = [r for r in caplog.records if getattr(r, "request_id", None) == rid]
        assert records, "Expected logs to contain request_id from response"
        assert any(r.getMessage() == "request.complete" for r in records)


class TestPlans:
    def test_list_plans(self, client):
        resp = client.get("/api/plans")

        assert resp.status_code == 200
        plans = resp.json()["plans"]
        assert [p["plan_id"] for p in plans] == ["free", "professional", "enterprise"]
        professional = plans[1]
        assert Decimal(professional["price_monthly"]) == Decimal("90")
        assert professional["currency"] == "GHS"
        assert professional["features"]["multi_location"]["limit"] == 5

    def test_compare(self, client):
        body = client.get("/api/plans/compare").json()

        assert [p["plan_id"] for p in body["plans"]] == ["free", "professional", "enterprise"]
        assert "api_access" in body["features"]


class TestSubscriptionEndpoints:
    def test_create_returns_checkout(self, client, gateway):
        body = start_checkout(client)

        assert body["subscription"]["status"] == "pending_payment"
        assert body["subscription"]["is_active"] is False
        assert body["payment_link"] == f"https://checkout.example/pay/{body['payment_reference']}"
        assert gateway.last_request().metadata["userId"] == "user_ama"

    def test_customer_details_forwarded(self, client, gateway):
        client.post(
            "/api/subscriptions/create",
            headers=AMA,
            json={"planId": "professional", "email": "ama@example.com", "phoneNumber": "0240000000"},
        )

        customer = gateway.last_request().customer
        assert customer.email == "ama@example.com"
        assert customer.phone_number == "0240000000"

    def test_current_after_payment(self, client):
        assert client.get("/api/subscriptions/current", headers=AMA).status_code == 404

        checkout = start_checkout(client)
        assert pay(client, checkout["payment_reference"]).json()["outcome"] == "applied"

        current = client.get("/api/subscriptions/current", headers=AMA).json()["subscription"]
        assert current["status"] == "active"
        assert current["is_active"] is True
        assert current["plan_id"] == "professional"

    def test_transactions_hide_payment_links(self, client):
        start_checkout(client)

        [txn] = client.get("/api/subscriptions/transactions", headers=AMA).json()["transactions"]

        assert txn["status"] == "pending"
        assert Decimal(txn["amount"]) == Decimal("90")
        assert "paymentLink" not in txn["metadata"]

    def test_verify_payment(self, client, gateway):
        checkout = start_checkout(client)
        reference = checkout["payment_reference"]
        gateway.payments["fw-2002"] = verified_payment("fw-2002", reference, meta={"userId": "user_ama"})

        resp = client.post(
            "/api/subscriptions/verify-payment",
            headers=AMA,
            json={"transactionId": "fw-2002", "reference": reference},
        )

        assert resp.status_code == 200
        assert resp.json()["success"] is True
        assert resp.json()["subscription_id"] == checkout["subscription"]["id"]

    def test_verify_payment_for_someone_else(self, client, gateway):
        checkout = start_checkout(client)
        reference = checkout["payment_reference"]
        gateway.payments["fw-2002"] = verified_payment("fw-2002", reference, meta={"userId": "user_ama"})

        resp = client.post(
            "/api/subscriptions/verify-payment",
            headers=KOFI,
            json={"transactionId": "fw-2002", "reference": reference},
        )

        assert resp.status_code == 404

    def test_upgrade_and_cancel(self, client):
        checkout = start_checkout(client)
        pay(client, checkout["payment_reference"])
        subscription_id = checkout["subscription"]["id"]

        upgrade = client.put(f"/api/subscriptions/{subscription_id}", headers=AMA, json={"planId": "enterprise"})
        assert upgrade.status_code == 200
        body = upgrade.json()
        assert body["applied"] is False
        assert body["proration"]["net_amount"] == "120.00"
        assert body["payment_link"]

        cancel = client.post(f"/api/subscriptions/{subscription_id}/cancel", headers=AMA, json={})
        assert cancel.status_code == 200
        assert cancel.json()["subscription"]["cancel_at_period_end"] is True
        assert cancel.json()["subscription"]["status"] == "active"

    def test_other_users_subscriptions_are_invisible(self, client):
        checkout = start_checkout(client)
        subscription_id = checkout["subscription"]["id"]

        update = client.put(f"/api/subscriptions/{subscription_id}", headers=KOFI, json={"planId": "enterprise"})
        cancel = client.post(f"/api/subscriptions/{subscription_id}/cancel", headers=KOFI, json={"immediate": True})

        assert update.status_code == 404
        assert cancel.status_code == 404


class TestWebhookEndpoint:
    def test_bad_signature_is_401(self, client):
        checkout = start_checkout(client)

        resp = client.post(
            "/api/webhooks/payment-provider",
            content=charge_event("fw-1", checkout["payment_reference"]),
            headers=signed("forged"),
        )

        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "invalid_signature"
        assert webhook_events_total.value({"provider": "fake", "outcome": "rejected"}) == 1

    def test_replayed_delivery_is_acknowledged(self, client):
        checkout = start_checkout(client)

        first = pay(client, checkout["payment_reference"])
        second = pay(client, checkout["payment_reference"])

        assert first.status_code == second.status_code == 200
        assert first.json()["outcome"] == "applied"
        assert second.json()["outcome"] == "duplicate"

    def test_gateway_calls_stay_off_the_event_loop(self, client, gateway):
        checkout = start_checkout(client)
        resp = pay(client, checkout["payment_reference"])

        assert resp.status_code == 200
        assert resp.json()["outcome"] == "applied"
        assert len(gateway.requests) == 1
        assert gateway.calls_on_event_loop == 0

    def test_unhandled_event_is_acknowledged(self, client):
        resp = client.post(
            "/api/webhooks/payment-provider",
            content=b'{"event": "transfer.completed", "data": {}}',
            headers=signed(),
        )

        assert resp.status_code == 200
        assert resp.json()["outcome"] == "ignored"


class TestFeatureEndpoints:
    def test_free_user_limits(self, client):
        start_checkout(client, plan_id="free")

        for _ in range(5):
            assert client.post("/api/features/basic_reports/usage", headers=AMA, json={}).status_code == 200

        decision = client.get("/api/features/basic_reports/access", headers=AMA).json()
        assert decision["has_access"] is False
        assert decision["upgrade_required"] is True
        assert decision["suggested_plan"] == "professional"

        listing = client.get("/api/features", headers=AMA).json()
        assert "api_access" not in listing["features"]
        assert listing["usage"]["basic_reports"]["current_usage"] == 5

    def test_usage_increment_must_be_positive(self, client):
        resp = client.post("/api/features/basic_reports/usage", headers=AMA, json={"increment": 0})
        assert resp.status_code == 400


class TestAdmin:
    def test_admin_key_required(self, client):
        assert client.get("/api/admin/subscriptions/stats").status_code == 403
        resp = client.get("/api/admin/subscriptions/stats", headers={"X-Admin-Key": "wrong"})
        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"

    def test_stats(self, client, admin_headers):
        checkout = start_checkout(client)
        pay(client, checkout["payment_reference"])

        stats = client.get("/api/admin/subscriptions/stats", headers=admin_headers).json()

        assert stats["active"] == 1
        assert stats["plan_distribution"] == {"professional": 1}
        assert stats["revenue"] == {"GHS": "90.00"}
        assert stats["payments"]["successful"] == 1
        assert stats["churn"]["total_churned"] == 0

    def test_reporting_endpoints(self, client, admin_headers):
        checkout = start_checkout(client)
        pay(client, checkout["payment_reference"])

        expiring = client.get("/api/admin/subscriptions/expiring?days=40", headers=admin_headers)
        payments = client.get("/api/admin/payments/metrics", headers=admin_headers)
        churn = client.get("/api/admin/subscriptions/churn?days=30", headers=admin_headers)

        assert [s["user_id"] for s in expiring.json()["subscriptions"]] == ["user_ama"]
        assert payments.json()["success_rate"] == 100.0
        assert churn.json()["window_days"] == 30
        assert client.get("/api/admin/subscriptions/expiring?days=-1", headers=admin_headers).status_code == 400
        assert client.get("/api/admin/payments/metrics", headers=AMA).status_code == 403

    def test_run_sweeps(self, client, admin_headers):
        resp = client.post("/api/admin/sweeps/run", headers=admin_headers)

        assert resp.status_code == 200
        assert resp.json()["subscriptions_expired"] == 0

    def test_usage_reset(self, client, admin_headers):
        start_checkout(client, plan_id="free")
        client.post("/api/features/basic_reports/usage", headers=AMA, json={"increment": 3})

        resp = client.post("/api/admin/usage/user_ama/reset", headers=admin_headers, json={"feature": "basic_reports"})

        assert resp.json()["counters_reset"] == 1
        decision = client.get("/api/features/basic_reports/access", headers=AMA).json()
        assert decision["current_usage"] == 0

    def test_plan_update_and_seed(self, client, admin_headers):
        resp = client.patch("/api/admin/plans/professional", headers=admin_headers, json={"name": "Pro", "sort_order": 5})

        assert resp.status_code == 200
        assert resp.json()["plan"]["name"] == "Pro"
        assert client.post("/api/admin/plans/seed", headers=admin_headers).json() == {"created": []}


class TestMetricsEndpoint:
    def test_exposes_counters(self, client):
        client.get("/api/plans")

        resp = client.get("/metrics")

        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/plain")
        assert 'http_requests_total{method="GET",path="/api/plans",status="200"} 1' in resp.text
