"""
API tests for the Casso payment endpoints.

Covers:
- Webhook authentication and payload validation
- Webhook settlement and idempotent replay
- Read-only payment status
- Operator endpoints (auth, manual match, ledger)
"""

import pytest

from config import Settings
from reconciliation.endpoints.casso_api import verify_webhook_token
from reconciliation.errors import AuthenticationFailure, ReconciliationError, WebhookTokenNotConfigured
from factories import make_transaction


def webhook_body(order_number, amount=246000, transaction_id="7001"):
    return {
        "error": 0,
        "data": [{
            "id": transaction_id,
            "tid": f"FT{transaction_id}",
            "description": f"DAT MON {order_number} 0901234567",
            "amount": amount,
            "cusum_balance": 10000000,
            "when": "2024-01-15 10:30:00",
            "bank_sub_acc_id": "0123456789",
        }],
    }


# ==================== TOKEN VERIFICATION ====================

class TestVerifyWebhookToken:

    def test_valid_token(self):
        settings = Settings(CASSO_WEBHOOK_TOKEN="secret", ENVIRONMENT="test")
        assert verify_webhook_token("secret", settings) is True

    def test_wrong_token(self):
        settings = Settings(CASSO_WEBHOOK_TOKEN="secret", ENVIRONMENT="test")
        with pytest.raises(AuthenticationFailure):
            verify_webhook_token("Secret", settings)

    def test_missing_token(self):
        settings = Settings(CASSO_WEBHOOK_TOKEN="secret", ENVIRONMENT="test")
        with pytest.raises(AuthenticationFailure):
            verify_webhook_token(None, settings)

    def test_unconfigured_outside_production(self):
        settings = Settings(CASSO_WEBHOOK_TOKEN="", ENVIRONMENT="development")
        assert verify_webhook_token(None, settings) is True

    def test_unconfigured_in_production(self):
        settings = Settings(CASSO_WEBHOOK_TOKEN="", ENVIRONMENT="production")
        with pytest.raises(WebhookTokenNotConfigured):
            verify_webhook_token("anything", settings)

    def test_unconfigured_is_a_reconciliation_error(self):
        settings = Settings(CASSO_WEBHOOK_TOKEN="", ENVIRONMENT="production")
        with pytest.raises(ReconciliationError):
            verify_webhook_token("anything", settings)


# ==================== WEBHOOK ====================

class TestCassoWebhook:

    @pytest.mark.asyncio
    async def test_settles_order(self, api_client, webhook_headers, make_order, load_order):
        order = await make_order()

        response = await api_client.post(
            "/api/casso/webhook", json=webhook_body(order.order_number), headers=webhook_headers
        )

        assert response.status_code == 200
        data = response.json()
        assert data["success"] is True
        assert data["results"][0]["outcome"] == "paid"
        assert data["results"][0]["order_id"] == order.id
        assert (await load_order(order.id)).payment_status == "paid"

    @pytest.mark.asyncio
    async def test_replay_reports_already_settled(self, api_client, webhook_headers, make_order):
        order = await make_order()
        body = webhook_body(order.order_number)

        await api_client.post("/api/casso/webhook", json=body, headers=webhook_headers)
        response = await api_client.post("/api/casso/webhook", json=body, headers=webhook_headers)

        assert response.status_code == 200
        result = response.json()["results"][0]
        assert result["outcome"] == "duplicate"
        assert result["already_settled"] is True

    @pytest.mark.asyncio
    async def test_mismatch_still_acknowledged(self, api_client, webhook_headers, make_order, load_order):
        order = await make_order()

        response = await api_client.post(
            "/api/casso/webhook", json=webhook_body(order.order_number, amount=100000), headers=webhook_headers
        )

        assert response.status_code == 200
        assert response.json()["results"][0]["outcome"] == "amount_mismatch"
        assert (await load_order(order.id)).payment_status == "pending"

    @pytest.mark.asyncio
    async def test_legacy_signature_header(self, api_client, webhook_headers, make_order):
        order = await make_order()

        response = await api_client.post(
            "/api/casso/webhook",
            json=webhook_body(order.order_number),
            headers={"x-casso-signature": webhook_headers["secure-token"]},
        )

        assert response.status_code == 200

    @pytest.mark.asyncio
    async def test_wrong_token_rejected(self, api_client, make_order, load_order, coordinator):
        order = await make_order()

        response = await api_client.post(
            "/api/casso/webhook", json=webhook_body(order.order_number), headers={"secure-token": "nope"}
        )

        assert response.status_code == 401
        assert (await load_order(order.id)).payment_status == "pending"
        assert (await coordinator.list_transactions())["pagination"]["total"] == 0

    @pytest.mark.asyncio
    async def test_unconfigured_token_in_production(self, api_client, coordinator):
        from server import app
        from config import get_settings

        app.dependency_overrides[get_settings] = lambda: Settings(
            _env_file=None, CASSO_WEBHOOK_TOKEN="", ENVIRONMENT="production"
        )
        response = await api_client.post(
            "/api/casso/webhook", json=webhook_body("ORD20240115000001"), headers={"secure-token": "x"}
        )

        assert response.status_code == 503
        assert (await coordinator.list_transactions())["pagination"]["total"] == 0

    @pytest.mark.asyncio
    async def test_missing_token_rejected(self, api_client):
        response = await api_client.post("/api/casso/webhook", json=webhook_body("ORD20240115000001"))
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_invalid_json(self, api_client, webhook_headers):
        response = await api_client.post(
            "/api/casso/webhook",
            content=b"{not json",
            headers={**webhook_headers, "Content-Type": "application/json"},
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_malformed_batch_processes_nothing(self, api_client, webhook_headers, make_order, coordinator):
        order = await make_order()
        body = webhook_body(order.order_number)
        body["data"].append({"id": "7002", "description": "no amount"})

        response = await api_client.post("/api/casso/webhook", json=body, headers=webhook_headers)

        assert response.status_code == 400
        assert (await coordinator.list_transactions())["pagination"]["total"] == 0


# ==================== CUSTOMER ENDPOINTS ====================

class TestPaymentStatus:

    @pytest.mark.asyncio
    async def test_unpaid_then_paid(self, api_client, coordinator, make_order):
        order = await make_order()

        response = await api_client.get(f"/api/casso/payment-status/{order.order_number}")
        assert response.status_code == 200
        assert response.json()["paid"] is False

        await coordinator.ingest(make_transaction(description=order.order_number))

        response = await api_client.get(f"/api/casso/payment-status/{order.order_number}")
        assert response.json()["paid"] is True
        assert response.json()["payment_status"] == "paid"

    @pytest.mark.asyncio
    async def test_status_check_has_no_side_effects(self, api_client, coordinator, make_order, load_order):
        order = await make_order()

        for _ in range(3):
            await api_client.get(f"/api/casso/payment-status/{order.order_number}")

        assert (await load_order(order.id)).payment_status == "pending"
        assert (await coordinator.ledger_stats())["total"] == 0

    @pytest.mark.asyncio
    async def test_unknown_order(self, api_client):
        response = await api_client.get("/api/casso/payment-status/ORD20991231999999")
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_payment_instructions(self, api_client, make_order):
        order = await make_order(customer_phone="0909888777")

        response = await api_client.get(f"/api/casso/payment-instructions/{order.order_number}")

        assert response.status_code == 200
        data = response.json()
        assert data["amount"] == 246000
        assert data["transfer_content"] == f"{order.order_number} 0909888777"
        assert data["bank_name"] == "Vietcombank"


# ==================== OPERATOR ENDPOINTS ====================

class TestOperatorEndpoints:

    @pytest.mark.asyncio
    async def test_requires_api_key(self, api_client):
        response = await api_client.get("/api/casso/transactions")
        assert response.status_code == 401

        response = await api_client.get(
            "/api/casso/transactions", headers={"X-Internal-Api-Key": "wrong-key"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_list_transactions(self, api_client, coordinator, operator_headers):
        await coordinator.ingest(make_transaction(description="chuyen tien"))

        response = await api_client.get("/api/casso/transactions", headers=operator_headers)

        assert response.status_code == 200
        data = response.json()
        assert data["pagination"]["total"] == 1
        assert data["transactions"][0]["match_status"] == "unmatched"

    @pytest.mark.asyncio
    async def test_list_transactions_invalid_status(self, api_client, operator_headers):
        response = await api_client.get(
            "/api/casso/transactions", params={"match_status": "bogus"}, headers=operator_headers
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_unmatched_queue(self, api_client, coordinator, operator_headers):
        await coordinator.ingest(make_transaction(description="chuyen tien"))

        response = await api_client.get("/api/casso/transactions/unmatched", headers=operator_headers)

        assert response.status_code == 200
        assert response.json()["count"] == 1

    @pytest.mark.asyncio
    async def test_manual_match(self, api_client, coordinator, operator_headers, make_order, load_order):
        order = await make_order()
        transaction = make_transaction(amount=240000, description="chuyen khoan")
        await coordinator.ingest(transaction)

        response = await api_client.post(
            f"/api/casso/transactions/{transaction.id}/match",
            json={"orderNumber": order.order_number},
            headers=operator_headers,
        )

        assert response.status_code == 200
        assert response.json()["outcome"] == "paid"
        assert (await load_order(order.id)).payment_transaction_id == transaction.id

    @pytest.mark.asyncio
    async def test_manual_match_without_key(self, api_client, coordinator, make_order, load_order):
        order = await make_order()
        transaction = make_transaction(description="chuyen khoan")
        await coordinator.ingest(transaction)

        response = await api_client.post(
            f"/api/casso/transactions/{transaction.id}/match",
            json={"orderNumber": order.order_number},
        )

        assert response.status_code == 401
        assert (await load_order(order.id)).payment_status == "pending"

    @pytest.mark.asyncio
    async def test_manual_match_requires_order(self, api_client, operator_headers):
        response = await api_client.post(
            "/api/casso/transactions/123/match", json={}, headers=operator_headers
        )
        assert response.status_code == 400

    @pytest.mark.asyncio
    async def test_manual_match_unknown_transaction(self, api_client, operator_headers, make_order):
        order = await make_order()

        response = await api_client.post(
            "/api/casso/transactions/does-not-exist/match",
            json={"orderId": order.id},
            headers=operator_headers,
        )

        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_sync(self, api_client, gateway, operator_headers, make_order, load_order):
        order = await make_order()
        gateway.add(make_transaction(description=order.order_number))

        response = await api_client.post("/api/casso/sync", headers=operator_headers)

        assert response.status_code == 200
        assert response.json()["outcomes"] == {"paid": 1}
        assert (await load_order(order.id)).payment_status == "paid"

    @pytest.mark.asyncio
    async def test_module_status(self, api_client):
        response = await api_client.get("/api/casso/status")

        assert response.status_code == 200
        data = response.json()
        assert data["module"] == "casso"
        assert data["amount_tolerance"] == 1000
        assert data["features"]["webhook_auth"] is True
