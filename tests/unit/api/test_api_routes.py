import pytest

from webhook_automation.common.models import Message, QueueItemStatus, WebhookQueueItem


def enqueued_items(engine):
    return sorted(engine.queue_store._items.values(), key=lambda item: item.id)


class TestWebhookRoutes:

    def test_health_check(self, api_client):
        response = api_client.get("/webhooks/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    def test_receive_webhook(self, api_client, engine):
        """Test that a webhook is queued with the configured source priority."""
        payload = {"event": "PAYMENT_RECEIVED", "payment": {"id": "pay_1"}}
        response = api_client.post("/webhooks/asaas?channel_id=4", json=payload)

        assert response.status_code == 202
        body = response.json()
        assert body["status"] == "accepted"
        assert body["priority"] == 7

        [item] = enqueued_items(engine)
        assert item.id == body["id"]
        assert item.source == "asaas"
        assert item.channel_id == 4
        assert item.payload == payload
        assert item.status == QueueItemStatus.PENDING

    def test_unconfigured_source_uses_queue_priorities(self, api_client):
        response = api_client.post("/webhooks/telegram", json={"update_id": 1})
        assert response.status_code == 202
        assert response.json()["priority"] == 3

    def test_invalid_payload_for_validated_source(self, api_client, engine):
        response = api_client.post("/webhooks/asaas", json={"event": "PAYMENT_RECEIVED"})
        assert response.status_code == 400
        assert "asaas" in response.json()["detail"]
        assert enqueued_items(engine) == []

    def test_validation_can_be_disabled(self, api_client):
        response = api_client.post("/webhooks/whatsapp", json={"conversationId": 1, "content": "oi"})
        assert response.status_code == 202
        assert response.json()["priority"] == 2

    def test_invalid_json(self, api_client, engine):
        response = api_client.post(
            "/webhooks/asaas",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 400
        assert response.json()["detail"] == "Invalid JSON payload"
        assert enqueued_items(engine) == []

    def test_untyped_webhook_is_identified(self, api_client, engine):
        response = api_client.post("/webhooks", json={"SmsMessageSid": "SM1", "Body": "hi"})
        assert response.status_code == 202
        assert enqueued_items(engine)[0].source == "twilio"

    def test_unidentifiable_webhook(self, api_client):
        response = api_client.post("/webhooks", json={"hello": "world"})
        assert response.status_code == 400


class TestAuthentication:

    @pytest.mark.parametrize(
        "headers",
        [
            {},
            {"Authorization": "Bearer wrong-token"},
            {"Authorization": "Basic dGVzdA=="},
            {"Authorization": "Bearer "},
        ],
    )
    def test_rejects_missing_or_invalid_token(self, api_client, headers):
        response = api_client.get("/webhook-queue/status", headers=headers)
        assert response.status_code == 401
        assert response.headers["WWW-Authenticate"] == "Bearer"

    def test_rejects_non_ascii_token(self, api_client):
        response = api_client.get(
            "/webhook-queue/status", headers={"Authorization": "Bearer é".encode("latin-1")}
        )
        assert response.status_code == 401

    def test_automation_routes_require_token(self, api_client):
        assert api_client.get("/automations").status_code == 401

    def test_webhook_intake_is_public(self, api_client):
        assert api_client.get("/webhooks/health").status_code == 200


class TestQueueRoutes:

    def test_status(self, api_client, auth_headers):
        api_client.post("/webhooks/telegram", json={"update_id": 1})
        response = api_client.get("/webhook-queue/status", headers=auth_headers)

        assert response.status_code == 200
        assert response.json() == {
            "pending": 1,
            "processing": 0,
            "failed": 0,
            "isProcessing": False,
        }

    def test_stats(self, api_client, auth_headers):
        api_client.post("/webhooks/telegram", json={"update_id": 1})
        response = api_client.get("/webhook-queue/stats", headers=auth_headers)

        assert response.status_code == 200
        [stats] = response.json()
        assert stats["source"] == "telegram"
        assert stats["pending"] == 1

    def test_performance(self, api_client, auth_headers):
        response = api_client.get("/webhook-queue/performance", headers=auth_headers)
        assert response.status_code == 200
        assert set(response.json()) == {"processing_times", "failure_rate", "throughput"}

    def test_problematic_limit_bounds(self, api_client, auth_headers):
        assert api_client.get("/webhook-queue/problematic", headers=auth_headers).json() == []
        response = api_client.get("/webhook-queue/problematic?limit=0", headers=auth_headers)
        assert response.status_code == 400

    def test_processing(self, api_client, auth_headers):
        response = api_client.get("/webhook-queue/processing", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["total_processed"] == 0

    def test_rebalance(self, api_client, auth_headers):
        response = api_client.post("/webhook-queue/rebalance", headers=auth_headers)
        assert response.status_code == 200
        assert response.json() == {"count": 0}

    def test_cleanup_with_and_without_body(self, api_client, auth_headers):
        response = api_client.post("/webhook-queue/cleanup", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["count"] == 0

        response = api_client.post(
            "/webhook-queue/cleanup", headers=auth_headers, json={"maxAgeInDays": 30}
        )
        assert response.status_code == 200
        assert "30 days" in response.json()["message"]

    def test_cleanup_rejects_negative_age(self, api_client, auth_headers):
        response = api_client.post(
            "/webhook-queue/cleanup", headers=auth_headers, json={"maxAgeInDays": -1}
        )
        assert response.status_code == 400

    def test_retry_failed_item(self, api_client, auth_headers, engine):
        item = WebhookQueueItem(
            id=41, source="telegram", payload={}, status=QueueItemStatus.FAILED, attempts=5
        )
        engine.queue_store._items[item.id] = item
        response = api_client.post(f"/webhook-queue/{item.id}/retry", headers=auth_headers)

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["item"]["status"] == "pending"
        assert body["item"]["attempts"] == 5

    def test_retry_errors(self, api_client, auth_headers):
        assert api_client.post("/webhook-queue/404/retry", headers=auth_headers).status_code == 404

        item_id = api_client.post("/webhooks/telegram", json={"update_id": 1}).json()["id"]
        response = api_client.post(f"/webhook-queue/{item_id}/retry", headers=auth_headers)
        assert response.status_code == 409


class TestAutomationRoutes:

    def create(self, api_client, auth_headers, **fields):
        body = {
            "name": "Pricing",
            "type": "quick_reply",
            "trigger": {"keywords": ["valor"]},
            "response": "Olá {{contactName}}!",
            **fields,
        }
        response = api_client.post("/automations", headers=auth_headers, json=body)
        assert response.status_code == 201
        return response.json()

    def test_create_and_get(self, api_client, auth_headers):
        created = self.create(api_client, auth_headers)
        assert created["id"] == 1
        assert created["isActive"] is True
        assert created["lastExecutedAt"] is None

        response = api_client.get(f"/automations/{created['id']}", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["name"] == "Pricing"

    def test_create_scheduled_gets_default_schedule(self, api_client, auth_headers):
        created = self.create(api_client, auth_headers, type="scheduled", trigger=None, response=None)
        assert created["schedule"]["frequency"] == "daily"
        assert created["response"] == ""

    def test_create_accepts_model_config(self, api_client, auth_headers):
        created = self.create(
            api_client,
            auth_headers,
            type="chatbot",
            response={"prompt": "Be brief"},
            modelProvider="openai",
            modelConfig={"temperature": 0.2},
        )
        assert created["modelProvider"] == "openai"
        assert created["modelConfig"] == {"temperature": 0.2}

    @pytest.mark.parametrize(
        "body",
        [{"type": "quick_reply"}, {"name": "", "type": "quick_reply"}, {"name": "x", "type": "magic"}],
    )
    def test_create_validation(self, api_client, auth_headers, body):
        response = api_client.post("/automations", headers=auth_headers, json=body)
        assert response.status_code == 400

    def test_list_with_type_filter(self, api_client, auth_headers):
        self.create(api_client, auth_headers)
        self.create(api_client, auth_headers, type="trigger", trigger={"actions": []})

        assert len(api_client.get("/automations", headers=auth_headers).json()) == 2
        triggers = api_client.get("/automations?type=trigger", headers=auth_headers).json()
        assert [a["type"] for a in triggers] == ["trigger"]

    def test_update(self, api_client, auth_headers):
        created = self.create(api_client, auth_headers)
        response = api_client.put(
            f"/automations/{created['id']}", headers=auth_headers, json={"name": "Prices"}
        )
        assert response.status_code == 200
        assert response.json()["name"] == "Prices"
        assert response.json()["trigger"] == {"keywords": ["valor"]}

    def test_toggle(self, api_client, auth_headers):
        created = self.create(api_client, auth_headers)
        response = api_client.patch(
            f"/automations/{created['id']}/toggle", headers=auth_headers, json={"active": False}
        )
        assert response.status_code == 200
        assert response.json()["isActive"] is False

    def test_delete(self, api_client, auth_headers):
        created = self.create(api_client, auth_headers)
        response = api_client.delete(f"/automations/{created['id']}", headers=auth_headers)
        assert response.json() == {"success": True}
        assert api_client.get(f"/automations/{created['id']}", headers=auth_headers).status_code == 404

    def test_missing_automation(self, api_client, auth_headers):
        assert api_client.get("/automations/99", headers=auth_headers).status_code == 404
        assert api_client.put("/automations/99", headers=auth_headers, json={}).status_code == 404
        assert api_client.delete("/automations/99", headers=auth_headers).status_code == 404

    def test_execute(self, api_client, auth_headers, storage, channel_sender):
        storage.messages[500] = Message(id=500, conversation_id=1, content="quanto custa?")
        created = self.create(api_client, auth_headers)

        response = api_client.post(
            f"/automations/{created['id']}/execute",
            headers=auth_headers,
            json={"conversationId": 1},
        )
        assert response.status_code == 200
        assert response.json() == {
            "success": True,
            "message": "Olá Maria Silva!",
            "response": "Olá Maria Silva!",
            "error": None,
        }
        assert channel_sender.sent == [(1, "+5511999990000", "Olá Maria Silva!")]

    def test_execute_failure_is_reported(self, api_client, auth_headers):
        created = self.create(api_client, auth_headers)
        response = api_client.post(
            f"/automations/{created['id']}/execute",
            headers=auth_headers,
            json={"conversationId": 1, "inputData": {"coupon": "X"}},
        )
        assert response.status_code == 200
        assert response.json()["success"] is False
        assert "Incomplete context" in response.json()["error"]

    def test_execute_unknown_conversation(self, api_client, auth_headers):
        created = self.create(api_client, auth_headers)
        response = api_client.post(
            f"/automations/{created['id']}/execute",
            headers=auth_headers,
            json={"conversationId": 404},
        )
        assert response.status_code == 404

    def test_stats(self, api_client, auth_headers):
        self.create(api_client, auth_headers)
        self.create(api_client, auth_headers, isActive=False)

        response = api_client.get("/automations-stats", headers=auth_headers)
        assert response.status_code == 200
        stats = response.json()
        assert stats["total"] == 2
        assert stats["active_percent"] == 50
        assert stats["by_type"][0] == {"type": "quick_reply", "count": 2}
