"""Tests for the notification API endpoints."""

from datetime import datetime, timedelta, timezone


class TestCreateNotification:
    def test_creates_and_enqueues(self, client, api_db, mock_scheduler):
        response = client.post(
            "/api/notifications",
            json={
                "tenant_id": 1,
                "type": "whatsapp",
                "recipient_phone": "3001234567",
                "content": "Hola {{ name }}",
                "variables": {"name": "Ana"},
                "priority": "urgent",
            },
        )

        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "pending"
        assert body["scheduled_at"] is None
        assert api_db.notifications[body["notification_id"]]["priority"] == "high"
        assert mock_scheduler.add_job.call_args[1]["kwargs"]["queue"] == "high"

    def test_future_schedule_is_not_enqueued(self, client, api_db, mock_scheduler):
        scheduled_at = datetime.now(timezone.utc) + timedelta(hours=2)

        response = client.post(
            "/api/notifications",
            json={
                "tenant_id": 1,
                "type": "email",
                "recipient_email": "ana@example.com",
                "template": "general_event_reminder",
                "scheduled_at": scheduled_at.isoformat(),
            },
        )

        assert response.json()["status"] == "scheduled"
        mock_scheduler.add_job.assert_not_called()

    def test_missing_address_is_rejected(self, client, api_db, mock_scheduler):
        response = client.post(
            "/api/notifications",
            json={"tenant_id": 1, "type": "whatsapp", "content": "Hola"},
        )

        assert response.status_code == 422
        assert api_db.notifications == {}

    def test_unknown_template_is_rejected(self, client, api_db, mock_scheduler):
        response = client.post(
            "/api/notifications",
            json={
                "tenant_id": 1,
                "type": "whatsapp",
                "recipient_phone": "3001234567",
                "template": "no_such_template",
            },
        )

        assert response.status_code == 422


class TestListNotifications:
    def test_filters_by_status_and_tenant(self, client, api_db):
        api_db.add(status="sent", tenant_id=1)
        api_db.add(status="failed", tenant_id=1)
        api_db.add(status="failed", tenant_id=2)

        response = client.get("/api/notifications", params={"status": "failed", "tenant_id": 1})

        body = response.json()
        assert response.status_code == 200
        assert body["count"] == 1
        assert body["notifications"][0]["status"] == "failed"

    def test_rejects_unknown_status(self, client, api_db):
        response = client.get("/api/notifications", params={"status": "lost"})

        assert response.status_code == 422

    def test_limit_bounds(self, client, api_db):
        assert client.get("/api/notifications", params={"limit": 0}).status_code == 422
        assert client.get("/api/notifications", params={"limit": 501}).status_code == 422


class TestGetNotification:
    def test_includes_audit_trail(self, client, api_db):
        n = api_db.add(status="sent")
        api_db.events.append(
            {"event_id": 1, "notification_id": n["notification_id"], "event": "sent"}
        )

        response = client.get(f"/api/notifications/{n['notification_id']}")

        body = response.json()
        assert body["notification"]["notification_id"] == n["notification_id"]
        assert [e["event"] for e in body["events"]] == ["sent"]

    def test_not_found(self, client, api_db):
        response = client.get("/api/notifications/999")

        assert response.status_code == 404
        assert response.json()["detail"] == "Notification not found"
