import uuid

import pytest

API = "/api/v1"


def _check_in(client, name="Alice", phone="555-234-0001", appointment_time="10:00 AM"):
    return client.post(
        f"{API}/checkin",
        json={"name": name, "phone": phone, "appointmentTime": appointment_time},
    )


class TestRootEndpoints:
    """Root and metrics endpoints"""

    def test_root_endpoint(self, client):
        response = client.get("/")
        assert response.status_code == 200

        data = response.json()
        assert data["message"] == "SmartWait API"
        assert data["service"] == "smartwait-api"
        assert data["health_check"] == f"{API}/health"

    def test_metrics_endpoint(self, client):
        client.get("/")
        response = client.get("/metrics")

        assert response.status_code == 200
        assert "smartwait_http_requests_total" in response.text


class TestHealthEndpoints:
    """Health check endpoints"""

    def test_basic_health_check(self, client):
        response = client.get(f"{API}/health")
        assert response.status_code == 200

        data = response.json()
        assert data["status"] == "healthy"
        assert data["service"] == "smartwait-api"
        assert "timestamp" in data

    def test_detailed_health_check(self, client):
        response = client.get(f"{API}/health/detailed", headers={"X-Correlation-ID": "test-123"})
        assert response.status_code == 200

        data = response.json()
        assert data["overall_status"] == "healthy"
        assert data["correlation_id"] == "test-123"
        assert set(data["components"]) == {"database", "redis", "notifications"}
        assert data["components"]["notifications"]["transport"] == "fake"

    def test_correlation_id_is_echoed(self, client):
        response = client.get(f"{API}/health", headers={"X-Correlation-ID": "abc-1"})
        assert response.headers["X-Correlation-ID"] == "abc-1"


class TestCheckInEndpoint:
    """Patient check-in"""

    def test_check_in_success(self, client):
        response = _check_in(client)
        assert response.status_code == 201

        data = response.json()
        assert data["success"] is True
        assert data["message"] == "Successfully checked in"
        assert data["data"]["position"] == 1
        assert data["data"]["estimatedWait"] == 0
        uuid.UUID(data["data"]["patientId"])

    def test_second_check_in_waits_longer(self, client):
        _check_in(client)
        response = _check_in(client, name="Bob", phone="555-234-0002")

        assert response.json()["data"]["position"] == 2
        assert response.json()["data"]["estimatedWait"] == 15

    @pytest.mark.parametrize(
        "payload",
        [
            {"phone": "555-234-0001", "appointmentTime": "10:00 AM"},
            {"name": "Alice", "phone": "not-a-phone", "appointmentTime": "10:00 AM"},
            {"name": "Alice", "phone": "----------", "appointmentTime": "10:00 AM"},
            {"name": "", "phone": "555-234-0001", "appointmentTime": "10:00 AM"},
            {"name": "Alice", "phone": "555-234-0001"},
        ],
    )
    def test_check_in_validation(self, client, payload):
        response = client.post(f"{API}/checkin", json=payload)
        assert response.status_code == 400

        error = response.json()["error"]
        assert response.json()["success"] is False
        assert error["code"] == "VALIDATION_ERROR"
        assert error["message"]

    def test_duplicate_check_in(self, client):
        _check_in(client)
        response = _check_in(client, name="Alice Again", phone="(555) 234-0001")

        assert response.status_code == 409
        assert response.json()["error"]["code"] == "DUPLICATE_ACTIVE_ENTRY"


class TestPositionEndpoints:
    """Patient position lookup and queue views"""

    def test_get_position(self, client):
        _check_in(client)
        patient_id = _check_in(client, name="Bob", phone="555-234-0002").json()["data"]["patientId"]

        response = client.get(f"{API}/position/{patient_id}")
        assert response.status_code == 200

        data = response.json()["data"]
        assert data["position"] == 2
        assert data["status"] == "waiting"
        assert data["estimated_wait_minutes"] == 15
        assert data["total_in_queue"] == 2

    def test_status_alias(self, client):
        patient_id = _check_in(client).json()["data"]["patientId"]

        response = client.get(f"{API}/status/{patient_id}")
        assert response.status_code == 200
        assert response.json()["data"]["position"] == 1

    def test_unknown_patient(self, client):
        response = client.get(f"{API}/position/{uuid.uuid4()}")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "PATIENT_NOT_FOUND"

    def test_malformed_patient_id(self, client):
        response = client.get(f"{API}/position/not-a-uuid")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_get_queue(self, client):
        _check_in(client)
        _check_in(client, name="Bob", phone="555-234-0002")

        response = client.get(f"{API}/queue")
        assert response.status_code == 200

        data = response.json()
        assert data["total"] == 2
        assert [entry["position"] for entry in data["data"]] == [1, 2]
        assert data["data"][0]["patient"]["name"] == "Alice"


class TestStaffEndpoints:
    """Staff dashboard actions"""

    def test_call_next_empty_queue(self, client):
        response = client.post(f"{API}/staff/call-next")

        assert response.status_code == 404
        error = response.json()["error"]
        assert error["code"] == "NO_PATIENTS_WAITING"
        assert error["message"] == "No patients waiting in queue"

    def test_call_next(self, client):
        patient_id = _check_in(client).json()["data"]["patientId"]

        response = client.post(f"{API}/staff/call-next")
        assert response.status_code == 200

        data = response.json()["data"]
        assert data["patient_id"] == patient_id
        assert data["status"] == "called"
        assert data["called_at"] is not None

    def test_complete_moves_queue_up(self, client):
        first = _check_in(client).json()["data"]["patientId"]
        second = _check_in(client, name="Bob", phone="555-234-0002").json()["data"]["patientId"]

        response = client.post(f"{API}/staff/complete", json={"patientId": first})
        assert response.status_code == 200
        assert response.json()["data"]["status"] == "completed"

        position = client.get(f"{API}/position/{second}").json()["data"]
        assert position["position"] == 1
        assert position["estimated_wait_minutes"] == 0

    def test_no_show(self, client):
        patient_id = _check_in(client).json()["data"]["patientId"]

        response = client.post(f"{API}/staff/no-show", json={"patientId": patient_id})

        assert response.status_code == 200
        assert response.json()["data"]["status"] == "no_show"
        assert client.get(f"{API}/queue").json()["total"] == 0

    def test_complete_unknown_patient(self, client):
        response = client.post(f"{API}/staff/complete", json={"patientId": str(uuid.uuid4())})

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "PATIENT_NOT_FOUND"

    def test_complete_requires_patient_id(self, client):
        response = client.post(f"{API}/staff/complete", json={})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"

    def test_resend_notification(self, client, transport):
        patient_id = _check_in(client).json()["data"]["patientId"]

        response = client.post(f"{API}/staff/notify", json={"patientId": patient_id, "kind": "follow_up"})

        assert response.status_code == 200
        assert response.json()["success"] is True
        assert response.json()["data"]["status"] == "sent"
        assert transport.messages_to("+15552340001")[-1].startswith("Alice, this is a reminder")

    def test_stats(self, client):
        first = _check_in(client).json()["data"]["patientId"]
        _check_in(client, name="Bob", phone="555-234-0002")
        client.post(f"{API}/staff/complete", json={"patientId": first})

        for path in ("/staff/stats", "/queue/stats"):
            response = client.get(f"{API}{path}")
            assert response.status_code == 200

            data = response.json()["data"]
            assert data["waiting_count"] == 1
            assert data["called_count"] == 0
            assert data["completed_count"] == 1
            assert data["window_hours"] == 24

    def test_notification_stats(self, client):
        _check_in(client)

        response = client.get(f"{API}/staff/notifications/stats", params={"hours": 2})
        assert response.status_code == 200

        data = response.json()["data"]
        assert data["window_hours"] == 2
        assert data["total"] == 1
        assert data["pending"] == 1
