"""
Tests for health, readiness and metrics endpoints
"""
from unittest.mock import Mock

from sqlalchemy.exc import OperationalError

from credibill.db import get_db
from credibill.services.metrics import increment_counter


class TestHealthEndpoints:
    """Test liveness and readiness"""

    def test_root(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert response.json()["message"] == "CrediBill API"

    def test_health(self, client):
        response = client.get("/health")

        assert response.status_code == 200
        assert response.json() == {"status": "healthy", "service": "credibill"}

    def test_ready_with_database(self, client):
        response = client.get("/health/ready")

        assert response.status_code == 200
        data = response.json()
        assert data["status"] == "ready"
        assert data["checks"] == {"database": "ok", "scheduler": "disabled"}

    def test_not_ready_without_database(self, client):
        from api_server import app

        broken = Mock()
        broken.execute.side_effect = OperationalError("SELECT 1", {}, Exception("connection refused"))

        def override_get_db():
            yield broken
        app.dependency_overrides[get_db] = override_get_db

        response = client.get("/health/ready")

        assert response.status_code == 503
        assert response.json()["checks"]["database"] == "down"


class TestMetricsEndpoint:
    """Test the Prometheus endpoint"""

    def test_exposes_counters(self, client):
        increment_counter("webhooks_received_total", labels={"provider": "pawapay", "result": "processed"})

        response = client.get("/metrics")

        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        assert 'webhooks_received_total{provider="pawapay",result="processed"} 1.0' in response.text
