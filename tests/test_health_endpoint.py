from __future__ import annotations

import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient

from push_bridge.main import app


class HealthEndpointTests(unittest.TestCase):
    def setUp(self) -> None:
        self.client = TestClient(app)

    def test_health_reports_backlog_and_guard_state(self) -> None:
        backlog = {"PENDING": 2, "SENDING": 0, "SENT": 5, "FAILED": 1}
        with patch("push_bridge.main.get_job_backlog", return_value=backlog):
            response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "ok")
        self.assertEqual(body["job_backlog"], backlog)
        self.assertIn("gateway_configured", body)
        self.assertIn("issues", body["schema_guard"])

    def test_health_survives_backlog_failure(self) -> None:
        with patch("push_bridge.main.get_job_backlog", side_effect=RuntimeError("db down")):
            with self.assertLogs("push_bridge.request", level="ERROR"):
                response = self.client.get("/health")

        self.assertEqual(response.status_code, 200)
        self.assertIsNone(response.json()["job_backlog"])


if __name__ == "__main__":
    unittest.main()
