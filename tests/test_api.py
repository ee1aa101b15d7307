import tempfile
import unittest

from fastapi.testclient import TestClient

from api import create_app
from engine_fixtures import make_services


class ApiTests(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        self.addCleanup(self._tmp.cleanup)
        self.bundle, _ = make_services(self._tmp.name)
        self.client = TestClient(create_app(self.bundle))

    def test_exposure_payload_uses_camel_case(self):
        response = self.client.get("/api/patios/patio-1/exposure", params={"time": "2025-06-21T11:14:00Z"})
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["patioId"], "patio-1")
        self.assertEqual(body["state"], "sunny")
        self.assertEqual(body["weatherMode"], "observed")
        self.assertIn("sunExposurePercent", body)
        self.assertIn("confidenceLevel", body)
        self.assertEqual(body["cloudCover"], 0.1)
        self.assertFalse(body["isSunBlocked"])

    def test_unknown_patio_is_404(self):
        response = self.client.get("/api/patios/ghost/exposure")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.json()["field"], "patio_id")

    def test_bad_timestamp_is_400(self):
        response = self.client.get("/api/patios/patio-1/exposure", params={"time": "yesterday"})
        self.assertEqual(response.status_code, 400)

    def test_oversized_batch_is_400(self):
        response = self.client.post("/api/exposure/batch", json={"patioIds": ["patio-1"] * 101})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()["field"], "patio_ids")

    def test_batch_exposure(self):
        response = self.client.post(
            "/api/exposure/batch",
            json={"patioIds": ["patio-1"], "timestampUtc": "2025-06-21T11:14:00Z"},
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual([r["patioId"] for r in body["results"]], ["patio-1"])
        self.assertEqual(body["errorCount"], 0)

    def test_timeline(self):
        response = self.client.get(
            "/api/patios/patio-1/timeline",
            params={"start": "2025-06-21T06:00:00Z", "end": "2025-06-21T18:00:00Z", "resolution": 30},
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["resolutionMin"], 30)
        self.assertEqual(len(body["points"]), 24)
        point = body["points"][0]
        self.assertEqual(point["provenance"], "calculated")
        self.assertTrue(point["localTime"].startswith("2025-06-21T08:00:00"))
        for window in body["windows"]:
            self.assertGreaterEqual(window["duration"], 30)
            self.assertIn("startUtc", window)

    def test_timeline_rejects_reversed_range(self):
        response = self.client.get(
            "/api/patios/patio-1/timeline",
            params={"start": "2025-06-21T12:00:00Z", "end": "2025-06-21T06:00:00Z"},
        )
        self.assertEqual(response.status_code, 400)

    def test_timeline_rejects_bad_resolution_without_range(self):
        for resolution in (0, -5, 61):
            response = self.client.get("/api/patios/patio-1/timeline", params={"resolution": resolution})
            self.assertEqual(response.status_code, 400)
            self.assertEqual(response.json()["field"], "resolution_min")

    def test_best_windows(self):
        response = self.client.get("/api/patios/patio-1/windows", params={"day": "2025-06-21", "top": 2})
        self.assertEqual(response.status_code, 200)
        self.assertLessEqual(len(response.json()), 2)

    def test_sunny_near(self):
        response = self.client.get(
            "/api/sunny-near",
            params={"lat": 57.7089, "lon": 11.9746, "radius_m": 300, "time": "2025-06-21T11:14:00Z"},
        )
        self.assertEqual(response.status_code, 200)
        self.assertEqual([r["patioId"] for r in response.json()], ["patio-1"])

    def test_health(self):
        response = self.client.get("/api/health")
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertEqual(body["status"], "healthy")
        self.assertEqual(body["patios"], 1)
        self.assertIsNone(body["precompute"]["last_run"])


if __name__ == "__main__":
    unittest.main()
