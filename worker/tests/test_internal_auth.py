import os
import sys
import unittest
from pathlib import Path
from unittest.mock import patch


ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from m365_crawler.api import create_app

HEADERS = {"X-Worker-Internal-Token": "worker-secret-token"}


class WorkerInternalAuthTests(unittest.TestCase):
    def setUp(self):
        self.original_token = os.environ.get("WORKER_INTERNAL_API_TOKEN")
        os.environ["WORKER_INTERNAL_API_TOKEN"] = "worker-secret-token"
        app = create_app()
        self.client = app.test_client()

    def tearDown(self):
        if self.original_token is None:
            os.environ.pop("WORKER_INTERNAL_API_TOKEN", None)
        else:
            os.environ["WORKER_INTERNAL_API_TOKEN"] = self.original_token

    def test_worker_endpoints_require_internal_token(self):
        cases = [
            ("GET", "/health", None),
            ("GET", "/crawls/status", None),
            ("POST", "/crawls/run-now", {"drive_id": "d1"}),
        ]
        for method, path, payload in cases:
            with self.subTest(method=method, path=path):
                response = self.client.open(path=path, method=method, json=payload)
                self.assertEqual(response.status_code, 401)
                response = self.client.open(
                    path=path, method=method, json=payload, headers={"X-Worker-Internal-Token": "wrong"}
                )
                self.assertEqual(response.get_json(), {"error": "invalid_internal_token"})

    @patch("m365_crawler.api.runner.get_recent_runs", return_value=[])
    def test_crawls_status_accepts_valid_internal_token(self, _recent):
        response = self.client.get("/crawls/status", headers=HEADERS)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json(), {"active": [], "runs": []})

    @patch("m365_crawler.api.db.database_url", return_value=None)
    def test_health_without_database(self, _url):
        response = self.client.get("/health", headers=HEADERS)
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.get_json()["db"], None)
        self.assertTrue(response.get_json()["ok"])

    def test_run_now_requires_a_target(self):
        response = self.client.post("/crawls/run-now", json={"params": {}}, headers=HEADERS)
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.get_json(), {"error": "target_required"})

    @patch("m365_crawler.api.Thread")
    def test_run_now_queues_background_crawl(self, thread_cls):
        response = self.client.post(
            "/crawls/run-now",
            json={"drive_id": "d1", "params": {"number_of_threads": "2"}},
            headers=HEADERS,
        )
        self.assertEqual(response.status_code, 202)
        body = response.get_json()
        self.assertEqual(body["status"], "queued")
        self.assertEqual(body["target"], "drive:d1")
        crawl_request, session_id = thread_cls.call_args.kwargs["args"]
        self.assertEqual(crawl_request["params"], {"number_of_threads": "2"})
        self.assertEqual(session_id, body["session_id"])
        thread_cls.return_value.start.assert_called_once()


if __name__ == "__main__":
    unittest.main()
