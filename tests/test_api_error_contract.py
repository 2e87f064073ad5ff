from __future__ import annotations

import os
import unittest

from marketcore import create_app
from marketcore.extensions import db


class ApiErrorContractTestCase(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls._prev_db_uri = os.getenv("SQLALCHEMY_DATABASE_URI")
        os.environ["SQLALCHEMY_DATABASE_URI"] = "sqlite:///:memory:"
        cls.app = create_app()
        cls.app.config.update(TESTING=True)
        with cls.app.app_context():
            db.create_all()
        cls.client = cls.app.test_client()

    @classmethod
    def tearDownClass(cls):
        if cls._prev_db_uri is None:
            os.environ.pop("SQLALCHEMY_DATABASE_URI", None)
        else:
            os.environ["SQLALCHEMY_DATABASE_URI"] = cls._prev_db_uri

    def test_unknown_api_route_returns_json_error_shape(self):
        res = self.client.get("/api/does-not-exist")
        self.assertEqual(res.status_code, 404)
        self.assertTrue(res.is_json)
        body = res.get_json(force=True) or {}
        self.assertFalse(bool(body.get("ok", True)))
        self.assertFalse(bool(body.get("success", True)))
        self.assertTrue(str(body.get("error") or "").strip())
        self.assertTrue(str(body.get("message") or "").strip())
        self.assertEqual(int(body.get("status") or 0), 404)
        self.assertTrue(str(body.get("trace_id") or "").strip())

    def test_wrong_method_is_json_405(self):
        res = self.client.delete("/api/orders")
        self.assertEqual(res.status_code, 405)
        body = res.get_json(force=True) or {}
        self.assertEqual(int(body.get("status") or 0), 405)

    def test_service_errors_carry_kind_and_trace_id(self):
        res = self.client.post("/api/orders", json={"items": []})
        self.assertEqual(res.status_code, 401)
        body = res.get_json(force=True) or {}
        self.assertEqual(body.get("error"), "UNAUTHORIZED")
        self.assertFalse(body.get("success"))
        self.assertTrue(str(body.get("trace_id") or "").strip())

    def test_health_reports_database_and_build(self):
        res = self.client.get("/api/health")
        self.assertEqual(res.status_code, 200)
        body = res.get_json(force=True) or {}
        self.assertTrue(body.get("ok"))
        self.assertEqual(body.get("db"), "ok")
        self.assertIn("git_sha", body)
        self.assertIn("alembic_head", body)
        self.assertIn("email", body)


if __name__ == "__main__":
    unittest.main()
