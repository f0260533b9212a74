import unittest
from unittest.mock import patch

from fastapi.testclient import TestClient

from clinic_emr.api_main import app
from clinic_emr.auth_service import create_user
from clinic_emr.db import Base, engine
from clinic_emr.seed import seed_base
from clinic_emr.services import init_db


class ClinicApiTests(unittest.TestCase):
    def setUp(self):
        Base.metadata.drop_all(bind=engine)
        init_db()
        seed_base()
        self.client = TestClient(app)
        self.admin_id = create_user("admin", "admin-pw", role="admin")
        self.reception_id = create_user("front", "front-pw", role="reception")
        self.admin = self._auth("admin", "admin-pw")
        self.front = self._auth("front", "front-pw")
        self.queues = {q["queue_type"]: q["id"] for q in self.client.get("/api/queues", headers=self.front).json()}

    def _auth(self, username, password):
        r = self.client.post("/api/auth/login", data={"username": username, "password": password})
        self.assertEqual(r.status_code, 200)
        return {"Authorization": f"Bearer {r.json()['access_token']}"}

    def _register(self, first_name="Grace", last_name="Hopper"):
        r = self.client.post(
            "/api/patients", json={"first_name": first_name, "last_name": last_name}, headers=self.front
        )
        self.assertEqual(r.status_code, 200)
        return r.json()

    def test_login_and_me(self):
        r = self.client.post("/api/auth/login", data={"username": "front", "password": "wrong"})
        self.assertEqual(r.status_code, 401)

        me = self.client.get("/api/me", headers=self.front).json()
        self.assertEqual(me["username"], "front")
        self.assertEqual(me["role"], "reception")

    def test_protected_endpoints_need_token(self):
        self.assertEqual(self.client.get("/api/patients").status_code, 401)
        r = self.client.get("/api/patients", headers={"Authorization": "Bearer not-a-jwt"})
        self.assertEqual(r.status_code, 401)

    def test_only_admin_creates_users(self):
        payload = {"username": "walkin", "password": "pw", "role": "billing"}
        self.assertEqual(self.client.post("/api/auth/register", json=payload).status_code, 401)
        self.assertEqual(self.client.post("/api/auth/register", json=payload, headers=self.front).status_code, 403)

        r = self.client.post("/api/auth/register", json=payload, headers=self.admin)
        self.assertEqual(r.status_code, 200)
        me = self.client.get("/api/me", headers=self._auth("walkin", "pw")).json()
        self.assertEqual(me["role"], "billing")

    def test_invalid_enum_values_are_bad_requests(self):
        created = self._register()
        r = self.client.post(
            f"/api/queues/{self.queues['lab']}/tickets",
            json={"patient_id": created["patient_id"], "priority": "urgent"},
            headers=self.front,
        )
        self.assertEqual(r.status_code, 400)
        self.assertIn("urgent", r.json()["detail"])

        r = self.client.post(
            f"/api/invoices/{created['invoice_id']}/payments", json={"amount": "5.00", "method": "barter"}, headers=self.front
        )
        self.assertEqual(r.status_code, 400)
        self.assertIn("barter", r.json()["detail"])

    def test_register_patient_and_public_display(self):
        created = self._register()
        self.assertTrue(created["mrn"].startswith("MRN"))
        self.assertEqual(created["token_number"], "Q001")
        self.assertIsNotNone(created["invoice_id"])

        board = self.client.get("/api/public/queue-display").json()
        self.assertEqual([t["token_number"] for t in board["waiting"]], ["Q001"])
        self.assertEqual(board["currently_serving"], [])

    def test_payment_gate_and_ticket_flow(self):
        created = self._register()
        doctor = self.queues["doctor"]

        r = self.client.post(f"/api/queues/{doctor}/tickets", json={"patient_id": created["patient_id"]}, headers=self.front)
        self.assertEqual(r.status_code, 402)
        self.assertIn("issued", r.json()["detail"])

        r = self.client.post(
            f"/api/invoices/{created['invoice_id']}/payments", json={"amount": "25.00", "method": "cash"}, headers=self.front
        )
        self.assertEqual(r.json()["status"], "paid")

        r = self.client.post(
            f"/api/queues/{doctor}/tickets", json={"patient_id": created["patient_id"], "priority": "vip"}, headers=self.front
        )
        self.assertEqual(r.status_code, 200)
        ticket = r.json()

        called = self.client.post(f"/api/queues/{doctor}/call-next", headers=self.front).json()
        self.assertEqual(called["ticket"]["id"], ticket["id"])
        self.assertEqual(called["ticket"]["status"], "called")

        self.assertEqual(self.client.post(f"/api/tickets/{ticket['id']}/serve", headers=self.front).status_code, 200)
        again = self.client.post(f"/api/tickets/{ticket['id']}/serve", headers=self.front)
        self.assertEqual(again.status_code, 409)

        empty = self.client.post(f"/api/queues/{doctor}/call-next", headers=self.front).json()
        self.assertIsNone(empty["ticket"])
        self.assertEqual(empty["message"], "No patients waiting")

        history = self.client.get("/api/tickets/history", headers=self.front).json()
        self.assertEqual(history["total"], 1)

    def test_complete_triage(self):
        self._register()
        triage_ticket = self.client.get(f"/api/queues/{self.queues['triage']}/tickets", headers=self.front).json()[0]

        r = self.client.post(
            f"/api/tickets/{triage_ticket['id']}/complete-triage", json={"chief_complaint": ""}, headers=self.front
        )
        self.assertEqual(r.status_code, 400)

        r = self.client.post(
            f"/api/tickets/{triage_ticket['id']}/complete-triage",
            json={"chief_complaint": "Fever", "triage_notes": "38.5C"},
            headers=self.front,
        )
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["token_number"], triage_ticket["token_number"])
        self.assertEqual(r.json()["queue_type"], "doctor")

    def test_invoice_with_coupon(self):
        created = self._register()
        r = self.client.post(
            "/api/invoices",
            json={
                "patient_id": created["patient_id"],
                "lines": [{"description": "Ultrasound", "quantity": 1, "unit_price": "300.00"}],
                "coupon_code": "WELCOME10",
            },
            headers=self.front,
        )
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["total_amount"], "308.00")

        r = self.client.post("/api/coupons/validate", json={"code": "NOPE", "subtotal": "10"}, headers=self.front)
        self.assertEqual(r.status_code, 400)

    def test_billing_stats_are_role_gated(self):
        self.assertEqual(self.client.get("/api/billing/stats", headers=self.front).status_code, 403)
        self.assertEqual(self.client.get("/api/billing/stats", headers=self.admin).status_code, 200)

    def test_unknown_patient_is_404(self):
        r = self.client.get("/api/patients/missing", headers=self.front)
        self.assertEqual(r.status_code, 404)

    def test_ai_admin_and_access(self):
        self.assertEqual(self.client.get("/api/admin/ai-access", headers=self.front).status_code, 403)

        created = self._register()
        r = self.client.post(
            "/api/ai/clinical-analysis", json={"patient_id": created["patient_id"]}, headers=self.front
        )
        self.assertEqual(r.status_code, 403)
        self.assertEqual(r.json()["detail"], "AI access is not enabled for your account")

        r = self.client.post("/api/admin/ai-access", json={"user_id": self.reception_id}, headers=self.admin)
        self.assertEqual(r.status_code, 200)
        self.assertTrue(self.client.get("/api/ai/access", headers=self.front).json()["allowed"])

        with patch("clinic_emr.ai_gateway.requests.post") as mock_post:
            mock_post.return_value.status_code = 429
            mock_post.return_value.ok = False
            r = self.client.post(
                "/api/ai/clinical-analysis", json={"patient_id": created["patient_id"]}, headers=self.front
            )
        self.assertEqual(r.status_code, 429)

        r = self.client.patch(f"/api/admin/ai-access/{self.reception_id}", json={"ai_enabled": False}, headers=self.admin)
        self.assertEqual(r.status_code, 200)
        self.assertFalse(self.client.get("/api/ai/access", headers=self.front).json()["allowed"])

    def test_notifications_endpoint(self):
        r = self.client.post(
            "/api/notifications",
            json={"recipient_type": "user", "channel": "internal", "body": "Hi {{name}}", "recipient_ids": [self.admin_id]},
            headers=self.front,
        )
        self.assertEqual(r.status_code, 200)
        self.assertEqual(r.json()["count"], 1)
        self.assertEqual(r.json()["notifications"][0]["body"], "Hi admin")


if __name__ == "__main__":
    unittest.main()
