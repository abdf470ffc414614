import unittest
import sys
import os
import tempfile

# Add parent dir to path to import services
sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

# Point the app at a throwaway SQLite file before main builds its engine
_db_dir = tempfile.mkdtemp()
os.environ["DATABASE_URL"] = f"sqlite+aiosqlite:///{os.path.join(_db_dir, 'crm_test.db')}"

from fastapi.testclient import TestClient
from engine_fixtures import ScriptedSender
import main

class TestCRMApi(unittest.TestCase):
    @classmethod
    def setUpClass(cls):
        cls.client = TestClient(main.app)
        cls.client.__enter__()

    @classmethod
    def tearDownClass(cls):
        cls.client.__exit__(None, None, None)

    def _create(self, phone):
        return self.client.post("/api/leads", json={"first_name": "Asha", "phone_raw": phone})

    def test_health(self):
        self.assertEqual(self.client.get("/health").json(), {"status": "healthy"})
        self.assertEqual(len(self.client.get("/api/pipeline").json()), 9)

    def test_lead_lifecycle(self):
        res = self._create("98765 00001")
        self.assertEqual(res.status_code, 201)
        lead = res.json()
        self.assertEqual(lead["version"], 1)

        dup = self._create("+91-9876500001")
        self.assertEqual(dup.status_code, 409)
        self.assertEqual(dup.json()["existing_lead_id"], lead["id"])

        res = self.client.patch(f"/api/leads/{lead['id']}", json={"updates": {"status": "eligible"}, "expected_version": 1},
                                headers={"X-Actor-Id": "agent-1"})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["version"], 2)

        stale = self.client.patch(f"/api/leads/{lead['id']}", json={"updates": {"first_name": "A"}, "expected_version": 1})
        self.assertEqual(stale.status_code, 409)
        self.assertEqual(stale.json()["current_version"], 2)

        invalid = self.client.patch(f"/api/leads/{lead['id']}", json={"updates": {"status": "enrolled"}})
        self.assertEqual(invalid.status_code, 422)

        activities = self.client.get(f"/api/leads/{lead['id']}/activities").json()
        self.assertEqual(activities[0]["performed_by"], "agent-1")

        self.assertEqual(self.client.delete(f"/api/leads/{lead['id']}").status_code, 200)
        self.assertIn(lead["id"], [l["id"] for l in self.client.get("/api/leads/trash").json()])
        self.assertEqual(self.client.post(f"/api/leads/{lead['id']}/restore").json()["version"], 4)

    def test_missing_lead(self):
        self.assertEqual(self.client.get("/api/leads/does-not-exist").status_code, 404)

    def test_bulk_delete_partial(self):
        lead = self._create("98765 00002").json()
        res = self.client.post("/api/leads/bulk/delete", json={"lead_ids": [lead["id"], "missing"]})
        self.assertEqual(res.status_code, 200)
        self.assertEqual([r["success"] for r in res.json()["results"]], [True, False])

    def test_superadmin_cannot_be_deleted(self):
        admins = [u for u in self.client.get("/api/users").json() if u["role"] == "superadmin"]
        self.assertEqual(len(admins), 1)
        res = self.client.delete(f"/api/users/{admins[0]['id']}")
        self.assertEqual(res.status_code, 403)

    def test_failed_automation(self):
        lead = self._create("98765 00003").json()
        main.dispatcher.sender = ScriptedSender(["EAUTH"])
        res = self.client.post(f"/api/leads/{lead['id']}/automations", json={"channel": "email", "content": "Hi"})
        self.assertEqual(res.status_code, 502)
        self.assertEqual(res.json()["error_code"], "EAUTH")
        self.assertFalse(res.json()["retryable"])

        res = self.client.post(f"/api/leads/{lead['id']}/automations", json={"channel": "email", "content": "Hi"})
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["activity"]["event_type"], "email_sent")

    def test_tags(self):
        self.client.post("/api/tags", json={"name": "scholarship"})
        tags = {t["name"]: t["count"] for t in self.client.get("/api/tags").json()}
        self.assertEqual(tags["scholarship"], 0)

    def test_templates(self):
        res = self.client.put("/api/templates/tpl_selected", json={
            "channel": "email", "name": "Selection Notice", "status_trigger": "selected",
            "subject": "You made it", "body": "Hi {{first_name}}, welcome aboard.",
        })
        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.json()["subject"], "You made it")

        bad = self.client.post("/api/templates", json={"channel": "sms", "name": "x", "status_trigger": "selected", "body": "x"})
        self.assertEqual(bad.status_code, 422)
        self.assertEqual(self.client.delete("/api/templates/missing").status_code, 404)

if __name__ == '__main__':
    unittest.main()
