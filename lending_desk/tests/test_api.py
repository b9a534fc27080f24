import unittest
from unittest import mock

from lending_desk.tests import support

from fastapi.testclient import TestClient

import lending_desk.LendDesk as app_module
from lending_desk import config
from lending_desk.services import access_guard
from lending_desk.services.event_sink import build_default_dispatcher


def _headers(secret):
    return {"X-Tenant-Credential": secret}


class LendDeskApiTests(unittest.TestCase):
    def setUp(self):
        access_guard.reset_attempts()
        self.engine, self.session_factory = support.memory_session_factory()

        def override_db():
            db = self.session_factory()
            try:
                yield db
            finally:
                db.close()

        app_module.app.dependency_overrides[app_module.get_lending_db] = override_db
        self._original_dispatcher = app_module.machine.dispatcher
        app_module.machine.dispatcher = build_default_dispatcher(self.session_factory, mode="sync")
        self.client = TestClient(app_module.app)

    def tearDown(self):
        app_module.app.dependency_overrides.clear()
        app_module.machine.dispatcher = self._original_dispatcher
        self.engine.dispose()

    def _create_tenant(self, **overrides):
        body = {
            "displayName": "Haifa",
            "mode": "direct",
            "accessCode": "4821",
            "managerSecret": support.MANAGER_SECRET,
            "managerLabel": "manager",
        }
        body.update(overrides)
        response = self.client.post("/api/tenants", json=body, headers=_headers(support.ADMIN_SECRET))
        self.assertEqual(response.status_code, 200, response.text)
        tenant_id = response.json()["tenant"]["tenantID"]
        for secret, tier, label in (
            (support.APPROVER_SECRET, "approve_requests", "dispatcher"),
            (support.VIEWER_SECRET, "view_only", "viewer"),
        ):
            saved = self.client.put(
                f"/api/tenants/{tenant_id}/credentials",
                json={"secret": secret, "tier": tier, "label": label},
                headers=_headers(support.MANAGER_SECRET),
            )
            self.assertEqual(saved.status_code, 200, saved.text)
        return tenant_id

    def _add_counted(self, tenant_id, name="Jack", quantity=3, consumable=False):
        response = self.client.post(
            f"/api/tenants/{tenant_id}/counted-items",
            json={"name": name, "quantity": quantity, "isConsumable": consumable},
            headers=_headers(support.MANAGER_SECRET),
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["item"]["itemID"]

    def _add_unit(self, tenant_id, code="W-16-01"):
        response = self.client.post(
            f"/api/tenants/{tenant_id}/unit-items",
            json={"unitCode": code, "name": "Spare wheel", "rimSize": "16"},
            headers=_headers(support.MANAGER_SECRET),
        )
        self.assertEqual(response.status_code, 200, response.text)
        return response.json()["item"]["itemID"]

    def _loan(self, tenant_id, kind, item_id, intent="borrow", phone="0501234567", **extra):
        body = {
            "tenantID": tenant_id,
            "item": {"kind": kind, "itemID": item_id},
            "intent": intent,
            "borrowerName": "Dana",
            "borrowerPhone": phone,
        }
        body.update(extra)
        return self.client.post("/api/loans", json=body)

    def _inventory(self, tenant_id):
        response = self.client.get(f"/api/tenants/{tenant_id}/inventory")
        self.assertEqual(response.status_code, 200)
        return response.json()

    def test_healthchecks(self):
        self.assertEqual(self.client.get("/healthz").json(), {"status": "ok"})
        self.assertEqual(self.client.get("/api/healthz").json(), {"status": "ok"})

    def test_tenant_creation_requires_admin_secret(self):
        response = self.client.post("/api/tenants", json={"displayName": "Nowhere"})
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.json()["error"], "Unauthorized")
        response = self.client.post(
            "/api/tenants",
            json={"displayName": "Nowhere", "credential": support.MANAGER_SECRET},
        )
        self.assertEqual(response.status_code, 401)

    def test_direct_borrow_and_return(self):
        tenant_id = self._create_tenant()
        item_id = self._add_counted(tenant_id)

        borrowed = self._loan(tenant_id, "counted", item_id)
        self.assertEqual(borrowed.status_code, 200, borrowed.text)
        loan = borrowed.json()["loan"]
        self.assertEqual(loan["status"], "borrowed")
        self.assertEqual(loan["accessCode"], "4821")
        counted = self._inventory(tenant_id)["counted"][0]
        self.assertEqual(counted["quantity"], 2)
        self.assertNotIn("imagePath", counted)

        returned = self.client.post(f"/api/loans/{loan['loanID']}/return", json={})
        self.assertEqual(returned.status_code, 200, returned.text)
        self.assertEqual(returned.json()["loan"]["status"], "returned")
        self.assertNotIn("accessCode", returned.json()["loan"])
        self.assertEqual(self._inventory(tenant_id)["counted"][0]["quantity"], 3)

    def test_request_mode_flow_with_faulty_return(self):
        tenant_id = self._create_tenant(mode="request")
        unit_id = self._add_unit(tenant_id)

        requested = self._loan(tenant_id, "unit", unit_id, intent="request")
        self.assertEqual(requested.status_code, 200, requested.text)
        loan = requested.json()["loan"]
        self.assertEqual(loan["status"], "pending")
        self.assertNotIn("accessCode", loan)
        self.assertTrue(self._inventory(tenant_id)["units"][0]["isAvailable"])

        queue = self.client.get(f"/api/tenants/{tenant_id}/queue", headers=_headers(support.VIEWER_SECRET))
        self.assertEqual([row["loanID"] for row in queue.json()], [loan["loanID"]])

        approved = self.client.post(
            f"/api/loans/{loan['loanID']}/decide",
            json={"action": "approve", "credential": support.APPROVER_SECRET},
        )
        self.assertEqual(approved.status_code, 200, approved.text)
        self.assertEqual(approved.json()["loan"]["status"], "borrowed")
        self.assertEqual(approved.json()["loan"]["accessCode"], "4821")
        self.assertFalse(self._inventory(tenant_id)["units"][0]["isAvailable"])

        submitted = self.client.post(
            f"/api/loans/{loan['loanID']}/return",
            json={"faultReport": {"reportedStatus": "faulty", "notes": "Bent rim"}},
        )
        self.assertEqual(submitted.json()["loan"]["status"], "pending_approval")
        self.assertEqual(submitted.json()["loan"]["faultReport"]["notes"], "Bent rim")

        closed = self.client.post(
            f"/api/loans/{loan['loanID']}/decide-return",
            json={"action": "approve"},
            headers=_headers(support.APPROVER_SECRET),
        )
        self.assertEqual(closed.status_code, 200, closed.text)
        self.assertEqual(closed.json()["loan"]["status"], "returned")
        unit = self._inventory(tenant_id)["units"][0]
        self.assertTrue(unit["isAvailable"])
        self.assertEqual(unit["status"], "faulty")

    def test_manager_return_keeps_fault_report(self):
        tenant_id = self._create_tenant()
        unit_id = self._add_unit(tenant_id)
        borrowed = self._loan(tenant_id, "unit", unit_id, credential=support.MANAGER_SECRET)
        self.assertEqual(borrowed.status_code, 200, borrowed.text)
        loan_id = borrowed.json()["loan"]["loanID"]

        returned = self.client.post(
            f"/api/loans/{loan_id}/return",
            json={
                "faultReport": {"reportedStatus": "faulty", "notes": "Cracked valve"},
                "evidenceUrl": "https://files.example/evidence/7.jpg",
            },
            headers=_headers(support.MANAGER_SECRET),
        )
        self.assertEqual(returned.status_code, 200, returned.text)
        loan = returned.json()["loan"]
        self.assertEqual(loan["status"], "returned")
        self.assertEqual(loan["faultReport"]["reportedStatus"], "faulty")
        self.assertEqual(loan["faultReport"]["notes"], "Cracked valve")
        self.assertEqual(loan["evidenceUrl"], "https://files.example/evidence/7.jpg")
        unit = self._inventory(tenant_id)["units"][0]
        self.assertTrue(unit["isAvailable"])
        self.assertEqual(unit["status"], "faulty")

    def test_decide_refuses_closed_direct_loan(self):
        tenant_id = self._create_tenant()
        item_id = self._add_counted(tenant_id)
        loan_id = self._loan(tenant_id, "counted", item_id).json()["loan"]["loanID"]
        self.assertEqual(self.client.post(f"/api/loans/{loan_id}/return", json={}).status_code, 200)

        decided = self.client.post(
            f"/api/loans/{loan_id}/decide",
            json={"action": "approve"},
            headers=_headers(support.MANAGER_SECRET),
        )
        self.assertEqual(decided.status_code, 409)
        self.assertEqual(decided.json()["error"], "IllegalTransition")

    def test_errors_map_to_status_codes(self):
        tenant_id = self._create_tenant()
        item_id = self._add_counted(tenant_id, quantity=1)

        wrong_mode = self._loan(tenant_id, "counted", item_id, intent="request")
        self.assertEqual(wrong_mode.status_code, 409)
        self.assertEqual(wrong_mode.json()["error"], "ModeMismatch")

        missing = self._loan(999, "counted", item_id)
        self.assertEqual(missing.status_code, 404)
        self.assertEqual(missing.json()["error"], "TenantNotFound")

        self.assertEqual(self._loan(tenant_id, "counted", item_id).status_code, 200)
        empty = self._loan(tenant_id, "counted", item_id, phone="0509999999")
        self.assertEqual(empty.status_code, 409)
        self.assertEqual(empty.json()["error"], "InsufficientQuantity")

        malformed = self.client.post("/api/loans", json={"tenantID": tenant_id})
        self.assertEqual(malformed.status_code, 422)

    def test_decisions_respect_tiers(self):
        tenant_id = self._create_tenant(mode="request")
        item_id = self._add_counted(tenant_id)
        loan_id = self._loan(tenant_id, "counted", item_id, intent="request").json()["loan"]["loanID"]

        viewer = self.client.post(
            f"/api/loans/{loan_id}/decide",
            json={"action": "approve"},
            headers=_headers(support.VIEWER_SECRET),
        )
        self.assertEqual(viewer.status_code, 403)
        anonymous = self.client.post(f"/api/loans/{loan_id}/decide", json={"action": "reject"})
        self.assertEqual(anonymous.status_code, 401)

        rejected = self.client.post(
            f"/api/loans/{loan_id}/decide",
            json={"action": "reject", "reason": "Out of hours", "credential": support.APPROVER_SECRET},
        )
        self.assertEqual(rejected.json()["loan"]["status"], "rejected")
        self.assertEqual(rejected.json()["loan"]["rejectedReason"], "Out of hours")

    def test_borrower_cancels_pending_request(self):
        tenant_id = self._create_tenant(mode="request")
        item_id = self._add_counted(tenant_id)
        loan_id = self._loan(tenant_id, "counted", item_id, intent="request").json()["loan"]["loanID"]

        stranger = self.client.post(f"/api/loans/{loan_id}/cancel", json={"borrowerPhone": "0521111111"})
        self.assertEqual(stranger.status_code, 401)
        cancelled = self.client.post(f"/api/loans/{loan_id}/cancel", json={"borrowerPhone": "050-123-4567"})
        self.assertEqual(cancelled.status_code, 200)
        self.assertEqual(cancelled.json()["loan"]["rejectedReason"], "cancelled")

    def test_lockout_sets_retry_after(self):
        tenant_id = self._create_tenant()
        with mock.patch.object(config, "AUTH_MAX_ATTEMPTS_PER_TENANT", 2):
            for _ in range(2):
                response = self.client.get(f"/api/tenants/{tenant_id}/loans", headers=_headers("bad-guess"))
                self.assertEqual(response.status_code, 401)
            locked = self.client.get(f"/api/tenants/{tenant_id}/loans", headers=_headers(support.VIEWER_SECRET))
        self.assertEqual(locked.status_code, 401)
        self.assertIn("Retry-After", locked.headers)

    def test_reconciliation_and_repair(self):
        tenant_id = self._create_tenant()
        unit_id = self._add_unit(tenant_id)
        report = self.client.get(f"/api/tenants/{tenant_id}/reconciliation", headers=_headers(support.VIEWER_SECRET))
        self.assertEqual(report.json(), {"tenantID": tenant_id, "ok": True, "discrepancies": []})

        drifted = self.client.post(
            f"/api/tenants/{tenant_id}/items/unit/{unit_id}/repair",
            json={"isAvailable": False},
            headers=_headers(support.MANAGER_SECRET),
        )
        self.assertEqual(drifted.status_code, 200)
        report = self.client.get(f"/api/tenants/{tenant_id}/reconciliation", headers=_headers(support.VIEWER_SECRET))
        self.assertFalse(report.json()["ok"])
        self.assertEqual(report.json()["discrepancies"][0]["itemID"], unit_id)

        bad_kind = self.client.post(
            f"/api/tenants/{tenant_id}/items/gadget/{unit_id}/repair",
            json={"isAvailable": True},
            headers=_headers(support.MANAGER_SECRET),
        )
        self.assertEqual(bad_kind.status_code, 400)

    def test_overdue_lookup_and_notifications(self):
        tenant_id = self._create_tenant(mode="request")
        item_id = self._add_counted(tenant_id)
        self._loan(tenant_id, "counted", item_id, intent="request")

        overdue = self.client.get(f"/api/tenants/{tenant_id}/overdue", params={"phone": "0501234567"})
        self.assertEqual(overdue.status_code, 200)
        self.assertFalse(overdue.json()["hasOverdue"])

        pending = self.client.get(
            "/api/notifications/pending",
            params={"tenantID": tenant_id},
            headers=_headers(support.VIEWER_SECRET),
        )
        self.assertEqual(pending.status_code, 200)
        self.assertEqual([row["type"] for row in pending.json()], ["LoanRequested"])
        self.assertEqual(self.client.get("/api/notifications/pending").status_code, 401)

    def test_delete_only_closed_history(self):
        tenant_id = self._create_tenant()
        item_id = self._add_counted(tenant_id)
        loan_id = self._loan(tenant_id, "counted", item_id).json()["loan"]["loanID"]

        still_open = self.client.delete(f"/api/loans/{loan_id}", headers=_headers(support.MANAGER_SECRET))
        self.assertEqual(still_open.status_code, 409)
        self.client.post(f"/api/loans/{loan_id}/return", json={"credential": support.MANAGER_SECRET})
        deleted = self.client.delete(f"/api/loans/{loan_id}", headers=_headers(support.MANAGER_SECRET))
        self.assertEqual(deleted.status_code, 200)
        self.assertEqual(self.client.get(f"/api/loans/{loan_id}", params={"phone": "0501234567"}).status_code, 404)

    def test_mode_switch_and_settings(self):
        tenant_id = self._create_tenant()
        switched = self.client.put(
            f"/api/tenants/{tenant_id}/mode",
            json={"mode": "request"},
            headers=_headers(support.MANAGER_SECRET),
        )
        self.assertEqual(switched.json()["tenant"]["mode"], "request")
        self.assertTrue(switched.json()["tenant"]["requireReturnApproval"])

        settings = self.client.put(
            f"/api/tenants/{tenant_id}/settings",
            json={"requireReturnApproval": False, "requireCallerID": True},
            headers=_headers(support.MANAGER_SECRET),
        )
        self.assertEqual(settings.status_code, 200)
        tenant = settings.json()["tenant"]
        self.assertFalse(tenant["requireReturnApproval"])
        self.assertTrue(tenant["requireCallerID"])

        forbidden = self.client.put(
            f"/api/tenants/{tenant_id}/mode",
            json={"mode": "direct"},
            headers=_headers(support.APPROVER_SECRET),
        )
        self.assertEqual(forbidden.status_code, 403)


if __name__ == "__main__":
    unittest.main()
