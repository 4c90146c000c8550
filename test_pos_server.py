import datetime as dt
import os
import shutil
import tempfile
import unittest

import pos_server
import pos_store
from erp_client import ERPNextClient
from sync_orchestrator import SyncOrchestrator

EMP = {"X-Employee-ID": "EMP-1"}


class _StubClient:
    configured = True

    def __init__(self):
        self.calls = []

    def post_resource(self, doctype, payload):
        self.calls.append(doctype)
        return {"name": f"{doctype}-0001"}


class PosServerTest(unittest.TestCase):
    def setUp(self):
        self.tmpdir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.tmpdir, "pos.db")
        self._saved = (pos_server.POS_DB_PATH, pos_server.SYNC_MODE, pos_server._ERP_CLIENT)
        pos_server.POS_DB_PATH = self.db_path
        pos_server.SYNC_MODE = "worker"
        pos_server._ERP_CLIENT = ERPNextClient(None, None, None)
        pos_server.app.config["TESTING"] = True
        self.client = pos_server.app.test_client()

    def tearDown(self):
        pos_server.POS_DB_PATH, pos_server.SYNC_MODE, pos_server._ERP_CLIENT = self._saved
        shutil.rmtree(self.tmpdir, ignore_errors=True)

    def _attend(self, action, employee="EMP-1"):
        return self.client.post("/api/attendance", json={"employee_id": employee, "action": action})

    def _checkout(self, items=None, **extra):
        body = {"items": items or [{"item_code": "SKU-1", "item_name": "Dates", "rate": "45.00", "qty": 2}]}
        body.update(extra)
        return self.client.post("/api/checkout", json=body, headers=EMP)

    def test_health(self):
        resp = self.client.get("/api/health")
        self.assertEqual(resp.status_code, 200)
        self.assertFalse(resp.get_json()["erp_configured"])
        self.assertEqual(resp.headers["Cache-Control"], "no-store, no-cache, must-revalidate, max-age=0")

    def test_checkout_refused_before_check_in(self):
        resp = self._checkout()
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.get_json()["attendance_status"], "absent")

    def test_missing_employee_header_is_refused(self):
        resp = self.client.post("/api/cart/price", json={"items": []})
        self.assertEqual(resp.status_code, 403)

    def test_checkout_after_check_in(self):
        self.assertEqual(self._attend("check_in").get_json()["attendance_status"], "present")
        resp = self._checkout()
        self.assertEqual(resp.status_code, 200)
        data = resp.get_json()
        self.assertEqual(data["totals"]["grand_total"], "103.50")
        self.assertEqual(data["totals"]["vat"], "13.50")
        self.assertEqual(data["sync"], "queued")
        self.assertTrue(data["zatca_qr"])

        sale = self.client.get(f"/api/sale/{data['sale_id']}", headers=EMP).get_json()["sale"]
        self.assertEqual(sale["grand_total"], "103.50")
        self.assertEqual(sale["cashier"], "EMP-1")
        self.assertEqual(sale["outbox"], {"invoice": "queued", "stock": "queued"})
        self.assertEqual(sale["sync_attempts"], [])

    def test_break_closes_the_pos(self):
        self._attend("check_in")
        self._attend("break_start")
        status = self.client.get("/api/attendance/EMP-1").get_json()
        self.assertEqual(status["attendance_status"], "on_break")
        self.assertEqual(status["capabilities"], ["attendance"])
        self.assertIn("break_end", status["allowed_actions"])
        resp = self.client.post("/api/cart/price", json={"items": [{"item_code": "A", "rate": 1}]}, headers=EMP)
        self.assertEqual(resp.status_code, 403)
        self.assertEqual(resp.get_json()["attendance_status"], "on_break")

    def test_invalid_transition_conflicts(self):
        resp = self._attend("break_end")
        self.assertEqual(resp.status_code, 409)
        self.assertEqual(resp.get_json()["attendance_status"], "absent")

    def test_back_dated_event_is_refused(self):
        self._attend("check_in")
        self._attend("check_out")
        earlier = (dt.datetime.now() - dt.timedelta(hours=30)).isoformat()
        resp = self.client.post("/api/attendance",
                                json={"employee_id": "EMP-1", "action": "check_in", "timestamp": earlier})
        self.assertEqual(resp.status_code, 400)
        status = self.client.get("/api/attendance/EMP-1").get_json()
        self.assertEqual(status["attendance_status"], "checked_out")

    def test_event_before_the_latest_is_refused(self):
        self._attend("check_in")
        earlier = (dt.datetime.now() - dt.timedelta(minutes=5)).isoformat()
        resp = self.client.post("/api/attendance",
                                json={"employee_id": "EMP-1", "action": "break_start", "timestamp": earlier})
        self.assertEqual(resp.status_code, 400)
        self.assertEqual(self.client.get("/api/attendance/EMP-1").get_json()["attendance_status"], "present")

    def test_unknown_action_is_bad_request(self):
        self.assertEqual(self._attend("lunch").status_code, 400)

    def test_invalid_cart_is_bad_request(self):
        self._attend("check_in")
        resp = self._checkout(items=[{"item_code": "SKU-1", "rate": "10", "qty": 0}])
        self.assertEqual(resp.status_code, 400)
        resp = self.client.post("/api/checkout", json={"items": []}, headers=EMP)
        self.assertEqual(resp.status_code, 400)

    def test_cart_price_uses_catalog_rate(self):
        conn = pos_store.connect(self.db_path)
        pos_store.init_db(conn)
        pos_store.upsert_item(conn, {"item_code": "SKU-9", "item_name": "Coffee", "standard_rate": "20"})
        conn.close()
        self._attend("check_in")
        resp = self.client.post("/api/cart/price", json={"items": [{"item_code": "SKU-9", "qty": 3}]}, headers=EMP)
        self.assertEqual(resp.status_code, 200)
        self.assertEqual(resp.get_json()["totals"]["grand_total"], "69.00")

    def test_shift_round_trip(self):
        self._attend("check_in")
        opened = self.client.post("/api/shift/open", json={"opening_cash": "100"}, headers=EMP)
        self.assertEqual(opened.status_code, 200)
        self.assertTrue(opened.get_json()["shift"]["shift_name"].startswith("LOCAL-SHIFT-"))
        self.assertEqual(self.client.post("/api/shift/open", json={}, headers=EMP).status_code, 409)

        self._checkout()
        self.assertEqual(self.client.post("/api/shift/close", json={}, headers=EMP).status_code, 400)
        closed = self.client.post("/api/shift/close", json={"actual_cash": "203.50"}, headers=EMP)
        report = closed.get_json()["x_report"]
        self.assertEqual(report["expected_total_cash"], 203.5)
        self.assertEqual(report["cash_discrepancy"], 0.0)
        self.assertEqual(report["total_transactions"], 1)

    def test_sync_endpoints_need_erp(self):
        self._attend("check_in")
        self.assertEqual(self.client.post("/api/sync/outbox", headers=EMP).status_code, 503)
        self.assertEqual(self.client.post("/api/catalog/sync", headers=EMP).status_code, 503)

    def test_sync_stats(self):
        self._attend("check_in")
        self._checkout()
        resp = self.client.get("/api/sync/stats", headers=EMP)
        self.assertEqual(resp.status_code, 200)
        stats = resp.get_json()["outbox"]
        self.assertEqual((stats["queued"], stats["failed"]), (2, 0))

    def test_retry_needs_sale_id_and_erp(self):
        self._attend("check_in")
        self.assertEqual(self.client.post("/api/sync/retry", json={}, headers=EMP).status_code, 400)
        resp = self.client.post("/api/sync/retry", json={"sale_id": "INV-X"}, headers=EMP)
        self.assertEqual(resp.status_code, 503)

    def test_retry_resends_a_failed_write(self):
        self._attend("check_in")
        sale_id = self._checkout().get_json()["sale_id"]
        conn = pos_store.connect(self.db_path)
        for row in pos_store.pending_outbox(conn, ref_id=sale_id):
            pos_store.mark_outbox_dispatched(conn, row["id"])
            pos_store.complete_outbox(conn, row["id"], "success" if row["kind"] == "invoice" else "network_error")
        conn.close()

        client = _StubClient()
        saved = pos_server._ORCHESTRATOR
        pos_server._ERP_CLIENT = client
        pos_server._ORCHESTRATOR = SyncOrchestrator(client)
        try:
            resp = self.client.post("/api/sync/retry", json={"sale_id": sale_id}, headers=EMP)
            again = self.client.post("/api/sync/retry", json={"sale_id": sale_id}, headers=EMP)
        finally:
            pos_server._ORCHESTRATOR.shutdown()
            pos_server._ORCHESTRATOR = saved
        self.assertEqual(resp.status_code, 200)
        data = resp.get_json()
        self.assertEqual(data["requeued"], 1)
        self.assertEqual([a["target"] for a in data["attempts"]], ["stock"])
        self.assertEqual(data["outbox"], {"invoice": "success", "stock": "success"})
        self.assertEqual(client.calls, ["Stock Entry"])
        self.assertEqual(again.status_code, 409)


if __name__ == "__main__":
    unittest.main()
