import os
import sqlite3
import tempfile
import unittest
from unittest import mock

from connectivity import ConnectivityMonitor
from offline_agent import create_app
from offline_store import LocalStore
from pos_api import RemoteUnavailable
from sync_engine import SyncEngine


class FakeRemote:
    def __init__(self):
        self.online = False
        self.posted = []

    def fetch_products(self):
        if not self.online:
            raise RemoteUnavailable("offline")
        return [{"id": 1, "name": "Tea", "price": 40, "stock": 10, "barcode": "8901"}]

    def fetch_users(self):
        if not self.online:
            raise RemoteUnavailable("offline")
        return {"success": True, "users": [{"username": "asha", "role": "cashier"}]}

    def post_sale(self, sale):
        if not self.online:
            raise RemoteUnavailable("offline")
        self.posted.append(sale["invoiceId"])
        return {"success": True, "id": len(self.posted)}

    def ping(self):
        return self.online


class OfflineAgentTest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = LocalStore(os.path.join(self.tmp.name, "pos_offline.db")).open()
        self.remote = FakeRemote()
        self.engine = SyncEngine(self.store, self.remote, settle_delay=0)
        monitor = ConnectivityMonitor(self.remote.ping, interval=60)
        app = create_app(store=self.store, client=self.remote, engine=self.engine, monitor=monitor)
        app.testing = True
        self.client = app.test_client()

    def tearDown(self):
        self.engine.stop()
        self.tmp.cleanup()

    def _sale_body(self, **extra):
        body = {
            "items": [{"productId": 1, "name": "Tea", "price": 40, "qty": 2}],
            "paymentMode": "Cash",
            "discount": {"enabled": True, "percent": 10},
        }
        body.update(extra)
        return body

    def test_health(self):
        resp = self.client.get("/health")
        self.assertEqual(resp.status_code, 200)
        data = resp.get_json()
        self.assertEqual((data["online"], data["pending"], data["sync_state"]), (False, 0, "idle"))
        self.assertIn("no-store", resp.headers["Cache-Control"])

    def test_products_refresh_then_fall_back(self):
        self.remote.online = True
        first = self.client.get("/api/products").get_json()
        self.assertEqual([p["id"] for p in first["products"]], [1])

        self.remote.online = False
        second = self.client.get("/api/products").get_json()
        self.assertTrue(second["success"])
        self.assertEqual(second["products"], first["products"])

    def test_barcode_lookup(self):
        self.remote.online = True
        self.client.get("/api/products")
        self.assertEqual(self.client.get("/api/products/barcode/8901").get_json()["product"]["id"], 1)
        self.assertEqual(self.client.get("/api/products/barcode/0000").status_code, 404)

    def test_users(self):
        self.remote.online = True
        data = self.client.get("/api/users").get_json()
        self.assertEqual([u["username"] for u in data["users"]], ["asha"])

    def test_create_sale_queues_locally(self):
        resp = self.client.post("/api/sales", json=self._sale_body())
        self.assertEqual(resp.status_code, 201)
        sale = resp.get_json()["sale"]
        self.assertEqual(sale["billNo"], 1)
        self.assertEqual(sale["total"], 84.96)
        self.assertEqual([s["invoiceId"] for s in self.store.get_unsynced()], [sale["invoiceId"]])
        self.assertEqual(self.remote.posted, [])

    def test_create_sale_rejects_bad_input(self):
        self.assertEqual(self.client.post("/api/sales", json=self._sale_body(items=[])).status_code, 400)
        self.assertEqual(self.client.post("/api/sales", data="nope").status_code, 400)
        bad_qty = self._sale_body(items=[{"productId": 1, "price": 40, "qty": -1}])
        resp = self.client.post("/api/sales", json=bad_qty)
        self.assertEqual(resp.status_code, 400)
        self.assertIn("Item #1", resp.get_json()["message"])
        self.assertEqual(self.client.post("/api/sales", json=self._sale_body(paymentMode="Card")).status_code, 400)
        self.assertEqual(self.store.count_unsynced(), 0)

    def test_create_sale_rejects_non_finite_numbers(self):
        for raw in ('{"items":[{"productId":1,"price":1,"qty":NaN}]}',
                    '{"items":[{"productId":1,"price":Infinity,"qty":1}]}'):
            resp = self.client.post("/api/sales", data=raw, content_type="application/json")
            self.assertEqual(resp.status_code, 400)
            self.assertFalse(resp.get_json()["success"])
        self.assertEqual(self.store.count_unsynced(), 0)

    def test_create_sale_store_failure(self):
        with mock.patch.object(self.store, "record_sale", side_effect=sqlite3.OperationalError("disk full")):
            resp = self.client.post("/api/sales", json=self._sale_body())
        self.assertEqual(resp.status_code, 500)
        self.assertEqual(resp.get_json(), {"success": False, "message": "cannot save sale"})

    def test_manual_sync_wait(self):
        self.client.post("/api/sales", json=self._sale_body())
        offline = self.client.post("/api/sync?wait=1").get_json()
        self.assertEqual(offline["result"]["status"], "halted")

        self.remote.online = True
        online = self.client.post("/api/sync?wait=1").get_json()
        self.assertEqual((online["result"]["status"], online["result"]["sent"]), ("drained", 1))
        self.assertEqual(self.store.count_unsynced(), 0)

    def test_manual_sync_queued(self):
        self.remote.online = True
        self.client.post("/api/sales", json=self._sale_body())
        resp = self.client.post("/api/sync")
        self.assertEqual(resp.status_code, 202)
        self.assertTrue(self.engine.wait_idle(5))
        self.assertEqual(len(self.remote.posted), 1)

    def test_sync_status_and_requeue(self):
        self.client.post("/api/sales", json=self._sale_body())
        status = self.client.get("/api/sync/status").get_json()
        self.assertEqual((status["pending"], status["parked"], status["online"]), (1, [], False))
        self.assertEqual(self.client.post("/api/sync/requeue/inv-missing").status_code, 404)

        self.store.note_rejection("inv-x", "bad")
        resp = self.client.post("/api/sync/requeue/inv-x")
        self.assertEqual(resp.get_json(), {"success": True, "invoiceId": "inv-x"})


if __name__ == "__main__":
    unittest.main()
