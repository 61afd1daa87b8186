import os
import tempfile
import threading
import unittest

from connectivity import ConnectivityMonitor
from offline_store import PRODUCTS, LocalStore
from pos_api import RemoteUnavailable
from sale_recorder import SaleRecorder
from sync_engine import DRAINING, IDLE, SyncEngine


class FakeSalesServer:
    """Stands in for PosApiClient.post_sale with a per-invoice script of outcomes."""

    def __init__(self, outcomes=None, on_post=None):
        self.outcomes = outcomes or {}
        self.on_post = on_post
        self.posted = []
        self.accepted = {}

    def post_sale(self, sale):
        invoice_id = sale["invoiceId"]
        self.posted.append(invoice_id)
        if self.on_post:
            self.on_post(sale)
        outcome = self.outcomes.get(invoice_id, "ok")
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if outcome else "ok"
        if isinstance(outcome, Exception):
            raise outcome
        if outcome == "reject":
            return {"success": False, "message": "Invalid payload"}
        self.accepted[invoice_id] = sale
        return {"success": True, "id": len(self.accepted)}


class SyncEngineTest(unittest.TestCase):
    def setUp(self):
        self.tmp = tempfile.TemporaryDirectory()
        self.store = LocalStore(os.path.join(self.tmp.name, "pos_offline.db")).open()
        self.sleeps = []

    def tearDown(self):
        self.tmp.cleanup()

    def _engine(self, server, **kwargs):
        kwargs.setdefault("settle_delay", 0)
        return SyncEngine(self.store, server, sleep=self.sleeps.append, **kwargs)

    def _queue(self, *invoice_ids):
        for invoice_id in invoice_ids:
            self.store.record_sale({"invoiceId": invoice_id, "items": [], "total": 1.0})

    def _queued_ids(self):
        return [s["invoiceId"] for s in self.store.get_unsynced()]

    def test_all_accepted(self):
        self._queue("A", "B", "C")
        server = FakeSalesServer()
        result = self._engine(server).drain("manual")
        self.assertEqual(server.posted, ["A", "B", "C"])
        self.assertEqual(self._queued_ids(), [])
        self.assertEqual((result["status"], result["sent"], result["remaining"]), ("drained", 3, 0))

    def test_network_failure_halts_after_first_success(self):
        self._queue("A", "B", "C")
        server = FakeSalesServer({"B": RemoteUnavailable("connection refused")})
        result = self._engine(server).drain()
        self.assertEqual(server.posted, ["A", "B"])
        self.assertEqual(self._queued_ids(), ["B", "C"])
        self.assertEqual((result["status"], result["sent"], result["remaining"]), ("halted", 1, 2))
        self.assertIn("connection refused", result["error"])

    def test_network_failure_on_first_keeps_everything(self):
        self._queue("A", "B", "C")
        server = FakeSalesServer({"A": RemoteUnavailable("timed out")})
        self._engine(server).drain()
        self.assertEqual(server.posted, ["A"])
        self.assertEqual(self._queued_ids(), ["A", "B", "C"])

    def test_unexpected_error_halts(self):
        self._queue("A", "B")
        server = FakeSalesServer({"A": KeyError("boom")})
        result = self._engine(server).drain()
        self.assertEqual(result["status"], "halted")
        self.assertEqual(self._queued_ids(), ["A", "B"])

    def test_rejection_does_not_block_siblings(self):
        self._queue("A", "B", "C")
        server = FakeSalesServer({"B": "reject"})
        result = self._engine(server).drain()
        self.assertEqual(server.posted, ["A", "B", "C"])
        self.assertEqual(self._queued_ids(), ["B"])
        self.assertEqual((result["sent"], result["rejected"]), (2, 1))
        self.assertEqual(self.store.rejection_counts()["B"]["last_error"], "Invalid payload")

    def test_back_to_back_drains_never_resend(self):
        self._queue("A", "B", "C")
        server = FakeSalesServer()
        engine = self._engine(server)
        engine.drain()
        second = engine.drain()
        self.assertEqual(server.posted, ["A", "B", "C"])
        self.assertEqual(second["status"], "empty")

    def test_drain_while_draining_is_busy(self):
        self._queue("A", "B")
        nested = []
        server = FakeSalesServer(on_post=lambda sale: nested.append((engine.state, engine.drain("nested"))))
        engine = self._engine(server)
        engine.drain("outer")
        self.assertEqual(server.posted, ["A", "B"])
        self.assertEqual(nested[0][0], DRAINING)
        self.assertEqual(nested[0][1]["status"], "busy")
        self.assertEqual(engine.state, IDLE)

    def test_settle_delay_runs_before_reading_queue(self):
        engine = self._engine(FakeSalesServer(), settle_delay=0.8)
        result = engine.drain()
        self.assertEqual(self.sleeps, [0.8])
        self.assertEqual(result["status"], "empty")
        self.assertEqual(engine.last_result, result)

    def test_bounded_retry_parks_and_requeue_restores(self):
        self._queue("A", "B")
        server = FakeSalesServer({"A": ["reject", "reject", "ok"]})
        engine = self._engine(server, max_rejections=2)

        engine.drain()
        engine.drain()
        self.assertEqual(engine.status()["parked"], ["A"])

        server.posted.clear()
        result = engine.drain()
        self.assertEqual(server.posted, [])
        self.assertEqual((result["parked"], result["remaining"]), (1, 1))
        self.assertEqual(self._queued_ids(), ["A"])

        self.assertTrue(engine.requeue("A"))
        engine.drain()
        self.assertEqual(server.posted, ["A"])
        self.assertEqual(self._queued_ids(), [])
        self.assertEqual(engine.status()["parked"], [])

    def test_unbounded_retry_never_parks(self):
        self._queue("A")
        server = FakeSalesServer({"A": "reject"})
        engine = self._engine(server, max_rejections=0)
        for _ in range(4):
            engine.drain()
        self.assertEqual(server.posted, ["A"] * 4)
        self.assertEqual(engine.status()["parked"], [])

    def test_status_reports_queue(self):
        self._queue("A", "B")
        status = self._engine(FakeSalesServer()).status()
        self.assertEqual(status["state"], IDLE)
        self.assertEqual(status["pending"], 2)
        self.assertEqual(status["next_bill_no"], 3)

    def test_request_sync_runs_on_worker(self):
        self._queue("A", "B")
        server = FakeSalesServer()
        engine = self._engine(server)
        try:
            self.assertTrue(engine.request_sync("test"))
            self.assertTrue(engine.wait_idle(5))
        finally:
            engine.stop()
        self.assertEqual(server.posted, ["A", "B"])
        self.assertEqual(engine.last_result["reason"], "test")

    def test_stop_discards_requests_left_in_queue(self):
        self._queue("A")
        started = threading.Event()
        release = threading.Event()

        def block(sale):
            started.set()
            release.wait(5)

        server = FakeSalesServer(on_post=block)
        engine = self._engine(server)
        try:
            engine.request_sync("first")
            self.assertTrue(started.wait(5))
            self.assertTrue(engine.request_sync("second"))
            engine.stop(timeout=0.1)
            self.assertTrue(engine.wait_idle(1))
        finally:
            release.set()
            engine.stop()
        self.assertTrue(engine.wait_idle(1))
        self.assertEqual(server.posted, ["A"])

    def test_requests_coalesce_while_draining(self):
        self._queue("A")
        started = threading.Event()
        release = threading.Event()

        def block(sale):
            started.set()
            release.wait(5)

        server = FakeSalesServer(on_post=block)
        engine = self._engine(server)
        try:
            engine.request_sync("first")
            self.assertTrue(started.wait(5))
            self.assertTrue(engine.request_sync("second"))
            self.assertFalse(engine.request_sync("third"))
            release.set()
            self.assertTrue(engine.wait_idle(5))
        finally:
            release.set()
            engine.stop()
        self.assertEqual(server.posted, ["A"])
        self.assertEqual(self._queued_ids(), [])

    def test_offline_sales_sync_after_reconnect(self):
        self.store.replace_all(PRODUCTS, [{"id": 1, "name": "Tea", "price": 40, "stock": 50}])
        reachable = {"value": False}
        monitor = ConnectivityMonitor(lambda: reachable["value"], interval=60)
        server = FakeSalesServer()
        engine = self._engine(server)
        monitor.add_listener(lambda: engine.request_sync("online"))
        recorder = SaleRecorder(self.store, engine=engine, is_online=monitor.is_online, gst_percent=18)

        monitor.check()
        sales = [
            recorder.finalize_sale([{"productId": 1, "name": "Tea", "price": 40, "qty": n}], "Cash")
            for n in (1, 2, 3)
        ]
        self.assertEqual(len(self._queued_ids()), 3)
        self.assertEqual(server.posted, [])

        reachable["value"] = True
        try:
            self.assertTrue(monitor.check())
            self.assertTrue(engine.wait_idle(5))
        finally:
            engine.stop()

        self.assertEqual(self._queued_ids(), [])
        self.assertEqual(server.posted, [s["invoiceId"] for s in sales])
        for sale in sales:
            self.assertEqual(server.accepted[sale["invoiceId"]]["total"], sale["total"])


if __name__ == "__main__":
    unittest.main()
