"""
Replays locally queued sales against the remote sales endpoint.

One drain cycle:
  1. wait the settling delay
  2. snapshot the unsynced queue (insertion order)
  3. POST each sale in turn
       success            -> remove from the queue, continue
       2xx, success false -> record the rejection, keep it, continue
       RemoteUnavailable  -> stop the cycle; this sale and the rest stay queued

Only one cycle runs at a time. Triggers go through ``request_sync`` which feeds
a single worker thread; a direct ``drain`` call made while another cycle is
running returns a ``busy`` result without touching the queue.
"""
import logging
import queue
import threading
import time
from typing import Any, Callable, Dict, Optional, Set

import offline_config as cfg
from offline_store import SALES, LocalStore
from pos_api import RemoteUnavailable

logger = logging.getLogger(__name__)

IDLE = 'idle'
DRAINING = 'draining'


class SyncEngine:
    def __init__(
        self,
        store: LocalStore,
        client: Any,
        settle_delay: Optional[float] = None,
        max_rejections: Optional[int] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.store = store
        self.client = client
        self.settle_delay = cfg.SYNC_SETTLE_DELAY if settle_delay is None else max(0.0, settle_delay)
        # 0 keeps rejected sales in rotation forever
        self.max_rejections = cfg.SYNC_MAX_REJECTIONS if max_rejections is None else max(0, max_rejections)
        self._sleep = sleep
        self.state = IDLE
        self.last_result: Optional[Dict[str, Any]] = None
        self._drain_lock = threading.Lock()
        self._requests: "queue.Queue[str]" = queue.Queue(maxsize=1)
        self._pending = 0
        self._idle = threading.Condition()
        self._stopping = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._worker_lock = threading.Lock()

    # ---------- WORKER ----------
    def start(self) -> None:
        with self._worker_lock:
            if self._worker and self._worker.is_alive():
                return
            self._stopping.clear()
            self._worker = threading.Thread(target=self._consume, name='sync-engine', daemon=True)
            self._worker.start()
        logger.info("Sync worker started (settle=%.1fs, max_rejections=%s)",
                    self.settle_delay, self.max_rejections or 'unbounded')

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stopping.set()
        with self._worker_lock:
            worker = self._worker
            self._worker = None
        if worker and worker.is_alive():
            worker.join(timeout)
        # requests left behind by the stopped worker will never run
        with self._idle:
            while True:
                try:
                    self._requests.get_nowait()
                except queue.Empty:
                    break
            self._pending = 0
            self._idle.notify_all()

    def request_sync(self, reason: str = 'manual') -> bool:
        """Queue a drain. Returns False when one is already pending (the request coalesces)."""
        self.start()
        with self._idle:
            try:
                self._requests.put_nowait(reason)
            except queue.Full:
                logger.debug("Sync already pending; coalescing %s trigger", reason)
                return False
            self._pending += 1
        return True

    def wait_idle(self, timeout: Optional[float] = None) -> bool:
        """Block until every queued request has been drained."""
        with self._idle:
            return self._idle.wait_for(lambda: self._pending == 0, timeout)

    def _consume(self) -> None:
        while not self._stopping.is_set():
            try:
                reason = self._requests.get(timeout=0.5)
            except queue.Empty:
                continue
            try:
                self.drain(reason)
            finally:
                with self._idle:
                    self._pending = max(0, self._pending - 1)
                    self._idle.notify_all()

    # ---------- DRAIN ----------
    def drain(self, reason: str = 'manual') -> Dict[str, Any]:
        """Run one drain cycle. Never raises; the outcome is in the returned summary."""
        if not self._drain_lock.acquire(blocking=False):
            logger.info("Sync (%s) skipped: a cycle is already running", reason)
            return {'status': 'busy', 'reason': reason}
        self.state = DRAINING
        try:
            result = self._drain(reason)
        except Exception as exc:
            logger.exception("Sync cycle (%s) failed", reason)
            result = _summary('failed', reason, error=str(exc))
        finally:
            self.state = IDLE
            self._drain_lock.release()
        self.last_result = result
        if result['status'] not in ('empty', 'busy'):
            logger.info("Sync (%s) %s: sent=%d rejected=%d parked=%d remaining=%d", reason, result['status'],
                        result['sent'], result['rejected'], result['parked'], result['remaining'])
        return result

    def _drain(self, reason: str) -> Dict[str, Any]:
        if self.settle_delay > 0:
            self._sleep(self.settle_delay)
        queued = self.store.get_unsynced()
        if not queued:
            return _summary('empty', reason)
        parked_ids = self.parked_ids()
        sent = rejected = parked = 0
        status, error = 'drained', None
        for sale in queued:
            invoice_id = sale.get('invoiceId')
            if invoice_id in parked_ids:
                parked += 1
                continue
            try:
                body = self.client.post_sale(sale)
            except RemoteUnavailable as exc:
                logger.warning("Sync halted at bill %s: %s", invoice_id, exc)
                status, error = 'halted', str(exc)
                break
            except Exception as exc:
                logger.exception("Unexpected error posting bill %s; halting", invoice_id)
                status, error = 'halted', str(exc)
                break
            if body.get('success'):
                self.store.remove(SALES, invoice_id)
                sent += 1
                continue
            rejected += 1
            message = body.get('message') or 'rejected by server'
            attempts = self.store.note_rejection(invoice_id, message)
            logger.warning("Server rejected bill %s (attempt %d): %s", invoice_id, attempts, message)
            if self.max_rejections and attempts >= self.max_rejections:
                logger.error("Bill %s parked after %d rejections; requeue it once fixed", invoice_id, attempts)
        return _summary(status, reason, sent=sent, rejected=rejected, parked=parked,
                        remaining=self.store.count_unsynced(), error=error)

    # ---------- OPERATOR ----------
    def parked_ids(self) -> Set[str]:
        if not self.max_rejections:
            return set()
        return {
            invoice_id
            for invoice_id, info in self.store.rejection_counts().items()
            if info['attempts'] >= self.max_rejections
        }

    def requeue(self, invoice_id: str) -> bool:
        """Forget the rejection history of a parked sale so drains pick it up again."""
        cleared = self.store.clear_rejections(invoice_id)
        if cleared:
            logger.info("Bill %s requeued", invoice_id)
        return cleared

    def status(self) -> Dict[str, Any]:
        rejections = self.store.rejection_counts()
        parked = sorted(self.parked_ids())
        return {
            'state': self.state,
            'pending': self.store.count_unsynced(),
            'parked': parked,
            'rejections': rejections,
            'max_rejections': self.max_rejections,
            'next_bill_no': self.store.peek_bill_no(),
            'last_result': self.last_result,
        }


def _summary(status: str, reason: str, sent: int = 0, rejected: int = 0, parked: int = 0,
             remaining: int = 0, error: Optional[str] = None) -> Dict[str, Any]:
    return {
        'status': status,
        'reason': reason,
        'sent': sent,
        'rejected': rejected,
        'parked': parked,
        'remaining': remaining,
        'error': error,
    }
