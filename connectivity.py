"""Online/offline tracking for the remote POS service."""
import logging
import threading
from typing import Callable, List, Optional

import offline_config as cfg

logger = logging.getLogger(__name__)


class ConnectivityMonitor:
    """Polls ``probe`` on a daemon thread and notifies listeners when the service comes back."""

    def __init__(self, probe: Callable[[], bool], interval: Optional[float] = None):
        self.probe = probe
        self.interval = cfg.CONNECTIVITY_INTERVAL if interval is None else interval
        self._online: Optional[bool] = None
        self._listeners: List[Callable[[], None]] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def is_online(self) -> bool:
        return bool(self._online)

    def add_listener(self, fn: Callable[[], None]) -> None:
        with self._lock:
            self._listeners.append(fn)

    def check(self) -> bool:
        """Probe once and fire listeners on an offline -> online transition."""
        try:
            online = bool(self.probe())
        except Exception:
            logger.exception("Connectivity probe failed")
            online = False
        with self._lock:
            previous = self._online
            self._online = online
            listeners = list(self._listeners)
        if online and not previous:
            logger.info("Remote service reachable; back online")
            for fn in listeners:
                try:
                    fn()
                except Exception:
                    logger.exception("Connectivity listener failed")
        elif not online and previous:
            logger.warning("Remote service unreachable; working offline")
        return online

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name='connectivity', daemon=True)
        self._thread.start()

    def stop(self, timeout: Optional[float] = 5.0) -> None:
        self._stop.set()
        if self._thread and self._thread.is_alive():
            self._thread.join(timeout)
        self._thread = None

    def _run(self) -> None:
        while not self._stop.is_set():
            self.check()
            self._stop.wait(self.interval)
