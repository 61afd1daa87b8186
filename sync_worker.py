#!/usr/bin/env python3
"""
POS Offline Sync Worker

Modes:
  --once      run one drain cycle and print its summary
  --loop      watch connectivity and drain every POS_SYNC_INTERVAL seconds
  --status    print queue length, parked bills and the next bill number
  --catalog   refresh the local product and user caches
  --export    write pending sales to NDJSON under POS_EXPORT_DIR
  --requeue   clear the rejection history of a parked bill

Env vars:
  POS_OFFLINE_DB_PATH  local store file (default: pos_offline.db)
  POS_API_BASE         remote service base URL
  POS_SYNC_INTERVAL    seconds between loop drains (default: 30)

Run:
  python sync_worker.py --once
"""
import argparse
import datetime as dt
import json
import logging
import threading
from pathlib import Path
from typing import Optional, Tuple

import offline_config as cfg
from catalog_cache import CatalogCache, UserDirectory
from connectivity import ConnectivityMonitor
from offline_store import LocalStore, open_store
from pos_api import PosApiClient
from sync_engine import SyncEngine

logger = logging.getLogger('sync_worker')


def build_runtime(db_path: Optional[str] = None) -> Tuple[LocalStore, PosApiClient, SyncEngine, ConnectivityMonitor]:
    store = open_store(db_path)
    client = PosApiClient()
    engine = SyncEngine(store, client)
    monitor = ConnectivityMonitor(client.ping)
    monitor.add_listener(lambda: engine.request_sync('online'))
    return store, client, engine, monitor


def export_pending_ndjson(store: LocalStore, out_dir: Optional[str] = None, day: Optional[str] = None) -> Path:
    """Write every unsynced sale as one JSON line; returns the file written."""
    if day is None:
        day = dt.datetime.now(dt.timezone.utc).date().isoformat()
    target_dir = Path(out_dir or cfg.EXPORT_DIR)
    target_dir.mkdir(parents=True, exist_ok=True)
    path = target_dir / f"pending_sales_{day}.ndjson"
    with open(path, "w", encoding="utf-8") as f:
        for sale in store.get_unsynced():
            f.write(json.dumps(sale, separators=(",", ":"), ensure_ascii=False) + "\n")
    return path


def run_loop(engine: SyncEngine, monitor: ConnectivityMonitor, interval: Optional[float] = None,
             stop: Optional[threading.Event] = None) -> None:
    interval = cfg.SYNC_INTERVAL if interval is None else interval
    stop = stop or threading.Event()
    engine.start()
    monitor.start()
    try:
        while not stop.wait(interval):
            if monitor.is_online():
                engine.request_sync('interval')
    finally:
        monitor.stop()
        engine.stop()


def main(argv=None) -> int:
    ap = argparse.ArgumentParser(description="POS offline sync worker")
    ap.add_argument("--once", action="store_true", help="Run one drain cycle")
    ap.add_argument("--loop", action="store_true", help="Keep draining while the service is reachable")
    ap.add_argument("--status", action="store_true", help="Show the pending queue")
    ap.add_argument("--catalog", action="store_true", help="Refresh cached products and users")
    ap.add_argument("--export", action="store_true", help="Write pending sales to NDJSON")
    ap.add_argument("--requeue", metavar="INVOICE_ID", help="Clear the rejection history of a parked bill")
    ap.add_argument("--db", default=cfg.OFFLINE_DB_PATH, help="Path to the local store")
    args = ap.parse_args(argv)

    cfg.configure_logging('sync')
    store, client, engine, monitor = build_runtime(args.db)

    if args.catalog:
        products = CatalogCache(store, client).load_catalog()
        workers = UserDirectory(store, client).load_users()
        print(f"catalog: {len(products)} product(s), {len(workers)} user(s)")

    if args.requeue:
        if not engine.requeue(args.requeue):
            print(f"no rejection history for {args.requeue}")

    if args.once:
        print(json.dumps(engine.drain('cli'), indent=2))

    if args.export:
        print("exported", export_pending_ndjson(store))

    if args.status:
        print(json.dumps(engine.status(), indent=2, default=str))

    if args.loop:
        logger.info("Starting loop: interval=%ss, db=%s, api=%s", cfg.SYNC_INTERVAL, store.path, client.base_url)
        try:
            run_loop(engine, monitor)
        except KeyboardInterrupt:
            logger.info("Exiting on Ctrl+C")
    return 0


if __name__ == '__main__':
    raise SystemExit(main())
