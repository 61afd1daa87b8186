#!/usr/bin/env python3
"""
Maintenance: re-create the pending-sales index on a local store.

Use when the agent logs that it is running without idx_sales_synced.
Drops the index if present, rebuilds it and re-derives the synced column
from each sale's payload.

Run: python scripts/rebuild_sales_index.py --db pos_offline.db
"""
import argparse
import json
import sqlite3

ap = argparse.ArgumentParser()
ap.add_argument("--db", default="pos_offline.db")
args = ap.parse_args()

conn = sqlite3.connect(args.db, timeout=30)
cur = conn.cursor()

cur.execute("SELECT name FROM sqlite_master WHERE type='table' AND name='sales'")
if not cur.fetchone():
    print("No sales table in", args.db)
    conn.close()
    raise SystemExit(1)

fixed = 0
for key, payload in cur.execute("SELECT item_key, payload_json FROM sales").fetchall():
    try:
        sale = json.loads(payload)
    except ValueError:
        print("Skipping unreadable sale", key)
        continue
    value = sale.get("synced")
    synced = 0 if value is False or (type(value) is int and value == 0) else 1
    upd = conn.execute("UPDATE sales SET synced=? WHERE item_key=? AND synced IS NOT ?", (synced, key, synced))
    fixed += upd.rowcount

cur.execute("DROP INDEX IF EXISTS idx_sales_synced")
cur.execute("CREATE INDEX idx_sales_synced ON sales(synced)")
conn.commit()

pending = cur.execute("SELECT COUNT(*) FROM sales WHERE synced = 0").fetchone()[0]
print(f"Rebuilt idx_sales_synced ({pending} pending sale(s), {fixed} synced flag(s) corrected)")
conn.close()
