"""
Hammer /api/inventory/reserve from many threads at once and report how many
reservations succeeded. With N units in stock, at most N one-unit requests
may come back 200; the rest must be 409.

    python tools/concurrency_reserve.py --item charm-moon --workers 16
"""
import argparse
import concurrent.futures
import os
from collections import Counter

import requests

BASE = os.environ.get("CHARMCART_BASE", "http://127.0.0.1:8000")


def reserve_task(i, item_id, qty):
    payload = {"items": [{"item_id": item_id, "quantity": qty}]}
    try:
        r = requests.post(f"{BASE}/api/inventory/reserve", json=payload, timeout=10)
        return (i, r.status_code, r.text)
    except requests.RequestException as e:
        return (i, "ERR", str(e))


def run_reserve_concurrent(workers, item_id, qty):
    before = requests.get(f"{BASE}/api/inventory/{item_id}", timeout=10).json()
    print(f"Running reserve test: workers={workers}, item={item_id}, qty={qty}")
    print("Before:", before)
    with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as ex:
        futures = [ex.submit(reserve_task, i, item_id, qty) for i in range(workers)]
        results = [f.result() for f in futures]
    statuses = Counter(r[1] for r in results)
    print("Status counts:", dict(statuses))
    after = requests.get(f"{BASE}/api/inventory/{item_id}", timeout=10).json()
    print("After:", after)
    granted = statuses.get(200, 0) * qty
    if after["reserved"] - before["reserved"] != granted:
        print("MISMATCH: reserved delta does not match granted reservations")
    if after["available"] < 0:
        print("OVERSOLD: available went negative")


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description="Concurrent reservation check.")
    parser.add_argument("--item", default="charm-moon")
    parser.add_argument("--qty", type=int, default=1)
    parser.add_argument("--workers", type=int, default=8)
    args = parser.parse_args()
    run_reserve_concurrent(args.workers, args.item, args.qty)
