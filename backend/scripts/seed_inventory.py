#!/usr/bin/env python3
"""
Seed the inventory table with charms, chains and findings.

Reads a JSON list (or an object with an "items" list) when --file is given,
otherwise seeds the built-in starter catalog. Existing rows have their title,
price and on-hand count replaced; reserved counts are kept.

Usage:
    python scripts/seed_inventory.py --file catalog.json
"""
import argparse
import json
import logging
import os
import sys
from decimal import Decimal, InvalidOperation

# allow running from repo/scripts
sys.path.append(os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))

from charmcart.db import SessionLocal, init_db
from charmcart.models.inventory import InventoryItem

log = logging.getLogger("seed_inventory")

STARTER_CATALOG = [
    {"id": "chain-silver-18", "title": "Sterling chain 18in", "category": "chain", "price": "24.00", "quantity": 40},
    {"id": "chain-gold-16", "title": "Gold-fill chain 16in", "category": "chain", "price": "38.00", "quantity": 20},
    {"id": "charm-heart", "title": "Heart charm", "category": "charm", "price": "10.00", "quantity": 25},
    {"id": "charm-star", "title": "Star charm", "category": "charm", "price": "9.50", "quantity": 25},
    {"id": "charm-moon", "title": "Crescent moon charm", "category": "charm", "price": "11.00", "quantity": 12},
    {"id": "charm-initial", "title": "Initial disc charm", "category": "charm", "price": "14.00", "quantity": 30},
    {"id": "bead-pearl", "title": "Freshwater pearl bead", "category": "bead", "price": "5.00", "quantity": 60},
    {"id": "bead-birthstone", "title": "Birthstone bead", "category": "bead", "price": "6.50", "quantity": 3},
    {"id": "clasp-lobster", "title": "Lobster clasp", "category": "finding", "price": "2.00", "quantity": 100},
]


def _normalize_entry(entry: dict) -> dict:
    item_id = entry.get("id") or entry.get("item_id") or entry.get("sku")
    title = entry.get("title") or entry.get("name") or ""
    try:
        price = Decimal(str(entry.get("price", 0) or 0))
    except InvalidOperation:
        log.warning("Bad price for %s: %r", item_id, entry.get("price"))
        price = Decimal("0")
    try:
        quantity = max(0, int(entry.get("quantity", entry.get("stock", 0)) or 0))
    except (TypeError, ValueError):
        quantity = 0
    return {
        "id": item_id,
        "title": title,
        "category": entry.get("category"),
        "price": price,
        "quantity": quantity,
    }


def load_entries(path: str = None):
    if path is None:
        return [_normalize_entry(e) for e in STARTER_CATALOG]
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    if isinstance(data, dict):
        source = data.get("items") if isinstance(data.get("items"), list) else list(data.values())
    elif isinstance(data, list):
        source = data
    else:
        source = []
    return [_normalize_entry(e) for e in source]


def seed(entries, session_factory=SessionLocal) -> int:
    seeded = 0
    with session_factory.begin() as db:
        for entry in entries:
            if not entry["id"]:
                continue
            item = db.get(InventoryItem, entry["id"])
            if item is None:
                item = InventoryItem(id=entry["id"], reserved_quantity=0)
                db.add(item)
            item.title = entry["title"]
            item.category = entry["category"]
            item.price = entry["price"]
            # on-hand can never drop below what is already promised
            item.quantity = max(entry["quantity"], item.reserved_quantity or 0)
            seeded += 1
    return seeded


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    parser = argparse.ArgumentParser()
    parser.add_argument("--file", "-f", default=None, help="Path to an inventory JSON file")
    args = parser.parse_args()
    if args.file and not os.path.exists(args.file):
        print("File not found:", args.file)
        sys.exit(1)
    init_db()
    count = seed(load_entries(args.file))
    print("Seeded inventory items:", count)
