from charmcart.db import SessionLocal
from charmcart.events import EventChannel
from charmcart.services.inventory_ledger import InventoryLedger

# process-wide; ledger changes are announced here
inventory_channel = EventChannel("inventory")


def get_ledger() -> InventoryLedger:
    return InventoryLedger(SessionLocal, inventory_channel)
