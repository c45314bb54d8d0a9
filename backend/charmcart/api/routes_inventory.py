from typing import List

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from charmcart.api.deps import get_ledger
from charmcart.errors import PersistenceError, ValidationError
from charmcart.schemas.inventory import ItemQuantity
from charmcart.services.inventory_ledger import InventoryLedger

router = APIRouter(prefix="/api/inventory", tags=["inventory"])


class ItemsIn(BaseModel):
    items: List[ItemQuantity] = Field(min_length=1)


class StockIn(BaseModel):
    on_hand: int


@router.post("/availability")
def availability(payload: ItemsIn, ledger: InventoryLedger = Depends(get_ledger)):
    """
    payload: { "items": [{"item_id": "charm-heart", "quantity": 2}] }
    Advisory only; a later reserve can still fail.
    """
    try:
        report = ledger.check_availability(payload.items)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"ok": report.ok, "lines": [l.model_dump() for l in report.lines]}


@router.post("/reserve")
def reserve(payload: ItemsIn, ledger: InventoryLedger = Depends(get_ledger)):
    """All-or-nothing. 409 with the shortfalls when any item cannot be covered."""
    try:
        result = ledger.reserve(payload.items)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if not result.ok:
        return JSONResponse(status_code=409, content=result.model_dump(mode="json"))
    return result.model_dump(mode="json")


@router.post("/release")
def release(payload: ItemsIn, ledger: InventoryLedger = Depends(get_ledger)):
    try:
        ledger.release(payload.items)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"ok": True}


@router.get("/{item_id}")
def get_item(item_id: str, ledger: InventoryLedger = Depends(get_ledger)):
    try:
        record = ledger.get_record(item_id)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if record is None:
        raise HTTPException(status_code=404, detail="Item not found")
    return record.model_dump(mode="json")


@router.put("/{item_id}/stock")
def set_stock(item_id: str, payload: StockIn, ledger: InventoryLedger = Depends(get_ledger)):
    try:
        if ledger.get_record(item_id) is None:
            raise HTTPException(status_code=404, detail="Item not found")
        record = ledger.restock(item_id, payload.on_hand)
    except ValidationError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return record.model_dump(mode="json")
