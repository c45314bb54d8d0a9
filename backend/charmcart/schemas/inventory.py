import enum
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, computed_field


class InventoryStatus(str, enum.Enum):
    IN_STOCK = "in_stock"
    LOW_STOCK = "low_stock"
    OUT_OF_STOCK = "out_of_stock"


def derive_status(available: int, low_stock_threshold: int) -> InventoryStatus:
    if available <= 0:
        return InventoryStatus.OUT_OF_STOCK
    if available <= low_stock_threshold:
        return InventoryStatus.LOW_STOCK
    return InventoryStatus.IN_STOCK


class ItemQuantity(BaseModel):
    model_config = ConfigDict(frozen=True)

    item_id: str
    quantity: int


class InventoryRecord(BaseModel):
    model_config = ConfigDict(frozen=True, from_attributes=True)

    item_id: str
    title: str
    price: Decimal
    on_hand: int
    reserved: int
    available: int
    status: InventoryStatus


class AvailabilityLine(BaseModel):
    item_id: str
    requested: int
    available: int
    found: bool = True

    @computed_field
    @property
    def ok(self) -> bool:
        return self.found and self.available >= self.requested


class AvailabilityReport(BaseModel):
    lines: List[AvailabilityLine] = []

    @property
    def ok(self) -> bool:
        return all(line.ok for line in self.lines)

    def get(self, item_id: str) -> Optional[AvailabilityLine]:
        return next((l for l in self.lines if l.item_id == item_id), None)


class Shortfall(BaseModel):
    item_id: str
    requested: int
    available: int

    @computed_field
    @property
    def shortfall(self) -> int:
        return self.requested - self.available


class ReservationResult(BaseModel):
    ok: bool
    reserved: List[ItemQuantity] = []
    shortfalls: List[Shortfall] = []
    error: Optional[str] = None
