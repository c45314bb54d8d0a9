import enum
from decimal import Decimal
from typing import List, Optional

from pydantic import BaseModel

from charmcart.schemas.cart import CartState
from charmcart.schemas.inventory import Shortfall


class LineStatus(str, enum.Enum):
    OK = "ok"
    QUANTITY_REDUCED = "quantity_reduced"
    UNAVAILABLE = "unavailable"


class LineValidation(BaseModel):
    line_id: str
    item_id: Optional[str] = None
    kind: str
    status: LineStatus
    requested: int
    # units of this line that can currently be fulfilled
    available: Optional[int] = None
    unavailable_components: List[str] = []


class PriceChange(BaseModel):
    line_id: str
    item_id: str
    old_price: Decimal
    new_price: Decimal


class ValidationReport(BaseModel):
    lines: List[LineValidation] = []
    price_changes: List[PriceChange] = []
    # aggregate demand per catalog id that current stock cannot cover
    oversubscribed: List[Shortfall] = []
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return (
            self.error is None
            and not self.price_changes
            and not self.oversubscribed
            and all(l.status == LineStatus.OK for l in self.lines)
        )

    def problems(self) -> List[LineValidation]:
        return [l for l in self.lines if l.status != LineStatus.OK]


class LoginSyncResult(BaseModel):
    state: CartState
    merged_guest_lines: int = 0
    conflict: Optional[str] = None
