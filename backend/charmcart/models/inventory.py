from sqlalchemy import CheckConstraint, Column, Integer, Numeric, String
from sqlalchemy.ext.hybrid import hybrid_property

from charmcart.db import Base
from charmcart.schemas.inventory import InventoryRecord, derive_status


class InventoryItem(Base):
    __tablename__ = "inventory"
    __table_args__ = (
        CheckConstraint("reserved_quantity >= 0", name="ck_inventory_reserved_nonneg"),
        CheckConstraint(
            "reserved_quantity <= quantity", name="ck_inventory_available_nonneg"
        ),
    )

    id = Column(String(64), primary_key=True)
    title = Column(String(256), nullable=False, default="")
    category = Column(String(64), nullable=True)
    price = Column(Numeric(10, 2), nullable=False, default=0)
    quantity = Column(Integer, nullable=False, default=0)  # on hand
    reserved_quantity = Column(Integer, nullable=False, default=0)

    @hybrid_property
    def available_quantity(self):
        return self.quantity - self.reserved_quantity

    def to_record(self, low_stock_threshold: int) -> InventoryRecord:
        available = self.available_quantity
        return InventoryRecord(
            item_id=self.id,
            title=self.title,
            price=self.price,
            on_hand=self.quantity,
            reserved=self.reserved_quantity,
            available=available,
            status=derive_status(available, low_stock_threshold),
        )

    def __repr__(self):
        return f"<InventoryItem id={self.id} on_hand={self.quantity} reserved={self.reserved_quantity}>"
