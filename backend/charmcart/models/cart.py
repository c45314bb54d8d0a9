from datetime import datetime, timezone

from sqlalchemy import JSON, Column, DateTime, Integer, Numeric, String

from charmcart.db import Base


def _now():
    return datetime.now(timezone.utc)


class UserCart(Base):
    __tablename__ = "user_carts"
    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(String(64), unique=True, index=True, nullable=False)
    cart_data = Column(JSON, nullable=False)
    item_count = Column(Integer, nullable=False, default=0)
    total_value = Column(Numeric(12, 2), nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False)
    last_updated = Column(
        DateTime(timezone=True), default=_now, onupdate=_now, nullable=False, index=True
    )


class GuestCart(Base):
    __tablename__ = "guest_carts"
    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(String(64), unique=True, index=True, nullable=False)
    cart_data = Column(JSON, nullable=False)
    item_count = Column(Integer, nullable=False, default=0)
    total_value = Column(Numeric(12, 2), nullable=False, default=0)
    expires_at = Column(DateTime(timezone=True), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), default=_now, nullable=False)
    last_updated = Column(DateTime(timezone=True), default=_now, onupdate=_now, nullable=False)
