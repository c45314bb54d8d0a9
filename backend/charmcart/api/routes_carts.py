from datetime import timedelta
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.orm import Session

from charmcart.config import settings
from charmcart.db import get_db
from charmcart.errors import CorruptedCartData, PersistenceError
from charmcart.repositories.cart_store import CartStore
from charmcart.schemas.cart import CartState
from charmcart.schemas.session import GuestSession, SessionIdentity, UserSession

router = APIRouter(prefix="/api/carts", tags=["carts"])


class CartIn(BaseModel):
    items: List[Dict[str, Any]] = []
    promo_code: Optional[str] = None
    discount_percent: Optional[Decimal] = None


class TransferIn(BaseModel):
    guest_session_id: str
    user_id: str


def _parse(payload: CartIn, store: CartStore) -> CartState:
    try:
        state = CartState.from_payload(payload.model_dump(), store.pricing)
        store.pricing.check_cart(state.items)
    except (PydanticValidationError, ValueError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return state


def _get(identity: SessionIdentity, db: Session):
    store = CartStore(db)
    try:
        state = store.load(identity)
    except CorruptedCartData as e:
        raise HTTPException(status_code=422, detail=str(e))
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    if state is None:
        raise HTTPException(status_code=404, detail="Cart not found")
    return state.to_payload()


def _put(identity: SessionIdentity, payload: CartIn, db: Session):
    store = CartStore(db)
    state = _parse(payload, store)
    try:
        store.save(identity, state)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return state.to_payload()


def _delete(identity: SessionIdentity, db: Session):
    try:
        CartStore(db).delete(identity)
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {"ok": True}


@router.get("/user/{user_id}")
def get_user_cart(user_id: str, db: Session = Depends(get_db)):
    return _get(UserSession(user_id=user_id), db)


@router.put("/user/{user_id}")
def put_user_cart(user_id: str, payload: CartIn, db: Session = Depends(get_db)):
    return _put(UserSession(user_id=user_id), payload, db)


@router.delete("/user/{user_id}")
def delete_user_cart(user_id: str, db: Session = Depends(get_db)):
    return _delete(UserSession(user_id=user_id), db)


@router.get("/guest/{session_id}")
def get_guest_cart(session_id: str, db: Session = Depends(get_db)):
    return _get(GuestSession(session_id=session_id), db)


@router.put("/guest/{session_id}")
def put_guest_cart(session_id: str, payload: CartIn, db: Session = Depends(get_db)):
    return _put(GuestSession(session_id=session_id), payload, db)


@router.delete("/guest/{session_id}")
def delete_guest_cart(session_id: str, db: Session = Depends(get_db)):
    return _delete(GuestSession(session_id=session_id), db)


@router.post("/transfer", summary="Merge a guest cart into a user cart")
def transfer(payload: TransferIn, db: Session = Depends(get_db)):
    """An unreadable cart on one side is dropped and reported in `conflict`."""
    store = CartStore(db)
    try:
        result = store.transfer(
            GuestSession(session_id=payload.guest_session_id),
            UserSession(user_id=payload.user_id),
        )
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return {
        "cart": result.state.to_payload(),
        "merged_guest_lines": result.merged_guest_lines,
        "conflict": result.conflict,
    }


@router.get("/abandoned")
def abandoned(
    hours: int = Query(default=settings.ABANDONED_CART_HOURS, ge=0),
    db: Session = Depends(get_db),
):
    try:
        carts = CartStore(db).list_abandoned(timedelta(hours=hours))
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
    return [c.model_dump(mode="json") for c in carts]


@router.get("/stats")
def stats(db: Session = Depends(get_db)):
    try:
        return CartStore(db).statistics().model_dump(mode="json")
    except PersistenceError as e:
        raise HTTPException(status_code=503, detail=str(e))
