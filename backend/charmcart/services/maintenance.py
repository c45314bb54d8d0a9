import logging
import os
import tempfile
from datetime import timedelta
from typing import Optional

from filelock import FileLock, Timeout
from pydantic import BaseModel
from sqlalchemy.orm import sessionmaker

from charmcart.config import settings
from charmcart.repositories.cart_store import CartStore

log = logging.getLogger(__name__)

SWEEP_JOB_ID = "cart_maintenance"


class SweepResult(BaseModel):
    ran: bool
    purged_guest_carts: int = 0
    abandoned_user_carts: int = 0


def _lock_path() -> str:
    locks_dir = settings.LOCK_DIR or os.path.join(tempfile.gettempdir(), "charmcart_locks")
    os.makedirs(locks_dir, exist_ok=True)
    return os.path.join(locks_dir, "cart_sweep.lock")


def run_sweep(session_factory: sessionmaker, lock_timeout: float = 0) -> SweepResult:
    """
    Purge expired guest carts and report abandoned user carts.

    Only one process sweeps at a time; if another holds the lock this run is
    skipped. Inventory is never touched here.
    """
    lock = FileLock(_lock_path())
    try:
        with lock.acquire(timeout=lock_timeout):
            with session_factory() as db:
                store = CartStore(db)
                purged = store.purge_expired_guests()
                abandoned = store.list_abandoned(
                    timedelta(hours=settings.ABANDONED_CART_HOURS)
                )
    except Timeout:
        log.info("Cart sweep already running elsewhere; skipping")
        return SweepResult(ran=False)

    if abandoned:
        log.info("%d abandoned user carts", len(abandoned))
    return SweepResult(ran=True, purged_guest_carts=purged, abandoned_user_carts=len(abandoned))


def schedule_sweep(scheduler, session_factory: sessionmaker, interval: Optional[int] = None):
    def sweep_job():
        try:
            run_sweep(session_factory)
        except Exception:
            # keep the scheduler alive; next interval retries
            log.exception("Cart sweep failed")

    return scheduler.add_job(
        sweep_job,
        "interval",
        seconds=interval or settings.CLEANUP_INTERVAL_SECONDS,
        id=SWEEP_JOB_ID,
        replace_existing=True,
    )
