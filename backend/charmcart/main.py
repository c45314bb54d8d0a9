import logging
from contextlib import asynccontextmanager

from apscheduler.schedulers.background import BackgroundScheduler
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from charmcart.api.health import router as health_router
from charmcart.api.routes_carts import router as carts_router
from charmcart.api.routes_inventory import router as inventory_router
from charmcart.config import settings
from charmcart.db import SessionLocal, init_db
from charmcart.services.maintenance import schedule_sweep

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
log = logging.getLogger("charmcart")


@asynccontextmanager
async def lifespan(app: FastAPI):
    # startup
    init_db()

    # scheduler for guest-cart expiry and abandoned-cart reporting
    scheduler = BackgroundScheduler()
    schedule_sweep(scheduler, SessionLocal)
    scheduler.start()
    app.state.scheduler = scheduler
    log.info("Cart maintenance scheduled every %ss", settings.CLEANUP_INTERVAL_SECONDS)

    try:
        yield
    finally:
        scheduler.shutdown(wait=False)


app = FastAPI(title="Charm Cart - Backend", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.FRONTEND_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(health_router, prefix="/api", tags=["health"])

app.include_router(inventory_router, tags=["inventory"])

app.include_router(carts_router, tags=["carts"])
