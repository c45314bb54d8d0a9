import importlib
import logging
import os

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from charmcart.config import settings

log = logging.getLogger(__name__)

DATABASE_URL = settings.DATABASE_URL


def make_engine(url: str):
    """
    Build an engine for `url`. SQLite connections are shared with the
    scheduler's worker threads, so same-thread checks are disabled and
    writers wait on the database lock instead of failing immediately.
    """
    connect_args = {}
    if url.startswith("sqlite"):
        connect_args = {"check_same_thread": False, "timeout": 30}
    return create_engine(url, future=True, echo=False, connect_args=connect_args)


engine = make_engine(DATABASE_URL)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

# every module defining tables must be listed so metadata is populated
MODEL_MODULES = [
    "charmcart.models.inventory",
    "charmcart.models.cart",
]


def init_db(reset: bool = False, bind=None):
    """
    Initialize DB schema.

    If `reset` is true, or the RESET_DB env var is set to 1/true/yes, drop and
    recreate all tables. Otherwise existing tables are left in place.
    """
    bind = bind or engine
    env_reset = os.environ.get("RESET_DB", "false").lower() in ("1", "true", "yes")

    for mod in MODEL_MODULES:
        importlib.import_module(mod)

    if reset or env_reset:
        log.info("Resetting database tables")
        Base.metadata.drop_all(bind=bind)

    Base.metadata.create_all(bind=bind)
    log.info("Database initialized (%s)", bind.url)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()
