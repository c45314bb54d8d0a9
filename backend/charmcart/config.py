from decimal import Decimal
from typing import List, Optional

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    DATABASE_URL: str = "sqlite:///./charmcart.db"
    APP_HOST: str = "127.0.0.1"
    APP_PORT: int = 8000
    FRONTEND_ORIGINS: List[str] = ["http://localhost:3000"]
    LOG_LEVEL: str = "INFO"

    # pricing
    CURRENCY: str = "USD"
    TAX_RATE: Decimal = Decimal("0.08")
    FREE_SHIPPING_THRESHOLD: Decimal = Decimal("75")
    STANDARD_SHIPPING: Decimal = Decimal("12.99")
    DESIGN_BASE_FEE: Decimal = Decimal("25")

    # cart limits / history
    MAX_CART_ITEMS: int = 50
    MAX_HISTORY_SIZE: int = 20
    # per-line cap; unset means only MAX_CART_ITEMS applies
    MAX_QUANTITY_PER_ITEM: Optional[int] = None

    # inventory
    LOW_STOCK_THRESHOLD: int = 5

    # persistence
    GUEST_CART_TTL_SECONDS: int = 7 * 24 * 60 * 60
    SAVE_DEBOUNCE_SECONDS: float = 1.0
    SAVE_MAX_ATTEMPTS: int = 3
    SAVE_RETRY_DELAY_SECONDS: float = 0.5

    # maintenance sweep
    CLEANUP_INTERVAL_SECONDS: int = 3600
    ABANDONED_CART_HOURS: int = 24
    LOCK_DIR: str = ""

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"


settings = Settings()
