import logging
import time
from typing import Callable

from scripts._path import add_root

add_root()

from sqlalchemy.exc import OperationalError

import models  # noqa: F401
from core.billing_constants import GRACE_PERIOD_CONFIG_KEY
from core.logging import setup_logging
from database import Base, SessionLocal, engine
from models.system_config import SystemConfig
from services.billing.settings import DEFAULT_GRACE_PERIOD_DAYS

logger = logging.getLogger(__name__)


def _retry(operation: Callable[[], None], *, retries: int = 7, delay: float = 3.0) -> None:
    for attempt in range(1, retries + 1):
        try:
            operation()
            return
        except OperationalError as exc:
            if attempt == retries:
                raise
            logger.warning(
                "Database not ready yet (attempt %d/%d). Retrying in %.1f seconds: %s",
                attempt,
                retries,
                delay,
                exc,
            )
            time.sleep(delay)


def _seed_system_config() -> None:
    with SessionLocal() as db:
        if db.get(SystemConfig, GRACE_PERIOD_CONFIG_KEY) is not None:
            return
        db.add(
            SystemConfig(
                key=GRACE_PERIOD_CONFIG_KEY,
                value=str(DEFAULT_GRACE_PERIOD_DAYS),
                description="Days a past-due subscription keeps its entitlements before auto-cancel.",
                category="billing",
            )
        )
        db.commit()
        logger.info("Seeded %s=%d.", GRACE_PERIOD_CONFIG_KEY, DEFAULT_GRACE_PERIOD_DAYS)


def init_db() -> None:
    logger.info("Starting database bootstrap.")
    _retry(lambda: Base.metadata.create_all(bind=engine))
    logger.info("SQLAlchemy model tables ensured.")
    _seed_system_config()


if __name__ == "__main__":
    setup_logging()
    init_db()
