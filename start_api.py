#!/usr/bin/env python3
"""
Container entrypoint for the payments API.

Waits for Postgres, applies migrations, seeds the admin/staff accounts, makes sure the
payment gateway can be built from the environment, then execs uvicorn. Celery workers
start separately: `celery -A app.tasks.celery_app worker -B`.
"""
import logging
import os
import sys

from alembic import command
from alembic.config import Config
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from app.core.config import settings
from app.core.logging import configure_logging
from app.services.payos_client import MockGateway, PaymentGateway, get_gateway

logger = logging.getLogger("start_api")

ROOT = os.path.dirname(os.path.abspath(__file__))


def migrate() -> None:
    cfg = Config(os.path.join(ROOT, "alembic.ini"))
    cfg.set_main_option("sqlalchemy.url", settings.DATABASE_URL)
    command.upgrade(cfg, "head")


def seed() -> None:
    from app.seed import run as run_seed

    # fresh engine: the app engine may have been built while alembic loaded its env
    engine = create_engine(settings.DATABASE_URL, pool_pre_ping=True)
    db = sessionmaker(autocommit=False, autoflush=False, bind=engine)()
    try:
        run_seed(db)
    finally:
        db.close()
        engine.dispose()


def check_gateway() -> PaymentGateway:
    """Build the process gateway once; raises RuntimeError when production lacks PayOS keys."""
    gateway = get_gateway()
    if isinstance(gateway, MockGateway):
        logger.warning("Mock payment gateway active (env=%s); no real PayOS links will be created", settings.ENV)
    if not settings.PAYOS_CHECKSUM_KEY:
        logger.warning("PAYOS_CHECKSUM_KEY is empty; every webhook will fail signature verification")
    return gateway


def main() -> None:
    configure_logging()
    import wait_for_db  # noqa: F401  blocks until the database accepts connections

    migrate()
    seed()
    try:
        gateway = check_gateway()
    except RuntimeError as e:
        logger.error("Not starting the API: %s", e)
        sys.exit(1)

    port = os.getenv("PORT", "8000")
    logger.info("Starting API on port %s with %s gateway", port, gateway.name)
    os.execv(
        sys.executable,
        [sys.executable, "-m", "uvicorn", "app.main:app", "--host", "0.0.0.0", "--port", port],
    )


if __name__ == "__main__":
    main()
