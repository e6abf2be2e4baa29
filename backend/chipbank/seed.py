import logging
import os
import time

from sqlalchemy import select, text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import OperationalError
from sqlalchemy.orm import Session

from .accounts import STARTING_BALANCE
from .db import Base, engine, utcnow
from .models import User

logger = logging.getLogger("chipbank.seed")

SANDBOX_USERNAME = (os.environ.get("SANDBOX_USERNAME") or "").strip().lower()


def init_db(bind: Engine | None = None):
    bind = bind or engine
    # Wait for Postgres to accept connections
    for attempt in range(30):  # ~30 seconds
        try:
            with bind.connect() as conn:
                conn.execute(text("SELECT 1"))
            break
        except OperationalError:
            logger.info("Database not ready (attempt %d), waiting", attempt + 1)
            time.sleep(1)
    else:
        raise RuntimeError("Database not ready after 30 seconds")

    Base.metadata.create_all(bind=bind)


def seed(db: Session):
    """Create the sandbox account named by SANDBOX_USERNAME, if configured."""
    if not SANDBOX_USERNAME:
        return
    user = db.execute(select(User).where(User.username == SANDBOX_USERNAME)).scalar_one_or_none()
    if user:
        return
    db.add(
        User(
            username=SANDBOX_USERNAME,
            balance=STARTING_BALANCE,
            last_weekly_credit_at=utcnow(),
            login_streak=0,
        )
    )
    db.commit()
    logger.info("Seeded sandbox account %s with %d chips", SANDBOX_USERNAME, STARTING_BALANCE)
