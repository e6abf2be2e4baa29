import logging
import random

from sqlalchemy import select
from sqlalchemy.orm import Session

from .errors import JoinCodeExhausted
from .models import GameSession

logger = logging.getLogger("chipbank.join_codes")

# Excludes ambiguous characters: I, O, 0, 1
JOIN_CODE_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"
JOIN_CODE_LENGTH = 6
MAX_JOIN_CODE_ATTEMPTS = 10


def generate_join_code(rng: random.Random) -> str:
    return "".join(rng.choice(JOIN_CODE_ALPHABET) for _ in range(JOIN_CODE_LENGTH))


def normalize_join_code(raw_code: str | None) -> str:
    return (raw_code or "").strip().upper()


def join_code_in_use(db: Session, code: str) -> bool:
    return db.execute(
        select(GameSession.id).where(GameSession.join_code == code)
    ).first() is not None


def generate_unique_join_code(
    db: Session,
    rng: random.Random,
    attempts: int = MAX_JOIN_CODE_ATTEMPTS,
) -> str:
    """Draw codes until one is unused.

    Running out of attempts means the code space is effectively full; that is
    a deployment problem, so it surfaces as a server error rather than
    something the caller should retry.
    """
    for attempt in range(1, attempts + 1):
        code = generate_join_code(rng)
        if not join_code_in_use(db, code):
            return code
        logger.warning("Join code collision on attempt %d: %s", attempt, code)

    logger.error("Failed to generate unique join code after %d attempts", attempts)
    raise JoinCodeExhausted()
