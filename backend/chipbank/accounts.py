"""Account store: per-user chip balances and the locked debit/credit primitives.

Every balance mutation in the ledger goes through :func:`debit` or
:func:`credit` on an account row that the caller locked with
:func:`lock_account` (or :func:`lock_accounts_in_order`) inside the active
transaction. The primitives themselves do not lock; calling them on an
unlocked row is a programming error, not a checked condition.
"""

import logging
import os
from collections.abc import Callable, Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import SessionLocal, run_in_transaction, utcnow
from .errors import InsufficientBalance, InvalidAmount, LedgerError, UserNotFound, UsernameTaken
from .models import User

logger = logging.getLogger("chipbank.accounts")

STARTING_BALANCE = max(0, int(os.environ.get("STARTING_BALANCE", "1000")))


def lock_account(
    db: Session,
    user_id: int,
    error: type[LedgerError] = UserNotFound,
) -> User:
    user = db.execute(
        select(User).where(User.id == user_id).with_for_update()
    ).scalar_one_or_none()
    if user is None:
        raise error()
    return user


def lock_accounts_in_order(
    db: Session,
    user_ids: Iterable[int],
    errors: dict[int, type[LedgerError]] | None = None,
) -> dict[int, User]:
    """Lock several account rows one at a time in ascending id order.

    Two operations touching the same pair of accounts therefore always
    request the locks in the same order and cannot deadlock each other.
    """
    errors = errors or {}
    locked: dict[int, User] = {}
    for user_id in sorted(set(user_ids)):
        locked[user_id] = lock_account(db, user_id, errors.get(user_id, UserNotFound))
    return locked


def debit(db: Session, user: User, amount: int) -> int:
    """Remove ``amount`` chips from a locked account and return the new balance."""
    if amount < 0:
        raise InvalidAmount("Debit amount must not be negative.")
    if user.balance < amount:
        raise InsufficientBalance(
            f"Insufficient chip balance. Need {amount}, have {user.balance}."
        )
    user.balance = user.balance - amount
    db.flush()
    return user.balance


def credit(db: Session, user: User, amount: int) -> int:
    """Add ``amount`` chips to a locked account and return the new balance."""
    if amount < 0:
        raise InvalidAmount("Credit amount must not be negative.")
    user.balance = user.balance + amount
    db.flush()
    return user.balance


class AccountStore:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    def get_balance(self, user_id: int) -> int:
        with self._session_factory() as db:
            balance = db.execute(
                select(User.balance).where(User.id == user_id)
            ).scalar_one_or_none()
        if balance is None:
            raise UserNotFound()
        return int(balance)

    def create_account(self, username: str, starting_balance: int = STARTING_BALANCE) -> int:
        if starting_balance < 0:
            raise InvalidAmount("Starting balance must not be negative.")

        def work(db: Session) -> int:
            existing = db.execute(
                select(User.id).where(User.username == username)
            ).scalar_one_or_none()
            if existing is not None:
                raise UsernameTaken(f"User '{username}' already exists.")
            user = User(
                username=username,
                balance=starting_balance,
                last_weekly_credit_at=utcnow(),
                login_streak=0,
            )
            db.add(user)
            try:
                db.flush()
            except IntegrityError as exc:
                raise UsernameTaken(f"User '{username}' already exists.") from exc
            return int(user.id)

        user_id = run_in_transaction(self._session_factory, work)
        logger.info("Created account %s for %s with %d chips", user_id, username, starting_balance)
        return user_id

    def debit(self, user_id: int, amount: int) -> int:
        """Standalone debit in its own transaction."""
        return run_in_transaction(
            self._session_factory,
            lambda db: debit(db, lock_account(db, user_id), amount),
        )

    def credit(self, user_id: int, amount: int) -> int:
        """Standalone credit in its own transaction."""
        return run_in_transaction(
            self._session_factory,
            lambda db: credit(db, lock_account(db, user_id), amount),
        )
