"""Bonus engine: the ledger's minting points.

Three grants create chips without a matching debit: the weekly passive
accrual, the daily login claim and the lucky spin. Each one locks the
account, decides eligibility from the timestamps stored on that locked row,
credits, and moves the timestamp forward in the same transaction, so a grant
can land at most once per period no matter how many requests race for it.

Calendar days are UTC days.
"""

import logging
import random
from collections.abc import Callable
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta

from sqlalchemy import select
from sqlalchemy.orm import Session

from .accounts import credit, lock_account
from .db import SessionLocal, run_in_transaction, utcnow
from .errors import AlreadySpun, UserNotFound
from .events import ActiveMultiplier, MultiplierProvider, NeutralMultiplierProvider
from .models import User
from .side_effects import SideEffectDispatcher

logger = logging.getLogger("chipbank.bonuses")

WEEKLY_CHIP_BONUS = 100
WEEK = timedelta(days=7)

DAILY_BASE_BONUS = 10
DAILY_STREAK_STEP = 5
DAILY_STREAK_CAP = 50

# (cumulative probability upper bound, low, high), inclusive ranges
SPIN_TIERS: tuple[tuple[float, int, int], ...] = (
    (0.40, 0, 10),
    (0.75, 11, 25),
    (0.95, 26, 50),
    (1.00, 51, 100),
)


def daily_base_bonus(streak: int) -> int:
    return DAILY_BASE_BONUS + min(streak * DAILY_STREAK_STEP, DAILY_STREAK_CAP)


def next_login_streak(current_streak: int, last_login: datetime | None, today: date) -> int:
    """Streak after claiming on ``today``: +1 after exactly one day, otherwise 1."""
    if last_login is None:
        return 1
    gap = (today - last_login.date()).days
    if gap == 1:
        return current_streak + 1
    return 1


def same_day(moment: datetime | None, today: date) -> bool:
    return moment is not None and moment.date() == today


def next_midnight(now: datetime) -> datetime:
    return datetime.combine(now.date() + timedelta(days=1), time.min)


def draw_spin_reward(rng: random.Random) -> int:
    """Weighted draw over SPIN_TIERS; ``rng.random()`` picks the tier."""
    roll = rng.random()
    for upper, low, high in SPIN_TIERS:
        if roll < upper:
            return rng.randint(low, high)
    _, low, high = SPIN_TIERS[-1]
    return rng.randint(low, high)


@dataclass
class WeeklyBalance:
    balance: int
    weeks_added: int
    bonus_chips: int
    last_weekly_credit_at: datetime
    next_bonus_at: datetime


@dataclass
class DailyBonusResult:
    claimed: bool
    already_claimed: bool
    balance: int
    streak: int
    base_bonus: int = 0
    bonus: int = 0
    multiplier: str = "1"
    event_id: int | None = None


@dataclass
class DailyBonusStatus:
    can_claim: bool
    current_streak: int
    next_streak: int
    next_base_bonus: int
    last_claimed_at: datetime | None
    next_claim_at: datetime


@dataclass
class SpinResult:
    base_reward: int
    reward: int
    balance: int
    multiplier: str = "1"
    event_id: int | None = None


@dataclass
class SpinStatus:
    can_spin: bool
    last_spin_at: datetime | None
    next_spin_at: datetime


class BonusEngine:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        multipliers: MultiplierProvider | None = None,
        dispatcher: SideEffectDispatcher | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._multipliers = multipliers or NeutralMultiplierProvider()
        self._dispatcher = dispatcher or SideEffectDispatcher()
        self._rng = rng or random.SystemRandom()
        self._clock = clock

    # ------------------------------------------------------------------
    # Weekly passive accrual
    # ------------------------------------------------------------------

    def get_balance_with_weekly_bonus(self, user_id: int) -> WeeklyBalance:
        now = self._clock()

        def work(db: Session) -> WeeklyBalance:
            user = lock_account(db, user_id)
            weeks = max(0, (now - user.last_weekly_credit_at) // WEEK)
            bonus = 0
            if weeks >= 1:
                bonus = weeks * WEEKLY_CHIP_BONUS
                credit(db, user, bonus)
                # Advance by whole weeks so the partial week keeps counting.
                user.last_weekly_credit_at = user.last_weekly_credit_at + weeks * WEEK
                db.flush()
            return WeeklyBalance(
                balance=int(user.balance),
                weeks_added=weeks,
                bonus_chips=bonus,
                last_weekly_credit_at=user.last_weekly_credit_at,
                next_bonus_at=user.last_weekly_credit_at + WEEK,
            )

        result = run_in_transaction(self._session_factory, work)
        if result.weeks_added:
            logger.info(
                "Weekly bonus for user %s: %d week(s), %d chips",
                user_id,
                result.weeks_added,
                result.bonus_chips,
            )
        return result

    # ------------------------------------------------------------------
    # Daily claim
    # ------------------------------------------------------------------

    def claim_daily_bonus(self, user_id: int) -> DailyBonusResult:
        active = self._multipliers.get_active_multiplier(user_id, "daily")
        now = self._clock()
        today = now.date()

        def work(db: Session) -> DailyBonusResult:
            user = lock_account(db, user_id)
            if same_day(user.last_login_date, today):
                return DailyBonusResult(
                    claimed=False,
                    already_claimed=True,
                    balance=int(user.balance),
                    streak=int(user.login_streak),
                )

            streak = next_login_streak(int(user.login_streak), user.last_login_date, today)
            base = daily_base_bonus(streak)
            bonus = active.apply(base)
            credit(db, user, bonus)
            user.login_streak = streak
            user.last_login_date = now
            db.flush()
            return DailyBonusResult(
                claimed=True,
                already_claimed=False,
                balance=int(user.balance),
                streak=streak,
                base_bonus=base,
                bonus=bonus,
                multiplier=str(active.multiplier),
                event_id=active.event_id,
            )

        result = run_in_transaction(self._session_factory, work)
        if result.claimed:
            logger.info(
                "Daily bonus for user %s: streak %d, %d chips (base %d)",
                user_id,
                result.streak,
                result.bonus,
                result.base_bonus,
            )
            self._record_event_credit(user_id, active, result.base_bonus, result.bonus)
        return result

    def get_daily_bonus_status(self, user_id: int) -> DailyBonusStatus:
        now = self._clock()
        today = now.date()
        user = self._read_account(user_id)
        claimed_today = same_day(user.last_login_date, today)
        if claimed_today:
            upcoming = next_login_streak(int(user.login_streak), user.last_login_date, today + timedelta(days=1))
            next_claim_at = next_midnight(now)
        else:
            upcoming = next_login_streak(int(user.login_streak), user.last_login_date, today)
            next_claim_at = now
        return DailyBonusStatus(
            can_claim=not claimed_today,
            current_streak=int(user.login_streak),
            next_streak=upcoming,
            next_base_bonus=daily_base_bonus(upcoming),
            last_claimed_at=user.last_login_date,
            next_claim_at=next_claim_at,
        )

    # ------------------------------------------------------------------
    # Lucky spin
    # ------------------------------------------------------------------

    def spin_lucky_wheel(self, user_id: int) -> SpinResult:
        active = self._multipliers.get_active_multiplier(user_id, "spin")
        now = self._clock()
        today = now.date()

        def work(db: Session) -> SpinResult:
            user = lock_account(db, user_id)
            if same_day(user.last_spin_date, today):
                raise AlreadySpun()
            base = draw_spin_reward(self._rng)
            reward = active.apply(base)
            credit(db, user, reward)
            user.last_spin_date = now
            db.flush()
            return SpinResult(
                base_reward=base,
                reward=reward,
                balance=int(user.balance),
                multiplier=str(active.multiplier),
                event_id=active.event_id,
            )

        result = run_in_transaction(self._session_factory, work)
        logger.info("Lucky spin for user %s: %d chips (base %d)", user_id, result.reward, result.base_reward)
        self._record_event_credit(user_id, active, result.base_reward, result.reward)
        return result

    def get_spin_status(self, user_id: int) -> SpinStatus:
        now = self._clock()
        user = self._read_account(user_id)
        spun_today = same_day(user.last_spin_date, now.date())
        return SpinStatus(
            can_spin=not spun_today,
            last_spin_at=user.last_spin_date,
            next_spin_at=next_midnight(now) if spun_today else now,
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _read_account(self, user_id: int) -> User:
        with self._session_factory() as db:
            user = db.execute(select(User).where(User.id == user_id)).scalar_one_or_none()
            if user is None:
                raise UserNotFound()
            db.expunge(user)
        return user

    def _record_event_credit(self, user_id: int, active: ActiveMultiplier, base: int, actual: int) -> None:
        if active.event_id is None or actual <= base:
            return
        self._dispatcher.submit(
            "event_participation",
            self._multipliers.record_participation,
            user_id,
            active.event_id,
            actual - base,
        )
