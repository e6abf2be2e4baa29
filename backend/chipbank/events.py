"""Read-only multiplier signal from the promotional event subsystem.

The bonus engine asks a provider for the multiplier in force before it opens
its transaction, and afterwards reports how many chips the event contributed.
Event activation itself (scheduling, recurring windows) lives outside this
package; :class:`EventMultiplierProvider` only reads the time window stored on
each event row.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from decimal import Decimal, ROUND_FLOOR
from typing import Protocol

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .db import SessionLocal, run_in_transaction, utcnow
from .models import Event, EventParticipation

logger = logging.getLogger("chipbank.events")


@dataclass(frozen=True)
class ActiveMultiplier:
    multiplier: Decimal = Decimal("1")
    flat_bonus: int = 0
    event_id: int | None = None

    @property
    def is_neutral(self) -> bool:
        return self.multiplier == Decimal("1") and self.flat_bonus == 0

    def apply(self, base: int) -> int:
        """floor(base * multiplier) + flat_bonus, in integer chips."""
        scaled = (Decimal(base) * self.multiplier).to_integral_value(rounding=ROUND_FLOOR)
        return int(scaled) + self.flat_bonus


NEUTRAL = ActiveMultiplier()


class MultiplierProvider(Protocol):
    def get_active_multiplier(self, user_id: int, kind: str) -> ActiveMultiplier: ...

    def record_participation(self, user_id: int, event_id: int, amount: int) -> None: ...


class NeutralMultiplierProvider:
    def get_active_multiplier(self, user_id: int, kind: str) -> ActiveMultiplier:
        return NEUTRAL

    def record_participation(self, user_id: int, event_id: int, amount: int) -> None:
        return None


def clamp_multiplier(event: Event) -> ActiveMultiplier:
    multiplier = Decimal(str(event.multiplier if event.multiplier is not None else 1))
    return ActiveMultiplier(
        multiplier=max(Decimal("1"), multiplier),
        flat_bonus=max(0, int(event.bonus_chips or 0)),
        event_id=int(event.id),
    )


class EventMultiplierProvider:
    def __init__(self, session_factory: Callable[[], Session] = SessionLocal) -> None:
        self._session_factory = session_factory

    def get_active_multiplier(self, user_id: int, kind: str) -> ActiveMultiplier:
        now = utcnow()
        with self._session_factory() as db:
            event = db.execute(
                select(Event)
                .where(Event.start_time <= now, Event.end_time >= now)
                .order_by(Event.priority.desc(), Event.id.asc())
                .limit(1)
            ).scalar_one_or_none()
            if event is None:
                return NEUTRAL
            active = clamp_multiplier(event)
        logger.debug("Event %s active for %s bonus of user %s", active.event_id, kind, user_id)
        return active

    def record_participation(self, user_id: int, event_id: int, amount: int) -> None:
        def work(db: Session) -> None:
            row = db.execute(
                select(EventParticipation)
                .where(
                    EventParticipation.user_id == user_id,
                    EventParticipation.event_id == event_id,
                )
                .with_for_update()
            ).scalar_one_or_none()
            if row is None:
                db.add(
                    EventParticipation(
                        user_id=user_id,
                        event_id=event_id,
                        rewards_claimed=amount,
                        participated_at=utcnow(),
                    )
                )
            else:
                row.rewards_claimed = int(row.rewards_claimed or 0) + amount
                row.participated_at = utcnow()
            db.flush()

        try:
            run_in_transaction(self._session_factory, work)
        except IntegrityError:
            # A concurrent first participation inserted the row; add to it.
            run_in_transaction(self._session_factory, work)
        logger.info("Recorded %d event chips for user %s in event %s", amount, user_id, event_id)
