"""Game settlement engine: buy-ins, rebuys, early cash-outs and closing a pot.

Row locks are always taken in the same order: the game session row, then the
participant rows of that session by ascending id, then account rows by
ascending id. Close and early cash-out compute the pot from the locked
participant rows, never from client-supplied totals, and close only succeeds
when the submitted cash-outs consume the remaining pot exactly. That check is
what keeps games zero-sum: chips leave accounts on buy-in and return on
cash-out, and nothing else in a game can create or destroy them.
"""

import logging
import random
from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .accounts import credit, debit, lock_account, lock_accounts_in_order
from .db import SessionLocal, run_in_transaction, to_naive_utc, utcnow
from .errors import (
    AlreadyCashedOut,
    AlreadyJoined,
    CashoutMismatch,
    DuplicateResult,
    ExceedsPot,
    GameAlreadyClosed,
    GameInactive,
    GameNotFound,
    HostCannotLeave,
    InvalidAmount,
    JoinCodeExhausted,
    LeaveAlreadyRequested,
    NotHost,
    NotParticipant,
    UserNotFound,
    ValidationFailed,
)
from .join_codes import MAX_JOIN_CODE_ATTEMPTS, generate_unique_join_code, normalize_join_code
from .models import GameSession, Participant, User
from .side_effects import (
    AchievementNotifier,
    LoggingAchievementNotifier,
    SideEffectDispatcher,
    schedule_achievement_rechecks,
)

logger = logging.getLogger("chipbank.settlement")

DEFAULT_GAME_NAME = "Poker Night"
MAX_GAME_NAME_LENGTH = 100
MAX_GAME_NOTES_LENGTH = 500


# ----------------------------------------------------------------------
# Pot arithmetic
# ----------------------------------------------------------------------


def total_buy_in(participants: Iterable[Participant]) -> int:
    return sum(int(p.buy_in) for p in participants)


def available_pot(participants: Iterable[Participant]) -> int:
    """Buy-ins not yet paid back out: sum(buy_in) - sum(cash_out of cashed-out)."""
    participants = list(participants)
    paid_out = sum(int(p.cash_out) for p in participants if p.is_cashed_out)
    return total_buy_in(participants) - paid_out


def require_chip_amount(value: int, field_name: str, minimum: int = 0) -> None:
    if isinstance(value, bool) or not isinstance(value, int):
        raise InvalidAmount(f"{field_name} must be a whole number of chips.")
    if value < minimum:
        raise InvalidAmount(f"{field_name} must be at least {minimum}.")


def validate_results(results: Iterable[Mapping[str, int]]) -> dict[int, int]:
    cash_outs: dict[int, int] = {}
    for result in results:
        try:
            user_id = int(result["user_id"])
            amount = result["cash_out"]
        except (KeyError, TypeError, ValueError) as exc:
            raise ValidationFailed("Each result needs an integer user_id and a cash_out.") from exc
        require_chip_amount(amount, "cash_out")
        if user_id in cash_outs:
            raise DuplicateResult(f"User {user_id} appears more than once in the results.")
        cash_outs[user_id] = amount
    return cash_outs


# ----------------------------------------------------------------------
# Read models
# ----------------------------------------------------------------------


@dataclass
class ParticipantView:
    id: int
    user_id: int
    username: str
    buy_in: int
    cash_out: int
    net_result: int
    status: str  # ACTIVE, CASHED_OUT or SETTLED
    cashed_out_at: datetime | None
    leave_requested_at: datetime | None


@dataclass
class GameView:
    id: int
    host_id: int
    join_code: str
    name: str
    notes: str | None
    date: datetime
    is_active: bool
    closed_at: datetime | None
    total_buy_in: int
    available_pot: int
    participants: list[ParticipantView]


@dataclass
class GamePage:
    games: list[GameView]
    total: int
    page: int
    limit: int


def participant_status(participant: Participant, game: GameSession) -> str:
    if participant.is_cashed_out:
        return "CASHED_OUT"
    if not game.is_active:
        return "SETTLED"
    return "ACTIVE"


def build_game_view(db: Session, game: GameSession) -> GameView:
    rows = db.execute(
        select(Participant, User.username)
        .join(User, User.id == Participant.user_id)
        .where(Participant.game_session_id == game.id)
        .order_by(Participant.id)
    ).all()
    participants = [participant for participant, _ in rows]
    return GameView(
        id=int(game.id),
        host_id=int(game.host_id),
        join_code=str(game.join_code),
        name=str(game.name),
        notes=game.notes,
        date=game.date,
        is_active=bool(game.is_active),
        closed_at=game.closed_at,
        total_buy_in=total_buy_in(participants),
        available_pot=available_pot(participants),
        participants=[
            ParticipantView(
                id=int(participant.id),
                user_id=int(participant.user_id),
                username=str(username),
                buy_in=int(participant.buy_in),
                cash_out=int(participant.cash_out),
                net_result=int(participant.net_result),
                status=participant_status(participant, game),
                cashed_out_at=participant.cashed_out_at,
                leave_requested_at=participant.leave_requested_at,
            )
            for participant, username in rows
        ],
    )


# ----------------------------------------------------------------------
# Locking helpers
# ----------------------------------------------------------------------


def lock_game(db: Session, game_id: int) -> GameSession:
    game = db.execute(
        select(GameSession).where(GameSession.id == game_id).with_for_update()
    ).scalar_one_or_none()
    if game is None:
        raise GameNotFound()
    return game


def lock_game_by_code(db: Session, join_code: str) -> GameSession:
    game = db.execute(
        select(GameSession).where(GameSession.join_code == join_code).with_for_update()
    ).scalar_one_or_none()
    if game is None:
        raise GameNotFound()
    return game


def lock_participants(db: Session, game_id: int) -> list[Participant]:
    return list(
        db.execute(
            select(Participant)
            .where(Participant.game_session_id == game_id)
            .order_by(Participant.id)
            .with_for_update()
        ).scalars().all()
    )


def lock_participant(db: Session, game_id: int, user_id: int) -> Participant:
    participant = db.execute(
        select(Participant)
        .where(Participant.game_session_id == game_id, Participant.user_id == user_id)
        .with_for_update()
    ).scalar_one_or_none()
    if participant is None:
        raise NotParticipant()
    return participant


class GameSettlementEngine:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        dispatcher: SideEffectDispatcher | None = None,
        achievements: AchievementNotifier | None = None,
        rng: random.Random | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher or SideEffectDispatcher()
        self._achievements = achievements or LoggingAchievementNotifier()
        self._rng = rng or random.SystemRandom()
        self._clock = clock

    # ------------------------------------------------------------------
    # Create / join
    # ------------------------------------------------------------------

    def create_game(
        self,
        host_id: int,
        name: str | None = None,
        notes: str | None = None,
        date: datetime | None = None,
    ) -> GameView:
        name = (name or "").strip() or DEFAULT_GAME_NAME
        if len(name) > MAX_GAME_NAME_LENGTH:
            raise ValidationFailed(f"Name must be at most {MAX_GAME_NAME_LENGTH} characters")
        if notes is not None and len(notes) > MAX_GAME_NOTES_LENGTH:
            raise ValidationFailed(f"Notes must be at most {MAX_GAME_NOTES_LENGTH} characters")

        def work(db: Session) -> GameView:
            if db.get(User, host_id) is None:
                raise UserNotFound()
            game = GameSession(
                host_id=host_id,
                join_code=generate_unique_join_code(db, self._rng),
                is_active=True,
                name=name,
                notes=notes,
                date=to_naive_utc(date) if date is not None else self._clock(),
            )
            db.add(game)
            db.flush()
            # Host sits at the table from the start and rebuys when ready.
            db.add(Participant(user_id=host_id, game_session_id=game.id, buy_in=0))
            db.flush()
            return build_game_view(db, game)

        # The unique index on join_code is the final word on collisions that
        # slip between the availability check and the insert.
        for attempt in range(1, MAX_JOIN_CODE_ATTEMPTS + 1):
            try:
                view = run_in_transaction(self._session_factory, work)
            except IntegrityError:
                logger.warning("Join code taken concurrently on attempt %d, regenerating", attempt)
                continue
            logger.info("Created game %s with code %s for host %s", view.id, view.join_code, host_id)
            return view
        raise JoinCodeExhausted()

    def join_game(self, join_code: str, user_id: int, buy_in: int = 0) -> GameView:
        require_chip_amount(buy_in, "buy_in")
        code = normalize_join_code(join_code)

        def work(db: Session) -> GameView:
            game = lock_game_by_code(db, code)
            if not game.is_active:
                raise GameInactive()
            user = lock_account(db, user_id)

            existing = db.execute(
                select(Participant.id).where(
                    Participant.game_session_id == game.id,
                    Participant.user_id == user_id,
                )
            ).first()
            if existing is not None:
                raise AlreadyJoined()

            if buy_in > 0:
                debit(db, user, buy_in)
            db.add(Participant(user_id=user_id, game_session_id=game.id, buy_in=buy_in))
            try:
                db.flush()
            except IntegrityError as exc:
                raise AlreadyJoined() from exc
            return build_game_view(db, game)

        view = run_in_transaction(self._session_factory, work)
        logger.info("User %s joined game %s with %d chips", user_id, view.id, buy_in)
        return view

    # ------------------------------------------------------------------
    # In-game actions
    # ------------------------------------------------------------------

    def rebuy(self, game_id: int, user_id: int, amount: int) -> GameView:
        require_chip_amount(amount, "amount", minimum=1)

        def work(db: Session) -> GameView:
            game = lock_game(db, game_id)
            if not game.is_active:
                raise GameInactive()
            participant = lock_participant(db, game.id, user_id)
            if participant.is_cashed_out:
                raise AlreadyCashedOut()
            user = lock_account(db, user_id)
            debit(db, user, amount)
            participant.buy_in = int(participant.buy_in) + amount
            participant.net_result = int(participant.cash_out) - int(participant.buy_in)
            db.flush()
            return build_game_view(db, game)

        view = run_in_transaction(self._session_factory, work)
        logger.info("User %s rebought %d chips in game %s", user_id, amount, game_id)
        return view

    def request_leave(self, game_id: int, user_id: int) -> GameView:
        now = self._clock()

        def work(db: Session) -> GameView:
            game = lock_game(db, game_id)
            if game.host_id == user_id:
                raise HostCannotLeave()
            if not game.is_active:
                raise GameInactive()
            participant = lock_participant(db, game.id, user_id)
            if participant.is_cashed_out:
                raise AlreadyCashedOut()
            if participant.leave_requested_at is not None:
                raise LeaveAlreadyRequested()
            participant.leave_requested_at = now
            db.flush()
            return build_game_view(db, game)

        view = run_in_transaction(self._session_factory, work)
        logger.info("User %s requested to leave game %s", user_id, game_id)
        return view

    def early_cash_out(
        self,
        game_id: int,
        host_id: int,
        participant_user_id: int,
        cash_out: int,
    ) -> GameView:
        require_chip_amount(cash_out, "cash_out")
        now = self._clock()

        def work(db: Session) -> GameView:
            game = lock_game(db, game_id)
            if game.host_id != host_id:
                raise NotHost("Only the host can cash out players.")
            if not game.is_active:
                raise GameInactive()

            participants = lock_participants(db, game.id)
            participant = next((p for p in participants if p.user_id == participant_user_id), None)
            if participant is None:
                raise NotParticipant()
            if participant.is_cashed_out:
                raise AlreadyCashedOut()

            pot = available_pot(participants)
            if cash_out > pot:
                raise ExceedsPot(f"Cash-out of {cash_out} exceeds the available pot of {pot}.")

            user = lock_account(db, participant_user_id)
            credit(db, user, cash_out)
            participant.cash_out = cash_out
            participant.net_result = cash_out - int(participant.buy_in)
            participant.cashed_out_at = now
            db.flush()
            return build_game_view(db, game)

        view = run_in_transaction(self._session_factory, work)
        logger.info(
            "Host %s cashed out user %s for %d chips in game %s",
            host_id,
            participant_user_id,
            cash_out,
            game_id,
        )
        return view

    # ------------------------------------------------------------------
    # Close
    # ------------------------------------------------------------------

    def close_game(
        self,
        game_id: int,
        host_id: int,
        results: Iterable[Mapping[str, int]],
    ) -> GameView:
        """Settle every still-active participant and close the session.

        ``results`` is a list of ``{"user_id": ..., "cash_out": ...}``. Entries
        for participants who already cashed out, or for users not in the game,
        are ignored. Active participants without an entry settle at zero.
        """
        cash_outs = validate_results(results)
        now = self._clock()

        def work(db: Session) -> tuple[GameView, list[int]]:
            game = lock_game(db, game_id)
            if game.host_id != host_id:
                raise NotHost("Only the host can close the game.")
            if not game.is_active:
                raise GameAlreadyClosed()

            participants = lock_participants(db, game.id)
            remaining = available_pot(participants)
            active = [p for p in participants if not p.is_cashed_out]
            payouts = {p.user_id: cash_outs.get(p.user_id, 0) for p in active}
            claimed = sum(payouts.values())
            if claimed != remaining:
                raise CashoutMismatch(
                    f"Cash-outs total {claimed} but the remaining pot is {remaining}."
                )

            accounts = lock_accounts_in_order(
                db, [user_id for user_id, amount in payouts.items() if amount > 0]
            )
            for participant in active:
                amount = payouts[participant.user_id]
                if amount > 0:
                    credit(db, accounts[participant.user_id], amount)
                participant.cash_out = amount
                participant.net_result = amount - int(participant.buy_in)

            game.is_active = False
            game.closed_at = now
            db.flush()
            return build_game_view(db, game), [int(p.user_id) for p in participants]

        view, participant_ids = run_in_transaction(self._session_factory, work)
        logger.info(
            "Closed game %s: %d participant(s), %d chips paid out",
            game_id,
            len(participant_ids),
            sum(p.cash_out for p in view.participants if p.status == "SETTLED"),
        )
        schedule_achievement_rechecks(self._dispatcher, self._achievements, participant_ids)
        return view

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_game(self, game_id: int) -> GameView:
        with self._session_factory() as db:
            game = db.get(GameSession, game_id)
            if game is None:
                raise GameNotFound()
            return build_game_view(db, game)

    def get_game_by_code(self, join_code: str) -> GameView:
        code = normalize_join_code(join_code)
        with self._session_factory() as db:
            game = db.execute(
                select(GameSession).where(GameSession.join_code == code)
            ).scalar_one_or_none()
            if game is None:
                raise GameNotFound()
            if not game.is_active:
                raise GameInactive()
            return build_game_view(db, game)

    def get_active_game(self, user_id: int) -> GameView | None:
        with self._session_factory() as db:
            game = db.execute(
                select(GameSession)
                .join(Participant, Participant.game_session_id == GameSession.id)
                .where(Participant.user_id == user_id, GameSession.is_active.is_(True))
                .order_by(GameSession.date.desc(), GameSession.id.desc())
                .limit(1)
            ).scalar_one_or_none()
            if game is None:
                return None
            return build_game_view(db, game)

    def list_user_games(self, user_id: int, page: int = 1, limit: int = 20) -> GamePage:
        page = max(1, page)
        limit = min(max(1, limit), 100)
        with self._session_factory() as db:
            games = db.execute(
                select(GameSession)
                .join(Participant, Participant.game_session_id == GameSession.id)
                .where(Participant.user_id == user_id)
                .order_by(GameSession.date.desc(), GameSession.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).scalars().all()
            total = int(
                db.execute(
                    select(func.count()).select_from(Participant).where(Participant.user_id == user_id)
                ).scalar_one()
            )
            views = [build_game_view(db, game) for game in games]
        return GamePage(games=views, total=total, page=page, limit=limit)
