import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from .accounts import credit, debit, lock_accounts_in_order
from .db import SessionLocal, run_in_transaction
from .errors import (
    Forbidden,
    InvalidAmount,
    ReceiverNotFound,
    SelfTransfer,
    SenderNotFound,
    TransferNotFound,
    ValidationFailed,
)
from .models import ChipTransfer
from .side_effects import (
    AchievementNotifier,
    LoggingAchievementNotifier,
    SideEffectDispatcher,
    schedule_achievement_rechecks,
)

logger = logging.getLogger("chipbank.transfers")

MIN_TRANSFER_AMOUNT = 1
MAX_TRANSFER_AMOUNT = 100
MAX_NOTE_LENGTH = 200


@dataclass
class TransferRecord:
    id: int
    sender_id: int
    receiver_id: int
    amount: int
    note: str | None
    created_at: datetime


@dataclass
class TransferResult:
    transfer: TransferRecord
    sender_balance: int
    receiver_balance: int


@dataclass
class TransferHistoryEntry:
    id: int
    direction: str  # "sent" or "received"
    other_user_id: int
    amount: int
    note: str | None
    created_at: datetime


@dataclass
class TransferPage:
    entries: list[TransferHistoryEntry]
    total: int
    page: int
    limit: int


@dataclass
class TransferSummary:
    user_a_sent: int
    user_b_sent: int
    net_balance: int  # positive: user_a received more than it sent


def transfer_to_record(row: ChipTransfer) -> TransferRecord:
    return TransferRecord(
        id=int(row.id),
        sender_id=int(row.sender_id),
        receiver_id=int(row.receiver_id),
        amount=int(row.amount),
        note=row.note,
        created_at=row.created_at,
    )


def validate_transfer(sender_id: int, receiver_id: int, amount: int, note: str | None) -> None:
    if isinstance(amount, bool) or not isinstance(amount, int):
        raise InvalidAmount("Transfer amount must be a whole number.")
    if amount < MIN_TRANSFER_AMOUNT or amount > MAX_TRANSFER_AMOUNT:
        raise InvalidAmount(
            f"Transfer amount must be between {MIN_TRANSFER_AMOUNT} and {MAX_TRANSFER_AMOUNT}"
        )
    if sender_id == receiver_id:
        raise SelfTransfer()
    if note is not None and len(note) > MAX_NOTE_LENGTH:
        raise ValidationFailed(f"Note must be at most {MAX_NOTE_LENGTH} characters")


class TransferEngine:
    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        dispatcher: SideEffectDispatcher | None = None,
        achievements: AchievementNotifier | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._dispatcher = dispatcher or SideEffectDispatcher()
        self._achievements = achievements or LoggingAchievementNotifier()

    def transfer(
        self,
        sender_id: int,
        receiver_id: int,
        amount: int,
        note: str | None = None,
    ) -> TransferResult:
        validate_transfer(sender_id, receiver_id, amount, note)

        def work(db: Session) -> TransferResult:
            accounts = lock_accounts_in_order(
                db,
                [sender_id, receiver_id],
                errors={sender_id: SenderNotFound, receiver_id: ReceiverNotFound},
            )
            sender = accounts[sender_id]
            receiver = accounts[receiver_id]

            debit(db, sender, amount)
            credit(db, receiver, amount)
            row = ChipTransfer(
                sender_id=sender_id,
                receiver_id=receiver_id,
                amount=amount,
                note=note,
            )
            db.add(row)
            db.flush()
            return TransferResult(
                transfer=transfer_to_record(row),
                sender_balance=int(sender.balance),
                receiver_balance=int(receiver.balance),
            )

        result = run_in_transaction(self._session_factory, work)
        logger.info(
            "Transfer %s: %d chips from user %s to user %s",
            result.transfer.id,
            amount,
            sender_id,
            receiver_id,
        )
        schedule_achievement_rechecks(self._dispatcher, self._achievements, [sender_id, receiver_id])
        return result

    # ------------------------------------------------------------------
    # History
    # ------------------------------------------------------------------

    def list_transfers(self, user_id: int, page: int = 1, limit: int = 20) -> TransferPage:
        page = max(1, page)
        limit = min(max(1, limit), 100)
        involves_user = or_(ChipTransfer.sender_id == user_id, ChipTransfer.receiver_id == user_id)
        with self._session_factory() as db:
            rows = db.execute(
                select(ChipTransfer)
                .where(involves_user)
                .order_by(ChipTransfer.created_at.desc(), ChipTransfer.id.desc())
                .offset((page - 1) * limit)
                .limit(limit)
            ).scalars().all()
            total = int(
                db.execute(select(func.count()).select_from(ChipTransfer).where(involves_user)).scalar_one()
            )
            entries = [
                TransferHistoryEntry(
                    id=int(row.id),
                    direction="sent" if row.sender_id == user_id else "received",
                    other_user_id=int(row.receiver_id if row.sender_id == user_id else row.sender_id),
                    amount=int(row.amount),
                    note=row.note,
                    created_at=row.created_at,
                )
                for row in rows
            ]
        return TransferPage(entries=entries, total=total, page=page, limit=limit)

    def get_transfer(self, transfer_id: int, user_id: int) -> TransferRecord:
        with self._session_factory() as db:
            row = db.get(ChipTransfer, transfer_id)
            if row is None:
                raise TransferNotFound()
            if user_id not in (row.sender_id, row.receiver_id):
                raise Forbidden()
            return transfer_to_record(row)

    def transfers_between(self, user_a: int, user_b: int) -> TransferSummary:
        with self._session_factory() as db:
            rows = db.execute(
                select(ChipTransfer.sender_id, func.coalesce(func.sum(ChipTransfer.amount), 0))
                .where(
                    or_(
                        (ChipTransfer.sender_id == user_a) & (ChipTransfer.receiver_id == user_b),
                        (ChipTransfer.sender_id == user_b) & (ChipTransfer.receiver_id == user_a),
                    )
                )
                .group_by(ChipTransfer.sender_id)
            ).all()
        sent_by = {int(sender_id): int(total) for sender_id, total in rows}
        a_sent = sent_by.get(user_a, 0)
        b_sent = sent_by.get(user_b, 0)
        return TransferSummary(user_a_sent=a_sent, user_b_sent=b_sent, net_balance=b_sent - a_sent)
