from __future__ import annotations
from datetime import datetime
from decimal import Decimal
from sqlalchemy import String, Integer, Numeric, DateTime, ForeignKey, Text, UniqueConstraint, Boolean, CheckConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship
from .db import Base, utcnow


class User(Base):
    __tablename__ = "users"
    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_users_balance_non_negative"),
        CheckConstraint("login_streak >= 0", name="ck_users_streak_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    username: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    balance: Mapped[int] = mapped_column(Integer, default=0)
    last_weekly_credit_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    login_streak: Mapped[int] = mapped_column(Integer, default=0)
    last_login_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    last_spin_date: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    participations: Mapped[list["Participant"]] = relationship(back_populates="user")


class ChipTransfer(Base):
    __tablename__ = "chip_transfers"
    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_transfer_amount_positive"),
        CheckConstraint("sender_id <> receiver_id", name="ck_transfer_not_self"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    sender_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    receiver_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    amount: Mapped[int] = mapped_column(Integer)
    note: Mapped[str | None] = mapped_column(String(200), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)


class GameSession(Base):
    __tablename__ = "game_sessions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    host_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    join_code: Mapped[str] = mapped_column(String(6), unique=True, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, index=True)
    name: Mapped[str] = mapped_column(String(100), default="Poker Night")
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    date: Mapped[datetime] = mapped_column(DateTime, default=utcnow, index=True)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    participants: Mapped[list["Participant"]] = relationship(
        back_populates="game_session",
        order_by="Participant.id",
    )


class Participant(Base):
    __tablename__ = "game_participants"
    __table_args__ = (
        UniqueConstraint("user_id", "game_session_id", name="uq_user_game_session"),
        CheckConstraint("buy_in >= 0", name="ck_participant_buy_in_non_negative"),
        CheckConstraint("cash_out >= 0", name="ck_participant_cash_out_non_negative"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    game_session_id: Mapped[int] = mapped_column(ForeignKey("game_sessions.id"), index=True)

    buy_in: Mapped[int] = mapped_column(Integer, default=0)  # cumulative, includes rebuys
    cash_out: Mapped[int] = mapped_column(Integer, default=0)
    net_result: Mapped[int] = mapped_column(Integer, default=0)  # cash_out - buy_in
    cashed_out_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    leave_requested_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    joined_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)

    user: Mapped["User"] = relationship(back_populates="participations")
    game_session: Mapped["GameSession"] = relationship(back_populates="participants")

    @property
    def is_cashed_out(self) -> bool:
        return self.cashed_out_at is not None


class Event(Base):
    __tablename__ = "events"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    key: Mapped[str] = mapped_column(String(64), unique=True, index=True)
    name: Mapped[str] = mapped_column(String(128))
    multiplier: Mapped[Decimal] = mapped_column(Numeric(6, 3), default=Decimal("1"))
    bonus_chips: Mapped[int] = mapped_column(Integer, default=0)
    priority: Mapped[int] = mapped_column(Integer, default=0)
    start_time: Mapped[datetime] = mapped_column(DateTime, index=True)
    end_time: Mapped[datetime] = mapped_column(DateTime, index=True)


class EventParticipation(Base):
    __tablename__ = "user_events"
    __table_args__ = (UniqueConstraint("user_id", "event_id", name="uq_user_event"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(ForeignKey("users.id"), index=True)
    event_id: Mapped[int] = mapped_column(ForeignKey("events.id"), index=True)
    rewards_claimed: Mapped[int] = mapped_column(Integer, default=0)
    participated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
