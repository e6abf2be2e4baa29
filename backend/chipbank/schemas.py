from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field


class OrmOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class AccountCreateIn(BaseModel):
    username: str = Field(min_length=1, max_length=64)


class AccountOut(BaseModel):
    id: int
    username: str
    balance: int


class WeeklyBalanceOut(OrmOut):
    balance: int
    weeks_added: int
    bonus_chips: int
    last_weekly_credit_at: datetime
    next_bonus_at: datetime


class DailyBonusOut(OrmOut):
    claimed: bool
    already_claimed: bool
    balance: int
    streak: int
    base_bonus: int
    bonus: int
    multiplier: str
    event_id: int | None = None


class DailyBonusStatusOut(OrmOut):
    can_claim: bool
    current_streak: int
    next_streak: int
    next_base_bonus: int
    last_claimed_at: datetime | None = None
    next_claim_at: datetime


class SpinOut(OrmOut):
    base_reward: int
    reward: int
    balance: int
    multiplier: str
    event_id: int | None = None


class SpinStatusOut(OrmOut):
    can_spin: bool
    last_spin_at: datetime | None = None
    next_spin_at: datetime


# Amount ranges are checked by the engines so the caller sees INVALID_AMOUNT
# rather than a generic validation failure.
class TransferIn(BaseModel):
    receiver_id: int
    amount: int
    note: str | None = Field(default=None, max_length=200)


class TransferRecordOut(OrmOut):
    id: int
    sender_id: int
    receiver_id: int
    amount: int
    note: str | None = None
    created_at: datetime


class TransferOut(OrmOut):
    transfer: TransferRecordOut
    sender_balance: int
    receiver_balance: int


class TransferHistoryEntryOut(OrmOut):
    id: int
    direction: str
    other_user_id: int
    amount: int
    note: str | None = None
    created_at: datetime


class TransferPageOut(OrmOut):
    entries: list[TransferHistoryEntryOut]
    total: int
    page: int
    limit: int


class TransferSummaryOut(OrmOut):
    user_a_sent: int
    user_b_sent: int
    net_balance: int


class GameCreateIn(BaseModel):
    name: str | None = Field(default=None, max_length=100)
    notes: str | None = Field(default=None, max_length=500)
    date: datetime | None = None


class JoinGameIn(BaseModel):
    buy_in: int = 0


class RebuyIn(BaseModel):
    amount: int


class EarlyCashOutIn(BaseModel):
    user_id: int
    cash_out: int


class GameResultIn(BaseModel):
    user_id: int
    cash_out: int


class CloseGameIn(BaseModel):
    results: list[GameResultIn] = Field(default_factory=list)


class ParticipantOut(OrmOut):
    id: int
    user_id: int
    username: str
    buy_in: int
    cash_out: int
    net_result: int
    status: str
    cashed_out_at: datetime | None = None
    leave_requested_at: datetime | None = None


class GameOut(OrmOut):
    id: int
    host_id: int
    join_code: str
    name: str
    notes: str | None = None
    date: datetime
    is_active: bool
    closed_at: datetime | None = None
    total_buy_in: int
    available_pot: int
    participants: list[ParticipantOut]


class GamePageOut(OrmOut):
    games: list[GameOut]
    total: int
    page: int
    limit: int
