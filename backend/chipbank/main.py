import logging
import os
from collections.abc import Callable
from dataclasses import dataclass

from fastapi import Depends, FastAPI, Header, Query, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from .accounts import STARTING_BALANCE, AccountStore
from .bonuses import BonusEngine
from .db import SessionLocal
from .errors import LedgerError, Unauthorized
from .events import EventMultiplierProvider, NeutralMultiplierProvider
from .schemas import (
    AccountCreateIn,
    AccountOut,
    CloseGameIn,
    DailyBonusOut,
    DailyBonusStatusOut,
    EarlyCashOutIn,
    GameCreateIn,
    GameOut,
    GamePageOut,
    JoinGameIn,
    RebuyIn,
    SpinOut,
    SpinStatusOut,
    TransferIn,
    TransferOut,
    TransferPageOut,
    TransferRecordOut,
    TransferSummaryOut,
    WeeklyBalanceOut,
)
from .seed import init_db, seed
from .settlement import GameSettlementEngine
from .side_effects import LoggingAchievementNotifier, SideEffectDispatcher
from .transfers import TransferEngine

logging.basicConfig(
    level=os.environ.get("LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger("chipbank.api")

USE_EVENT_MULTIPLIERS = os.environ.get("USE_EVENT_MULTIPLIERS", "1").strip() != "0"

app = FastAPI(title="Chipbank Ledger")
ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.environ.get("ALLOWED_ORIGINS", "http://localhost:3000,http://localhost:3001").split(",")
    if origin.strip()
]
app.add_middleware(
    CORSMiddleware,
    allow_origins=ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@dataclass
class Services:
    accounts: AccountStore
    bonuses: BonusEngine
    transfers: TransferEngine
    games: GameSettlementEngine


def build_services(
    session_factory: Callable[[], Session] = SessionLocal,
    dispatcher: SideEffectDispatcher | None = None,
    use_event_multipliers: bool = USE_EVENT_MULTIPLIERS,
) -> Services:
    dispatcher = dispatcher or SideEffectDispatcher()
    achievements = LoggingAchievementNotifier()
    if use_event_multipliers:
        multipliers = EventMultiplierProvider(session_factory)
    else:
        multipliers = NeutralMultiplierProvider()
    return Services(
        accounts=AccountStore(session_factory),
        bonuses=BonusEngine(session_factory, multipliers=multipliers, dispatcher=dispatcher),
        transfers=TransferEngine(session_factory, dispatcher=dispatcher, achievements=achievements),
        games=GameSettlementEngine(session_factory, dispatcher=dispatcher, achievements=achievements),
    )


side_effects = SideEffectDispatcher()
services = build_services(SessionLocal, side_effects)


def get_services() -> Services:
    return services


def get_user_id(x_user_id: str | None = Header(default=None, alias="X-User-Id")) -> int:
    if not x_user_id:
        raise Unauthorized()
    try:
        user_id = int(x_user_id.strip())
    except ValueError:
        raise Unauthorized("Invalid X-User-Id header.") from None
    if user_id <= 0:
        raise Unauthorized("Invalid X-User-Id header.")
    return user_id


def ok(data) -> dict:
    return {"success": True, "data": jsonable_encoder(data)}


def error_response(status_code: int, message: str, code: str) -> JSONResponse:
    return JSONResponse(
        status_code=status_code,
        content={"success": False, "error": {"message": message, "code": code}},
    )


@app.exception_handler(LedgerError)
async def ledger_error_handler(request: Request, exc: LedgerError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s (%s)", request.method, request.url.path, exc.message, exc.code)
    return error_response(exc.status_code, exc.message, exc.code)


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Request is not valid."
    if errors:
        first = errors[0]
        location = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{location}: {first.get('msg', 'invalid value')}" if location else first.get("msg", message)
    return error_response(400, message, "VALIDATION_ERROR")


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, "Internal server error", "INTERNAL_ERROR")


@app.on_event("startup")
def on_startup():
    init_db()
    db = SessionLocal()
    try:
        seed(db)
    finally:
        db.close()


@app.on_event("shutdown")
def on_shutdown():
    side_effects.shutdown(wait=True)


@app.get("/")
def root():
    return {"ok": True, "service": "Chipbank Ledger API", "docs": "/docs", "health": "/healthz"}


@app.get("/healthz")
def healthz():
    return {"ok": True}


# ----------------------------------------------------------------------
# Accounts and bonuses
# ----------------------------------------------------------------------


@app.post("/accounts", status_code=201)
def create_account(payload: AccountCreateIn, svc: Services = Depends(get_services)):
    username = payload.username.strip().lower()
    user_id = svc.accounts.create_account(username, STARTING_BALANCE)
    return ok(AccountOut(id=user_id, username=username, balance=svc.accounts.get_balance(user_id)))


@app.get("/balance")
def get_balance(user_id: int = Depends(get_user_id), svc: Services = Depends(get_services)):
    return ok(WeeklyBalanceOut.model_validate(svc.bonuses.get_balance_with_weekly_bonus(user_id)))


@app.get("/balance/daily-bonus")
def daily_bonus_status(user_id: int = Depends(get_user_id), svc: Services = Depends(get_services)):
    return ok(DailyBonusStatusOut.model_validate(svc.bonuses.get_daily_bonus_status(user_id)))


@app.post("/balance/daily-bonus")
def claim_daily_bonus(user_id: int = Depends(get_user_id), svc: Services = Depends(get_services)):
    return ok(DailyBonusOut.model_validate(svc.bonuses.claim_daily_bonus(user_id)))


@app.get("/balance/spin")
def spin_status(user_id: int = Depends(get_user_id), svc: Services = Depends(get_services)):
    return ok(SpinStatusOut.model_validate(svc.bonuses.get_spin_status(user_id)))


@app.post("/balance/spin")
def spin(user_id: int = Depends(get_user_id), svc: Services = Depends(get_services)):
    return ok(SpinOut.model_validate(svc.bonuses.spin_lucky_wheel(user_id)))


# ----------------------------------------------------------------------
# Transfers
# ----------------------------------------------------------------------


@app.post("/transfers", status_code=201)
def create_transfer(
    payload: TransferIn,
    user_id: int = Depends(get_user_id),
    svc: Services = Depends(get_services),
):
    result = svc.transfers.transfer(user_id, payload.receiver_id, payload.amount, payload.note)
    return ok(TransferOut.model_validate(result))


@app.get("/transfers")
def list_transfers(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    user_id: int = Depends(get_user_id),
    svc: Services = Depends(get_services),
):
    return ok(TransferPageOut.model_validate(svc.transfers.list_transfers(user_id, page, limit)))


@app.get("/transfers/with/{other_user_id}")
def transfers_with(
    other_user_id: int,
    user_id: int = Depends(get_user_id),
    svc: Services = Depends(get_services),
):
    return ok(TransferSummaryOut.model_validate(svc.transfers.transfers_between(user_id, other_user_id)))


@app.get("/transfers/{transfer_id}")
def get_transfer(
    transfer_id: int,
    user_id: int = Depends(get_user_id),
    svc: Services = Depends(get_services),
):
    return ok(TransferRecordOut.model_validate(svc.transfers.get_transfer(transfer_id, user_id)))


# ----------------------------------------------------------------------
# Games
# ----------------------------------------------------------------------


@app.post("/games", status_code=201)
def create_game(
    payload: GameCreateIn,
    user_id: int = Depends(get_user_id),
    svc: Services = Depends(get_services),
):
    view = svc.games.create_game(user_id, name=payload.name, notes=payload.notes, date=payload.date)
    return ok(GameOut.model_validate(view))


@app.get("/games/active")
def get_active_game(user_id: int = Depends(get_user_id), svc: Services = Depends(get_services)):
    view = svc.games.get_active_game(user_id)
    return ok(GameOut.model_validate(view) if view is not None else None)


@app.get("/games/mine")
def list_my_games(
    page: int = Query(default=1, ge=1),
    limit: int = Query(default=20, ge=1, le=100),
    user_id: int = Depends(get_user_id),
    svc: Services = Depends(get_services),
):
    return ok(GamePageOut.model_validate(svc.games.list_user_games(user_id, page, limit)))


@app.get("/games/join/{join_code}")
def get_game_by_code(
    join_code: str,
    user_id: int = Depends(get_user_id),
    svc: Services = Depends(get_services),
):
    return ok(GameOut.model_validate(svc.games.get_game_by_code(join_code)))


@app.post("/games/join/{join_code}")
def join_game(
    join_code: str,
    payload: JoinGameIn | None = None,
    user_id: int = Depends(get_user_id),
    svc: Services = Depends(get_services),
):
    buy_in = payload.buy_in if payload is not None else 0
    return ok(GameOut.model_validate(svc.games.join_game(join_code, user_id, buy_in)))


@app.get("/games/{game_id}")
def get_game(game_id: int, user_id: int = Depends(get_user_id), svc: Services = Depends(get_services)):
    return ok(GameOut.model_validate(svc.games.get_game(game_id)))


@app.post("/games/{game_id}/rebuy")
def rebuy(
    game_id: int,
    payload: RebuyIn,
    user_id: int = Depends(get_user_id),
    svc: Services = Depends(get_services),
):
    return ok(GameOut.model_validate(svc.games.rebuy(game_id, user_id, payload.amount)))


@app.post("/games/{game_id}/request-leave")
def request_leave(game_id: int, user_id: int = Depends(get_user_id), svc: Services = Depends(get_services)):
    return ok(GameOut.model_validate(svc.games.request_leave(game_id, user_id)))


@app.post("/games/{game_id}/early-cashout")
def early_cash_out(
    game_id: int,
    payload: EarlyCashOutIn,
    user_id: int = Depends(get_user_id),
    svc: Services = Depends(get_services),
):
    view = svc.games.early_cash_out(game_id, user_id, payload.user_id, payload.cash_out)
    return ok(GameOut.model_validate(view))


@app.post("/games/{game_id}/close")
def close_game(
    game_id: int,
    payload: CloseGameIn,
    user_id: int = Depends(get_user_id),
    svc: Services = Depends(get_services),
):
    results = [{"user_id": result.user_id, "cash_out": result.cash_out} for result in payload.results]
    return ok(GameOut.model_validate(svc.games.close_game(game_id, user_id, results)))
