import os
import sys
from pathlib import Path


def main() -> int:
    # Ensure `import chipbank.*` works when running from repo root in CI.
    backend_dir = Path(__file__).resolve().parents[1]
    sys.path.insert(0, str(backend_dir))

    database_url = os.environ.get("DATABASE_URL", "").strip()
    if not database_url:
        raise RuntimeError("DATABASE_URL is required for CI smoke test")

    from sqlalchemy import func, select

    from chipbank.accounts import AccountStore
    from chipbank.db import SessionLocal
    from chipbank.models import User
    from chipbank.seed import init_db, seed
    from chipbank.settlement import GameSettlementEngine
    from chipbank.side_effects import SideEffectDispatcher
    from chipbank.transfers import TransferEngine

    safe_url = database_url
    if "://" in safe_url and "@" in safe_url:
        scheme, rest = safe_url.split("://", 1)
        creds, host = rest.split("@", 1)
        if ":" in creds:
            user, _pw = creds.split(":", 1)
            safe_url = f"{scheme}://{user}:***@{host}"
    print("CI smoke DATABASE_URL:", safe_url)

    # 1) Create tables (fresh DB should be empty).
    init_db()

    # 2) Seed is idempotent. Run twice to verify "from scratch" and "restart" behavior.
    db = SessionLocal()
    try:
        seed(db)
        seed(db)
    finally:
        db.close()

    def total_chips() -> int:
        with SessionLocal() as session:
            return int(session.execute(select(func.coalesce(func.sum(User.balance), 0))).scalar_one())

    # 3) Exercise one transfer and one full game; neither may change the chip supply.
    suffix = os.urandom(3).hex()
    accounts = AccountStore()
    alice = accounts.create_account(f"smoke-a-{suffix}", 500)
    bob = accounts.create_account(f"smoke-b-{suffix}", 500)
    before = total_chips()

    side_effects = SideEffectDispatcher()
    TransferEngine(dispatcher=side_effects).transfer(alice, bob, 25, note="ci smoke")
    games = GameSettlementEngine(dispatcher=side_effects)
    game = games.create_game(alice, name="CI smoke")
    games.join_game(game.join_code, bob, buy_in=100)
    games.rebuy(game.id, alice, 50)
    closed = games.close_game(
        game.id,
        alice,
        [{"user_id": alice, "cash_out": 90}, {"user_id": bob, "cash_out": 60}],
    )
    after = total_chips()
    side_effects.shutdown(wait=True)

    if closed.is_active:
        raise RuntimeError("Expected the smoke game to be closed")
    if before != after:
        raise RuntimeError(f"Chip supply changed: {before} -> {after}")

    print(
        "OK create_all + seed + ledger",
        {
            "game": closed.id,
            "join_code": closed.join_code,
            "total_chips": after,
            "net": {p.username: p.net_result for p in closed.participants},
        },
    )
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
