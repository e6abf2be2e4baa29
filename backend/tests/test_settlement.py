"""Tests for the game settlement engine: the full buy-in to close lifecycle."""

import random
import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest

from chipbank.errors import (
    AlreadyCashedOut,
    AlreadyJoined,
    CashoutMismatch,
    DuplicateResult,
    ExceedsPot,
    GameAlreadyClosed,
    GameInactive,
    GameNotFound,
    HostCannotLeave,
    InsufficientBalance,
    InvalidAmount,
    LeaveAlreadyRequested,
    NotHost,
    NotParticipant,
    UserNotFound,
    ValidationFailed,
)
from chipbank.models import Participant
from chipbank.settlement import GameSettlementEngine, available_pot, total_buy_in


@pytest.fixture
def games(session_factory, dispatcher, notifier, clock):
    return GameSettlementEngine(
        session_factory,
        dispatcher=dispatcher,
        achievements=notifier,
        rng=random.Random(7),
        clock=clock,
    )


@pytest.fixture
def table(games, make_user):
    """Host plus two players who bought in for 50 each (pot = 100)."""
    host = make_user(1000, "host")
    p1 = make_user(1000, "p1")
    p2 = make_user(1000, "p2")
    game = games.create_game(host, name="Friday game")
    games.join_game(game.join_code, p1, buy_in=50)
    games.join_game(game.join_code, p2, buy_in=50)
    return game.id, game.join_code, host, p1, p2


def participant(view, user_id):
    return next(p for p in view.participants if p.user_id == user_id)


# ---------------------------------------------------------------------------
# Pot arithmetic
# ---------------------------------------------------------------------------


class TestPotHelpers:

    def test_available_pot_subtracts_only_cashed_out(self, clock):
        rows = [
            Participant(buy_in=50, cash_out=0, cashed_out_at=None),
            Participant(buy_in=80, cash_out=70, cashed_out_at=clock.now),
            Participant(buy_in=20, cash_out=999, cashed_out_at=None),
        ]
        assert total_buy_in(rows) == 150
        assert available_pot(rows) == 80


# ---------------------------------------------------------------------------
# Create / join
# ---------------------------------------------------------------------------


class TestCreateAndJoin:

    def test_create_game_seats_host(self, games, make_user):
        host = make_user(100)

        view = games.create_game(host)

        assert view.is_active is True
        assert view.name == "Poker Night"
        assert len(view.join_code) == 6
        assert [(p.user_id, p.buy_in, p.status) for p in view.participants] == [(host, 0, "ACTIVE")]

    def test_create_game_validation(self, games, make_user):
        host = make_user(100)
        with pytest.raises(ValidationFailed):
            games.create_game(host, name="x" * 101)
        with pytest.raises(UserNotFound):
            games.create_game(4242)

    def test_aware_date_stored_as_naive_utc(self, games, make_user):
        host = make_user(100)
        kickoff = datetime(2024, 3, 15, 21, 30, tzinfo=timezone(timedelta(hours=-5)))

        view = games.create_game(host, date=kickoff)

        assert view.date == datetime(2024, 3, 16, 2, 30)
        assert games.get_game(view.id).date == datetime(2024, 3, 16, 2, 30)

    def test_join_codes_unique_across_games(self, games, make_user):
        host = make_user(100)
        codes = {games.create_game(host).join_code for _ in range(25)}
        assert len(codes) == 25

    def test_join_debits_buy_in(self, games, accounts, table):
        game_id, _, _, p1, _ = table
        assert accounts.get_balance(p1) == 950
        assert games.get_game(game_id).total_buy_in == 100

    def test_join_code_is_case_insensitive(self, games, make_user):
        host, player = make_user(100), make_user(100)
        game = games.create_game(host)

        view = games.join_game(game.join_code.lower(), player)

        assert participant(view, player).buy_in == 0

    def test_join_errors(self, games, accounts, make_user, table):
        game_id, code, host, p1, _ = table
        poor = make_user(10)

        with pytest.raises(GameNotFound):
            games.join_game("ZZZZZZ", poor)
        with pytest.raises(AlreadyJoined):
            games.join_game(code, p1, buy_in=10)
        with pytest.raises(InvalidAmount):
            games.join_game(code, poor, buy_in=-1)
        with pytest.raises(InsufficientBalance):
            games.join_game(code, poor, buy_in=11)
        assert accounts.get_balance(poor) == 10
        assert accounts.get_balance(p1) == 950

    def test_join_closed_game(self, games, make_user, table):
        game_id, code, host, p1, p2 = table
        games.close_game(game_id, host, [{"user_id": p1, "cash_out": 100}])

        with pytest.raises(GameInactive):
            games.join_game(code, make_user(100))


# ---------------------------------------------------------------------------
# In-game actions
# ---------------------------------------------------------------------------


class TestRebuyAndLeave:

    def test_rebuy_adds_to_buy_in(self, games, accounts, table):
        game_id, _, _, p1, _ = table

        view = games.rebuy(game_id, p1, 30)

        assert participant(view, p1).buy_in == 80
        assert view.available_pot == 130
        assert accounts.get_balance(p1) == 920

    def test_rebuy_errors(self, games, make_user, table):
        game_id, _, host, p1, p2 = table
        with pytest.raises(InvalidAmount):
            games.rebuy(game_id, p1, 0)
        with pytest.raises(NotParticipant):
            games.rebuy(game_id, make_user(100), 10)
        with pytest.raises(GameNotFound):
            games.rebuy(9999, p1, 10)
        with pytest.raises(InsufficientBalance):
            games.rebuy(game_id, p1, 5000)

        games.early_cash_out(game_id, host, p2, 20)
        with pytest.raises(AlreadyCashedOut):
            games.rebuy(game_id, p2, 10)

    def test_request_leave(self, games, accounts, table, clock):
        game_id, _, host, p1, _ = table

        view = games.request_leave(game_id, p1)

        assert participant(view, p1).leave_requested_at == clock.now
        assert accounts.get_balance(p1) == 950
        with pytest.raises(LeaveAlreadyRequested):
            games.request_leave(game_id, p1)
        with pytest.raises(HostCannotLeave):
            games.request_leave(game_id, host)

    def test_request_leave_requires_membership(self, games, make_user, table):
        game_id = table[0]
        with pytest.raises(NotParticipant):
            games.request_leave(game_id, make_user(0))


class TestEarlyCashOut:

    def test_second_cash_out_limited_to_remaining_pot(self, games, accounts, table):
        game_id, _, host, p1, p2 = table

        view = games.early_cash_out(game_id, host, p1, 70)
        assert view.available_pot == 30
        assert participant(view, p1).net_result == 20
        assert participant(view, p1).status == "CASHED_OUT"
        assert accounts.get_balance(p1) == 1020

        with pytest.raises(ExceedsPot):
            games.early_cash_out(game_id, host, p2, 40)
        assert accounts.get_balance(p2) == 950

    def test_only_host(self, games, table):
        game_id, _, _, p1, p2 = table
        with pytest.raises(NotHost):
            games.early_cash_out(game_id, p1, p2, 10)

    def test_twice(self, games, table):
        game_id, _, host, p1, _ = table
        games.early_cash_out(game_id, host, p1, 10)
        with pytest.raises(AlreadyCashedOut):
            games.early_cash_out(game_id, host, p1, 10)

    def test_rebuy_then_cash_out_same_amount_is_neutral(self, games, accounts, make_user):
        host, player = make_user(500), make_user(500)
        game = games.create_game(host)
        games.join_game(game.join_code, player)

        games.rebuy(game.id, player, 60)
        view = games.early_cash_out(game.id, host, player, 60)

        assert participant(view, player).net_result == 0
        assert accounts.get_balance(player) == 500


# ---------------------------------------------------------------------------
# Close
# ---------------------------------------------------------------------------


class TestCloseGame:

    def test_mismatch_rejected(self, games, accounts, table):
        game_id, _, host, p1, p2 = table

        with pytest.raises(CashoutMismatch):
            games.close_game(
                game_id,
                host,
                [{"user_id": p1, "cash_out": 60}, {"user_id": p2, "cash_out": 39}],
            )

        assert games.get_game(game_id).is_active is True
        assert accounts.get_balance(p1) == 950

    def test_exact_results_settle(self, games, accounts, notifier, table, total_chips, clock):
        game_id, _, host, p1, p2 = table
        before = total_chips()

        view = games.close_game(
            game_id,
            host,
            [{"user_id": p1, "cash_out": 60}, {"user_id": p2, "cash_out": 40}],
        )

        assert view.is_active is False
        assert view.closed_at == clock.now
        assert participant(view, p1).net_result == 10
        assert participant(view, p2).net_result == -10
        assert participant(view, host).net_result == 0
        assert {p.status for p in view.participants} == {"SETTLED"}
        assert accounts.get_balance(p1) == 1010
        assert accounts.get_balance(p2) == 990
        assert total_chips() == before
        assert sorted(notifier.rechecked) == sorted([host, p1, p2])

    def test_close_after_early_cash_out(self, games, accounts, table):
        game_id, _, host, p1, p2 = table
        games.early_cash_out(game_id, host, p1, 70)

        # p1's stale entry is ignored; only the remaining 30 is distributed.
        view = games.close_game(
            game_id,
            host,
            [{"user_id": p1, "cash_out": 500}, {"user_id": p2, "cash_out": 30}],
        )

        assert participant(view, p1).cash_out == 70
        assert participant(view, p1).status == "CASHED_OUT"
        assert participant(view, p2).net_result == -20
        assert accounts.get_balance(p1) == 1020
        assert accounts.get_balance(p2) == 980

    def test_unreferenced_active_participant_settles_at_zero(self, games, accounts, table):
        game_id, _, host, p1, p2 = table

        view = games.close_game(game_id, host, [{"user_id": p1, "cash_out": 100}])

        assert participant(view, p2).cash_out == 0
        assert participant(view, p2).net_result == -50
        assert accounts.get_balance(p1) == 1050

    def test_result_validation(self, games, table):
        game_id, _, host, p1, _ = table
        with pytest.raises(DuplicateResult):
            games.close_game(
                game_id,
                host,
                [{"user_id": p1, "cash_out": 50}, {"user_id": p1, "cash_out": 50}],
            )
        with pytest.raises(InvalidAmount):
            games.close_game(game_id, host, [{"user_id": p1, "cash_out": -1}])

    def test_only_host_and_only_once(self, games, table):
        game_id, _, host, p1, _ = table
        results = [{"user_id": p1, "cash_out": 100}]
        with pytest.raises(NotHost):
            games.close_game(game_id, p1, results)

        games.close_game(game_id, host, results)

        with pytest.raises(GameAlreadyClosed):
            games.close_game(game_id, host, results)
        with pytest.raises(GameInactive):
            games.rebuy(game_id, p1, 10)

    def test_concurrent_closes_pay_out_once(self, games, accounts, table, total_chips):
        game_id, _, host, p1, p2 = table
        before = total_chips()
        results = [{"user_id": p1, "cash_out": 60}, {"user_id": p2, "cash_out": 40}]

        def run(_):
            try:
                games.close_game(game_id, host, results)
                return True
            except GameAlreadyClosed:
                return False

        with ThreadPoolExecutor(max_workers=4) as pool:
            outcomes = list(pool.map(run, range(4)))

        assert outcomes.count(True) == 1
        assert accounts.get_balance(p1) == 1010
        assert total_chips() == before

    def test_rebuy_racing_close_conserves_chips(self, games, accounts, make_user, total_chips):
        host = make_user(1000, "racehost")
        player = make_user(1000, "racer")
        before = total_chips()

        for _ in range(5):
            game = games.create_game(host)
            games.join_game(game.join_code, player, buy_in=50)
            start = threading.Barrier(2)
            balance_before = accounts.get_balance(player)

            def rebuy():
                start.wait()
                try:
                    games.rebuy(game.id, player, 10)
                    return "rebuy"
                except GameInactive:
                    return "inactive"

            def close():
                start.wait()
                try:
                    games.close_game(game.id, host, [{"user_id": player, "cash_out": 50}])
                    return "closed"
                except CashoutMismatch:
                    return "mismatch"

            with ThreadPoolExecutor(max_workers=2) as pool:
                rebuy_outcome = pool.submit(rebuy)
                close_outcome = pool.submit(close)
                outcome = (rebuy_outcome.result(), close_outcome.result())

            # Either the rebuy lands first and the stale close no longer
            # matches the pot, or the close lands first and the rebuy is refused.
            assert outcome in {("rebuy", "mismatch"), ("inactive", "closed")}
            if outcome == ("rebuy", "mismatch"):
                assert accounts.get_balance(player) == balance_before - 10
                assert games.get_game(game.id).available_pot == 60
                games.close_game(game.id, host, [{"user_id": player, "cash_out": 60}])
            else:
                assert accounts.get_balance(player) == balance_before + 50
            assert total_chips() == before

    def test_malformed_result_rejected(self, games, accounts, table):
        game_id, _, host, p1, _ = table
        with pytest.raises(ValidationFailed):
            games.close_game(game_id, host, [{"cash_out": 100}])
        with pytest.raises(ValidationFailed):
            games.close_game(game_id, host, [{"user_id": "abc", "cash_out": 100}])
        assert games.get_game(game_id).is_active is True
        assert accounts.get_balance(p1) == 950


# ---------------------------------------------------------------------------
# Queries
# ---------------------------------------------------------------------------


class TestGameQueries:

    def test_get_by_code_only_for_open_games(self, games, table):
        game_id, code, host, p1, _ = table
        assert games.get_game_by_code(code).id == game_id

        games.close_game(game_id, host, [{"user_id": p1, "cash_out": 100}])

        with pytest.raises(GameInactive):
            games.get_game_by_code(code)
        with pytest.raises(GameNotFound):
            games.get_game(9999)

    def test_active_game_and_history(self, games, make_user, table):
        game_id, _, host, p1, _ = table
        assert games.get_active_game(p1).id == game_id
        assert games.get_active_game(make_user(0)) is None

        games.close_game(game_id, host, [{"user_id": p1, "cash_out": 100}])

        assert games.get_active_game(p1) is None
        history = games.list_user_games(p1)
        assert history.total == 1
        assert history.games[0].id == game_id
