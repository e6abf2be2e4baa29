"""Tests for the transfer engine: validation, atomicity and history reads."""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from chipbank.errors import (
    Forbidden,
    InsufficientBalance,
    InvalidAmount,
    ReceiverNotFound,
    SelfTransfer,
    SenderNotFound,
    TransferNotFound,
    ValidationFailed,
)
from chipbank.transfers import TransferEngine


@pytest.fixture
def transfers(session_factory, dispatcher, notifier):
    return TransferEngine(session_factory, dispatcher=dispatcher, achievements=notifier)


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class TestTransferValidation:

    @pytest.mark.parametrize("amount", [0, 101, -5])
    def test_amount_out_of_range(self, transfers, make_user, amount):
        sender, receiver = make_user(500), make_user(500)
        with pytest.raises(InvalidAmount):
            transfers.transfer(sender, receiver, amount)

    @pytest.mark.parametrize("amount", [10.5, "10", True])
    def test_amount_must_be_integer(self, transfers, make_user, amount):
        sender, receiver = make_user(500), make_user(500)
        with pytest.raises(InvalidAmount):
            transfers.transfer(sender, receiver, amount)

    def test_self_transfer(self, transfers, make_user):
        user_id = make_user(500)
        with pytest.raises(SelfTransfer):
            transfers.transfer(user_id, user_id, 10)

    def test_note_too_long(self, transfers, make_user):
        sender, receiver = make_user(500), make_user(500)
        with pytest.raises(ValidationFailed):
            transfers.transfer(sender, receiver, 10, note="x" * 201)

    def test_unknown_sender_and_receiver(self, transfers, make_user):
        user_id = make_user(500)
        with pytest.raises(SenderNotFound):
            transfers.transfer(999, user_id, 10)
        with pytest.raises(ReceiverNotFound):
            transfers.transfer(user_id, 999, 10)


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------


class TestTransferExecution:

    def test_moves_chips_and_records_row(self, transfers, accounts, make_user, total_chips):
        sender, receiver = make_user(500), make_user(200)
        before = total_chips()

        result = transfers.transfer(sender, receiver, 75, note="pizza")

        assert result.sender_balance == 425
        assert result.receiver_balance == 275
        assert result.transfer.amount == 75
        assert result.transfer.note == "pizza"
        assert accounts.get_balance(sender) == 425
        assert accounts.get_balance(receiver) == 275
        assert total_chips() == before

    def test_boundary_amounts(self, transfers, make_user):
        sender, receiver = make_user(500), make_user(0)
        transfers.transfer(sender, receiver, 1)
        result = transfers.transfer(sender, receiver, 100)
        assert result.receiver_balance == 101

    def test_insufficient_balance_changes_nothing(self, transfers, accounts, make_user):
        sender, receiver = make_user(50), make_user(0)
        with pytest.raises(InsufficientBalance):
            transfers.transfer(sender, receiver, 51)
        assert accounts.get_balance(sender) == 50
        assert accounts.get_balance(receiver) == 0
        assert transfers.list_transfers(sender).total == 0

    def test_achievement_rechecks_for_both_parties(self, transfers, notifier, make_user):
        sender, receiver = make_user(500), make_user(0)
        transfers.transfer(sender, receiver, 10)
        assert sorted(notifier.rechecked) == sorted([sender, receiver])

    def test_failing_recheck_does_not_fail_transfer(self, session_factory, dispatcher, accounts, make_user, caplog):
        class BrokenNotifier:
            def recheck(self, user_id):
                raise RuntimeError("achievement service down")

        engine = TransferEngine(session_factory, dispatcher=dispatcher, achievements=BrokenNotifier())
        sender, receiver = make_user(500), make_user(0)

        result = engine.transfer(sender, receiver, 10)

        assert result.receiver_balance == 10
        assert accounts.get_balance(receiver) == 10
        assert "Side effect achievement_recheck failed" in caplog.text

    def test_default_dispatcher_runs_rechecks_off_the_caller_thread(self, session_factory, make_user):
        class ThreadRecorder:
            def __init__(self):
                self.threads = []
                self.done = threading.Event()

            def recheck(self, user_id):
                self.threads.append(threading.current_thread().name)
                if len(self.threads) == 2:
                    self.done.set()

        recorder = ThreadRecorder()
        engine = TransferEngine(session_factory, achievements=recorder)
        sender, receiver = make_user(500), make_user(0)

        engine.transfer(sender, receiver, 10)

        assert recorder.done.wait(timeout=5)
        assert all(name.startswith("chipbank-side-effect") for name in recorder.threads)
        assert threading.current_thread().name not in recorder.threads


class TestConcurrentTransfers:

    def test_opposite_transfers_preserve_total(self, transfers, make_user, total_chips):
        a, b = make_user(1000), make_user(1000)
        before = total_chips()

        def run(i):
            if i % 2:
                return transfers.transfer(a, b, 7)
            return transfers.transfer(b, a, 5)

        with ThreadPoolExecutor(max_workers=8) as pool:
            list(pool.map(run, range(40)))

        assert total_chips() == before
        assert transfers.list_transfers(a, limit=100).total == 40

    def test_racing_debits_never_overdraw(self, transfers, accounts, make_user):
        sender = make_user(100)
        receivers = [make_user(0) for _ in range(6)]

        def run(receiver):
            try:
                transfers.transfer(sender, receiver, 30)
                return True
            except InsufficientBalance:
                return False

        with ThreadPoolExecutor(max_workers=6) as pool:
            outcomes = list(pool.map(run, receivers))

        assert outcomes.count(True) == 3
        assert accounts.get_balance(sender) == 10


# ---------------------------------------------------------------------------
# History
# ---------------------------------------------------------------------------


class TestTransferHistory:

    def test_list_is_paginated_newest_first(self, transfers, make_user):
        a, b = make_user(500), make_user(500)
        ids = [transfers.transfer(a, b, amount).transfer.id for amount in (1, 2, 3)]

        first_page = transfers.list_transfers(a, page=1, limit=2)
        second_page = transfers.list_transfers(a, page=2, limit=2)

        assert first_page.total == 3
        assert [entry.id for entry in first_page.entries] == [ids[2], ids[1]]
        assert [entry.id for entry in second_page.entries] == [ids[0]]
        assert all(entry.direction == "sent" for entry in first_page.entries)
        assert transfers.list_transfers(b).entries[0].direction == "received"
        assert transfers.list_transfers(b).entries[0].other_user_id == a

    def test_get_transfer_access(self, transfers, make_user):
        a, b, outsider = make_user(500), make_user(500), make_user(500)
        transfer_id = transfers.transfer(a, b, 10).transfer.id

        assert transfers.get_transfer(transfer_id, a).amount == 10
        assert transfers.get_transfer(transfer_id, b).sender_id == a
        with pytest.raises(Forbidden):
            transfers.get_transfer(transfer_id, outsider)
        with pytest.raises(TransferNotFound):
            transfers.get_transfer(9999, a)

    def test_summary_between_users(self, transfers, make_user):
        a, b, c = make_user(500), make_user(500), make_user(500)
        transfers.transfer(a, b, 30)
        transfers.transfer(a, b, 20)
        transfers.transfer(b, a, 15)
        transfers.transfer(c, a, 99)

        summary = transfers.transfers_between(a, b)

        assert summary.user_a_sent == 50
        assert summary.user_b_sent == 15
        assert summary.net_balance == -35
