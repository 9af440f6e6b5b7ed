"""
Tests for the credit ledger.
"""

import asyncio

import pytest

from genbroker.config import CreditsConfig
from genbroker.errors import InsufficientCreditsError, ValidationFailedError
from genbroker.ledger import (
    InMemoryLedgerStore,
    Ledger,
    Owner,
    OwnerKind,
    TransactionReason,
)


class TestOwner:
    def test_keys_are_namespaced(self):
        assert Owner.guest("abc").key == "session:abc"
        assert Owner.registered("abc").key == "user:abc"
        assert Owner.guest("abc") != Owner.registered("abc")

    def test_from_key(self):
        assert Owner.from_key("user:42").kind == OwnerKind.REGISTERED
        assert Owner.from_key("session:42").kind == OwnerKind.GUEST


class TestCheckBalance:
    """First sight of an owner creates the account with its grant."""

    async def test_new_guest_gets_guest_grant(self, ledger, guest):
        check = await ledger.check_balance(guest)

        assert check.has_credits is True
        assert check.balance == 5

    async def test_new_registered_gets_registered_grant(self, ledger, user):
        assert (await ledger.check_balance(user)).balance == 10

    async def test_grant_written_once(self, ledger, guest):
        await ledger.check_balance(guest)
        await ledger.check_balance(guest)

        history = await ledger.history(guest)
        assert [tx.reason for tx in history] == [TransactionReason.SIGNUP_BONUS]
        assert history[0].amount == 5

    async def test_zero_grant_has_no_credits(self, guest):
        ledger = Ledger(InMemoryLedgerStore(), CreditsConfig(guest_initial_credits=0))

        check = await ledger.check_balance(guest)

        assert check.has_credits is False
        assert check.balance == 0
        assert await ledger.history(guest) == []

    async def test_get_balance_does_not_create(self, ledger, guest):
        assert await ledger.get_balance(guest) == 0
        assert await ledger.store.get_account(guest.key) is None


class TestDebit:
    async def test_debit_decrements_and_records(self, ledger, guest):
        await ledger.check_balance(guest)

        result = await ledger.debit(guest, "job_1")

        assert result.ok is True
        assert result.new_balance == 4
        latest = (await ledger.history(guest))[0]
        assert latest.reason == TransactionReason.GENERATION
        assert latest.amount == -1
        assert latest.job_id == "job_1"
        account = await ledger.store.get_account(guest.key)
        assert account.total_used == 1

    async def test_debit_at_zero_is_rejected(self, guest):
        ledger = Ledger(InMemoryLedgerStore(), CreditsConfig(guest_initial_credits=1))
        await ledger.check_balance(guest)
        await ledger.debit(guest, "job_1")

        result = await ledger.debit(guest, "job_2")

        assert result.ok is False
        assert result.new_balance == 0
        assert result.reason == "insufficient_credits"

    async def test_debit_without_account_is_rejected(self, ledger, guest):
        result = await ledger.debit(guest, "job_1")

        assert result.ok is False

    async def test_concurrent_debits_on_last_credit(self, guest):
        ledger = Ledger(InMemoryLedgerStore(), CreditsConfig(guest_initial_credits=1))
        await ledger.check_balance(guest)

        results = await asyncio.gather(*(ledger.debit(guest, f"job_{i}") for i in range(5)))

        assert sum(1 for r in results if r.ok) == 1
        assert await ledger.get_balance(guest) == 0

    async def test_debit_or_raise(self, guest):
        ledger = Ledger(InMemoryLedgerStore(), CreditsConfig(guest_initial_credits=0))
        await ledger.check_balance(guest)

        with pytest.raises(InsufficientCreditsError) as exc_info:
            await ledger.debit_or_raise(guest, "job_1")

        assert exc_info.value.balance == 0
        assert exc_info.value.context.job_id == "job_1"


class TestRefund:
    async def test_refund_restores_credit(self, ledger, guest):
        await ledger.check_balance(guest)
        await ledger.debit(guest, "job_1")

        result = await ledger.refund(guest, "job_1")

        assert result.applied is True
        assert result.new_balance == 5
        assert await ledger.store.has_refund("job_1") is True

    async def test_was_charged(self, ledger, guest):
        await ledger.check_balance(guest)
        await ledger.debit(guest, "job_1")

        assert await ledger.was_charged("job_1") is True
        assert await ledger.was_charged("job_2") is False

    async def test_second_refund_is_noop(self, ledger, guest):
        await ledger.check_balance(guest)
        await ledger.debit(guest, "job_1")
        await ledger.refund(guest, "job_1")

        again = await ledger.refund(guest, "job_1")

        assert again.applied is False
        assert again.new_balance == 5
        refunds = [tx for tx in await ledger.history(guest) if tx.reason == TransactionReason.REFUND]
        assert len(refunds) == 1

    async def test_concurrent_refunds_apply_once(self, ledger, guest):
        await ledger.check_balance(guest)
        await ledger.debit(guest, "job_1")

        results = await asyncio.gather(*(ledger.refund(guest, "job_1") for _ in range(3)))

        assert sum(1 for r in results if r.applied) == 1
        assert await ledger.get_balance(guest) == 5

    async def test_refund_keeps_total_used(self, ledger, guest):
        await ledger.check_balance(guest)
        await ledger.debit(guest, "job_1")
        await ledger.refund(guest, "job_1")

        account = await ledger.store.get_account(guest.key)
        assert account.total_used == 1


class TestMigrate:
    """Guest balances move into the registered account on sign-in."""

    async def test_migrate_into_new_account(self, guest, user):
        ledger = Ledger(InMemoryLedgerStore(), CreditsConfig(guest_initial_credits=2, registered_initial_credits=10))
        await ledger.check_balance(guest)

        result = await ledger.migrate(guest, user)

        assert result.migrated_amount == 2
        assert result.to_balance == 12
        assert await ledger.get_balance(guest) == 0
        assert await ledger.get_balance(user) == 12

    async def test_migrate_writes_both_sides(self, ledger, guest, user):
        await ledger.check_balance(guest)
        await ledger.check_balance(user)

        await ledger.migrate(guest, user)

        out = (await ledger.history(guest))[0]
        into = (await ledger.history(user))[0]
        assert (out.reason, out.amount) == (TransactionReason.MIGRATION, -5)
        assert (into.reason, into.amount) == (TransactionReason.MIGRATION, 5)
        assert out.metadata["to"] == user.key
        assert into.metadata["from"] == guest.key

    async def test_empty_guest_is_noop(self, guest, user):
        ledger = Ledger(InMemoryLedgerStore(), CreditsConfig(guest_initial_credits=0, registered_initial_credits=10))
        await ledger.check_balance(guest)
        await ledger.check_balance(user)

        result = await ledger.migrate(guest, user)

        assert result.migrated_amount == 0
        assert result.to_balance == 10
        assert len(await ledger.history(user)) == 1

    async def test_unknown_guest_is_noop(self, ledger, guest, user):
        result = await ledger.migrate(guest, user)

        assert result.migrated_amount == 0
        assert result.to_balance == 0

    async def test_migrating_twice_moves_nothing(self, ledger, guest, user):
        await ledger.check_balance(guest)
        await ledger.migrate(guest, user)

        second = await ledger.migrate(guest, user)

        assert second.migrated_amount == 0
        assert second.to_balance == 15


class TestAddCredits:
    async def test_purchase(self, ledger, user):
        balance = await ledger.add_credits(user, 20, metadata={"order": "ord_1"})

        assert balance == 30
        latest = (await ledger.history(user))[0]
        assert latest.reason == TransactionReason.PURCHASE
        assert latest.metadata == {"order": "ord_1"}

    async def test_non_positive_amount(self, ledger, user):
        with pytest.raises(ValidationFailedError):
            await ledger.add_credits(user, 0)

    @pytest.mark.parametrize(
        "reason",
        [TransactionReason.GENERATION, TransactionReason.REFUND, TransactionReason.MIGRATION],
    )
    async def test_broker_reasons_rejected(self, ledger, user, reason):
        with pytest.raises(ValidationFailedError):
            await ledger.add_credits(user, 1, reason=reason)


class TestHistoryAndReconcile:
    async def test_history_newest_first_and_limited(self, ledger, guest):
        await ledger.check_balance(guest)
        for i in range(3):
            await ledger.debit(guest, f"job_{i}")

        history = await ledger.history(guest, limit=2)

        assert [tx.job_id for tx in history] == ["job_2", "job_1"]

    async def test_history_default_limit(self, guest):
        ledger = Ledger(InMemoryLedgerStore(), CreditsConfig(guest_initial_credits=30, history_limit=3))
        await ledger.check_balance(guest)
        for i in range(5):
            await ledger.debit(guest, f"job_{i}")

        assert len(await ledger.history(guest)) == 3

    async def test_history_limit_zero_returns_nothing(self, ledger, guest):
        await ledger.check_balance(guest)
        await ledger.debit(guest, "job_1")

        assert await ledger.history(guest, limit=0) == []

    async def test_balance_matches_transactions(self, ledger, guest, user):
        await ledger.check_balance(guest)
        await ledger.debit(guest, "job_1")
        await ledger.debit(guest, "job_2")
        await ledger.refund(guest, "job_1")
        await ledger.migrate(guest, user)
        await ledger.add_credits(user, 3)

        assert await ledger.reconcile(guest) is True
        assert await ledger.reconcile(user) is True
        assert await ledger.get_balance(user) == 10 + 4 + 3

    async def test_reconcile_detects_drift(self, ledger, guest):
        await ledger.check_balance(guest)
        ledger.store._accounts[guest.key].balance += 7

        assert await ledger.reconcile(guest) is False

    async def test_account_snapshot_is_detached(self, ledger, guest):
        await ledger.check_balance(guest)
        snapshot = await ledger.store.get_account(guest.key)
        snapshot.balance += 7

        assert await ledger.get_balance(guest) == 5
        assert await ledger.reconcile(guest) is True

    async def test_reconcile_unknown_owner(self, ledger, guest):
        assert await ledger.reconcile(guest) is True
