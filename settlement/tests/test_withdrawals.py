"""
Unit Tests for Withdrawals

Tests cover:
1. Successful debit and payout hand-off
2. Validation order and zero-mutation failures
3. Payout failure compensation
4. Concurrent withdrawals and deposits against one balance
"""

import pytest
import time
from concurrent.futures import ThreadPoolExecutor
from decimal import Decimal

from settlement.config import SettlementSettings
from settlement.deposits import DepositService
from settlement.errors import (
    FailedPreconditionError,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    UnauthenticatedError,
)
from settlement.models import PaymentNotification, UserRecord
from settlement.store import InMemoryLedgerStore, LedgerWriteError
from settlement.withdrawals import WithdrawalService


class TestWithdrawalSuccess:
    """Tests for the happy path."""

    def test_withdrawal_debits_and_transfers(self, store, payouts, settings):
        service = WithdrawalService(store, payouts, settings)

        response = service.request_withdrawal("payee", 30)

        assert response.success is True
        assert response.balance == Decimal("70")
        assert response.payout_reference == "payout-1"
        assert payouts.transfers == [("payee", Decimal("30"))]
        assert store.get_user("payee").balance == Decimal("70")

    def test_full_balance_can_be_withdrawn(self, store, payouts, settings):
        service = WithdrawalService(store, payouts, settings)

        service.request_withdrawal("payee", 100)

        assert store.get_user("payee").balance == Decimal("0")

    def test_upper_bound_is_inclusive(self, payouts, settings):
        store = InMemoryLedgerStore(users=[
            UserRecord(id="whale", balance=Decimal("5000"), pix_key="k", pix_full_name="Ana Souza"),
        ])
        service = WithdrawalService(store, payouts, settings)

        response = service.request_withdrawal("whale", 5000)

        assert response.success is True
        assert store.get_user("whale").balance == Decimal("0")

    def test_default_provider_is_simulated(self, store, settings):
        service = WithdrawalService(store, settings=settings)

        response = service.request_withdrawal("payee", 50)

        assert response.payout_reference.startswith("simulated-WD-payee-")


class TestWithdrawalValidation:
    """Tests that every failure leaves the balance unchanged."""

    def test_requires_identity(self, store, payouts, settings):
        service = WithdrawalService(store, payouts, settings)

        with pytest.raises(UnauthenticatedError):
            service.request_withdrawal("", 50)

    @pytest.mark.parametrize("amount", [None, 29, 5001, "ten", -50])
    def test_out_of_bounds_amount(self, store, payouts, settings, amount):
        service = WithdrawalService(store, payouts, settings)

        with pytest.raises(InvalidArgumentError):
            service.request_withdrawal("payee", amount)
        assert store.get_user("payee").balance == Decimal("100")

    def test_unknown_user(self, store, payouts, settings):
        service = WithdrawalService(store, payouts, settings)

        with pytest.raises(NotFoundError):
            service.request_withdrawal("ghost", 50)

    def test_missing_payout_profile(self, payouts, settings):
        """Missing PIX details fail even when the balance would cover the amount."""
        store = InMemoryLedgerStore(users=[UserRecord(id="nopix", balance=Decimal("1000"), pix_key="key")])
        service = WithdrawalService(store, payouts, settings)

        with pytest.raises(FailedPreconditionError) as exc_info:
            service.request_withdrawal("nopix", 50)

        assert "PIX" in exc_info.value.message
        assert store.get_user("nopix").balance == Decimal("1000")

    def test_insufficient_balance(self, store, payouts, settings):
        """balance=100, withdraw 150 -> insufficient balance, balance stays 100."""
        service = WithdrawalService(store, payouts, settings)

        with pytest.raises(FailedPreconditionError) as exc_info:
            service.request_withdrawal("payee", 150)

        assert "insufficient balance" in exc_info.value.message.lower()
        assert store.get_user("payee").balance == Decimal("100")
        assert payouts.transfers == []


class TestWithdrawalCompensation:
    """Tests for the credit-back when the payout fails."""

    def test_failed_payout_restores_balance(self, store, failing_payouts, settings):
        service = WithdrawalService(store, failing_payouts, settings)

        with pytest.raises(InternalError) as exc_info:
            service.request_withdrawal("payee", 60)

        assert "restored" in exc_info.value.message
        assert store.get_user("payee").balance == Decimal("100")

    def test_failed_compensation_is_not_retryable(self, store, failing_payouts, settings):
        service = WithdrawalService(store, failing_payouts, settings)

        def broken(*args, **kwargs):
            raise LedgerWriteError("datastore unavailable")

        store.atomic_update = broken

        with pytest.raises(InternalError) as exc_info:
            service.request_withdrawal("payee", 60)

        assert exc_info.value.retryable is False
        assert store.get_user("payee").balance == Decimal("40")

    def test_unknown_payout_outcome_keeps_debit(self, store, timed_out_payouts, settings):
        """A timed-out transfer may have been sent, so the debit is not credited back."""
        service = WithdrawalService(store, timed_out_payouts, settings)

        with pytest.raises(InternalError) as exc_info:
            service.request_withdrawal("payee", 60)

        assert exc_info.value.retryable is False
        assert "unknown" in exc_info.value.message
        assert store.get_user("payee").balance == Decimal("40")


class SlowReadStore(InMemoryLedgerStore):
    """Widens the gap between the balance read and the commit."""

    def get_user(self, user_id):
        record = super().get_user(user_id)
        time.sleep(0.005)
        return record


class TestConcurrentWithdrawals:
    """Tests for overdraft protection under concurrency."""

    def test_concurrent_withdrawals_never_overdraw(self, payouts):
        store = SlowReadStore(users=[
            UserRecord(id="payee", balance=Decimal("100"), pix_key="k", pix_full_name="Ana Souza"),
        ])
        settings = SettlementSettings(transaction_max_attempts=50)
        service = WithdrawalService(store, payouts, settings)

        def attempt():
            try:
                service.request_withdrawal("payee", 30)
                return True
            except FailedPreconditionError:
                return False

        with ThreadPoolExecutor(max_workers=10) as pool:
            results = list(pool.map(lambda _: attempt(), range(10)))

        assert results.count(True) == 3
        assert store.get_user("payee").balance == Decimal("10")
        assert len(payouts.transfers) == 3

    def test_withdrawals_racing_deposits_stay_consistent(self, payouts, gateway):
        store = SlowReadStore(users=[
            UserRecord(id="payee", balance=Decimal("100"), pix_key="k", pix_full_name="Ana Souza"),
        ])
        settings = SettlementSettings(transaction_max_attempts=50)
        withdrawals = WithdrawalService(store, payouts, settings)
        deposits = DepositService(store, gateway, settings)
        for n in range(4):
            gateway.add_order(f"pay-{n}", 50, "payee")

        def withdraw(_):
            try:
                withdrawals.request_withdrawal("payee", 50)
                return True
            except FailedPreconditionError:
                return False

        def deposit(n):
            deposits.confirm_deposit(PaymentNotification(topic="payment", order_id=f"pay-{n}"))

        with ThreadPoolExecutor(max_workers=8) as pool:
            withdrawn = [pool.submit(withdraw, n) for n in range(4)]
            credited = [pool.submit(deposit, n) for n in range(4)]
            successes = sum(1 for f in withdrawn if f.result())
            for f in credited:
                f.result()

        assert successes >= 2
        assert store.get_user("payee").balance == Decimal("300") - Decimal("50") * successes
        assert store.get_user("payee").balance >= 0
        assert len(payouts.transfers) == successes


if __name__ == "__main__":
    pytest.main([__file__, "-v"])
