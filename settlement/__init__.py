"""
Settlement Layer for a Referral Deposit Platform

This package provides:
- A ledger store with atomic, idempotent per-user writes
- Deposit confirmation from payment-gateway notifications, with first-deposit bonus
- Withdrawals with balance re-validation and payout compensation
- Two-level referral commission distribution
- A disabled-by-default daily yield job
"""

from .models import (
    UserRecord,
    Product,
    AffiliatedProduct,
    PaymentOrder,
    PaymentNotification,
    CommissionTransfer,
    DepositStatus,
)
from .store import LedgerStore, InMemoryLedgerStore
from .deposits import DepositService
from .withdrawals import WithdrawalService
from .commissions import CommissionEngine
from .yields import DailyYieldDistributor

__all__ = [
    "UserRecord",
    "Product",
    "AffiliatedProduct",
    "PaymentOrder",
    "PaymentNotification",
    "CommissionTransfer",
    "DepositStatus",
    "LedgerStore",
    "InMemoryLedgerStore",
    "DepositService",
    "WithdrawalService",
    "CommissionEngine",
    "DailyYieldDistributor",
]
