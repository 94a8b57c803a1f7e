import logging
from decimal import Decimal
from typing import Optional

from .config import SettlementSettings, get_settings
from .deposits import parse_amount
from .errors import (
    FailedPreconditionError,
    InternalError,
    InvalidArgumentError,
    NotFoundError,
    UnauthenticatedError,
)
from .models import UserRecord, WithdrawalResponse
from .payouts import (
    PayoutError,
    PayoutOutcomeUnknown,
    PayoutProvider,
    SimulatedPayoutProvider,
    new_withdrawal_reference,
)
from .store import LedgerStore, LedgerStoreError, RecordNotFound, TransactionConflict

logger = logging.getLogger(__name__)

INCOMPLETE_PROFILE = "Incomplete PIX details. Register your full name and PIX key in your profile."
INSUFFICIENT_BALANCE = "Insufficient balance."


class WithdrawalService:
    """Debits the ledger, then starts the PIX transfer; a failed transfer is credited back."""

    def __init__(
        self,
        store: LedgerStore,
        payouts: Optional[PayoutProvider] = None,
        settings: Optional[SettlementSettings] = None,
    ):
        self.store = store
        self.payouts = payouts or SimulatedPayoutProvider()
        self.settings = settings or get_settings()

    def request_withdrawal(self, user_id: Optional[str], amount) -> WithdrawalResponse:
        if not user_id:
            raise UnauthenticatedError("Authentication is required")

        value = parse_amount(amount)
        if value is None or value < self.settings.withdrawal_min or value > self.settings.withdrawal_max:
            raise InvalidArgumentError("Invalid withdrawal amount")

        user = self.store.get_user(user_id)
        if user is None:
            raise NotFoundError("User not found")
        if not user.has_payout_profile():
            raise FailedPreconditionError(INCOMPLETE_PROFILE)

        debited = self._debit(user_id, value)
        reference = new_withdrawal_reference(user_id)
        logger.info(f"Starting PIX transfer of {value} to key {debited.pix_key} ({debited.pix_full_name}) for user {user_id}")

        try:
            payout_reference = self.payouts.transfer(debited, value, reference)
        except PayoutError as e:
            logger.error(f"Payout {reference} failed for user {user_id}: {e}")
            self._compensate(user_id, value, reference)
            raise InternalError("Failed to start the PIX transfer. The balance was restored.") from e
        except PayoutOutcomeUnknown as e:
            logger.critical(
                f"Payout {reference} of {value} for user {user_id} has an unknown outcome; debit kept for reconciliation: {e}"
            )
            raise InternalError(
                "The PIX transfer status is unknown. The withdrawal is under review.",
                retryable=False,
            ) from e

        return WithdrawalResponse(
            success=True,
            message="Withdrawal processed and sent for transfer",
            payout_reference=payout_reference,
            balance=debited.balance,
        )

    def _debit(self, user_id: str, amount: Decimal) -> UserRecord:
        def check_and_debit(user: UserRecord) -> dict[str, Decimal]:
            if not user.has_payout_profile():
                raise FailedPreconditionError(INCOMPLETE_PROFILE)
            if user.balance < amount:
                raise FailedPreconditionError(INSUFFICIENT_BALANCE)
            return {"balance": -amount}

        try:
            record = self.store.transaction(user_id, check_and_debit, self.settings.transaction_max_attempts)
        except RecordNotFound as e:
            raise NotFoundError("User not found") from e
        except TransactionConflict as e:
            logger.warning(f"Withdrawal for user {user_id} gave up after repeated conflicts")
            raise InternalError("The account is busy. Try again.") from e
        except LedgerStoreError as e:
            logger.error(f"Ledger debit failed for user {user_id}: {e}", exc_info=True)
            raise InternalError("Could not debit the balance. Try again.") from e

        logger.info(f"Debited {amount} from user {user_id}; balance now {record.balance}")
        return record

    def _compensate(self, user_id: str, amount: Decimal, reference: str) -> None:
        try:
            self.store.atomic_update(
                user_id,
                increments={"balance": amount},
                idempotency_key=f"compensation:{reference}",
            )
        except LedgerStoreError as e:
            logger.critical(
                f"Compensation failed: {amount} debited from user {user_id} for payout {reference} was not restored",
                exc_info=True,
            )
            raise InternalError(
                "The PIX transfer failed and the balance could not be restored. Support has been notified.",
                retryable=False,
            ) from e
        logger.info(f"Restored {amount} to user {user_id} after failed payout {reference}")
