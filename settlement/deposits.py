import logging
from decimal import Decimal, InvalidOperation
from typing import Optional

from .config import SettlementSettings, get_settings
from .errors import InternalError, InvalidArgumentError, UnauthenticatedError
from .gateway import GatewayError, PaymentGateway
from .models import (
    DepositConfirmation,
    DepositOrderResponse,
    DepositStatus,
    PaymentNotification,
    UserRecord,
)
from .store import LedgerStore, LedgerStoreError, RecordNotFound

logger = logging.getLogger(__name__)

PAYMENT_TOPIC = "payment"


def parse_amount(amount) -> Optional[Decimal]:
    if amount is None or isinstance(amount, bool):
        return None
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError):
        return None
    return value if value.is_finite() else None


class DepositService:
    def __init__(self, store: LedgerStore, gateway: PaymentGateway, settings: Optional[SettlementSettings] = None):
        self.store = store
        self.gateway = gateway
        self.settings = settings or get_settings()

    def compute_bonus(self, amount: Decimal, has_deposited: bool) -> Decimal:
        if not has_deposited and amount >= self.settings.bonus_threshold:
            return amount * self.settings.bonus_rate
        return Decimal("0")

    def create_deposit_order(self, user_id: Optional[str], amount) -> DepositOrderResponse:
        if not user_id:
            raise UnauthenticatedError("Authentication is required to create a deposit")

        value = parse_amount(amount)
        if value is None or value < self.settings.deposit_min or value > self.settings.deposit_max:
            raise InvalidArgumentError("Invalid deposit amount")

        try:
            order = self.gateway.create_order(
                amount=value,
                description=f"Deposit - user {user_id}",
                payer_identity=f"{user_id}@{self.settings.payer_email_domain}",
                metadata={
                    "external_reference": user_id,
                    "notification_url": self.settings.notification_url,
                },
            )
        except GatewayError as e:
            logger.error(f"Failed to create PIX order for user {user_id}: {e}", exc_info=True)
            raise InternalError("Could not generate the PIX charge. Try again.") from e

        logger.info(f"Created deposit order {order.order_id} of {value} for user {user_id}")
        return DepositOrderResponse(
            order_id=order.order_id,
            qr_code=order.qr_code,
            qr_code_base64=order.qr_code_base64,
        )

    def confirm_deposit(self, notification: PaymentNotification) -> DepositConfirmation:
        """
        Credit an approved gateway order to its user exactly once.

        Irrelevant topics, malformed notifications, non-approved orders and
        unknown users are acknowledged with status IGNORED. Gateway and ledger
        failures raise a retryable InternalError.
        """
        if notification.topic != PAYMENT_TOPIC:
            return self._ignored(notification.order_id, "Not a payment topic")
        if not notification.order_id:
            logger.warning("Payment notification without an order id")
            return self._ignored(None, "Missing order id")

        order_id = notification.order_id
        try:
            order = self.gateway.get_order(order_id)
        except GatewayError as e:
            logger.error(f"Could not fetch order {order_id} from the gateway: {e}")
            raise InternalError(f"Gateway lookup failed for order {order_id}") from e

        if not order.is_approved():
            logger.info(f"Order {order_id} has status {order.status}; nothing to credit")
            return self._ignored(order_id, f"Order status is {order.status}")

        user_id = order.external_reference
        if not user_id or self.store.get_user(user_id) is None:
            logger.warning(f"Order {order_id} references unknown user {user_id}")
            return self._ignored(order_id, "Unknown user")

        applied_bonus = Decimal("0")

        def credit(user: UserRecord):
            nonlocal applied_bonus
            applied_bonus = self.compute_bonus(order.amount, user.has_deposited)
            return {"balance": order.amount + applied_bonus}, {"has_deposited": True}

        try:
            applied = self.store.atomic_update(user_id, idempotency_key=f"deposit:{order_id}", compute=credit)
        except RecordNotFound:
            logger.warning(f"User {user_id} disappeared before order {order_id} was credited")
            return self._ignored(order_id, "Unknown user")
        except LedgerStoreError as e:
            logger.error(f"Ledger write failed for order {order_id}: {e}", exc_info=True)
            raise InternalError(f"Ledger write failed for order {order_id}") from e

        if not applied:
            logger.warning(f"Order {order_id} was already credited; ignoring redelivery")
            return DepositConfirmation(
                status=DepositStatus.DUPLICATE,
                order_id=order_id,
                user_id=user_id,
                amount=order.amount,
                message="Order already processed",
            )

        total = order.amount + applied_bonus
        logger.info(f"Credited {total} (including {applied_bonus} bonus) to user {user_id} for order {order_id}")
        return DepositConfirmation(
            status=DepositStatus.CREDITED,
            order_id=order_id,
            user_id=user_id,
            amount=order.amount,
            bonus=applied_bonus,
            message="Deposit credited",
        )

    def _ignored(self, order_id: Optional[str], reason: str) -> DepositConfirmation:
        return DepositConfirmation(status=DepositStatus.IGNORED, order_id=order_id, message=reason)
