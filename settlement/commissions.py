import logging
from decimal import Decimal
from typing import Optional

from .config import SettlementSettings, get_settings
from .models import AffiliatedProduct, CommissionLevel, CommissionTransfer
from .store import LedgerStore, LedgerStoreError

logger = logging.getLogger(__name__)

EARNINGS_FIELDS = {
    CommissionLevel.LEVEL_1: "earnings_level1",
    CommissionLevel.LEVEL_2: "earnings_level2",
}


class CommissionEngine:
    """
    Pays the two-level referral cascade for a new product affiliation.

    Each level is an independent single-user write keyed by the affiliation,
    so a redelivered event pays nothing twice and a level-2 failure never
    undoes level 1.
    """

    def __init__(self, store: LedgerStore, settings: Optional[SettlementSettings] = None):
        self.store = store
        self.settings = settings or get_settings()

    def attach(self) -> None:
        self.store.subscribe_affiliations(self.handle_affiliation)

    def handle_affiliation(self, user_id: str, affiliated: AffiliatedProduct) -> None:
        self.on_affiliation_created(user_id, affiliated.product_id, affiliated.id)

    def rate_for(self, level: CommissionLevel) -> Decimal:
        if level == CommissionLevel.LEVEL_1:
            return self.settings.commission_level1_rate
        return self.settings.commission_level2_rate

    def on_affiliation_created(
        self, user_id: str, product_id: str, affiliation_id: Optional[str] = None
    ) -> list[CommissionTransfer]:
        product = self.store.get_product(product_id)
        if product is None:
            logger.info(f"Product {product_id} not found; no commissions")
            return []

        user = self.store.get_user(user_id)
        if user is None:
            logger.info(f"User {user_id} not found; no commissions")
            return []

        if not user.referred_by:
            logger.info(f"User {user_id} has no referrer")
            return []

        event_key = affiliation_id or f"{user_id}:{product_id}"
        transfers = []

        referrer_id = user.referred_by
        level1 = self._pay(CommissionLevel.LEVEL_1, referrer_id, product.price, event_key)
        if level1 is False:
            return transfers
        if level1:
            transfers.append(level1)

        referrer = self.store.get_user(referrer_id)
        if referrer is None:
            return transfers
        if not referrer.referred_by:
            logger.info(f"Referrer {referrer_id} has no referrer (level 2)")
            return transfers

        level2 = self._pay(CommissionLevel.LEVEL_2, referrer.referred_by, product.price, event_key)
        if level2:
            transfers.append(level2)
        return transfers

    def _pay(self, level: CommissionLevel, recipient: str, price: Decimal, event_key: str):
        """Returns the transfer, None when already paid, or False when the write failed."""
        amount = price * self.rate_for(level)
        try:
            applied = self.store.atomic_update(
                recipient,
                increments={"balance": amount, EARNINGS_FIELDS[level]: amount},
                idempotency_key=f"commission:{event_key}:L{level.value}",
            )
        except LedgerStoreError as e:
            logger.error(f"Error paying level {level.value} commission to {recipient}: {e}", exc_info=True)
            return False

        if not applied:
            logger.warning(f"Level {level.value} commission for {event_key} already paid to {recipient}")
            return None

        logger.info(f"Paid {amount} level {level.value} commission to {recipient}")
        return CommissionTransfer(level=level, amount=amount, recipient=recipient)
