import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Optional

from .config import SettlementSettings, get_settings
from .models import AffiliatedProduct, as_utc
from .store import LedgerStore, LedgerStoreError

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = 60 * 60 * 24


class DailyYieldDistributor:
    """Daily payout of affiliated-product returns. Disabled unless daily_yield_enabled is set."""

    def __init__(self, store: LedgerStore, settings: Optional[SettlementSettings] = None):
        self.store = store
        self.settings = settings or get_settings()

    def daily_yield(self, products: list[AffiliatedProduct], now: datetime) -> Decimal:
        total = Decimal("0")
        for product in products:
            days_passed = (now - product.affiliated_at).total_seconds() / SECONDS_PER_DAY
            if days_passed <= product.cycle_days:
                total += product.daily_return
        return total

    def run(self, now: Optional[datetime] = None) -> dict:
        if not self.settings.daily_yield_enabled:
            logger.info("Daily yield distribution is disabled")
            return {"enabled": False, "credited_users": 0, "total": Decimal("0")}

        now = as_utc(now) if now else datetime.now(timezone.utc)
        day = now.date().isoformat()
        logger.info(f"Starting daily yield distribution for {day}")

        credited_users = 0
        total = Decimal("0")
        for user in self.store.list_users():
            amount = self.daily_yield(self.store.list_affiliated_products(user.id), now)
            if amount <= 0:
                continue
            try:
                applied = self.store.atomic_update(
                    user.id,
                    increments={"balance": amount},
                    idempotency_key=f"yield:{user.id}:{day}",
                )
            except LedgerStoreError as e:
                logger.error(f"Daily yield for user {user.id} failed: {e}", exc_info=True)
                continue
            if applied:
                logger.info(f"Added {amount} daily yield to user {user.id}")
                credited_users += 1
                total += amount

        logger.info(f"Daily yield distribution for {day} finished: {credited_users} users, {total} total")
        return {"enabled": True, "credited_users": credited_users, "total": total}
