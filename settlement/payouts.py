import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional
from uuid import uuid4

import requests

from .config import SettlementSettings, get_settings
from .models import UserRecord

logger = logging.getLogger(__name__)


class PayoutError(Exception):
    """Raised when a PIX transfer could not be started."""


class PayoutOutcomeUnknown(Exception):
    """Raised when the provider did not answer in time; the transfer may or may not have been sent."""


class PayoutProvider(ABC):
    @abstractmethod
    def transfer(self, user: UserRecord, amount: Decimal, reference: str) -> str:
        """Send ``amount`` to the user's PIX key and return the provider's transfer id."""


class SimulatedPayoutProvider(PayoutProvider):
    def transfer(self, user, amount, reference) -> str:
        logger.info(f"Simulated PIX transfer of {amount} to key {user.pix_key} ({user.pix_full_name}) for user {user.id}")
        return f"simulated-{reference}"


class MercadoPagoPayoutProvider(PayoutProvider):
    def __init__(self, settings: Optional[SettlementSettings] = None, session: Optional[requests.Session] = None):
        self.settings = settings or get_settings()
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {self.settings.mercadopago_token or ''}",
            "Content-Type": "application/json",
        })

    def transfer(self, user, amount, reference) -> str:
        payload = {
            "transaction_amount": float(amount),
            "description": f"Withdrawal - user {user.id}",
            "external_reference": reference,
            "payment_method_id": "pix",
            "receiver_address": {
                "pix_key": user.pix_key,
                "receiver_name": user.pix_full_name,
            },
        }
        try:
            response = self.session.post(
                f"{self.settings.mercadopago_base_url}/v1/payouts",
                json=payload,
                headers={"X-Idempotency-Key": reference},
                timeout=self.settings.gateway_timeout_seconds,
            )
            response.raise_for_status()
            return str(response.json()["id"])
        except requests.exceptions.ConnectTimeout as e:
            raise PayoutError(f"PIX payout {reference} could not connect: {e}") from e
        except requests.exceptions.Timeout as e:
            raise PayoutOutcomeUnknown(f"PIX payout {reference} timed out after {self.settings.gateway_timeout_seconds}s") from e
        except requests.exceptions.RequestException as e:
            raise PayoutError(f"PIX payout request failed: {e}") from e
        except (KeyError, ValueError) as e:
            raise PayoutError(f"Unexpected payout response: {e}") from e


def build_payout_provider(settings: Optional[SettlementSettings] = None) -> PayoutProvider:
    settings = settings or get_settings()
    if settings.payout_mode == "live":
        return MercadoPagoPayoutProvider(settings)
    return SimulatedPayoutProvider()


def new_withdrawal_reference(user_id: str) -> str:
    return f"WD-{user_id}-{uuid4().hex[:12]}"
