import logging
from abc import ABC, abstractmethod
from decimal import Decimal
from typing import Optional
from uuid import uuid4

import requests

from .config import SettlementSettings, get_settings
from .models import CreatedOrder, PaymentOrder

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """Raised when the payment gateway cannot be reached or answers with an error."""


class PaymentGateway(ABC):
    @abstractmethod
    def create_order(self, amount: Decimal, description: str, payer_identity: str, metadata: dict) -> CreatedOrder: ...

    @abstractmethod
    def get_order(self, order_id: str) -> PaymentOrder: ...


class MercadoPagoGateway(PaymentGateway):
    """PIX payments through the Mercado Pago REST API."""

    def __init__(self, settings: Optional[SettlementSettings] = None, session: Optional[requests.Session] = None):
        self.settings = settings or get_settings()
        self.session = session or requests.Session()
        self.session.headers.update({
            "Authorization": f"Bearer {self.settings.mercadopago_token or ''}",
            "Content-Type": "application/json",
        })

    def create_order(self, amount, description, payer_identity, metadata) -> CreatedOrder:
        payload = {
            "transaction_amount": float(amount),
            "description": description,
            "payment_method_id": "pix",
            "payer": {"email": payer_identity},
            "external_reference": metadata.get("external_reference"),
        }
        if metadata.get("notification_url"):
            payload["notification_url"] = metadata["notification_url"]

        body = self._request(
            "POST", "/v1/payments", json=payload,
            headers={"X-Idempotency-Key": str(uuid4())},
        )
        transaction_data = body.get("point_of_interaction", {}).get("transaction_data", {})
        return CreatedOrder(
            order_id=str(body["id"]),
            qr_code=transaction_data.get("qr_code"),
            qr_code_base64=transaction_data.get("qr_code_base64"),
        )

    def get_order(self, order_id: str) -> PaymentOrder:
        body = self._request("GET", f"/v1/payments/{order_id}")
        try:
            return PaymentOrder(
                id=str(body["id"]),
                amount=Decimal(str(body["transaction_amount"])),
                status=body["status"],
                external_reference=body.get("external_reference"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise GatewayError(f"Unexpected payment payload for order {order_id}: {e}") from e

    def _request(self, method: str, path: str, **kwargs) -> dict:
        url = f"{self.settings.mercadopago_base_url}{path}"
        try:
            response = self.session.request(method, url, timeout=self.settings.gateway_timeout_seconds, **kwargs)
            response.raise_for_status()
            return response.json()
        except requests.exceptions.Timeout as e:
            raise GatewayError(f"Mercado Pago timeout after {self.settings.gateway_timeout_seconds}s") from e
        except requests.exceptions.RequestException as e:
            raise GatewayError(f"Mercado Pago request failed: {e}") from e
        except ValueError as e:
            raise GatewayError(f"Mercado Pago returned a non-JSON body: {e}") from e
