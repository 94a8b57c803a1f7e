from decimal import Decimal

import pytest

from settlement.config import SettlementSettings
from settlement.gateway import GatewayError, PaymentGateway
from settlement.models import CreatedOrder, PaymentOrder, Product, UserRecord
from settlement.payouts import PayoutError, PayoutOutcomeUnknown, PayoutProvider
from settlement.store import InMemoryLedgerStore


class FakeGateway(PaymentGateway):
    def __init__(self):
        self.orders: dict[str, PaymentOrder] = {}
        self.created: list[dict] = []
        self.fail = False
        self.lookups = 0

    def add_order(self, order_id, amount, user_id, status="approved"):
        self.orders[order_id] = PaymentOrder(
            id=order_id, amount=Decimal(str(amount)), status=status, external_reference=user_id,
        )

    def create_order(self, amount, description, payer_identity, metadata):
        if self.fail:
            raise GatewayError("gateway unavailable")
        order_id = f"order-{len(self.created) + 1}"
        self.created.append({
            "order_id": order_id, "amount": amount, "description": description,
            "payer_identity": payer_identity, "metadata": metadata,
        })
        return CreatedOrder(order_id=order_id, qr_code="00020126pix", qr_code_base64="cXItY29kZQ==")

    def get_order(self, order_id):
        self.lookups += 1
        if self.fail:
            raise GatewayError("timeout")
        if order_id not in self.orders:
            raise GatewayError(f"order {order_id} not found")
        return self.orders[order_id]


class RecordingPayoutProvider(PayoutProvider):
    def __init__(self, fail=False, timeout=False):
        self.fail = fail
        self.timeout = timeout
        self.transfers: list[tuple[str, Decimal]] = []

    def transfer(self, user, amount, reference):
        if self.fail:
            raise PayoutError("PIX provider rejected the transfer")
        if self.timeout:
            raise PayoutOutcomeUnknown("PIX provider did not answer in time")
        self.transfers.append((user.id, amount))
        return f"payout-{len(self.transfers)}"


@pytest.fixture
def settings():
    return SettlementSettings()


@pytest.fixture
def store():
    return InMemoryLedgerStore(
        users=[
            UserRecord(id="root"),
            UserRecord(id="r2"),
            UserRecord(id="r1", referred_by="r2"),
            UserRecord(id="u", referred_by="r1"),
            UserRecord(id="orphan-child", referred_by="root"),
            UserRecord(id="payee", balance=Decimal("100"), pix_key="payee@pix.example", pix_full_name="Ana Souza"),
        ],
        products=[Product(id="plan-1000", price=Decimal("1000"))],
    )


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def payouts():
    return RecordingPayoutProvider()


@pytest.fixture
def failing_payouts():
    return RecordingPayoutProvider(fail=True)


@pytest.fixture
def timed_out_payouts():
    return RecordingPayoutProvider(timeout=True)
