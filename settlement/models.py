from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Optional
from pydantic import BaseModel, Field, ConfigDict, field_validator


def as_utc(value: datetime) -> datetime:
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class OrderStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class DepositStatus(str, Enum):
    CREDITED = "credited"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"


class CommissionLevel(int, Enum):
    LEVEL_1 = 1
    LEVEL_2 = 2


class UserRecord(BaseModel):
    id: str
    balance: Decimal = Decimal("0")
    has_deposited: bool = False
    referred_by: Optional[str] = None
    pix_key: Optional[str] = None
    pix_full_name: Optional[str] = None
    earnings_level1: Decimal = Decimal("0")
    earnings_level2: Decimal = Decimal("0")
    version: int = 0

    def has_payout_profile(self) -> bool:
        return bool(self.pix_key) and bool(self.pix_full_name)


class Product(BaseModel):
    id: str
    price: Decimal


class AffiliatedProduct(BaseModel):
    id: str
    product_id: str
    affiliated_at: datetime
    cycle_days: int = 0
    daily_return: Decimal = Decimal("0")

    @field_validator("affiliated_at")
    @classmethod
    def assume_utc(cls, value: datetime) -> datetime:
        """Naive timestamps are stored as UTC."""
        return as_utc(value)


class PaymentOrder(BaseModel):
    id: str
    amount: Decimal
    status: str
    external_reference: Optional[str] = None

    def is_approved(self) -> bool:
        return self.status == OrderStatus.APPROVED.value


class CreatedOrder(BaseModel):
    order_id: str
    qr_code: Optional[str] = None
    qr_code_base64: Optional[str] = None


class PaymentNotification(BaseModel):
    topic: Optional[str] = None
    order_id: Optional[str] = None


class CommissionTransfer(BaseModel):
    level: CommissionLevel
    amount: Decimal
    recipient: str


class DepositRequest(BaseModel):
    amount: Optional[Decimal] = None

    model_config = ConfigDict(json_schema_extra={
        "example": {"amount": 300.00}
    })


class DepositOrderResponse(BaseModel):
    order_id: str
    qr_code: Optional[str] = None
    qr_code_base64: Optional[str] = None


class DepositConfirmation(BaseModel):
    status: DepositStatus
    order_id: Optional[str] = None
    user_id: Optional[str] = None
    amount: Decimal = Decimal("0")
    bonus: Decimal = Decimal("0")
    message: str


class WithdrawalRequest(BaseModel):
    amount: Optional[Decimal] = Field(default=None, description="Amount to transfer to the registered PIX key")

    model_config = ConfigDict(json_schema_extra={
        "example": {"amount": 150.00}
    })


class WithdrawalResponse(BaseModel):
    success: bool
    message: str
    payout_reference: Optional[str] = None
    balance: Decimal


class AffiliationRequest(BaseModel):
    product_id: str
    cycle_days: int = 0
    daily_return: Decimal = Decimal("0")
    affiliation_id: Optional[str] = None


class AffiliationResponse(BaseModel):
    affiliation: AffiliatedProduct
    created: bool


class UserBalance(BaseModel):
    user_id: str
    balance: Decimal
    has_deposited: bool
    earnings_level1: Decimal
    earnings_level2: Decimal

    @classmethod
    def from_record(cls, record: UserRecord) -> "UserBalance":
        return cls(
            user_id=record.id,
            balance=record.balance,
            has_deposited=record.has_deposited,
            earnings_level1=record.earnings_level1,
            earnings_level2=record.earnings_level2,
        )
