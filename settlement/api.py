from datetime import datetime, timezone
from typing import Optional
from uuid import uuid4

from fastapi import FastAPI, Header, Query, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from .commissions import CommissionEngine
from .config import SettlementSettings, configure_logging, get_settings
from .deposits import DepositService
from .errors import InvalidArgumentError, NotFoundError, SettlementError
from .gateway import MercadoPagoGateway, PaymentGateway
from .models import (
    AffiliatedProduct, AffiliationRequest, AffiliationResponse, DepositConfirmation,
    DepositOrderResponse, DepositRequest, PaymentNotification, UserBalance,
    WithdrawalRequest, WithdrawalResponse,
)
from .payouts import PayoutProvider, build_payout_provider
from .store import InMemoryLedgerStore, LedgerStore, RecordNotFound
from .withdrawals import WithdrawalService


def create_app(
    store: Optional[LedgerStore] = None,
    gateway: Optional[PaymentGateway] = None,
    payouts: Optional[PayoutProvider] = None,
    settings: Optional[SettlementSettings] = None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(settings)

    store = store or InMemoryLedgerStore()
    deposits = DepositService(store, gateway or MercadoPagoGateway(settings), settings)
    withdrawals = WithdrawalService(store, payouts or build_payout_provider(settings), settings)
    CommissionEngine(store, settings).attach()

    app = FastAPI(
        title="Referral Settlement API",
        description="Deposit confirmation, withdrawals and referral commissions over a shared balance ledger",
        version="1.0.0",
        root_path=root_path,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(SettlementError)
    async def settlement_error_handler(request: Request, exc: SettlementError) -> JSONResponse:
        return JSONResponse(status_code=exc.http_status, content={"error": exc.code, "detail": exc.message})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        fields = ", ".join(".".join(str(part) for part in err["loc"]) for err in exc.errors())
        return JSONResponse(
            status_code=InvalidArgumentError.http_status,
            content={"error": InvalidArgumentError.code, "detail": f"Invalid request: {fields}"},
        )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "referral-settlement"}

    @app.post("/deposits", response_model=DepositOrderResponse, status_code=status.HTTP_201_CREATED, tags=["Deposits"])
    def create_deposit(request: DepositRequest, x_user_id: Optional[str] = Header(default=None)) -> DepositOrderResponse:
        return deposits.create_deposit_order(x_user_id, request.amount)

    @app.post("/webhooks/payments", response_model=DepositConfirmation, tags=["Deposits"])
    def payment_webhook(
        topic: Optional[str] = Query(default=None),
        order_id: Optional[str] = Query(default=None, alias="id"),
    ) -> DepositConfirmation:
        return deposits.confirm_deposit(PaymentNotification(topic=topic, order_id=order_id))

    @app.post("/withdrawals", response_model=WithdrawalResponse, tags=["Withdrawals"])
    def request_withdrawal(request: WithdrawalRequest, x_user_id: Optional[str] = Header(default=None)) -> WithdrawalResponse:
        return withdrawals.request_withdrawal(x_user_id, request.amount)

    @app.post(
        "/users/{user_id}/affiliated-products",
        response_model=AffiliationResponse,
        status_code=status.HTTP_201_CREATED,
        tags=["Affiliations"],
    )
    def create_affiliation(user_id: str, request: AffiliationRequest) -> AffiliationResponse:
        affiliated = AffiliatedProduct(
            id=request.affiliation_id or uuid4().hex,
            product_id=request.product_id,
            affiliated_at=datetime.now(timezone.utc),
            cycle_days=request.cycle_days,
            daily_return=request.daily_return,
        )
        try:
            created = store.add_affiliated_product(user_id, affiliated)
        except RecordNotFound as e:
            raise NotFoundError(f"User {user_id} not found") from e
        return AffiliationResponse(affiliation=affiliated, created=created)

    @app.get("/users/{user_id}/balance", response_model=UserBalance, tags=["Users"])
    def get_user_balance(user_id: str) -> UserBalance:
        user = store.get_user(user_id)
        if user is None:
            raise NotFoundError(f"User {user_id} not found")
        return UserBalance.from_record(user)

    return app


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(create_app(), host="0.0.0.0", port=8000)
