import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Optional

import httpx
import uvicorn
from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from redis.asyncio import Redis
from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from .config import Settings, get_settings
from .exceptions import (
    CredentialError,
    PaymentError,
    ProviderAuthError,
    ProviderRejected,
    ValidationError,
)
from .initiator import InitiationContext, InitiationResult, PaymentInitiator
from .logging_config import configure_logging
from .models import Base, Profile
from .reconciler import CallbackReconciler, WriteFailureAlerter
from .schemas import (
    InitiatePaymentRequest,
    InitiateSubscriptionRequest,
    LinkPaymentRequest,
    SubscriptionHistoryView,
    TransactionView,
)
from .stores import (
    CredentialStore,
    InvoiceStore,
    PaymentLinkStore,
    ProfileStore,
    SubscriptionHistoryStore,
    SubscriptionStore,
    TransactionStore,
)
from .sweeper import PendingSweeper
from .token_cache import TokenCache

settings = get_settings()
configure_logging(settings.LOG_LEVEL)
logger = logging.getLogger("lipasasa")

# Most specific first; anything unlisted is a 500.
ERROR_STATUS: list[tuple[type[PaymentError], int]] = [
    (ValidationError, 400),
    (CredentialError, 400),
    (ProviderRejected, 400),
    (ProviderAuthError, 500),
]


@dataclass
class Services:
    initiator: PaymentInitiator
    reconciler: CallbackReconciler
    sweeper: PendingSweeper
    transactions: TransactionStore
    profiles: ProfileStore
    history: SubscriptionHistoryStore


def build_services(
    settings: Settings,
    sessionmaker: async_sessionmaker[AsyncSession],
    http_client: httpx.AsyncClient,
    redis: Optional[Redis] = None,
) -> Services:
    transactions = TransactionStore(sessionmaker)
    subscriptions = SubscriptionStore(sessionmaker)
    invoices = InvoiceStore(sessionmaker)
    profiles = ProfileStore(sessionmaker)
    history = SubscriptionHistoryStore(sessionmaker)
    initiator = PaymentInitiator(
        settings,
        http_client,
        credentials=CredentialStore(sessionmaker),
        transactions=transactions,
        subscriptions=subscriptions,
        invoices=invoices,
        profiles=profiles,
        links=PaymentLinkStore(sessionmaker),
        token_cache=TokenCache(redis),
        history=history,
    )
    reconciler = CallbackReconciler(
        transactions,
        subscriptions,
        invoices,
        profiles,
        subscription_period_days=settings.SUBSCRIPTION_PERIOD_DAYS,
        alerter=WriteFailureAlerter(http_client, settings.ALERT_WEBHOOK_URL),
        history=history,
    )
    sweeper = PendingSweeper(
        transactions, subscriptions, settings.PENDING_TTL_MINUTES, history=history
    )
    return Services(initiator, reconciler, sweeper, transactions, profiles, history)


# FastAPI App
@asynccontextmanager
async def lifespan(app: FastAPI):
    engine: AsyncEngine = create_async_engine(settings.database_url)
    sessionmaker = async_sessionmaker(engine, expire_on_commit=False)

    # Ensure database is reachable before starting services
    async with engine.begin() as conn:
        await conn.execute(text("SELECT 1"))
        await conn.run_sync(Base.metadata.create_all)

    redis: Redis | None = None
    try:
        redis = Redis.from_url(
            settings.redis_url, encoding="utf-8", decode_responses=True
        )
        await redis.ping()
    except Exception as exc:  # pragma: no cover - startup warning
        logger.warning("Redis unavailable; provider tokens will not be cached: %s", exc)
        redis = None

    http_client = httpx.AsyncClient(timeout=settings.PROVIDER_TIMEOUT_SECONDS)
    app.state.services = build_services(settings, sessionmaker, http_client, redis)

    sweeper_task: asyncio.Task | None = None
    if settings.SWEEP_INTERVAL_SECONDS > 0:
        sweeper_task = asyncio.create_task(
            app.state.services.sweeper.run_forever(settings.SWEEP_INTERVAL_SECONDS)
        )
    try:
        yield
    finally:
        if sweeper_task is not None:
            sweeper_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await sweeper_task
        await http_client.aclose()
        await engine.dispose()
        if redis is not None:
            await redis.close()


app = FastAPI(
    title="LipaSasa Payments",
    version="1.0.0",
    lifespan=lifespan
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=False,
    allow_methods=["*"],
    allow_headers=["*"],
)

bearer = HTTPBearer(auto_error=False)


def get_services(request: Request) -> Services:
    return request.app.state.services


async def current_merchant(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer),
    services: Services = Depends(get_services),
) -> Profile:
    if credentials is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    profile = await services.profiles.get_by_api_key(credentials.credentials)
    if profile is None:
        raise HTTPException(status_code=401, detail="Unauthorized")
    return profile


@app.exception_handler(HTTPException)
async def http_error_handler(request: Request, exc: HTTPException):
    return JSONResponse(
        status_code=exc.status_code, content={"success": False, "error": exc.detail}
    )


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    field = ".".join(str(part) for part in errors[0]["loc"][1:]) if errors else "body"
    message = errors[0]["msg"] if errors else "Invalid request"
    return JSONResponse(
        status_code=400, content={"success": False, "error": f"{field}: {message}"}
    )


def error_status(exc: PaymentError) -> int:
    for error_type, status in ERROR_STATUS:
        if isinstance(exc, error_type):
            return status
    return 500


async def run_initiation(
    action: str,
    call: Callable[[], Awaitable[InitiationResult]],
    id_field: str = "transactionId",
) -> JSONResponse:
    try:
        result = await call()
    except PaymentError as exc:
        status = error_status(exc)
        if status >= 500:
            logger.error("%s failed: %s", action, exc)
        else:
            logger.warning("%s rejected: %s", action, exc)
        return JSONResponse(status_code=status, content={"success": False, "error": str(exc)})
    except Exception:
        logger.exception("Unexpected error during %s", action)
        return JSONResponse(
            status_code=500, content={"success": False, "error": "Internal server error"}
        )

    content: dict[str, Any] = {
        "success": True,
        "message": result.message,
        "correlationId": result.correlation_id,
        id_field: result.record_id,
    }
    if result.approval_url:
        content["approvalUrl"] = result.approval_url
    return JSONResponse(status_code=200, content=content)


@app.get("/health")
async def health_check():
    return {"status": "healthy", "service": "lipasasa-payments"}


@app.post("/payments/initiate")
async def initiate_payment(
    body: InitiatePaymentRequest,
    merchant: Profile = Depends(current_merchant),
    services: Services = Depends(get_services),
):
    """Start a payment into the authenticated merchant's account."""
    context = InitiationContext(
        invoice_id=body.invoice_id,
        description=body.description,
        country=merchant.country,
    )
    return await run_initiation(
        "payment initiation",
        lambda: services.initiator.initiate(
            merchant.merchant_id, body.amount, body.payer_reference, body.provider, context
        ),
    )


@app.post("/links/{slug}/pay")
async def pay_link(
    slug: str,
    body: LinkPaymentRequest,
    services: Services = Depends(get_services),
):
    """Start a payment through a public payment link."""
    return await run_initiation(
        "payment link initiation",
        lambda: services.initiator.initiate_for_link(
            slug, body.amount, body.payer_reference, body.provider
        ),
    )


@app.post("/subscriptions/initiate")
async def initiate_subscription(
    body: InitiateSubscriptionRequest,
    merchant: Profile = Depends(current_merchant),
    services: Services = Depends(get_services),
):
    return await run_initiation(
        "subscription initiation",
        lambda: services.initiator.initiate_subscription(
            merchant.merchant_id,
            body.plan_name,
            body.amount,
            body.provider,
            payer_reference=body.payer_reference,
            currency=body.currency,
        ),
        id_field="subscriptionId",
    )


@app.get("/subscriptions/history")
async def subscription_history(
    merchant: Profile = Depends(current_merchant),
    services: Services = Depends(get_services),
):
    entries = await services.history.list_for_merchant(merchant.merchant_id)
    return {
        "success": True,
        "history": [
            SubscriptionHistoryView(
                id=entry.id,
                plan_name=entry.plan_name,
                amount=str(entry.amount),
                currency=entry.currency,
                provider=entry.provider,
                status=entry.status,
                transaction_ref=entry.transaction_ref,
                receipt_or_capture_id=entry.receipt_or_capture_id,
                failure_reason=entry.failure_reason,
                created_at=entry.created_at.isoformat(),
            ).model_dump(by_alias=True)
            for entry in entries
        ],
    }


@app.get("/payments/{transaction_id}")
async def get_payment(
    transaction_id: str,
    merchant: Profile = Depends(current_merchant),
    services: Services = Depends(get_services),
):
    transaction = await services.transactions.get(transaction_id, merchant.merchant_id)
    if transaction is None:
        raise HTTPException(status_code=404, detail=f"Payment not found: {transaction_id}")

    view = TransactionView(
        id=transaction.id,
        status=transaction.status,
        amount=str(transaction.amount),
        currency=transaction.currency,
        provider=transaction.provider,
        correlation_id=transaction.correlation_id,
        result_code=transaction.result_code,
        result_desc=transaction.result_desc,
        receipt_or_capture_id=transaction.receipt_or_capture_id,
        created_at=transaction.created_at.isoformat(),
        updated_at=transaction.updated_at.isoformat(),
    )
    return view.model_dump(by_alias=True)


async def _handle_callback(request: Request, provider: Optional[str]) -> dict[str, Any]:
    services: Services = request.app.state.services
    try:
        raw = await request.json()
    except ValueError:
        logger.warning("Callback for %s with a non-JSON body; acknowledged", provider or "unknown provider")
        return {"received": True}

    try:
        return await services.reconciler.reconcile(raw, provider)
    except Exception:  # pragma: no cover - reconcile already contains its errors
        logger.exception("Callback for %s escaped reconciliation", provider or "unknown provider")
        return {"received": True}


@app.post("/callback/{provider}")
async def provider_callback(provider: str, request: Request):
    """Receive a provider's asynchronous payment outcome. Always answers 200."""
    return await _handle_callback(request, provider)


@app.post("/callback")
async def untagged_callback(request: Request):
    return await _handle_callback(request, None)


@app.get("/")
async def root():
    return {"message": "LipaSasa Payments API", "callback_base": f"{settings.PUBLIC_BASE_URL}/callback"}


if __name__ == "__main__":
    uvicorn.run(
        "lipasasa.main:app",
        host="0.0.0.0",
        port=settings.HTTP_PORT,
        reload=True,
        log_level="info"
    )
