import logging
from contextlib import asynccontextmanager
from typing import Optional
from uuid import UUID

import stripe
from fastapi import Depends, FastAPI, Header, HTTPException, Request, status
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ValidationError as PydanticValidationError

from .accounts import AccountService
from .codes import ReferralCodeGenerator
from .config import Settings, get_settings
from .exceptions import ConflictError, LedgerServiceError, NotFoundError, UpstreamProviderError
from .logging_config import configure_logging
from .models import (
    ConnectAccountRequest,
    CreateAccountRequest,
    CreateReferralRequest,
    CustomCodeRequest,
    FailReferralRequest,
    LeaderboardEntry,
    Payout,
    PayoutMetrics,
    PayoutRequest,
    PayoutResponse,
    Referral,
    ReferralResponse,
    ReferralSignupRequest,
    RefundEligibility,
    RefundMetrics,
    RefundRequest,
    UserAccount,
    UserStatsResponse,
)
from .payments import StripePaymentProvider
from .service import LedgerService
from .stats import StatsAggregator
from .storage import InMemoryStorage
from .webhooks import WebhookResult, WebhookRouter

logger = logging.getLogger(__name__)


def _status_for(exc: LedgerServiceError) -> int:
    if isinstance(exc, NotFoundError):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ConflictError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, UpstreamProviderError):
        return status.HTTP_502_BAD_GATEWAY
    return status.HTTP_400_BAD_REQUEST


def create_app(
    settings: Optional[Settings] = None,
    storage: Optional[InMemoryStorage] = None,
    payment_provider=None,
    root_path: str = "",
) -> FastAPI:
    settings = settings or get_settings()
    storage = storage or InMemoryStorage()
    if payment_provider is None and settings.stripe_secret_key:
        payment_provider = StripePaymentProvider(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(settings.log_level)
        storage.open()
        logger.info("Referral ledger started (%s)", settings.environment)
        try:
            yield
        finally:
            storage.close()

    app = FastAPI(
        title="Referral Commission Ledger API",
        description="Referral commissions settled from payment provider events",
        version="1.0.0",
        root_path=root_path,
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    code_generator = ReferralCodeGenerator(storage)
    accounts = AccountService(storage, code_generator)
    ledger = LedgerService(storage, payment_provider, settings, code_generator)
    app.state.storage = storage
    app.state.accounts = accounts
    app.state.ledger = ledger
    app.state.stats = StatsAggregator(storage, settings)
    app.state.webhooks = WebhookRouter(ledger, accounts, payment_provider)
    app.state.payment_provider = payment_provider

    @app.exception_handler(LedgerServiceError)
    async def ledger_error_handler(request: Request, exc: LedgerServiceError):
        body = {"detail": str(exc), "error": type(exc).__name__}
        if isinstance(exc, UpstreamProviderError):
            body.update({"provider_status": exc.status, "provider_code": exc.code})
        return JSONResponse(status_code=_status_for(exc), content=body)

    register_routes(app)
    return app


def caller_id(x_user_id: str = Header(..., description="Verified user id from the identity provider")) -> UUID:
    try:
        return UUID(x_user_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid user identity")


def ensure_participant(referral: Referral, user_id: UUID) -> None:
    if user_id not in (referral.referrer_id, referral.referred_user_id):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a party to this referral")


def get_accounts(request: Request) -> AccountService:
    return request.app.state.accounts


def get_ledger(request: Request) -> LedgerService:
    return request.app.state.ledger


def get_stats(request: Request) -> StatsAggregator:
    return request.app.state.stats


def register_routes(app: FastAPI) -> None:
    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "healthy", "service": "referral-ledger"}

    @app.post("/accounts", response_model=UserAccount, status_code=status.HTTP_201_CREATED, tags=["Accounts"])
    def create_account(request: CreateAccountRequest, accounts: AccountService = Depends(get_accounts)) -> UserAccount:
        return accounts.create_account(request.email, request.user_id)

    @app.get("/accounts/me", response_model=UserAccount, tags=["Accounts"])
    def get_my_account(user_id: UUID = Depends(caller_id), accounts: AccountService = Depends(get_accounts)) -> UserAccount:
        return accounts.get_account(user_id)

    @app.put("/accounts/me/custom-code", response_model=UserAccount, tags=["Accounts"])
    def set_custom_code(
        request: CustomCodeRequest,
        user_id: UUID = Depends(caller_id),
        accounts: AccountService = Depends(get_accounts),
    ) -> UserAccount:
        return accounts.set_custom_referral_code(user_id, request.custom_code)

    @app.put("/accounts/me/payout-account", response_model=UserAccount, tags=["Accounts"])
    def connect_payout_account(
        request: ConnectAccountRequest,
        user_id: UUID = Depends(caller_id),
        accounts: AccountService = Depends(get_accounts),
    ) -> UserAccount:
        return accounts.connect_payout_account(user_id, request.account_id, request.payout_enabled)

    @app.post("/referral-codes", tags=["Referrals"])
    def generate_referral_code(ledger: LedgerService = Depends(get_ledger)):
        return {"code": ledger.generate_referral_code()}

    @app.get("/referral-codes/{code}", tags=["Referrals"])
    def validate_referral_code(code: str, accounts: AccountService = Depends(get_accounts)):
        referrer = accounts.resolve_referral_code(code)
        return {"valid": True, "referrer_id": referrer.id}

    @app.post("/referrals", response_model=ReferralResponse, status_code=status.HTTP_201_CREATED, tags=["Referrals"])
    def create_referral(
        request: ReferralSignupRequest,
        user_id: UUID = Depends(caller_id),
        ledger: LedgerService = Depends(get_ledger),
    ) -> ReferralResponse:
        return ledger.create_referral(CreateReferralRequest(
            referral_code=request.referral_code,
            referred_user_id=user_id,
            subscription_tier=request.subscription_tier,
            subscription_amount=request.subscription_amount,
        ))

    # Completion is driven only by the provider's invoice.paid webhook.

    @app.get("/referrals/{referral_id}", response_model=Referral, tags=["Referrals"])
    def get_referral(
        referral_id: UUID, user_id: UUID = Depends(caller_id), ledger: LedgerService = Depends(get_ledger)
    ) -> Referral:
        referral = ledger.get_referral(referral_id)
        ensure_participant(referral, user_id)
        return referral

    @app.post("/referrals/{referral_id}/fail", response_model=ReferralResponse, tags=["Referrals"])
    def fail_referral(
        referral_id: UUID,
        request: FailReferralRequest,
        user_id: UUID = Depends(caller_id),
        ledger: LedgerService = Depends(get_ledger),
    ) -> ReferralResponse:
        ensure_participant(ledger.get_referral(referral_id), user_id)
        return ledger.fail_referral(referral_id, request.reason)

    @app.get("/referrals/{referral_id}/refund-eligibility", response_model=RefundEligibility, tags=["Refunds"])
    def check_refund_eligibility(
        referral_id: UUID,
        user_id: UUID = Depends(caller_id),
        ledger: LedgerService = Depends(get_ledger),
        stats: StatsAggregator = Depends(get_stats),
    ) -> RefundEligibility:
        ensure_participant(ledger.get_referral(referral_id), user_id)
        return stats.check_refund_eligibility(referral_id)

    @app.post("/refunds", response_model=ReferralResponse, tags=["Refunds"])
    def request_refund(
        request: RefundRequest, user_id: UUID = Depends(caller_id), ledger: LedgerService = Depends(get_ledger)
    ) -> ReferralResponse:
        referral = ledger.get_referral_by_payment_intent(request.payment_intent_id)
        if referral.referred_user_id != user_id:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only the paying user can request a refund")
        return ledger.request_refund(request.payment_intent_id)

    @app.get("/refunds/history", response_model=list[Referral], tags=["Refunds"])
    def refund_history(user_id: UUID = Depends(caller_id), stats: StatsAggregator = Depends(get_stats)):
        return stats.get_refund_history(user_id)

    @app.get("/refunds/metrics", response_model=RefundMetrics, tags=["Refunds"])
    def refund_metrics(user_id: UUID = Depends(caller_id), stats: StatsAggregator = Depends(get_stats)) -> RefundMetrics:
        return stats.get_refund_metrics(user_id)

    @app.post("/payouts", response_model=PayoutResponse, tags=["Payouts"])
    def request_payout(
        request: PayoutRequest,
        user_id: UUID = Depends(caller_id),
        ledger: LedgerService = Depends(get_ledger),
    ) -> PayoutResponse:
        return ledger.request_payout(user_id, request.amount)

    @app.get("/payouts", response_model=list[Payout], tags=["Payouts"])
    def payout_history(
        limit: int = 10, user_id: UUID = Depends(caller_id), stats: StatsAggregator = Depends(get_stats)
    ):
        return stats.get_payout_history(user_id, limit)

    @app.get("/payouts/metrics", response_model=PayoutMetrics, tags=["Payouts"])
    def payout_metrics(user_id: UUID = Depends(caller_id), stats: StatsAggregator = Depends(get_stats)) -> PayoutMetrics:
        return stats.get_payout_metrics(user_id)

    @app.get("/stats", response_model=UserStatsResponse, tags=["Stats"])
    def user_stats(user_id: UUID = Depends(caller_id), stats: StatsAggregator = Depends(get_stats)) -> UserStatsResponse:
        return stats.get_stats(user_id)

    @app.get("/leaderboard", response_model=list[LeaderboardEntry], tags=["Stats"])
    def leaderboard(stats: StatsAggregator = Depends(get_stats)):
        return stats.get_leaderboard()

    @app.post("/webhooks/stripe", response_model=WebhookResult, tags=["Webhooks"])
    async def stripe_webhook(request: Request):
        provider = request.app.state.payment_provider
        if provider is None:
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Webhooks not configured")

        payload = await request.body()
        signature = request.headers.get("Stripe-Signature")
        try:
            event = provider.construct_event(payload, signature)
        except ValueError as e:
            logger.warning("Failed to parse event: %s", str(e))
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid payload")
        except stripe.SignatureVerificationError as e:
            logger.warning("Failed to validate signature: %s", str(e))
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid signature")

        try:
            return await run_in_threadpool(request.app.state.webhooks.handle, event)
        except (KeyError, PydanticValidationError) as e:
            logger.error("Invalid event data: %s", str(e))
            raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid event data")


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("referral_ledger.api:create_app", factory=True, host="0.0.0.0", port=8000)
