from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional, Union

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger

from ledger import InMemoryStorage, LedgerError, LedgerHistoryResponse, LedgerStore
from ledger.errors import InsufficientBalanceError, PersistenceError, UserNotFoundError
from ledger.sql import SqlLedgerStore
from rewards import ProviderError, RewardProvider, ShopifyRewardProvider

from .errors import (
    ActiveRewardExistsError,
    InvalidRequestError,
    MilestoneAlreadyRedeemedError,
    MilestoneNotReachedError,
    NotFoundError,
    RedemptionError,
)
from .logging_config import configure_logging
from .milestones import MilestoneTracker
from .models import (
    CancelRedeemRequest,
    CancelRedeemResponse,
    MarkUsedRequest,
    MarkUsedResponse,
    MilestoneInfo,
    MilestoneRequest,
    MilestoneResponse,
    RedeemRequest,
    RedeemResponse,
)
from .service import RedemptionCoordinator
from .settings import Settings, get_settings

SERVICE_NAME = "points-redemption"

_STATUS_BY_ERROR: list[tuple[type, int]] = [
    (InvalidRequestError, status.HTTP_400_BAD_REQUEST),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (UserNotFoundError, status.HTTP_404_NOT_FOUND),
    (InsufficientBalanceError, status.HTTP_400_BAD_REQUEST),
    (ActiveRewardExistsError, status.HTTP_409_CONFLICT),
    (MilestoneAlreadyRedeemedError, status.HTTP_409_CONFLICT),
    (MilestoneNotReachedError, status.HTTP_400_BAD_REQUEST),
    (ProviderError, status.HTTP_502_BAD_GATEWAY),
    (PersistenceError, status.HTTP_503_SERVICE_UNAVAILABLE),
]

ServiceError = Union[RedemptionError, LedgerError, ProviderError]


def _http_error(exc: ServiceError) -> HTTPException:
    status_code = next(
        (code for error_type, code in _STATUS_BY_ERROR if isinstance(exc, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR,
    )
    return HTTPException(status_code=status_code, detail={"error": exc.code, "message": exc.message})


def build_store(settings: Settings) -> LedgerStore:
    if settings.database_url:
        return SqlLedgerStore.from_url(settings.database_url)
    return InMemoryStorage(seed=settings.seed_demo_data)


def build_provider(settings: Settings) -> ShopifyRewardProvider:
    return ShopifyRewardProvider(
        shop_domain=settings.shop_domain,
        access_token=settings.shopify_admin_token,
        api_version=settings.shopify_api_version,
        timeout_seconds=settings.provider_timeout_seconds,
        deactivation_grace=timedelta(seconds=settings.deactivation_grace_seconds),
        code_suffix_length=settings.code_suffix_length,
    )


def get_coordinator(request: Request) -> RedemptionCoordinator:
    return request.app.state.coordinator


def get_milestones(request: Request) -> MilestoneTracker:
    return request.app.state.milestones


def create_app(
    settings: Optional[Settings] = None,
    store: Optional[LedgerStore] = None,
    provider: Optional[RewardProvider] = None,
) -> FastAPI:
    settings = settings or get_settings()
    store = store if store is not None else build_store(settings)
    provider = provider if provider is not None else build_provider(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        configure_logging(service_name=SERVICE_NAME, environment=settings.environment, level=settings.log_level)
        if settings.auto_create_schema and isinstance(store, SqlLedgerStore):
            await store.create_schema()
        logger.info("Points redemption service started", shop_domain=settings.shop_domain)
        try:
            yield
        finally:
            if isinstance(provider, ShopifyRewardProvider):
                await provider.aclose()
            if isinstance(store, SqlLedgerStore):
                await store.dispose()

    app = FastAPI(
        title="Points Redemption API",
        description="Converts loyalty points and referral milestones into reward codes",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=[settings.shopify_store_url],
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["*"],
    )

    coordinator = RedemptionCoordinator(store, provider, provider_timeout=settings.provider_timeout_seconds)
    app.state.coordinator = coordinator
    app.state.milestones = MilestoneTracker(coordinator, settings.milestones)

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError):
        """Malformed bodies share the invalid_request shape of coordinator validation."""
        errors = exc.errors()
        first = errors[0] if errors else {}
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = first.get("msg", "Malformed request.")
        if field:
            message = f"{field}: {message}"
        logger.info("Rejected malformed request", path=request.url.path, error=message)
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"detail": {"error": InvalidRequestError.code, "message": message}},
        )

    @app.get("/health", tags=["System"])
    def health_check():
        return {"status": "OK", "service": SERVICE_NAME}

    @app.post("/api/referral/redeem", response_model=RedeemResponse, tags=["Redemptions"])
    async def redeem_points(
        request: RedeemRequest,
        coordinator: RedemptionCoordinator = Depends(get_coordinator),
    ) -> RedeemResponse:
        try:
            result = await coordinator.redeem(
                request.email, request.points_to_redeem, request.redeem_type, request.redeem_value
            )
        except (RedemptionError, LedgerError, ProviderError) as e:
            raise _http_error(e)
        return RedeemResponse(discount_code=result.code, new_points=result.new_balance)

    @app.post("/api/referral/mark-used", response_model=MarkUsedResponse, tags=["Redemptions"])
    async def mark_code_used(
        request: MarkUsedRequest,
        coordinator: RedemptionCoordinator = Depends(get_coordinator),
    ) -> MarkUsedResponse:
        try:
            await coordinator.mark_used(request.email, request.code)
        except (RedemptionError, LedgerError, ProviderError) as e:
            raise _http_error(e)
        return MarkUsedResponse()

    @app.post("/api/referral/cancel", response_model=CancelRedeemResponse, tags=["Redemptions"])
    async def cancel_redemption(
        request: CancelRedeemRequest,
        coordinator: RedemptionCoordinator = Depends(get_coordinator),
    ) -> CancelRedeemResponse:
        try:
            result = await coordinator.cancel_redeem(request.email, request.points_to_refund)
        except (RedemptionError, LedgerError, ProviderError) as e:
            raise _http_error(e)
        return CancelRedeemResponse(new_points=result.new_balance)

    @app.post("/api/referral/milestone", response_model=MilestoneResponse, tags=["Milestones"])
    async def redeem_milestone(
        request: MilestoneRequest,
        milestones: MilestoneTracker = Depends(get_milestones),
    ) -> MilestoneResponse:
        try:
            result = await milestones.redeem_milestone(request.email, request.milestone_threshold)
        except (RedemptionError, LedgerError, ProviderError) as e:
            raise _http_error(e)
        return MilestoneResponse(reward_name=result.reward_name, code=result.code)

    @app.get("/api/referral/milestones", response_model=list[MilestoneInfo], tags=["Milestones"])
    def list_milestones(milestones: MilestoneTracker = Depends(get_milestones)) -> list[MilestoneInfo]:
        return [
            MilestoneInfo(threshold=threshold, reward_name=reward.name)
            for threshold, reward in milestones.list_milestones()
        ]

    @app.get("/api/referral/users/{email}/ledger", response_model=LedgerHistoryResponse, tags=["Users"])
    async def get_user_ledger(
        email: str,
        limit: int = 50,
        offset: int = 0,
        coordinator: RedemptionCoordinator = Depends(get_coordinator),
    ) -> LedgerHistoryResponse:
        try:
            user = await coordinator.store.get_user(email)
            entries = await coordinator.store.list_actions(user.user_id)
        except LedgerError as e:
            raise _http_error(e)
        entries.sort(key=lambda e: e.entry_id, reverse=True)
        return LedgerHistoryResponse(
            user_id=user.user_id,
            email=user.email,
            entries=entries[offset:offset + limit],
            total_count=len(entries),
            current_balance=user.points,
        )

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host="0.0.0.0", port=8000)
