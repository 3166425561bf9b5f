"""
Ledger Microservice API

Credit ledger service: top-ups, free and subscription grants, consumption,
refunds and the scheduled lifecycle sweep.
"""

import logging
import os
import sys
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

# Add parent directory to path
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "../.."))
from core.config import get_settings
from core.logger import setup_service_logger
from core.nats_client import get_event_bus

from .factory import create_ledger_service
from .ledger_service import LedgerService
from .models import (
    BalanceSummary,
    CancelSubscriptionResponse,
    ConsumeCreditsRequest,
    ConsumptionResult,
    CreditAccount,
    CreditStatement,
    FreeCreditGrant,
    HealthCheckResponse as HealthResponse,
    IssueFreeCreditRequest,
    LifecycleCycleResult,
    OpenAccountRequest,
    ReconciliationReport,
    RefundCreditsRequest,
    RefundResult,
    StatementListResponse,
    StatementTypeEnum,
    SubscriptionResponse,
    SweepResult,
    TopUpRequest,
    UpsertSubscriptionRequest,
)
from .protocols import (
    InsufficientBalanceError,
    LedgerValidationError,
    NotFoundError,
)
from .routes_registry import SERVICE_METADATA, get_route_metadata

# Configuration
config = get_settings()

# Configure logging
logger = setup_service_logger(config.service_name, level=config.logging.log_level, config=config.logging)

# Global variables
ledger_service: Optional[LedgerService] = None
event_bus = None  # NATS event bus
scheduler: Optional[AsyncIOScheduler] = None  # Lifecycle sweep job
SERVICE_PORT = config.service_port or 8230


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management"""
    global ledger_service, event_bus, scheduler

    try:
        # Initialize NATS JetStream event bus
        if config.infrastructure.nats_enabled:
            try:
                event_bus = await get_event_bus(config.service_name, config.infrastructure)
                logger.info("Event bus initialized successfully")
            except Exception as e:
                logger.warning(f"Failed to initialize event bus: {e}. Continuing without events.")
                event_bus = None

        # Create ledger service using factory (with or without event bus)
        ledger_service = create_ledger_service(config=config, event_bus=event_bus)
        await ledger_service.repository.initialize()

        # Subscribe to events if event bus is available
        if event_bus and config.event_subscriptions_enabled:
            try:
                from .events import LedgerStreamConfig, get_event_handlers

                handler_map = get_event_handlers(ledger_service)
                for pattern, handler_func in handler_map.items():
                    await event_bus.subscribe_to_events(
                        pattern=pattern,
                        handler=handler_func,
                        durable=f"{LedgerStreamConfig.CONSUMER_PREFIX}-{pattern.replace('.', '-').replace('*', 'all')}-consumer",
                    )
                    logger.info(f"Subscribed to {pattern}")

                logger.info(f"Ledger event subscriber started ({len(handler_map)} event patterns)")

            except Exception as e:
                logger.warning(f"Failed to subscribe to events: {e}")

        # Lifecycle sweep runs on exactly one instance, selected by deployment config
        if config.sweeper.enabled:
            scheduler = AsyncIOScheduler(timezone=config.sweeper.timezone)
            scheduler.add_job(
                ledger_service.process_lifecycle,
                'cron',
                hour=config.sweeper.hour,
                minute=config.sweeper.minute,
                id='ledger_lifecycle_job',
                replace_existing=True,
                max_instances=1,
                coalesce=True,
            )
            scheduler.start()
            logger.info(
                f"Ledger lifecycle scheduler started (daily at "
                f"{config.sweeper.hour:02d}:{config.sweeper.minute:02d} {config.sweeper.timezone})"
            )
        else:
            logger.info("Ledger lifecycle scheduler disabled on this instance")

        logger.info(f"Ledger service started on port {SERVICE_PORT}")
        yield

    except Exception as e:
        logger.error(f"Failed to initialize ledger service: {e}")
        raise
    finally:
        if scheduler:
            try:
                scheduler.shutdown()
                logger.info("Ledger lifecycle scheduler stopped")
            except Exception as e:
                logger.error(f"Failed to stop scheduler: {e}")

        if event_bus:
            try:
                await event_bus.close()
                logger.info("Ledger event bus closed")
            except Exception as e:
                logger.error(f"Error closing event bus: {e}")

        if ledger_service:
            await ledger_service.repository.close()
            logger.info("Ledger service database connections closed")


# Create FastAPI application
app = FastAPI(
    title="Ledger Service",
    description="Credit ledger with free, subscription and paid credit sources",
    version="1.0.0",
    lifespan=lifespan,
)


# ====================
# Dependency Injection
# ====================


async def get_ledger_service() -> LedgerService:
    """Get ledger service instance"""
    if not ledger_service:
        raise HTTPException(status_code=503, detail="Ledger service not initialized")
    return ledger_service


def to_http_exception(e: Exception) -> HTTPException:
    """Map ledger errors to HTTP status codes"""
    if isinstance(e, LedgerValidationError):
        return HTTPException(status_code=400, detail=str(e))
    if isinstance(e, InsufficientBalanceError):
        return HTTPException(
            status_code=402,
            detail={"message": str(e), "available": e.available, "required": e.required},
        )
    if isinstance(e, NotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    return HTTPException(status_code=500, detail=f"Internal server error: {str(e)}")


# ====================
# Health Check and Service Info
# ====================


@app.get("/api/v1/ledger/health", response_model=HealthResponse)
@app.get("/health", response_model=HealthResponse)
async def health_check():
    """Basic health check"""
    dependencies = {}

    if ledger_service:
        health = await ledger_service.check_health()
        dependencies["database"] = "healthy" if health.get("database") else "unhealthy"
    else:
        dependencies["database"] = "unhealthy"

    if event_bus is not None:
        dependencies["event_bus"] = "healthy" if event_bus.is_connected else "unhealthy"
    else:
        dependencies["event_bus"] = "not_configured"

    dependencies["scheduler"] = "healthy" if scheduler and scheduler.running else "not_configured"

    status = "healthy" if all(v in ["healthy", "not_configured"] for v in dependencies.values()) else "degraded"

    return HealthResponse(
        status=status,
        service=config.service_name,
        port=SERVICE_PORT,
        version=SERVICE_METADATA["version"],
        timestamp=datetime.now(timezone.utc).isoformat(),
        dependencies=dependencies,
    )


@app.get("/api/v1/ledger/info")
async def service_info():
    """Service metadata and route map"""
    return {**SERVICE_METADATA, "routes": get_route_metadata()}


# ====================
# Accounts
# ====================


@app.post("/api/v1/ledger/accounts", response_model=CreditAccount)
async def open_account(
    request: OpenAccountRequest,
    service: LedgerService = Depends(get_ledger_service)
):
    """Open a credit account"""
    try:
        return await service.open_account(request.user_id)
    except Exception as e:
        logger.error(f"Error opening account: {e}")
        raise to_http_exception(e)


@app.get("/api/v1/ledger/accounts/{user_id}/balance", response_model=BalanceSummary)
async def get_balance(
    user_id: str,
    service: LedgerService = Depends(get_ledger_service)
):
    """Get balance broken down by source"""
    try:
        return await service.get_balance_summary(user_id)
    except Exception as e:
        logger.error(f"Error getting balance: {e}")
        raise to_http_exception(e)


@app.get("/api/v1/ledger/accounts/{user_id}/statements", response_model=StatementListResponse)
async def get_statements(
    user_id: str,
    statement_type: Optional[StatementTypeEnum] = None,
    order_id: Optional[str] = None,
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=100),
    service: LedgerService = Depends(get_ledger_service)
):
    """Get statement history, newest first"""
    try:
        return await service.get_statements(
            user_id,
            statement_type=statement_type,
            order_id=order_id,
            page=page,
            page_size=page_size,
        )
    except Exception as e:
        logger.error(f"Error getting statements: {e}")
        raise to_http_exception(e)


@app.get("/api/v1/ledger/accounts/{user_id}/reconcile", response_model=ReconciliationReport)
async def reconcile(
    user_id: str,
    service: LedgerService = Depends(get_ledger_service)
):
    """Compare cached balance with the statement log"""
    try:
        return await service.reconcile(user_id)
    except Exception as e:
        logger.error(f"Error reconciling account: {e}")
        raise to_http_exception(e)


# ====================
# Crediting
# ====================


@app.post("/api/v1/ledger/top-up", response_model=CreditStatement)
async def top_up(
    request: TopUpRequest,
    service: LedgerService = Depends(get_ledger_service)
):
    """Credit paid funds after payment confirmation"""
    try:
        return await service.top_up(
            user_id=request.user_id,
            amount=request.amount,
            order_id=request.order_id,
            description=request.description,
            invited_by=request.invited_by,
        )
    except Exception as e:
        logger.error(f"Error topping up credits: {e}")
        raise to_http_exception(e)


@app.post("/api/v1/ledger/free-credits", response_model=FreeCreditGrant)
async def issue_free_credit(
    request: IssueFreeCreditRequest,
    service: LedgerService = Depends(get_ledger_service)
):
    """Issue a free credit grant"""
    try:
        return await service.issue_free_credit(
            user_id=request.user_id,
            amount=request.amount,
            issue_type=request.issue_type,
            expire_days=request.expire_days,
            widget_tag=request.widget_tag,
            app_id=request.app_id,
            invited_user_id=request.invited_user_id,
            description=request.description,
        )
    except Exception as e:
        logger.error(f"Error issuing free credits: {e}")
        raise to_http_exception(e)


# ====================
# Consumption & Refund
# ====================


@app.post("/api/v1/ledger/consume", response_model=ConsumptionResult)
async def consume(
    request: ConsumeCreditsRequest,
    service: LedgerService = Depends(get_ledger_service)
):
    """Consume credits for an order"""
    try:
        return await service.consume(
            user_id=request.user_id,
            amount=request.amount,
            order_id=request.order_id,
            allow_free_credit=request.allow_free_credit,
        )
    except InsufficientBalanceError as e:
        logger.info(f"Insufficient credits for user {request.user_id}: {e.available} < {e.required}")
        raise to_http_exception(e)
    except Exception as e:
        logger.error(f"Error consuming credits: {e}")
        raise to_http_exception(e)


@app.post("/api/v1/ledger/refund", response_model=RefundResult)
async def refund(
    request: RefundCreditsRequest,
    service: LedgerService = Depends(get_ledger_service)
):
    """Refund a consumption to its sources"""
    try:
        return await service.refund(
            user_id=request.user_id,
            amount=request.amount,
            order_id=request.order_id,
        )
    except Exception as e:
        logger.error(f"Error refunding credits: {e}")
        raise to_http_exception(e)


# ====================
# Subscriptions
# ====================


@app.put("/api/v1/ledger/subscriptions", response_model=SubscriptionResponse)
async def upsert_subscription(
    request: UpsertSubscriptionRequest,
    service: LedgerService = Depends(get_ledger_service)
):
    """Create or update a subscription and its credit schedule"""
    try:
        return await service.upsert_subscription(
            user_id=request.user_id,
            widget_tag=request.widget_tag,
            subscription_detail=request.subscription_detail,
            credit_schedule=request.subscription_credits,
        )
    except Exception as e:
        logger.error(f"Error updating subscription: {e}")
        raise to_http_exception(e)


@app.delete("/api/v1/ledger/subscriptions/{subscription_id}", response_model=CancelSubscriptionResponse)
async def cancel_subscription(
    subscription_id: str,
    user_id: str = Query(..., min_length=1),
    service: LedgerService = Depends(get_ledger_service)
):
    """Cancel a subscription"""
    try:
        return await service.cancel_subscription(user_id, subscription_id)
    except Exception as e:
        logger.error(f"Error cancelling subscription: {e}")
        raise to_http_exception(e)


# ====================
# Lifecycle Sweeps
# ====================


@app.post("/api/v1/ledger/sweeps/issue", response_model=SweepResult)
async def run_issuance(
    subscription_id: Optional[str] = None,
    service: LedgerService = Depends(get_ledger_service)
):
    """Run the issuance pass"""
    try:
        return await service.run_issuance_pass(subscription_id)
    except Exception as e:
        logger.error(f"Error running issuance pass: {e}")
        raise to_http_exception(e)


@app.post("/api/v1/ledger/sweeps/expire", response_model=SweepResult)
async def run_expiration(
    subscription_id: Optional[str] = None,
    service: LedgerService = Depends(get_ledger_service)
):
    """Run the expiration pass"""
    try:
        return await service.run_expiration_pass(subscription_id)
    except Exception as e:
        logger.error(f"Error running expiration pass: {e}")
        raise to_http_exception(e)


@app.post("/api/v1/ledger/sweeps/run", response_model=LifecycleCycleResult)
async def run_lifecycle(
    subscription_id: Optional[str] = None,
    service: LedgerService = Depends(get_ledger_service)
):
    """Run expiration then issuance"""
    try:
        return await service.process_lifecycle(subscription_id)
    except Exception as e:
        logger.error(f"Error running lifecycle sweep: {e}")
        raise to_http_exception(e)


# ====================
# Error Handling
# ====================


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception in {request.url}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error occurred"})


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "microservices.ledger_service.main:app",
        host=config.service_host,
        port=SERVICE_PORT,
        reload=config.debug,
        log_level=config.logging.log_level.lower(),
    )
