"""
Settlement Microservice API

Milestone charging, influencer payouts, withdrawals and gateway webhook
reconciliation for the influencer marketplace.
"""

import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.responses import JSONResponse

from core.config_manager import ConfigManager
from core.logger import setup_service_logger
from core.nats_client import get_event_bus

from .factory import SettlementComponents, create_settlement_service
from .models import (
    BrandOutstandingBalance,
    Campaign,
    CampaignPaymentSummary,
    CreateMilestonesRequest,
    HealthCheckResponse,
    InfluencerBalance,
    InfluencerBankAccount,
    InfluencerPayout,
    InitiatePaymentRequest,
    PayFullRequest,
    PaymentInitiationResponse,
    PaymentMethodView,
    PaymentMilestone,
    PaymentVerificationResult,
    PayoutStatus,
    PlatformSetting,
    RegisterBankAccountRequest,
    ReleasePayoutRequest,
    SweepResult,
    Transaction,
    UpdateMilestoneRequest,
    UpdateSettingRequest,
    WebhookResult,
    Withdrawal,
    WithdrawalRequest,
)
from .protocols import (
    BankAccountNotFoundError,
    CampaignNotFoundError,
    GatewayConfigurationError,
    InsufficientBalanceError,
    InvalidAmountError,
    InvalidMilestoneStateError,
    InvalidSettingError,
    MilestoneInvariantViolationError,
    MilestoneNotFoundError,
    MilestonesAlreadyExistError,
    PaymentMethodNotFoundError,
    PaymentMethodRequiredError,
    PayoutNotFoundError,
    PayoutReleaseNotAllowedError,
    SettlementServiceError,
    TransactionNotFoundError,
    UnknownGatewayError,
    UnsupportedCurrencyError,
    WebhookPayloadError,
    WebhookSignatureError,
    WithdrawalNotAllowedError,
    WithdrawalNotFoundError,
)

# Initialize configuration manager
config_manager = ConfigManager("settlement_service")
config = config_manager.get_service_config()

# Configure logging
logger = setup_service_logger("settlement_service", level=config.log_level.upper())

# Print configuration info (development environment)
if config.debug:
    config_manager.print_config_summary(show_secrets=False)

# Global variables
components: Optional[SettlementComponents] = None
event_bus = None  # NATS event bus
scheduler = None  # APScheduler for the settlement sweep
SERVICE_PORT = config.service_port or 8250
SERVICE_VERSION = "1.0.0"

# Header carrying each gateway's webhook signature
SIGNATURE_HEADERS = {
    "stripe": "stripe-signature",
    "truelayer": "tl-signature",
    "paystack": "x-paystack-signature",
}

ERROR_STATUS_CODES = {
    CampaignNotFoundError: 404,
    MilestoneNotFoundError: 404,
    TransactionNotFoundError: 404,
    PayoutNotFoundError: 404,
    WithdrawalNotFoundError: 404,
    BankAccountNotFoundError: 404,
    PaymentMethodNotFoundError: 404,
    UnknownGatewayError: 404,
    InvalidAmountError: 400,
    InvalidSettingError: 400,
    UnsupportedCurrencyError: 400,
    PaymentMethodRequiredError: 400,
    WebhookPayloadError: 400,
    WebhookSignatureError: 401,
    PayoutReleaseNotAllowedError: 403,
    InvalidMilestoneStateError: 409,
    MilestonesAlreadyExistError: 409,
    InsufficientBalanceError: 409,
    WithdrawalNotAllowedError: 409,
    MilestoneInvariantViolationError: 500,
    GatewayConfigurationError: 503,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifecycle management"""
    global components, event_bus, scheduler

    try:
        # Initialize NATS JetStream event bus
        try:
            event_bus = await get_event_bus("settlement_service")
            logger.info("✅ Event bus initialized successfully")
        except Exception as e:
            logger.warning(f"⚠️  Failed to initialize event bus: {e}. Continuing without event publishing.")
            event_bus = None

        # Wire the engine; incomplete gateway routing fails startup here
        components = create_settlement_service(config=config_manager, event_bus=event_bus)
        await components.repository.initialize()
        logger.info("✅ Settlement repository connected")

        # Subscribe to campaign booking events
        if event_bus:
            try:
                from .events import get_event_handlers

                handler_map = get_event_handlers(components.milestone_engine)
                for pattern, handler_func in handler_map.items():
                    await event_bus.subscribe_to_events(
                        pattern=pattern,
                        handler=handler_func,
                        durable=f"settlement-{pattern.replace('.', '-').replace('*', 'all')}-consumer",
                    )
                    logger.info(f"✅ Subscribed to {pattern}")
            except Exception as e:
                logger.warning(f"⚠️  Failed to subscribe to events: {e}")

        # Start settlement sweep (APScheduler)
        settlement_config = components.config
        if settlement_config.sweep_enabled:
            try:
                from apscheduler.schedulers.asyncio import AsyncIOScheduler

                scheduler = AsyncIOScheduler()
                scheduler.add_job(
                    components.sweep.run_once,
                    "interval",
                    seconds=settlement_config.sweep_interval_seconds,
                    id="settlement_sweep_job",
                    max_instances=1,
                    coalesce=True,
                    replace_existing=True,
                )
                scheduler.start()
                logger.info(
                    f"✅ Settlement sweep scheduled every {settlement_config.sweep_interval_seconds}s"
                )
            except Exception as e:
                logger.warning(f"⚠️  Failed to start settlement sweep scheduler: {e}")
                scheduler = None

        logger.info(f"✅ Settlement service started on port {SERVICE_PORT}")
        yield

    except Exception as e:
        logger.error(f"Failed to initialize settlement service: {e}")
        raise
    finally:
        if scheduler:
            try:
                scheduler.shutdown(wait=False)
                logger.info("✅ Settlement sweep scheduler stopped")
            except Exception as e:
                logger.error(f"❌ Failed to stop scheduler: {e}")

        # A running tick finishes its current item before clients are closed
        if components:
            components.sweep.stop()
            if not await components.sweep.wait_until_idle(components.config.sweep_shutdown_timeout_seconds):
                logger.warning("⚠️  Settlement sweep did not stop in time; closing connections anyway")

        if event_bus:
            try:
                await event_bus.close()
                logger.info("Settlement event bus closed")
            except Exception as e:
                logger.error(f"Error closing event bus: {e}")

        if components:
            await components.close()
            await components.repository.close()
            logger.info("Settlement service connections closed")


# Create FastAPI application
app = FastAPI(
    title="Settlement Service",
    description="Milestone charging, influencer payouts and withdrawals",
    version=SERVICE_VERSION,
    lifespan=lifespan,
)


# ====================
# Dependency Injection
# ====================


async def get_components() -> SettlementComponents:
    """Get the wired settlement engine"""
    if not components:
        raise HTTPException(status_code=503, detail="Settlement service not initialized")
    return components


# ====================
# Error Handling
# ====================


@app.exception_handler(SettlementServiceError)
async def settlement_exception_handler(request: Request, exc: SettlementServiceError):
    """Map domain errors to HTTP status codes"""
    status_code = ERROR_STATUS_CODES.get(type(exc), 400)
    if status_code >= 500:
        logger.error(f"{type(exc).__name__} in {request.url}: {exc}")
    return JSONResponse(status_code=status_code, content={"detail": str(exc), "error": type(exc).__name__})


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    """Global exception handler"""
    logger.error(f"Unhandled exception in {request.url}: {exc}", exc_info=True)
    return JSONResponse(status_code=500, content={"detail": "Internal server error occurred"})


# ====================
# Health Check
# ====================


@app.get("/api/v1/settlement/health")
@app.get("/health", response_model=HealthCheckResponse)
async def health_check():
    """Basic health check"""
    dependencies: Dict[str, str] = {}

    try:
        if components:
            healthy = await components.repository.check_connection()
            dependencies["database"] = "healthy" if healthy else "unhealthy"
        else:
            dependencies["database"] = "unhealthy"
    except Exception:
        dependencies["database"] = "unhealthy"

    if event_bus and hasattr(event_bus, "is_connected"):
        dependencies["event_bus"] = "healthy" if event_bus.is_connected else "unhealthy"
    else:
        dependencies["event_bus"] = "not_configured"

    dependencies["scheduler"] = "healthy" if scheduler and scheduler.running else "not_configured"

    status = "healthy" if all(v in ["healthy", "not_configured"] for v in dependencies.values()) else "degraded"
    return HealthCheckResponse(
        status=status,
        service="settlement_service",
        port=SERVICE_PORT,
        version=SERVICE_VERSION,
        timestamp=datetime.now(timezone.utc).isoformat(),
        dependencies=dependencies,
    )


# ====================
# Webhooks
# ====================


@app.post("/api/v1/settlement/webhooks/{gateway}", response_model=WebhookResult)
async def receive_webhook(
    gateway: str,
    request: Request,
    svc: SettlementComponents = Depends(get_components),
):
    """Gateway webhook receiver (raw body is verified before parsing)"""
    raw_body = await request.body()
    signature = request.headers.get(SIGNATURE_HEADERS.get(gateway.lower(), ""))
    return await svc.reconciler.handle(gateway, raw_body, signature)


# ====================
# Campaigns & Milestones
# ====================


@app.post("/api/v1/settlement/campaigns", response_model=List[PaymentMilestone])
async def register_campaign(campaign: Campaign, svc: SettlementComponents = Depends(get_components)):
    """Register a booked campaign and create its schedule"""
    return await svc.milestone_engine.register_campaign(campaign)


@app.post("/api/v1/settlement/campaigns/{campaign_id}/milestones", response_model=List[PaymentMilestone])
async def create_milestones(
    campaign_id: str,
    request: CreateMilestonesRequest,
    svc: SettlementComponents = Depends(get_components),
):
    """Split a campaign total into milestones"""
    return await svc.milestone_engine.create_milestones(campaign_id, request)


@app.get("/api/v1/settlement/campaigns/{campaign_id}/milestones", response_model=List[PaymentMilestone])
async def list_milestones(campaign_id: str, svc: SettlementComponents = Depends(get_components)):
    return await svc.milestone_engine.get_campaign_milestones(campaign_id)


@app.patch("/api/v1/settlement/milestones/{milestone_id}", response_model=PaymentMilestone)
@app.put("/api/v1/settlement/milestones/{milestone_id}", response_model=PaymentMilestone)
async def update_milestone(
    milestone_id: str,
    request: UpdateMilestoneRequest,
    svc: SettlementComponents = Depends(get_components),
):
    """Edit an unpaid milestone (an amount change is offset against the last unpaid one)"""
    return await svc.milestone_engine.update_milestone(milestone_id, request)


@app.delete("/api/v1/settlement/milestones/{milestone_id}", response_model=PaymentMilestone)
async def cancel_milestone(milestone_id: str, svc: SettlementComponents = Depends(get_components)):
    """Cancel one unpaid milestone"""
    return await svc.milestone_engine.cancel_milestone(milestone_id)


@app.post("/api/v1/settlement/campaigns/{campaign_id}/cancel", response_model=List[PaymentMilestone])
async def cancel_campaign_milestones(campaign_id: str, svc: SettlementComponents = Depends(get_components)):
    """Cancel the unpaid milestones of a campaign"""
    return await svc.milestone_engine.cancel_campaign_milestones(campaign_id)


@app.get("/api/v1/settlement/campaigns/{campaign_id}/summary", response_model=CampaignPaymentSummary)
async def campaign_payment_summary(campaign_id: str, svc: SettlementComponents = Depends(get_components)):
    return await svc.orchestrator.get_campaign_payment_summary(campaign_id)


@app.get("/api/v1/settlement/campaigns/{campaign_id}/payouts", response_model=List[InfluencerPayout])
async def campaign_payouts(campaign_id: str, svc: SettlementComponents = Depends(get_components)):
    return await svc.payout_engine.get_campaign_payouts(campaign_id)


@app.get("/api/v1/settlement/brands/{brand_id}/outstanding", response_model=BrandOutstandingBalance)
async def brand_outstanding_balance(brand_id: str, svc: SettlementComponents = Depends(get_components)):
    return await svc.orchestrator.get_brand_outstanding_balance(brand_id)


# ====================
# Charges
# ====================


@app.post("/api/v1/settlement/payments", response_model=PaymentInitiationResponse)
async def initiate_payment(request: InitiatePaymentRequest, svc: SettlementComponents = Depends(get_components)):
    """Brand-initiated charge of a milestone"""
    return await svc.orchestrator.initiate_payment(request)


@app.post("/api/v1/settlement/milestones/{milestone_id}/charge", response_model=PaymentInitiationResponse)
async def charge_milestone(milestone_id: str, svc: SettlementComponents = Depends(get_components)):
    """Off-session charge with the brand's saved payment method"""
    return await svc.orchestrator.charge_milestone(milestone_id, is_recurring=False)


@app.post("/api/v1/settlement/campaigns/{campaign_id}/pay-full", response_model=List[PaymentInitiationResponse])
async def pay_full(
    campaign_id: str,
    request: PayFullRequest,
    svc: SettlementComponents = Depends(get_components),
):
    """Charge every outstanding milestone with a saved payment method"""
    return await svc.orchestrator.pay_full(campaign_id, request)


@app.get("/api/v1/settlement/payments/{reference}", response_model=Transaction)
async def payment_status(reference: str, svc: SettlementComponents = Depends(get_components)):
    return await svc.orchestrator.get_payment_status(reference)


@app.get("/api/v1/settlement/payments/by-gateway/{gateway_payment_id}", response_model=Transaction)
async def payment_by_gateway_id(gateway_payment_id: str, svc: SettlementComponents = Depends(get_components)):
    return await svc.orchestrator.get_payment_by_gateway_id(gateway_payment_id)


@app.post("/api/v1/settlement/payments/{reference}/verify", response_model=PaymentVerificationResult)
async def verify_payment(reference: str, svc: SettlementComponents = Depends(get_components)):
    """Status check with the gateway, applied locally"""
    return await svc.orchestrator.verify_and_process_payment(reference)


# ====================
# Saved Payment Methods
# ====================


@app.get("/api/v1/settlement/payment-methods", response_model=List[PaymentMethodView])
async def list_payment_methods(
    user_id: str = Query(..., min_length=1),
    svc: SettlementComponents = Depends(get_components),
):
    methods = await svc.orchestrator.list_payment_methods(user_id)
    return [PaymentMethodView.model_validate(method.model_dump()) for method in methods]


@app.post("/api/v1/settlement/payment-methods/{payment_method_id}/default", response_model=PaymentMethodView)
async def set_default_payment_method(
    payment_method_id: str,
    user_id: str = Query(..., min_length=1),
    svc: SettlementComponents = Depends(get_components),
):
    method = await svc.orchestrator.set_default_payment_method(user_id, payment_method_id)
    return PaymentMethodView.model_validate(method.model_dump())


@app.delete("/api/v1/settlement/payment-methods/{payment_method_id}", response_model=PaymentMethodView)
async def remove_payment_method(
    payment_method_id: str,
    user_id: str = Query(..., min_length=1),
    svc: SettlementComponents = Depends(get_components),
):
    method = await svc.orchestrator.remove_payment_method(user_id, payment_method_id)
    return PaymentMethodView.model_validate(method.model_dump())


# ====================
# Payouts & Withdrawals
# ====================


@app.post("/api/v1/settlement/payouts/{payout_id}/release", response_model=InfluencerPayout)
async def release_payout(
    payout_id: str,
    request: ReleasePayoutRequest,
    svc: SettlementComponents = Depends(get_components),
):
    return await svc.payout_engine.release_payout(payout_id, request.brand_id)


@app.get("/api/v1/settlement/influencers/{influencer_id}/balance", response_model=InfluencerBalance)
async def influencer_balance(
    influencer_id: str,
    currency: str = Query(..., min_length=3, max_length=3),
    svc: SettlementComponents = Depends(get_components),
):
    return await svc.withdrawal_engine.get_balance(influencer_id, currency)


@app.get("/api/v1/settlement/influencers/{influencer_id}/payouts", response_model=List[InfluencerPayout])
async def influencer_payouts(
    influencer_id: str,
    status: Optional[PayoutStatus] = Query(None),
    svc: SettlementComponents = Depends(get_components),
):
    """Payout history; status=PENDING_RELEASE lists payouts still awaiting release"""
    return await svc.payout_engine.get_influencer_payouts(influencer_id, status)


@app.get("/api/v1/settlement/influencers/{influencer_id}/withdrawals", response_model=List[Withdrawal])
async def influencer_withdrawals(
    influencer_id: str,
    currency: Optional[str] = Query(None, min_length=3, max_length=3),
    svc: SettlementComponents = Depends(get_components),
):
    return await svc.withdrawal_engine.get_withdrawals(influencer_id, currency)


@app.get("/api/v1/settlement/influencers/{influencer_id}/bank-accounts", response_model=List[InfluencerBankAccount])
async def influencer_bank_accounts(influencer_id: str, svc: SettlementComponents = Depends(get_components)):
    return await svc.withdrawal_engine.get_bank_accounts(influencer_id)


@app.post("/api/v1/settlement/bank-accounts", response_model=InfluencerBankAccount)
async def register_bank_account(
    request: RegisterBankAccountRequest,
    svc: SettlementComponents = Depends(get_components),
):
    return await svc.withdrawal_engine.register_bank_account(request)


@app.post("/api/v1/settlement/withdrawals", response_model=Withdrawal)
async def request_withdrawal(request: WithdrawalRequest, svc: SettlementComponents = Depends(get_components)):
    return await svc.withdrawal_engine.request_withdrawal(request)


@app.get("/api/v1/settlement/withdrawals/{withdrawal_id}", response_model=Withdrawal)
async def get_withdrawal(withdrawal_id: str, svc: SettlementComponents = Depends(get_components)):
    return await svc.withdrawal_engine.get_withdrawal(withdrawal_id)


@app.post("/api/v1/settlement/withdrawals/{withdrawal_id}/cancel", response_model=Withdrawal)
async def cancel_withdrawal(
    withdrawal_id: str,
    influencer_id: str = Query(..., min_length=1),
    svc: SettlementComponents = Depends(get_components),
):
    return await svc.withdrawal_engine.cancel_withdrawal(withdrawal_id, influencer_id)


# ====================
# Platform Settings & Operations
# ====================


@app.get("/api/v1/settlement/settings", response_model=Dict[str, str])
async def get_settings(svc: SettlementComponents = Depends(get_components)):
    return await svc.settings_service.get_settings()


@app.put("/api/v1/settlement/settings/{setting_key}", response_model=PlatformSetting)
async def update_setting(
    setting_key: str,
    request: UpdateSettingRequest,
    svc: SettlementComponents = Depends(get_components),
):
    return await svc.settings_service.update_setting(setting_key, request.setting_value, request.updated_by)


@app.post("/api/v1/settlement/sweep", response_model=SweepResult)
async def trigger_sweep(svc: SettlementComponents = Depends(get_components)):
    """Run one sweep tick now"""
    return await svc.sweep.run_once()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "microservices.settlement_service.main:app",
        host="0.0.0.0",
        port=SERVICE_PORT,
        reload=config.debug,
        log_level=config.log_level.lower(),
    )
