import json
from typing import Any, Dict
from urllib.parse import urlencode

import structlog
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse, RedirectResponse
from sqlalchemy.ext.asyncio import AsyncSession

from donation_gateway.core.config import Settings, get_settings
from donation_gateway.core.exceptions import InvalidCallbackError
from donation_gateway.core.rate_limiter import client_ip, rate_limit
from donation_gateway.database.database import get_db
from donation_gateway.models.donation import PaymentStatus
from donation_gateway.schemas.donation import (
    CallbackResponse,
    DonationStatusResponse,
    InitiatePaymentResponse,
    VerifyPaymentResponse,
)
from donation_gateway.services.notification import NotificationClient
from donation_gateway.services.orchestrator import CallbackOutcome, PaymentOrchestrator
from donation_gateway.services.payment_client import PaymentGatewayClient
from donation_gateway.services.token_cache import TokenCache

router = APIRouter(prefix="/api/v1/payments", tags=["payments"])
logger = structlog.get_logger(__name__)

initiate_limit = rate_limit(
    "initiate",
    lambda s: s.initiate_rate_limit,
    "Too many payment requests. Please try again later."
)
status_limit = rate_limit(
    "status",
    lambda s: s.status_rate_limit,
    "Too many status requests. Please try again later."
)


# ============================================================================
# DEPENDENCIES
# ============================================================================

def get_payment_client(request: Request) -> PaymentGatewayClient:
    """Processor client built at startup, created on first use otherwise"""
    client = getattr(request.app.state, "payment_client", None)
    if client is None:
        client = PaymentGatewayClient(get_settings())
        request.app.state.payment_client = client
    return client


def get_token_cache(
    request: Request,
    payment_client: PaymentGatewayClient = Depends(get_payment_client)
) -> TokenCache:
    cache = getattr(request.app.state, "token_cache", None)
    if cache is None:
        settings = get_settings()
        cache = TokenCache(
            payment_client.request_token,
            refresh_margin=settings.token_refresh_margin_seconds,
            default_ttl=settings.token_default_ttl_seconds,
        )
        request.app.state.token_cache = cache
    return cache


def get_notifier(request: Request) -> NotificationClient:
    notifier = getattr(request.app.state, "notifier", None)
    if notifier is None:
        notifier = NotificationClient(get_settings())
        request.app.state.notifier = notifier
    return notifier


def get_orchestrator(
    db: AsyncSession = Depends(get_db),
    payment_client: PaymentGatewayClient = Depends(get_payment_client),
    token_cache: TokenCache = Depends(get_token_cache),
    notifier: NotificationClient = Depends(get_notifier),
    settings: Settings = Depends(get_settings)
) -> PaymentOrchestrator:
    return PaymentOrchestrator(db, payment_client, token_cache, notifier, settings)


async def read_callback_payload(request: Request, settings: Settings) -> Dict[str, Any]:
    """Decode a callback body sent either as JSON or as a form post"""
    declared = request.headers.get("content-length")
    if declared and declared.isdigit() and int(declared) > settings.max_callback_body_bytes:
        raise HTTPException(status_code=413, detail="Callback body too large")

    body = await request.body()
    if len(body) > settings.max_callback_body_bytes:
        raise HTTPException(status_code=413, detail="Callback body too large")

    content_type = request.headers.get("content-type", "")
    if "application/json" in content_type:
        try:
            data = json.loads(body or b"{}")
        except ValueError:
            raise InvalidCallbackError("Callback body is not valid JSON")
        if not isinstance(data, dict):
            raise InvalidCallbackError("Callback body must be an object")
        return data

    form = await request.form()
    return {key: value for key, value in form.items() if isinstance(value, str)}


def _callback_message(outcome: CallbackOutcome) -> str:
    if outcome.replayed:
        return "Payment already processed"
    if outcome.amount_mismatch:
        return "Payment amount mismatch"
    if outcome.status == PaymentStatus.SUCCESS:
        return "Payment successful"
    if outcome.status == PaymentStatus.PENDING:
        return "Payment pending"
    return "Payment failed"


# ============================================================================
# ROUTES
# ============================================================================

@router.post("/initiate", response_model=InitiatePaymentResponse, dependencies=[Depends(initiate_limit)])
async def initiate_payment(
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator)
):
    """
    Create a donation and return the hosted payment page URL

    The donor is redirected to `paymentUrl`; the outcome arrives later on
    /callback, or can be reconciled through /verify.
    """
    try:
        payload = await request.json()
    except ValueError:
        payload = None

    result = await orchestrator.initiate(
        payload,
        ip_address=client_ip(request),
        user_agent=request.headers.get("user-agent")
    )

    return InitiatePaymentResponse(
        payment_url=result.payment_url,
        donation_ref=result.donation_ref,
        order_id=result.order_id,
    )


@router.post("/callback", response_model=CallbackResponse)
async def payment_callback(
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator),
    settings: Settings = Depends(get_settings)
):
    """
    Processor BackPosting endpoint

    Unauthenticated, so only a PENDING donation with a matching amount can
    settle as SUCCESS. Redirects the donor to the result page when one is
    configured.
    """
    payload = await read_callback_payload(request, settings)
    outcome = await orchestrator.handle_callback(payload)
    donation = outcome.donation

    if settings.payment_result_url:
        query = urlencode({
            "status": outcome.status.value.lower(),
            "ref": donation.donation_ref,
            "amount": str(donation.amount),
        })
        return RedirectResponse(f"{settings.payment_result_url}?{query}", status_code=302)

    return CallbackResponse(
        success=outcome.status == PaymentStatus.SUCCESS,
        status=outcome.status.value,
        donation_ref=donation.donation_ref,
        message=_callback_message(outcome),
    )


@router.get(
    "/status/{donation_ref}",
    response_model=DonationStatusResponse,
    dependencies=[Depends(status_limit)]
)
async def get_payment_status(
    donation_ref: str,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator)
):
    """Get the stored status of a donation"""
    donation = await orchestrator.get_status(donation_ref)

    return DonationStatusResponse(
        donation_ref=donation.donation_ref,
        status=donation.payment_status.value,
        amount=float(donation.amount),
        transaction_ref=donation.processor_transaction_ref,
        ipg_id=donation.processor_internal_id,
        created_at=donation.created_at,
        updated_at=donation.updated_at,
    )


@router.post(
    "/verify/{donation_ref}",
    response_model=VerifyPaymentResponse,
    dependencies=[Depends(status_limit)]
)
async def verify_payment(
    donation_ref: str,
    orchestrator: PaymentOrchestrator = Depends(get_orchestrator)
):
    """Poll the processor for a donation whose callback never arrived"""
    result = await orchestrator.verify(donation_ref)
    donation = result.donation

    return VerifyPaymentResponse(
        donation_ref=donation.donation_ref,
        status=result.status.value,
        processor_status=result.processor_status,
        amount=float(donation.amount),
        transaction_ref=donation.processor_transaction_ref,
        updated_at=donation.updated_at,
    )


@router.get("/info")
async def payment_info(
    payment_client: PaymentGatewayClient = Depends(get_payment_client),
    token_cache: TokenCache = Depends(get_token_cache)
):
    """Processor environment and token state"""
    return payment_client.environment_info(has_valid_token=token_cache.has_valid_token)


@router.get("/debug/token")
async def debug_token(
    token_cache: TokenCache = Depends(get_token_cache),
    settings: Settings = Depends(get_settings)
):
    """Check token generation against the processor (non-production only)"""
    if settings.is_production:
        raise HTTPException(status_code=404, detail="Not found")

    token = await token_cache.get_token()
    return JSONResponse(content={
        "success": True,
        "tokenPreview": f"{token[:8]}...",
        "expiresAt": token_cache.expires_at,
    })
