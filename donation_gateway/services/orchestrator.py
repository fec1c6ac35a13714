"""
Payment orchestration for hosted-page donations

State machine: NEW -> PENDING -> SUCCESS | FAILED. PENDING is the only state
a callback or a manual verification may act on; every other state answers
with the already-settled result.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Callable, Dict, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from donation_gateway import crud
from donation_gateway.core.config import Settings
from donation_gateway.core.exceptions import (
    DonationNotFoundError,
    PaymentInitiationError,
    ProcessorUnavailableError,
    UnverifiableDonationError,
)
from donation_gateway.middleware.metrics import donations_initiated_total, payment_callbacks_total
from donation_gateway.models.donation import Donation, PaymentStatus
from donation_gateway.schemas.donation import parse_initiate_request
from donation_gateway.services.notification import NotificationClient
from donation_gateway.services.payment_client import DonorContact, PaymentGatewayClient, parse_callback
from donation_gateway.services.references import generate_donation_ref, generate_order_id
from donation_gateway.services.token_cache import TokenCache

logger = structlog.get_logger(__name__)


@dataclass
class InitiationResult:
    payment_url: str
    donation_ref: str
    order_id: str


@dataclass
class CallbackOutcome:
    donation: Donation
    status: PaymentStatus
    replayed: bool = False
    amount_mismatch: bool = False


@dataclass
class VerificationResult:
    donation: Donation
    status: PaymentStatus
    processor_status: Dict[str, Any]
    transitioned: bool = False


class PaymentOrchestrator:
    """Coordinates the store, processor client and notifier for one request"""

    def __init__(
        self,
        db: AsyncSession,
        payment_client: PaymentGatewayClient,
        token_cache: TokenCache,
        notifier: NotificationClient,
        settings: Settings,
        donation_ref_factory: Optional[Callable[[], str]] = None,
        order_id_factory: Optional[Callable[[], str]] = None,
    ):
        self.db = db
        self.payment_client = payment_client
        self.token_cache = token_cache
        self.notifier = notifier
        self.settings = settings
        self._donation_ref_factory = donation_ref_factory or (
            lambda: generate_donation_ref(settings.donation_ref_prefix)
        )
        self._order_id_factory = order_id_factory or (
            lambda: generate_order_id(settings.order_id_prefix)
        )

    async def initiate(
        self,
        payload: Any,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None
    ) -> InitiationResult:
        """
        Create a PENDING donation and obtain a hosted payment link for it

        Raises:
            DonationValidationError: payload is missing or has malformed fields
            ProcessorUnavailableError: processor credentials are not configured
            DuplicateReferenceError: generated reference collided with a stored one
            PaymentInitiationError: link creation failed; the donation is now FAILED
        """
        request = parse_initiate_request(payload)

        if not self.payment_client.is_configured:
            logger.error("Payment processor not configured")
            raise ProcessorUnavailableError("Payment processor not configured", status_code=503)

        donation = await crud.create_donation(
            self.db,
            request,
            donation_ref=self._donation_ref_factory(),
            order_id=self._order_id_factory(),
            ip_address=ip_address,
            user_agent=user_agent,
        )
        logger.info(
            "Donation initiated",
            donation_ref=donation.donation_ref,
            order_id=donation.order_id,
            amount=str(donation.amount)
        )

        try:
            token = await self.token_cache.get_token()
            link = await self.payment_client.create_payment_link(
                DonorContact(
                    name=request.full_name,
                    email=request.email,
                    mobile=request.phone_number,
                    purpose=request.payment_purpose,
                ),
                amount=donation.amount,
                order_id=donation.order_id,
                donation_ref=donation.donation_ref,
                token=token,
            )
        except ProcessorUnavailableError as e:
            await self._fail_initiation(donation, e.reason)
            raise PaymentInitiationError(donation.donation_ref, e.reason) from e
        except Exception as e:
            logger.exception("Unexpected error creating payment link", donation_ref=donation.donation_ref)
            reason = f"Unexpected error: {type(e).__name__}"
            await self._fail_initiation(donation, reason)
            raise PaymentInitiationError(donation.donation_ref, reason) from e

        await crud.attach_payment_link(
            self.db,
            donation,
            processor_internal_id=link.processor_internal_id,
            transaction_token=link.transaction_token,
            raw_response=link.raw_response,
        )
        donations_initiated_total.labels(outcome="success").inc()

        return InitiationResult(
            payment_url=link.payment_url,
            donation_ref=donation.donation_ref,
            order_id=donation.order_id,
        )

    async def _fail_initiation(self, donation: Donation, reason: str):
        """A donation that never reached the hosted page is settled as FAILED"""
        await crud.settle_donation(
            self.db,
            donation,
            PaymentStatus.FAILED,
            raw_key="initiationError",
            raw_payload={"reason": reason},
        )
        donations_initiated_total.labels(outcome="processor_error").inc()
        logger.error(
            "Payment link creation failed",
            donation_ref=donation.donation_ref,
            reason=reason
        )

    async def handle_callback(self, payload: Dict[str, Any]) -> CallbackOutcome:
        """
        Reconcile a processor BackPosting against its PENDING donation

        The payload comes from an unauthenticated endpoint. It may only
        settle a donation whose order id exists and is still PENDING, and a
        declared amount that differs from the stored one always settles FAILED.

        Raises:
            InvalidCallbackError: the order identifier is absent
            DonationNotFoundError: no donation has that order id
        """
        notice = parse_callback(payload)
        logger.info(
            "Processor callback received",
            order_id=notice.order_id,
            ipg_id=notice.ipg_id,
            raw_status=notice.raw_status,
            amount=notice.details.get("rawAmount")
        )

        donation = await crud.get_donation_by_order_id(self.db, notice.order_id)
        if donation is None:
            payment_callbacks_total.labels(outcome="not_found").inc()
            logger.error("Donation not found for callback", order_id=notice.order_id)
            raise DonationNotFoundError(f"No donation for order {notice.order_id}")

        if not donation.is_pending:
            return self._replayed(donation)

        new_status = notice.status
        amount_mismatch = notice.amount_declared and (
            notice.amount is None or notice.amount != Decimal(donation.amount)
        )
        if amount_mismatch:
            logger.error(
                "Callback amount does not match donation",
                security_event="amount_mismatch",
                donation_ref=donation.donation_ref,
                expected=str(donation.amount),
                received=notice.details.get("rawAmount"),
                reported_status=notice.raw_status
            )
            new_status = PaymentStatus.FAILED

        if new_status == PaymentStatus.PENDING:
            payment_callbacks_total.labels(outcome="still_pending").inc()
            logger.info("Callback reports payment still pending", donation_ref=donation.donation_ref)
            return CallbackOutcome(donation=donation, status=PaymentStatus.PENDING)

        won = await self._settle(
            donation,
            new_status,
            processor_transaction_ref=notice.transaction_ref,
            processor_internal_id=notice.ipg_id,
            raw_key="callback",
            raw_payload={**notice.details, "amountMismatch": amount_mismatch},
        )
        if not won:
            return self._replayed(donation)

        payment_callbacks_total.labels(outcome="amount_mismatch" if amount_mismatch else new_status.value.lower()).inc()
        return CallbackOutcome(
            donation=donation,
            status=donation.payment_status,
            amount_mismatch=amount_mismatch,
        )

    async def verify(self, donation_ref: str) -> VerificationResult:
        """
        Reconcile a donation by polling the processor, for missed callbacks

        Raises:
            DonationNotFoundError: unknown reference
            UnverifiableDonationError: no polling token was captured at initiation
            ProcessorUnavailableError: the status query failed
        """
        donation = await self.get_status(donation_ref)

        if not donation.transaction_token:
            logger.warning("Donation has no polling token", donation_ref=donation_ref)
            raise UnverifiableDonationError(donation_ref, donation.payment_status.value)

        result = await self.payment_client.query_transaction_status(donation.transaction_token)

        transitioned = False
        if donation.is_pending and result.status != PaymentStatus.PENDING:
            transitioned = await self._settle(
                donation,
                result.status,
                processor_transaction_ref=result.processor_transaction_ref,
                processor_internal_id=result.processor_internal_id,
                raw_key="statusCheck",
                raw_payload=result.data,
            )
            if transitioned:
                logger.info("Donation settled via status check", donation_ref=donation_ref, status=result.status.value)

        return VerificationResult(
            donation=donation,
            status=donation.payment_status,
            processor_status=result.data,
            transitioned=transitioned,
        )

    async def get_status(self, donation_ref: str) -> Donation:
        donation = await crud.get_donation_by_ref(self.db, donation_ref)
        if donation is None:
            raise DonationNotFoundError(f"No donation with reference {donation_ref}")
        return donation

    async def _settle(self, donation: Donation, new_status: PaymentStatus, **kwargs) -> bool:
        """Apply a terminal transition and notify on success; False if another writer won"""
        won = await crud.settle_donation(self.db, donation, new_status, **kwargs)
        if won and new_status == PaymentStatus.SUCCESS:
            await self._notify(donation)
        return won

    async def _notify(self, donation: Donation):
        # The payment is already final; delivery problems must not undo it
        try:
            await self.notifier.send_donation_receipt(donation)
        except Exception as e:
            logger.error(
                "Failed to send donation receipt",
                donation_ref=donation.donation_ref,
                error=str(e)
            )

    def _replayed(self, donation: Donation) -> CallbackOutcome:
        payment_callbacks_total.labels(outcome="replayed").inc()
        logger.warning(
            "Callback for already settled donation",
            security_event="replayed_callback",
            donation_ref=donation.donation_ref,
            current_status=donation.payment_status.value
        )
        return CallbackOutcome(donation=donation, status=donation.payment_status, replayed=True)
