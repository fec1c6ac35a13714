"""
Donation Record Store - CRUD Operations

Donations are created PENDING and settled exactly once. The settling write
is a conditional UPDATE on `payment_status = PENDING`, so of two concurrent
writers only one can win.
"""
from typing import Any, Dict, Optional

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from donation_gateway.core.exceptions import DuplicateReferenceError
from donation_gateway.models.donation import Donation, PaymentGateway, PaymentStatus
from donation_gateway.schemas.donation import InitiateDonationRequest

logger = structlog.get_logger(__name__)

# ============================================================================
# CREATE
# ============================================================================

async def create_donation(
    db: AsyncSession,
    request: InitiateDonationRequest,
    donation_ref: str,
    order_id: str,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None
) -> Donation:
    """Persist a new PENDING donation with no processor linkage"""
    donation = Donation(
        donation_ref=donation_ref,
        order_id=order_id,
        amount=request.amount,
        payment_gateway=PaymentGateway.MSWIPE,
        payment_status=PaymentStatus.PENDING,
        status=PaymentStatus.PENDING.legacy_status,
        full_name=request.full_name,
        email=request.email,
        phone_number=request.phone_number,
        state=request.state,
        city=request.city,
        pin_code=request.pin_code,
        address=request.address,
        seek_80g=request.seek_80g,
        reason_for_donation=request.reason_for_donation.value,
        purpose=request.purpose,
        pan_card_hash=request.pan_card_hash,
        ip_address=ip_address,
        user_agent=user_agent,
    )

    db.add(donation)
    try:
        await db.commit()
    except IntegrityError as e:
        await db.rollback()
        logger.error("Duplicate donation reference", donation_ref=donation_ref, order_id=order_id)
        raise DuplicateReferenceError() from e

    await db.refresh(donation)
    logger.info("Donation created", donation_ref=donation_ref, order_id=order_id, amount=str(donation.amount))
    return donation

# ============================================================================
# READ
# ============================================================================

async def get_donation_by_ref(db: AsyncSession, donation_ref: str) -> Optional[Donation]:
    result = await db.execute(
        select(Donation).where(Donation.donation_ref == donation_ref)
    )
    return result.scalar_one_or_none()


async def get_donation_by_order_id(db: AsyncSession, order_id: str) -> Optional[Donation]:
    result = await db.execute(
        select(Donation).where(Donation.order_id == order_id)
    )
    return result.scalar_one_or_none()

# ============================================================================
# UPDATE
# ============================================================================

async def attach_payment_link(
    db: AsyncSession,
    donation: Donation,
    processor_internal_id: Optional[str],
    transaction_token: Optional[str],
    raw_response: Dict[str, Any]
) -> Donation:
    """Record link-creation identifiers on a still-PENDING donation"""
    donation.processor_internal_id = processor_internal_id
    donation.transaction_token = transaction_token
    donation.raw_response = {**(donation.raw_response or {}), "paymentLink": raw_response}

    await db.commit()
    await db.refresh(donation)
    return donation


async def settle_donation(
    db: AsyncSession,
    donation: Donation,
    new_status: PaymentStatus,
    processor_transaction_ref: Optional[str] = None,
    processor_internal_id: Optional[str] = None,
    raw_key: Optional[str] = None,
    raw_payload: Optional[Dict[str, Any]] = None
) -> bool:
    """
    Move a PENDING donation to a terminal status

    The write only applies if the stored status is still PENDING. Returns
    True when this call performed the transition; False when another writer
    got there first, in which case `donation` is refreshed to the stored
    state.
    """
    if new_status == PaymentStatus.PENDING:
        raise ValueError("settle_donation requires a terminal status")

    raw_response = dict(donation.raw_response or {})
    if raw_key:
        raw_response[raw_key] = raw_payload

    values = {
        "payment_status": new_status,
        "status": new_status.legacy_status,
        "raw_response": raw_response,
        # Terminal states always carry a reference; fall back to our order id
        "processor_transaction_ref": processor_transaction_ref or processor_internal_id or donation.order_id,
    }
    if processor_internal_id:
        values["processor_internal_id"] = processor_internal_id

    result = await db.execute(
        update(Donation)
        .where(
            Donation.id == donation.id,
            Donation.payment_status == PaymentStatus.PENDING
        )
        .values(**values)
        .execution_options(synchronize_session=False)
    )

    if result.rowcount != 1:
        await db.rollback()
        await db.refresh(donation)
        logger.warning(
            "Donation already settled by a concurrent writer",
            donation_ref=donation.donation_ref,
            attempted_status=new_status.value,
            current_status=donation.payment_status.value
        )
        return False

    await db.commit()
    await db.refresh(donation)

    logger.info(
        "Donation settled",
        donation_ref=donation.donation_ref,
        payment_status=new_status.value,
        transaction_ref=donation.processor_transaction_ref
    )
    return True
