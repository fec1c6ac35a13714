from sqlalchemy import Column, Integer, String, Numeric, DateTime, func, Enum, Text, JSON
from sqlalchemy.orm import declarative_base
import enum

Base = declarative_base()


class PaymentStatus(str, enum.Enum):
    """Authoritative payment state; PENDING is the only non-terminal state"""
    PENDING = "PENDING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"

    @property
    def legacy_status(self) -> str:
        """Value mirrored into the legacy `status` column"""
        return LEGACY_STATUS[self]


LEGACY_STATUS = {
    PaymentStatus.PENDING: "pending",
    PaymentStatus.SUCCESS: "completed",
    PaymentStatus.FAILED: "failed",
}


class PaymentGateway(str, enum.Enum):
    MANUAL = "manual"
    MSWIPE = "mswipe"


class Donation(Base):
    """One donation attempt; rows are never deleted"""
    __tablename__ = "donations"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    donation_ref = Column(String(64), nullable=False, unique=True, index=True)
    order_id = Column(String(64), nullable=False, unique=True, index=True)  # Processor invoice id
    amount = Column(Numeric(12, 2), nullable=False)

    payment_gateway = Column(Enum(PaymentGateway), nullable=False, default=PaymentGateway.MSWIPE)
    payment_status = Column(Enum(PaymentStatus), nullable=False, default=PaymentStatus.PENDING, index=True)
    status = Column(String(16), nullable=False, default="pending")  # Legacy mirror of payment_status

    # Processor linkage
    processor_transaction_ref = Column(String(128), nullable=True)  # RRN or IPG id, terminal states only
    processor_internal_id = Column(String(128), nullable=True)  # IPG id
    transaction_token = Column(String(128), nullable=True)  # TransID used for status polling
    raw_response = Column(JSON, nullable=True)

    # Donor details
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, index=True)
    phone_number = Column(String(16), nullable=False)
    state = Column(String(128), nullable=True)
    city = Column(String(128), nullable=True)
    pin_code = Column(String(16), nullable=True)
    address = Column(Text, nullable=True)
    seek_80g = Column(String(8), nullable=True)
    reason_for_donation = Column(String(64), nullable=True)
    purpose = Column(Text, nullable=True)
    pan_card_hash = Column(String(64), nullable=True)

    # Request metadata
    ip_address = Column(String(64), nullable=True)
    user_agent = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)

    @property
    def is_pending(self) -> bool:
        return self.payment_status == PaymentStatus.PENDING

    def __repr__(self):
        return f"<Donation(ref={self.donation_ref}, order_id={self.order_id}, amount={self.amount}, status='{self.payment_status.value}')>"
