"""
Domain exceptions for the donation payment flow.

Each exception carries the HTTP status the API layer answers with.
Replayed callbacks and amount mismatches are not exceptions: they are
normal callback outcomes.
"""
from typing import List, Optional


class DonationGatewayError(Exception):
    """Base class for payment flow errors"""

    status_code: int = 500
    public_message: str = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.public_message)


class DonationValidationError(DonationGatewayError):
    """Donation request failed validation"""

    status_code = 400
    public_message = "Invalid donation request"

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors))
        self.errors = errors


class DonationNotFoundError(DonationGatewayError):
    """No donation matches the given reference or order id"""

    status_code = 404
    public_message = "Donation not found"


class ProcessorUnavailableError(DonationGatewayError):
    """Token, payment-link or status call to the processor failed"""

    status_code = 502
    public_message = "Payment service temporarily unavailable"

    def __init__(self, reason: str, status_code: Optional[int] = None):
        super().__init__(reason)
        self.reason = reason
        if status_code is not None:
            self.status_code = status_code


class PaymentInitiationError(DonationGatewayError):
    """Payment link creation failed; the donation was settled as FAILED"""

    status_code = 502
    public_message = "Failed to initiate payment"

    def __init__(self, donation_ref: str, reason: str):
        super().__init__(reason)
        self.donation_ref = donation_ref
        self.reason = reason


class DuplicateReferenceError(DonationGatewayError):
    """Generated donation reference or order id already exists"""

    status_code = 409
    public_message = "Duplicate order detected. Please try again."


class InvalidCallbackError(DonationGatewayError):
    """Processor callback is missing the order identifier"""

    status_code = 400
    public_message = "Invalid callback data"


class UnverifiableDonationError(DonationGatewayError):
    """Donation has no polling token, so the processor cannot be queried"""

    status_code = 400
    public_message = "Transaction ID not available for verification"

    def __init__(self, donation_ref: str, current_status: str):
        super().__init__(f"No polling token captured for {donation_ref}")
        self.donation_ref = donation_ref
        self.current_status = current_status
