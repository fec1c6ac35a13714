import hashlib
import html
import re
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationError, field_validator

from donation_gateway.core.exceptions import DonationValidationError


PHONE_PATTERN = re.compile(r"^[0-9]{10}$")
PIN_CODE_PATTERN = re.compile(r"^[0-9]{6}$")

INDIAN_STATES = frozenset([
    "Andhra Pradesh", "Arunachal Pradesh", "Assam", "Bihar", "Chhattisgarh", "Goa",
    "Gujarat", "Haryana", "Himachal Pradesh", "Jharkhand", "Karnataka", "Kerala",
    "Madhya Pradesh", "Maharashtra", "Manipur", "Meghalaya", "Mizoram", "Nagaland",
    "Odisha", "Punjab", "Rajasthan", "Sikkim", "Tamil Nadu", "Telangana", "Tripura",
    "Uttar Pradesh", "Uttarakhand", "West Bengal",
    # Union territories
    "Andaman and Nicobar Islands", "Chandigarh", "Dadra and Nagar Haveli and Daman and Diu",
    "Delhi", "Jammu and Kashmir", "Ladakh", "Lakshadweep", "Puducherry",
])


class DonationReason(str, Enum):
    GURUDAKSHINA = "Gurudakshina"
    GENERAL = "General Donation"
    EVENT_SPONSORSHIP = "Event Sponsorship"
    BUILDING_FUND = "Building Fund"
    EDUCATIONAL_SUPPORT = "Educational Support"
    COMMUNITY_SERVICE = "Community Service"
    SPECIAL_OCCASION = "Special Occasion"
    OTHER = "Other"


class InitiateDonationRequest(BaseModel):
    """Donor details submitted to start a hosted payment"""

    model_config = ConfigDict(
        populate_by_name=True,
        str_strip_whitespace=True,
        json_schema_extra={
            "example": {
                "fullName": "Asha Rao",
                "email": "asha@example.com",
                "phoneNumber": "9876543210",
                "amount": 501,
                "state": "Maharashtra",
                "city": "Vasai",
                "pinCode": "401202",
                "address": "12 Temple Road",
                "seek80G": "yes",
                "reasonForDonation": "General Donation",
                "purpose": "Annual seva",
            }
        },
    )

    full_name: str = Field(..., alias="fullName", min_length=1, max_length=255)
    email: EmailStr
    phone_number: str = Field(..., alias="phoneNumber")
    amount: Decimal = Field(..., gt=0, max_digits=12, decimal_places=2)
    state: str = Field(..., min_length=1, max_length=128)
    city: str = Field(..., min_length=1, max_length=128)
    pin_code: str = Field(..., alias="pinCode", min_length=1)
    address: str = Field(..., min_length=1, max_length=1000)
    seek_80g: str = Field(..., alias="seek80G", min_length=1)
    reason_for_donation: DonationReason = Field(..., alias="reasonForDonation")
    purpose: Optional[str] = Field(None, max_length=1000)
    pan_card_number: Optional[str] = Field(None, alias="panCardNumber")

    @field_validator("phone_number", mode="before")
    @classmethod
    def validate_phone(cls, value: Any) -> Any:
        if value is None:
            return value
        value = str(value).strip()
        if not PHONE_PATTERN.match(value):
            raise ValueError("must be exactly 10 digits")
        return value

    @field_validator("state")
    @classmethod
    def validate_state(cls, value: str) -> str:
        if value not in INDIAN_STATES:
            raise ValueError("must be a valid Indian state or union territory")
        return value

    @field_validator("pin_code")
    @classmethod
    def validate_pin_code(cls, value: str) -> str:
        if not PIN_CODE_PATTERN.match(value):
            raise ValueError("must be exactly 6 digits")
        return value

    @field_validator("seek_80g")
    @classmethod
    def validate_seek_80g(cls, value: str) -> str:
        if value not in ("yes", "no"):
            raise ValueError('must be "yes" or "no"')
        return value

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value: str) -> str:
        return value.lower()

    @field_validator("full_name", "state", "city", "address", "purpose")
    @classmethod
    def escape_text(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        return html.escape(value) or None

    @property
    def pan_card_hash(self) -> Optional[str]:
        if not self.pan_card_number:
            return None
        return hashlib.sha256(self.pan_card_number.encode("utf-8")).hexdigest()

    @property
    def payment_purpose(self) -> str:
        if self.purpose:
            return self.purpose
        return self.reason_for_donation.value


def _format_errors(exc: ValidationError) -> List[str]:
    messages = []
    for error in exc.errors():
        field = ".".join(str(part) for part in error["loc"]) or "body"
        blank = error["type"] == "string_too_short" and not str(error.get("input", "")).strip()
        if error["type"] == "missing" or blank:
            messages.append(f"{field} is required")
            continue
        message = error["msg"]
        if message.startswith("Value error, "):
            message = message[len("Value error, "):]
        messages.append(f"{field}: {message}")
    return messages


def parse_initiate_request(data: Any) -> InitiateDonationRequest:
    """Validate a raw request body, collecting every violation"""
    if not isinstance(data, dict):
        raise DonationValidationError(["Request body must be a JSON object"])
    try:
        return InitiateDonationRequest.model_validate(data)
    except ValidationError as exc:
        raise DonationValidationError(_format_errors(exc)) from exc


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class InitiatePaymentResponse(_CamelModel):
    success: bool = True
    payment_url: str = Field(..., alias="paymentUrl")
    donation_ref: str = Field(..., alias="donationRef")
    order_id: str = Field(..., alias="orderId")


class DonationStatusResponse(_CamelModel):
    donation_ref: str = Field(..., alias="donationRef")
    status: str
    amount: float
    transaction_ref: Optional[str] = Field(None, alias="transactionRef")
    ipg_id: Optional[str] = Field(None, alias="ipgId")
    created_at: Optional[datetime] = Field(None, alias="createdAt")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")


class VerifyPaymentResponse(_CamelModel):
    donation_ref: str = Field(..., alias="donationRef")
    status: str
    processor_status: Dict[str, Any] = Field(..., alias="processorStatus")
    amount: float
    transaction_ref: Optional[str] = Field(None, alias="transactionRef")
    updated_at: Optional[datetime] = Field(None, alias="updatedAt")


class CallbackResponse(_CamelModel):
    success: bool
    status: str
    donation_ref: str = Field(..., alias="donationRef")
    message: str
