"""
HTTP client for the Mswipe pay-by-link (PBL) API

Three independent single-attempt calls (token, payment link, transaction
status) plus parsing of the BackPosting callback the processor sends once
the donor finishes on the hosted page. Every failure surfaces as
ProcessorUnavailableError; nothing is retried here.
"""
import time
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Optional
from urllib.parse import parse_qs, urlparse

import httpx
import structlog

from donation_gateway.core.config import Settings
from donation_gateway.core.exceptions import InvalidCallbackError, ProcessorUnavailableError
from donation_gateway.middleware.metrics import processor_request_duration_seconds, processor_requests_total
from donation_gateway.models.donation import PaymentStatus
from donation_gateway.services.references import generate_request_id

logger = structlog.get_logger(__name__)

TOKEN_PATH = "/ipg/api/CreatePBLAuthToken"
PAYMENT_LINK_PATH = "/ipg/api/MswipePayment"
TRANSACTION_STATUS_PATH = "/ipg/api/getPBLTransactionDetails"

# Payment_Status codes returned by getPBLTransactionDetails
STATUS_CODE_SUCCESS = 1
STATUS_CODE_PENDING = 2


@dataclass
class TokenGrant:
    token: str
    raw_response: Dict[str, Any]


@dataclass
class DonorContact:
    name: str
    email: str
    mobile: str
    purpose: str


@dataclass
class PaymentLink:
    payment_url: str
    processor_internal_id: Optional[str]
    transaction_token: Optional[str]
    request_id: str
    raw_response: Dict[str, Any]


@dataclass
class TransactionStatus:
    status: PaymentStatus
    status_code: Optional[int]
    processor_transaction_ref: Optional[str]
    processor_internal_id: Optional[str]
    data: Dict[str, Any]
    raw_response: Dict[str, Any]


@dataclass
class CallbackNotice:
    """Fields extracted from a BackPosting payload"""
    order_id: str
    status: PaymentStatus
    raw_status: Optional[str]
    amount: Optional[Decimal]
    amount_declared: bool
    ipg_id: Optional[str]
    transaction_ref: Optional[str]
    details: Dict[str, Any] = field(default_factory=dict)


def _is_truthy(value: Any) -> bool:
    return value is True or str(value).strip().lower() == "true"


def _blank_to_none(value: Any) -> Optional[str]:
    if value is None:
        return None
    value = str(value).strip()
    return value or None


def extract_transaction_token(payment_url: str) -> Optional[str]:
    """Pull the TransID query parameter out of a hosted payment link"""
    try:
        values = parse_qs(urlparse(payment_url).query).get("TransID")
    except ValueError:
        values = None
    if not values:
        logger.warning("Could not extract TransID from payment link")
        return None
    return values[0]


def map_status_code(code: Any) -> PaymentStatus:
    try:
        code = int(str(code).strip())
    except (TypeError, ValueError):
        return PaymentStatus.FAILED
    if code == STATUS_CODE_SUCCESS:
        return PaymentStatus.SUCCESS
    if code == STATUS_CODE_PENDING:
        return PaymentStatus.PENDING
    return PaymentStatus.FAILED


def map_callback_status(raw_status: Optional[str]) -> PaymentStatus:
    normalized = (raw_status or "").strip().lower()
    if normalized == "approved":
        return PaymentStatus.SUCCESS
    if normalized == "pending":
        return PaymentStatus.PENDING
    return PaymentStatus.FAILED


def parse_callback(payload: Dict[str, Any]) -> CallbackNotice:
    """
    Extract the fields the orchestrator needs from a BackPosting payload

    Raises:
        InvalidCallbackError: the order identifier (ME_InvNo) is absent
    """
    order_id = _blank_to_none(payload.get("ME_InvNo"))
    if not order_id:
        raise InvalidCallbackError("Missing order/invoice ID in callback")

    raw_amount = _blank_to_none(payload.get("TranAmount"))
    amount = None
    if raw_amount is not None:
        try:
            amount = Decimal(raw_amount)
        except InvalidOperation:
            logger.warning("Unparseable callback amount", order_id=order_id, amount=raw_amount)
        else:
            if not amount.is_finite():
                amount = None

    ipg_id = _blank_to_none(payload.get("IPG_ID"))
    raw_status = _blank_to_none(payload.get("TRAN_STATUS"))

    return CallbackNotice(
        order_id=order_id,
        status=map_callback_status(raw_status),
        raw_status=raw_status,
        amount=amount,
        amount_declared=raw_amount is not None,
        ipg_id=ipg_id,
        transaction_ref=_blank_to_none(payload.get("RRN")) or ipg_id,
        details={
            "ipgId": ipg_id,
            "transactionRef": _blank_to_none(payload.get("RRN")) or ipg_id,
            "cardType": payload.get("CardType"),
            "cardNumber": payload.get("CardNumber"),
            "responseCode": payload.get("RC"),
            "responseDesc": payload.get("RC_DESC"),
            "dateTime": payload.get("DateTime"),
            "merchantId": payload.get("MerID"),
            "terminalId": payload.get("TermID"),
            "extraNotes": {
                f"note{i}": payload.get(f"EX_NOTES{i}") for i in range(1, 6)
            },
            "rawStatus": raw_status,
            "rawAmount": raw_amount,
        },
    )


class PaymentGatewayClient:
    """HTTP client for processor communication"""

    def __init__(self, settings: Settings, transport: Optional[httpx.AsyncBaseTransport] = None):
        self.settings = settings
        self.base_url = settings.resolved_processor_base_url
        self.timeout = httpx.Timeout(settings.processor_timeout_seconds)
        self._transport = transport

        if not self.is_configured:
            logger.warning(
                "Processor configuration incomplete",
                required="PROCESSOR_USER_ID, PROCESSOR_CLIENT_ID, PROCESSOR_PASSWORD, PROCESSOR_CUST_CODE"
            )
        else:
            logger.info(
                "Payment gateway client initialized",
                environment="production" if settings.processor_is_production else "uat",
                base_url=self.base_url
            )

    @property
    def is_configured(self) -> bool:
        s = self.settings
        return bool(s.processor_user_id and s.processor_client_id and s.processor_password and s.processor_cust_code)

    async def _post(self, operation: str, path: str, payload: Dict[str, Any], error_key: str) -> Dict[str, Any]:
        """POST once and return the decoded JSON body"""
        start_time = time.time()
        try:
            async with httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                transport=self._transport
            ) as client:
                response = await client.post(path, json=payload)
        except httpx.TimeoutException:
            processor_requests_total.labels(operation=operation, status="timeout").inc()
            logger.error("Timeout calling payment processor", operation=operation)
            raise ProcessorUnavailableError(f"{operation}: processor timeout")
        except httpx.HTTPError as e:
            processor_requests_total.labels(operation=operation, status="connection_error").inc()
            logger.error("Connection error to payment processor", operation=operation, error=str(e))
            raise ProcessorUnavailableError(f"{operation}: {e}")
        except Exception as e:
            processor_requests_total.labels(operation=operation, status="transport_error").inc()
            logger.error("Unexpected transport error calling payment processor", operation=operation, error=repr(e))
            raise ProcessorUnavailableError(f"{operation}: {type(e).__name__}") from e
        finally:
            processor_request_duration_seconds.labels(operation=operation).observe(time.time() - start_time)

        try:
            data = response.json()
        except ValueError:
            data = None

        if response.status_code >= 400:
            processor_requests_total.labels(operation=operation, status="http_error").inc()
            reason = (data or {}).get(error_key) if isinstance(data, dict) else None
            logger.error(
                "Payment processor returned an error status",
                operation=operation,
                status_code=response.status_code,
                reason=reason
            )
            raise ProcessorUnavailableError(reason or f"{operation}: HTTP {response.status_code}")

        if not isinstance(data, dict):
            processor_requests_total.labels(operation=operation, status="invalid_response").inc()
            logger.error("Payment processor returned a non-JSON body", operation=operation)
            raise ProcessorUnavailableError(f"{operation}: invalid response body")

        return data

    async def request_token(self) -> TokenGrant:
        """Request a session token using merchant credentials"""
        payload = {
            "userId": self.settings.processor_user_id,
            "clientId": self.settings.processor_client_id,
            "password": self.settings.processor_password,
            "applId": self.settings.processor_appl_id,
            "channelId": self.settings.processor_channel_id,
        }

        logger.info("Requesting processor authentication token")
        data = await self._post("request_token", TOKEN_PATH, payload, error_key="msg")

        if not _is_truthy(data.get("status")) or not isinstance(data.get("token"), str) or not data["token"]:
            processor_requests_total.labels(operation="request_token", status="rejected").inc()
            reason = data.get("msg") or "Token generation failed"
            logger.error("Processor token request rejected", reason=reason)
            raise ProcessorUnavailableError(reason)

        processor_requests_total.labels(operation="request_token", status="success").inc()
        logger.info("Processor token issued")
        return TokenGrant(token=data["token"], raw_response={k: v for k, v in data.items() if k != "token"})

    async def create_payment_link(
        self,
        customer: DonorContact,
        amount: Decimal,
        order_id: str,
        donation_ref: str,
        token: str
    ) -> PaymentLink:
        """
        Create a hosted payment link for an order

        Args:
            customer: Donor contact details printed on the link
            amount: Amount in the currency's major unit, as submitted
            order_id: Our processor-facing order id (sent as invoice_id)
            donation_ref: Our public reference, echoed in the notes
            token: Session token from the token cache

        Returns:
            PaymentLink with the hosted URL and identifiers for later polling
        """
        request_id = generate_request_id()
        payload = {
            "amount": str(amount),
            "mobileno": customer.mobile,
            "custcode": self.settings.processor_cust_code,
            "user_id": self.settings.processor_user_id,
            "sessiontoken": token,
            "versionno": self.settings.processor_version,
            "imeino": "",
            "email_id": customer.email,
            "invoice_id": order_id,
            "request_id": request_id,
            "device_id": "",
            "addlnote1": f"Donation Ref: {donation_ref}",
            "addlnote2": f"Donor: {customer.name}",
            "addlnote3": customer.purpose,
            **{f"addlnote{i}": "" for i in range(4, 11)},
            "LinkValidity": "",
            "paymentreason": self.settings.payment_reason,
            "redirect_url": self.settings.processor_redirect_url or "",
            "IsSendSMS": False,
            "ConvAllow": "false",
            "ApplicationId": self.settings.processor_appl_id,
            "ChannelId": self.settings.processor_channel_id,
            "ClientId": self.settings.processor_client_id,
        }

        logger.info("Creating processor payment link", order_id=order_id, amount=str(amount))
        data = await self._post("create_payment_link", PAYMENT_LINK_PATH, payload, error_key="responsemessage")

        if not _is_truthy(data.get("status")):
            processor_requests_total.labels(operation="create_payment_link", status="rejected").inc()
            reason = data.get("responsemessage") or "Payment link creation failed"
            logger.error("Processor rejected payment link", order_id=order_id, reason=reason)
            raise ProcessorUnavailableError(reason)

        payment_url = data.get("smslink")
        if not payment_url:
            processor_requests_total.labels(operation="create_payment_link", status="rejected").inc()
            logger.error("Payment link response has no smslink", order_id=order_id)
            raise ProcessorUnavailableError("No payment link returned from processor")

        processor_requests_total.labels(operation="create_payment_link", status="success").inc()
        ipg_id = _blank_to_none(data.get("txn_id"))
        logger.info("Processor payment link created", order_id=order_id, ipg_id=ipg_id)

        return PaymentLink(
            payment_url=payment_url,
            processor_internal_id=ipg_id,
            transaction_token=extract_transaction_token(payment_url),
            request_id=request_id,
            raw_response={
                "txn_id": data.get("txn_id"),
                "responsecode": data.get("responsecode"),
                "responsemessage": data.get("responsemessage"),
                "messageContent": data.get("MessageContent"),
                "requestId": request_id,
                "extraNotes": {f"note{i}": data.get(f"ExtraNote{i}") for i in range(1, 6)},
            },
        )

    async def query_transaction_status(self, transaction_token: str) -> TransactionStatus:
        """Query the processor for the current state of a payment link"""
        if not transaction_token:
            raise ProcessorUnavailableError("Transaction ID is required")

        payload = {
            "id": transaction_token,
            "Latitude": "",
            "Longitude": "",
            "IP_Address": "",
            "User_Agent": "",
        }

        logger.info("Querying processor transaction status", transaction_token=transaction_token)
        data = await self._post("query_transaction_status", TRANSACTION_STATUS_PATH, payload, error_key="ResponseMessage")

        if not _is_truthy(data.get("Status")):
            processor_requests_total.labels(operation="query_transaction_status", status="rejected").inc()
            reason = data.get("ResponseMessage") or "Status check failed"
            logger.error("Processor status check rejected", reason=reason)
            raise ProcessorUnavailableError(reason)

        rows = data.get("Data")
        if not isinstance(rows, list) or not rows or not isinstance(rows[0], dict):
            processor_requests_total.labels(operation="query_transaction_status", status="rejected").inc()
            raise ProcessorUnavailableError("No transaction data returned")

        txn = rows[0]
        status = map_status_code(txn.get("Payment_Status"))
        ipg_id = _blank_to_none(txn.get("IPG_ID"))
        processor_requests_total.labels(operation="query_transaction_status", status="success").inc()
        logger.info("Processor transaction status", transaction_token=transaction_token, status=status.value)

        try:
            status_code = int(str(txn.get("Payment_Status")).strip())
        except (TypeError, ValueError):
            status_code = None

        return TransactionStatus(
            status=status,
            status_code=status_code,
            processor_transaction_ref=_blank_to_none(txn.get("Payment_Id")) or ipg_id,
            processor_internal_id=ipg_id,
            data={
                "ipgId": ipg_id,
                "amount": txn.get("Amount"),
                "custCode": txn.get("Cust_Code"),
                "merchantId": txn.get("MID"),
                "terminalId": txn.get("TID"),
                "status": status.value,
                "statusCode": status_code,
                "statusDesc": txn.get("Payment_Desc"),
                "orderId": txn.get("Order_Id"),
                "paymentId": txn.get("Payment_Id"),
                "transactionDateTime": txn.get("TrxDateTime"),
                "cardNumber": txn.get("CardNumber"),
                "cardType": txn.get("CardType"),
                "paymentType": txn.get("PaymentType"),
                "createdOn": txn.get("Created_On"),
            },
            raw_response=data,
        )

    def environment_info(self, has_valid_token: bool = False) -> Dict[str, Any]:
        return {
            "environment": "production" if self.settings.processor_is_production else "uat",
            "baseUrl": self.base_url,
            "configured": self.is_configured,
            "hasValidToken": has_valid_token,
        }
