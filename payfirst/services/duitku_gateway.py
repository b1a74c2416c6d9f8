from __future__ import annotations
import logging
import secrets
import string
import time
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, List, Optional

import httpx
from pydantic import BaseModel, Field

from payfirst.errors import GatewayRejected, GatewayUnavailable
from payfirst.settings import Settings
from .signatures import GatewayOperation, sign

logger = logging.getLogger(__name__)

SUCCESS_CODE = "00"

PAYMENT_METHOD_NAMES = {
    "VA": "Maybank Virtual Account",
    "BT": "Permata Bank Virtual Account",
    "VC": "Credit Card",
    "BC": "BCA Virtual Account",
    "M2": "Mandiri Virtual Account",
    "BN": "BNI Virtual Account",
    "BR": "BRIVA",
    "SP": "ShopeePay",
    "OV": "OVO",
    "DA": "DANA",
    "DQ": "Dana",
    "LF": "LinkAja",
    "LA": "LinkAja",
    "NQ": "Nobu QRIS",
    "OL": "OVO Link",
    "JP": "Jenius Pay",
    "GQ": "Gudang Voucher QRIS",
    "GP": "GoPay",
    "A1": "ATM Bersama",
    "AG": "Bank Artha Graha",
    "AM": "Alfamart",
    "I1": "BNI Virtual Account",
    "FT": "Pegadaian/ALFA/Pos",
    "SA": "Shopee Pay Apps",
    "DN": "Indodana Paylater",
    "S1": "Bank Sahabat Sampoerna",
    "B1": "CIMB Niaga Virtual Account",
    "DM": "Danamon Virtual Account",
    "MD": "Mandiri Clickpay",
    "SL": "ShopeePay Account Link",
    "LQ": "LinkAja QRIS",
    "B2": "Permata Net",
    "AT": "ATOME Paylater",
    "B3": "BCA KlikBCA",
    "BV": "BSI Virtual Account",
    "B4": "BNI Internet Banking",
    "B5": "BRI Internet Banking",
    "U1": "UOB Personal Internet Banking",
    "FD": "BSI Mobile",
    "O1": "OCBC ONe Mobile",
    "MV": "Maybank Virtual Account",
    "IR": "Indomaret",
    "QR": "QRIS",
    "NC": "Bank Neo Commerce/BNC",
}


def payment_method_name(code: str) -> str:
    return PAYMENT_METHOD_NAMES.get(code, code)


def generate_order_id(prefix: str = "PAYF") -> str:
    """Timestamp plus a random suffix. Unlikely to collide, not guaranteed unique."""
    alphabet = string.ascii_uppercase + string.digits
    suffix = "".join(secrets.choice(alphabet) for _ in range(6))
    return f"{prefix}-{int(time.time() * 1000)}-{suffix}"


def _to_int(value: Any) -> int:
    try:
        return int(Decimal(str(value)))
    except (InvalidOperation, ValueError, TypeError):
        return 0


# --- Gateway request/response types ---
class PaymentMethodOption(BaseModel):
    code: str
    displayName: str
    fee: int
    image: Optional[str] = None


class TransactionOrder(BaseModel):
    merchantOrderId: str
    paymentAmount: int = Field(..., gt=0)
    paymentMethod: str
    productDetails: str
    customerVaName: str
    email: str
    returnUrl: str
    callbackUrl: str
    phoneNumber: str = ""
    additionalParam: str = ""
    merchantUserInfo: str = ""
    itemDetails: List[dict] = Field(default_factory=list)
    customerDetail: Optional[dict] = None
    expiryPeriod: int = 60


class TransactionResult(BaseModel):
    reference: Optional[str] = None
    paymentUrl: Optional[str] = None
    vaNumber: Optional[str] = None
    qrString: Optional[str] = None
    statusCode: str
    statusMessage: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.statusCode == SUCCESS_CODE and bool(self.reference)


class TransactionStatusResult(BaseModel):
    merchantOrderId: Optional[str] = None
    reference: Optional[str] = None
    statusCode: str
    statusMessage: Optional[str] = None
    amount: int = 0


class DuitkuGateway:
    PAYMENT_METHODS_PATH = "/paymentmethod/getpaymentmethod"
    CREATE_TRANSACTION_PATH = "/v2/inquiry"
    TRANSACTION_STATUS_PATH = "/transactionStatus"

    def __init__(
        self,
        settings: Settings,
        *,
        transport: httpx.AsyncBaseTransport | None = None,
        clock: Callable[[], datetime] = datetime.now,
    ):
        self.merchant_code = settings.gateway_merchant_code
        self.api_key = settings.gateway_api_key
        self.base_url = settings.gateway_base_url
        self.timeout = settings.gateway_timeout_seconds
        self.transport = transport
        self.clock = clock

    def _current_datetime(self) -> str:
        return self.clock().strftime("%Y-%m-%d %H:%M:%S")

    async def _post(self, path: str, body: dict) -> dict:
        async with httpx.AsyncClient(
            base_url=self.base_url, timeout=self.timeout, transport=self.transport
        ) as client:
            try:
                resp = await client.post(path, json=body, headers={"Content-Type": "application/json"})
            except httpx.HTTPError as exc:
                logger.error(f"Failed to reach Duitku {path}: {exc!r}")
                raise GatewayUnavailable(f"Failed to reach payment gateway: {exc.__class__.__name__}")

        if resp.status_code >= 300:
            logger.error(f"Duitku {path} answered {resp.status_code}: {resp.text[:500]}")
            raise GatewayUnavailable(f"Payment gateway error ({resp.status_code})")

        try:
            data = resp.json()
        except ValueError:
            logger.error(f"Duitku {path} returned a non-JSON body")
            raise GatewayUnavailable("Payment gateway returned an unreadable response")
        if not isinstance(data, dict):
            raise GatewayUnavailable("Payment gateway returned an unexpected response")
        return data

    async def list_payment_methods(self, amount: int) -> List[PaymentMethodOption]:
        """Read-only, never retried here; callers may retry."""
        datetime_str = self._current_datetime()
        signature = sign(
            GatewayOperation.PAYMENT_METHODS,
            {"merchantCode": self.merchant_code, "amount": amount, "datetime": datetime_str},
            self.api_key,
        )
        data = await self._post(
            self.PAYMENT_METHODS_PATH,
            {
                "merchantcode": self.merchant_code,
                "amount": str(amount),
                "datetime": datetime_str,
                "signature": signature,
            },
        )

        if data.get("responseCode") != SUCCESS_CODE:
            message = data.get("responseMessage") or "Unknown error"
            raise GatewayRejected(f"Payment methods unavailable: {message}")

        return [
            PaymentMethodOption(
                code=method.get("paymentMethod", ""),
                displayName=payment_method_name(method.get("paymentMethod", "")),
                fee=_to_int(method.get("totalFee", 0)),
                image=method.get("paymentImage"),
            )
            for method in data.get("paymentFee") or []
            if method.get("paymentMethod")
        ]

    async def create_transaction(self, order: TransactionOrder) -> TransactionResult:
        """Issue the inquiry once. The gateway side is not idempotent, so no retry."""
        signature = sign(
            GatewayOperation.CREATE_TRANSACTION,
            {
                "merchantCode": self.merchant_code,
                "merchantOrderId": order.merchantOrderId,
                "paymentAmount": order.paymentAmount,
            },
            self.api_key,
        )
        request_body = order.model_dump()
        request_body.update({"merchantCode": self.merchant_code, "signature": signature})

        logger.info(
            f"Creating Duitku transaction {order.merchantOrderId} "
            f"({order.paymentMethod}, {order.paymentAmount})"
        )
        data = await self._post(self.CREATE_TRANSACTION_PATH, request_body)
        return TransactionResult(
            reference=data.get("reference"),
            paymentUrl=data.get("paymentUrl"),
            vaNumber=data.get("vaNumber"),
            qrString=data.get("qrString"),
            statusCode=str(data.get("statusCode", "")),
            statusMessage=data.get("statusMessage"),
        )

    async def query_status(self, merchant_order_id: str) -> TransactionStatusResult:
        signature = sign(
            GatewayOperation.TRANSACTION_STATUS,
            {"merchantCode": self.merchant_code, "merchantOrderId": merchant_order_id},
            self.api_key,
        )
        data = await self._post(
            self.TRANSACTION_STATUS_PATH,
            {"merchantCode": self.merchant_code, "merchantOrderId": merchant_order_id, "signature": signature},
        )
        return TransactionStatusResult(
            merchantOrderId=data.get("merchantOrderId") or merchant_order_id,
            reference=data.get("reference"),
            statusCode=str(data.get("statusCode", "")),
            statusMessage=data.get("statusMessage"),
            amount=_to_int(data.get("amount", 0)),
        )
