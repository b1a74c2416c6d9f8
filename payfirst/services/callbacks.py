from __future__ import annotations
import logging
from enum import Enum
from typing import Optional
from urllib.parse import parse_qs

from pydantic import BaseModel, ConfigDict
from sqlalchemy.ext.asyncio import async_sessionmaker

from payfirst.errors import SignatureMismatch, ValidationError
from payfirst.models import PendingPayment
from payfirst.settings import Settings
from . import pending_store
from .duitku_gateway import payment_method_name
from .payment_state import TransitionOutcome, state_for_callback
from .signatures import GatewayOperation, verify

logger = logging.getLogger(__name__)


class DuitkuCallback(BaseModel):
    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    merchantCode: Optional[str] = None
    amount: Optional[str] = None
    merchantOrderId: Optional[str] = None
    productDetails: Optional[str] = None
    additionalParam: Optional[str] = None
    paymentCode: Optional[str] = None
    resultCode: Optional[str] = None
    merchantUserId: Optional[str] = None
    reference: Optional[str] = None
    signature: Optional[str] = None
    publisherOrderId: Optional[str] = None
    spUserHash: Optional[str] = None
    settlementDate: Optional[str] = None
    issuerCode: Optional[str] = None


class CallbackOutcome(str, Enum):
    APPLIED = "applied"
    UNCHANGED = "unchanged"
    CONFLICT = "conflict"
    ORPHAN = "orphan"
    IGNORED = "ignored"


_TRANSITION_OUTCOMES = {
    TransitionOutcome.APPLIED: CallbackOutcome.APPLIED,
    TransitionOutcome.UNCHANGED: CallbackOutcome.UNCHANGED,
    TransitionOutcome.CONFLICT: CallbackOutcome.CONFLICT,
}


class CallbackReceiver:
    def __init__(self, settings: Settings, session_factory: async_sessionmaker):
        self.merchant_code = settings.gateway_merchant_code
        self.api_key = settings.gateway_api_key
        self.session_factory = session_factory

    def _check_signature(self, payload: DuitkuCallback) -> None:
        valid = payload.merchantCode == self.merchant_code and verify(
            GatewayOperation.CALLBACK,
            {
                "merchantCode": payload.merchantCode,
                "amount": payload.amount,
                "merchantOrderId": payload.merchantOrderId,
            },
            self.api_key,
            payload.signature,
        )
        if not valid:
            logger.warning(f"Rejected Duitku callback for order {payload.merchantOrderId!r}: invalid signature")
            raise SignatureMismatch()

    @staticmethod
    def _mismatch(payload: DuitkuCallback, pending: PendingPayment) -> Optional[str]:
        try:
            amount = int(float(payload.amount))
        except (TypeError, ValueError):
            return f"unreadable amount {payload.amount!r}"
        if amount != pending.amount:
            return f"amount {amount} != {pending.amount}"
        if pending.reference and payload.reference and payload.reference != pending.reference:
            return f"reference {payload.reference} != {pending.reference}"

        params = parse_qs(payload.additionalParam or "")
        course_id = (params.get("courseId") or [None])[0]
        email = (params.get("email") or [None])[0]
        if course_id and course_id != pending.course_id:
            return f"courseId {course_id} != {pending.course_id}"
        if email and email.strip().lower() != pending.customer_email:
            return "customer email differs from checkout"
        return None

    async def handle(self, payload: DuitkuCallback) -> CallbackOutcome:
        if not payload.merchantOrderId or not payload.amount:
            raise ValidationError("Missing required callback fields")
        self._check_signature(payload)

        order_id = payload.merchantOrderId
        logger.info(
            f"Duitku callback for {order_id}: resultCode={payload.resultCode}, "
            f"method={payment_method_name(payload.paymentCode or '')}, reference={payload.reference}"
        )

        async with self.session_factory() as db:
            pending = await pending_store.find_pending(db, merchant_order_id=order_id)
            if pending is None:
                logger.warning(f"Orphan callback: no pending payment for order {order_id}")
                return CallbackOutcome.ORPHAN

            mismatch = self._mismatch(payload, pending)
            if mismatch:
                logger.error(f"Anomaly: callback for {order_id} does not match checkout ({mismatch})")
                return CallbackOutcome.IGNORED

            target = state_for_callback(payload.resultCode)
            if target is None:
                logger.warning(f"Unknown resultCode {payload.resultCode!r} for {order_id}, leaving it {pending.status}")
                return CallbackOutcome.IGNORED

            if pending.reference is None and payload.reference:
                # Checkout timed out before the reference was stored
                await pending_store.assign_reference(db, order_id, payload.reference)

            result = await pending_store.mark_terminal(db, target, merchant_order_id=order_id)
            return _TRANSITION_OUTCOMES[result.outcome]
