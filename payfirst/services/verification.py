from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Optional

from sqlalchemy.ext.asyncio import async_sessionmaker

from payfirst.errors import GatewayUnavailable, NotFound
from payfirst.models import PendingPayment
from payfirst.schemas import CourseSummary, VerifiedPayment, VerifyResponse
from . import pending_store
from .duitku_gateway import DuitkuGateway
from .payment_state import PaymentState, state_for_status_query
from .user_crud import get_enrollment, get_payment_by_order_id, get_payment_by_reference, get_user_by_email

logger = logging.getLogger(__name__)


@dataclass
class PaymentResolution:
    state: PaymentState
    pending: Optional[PendingPayment] = None
    registered_email: Optional[str] = None
    account_exists: bool = False

    @property
    def already_registered(self) -> bool:
        return self.registered_email is not None


class PaymentVerifier:
    def __init__(self, session_factory: async_sessionmaker, gateway: DuitkuGateway):
        self.session_factory = session_factory
        self.gateway = gateway

    async def _poll_gateway(self, pending: PendingPayment) -> PendingPayment:
        """Apply a terminal gateway status when the callback has not arrived yet."""
        try:
            status = await self.gateway.query_status(pending.merchant_order_id)
        except GatewayUnavailable:
            logger.warning(f"Status query for {pending.merchant_order_id} failed, keeping {pending.status}")
            return pending

        target = state_for_status_query(status.statusCode)
        if target is None or not target.is_terminal:
            return pending
        if status.amount and status.amount != pending.amount:
            logger.error(
                f"Anomaly: gateway reports amount {status.amount} for {pending.merchant_order_id}, "
                f"expected {pending.amount}"
            )
            return pending

        async with self.session_factory() as db:
            if pending.reference is None and status.reference:
                await pending_store.assign_reference(db, pending.merchant_order_id, status.reference)
            result = await pending_store.mark_terminal(db, target, merchant_order_id=pending.merchant_order_id)
        return result.pending

    async def _resolve_unknown_order(self, merchant_order_id: str) -> PaymentResolution:
        try:
            status = await self.gateway.query_status(merchant_order_id)
        except GatewayUnavailable:
            raise NotFound()
        state = state_for_status_query(status.statusCode)
        if state is None:
            raise NotFound()

        if state == PaymentState.COMPLETED and status.reference:
            async with self.session_factory() as db:
                payment = await get_payment_by_reference(db, status.reference)
            if payment is not None:
                return PaymentResolution(state=state, registered_email=payment.user.email)

        logger.warning(
            f"No local checkout for {merchant_order_id}; gateway reports {status.statusCode} "
            f"({status.statusMessage})"
        )
        return PaymentResolution(state=state)

    async def resolve(
        self,
        *,
        reference: str | None = None,
        merchant_order_id: str | None = None,
        poll_gateway: bool = True,
    ) -> PaymentResolution:
        async with self.session_factory() as db:
            pending = await pending_store.find_pending(db, reference=reference, merchant_order_id=merchant_order_id)
            if pending is None:
                # Reconciled rows are deleted; the Payment keeps both keys
                if reference:
                    payment = await get_payment_by_reference(db, reference)
                else:
                    payment = await get_payment_by_order_id(db, merchant_order_id)
                if payment is not None:
                    return PaymentResolution(state=PaymentState.COMPLETED, registered_email=payment.user.email)

        if pending is None:
            if merchant_order_id and poll_gateway:
                return await self._resolve_unknown_order(merchant_order_id)
            raise NotFound()

        if poll_gateway and pending.status == PaymentState.PENDING.value:
            pending = await self._poll_gateway(pending)

        resolution = PaymentResolution(state=PaymentState(pending.status), pending=pending)
        async with self.session_factory() as db:
            user = await get_user_by_email(db, pending.customer_email)
            if user is not None:
                resolution.account_exists = True
                if await get_enrollment(db, user.id, pending.course_id):
                    resolution.registered_email = user.email
        return resolution

    async def verify(self, *, reference: str | None = None, merchant_order_id: str | None = None) -> VerifyResponse:
        resolution = await self.resolve(reference=reference, merchant_order_id=merchant_order_id)

        if resolution.already_registered:
            return VerifyResponse(
                success=True,
                alreadyRegistered=True,
                status=resolution.state.value,
                userEmail=resolution.registered_email,
            )

        pending = resolution.pending
        if pending is None or resolution.state != PaymentState.COMPLETED:
            return VerifyResponse(success=False, status=resolution.state.value)

        return VerifyResponse(
            success=True,
            status=resolution.state.value,
            accountExists=resolution.account_exists,
            payment=VerifiedPayment(
                reference=pending.reference,
                merchantOrderId=pending.merchant_order_id,
                course=CourseSummary.model_validate(pending.course),
                customerEmail=pending.customer_email,
                customerName=pending.customer_name,
                amount=pending.amount,
                currency=pending.currency,
                status=pending.status,
            ),
        )
