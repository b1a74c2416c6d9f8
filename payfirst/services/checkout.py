from __future__ import annotations
import logging
from typing import Callable, List, Tuple
from urllib.parse import urlencode

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from payfirst.errors import AccountExists, DuplicateOrder, GatewayRejected, GatewayUnavailable, NotFound, ValidationError
from payfirst.models import Course, PendingPayment
from payfirst.schemas import CheckoutRequest, CheckoutResponse
from payfirst.settings import Settings
from . import pending_store
from .duitku_gateway import DuitkuGateway, PaymentMethodOption, TransactionOrder, generate_order_id, payment_method_name
from .payment_state import PaymentState
from .user_crud import get_course, get_user_by_email

logger = logging.getLogger(__name__)


class CheckoutManager:
    MAX_ORDER_ID_ATTEMPTS = 3

    def __init__(
        self,
        settings: Settings,
        session_factory: async_sessionmaker,
        gateway: DuitkuGateway,
        *,
        order_id_factory: Callable[[str], str] = generate_order_id,
    ):
        self.settings = settings
        self.session_factory = session_factory
        self.gateway = gateway
        self.order_id_factory = order_id_factory

    async def _load_purchasable_course(self, db: AsyncSession, course_id: str) -> Tuple[Course, int]:
        course = await get_course(db, course_id)
        if not course:
            raise NotFound("Course not found")
        if not course.published:
            raise ValidationError("Course is not available for purchase")

        amount = int(round(course.price))
        if not self.settings.min_amount <= amount <= self.settings.max_amount:
            raise ValidationError(f"Invalid payment amount: {amount}")
        return course, amount

    async def list_payment_methods(self, course_id: str) -> Tuple[Course, int, List[PaymentMethodOption]]:
        async with self.session_factory() as db:
            course, amount = await self._load_purchasable_course(db, course_id)

        methods = await self.gateway.list_payment_methods(amount)
        if not methods:
            raise GatewayRejected("No payment methods available")
        return course, amount, methods

    async def _create_pending_row(self, request: CheckoutRequest, amount: int) -> PendingPayment:
        info = request.customerInfo
        for attempt in range(1, self.MAX_ORDER_ID_ATTEMPTS + 1):
            merchant_order_id = self.order_id_factory(self.settings.order_id_prefix)
            async with self.session_factory() as db:
                try:
                    return await pending_store.create_pending(
                        db,
                        merchant_order_id=merchant_order_id,
                        course_id=request.courseId,
                        customer_email=info.email,
                        customer_name=f"{info.firstName} {info.lastName}".strip(),
                        customer_phone=info.phoneNumber,
                        amount=amount,
                        currency=self.settings.currency,
                        payment_method=request.paymentMethod,
                    )
                except DuplicateOrder:
                    logger.warning(f"Order id {merchant_order_id} collided (attempt {attempt}), regenerating")
        raise DuplicateOrder("Could not allocate a unique merchant order id")

    def _return_url(self, course_id: str, merchant_order_id: str) -> str:
        query = urlencode({"courseId": course_id, "merchantOrderId": merchant_order_id})
        return f"{self.settings.app_base_url.rstrip('/')}/pembayaran/success?{query}"

    def _build_order(self, request: CheckoutRequest, course: Course, pending: PendingPayment) -> TransactionOrder:
        info = request.customerInfo
        address = {
            "firstName": info.firstName,
            "lastName": info.lastName,
            "address": info.address or "",
            "city": info.city or "",
            "postalCode": info.postalCode or "",
            "phone": info.phoneNumber,
            "countryCode": "ID",
        }
        return TransactionOrder(
            merchantOrderId=pending.merchant_order_id,
            paymentAmount=pending.amount,
            paymentMethod=request.paymentMethod,
            productDetails=f"{course.title} - Online Course",
            additionalParam=urlencode({"courseId": course.id, "email": info.email, "paymentFirst": "true"}),
            merchantUserInfo=info.email,
            # VA names are limited to 20 characters
            customerVaName=pending.customer_name[:20],
            email=info.email,
            phoneNumber=info.phoneNumber,
            itemDetails=[{"name": course.title, "price": pending.amount, "quantity": 1}],
            customerDetail={
                "firstName": info.firstName,
                "lastName": info.lastName,
                "email": info.email,
                "phoneNumber": info.phoneNumber,
                "billingAddress": address,
                "shippingAddress": address,
            },
            returnUrl=self._return_url(course.id, pending.merchant_order_id),
            callbackUrl=self.settings.gateway_callback_url,
            expiryPeriod=self.settings.transaction_expiry_minutes,
        )

    async def create_checkout(self, request: CheckoutRequest) -> CheckoutResponse:
        async with self.session_factory() as db:
            if await get_user_by_email(db, request.customerInfo.email):
                raise AccountExists(
                    "An account with this email already exists. Please sign in to make the payment."
                )
            course, amount = await self._load_purchasable_course(db, request.courseId)

        pending = await self._create_pending_row(request, amount)
        order = self._build_order(request, course, pending)

        try:
            result = await self.gateway.create_transaction(order)
        except GatewayUnavailable:
            # The gateway may still have created it; a callback or manual check resolves the row
            logger.warning(f"Order {pending.merchant_order_id} left PENDING after gateway failure")
            raise

        if not result.succeeded:
            logger.error(
                f"Duitku rejected order {pending.merchant_order_id}: {result.statusCode} {result.statusMessage}"
            )
            async with self.session_factory() as db:
                await pending_store.mark_terminal(
                    db, PaymentState.FAILED, merchant_order_id=pending.merchant_order_id
                )
            raise GatewayRejected(result.statusMessage or "Failed to create payment transaction")

        async with self.session_factory() as db:
            await pending_store.assign_reference(db, pending.merchant_order_id, result.reference)

        logger.info(
            f"Checkout {pending.merchant_order_id} created for {request.customerInfo.email}, "
            f"course {course.id}, reference {result.reference}"
        )
        return CheckoutResponse(
            merchantOrderId=pending.merchant_order_id,
            reference=result.reference,
            amount=pending.amount,
            paymentMethod=request.paymentMethod,
            paymentMethodName=payment_method_name(request.paymentMethod),
            paymentUrl=result.paymentUrl,
            vaNumber=result.vaNumber,
            qrString=result.qrString,
            expiryMinutes=self.settings.transaction_expiry_minutes,
        )
