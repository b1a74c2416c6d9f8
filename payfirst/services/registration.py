"""Turn a completed pending payment into a user, a payment and an enrollment.

The identity provider account is created first, outside our transaction.
Everything local (user upsert, payment, enrollment, pending row removal)
commits together. A uniqueness violation means another request already
finished the same registration; any other failure deletes the identity
account again through the saga's recorded compensation.
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from payfirst.errors import (
    AccountExists,
    AlreadyRegistered,
    DatabaseError,
    InvalidCredentials,
    NotCompleted,
    NotFound,
    ValidationError,
)
from payfirst.models import Course, Enrollment, Payment, PendingPayment, User
from payfirst.schemas import RegistrationCustomerInfo
from . import pending_store
from .identity import IdentityAccountExists, IdentityProvider, IdentityUser
from .payment_state import PaymentState
from .saga import Saga
from .user_crud import get_enrollment, get_user_by_email
from .verification import PaymentResolution, PaymentVerifier

logger = logging.getLogger(__name__)


def make_invoice_number(timestamp: datetime, user_id: str) -> str:
    return f"INV-{timestamp.strftime('%Y%m%d%H%M%S')}-{user_id.replace('-', '')[:8].upper()}"


def is_unique_violation(exc: IntegrityError) -> bool:
    orig = exc.orig
    code = getattr(orig, "sqlstate", None) or getattr(orig, "pgcode", None)
    if code is not None:
        return code == "23505"
    return "unique" in str(orig).lower()


@dataclass
class RegistrationResult:
    user: User
    course: Course
    invoice_number: str
    saga: Saga


@dataclass
class EnrollmentResult:
    user: User
    course: Course
    already_enrolled: bool


class RegistrationReconciler:
    def __init__(
        self,
        session_factory: async_sessionmaker,
        verifier: PaymentVerifier,
        identity: IdentityProvider,
        *,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ):
        self.session_factory = session_factory
        self.verifier = verifier
        self.identity = identity
        self.clock = clock

    async def _completed_pending(self, reference: str, email: str) -> tuple[PendingPayment, PaymentResolution]:
        resolution = await self.verifier.resolve(reference=reference)
        pending = resolution.pending
        if pending is None:
            if resolution.already_registered:
                raise AlreadyRegistered(email=resolution.registered_email)
            raise NotFound()
        if resolution.state != PaymentState.COMPLETED:
            raise NotCompleted()
        return pending, resolution

    async def _sign_up(self, saga: Saga, info: RegistrationCustomerInfo) -> IdentityUser:
        saga.log_step("identity_signup", "started")
        try:
            account = await self.identity.sign_up(info.email, info.password, info.full_name)
        except IdentityAccountExists:
            # Account survived an earlier attempt whose local write failed, or a
            # concurrent request created it. Reuse it only with the right password.
            try:
                account = await self.identity.authenticate(info.email, info.password)
            except InvalidCredentials:
                saga.log_step("identity_signup", "failed", "account exists")
                raise AccountExists()
            saga.log_step("identity_signup", "reused")
            return account

        saga.log_step("identity_signup", "completed")
        saga.add_compensation("identity_signup", lambda: self.identity.delete_account(account.id))
        return account

    async def _materialize(
        self,
        pending: PendingPayment,
        user_id: str,
        *,
        email: str,
        name: Optional[str] = None,
    ) -> tuple[User, datetime]:
        """Single transaction: upsert user, add payment and enrollment, drop the pending row."""
        async with self.session_factory() as db:
            async with db.begin():
                user = await db.get(User, user_id)
                if user is None:
                    user = User(id=user_id, email=email, name=name or "", role="STUDENT")
                    db.add(user)
                elif name and user.name != name:
                    user.name = name
                await db.flush()

                db.add(
                    Payment(
                        user_id=user_id,
                        course_id=pending.course_id,
                        gateway_reference=pending.reference,
                        merchant_order_id=pending.merchant_order_id,
                        amount=pending.amount,
                        currency=pending.currency,
                        status="COMPLETED",
                    )
                )
                db.add(Enrollment(user_id=user_id, course_id=pending.course_id))
                await db.flush()

                if not await pending_store.delete_pending(db, pending.id):
                    raise AlreadyRegistered(email=email)
                committed_at = self.clock()
        return user, committed_at

    async def complete_registration(
        self, payment_reference: str, customer_info: RegistrationCustomerInfo, course_id: str
    ) -> RegistrationResult:
        email = customer_info.email
        pending, resolution = await self._completed_pending(payment_reference, email)

        if pending.course_id != course_id:
            raise ValidationError("Course ID mismatch")
        if pending.customer_email != email:
            raise ValidationError("Email doesn't match payment record")
        if resolution.already_registered:
            raise AlreadyRegistered(email=resolution.registered_email)
        if resolution.account_exists:
            raise AccountExists()

        saga = Saga("registration", pending.merchant_order_id)
        account = await self._sign_up(saga, customer_info)

        saga.log_step("local_records", "started")
        try:
            user, committed_at = await self._materialize(
                pending, account.id, email=email, name=customer_info.full_name
            )
        except AlreadyRegistered:
            saga.log_step("local_records", "conflict")
            saga.discard_compensations()
            logger.info(f"Registration for {pending.merchant_order_id} already completed by another request")
            raise
        except IntegrityError as exc:
            if is_unique_violation(exc):
                saga.log_step("local_records", "conflict", str(exc.orig))
                saga.discard_compensations()
                logger.info(f"Registration for {pending.merchant_order_id} hit a uniqueness guard, already registered")
                raise AlreadyRegistered(email=email)
            await self._fail(saga, pending, exc)
        except Exception as exc:
            await self._fail(saga, pending, exc)

        saga.log_step("local_records", "completed")
        invoice_number = make_invoice_number(committed_at, user.id)
        logger.info(
            f"Registration completed for {email}: user {user.id}, course {pending.course_id}, "
            f"reference {pending.reference}, invoice {invoice_number}"
        )
        return RegistrationResult(user=user, course=pending.course, invoice_number=invoice_number, saga=saga)

    async def _fail(self, saga: Saga, pending: PendingPayment, exc: Exception) -> None:
        logger.exception(f"Registration transaction for {pending.merchant_order_id} failed")
        saga.log_step("local_records", "failed", repr(exc))
        await saga.compensate()
        raise DatabaseError() from exc

    async def enroll_existing(self, payment_reference: str, email: str, password: str) -> EnrollmentResult:
        pending, _ = await self._completed_pending(payment_reference, email)
        if pending.customer_email != email:
            raise ValidationError("Email doesn't match payment record")

        await self.identity.authenticate(email, password)

        async with self.session_factory() as db:
            user = await get_user_by_email(db, email)
            if user is None:
                raise NotFound("User account not found in our system")
            enrolled = await get_enrollment(db, user.id, pending.course_id) is not None

        if enrolled:
            async with self.session_factory() as db:
                async with db.begin():
                    await pending_store.delete_pending(db, pending.id)
            logger.info(f"{email} already enrolled in {pending.course_id}, retired {pending.merchant_order_id}")
            return EnrollmentResult(user=user, course=pending.course, already_enrolled=True)

        try:
            await self._materialize(pending, user.id, email=email)
        except IntegrityError as exc:
            if not is_unique_violation(exc):
                logger.exception(f"Enrollment transaction for {pending.merchant_order_id} failed")
                raise DatabaseError() from exc
            raise AlreadyRegistered(email=email)

        logger.info(f"Existing user {email} enrolled in {pending.course_id} from {pending.merchant_order_id}")
        return EnrollmentResult(user=user, course=pending.course, already_enrolled=False)
