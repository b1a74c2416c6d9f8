import logging
from dataclasses import dataclass

from sqlalchemy import select, update, delete
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from payfirst.errors import DatabaseError, DuplicateOrder, NotFound, ValidationError
from payfirst.models import PendingPayment
from .payment_state import PaymentState, TransitionOutcome, resolve_transition

logger = logging.getLogger(__name__)


@dataclass
class TransitionResult:
    outcome: TransitionOutcome
    pending: PendingPayment

    @property
    def state(self) -> PaymentState:
        return PaymentState(self.pending.status)


def _key_clause(reference: str | None, merchant_order_id: str | None):
    if reference:
        return PendingPayment.reference == reference
    if merchant_order_id:
        return PendingPayment.merchant_order_id == merchant_order_id
    raise ValidationError("Payment reference or merchant order id is required")


async def find_pending(
    db: AsyncSession, *, reference: str | None = None, merchant_order_id: str | None = None
) -> PendingPayment | None:
    res = await db.execute(
        select(PendingPayment)
        .options(selectinload(PendingPayment.course))
        .where(_key_clause(reference, merchant_order_id))
        .execution_options(populate_existing=True)
    )
    return res.scalar_one_or_none()


async def create_pending(
    db: AsyncSession,
    *,
    merchant_order_id: str,
    course_id: str,
    customer_email: str,
    customer_name: str,
    customer_phone: str | None,
    amount: int,
    currency: str,
    payment_method: str,
) -> PendingPayment:
    pending = PendingPayment(
        merchant_order_id=merchant_order_id,
        course_id=course_id,
        customer_email=customer_email,
        customer_name=customer_name,
        customer_phone=customer_phone,
        amount=amount,
        currency=currency,
        payment_method=payment_method,
        status=PaymentState.PENDING.value,
    )
    db.add(pending)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise DuplicateOrder(f"Merchant order id {merchant_order_id} already exists")
    await db.refresh(pending)
    return pending


async def assign_reference(db: AsyncSession, merchant_order_id: str, reference: str) -> PendingPayment:
    """Attach the gateway reference. A reference never changes once set."""
    try:
        result = await db.execute(
            update(PendingPayment)
            .where(
                PendingPayment.merchant_order_id == merchant_order_id,
                PendingPayment.reference.is_(None),
            )
            .values(reference=reference)
            .execution_options(synchronize_session=False)
        )
        pending = await find_pending(db, merchant_order_id=merchant_order_id)
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise ValidationError(f"Reference {reference} is already attached to another order")

    if pending is None:
        raise NotFound(f"Order {merchant_order_id} not found")
    if result.rowcount == 0 and pending.reference != reference:
        raise ValidationError(f"Order {merchant_order_id} already has reference {pending.reference}")
    return pending


async def mark_terminal(
    db: AsyncSession,
    status: PaymentState,
    *,
    reference: str | None = None,
    merchant_order_id: str | None = None,
) -> TransitionResult:
    """Move a PENDING row to COMPLETED or FAILED.

    The conditional UPDATE only matches PENDING rows, so racing callers apply
    at most one transition. Replaying the stored status is a no-op; a
    different terminal status is logged and ignored.
    """
    target = PaymentState(status)
    if not target.is_terminal:
        raise ValueError(f"{target.value} is not a terminal state")
    clause = _key_clause(reference, merchant_order_id)

    result = await db.execute(
        update(PendingPayment)
        .where(clause, PendingPayment.status == PaymentState.PENDING.value)
        .values(status=target.value)
        .execution_options(synchronize_session=False)
    )
    pending = await find_pending(db, reference=reference, merchant_order_id=merchant_order_id)
    await db.commit()

    if pending is None:
        raise NotFound("Payment not found")

    if result.rowcount == 1:
        outcome = TransitionOutcome.APPLIED
    else:
        outcome = resolve_transition(PaymentState(pending.status), target)
        if outcome == TransitionOutcome.APPLIED:
            # Row was PENDING but the update did not match it; never overwrite blindly
            raise DatabaseError(f"Order {pending.merchant_order_id} changed concurrently, retry")

    if outcome == TransitionOutcome.APPLIED:
        logger.info(f"Pending payment {pending.merchant_order_id} moved to {target.value}")
    elif outcome == TransitionOutcome.CONFLICT:
        logger.error(
            f"Anomaly: order {pending.merchant_order_id} is {pending.status}, "
            f"ignoring conflicting terminal status {target.value}"
        )
    else:
        logger.info(f"Pending payment {pending.merchant_order_id} already {target.value}")

    return TransitionResult(outcome=outcome, pending=pending)


async def delete_pending(db: AsyncSession, pending_id: int) -> bool:
    """Remove a reconciled row inside the caller's transaction. No commit."""
    result = await db.execute(
        delete(PendingPayment)
        .where(PendingPayment.id == pending_id)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount == 1
