from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
from sqlalchemy.orm import selectinload

from payfirst.models import Course, Enrollment, Payment, User


async def get_user_by_email(db: AsyncSession, email: str) -> User | None:
    res = await db.execute(select(User).where(User.email == email.strip().lower()))
    return res.scalar_one_or_none()


async def get_enrollment(db: AsyncSession, user_id: str, course_id: str) -> Enrollment | None:
    res = await db.execute(
        select(Enrollment).where(Enrollment.user_id == user_id, Enrollment.course_id == course_id)
    )
    return res.scalar_one_or_none()


async def get_payment_by_reference(db: AsyncSession, reference: str) -> Payment | None:
    res = await db.execute(
        select(Payment)
        .options(selectinload(Payment.user), selectinload(Payment.course))
        .where(Payment.gateway_reference == reference)
    )
    return res.scalar_one_or_none()


async def get_course(db: AsyncSession, course_id: str) -> Course | None:
    res = await db.execute(select(Course).where(Course.id == course_id))
    return res.scalar_one_or_none()


async def get_payment_by_order_id(db: AsyncSession, merchant_order_id: str) -> Payment | None:
    res = await db.execute(
        select(Payment)
        .options(selectinload(Payment.user), selectinload(Payment.course))
        .where(Payment.merchant_order_id == merchant_order_id)
    )
    return res.scalar_one_or_none()
