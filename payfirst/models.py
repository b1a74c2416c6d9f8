import uuid

from sqlalchemy import (
    Column, Integer, String, Boolean, DateTime, ForeignKey, Text, func, UniqueConstraint
)
from sqlalchemy.orm import relationship
from .database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"
    __table_args__ = (UniqueConstraint("email", name="uq_user_email"),)

    # Same id as the identity provider account
    id = Column(String(64), primary_key=True)
    email = Column(String(255), nullable=False, index=True)
    name = Column(String(255), nullable=False, default="")
    role = Column(String(20), default="STUDENT", nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)

    payments = relationship("Payment", back_populates="user")
    enrollments = relationship("Enrollment", back_populates="user")


class IdentityAccount(Base):
    """Credentials owned by the local identity provider, not by the reconciler."""

    __tablename__ = "identity_accounts"
    __table_args__ = (UniqueConstraint("email", name="uq_identity_email"),)

    id = Column(String(64), primary_key=True, default=_uuid)
    email = Column(String(255), nullable=False, index=True)
    hashed_password = Column(String(255), nullable=False)
    display_name = Column(String(255), nullable=False, default="")
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Course(Base):
    __tablename__ = "courses"

    id = Column(String(64), primary_key=True, default=_uuid)
    title = Column(String(255), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Integer, nullable=False)
    published = Column(Boolean, default=False, nullable=False)


class PendingPayment(Base):
    __tablename__ = "pending_payments"

    id = Column(Integer, primary_key=True, index=True)

    # Gateway-assigned transaction id, set once after create-transaction succeeds
    reference = Column(String(64), unique=True, index=True, nullable=True)
    merchant_order_id = Column(String(64), unique=True, index=True, nullable=False)

    course_id = Column(String(64), ForeignKey("courses.id"), nullable=False)
    course = relationship("Course")

    customer_email = Column(String(255), nullable=False, index=True)
    customer_name = Column(String(255), nullable=False)
    customer_phone = Column(String(32), nullable=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), default="IDR", nullable=False)
    payment_method = Column(String(8), nullable=False)

    status = Column(String(20), default="PENDING", nullable=False)  # PENDING / COMPLETED / FAILED
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now(), nullable=False)


class Payment(Base):
    __tablename__ = "payments"

    id = Column(Integer, primary_key=True, index=True)

    user_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    user = relationship("User", back_populates="payments")
    course_id = Column(String(64), ForeignKey("courses.id"), nullable=False)
    course = relationship("Course")

    gateway_reference = Column(String(64), unique=True, index=True, nullable=False)
    # Checkout correlation key, kept after the pending row is retired
    merchant_order_id = Column(String(64), unique=True, index=True, nullable=True)
    amount = Column(Integer, nullable=False)
    currency = Column(String(3), default="IDR", nullable=False)
    status = Column(String(20), default="COMPLETED", nullable=False)  # COMPLETED / FAILED / REFUNDED
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class Enrollment(Base):
    __tablename__ = "enrollments"
    __table_args__ = (UniqueConstraint("user_id", "course_id", name="uq_enrollment_user_course"),)

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(String(64), ForeignKey("users.id"), nullable=False)
    user = relationship("User", back_populates="enrollments")
    course_id = Column(String(64), ForeignKey("courses.id"), nullable=False)
    course = relationship("Course")
    enrolled_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
