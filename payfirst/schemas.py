from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from typing import Optional, List
from datetime import datetime

from payfirst.services.duitku_gateway import PaymentMethodOption


def _normalize_email(v: str) -> str:
    return v.strip().lower()


# --- Courses ---
class CourseSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    title: str
    description: Optional[str] = None
    price: int


# --- Checkout ---
class CheckoutCustomerInfo(BaseModel):
    firstName: str = Field(..., min_length=1)
    lastName: str = ""
    email: EmailStr
    phoneNumber: str = Field(..., min_length=6, max_length=20)
    address: Optional[str] = None
    city: Optional[str] = None
    postalCode: Optional[str] = None

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return _normalize_email(v)


class CheckoutRequest(BaseModel):
    courseId: str = Field(..., min_length=1)
    paymentMethod: str = Field(..., min_length=1, max_length=8)
    customerInfo: CheckoutCustomerInfo


class CheckoutResponse(BaseModel):
    success: bool = True
    merchantOrderId: str
    reference: str
    amount: int
    paymentMethod: str
    paymentMethodName: str
    paymentUrl: Optional[str] = None
    vaNumber: Optional[str] = None
    qrString: Optional[str] = None
    expiryMinutes: int


class PaymentMethodsResponse(BaseModel):
    success: bool = True
    course: CourseSummary
    amount: int
    paymentMethods: List[PaymentMethodOption]


# --- Pending payments ---
class PendingPaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    merchant_order_id: str
    reference: Optional[str] = None
    course_id: str
    customer_email: str
    customer_name: str
    amount: int
    currency: str
    payment_method: str
    status: str
    created_at: datetime
    updated_at: datetime


# --- Verification ---
class VerifyRequest(BaseModel):
    paymentReference: Optional[str] = None
    merchantOrderId: Optional[str] = None

    @model_validator(mode="after")
    def require_key(self):
        if not (self.paymentReference or self.merchantOrderId):
            raise ValueError("paymentReference or merchantOrderId is required")
        return self


class VerifiedPayment(BaseModel):
    reference: Optional[str] = None
    merchantOrderId: str
    course: CourseSummary
    customerEmail: str
    customerName: str
    amount: int
    currency: str
    status: str


class VerifyResponse(BaseModel):
    success: bool
    alreadyRegistered: bool = False
    # Email owns an account that is not enrolled yet; use enroll-existing
    accountExists: bool = False
    status: Optional[str] = None
    userEmail: Optional[str] = None
    payment: Optional[VerifiedPayment] = None


# --- Registration ---
class RegistrationCustomerInfo(BaseModel):
    firstName: str = Field(..., min_length=1)
    lastName: str = ""
    email: EmailStr
    password: str = Field(..., min_length=6)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return _normalize_email(v)

    @property
    def full_name(self) -> str:
        return f"{self.firstName} {self.lastName}".strip()


class CompleteRegistrationRequest(BaseModel):
    paymentReference: str = Field(..., min_length=1)
    customerInfo: RegistrationCustomerInfo
    courseId: str = Field(..., min_length=1)


class UserSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str
    role: str


class CompleteRegistrationResponse(BaseModel):
    success: bool = True
    user: UserSummary
    course: CourseSummary
    invoiceNumber: str


class EnrollExistingRequest(BaseModel):
    paymentReference: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=1)

    @field_validator("email")
    @classmethod
    def normalize_email(cls, v: str) -> str:
        return _normalize_email(v)


class EnrollExistingResponse(BaseModel):
    success: bool = True
    user: UserSummary
    course: CourseSummary
    alreadyEnrolled: bool


# --- Users ---
class LoginRequest(BaseModel):
    email: EmailStr
    password: str


class PaymentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    course_id: str
    gateway_reference: str
    amount: int
    currency: str
    status: str
    created_at: datetime


class EnrollmentRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    course: CourseSummary
    enrolled_at: datetime


class UserRead(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    email: str
    name: str
    role: str
    created_at: datetime
    enrollments: List[EnrollmentRead] = []
    payments: List[PaymentRead] = []


# --- Tokens ---
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class TokenData(BaseModel):
    sub: str | None = None  # user id
