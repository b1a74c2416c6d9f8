from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from payfirst.database import get_db
from payfirst.dependencies import get_checkout_manager, get_reconciler, get_verifier
from payfirst.errors import NotFound
from payfirst.schemas import (
    CheckoutRequest,
    CheckoutResponse,
    CompleteRegistrationRequest,
    CompleteRegistrationResponse,
    CourseSummary,
    EnrollExistingRequest,
    EnrollExistingResponse,
    PaymentMethodsResponse,
    PendingPaymentRead,
    UserSummary,
    VerifyRequest,
    VerifyResponse,
)
from payfirst.services import pending_store
from payfirst.services.checkout import CheckoutManager
from payfirst.services.registration import RegistrationReconciler
from payfirst.services.verification import PaymentVerifier

router = APIRouter(prefix="/pembayaran", tags=["payment-first"])


@router.get("/methods", response_model=PaymentMethodsResponse)
async def list_payment_methods(
    course_id: str = Query(..., alias="courseId", min_length=1),
    checkout: CheckoutManager = Depends(get_checkout_manager),
):
    """Payment methods the gateway offers for a course price"""
    course, amount, methods = await checkout.list_payment_methods(course_id)
    return PaymentMethodsResponse(
        course=CourseSummary.model_validate(course),
        amount=amount,
        paymentMethods=methods,
    )


@router.post("/checkout", response_model=CheckoutResponse)
async def create_checkout(
    checkout_request: CheckoutRequest,
    checkout: CheckoutManager = Depends(get_checkout_manager),
):
    """Create a pending payment and the matching gateway transaction"""
    return await checkout.create_checkout(checkout_request)


@router.get("/orders/{merchant_order_id}", response_model=PendingPaymentRead)
async def find_by_merchant_order_id(merchant_order_id: str, db: AsyncSession = Depends(get_db)):
    pending = await pending_store.find_pending(db, merchant_order_id=merchant_order_id)
    if not pending:
        raise NotFound()
    return pending


@router.post("/verify", response_model=VerifyResponse)
async def verify_payment(
    verify_request: VerifyRequest,
    verifier: PaymentVerifier = Depends(get_verifier),
):
    """Resolve payment status and whether the buyer is already registered"""
    return await verifier.verify(
        reference=verify_request.paymentReference,
        merchant_order_id=verify_request.merchantOrderId,
    )


@router.post("/register", response_model=CompleteRegistrationResponse)
async def complete_registration(
    registration: CompleteRegistrationRequest,
    reconciler: RegistrationReconciler = Depends(get_reconciler),
):
    """Create the account, payment and enrollment for a completed payment"""
    result = await reconciler.complete_registration(
        registration.paymentReference, registration.customerInfo, registration.courseId
    )
    return CompleteRegistrationResponse(
        user=UserSummary.model_validate(result.user),
        course=CourseSummary.model_validate(result.course),
        invoiceNumber=result.invoice_number,
    )


@router.post("/enroll-existing", response_model=EnrollExistingResponse)
async def enroll_existing(
    enroll_request: EnrollExistingRequest,
    reconciler: RegistrationReconciler = Depends(get_reconciler),
):
    result = await reconciler.enroll_existing(
        enroll_request.paymentReference, enroll_request.email, enroll_request.password
    )
    return EnrollExistingResponse(
        user=UserSummary.model_validate(result.user),
        course=CourseSummary.model_validate(result.course),
        alreadyEnrolled=result.already_enrolled,
    )
