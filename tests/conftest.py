import os

os.environ.setdefault("PAYFIRST_GATEWAY_MERCHANT_CODE", "DS24219")
os.environ.setdefault("PAYFIRST_GATEWAY_API_KEY", "d2547323e018a40ddfd10d81923823ca")
os.environ.setdefault("PAYFIRST_GATEWAY_CALLBACK_URL", "https://lms.example.com/webhooks/duitku")
os.environ.setdefault("PAYFIRST_APP_BASE_URL", "https://lms.example.com")
os.environ.setdefault("PAYFIRST_DATABASE_URL", "sqlite+aiosqlite:///:memory:")

import httpx
import pytest

from payfirst.database import Base, build_engine, build_session_factory, get_session_factory
from payfirst.dependencies import get_gateway, get_identity_provider
from payfirst.models import Course, PendingPayment
from payfirst.services.duitku_gateway import DuitkuGateway
from payfirst.services.identity import LocalIdentityProvider
from payfirst.services.signatures import GatewayOperation, sign
from payfirst.settings import get_settings

MERCHANT_CODE = "DS24219"
API_KEY = "d2547323e018a40ddfd10d81923823ca"
COURSE_ID = "c1"
AMOUNT = 299000
EMAIL = "budi@example.com"


class DuitkuStub:
    """Stands in for the Duitku merchant API behind httpx.MockTransport."""

    def __init__(self):
        self.requests = []
        self.error = None
        self.methods_response = (200, {
            "responseCode": "00",
            "responseMessage": "SUCCESS",
            "paymentFee": [
                {"paymentMethod": "BC", "paymentName": "BCA VA", "paymentImage": "https://img/bc.png", "totalFee": "4000"},
                {"paymentMethod": "SP", "paymentName": "ShopeePay", "paymentImage": "https://img/sp.png", "totalFee": "0"},
            ],
        })
        self.inquiry_response = (200, {
            "merchantCode": MERCHANT_CODE,
            "reference": "DS2421924ABCDEF",
            "paymentUrl": "https://sandbox.duitku.com/topup/pay/DS2421924ABCDEF",
            "vaNumber": "7007014001234567",
            "amount": str(AMOUNT),
            "statusCode": "00",
            "statusMessage": "SUCCESS",
        })
        self.status_response = (200, {
            "merchantOrderId": "",
            "reference": "DS2421924ABCDEF",
            "amount": str(AMOUNT),
            "fee": "0.00",
            "statusCode": "01",
            "statusMessage": "PROCESS",
        })

    def paths(self):
        return [request.url.path for request in self.requests]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.error is not None:
            raise self.error
        path = request.url.path
        if path.endswith("/paymentmethod/getpaymentmethod"):
            status_code, body = self.methods_response
        elif path.endswith("/v2/inquiry"):
            status_code, body = self.inquiry_response
        elif path.endswith("/transactionStatus"):
            status_code, body = self.status_response
        else:
            status_code, body = 404, {"Message": "not found"}
        return httpx.Response(status_code, json=body)


class RecordingIdentityProvider(LocalIdentityProvider):
    def __init__(self, session_factory):
        super().__init__(session_factory)
        self.signups = []
        self.deleted = []

    async def sign_up(self, email, password, display_name=""):
        account = await super().sign_up(email, password, display_name)
        self.signups.append(account.id)
        return account

    async def delete_account(self, account_id):
        self.deleted.append(account_id)
        await super().delete_account(account_id)


def signed_callback(
    merchant_order_id,
    *,
    amount=AMOUNT,
    result_code="00",
    reference="DS2421924ABCDEF",
    course_id=COURSE_ID,
    email=EMAIL,
    api_key=API_KEY,
):
    payload = {
        "merchantCode": MERCHANT_CODE,
        "amount": str(amount),
        "merchantOrderId": merchant_order_id,
        "productDetails": "Python Dasar - Online Course",
        "additionalParam": f"courseId={course_id}&email={email}&paymentFirst=true",
        "paymentCode": "BC",
        "resultCode": result_code,
        "reference": reference,
    }
    payload["signature"] = sign(GatewayOperation.CALLBACK, payload, api_key)
    return payload


@pytest.fixture
def settings():
    return get_settings()


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite+aiosqlite:///{tmp_path / 'payfirst-test.db'}")
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return build_session_factory(engine)


@pytest.fixture
async def course(session_factory):
    async with session_factory() as db:
        course = Course(id=COURSE_ID, title="Python Dasar", description="Belajar Python", price=AMOUNT, published=True)
        db.add(course)
        await db.commit()
    return course


@pytest.fixture
def duitku():
    return DuitkuStub()


@pytest.fixture
def gateway(settings, duitku):
    return DuitkuGateway(settings, transport=httpx.MockTransport(duitku.handler))


@pytest.fixture
def identity(session_factory):
    return RecordingIdentityProvider(session_factory)


@pytest.fixture
def make_pending(session_factory, course):
    async def _make(
        merchant_order_id="PAYF-1700000000000-AB12CD",
        *,
        reference="DS2421924ABCDEF",
        status="PENDING",
        email=EMAIL,
        amount=AMOUNT,
    ):
        async with session_factory() as db:
            pending = PendingPayment(
                merchant_order_id=merchant_order_id,
                reference=reference,
                course_id=COURSE_ID,
                customer_email=email,
                customer_name="Budi Santoso",
                customer_phone="081234567890",
                amount=amount,
                currency="IDR",
                payment_method="BC",
                status=status,
            )
            db.add(pending)
            await db.commit()
            return pending

    return _make


@pytest.fixture
async def client(session_factory, gateway, identity):
    from payfirst.main import app

    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.dependency_overrides[get_identity_provider] = lambda: identity
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test") as c:
        yield c
    app.dependency_overrides.clear()
