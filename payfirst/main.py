import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Depends, HTTPException, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession

from .database import create_tables, get_db
from . import schemas
from payfirst.dependencies import get_identity_provider
from payfirst.errors import PaymentFirstError
from payfirst.models import User
from payfirst.routers.payment_first_router import router as payment_first_router
from payfirst.routers.webhook_router import router as webhook_router
from payfirst.services.auth import create_access_token, get_current_user, get_user_by_id
from payfirst.services.identity import IdentityProvider
from payfirst.settings import Settings, get_settings

settings = get_settings()

logging.basicConfig(
    level=settings.log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
)
logger = logging.getLogger(__name__)


# --- Startup: create tables ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info(f"Starting {settings.app_name} ({settings.gateway_environment.value} gateway)...")
    await create_tables()
    yield
    logger.info(f"Shutting down {settings.app_name}...")


app = FastAPI(
    title="Payment-first registration",
    version="1.0.0",
    lifespan=lifespan,
    docs_url=settings.docs_url,
    redoc_url=None,
    openapi_url=settings.openapi_url,
)

# --- CORS configuration ---
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(payment_first_router)
app.include_router(webhook_router)


# --- Error rendering ---
@app.exception_handler(PaymentFirstError)
async def payment_first_error_handler(request: Request, exc: PaymentFirstError):
    body = {"success": False, "error": exc.code, "message": exc.message}
    email = getattr(exc, "email", None)
    if email:
        body["userEmail"] = email
    return JSONResponse(status_code=exc.status_code, content=body)


@app.exception_handler(RequestValidationError)
async def request_validation_error_handler(request: Request, exc: RequestValidationError):
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content={
            "success": False,
            "error": "validation_error",
            "message": "Request is invalid",
            "detail": [
                {"loc": list(err.get("loc", ())), "msg": err.get("msg", "")} for err in exc.errors()
            ],
        },
    )


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled error on {request.method} {request.url.path}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"success": False, "error": "internal_error", "message": "Internal server error, please retry"},
    )


# --- Health check ---
@app.get("/")
async def root():
    return {"status": "OK"}


# --- Auth: Login ---
@app.post("/auth/login", response_model=schemas.Token)
async def login_for_access_token(
    request: schemas.LoginRequest,
    identity: IdentityProvider = Depends(get_identity_provider),
    db: AsyncSession = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    account = await identity.authenticate(request.email, request.password)
    user = await get_user_by_id(db, account.id)
    if not user:
        # Identity exists but registration never finished locally
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Registration is not complete for this account."
        )

    access_token = create_access_token(subject=str(user.id), settings=settings)
    return {
        "access_token": access_token,
        "token_type": "bearer"
    }


# --- Current user with enrollments and payments ---
@app.get("/users/me", response_model=schemas.UserRead)
async def read_me(current_user: User = Depends(get_current_user)):
    return current_user
