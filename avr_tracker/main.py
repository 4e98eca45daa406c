import logging

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from avr_tracker.core.config import get_settings
from avr_tracker.core.database import engine
from avr_tracker.core.errors import (
    AppError, InvalidCredentials, InvalidTransition, NotFound, PermissionDenied, PreconditionFailed,
    ProfileDecodeError, ProviderError, UserNotRegistered, ValidationError, WriteFailure,
)
from avr_tracker.models.base import Base
from avr_tracker.models import document, user, verification  # noqa: F401 (register tables)
from avr_tracker.api.deps import get_provider
from avr_tracker.api.endpoints import auth, expenses, projects, reports, users

settings = get_settings()

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")
logger = logging.getLogger(__name__)

# Most specific first
ERROR_STATUS = [
    (InvalidCredentials, status.HTTP_401_UNAUTHORIZED),
    (ProviderError, status.HTTP_502_BAD_GATEWAY),
    (ProfileDecodeError, status.HTTP_401_UNAUTHORIZED),
    (UserNotRegistered, status.HTTP_403_FORBIDDEN),
    (PermissionDenied, status.HTTP_403_FORBIDDEN),
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (NotFound, status.HTTP_404_NOT_FOUND),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (PreconditionFailed, status.HTTP_409_CONFLICT),
    (WriteFailure, status.HTTP_500_INTERNAL_SERVER_ERROR),
]


def status_for(error: AppError) -> int:
    for error_type, code in ERROR_STATUS:
        if isinstance(error, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


# Create FastAPI app
app = FastAPI(
    title="AVR Tracker API",
    description="Project budgets, expenses and approvals",
    version="1.0.0"
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(AppError)
async def app_error_handler(request: Request, exc: AppError):
    code = status_for(exc)
    logger.log(
        logging.ERROR if code >= 500 else logging.INFO,
        "%s %s -> %d %s: %s", request.method, request.url.path, code, type(exc).__name__, exc.message
    )
    headers = {"WWW-Authenticate": "Bearer"} if code == status.HTTP_401_UNAUTHORIZED else None
    return JSONResponse(status_code=code, content={"detail": exc.message}, headers=headers)


# Include auth router
app.include_router(
    auth.router,
    prefix="/api/auth",
    tags=["Authentication"]
)
# Include projects router (REST and the live WebSocket)
app.include_router(
    projects.router,
    prefix="/api/projects",
    tags=["Projects"]
)
# Include expenses router
app.include_router(
    expenses.router,
    prefix="/api",
    tags=["Expenses"]
)
# Include users router
app.include_router(
    users.router,
    prefix="/api/users",
    tags=["Users"]
)
# Include reports router
app.include_router(
    reports.router,
    prefix="/api/reports",
    tags=["Reports"]
)


@app.get("/")
def read_root():
    return {
        "message": "AVR Tracker API is running",
        "version": "1.0.0",
        "docs": "/docs"
    }


@app.on_event("startup")
async def startup_event():
    Base.metadata.create_all(bind=engine)
    if settings.ADMIN_PASSWORD:
        get_provider().create_admin_account(settings.ADMIN_EMAIL, settings.ADMIN_PASSWORD, settings.ADMIN_NAME)
        logger.info("Admin account %s is ready", settings.ADMIN_EMAIL)
    logger.info("API started successfully")
    logger.info("API Documentation: http://localhost:8000/docs")
