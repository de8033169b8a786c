# storefront/main.py
import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from fastapi.middleware.cors import CORSMiddleware
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError
from filelock import FileLock, Timeout

from storefront.api.v1.router import api_router_v1
from storefront.core.config import settings
from storefront.core.db import engine, init_models
from storefront.dependencies import AuthenticationRequired
from storefront.services.auth import HostedAuthService
from storefront.services.shopify import ShopifyService

# --- Logging ---
log_level = settings.LOGGING_LEVEL.upper()
logging.basicConfig(
    level=log_level,
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("sqlalchemy.engine").setLevel(logging.WARNING)

logger = logging.getLogger(__name__)
logger.info(f"Starting application with log level: {log_level}")


# --- Lifespan ---
@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application startup: Initializing resources...")
    shopify_service = ShopifyService()
    auth_service = HostedAuthService()

    app.state.shopify_service = shopify_service
    app.state.auth_service = auth_service
    logger.info("Shopify and hosted auth services initialized in current worker.")

    # One worker creates the tables; the others skip
    lock = FileLock("storefront_startup.lock", timeout=10)
    try:
        with lock:
            logger.info("Lock acquired by this worker. Creating database tables...")
            await init_models()
    except Timeout:
        logger.info("Could not acquire lock, another worker is performing setup. Skipping.")

    try:
        yield
    finally:
        logger.info("Application shutdown in this worker: Cleaning up resources...")
        await shopify_service.close_client()
        await auth_service.close_client()
        await engine.dispose()
        logger.info("Resources cleaned up successfully in this worker.")


app = FastAPI(
    title=settings.PROJECT_NAME,
    version="1.0.0",
    description="Storefront backend: experience tracking, guest carts, checkout and Shopify draft orders.",
    lifespan=lifespan,
    docs_url="/docs",
    redoc_url="/redoc",
    openapi_url=f"{settings.API_PREFIX}/openapi.json"
)

# --- CORS ---
origins = settings.CORS_ORIGINS_LIST
logger.info(f"Allowed CORS origins: {origins}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# --- Error handlers ---
@app.exception_handler(AuthenticationRequired)
async def authentication_required_handler(request: Request, exc: AuthenticationRequired):
    return JSONResponse(status_code=status.HTTP_401_UNAUTHORIZED, content={"message": "Unauthorized"})


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    logger.warning(f"Request validation error: {exc.errors()} for {request.method} {request.url}")
    return JSONResponse(
        status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
        content={"detail": "Invalid request data", "errors": jsonable_errors(exc)},
    )


@app.exception_handler(ValidationError)
async def pydantic_validation_exception_handler(request: Request, exc: ValidationError):
    logger.error(f"Pydantic model validation error: {exc.errors()} for {request.method} {request.url}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Data validation error", "errors": jsonable_errors(exc)},
    )


@app.exception_handler(Exception)
async def generic_exception_handler(request: Request, exc: Exception):
    logger.exception(f"Unhandled exception: {exc} for {request.method} {request.url}")
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content={"detail": "Internal server error."},
    )


def jsonable_errors(exc):
    # ctx may hold the raw exception object
    return [{key: value for key, value in error.items() if key != "ctx"} for error in exc.errors()]


# --- Routers ---
app.include_router(api_router_v1, prefix=settings.API_PREFIX)
logger.info(f"Included API router at prefix: {settings.API_PREFIX}")


@app.get("/", tags=["Root"], summary="Health check")
async def read_root():
    return {"status": "ok", "project": settings.PROJECT_NAME}
