import logging
import os
import time
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, Response
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import HTMLResponse, JSONResponse
from redis import RedisError

from .config import FRONTEND_ORIGINS
from .csrf import CSRFMiddleware, csrf_token_handler
from .database import check_database, init_db
from .domain.scheduling import calendar_router, client_router, provider_router
from .domain.scheduling.client_router import render_result_page, wants_html
from .routes.auth import router as auth_router
from .security_headers import SecurityHeadersMiddleware
from .security_store import get_store

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)

# Reduce verbosity of third-party libraries
logging.getLogger("httpx").setLevel(logging.WARNING)
logging.getLogger("httpcore").setLevel(logging.WARNING)

SECURITY_HEADERS_ENABLED = os.getenv("SECURITY_HEADERS_ENABLED", "true").lower() == "true"

MAGIC_LINK_PATH_PREFIX = "/api/client/booking/"


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Application starting up...")
    init_db()

    try:
        get_store().exists("startup:ping")
        logger.info("Security store reachable")
    except RedisError as e:
        logger.warning(f"Security store unavailable - rate limiting will fail closed: {e}")

    yield
    logger.info("Application shutting down...")


app = FastAPI(title="Zone Meet API", version="1.0.0", lifespan=lifespan)


def jsonable_errors(exc: RequestValidationError) -> list:
    # ctx may carry the raw ValueError raised by a validator
    errors = []
    for error in exc.errors():
        error = dict(error)
        if "ctx" in error:
            error["ctx"] = {key: str(value) for key, value in error["ctx"].items()}
        errors.append(error)
    return errors


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    """
    Convert 422 validation errors from HTTPBearer to 401 authentication errors
    when the issue is with the Authorization header
    """
    for error in exc.errors():
        if error.get("loc") and "authorization" in str(error.get("loc")).lower():
            logger.warning(
                f"Authentication failed for {request.url.path}: Missing or invalid Authorization header"
            )
            return JSONResponse(
                status_code=401,
                content={
                    "detail": "Not authenticated. Please provide a valid Bearer token in the Authorization header."
                },
            )

    # For other validation errors, return 422 as normal
    logger.warning(f"Validation error for {request.url.path}: {exc.errors()}")
    return JSONResponse(status_code=422, content={"detail": jsonable_errors(exc)})


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    logger.error(f"❌ Unhandled error on {request.method} {request.url.path}: {str(exc)}", exc_info=exc)
    message = "Something went wrong on our side. Please try again later."
    if request.url.path.startswith(MAGIC_LINK_PATH_PREFIX) and wants_html(request):
        return HTMLResponse(render_result_page("Something went wrong", message, success=False), status_code=500)
    return JSONResponse(status_code=500, content={"detail": message})


@app.middleware("http")
async def log_requests(request: Request, call_next):
    start = time.time()
    try:
        response = await call_next(request)
    except Exception as e:
        logger.error(f"{request.method} {request.url.path} - Error: {str(e)}")
        raise
    elapsed_ms = (time.time() - start) * 1000
    logger.debug(f"{request.method} {request.url.path} -> {response.status_code} ({elapsed_ms:.0f}ms)")
    return response


if SECURITY_HEADERS_ENABLED:
    app.add_middleware(
        SecurityHeadersMiddleware, exclude_paths=["/health", "/docs", "/openapi.json"]
    )
    logger.info("Security headers enabled")
else:
    logger.warning("Security headers DISABLED - only use in development!")

# Checks CSRF_ENABLED per request
app.add_middleware(CSRFMiddleware)

logger.info(f"CORS allowed origins: {FRONTEND_ORIGINS}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=FRONTEND_ORIGINS,
    allow_credentials=True,  # Enable credentials for CSRF cookies
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH"],
    allow_headers=["*"],
    expose_headers=["*"],
)

# Routes
app.include_router(auth_router)
app.include_router(client_router)
app.include_router(provider_router)
app.include_router(calendar_router)


@app.get("/")
def root():
    return {"message": "Zone Meet API is running"}


@app.get("/health")
def health():
    database_ok = check_database()
    try:
        get_store().exists("health:ping")
        store_ok = True
    except RedisError as e:
        logger.error(f"❌ Security store health check failed: {e}")
        store_ok = False

    body = {
        "status": "healthy" if database_ok and store_ok else "degraded",
        "database": "ok" if database_ok else "unavailable",
        "securityStore": "ok" if store_ok else "unavailable",
    }
    return JSONResponse(status_code=200 if database_ok else 503, content=body)


@app.get("/csrf-token")
async def get_csrf_token(request: Request, response: Response):
    """
    Get a CSRF token for the frontend.
    The token is also set as a cookie.
    Frontend should include this token in X-CSRF-Token header for state-changing requests.
    """
    return await csrf_token_handler(request, response)
