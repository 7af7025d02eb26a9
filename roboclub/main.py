"""
FastAPI entry point
"""
import asyncio
import logging
import time
import uuid
from contextlib import asynccontextmanager
from fastapi import FastAPI, Response, HTTPException, Request, status, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException
from prometheus_client import generate_latest, CONTENT_TYPE_LATEST
import sentry_sdk
from sentry_sdk.integrations.fastapi import FastApiIntegration

from roboclub.config import get_settings
from roboclub.database import build_engine, build_session_factory, init_db, run_migrations
from roboclub.routers import auth
from roboclub.services.otp_service import OtpError, OtpDispatchError, OtpVerificationError
from roboclub.services.registration import RegistrationError
from roboclub.utils.request_context import request_id_ctx_var, RequestIdFilter, JsonFormatter
from roboclub.utils.metrics import REQUEST_COUNT, REQUEST_LATENCY, IN_PROGRESS, get_route_name
from roboclub.utils.security import verify_metrics_basic_auth

settings = get_settings()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Own the database engine for the life of the process"""
    settings.validate_secrets()
    engine = build_engine()
    app.state.engine = engine
    app.state.session_factory = build_session_factory(engine)
    await init_db(engine)
    await asyncio.to_thread(run_migrations)
    yield
    await engine.dispose()


app = FastAPI(
    title="GROBOTS API",
    description="Robotics club website backend",
    version="1.0.0",
    lifespan=lifespan,
)


def _error_body(message, code: int, **extra) -> dict:
    body = {"success": False, "message": message, "code": code}
    body.update(extra)
    return body


@app.exception_handler(StarletteHTTPException)
async def http_exception_handler(request: Request, exc: StarletteHTTPException):
    return JSONResponse(
        status_code=exc.status_code,
        content=_error_body(exc.detail, exc.status_code),
        headers=getattr(exc, "headers", None),
    )


@app.exception_handler(RequestValidationError)
async def validation_exception_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    message = "Validation Error"
    if errors:
        first = errors[0]
        field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
        message = f"{field}: {first.get('msg')}" if field else first.get("msg", message)
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body(
            message,
            400,
            details=[{"loc": list(e.get("loc", ())), "msg": e.get("msg"), "type": e.get("type")} for e in errors],
        ),
    )


@app.exception_handler(OtpError)
async def otp_exception_handler(request: Request, exc: OtpError):
    if isinstance(exc, OtpDispatchError):
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content=_error_body(exc.message, 500),
        )
    extra = {}
    if isinstance(exc, OtpVerificationError):
        extra["reason"] = exc.reason.value
        if exc.remaining_attempts is not None:
            extra["remainingAttempts"] = exc.remaining_attempts
    return JSONResponse(
        status_code=status.HTTP_400_BAD_REQUEST,
        content=_error_body(exc.message, 400, **extra),
    )


@app.exception_handler(RegistrationError)
async def registration_exception_handler(request: Request, exc: RegistrationError):
    code = status.HTTP_409_CONFLICT if exc.kind == "conflict" else status.HTTP_400_BAD_REQUEST
    return JSONResponse(
        status_code=code,
        content=_error_body(exc.message, code, state="FAILED"),
    )


@app.exception_handler(Exception)
async def global_exception_handler(request: Request, exc: Exception):
    logger.error(f"Global exception: {exc}", exc_info=True)
    return JSONResponse(
        status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
        content=_error_body("Internal server error", 500),
    )


@app.middleware("http")
async def request_context_middleware(request, call_next):
    request_id = request.headers.get("x-request-id") or uuid.uuid4().hex
    request.state.request_id = request_id
    token = request_id_ctx_var.set(request_id)
    response = None
    start = time.perf_counter()
    if settings.metrics_enabled:
        IN_PROGRESS.inc()

    try:
        response = await call_next(request)
        return response
    finally:
        duration = time.perf_counter() - start
        path = get_route_name(request.scope)
        status_code = response.status_code if response else 500
        if settings.metrics_enabled:
            REQUEST_COUNT.labels(request.method, path, str(status_code)).inc()
            REQUEST_LATENCY.labels(request.method, path).observe(duration)
            IN_PROGRESS.dec()
        request_id_ctx_var.reset(token)
        if response is not None:
            response.headers["X-Request-ID"] = request_id


app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins or [
        "http://localhost:3000",
    ],
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "PATCH", "OPTIONS"],
    allow_headers=[
        "Content-Type",
        "Authorization",
        "X-Request-ID",
    ],
    expose_headers=["X-Request-ID"],
)

# ============================================================================
# API versions
# /api/v1 is canonical; /api stays for the existing website frontend
# ============================================================================

API_V1_PREFIX = "/api/v1"

app.include_router(auth.router, prefix=f"{API_V1_PREFIX}/auth", tags=["V1-auth"])
app.include_router(auth.router, prefix="/api/auth", tags=["auth-Deprecated", "use /api/v1/auth"])


@app.get("/")
async def root():
    return {"message": "GROBOTS API is running", "status": "ok", "docs_url": "/docs"}


@app.get("/api/health")
@app.get("/api/v1/health")
async def health_check():
    """Service status"""
    return {
        "status": "ok",
        "service": "roboclub-backend",
        "version": "1.0.0",
        "api_version": "v1"
    }


@app.get("/metrics", dependencies=[Depends(verify_metrics_basic_auth)])
async def metrics():
    """Prometheus metrics (basic auth when METRICS_PASSWORD is set)"""
    if not settings.metrics_enabled:
        raise HTTPException(status_code=404, detail="Metrics disabled")
    return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)


def configure_logging() -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(JsonFormatter())
    handler.addFilter(RequestIdFilter())

    root = logging.getLogger()
    root.handlers = [handler]
    root.setLevel(settings.log_level)

    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logger = logging.getLogger(name)
        logger.handlers = [handler]
        logger.setLevel(settings.log_level)
        logger.propagate = False


def init_sentry() -> None:
    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            integrations=[FastApiIntegration()],
            traces_sample_rate=settings.sentry_traces_sample_rate,
            profiles_sample_rate=settings.sentry_profiles_sample_rate,
        )


configure_logging()
init_sentry()
