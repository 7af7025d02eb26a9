"""
Auth routes: one-time codes, registration, login, password reset
"""
from datetime import datetime
from fastapi import APIRouter, Depends, HTTPException, status, Request, Response
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select
import redis.asyncio as redis

from roboclub.config import get_settings
from roboclub.database import get_db
from roboclub.models.login_history import LoginHistory
from roboclub.models.otp_code import OtpPurpose
from roboclub.models.user import User
from roboclub.schemas.auth import (
    SendOtpRequest,
    VerifyOtpRequest,
    RegisterRequest,
    LoginRequest,
    OtpLoginRequest,
    ResetPasswordRequest,
    MessageResponse,
    SendOtpResponse,
    RegisterStepResponse,
    AuthResponse,
)
from roboclub.schemas.user import UserResponse, MeResponse
from roboclub.services.email_service import send_otp_email
from roboclub.services.otp_service import OtpService, OtpSender, normalize_email
from roboclub.services.registration import (
    RegistrationOrchestrator,
    RegistrationInput,
    RegistrationState,
    parse_step,
)
from roboclub.utils.rate_limiter import RateLimiter
from roboclub.utils.redis_client import get_redis
from roboclub.utils.security import (
    get_password_hash,
    verify_password,
    create_user_token,
    get_current_user,
)

router = APIRouter()
settings = get_settings()

send_otp_limiter = RateLimiter(
    times=settings.send_otp_rate_limit_times,
    seconds=settings.send_otp_rate_limit_seconds,
)


def get_otp_sender() -> OtpSender:
    """Notification channel for codes"""
    return send_otp_email


def get_otp_service(
    db: AsyncSession = Depends(get_db),
    sender: OtpSender = Depends(get_otp_sender),
) -> OtpService:
    return OtpService(db, sender=sender)


async def _get_user_by_email(db: AsyncSession, email: str):
    result = await db.execute(select(User).where(User.email == email))
    return result.scalar_one_or_none()


async def _record_login(db: AsyncSession, user: User, request: Request, method: str) -> None:
    client_ip = request.client.host if request.client else None
    user.last_login_at = datetime.utcnow()
    user.last_login_ip = client_ip
    db.add(LoginHistory(
        user_id=user.id,
        method=method,
        ip_address=client_ip,
        user_agent=request.headers.get("user-agent"),
    ))
    await db.commit()


def _validate_password(password: str) -> None:
    if len(password) < settings.password_min_length:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Password must be at least {settings.password_min_length} characters long",
        )


@router.post("/send-otp", response_model=SendOtpResponse, dependencies=[Depends(send_otp_limiter)])
async def send_otp(
    data: SendOtpRequest,
    otp_service: OtpService = Depends(get_otp_service),
):
    """Email a fresh one-time code, replacing any earlier one"""
    issued = await otp_service.issue(data.email, data.purpose, data.name or "")
    return SendOtpResponse(
        message="Verification code sent to your email",
        expires_in=issued.expires_in,
    )


@router.post("/verify-otp", response_model=MessageResponse)
async def verify_otp(
    data: VerifyOtpRequest,
    db: AsyncSession = Depends(get_db),
    otp_service: OtpService = Depends(get_otp_service),
):
    """Check a code on its own (single use)"""
    if not data.email or data.otp is None or str(data.otp) == "":
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Email and OTP are required",
        )
    await otp_service.verify(data.email, str(data.otp), data.purpose)
    await db.commit()
    return MessageResponse(message="Email verified successfully")


@router.post(
    "/register",
    response_model=RegisterStepResponse | AuthResponse,
)
async def register(
    data: RegisterRequest,
    response: Response,
    db: AsyncSession = Depends(get_db),
    otp_service: OtpService = Depends(get_otp_service),
):
    """Two-step registration driven by ``step``"""
    step = parse_step(data.step)
    orchestrator = RegistrationOrchestrator(db, otp_service)
    outcome = await orchestrator.handle(
        step,
        RegistrationInput(
            name=data.name,
            email=data.email,
            password=data.password,
            otp=None if data.otp is None else str(data.otp),
        ),
    )

    if outcome.state == RegistrationState.COMPLETE:
        response.status_code = status.HTTP_201_CREATED
        return AuthResponse(
            message=outcome.message,
            user=UserResponse.model_validate(outcome.user),
            token=outcome.token,
            state=outcome.state.value,
        )

    return RegisterStepResponse(
        message=outcome.message,
        step=outcome.next_step,
        state=outcome.state.value,
    )


@router.post("/login", response_model=AuthResponse, response_model_exclude_none=True)
async def login(
    data: LoginRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    redis_client: redis.Redis = Depends(get_redis),
):
    """Password sign-in"""
    email = normalize_email(data.email)
    fail_key = f"login_fail:{email}"

    fail_count = await redis_client.get(fail_key)
    if fail_count and int(fail_count) >= settings.login_fail_limit:
        raise HTTPException(
            status_code=status.HTTP_429_TOO_MANY_REQUESTS,
            detail="Too many failed sign-in attempts, the account is temporarily locked",
        )

    user = await _get_user_by_email(db, email)

    if not user or not verify_password(data.password, user.password_hash):
        new_count = int(await redis_client.incr(fail_key))
        await redis_client.expire(fail_key, settings.login_fail_window_seconds)
        remaining = settings.login_fail_limit - new_count
        if remaining <= 0:
            raise HTTPException(
                status_code=status.HTTP_429_TOO_MANY_REQUESTS,
                detail="Too many failed sign-in attempts, the account is temporarily locked",
            )
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=f"Invalid email or password, {remaining} attempts remaining",
        )

    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is disabled",
        )

    await redis_client.delete(fail_key)
    await _record_login(db, user, request, "password")

    return AuthResponse(
        message="Signed in successfully",
        user=UserResponse.model_validate(user),
        token=create_user_token(user),
    )


@router.post("/login/otp", response_model=AuthResponse, response_model_exclude_none=True)
async def login_with_otp(
    data: OtpLoginRequest,
    request: Request,
    db: AsyncSession = Depends(get_db),
    otp_service: OtpService = Depends(get_otp_service),
):
    """Sign in with a code issued for purpose ``login``"""
    email = normalize_email(data.email)
    user = await _get_user_by_email(db, email)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No account exists for this email",
        )
    if not user.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Account is disabled",
        )

    await otp_service.verify(email, str(data.otp), OtpPurpose.LOGIN)
    await _record_login(db, user, request, "otp")

    return AuthResponse(
        message="Signed in successfully",
        user=UserResponse.model_validate(user),
        token=create_user_token(user),
    )


@router.post("/reset-password", response_model=MessageResponse)
async def reset_password(
    data: ResetPasswordRequest,
    db: AsyncSession = Depends(get_db),
    otp_service: OtpService = Depends(get_otp_service),
):
    """Set a new password after verifying a ``password_reset`` code"""
    _validate_password(data.new_password)

    email = normalize_email(data.email)
    user = await _get_user_by_email(db, email)
    if not user:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="No account exists for this email",
        )

    await otp_service.verify(email, str(data.otp), OtpPurpose.PASSWORD_RESET)
    user.password_hash = get_password_hash(data.new_password)
    await db.commit()

    return MessageResponse(message="Password reset successfully, please sign in with your new password")


@router.get("/me", response_model=MeResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    """Current account"""
    return MeResponse(user=UserResponse.model_validate(current_user))
