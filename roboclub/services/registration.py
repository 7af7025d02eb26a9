"""
Two-step account registration

The client drives the flow with an explicit ``step`` so no server-side
session is kept between the steps:

    INIT --send_otp--> AWAITING_OTP --complete_registration--> COMPLETE

Any failed check ends the request in FAILED.
"""
import enum
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from roboclub.config import get_settings
from roboclub.models.otp_code import OtpPurpose
from roboclub.models.user import User
from roboclub.services.email_service import sanitize_log_input
from roboclub.services.otp_service import (
    OtpService,
    OtpFailure,
    OtpVerificationError,
    normalize_email,
    is_valid_email,
)
from roboclub.utils.security import get_password_hash, create_user_token

settings = get_settings()
logger = logging.getLogger(__name__)


class RegistrationStep(str, enum.Enum):
    SEND_OTP = "send_otp"
    COMPLETE_REGISTRATION = "complete_registration"


class RegistrationState(str, enum.Enum):
    INIT = "INIT"
    AWAITING_OTP = "AWAITING_OTP"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"


class RegistrationError(Exception):
    """Registration rejected; ``kind`` is ``validation`` or ``conflict``"""
    def __init__(self, message: str, kind: str = "validation"):
        self.message = message
        self.kind = kind
        super().__init__(message)


@dataclass
class RegistrationInput:
    name: Optional[str] = None
    email: Optional[str] = None
    password: Optional[str] = None
    otp: Optional[str] = None


@dataclass
class RegistrationOutcome:
    state: RegistrationState
    message: str
    next_step: Optional[str] = None
    user: Optional[User] = None
    token: Optional[str] = None


def parse_step(value: Optional[str]) -> RegistrationStep:
    try:
        return RegistrationStep(value)
    except ValueError:
        raise RegistrationError("Invalid registration step")


class RegistrationOrchestrator:
    """Gate account creation behind a verified registration code"""

    def __init__(self, db: AsyncSession, otp_service: Optional[OtpService] = None):
        self.db = db
        self.otp_service = otp_service or OtpService(db)
        self._handlers: Dict[RegistrationStep, Callable[[RegistrationInput], Awaitable[RegistrationOutcome]]] = {
            RegistrationStep.SEND_OTP: self.send_otp,
            RegistrationStep.COMPLETE_REGISTRATION: self.complete_registration,
        }

    async def handle(self, step: RegistrationStep, data: RegistrationInput) -> RegistrationOutcome:
        return await self._handlers[step](data)

    async def send_otp(self, data: RegistrationInput) -> RegistrationOutcome:
        """INIT -> AWAITING_OTP; the client requests the code itself afterwards"""
        if not data.name or not data.email or not data.password:
            raise RegistrationError("Name, email, and password are required")

        email = self._validate_credentials(data)
        await self._ensure_not_registered(email)

        return RegistrationOutcome(
            state=RegistrationState.AWAITING_OTP,
            message="Validation successful. Please verify your email.",
            next_step="verify_otp",
        )

    async def complete_registration(self, data: RegistrationInput) -> RegistrationOutcome:
        """AWAITING_OTP -> COMPLETE"""
        if not data.name or not data.email or not data.password or not data.otp:
            raise RegistrationError("All fields including verification code are required")

        email = self._validate_credentials(data)
        # another completion may have won since send_otp
        await self._ensure_not_registered(email)

        try:
            await self.otp_service.verify(email, str(data.otp), OtpPurpose.REGISTRATION)
        except OtpVerificationError as exc:
            # a concurrent completion consumed the code and created the account
            if exc.reason == OtpFailure.NOT_FOUND and await self._is_registered(email):
                raise RegistrationError("User with this email already exists", kind="conflict")
            raise

        user = User(
            name=data.name.strip(),
            email=email,
            password_hash=get_password_hash(data.password),
        )
        self.db.add(user)
        try:
            await self.db.commit()
        except IntegrityError:
            # unique(email) lost the race; code consumption is rolled back too
            await self.db.rollback()
            raise RegistrationError("User with this email already exists", kind="conflict")
        await self.db.refresh(user)

        logger.info("Account created for %s", sanitize_log_input(email))
        return RegistrationOutcome(
            state=RegistrationState.COMPLETE,
            message="Account created successfully! Welcome to GROBOTS!",
            user=user,
            token=create_user_token(user),
        )

    def _validate_credentials(self, data: RegistrationInput) -> str:
        email = normalize_email(data.email)
        if not is_valid_email(email):
            raise RegistrationError("Please provide a valid email address")
        if len(data.password) < settings.password_min_length:
            raise RegistrationError(
                f"Password must be at least {settings.password_min_length} characters long"
            )
        return email

    async def _is_registered(self, email: str) -> bool:
        result = await self.db.execute(select(User.id).where(User.email == email))
        return result.scalar_one_or_none() is not None

    async def _ensure_not_registered(self, email: str) -> None:
        if await self._is_registered(email):
            raise RegistrationError("User with this email already exists", kind="conflict")
