"""
One-time code service

Issues emailed codes and checks them:
1. one authoritative record per (email, purpose), replaced atomically on re-issue
2. a record is deleted as soon as it expires, locks or is used
3. failed deliveries never leave a usable code behind
"""
import asyncio
import enum
import hmac
import logging
import re
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, NoReturn, Optional

from sqlalchemy import select, delete, update
from sqlalchemy.ext.asyncio import AsyncSession

from roboclub.config import get_settings
from roboclub.models.otp_code import OtpCode, OtpPurpose
from roboclub.services.email_service import DispatchResult, send_otp_email, sanitize_log_input
from roboclub.utils.metrics import OTP_ISSUED, OTP_DISPATCH_FAILURES, OTP_VERIFICATIONS

settings = get_settings()
logger = logging.getLogger(__name__)

EMAIL_PATTERN = re.compile(r"^[^\s@]+@[^\s@]+\.[^\s@]+$")

OtpSender = Callable[[str, str, OtpPurpose, str], DispatchResult]


class OtpFailure(str, enum.Enum):
    NOT_FOUND = "NOT_FOUND"
    EXPIRED = "EXPIRED"
    LOCKED = "LOCKED"
    INVALID = "INVALID"


_FAILURE_MESSAGES = {
    OtpFailure.NOT_FOUND: "Invalid or expired verification code",
    OtpFailure.EXPIRED: "Verification code has expired. Please request a new one.",
}


class OtpError(Exception):
    """Base class for code issuance/verification errors"""
    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidOtpRequest(OtpError):
    """Malformed address or purpose"""


class OtpDispatchError(OtpError):
    """The notification channel could not deliver the code"""


class OtpVerificationError(OtpError):
    def __init__(self, reason: OtpFailure, message: str, remaining_attempts: Optional[int] = None):
        self.reason = reason
        self.remaining_attempts = remaining_attempts
        super().__init__(message)


@dataclass
class IssuedOtp:
    email: str
    purpose: OtpPurpose
    expires_in: int


def normalize_email(email: Optional[str]) -> str:
    return (email or "").strip().lower()


def is_valid_email(email: str) -> bool:
    return bool(email) and EMAIL_PATTERN.match(email) is not None


def generate_code(length: Optional[int] = None) -> str:
    """Uniform numeric code without a leading zero"""
    length = length or settings.otp_length
    low = 10 ** (length - 1)
    return str(low + secrets.randbelow(9 * low))


def _insert_for(dialect_name: str):
    if dialect_name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect_name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise RuntimeError(f"OTP upsert is not supported on {dialect_name}")
    return insert


class OtpStore:
    """Persistence for OtpCode rows; every mutation is a single statement"""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def upsert(self, email: str, purpose: OtpPurpose, code: str, now: datetime) -> None:
        """Create or replace the record for (email, purpose)"""
        insert = _insert_for(self.db.get_bind().dialect.name)
        stmt = insert(OtpCode).values(
            id=str(uuid.uuid4()),
            email=email,
            code=code,
            purpose=purpose.value,
            attempts=0,
            is_verified=False,
            expires_at=now + timedelta(minutes=settings.otp_expire_minutes),
            created_at=now,
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=["email", "purpose"],
            set_={
                "code": stmt.excluded.code,
                "attempts": 0,
                "is_verified": False,
                "expires_at": stmt.excluded.expires_at,
                "created_at": stmt.excluded.created_at,
            },
        )
        await self.db.execute(stmt)

    async def latest_unverified(self, email: str, purpose: OtpPurpose) -> Optional[OtpCode]:
        result = await self.db.execute(
            select(OtpCode)
            .where(
                OtpCode.email == email,
                OtpCode.purpose == purpose.value,
                OtpCode.is_verified == False,  # noqa: E712
            )
            .order_by(OtpCode.created_at.desc())
            .limit(1)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def discard_issued(self, email: str, purpose: OtpPurpose, code: str) -> None:
        """Delete a specific issuance, leaving any newer code for the pair alone"""
        await self.db.execute(
            delete(OtpCode).where(
                OtpCode.email == email,
                OtpCode.purpose == purpose.value,
                OtpCode.code == code,
            )
        )

    async def record_failure(self, record_id: str, code: str) -> Optional[int]:
        """
        Count a wrong guess against one issuance.

        Returns the new attempt count, or None when no live row under
        the cap matched.
        """
        result = await self.db.execute(
            update(OtpCode)
            .where(
                OtpCode.id == record_id,
                OtpCode.code == code,
                OtpCode.attempts < settings.otp_max_attempts,
            )
            .values(attempts=OtpCode.attempts + 1)
            .returning(OtpCode.attempts)
            .execution_options(synchronize_session=False)
        )
        return result.scalar_one_or_none()

    async def consume(self, record_id: str, code: str) -> bool:
        """Delete the issuance if it is still live; False when another request got there first"""
        result = await self.db.execute(
            delete(OtpCode)
            .where(OtpCode.id == record_id, OtpCode.code == code)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def remove(self, record_id: str) -> bool:
        result = await self.db.execute(
            delete(OtpCode)
            .where(OtpCode.id == record_id)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1


class OtpService:
    """
    Issue and verify emailed codes.

    Usage:
        service = OtpService(db)
        await service.issue("a@x.com", OtpPurpose.REGISTRATION, "Ada")
        await service.verify("a@x.com", "123456", OtpPurpose.REGISTRATION)
        await db.commit()
    """

    def __init__(self, db: AsyncSession, sender: Optional[OtpSender] = None):
        self.db = db
        self.store = OtpStore(db)
        self.sender = sender or send_otp_email

    async def issue(self, email: str, purpose: OtpPurpose = OtpPurpose.REGISTRATION, name: str = "") -> IssuedOtp:
        """
        Replace any code for (email, purpose) with a fresh one and deliver it.

        Raises:
            InvalidOtpRequest: malformed email or unknown purpose
            OtpDispatchError: delivery failed; the new code has been removed
        """
        email = normalize_email(email)
        if not email:
            raise InvalidOtpRequest("Email is required")
        if not is_valid_email(email):
            raise InvalidOtpRequest("Please provide a valid email address")
        try:
            purpose = OtpPurpose(purpose)
        except ValueError:
            raise InvalidOtpRequest("Invalid verification code purpose")

        code = generate_code()
        await self.store.upsert(email, purpose, code, datetime.utcnow())
        await self.db.commit()

        try:
            result = await asyncio.to_thread(self.sender, email, code, purpose, name or "")
        except Exception as exc:
            logger.error("OTP dispatch raised for %s: %s", sanitize_log_input(email), type(exc).__name__)
            result = DispatchResult(success=False, error=type(exc).__name__)

        if not result.success:
            await self.store.discard_issued(email, purpose, code)
            await self.db.commit()
            OTP_DISPATCH_FAILURES.labels(purpose.value).inc()
            logger.warning(
                "OTP for %s (%s) rolled back: %s",
                sanitize_log_input(email), purpose.value, result.error,
            )
            raise OtpDispatchError("Failed to send verification email. Please try again.")

        OTP_ISSUED.labels(purpose.value).inc()
        logger.info("OTP issued for %s (%s)", sanitize_log_input(email), purpose.value)
        return IssuedOtp(email=email, purpose=purpose, expires_in=settings.otp_expire_seconds)

    async def verify(self, email: str, code: str, purpose: OtpPurpose = OtpPurpose.REGISTRATION) -> None:
        """
        Check a submitted code and consume it on success.

        Every change to the record is one conditional statement, so
        concurrent guesses cannot overrun the attempt cap and only one
        request can consume a code. Failures commit their own bookkeeping
        before raising. Success only executes the delete, so the caller's
        commit makes consumption and the follow-up write land together.

        Raises:
            OtpVerificationError
        """
        email = normalize_email(email)
        purpose = OtpPurpose(purpose)
        code = str(code or "").strip()

        record = await self.store.latest_unverified(email, purpose)
        if record is None:
            self._raise(purpose, OtpFailure.NOT_FOUND)

        if datetime.utcnow() > record.expires_at:
            await self.store.remove(record.id)
            await self.db.commit()
            self._raise(purpose, OtpFailure.EXPIRED)

        if record.attempts >= settings.otp_max_attempts:
            await self.store.remove(record.id)
            await self.db.commit()
            self._raise(purpose, OtpFailure.LOCKED)

        if not hmac.compare_digest(record.code.encode(), code.encode()):
            attempts = await self.store.record_failure(record.id, record.code)
            if attempts is None:
                # another request changed this issuance first
                capped = await self.store.consume(record.id, record.code)
                reason = OtpFailure.LOCKED if capped else OtpFailure.NOT_FOUND
                await self.db.commit()
                self._raise(purpose, reason)

            remaining = settings.otp_max_attempts - attempts
            if remaining <= 0:
                await self.store.remove(record.id)
                await self.db.commit()
                self._raise(purpose, OtpFailure.LOCKED)

            await self.db.commit()
            self._raise(purpose, OtpFailure.INVALID, remaining)

        if not await self.store.consume(record.id, record.code):
            self._raise(purpose, OtpFailure.NOT_FOUND)

        OTP_VERIFICATIONS.labels(purpose.value, "success").inc()
        logger.info("OTP verified for %s (%s)", sanitize_log_input(email), purpose.value)

    @staticmethod
    def _raise(purpose: OtpPurpose, reason: OtpFailure, remaining: Optional[int] = None) -> NoReturn:
        OTP_VERIFICATIONS.labels(purpose.value, reason.value.lower()).inc()
        if reason == OtpFailure.INVALID:
            raise OtpVerificationError(
                reason,
                f"Invalid verification code. {remaining} attempt{'s' if remaining != 1 else ''} remaining.",
                remaining_attempts=remaining,
            )
        if reason == OtpFailure.LOCKED:
            raise OtpVerificationError(
                reason,
                "Too many failed attempts. Please request a new verification code.",
                remaining_attempts=0,
            )
        raise OtpVerificationError(reason, _FAILURE_MESSAGES[reason])
