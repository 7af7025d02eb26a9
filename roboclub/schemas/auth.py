"""
Auth request/response schemas
"""
from typing import Optional, Union
from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from roboclub.models.otp_code import OtpPurpose
from roboclub.schemas.user import UserResponse


class SendOtpRequest(BaseModel):
    """Request a code; ``type`` is accepted as an alias of ``purpose``"""
    email: Optional[str] = None
    purpose: OtpPurpose = Field(
        default=OtpPurpose.REGISTRATION,
        validation_alias=AliasChoices("purpose", "type"),
    )
    name: Optional[str] = Field(default="", max_length=100)


class VerifyOtpRequest(BaseModel):
    email: Optional[str] = None
    otp: Optional[Union[str, int]] = None
    purpose: OtpPurpose = Field(
        default=OtpPurpose.REGISTRATION,
        validation_alias=AliasChoices("purpose", "type"),
    )


class RegisterRequest(BaseModel):
    """Both registration steps share one body; ``step`` selects the handler"""
    name: Optional[str] = Field(default=None, max_length=100)
    email: Optional[str] = None
    password: Optional[str] = None
    otp: Optional[Union[str, int]] = None
    step: Optional[str] = None

    @field_validator("name")
    @classmethod
    def validate_name(cls, value: Optional[str]) -> Optional[str]:
        if value is None:
            return value
        cleaned = value.strip()
        if not cleaned:
            return None
        if "<" in cleaned or ">" in cleaned:
            raise ValueError("Name contains invalid characters")
        return cleaned


class LoginRequest(BaseModel):
    email: str
    password: str


class OtpLoginRequest(BaseModel):
    email: str
    otp: Union[str, int]


class ResetPasswordRequest(BaseModel):
    email: str
    otp: Union[str, int]
    new_password: str


class MessageResponse(BaseModel):
    success: bool = True
    message: str


class SendOtpResponse(MessageResponse):
    model_config = ConfigDict(populate_by_name=True)

    expires_in: int = Field(alias="expiresIn")


class RegisterStepResponse(MessageResponse):
    step: str
    state: str


class AuthResponse(MessageResponse):
    user: UserResponse
    token: str
    state: Optional[str] = None
