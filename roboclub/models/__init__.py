"""
Database models
"""
from roboclub.models.user import User
from roboclub.models.otp_code import OtpCode, OtpPurpose
from .login_history import LoginHistory

__all__ = [
    "User",
    "OtpCode",
    "OtpPurpose",
    "LoginHistory",
]
