"""
User schemas
"""
from pydantic import BaseModel, ConfigDict
from datetime import datetime


class UserResponse(BaseModel):
    """Public account fields; never carries the password hash"""
    model_config = ConfigDict(from_attributes=True)

    id: str
    name: str
    email: str
    role: str
    is_active: bool
    created_at: datetime


class MeResponse(BaseModel):
    success: bool = True
    user: UserResponse
