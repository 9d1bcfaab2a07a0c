from pydantic import BaseModel, Field, EmailStr, field_validator
from typing import Optional
from datetime import datetime
from enum import Enum


class ProjectStatus(str, Enum):
    PLANNED = "PLANNED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    ON_HOLD = "ON_HOLD"


class PartyType(str, Enum):
    CLIENT = "CLIENT"
    VENDOR = "VENDOR"


class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


class UserRole(str, Enum):
    ADMIN = "admin"
    AGENT = "agent"


def _lower_type(value):
    # Older clients send INCOME / EXPENSE
    if isinstance(value, str):
        return value.strip().lower()
    return value


# ============================================
# USER MODEL
# ============================================
class UserCreate(BaseModel):
    name: str = Field(min_length=3, max_length=50)
    email: EmailStr
    password: str = Field(min_length=6)
    phone: Optional[str] = Field(default=None, pattern=r"^\+?\d{10,15}$")

class UserResponse(BaseModel):
    user_id: str
    name: str
    email: str
    role: UserRole
    phone: Optional[str] = None
    active_status: bool
    created_at: datetime
    updated_at: datetime

class UserUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=3, max_length=50)
    phone: Optional[str] = Field(default=None, pattern=r"^\+?\d{10,15}$")

    class Config:
        extra = "forbid"

class AdminUserCreate(UserCreate):
    role: UserRole = UserRole.AGENT
    active_status: bool = True

class AdminUserUpdate(BaseModel):
    """Admin patch of another account; an empty phone clears it"""
    name: Optional[str] = Field(default=None, min_length=3, max_length=50)
    email: Optional[EmailStr] = None
    phone: Optional[str] = Field(default=None, pattern=r"^(\+?\d{10,15})?$")
    role: Optional[UserRole] = None
    active_status: Optional[bool] = None

    class Config:
        extra = "forbid"

# ============================================
# PROJECT MODEL
# ============================================
class ProjectCreate(BaseModel):
    title: str = Field(min_length=3, max_length=200)
    code: str = Field(min_length=1)
    description: Optional[str] = Field(default=None, max_length=1000)
    initial_budget: float = Field(default=0.0, ge=0)
    status: ProjectStatus = ProjectStatus.ACTIVE
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

class ProjectUpdate(BaseModel):
    """Accumulators are not patchable: they move only through the ledger engine"""
    title: Optional[str] = Field(default=None, min_length=3, max_length=200)
    code: Optional[str] = Field(default=None, min_length=1)
    description: Optional[str] = Field(default=None, max_length=1000)
    initial_budget: Optional[float] = Field(default=None, ge=0)
    status: Optional[ProjectStatus] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None

    class Config:
        extra = "forbid"

class ProjectStatusUpdate(BaseModel):
    status: ProjectStatus

# ============================================
# PARTY MODEL
# ============================================
class PartyContact(BaseModel):
    email: Optional[EmailStr] = None
    phone: Optional[str] = None
    address: Optional[str] = None

class PartyCreate(BaseModel):
    name: str = Field(min_length=1)
    party_type: PartyType
    description: Optional[str] = None
    profile_image: Optional[str] = None
    contact: Optional[PartyContact] = None

class PartyUpdate(BaseModel):
    name: Optional[str] = Field(default=None, min_length=1)
    party_type: Optional[PartyType] = None
    description: Optional[str] = None
    profile_image: Optional[str] = None
    contact: Optional[PartyContact] = None

    class Config:
        extra = "forbid"

# ============================================
# TRANSACTION MODEL
# ============================================
class TransactionCreate(BaseModel):
    # amount positivity is checked by the ledger engine, after ownership checks
    project_id: str
    party_id: str
    type: TransactionType
    amount: float
    date: Optional[datetime] = None
    note: Optional[str] = None
    reference: Optional[str] = None
    currency: Optional[str] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value):
        return _lower_type(value)

class TransactionUpdate(BaseModel):
    """Typed patch: only fields present in the request body are applied"""
    type: Optional[TransactionType] = None
    amount: Optional[float] = None
    date: Optional[datetime] = None
    note: Optional[str] = None
    reference: Optional[str] = None
    file_url: Optional[str] = None
    file_name: Optional[str] = None

    @field_validator("type", mode="before")
    @classmethod
    def normalize_type(cls, value):
        return _lower_type(value)

    class Config:
        extra = "forbid"

# ============================================
# AUTH MODELS
# ============================================
class Token(BaseModel):
    access_token: str
    refresh_token: str
    token_type: str = "bearer"
    expires_in: int = 1800  # 30 minutes in seconds
    user: UserResponse

class RefreshTokenRequest(BaseModel):
    refresh_token: str

class LoginRequest(BaseModel):
    email: EmailStr
    password: str
