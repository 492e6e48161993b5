import re
from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional

from dateutil.parser import isoparse
from pydantic import BaseModel, EmailStr, Field, confloat, constr, field_validator
from pydantic_core import PydanticCustomError

PASSWORD_PATTERN = re.compile(r"^(?=.*[a-z])(?=.*[A-Z])(?=.*\d)")
PASSWORD_MIN_LENGTH = 8
PASSWORD_RULE = "Password must be 8+ chars with uppercase, lowercase, and number"


class Category(str, Enum):
    FOOD = "Food"
    TRANSPORT = "Transport"
    SHOPPING = "Shopping"
    BILLS = "Bills"
    ENTERTAINMENT = "Entertainment"
    OTHER = "Other"


def rule_error(message):
    return PydanticCustomError("field_rule", message)


def parse_expense_date(value):
    """Accept an ISO-8601 date or datetime and return naive UTC."""
    if not isinstance(value, datetime) and not (isinstance(value, str) and value.strip()):
        raise rule_error("Invalid date format")
    try:
        parsed = value if isinstance(value, datetime) else isoparse(value.strip())
        if parsed.tzinfo is not None:
            # shifting to UTC can fall outside year 1..9999
            parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    except (ValueError, OverflowError):
        raise rule_error("Invalid date format")
    return parsed


def _reject_bool(value):
    # JSON true/false would otherwise coerce to 1.0/0.0
    if isinstance(value, bool):
        raise rule_error("Amount must be a positive number")
    return value


# users


class UserCreate(BaseModel):
    name: constr(strip_whitespace=True, min_length=2, max_length=50)
    email: EmailStr
    password: str

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value):
        return value.lower()

    @field_validator("password")
    @classmethod
    def check_password_strength(cls, value):
        if len(value) < PASSWORD_MIN_LENGTH or not PASSWORD_PATTERN.match(value):
            raise rule_error(PASSWORD_RULE)
        return value


class UserLogin(BaseModel):
    email: EmailStr
    password: str = Field("", validate_default=True)

    @field_validator("email", mode="before")
    @classmethod
    def strip_email(cls, value):
        return value.strip() if isinstance(value, str) else value

    @field_validator("email")
    @classmethod
    def normalize_email(cls, value):
        return value.lower()

    @field_validator("password")
    @classmethod
    def require_password(cls, value):
        if not value:
            raise rule_error("Password is required")
        return value


class AuthResponse(BaseModel):
    id: int
    name: str
    email: str
    token: str
    token_type: str = "bearer"


# expenses


class ExpenseCreate(BaseModel):
    title: constr(strip_whitespace=True, min_length=1, max_length=100)
    amount: confloat(ge=0.01, allow_inf_nan=False)
    category: Category = Category.OTHER
    date: Optional[datetime] = None
    notes: Optional[constr(strip_whitespace=True, max_length=500)] = None

    @field_validator("amount", mode="before")
    @classmethod
    def check_amount(cls, value):
        return _reject_bool(value)

    @field_validator("date", mode="before")
    @classmethod
    def parse_date(cls, value):
        if value is None:
            return None
        return parse_expense_date(value)


class ExpenseUpdate(BaseModel):
    """Partial update; omitted fields keep their stored value."""

    title: Optional[constr(strip_whitespace=True, min_length=1, max_length=100)] = None
    amount: Optional[confloat(ge=0.01, allow_inf_nan=False)] = None
    category: Optional[Category] = None
    date: Optional[datetime] = None
    notes: Optional[constr(strip_whitespace=True, max_length=500)] = None

    @field_validator("title", "amount", "category", mode="before")
    @classmethod
    def reject_null(cls, value, info):
        if value is None:
            raise rule_error(f"{info.field_name.capitalize()} cannot be null")
        if info.field_name == "amount":
            return _reject_bool(value)
        return value

    @field_validator("date", mode="before")
    @classmethod
    def parse_date(cls, value):
        if value is None:
            raise rule_error("Date cannot be null")
        return parse_expense_date(value)


class ExpenseOut(BaseModel):
    id: int
    user_id: int
    title: str
    amount: float
    category: Category
    date: datetime
    notes: str
    created_at: datetime
    updated_at: datetime

    class Config:
        from_attributes = True


class CategoryTotal(BaseModel):
    category: str
    total: float
    percentage: float


class MonthTotal(BaseModel):
    month: str
    total: float


class ExpenseSummary(BaseModel):
    total: float
    count: int
    by_category: List[CategoryTotal]
    by_month: List[MonthTotal]


class MessageResponse(BaseModel):
    message: str
