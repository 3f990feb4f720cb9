import uuid
from datetime import datetime
from decimal import Decimal
from typing import Annotated, Literal, Optional

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel

from amounts import AMOUNT_MAX, format_amount
from models import TransactionType

HEX_COLOR_PATTERN = r"^#[0-9A-Fa-f]{6}$"
EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"

AmountStr = Annotated[str, BeforeValidator(format_amount)]


class ApiModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel, populate_by_name=True, from_attributes=True
    )


# auth


class RegisterIn(ApiModel):
    email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN)
    password: str = Field(..., min_length=8, max_length=128)
    name: str = Field(..., min_length=1, max_length=255)


class LoginIn(ApiModel):
    email: str = Field(..., max_length=255)
    password: str = Field(..., min_length=1, max_length=128)


class RefreshIn(ApiModel):
    refresh_token: str = Field(..., min_length=1)


class UserOut(ApiModel):
    id: uuid.UUID
    email: str
    name: str


class TokenPairOut(ApiModel):
    access_token: str
    refresh_token: str


class AuthOut(TokenPairOut):
    user: UserOut


# categories


class CategoryIn(ApiModel):
    name: str = Field(..., min_length=1, max_length=100)
    color: str = Field(..., pattern=HEX_COLOR_PATTERN)
    type: TransactionType


class CategoryUpdateIn(ApiModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, pattern=HEX_COLOR_PATTERN)
    type: Optional[TransactionType] = None


class CategoryOut(ApiModel):
    id: uuid.UUID
    name: str
    color: str
    type: TransactionType
    created_at: datetime
    updated_at: datetime


class CategorySummary(ApiModel):
    id: uuid.UUID
    name: str
    color: str


class TransactionCategoryOut(CategorySummary):
    type: TransactionType


# transactions


class TransactionIn(ApiModel):
    amount: Decimal = Field(
        ..., ge=0, le=AMOUNT_MAX, max_digits=19, decimal_places=4
    )
    description: str = Field(..., min_length=1, max_length=500)
    type: TransactionType
    category_id: uuid.UUID
    is_recurring: bool = False
    date: datetime


class TransactionUpdateIn(ApiModel):
    amount: Optional[Decimal] = Field(
        default=None, ge=0, le=AMOUNT_MAX, max_digits=19, decimal_places=4
    )
    description: Optional[str] = Field(default=None, min_length=1, max_length=500)
    type: Optional[TransactionType] = None
    category_id: Optional[uuid.UUID] = None
    is_recurring: Optional[bool] = None
    date: Optional[datetime] = None


class TransactionOut(ApiModel):
    id: uuid.UUID
    category_id: uuid.UUID
    amount: AmountStr
    description: str
    type: TransactionType
    is_recurring: bool
    date: datetime
    created_at: datetime
    updated_at: datetime
    category: Optional[TransactionCategoryOut] = None


class TransactionPage(ApiModel):
    items: list[TransactionOut]
    total: int
    page: int
    limit: int
    total_pages: int


TransactionSort = Literal["newest", "oldest"]


# dashboard


class BalanceOut(ApiModel):
    total: AmountStr


class MonthlyMetrics(ApiModel):
    income: AmountStr
    expenses: AmountStr
    savings: AmountStr
    income_change: float
    expenses_change: float
    savings_change: float


class ChartPoint(ApiModel):
    month: str
    income: str
    expenses: str


class ChartData(ApiModel):
    last_six_months: list[ChartPoint] = Field(..., alias="last6Months")


class CategoryBreakdownItem(ApiModel):
    category_id: uuid.UUID
    category_name: str
    category_color: str
    total: AmountStr
    percentage: float


class Breakdown(ApiModel):
    income_by_category: list[CategoryBreakdownItem]
    expenses_by_category: list[CategoryBreakdownItem]


class RecentTransaction(ApiModel):
    id: uuid.UUID
    amount: AmountStr
    description: str
    type: TransactionType
    date: datetime
    category: Optional[CategorySummary] = None


class DashboardSnapshot(ApiModel):
    balance: BalanceOut
    monthly: MonthlyMetrics
    chart: ChartData
    breakdown: Breakdown
    recent_transactions: list[RecentTransaction]
