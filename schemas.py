from datetime import datetime
from decimal import Decimal
from typing import Any, Mapping, Optional, TypeVar, Union

from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError as PydanticValidationError,
    field_validator,
    model_validator,
)
from rapidfuzz.distance import Levenshtein

from errors import ValidationError
from models import (
    AlertSeverity,
    AlertState,
    AlertType,
    BudgetStatus,
    Category,
    PaymentMethod,
    RecurringPeriod,
    TransactionType,
)

SchemaT = TypeVar("SchemaT", bound=BaseModel)

MONEY = dict(max_digits=14, decimal_places=2)


def closest_category(raw: str) -> Optional[Category]:
    input_lower = raw.strip().lower()
    best_distance: Optional[int] = None
    best: Optional[Category] = None
    for category in Category:
        dist = int(Levenshtein.distance(input_lower, category.value.lower()))
        if best_distance is None or dist < best_distance:
            best_distance = dist
            best = category
    if best_distance is not None and best_distance <= 3:
        return best
    return None


def parse_category(value: Any) -> Category:
    if isinstance(value, Category):
        return value
    raw = str(value or "").strip()
    for category in Category:
        if raw.lower() == category.value.lower():
            return category
    suggestion = closest_category(raw) if raw else None
    hint = f"; did you mean '{suggestion.value}'?" if suggestion else ""
    raise ValueError(f"Unknown category '{raw}'{hint}")


def normalize_tags(tags: list[str]) -> list[str]:
    seen: list[str] = []
    for tag in tags:
        clean = tag.strip().lower()
        if clean and clean not in seen:
            seen.append(clean)
    return seen


def parse_payload(
    schema: type[SchemaT], payload: Union[SchemaT, Mapping[str, Any]]
) -> SchemaT:
    """Coerce caller input into ``schema``, raising the core ValidationError."""
    if isinstance(payload, schema):
        return payload
    try:
        return schema.model_validate(payload)
    except PydanticValidationError as exc:
        fields: dict[str, str] = {}
        for err in exc.errors():
            loc = ".".join(str(part) for part in err["loc"]) or "__root__"
            fields[loc] = err["msg"]
        summary = "; ".join(f"{loc}: {msg}" for loc, msg in fields.items())
        raise ValidationError(
            f"Invalid {schema.__name__}: {summary}", fields=fields
        ) from exc


class TransactionIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    type: TransactionType = TransactionType.expense
    category: Category
    amount: Decimal = Field(..., gt=0, **MONEY)
    occurred_at: Optional[datetime] = None
    payment_method: PaymentMethod = PaymentMethod.upi
    description: str = Field(..., min_length=1, max_length=200)
    tags: list[str] = Field(default_factory=list)
    notes: Optional[str] = Field(default=None, max_length=500)
    is_recurring: bool = False
    recurring_period: Optional[RecurringPeriod] = None

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, value: Any) -> Category:
        return parse_category(value)

    @field_validator("tags")
    @classmethod
    def _tags(cls, value: list[str]) -> list[str]:
        return normalize_tags(value)

    @model_validator(mode="after")
    def _recurrence(self) -> "TransactionIn":
        if self.is_recurring and self.recurring_period is None:
            raise ValueError("recurring_period is required for recurring transactions")
        if not self.is_recurring:
            self.recurring_period = None
        return self


class TransactionPatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    type: Optional[TransactionType] = None
    category: Optional[Category] = None
    amount: Optional[Decimal] = Field(default=None, gt=0, **MONEY)
    occurred_at: Optional[datetime] = None
    payment_method: Optional[PaymentMethod] = None
    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    tags: Optional[list[str]] = None
    notes: Optional[str] = Field(default=None, max_length=500)
    is_recurring: Optional[bool] = None
    recurring_period: Optional[RecurringPeriod] = None

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, value: Any) -> Optional[Category]:
        if value is None:
            return None
        return parse_category(value)

    @field_validator("tags")
    @classmethod
    def _tags(cls, value: Optional[list[str]]) -> Optional[list[str]]:
        return normalize_tags(value) if value is not None else None

    @model_validator(mode="after")
    def _no_null_required(self) -> "TransactionPatch":
        required = (
            "type",
            "category",
            "amount",
            "occurred_at",
            "payment_method",
            "description",
            "is_recurring",
        )
        for name in required:
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be null")
        return self


class BudgetIn(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    category: Category
    limit: Decimal = Field(..., gt=0, **MONEY)
    month: Optional[int] = Field(default=None, ge=1, le=12)
    year: Optional[int] = Field(default=None, ge=1970, le=3000)
    alert_threshold: Optional[int] = Field(default=None, ge=1, le=100)
    notes: Optional[str] = Field(default=None, max_length=200)

    @field_validator("category", mode="before")
    @classmethod
    def _category(cls, value: Any) -> Category:
        return parse_category(value)


class BudgetPatch(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, extra="forbid")

    limit: Optional[Decimal] = Field(default=None, gt=0, **MONEY)
    alert_threshold: Optional[int] = Field(default=None, ge=1, le=100)
    notes: Optional[str] = Field(default=None, max_length=200)


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: TransactionType
    category: Category
    amount: Decimal
    occurred_at: datetime
    payment_method: PaymentMethod
    description: str
    tags: list[str]
    notes: Optional[str]
    is_recurring: bool
    recurring_period: Optional[RecurringPeriod]
    created_at: datetime


class TransactionPageOut(BaseModel):
    items: list[TransactionOut]
    total: int
    page: int
    page_size: int
    pages: int


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    category: Category
    month: int
    year: int
    limit: Decimal
    spent: Decimal
    remaining: Decimal
    percentage: int
    status: BudgetStatus
    alert_threshold: int
    alert_sent: bool
    alert_state: AlertState
    notes: Optional[str]
    last_computed_at: Optional[datetime]


class AlertOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    type: AlertType
    title: str
    message: str
    severity: AlertSeverity
    is_read: bool
    read_at: Optional[datetime]
    metadata: dict[str, Any] = Field(validation_alias="details")
    action_url: Optional[str]
    created_at: datetime
