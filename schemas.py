import datetime as dt
from datetime import datetime
from typing import Any, Optional, TypeVar

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from pydantic import ValidationError as SchemaError

from errors import ValidationError
from models import BudgetPeriod, TransactionType

ModelT = TypeVar("ModelT", bound=BaseModel)


def parse_iso_date(value: Any) -> Any:
    """Accept only date objects and ``YYYY-MM-DD`` strings."""
    if value is None or isinstance(value, dt.date):
        return value
    if isinstance(value, str):
        try:
            return datetime.strptime(value.strip(), "%Y-%m-%d").date()
        except ValueError as exc:
            raise ValueError("invalid date format, use YYYY-MM-DD") from exc
    raise ValueError("invalid date format, use YYYY-MM-DD")


def coerce_date(value: Any, name: str) -> Optional[dt.date]:
    try:
        return parse_iso_date(value or None)
    except ValueError as exc:
        raise ValidationError(f"{name}: {exc}") from exc


def validate_input(model_cls: type[ModelT], **data: Any) -> ModelT:
    try:
        return model_cls(**data)
    except SchemaError as exc:
        messages = []
        for err in exc.errors():
            loc = ".".join(str(part) for part in err["loc"])
            msg = err["msg"].removeprefix("Value error, ")
            messages.append(f"{loc}: {msg}" if loc else msg)
        raise ValidationError("; ".join(messages)) from exc


class TransactionIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    type: TransactionType
    category: str = Field(..., min_length=1, max_length=100)
    amount: float = Field(..., gt=0, allow_inf_nan=False)
    description: Optional[str] = None
    date: dt.date

    check_date = field_validator("date", mode="before")(parse_iso_date)


class TransactionPatch(BaseModel):
    """Partial update for a transaction.

    A field takes part in the update only when it was passed explicitly;
    omitted fields are left alone. ``description`` may be passed as None to
    clear it, the other fields cannot be cleared.
    """

    model_config = ConfigDict(extra="forbid")

    type: Optional[TransactionType] = None
    category: Optional[str] = Field(default=None, min_length=1, max_length=100)
    amount: Optional[float] = Field(default=None, gt=0, allow_inf_nan=False)
    description: Optional[str] = None
    date: Optional[dt.date] = None

    check_date = field_validator("date", mode="before")(parse_iso_date)

    @model_validator(mode="after")
    def required_fields_not_cleared(self) -> "TransactionPatch":
        for name in ("type", "category", "amount", "date"):
            if name in self.model_fields_set and getattr(self, name) is None:
                raise ValueError(f"{name} cannot be cleared")
        return self

    @classmethod
    def from_sentinels(
        cls,
        *,
        type: str = "",
        category: str = "",
        amount: float = -1,
        description: str = "",
        date: str = "",
    ) -> "TransactionPatch":
        """Build a patch from flag-style inputs.

        Empty strings and a negative amount mean "unchanged" and are dropped.
        """
        changes: dict[str, Any] = {}
        if type:
            changes["type"] = type
        if category:
            changes["category"] = category
        if amount is not None and amount >= 0:
            changes["amount"] = amount
        if description:
            changes["description"] = description
        if date:
            changes["date"] = date
        return validate_input(cls, **changes)

    def changes(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)


class BudgetIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    category: str = Field(..., min_length=1, max_length=100)
    amount: float = Field(..., gt=0, allow_inf_nan=False)
    period: BudgetPeriod
    start_date: Optional[dt.date] = None
    end_date: Optional[dt.date] = None

    check_dates = field_validator("start_date", "end_date", mode="before")(
        parse_iso_date
    )

    @model_validator(mode="after")
    def valid_range(self) -> "BudgetIn":
        if self.end_date is not None:
            if self.start_date is None:
                raise ValueError("start_date is required when end_date is set")
            if self.start_date > self.end_date:
                raise ValueError("start_date must not be after end_date")
        return self
