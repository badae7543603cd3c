"""
Recurring Record Model

Subscriptions and income streams share one shape: an amount charged (or
received) every week, month or year inside a validity interval
[start_date, end_date).

Unlike the expense models, this model is LENIENT. Records come from the
persistence backend as-is, and period accounting must never fail on them:
malformed values are coerced to safe defaults instead of raising.
- amount: non-numeric / non-finite -> 0.0
- currency: not a 3-letter code -> None (caller's default applies)
- frequency: unknown -> month
- dates: unparseable -> None
"""

import math
import re
from datetime import date, datetime
from enum import Enum
from typing import Any, Mapping, Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
)

from budget_tracker.dates import parse_local_date


_CURRENCY_CODE = re.compile(r"^[A-Za-z]{3}$")
_TRUE_STRINGS = {"true", "1", "yes", "y", "on"}


class Frequency(str, Enum):
    """How often a recurring record charges."""
    WEEK = "week"
    MONTH = "month"
    YEAR = "year"


def parse_frequency(value: Any) -> Frequency:
    """Read a frequency leniently; anything unknown is monthly."""
    try:
        return Frequency(str(getattr(value, "value", value)).strip().lower())
    except ValueError:
        return Frequency.MONTH


class RecordKind(str, Enum):
    """Semantic label only; both kinds are accounted identically."""
    SUBSCRIPTION = "subscription"
    INCOME = "income"


class RecurringRecord(BaseModel):
    """
    A subscription or income entry.

    Subscriptions store their exclusive upper bound as `next_billing_date`,
    income as `end_date`; both spellings populate `end_date`.
    """
    model_config = ConfigDict(
        frozen=True,
        extra="ignore",
        str_strip_whitespace=True,
    )

    id: Optional[str] = None
    user_id: Optional[str] = None
    name: Optional[str] = None
    kind: RecordKind = RecordKind.SUBSCRIPTION

    amount: float = 0.0
    currency: Optional[str] = Field(
        default=None,
        description="ISO 4217 code; None means the configured default"
    )
    frequency: Frequency = Frequency.MONTH

    start_date: Optional[date] = None
    end_date: Optional[date] = Field(
        default=None,
        validation_alias=AliasChoices("end_date", "next_billing_date"),
        description="Exclusive validity bound; None means still active"
    )
    active: bool = True
    created_at: Optional[datetime] = None

    @field_validator("id", "user_id", "name", mode="before")
    @classmethod
    def stringify(cls, v: Any) -> Optional[str]:
        if v is None or v == "":
            return None
        return str(v)

    @field_validator("kind", mode="before")
    @classmethod
    def lenient_kind(cls, v: Any) -> RecordKind:
        try:
            return RecordKind(str(getattr(v, "value", v)).lower())
        except ValueError:
            return RecordKind.SUBSCRIPTION

    @field_validator("amount", mode="before")
    @classmethod
    def lenient_amount(cls, v: Any) -> float:
        if isinstance(v, bool):
            return 0.0
        try:
            amount = float(v)
        except (TypeError, ValueError):
            return 0.0
        if not math.isfinite(amount):
            return 0.0
        return amount

    @field_validator("currency", mode="before")
    @classmethod
    def lenient_currency(cls, v: Any) -> Optional[str]:
        if isinstance(v, str) and _CURRENCY_CODE.match(v.strip()):
            return v.strip().upper()
        return None

    @field_validator("frequency", mode="before")
    @classmethod
    def lenient_frequency(cls, v: Any) -> Frequency:
        return parse_frequency(v)

    @field_validator("start_date", "end_date", mode="before")
    @classmethod
    def local_date(cls, v: Any) -> Optional[date]:
        return parse_local_date(v)

    @field_validator("active", mode="before")
    @classmethod
    def lenient_active(cls, v: Any) -> bool:
        if isinstance(v, str):
            return v.strip().lower() in _TRUE_STRINGS
        return bool(v)

    @field_validator("created_at", mode="before")
    @classmethod
    def lenient_timestamp(cls, v: Any) -> Optional[datetime]:
        if isinstance(v, datetime):
            return v
        if isinstance(v, date):
            return datetime(v.year, v.month, v.day)
        if isinstance(v, str) and v.strip():
            try:
                return datetime.fromisoformat(v.strip().replace("Z", "+00:00"))
            except ValueError:
                day = parse_local_date(v)
                return datetime(day.year, day.month, day.day) if day else None
        return None

    @property
    def effective_start(self) -> Optional[date]:
        """
        First date the record is in effect.

        Falls back to the creation timestamp's calendar date (as written,
        no timezone conversion) when start_date is missing.
        """
        if self.start_date is not None:
            return self.start_date
        if self.created_at is not None:
            return self.created_at.date()
        return None

    def currency_or(self, default: str) -> str:
        return self.currency or default

    @classmethod
    def coerce(cls, raw: Any) -> Optional["RecurringRecord"]:
        """
        Build a record from plain data without ever raising.

        Accepts a RecurringRecord, a mapping or an object with matching
        attributes. Returns None when nothing usable can be built.
        """
        if isinstance(raw, cls):
            return raw
        if raw is None or isinstance(raw, (str, bytes, int, float)):
            return None
        try:
            if isinstance(raw, Mapping):
                return cls.model_validate(dict(raw))
            return cls.model_validate(raw, from_attributes=True)
        except ValidationError:
            return None

    def with_patch(self, patch: Mapping[str, Any]) -> "RecurringRecord":
        """Return a new record with the patch applied (re-validated)."""
        data = self.model_dump()
        if "next_billing_date" in patch:
            data.pop("end_date")
        data.update(patch)
        return type(self).model_validate(data)
