from __future__ import annotations

from decimal import Decimal
from typing import Annotated, Literal

from pydantic import AfterValidator, BeforeValidator, StringConstraints


def _to_lower_str(v):
    if v is None:
        return v
    return str(v).strip().lower()


def _to_upper_str(v):
    if v is None:
        return v
    return str(v).strip().upper()


def _non_negative(v: Decimal) -> Decimal:
    if v < 0:
        raise ValueError("must be >= 0")
    return v


def _unit_interval(v: Decimal) -> Decimal:
    if v < 0 or v > 1:
        raise ValueError("must be between 0 and 1")
    return v


# The cart engine only prices these two tenders; card settlement happens outside the agent.
PaymentMethod = Annotated[Literal["cash", "card"], BeforeValidator(_to_lower_str)]
CurrencyCode = Annotated[str, BeforeValidator(_to_upper_str), StringConstraints(pattern=r"^[A-Z]{3}$")]

Money = Annotated[Decimal, AfterValidator(_non_negative)]
Rate = Annotated[Decimal, AfterValidator(_unit_interval)]

# Ids come from the catalog (UUIDs, SKUs); keep them printable and bounded.
ProductId = Annotated[
    str,
    BeforeValidator(lambda v: str(v).strip() if v is not None else v),
    StringConstraints(min_length=1, max_length=128, pattern=r"^[A-Za-z0-9][A-Za-z0-9_.:-]*$"),
]
