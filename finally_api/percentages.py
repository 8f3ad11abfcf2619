from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

ZERO = Decimal("0")
ONE = Decimal("1")
HUNDRED = Decimal("100")


@dataclass(frozen=True)
class AllocationShare:
    """A share of a whole, always held as a fraction between 0 and 1.

    The API speaks percentages (0-100) and storage keeps fractions; build
    values with ``from_percent``/``from_fraction`` and read them back with
    ``as_percent``/``fraction`` so the conversion happens exactly once.
    """

    fraction: Decimal

    def __post_init__(self) -> None:
        value = _coerce_decimal(self.fraction)
        if value < ZERO or value > ONE:
            raise ValueError("Allocation share must be between 0 and 1.")
        object.__setattr__(self, "fraction", value)

    @classmethod
    def from_percent(cls, value: Decimal | int | float | str) -> "AllocationShare":
        percent = _coerce_decimal(value)
        if percent < ZERO or percent > HUNDRED:
            raise ValueError("Percentage must be between 0 and 100.")
        return cls(percent / HUNDRED)

    @classmethod
    def from_fraction(cls, value: Decimal | int | float | str) -> "AllocationShare":
        return cls(_coerce_decimal(value))

    def as_percent(self) -> Decimal:
        return self.fraction * HUNDRED

    def of(self, total: Decimal) -> Decimal:
        return self.fraction * total


def percent_of(part: Decimal, whole: Decimal) -> Decimal:
    if whole == ZERO:
        return ZERO
    return part / whole * HUNDRED


def _coerce_decimal(value: Decimal | int | float | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


NO_SHARE = AllocationShare(ZERO)
