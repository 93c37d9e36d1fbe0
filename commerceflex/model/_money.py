"""
Money — integer minor units plus an ISO-4217 currency.

Rounding rule: every conversion from a fractional amount (decimal strings
from a backend, percentage discounts, tax rates) rounds half to even
into the currency's minor unit. Amounts in different currencies never
mix; there is no FX conversion anywhere in the model.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from decimal import ROUND_HALF_EVEN, Decimal, InvalidOperation

from commerceflex.model._errors import ValidationError


# ═══════════════════════════════════════════════════════════════════════════════
# Currency exponents
# ═══════════════════════════════════════════════════════════════════════════════

_ZERO_DECIMAL = frozenset(
    {"BIF", "CLP", "DJF", "GNF", "ISK", "JPY", "KMF", "KRW", "PYG",
     "RWF", "UGX", "UYI", "VND", "VUV", "XAF", "XOF", "XPF"}
)
_THREE_DECIMAL = frozenset({"BHD", "IQD", "JOD", "KWD", "LYD", "OMR", "TND"})


def exponent(currency: str) -> int:
    """Number of minor-unit digits for ``currency``."""
    if currency in _ZERO_DECIMAL:
        return 0
    if currency in _THREE_DECIMAL:
        return 3
    return 2


def check_currency(currency: str) -> str:
    if len(currency) != 3 or not currency.isalpha() or not currency.isupper():
        raise ValidationError(f"Invalid currency code: {currency!r}", field="currency")
    return currency


def round_half_even(value: Decimal) -> int:
    """Banker's rounding to an integer."""
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_EVEN))


# ═══════════════════════════════════════════════════════════════════════════════
# Money
# ═══════════════════════════════════════════════════════════════════════════════


@dataclass(frozen=True, slots=True)
class Money:
    """
    Monetary amount in minor units.

    Example:
        Money(1000, "USD")                     # $10.00
        Money.from_decimal("15.005", "USD")    # 1500 (half to even)
        Money(4000, "USD").percent(Decimal(10))  # Money(400, "USD")
    """

    amount: int
    currency: str

    def __post_init__(self) -> None:
        check_currency(self.currency)
        if isinstance(self.amount, bool) or not isinstance(self.amount, int):
            raise ValidationError(
                f"Money amount must be an integer of minor units, got {self.amount!r}",
                field="amount",
            )

    # ─── constructors ─────────────────────────────────────────────────────────

    @classmethod
    def zero(cls, currency: str) -> Money:
        return cls(0, currency)

    @classmethod
    def from_decimal(cls, value: str | int | Decimal, currency: str) -> Money:
        """Parse a major-unit amount such as ``"10.00"``."""
        check_currency(currency)
        try:
            major = Decimal(str(value))
        except InvalidOperation:
            raise ValidationError(f"Invalid amount: {value!r}", field="amount") from None
        if not major.is_finite():
            raise ValidationError(f"Invalid amount: {value!r}", field="amount")
        return cls(round_half_even(major.scaleb(exponent(currency))), currency)

    # ─── conversions ──────────────────────────────────────────────────────────

    def to_decimal(self) -> Decimal:
        return Decimal(self.amount).scaleb(-exponent(self.currency))

    def format(self) -> str:
        """Major-unit string with the currency's precision, e.g. ``"36.00"``."""
        places = exponent(self.currency)
        quantum = Decimal(1).scaleb(-places)
        return str(self.to_decimal().quantize(quantum))

    # ─── arithmetic ───────────────────────────────────────────────────────────

    def _same(self, other: Money) -> None:
        if other.currency != self.currency:
            raise ValidationError(
                f"Currency mismatch: {self.currency} vs {other.currency}",
                field="currency",
            )

    def __add__(self, other: Money) -> Money:
        self._same(other)
        return Money(self.amount + other.amount, self.currency)

    def __sub__(self, other: Money) -> Money:
        self._same(other)
        return Money(self.amount - other.amount, self.currency)

    def times(self, quantity: int) -> Money:
        return Money(self.amount * quantity, self.currency)

    def percent(self, rate: Decimal) -> Money:
        """``rate`` percent of this amount, rounded half to even."""
        return Money(round_half_even(Decimal(self.amount) * rate / 100), self.currency)

    def basis_points(self, bps: int) -> Money:
        return Money(round_half_even(Decimal(self.amount) * bps / 10_000), self.currency)

    def min(self, other: Money) -> Money:
        self._same(other)
        return self if self.amount <= other.amount else other

    def is_negative(self) -> bool:
        return self.amount < 0

    def __lt__(self, other: Money) -> bool:
        self._same(other)
        return self.amount < other.amount

    def __le__(self, other: Money) -> bool:
        self._same(other)
        return self.amount <= other.amount

    def __str__(self) -> str:
        return f"{self.format()} {self.currency}"


def total(items: Sequence[Money], currency: str) -> Money:
    """Sum ``items``; an empty sequence yields zero in ``currency``."""
    acc = Money.zero(currency)
    for item in items:
        acc = acc + item
    return acc


def allocate(amount: Money, weights: Sequence[int]) -> list[Money]:
    """
    Split ``amount`` proportionally to ``weights`` by largest remainder.

    The parts always sum to ``amount``. Ties go to the earliest index.

    Example:
        allocate(Money(100, "USD"), [1, 1, 1])  # 34, 33, 33
    """
    if not weights:
        return []
    weight_sum = sum(weights)
    if weight_sum <= 0:
        return [Money.zero(amount.currency) for _ in weights]

    floors: list[int] = []
    remainders: list[tuple[int, int]] = []
    for index, weight in enumerate(weights):
        share, remainder = divmod(amount.amount * weight, weight_sum)
        floors.append(share)
        remainders.append((remainder, -index))

    leftover = amount.amount - sum(floors)
    for _, neg_index in sorted(remainders, reverse=True)[:leftover]:
        floors[-neg_index] += 1

    return [Money(part, amount.currency) for part in floors]


# ═══════════════════════════════════════════════════════════════════════════════
# Exports
# ═══════════════════════════════════════════════════════════════════════════════

__all__ = (
    "Money",
    "exponent",
    "check_currency",
    "round_half_even",
    "total",
    "allocate",
)
