from decimal import Decimal

import pytest

from commerceflex.model import Money, ValidationError, allocate, exponent, total


@pytest.mark.parametrize(
    ("raw", "currency", "minor"),
    [
        ("10.00", "USD", 1000),
        ("15.005", "USD", 1500),
        ("15.015", "USD", 1502),
        ("0.125", "USD", 12),
        ("0.135", "USD", 14),
        ("1200", "JPY", 1200),
        ("1200.5", "JPY", 1200),
        ("1.0005", "KWD", 1000),
    ],
)
def test_from_decimal_rounds_half_to_even(raw: str, currency: str, minor: int) -> None:
    assert Money.from_decimal(raw, currency) == Money(minor, currency)


def test_exponents() -> None:
    assert exponent("USD") == 2
    assert exponent("JPY") == 0
    assert exponent("BHD") == 3


def test_percent_and_basis_points_round_half_to_even() -> None:
    assert Money(4000, "USD").percent(Decimal(10)) == Money(400, "USD")
    # 12.5 → 12, 13.5 → 14
    assert Money(125, "USD").percent(Decimal(10)) == Money(12, "USD")
    assert Money(135, "USD").percent(Decimal(10)) == Money(14, "USD")
    assert Money(10_000, "USD").basis_points(825) == Money(825, "USD")


def test_currencies_never_mix() -> None:
    with pytest.raises(ValidationError):
        Money(100, "USD") + Money(100, "EUR")


def test_amount_must_be_integer_minor_units() -> None:
    with pytest.raises(ValidationError):
        Money(10.5, "USD")  # type: ignore[arg-type]
    with pytest.raises(ValidationError):
        Money(10, "usd")


def test_format() -> None:
    assert Money(3600, "USD").format() == "36.00"
    assert Money(500, "JPY").format() == "500"
    assert str(Money(5, "USD")) == "0.05 USD"


def test_total_of_empty_is_zero() -> None:
    assert total([], "EUR") == Money(0, "EUR")


def test_allocate_gives_leftover_to_earliest() -> None:
    parts = allocate(Money(100, "USD"), [1, 1, 1])
    assert [p.amount for p in parts] == [34, 33, 33]


def test_allocate_is_proportional_and_exact() -> None:
    parts = allocate(Money(400, "USD"), [1000, 3000])
    assert [p.amount for p in parts] == [100, 300]

    parts = allocate(Money(1001, "USD"), [3, 7, 11])
    assert sum(p.amount for p in parts) == 1001


def test_allocate_with_zero_weights() -> None:
    assert allocate(Money(100, "USD"), [0, 0]) == [Money(0, "USD"), Money(0, "USD")]
    assert allocate(Money(100, "USD"), []) == []
