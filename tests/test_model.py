from datetime import datetime
from decimal import Decimal

import pytest
from sqlalchemy.exc import DBAPIError, IntegrityError, OperationalError

from commerceflex import model as M

USD = "USD"


def line(line_id: str, price: int, quantity: int) -> M.CartLine:
    return M.CartLine(line_id, f"p-{line_id}", f"v-{line_id}", quantity, M.Money(price, USD))


def ten_percent(**kwargs: object) -> M.DiscountCode:
    return M.DiscountCode("SAVE10", M.DiscountKind.PERCENTAGE, percentage=Decimal(10), **kwargs)  # type: ignore[arg-type]


# ─── cart pricing ─────────────────────────────────────────────────────────────


def test_subtotal_is_sum_of_lines() -> None:
    cart = M.Cart.priced(id="c1", currency=USD, lines=[line("a", 1000, 1), line("b", 1500, 2)])

    assert cart.subtotal == M.Money(4000, USD)
    assert cart.total == cart.subtotal
    assert cart.item_count == 3


def test_percentage_discount() -> None:
    cart = M.Cart.priced(
        id="c1",
        currency=USD,
        lines=[line("a", 1000, 1), line("b", 1500, 2)],
        discounts=[ten_percent()],
    )

    assert cart.total_discount == M.Money(400, USD)
    assert cart.total == M.Money(3600, USD)
    assert cart.discount_codes == ("SAVE10",)


def test_discounts_are_capped_at_subtotal() -> None:
    big = M.DiscountCode("BIG", M.DiscountKind.FIXED_AMOUNT, amount=M.Money(5000, USD))
    cart = M.Cart.priced(
        id="c1", currency=USD, lines=[line("a", 1000, 1)], discounts=[big, ten_percent()]
    )

    assert cart.total_discount == M.Money(1000, USD)
    assert cart.total == M.Money(0, USD)


def test_empty_cart() -> None:
    cart = M.Cart.priced(id="c1", currency=USD, lines=[])
    assert cart.subtotal == M.Money(0, USD)
    assert cart.total == M.Money(0, USD)


def test_line_quantity_must_be_positive() -> None:
    with pytest.raises(M.ValidationError):
        line("a", 1000, 0)


# ─── discount rules ───────────────────────────────────────────────────────────


def test_discount_rejections() -> None:
    now = datetime(2026, 3, 2, 12, 0)
    subtotal = M.Money(4000, USD)

    assert ten_percent().rejection(subtotal, now) is None
    assert ten_percent(usage_count=5, usage_limit=5).rejection(subtotal, now) == "usage limit reached"
    assert ten_percent(ends_at=now).rejection(subtotal, now) == "expired"
    assert ten_percent(starts_at=datetime(2026, 4, 1)).rejection(subtotal, now) == "not started"
    assert ten_percent(minimum_subtotal=M.Money(5000, USD)).rejection(subtotal, now) is not None

    euro = M.DiscountCode("EURO", M.DiscountKind.FIXED_AMOUNT, amount=M.Money(500, "EUR"))
    assert euro.rejection(subtotal, now) is not None


def test_discount_definition_is_validated() -> None:
    with pytest.raises(M.ValidationError):
        M.DiscountCode("ZERO", M.DiscountKind.PERCENTAGE, percentage=Decimal(0))
    with pytest.raises(M.ValidationError):
        M.DiscountCode("NEG", M.DiscountKind.FIXED_AMOUNT, amount=M.Money(-1, USD))


def test_normalize_code() -> None:
    assert M.normalize_code("  save10 ") == "SAVE10"
    with pytest.raises(M.ValidationError):
        M.normalize_code("   ")


# ─── checkout lifecycle ───────────────────────────────────────────────────────


@pytest.mark.parametrize("terminal", sorted(M.TERMINAL, key=lambda s: s.value))
def test_terminal_states_are_final(terminal: M.CheckoutStatus) -> None:
    assert terminal.is_terminal
    for target in M.CheckoutStatus:
        assert not M.can_transition(terminal, target)


def test_forward_steps() -> None:
    assert M.can_transition(M.CheckoutStatus.DRAFT, M.CheckoutStatus.COLLECTING_SHIPPING)
    assert M.can_transition(M.CheckoutStatus.AWAITING_PAYMENT, M.CheckoutStatus.COMPLETED)
    assert not M.can_transition(M.CheckoutStatus.DRAFT, M.CheckoutStatus.COMPLETED)
    assert not M.can_transition(M.CheckoutStatus.AWAITING_PAYMENT, M.CheckoutStatus.DRAFT)
    assert M.NEXT_STEP[M.CheckoutStatus.CALCULATING_TAX] is M.CheckoutStatus.AWAITING_PAYMENT


# ─── financial status ─────────────────────────────────────────────────────────


def test_financial_status_moves_forward() -> None:
    F = M.FinancialStatus
    assert M.advance_financial(F.PENDING, F.PAID) is F.PAID
    assert M.advance_financial(F.PAID, F.PARTIALLY_REFUNDED) is F.PARTIALLY_REFUNDED
    assert M.advance_financial(F.PAID, F.PAID) is F.PAID
    assert M.advance_financial(F.AUTHORIZED, F.VOIDED) is F.VOIDED


@pytest.mark.parametrize(
    ("current", "new"),
    [
        (M.FinancialStatus.PAID, M.FinancialStatus.PENDING),
        (M.FinancialStatus.REFUNDED, M.FinancialStatus.PAID),
        (M.FinancialStatus.PAID, M.FinancialStatus.VOIDED),
        (M.FinancialStatus.VOIDED, M.FinancialStatus.PAID),
    ],
)
def test_financial_status_never_regresses(current: M.FinancialStatus, new: M.FinancialStatus) -> None:
    with pytest.raises(M.ValidationError):
        M.advance_financial(current, new)


def test_order_refundable() -> None:
    zero = M.Money(0, USD)
    order = M.Order(
        id="o1",
        number="SH-1",
        currency=USD,
        line_items=(),
        subtotal=M.Money(4000, USD),
        discount=zero,
        shipping=zero,
        tax=zero,
        total=M.Money(4000, USD),
        financial_status=M.FinancialStatus.PAID,
        refunded=M.Money(1500, USD),
    )
    assert order.refundable == M.Money(2500, USD)


# ─── errors ───────────────────────────────────────────────────────────────────


def test_classify() -> None:
    conflict = M.ConflictError("stale", current_version=3)
    assert M.classify(conflict) is conflict
    assert isinstance(M.classify(TimeoutError("slow")), M.ProviderTransientError)
    assert isinstance(M.classify(KeyError("x")), M.ProviderPermanentError)
    assert M.ProviderTransientError("x").retryable
    assert M.PaymentDeclinedError("no").recovery is M.Recovery.NEW_CHECKOUT


def test_classify_database_errors() -> None:
    locked = OperationalError("UPDATE carts SET version=?", {}, Exception("database is locked"))
    dropped = DBAPIError("SELECT 1", {}, Exception("connection reset"), connection_invalidated=True)
    duplicate = IntegrityError("INSERT INTO customers", {}, Exception("UNIQUE constraint failed"))

    assert isinstance(M.classify(locked), M.ProviderTransientError)
    assert "database is locked" in M.classify(locked).message
    assert isinstance(M.classify(dropped), M.ProviderTransientError)
    assert isinstance(M.classify(duplicate), M.ProviderPermanentError)


def test_closed_checkout_points_to_a_new_checkout() -> None:
    closed = M.CheckoutClosedError("Checkout s1 is expired", session_id="s1")

    assert isinstance(closed, M.ProviderPermanentError)
    assert closed.kind is M.ErrorKind.PERMANENT
    assert closed.recovery is M.Recovery.NEW_CHECKOUT
    assert not closed.retryable
