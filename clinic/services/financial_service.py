"""Financial service - per-session budget and balance figures."""
import dataclasses
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Iterable

from clinic.models import ProcedureLine, SessionRecord


def to_amount(value) -> int:
    """
    Coerce user input into a non-negative integer amount.

    Anything that is not a finite number (None, '', 'abc', NaN, inf) is 0,
    negatives are clamped to 0 and fractions are rounded half up. Never raises.

    Examples:
        to_amount('80') -> 80
        to_amount(12.5) -> 13
        to_amount('1,5') -> 2
        to_amount(-3) -> 0
        to_amount(None) -> 0
    """
    if value is None or isinstance(value, bool):
        return 0

    try:
        if isinstance(value, str):
            value = value.strip().replace(",", ".")
        num = Decimal(str(value))
    except (InvalidOperation, ValueError, TypeError):
        return 0

    if not num.is_finite():
        return 0

    rounded = int(num.quantize(Decimal('1'), rounding=ROUND_HALF_UP))
    return max(0, rounded)


def line_subtotal(line: ProcedureLine) -> int:
    return to_amount(line.unit_price) * to_amount(line.quantity)


def active_total(items: Iterable[ProcedureLine]) -> int:
    """Sum of subtotals of the lines that count toward the budget."""
    return sum(line_subtotal(item) for item in items if item.counts)


def compute_balance(budget, discount, payment) -> int:
    """Balance = Presupuesto - Descuento - Abono (may be negative)."""
    return int(budget) - to_amount(discount) - to_amount(payment)


def recompute(session: SessionRecord, manual_budget: bool = False) -> SessionRecord:
    """
    Return a copy of the session with every derived figure refreshed.

    - each line: subtotal = unit_price * quantity
    - budget = sum of active subtotals, unless manual_budget is on, in which
      case the last explicitly set budget is kept
    - balance = budget - discount - payment

    The input is not modified and calling it again on its own output gives
    an equal record.
    """
    items = [
        dataclasses.replace(
            item,
            unit_price=to_amount(item.unit_price),
            quantity=to_amount(item.quantity),
            subtotal=line_subtotal(item),
        )
        for item in session.items
    ]

    if manual_budget:
        budget = to_amount(session.budget)
    else:
        budget = active_total(items)

    discount = to_amount(session.discount)
    payment = to_amount(session.payment)

    return dataclasses.replace(
        session.clone(),
        items=items,
        budget=budget,
        discount=discount,
        payment=payment,
        balance=compute_balance(budget, discount, payment),
    )
