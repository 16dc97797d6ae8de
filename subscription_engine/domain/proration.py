"""Proration for switching a monthly subscription to yearly billing.

Pure functions: no I/O, no side effects. Amounts are integer minor units
(paise), so every step is exact integer arithmetic.

A billing month is a flat 30 days, matching the period convention used
elsewhere in billing.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal

from subscription_engine.db.base import as_utc

DAYS_IN_PERIOD = 30

_ONE_DAY = timedelta(days=1)

CURRENCY_SYMBOLS = {
    "INR": "₹",
    "USD": "$",
    "EUR": "€",
}


@dataclass(frozen=True)
class Proration:
    days_remaining: int
    days_in_period: int
    unused_credit: int
    yearly_price: int
    amount_due: int
    savings: int


def days_remaining(current_period_end: datetime, now: datetime) -> int:
    """Whole days left in the period, rounded up; never negative."""
    delta = as_utc(current_period_end) - as_utc(now)
    if delta <= timedelta(0):
        return 0
    whole, rest = divmod(delta, _ONE_DAY)
    return whole + (1 if rest else 0)


def calculate(
    current_period_end: datetime,
    monthly_price: int,
    yearly_price: int,
    now: datetime,
) -> Proration:
    """Credit for the unused monthly period and the amount due for a yearly plan.

    Args:
        current_period_end: End of the paid monthly period
        monthly_price: Monthly plan price in minor units
        yearly_price: Yearly plan price in minor units
        now: Current time (injectable for testing)

    Returns:
        Proration with amount_due >= 0. A credit larger than the yearly price is
        capped: the user owes nothing, nothing is refunded.
    """
    remaining = days_remaining(current_period_end, now)
    unused_credit = (remaining * monthly_price) // DAYS_IN_PERIOD
    amount_due = max(0, yearly_price - unused_credit)
    savings = monthly_price * 12 - yearly_price

    return Proration(
        days_remaining=remaining,
        days_in_period=DAYS_IN_PERIOD,
        unused_credit=unused_credit,
        yearly_price=yearly_price,
        amount_due=amount_due,
        savings=savings,
    )


def format_minor_units(amount: int, currency: str = "INR") -> str:
    """Format minor units for display, e.g. 2900 INR -> '₹29.00'."""
    symbol = CURRENCY_SYMBOLS.get(currency.upper(), f"{currency.upper()} ")
    major = (Decimal(amount) / 100).quantize(Decimal("0.01"))
    return f"{symbol}{major:,.2f}"


def proration_message(proration: Proration, currency: str = "INR") -> str:
    """Human-readable upgrade breakdown shown before the user confirms."""
    lines = [
        f"You have {proration.days_remaining} days remaining in your monthly subscription.",
        "",
        f"Credit from unused time: {format_minor_units(proration.unused_credit, currency)}",
        f"Yearly subscription cost: {format_minor_units(proration.yearly_price, currency)}",
        f"Amount due today: {format_minor_units(proration.amount_due, currency)}",
    ]
    if proration.savings > 0:
        lines += [
            "",
            f"You'll save {format_minor_units(proration.savings, currency)} compared to monthly billing!",
        ]
    return "\n".join(lines)
