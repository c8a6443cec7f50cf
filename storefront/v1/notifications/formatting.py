"""Display formatting for customer-facing messages."""

from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal

MONTHS = (
    "January",
    "February",
    "March",
    "April",
    "May",
    "June",
    "July",
    "August",
    "September",
    "October",
    "November",
    "December",
)


def format_amount(
    amount: Decimal | int | str,
    thousands_sep: str = ".",
    decimal_sep: str = ",",
) -> str:
    """Group an amount the way Indonesian receipts do.

    Whole amounts drop the fraction: ``50000`` -> ``50.000``,
    ``1234.5`` -> ``1.234,50``.
    """
    value = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    sign = "-" if value < 0 else ""
    whole, fraction = f"{abs(value):.2f}".split(".")

    groups = []
    while whole:
        groups.insert(0, whole[-3:])
        whole = whole[:-3]
    grouped = thousands_sep.join(groups)

    if fraction == "00":
        return f"{sign}{grouped}"
    return f"{sign}{grouped}{decimal_sep}{fraction}"


def format_friendly_date(value: datetime) -> str:
    """Format a timestamp as ``27 October 2023, 14:30`` (UTC)."""
    if value.tzinfo is not None:
        value = value.astimezone(UTC)
    return f"{value.day:02d} {MONTHS[value.month - 1]} {value.year}, {value:%H:%M}"
