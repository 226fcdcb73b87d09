"""Human-readable rendering of schedules and amounts."""

from __future__ import annotations

from decimal import ROUND_DOWN, Decimal

from cadence.scheduling.types import PaymentAction, PromptAction, ScheduleRecord

# Minimum decimal places shown for token amounts
AMOUNT_DISPLAY_PLACES = 4


def to_smallest_units(amount: Decimal, decimals: int) -> int:
    """Convert a display amount to integer base units, truncating extra digits."""
    return int(amount.scaleb(decimals).to_integral_value(rounding=ROUND_DOWN))


def format_amount(amount_smallest_units: int, decimals: int) -> str:
    """Format base units for display without hiding significant digits.

    ``format_amount(150_000_000, 8)`` -> ``"1.5000"``
    """
    display = Decimal(amount_smallest_units).scaleb(-decimals)
    exponent = display.normalize().as_tuple().exponent
    significant = -exponent if isinstance(exponent, int) and exponent < 0 else 0
    places = max(min(decimals, AMOUNT_DISPLAY_PLACES), significant)
    return f"{display:.{places}f}"


def truncate(text: str, limit: int) -> str:
    return text if len(text) <= limit else text[: limit - 1] + "…"


def describe(record: ScheduleRecord) -> str:
    """One-line summary used in listings and confirmations."""
    action = record.action
    if isinstance(action, PromptAction):
        line = (
            f"⏰ {record.start_hour_utc:02d}:{record.start_minute_utc:02d} UTC"
            f" — {record.repeat.label} — {truncate(action.text, 60)}"
        )
    else:
        line = _describe_payment(record, action)

    if not record.active:
        line += " (paused)" if record.next_run_at is not None else " (finished)"
    elif record.next_run_at is not None:
        line += f"\n   next: {record.next_run_at:%Y-%m-%d %H:%M} UTC"
    if record.last_error:
        line += f"\n   last error: {truncate(record.last_error, 120)}"
    return line


def _describe_payment(record: ScheduleRecord, action: PaymentAction) -> str:
    start = record.start_at
    when = (
        f"{start:%Y-%m-%d %H:%M}"
        if start is not None
        else f"{record.start_hour_utc:02d}:{record.start_minute_utc:02d}"
    )
    amount = format_amount(action.amount_smallest_units, action.decimals)
    return (
        f"⏰ {when} — @{action.recipient_username} — {amount} "
        f"{action.token_symbol} — {record.repeat.label}"
    )
