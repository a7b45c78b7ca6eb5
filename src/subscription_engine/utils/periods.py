"""Calendar arithmetic for billing periods and usage resets."""
from datetime import datetime

from dateutil.relativedelta import relativedelta

from subscription_engine.models.feature import ResetFrequency
from subscription_engine.models.plan import BillingCycle

RESET_STEPS = {
    ResetFrequency.DAILY: relativedelta(days=1),
    ResetFrequency.WEEKLY: relativedelta(weeks=1),
    ResetFrequency.MONTHLY: relativedelta(months=1),
    ResetFrequency.YEARLY: relativedelta(years=1),
}

CYCLE_STEPS = {
    BillingCycle.MONTHLY: relativedelta(months=1),
    BillingCycle.YEARLY: relativedelta(years=1),
}


def next_reset_date(
    frequency: ResetFrequency,
    now: datetime,
    anchor: datetime | None = None,
) -> datetime | None:
    """
    Compute the next reset date strictly after ``now``.

    When ``anchor`` (the previous reset date) is given, the cadence is kept
    aligned to it: a monthly counter that reset on the 3rd keeps resetting
    on the 3rd.

    Args:
        frequency: Reset cadence of the plan feature
        now: Current time
        anchor: Previous reset date, if any

    Returns:
        Next reset datetime, or None for counters that never reset
    """
    step = RESET_STEPS.get(frequency)
    if step is None:
        return None

    if anchor is None:
        return now + step

    candidate = anchor
    periods = 1
    while candidate <= now:
        # Always offset from the anchor so month-end dates do not drift
        candidate = anchor + step * periods
        periods += 1
    return candidate


def period_end(cycle: BillingCycle, start: datetime) -> datetime:
    """End of a billing period that begins at ``start``."""
    return start + CYCLE_STEPS[cycle]
