"""
Filing Reminders -- Deadline Calculators

Pure functions mapping a filing type plus reference dates to a concrete
statutory deadline.  Everything here works on ``datetime.date`` values
(calendar days, no time of day, no time zone), so a deadline can never
drift by a day because of the host clock.

Rules (UK, private limited company):
    Corporation Tax payment:    year end + 9 months + 1 day
    CT600 filing:               year end + 12 months
    Companies House accounts:   year end + 9 months
    VAT return:                 quarter end + 1 month (+ month-end snap) + 7 days
    Self Assessment:            31 January after the tax year ends

Month arithmetic uses ``dateutil.relativedelta``, which clamps to the last
valid day of the target month.  A 29 February year end therefore lands on
28 February in a non-leap follow-up year rather than raising.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Optional

from dateutil.relativedelta import relativedelta

from .models import Client, FilingTypeId


# ---------------------------------------------------------------------------
# VAT Stagger Groups
# ---------------------------------------------------------------------------
# Month numbers of the four quarter ends for each HMRC stagger group.
# Every quarter ends on the last day of its month.

VAT_STAGGER_MONTHS: dict[int, tuple[int, int, int, int]] = {
    1: (3, 6, 9, 12),
    2: (1, 4, 7, 10),
    3: (2, 5, 8, 11),
}


DEADLINE_DESCRIPTIONS: dict[FilingTypeId, str] = {
    FilingTypeId.CORPORATION_TAX_PAYMENT: "9 months and 1 day after the accounting year end",
    FilingTypeId.CT600_FILING: "12 months after the accounting year end",
    FilingTypeId.COMPANIES_HOUSE: "9 months after the accounting year end",
    FilingTypeId.VAT_RETURN: "1 month and 7 days after the VAT quarter end",
    FilingTypeId.SELF_ASSESSMENT: "31 January following the end of the tax year",
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _month_end(d: date) -> date:
    """Last calendar day of ``d``'s month."""
    return d + relativedelta(day=31)


def is_month_end(d: date) -> bool:
    return d == _month_end(d)


def _stagger_months(stagger_group: int) -> tuple[int, int, int, int]:
    try:
        return VAT_STAGGER_MONTHS[stagger_group]
    except KeyError:
        raise ValueError(f"Unknown VAT stagger group: {stagger_group!r}") from None


def _quarter_ends_for_year(stagger_group: int, year: int) -> list[date]:
    return [_month_end(date(year, month, 1)) for month in _stagger_months(stagger_group)]


# ---------------------------------------------------------------------------
# Calculators
# ---------------------------------------------------------------------------

def corporation_tax_payment_deadline(year_end: date) -> date:
    """Corporation Tax is payable 9 months and 1 day after the year end.

    >>> corporation_tax_payment_deadline(date(2025, 3, 31))
    datetime.date(2026, 1, 1)
    """
    return year_end + relativedelta(months=9) + timedelta(days=1)


def ct600_filing_deadline(year_end: date) -> date:
    """CT600 return is due 12 months after the year end."""
    return year_end + relativedelta(years=1)


def companies_house_deadline(year_end: date) -> date:
    """Annual accounts are due at Companies House 9 months after the year end."""
    return year_end + relativedelta(months=9)


def vat_return_deadline(quarter_end: date) -> date:
    """VAT return and payment are due 1 month and 7 days after the quarter end.

    When the quarter end is itself the last day of its month, the
    intermediate one-month date is forced to the last day of the following
    month.  31 March therefore goes to 30 April (then 7 May), and 30 April
    goes to 31 May (then 7 June) instead of stopping at 30 May.
    """
    one_month_on = quarter_end + relativedelta(months=1)
    if is_month_end(quarter_end):
        one_month_on = _month_end(one_month_on)
    return one_month_on + timedelta(days=7)


def self_assessment_deadline(tax_year_end_year: int) -> date:
    """Online Self Assessment is due 31 January after the tax year ends.

    The tax year ending 5 April 2025 is due 31 January 2026.
    """
    return date(tax_year_end_year + 1, 1, 31)


# ---------------------------------------------------------------------------
# VAT quarter lookup
# ---------------------------------------------------------------------------

def next_vat_quarter_end(stagger_group: int, reference: date) -> date:
    """First quarter end of ``stagger_group`` strictly after ``reference``.

    Wraps into the following year once all four quarter ends have passed.
    """
    for year in (reference.year, reference.year + 1):
        for quarter_end in _quarter_ends_for_year(stagger_group, year):
            if quarter_end > reference:
                return quarter_end
    raise AssertionError("unreachable: every stagger group has a quarter end within a year")


def previous_vat_quarter_end(stagger_group: int, reference: date) -> date:
    """Latest quarter end of ``stagger_group`` on or before ``reference``."""
    for year in (reference.year, reference.year - 1):
        for quarter_end in reversed(_quarter_ends_for_year(stagger_group, year)):
            if quarter_end <= reference:
                return quarter_end
    raise AssertionError("unreachable: every stagger group has a quarter end within a year")


def current_vat_deadline(stagger_group: int, today: date) -> date:
    """Deadline of the earliest VAT quarter that is not yet overdue on ``today``."""
    # Any quarter ending more than two months ago is already past its deadline.
    quarter_end = previous_vat_quarter_end(stagger_group, today - relativedelta(months=2))
    while vat_return_deadline(quarter_end) < today:
        quarter_end = next_vat_quarter_end(stagger_group, quarter_end)
    return vat_return_deadline(quarter_end)


def current_self_assessment_deadline(today: date) -> date:
    """The next 31 January on or after ``today``."""
    if today <= date(today.year, 1, 31):
        return self_assessment_deadline(today.year - 1)
    return self_assessment_deadline(today.year)


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

def calculate_deadline(
    filing_type: FilingTypeId | str,
    client: Client,
    today: Optional[date] = None,
) -> Optional[date]:
    """Compute the current deadline for one client and filing type.

    Returns None (not an error) when the metadata the rule needs is
    missing: ``year_end_date`` for the three annual filings,
    ``vat_stagger_group`` for VAT.  Callers treat None as "cannot
    schedule yet".

    Args:
        filing_type: One of the five FilingTypeId values.
        client: Supplies year end and stagger group.
        today: Reference date for VAT and Self Assessment, which pick
            the nearest cycle that is not yet overdue.  Defaults to today.

    Raises:
        UnknownFilingTypeError: ``filing_type`` is not a known id.
    """
    filing_type = FilingTypeId.parse(filing_type)
    today = today or date.today()

    if filing_type is FilingTypeId.CORPORATION_TAX_PAYMENT:
        if client.year_end_date is None:
            return None
        return corporation_tax_payment_deadline(client.year_end_date)

    if filing_type is FilingTypeId.CT600_FILING:
        if client.year_end_date is None:
            return None
        return ct600_filing_deadline(client.year_end_date)

    if filing_type is FilingTypeId.COMPANIES_HOUSE:
        if client.year_end_date is None:
            return None
        return companies_house_deadline(client.year_end_date)

    if filing_type is FilingTypeId.VAT_RETURN:
        if client.vat_stagger_group is None:
            return None
        return current_vat_deadline(client.vat_stagger_group, today)

    if filing_type is FilingTypeId.SELF_ASSESSMENT:
        return current_self_assessment_deadline(today)

    raise AssertionError(f"Unhandled filing type: {filing_type!r}")
