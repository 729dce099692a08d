"""
Filing Reminders -- Rollover Engine

Advances a filing to its next cycle once the current deadline has passed.

Annual filings are anchored to the client's year end: the year end moves
forward one year and the calculator runs again, so the deadline never
drifts and a one-off deadline override does not leak into later years.
VAT moves from the quarter the current deadline belongs to onto the next
stagger quarter.  Self Assessment is fixed to 31 January and simply moves
on one year.
"""

from __future__ import annotations

from datetime import date, timedelta
from typing import Optional

from dateutil.relativedelta import relativedelta

from .deadlines import (
    companies_house_deadline,
    corporation_tax_payment_deadline,
    ct600_filing_deadline,
    next_vat_quarter_end,
    previous_vat_quarter_end,
    vat_return_deadline,
)
from .models import FilingTypeId, RolloverError


ANNUAL_FILING_TYPES: frozenset[FilingTypeId] = frozenset({
    FilingTypeId.CORPORATION_TAX_PAYMENT,
    FilingTypeId.CT600_FILING,
    FilingTypeId.COMPANIES_HOUSE,
})

_ANNUAL_CALCULATORS = {
    FilingTypeId.CORPORATION_TAX_PAYMENT: corporation_tax_payment_deadline,
    FilingTypeId.CT600_FILING: ct600_filing_deadline,
    FilingTypeId.COMPANIES_HOUSE: companies_house_deadline,
}


def is_annual_filing(filing_type: FilingTypeId | str) -> bool:
    """True for the three filings driven by the client's year end."""
    return FilingTypeId.parse(filing_type) in ANNUAL_FILING_TYPES


def advance_year_end(year_end: date) -> date:
    """Move a year end forward exactly one year (29 Feb clamps to 28 Feb)."""
    return year_end + relativedelta(years=1)


def rollover_deadline(
    filing_type: FilingTypeId | str,
    year_end_date: Optional[date],
    vat_stagger_group: Optional[int],
    current_deadline: date,
) -> date:
    """Compute the deadline of the cycle after ``current_deadline``.

    Raises:
        UnknownFilingTypeError: ``filing_type`` is not one of the five ids.
        RolloverError: The metadata the filing type needs is missing.
    """
    filing_type = FilingTypeId.parse(filing_type)

    if filing_type in ANNUAL_FILING_TYPES:
        if year_end_date is None:
            raise RolloverError(
                f"Cannot roll over {filing_type.value}: client has no year end date"
            )
        return _ANNUAL_CALCULATORS[filing_type](advance_year_end(year_end_date))

    if filing_type is FilingTypeId.VAT_RETURN:
        if vat_stagger_group is None:
            raise RolloverError("Cannot roll over vat_return: client has no VAT stagger group")
        # The deadline always falls after the quarter it belongs to.
        current_quarter = previous_vat_quarter_end(
            vat_stagger_group, current_deadline - timedelta(days=1)
        )
        return vat_return_deadline(next_vat_quarter_end(vat_stagger_group, current_quarter))

    if filing_type is FilingTypeId.SELF_ASSESSMENT:
        return current_deadline + relativedelta(years=1)

    raise AssertionError(f"Unhandled filing type: {filing_type!r}")
