"""Dues calculation: derived assessment fields and total amount owed.

Everything here is a pure function of its arguments.  ``today`` is always
passed in so results never depend on the wall clock.

Outstanding amount for an assessment that is neither paid nor
non-collectible::

    DuesAmt + BankFee
    + AssessmentInterest                     (unless StopInterestCalc)
    + FilingFee + ReleaseFee                 (open lien only)
    + FilingFeeInterest                      (open lien, unless StopInterestCalc)

A lien is open when ``Lien == 1`` and its disposition is blank or "Open".
"""

from __future__ import annotations

from datetime import date
from decimal import Decimal
from typing import Iterable

from .models import Assessment, AssessmentView, DuesCalcLine, DuesTotals, parse_date

# Fiscal years start October 1 of the prior calendar year
FISCAL_YEAR_START_MONTH = 10
FISCAL_YEAR_START_DAY = 1

LIEN_DESCRIPTIONS = ("Lien Filing Fee", "Lien Release Fee", "Lien Filing Fee Interest")


def fiscal_year_due_date(fy: int) -> date:
    """October 1 of the year before ``fy``."""
    return date(fy - 1, FISCAL_YEAR_START_MONTH, FISCAL_YEAR_START_DAY)


def derive_assessment(assessment: Assessment, today: date) -> AssessmentView:
    """Build the derived view of a stored assessment.

    - ``date_due`` is always recomputed from the fiscal year; any stored
      DateDue is ignored.
    - A paid assessment with no DatePaid gets ``date_paid = date_due``.
    - ``dues_due`` is True only when unpaid, collectible and strictly past
      the due date.
    """
    date_due = fiscal_year_due_date(assessment.fy)
    date_paid = parse_date(assessment.date_paid, "DatePaid")
    if assessment.paid and date_paid is None:
        date_paid = date_due
    dues_due = (
        not assessment.paid
        and not assessment.non_collectible
        and today > date_due
    )
    return AssessmentView(
        assessment=assessment,
        date_due=date_due,
        date_paid=date_paid,
        dues_due=dues_due,
    )


def derive_all(assessments: Iterable[Assessment], today: date) -> list[AssessmentView]:
    return [derive_assessment(a, today) for a in assessments]


def outstanding_lines(assessment: Assessment) -> list[DuesCalcLine]:
    """Non-zero balance components for one assessment."""
    if assessment.paid or assessment.non_collectible:
        return []

    fy = assessment.fy
    components: list[tuple[str, Decimal]] = [
        (f"FY {fy} Dues Amount", assessment.dues_amt),
        (f"FY {fy} Bank Fee", assessment.bank_fee),
    ]
    if not assessment.stop_interest_calc:
        components.append((f"FY {fy} Assessment Interest", assessment.assessment_interest))
    if assessment.lien_open:
        components.append((LIEN_DESCRIPTIONS[0], assessment.filing_fee))
        components.append((LIEN_DESCRIPTIONS[1], assessment.release_fee))
        if not assessment.stop_interest_calc:
            components.append((LIEN_DESCRIPTIONS[2], assessment.filing_fee_interest))

    return [
        DuesCalcLine(fy=fy, description=desc, amount=amount)
        for desc, amount in components
        if amount
    ]


def calc_total_dues(assessments: Iterable[Assessment | AssessmentView]) -> DuesTotals:
    """Sum what is owed across a fiscal-year ledger.

    Returns the per-line breakdown (newest fiscal year first), whether only
    the most recent fiscal year's dues are owed (the online payment gate),
    and the total.  An empty ledger owes nothing and is vacuously
    current-year-only.
    """
    records = [a.assessment if isinstance(a, AssessmentView) else a for a in assessments]
    if not records:
        return DuesTotals()

    latest_fy = max(a.fy for a in records)
    lines: list[DuesCalcLine] = []
    for record in sorted(records, key=lambda a: a.fy, reverse=True):
        lines.extend(outstanding_lines(record))

    total = sum((line.amount for line in lines), Decimal("0"))
    contributing_years = {line.fy for line in lines}
    has_lien_balance = any(line.description in LIEN_DESCRIPTIONS for line in lines)
    only_current = contributing_years <= {latest_fy} and not has_lien_balance

    return DuesTotals(
        lines=tuple(lines),
        only_current_year_owed=only_current,
        total_due=total,
    )
