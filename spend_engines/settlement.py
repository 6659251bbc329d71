"""
spend_engines.settlement -- Pure reimbursement settlement engine.

Responsibility:
    Compute gross / TDS / net amounts for an approved expense report,
    validate reimbursement status transitions, and render the NEFT
    payment-instruction file.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - ``tds = quantize(gross * rate / 100, 0.01, ROUND_HALF_UP)``.
    - ``net + tds == gross`` exactly for every non-clamped settlement.
    - A negative net is clamped to zero and flagged (``clamped=True``);
      callers treat it as a configuration bug and refuse to persist it.
    - Reimbursement status only moves along REIMBURSEMENT_TRANSITIONS.
"""

from __future__ import annotations

import csv
import io
from collections.abc import Sequence
from datetime import date
from decimal import ROUND_HALF_UP, Decimal

from spend_kernel.domain.reimbursement import (
    REIMBURSEMENT_TRANSITIONS,
    Reimbursement,
    ReimbursementStatus,
    SettlementAmounts,
    TdsSection,
)
from spend_kernel.exceptions import InvalidReimbursementTransitionError
from spend_kernel.logging_config import get_logger

logger = get_logger("engines.settlement")

CENT = Decimal("0.01")

NEFT_HEADER = (
    "Sr No",
    "Beneficiary Name",
    "Account Number",
    "IFSC Code",
    "Bank Name",
    "Amount (INR)",
    "Payment Ref",
    "Report Number",
    "Department",
)


def select_tds_section(
    category: str,
    gross: Decimal,
    sections: Sequence[TdsSection],
) -> TdsSection | None:
    """First section covering ``category`` whose threshold ``gross`` exceeds."""
    for section in sections:
        if section.covers(category) and gross > section.threshold:
            return section
    return None


def compute_settlement(
    gross: Decimal,
    category: str,
    sections: Sequence[TdsSection],
) -> SettlementAmounts:
    """Compute TDS and net for a gross amount.

    Args:
        gross: Report total.
        category: Report category, used for section lookup.
        sections: Configured TDS sections, in priority order.
    """
    section = select_tds_section(category, gross, sections)
    rate = section.rate if section else Decimal("0")
    tds = (gross * rate / Decimal(100)).quantize(CENT, rounding=ROUND_HALF_UP)
    net = gross - tds

    clamped = False
    if net < 0:
        logger.error(
            "settlement_negative_net",
            extra={
                "gross_amount": str(gross),
                "tds_amount": str(tds),
                "tds_section": section.code if section else None,
            },
        )
        net = Decimal("0")
        clamped = True

    return SettlementAmounts(
        gross_amount=gross,
        tds_amount=tds,
        net_amount=net,
        tds_rate=rate,
        tds_section=section.code if section else None,
        clamped=clamped,
    )


def can_transition(from_status: ReimbursementStatus, to_status: ReimbursementStatus) -> bool:
    return to_status in REIMBURSEMENT_TRANSITIONS[from_status]


def assert_transition(
    reimbursement_id: str,
    from_status: ReimbursementStatus,
    to_status: ReimbursementStatus,
) -> None:
    if not can_transition(from_status, to_status):
        raise InvalidReimbursementTransitionError(
            reimbursement_id, from_status.value, to_status.value
        )


def render_neft_file(rows: Sequence[Reimbursement], as_of: date) -> str:
    """Render reimbursements as a NEFT payment-instruction CSV.

    A blank line and a TOTAL row (sum of net amounts, payment count)
    follow the data rows.  Rows without a payment reference get a
    deterministic ``NEFT-<yyyymmdd>-<n>`` reference.
    """
    buffer = io.StringIO()
    writer = csv.writer(buffer, lineterminator="\n")
    writer.writerow(NEFT_HEADER)

    total = Decimal("0")
    stamp = as_of.strftime("%Y%m%d")
    for index, row in enumerate(rows, start=1):
        amount = row.net_amount.quantize(CENT, rounding=ROUND_HALF_UP)
        total += amount
        writer.writerow((
            index,
            row.employee_name or "",
            row.bank_account or "",
            row.ifsc_code or "",
            row.bank_name or "",
            f"{amount:.2f}",
            row.payment_ref or f"NEFT-{stamp}-{index}",
            row.report_number or "",
            row.department or "",
        ))

    buffer.write("\n")
    writer.writerow(("", "", "", "", "TOTAL", f"{total:.2f}", "", "", f"{len(rows)} payments"))
    return buffer.getvalue()
