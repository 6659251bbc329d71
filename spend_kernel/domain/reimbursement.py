"""
Reimbursement domain types.

Responsibility:
    Value objects for settlements, TDS sections and the reimbursement
    payment state machine.

Architecture position:
    Kernel > Domain -- pure value objects, zero I/O.

Invariants enforced:
    - ``net_amount == gross_amount - tds_amount`` on every record.
    - Forward-only transitions; FAILED leaves only by re-initiation.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID


class ReimbursementStatus(str, Enum):
    PENDING = "PENDING"
    INITIATED = "INITIATED"
    PROCESSING = "PROCESSING"
    PAID = "PAID"
    FAILED = "FAILED"


REIMBURSEMENT_TRANSITIONS: dict[ReimbursementStatus, frozenset[ReimbursementStatus]] = {
    ReimbursementStatus.PENDING: frozenset({ReimbursementStatus.INITIATED}),
    ReimbursementStatus.INITIATED: frozenset({
        ReimbursementStatus.PROCESSING,
        ReimbursementStatus.FAILED,
    }),
    ReimbursementStatus.PROCESSING: frozenset({
        ReimbursementStatus.PAID,
        ReimbursementStatus.FAILED,
    }),
    ReimbursementStatus.PAID: frozenset(),
    # Manual re-initiation only.
    ReimbursementStatus.FAILED: frozenset({ReimbursementStatus.INITIATED}),
}

# Statuses at or past INITIATED, where initiate() is a no-op.
INITIATED_OR_LATER = frozenset({
    ReimbursementStatus.INITIATED,
    ReimbursementStatus.PROCESSING,
    ReimbursementStatus.PAID,
    ReimbursementStatus.FAILED,
})

PAYABLE_STATUSES = frozenset({
    ReimbursementStatus.INITIATED,
    ReimbursementStatus.PROCESSING,
})


@dataclass(frozen=True)
class TdsSection:
    """A withholding section: ``rate`` percent above ``threshold``.

    ``categories`` lists the report categories the section covers;
    ``"*"`` covers every category.
    """

    code: str
    rate: Decimal
    threshold: Decimal
    categories: tuple[str, ...] = ("*",)
    label: str = ""

    def covers(self, category: str) -> bool:
        return "*" in self.categories or category in self.categories


@dataclass(frozen=True)
class SettlementAmounts:
    gross_amount: Decimal
    tds_amount: Decimal
    net_amount: Decimal
    tds_rate: Decimal = Decimal("0")
    tds_section: str | None = None
    clamped: bool = False


@dataclass(frozen=True)
class Reimbursement:
    reimbursement_id: UUID
    expense_report_id: UUID
    employee_id: UUID
    gross_amount: Decimal
    tds_amount: Decimal
    net_amount: Decimal
    status: ReimbursementStatus
    tds_rate: Decimal = Decimal("0")
    tds_section: str | None = None
    report_number: str | None = None
    employee_name: str | None = None
    department: str | None = None
    payment_method: str = "NEFT"
    payment_ref: str | None = None
    bank_account: str | None = None
    ifsc_code: str | None = None
    bank_name: str | None = None
    initiated_at: datetime | None = None
    processed_at: datetime | None = None
    paid_at: datetime | None = None
    failure_reason: str | None = None


@dataclass(frozen=True)
class BulkInitiateOutcome:
    """Per-id result of a bulk initiation."""

    reimbursement_id: UUID
    succeeded: bool
    status: ReimbursementStatus | None = None
    error_code: str | None = None
    error_message: str | None = None
