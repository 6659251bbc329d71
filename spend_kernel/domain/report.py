"""Expense report snapshot consumed by the router and settlement services."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from uuid import UUID


class ReportStatus(str, Enum):
    DRAFT = "DRAFT"
    SUBMITTED = "SUBMITTED"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    REIMBURSED = "REIMBURSED"


SUBMITTABLE_REPORT_STATUSES = frozenset({ReportStatus.DRAFT, ReportStatus.REJECTED})

# Expenses in these reports are read-only; re-evaluation skips them.
CLOSED_REPORT_STATUSES = frozenset({ReportStatus.APPROVED, ReportStatus.REIMBURSED})


@dataclass(frozen=True)
class ExpenseReport:
    report_id: UUID
    report_number: str
    employee_id: UUID
    employee_name: str
    total_amount: Decimal
    category: str
    status: ReportStatus = ReportStatus.DRAFT
    department: str | None = None
    workflow_request_id: UUID | None = None
    bank_account: str | None = None
    ifsc_code: str | None = None
    bank_name: str | None = None
