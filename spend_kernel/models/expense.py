"""ORM models for expenses and expense reports."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import Boolean, Date, ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from spend_kernel.db.base import TrackedBase, UUIDString
from spend_kernel.domain.clock import as_utc

if TYPE_CHECKING:
    from spend_kernel.domain.policy import Expense
    from spend_kernel.domain.report import ExpenseReport


class ExpenseReportModel(TrackedBase):
    __tablename__ = "expense_reports"

    __table_args__ = (
        Index("ix_expense_reports_status", "status"),
    )

    report_number: Mapped[str] = mapped_column(String(50), nullable=False, unique=True)
    employee_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    employee_name: Mapped[str] = mapped_column(String(200), nullable=False)
    department: Mapped[str | None] = mapped_column(String(100), nullable=True)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    total_amount: Mapped[Decimal] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="DRAFT")
    workflow_request_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    bank_account: Mapped[str | None] = mapped_column(String(50), nullable=True)
    ifsc_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    bank_name: Mapped[str | None] = mapped_column(String(100), nullable=True)

    def to_dto(self) -> ExpenseReport:
        from spend_kernel.domain.report import ExpenseReport, ReportStatus

        return ExpenseReport(
            report_id=self.id,
            report_number=self.report_number,
            employee_id=self.employee_id,
            employee_name=self.employee_name,
            total_amount=self.total_amount,
            category=self.category,
            status=ReportStatus(self.status),
            department=self.department,
            workflow_request_id=self.workflow_request_id,
            bank_account=self.bank_account,
            ifsc_code=self.ifsc_code,
            bank_name=self.bank_name,
        )


class ExpenseModel(TrackedBase):
    __tablename__ = "expenses"

    __table_args__ = (
        Index("ix_expenses_report", "report_id"),
        Index("ix_expenses_employee", "employee_id"),
    )

    employee_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    amount: Mapped[Decimal] = mapped_column(nullable=False)
    category: Mapped[str] = mapped_column(String(100), nullable=False)
    expense_date: Mapped[date] = mapped_column(Date, nullable=False)
    has_receipt: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    mcc: Mapped[str | None] = mapped_column(String(4), nullable=True)
    merchant_country: Mapped[str | None] = mapped_column(String(2), nullable=True)
    gl_code: Mapped[str | None] = mapped_column(String(50), nullable=True)
    cost_center_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    business_purpose: Mapped[str | None] = mapped_column(Text, nullable=True)
    gstin: Mapped[str | None] = mapped_column(String(15), nullable=True)
    cgst: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    sgst: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    igst: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    report_id: Mapped[UUID | None] = mapped_column(
        UUIDString(), ForeignKey("expense_reports.id"), nullable=True,
    )
    policy_status: Mapped[str] = mapped_column(String(20), nullable=False, default="COMPLIANT")

    override_by_id: Mapped[UUID | None] = mapped_column(UUIDString(), nullable=True)
    override_role: Mapped[str | None] = mapped_column(String(50), nullable=True)
    override_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    override_at: Mapped[datetime | None] = mapped_column(nullable=True)

    def clear_override(self) -> None:
        self.override_by_id = None
        self.override_role = None
        self.override_reason = None
        self.override_at = None

    def to_dto(self) -> Expense:
        from spend_kernel.domain.policy import Expense, GstDetails, PolicyOverride, PolicyStatus

        override = None
        if self.override_by_id is not None:
            override = PolicyOverride(
                approver_id=self.override_by_id,
                approver_role=self.override_role or "",
                reason=self.override_reason or "",
                applied_at=as_utc(self.override_at),
            )
        return Expense(
            expense_id=self.id,
            employee_id=self.employee_id,
            amount=self.amount,
            category=self.category,
            expense_date=self.expense_date,
            has_receipt=self.has_receipt,
            mcc=self.mcc,
            merchant_country=self.merchant_country,
            gl_code=self.gl_code,
            cost_center_id=self.cost_center_id,
            business_purpose=self.business_purpose,
            gst_details=GstDetails(
                gstin=self.gstin,
                cgst=self.cgst,
                sgst=self.sgst,
                igst=self.igst,
            ),
            report_id=self.report_id,
            policy_status=PolicyStatus(self.policy_status),
            override=override,
        )
