"""ORM model for reimbursements (one per approved expense report)."""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import TYPE_CHECKING
from uuid import UUID

from sqlalchemy import ForeignKey, Index, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from spend_kernel.db.base import TrackedBase, UUIDString
from spend_kernel.domain.clock import as_utc

if TYPE_CHECKING:
    from spend_kernel.domain.reimbursement import Reimbursement


class ReimbursementModel(TrackedBase):
    __tablename__ = "reimbursements"

    __table_args__ = (
        Index("ix_reimbursements_status", "status"),
    )

    expense_report_id: Mapped[UUID] = mapped_column(
        UUIDString(), ForeignKey("expense_reports.id"), nullable=False, unique=True,
    )
    report_number: Mapped[str | None] = mapped_column(String(50), nullable=True)
    employee_id: Mapped[UUID] = mapped_column(UUIDString(), nullable=False)
    employee_name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    department: Mapped[str | None] = mapped_column(String(100), nullable=True)
    gross_amount: Mapped[Decimal] = mapped_column(nullable=False)
    tds_section: Mapped[str | None] = mapped_column(String(10), nullable=True)
    tds_rate: Mapped[Decimal] = mapped_column(nullable=False, default=Decimal("0"))
    tds_amount: Mapped[Decimal] = mapped_column(nullable=False)
    net_amount: Mapped[Decimal] = mapped_column(nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="PENDING")
    payment_method: Mapped[str] = mapped_column(String(20), nullable=False, default="NEFT")
    payment_ref: Mapped[str | None] = mapped_column(String(100), nullable=True)
    bank_account: Mapped[str | None] = mapped_column(String(50), nullable=True)
    ifsc_code: Mapped[str | None] = mapped_column(String(20), nullable=True)
    bank_name: Mapped[str | None] = mapped_column(String(100), nullable=True)
    initiated_at: Mapped[datetime | None] = mapped_column(nullable=True)
    processed_at: Mapped[datetime | None] = mapped_column(nullable=True)
    paid_at: Mapped[datetime | None] = mapped_column(nullable=True)
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    def to_dto(self) -> Reimbursement:
        from spend_kernel.domain.reimbursement import Reimbursement, ReimbursementStatus

        return Reimbursement(
            reimbursement_id=self.id,
            expense_report_id=self.expense_report_id,
            employee_id=self.employee_id,
            gross_amount=self.gross_amount,
            tds_amount=self.tds_amount,
            net_amount=self.net_amount,
            status=ReimbursementStatus(self.status),
            tds_rate=self.tds_rate,
            tds_section=self.tds_section,
            report_number=self.report_number,
            employee_name=self.employee_name,
            department=self.department,
            payment_method=self.payment_method,
            payment_ref=self.payment_ref,
            bank_account=self.bank_account,
            ifsc_code=self.ifsc_code,
            bank_name=self.bank_name,
            initiated_at=as_utc(self.initiated_at),
            processed_at=as_utc(self.processed_at),
            paid_at=as_utc(self.paid_at),
            failure_reason=self.failure_reason,
        )
