"""
ComplianceService -- expense policy evaluation with cached status.

Contract:
    Records and edits expenses, stamps each with its compliance status
    against the active policy set, writes an evaluation audit row per
    evaluation, and applies manual EXCEPTION overrides.  Also the
    Expense/Report CRUD seam used by the approval router.

Guarantees:
    - ``Expense.policy_status`` always equals the latest evaluation of the
      expense against the policies in force at that time.
    - Editing an expense clears any override and re-evaluates it.
    - Only roles listed in ``SpendConfig.override_roles`` may override.
    - Expenses inside APPROVED or REIMBURSED reports are read-only and
      are not re-evaluated when policies change.

Transaction boundary: each public mutator commits on success and rolls
    back on failure.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Sequence
from datetime import date
from decimal import Decimal, InvalidOperation
from typing import Any
from uuid import UUID

from spend_config.schema import SpendConfig
from spend_engines import policy_evaluator
from spend_kernel.domain.clock import Clock, SystemClock
from spend_kernel.domain.policy import (
    Expense,
    GstDetails,
    Policy,
    PolicyEvaluationResult,
)
from spend_kernel.domain.report import CLOSED_REPORT_STATUSES, ExpenseReport, ReportStatus
from spend_kernel.exceptions import (
    ExpenseNotFoundError,
    ExpenseReportNotFoundError,
    InvalidExpenseError,
    UnauthorizedOverrideError,
)
from spend_kernel.logging_config import LogContext, get_logger
from spend_kernel.models.expense import ExpenseModel, ExpenseReportModel
from spend_kernel.models.policy import PolicyEvaluationModel
from spend_kernel.repositories import Store

logger = get_logger("services.compliance")

_MCC_PATTERN = re.compile(r"^\d{4}$")
_COUNTRY_PATTERN = re.compile(r"^[A-Za-z]{2}$")

_EDITABLE_FIELDS = frozenset({
    "amount",
    "category",
    "expense_date",
    "has_receipt",
    "mcc",
    "merchant_country",
    "gl_code",
    "cost_center_id",
    "business_purpose",
    "gst_details",
})


def _money(field: str, value: Any, *, positive: bool) -> Decimal:
    if isinstance(value, (bool, float)):
        raise InvalidExpenseError(field, "must be a Decimal, int or numeric string")
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError):
        raise InvalidExpenseError(field, f"'{value}' is not a number")
    if not amount.is_finite():
        raise InvalidExpenseError(field, "must be finite")
    if positive and amount <= 0:
        raise InvalidExpenseError(field, "must be greater than zero")
    if amount < 0:
        raise InvalidExpenseError(field, "must not be negative")
    return amount


def _clean_mcc(mcc: str | None) -> str | None:
    if mcc is None or not str(mcc).strip():
        return None
    mcc = str(mcc).strip()
    if not _MCC_PATTERN.match(mcc):
        raise InvalidExpenseError("mcc", "must be four digits")
    return mcc


def _clean_country(country: str | None) -> str | None:
    if country is None or not str(country).strip():
        return None
    country = str(country).strip()
    if not _COUNTRY_PATTERN.match(country):
        raise InvalidExpenseError("merchant_country", "must be an ISO 3166 alpha-2 code")
    return country.upper()


class ComplianceService:
    """Policy evaluator service over the expense store."""

    def __init__(
        self,
        store: Store,
        config: SpendConfig,
        clock: Clock | None = None,
    ):
        self._store = store
        self._config = config
        self._clock = clock or SystemClock()

    # =========================================================================
    # Expenses
    # =========================================================================

    def record_expense(
        self,
        employee_id: UUID,
        amount: Decimal | int | str,
        category: str,
        expense_date: date,
        actor_id: UUID,
        *,
        has_receipt: bool = False,
        mcc: str | None = None,
        merchant_country: str | None = None,
        gl_code: str | None = None,
        cost_center_id: str | None = None,
        business_purpose: str | None = None,
        gst_details: GstDetails | None = None,
        report_id: UUID | None = None,
    ) -> Expense:
        """Validate, store and evaluate a new expense.

        Raises:
            InvalidExpenseError: Non-positive amount, empty category, bad
                MCC or country code.
            ExpenseReportNotFoundError: ``report_id`` is unknown.
        """
        if not category or not category.strip():
            raise InvalidExpenseError("category", "is required")
        gst = gst_details or GstDetails()
        row = ExpenseModel(
            employee_id=employee_id,
            amount=_money("amount", amount, positive=True),
            category=category.strip(),
            expense_date=expense_date,
            has_receipt=bool(has_receipt),
            mcc=_clean_mcc(mcc),
            merchant_country=_clean_country(merchant_country),
            gl_code=gl_code,
            cost_center_id=cost_center_id,
            business_purpose=business_purpose,
            gstin=gst.gstin,
            cgst=_money("gst_details.cgst", gst.cgst, positive=False),
            sgst=_money("gst_details.sgst", gst.sgst, positive=False),
            igst=_money("gst_details.igst", gst.igst, positive=False),
            report_id=report_id,
            created_by_id=actor_id,
        )

        try:
            if report_id is not None and self._store.reports.get(report_id) is None:
                raise ExpenseReportNotFoundError(str(report_id))
            self._store.expenses.add(row)
            self._evaluate_row(row, self._policies())
            expense = row.to_dto()
            self._store.commit()
        except Exception:
            self._store.rollback()
            raise

        logger.info("expense_recorded", extra={
            "expense_id": str(expense.expense_id),
            "category": expense.category,
            "amount": str(expense.amount),
            "policy_status": expense.policy_status.value,
        })
        return expense

    def update_expense(self, expense_id: UUID, actor_id: UUID, **changes: Any) -> Expense:
        """Edit an expense, clear its override and re-evaluate it."""
        unknown = set(changes) - _EDITABLE_FIELDS
        if unknown:
            raise InvalidExpenseError(sorted(unknown)[0], "is not editable")

        try:
            row = self._get_row(expense_id, for_update=True)
            self._assert_editable(row)
            for field, value in changes.items():
                match field:
                    case "amount":
                        row.amount = _money("amount", value, positive=True)
                    case "category":
                        if not value or not str(value).strip():
                            raise InvalidExpenseError("category", "is required")
                        row.category = str(value).strip()
                    case "mcc":
                        row.mcc = _clean_mcc(value)
                    case "merchant_country":
                        row.merchant_country = _clean_country(value)
                    case "has_receipt":
                        row.has_receipt = bool(value)
                    case "gst_details":
                        gst = value or GstDetails()
                        row.gstin = gst.gstin
                        row.cgst = _money("gst_details.cgst", gst.cgst, positive=False)
                        row.sgst = _money("gst_details.sgst", gst.sgst, positive=False)
                        row.igst = _money("gst_details.igst", gst.igst, positive=False)
                    case _:
                        setattr(row, field, value)
            had_override = row.override_by_id is not None
            row.clear_override()
            row.updated_by_id = actor_id
            self._evaluate_row(row, self._policies())
            expense = row.to_dto()
            self._store.commit()
        except Exception:
            self._store.rollback()
            raise

        logger.info("expense_updated", extra={
            "expense_id": str(expense_id),
            "fields": sorted(changes),
            "override_cleared": had_override,
            "policy_status": expense.policy_status.value,
        })
        return expense

    def get_expense(self, expense_id: UUID) -> Expense:
        return self._get_row(expense_id).to_dto()

    def list_expenses(self, expense_ids: Iterable[UUID] | None = None) -> tuple[Expense, ...]:
        return tuple(row.to_dto() for row in self._store.expenses.list(expense_ids))

    # =========================================================================
    # Evaluation
    # =========================================================================

    def evaluate_expense(self, expense_id: UUID) -> PolicyEvaluationResult:
        """Re-evaluate one expense; writes the cached status and an audit row."""
        try:
            row = self._get_row(expense_id, for_update=True)
            result = self._evaluate_row(row, self._policies())
            self._store.commit()
        except Exception:
            self._store.rollback()
            raise
        return result

    def apply_override(
        self,
        expense_id: UUID,
        approver_id: UUID,
        approver_role: str,
        reason: str,
    ) -> PolicyEvaluationResult:
        """Mark an expense as an approved EXCEPTION.

        Raises:
            UnauthorizedOverrideError: ``approver_role`` may not override.
            InvalidExpenseError: Empty reason.
        """
        if not self._config.can_override(approver_role):
            logger.warning("override_rejected", extra={
                "expense_id": str(expense_id),
                "approver_role": approver_role,
            })
            raise UnauthorizedOverrideError(str(expense_id), approver_role)
        if not reason or not reason.strip():
            raise InvalidExpenseError("override_reason", "is required")

        with LogContext.bind(actor_id=approver_id, entity_type="expense", entity_id=expense_id):
            try:
                row = self._get_row(expense_id, for_update=True)
                self._assert_editable(row)
                row.override_by_id = approver_id
                row.override_role = approver_role.upper()
                row.override_reason = reason.strip()
                row.override_at = self._clock.now()
                row.updated_by_id = approver_id
                result = self._evaluate_row(row, self._policies())
                self._store.commit()
            except Exception:
                self._store.rollback()
                raise

            logger.info("override_applied", extra={
                "computed_status": result.computed_status.value,
            })
        return result

    def reevaluate_open_expenses(self) -> int:
        """Recompute every expense not in an APPROVED / REIMBURSED report.

        Returns:
            Number of expenses evaluated.
        """
        try:
            policies = self._policies()
            rows = self._store.expenses.list_open(s.value for s in CLOSED_REPORT_STATUSES)
            changed = 0
            for row in rows:
                before = row.policy_status
                result = self._evaluate_row(row, policies)
                if result.status.value != before:
                    changed += 1
            self._store.commit()
        except Exception:
            self._store.rollback()
            raise

        logger.info("expenses_reevaluated", extra={"evaluated": len(rows), "changed": changed})
        return len(rows)

    def on_policies_changed(self) -> None:
        self.reevaluate_open_expenses()

    def compliance_score(self, expense_ids: Iterable[UUID] | None = None) -> int:
        rows = self._store.expenses.list(expense_ids)
        return policy_evaluator.compliance_score(row.to_dto().policy_status for row in rows)

    def evaluation_history(self, expense_id: UUID) -> tuple[PolicyEvaluationResult, ...]:
        self._get_row(expense_id)
        return tuple(row.to_dto() for row in self._store.evaluations.history(expense_id))

    # =========================================================================
    # Reports
    # =========================================================================

    def create_report(
        self,
        report_number: str,
        employee_id: UUID,
        employee_name: str,
        category: str,
        total_amount: Decimal | int | str,
        actor_id: UUID,
        *,
        department: str | None = None,
        bank_account: str | None = None,
        ifsc_code: str | None = None,
        bank_name: str | None = None,
        expense_ids: Sequence[UUID] = (),
    ) -> ExpenseReport:
        """Create a DRAFT report.  ``total_amount`` is supplied by the caller."""
        if not report_number or not report_number.strip():
            raise InvalidExpenseError("report_number", "is required")
        if not category or not category.strip():
            raise InvalidExpenseError("category", "is required")

        try:
            report = self._store.reports.add(ExpenseReportModel(
                report_number=report_number.strip(),
                employee_id=employee_id,
                employee_name=employee_name,
                department=department,
                category=category.strip(),
                total_amount=_money("total_amount", total_amount, positive=True),
                status=ReportStatus.DRAFT.value,
                bank_account=bank_account,
                ifsc_code=ifsc_code,
                bank_name=bank_name,
                created_by_id=actor_id,
            ))
            for expense_id in expense_ids:
                row = self._get_row(expense_id, for_update=True)
                row.report_id = report.id
                row.updated_by_id = actor_id
            dto = report.to_dto()
            self._store.commit()
        except Exception:
            self._store.rollback()
            raise

        logger.info("expense_report_created", extra={
            "report_id": str(dto.report_id),
            "report_number": dto.report_number,
            "expenses": len(expense_ids),
        })
        return dto

    def get_report(self, report_id: UUID) -> ExpenseReport:
        row = self._store.reports.get(report_id)
        if row is None:
            raise ExpenseReportNotFoundError(str(report_id))
        return row.to_dto()

    def report_expenses(self, report_id: UUID) -> tuple[Expense, ...]:
        return tuple(row.to_dto() for row in self._store.expenses.list_by_report(report_id))

    # =========================================================================
    # Internal
    # =========================================================================

    def _policies(self) -> tuple[Policy, ...]:
        return tuple(row.to_dto() for row in self._store.policies.list())

    def _get_row(self, expense_id: UUID, *, for_update: bool = False) -> ExpenseModel:
        row = self._store.expenses.get(expense_id, for_update=for_update)
        if row is None:
            raise ExpenseNotFoundError(str(expense_id))
        return row

    def _assert_editable(self, row: ExpenseModel) -> None:
        if row.report_id is None:
            return
        report = self._store.reports.get(row.report_id)
        if report is not None and ReportStatus(report.status) in CLOSED_REPORT_STATUSES:
            raise InvalidExpenseError("report_id", f"expense belongs to a {report.status} report")

    def _evaluate_row(
        self,
        row: ExpenseModel,
        policies: Sequence[Policy],
    ) -> PolicyEvaluationResult:
        result = policy_evaluator.evaluate(row.to_dto(), policies, self._clock.now())
        row.policy_status = result.status.value
        self._store.evaluations.add(PolicyEvaluationModel.from_result(result))
        logger.info("policy_evaluated", extra={
            "expense_id": str(row.id),
            "status": result.status.value,
            "computed_status": result.computed_status.value,
            "violations": len(result.violations),
            "skipped": len(result.skipped),
        })
        return result
